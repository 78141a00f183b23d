"""
Atomic file writing utilities.

Writes go to a temporary file in the target directory, are fsynced, and are
then moved into place with ``os.replace`` so readers only ever observe the
old or the new content.
"""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
from pathlib import Path
from typing import Any, Mapping

import structlog

logger = structlog.get_logger(__name__)


def atomic_write_bytes(target_path: Path, data: bytes) -> None:
    """
    Atomically write bytes to ``target_path``.

    Args:
        target_path: Target file path to write to
        data: Raw content

    Raises:
        OSError: If the temporary file cannot be written or moved into place
    """
    target_path = Path(target_path)
    target_path.parent.mkdir(parents=True, exist_ok=True)
    temp_file_path: Path | None = None

    try:
        with tempfile.NamedTemporaryFile(
            mode="wb", dir=target_path.parent, prefix=f".{target_path.name}.", suffix=".tmp", delete=False
        ) as temp_file:
            temp_file_path = Path(temp_file.name)
            temp_file.write(data)
            temp_file.flush()
            os.fsync(temp_file.fileno())

        os.replace(temp_file_path, target_path)
        logger.debug("Atomic write completed", target=str(target_path), size=len(data))
    except OSError as e:
        logger.error("Atomic write failed", target=str(target_path), error=str(e))
        raise
    finally:
        if temp_file_path is not None and temp_file_path.exists():
            try:
                temp_file_path.unlink()
            except OSError:
                pass


def atomic_write_json(target_path: Path, data: Mapping[str, Any]) -> None:
    """
    Atomically write JSON data to a file.

    Raises:
        OSError: If writing fails
        ValueError: If data cannot be serialized to JSON
    """
    try:
        content = json.dumps(data, indent=2, ensure_ascii=False, sort_keys=True)
    except (TypeError, ValueError) as e:
        logger.error("Failed to serialize data to JSON", target=str(target_path), error=str(e))
        raise ValueError(f"Cannot serialize data to JSON: {e}") from e
    atomic_write_bytes(Path(target_path), content.encode("utf-8"))


async def atomic_write_bytes_async(target_path: Path, data: bytes) -> None:
    """Run :func:`atomic_write_bytes` in the default executor."""
    loop = asyncio.get_running_loop()
    await loop.run_in_executor(None, atomic_write_bytes, Path(target_path), data)
