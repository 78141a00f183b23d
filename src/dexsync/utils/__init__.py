"""Utility modules for DexSync."""

from .atomic import atomic_write_bytes, atomic_write_bytes_async, atomic_write_json

__all__ = ["atomic_write_bytes", "atomic_write_bytes_async", "atomic_write_json"]
