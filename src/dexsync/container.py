"""
Dependency injection container for DexSync services.
"""

from __future__ import annotations

import asyncio
import inspect
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any, AsyncIterator, Awaitable, Callable, Dict, Generic, List, Optional, TypeVar, Union
from uuid import uuid4

import structlog

from dexsync.config import Config

if TYPE_CHECKING:
    from dexsync.client.sync import SyncClient
    from dexsync.crawler.crawler import Crawler
    from dexsync.crawler.http_client import HttpClient
    from dexsync.dataset.manifest import SourceRegistry
    from dexsync.pipeline import Pipeline
    from dexsync.publisher.publisher import Publisher

T = TypeVar("T")


class LazyInstance(Generic[T]):
    """Lazy-loaded instance with lifecycle management."""

    def __init__(self, factory: Callable[[], Union[T, Awaitable[T]]]) -> None:
        self._factory = factory
        self._instance: Optional[T] = None
        self._initialized = False
        self._lock = asyncio.Lock()

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def get(self) -> T:
        """Get or create the instance."""
        async with self._lock:
            if not self._initialized:
                instance = self._factory()
                if inspect.isawaitable(instance):
                    instance = await instance
                if callable(getattr(instance, "initialize", None)):
                    await instance.initialize()  # type: ignore[union-attr]
                self._instance = instance  # type: ignore[assignment]
                self._initialized = True
            assert self._instance is not None
            return self._instance

    async def cleanup(self) -> None:
        """Clean up the instance."""
        if self._instance is not None and callable(getattr(self._instance, "close", None)):
            await self._instance.close()  # type: ignore[union-attr]
        self._instance = None
        self._initialized = False


class DependencyContainer:
    """
    Builds server and client services from one :class:`Config`.

    Services are created on first use and closed in reverse creation order.
    """

    def __init__(self, config_path: Optional[Path] = None, config: Optional[Config] = None) -> None:
        self.config_path = config_path
        self.config = config
        self.logger = structlog.get_logger(self.__class__.__name__)

        self._instances: Dict[str, LazyInstance[Any]] = {}
        self._created: List[str] = []
        self._shutdown_handlers: List[Callable[[], Any]] = []

        self.run_id = str(uuid4())
        self.is_running = False

    async def initialize(self) -> None:
        if self.config is None:
            self.load_config()
        self._create_instances()
        self.is_running = True
        self.logger.info(
            "Dependency container initialized",
            run_id=self.run_id,
            config_path=str(self.config_path) if self.config_path else "default",
        )

    def load_config(self) -> None:
        if self.config_path and self.config_path.exists():
            self.config = Config.from_yaml(self.config_path)
        else:
            self.config = Config()

    def _create_instances(self) -> None:
        if self.config is None:
            raise RuntimeError("Configuration must be loaded before creating instances")

        # Imported here so importing the container stays cheap.
        from dexsync.client.local_store import LocalStore
        from dexsync.client.sync import SyncClient
        from dexsync.crawler.circuit_breaker import CircuitBreakerManager
        from dexsync.crawler.rate_limiter import RateLimiterRegistry
        from dexsync.dataset.manifest import SourceRegistry

        config = self.config
        self._instances = {
            "limiters": LazyInstance(lambda: RateLimiterRegistry(config)),
            "breakers": LazyInstance(lambda: CircuitBreakerManager(config.crawler.circuit_breaker)),
            "http_client": LazyInstance(self._make_http_client),
            "crawler": LazyInstance(self._make_crawler),
            "registry": LazyInstance(lambda: SourceRegistry.load(config.dataset.registry_path)),
            "publisher": LazyInstance(self._make_publisher),
            "pipeline": LazyInstance(self._make_pipeline),
            "sync_client": LazyInstance(lambda: SyncClient(config.sync, LocalStore(config.sync.db_path))),
        }

    async def _make_http_client(self) -> HttpClient:
        from dexsync.crawler.http_client import HttpClient

        return HttpClient(self.config, await self._get("limiters"))

    async def _make_crawler(self) -> Crawler:
        from dexsync.crawler.crawler import Crawler
        from dexsync.crawler.parsers import ParserRegistry
        from dexsync.crawler.robots import RobotsCache

        config = self.config
        http_client = await self.get_http_client()
        robots = RobotsCache(
            http_client.session,
            config.crawler.user_agent,
            config.crawler.robots_cache_ttl_seconds,
        )
        return Crawler(
            config,
            http_client,
            ParserRegistry.from_config(config.sources),
            robots=robots,
            breakers=await self._get("breakers"),
            limiters=await self._get("limiters"),
        )

    async def _make_publisher(self) -> Publisher:
        from dexsync.publisher.publisher import Publisher
        from dexsync.publisher.storage import HttpObjectStore, LocalObjectStore

        settings = self.config.publisher
        if settings.provider == "http":
            http_client = await self.get_http_client()
            store = HttpObjectStore(settings.base_url, http_client.session, timeout=settings.upload_timeout)
        else:
            store = LocalObjectStore(settings.local_root)
        return Publisher(store, settings)

    async def _make_pipeline(self) -> Pipeline:
        from dexsync.pipeline import Pipeline

        return Pipeline(
            self.config,
            await self.get_crawler(),
            await self.get_registry(),
            publisher=await self.get_publisher(),
        )

    async def _get(self, name: str) -> Any:
        if name not in self._instances:
            raise RuntimeError(f"Unknown service '{name}'; is the container initialized?")
        instance = await self._instances[name].get()
        if name not in self._created:
            self._created.append(name)
        return instance

    async def get_http_client(self) -> HttpClient:
        return await self._get("http_client")

    async def get_crawler(self) -> Crawler:
        return await self._get("crawler")

    async def get_registry(self) -> SourceRegistry:
        return await self._get("registry")

    async def get_publisher(self) -> Publisher:
        return await self._get("publisher")

    async def get_pipeline(self) -> Pipeline:
        return await self._get("pipeline")

    async def get_sync_client(self) -> SyncClient:
        return await self._get("sync_client")

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator[DependencyContainer]:
        """Context manager for proper lifecycle management."""
        try:
            await self.initialize()
            yield self
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        """Graceful shutdown of all managed instances."""
        if not self.is_running:
            return

        self.logger.info("Shutting down dependency container", run_id=self.run_id)
        for handler in self._shutdown_handlers:
            try:
                result = handler()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self.logger.error("Error in shutdown handler", error=str(e))

        await self._cleanup_instances()
        self.is_running = False
        self.logger.info("Dependency container shutdown complete")

    async def _cleanup_instances(self) -> None:
        for name in reversed(self._created):
            try:
                await self._instances[name].cleanup()
            except Exception as e:
                self.logger.error(f"Error cleaning up {name}", error=str(e))
        self._created.clear()

    def add_shutdown_handler(self, handler: Callable[[], Any]) -> None:
        self._shutdown_handlers.append(handler)

    def get_health_status(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "is_running": self.is_running,
            "config_loaded": self.config is not None,
            "instances_created": list(self._created),
            "config_path": str(self.config_path) if self.config_path else None,
        }
