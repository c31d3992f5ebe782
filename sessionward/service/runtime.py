from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from sessionward.config import get_settings, reset_settings_cache
from sessionward.logging import get_logger
from sessionward.service.auth import AuthService
from sessionward.storage.common import AuthRecordStore
from sessionward.storage.memory import MemoryStore
from sessionward.storage.redis_cache import RedisStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the singleton stores and auth service for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        # Credentials always come from the development store; profiles live elsewhere
        self.credential_store = MemoryStore()

        self.cache: Optional[RedisStore] = None
        redis_error: Exception | None = None
        if self.settings.redis_url and not self.settings.use_memory_store:
            try:
                cache = RedisStore(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if self.cache is None and not self.settings.use_memory_store:
            if not self.settings.test_mode:
                raise RuntimeError(
                    "Redis is required for shared token and session state; "
                    "start Redis or set USE_MEMORY_STORE=true for a single process."
                ) from redis_error
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                mode="TEST_MODE",
            )

        self.store: AuthRecordStore = self.cache or self.credential_store
        self.auth = AuthService(self.settings, self.store, self.credential_store)
        logger.info(
            "runtime_initialized",
            store_type="redis" if self.cache is not None else "memory",
            redis_enabled=self.cache is not None,
            oauth_providers=sorted(self.settings.oauth_providers),
        )

    async def close(self) -> None:
        await self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
