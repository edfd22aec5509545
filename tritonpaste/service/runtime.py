from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from tritonpaste.config import get_settings, reset_settings_cache
from tritonpaste.logging import get_logger
from tritonpaste.service.auth import AuthService
from tritonpaste.service.oauth import OAuthClient
from tritonpaste.storage.memory import MemoryStore
from tritonpaste.storage.postgres import PostgresStore
from tritonpaste.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***`` for logging."""

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
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds the store, cache and services shared by every request."""

    def __init__(self):
        self.settings = get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    min_size=self.settings.db_pool_min_size,
                    max_size=self.settings.db_pool_max_size,
                )
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

            if not self.cache:
                # A configured but unreachable Redis is only tolerated locally
                if (
                    not self.settings.test_mode
                    and not self.settings.allow_redis_fallback_dev
                ):
                    raise RuntimeError(
                        "Redis is configured for OAuth states but unreachable; "
                        "start Redis, unset REDIS_URL, or set "
                        "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                    ) from redis_error
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(redis_error),
                    mode="TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
                )

        self.oauth = OAuthClient(self.settings)
        self.auth = AuthService(self.store, self.cache, self.settings, self.oauth)

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            oauth_configured=self.oauth.configured,
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        self.store.close()
        logger.info("runtime_closed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton, double-checked under a lock."""

    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from a fresh read of the environment.

    Only allowed under ``TEST_MODE``.
    """
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None:
            runtime.store.close()
        runtime = Runtime()
        return runtime
