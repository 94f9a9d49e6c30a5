from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from authcore.config import RevocationBackend, Settings, get_settings, reset_settings_cache
from authcore.logging import get_logger
from authcore.service.auth import AuthService
from authcore.storage.memory import MemoryRevocationStore, MemoryStore
from authcore.storage.postgres import PostgresRevocationStore, PostgresStore
from authcore.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with '***' for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Composition root: builds the stores named by settings and the AuthService."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            revocation_backend=self.settings.revocation_backend.value,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    timeout=self.settings.store_timeout_seconds,
                )
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.revocations = self._build_revocation_store()
        self.auth = AuthService(
            users=self.store,
            refresh_tokens=self.store,
            revocations=self.revocations,
            settings=self.settings,
        )
        logger.info(
            "runtime_initialized",
            store_type=type(self.store).__name__,
            revocation_store=type(self.revocations).__name__,
        )

    def _build_revocation_store(self):
        backend = self.settings.revocation_backend
        if backend == RevocationBackend.MEMORY:
            return MemoryRevocationStore()
        if backend == RevocationBackend.POSTGRES:
            if not isinstance(self.store, PostgresStore):
                raise RuntimeError(
                    "REVOCATION_BACKEND=postgres requires USE_MEMORY_STORE=false"
                )
            return PostgresRevocationStore(self.store)

        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids event loop binding issues
                cache_cls = SyncRedisCache if self.settings.test_mode else RedisCache
                cache = cache_cls(
                    self.settings.redis_url,
                    socket_timeout=self.settings.store_timeout_seconds,
                )
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode:
            raise RuntimeError(
                "Redis is required for access-token revocation; start Redis, set "
                "REVOCATION_BACKEND=postgres, or set TEST_MODE=true for an in-memory fallback."
            ) from redis_error
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message="Running with an in-memory revocation store under TEST_MODE",
        )
        return MemoryRevocationStore()


runtime: Optional[Runtime] = None
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


def reset_runtime_for_tests() -> None:
    """Drop the Runtime singleton and cached settings for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.auth.close()
            if isinstance(runtime.revocations, SyncRedisCache):
                runtime.revocations._sync_client.close()
            if isinstance(runtime.store, PostgresStore):
                runtime.store.close()
        runtime = None
        reset_settings_cache()
