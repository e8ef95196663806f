from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from chatwarden.config import IdentityBackend, Settings, get_settings, reset_settings_cache
from chatwarden.logging import get_logger
from chatwarden.service.audit import AuditSink
from chatwarden.service.guard import NetworkAbuseGuard
from chatwarden.service.identity import (
    IdentityProvider,
    IdentityVerifier,
    JWTIdentityProvider,
    RemoteIdentityProvider,
)
from chatwarden.service.moderation import ModerationEngine
from chatwarden.service.privilege import PrivilegeGate
from chatwarden.service.subjects import SubjectDirectory
from chatwarden.storage.common import DocumentStore
from chatwarden.storage.memory import MemoryStore
from chatwarden.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging."""
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
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def build_identity_provider(settings: Settings) -> IdentityProvider:
    if settings.identity_backend == IdentityBackend.REMOTE:
        return RemoteIdentityProvider(
            settings.identity_base_url,
            settings.identity_api_key or "",
            admin_token=settings.identity_admin_token,
            timeout=settings.identity_timeout_seconds,
        )
    if not settings.jwt_secret:
        raise RuntimeError("JWT_SECRET is required when IDENTITY_BACKEND=jwt")
    return JWTIdentityProvider(
        settings.jwt_secret,
        issuer=settings.jwt_issuer,
        audience=settings.jwt_audience,
        clock_skew_seconds=settings.jwt_clock_skew_seconds,
    )


def build_store(settings: Settings) -> DocumentStore:
    if settings.use_memory_store:
        return MemoryStore(fs_root=settings.shared_fs_root)
    from chatwarden.storage.postgres import PostgresStore

    return PostgresStore(settings.database_url)


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            identity_backend=self.settings.identity_backend.value,
            test_mode=self.settings.test_mode,
        )
        try:
            self.store: DocumentStore = build_store(self.settings)
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
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                if not (self.settings.test_mode or self.settings.allow_redis_fallback_dev):
                    raise RuntimeError(
                        "Redis is configured but unreachable; fix REDIS_URL or unset it "
                        "to use in-process rate limiting."
                    ) from exc
                logger.warning(
                    "redis_unavailable_using_local_rate_limits",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                )

        # In-process token buckets when Redis is not configured
        self._local_rate_limits: Dict[str, Tuple[float, datetime]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        self.identity_provider = build_identity_provider(self.settings)
        self.identity = IdentityVerifier(self.identity_provider)
        self.gate = PrivilegeGate(self.store)
        self.audit = AuditSink(self.store)
        self.moderation = ModerationEngine(
            self.store, self.audit, identity_provider=self.identity_provider
        )
        self.guard = NetworkAbuseGuard(self.store)
        self.subjects = SubjectDirectory(self.store)
        logger.info("runtime_init_complete", store_type=store_type)

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        close_store = getattr(self.store, "close", None)
        if callable(close_store):
            close_store()


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
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token-bucket rate limit, in Redis when available, else in-process.

    Args:
        runtime: Runtime instance with cache
        key: Rate limit key
        limit: Maximum requests per window
        window_seconds: Window duration in seconds
        return_remaining: If True, return tuple of (allowed, remaining, reset_seconds)

    Returns:
        bool if return_remaining is False, else (bool, int, int) tuple
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            key=key,
            window_seconds=window_seconds,
            message="Invalid rate limit window_seconds; defaulting to 60 seconds",
        )
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    now = datetime.now(timezone.utc)
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        tokens, last_ts = runtime._local_rate_limits.get(key, (float(limit), now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        runtime._local_rate_limits[key] = (tokens, now)
        reset_seconds = int((cost - tokens) / refill_rate) if not allowed else 0
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed


__all__ = [
    "Runtime",
    "build_identity_provider",
    "build_store",
    "check_rate_limit",
    "get_runtime",
    "reset_runtime_for_tests",
]
