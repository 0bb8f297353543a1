from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple, Union

from ephemera.config import get_settings, reset_settings_cache
from ephemera.logging import get_logger
from ephemera.service.accounts import AccountService
from ephemera.service.connections import ConnectionManager
from ephemera.service.email import EmailService
from ephemera.service.identity import IdentityResolver
from ephemera.service.passwords import CredentialVerifier
from ephemera.service.sessions import SessionLifecycleManager
from ephemera.service.sweep import SessionSweeper
from ephemera.service.tokens import TokenCodec
from ephemera.storage.memory import MemoryStore
from ephemera.storage.models import RevocationReason, RevokeAllResult, utcnow
from ephemera.storage.postgres import PostgresStore
from ephemera.storage.redis_cache import RedisCache, SyncRedisCache, mask_url_password

logger = get_logger(__name__)


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[Union[RedisCache, SyncRedisCache]] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client under test so no connection is bound to one event loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for rate limits and the sweep lock; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; rate limits are "
                    "per-process and every worker runs the session sweep."
                ),
                mode=fallback_mode,
            )

        # Argon2 at full cost makes the suite crawl
        self.verifier = (
            CredentialVerifier(time_cost=1, memory_cost=8192, parallelism=1)
            if self.settings.test_mode
            else CredentialVerifier()
        )
        self.codec = TokenCodec(
            self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            access_ttl=timedelta(minutes=self.settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(minutes=self.settings.refresh_token_ttl_minutes),
            nbf_leeway_seconds=self.settings.token_clock_skew_seconds,
        )
        self.sessions = SessionLifecycleManager(self.store, self.codec, self.verifier)
        self.identity = IdentityResolver(self.store, self.codec)
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
        )
        self.accounts = AccountService(
            self.store,
            self.sessions,
            self.verifier,
            self.email,
            verification_ttl=timedelta(minutes=self.settings.verification_code_ttl_minutes),
            reset_ttl=timedelta(minutes=self.settings.password_reset_ttl_minutes),
            allow_signup=self.settings.allow_signup,
        )
        self.connections = ConnectionManager()
        self.sessions.add_revocation_listener(self._close_revoked_sockets)
        self.sweeper = SessionSweeper(
            self.store, retention=timedelta(days=self.settings.session_retention_days)
        )

        self._local_rate_limits: Dict[str, Tuple[float, datetime]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            access_ttl_minutes=self.settings.access_token_ttl_minutes,
            refresh_ttl_minutes=self.settings.refresh_token_ttl_minutes,
        )

    async def _close_revoked_sockets(
        self, result: RevokeAllResult, reason: RevocationReason
    ) -> None:
        await self.connections.close_user_connections(result.user_id, reason=reason.value)

    async def acquire_sweep_lock(self) -> bool:
        if self.cache is None:
            return True
        # Held slightly shorter than the interval so the next tick can claim it
        ttl = max(1, self.settings.session_sweep_interval_seconds - 5)
        return await self.cache.acquire_sweep_lock("sessions", ttl)

    def close(self) -> None:
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the fast path skips the lock once the runtime
    exists, the slow path re-checks under the lock before constructing.
    """
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
        if runtime is not None and isinstance(runtime.cache, SyncRedisCache):
            runtime.cache._sync_client.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
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
    """Enforce rate limits even when Redis is unavailable.

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
    now = utcnow()
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
