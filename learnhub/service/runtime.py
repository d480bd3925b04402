from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from learnhub.config import Settings, get_settings, reset_settings_cache
from learnhub.logging import get_logger
from learnhub.service.admin import AdminService
from learnhub.service.auth import AuthService
from learnhub.service.credentials import CredentialStore
from learnhub.service.email import EmailService
from learnhub.service.notifications import NotificationDispatcher
from learnhub.service.otp import OtpLedger
from learnhub.service.tokens import TokenLedger
from learnhub.storage.memory import MemoryStore
from learnhub.storage.postgres import PostgresStore
from learnhub.storage.redis_cache import Cache, RedisCache, SyncRedisCache

logger = get_logger(__name__)

DEAD_LETTER_FILENAME = "notification_dead_letter.jsonl"


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with '***' for logging."""
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


class Runtime:
    """Holds the store, cache and service instances for one app process."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
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
                else PostgresStore(
                    self.settings.database_url, fs_root=self.settings.shared_fs_root
                )
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.cache: Cache = self._connect_cache()

        self.credentials = CredentialStore(self.store)
        self.tokens = TokenLedger(self.store, self.settings.token_config())
        self.otps = OtpLedger(self.store, self.settings.otp_policy())
        self.cookies = self.settings.cookie_config()
        self.email = EmailService(
            self.settings.smtp_config(), otp_ttl_minutes=self.settings.otp_ttl_minutes
        )
        self.notifications = NotificationDispatcher(
            self.email,
            self.settings.retry_policy(),
            dead_letter_path=Path(self.settings.shared_fs_root) / "state" / DEAD_LETTER_FILENAME,
        )
        self.auth = AuthService(self.credentials, self.tokens, self.otps, self.notifications)
        self.admin = AdminService(self.credentials, self.tokens, self.otps)

        self._local_rate_limits: Dict[str, Tuple[float, float]] = {}
        self._local_rate_limit_lock = threading.Lock()

        logger.info(
            "runtime_initialized",
            environment=self.settings.environment.value,
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
        )

    def _connect_cache(self) -> Cache:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to TestClient's event loops
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for rate limits; start Redis or set "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            mode=fallback_mode,
        )
        return None

    def seed_admin_from_settings(self) -> None:
        if self.settings.admin_email and self.settings.admin_password:
            self.auth.seed_admin(self.settings.admin_email, self.settings.admin_password)

    async def close(self) -> None:
        await self.notifications.drain(timeout=5.0)
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def set_runtime(instance: Runtime) -> None:
    """Install an explicitly constructed runtime, e.g. from ``create_app``."""
    global runtime
    with _runtime_lock:
        runtime = instance


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, SyncRedisCache):
            runtime.cache.client.close()

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if settings.use_memory_store:
            # Each test starts from an empty ledger
            state_file = Path(settings.shared_fs_root) / "state" / "memory_store.json"
            state_file.unlink(missing_ok=True)
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
    """Token-bucket rate limit on Redis, or in-process when Redis is absent.

    Returns:
        bool if return_remaining is False, else (allowed, remaining, reset_seconds)
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    now = time.monotonic()
    refill_rate = float(limit) / float(window_seconds)
    with runtime._local_rate_limit_lock:
        tokens, last_ts = runtime._local_rate_limits.get(key, (float(limit), now))
        elapsed = max(0.0, now - last_ts)
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
