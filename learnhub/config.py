from __future__ import annotations

import hashlib
import hmac
import os
import secrets
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from learnhub.logging import get_logger

logger = get_logger(__name__)


class Environment(str, Enum):
    """Deployment environments that change cookie and mailer behaviour."""

    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"


@dataclass(frozen=True)
class TokenConfig:
    """Signing keys and lifetimes for the token ledger.

    Access and refresh tokens are signed with different keys. The refresh key
    is derived from the access secret with HMAC so a single secret can be
    configured while the two token kinds stay mutually unverifiable.
    """

    access_secret: str
    refresh_secret: str
    issuer: str
    audience: str
    access_ttl_minutes: int = 15
    refresh_ttl_days: int = 30
    record_ttl_days: int = 7
    clock_skew_seconds: int = 30


@dataclass(frozen=True)
class OtpPolicy:
    """Generation and validation rules for one-time codes."""

    length: int = 6
    ttl_minutes: int = 10
    max_attempts: int = 5
    # When False a wrong code never touches the email's live record
    count_failed_attempts: bool = True


@dataclass(frozen=True)
class CookieConfig:
    """Attributes shared by every auth cookie set or cleared."""

    secure: bool
    samesite: str
    access_max_age: int
    refresh_max_age: int
    path: str = "/"
    access_name: str = "accessToken"
    refresh_name: str = "refreshToken"


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for outbound notifications."""

    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)


@dataclass(frozen=True)
class SmtpConfig:
    host: str | None
    port: int
    user: str | None
    password: str | None
    use_tls: bool
    from_address: str | None
    from_name: str
    dev_mode: bool = False


def derive_refresh_secret(secret: str) -> str:
    """Derive the refresh-token signing key from the access secret."""
    return hmac.new(secret.encode(), b"learnhub-refresh", hashlib.sha256).hexdigest()


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the LMS API."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "APP_ENV")
    port: int = env_field(4000, "PORT")
    cors_origins: str = env_field(
        "http://localhost:3000",
        "CORS_ORIGINS",
        description="Comma separated list of allowed browser origins",
    )
    database_url: str = env_field(
        "postgresql://localhost:5432/learnhub", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/learnhub", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors",
    )

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("learnhub", "JWT_ISSUER")
    jwt_audience: str = env_field("learnhub-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_days: int = env_field(30, "REFRESH_TOKEN_TTL_DAYS")
    token_record_ttl_days: int = env_field(
        7,
        "TOKEN_RECORD_TTL_DAYS",
        description="Ceiling on how long a refresh chain can be rotated",
    )

    otp_length: int = env_field(6, "OTP_LENGTH")
    otp_ttl_minutes: int = env_field(10, "OTP_TTL_MINUTES")
    otp_max_attempts: int = env_field(5, "OTP_MAX_ATTEMPTS")
    otp_count_failed_attempts: bool = env_field(
        True,
        "OTP_COUNT_FAILED_ATTEMPTS",
        description="Increment the live OTP's attempt counter on every wrong code",
    )

    notify_max_attempts: int = env_field(3, "NOTIFY_MAX_ATTEMPTS")
    notify_base_delay_seconds: float = env_field(0.5, "NOTIFY_BASE_DELAY_SECONDS")
    notify_max_delay_seconds: float = env_field(8.0, "NOTIFY_MAX_DELAY_SECONDS")

    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("LearnHub LMS", "EMAIL_FROM_NAME")

    admin_email: str | None = env_field(None, "ADMIN_EMAIL")
    admin_password: str | None = env_field(None, "ADMIN_PASSWORD")

    razorpay_key_id: str | None = env_field(None, "RAZORPAY_KEY_ID")

    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    signup_rate_limit_per_minute: int = env_field(5, "SIGNUP_RATE_LIMIT_PER_MINUTE")
    otp_rate_limit_per_minute: int = env_field(5, "OTP_RATE_LIMIT_PER_MINUTE")

    purge_interval_seconds: int = env_field(
        3600,
        "PURGE_INTERVAL_SECONDS",
        description="How often expired token and OTP records are reaped; 0 disables",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("environment", mode="before")
    @classmethod
    def _validate_environment(cls, value: Any) -> Environment:
        if isinstance(value, str):
            value = value.strip().lower()
        return Environment(value)

    @field_validator("access_token_ttl_minutes", "refresh_token_ttl_days", "token_record_ttl_days")
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("token lifetimes must be positive")
        return value

    @field_validator("otp_length")
    @classmethod
    def _validate_otp_length(cls, value: int) -> int:
        if not 4 <= value <= 10:
            raise ValueError("otp_length must be between 4 and 10")
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated JWT secret so tokens remain valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/learnhub"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path:
                _unlink_quietly(tmp_path)
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
        return generated

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    def cors_origin_list(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    def token_config(self) -> TokenConfig:
        return TokenConfig(
            access_secret=self.jwt_secret,
            refresh_secret=derive_refresh_secret(self.jwt_secret),
            issuer=self.jwt_issuer,
            audience=self.jwt_audience,
            access_ttl_minutes=self.access_token_ttl_minutes,
            refresh_ttl_days=self.refresh_token_ttl_days,
            record_ttl_days=self.token_record_ttl_days,
        )

    def otp_policy(self) -> OtpPolicy:
        return OtpPolicy(
            length=self.otp_length,
            ttl_minutes=self.otp_ttl_minutes,
            max_attempts=self.otp_max_attempts,
            count_failed_attempts=self.otp_count_failed_attempts,
        )

    def cookie_config(self) -> CookieConfig:
        # Cross-site frontends in production need SameSite=None, which browsers
        # only accept together with Secure
        return CookieConfig(
            secure=self.is_production,
            samesite="none" if self.is_production else "lax",
            access_max_age=self.access_token_ttl_minutes * 60,
            refresh_max_age=self.refresh_token_ttl_days * 24 * 60 * 60,
        )

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.notify_max_attempts,
            base_delay=self.notify_base_delay_seconds,
            max_delay=self.notify_max_delay_seconds,
        )

    def smtp_config(self) -> SmtpConfig:
        return SmtpConfig(
            host=self.smtp_host,
            port=self.smtp_port,
            user=self.smtp_user,
            password=self.smtp_password,
            use_tls=self.smtp_use_tls,
            from_address=self.email_from_address,
            from_name=self.email_from_name,
            dev_mode=self.test_mode or not self.is_production,
        )


def _unlink_quietly(path: str) -> None:
    try:
        os.unlink(path)
    except OSError:
        pass


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
