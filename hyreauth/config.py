from __future__ import annotations

import os
import secrets
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from hyreauth.logging import get_logger

logger = get_logger(__name__)

DEFAULT_ACCESS_TOKEN_TTL = "15m"
DEFAULT_REFRESH_TOKEN_TTL = "7d"
DEFAULT_PASSWORD_RESET_TOKEN_TTL = "1h"
DEFAULT_EMAIL_VERIFICATION_TOKEN_TTL = "24h"


@dataclass(frozen=True)
class TokenConfig:
    """Signing material and lifetimes handed to the token service."""

    access_secret: str
    refresh_secret: str
    access_ttl: str | int = DEFAULT_ACCESS_TOKEN_TTL
    refresh_ttl: str | int = DEFAULT_REFRESH_TOKEN_TTL
    password_reset_ttl: str | int = DEFAULT_PASSWORD_RESET_TOKEN_TTL
    email_verification_ttl: str | int = DEFAULT_EMAIL_VERIFICATION_TOKEN_TTL
    issuer: str = "hyre"
    audience: str = "hyre-clients"
    leeway_seconds: int = 0


@dataclass(frozen=True)
class OtpPolicy:
    """Challenge policy constants; nothing else in the codebase hard-codes them."""

    ttl_seconds: int = 10 * 60
    max_attempts: int = 3
    code_length: int = 6


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _load_or_create_secret(name: str, secrets_dir: str) -> str:
    """Return a persisted secret, generating and storing one on first use."""

    root = Path(secrets_dir)
    secret_path = root / f".{name}"
    try:
        root.mkdir(parents=True, exist_ok=True)
        os.chmod(root, 0o700)
    except PermissionError:
        # Directory may already exist with different permissions (e.g., in container)
        pass
    except OSError as exc:
        logger.warning("secret_dir_setup", error=str(exc), path=str(root))

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if persisted and len(persisted) >= 32:
                return persisted
        except OSError as exc:
            logger.error("secret_read_failed", name=name, error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    import tempfile

    tmp_path = None
    try:
        fd, tmp_path = tempfile.mkstemp(dir=str(root), prefix=f".{name}_", suffix=".tmp")
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("secret_persist_failed", name=name, error=str(exc), path=str(secret_path))
        raise RuntimeError(
            f"Unable to persist {name}; set it explicitly or make SECRETS_DIR writable"
        ) from exc
    return generated


class Settings(BaseModel):
    """Runtime settings for the authentication core."""

    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_cache: bool = env_field(False, "USE_MEMORY_CACHE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors such as runtime resets.",
    )
    secrets_dir: str = env_field("/srv/hyre", "SECRETS_DIR")
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    jwt_issuer: str = env_field("hyre", "JWT_ISSUER")
    jwt_audience: str = env_field("hyre-clients", "JWT_AUDIENCE")
    access_token_ttl: str = env_field(
        DEFAULT_ACCESS_TOKEN_TTL,
        "ACCESS_TOKEN_TTL",
        description="Access token lifetime, e.g. 15m, 1h or a number of seconds",
    )
    refresh_token_ttl: str = env_field(DEFAULT_REFRESH_TOKEN_TTL, "REFRESH_TOKEN_TTL")
    password_reset_token_ttl: str = env_field(
        DEFAULT_PASSWORD_RESET_TOKEN_TTL, "PASSWORD_RESET_TOKEN_TTL"
    )
    email_verification_token_ttl: str = env_field(
        DEFAULT_EMAIL_VERIFICATION_TOKEN_TTL, "EMAIL_VERIFICATION_TOKEN_TTL"
    )
    token_leeway_seconds: int = env_field(0, "TOKEN_LEEWAY_SECONDS")
    otp_ttl_minutes: int = env_field(10, "AUTH_OTP_EXPIRY_MINUTES")
    otp_max_attempts: int = env_field(3, "AUTH_OTP_MAX_ATTEMPTS")
    otp_code_length: int = env_field(6, "AUTH_OTP_LENGTH")
    self_registration_roles: list[str] = env_field(
        ["customer", "fleetOwner"],
        "SELF_REGISTRATION_ROLES",
        description="Comma separated roles that may register through an OTP login",
    )
    # Email delivery settings for OTP codes
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Hyre", "EMAIL_FROM_NAME")

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

    @field_validator("self_registration_roles", mode="before")
    @classmethod
    def _split_roles(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value

    @field_validator("otp_ttl_minutes", "otp_max_attempts", "otp_code_length")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secrets(self) -> "Settings":
        if not self.jwt_secret:
            self.jwt_secret = _load_or_create_secret("jwt_secret", self.secrets_dir)
        if not self.jwt_refresh_secret:
            self.jwt_refresh_secret = _load_or_create_secret(
                "jwt_refresh_secret", self.secrets_dir
            )
        if self.jwt_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_SECRET and JWT_REFRESH_SECRET must differ")
        return self

    def token_config(self) -> TokenConfig:
        return TokenConfig(
            access_secret=self.jwt_secret,
            refresh_secret=self.jwt_refresh_secret,
            access_ttl=self.access_token_ttl,
            refresh_ttl=self.refresh_token_ttl,
            password_reset_ttl=self.password_reset_token_ttl,
            email_verification_ttl=self.email_verification_token_ttl,
            issuer=self.jwt_issuer,
            audience=self.jwt_audience,
            leeway_seconds=self.token_leeway_seconds,
        )

    def otp_policy(self) -> OtpPolicy:
        return OtpPolicy(
            ttl_seconds=self.otp_ttl_minutes * 60,
            max_attempts=self.otp_max_attempts,
            code_length=self.otp_code_length,
        )


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
