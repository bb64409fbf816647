from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from benefitsai.logging import get_logger

logger = get_logger(__name__)

_MIN_SECRET_LENGTH = 32


class Environment(str, Enum):
    """Deployment environment; controls cookie hardening."""

    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"


class IdentityProviderKind(str, Enum):
    """Identity provider implementations that can back credential verification.

    Exactly one is active per process:

    - LOCAL: HMAC-signed ID tokens minted by this service (development, tests,
      bootstrap script)
    - FIREBASE: Firebase Auth ID tokens verified through the Identity Toolkit API
    """

    LOCAL = "local"
    FIREBASE = "firebase"


class EndpointClass(str, Enum):
    """Rate limit buckets shared by groups of endpoints."""

    AUTH = "auth"
    API = "api"
    CHAT = "chat"
    UPLOAD = "upload"
    ADMIN = "admin"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _persisted_secret(fs_root: Path, filename: str) -> str:
    """Load a generated secret from ``fs_root`` or create and persist one.

    Secrets must survive restarts, otherwise every issued session cookie and
    local ID token becomes invalid on deploy.
    """

    secret_path = fs_root / filename
    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        pass
    except OSError as exc:
        logger.warning(
            "secret_dir_setup",
            error=str(exc),
            path=str(fs_root),
            message="Could not set directory permissions",
        )

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if len(persisted) >= _MIN_SECRET_LENGTH:
                return persisted
        except OSError as exc:
            logger.error("secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path: str | None = None
    try:
        fd, tmp_path = tempfile.mkstemp(
            dir=str(fs_root), prefix=f"{filename}_", suffix=".tmp"
        )
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            f"Unable to persist {filename}; set the secret explicitly or make SHARED_FS_ROOT writable"
        ) from exc
    return generated


class Settings(BaseModel):
    """Process settings for the auth and session core."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "ENVIRONMENT")
    database_url: str = env_field(
        "postgresql://localhost:5432/benefitsai", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/benefitsai", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow in-memory fallbacks and deterministic behaviors for CI",
    )

    identity_provider: IdentityProviderKind = env_field(
        IdentityProviderKind.LOCAL, "IDENTITY_PROVIDER"
    )
    identity_provider_timeout_seconds: float = env_field(
        5.0, "IDENTITY_PROVIDER_TIMEOUT_SECONDS"
    )
    firebase_api_key: str | None = env_field(None, "FIREBASE_API_KEY")
    firebase_project_id: str | None = env_field(None, "FIREBASE_PROJECT_ID")
    local_idp_secret: str = env_field(None, "LOCAL_IDP_SECRET", validate_default=True)
    local_idp_issuer: str = env_field("benefitsai-local-idp", "LOCAL_IDP_ISSUER")
    local_idp_token_ttl_minutes: int = env_field(60, "LOCAL_IDP_TOKEN_TTL_MINUTES")

    session_secret: str = env_field(None, "SESSION_SECRET", validate_default=True)
    session_issuer: str = env_field("benefitsai", "SESSION_ISSUER")
    session_audience: str = env_field("benefitsai-web", "SESSION_AUDIENCE")
    session_ttl_days: int = env_field(
        7, "SESSION_TTL_DAYS", description="Lifetime of the __session cookie"
    )
    session_cookie_name: str = env_field("__session", "SESSION_COOKIE_NAME")
    refresh_cookie_name: str = env_field("refresh_token", "REFRESH_COOKIE_NAME")
    csrf_protection: bool = env_field(
        True,
        "CSRF_PROTECTION",
        description="Require X-CSRF-Token on cookie-authenticated state-changing requests",
    )
    csrf_cookie_name: str = env_field("csrf_token", "CSRF_COOKIE_NAME")
    csrf_token_ttl_seconds: int = env_field(3600, "CSRF_TOKEN_TTL_SECONDS")
    refresh_token_ttl_days: int = env_field(30, "REFRESH_TOKEN_TTL_DAYS")
    revoke_sessions_on_reuse: bool = env_field(
        True,
        "REVOKE_SESSIONS_ON_REUSE",
        description="On refresh-token reuse also invalidate every session issued before detection",
    )
    store_timeout_seconds: float = env_field(2.0, "STORE_TIMEOUT_SECONDS")
    sign_in_path: str = env_field("/login", "SIGN_IN_PATH")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    rate_limit_auth_max: int = env_field(5, "RATE_LIMIT_AUTH_MAX")
    rate_limit_auth_window_ms: int = env_field(15 * 60 * 1000, "RATE_LIMIT_AUTH_WINDOW_MS")
    rate_limit_api_max: int = env_field(100, "RATE_LIMIT_API_MAX")
    rate_limit_api_window_ms: int = env_field(60 * 1000, "RATE_LIMIT_API_WINDOW_MS")
    rate_limit_chat_max: int = env_field(10, "RATE_LIMIT_CHAT_MAX")
    rate_limit_chat_window_ms: int = env_field(60 * 1000, "RATE_LIMIT_CHAT_WINDOW_MS")
    rate_limit_upload_max: int = env_field(20, "RATE_LIMIT_UPLOAD_MAX")
    rate_limit_upload_window_ms: int = env_field(
        60 * 60 * 1000, "RATE_LIMIT_UPLOAD_WINDOW_MS"
    )
    rate_limit_admin_max: int = env_field(10, "RATE_LIMIT_ADMIN_MAX")
    rate_limit_admin_window_ms: int = env_field(60 * 1000, "RATE_LIMIT_ADMIN_WINDOW_MS")

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

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def session_ttl_seconds(self) -> int:
        return self.session_ttl_days * 24 * 60 * 60

    @property
    def refresh_token_ttl_seconds(self) -> int:
        return self.refresh_token_ttl_days * 24 * 60 * 60

    def rate_limit_for(self, endpoint_class: EndpointClass | str) -> tuple[int, int]:
        """Return ``(max_requests, window_ms)`` for an endpoint class."""
        name = EndpointClass(endpoint_class).value
        return (
            getattr(self, f"rate_limit_{name}_max"),
            getattr(self, f"rate_limit_{name}_window_ms"),
        )

    @field_validator("environment", mode="before")
    @classmethod
    def _validate_environment(cls, value: Environment | str) -> Environment:
        if isinstance(value, str):
            return Environment(value.strip().lower())
        return value

    @field_validator("identity_provider", mode="before")
    @classmethod
    def _validate_identity_provider(
        cls, value: IdentityProviderKind | str
    ) -> IdentityProviderKind:
        if isinstance(value, str):
            return IdentityProviderKind(value.strip().lower())
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("session_ttl_days", "refresh_token_ttl_days")
    @classmethod
    def _validate_ttl_days(cls, value: int) -> int:
        if value < 1:
            raise ValueError("token lifetimes must be at least one day")
        return value

    @field_validator("session_secret", mode="before")
    @classmethod
    def _ensure_session_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            return value
        fs_root = info.data.get("shared_fs_root") or os.getenv(
            "SHARED_FS_ROOT", "/srv/benefitsai"
        )
        return _persisted_secret(Path(fs_root), ".session_secret")

    @field_validator("local_idp_secret", mode="before")
    @classmethod
    def _ensure_local_idp_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            return value
        fs_root = info.data.get("shared_fs_root") or os.getenv(
            "SHARED_FS_ROOT", "/srv/benefitsai"
        )
        return _persisted_secret(Path(fs_root), ".local_idp_secret")


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
