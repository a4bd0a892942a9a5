from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from coursegate.logging import get_logger
from coursegate.service.roles import Role

logger = get_logger(__name__)

_DEFAULT_FS_ROOT = "/srv/coursegate"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/coursegate", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    shared_fs_root: str = env_field(_DEFAULT_FS_ROOT, "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic wiring for the test suite (memory store, sync redis)",
    )
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("coursegate", "JWT_ISSUER")
    jwt_audience: str = env_field("coursegate-clients", "JWT_AUDIENCE")
    jwt_leeway_seconds: int = env_field(
        0,
        "JWT_LEEWAY_SECONDS",
        description="Clock skew tolerated when checking token expiry",
        ge=0,
    )
    access_token_ttl_seconds: int = env_field(
        24 * 60 * 60, "ACCESS_TOKEN_TTL_SECONDS", gt=0
    )
    reset_token_ttl_seconds: int = env_field(15 * 60, "RESET_TOKEN_TTL_SECONDS", gt=0)
    invite_token_ttl_days: int = env_field(7, "INVITE_TOKEN_TTL_DAYS", gt=0)
    backup_code_ttl_seconds: int = env_field(
        24 * 60 * 60, "BACKUP_CODE_TTL_SECONDS", gt=0
    )
    login_attempt_threshold: int = env_field(
        5,
        "LOGIN_ATTEMPT_THRESHOLD",
        description="Failed logins inside the window that open an incident",
        gt=0,
    )
    login_attempt_window_seconds: int = env_field(
        30 * 60, "LOGIN_ATTEMPT_WINDOW_SECONDS", gt=0
    )
    login_attempt_sweep_interval_seconds: int = env_field(
        300, "LOGIN_ATTEMPT_SWEEP_INTERVAL_SECONDS", gt=0
    )
    admin_invite_code: str | None = env_field(
        None,
        "ADMIN_INVITE_CODE",
        description="Static secret allowing registration as admin",
    )
    security_invite_code: str | None = env_field(
        None,
        "SECURITY_INVITE_CODE",
        description="Static secret allowing registration as security_analyst",
    )
    default_repair_role: Role = env_field(
        Role.STUDENT,
        "DEFAULT_REPAIR_ROLE",
        description="Role assigned to legacy accounts stored without one",
    )
    expose_error_details: bool = env_field(
        False,
        "EXPOSE_ERROR_DETAILS",
        description="Include failure reasons in error responses (development only)",
    )
    audit_requests: bool = env_field(True, "AUDIT_REQUESTS")
    login_rate_limit_per_minute: int = env_field(
        10, "LOGIN_RATE_LIMIT_PER_MINUTE", gt=0
    )
    cors_allow_origins: str = env_field("http://localhost:5173", "CORS_ALLOW_ORIGINS")

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
    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.cors_allow_origins.split(",") if origin.strip()]

    def invite_secret_for(self, role: Role) -> str | None:
        if role == Role.ADMIN:
            return self.admin_invite_code
        if role == Role.SECURITY_ANALYST:
            return self.security_invite_code
        return None

    @field_validator("admin_invite_code", "security_invite_code")
    @classmethod
    def _blank_secret_is_unset(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value

    @field_validator("default_repair_role", mode="before")
    @classmethod
    def _validate_repair_role(cls, value: Any) -> Role:
        return Role(str(value.value if isinstance(value, Role) else value).strip().lower())

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            if len(value) < 32:
                raise ValueError("JWT_SECRET must be at least 32 characters")
            return value
        # Persist a generated secret so tokens stay valid across restarts
        fs_root = Path(info.data.get("shared_fs_root") or _DEFAULT_FS_ROOT)
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(fs_root))

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

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
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
            ) from exc
        return generated


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
