from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from recordkeep.logging import get_logger

logger = get_logger(__name__)


class ValidationMode(str, Enum):
    """How profile validation failures are handled.

    - ADVISORY: format and uniqueness violations are logged, never rejected
    - ENFORCE: format violations raise InvalidInputError and uniqueness
      conflicts raise AlreadyExistsError
    """

    ADVISORY = "advisory"
    ENFORCE = "enforce"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity and persistence core."""

    mongo_uri: str = env_field("mongodb://localhost:27017", "MONGO_URI")
    mongo_database: str = env_field("recordkeep", "MONGO_DATABASE")
    mongo_timeout_ms: int = env_field(
        5000,
        "MONGO_TIMEOUT_MS",
        description="Server selection and socket timeout for the document store",
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/recordkeep", "SHARED_FS_ROOT")
    test_mode: bool = env_field(False, "TEST_MODE")

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("recordkeep", "JWT_ISSUER")
    jwt_audience: str = env_field("recordkeep-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(30, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_session_ttl_days: int = env_field(
        10,
        "REFRESH_SESSION_TTL_DAYS",
        description="Lifetime of a newly issued refresh session",
    )
    refresh_rotation_threshold_days: int = env_field(
        7,
        "REFRESH_ROTATION_THRESHOLD_DAYS",
        description="Rotate a refresh session on use once its remaining lifetime drops below this",
    )
    clock_skew_seconds: int = env_field(120, "CLOCK_SKEW_SECONDS")

    default_role: str = env_field("User", "DEFAULT_ROLE")
    seed_roles: list[str] = env_field(["User", "Admin"], "SEED_ROLES")
    validation_mode: ValidationMode = env_field(
        ValidationMode.ADVISORY,
        "VALIDATION_MODE",
        description="advisory (log only) or enforce (reject) for email/phone checks",
    )
    enforce_credential_generation: bool = env_field(
        False,
        "ENFORCE_CREDENTIAL_GENERATION",
        description="Reject access tokens minted before the user's last ban",
    )

    default_page_size: int = env_field(20, "DEFAULT_PAGE_SIZE")
    max_page_size: int = env_field(100, "MAX_PAGE_SIZE")

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

    @field_validator("validation_mode", mode="before")
    @classmethod
    def _validate_mode(cls, value: Any) -> ValidationMode:
        if isinstance(value, str):
            value = value.strip().lower()
        return ValidationMode(value)

    @field_validator("seed_roles", mode="before")
    @classmethod
    def _split_roles(cls, value: Any) -> list[str]:
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return list(value or [])

    @model_validator(mode="after")
    def _check_session_windows(self) -> "Settings":
        if self.refresh_session_ttl_days < 1:
            raise ValueError("REFRESH_SESSION_TTL_DAYS must be at least 1")
        if self.refresh_rotation_threshold_days >= self.refresh_session_ttl_days:
            raise ValueError(
                "REFRESH_ROTATION_THRESHOLD_DAYS must be below REFRESH_SESSION_TTL_DAYS"
            )
        if self.default_role not in self.seed_roles:
            self.seed_roles = [self.default_role, *self.seed_roles]
        return self

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/recordkeep"))
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
        tmp_path: str | None = None
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
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
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
