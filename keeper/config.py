from __future__ import annotations

import os
import secrets
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from keeper.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/keeper", "DATABASE_URL"
    )
    db_pool_min_size: int = env_field(1, "DB_POOL_MIN_SIZE", ge=0)
    db_pool_max_size: int = env_field(10, "DB_POOL_MAX_SIZE", ge=1)
    shared_fs_root: str = env_field("/srv/keeper", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors used by the test-suite.",
    )
    jwt_key: str | None = env_field(
        None,
        "JWT_KEY",
        validate_default=True,
        description="Hex-encoded Ed25519 private key (32-byte seed or 64-byte seed||public)",
    )
    jwt_issuer: str = env_field("keeper", "JWT_ISSUER")
    access_token_ttl_minutes: int = env_field(
        60,
        "ACCESS_TOKEN_TTL_MINUTES",
        ge=1,
        description="Access token lifetime in minutes",
    )
    refresh_token_ttl_minutes: int = env_field(
        5,
        "REFRESH_TOKEN_TTL_MINUTES",
        ge=1,
        description="Refresh token lifetime in minutes; set independently of the access token",
    )
    otp_interval_seconds: int = env_field(
        600,
        "OTP_INTERVAL_SECONDS",
        ge=1,
        description="Width of one challenge code window in seconds",
    )
    operation_timeout_seconds: float | None = env_field(
        10.0,
        "OPERATION_TIMEOUT_SECONDS",
        description="Deadline applied to each auth operation issued by the HTTP layer",
    )
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

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

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("operation_timeout_seconds", mode="before")
    @classmethod
    def _parse_timeout(cls, value: Any) -> Any:
        if isinstance(value, str) and value.strip().lower() in {"", "none", "0"}:
            return None
        return value

    @field_validator("jwt_key")
    @classmethod
    def _ensure_jwt_key(cls, value: str | None) -> str:
        if value:
            try:
                raw = bytes.fromhex(value.strip())
            except ValueError as exc:
                raise ValueError("JWT_KEY must be hex encoded") from exc
            if len(raw) not in (32, 64):
                raise ValueError(f"ed25519: bad private key length: {len(raw)}")
            return value.strip()
        # Persist a generated signing key so tokens remain valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/keeper"))
        key_path = fs_root / ".jwt_key"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass
        except OSError as exc:
            logger.warning(
                "jwt_key_dir_setup",
                error=str(exc),
                path=str(fs_root),
                message="Could not set directory permissions",
            )

        if key_path.exists() and not key_path.is_symlink():
            try:
                persisted = key_path.read_text().strip()
            except OSError as exc:
                logger.error("jwt_key_read_failed", error=str(exc), path=str(key_path))
            else:
                try:
                    raw = bytes.fromhex(persisted)
                except ValueError:
                    raw = b""
                if len(raw) not in (32, 64):
                    # Never overwrite a key file an operator may have placed
                    logger.error("jwt_key_file_invalid", path=str(key_path))
                    raise ValueError(
                        f"{key_path} does not hold a hex Ed25519 key; fix or remove it"
                    )
                return persisted

        generated = secrets.token_bytes(32).hex()
        tmp_path: str | None = None
        try:
            import tempfile

            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_key_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(key_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error("jwt_key_persist_failed", error=str(exc), path=str(key_path))
            raise RuntimeError(
                "Unable to persist signing key; set JWT_KEY env var or make SHARED_FS_ROOT writable"
            ) from exc
        logger.info("jwt_key_generated", path=str(key_path))
        return generated

    @model_validator(mode="after")
    def _flag_token_ttl_ordering(self) -> "Settings":
        # Flag a refresh token that expires before the access token it renews.
        if self.refresh_token_ttl_minutes < self.access_token_ttl_minutes:
            logger.warning(
                "token_ttl_ordering_suspicious",
                access_token_ttl_minutes=self.access_token_ttl_minutes,
                refresh_token_ttl_minutes=self.refresh_token_ttl_minutes,
            )
        if self.db_pool_min_size > self.db_pool_max_size:
            raise ValueError("DB_POOL_MIN_SIZE must not exceed DB_POOL_MAX_SIZE")
        return self


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
