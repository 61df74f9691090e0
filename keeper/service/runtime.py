from __future__ import annotations

from datetime import timedelta
from typing import Optional
from urllib.parse import urlparse, urlunparse

from keeper.config import Settings, get_settings, reset_settings_cache
from keeper.logging import get_logger
from keeper.service.auth import AuthService
from keeper.service.claims import TokenIssuer, load_private_key
from keeper.service.lifecycle import Lifecycle
from keeper.storage.memory import MemoryStore
from keeper.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask password in URL for safe logging.

    Example: postgresql://app:hunter2@db:5432/keeper -> postgresql://app:***@db:5432/keeper
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
    """Holds the service instances shared by the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.lifecycle = Lifecycle()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            if self.settings.use_memory_store:
                self.store = MemoryStore(
                    fs_root=None if self.settings.test_mode else self.settings.shared_fs_root
                )
            else:
                self.store = PostgresStore(
                    self.settings.database_url,
                    min_size=self.settings.db_pool_min_size,
                    max_size=self.settings.db_pool_max_size,
                )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                database_url=None
                if self.settings.use_memory_store
                else _mask_url_password(self.settings.database_url),
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        self.lifecycle.register("account_directory", self.store.close)

        self.issuer = TokenIssuer(
            load_private_key(self.settings.jwt_key),
            issuer=self.settings.jwt_issuer,
            access_ttl=timedelta(minutes=self.settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(minutes=self.settings.refresh_token_ttl_minutes),
        )
        self.auth = AuthService(
            self.store,
            self.issuer,
            lifecycle=self.lifecycle,
            otp_interval=self.settings.otp_interval_seconds,
            default_timeout=self.settings.operation_timeout_seconds,
        )
        self.token_verifier = self.auth.token_verifier

    async def start(self) -> None:
        if isinstance(self.store, PostgresStore):
            await self.store.open()

    async def close(self) -> None:
        await self.lifecycle.shutdown()


_runtime: Runtime | None = None


def get_runtime() -> Runtime:
    global _runtime
    if _runtime is None:
        _runtime = Runtime()
    return _runtime


def reset_runtime_for_tests() -> None:
    """Drop cached settings and runtime so each test starts clean."""

    global _runtime
    reset_settings_cache()
    _runtime = None


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
