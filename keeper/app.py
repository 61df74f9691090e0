from __future__ import annotations

from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from keeper.api.error_handling import register_exception_handlers
from keeper.api.routes import health_router, router
from keeper.config import get_settings
from keeper.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the account directory on startup and release it on shutdown."""
    from keeper.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        await runtime.start()
        logger.info("runtime_started", version=__version__)
        yield
    finally:
        try:
            await runtime.close()
            logger.info("runtime_cleanup_complete")
        except Exception as exc:
            logger.error("shutdown_failed", error=str(exc))


def _allowed_origins() -> List[str]:
    settings = get_settings()
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]


async def add_correlation_id(request: Request, call_next):
    """Tag each request with a correlation ID for log tracing.

    The ID comes from the client's X-Request-ID header when present and is
    echoed back in the response header either way.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    # Challenges and tokens must never be cached by proxies
    response.headers.setdefault("Cache-Control", "no-store")
    response.headers.setdefault("API-Version", __version__)
    return response


def create_app() -> FastAPI:
    app = FastAPI(title="Keeper Auth", version=__version__, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(),
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID", "API-Version"],
        max_age=3600,
    )
    app.middleware("http")(add_security_headers)
    app.middleware("http")(add_correlation_id)
    register_exception_handlers(app)
    app.include_router(health_router)
    app.include_router(router)
    return app


app = create_app()
