from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from ticketdesk.api.error_handling import (
    log_service_error,
    register_exception_handlers,
    service_error_response,
)
from ticketdesk.api.routes import build_routers, client_key
from ticketdesk.config import Settings
from ticketdesk.logging import bind_request_context, get_logger, set_correlation_id
from ticketdesk.service.errors import RateLimitExceededError
from ticketdesk.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

_DEV_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("app_startup", version=__version__)
    yield
    try:
        await app.state.runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def create_app(
    runtime: Optional[Runtime] = None, settings: Optional[Settings] = None
) -> FastAPI:
    """Build the API application around an injected or freshly built runtime.

    Serve it with any ASGI server using the factory form.
    """
    runtime = runtime or Runtime(settings)
    app = FastAPI(title="Ticketdesk Auth", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime

    @app.middleware("http")
    async def enforce_global_rate_limit(request: Request, call_next):
        if request.method == "OPTIONS":
            return await call_next(request)
        # Raised here the error would bypass the exception handlers
        try:
            await runtime.rate_limiter.hit("global", client_key(request))
        except RateLimitExceededError as exc:
            log_service_error(request, exc)
            return service_error_response(exc)
        return await call_next(request)

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        if request.url.path.startswith("/api/"):
            response.headers.setdefault("Cache-Control", "no-store")
        return response

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Tag every log line of a request with its X-Request-ID (generated if absent)."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        bind_request_context(method=request.method, path=request.url.path)
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    # Added last so it wraps everything, including the global 429
    origins: List[str] = runtime.settings.cors_allow_origins or _DEV_ORIGINS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=[
            "X-Request-ID",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
            "Retry-After",
        ],
        max_age=3600,
    )

    register_exception_handlers(app)
    for router in build_routers():
        app.include_router(router)

    @app.get("/api/health")
    async def health() -> Dict[str, Any]:
        return {
            "success": True,
            "data": {
                "status": "ok",
                "version": __version__,
                "rateLimitBackend": "redis" if runtime.cache is not None else "memory",
            },
        }

    return app
