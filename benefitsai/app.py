from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from benefitsai.api.dependencies import get_runtime
from benefitsai.api.error_handling import register_exception_handlers
from benefitsai.api.routes import router
from benefitsai.config import Settings, get_settings
from benefitsai.logging import (
    bind_request_context,
    clear_request_context,
    get_logger,
    set_correlation_id,
)
from benefitsai.service.runtime import Runtime
from benefitsai.service.session import csrf_tokens_match

logger = get_logger(__name__)

__version__ = "0.1.0"

CSRF_HEADER = "X-CSRF-Token"
_CSRF_SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    try:
        await app.state.runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def _allowed_origins(settings: Settings) -> List[str]:
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    # Local dev hosts only; no wildcard while credentials are allowed
    return [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


async def health(runtime: Runtime = Depends(get_runtime)):
    checks: Dict[str, Any] = await runtime.health()
    healthy = all(value == "ok" for value in checks.values())
    body = {"status": "ok" if healthy else "degraded", "version": __version__, "checks": checks}
    return JSONResponse(status_code=200 if healthy else 503, content=body)


def create_app(
    settings: Optional[Settings] = None, *, runtime: Optional[Runtime] = None
) -> FastAPI:
    """Build the application and its runtime context.

    The runtime is created eagerly so misconfiguration (missing Redis outside
    test/dev fallback, missing schema) fails at startup rather than on the
    first request.
    """
    settings = settings or (runtime.settings if runtime else get_settings())
    app = FastAPI(title="Benefits AI Assistant", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime or Runtime(settings)

    @app.middleware("http")
    async def enforce_csrf_token(request: Request, call_next):
        # Double-submit check for state-changing requests authenticated by cookie
        if not settings.csrf_protection or request.method.upper() in _CSRF_SAFE_METHODS:
            return await call_next(request)
        if request.headers.get("Authorization"):
            return await call_next(request)
        cookies = request.cookies
        if not (
            cookies.get(settings.session_cookie_name) or cookies.get(settings.refresh_cookie_name)
        ):
            return await call_next(request)
        if not csrf_tokens_match(
            cookies.get(settings.csrf_cookie_name), request.headers.get(CSRF_HEADER)
        ):
            logger.warning("csrf_rejected", path=request.url.path, method=request.method)
            return JSONResponse(
                status_code=403, content={"error": "missing or invalid CSRF token"}
            )
        return await call_next(request)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(settings),
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID", CSRF_HEADER],
        expose_headers=[
            "X-Request-ID",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
            "Retry-After",
        ],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        if request.url.path.startswith("/auth/") or request.url.path == "/healthz":
            response.headers.setdefault("Cache-Control", "no-store")
        if settings.is_production:
            response.headers.setdefault(
                "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
            )
        return response

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        clear_request_context()
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        bind_request_context(method=request.method, path=request.url.path)
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    register_exception_handlers(app, sign_in_path=settings.sign_in_path)
    app.add_api_route("/healthz", health, methods=["GET"])
    app.include_router(router)
    return app
