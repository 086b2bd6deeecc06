"""
FastAPI application entry point for the drip·mate backend.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from dripmate import __version__
from dripmate.admin_routes import router as admin_router
from dripmate.config import Settings, get_settings
from dripmate.db import DbClient
from dripmate.dependencies import build_db_client, build_mailer, build_vision_client
from dripmate.errors import ApiError, error_response
from dripmate.mailer import Mailer
from dripmate.rate_limit import build_limiter
from dripmate.routes import router

logger = logging.getLogger(__name__)

_UNSET = object()


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return error_response(exc.code, exc.status_code)

    # SlowAPIMiddleware calls this handler without awaiting it, so it stays sync.
    def handle_rate_limit_exceeded(request: Request, exc: RateLimitExceeded):
        logger.warning("Rate limit %s exceeded on %s", exc.detail, request.url.path)
        settings = request.app.state.settings
        extra = {}
        if request.url.path == f"{settings.api_prefix}/auth/validate":
            extra["valid"] = False
        return error_response("rate_limited", 429, **extra)

    app.add_exception_handler(RateLimitExceeded, handle_rate_limit_exceeded)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        logger.info("Invalid input on %s: %s", request.url.path, exc.errors())
        return error_response("invalid_input", 400)

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return error_response("not_found", 404)
        code = "invalid_input" if exc.status_code < 500 else "internal"
        return error_response(code, exc.status_code)

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return error_response("internal", 500)


def create_app(
    settings: Optional[Settings] = None,
    *,
    db: Optional[DbClient] = None,
    mailer: Optional[Mailer] = None,
    vision=_UNSET,
    limiter: Optional[Limiter] = None,
) -> FastAPI:
    """
    Build the application. Clients not passed in are constructed from
    settings; the database handle is disposed when the app shuts down.
    """
    settings = settings or get_settings()
    logging.basicConfig(level=settings.log_level.upper())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        app.state.db.close()

    app = FastAPI(title="drip·mate Backend", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db if db is not None else build_db_client(settings)
    app.state.mailer = mailer if mailer is not None else build_mailer(settings)
    app.state.vision = build_vision_client(settings) if vision is _UNSET else vision
    app.state.limiter = limiter if limiter is not None else build_limiter(settings)

    app.add_middleware(SlowAPIMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Device-ID", "X-Admin-Password"],
    )
    _register_exception_handlers(app)

    app.include_router(router, prefix=settings.api_prefix)
    app.include_router(admin_router, prefix=f"{settings.api_prefix}/admin")
    return app


app = create_app()
