"""
Stakehouse Main Application Entry Point
FastAPI service exposing the wager settlement engine.
"""

import sys
from contextlib import asynccontextmanager
from pathlib import Path

# Add parent directory to path so imports work when running directly
if __name__ == "__main__":
    sys.path.insert(0, str(Path(__file__).parent.parent))

import uvicorn
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware

from stakehouse.config import settings
from stakehouse.core.engine import SettlementEngine
from stakehouse.core.exceptions import (
    ConcurrencyConflict,
    GameInactive,
    HandAlreadySettled,
    HandNotFound,
    InsufficientFunds,
    InvalidHandAction,
    InvalidStake,
    PersistenceFailure,
    UnknownAccount,
    UnknownGame,
    WagerError,
)
from stakehouse.core.logger import get_logger, init_logging
from stakehouse.core.scheduler import EngineScheduler
from stakehouse.routers import api

# Initialize logging first
init_logging(
    level=settings.logging.level,
    log_to_file=settings.logging.log_to_file,
    formatter=settings.logging.formatter,
    log_file_path=settings.paths.get_log_path(),
)
logger = get_logger("main")

ERROR_STATUS = {
    UnknownGame: 404,
    UnknownAccount: 404,
    HandNotFound: 404,
    GameInactive: 400,
    InvalidStake: 400,
    InsufficientFunds: 400,
    InvalidHandAction: 400,
    HandAlreadySettled: 400,
    ConcurrencyConflict: 409,
    PersistenceFailure: 503,
}


def status_for(exc: WagerError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS:
            return ERROR_STATUS[cls]
    return 500


# ==================== Security Headers Middleware ====================


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        # JSON only, nothing to load
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
        return response


# ==================== Application Setup ====================


def create_app(engine: SettlementEngine = None, start_scheduler: bool = True) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Without `engine` one is built from settings at startup and closed at
    shutdown. A supplied engine is used as is and left open.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "engine", None) is None:
            app.state.engine = SettlementEngine()
            app.state.owns_engine = True
        app.state.engine.startup()

        scheduler = EngineScheduler(app.state.engine) if start_scheduler else None
        if scheduler:
            scheduler.start()

        logger.info(f"Application '{settings.server.name}' started")
        yield

        if scheduler:
            scheduler.shutdown()
        if getattr(app.state, "owns_engine", False):
            app.state.engine.close()
            app.state.engine = None

    app = FastAPI(
        title=settings.server.name,
        docs_url="/docs" if settings.server.debug else None,
        redoc_url=None,
        lifespan=lifespan,
    )
    app.state.engine = engine
    app.state.owns_engine = False

    # Add slowapi rate limiter
    app.state.limiter = api.limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    @app.exception_handler(WagerError)
    async def wager_error_handler(request: Request, exc: WagerError):
        status_code = status_for(exc)
        if status_code >= 500:
            logger.error(f"Wager failed: {exc.message}", extra={"error": exc.code})
        return JSONResponse(status_code=status_code, content=jsonable_encoder(exc.to_dict()))

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Handle unhandled exceptions gracefully."""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_error",
                "detail": str(exc) if settings.server.debug else None,
            },
        )

    app.add_middleware(SecurityHeadersMiddleware)

    # CORS middleware (for development)
    if settings.server.debug:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.include_router(api.router, prefix="/api")

    @app.get("/health")
    async def health(request: Request):
        engine = request.app.state.engine
        games = await run_in_threadpool(engine.catalog.list_games)
        return {"status": "ok", "active_games": len(games)}

    return app


app = create_app()

logger.info(f"Debug mode: {settings.server.debug}")


# ==================== Main Entry Point ====================

if __name__ == "__main__":
    logger.info(f"Starting server on {settings.server.host}:{settings.server.port}")
    uvicorn.run(
        "stakehouse.main:app",
        host=settings.server.host,
        port=settings.server.port,
        reload=settings.server.debug,
    )
