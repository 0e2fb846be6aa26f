"""FastAPI main application entry point."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from permgate.core.config import settings
from permgate.core.exceptions import (
    ConfigurationError,
    PermGateError,
    PermissionDeniedError,
    PermissionNotFoundError,
    RoleNotFoundError,
    StoreError,
)
from permgate.core.middleware import setup_middleware
from permgate.api.admin import router as admin_router
from permgate.services.gate import PermissionGate

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("permgate")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logger.info("Starting %s", settings.APP_NAME)
    if getattr(app.state, "gate", None) is None:
        from permgate.db.session import SessionLocal, init_db

        init_db()
        gate = PermissionGate.from_settings(settings, SessionLocal)
        # a bad hierarchy refuses to start rather than serving without one
        gate.initialize()
        app.state.gate = gate
    logger.info("Permission gate ready (strategy=%s)", app.state.gate.config.permissions.permission_strategy.value)

    yield

    logger.info("Shutting down %s", settings.APP_NAME)


def create_app(gate: Optional[PermissionGate] = None) -> FastAPI:
    """Build the application; a ready gate may be injected (tests, embedding apps)."""
    app = FastAPI(
        title=f"{settings.APP_NAME} API",
        description="Route and permission authorization engine",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.gate = gate

    setup_middleware(app)

    @app.exception_handler(ConfigurationError)
    async def configuration_error_handler(request: Request, exc: ConfigurationError):
        return JSONResponse(status_code=400, content={"detail": exc.message, "errors": exc.errors})

    @app.exception_handler(StoreError)
    async def store_error_handler(request: Request, exc: StoreError):
        logger.error("Store failure on %s: %s", request.url.path, exc.message)
        return JSONResponse(status_code=503, content={"detail": "Permission store unavailable"})

    @app.exception_handler(PermissionDeniedError)
    async def permission_denied_handler(request: Request, exc: PermissionDeniedError):
        return JSONResponse(status_code=403, content={"detail": exc.message})

    @app.exception_handler(RoleNotFoundError)
    @app.exception_handler(PermissionNotFoundError)
    async def not_found_handler(request: Request, exc: PermGateError):
        return JSONResponse(status_code=404, content={"detail": exc.message})

    @app.exception_handler(PermGateError)
    async def permgate_exception_handler(request: Request, exc: PermGateError):
        return JSONResponse(status_code=400, content={"detail": exc.message})

    app.include_router(admin_router, prefix="/api")

    @app.get("/")
    async def root():
        return {
            "name": settings.APP_NAME,
            "version": "0.1.0",
            "docs": "/docs",
        }

    @app.get("/api/health")
    async def health():
        """Quick health check endpoint."""
        return {"status": "ok"}

    return app


app = create_app()
