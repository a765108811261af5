"""
TenantLens HTTP API

Run with:
    uvicorn api:app
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from tenantlens import __version__
from tenantlens.graph import GraphAPIError, GraphAuthError
from tenantlens.runtime import TenantLensRuntime
from tenantlens.utils import configure_logging
from . import cache, findings

logger = logging.getLogger(__name__)


def create_app(runtime: Optional[TenantLensRuntime] = None) -> FastAPI:
    """
    Build the FastAPI app.

    Args:
        runtime: Pre-built runtime (tests). Built from settings when omitted.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        active = runtime or TenantLensRuntime()
        if runtime is None:
            configure_logging(active.settings.LOG_LEVEL)
        logger.info("Starting TenantLens API...")
        await active.open()
        app.state.runtime = active
        try:
            yield
        finally:
            await active.close()
            logger.info("TenantLens API stopped")

    app = FastAPI(
        title="TenantLens",
        description="Directory tenant health: cached directory reads and configuration findings",
        version=__version__,
        lifespan=lifespan,
    )

    @app.exception_handler(GraphAPIError)
    async def graph_error_handler(request: Request, exc: GraphAPIError):
        logger.error(f"Directory API error on {request.url.path}: {exc}")
        detail = "Directory API authorization failed" if isinstance(exc, GraphAuthError) else str(exc)
        return JSONResponse(
            status_code=502,
            content={"detail": detail, "upstream_status": exc.status_code},
        )

    @app.get("/api/health")
    async def health():
        """Service health including database status."""
        active = app.state.runtime
        db_connected = await asyncio.to_thread(active.db.check_connection)
        return {
            "status": "healthy",
            "version": __version__,
            "environment": active.settings.ENVIRONMENT,
            "database": "connected" if db_connected else "disconnected",
            "orchestrator": active.orchestrator.state.value,
        }

    app.include_router(findings.router)
    app.include_router(cache.router)
    return app


app = create_app()

__all__ = ["app", "create_app"]
