"""FastAPI application entry point."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from readermesh.config import Settings, settings as default_settings
from readermesh.errors import JobNotFound, MissingCredentials, ProviderUnavailable
from readermesh.logging_config import configure_logging
from readermesh.services.providers import ProviderFactory
from readermesh.storage.status_store import StatusStore, open_status_store
from readermesh.workers.dispatch import Dispatcher

SERVICE_NAME = "ReaderMesh API"
VERSION = "1.0.0"

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------

async def job_not_found_handler(request: Request, exc: JobNotFound) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": "Job not found"})


async def provider_unavailable_handler(request: Request, exc: ProviderUnavailable) -> JSONResponse:
    logger.warning("provider_unavailable", path=request.url.path, missing=exc.missing, error=str(exc))
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": str(exc), "missing": exc.missing},
    )


async def missing_credentials_handler(request: Request, exc: MissingCredentials) -> JSONResponse:
    logger.warning("missing_credentials", path=request.url.path, provider=exc.provider)
    return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"detail": str(exc)})


# ---------------------------------------------------------------------------
# App setup
# ---------------------------------------------------------------------------

def create_app(
    settings: Optional[Settings] = None,
    store: Optional[StatusStore] = None,
    dispatcher: Optional[Dispatcher] = None,
    provider_factory: Optional[ProviderFactory] = None,
) -> FastAPI:
    """Build the API. Passing ``store``/``dispatcher`` skips the Redis connection."""
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_store = store is None
        app.state.settings = settings
        app.state.store = store if store is not None else open_status_store(settings)
        app.state.dispatcher = dispatcher or Dispatcher.for_store(app.state.store, settings)
        app.state.dispatcher.factory = app.state.dispatcher.factory or provider_factory
        app.state.provider_factory = provider_factory
        logger.info("api_started", store=type(app.state.store).__name__)
        try:
            yield
        finally:
            if owns_store:
                app.state.store.close()
            logger.info("api_stopped")

    app = FastAPI(
        title=SERVICE_NAME,
        description=(
            "Reading-assistant backend: explain terms and summarize pages through a "
            "prioritised job queue, routed across several LLM providers with fallback."
        ),
        version=VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # CORS - allow all in development
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Provider", "X-Model"],
    )

    app.add_exception_handler(JobNotFound, job_not_found_handler)
    app.add_exception_handler(ProviderUnavailable, provider_unavailable_handler)
    app.add_exception_handler(MissingCredentials, missing_credentials_handler)

    # -----------------------------------------------------------------------
    # Mount routers
    # -----------------------------------------------------------------------

    from readermesh.routers.admin import router as admin_router
    from readermesh.routers.jobs import router as jobs_router
    from readermesh.routers.providers import router as providers_router
    from readermesh.routers.submit import router as submit_router

    app.include_router(submit_router)
    app.include_router(jobs_router)
    app.include_router(providers_router)
    app.include_router(admin_router)

    @app.get("/health", tags=["system"])
    async def health_check(request: Request):
        """Health check endpoint."""
        return {
            "status": "healthy",
            "service": SERVICE_NAME,
            "version": VERSION,
            "store": request.app.state.store.backend,
        }

    return app


configure_logging(default_settings)
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("readermesh.main:app", host=default_settings.api_host, port=default_settings.api_port)
