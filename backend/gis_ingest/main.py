"""FastAPI application entrypoint and configuration.

This module provides the application factory that configures logging and
CORS middleware, includes the conversion, job, upload and version routers,
and exposes a health check endpoint for monitoring.

Example:
    The application can be run with uvicorn:
        $ uvicorn gis_ingest.main:app --reload

    Workers run as separate processes:
        $ gis-worker --log-level DEBUG
"""

import fastapi
from fastapi.middleware import cors

from gis_ingest.api import convert, jobs, uploads, versions
from gis_ingest.core import config, logging_setup


def create_app() -> fastapi.FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application instance ready for ASGI server.
    """
    settings = config.get_settings()
    logging_setup.configure_logging(settings.log_level)
    app = fastapi.FastAPI(title="GIS Ingest", version="0.1.0")

    app.include_router(convert.router)
    app.include_router(jobs.router)
    app.include_router(uploads.router)
    app.include_router(versions.router)

    app.add_middleware(
        cors.CORSMiddleware,  # type: ignore[arg-type]
        allow_origins=settings.allow_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health() -> dict[str, str]:  # type: ignore[misc]
        """Health check endpoint for monitoring and load balancers."""
        return {"status": "ok"}

    return app


app = create_app()
