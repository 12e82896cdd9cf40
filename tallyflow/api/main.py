"""FastAPI application entry point for tallyflow."""

from fastapi import FastAPI

from tallyflow import __version__
from tallyflow.api.routes.health import router as health_router
from tallyflow.api.routes.metrics import router as metrics_router
from tallyflow.api.routes.tallies import router as tallies_router


def create_app(lifespan=None) -> FastAPI:
    """Build the API application.

    Args:
        lifespan: Optional lifespan context (the pipeline bootstrap passes
            one that runs consumers alongside the API).
    """
    application = FastAPI(
        title="tallyflow",
        description="Vote tallying pipeline: live tallies and operational metrics",
        version=__version__,
        lifespan=lifespan,
    )

    application.include_router(health_router)
    application.include_router(tallies_router)
    application.include_router(metrics_router)
    return application


app = create_app()
