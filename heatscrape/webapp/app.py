"""FastAPI application factory."""

from contextlib import asynccontextmanager

from fastapi import FastAPI

from ..config import Settings, get_settings
from ..db import SupplierDatabase
from ..scheduler import DistributedScheduler, build_scheduler
from .routes import router


def create_app(
    settings: Settings | None = None,
    db: SupplierDatabase | None = None,
    scheduler: DistributedScheduler | None = None,
    auto_start_scheduler: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()
    database = db or SupplierDatabase(settings.db_path)
    scheduler = scheduler or build_scheduler(settings, database)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Start the scheduler with the app and stop it on shutdown."""
        if auto_start_scheduler:
            scheduler.start()

        yield

        if scheduler.is_running:
            scheduler.stop()

    app = FastAPI(
        title="Heating Oil Price Scraper",
        description="Status and control of the distributed price scheduler",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.db = database
    app.state.scheduler = scheduler

    app.include_router(router)

    return app


def create_default_app() -> FastAPI:
    """App from environment settings, for ``uvicorn --factory``."""
    return create_app()
