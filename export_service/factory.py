"""Application factory for the export service."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI

from .config import ExportSettings
from .database import create_engine, init_schema
from .download import DownloadServer
from .logging import configure_logging
from .pipeline import ExportPipeline
from .registry import JobRegistry
from .routes import router
from .source import RowSource
from .store import JobStore
from .tasks import ExportScheduler


def create_app(settings: Optional[ExportSettings] = None, logger=None) -> FastAPI:
    """Create and configure the FastAPI application instance."""
    settings = settings or ExportSettings()
    logger = logger or configure_logging(settings.log_level)

    engine = create_engine(settings)
    store = JobStore(engine)
    registry = JobRegistry()
    pipeline = ExportPipeline(
        source=RowSource(engine, batch_size=settings.batch_size),
        store=store,
        registry=registry,
        logger=logger,
        progress_interval=settings.progress_interval,
        high_water_mark=settings.sink_high_water_mark,
    )
    scheduler = ExportScheduler(
        pipeline,
        store,
        logger,
        max_concurrent_jobs=settings.max_concurrent_jobs,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await init_schema(engine)
        interrupted = await store.fail_interrupted()
        if interrupted:
            logger.warning("export_jobs_interrupted", count=interrupted)
        logger.info("export_service_started", export_dir=str(settings.export_dir))
        yield
        await engine.dispose()

    app = FastAPI(
        title=settings.service_name,
        description="Streaming CSV exports with progress, cancellation and resumable downloads",
        version=settings.version,
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.logger = logger
    app.state.job_store = store
    app.state.job_registry = registry
    app.state.export_scheduler = scheduler
    app.state.download_server = DownloadServer(store, chunk_size=settings.download_chunk_size)

    app.include_router(router)

    return app


__all__ = ["create_app"]
