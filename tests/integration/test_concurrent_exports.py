"""Concurrent exports sharing one SQLite-backed engine."""

import asyncio
from datetime import datetime, timezone

import pytest
from sqlalchemy.ext.asyncio import create_async_engine

from export_service.config import ExportSettings
from export_service.database import create_engine
from export_service.models import ExportFilter, ExportJob, ExportStatus, OutcomeKind
from export_service.pipeline import ExportPipeline
from export_service.registry import JobRegistry
from export_service.sink import FileSink
from export_service.source import RowSource
from export_service.store import JobStore
from export_service.tasks import ExportScheduler


class CancellingSink(FileSink):
    """FileSink that cancels its job through the registry after a number of writes."""

    def __init__(self, path, registry, job_id, after_writes, **kwargs):
        super().__init__(path, **kwargs)
        self._registry = registry
        self._job_id = job_id
        self._after_writes = after_writes
        self._writes = 0

    def write(self, chunk):
        self._writes += 1
        if self._writes == self._after_writes:
            self._registry.cancel(self._job_id)
        return super().write(chunk)


def make_job(export_dir, job_id, **values):
    return ExportJob(
        id=job_id,
        file_path=str(export_dir / f"export_{job_id}.csv"),
        created_at=datetime.now(timezone.utc),
        **values,
    )


@pytest.mark.asyncio
async def test_cancelling_one_export_leaves_others_untouched(database_url, export_dir, logger):
    engine = create_async_engine(database_url)
    registry = JobRegistry()
    store = JobStore(engine)

    def sink_factory(path, **kwargs):
        if path.name.startswith("export_doomed"):
            return CancellingSink(path, registry, "doomed", after_writes=3, **kwargs)
        return FileSink(path, **kwargs)

    pipeline = ExportPipeline(
        source=RowSource(engine, batch_size=2),
        store=store,
        registry=registry,
        logger=logger,
        progress_interval=100,
        high_water_mark=16,
        sink_factory=sink_factory,
    )
    scheduler = ExportScheduler(pipeline, store, logger, max_concurrent_jobs=3)

    jobs = [
        make_job(export_dir, "everyone"),
        make_job(export_dir, "doomed"),
        make_job(export_dir, "american", filters=ExportFilter(country_code="US"), columns=["id"]),
    ]
    try:
        for job in jobs:
            await store.create_job(job)
        outcomes = await asyncio.gather(*(scheduler.process_export_job(job.id) for job in jobs))
        stored = {job.id: await store.get_job(job.id) for job in jobs}
    finally:
        await engine.dispose()

    everyone, doomed, american = outcomes
    assert everyone.kind is OutcomeKind.COMPLETED
    assert everyone.rows_written == 8
    assert doomed.kind is OutcomeKind.CANCELLED
    assert american.kind is OutcomeKind.COMPLETED
    assert american.rows_written == 4

    assert stored["everyone"].status == ExportStatus.COMPLETED
    assert stored["doomed"].status == ExportStatus.CANCELLED
    assert stored["american"].processed_rows == stored["american"].total_rows == 4

    assert not (export_dir / "export_doomed.csv").exists()
    assert not (export_dir / "export_doomed.csv.part").exists()
    assert (export_dir / "export_american.csv").read_bytes() == b"id\r\n2\r\n4\r\n6\r\n8\r\n"
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_scheduler_skips_closed_and_missing_jobs(database_url, export_dir, logger):
    engine = create_async_engine(database_url)
    store = JobStore(engine)
    pipeline = ExportPipeline(RowSource(engine), store, JobRegistry(), logger)
    scheduler = ExportScheduler(pipeline, store, logger, max_concurrent_jobs=1)
    try:
        await store.create_job(make_job(export_dir, "closed"))
        await store.mark_cancelled("closed")

        assert await scheduler.process_export_job("closed") is None
        assert await scheduler.process_export_job("missing") is None
        closed = await store.get_job("closed")
    finally:
        await engine.dispose()

    assert closed.status == ExportStatus.CANCELLED
    assert not (export_dir / "export_closed.csv").exists()


class GatedSink(FileSink):
    """FileSink whose ``open`` waits until the test releases the gate."""

    def __init__(self, path, gate, opened, **kwargs):
        super().__init__(path, **kwargs)
        self._gate = gate
        self._opened = opened

    async def open(self):
        self._opened.append(self.path.name)
        await self._gate.wait()
        await super().open()


@pytest.mark.asyncio
async def test_scheduler_runs_one_job_per_slot(database_url, export_dir, logger):
    engine = create_async_engine(database_url)
    registry = JobRegistry()
    store = JobStore(engine)
    gate = asyncio.Event()
    opened = []

    def sink_factory(path, **kwargs):
        return GatedSink(path, gate, opened, **kwargs)

    pipeline = ExportPipeline(RowSource(engine), store, registry, logger, sink_factory=sink_factory)
    scheduler = ExportScheduler(pipeline, store, logger, max_concurrent_jobs=1)
    job_ids = ["first", "second", "third"]
    try:
        for job_id in job_ids:
            await store.create_job(make_job(export_dir, job_id, columns=["id"]))

        runs = [asyncio.create_task(scheduler.process_export_job(job_id)) for job_id in job_ids]
        for _ in range(200):
            if opened:
                break
            await asyncio.sleep(0.01)
        # Give waiting jobs every chance to start if the ceiling were not enforced.
        await asyncio.sleep(0.2)

        statuses = [(await store.get_job(job_id)).status for job_id in job_ids]
        running = len(registry)
        blocked_opens = list(opened)

        gate.set()
        outcomes = await asyncio.wait_for(asyncio.gather(*runs), timeout=30)
        final = [(await store.get_job(job_id)).status for job_id in job_ids]
    finally:
        gate.set()
        await engine.dispose()

    assert blocked_opens == ["export_first.csv.part"]
    assert running == 1
    assert statuses == [ExportStatus.PROCESSING, ExportStatus.PENDING, ExportStatus.PENDING]
    assert [outcome.kind for outcome in outcomes] == [OutcomeKind.COMPLETED] * 3
    assert final == [ExportStatus.COMPLETED] * 3
    assert len(opened) == 3


def test_scheduler_requires_a_ceiling(logger):
    with pytest.raises(ValueError):
        ExportScheduler(pipeline=None, store=None, logger=logger, max_concurrent_jobs=0)


@pytest.mark.asyncio
async def test_ceiling_many_jobs_share_a_small_pool(database_url, export_dir, logger):
    settings = ExportSettings(
        database_url=database_url,
        export_dir=export_dir,
        db_pool_size=3,
        max_concurrent_jobs=2,
        batch_size=2,
    )
    engine = create_engine(settings)
    registry = JobRegistry()
    store = JobStore(engine)
    pipeline = ExportPipeline(
        source=RowSource(engine, batch_size=settings.batch_size),
        store=store,
        registry=registry,
        logger=logger,
        progress_interval=2,
    )
    scheduler = ExportScheduler(pipeline, store, logger, max_concurrent_jobs=settings.max_concurrent_jobs)

    jobs = [make_job(export_dir, "left"), make_job(export_dir, "right", columns=["id", "email"])]
    try:
        assert engine.pool.size() == 3
        for job in jobs:
            await store.create_job(job)
        outcomes = await asyncio.wait_for(
            asyncio.gather(*(scheduler.process_export_job(job.id) for job in jobs)),
            timeout=60,
        )
        stored = [await store.get_job(job.id) for job in jobs]
    finally:
        await engine.dispose()

    assert [outcome.kind for outcome in outcomes] == [OutcomeKind.COMPLETED, OutcomeKind.COMPLETED]
    assert [outcome.rows_written for outcome in outcomes] == [8, 8]
    assert [job.status for job in stored] == [ExportStatus.COMPLETED, ExportStatus.COMPLETED]
    assert all(job.error is None for job in stored)
