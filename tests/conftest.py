"""Pytest configuration and fixtures."""

from __future__ import annotations

from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, insert

from export_service import ExportSettings, create_app
from export_service.database import exports, metadata, users
from export_service.logging import configure_logging

SAMPLE_USERS: List[Dict[str, Any]] = [
    {"id": 1, "name": "Ada Lovelace", "email": "ada@example.com", "signup_date": date(2023, 1, 5),
     "country_code": "GB", "subscription_tier": "pro", "lifetime_value": 1200},
    {"id": 2, "name": "Grace Hopper", "email": "grace@example.com", "signup_date": date(2023, 2, 11),
     "country_code": "US", "subscription_tier": "enterprise", "lifetime_value": 5400},
    {"id": 3, "name": "Alan Turing", "email": "alan@example.com", "signup_date": date(2023, 3, 1),
     "country_code": "GB", "subscription_tier": "free", "lifetime_value": 0},
    {"id": 4, "name": "Katherine Johnson", "email": "kj@example.com", "signup_date": date(2023, 3, 20),
     "country_code": "US", "subscription_tier": "pro", "lifetime_value": 800},
    {"id": 5, "name": 'Edsger "EWD" Dijkstra', "email": "ewd@example.com", "signup_date": date(2023, 4, 2),
     "country_code": "NL", "subscription_tier": "pro", "lifetime_value": 650},
    {"id": 6, "name": "Hopper, Grace (alt)", "email": "alt@example.com", "signup_date": date(2023, 5, 9),
     "country_code": "US", "subscription_tier": "free", "lifetime_value": 15},
    {"id": 7, "name": "Line\nBreak", "email": "lb@example.com", "signup_date": None,
     "country_code": "DE", "subscription_tier": "free", "lifetime_value": None},
    {"id": 8, "name": "Barbara Liskov", "email": "barbara@example.com", "signup_date": date(2023, 6, 30),
     "country_code": "US", "subscription_tier": "enterprise", "lifetime_value": 9100},
]


def sync_url(database_path: Path) -> str:
    return f"sqlite:///{database_path}"


def async_url(database_path: Path) -> str:
    return f"sqlite+aiosqlite:///{database_path}"


def seed_database(database_path: Path, rows: Iterable[Dict[str, Any]] = SAMPLE_USERS) -> None:
    """Create the schema and load users through a synchronous engine.

    WAL journaling lets the job store write while an export cursor is open.
    """
    engine = create_engine(sync_url(database_path))
    try:
        with engine.begin() as conn:
            conn.exec_driver_sql("PRAGMA journal_mode=WAL")
        metadata.create_all(engine)
        rows = list(rows)
        if rows:
            with engine.begin() as conn:
                conn.execute(insert(users), rows)
    finally:
        engine.dispose()


def insert_export_row(database_path: Path, **values: Any) -> Dict[str, Any]:
    """Insert an ``exports`` row directly, bypassing the API."""
    row = {
        "status": "pending",
        "filters": {},
        "columns": None,
        "delimiter": ",",
        "quote_char": '"',
        "total_rows": 0,
        "processed_rows": 0,
        "created_at": datetime.now(timezone.utc),
        **values,
    }
    engine = create_engine(sync_url(database_path))
    try:
        with engine.begin() as conn:
            conn.execute(insert(exports).values(**row))
    finally:
        engine.dispose()
    return row


@pytest.fixture
def logger():
    return configure_logging()


@pytest.fixture
def database_path(tmp_path: Path) -> Path:
    path = tmp_path / "exports.db"
    seed_database(path)
    return path


@pytest.fixture
def database_url(database_path: Path) -> str:
    return async_url(database_path)


@pytest.fixture
def insert_export(database_path: Path):
    """Factory inserting ``exports`` rows into the test database."""

    def _insert(**values: Any) -> Dict[str, Any]:
        return insert_export_row(database_path, **values)

    return _insert


@pytest.fixture
def export_dir(tmp_path: Path) -> Path:
    path = tmp_path / "exports"
    path.mkdir()
    return path


@pytest.fixture
def settings(database_url: str, export_dir: Path) -> ExportSettings:
    return ExportSettings(
        database_url=database_url,
        export_dir=export_dir,
        batch_size=3,
        progress_interval=2,
        sink_high_water_mark=128,
        max_concurrent_jobs=2,
        download_chunk_size=256,
    )


@pytest.fixture
def client(settings: ExportSettings, logger):
    """Test client with the lifespan running, so all requests share one event loop."""
    with TestClient(create_app(settings, logger=logger)) as test_client:
        yield test_client
