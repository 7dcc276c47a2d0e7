"""Database schema and engine factory for the export service."""

from __future__ import annotations

from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    Date,
    DateTime,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
)
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from .config import ExportSettings

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("name", String(255), nullable=False),
    Column("email", String(255), nullable=False),
    Column("signup_date", Date),
    Column("country_code", String(2)),
    Column("subscription_tier", String(32)),
    Column("lifetime_value", Numeric(12, 2)),
    Index("ix_users_country_code", "country_code"),
    Index("ix_users_subscription_tier", "subscription_tier"),
)

exports = Table(
    "exports",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("status", String(20), nullable=False, default="pending"),
    Column("filters", JSON, nullable=False, default=dict),
    Column("columns", JSON),
    Column("delimiter", String(1), nullable=False, default=","),
    Column("quote_char", String(1), nullable=False, default='"'),
    Column("file_path", String(1024), nullable=False),
    Column("total_rows", BigInteger, nullable=False, default=0),
    Column("processed_rows", BigInteger, nullable=False, default=0),
    Column("error", Text),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("completed_at", DateTime(timezone=True)),
    Index("ix_exports_status", "status"),
)


def create_engine(settings: ExportSettings) -> AsyncEngine:
    """Create the async engine shared by the row source and the job store."""
    url = make_url(settings.database_url)
    if url.get_backend_name() == "sqlite":
        if url.database in (None, "", ":memory:"):
            return create_async_engine(url)
        return create_async_engine(url, pool_size=settings.db_pool_size, max_overflow=0)
    return create_async_engine(
        url,
        pool_size=settings.db_pool_size,
        max_overflow=0,
        pool_pre_ping=True,
    )


async def init_schema(engine: AsyncEngine) -> None:
    """Create any missing tables."""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)


__all__ = ["metadata", "users", "exports", "create_engine", "init_schema"]
