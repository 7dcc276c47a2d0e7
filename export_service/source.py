"""Filtered, forward-only row streaming from the relational store."""

from __future__ import annotations

import operator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, List, Sequence, Tuple

from sqlalchemy import Table, func, select
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine
from sqlalchemy.sql import ColumnElement, Select

from .database import users
from .models import DEFAULT_COLUMNS, ExportFilter

DEFAULT_BATCH_SIZE = 1000

# filter field -> (column, comparison)
FILTER_CLAUSES: dict[str, Tuple[str, Callable[[Any, Any], Any]]] = {
    "country_code": ("country_code", operator.eq),
    "subscription_tier": ("subscription_tier", operator.eq),
    "min_ltv": ("lifetime_value", operator.ge),
}


@dataclass
class ExportQuery:
    """A filter set plus a column projection over the exported table."""

    filters: ExportFilter = field(default_factory=ExportFilter)
    columns: Sequence[str] = field(default_factory=lambda: list(DEFAULT_COLUMNS))
    table: Table = field(default_factory=lambda: users)

    def conditions(self) -> List[ColumnElement[bool]]:
        """One bound-parameter clause per filter that is set."""
        clauses = []
        for name, (column, compare) in FILTER_CLAUSES.items():
            value = getattr(self.filters, name)
            if value is not None:
                clauses.append(compare(self.table.c[column], value))
        return clauses

    def count_statement(self) -> Select:
        return select(func.count()).select_from(self.table).where(*self.conditions())

    def select_statement(self) -> Select:
        projection = [self.table.c[name] for name in self.columns]
        primary_key = list(self.table.primary_key.columns)
        return select(*projection).where(*self.conditions()).order_by(*primary_key)


class SourceConnection:
    """A single checked-out connection used for one export job."""

    def __init__(self, connection: AsyncConnection, batch_size: int) -> None:
        self._connection = connection
        self._batch_size = batch_size

    async def count(self, query: ExportQuery) -> int:
        result = await self._connection.execute(query.count_statement())
        return int(result.scalar_one())

    async def rows(self, query: ExportQuery) -> AsyncIterator[Tuple[Any, ...]]:
        """Yield rows in cursor order, fetching ``batch_size`` rows at a time.

        Closing the generator early closes the server-side cursor and discards
        anything not yet fetched.
        """
        result = await self._connection.stream(
            query.select_statement(),
            execution_options={"yield_per": self._batch_size},
        )
        try:
            async for row in result:
                yield tuple(row)
        finally:
            await result.close()


class RowSource:
    """Hands out one streaming connection per export job."""

    def __init__(
        self,
        engine: AsyncEngine,
        batch_size: int = DEFAULT_BATCH_SIZE,
        isolation_level: str = "REPEATABLE READ",
    ) -> None:
        self._engine = engine
        self.batch_size = batch_size
        self._isolation_level = isolation_level

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[SourceConnection]:
        """Check out a connection for the whole job; released on every exit path."""
        async with self._engine.connect() as connection:
            # Keep the count and the stream on one snapshot where the backend supports it.
            if connection.dialect.name == "postgresql":
                connection = await connection.execution_options(isolation_level=self._isolation_level)
            yield SourceConnection(connection, self.batch_size)


__all__ = ["DEFAULT_BATCH_SIZE", "ExportQuery", "RowSource", "SourceConnection"]
