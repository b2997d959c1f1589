"""Async database access with idempotent upserts."""

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from sqlalchemy import Table, text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlalchemy.sql import Executable

from src.storage.tables import NATURAL_KEYS, metadata

Query = Union[str, Executable]


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo on DateTime columns; treat stored values as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class Database:
    """
    Thin async wrapper over a SQLAlchemy engine.

    Exposes the persistence contract used by the pipeline stages:
    `upsert(table, rows, conflict_key)`, `get(query, params)` and
    `all(query, params)`. A conflict on the natural key updates the
    existing row instead of failing.
    """

    def __init__(self, url: str = "sqlite+aiosqlite:///:memory:", echo: bool = False):
        self.url = url
        parsed = make_url(url)
        engine_kwargs: Dict[str, Any] = {"echo": echo}

        if parsed.get_backend_name() == "sqlite":
            database = parsed.database or ""
            if database in ("", ":memory:"):
                # Single shared connection so every session sees the same in-memory DB
                engine_kwargs["poolclass"] = StaticPool
                engine_kwargs["connect_args"] = {"check_same_thread": False}
            else:
                Path(database).parent.mkdir(parents=True, exist_ok=True)

        self.engine = create_async_engine(url, **engine_kwargs)
        self.session_factory = async_sessionmaker(self.engine, expire_on_commit=False)

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    async def create_all(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    async def close(self) -> None:
        await self.engine.dispose()

    async def __aenter__(self) -> "Database":
        await self.create_all()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def _table(self, table: Union[str, Table]) -> Table:
        if isinstance(table, Table):
            return table
        try:
            return metadata.tables[table]
        except KeyError:
            raise ValueError(f"Unknown table: {table}") from None

    def _insert(self, table: Table):
        if self.dialect_name == "postgresql":
            from sqlalchemy.dialects.postgresql import insert as _pg_insert
            return _pg_insert(table)
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert
        return _sqlite_insert(table)

    async def _upsert_row(
        self,
        session: AsyncSession,
        table: Table,
        row: Mapping[str, Any],
        keys: Sequence[str],
    ) -> None:
        stmt = self._insert(table).values(**row)
        # Only columns present in the row are overwritten, so flags such as
        # is_enriched survive a later sync that does not mention them
        update_columns = [col for col in row if col not in keys]
        if update_columns:
            stmt = stmt.on_conflict_do_update(
                index_elements=list(keys),
                set_={col: stmt.excluded[col] for col in update_columns},
            )
        else:
            stmt = stmt.on_conflict_do_nothing(index_elements=list(keys))
        await session.execute(stmt)

    async def upsert(
        self,
        table: Union[str, Table],
        rows: Iterable[Mapping[str, Any]],
        conflict_key: Optional[Union[str, Sequence[str]]] = None,
    ) -> int:
        """
        Insert rows, updating existing rows that collide on `conflict_key`.

        Args:
            table: Table object or name
            rows: Column/value mappings
            conflict_key: Column name(s) forming the natural key; defaults
                to the table's registered natural key

        Returns:
            Number of rows written
        """
        target = self._table(table)
        if conflict_key is None:
            keys: Sequence[str] = NATURAL_KEYS[target.name]
        elif isinstance(conflict_key, str):
            keys = (conflict_key,)
        else:
            keys = tuple(conflict_key)

        count = 0
        async with self.session_factory() as session:
            async with session.begin():
                for row in rows:
                    await self._upsert_row(session, target, row, keys)
                    count += 1
        return count

    async def get(self, query: Query, params: Optional[Mapping[str, Any]] = None) -> Optional[Dict[str, Any]]:
        """Return the first row of `query` as a dict, or None."""
        rows = await self.all(query, params)
        return rows[0] if rows else None

    async def all(self, query: Query, params: Optional[Mapping[str, Any]] = None) -> List[Dict[str, Any]]:
        """Return every row of `query` as a list of dicts."""
        statement = text(query) if isinstance(query, str) else query
        async with self.session_factory() as session:
            result = await session.execute(statement, dict(params or {}))
            return [dict(row._mapping) for row in result]

    async def execute(self, statement: Query, params: Optional[Mapping[str, Any]] = None) -> int:
        """Execute a write statement in its own transaction; returns rowcount."""
        statement = text(statement) if isinstance(statement, str) else statement
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(statement, dict(params or {}))
                return result.rowcount or 0
