"""
SQLite record store for the memory engine.

This module is the single source of truth for memory records:
- One ``memories`` table keyed by the string memory id
- WAL journal with synchronous=FULL, so a commit is on disk before we return
- Streamed iteration for index rebuilds (one SELECT, one snapshot)
"""

import json
import logging
import sqlite3
from datetime import datetime
from typing import AsyncIterator, Dict, Iterable, List, Optional

from sqlalchemy import Column, DateTime, String, Text, delete, event, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

from recall.config import extract_sqlite_file_path
from recall.errors import MemoryNotFoundError, StorageError
from recall.models import DEFAULT_KIND, MemoryRecord, utc_now_naive

logger = logging.getLogger(__name__)

Base = declarative_base()

_SQLITE_ADAPTERS_REGISTERED = False
_GET_MANY_BATCH = 500


def _register_sqlite_adapters() -> None:
    """
    Register explicit sqlite adapters for Python datetime objects.

    Python 3.12+ deprecates sqlite3's implicit default datetime adapter.
    """
    global _SQLITE_ADAPTERS_REGISTERED
    if _SQLITE_ADAPTERS_REGISTERED:
        return
    sqlite3.register_adapter(datetime, lambda value: value.isoformat(sep=" "))
    _SQLITE_ADAPTERS_REGISTERED = True


_register_sqlite_adapters()


class MemoryRow(Base):
    """Persisted form of a MemoryRecord."""

    __tablename__ = "memories"

    id = Column(String(64), primary_key=True)
    content = Column(Text, nullable=False)
    kind = Column(String(64), nullable=False, default=DEFAULT_KIND)
    tags = Column(Text, nullable=False, default="[]")  # JSON list
    embedding = Column(Text, nullable=True)  # JSON list, semantic strategy only
    created_at = Column(DateTime, nullable=False, default=utc_now_naive, index=True)
    updated_at = Column(DateTime, nullable=False, default=utc_now_naive)


def _set_sqlite_pragmas(dbapi_connection, _connection_record) -> None:
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=FULL")
    finally:
        cursor.close()


class SQLiteRecordStore:
    """
    Async key -> record storage.

    Core operations:
    - put: insert a new record (duplicate ids are rejected)
    - get / get_many: primary-key lookups
    - delete: remove one record
    - iterate: lazy, ordered scan used to rebuild the index
    """

    def __init__(self, database_url: str):
        """
        Initialize the store.

        Args:
            database_url: SQLAlchemy async URL, e.g.
                         "sqlite+aiosqlite:///memory.db"
        """
        self.database_url = database_url
        self.path = extract_sqlite_file_path(database_url)
        self.existed_before_open = self.path is None or self.path.exists()

        if self.path is None:
            self.engine = create_async_engine(
                database_url,
                echo=False,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
            )
        else:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.engine = create_async_engine(database_url, echo=False)
        event.listen(self.engine.sync_engine, "connect", _set_sqlite_pragmas)

        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def init(self) -> None:
        """Create tables if they don't exist."""
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except SQLAlchemyError as exc:
            raise StorageError(f"failed to open record store: {exc}") from exc

    async def close(self) -> None:
        """Close the database connection."""
        await self.engine.dispose()

    @staticmethod
    def _to_record(row: MemoryRow) -> MemoryRecord:
        embedding = json.loads(row.embedding) if row.embedding else None
        return MemoryRecord(
            id=row.id,
            content=row.content,
            kind=row.kind or DEFAULT_KIND,
            tags=list(json.loads(row.tags or "[]")),
            embedding=embedding,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    @staticmethod
    def _to_row(record: MemoryRecord) -> MemoryRow:
        now = utc_now_naive()
        embedding = None
        if record.embedding is not None:
            embedding = json.dumps(record.embedding, separators=(",", ":"))
        return MemoryRow(
            id=record.id,
            content=record.content,
            kind=record.kind,
            tags=json.dumps(list(record.tags), ensure_ascii=False),
            embedding=embedding,
            created_at=record.created_at or now,
            updated_at=record.updated_at or record.created_at or now,
        )

    async def put(self, record: MemoryRecord) -> None:
        """Write a new record. Visible to readers only once committed."""
        try:
            async with self.async_session() as session:
                async with session.begin():
                    session.add(self._to_row(record))
        except IntegrityError as exc:
            raise StorageError(f"memory id '{record.id}' already exists") from exc
        except SQLAlchemyError as exc:
            raise StorageError(f"failed to save memory '{record.id}': {exc}") from exc

    async def get(self, memory_id: str) -> MemoryRecord:
        try:
            async with self.async_session() as session:
                row = await session.get(MemoryRow, memory_id)
        except SQLAlchemyError as exc:
            raise StorageError(f"failed to read memory '{memory_id}': {exc}") from exc
        if row is None:
            raise MemoryNotFoundError(memory_id)
        return self._to_record(row)

    async def get_many(self, memory_ids: Iterable[str]) -> Dict[str, MemoryRecord]:
        """Fetch several records at once. Unknown ids are simply absent."""
        wanted = list(dict.fromkeys(memory_ids))
        found: Dict[str, MemoryRecord] = {}
        if not wanted:
            return found
        try:
            async with self.async_session() as session:
                for start in range(0, len(wanted), _GET_MANY_BATCH):
                    batch = wanted[start:start + _GET_MANY_BATCH]
                    result = await session.execute(
                        select(MemoryRow).where(MemoryRow.id.in_(batch))
                    )
                    for row in result.scalars():
                        found[row.id] = self._to_record(row)
        except SQLAlchemyError as exc:
            raise StorageError(f"failed to read memories: {exc}") from exc
        return found

    async def delete(self, memory_id: str) -> None:
        try:
            async with self.async_session() as session:
                async with session.begin():
                    result = await session.execute(
                        delete(MemoryRow).where(MemoryRow.id == memory_id)
                    )
        except SQLAlchemyError as exc:
            raise StorageError(f"failed to delete memory '{memory_id}': {exc}") from exc
        if result.rowcount == 0:
            raise MemoryNotFoundError(memory_id)

    async def iterate(self) -> AsyncIterator[MemoryRecord]:
        """
        Yield every record ordered by (created_at, id).

        Rows come from a single streamed SELECT. Under WAL that statement
        reads one snapshot, so records committed after iteration starts are
        not observed.
        """
        query = select(MemoryRow).order_by(MemoryRow.created_at.asc(), MemoryRow.id.asc())
        try:
            async with self.async_session() as session:
                result = await session.stream_scalars(query)
                async for row in result:
                    yield self._to_record(row)
        except SQLAlchemyError as exc:
            raise StorageError(f"failed to scan memories: {exc}") from exc

    async def ids(self) -> List[str]:
        try:
            async with self.async_session() as session:
                result = await session.execute(select(MemoryRow.id))
                return [str(memory_id) for (memory_id,) in result.all()]
        except SQLAlchemyError as exc:
            raise StorageError(f"failed to list memory ids: {exc}") from exc

    async def count(self) -> int:
        try:
            async with self.async_session() as session:
                result = await session.execute(select(func.count()).select_from(MemoryRow))
                return int(result.scalar() or 0)
        except SQLAlchemyError as exc:
            raise StorageError(f"failed to count memories: {exc}") from exc

    @property
    def location(self) -> Optional[str]:
        return str(self.path) if self.path is not None else None
