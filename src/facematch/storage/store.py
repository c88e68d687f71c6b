"""Embedding store: persistent (user_id, sample_id) -> embedding records.

Backed by an async SQLAlchemy engine (aiosqlite by default). Rows are handed
out as frozen ``FaceSample`` copies, never as live ORM objects.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from sqlalchemy import delete, func, insert, inspect, select, text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from facematch.errors import DuplicateSampleError, StoreClosedError
from facematch.storage.models import LEGACY_TABLE, SCHEMA_VERSION, Base, FaceSampleRow, StoreMeta
from facematch.types import ConflictPolicy, FaceSample

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

logger = logging.getLogger(__name__)


def to_millis(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return int(value.timestamp() * 1000)


def from_millis(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=UTC)


def _to_row(sample: FaceSample) -> FaceSampleRow:
    return FaceSampleRow(
        user_id=sample.user_id,
        sample_id=sample.sample_id,
        embedding=json.dumps([float(v) for v in sample.embedding]),
        created_at=to_millis(sample.created_at),
    )


def _to_sample(row: FaceSampleRow) -> FaceSample:
    return FaceSample(
        user_id=row.user_id,
        sample_id=row.sample_id,
        embedding=tuple(float(v) for v in json.loads(row.embedding)),
        created_at=from_millis(row.created_at),
    )


def _is_in_memory(database_url: str) -> bool:
    url = make_url(database_url)
    if url.get_backend_name() != "sqlite":
        return False
    return not url.database or url.database == ":memory:" or url.query.get("mode") == "memory"


def _prepare_sqlite_path(database_url: str) -> None:
    url = make_url(database_url)
    if _is_in_memory(database_url) or url.get_backend_name() != "sqlite" or not url.database:
        return
    Path(url.database).parent.mkdir(parents=True, exist_ok=True)


async def _migrate(conn: AsyncConnection) -> None:
    """Bring an existing database up to ``SCHEMA_VERSION`` without dropping data.

    Rows of the legacy ``faces(id, image_id, embedding)`` table are copied in
    as ``(user_id=id, sample_id=image_id)``. Rows already present in the new
    table win, and the legacy table is left untouched.
    """
    current = await conn.scalar(select(StoreMeta.value).where(StoreMeta.key == "schema_version"))
    if current is not None and int(current) >= SCHEMA_VERSION:
        return

    tables = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
    if LEGACY_TABLE in tables:
        legacy = (await conn.execute(text(f"SELECT id, image_id, embedding FROM {LEGACY_TABLE}"))).all()  # noqa: S608
        existing = {
            (user_id, sample_id)
            for user_id, sample_id in (await conn.execute(select(FaceSampleRow.user_id, FaceSampleRow.sample_id))).all()
        }
        migrated_at = to_millis(datetime.now(UTC))
        rows = [
            {"user_id": user_id, "sample_id": image_id, "embedding": embedding, "created_at": migrated_at}
            for user_id, image_id, embedding in legacy
            if (user_id, image_id) not in existing
        ]
        if rows:
            await conn.execute(insert(FaceSampleRow), rows)
        logger.info(
            "Migrated %d of %d legacy face records into %s",
            len(rows),
            len(legacy),
            FaceSampleRow.__tablename__,
        )

    await conn.execute(delete(StoreMeta).where(StoreMeta.key == "schema_version"))
    await conn.execute(insert(StoreMeta).values(key="schema_version", value=str(SCHEMA_VERSION)))


class EmbeddingStore:
    """Async access to persisted face samples."""

    def __init__(self, database_url: str) -> None:
        self._database_url = database_url
        self._engine: AsyncEngine | None = None
        self._sessions: async_sessionmaker[AsyncSession] | None = None
        self._was_closed = False
        self._open_lock = asyncio.Lock()

    @property
    def database_url(self) -> str:
        return self._database_url

    @property
    def is_in_memory(self) -> bool:
        """True when every new engine would see its own empty database."""
        return _is_in_memory(self._database_url)

    @property
    def is_open(self) -> bool:
        return self._engine is not None

    # -- Lifecycle ----------------------------------------------------------

    async def open(self) -> None:
        """Create the engine, the schema and run migrations. Idempotent."""
        async with self._open_lock:
            if self._engine is not None:
                return
            _prepare_sqlite_path(self._database_url)
            engine = create_async_engine(self._database_url, echo=False)
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
                await _migrate(conn)
            self._engine = engine
            self._sessions = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
            logger.info("Embedding store opened (%s)", make_url(self._database_url).render_as_string())

    async def ensure_open(self) -> None:
        """Reopen the store if an earlier ``close()`` shut it down."""
        if self._engine is not None:
            return
        if self._was_closed:
            logger.warning("Embedding store was closed, reopening")
        await self.open()

    async def close(self) -> None:
        async with self._open_lock:
            engine = self._engine
            self._engine = None
            self._sessions = None
            if engine is not None:
                await engine.dispose()
                self._was_closed = True
                logger.info("Embedding store closed")

    def _session(self) -> AsyncSession:
        if self._sessions is None:
            raise StoreClosedError
        return self._sessions()

    # -- Writes -------------------------------------------------------------

    async def insert(self, sample: FaceSample, on_conflict: ConflictPolicy = ConflictPolicy.ABORT) -> None:
        """Persist ``sample``.

        Raises:
            DuplicateSampleError: ``on_conflict`` is ABORT and the pair exists.
            StoreClosedError: The store is not open.
        """
        async with self._session() as session:
            row = _to_row(sample)
            if on_conflict is ConflictPolicy.REPLACE:
                await session.merge(row)
                await session.commit()
                return
            session.add(row)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise DuplicateSampleError(sample.user_id, sample.sample_id) from exc

    async def delete_sample(self, user_id: str, sample_id: str) -> bool:
        """Delete one sample. Returns whether a row was removed."""
        async with self._session() as session:
            result = await session.execute(
                delete(FaceSampleRow).where(FaceSampleRow.user_id == user_id, FaceSampleRow.sample_id == sample_id)
            )
            await session.commit()
            return bool(result.rowcount)

    async def delete_user(self, user_id: str) -> int:
        """Delete every sample of ``user_id``. Returns the number of rows removed."""
        async with self._session() as session:
            result = await session.execute(delete(FaceSampleRow).where(FaceSampleRow.user_id == user_id))
            await session.commit()
            return int(result.rowcount or 0)

    # -- Reads --------------------------------------------------------------

    async def get(self, user_id: str, sample_id: str) -> FaceSample | None:
        async with self._session() as session:
            row = await session.get(FaceSampleRow, (user_id, sample_id))
            return _to_sample(row) if row is not None else None

    async def list_by_user(self, user_id: str) -> list[FaceSample]:
        """Samples of one user, newest first."""
        stmt = (
            select(FaceSampleRow)
            .where(FaceSampleRow.user_id == user_id)
            .order_by(FaceSampleRow.created_at.desc(), FaceSampleRow.sample_id.desc())
        )
        async with self._session() as session:
            rows = (await session.scalars(stmt)).all()
        return [_to_sample(row) for row in rows]

    async def list_all(self) -> list[FaceSample]:
        stmt = select(FaceSampleRow).order_by(FaceSampleRow.user_id, FaceSampleRow.created_at.desc())
        async with self._session() as session:
            rows = (await session.scalars(stmt)).all()
        return [_to_sample(row) for row in rows]

    async def count_by_user(self, user_id: str) -> int:
        stmt = select(func.count()).select_from(FaceSampleRow).where(FaceSampleRow.user_id == user_id)
        async with self._session() as session:
            return int(await session.scalar(stmt) or 0)

    async def count_all(self) -> int:
        stmt = select(func.count()).select_from(FaceSampleRow)
        async with self._session() as session:
            return int(await session.scalar(stmt) or 0)

    async def list_user_ids(self) -> list[str]:
        """Distinct user ids in lexicographic order."""
        stmt = select(FaceSampleRow.user_id).distinct().order_by(FaceSampleRow.user_id)
        async with self._session() as session:
            return list((await session.scalars(stmt)).all())
