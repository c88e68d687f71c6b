"""Tests for the SQLite-backed embedding store."""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import pytest
from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine

from facematch.errors import DuplicateSampleError, StoreClosedError
from facematch.storage.store import EmbeddingStore, from_millis, to_millis
from facematch.types import ConflictPolicy, FaceSample

if TYPE_CHECKING:
    from pathlib import Path

    from facematch.config import Settings

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)


def _sample(user_id: str, sample_id: str, value: float = 1.0, created_at: datetime = T0) -> FaceSample:
    return FaceSample(user_id=user_id, sample_id=sample_id, embedding=(value, 0.0, 0.0), created_at=created_at)


class TestTimestamps:
    def test_millisecond_round_trip(self) -> None:
        assert from_millis(to_millis(T0)) == T0

    def test_naive_datetimes_are_utc(self) -> None:
        assert to_millis(datetime(1970, 1, 1, 0, 0, 1)) == 1000


class TestInsertAndGet:
    async def test_get_returns_copy(self, store: EmbeddingStore) -> None:
        await store.insert(_sample("u1", "s1", 0.5))
        sample = await store.get("u1", "s1")
        assert sample is not None
        assert sample.embedding == (0.5, 0.0, 0.0)
        assert sample.created_at == T0

    async def test_get_missing(self, store: EmbeddingStore) -> None:
        assert await store.get("nobody", "s1") is None

    async def test_duplicate_aborts(self, store: EmbeddingStore) -> None:
        await store.insert(_sample("u1", "s1"))
        with pytest.raises(DuplicateSampleError) as exc_info:
            await store.insert(_sample("u1", "s1", 0.2))
        assert exc_info.value.user_id == "u1"
        assert exc_info.value.sample_id == "s1"
        assert await store.count_all() == 1

    async def test_same_sample_id_for_other_user(self, store: EmbeddingStore) -> None:
        await store.insert(_sample("u1", "s1"))
        await store.insert(_sample("u2", "s1"))
        assert await store.count_all() == 2

    async def test_replace_overwrites(self, store: EmbeddingStore) -> None:
        await store.insert(_sample("u1", "s1", 1.0))
        later = T0 + timedelta(hours=1)
        await store.insert(_sample("u1", "s1", 0.25, later), ConflictPolicy.REPLACE)
        sample = await store.get("u1", "s1")
        assert sample is not None
        assert sample.embedding[0] == 0.25
        assert sample.created_at == later
        assert await store.count_by_user("u1") == 1


class TestQueries:
    async def test_list_by_user_newest_first(self, store: EmbeddingStore) -> None:
        for offset, sample_id in enumerate(["old", "mid", "new"]):
            await store.insert(_sample("u1", sample_id, created_at=T0 + timedelta(minutes=offset)))
        await store.insert(_sample("u2", "other"))

        samples = await store.list_by_user("u1")
        assert [s.sample_id for s in samples] == ["new", "mid", "old"]

    async def test_list_by_unknown_user(self, store: EmbeddingStore) -> None:
        assert await store.list_by_user("ghost") == []

    async def test_list_all_and_counts(self, store: EmbeddingStore) -> None:
        await store.insert(_sample("u2", "a"))
        await store.insert(_sample("u1", "a"))
        await store.insert(_sample("u1", "b"))

        assert len(await store.list_all()) == 3
        assert await store.count_all() == 3
        assert await store.count_by_user("u1") == 2
        assert await store.count_by_user("ghost") == 0

    async def test_user_ids_distinct_and_sorted(self, store: EmbeddingStore) -> None:
        for user_id, sample_id in [("carol", "1"), ("alice", "1"), ("bob", "1"), ("alice", "2")]:
            await store.insert(_sample(user_id, sample_id))
        assert await store.list_user_ids() == ["alice", "bob", "carol"]


class TestDeletes:
    async def test_delete_sample(self, store: EmbeddingStore) -> None:
        await store.insert(_sample("u1", "s1"))
        await store.insert(_sample("u1", "s2"))
        assert await store.delete_sample("u1", "s1") is True
        assert await store.delete_sample("u1", "s1") is False
        assert [s.sample_id for s in await store.list_by_user("u1")] == ["s2"]

    async def test_delete_user(self, store: EmbeddingStore) -> None:
        await store.insert(_sample("u1", "s1"))
        await store.insert(_sample("u1", "s2"))
        await store.insert(_sample("u2", "s1"))
        assert await store.delete_user("u1") == 2
        assert await store.delete_user("u1") == 0
        assert await store.list_user_ids() == ["u2"]


class TestLifecycle:
    async def test_closed_store_raises(self, settings: Settings) -> None:
        store = EmbeddingStore(settings.database_url)
        with pytest.raises(StoreClosedError):
            await store.list_all()

    async def test_ensure_open_recovers_after_close(self, store: EmbeddingStore) -> None:
        await store.insert(_sample("u1", "s1"))
        await store.close()
        assert not store.is_open
        with pytest.raises(StoreClosedError):
            await store.count_all()

        await store.ensure_open()
        assert store.is_open
        assert await store.count_all() == 1

    async def test_open_is_idempotent(self, store: EmbeddingStore) -> None:
        await store.open()
        await store.open()
        assert store.is_open

    async def test_creates_parent_directory(self, tmp_path: Path) -> None:
        store = EmbeddingStore(f"sqlite+aiosqlite:///{tmp_path / 'nested' / 'dir' / 'faces.db'}")
        await store.open()
        try:
            assert (tmp_path / "nested" / "dir").is_dir()
        finally:
            await store.close()


class TestLegacyMigration:
    @staticmethod
    async def _write_legacy(url: str, rows: list[tuple[str, str, list[float]]]) -> None:
        engine = create_async_engine(url)
        async with engine.begin() as conn:
            await conn.execute(text("CREATE TABLE faces (id TEXT PRIMARY KEY, image_id TEXT, embedding TEXT)"))
            for user_id, image_id, embedding in rows:
                await conn.execute(
                    text("INSERT INTO faces (id, image_id, embedding) VALUES (:id, :image_id, :embedding)"),
                    {"id": user_id, "image_id": image_id, "embedding": json.dumps(embedding)},
                )
        await engine.dispose()

    async def test_legacy_rows_are_preserved(self, tmp_path: Path) -> None:
        url = f"sqlite+aiosqlite:///{tmp_path / 'legacy.db'}"
        await self._write_legacy(url, [("alice", "img-1", [1.0, 0.0]), ("bob", "img-2", [0.0, 1.0])])

        store = EmbeddingStore(url)
        await store.open()
        try:
            assert await store.list_user_ids() == ["alice", "bob"]
            alice = await store.get("alice", "img-1")
            assert alice is not None
            assert alice.embedding == (1.0, 0.0)
        finally:
            await store.close()

    async def test_migration_runs_once(self, tmp_path: Path) -> None:
        url = f"sqlite+aiosqlite:///{tmp_path / 'legacy.db'}"
        await self._write_legacy(url, [("alice", "img-1", [1.0, 0.0])])

        store = EmbeddingStore(url)
        await store.open()
        await store.delete_user("alice")
        await store.close()

        await store.open()
        try:
            assert await store.count_all() == 0
        finally:
            await store.close()

    async def test_existing_rows_win_over_legacy(self, tmp_path: Path) -> None:
        url = f"sqlite+aiosqlite:///{tmp_path / 'legacy.db'}"
        store = EmbeddingStore(url)
        await store.open()
        await store.insert(FaceSample(user_id="alice", sample_id="img-1", embedding=(0.0, 1.0), created_at=T0))
        await store.close()

        engine = create_async_engine(url)
        async with engine.begin() as conn:
            await conn.execute(text("DELETE FROM store_meta"))
        await engine.dispose()
        await self._write_legacy(url, [("alice", "img-1", [1.0, 0.0]), ("bob", "img-2", [0.0, 1.0])])

        await store.open()
        try:
            alice = await store.get("alice", "img-1")
            assert alice is not None
            assert alice.embedding == (0.0, 1.0)
            assert alice.created_at == T0
            bob = await store.get("bob", "img-2")
            assert bob is not None
            assert bob.embedding == (0.0, 1.0)
            assert await store.count_all() == 2
        finally:
            await store.close()


class TestInMemory:
    @pytest.mark.parametrize(
        ("url", "expected"),
        [
            ("sqlite+aiosqlite:///:memory:", True),
            ("sqlite+aiosqlite://", True),
            ("sqlite+aiosqlite:///./data/faces.db", False),
            ("postgresql+asyncpg://user@localhost/faces", False),
        ],
    )
    def test_is_in_memory(self, url: str, expected: bool) -> None:
        assert EmbeddingStore(url).is_in_memory is expected
