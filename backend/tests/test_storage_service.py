"""Tests for per-workflow ephemeral storage."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from db.database import create_db_engine, create_session_factory, init_db
from services.storage_service import EphemeralStorage, record_key

WF = "wf-1"


class MutableClock:
    def __init__(self):
        self.now = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return MutableClock()


@pytest_asyncio.fixture
async def timed_storage(session_factory, clock):
    return EphemeralStorage(session_factory, clock=clock)


@pytest.mark.unit
class TestRecordKey:
    def test_key_field(self):
        assert record_key({"id": 1, "url": "https://x"}, "url") == "https://x"

    def test_dict_id_is_default(self):
        assert record_key({"id": 42, "text": "hi"}) == "42"

    def test_scalars(self):
        assert record_key("abc") == "abc"
        assert record_key(7) == "7"

    def test_other_values_hash_canonically(self):
        assert record_key({"b": 1, "a": 2}) == record_key({"a": 2, "b": 1})
        assert len(record_key([1, 2])) == 64

    def test_missing_key_field(self):
        with pytest.raises(ValueError):
            record_key({"id": 1}, "url")


@pytest.mark.unit
class TestTables:
    """Table lifecycle and inferred columns."""

    @pytest.mark.asyncio
    async def test_create_is_idempotent(self, storage):
        first = await storage.create_table(WF, "seen", ["id", "text"])
        second = await storage.create_table(WF, "seen")
        assert first == second == {"table": "seen", "columns": ["id", "text"]}

    @pytest.mark.asyncio
    async def test_columns_grow_with_inserts(self, storage):
        await storage.insert(WF, "posts", {"id": 1, "title": "a"})
        await storage.insert(WF, "posts", {"id": 2, "score": 3})
        assert await storage.list_tables(WF) == [{"table": "posts", "columns": ["id", "title", "score"]}]

    @pytest.mark.asyncio
    async def test_tables_are_scoped_by_workflow(self, storage):
        await storage.insert(WF, "seen", "a")
        await storage.insert("wf-2", "seen", "b")
        assert await storage.keys(WF, "seen") == {"a"}
        assert await storage.keys("wf-2", "seen") == {"b"}

    @pytest.mark.asyncio
    async def test_drop_table(self, storage):
        await storage.insert(WF, "seen", "a")
        assert await storage.drop_table(WF, "seen") is True
        assert await storage.drop_table(WF, "seen") is False
        assert await storage.list_tables(WF) == []
        assert await storage.query(WF, "seen") == []


@pytest.mark.unit
class TestReadsAndWrites:
    """Dedup, queries, counters and deletes."""

    @pytest.mark.asyncio
    async def test_insert_same_key_twice(self, storage):
        assert await storage.insert(WF, "seen", {"id": 1, "v": "first"}) is True
        assert await storage.insert(WF, "seen", {"id": 1, "v": "second"}) is False
        assert await storage.query(WF, "seen") == [{"id": 1, "v": "first"}]

    @pytest.mark.asyncio
    async def test_insert_many_counts_new_rows(self, storage):
        items = [{"url": "a"}, {"url": "b"}, {"url": "a"}]
        assert await storage.insert_many(WF, "links", items, key_field="url") == 2
        assert await storage.insert_many(WF, "links", [{"url": "c"}], key_field="url") == 1

    @pytest.mark.asyncio
    async def test_filter_new_and_exists(self, storage):
        await storage.insert_many(WF, "seen", [{"id": 1}, {"id": 2}])
        fresh = await storage.filter_new(WF, "seen", [{"id": 2}, {"id": 3}], key_field="id")
        assert fresh == [{"id": 3}]
        assert await storage.exists(WF, "seen", 1)
        assert not await storage.exists(WF, "seen", 3)

    @pytest.mark.asyncio
    async def test_query_filters_and_limits(self, storage):
        for n in range(5):
            await storage.insert(WF, "rows", {"id": n, "even": n % 2 == 0})
        assert [r["id"] for r in await storage.query(WF, "rows", where={"even": True})] == [0, 2, 4]
        assert len(await storage.query(WF, "rows", limit=2)) == 2

    @pytest.mark.asyncio
    async def test_scalar_rows_come_back_as_scalars(self, storage):
        await storage.insert(WF, "words", "hello")
        assert await storage.query(WF, "words") == ["hello"]

    @pytest.mark.asyncio
    async def test_increment(self, storage):
        assert await storage.increment(WF, "counters", "runs") == 1
        assert await storage.increment(WF, "counters", "runs", by=4) == 5
        assert await storage.query(WF, "counters") == [{"key": "runs", "count": 5}]

    @pytest.mark.asyncio
    async def test_delete_by_key_and_where(self, storage):
        await storage.insert_many(WF, "rows", [{"id": 1, "tag": "x"}, {"id": 2, "tag": "y"}, {"id": 3, "tag": "x"}])
        assert await storage.delete(WF, "rows", key="2") == 1
        assert await storage.delete(WF, "rows", where={"tag": "x"}) == 2
        assert await storage.delete(WF, "missing") == 0
        assert await storage.query(WF, "rows") == []


@pytest.mark.unit
class TestExpiry:
    """TTL rows disappear from reads and can be re-inserted."""

    @pytest.mark.asyncio
    async def test_expired_rows_are_invisible(self, timed_storage, clock):
        await timed_storage.insert(WF, "seen", "a", ttl_seconds=60)
        await timed_storage.insert(WF, "seen", "b")
        clock.advance(seconds=61)

        assert await timed_storage.keys(WF, "seen") == {"b"}
        assert await timed_storage.filter_new(WF, "seen", ["a", "b"]) == ["a"]

    @pytest.mark.asyncio
    async def test_expired_key_can_be_inserted_again(self, timed_storage, clock):
        await timed_storage.insert(WF, "seen", "a", ttl_seconds=60)
        clock.advance(minutes=2)
        assert await timed_storage.insert(WF, "seen", "a") is True
        assert await timed_storage.exists(WF, "seen", "a")

    @pytest.mark.asyncio
    async def test_cleanup_expired(self, timed_storage, clock):
        await timed_storage.insert_many(WF, "seen", ["a", "b"], ttl_seconds=10)
        await timed_storage.insert(WF, "seen", "c")
        assert await timed_storage.cleanup_expired() == 0

        clock.advance(seconds=11)
        assert await timed_storage.cleanup_expired() == 2
        assert await timed_storage.keys(WF, "seen") == {"c"}


@pytest.mark.unit
class TestConcurrency:
    @pytest.mark.asyncio
    async def test_racing_inserts_have_one_winner(self, tmp_path):
        engine = create_db_engine(f"sqlite+aiosqlite:///{tmp_path / 'race.db'}")
        await init_db(engine)
        storage = EphemeralStorage(create_session_factory(engine))
        try:
            results = await asyncio.gather(
                *(storage.insert(WF, "seen", {"id": "same"}) for _ in range(5))
            )
            assert results.count(True) == 1
            assert await storage.keys(WF, "seen") == {"same"}
        finally:
            await engine.dispose()
