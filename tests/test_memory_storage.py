from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from capture_store.errors import CapacityExceededError
from capture_store.filters import Criteria
from capture_store.storage.file_storage import FileStorage, FileStorageConfig
from capture_store.storage.memory_storage import (
    MemoryStatistics,
    MemoryStorage,
    MemoryStorageConfig,
)
from conftest import BASE_TIME, make_session


class FakeClock:
    def __init__(self) -> None:
        self.now = BASE_TIME

    def __call__(self):
        return self.now

    def advance(self, **delta) -> None:
        self.now += timedelta(**delta)


@pytest.fixture
def clock():
    return FakeClock()


def _storage(clock, **config) -> MemoryStorage:
    return MemoryStorage(MemoryStorageConfig(**config), clock=clock)


class TestCapacity:
    @pytest.mark.asyncio
    async def test_new_session_at_capacity_is_rejected(self, clock):
        async with _storage(clock, max_sessions=2) as store:
            await store.save_many([make_session(), make_session()])
            with pytest.raises(CapacityExceededError) as excinfo:
                await store.save(make_session())
            assert excinfo.value.max_sessions == 2
            assert await store.count() == 2

    @pytest.mark.asyncio
    async def test_update_at_capacity_succeeds(self, clock):
        async with _storage(clock, max_sessions=1) as store:
            session = make_session()
            await store.save(session)
            updated = session.with_metadata("seen", True)
            await store.save(updated)
            assert (await store.load(session.id)).metadata == {"seen": True}

    @pytest.mark.asyncio
    async def test_batch_keeps_sessions_saved_before_failure(self, clock):
        async with _storage(clock, max_sessions=2) as store:
            with pytest.raises(CapacityExceededError):
                await store.save_many([make_session() for _ in range(3)])
            assert await store.count() == 2

    @pytest.mark.asyncio
    async def test_concurrent_saves_never_overfill(self, clock):
        async with _storage(clock, max_sessions=5, auto_cleanup=False) as store:
            results = await asyncio.gather(
                *(store.save(make_session()) for _ in range(50)), return_exceptions=True
            )
            rejected = [r for r in results if isinstance(r, CapacityExceededError)]
            assert len(rejected) == 45
            assert results[:5] == [None] * 5
            assert await store.count() == 5


class TestBasics:
    @pytest.mark.asyncio
    async def test_load_all_newest_first(self, clock):
        async with _storage(clock) as store:
            sessions = [make_session(started=BASE_TIME + timedelta(seconds=i)) for i in range(3)]
            await store.save_many(sessions)
            assert [s.id for s in await store.load_all()] == [s.id for s in reversed(sessions)]

    @pytest.mark.asyncio
    async def test_delete_and_matching(self, clock, sample_sessions):
        async with _storage(clock) as store:
            await store.save_many(sample_sessions)
            assert len(await store.load_matching(Criteria.success_only())) == 2
            assert await store.delete_matching(Criteria.for_host("api.x.com")) == 2
            await store.delete(sample_sessions[2].id)
            assert await store.count() == 0
            assert await store.load(sample_sessions[2].id) is None

    @pytest.mark.asyncio
    async def test_storage_size_is_json_size(self, clock):
        async with _storage(clock) as store:
            session = make_session()
            await store.save(session)
            assert await store.storage_size() == len(session.model_dump_json().encode())


class TestCleanup:
    @pytest.mark.asyncio
    async def test_removes_by_last_access(self, clock):
        async with _storage(clock, retention_period=timedelta(minutes=10), auto_cleanup=False) as store:
            stale, touched = make_session(), make_session()
            await store.save_many([stale, touched])

            clock.advance(minutes=8)
            await store.load(touched.id)
            clock.advance(minutes=5)

            assert await store.cleanup() == 1
            assert await store.load(stale.id) is None
            assert await store.load(touched.id) is not None

    @pytest.mark.asyncio
    async def test_excess_uses_insertion_order(self, clock):
        async with _storage(clock, max_sessions=5, auto_cleanup=False) as store:
            sessions = [make_session() for _ in range(5)]
            await store.save_many(sessions)
            store.config.max_sessions = 3
            # recent access does not protect the oldest insertion
            await store.load(sessions[0].id)

            assert await store.cleanup() == 2
            remaining = {s.id for s in await store.load_all()}
            assert remaining == {s.id for s in sessions[2:]}

    @pytest.mark.asyncio
    async def test_auto_cleanup_runs_after_save(self, clock):
        async with _storage(clock, retention_period=timedelta(minutes=1)) as store:
            old = make_session()
            await store.save(old)
            clock.advance(minutes=2)
            await store.save(make_session())
            assert await store.count() == 1
            assert await store.load(old.id) is None


class TestExtras:
    @pytest.mark.asyncio
    async def test_recently_accessed(self, clock):
        async with _storage(clock) as store:
            sessions = [make_session() for _ in range(3)]
            for session in sessions:
                await store.save(session)
                clock.advance(seconds=1)
            await store.load(sessions[0].id)

            recent = await store.recently_accessed(2)
            assert [s.id for s in recent] == [sessions[0].id, sessions[2].id]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("limit", [0, -1])
    async def test_recently_accessed_without_positive_limit(self, clock, limit):
        async with _storage(clock) as store:
            await store.save_many([make_session() for _ in range(3)])
            assert await store.recently_accessed(limit) == []

    @pytest.mark.asyncio
    async def test_statistics(self, clock):
        async with _storage(clock, max_sessions=4, max_memory_usage=1_000_000) as store:
            await store.save_many([make_session(), make_session()])
            stats = await store.statistics()
            assert isinstance(stats, MemoryStatistics)
            assert stats.session_count == 2
            assert stats.session_count_ratio == 0.5
            assert stats.estimated_memory_usage == await store.storage_size()
            assert stats.memory_usage_ratio == stats.estimated_memory_usage / 1_000_000
            assert stats.human_readable_memory_usage.endswith(("bytes", "KB"))

    def test_statistics_with_zero_limits(self):
        stats = MemoryStatistics(
            session_count=1, estimated_memory_usage=3 * 1024 * 1024, max_sessions=0, max_memory_usage=0
        )
        assert stats.session_count_ratio == 0.0
        assert stats.memory_usage_ratio == 0.0
        assert stats.human_readable_memory_usage == "3.0 MB"


class TestTransfer:
    @pytest.mark.asyncio
    async def test_export_to_file_storage(self, clock, tmp_path, sample_sessions):
        async with _storage(clock) as memory, FileStorage(FileStorageConfig(base_directory=tmp_path)) as files:
            await memory.save_many(sample_sessions)
            await memory.export_to(files)
            assert {s.id for s in await files.load_all()} == {s.id for s in sample_sessions}

    @pytest.mark.asyncio
    async def test_import_from_file_storage(self, clock, tmp_path, sample_sessions):
        async with _storage(clock) as memory, FileStorage(FileStorageConfig(base_directory=tmp_path)) as files:
            await files.save_many(sample_sessions)
            existing = make_session()
            await memory.save(existing)

            assert await memory.import_from(files) == 3
            assert await memory.count() == 4

            assert await memory.import_from(files, replace_existing=True) == 3
            assert await memory.count() == 3
            assert await memory.load(existing.id) is None
