"""
Unit Tests for Progress Sync Engine

Tests the dual-write policy, merge rules and per-unit write ordering.
"""

import asyncio
import logging
import os
import sys

import pytest

# Add project root to path
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), "../.."))
sys.path.insert(0, os.path.join(project_root, "learning_session_orchestrator", "src"))

from learning_session_orchestrator.errors import AuthTokenUnavailableError, CacheUnavailableError, RemoteSyncError
from learning_session_orchestrator.progress_api import AnalyticsPayload
from learning_session_orchestrator.progress_store import InMemoryProgressCache, ProgressRecord, SyncStatus
from learning_session_orchestrator.progress_sync import ProgressSyncEngine


class FakeRemote:
    """Remote progress API double recording every call."""

    def __init__(self, records=None, fail=False, analytics=None):
        self.records = records or []
        self.fail = fail
        self.analytics = analytics
        self.saved = []
        self.quiz_results = []
        self.delays = []

    async def fetch_progress(self):
        if self.fail:
            raise RemoteSyncError("backend unreachable")
        return list(self.records)

    async def save_progress(self, record):
        delay = self.delays.pop(0) if self.delays else 0
        if delay:
            await asyncio.sleep(delay)
        if self.fail:
            raise AuthTokenUnavailableError()
        self.saved.append(record.to_wire())

    async def save_quiz_result(self, result):
        if self.fail:
            raise RemoteSyncError("backend unreachable", status_code=503)
        self.quiz_results.append(result.to_wire())

    async def fetch_analytics(self):
        if self.fail or self.analytics is None:
            raise RemoteSyncError("no analytics")
        return self.analytics


class BrokenCache(InMemoryProgressCache):
    def _set(self, key, value):
        raise CacheUnavailableError("disk full")


class TestProgressUpdates:
    """Test suite for update_progress merge rules."""

    @pytest.fixture
    def remote(self):
        return FakeRemote()

    @pytest.fixture
    def cache(self):
        return InMemoryProgressCache()

    @pytest.fixture
    def engine(self, remote, cache):
        return ProgressSyncEngine(learner_id="learner-1", remote=remote, cache=cache)

    @pytest.mark.asyncio
    async def test_memory_updates_before_io(self, engine):
        """The in-memory record changes before the write task runs."""
        task = engine.update_progress("ch1", 40, False, 10)

        assert engine.get("ch1").progress == 40
        assert not task.done()
        assert await task == SyncStatus.SYNCED

    @pytest.mark.asyncio
    async def test_completion_never_reverts(self, engine):
        engine.update_progress("ch1", 30, False, 0)
        engine.update_progress("ch1", 100, True, 0)
        engine.update_progress("ch1", 20, False, 0)
        engine.update_progress("ch1", 25, False, 0)
        await engine.drain()

        assert engine.get("ch1").completed is True

    @pytest.mark.asyncio
    async def test_time_spent_is_additive(self, engine):
        engine._progress["ch1"] = ProgressRecord(unit_id="ch1", time_spent_seconds=100)

        for delta in [5, 15, 0, 30]:
            engine.update_progress("ch1", 10, False, delta)
        await engine.drain()

        assert engine.get("ch1").time_spent_seconds == 150

    @pytest.mark.asyncio
    async def test_documented_three_write_sequence(self, engine, remote, cache):
        engine.update_progress("ch1", 50, False, 30)
        engine.update_progress("ch1", 100, True, 20)
        engine.update_progress("ch1", 10, False, 0)
        await engine.drain()

        record = engine.get("ch1")
        assert record.progress == 10
        assert record.completed is True
        assert record.time_spent_seconds == 50

        cached = cache.read_progress("learner-1")["ch1"]
        assert (cached.progress, cached.completed, cached.time_spent_seconds) == (10, True, 50)
        # Remote receives the cumulative total on each write
        assert [saved["timeSpent"] for saved in remote.saved] == [30, 50, 50]

    @pytest.mark.asyncio
    async def test_progress_and_time_are_clamped(self, engine):
        engine.update_progress("ch1", 140, False, -20)
        await engine.drain()

        assert engine.get("ch1").progress == 100
        assert engine.get("ch1").time_spent_seconds == 0

        engine.update_progress("ch1", -5, False, 0)
        assert engine.get("ch1").progress == 0

    @pytest.mark.asyncio
    async def test_writes_for_a_unit_apply_in_call_order(self, engine, remote):
        """A slow first write must not land after a fast second one."""
        remote.delays = [0.05, 0]

        first = engine.update_progress("ch1", 30, False, 10)
        second = engine.update_progress("ch1", 60, False, 10)
        await asyncio.gather(first, second)

        assert [saved["progress"] for saved in remote.saved] == [30, 60]

    @pytest.mark.asyncio
    async def test_units_do_not_block_each_other(self, engine, remote):
        remote.delays = [0.05, 0]

        slow = engine.update_progress("ch1", 30, False, 0)
        fast = engine.update_progress("ch2", 60, False, 0)
        await fast

        assert not slow.done()
        assert [saved["chapterId"] for saved in remote.saved] == ["ch2"]
        await slow


class TestDualWrite:
    """Test suite for remote/cache durability."""

    @pytest.mark.asyncio
    async def test_cache_written_when_remote_fails(self):
        cache = InMemoryProgressCache()
        engine = ProgressSyncEngine(learner_id="learner-1", remote=FakeRemote(fail=True), cache=cache)

        status = await engine.update_progress("ch1", 75, False, 12)

        assert status == SyncStatus.CACHED_ONLY
        cached = cache.read_progress("learner-1")
        assert cached["ch1"].progress == 75
        assert cached["ch1"].time_spent_seconds == 12

    @pytest.mark.asyncio
    async def test_cache_holds_latest_value_after_many_failed_writes(self):
        cache = InMemoryProgressCache()
        engine = ProgressSyncEngine(learner_id="learner-1", remote=FakeRemote(fail=True), cache=cache)

        for progress in [10, 20, 30, 40]:
            engine.update_progress("ch1", progress, False, 1)
        await engine.drain()

        assert cache.read_progress("learner-1")["ch1"].progress == 40
        assert engine.last_status["ch1"] == SyncStatus.CACHED_ONLY

    @pytest.mark.asyncio
    async def test_cache_key_is_per_learner(self):
        cache = InMemoryProgressCache()
        engine = ProgressSyncEngine(learner_id="learner-1", cache=cache)

        await engine.update_progress("ch1", 10)

        assert cache.keys() == ["progress_learner-1"]

    @pytest.mark.asyncio
    async def test_no_storage_degrades_to_memory(self):
        engine = ProgressSyncEngine(learner_id="learner-1")

        status = await engine.update_progress("ch1", 10, False, 5)

        assert status == SyncStatus.FAILED
        assert engine.get("ch1").progress == 10

    @pytest.mark.asyncio
    async def test_cache_failure_is_not_raised(self):
        engine = ProgressSyncEngine(learner_id="learner-1", remote=FakeRemote(fail=True), cache=BrokenCache())

        status = await engine.update_progress("ch1", 10)

        assert status == SyncStatus.FAILED

    @pytest.mark.asyncio
    async def test_remote_success_with_broken_cache_is_synced(self):
        engine = ProgressSyncEngine(learner_id="learner-1", remote=FakeRemote(), cache=BrokenCache())

        assert await engine.update_progress("ch1", 10) == SyncStatus.SYNCED


class TestLoading:
    """Test suite for load_progress and load_analytics."""

    @pytest.mark.asyncio
    async def test_remote_load_refreshes_cache(self):
        cache = InMemoryProgressCache()
        remote = FakeRemote(records=[ProgressRecord(unit_id="ch1", progress=80, time_spent_seconds=60)])
        engine = ProgressSyncEngine(remote=remote, cache=cache)

        progress = await engine.load_progress("learner-1")

        assert progress["ch1"].progress == 80
        assert cache.read_progress("learner-1")["ch1"].time_spent_seconds == 60

    @pytest.mark.asyncio
    async def test_load_falls_back_to_cache(self):
        cache = InMemoryProgressCache()
        cache.write_progress("learner-1", {"ch2": ProgressRecord(unit_id="ch2", progress=30, completed=True)})
        engine = ProgressSyncEngine(remote=FakeRemote(fail=True), cache=cache)

        progress = await engine.load_progress("learner-1")

        assert list(progress) == ["ch2"]
        assert progress["ch2"].completed is True

    @pytest.mark.asyncio
    async def test_load_with_nothing_anywhere_is_empty(self):
        engine = ProgressSyncEngine(remote=FakeRemote(fail=True), cache=InMemoryProgressCache())

        assert await engine.load_progress("learner-1") == {}

    @pytest.mark.asyncio
    async def test_unexpected_remote_error_is_not_raised(self):
        class ExplodingRemote(FakeRemote):
            async def fetch_progress(self):
                raise RuntimeError("boom")

        engine = ProgressSyncEngine(remote=ExplodingRemote(), cache=InMemoryProgressCache())

        assert await engine.load_progress("learner-1") == {}

    @pytest.mark.asyncio
    async def test_updates_after_load_continue_from_loaded_time(self):
        remote = FakeRemote(records=[ProgressRecord(unit_id="ch1", progress=50, time_spent_seconds=100)])
        engine = ProgressSyncEngine(remote=remote, cache=InMemoryProgressCache())
        await engine.load_progress("learner-1")

        await engine.update_progress("ch1", 60, False, 20)

        assert engine.get("ch1").time_spent_seconds == 120

    @pytest.mark.asyncio
    async def test_remote_analytics(self):
        analytics = AnalyticsPayload(totalChapters=4, completedChapters=2, totalTimeSpent=900, averageScore=85.5)
        engine = ProgressSyncEngine(learner_id="learner-1", remote=FakeRemote(analytics=analytics))

        result = await engine.load_analytics()

        assert result.source == "remote"
        assert result.completed_units == 2
        assert result.average_score == 85.5

    @pytest.mark.asyncio
    async def test_analytics_computed_from_cache(self):
        cache = InMemoryProgressCache()
        cache.write_progress("learner-1", {
            "ch1": ProgressRecord(unit_id="ch1", progress=100, completed=True, time_spent_seconds=300),
            "ch2": ProgressRecord(unit_id="ch2", progress=40, time_spent_seconds=120),
        })
        engine = ProgressSyncEngine(learner_id="learner-1", remote=FakeRemote(fail=True), cache=cache)

        result = await engine.load_analytics()

        assert result.source == "cache"
        assert result.total_units == 2
        assert result.completed_units == 1
        assert result.total_time_spent == 420
        assert len(result.recent_progress) == 2

    @pytest.mark.asyncio
    async def test_analytics_empty_without_data(self):
        engine = ProgressSyncEngine(learner_id="learner-1", remote=FakeRemote(fail=True), cache=InMemoryProgressCache())

        result = await engine.load_analytics()

        assert result.source == "empty"
        assert result.total_units == 0


class TestQuizResults:
    """Test suite for fire-and-forget quiz result writes."""

    @pytest.mark.asyncio
    async def test_quiz_result_sent(self):
        remote = FakeRemote()
        engine = ProgressSyncEngine(learner_id="learner-1", remote=remote)

        assert await engine.record_quiz_result("1", 80, {"1": "3/5"}, 95) is True
        assert remote.quiz_results == [{"chapterId": "1", "score": 80, "answers": {"1": "3/5"}, "timeSpent": 95}]

    @pytest.mark.asyncio
    async def test_quiz_result_failure_is_logged_not_cached(self, caplog):
        cache = InMemoryProgressCache()
        engine = ProgressSyncEngine(learner_id="learner-1", remote=FakeRemote(fail=True), cache=cache)

        with caplog.at_level(logging.ERROR, logger="learning_session_orchestrator.progress_sync"):
            assert await engine.record_quiz_result("1", 60) is False

        assert "quiz result" in caplog.text
        assert cache.keys() == []


class SlowFetchRemote(FakeRemote):
    """Remote whose progress read is in flight long enough to overlap writes."""

    async def fetch_progress(self):
        await asyncio.sleep(0.05)
        return await super().fetch_progress()


class TestLoadOverlappingWrites:
    """Test suite for updates that land while progress is loading."""

    @pytest.mark.asyncio
    async def test_update_during_remote_load_is_kept(self):
        cache = InMemoryProgressCache()
        remote = SlowFetchRemote(records=[ProgressRecord(unit_id="ch1", progress=10, time_spent_seconds=5)])
        engine = ProgressSyncEngine(learner_id="learner-1", remote=remote, cache=cache)

        loading = asyncio.create_task(engine.load_progress("learner-1"))
        await asyncio.sleep(0.01)
        task = engine.update_progress("ch1", 100, True, 60)
        assert engine.get("ch1").completed is True

        await loading
        assert await task == SyncStatus.SYNCED

        record = engine.get("ch1")
        assert (record.progress, record.completed, record.time_spent_seconds) == (100, True, 65)
        cached = cache.read_progress("learner-1")["ch1"]
        assert (cached.completed, cached.time_spent_seconds) == (True, 65)
        # Held back until the read finished, then sent once with the merged total
        assert [(saved["completed"], saved["timeSpent"]) for saved in remote.saved] == [(True, 65)]

    @pytest.mark.asyncio
    async def test_update_during_cache_load_is_kept(self):
        cache = InMemoryProgressCache()
        cache.write_progress("learner-1", {
            "ch1": ProgressRecord(unit_id="ch1", progress=10, time_spent_seconds=5),
            "ch2": ProgressRecord(unit_id="ch2", progress=100, completed=True, time_spent_seconds=40),
        })
        engine = ProgressSyncEngine(remote=SlowFetchRemote(fail=True), cache=cache)

        loading = asyncio.create_task(engine.load_progress("learner-1"))
        await asyncio.sleep(0.01)
        engine.update_progress("ch1", 100, True, 60)
        progress = await loading
        await engine.drain()

        assert progress["ch1"].time_spent_seconds == 65
        cached = cache.read_progress("learner-1")
        assert (cached["ch1"].completed, cached["ch1"].time_spent_seconds) == (True, 65)
        assert cached["ch2"].completed is True
        assert engine.last_status["ch1"] == SyncStatus.CACHED_ONLY

    @pytest.mark.asyncio
    async def test_repeated_updates_during_load_replay_in_order(self):
        remote = SlowFetchRemote(records=[ProgressRecord(unit_id="ch1", progress=10, time_spent_seconds=5)])
        engine = ProgressSyncEngine(learner_id="learner-1", remote=remote, cache=InMemoryProgressCache())

        loading = asyncio.create_task(engine.load_progress("learner-1"))
        await asyncio.sleep(0.01)
        engine.update_progress("ch1", 100, True, 20)
        engine.update_progress("ch1", 30, False, 10)
        await loading
        await engine.drain()

        record = engine.get("ch1")
        assert (record.progress, record.completed, record.time_spent_seconds) == (30, True, 35)
        assert remote.saved[-1]["timeSpent"] == 35

    @pytest.mark.asyncio
    async def test_load_waits_for_earlier_writes(self):
        cache = InMemoryProgressCache()
        engine = ProgressSyncEngine(learner_id="learner-1", remote=FakeRemote(fail=True), cache=cache)

        engine.update_progress("ch1", 100, True, 30)
        progress = await engine.load_progress("learner-1")

        assert progress["ch1"].completed is True
        assert progress["ch1"].time_spent_seconds == 30


class TestLearnerSwitch:
    """Test suite for writes that outlive the learner they were made for."""

    @pytest.mark.asyncio
    async def test_pending_write_reaches_its_own_learner(self):
        cache = InMemoryProgressCache()
        remote = FakeRemote()
        remote.delays = [0.05]
        engine = ProgressSyncEngine(learner_id="learner-1", remote=remote, cache=cache)

        engine.update_progress("ch1", 100, True, 30)
        progress = await engine.load_progress("learner-2")
        await engine.drain()

        assert progress == {}
        assert engine.learner_id == "learner-2"
        assert cache.read_progress("learner-1")["ch1"].completed is True
        assert cache.read_progress("learner-2") == {}

    @pytest.mark.asyncio
    async def test_write_is_pinned_when_learner_changes_mid_flight(self):
        cache = InMemoryProgressCache()
        remote = FakeRemote()
        remote.delays = [0.05]
        engine = ProgressSyncEngine(learner_id="learner-1", remote=remote, cache=cache)

        slow = engine.update_progress("ch1", 50, False, 10)
        engine.learner_id = "learner-2"
        await engine.update_progress("ch9", 20, False, 5)
        await slow

        assert list(cache.read_progress("learner-1")) == ["ch1"]
        assert list(cache.read_progress("learner-2")) == ["ch9"]
        assert engine.get("ch1") is None


class TestWithoutEventLoop:
    """Test suite for calls made from synchronous code."""

    def test_update_writes_cache_directly(self):
        cache = InMemoryProgressCache()
        engine = ProgressSyncEngine(learner_id="learner-1", remote=FakeRemote(), cache=cache)

        status = engine.update_progress("ch1", 50, False, 10)

        assert status == SyncStatus.CACHED_ONLY
        assert engine.get("ch1").progress == 50
        assert cache.read_progress("learner-1")["ch1"].time_spent_seconds == 10
        assert engine.last_status["ch1"] == SyncStatus.CACHED_ONLY

    def test_update_without_cache_fails_softly(self):
        engine = ProgressSyncEngine(learner_id="learner-1")

        assert engine.update_progress("ch1", 50) == SyncStatus.FAILED
        assert engine.get("ch1").progress == 50

    def test_quiz_result_dropped_and_logged(self, caplog):
        remote = FakeRemote()
        engine = ProgressSyncEngine(learner_id="learner-1", remote=remote)

        with caplog.at_level(logging.ERROR, logger="learning_session_orchestrator.progress_sync"):
            assert engine.record_quiz_result("1", 80) is None

        assert "no running event loop" in caplog.text
        assert remote.quiz_results == []
