"""
Progress Synchronization Engine

Owns the in-memory progress map of the active session and keeps the
remote store and the local cache in step:

- Reads go remote first and fall back to the cache.
- Writes update memory synchronously, then persist in the background:
  remote write is best-effort, cache write is unconditional.
- Remote writes for the same unit are applied in call order.
- Each write is pinned to the learner it was made for.

No public method raises. Failures are logged and reported through
SyncStatus or an empty result.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Set, Tuple, Union

from learning_session_orchestrator.errors import CacheUnavailableError, RemoteSyncError
from learning_session_orchestrator.progress_store import (
    ProgressCache,
    ProgressRecord,
    QuizResult,
    SyncStatus,
)

logger = logging.getLogger(__name__)

RECENT_PROGRESS_LIMIT = 7

# (unit_id, progress, completed, time_spent_delta)
ProgressUpdate = Tuple[str, float, bool, int]


@dataclass
class ProgressAnalytics:
    """Aggregate learner statistics for the reports screen."""
    total_units: int = 0
    completed_units: int = 0
    total_time_spent: int = 0
    average_score: float = 0.0
    recent_quizzes: List[Dict[str, Any]] = field(default_factory=list)
    recent_progress: List[Dict[str, Any]] = field(default_factory=list)
    source: str = "empty"  # "remote", "cache" or "empty"


@dataclass
class _PendingLoad:
    """Updates received while a learner's progress is being loaded."""
    updates: List[ProgressUpdate] = field(default_factory=list)
    done: asyncio.Event = field(default_factory=asyncio.Event)


class ProgressSyncEngine:
    """
    Dual-write progress persistence for one learner session.

    Writes are scheduled as tasks on the running event loop. Called from
    synchronous code, update_progress writes the local cache directly.
    """

    def __init__(
        self,
        learner_id: Optional[str] = None,
        remote=None,
        cache: Optional[ProgressCache] = None,
    ):
        """
        Initialize the engine.

        Args:
            learner_id: Learner whose progress is tracked (set again by load_progress)
            remote: RemoteProgressAPI-compatible client, or None when offline
            cache: Local durable cache, or None for an in-memory-only session
        """
        self.learner_id = learner_id
        self.remote = remote
        self.cache = cache

        # One map per learner so a write always lands in the map it was made for
        self._maps: Dict[Optional[str], Dict[str, ProgressRecord]] = {}
        self._loads: Dict[str, _PendingLoad] = {}
        self._unit_locks: Dict[str, asyncio.Lock] = {}
        self._pending: Set[asyncio.Task] = set()
        self.last_status: Dict[str, SyncStatus] = {}

        if remote is None:
            logger.warning("⚠️ [ProgressSync] No remote API configured, progress will be cached locally only")
        if cache is None:
            logger.warning("⚠️ [ProgressSync] No local cache available, progress is in-memory only")

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    @property
    def _progress(self) -> Dict[str, ProgressRecord]:
        return self._records_for(self.learner_id)

    def _records_for(self, learner_id: Optional[str]) -> Dict[str, ProgressRecord]:
        return self._maps.setdefault(learner_id, {})

    @property
    def progress(self) -> Dict[str, ProgressRecord]:
        """Snapshot of the in-memory progress map."""
        return dict(self._progress)

    def get(self, unit_id: str) -> Optional[ProgressRecord]:
        return self._progress.get(unit_id)

    async def load_progress(self, learner_id: str) -> Dict[str, ProgressRecord]:
        """
        Load a learner's progress, remote first, cache on any failure.

        A successful remote read also refreshes the cache. An empty map means
        no progress yet.

        Updates made while the load is in flight are held back, replayed on
        top of the loaded records, and persisted once the load has finished.
        """
        self.learner_id = learner_id
        earlier_writes = list(self._pending)
        pending_load = _PendingLoad()
        self._loads[learner_id] = pending_load

        try:
            if earlier_writes:
                # Writes issued before the load settle on both tiers before the read
                await asyncio.gather(*earlier_writes, return_exceptions=True)

            loaded, from_remote = await self._fetch(learner_id)
            for update in pending_load.updates:
                self._apply(loaded, *update)
            self._maps[learner_id] = loaded

            if pending_load.updates:
                logger.info(
                    f"🔁 [ProgressSync] Replayed {len(pending_load.updates)} updates made during load "
                    f"for {learner_id[:20]}"
                )
            if from_remote:
                self._write_cache(learner_id)
        finally:
            if self._loads.get(learner_id) is pending_load:
                del self._loads[learner_id]
            pending_load.done.set()

        return dict(self._records_for(learner_id))

    async def _fetch(self, learner_id: str) -> Tuple[Dict[str, ProgressRecord], bool]:
        """Read the learner's map. Returns (records, True if they came from the remote)."""
        if self.remote is not None:
            try:
                records = await self.remote.fetch_progress()
                logger.info(f"✅ [ProgressSync] Loaded {len(records)} records from remote for {learner_id[:20]}")
                return {record.unit_id: record for record in records}, True
            except RemoteSyncError as e:
                logger.warning(f"⚠️ [ProgressSync] Remote load failed, falling back to cache: {e}")
            except Exception as e:
                logger.error(f"❌ [ProgressSync] Unexpected remote load error: {e}", exc_info=True)

        records = self._read_cache(learner_id)
        logger.info(f"📦 [ProgressSync] Loaded {len(records)} records from cache for {learner_id[:20]}")
        return records, False

    async def load_analytics(self, learner_id: Optional[str] = None) -> ProgressAnalytics:
        """Fetch analytics remotely, or compute them from the cached progress map."""
        learner_id = learner_id or self.learner_id

        if self.remote is not None:
            try:
                payload = await self.remote.fetch_analytics()
                return ProgressAnalytics(
                    total_units=payload.totalChapters,
                    completed_units=payload.completedChapters,
                    total_time_spent=payload.totalTimeSpent,
                    average_score=payload.averageScore,
                    recent_quizzes=payload.recentQuizzes,
                    recent_progress=payload.weeklyProgress,
                    source="remote",
                )
            except RemoteSyncError as e:
                logger.warning(f"⚠️ [ProgressSync] Remote analytics failed, computing from cache: {e}")
            except Exception as e:
                logger.error(f"❌ [ProgressSync] Unexpected analytics error: {e}", exc_info=True)

        records = list(self._read_cache(learner_id).values()) if learner_id else []
        if not records:
            return ProgressAnalytics()

        # Quiz history is never cached, so no score is available offline
        return ProgressAnalytics(
            total_units=len(records),
            completed_units=sum(1 for r in records if r.completed),
            total_time_spent=sum(r.time_spent_seconds for r in records),
            recent_progress=[r.to_wire() for r in records[-RECENT_PROGRESS_LIMIT:]],
            source="cache",
        )

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def update_progress(
        self,
        unit_id: str,
        progress: float,
        completed: bool = False,
        time_spent_delta: int = 0,
    ) -> Union["asyncio.Task[SyncStatus]", SyncStatus]:
        """
        Apply a progress update and schedule its persistence.

        The in-memory record changes before this returns. Time spent is added
        to the current in-memory total and completion never reverts.

        Returns:
            Task resolving to the SyncStatus of this write, or the SyncStatus
            itself when there is no running event loop (cache-only write)
        """
        learner_id = self.learner_id
        update = (unit_id, progress, completed, time_spent_delta)
        record = self._apply(self._records_for(learner_id), *update)

        pending_load = self._loads.get(learner_id) if learner_id else None
        if pending_load is not None:
            pending_load.updates.append(update)
            task = self._track(self._persist_after_load(learner_id, record, pending_load))
        else:
            task = self._track(self._persist(learner_id, record))

        if task is None:
            return self._persist_without_loop(learner_id, record)
        return task

    def record_quiz_result(
        self,
        unit_id: str,
        score: float,
        answers: Optional[Dict[str, Any]] = None,
        time_spent: int = 0,
    ) -> Optional[asyncio.Task]:
        """Send a quiz result to the remote store. Fire-and-forget, no cache fallback."""
        result = QuizResult(unit_id=unit_id, score=score, answers=answers or {}, time_spent=time_spent)
        task = self._track(self._send_quiz_result(result))
        if task is None:
            logger.error(f"❌ [ProgressSync] Quiz result for {unit_id} dropped: no running event loop")
        return task

    async def drain(self):
        """Wait for every in-flight write to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @staticmethod
    def _apply(
        records: Dict[str, ProgressRecord],
        unit_id: str,
        progress: float,
        completed: bool,
        time_spent_delta: int,
    ) -> ProgressRecord:
        previous = records.get(unit_id)
        record = ProgressRecord(
            unit_id=unit_id,
            progress=min(100.0, max(0.0, float(progress))),
            completed=bool(completed) or (previous.completed if previous else False),
            time_spent_seconds=(previous.time_spent_seconds if previous else 0) + max(0, int(time_spent_delta)),
            updated_at=datetime.now(),
        )
        # Records are replaced, never mutated, so a pending write keeps its call's values
        records[unit_id] = record
        return record

    def _track(self, coro) -> Optional[asyncio.Task]:
        """Schedule a write. Returns None, closing the coroutine, when no loop is running."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            return None
        task = loop.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    def _lock_for(self, unit_id: str) -> asyncio.Lock:
        lock = self._unit_locks.get(unit_id)
        if lock is None:
            lock = asyncio.Lock()
            self._unit_locks[unit_id] = lock
        return lock

    async def _persist(self, learner_id: Optional[str], record: ProgressRecord) -> SyncStatus:
        # Locks hand over in FIFO order, so writes for a unit land in call order
        async with self._lock_for(record.unit_id):
            remote_ok = await self._write_remote(record)
            cache_ok = self._write_cache(learner_id)

        if remote_ok:
            status = SyncStatus.SYNCED
        elif cache_ok:
            status = SyncStatus.CACHED_ONLY
        else:
            status = SyncStatus.FAILED
        self.last_status[record.unit_id] = status
        logger.debug(f"💾 [ProgressSync] {record.unit_id}: {status.value}")
        return status

    async def _persist_after_load(
        self,
        learner_id: str,
        record: ProgressRecord,
        pending_load: _PendingLoad,
    ) -> SyncStatus:
        """Persist an update made during a load, as replayed onto the loaded record."""
        await pending_load.done.wait()
        replayed = self._records_for(learner_id).get(record.unit_id, record)
        return await self._persist(learner_id, replayed)

    def _persist_without_loop(self, learner_id: Optional[str], record: ProgressRecord) -> SyncStatus:
        logger.warning(
            f"⚠️ [ProgressSync] No running event loop, {record.unit_id} written to local cache only"
        )
        status = SyncStatus.CACHED_ONLY if self._write_cache(learner_id) else SyncStatus.FAILED
        self.last_status[record.unit_id] = status
        return status

    async def _write_remote(self, record: ProgressRecord) -> bool:
        if self.remote is None:
            return False
        try:
            await self.remote.save_progress(record)
            return True
        except RemoteSyncError as e:
            logger.warning(f"⚠️ [ProgressSync] Remote write failed for {record.unit_id}, keeping local copy: {e}")
        except Exception as e:
            logger.error(f"❌ [ProgressSync] Unexpected remote write error for {record.unit_id}: {e}", exc_info=True)
        return False

    async def _send_quiz_result(self, result: QuizResult) -> bool:
        if self.remote is None:
            logger.error(f"❌ [ProgressSync] Quiz result for {result.unit_id} dropped: no remote API")
            return False
        try:
            await self.remote.save_quiz_result(result)
            logger.info(f"✅ [ProgressSync] Saved quiz result for {result.unit_id} (score {result.score})")
            return True
        except Exception as e:
            logger.error(f"❌ [ProgressSync] Error saving quiz result for {result.unit_id}: {e}")
            return False

    def _read_cache(self, learner_id: str) -> Dict[str, ProgressRecord]:
        if self.cache is None:
            return {}
        try:
            return self.cache.read_progress(learner_id)
        except CacheUnavailableError as e:
            logger.warning(f"⚠️ [ProgressSync] Cache read failed: {e}")
            return {}

    def _write_cache(self, learner_id: Optional[str]) -> bool:
        """Write the learner's full map. Reads memory at write time, so the newest state wins."""
        if self.cache is None or not learner_id:
            return False
        try:
            self.cache.write_progress(learner_id, self._records_for(learner_id))
            return True
        except CacheUnavailableError as e:
            logger.error(f"❌ [ProgressSync] Cache write failed: {e}")
            return False
