"""
Progress Store

Progress records and the local durable cache.

The cache mirrors the remote store per learner under the key
`progress_{learner_id}`, holding the JSON-serialized full progress map.
Every write replaces the whole map.
"""

import json
import logging
import os
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from learning_session_orchestrator.errors import CacheUnavailableError

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_CACHE_DIR = Path.home() / ".learning_session"
DEFAULT_CACHE_DB = DEFAULT_CACHE_DIR / "progress_cache.db"


class SyncStatus(str, Enum):
    """Durability reached by a single progress write."""
    SYNCED = "synced"            # remote accepted the write
    CACHED_ONLY = "cached-only"  # remote failed, local cache written
    FAILED = "failed"            # neither durable, in-memory only


@dataclass
class ProgressRecord:
    """Learner progress for one content unit (chapter or course)."""
    unit_id: str
    progress: float = 0.0
    completed: bool = False
    time_spent_seconds: int = 0
    updated_at: Optional[datetime] = None

    def to_wire(self) -> Dict[str, Any]:
        """Shape used by the remote API and the local cache."""
        data = {
            "chapterId": self.unit_id,
            "progress": self.progress,
            "completed": self.completed,
            "timeSpent": self.time_spent_seconds,
        }
        if self.updated_at:
            data["updated_at"] = self.updated_at.isoformat()
        return data

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> "ProgressRecord":
        updated_at = data.get("updated_at")
        return cls(
            unit_id=str(data["chapterId"]),
            progress=float(data.get("progress") or 0.0),
            completed=bool(data.get("completed", False)),
            time_spent_seconds=int(data.get("timeSpent") or 0),
            updated_at=datetime.fromisoformat(updated_at) if updated_at else None,
        )


@dataclass
class QuizResult:
    """Outcome of one quiz attempt. Supplementary history, never cached."""
    unit_id: str
    score: float
    answers: Dict[str, Any] = field(default_factory=dict)
    time_spent: int = 0

    def to_wire(self) -> Dict[str, Any]:
        return {
            "chapterId": self.unit_id,
            "score": self.score,
            "answers": self.answers,
            "timeSpent": self.time_spent,
        }


def cache_key(learner_id: str) -> str:
    return f"progress_{learner_id}"


def serialize_progress(records: Dict[str, ProgressRecord]) -> str:
    return json.dumps(
        {unit_id: record.to_wire() for unit_id, record in records.items()},
        ensure_ascii=False,
    )


def deserialize_progress(raw: str) -> Dict[str, ProgressRecord]:
    """Parse a cached map, skipping entries that no longer parse."""
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("Cached progress is not a mapping")

    records = {}
    for unit_id, item in data.items():
        try:
            record = ProgressRecord.from_wire({"chapterId": unit_id, **item})
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"⚠️ [ProgressCache] Skipping malformed cached record {unit_id}: {e}")
            continue
        records[record.unit_id] = record
    return records


class ProgressCache:
    """
    Durable key-value cache for progress maps.

    Subclasses provide raw string storage; this class owns the key
    format and JSON serialization.
    """

    def _get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def _set(self, key: str, value: str):
        raise NotImplementedError

    def read_progress(self, learner_id: str) -> Dict[str, ProgressRecord]:
        """
        Read the cached progress map for a learner.

        Returns an empty map when nothing is cached or the entry is corrupt.

        Raises:
            CacheUnavailableError: If the backing store cannot be read
        """
        raw = self._get(cache_key(learner_id))
        if not raw:
            return {}
        try:
            return deserialize_progress(raw)
        except (json.JSONDecodeError, ValueError) as e:
            logger.warning(f"⚠️ [ProgressCache] Corrupt cache entry for {learner_id}: {e}")
            return {}

    def write_progress(self, learner_id: str, records: Dict[str, ProgressRecord]):
        """
        Replace the cached progress map for a learner.

        Raises:
            CacheUnavailableError: If the backing store cannot be written
        """
        self._set(cache_key(learner_id), serialize_progress(records))


class InMemoryProgressCache(ProgressCache):
    """Process-local cache. Lost on restart."""

    def __init__(self):
        self._store: Dict[str, str] = {}

    def _get(self, key: str) -> Optional[str]:
        return self._store.get(key)

    def _set(self, key: str, value: str):
        self._store[key] = value

    def keys(self) -> List[str]:
        return list(self._store.keys())


class SQLiteProgressCache(ProgressCache):
    """
    Cache stored in a local SQLite file.

    Kept separate from any content database so progress survives
    content updates.
    """

    def __init__(self, db_path: Optional[Path] = None):
        """
        Initialize the SQLite cache.

        Args:
            db_path: Path to the cache file (default: PROGRESS_CACHE_PATH or
                ~/.learning_session/progress_cache.db)
        """
        env_path = os.getenv("PROGRESS_CACHE_PATH")
        self.db_path = Path(db_path or env_path or DEFAULT_CACHE_DB)
        self._ensure_database()

    def _ensure_database(self):
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self.db_path))
            try:
                conn.executescript("""
                    CREATE TABLE IF NOT EXISTS kv_store (
                        key TEXT PRIMARY KEY,
                        value TEXT NOT NULL,
                        updated_at TEXT
                    );
                """)
                conn.commit()
            finally:
                conn.close()
        except (OSError, sqlite3.Error) as e:
            raise CacheUnavailableError(f"Cannot open progress cache at {self.db_path}: {e}") from e

    def _get_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        return conn

    def _get(self, key: str) -> Optional[str]:
        try:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT value FROM kv_store WHERE key = ?",
                    (key,)
                ).fetchone()
                return row["value"] if row else None
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise CacheUnavailableError(f"Cache read failed for {key}: {e}") from e

    def _set(self, key: str, value: str):
        try:
            conn = self._get_connection()
            try:
                now = datetime.now().isoformat()
                conn.execute(
                    """INSERT INTO kv_store (key, value, updated_at)
                       VALUES (?, ?, ?)
                       ON CONFLICT(key) DO UPDATE SET
                         value = excluded.value,
                         updated_at = excluded.updated_at""",
                    (key, value, now)
                )
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise CacheUnavailableError(f"Cache write failed for {key}: {e}") from e
