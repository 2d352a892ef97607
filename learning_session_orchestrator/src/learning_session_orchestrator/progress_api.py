"""
Remote Progress API Client

Authoritative progress store reached over REST:
- GET  /progress     -> {"progress": [ProgressRecord, ...]}
- POST /progress     <- {chapterId, progress, completed, timeSpent}
- POST /quiz-result  <- {chapterId, score, answers, timeSpent}
- GET  /analytics    -> {"analytics": {...}}

Requests are blocking (requests library) and run in a worker thread so
the event loop stays responsive. Every failure surfaces as RemoteSyncError.
"""

import asyncio
import logging
import os
from typing import Any, Callable, Dict, List, Optional

import requests
from dotenv import load_dotenv
from pydantic import BaseModel, ValidationError

from learning_session_orchestrator.errors import AuthTokenUnavailableError, RemoteSyncError
from learning_session_orchestrator.progress_store import ProgressRecord, QuizResult

load_dotenv()

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], Optional[str]]


# ==================== Wire Models ====================

class ProgressPayload(BaseModel):
    chapterId: str
    progress: float = 0.0
    completed: bool = False
    timeSpent: int = 0
    updated_at: Optional[str] = None


class QuizResultPayload(BaseModel):
    chapterId: str
    score: float
    answers: Dict[str, Any] = {}
    timeSpent: int = 0


class AnalyticsPayload(BaseModel):
    totalChapters: int = 0
    completedChapters: int = 0
    totalTimeSpent: int = 0
    averageScore: float = 0.0
    recentQuizzes: List[Dict[str, Any]] = []
    weeklyProgress: List[Dict[str, Any]] = []


class RemoteProgressAPI:
    """
    Client for the remote progress endpoints.

    Authorization is a bearer token obtained from the auth collaborator
    on every call, so a refreshed session is picked up without rebuilding
    the client.
    """

    def __init__(
        self,
        token_provider: TokenProvider,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize the API client.

        Args:
            token_provider: Callable returning the current access token or None
            base_url: API root (default: PROGRESS_API_URL)
            timeout: Request timeout in seconds (default: PROGRESS_API_TIMEOUT or 10)
            session: Optional requests.Session to reuse connections
        """
        base = base_url or os.getenv("PROGRESS_API_URL")
        if not base:
            raise ValueError("PROGRESS_API_URL must be set in environment or passed as base_url")
        self.base_url = base.rstrip("/")
        self.timeout = timeout if timeout is not None else float(os.getenv("PROGRESS_API_TIMEOUT", "10"))
        self.token_provider = token_provider
        self.session = session or requests.Session()

    def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        token = self.token_provider()
        if not token:
            raise AuthTokenUnavailableError("Not authenticated")

        try:
            response = self.session.request(
                method,
                f"{self.base_url}{path}",
                json=payload,
                headers={
                    "Content-Type": "application/json",
                    "Authorization": f"Bearer {token}",
                },
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            raise RemoteSyncError(f"{method} {path} failed: {e}") from e

        if response.status_code == 401:
            raise AuthTokenUnavailableError("Access token rejected", status_code=401)

        if not response.ok:
            try:
                detail = response.json().get("error") or response.reason
            except ValueError:
                detail = response.reason
            raise RemoteSyncError(
                f"{method} {path} returned {response.status_code}: {detail}",
                status_code=response.status_code,
                retryable=response.status_code >= 500,
            )

        try:
            body = response.json()
        except ValueError as e:
            raise RemoteSyncError(f"{method} {path} returned invalid JSON") from e
        return body if isinstance(body, dict) else {}

    async def _call(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return await asyncio.to_thread(self._request, method, path, payload)

    async def fetch_progress(self) -> List[ProgressRecord]:
        """Fetch every progress record of the authenticated learner."""
        body = await self._call("GET", "/progress")
        items = body.get("progress")
        if not isinstance(items, list):
            raise RemoteSyncError("GET /progress response has no progress list")

        records = []
        for item in items:
            try:
                payload = ProgressPayload.model_validate(item)
            except ValidationError as e:
                logger.warning(f"⚠️ [ProgressAPI] Skipping invalid remote record: {e.error_count()} errors")
                continue
            records.append(ProgressRecord.from_wire(payload.model_dump(exclude_none=True)))
        return records

    async def save_progress(self, record: ProgressRecord):
        payload = ProgressPayload(
            chapterId=record.unit_id,
            progress=record.progress,
            completed=record.completed,
            timeSpent=record.time_spent_seconds,
        )
        await self._call("POST", "/progress", payload.model_dump(exclude_none=True))

    async def save_quiz_result(self, result: QuizResult):
        payload = QuizResultPayload.model_validate(result.to_wire())
        await self._call("POST", "/quiz-result", payload.model_dump())

    async def fetch_analytics(self) -> AnalyticsPayload:
        body = await self._call("GET", "/analytics")
        try:
            return AnalyticsPayload.model_validate(body.get("analytics") or {})
        except ValidationError as e:
            raise RemoteSyncError(f"GET /analytics returned invalid analytics: {e.error_count()} errors") from e
