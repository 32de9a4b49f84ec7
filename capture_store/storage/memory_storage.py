from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from uuid import UUID

from loguru import logger
from pydantic import BaseModel, ConfigDict, computed_field

from capture_store.errors import CapacityExceededError
from capture_store.models import Session
from capture_store.storage.base import Storage
from capture_store.storage.file_storage import FileStorage


class MemoryStorageConfig(BaseModel):
    max_sessions: int = 1000
    auto_cleanup: bool = True
    retention_period: timedelta = timedelta(hours=1)
    max_memory_usage: int = 100 * 1024 * 1024


def _human_size(size: int) -> str:
    value = float(size)
    for unit in ("bytes", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            break
        value /= 1024
    if unit == "bytes":
        return f"{size} bytes"
    return f"{value:.1f} {unit}"


class MemoryStatistics(BaseModel):
    model_config = ConfigDict(frozen=True)

    session_count: int
    estimated_memory_usage: int
    max_sessions: int
    max_memory_usage: int

    @computed_field  # type: ignore[prop-decorator]
    @property
    def memory_usage_ratio(self) -> float:
        if self.max_memory_usage <= 0:
            return 0.0
        return self.estimated_memory_usage / self.max_memory_usage

    @computed_field  # type: ignore[prop-decorator]
    @property
    def session_count_ratio(self) -> float:
        if self.max_sessions <= 0:
            return 0.0
        return self.session_count / self.max_sessions

    @computed_field  # type: ignore[prop-decorator]
    @property
    def human_readable_memory_usage(self) -> str:
        return _human_size(self.estimated_memory_usage)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MemoryStorage(Storage):
    """Bounded in-process store.

    A save that would add a new session beyond ``max_sessions`` is rejected
    with :class:`CapacityExceededError`; nothing is evicted to make room.
    Updating a session that is already stored always succeeds.
    """

    def __init__(
        self,
        config: MemoryStorageConfig | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        super().__init__(worker_name="memory-storage")
        self.config = config or MemoryStorageConfig()
        self._clock = clock
        self._sessions: dict[UUID, Session] = {}
        self._order: list[UUID] = []
        self._accessed: dict[UUID, datetime] = {}

    # -- extras -------------------------------------------------------------

    async def cleanup(self) -> int:
        return await self._run(self._cleanup)

    async def recently_accessed(self, limit: int) -> list[Session]:
        """The ``limit`` sessions with the latest access times, latest first."""
        return await self._run(self._recently_accessed, limit)

    async def statistics(self) -> MemoryStatistics:
        return await self._run(self._statistics)

    async def export_to(self, file_storage: FileStorage) -> None:
        sessions = await self.load_all()
        await file_storage.save_many(sessions)

    async def import_from(self, file_storage: FileStorage, replace_existing: bool = False) -> int:
        sessions = await file_storage.load_all()
        await self._run(self._import, sessions, replace_existing)
        return len(sessions)

    # -- worker-side primitives ---------------------------------------------

    def _put(self, session: Session) -> None:
        is_new = session.id not in self._sessions
        if is_new and len(self._sessions) >= self.config.max_sessions:
            logger.warning(
                "Rejected session {}: store holds {} sessions", session.id, len(self._sessions)
            )
            raise CapacityExceededError(self.config.max_sessions)
        self._sessions[session.id] = session
        self._accessed[session.id] = self._clock()
        if is_new:
            self._order.append(session.id)

    def _save(self, sessions: list[Session]) -> None:
        for session in sessions:
            self._put(session)
        if self.config.auto_cleanup:
            self._cleanup()

    def _load(self, session_id: UUID) -> Session | None:
        session = self._sessions.get(session_id)
        if session is not None:
            self._accessed[session_id] = self._clock()
        return session

    def _load_all(self) -> list[Session]:
        return sorted(self._sessions.values(), key=lambda s: s.start_time, reverse=True)

    def _delete(self, session_id: UUID) -> bool:
        if self._sessions.pop(session_id, None) is None:
            return False
        self._accessed.pop(session_id, None)
        self._order.remove(session_id)
        return True

    def _delete_all(self) -> None:
        self._sessions.clear()
        self._order.clear()
        self._accessed.clear()

    def _count(self) -> int:
        return len(self._sessions)

    def _storage_size(self) -> int:
        return sum(len(s.model_dump_json().encode("utf-8")) for s in self._sessions.values())

    def _cleanup(self) -> int:
        before = len(self._sessions)

        cutoff = self._clock() - self.config.retention_period
        for session_id in [i for i, seen in self._accessed.items() if seen < cutoff]:
            self._delete(session_id)

        # oldest inserted first, regardless of access
        excess = len(self._order) - self.config.max_sessions
        for session_id in self._order[:max(excess, 0)]:
            self._delete(session_id)

        removed = before - len(self._sessions)
        if removed:
            logger.debug("Memory cleanup removed {} session(s)", removed)
        return removed

    def _recently_accessed(self, limit: int) -> list[Session]:
        if limit <= 0:
            return []
        ranked = sorted(self._accessed.items(), key=lambda item: item[1], reverse=True)
        return [self._sessions[session_id] for session_id, _ in ranked[:limit]]

    def _statistics(self) -> MemoryStatistics:
        return MemoryStatistics(
            session_count=len(self._sessions),
            estimated_memory_usage=self._storage_size(),
            max_sessions=self.config.max_sessions,
            max_memory_usage=self.config.max_memory_usage,
        )

    def _import(self, sessions: list[Session], replace_existing: bool) -> None:
        if replace_existing:
            self._delete_all()
        self._save(sessions)

    def __repr__(self) -> str:
        return f"MemoryStorage(max_sessions={self.config.max_sessions})"
