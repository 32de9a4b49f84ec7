from __future__ import annotations

import asyncio
import functools
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from typing import Any, TypeVar
from uuid import UUID

from capture_store.filters import Predicate
from capture_store.models import Session

T = TypeVar("T")


class Storage(ABC):
    """Asynchronous session store.

    Each instance owns one worker thread. Every public coroutine submits a
    single job to it, so operations on one instance run one at a time in
    submission order. Results and errors come back through the awaited
    future on the caller's event loop.

    Subclasses implement the blocking ``_``-prefixed primitives; they always
    run on the worker thread and need no locking of their own.
    """

    def __init__(self, worker_name: str = "storage") -> None:
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=worker_name)

    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, functools.partial(func, *args))

    # -- public contract ----------------------------------------------------

    async def save(self, session: Session) -> None:
        await self._run(self._save, [session])

    async def save_many(self, sessions: Iterable[Session]) -> None:
        """Save in order; a failure part-way leaves earlier sessions saved."""
        await self._run(self._save, list(sessions))

    async def load(self, session_id: UUID) -> Session | None:
        return await self._run(self._load, session_id)

    async def load_all(self) -> list[Session]:
        """All sessions, newest ``start_time`` first."""
        return await self._run(self._load_all)

    async def load_matching(self, predicate: Predicate) -> list[Session]:
        return await self._run(self._load_matching, predicate)

    async def delete(self, session_id: UUID) -> None:
        await self._run(self._delete, session_id)

    async def delete_all(self) -> None:
        await self._run(self._delete_all)

    async def delete_matching(self, predicate: Predicate) -> int:
        return await self._run(self._delete_matching, predicate)

    async def count(self) -> int:
        return await self._run(self._count)

    async def storage_size(self) -> int:
        """Approximate size of the stored sessions, in bytes."""
        return await self._run(self._storage_size)

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.close()

    # -- worker-side primitives ---------------------------------------------

    @abstractmethod
    def _save(self, sessions: list[Session]) -> None: ...

    @abstractmethod
    def _load(self, session_id: UUID) -> Session | None: ...

    @abstractmethod
    def _load_all(self) -> list[Session]: ...

    @abstractmethod
    def _delete(self, session_id: UUID) -> bool: ...

    @abstractmethod
    def _delete_all(self) -> None: ...

    @abstractmethod
    def _count(self) -> int: ...

    @abstractmethod
    def _storage_size(self) -> int: ...

    def _load_matching(self, predicate: Predicate) -> list[Session]:
        return [s for s in self._load_all() if predicate.matches(s)]

    def _delete_matching(self, predicate: Predicate) -> int:
        return sum(1 for s in self._load_matching(predicate) if self._delete(s.id))
