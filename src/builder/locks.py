from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator

from src.builder.errors import BuilderError, ErrorKind, RETRY_HINT

logger = logging.getLogger(__name__)


class ProjectLocks:
    """Advisory per-project lock for operations that touch the working directory.

    Callers wait up to `wait_s` for a running operation to finish, then get a
    retryable timeout error instead of racing on the same sandbox.
    """

    def __init__(self, *, wait_s: float = 30.0) -> None:
        self._wait_s = float(wait_s)
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, str] = {}
        # Holders plus waiters per project; the lock is dropped when this hits zero.
        self._users: dict[str, int] = {}

    def _lock(self, project_id: str) -> asyncio.Lock:
        lock = self._locks.get(project_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[project_id] = lock
        return lock

    def is_busy(self, project_id: str) -> bool:
        lock = self._locks.get(project_id)
        return bool(lock and lock.locked())

    def holder(self, project_id: str) -> str | None:
        return self._holders.get(project_id)

    @contextlib.asynccontextmanager
    async def hold(self, project_id: str, *, operation: str) -> AsyncIterator[None]:
        lock = self._lock(project_id)
        self._users[project_id] = self._users.get(project_id, 0) + 1
        try:
            if lock.locked():
                logger.info(
                    "Project %s busy with %s; %s waits up to %.0fs",
                    project_id,
                    self._holders.get(project_id),
                    operation,
                    self._wait_s,
                )
            try:
                await asyncio.wait_for(lock.acquire(), timeout=max(self._wait_s, 0.001))
            except asyncio.TimeoutError as exc:
                raise BuilderError(
                    ErrorKind.TIMEOUT,
                    f"Another build step is still running for this project. {RETRY_HINT}",
                    detail=f"{operation} blocked by {self._holders.get(project_id)}",
                ) from exc
            self._holders[project_id] = operation
            try:
                yield
            finally:
                self._holders.pop(project_id, None)
                lock.release()
        finally:
            self._users[project_id] -= 1
            if self._users[project_id] == 0:
                del self._users[project_id]
                self._locks.pop(project_id, None)
