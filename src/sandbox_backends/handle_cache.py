"""Optional cache of live sandbox handles keyed by project id.

The cache is an explicit component handed to `SandboxResolver`; nothing in
the package keeps a process-wide instance. Entries expire after `ttl_s`
seconds without access and are also dropped whenever the caller's stored
sandbox id no longer matches the cached one.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from .base import SandboxHandle

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    sandbox_id: str
    handle: SandboxHandle
    last_access: float


class SandboxHandleCache:
    def __init__(
        self, *, ttl_s: float, clock: Callable[[], float] = time.monotonic
    ) -> None:
        self.ttl_s = float(ttl_s)
        self._clock = clock
        self._lock = threading.RLock()
        self._entries: dict[str, _Entry] = {}

    def get(self, project_id: str, sandbox_id: str | None) -> SandboxHandle | None:
        """Return the cached handle if it is fresh and matches `sandbox_id`."""
        if not sandbox_id:
            return None
        now = self._clock()
        with self._lock:
            entry = self._entries.get(project_id)
            if entry is None:
                return None
            if entry.sandbox_id != sandbox_id or now - entry.last_access > self.ttl_s:
                logger.debug("Evicting cached sandbox handle for project %s", project_id)
                self._entries.pop(project_id, None)
                return None
            entry.last_access = now
            return entry.handle

    def put(self, project_id: str, handle: SandboxHandle) -> None:
        with self._lock:
            self._entries[project_id] = _Entry(
                sandbox_id=handle.sandbox_id, handle=handle, last_access=self._clock()
            )

    def evict(self, project_id: str) -> bool:
        with self._lock:
            return self._entries.pop(project_id, None) is not None

    def evict_sandbox(self, sandbox_id: str) -> int:
        with self._lock:
            stale = [pid for pid, e in self._entries.items() if e.sandbox_id == sandbox_id]
            for pid in stale:
                self._entries.pop(pid, None)
            return len(stale)

    def cleanup_idle(self) -> int:
        """Drop entries idle longer than ttl_s. Call periodically."""
        cutoff = self._clock() - self.ttl_s
        with self._lock:
            idle = [pid for pid, e in self._entries.items() if e.last_access < cutoff]
            for pid in idle:
                self._entries.pop(pid, None)
        if idle:
            logger.info("Dropped %d idle sandbox handle(s)", len(idle))
        return len(idle)

    def project_ids(self) -> list[str]:
        with self._lock:
            return list(self._entries.keys())
