from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from src.builder.errors import Outcome, best_effort

if TYPE_CHECKING:  # pragma: no cover
    from .base import SandboxHandle, SandboxProvider
    from .handle_cache import SandboxHandleCache

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedSandbox:
    handle: SandboxHandle
    sandbox_id: str
    is_new: bool


class SandboxResolver:
    """Turns a possibly-stale stored sandbox id into a live handle.

    Reconnect failures of any sort fall back to provisioning. `is_new` tells
    the caller the instance has no project files and must be re-seeded; the
    caller also persists the new id.
    """

    def __init__(
        self,
        provider: SandboxProvider,
        *,
        cache: SandboxHandleCache | None = None,
        keepalive_s: int | None = None,
    ) -> None:
        self._provider = provider
        self._cache = cache
        self._keepalive_s = keepalive_s

    async def resolve(
        self, project_id: str, stored_sandbox_id: str | None
    ) -> ResolvedSandbox:
        if stored_sandbox_id:
            if self._cache is not None:
                cached = self._cache.get(project_id, stored_sandbox_id)
                if cached is not None:
                    return ResolvedSandbox(cached, stored_sandbox_id, is_new=False)
            handle = await self.reconnect(stored_sandbox_id)
            if handle is not None:
                if self._cache is not None:
                    self._cache.put(project_id, handle)
                return ResolvedSandbox(handle, stored_sandbox_id, is_new=False)

        handle = await self._provider.create()
        logger.info(
            "Provisioned sandbox %s for project %s (previous=%s)",
            handle.sandbox_id,
            project_id,
            stored_sandbox_id,
        )
        if self._cache is not None:
            self._cache.put(project_id, handle)
        return ResolvedSandbox(handle, handle.sandbox_id, is_new=True)

    async def reconnect(self, sandbox_id: str) -> SandboxHandle | None:
        """Connect to an existing instance without ever provisioning one."""
        try:
            handle = await self._provider.connect(sandbox_id)
        except Exception as exc:
            logger.info("Reconnect to sandbox %s failed: %s", sandbox_id, exc)
            return None
        if self._keepalive_s:
            await best_effort(
                f"keepalive for sandbox {sandbox_id}", handle.keepalive(self._keepalive_s)
            )
        return handle

    async def pause(self, sandbox_id: str) -> Outcome:
        if self._cache is not None:
            self._cache.evict_sandbox(sandbox_id)
        return await best_effort(f"pause sandbox {sandbox_id}", self._provider.pause(sandbox_id))

    async def kill(self, sandbox_id: str) -> Outcome:
        if self._cache is not None:
            self._cache.evict_sandbox(sandbox_id)
        return await best_effort(f"kill sandbox {sandbox_id}", self._provider.kill(sandbox_id))
