"""Deadline-bounded poll loop for long-running sandbox work.

The loop has exactly four states. Each tick checks the completion signal,
then the background process, then the single deadline, then sleeps for at
most one interval (never past the deadline).
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from src.builder.errors import Outcome, best_effort

if TYPE_CHECKING:  # pragma: no cover
    from src.sandbox_backends.base import BackgroundProcess

logger = logging.getLogger(__name__)


class PollState(str, Enum):
    WAITING = "waiting"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


@dataclass(frozen=True)
class Clock:
    now: Callable[[], float] = time.monotonic
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep)


SYSTEM_CLOCK = Clock()


@dataclass(frozen=True)
class PollOutcome:
    state: PollState
    elapsed_s: float
    exit_code: int | None = None
    stderr_tail: str = ""
    kill: Outcome | None = None

    @property
    def completed(self) -> bool:
        return self.state is PollState.COMPLETED


async def kill_quietly(process: BackgroundProcess, *, label: str = "background process") -> Outcome:
    """Kill a background process; the sandbox may already be gone."""
    return await best_effort(f"kill {label}", process.kill())


async def wait_for_signal(
    *,
    check: Callable[[], Awaitable[bool]],
    deadline_s: float,
    interval_s: float,
    process: BackgroundProcess | None = None,
    clock: Clock = SYSTEM_CLOCK,
    label: str = "poll",
) -> PollOutcome:
    """Poll `check` until it passes, the process fails, or the deadline hits.

    A process that exits 0 without the signal is still waited on: generators
    can exit before their last files land. On timeout the process is killed.
    """
    start = clock.now()
    deadline = start + max(0.0, float(deadline_s))
    state = PollState.WAITING
    exit_code: int | None = None

    while state is PollState.WAITING:
        if await check():
            state = PollState.COMPLETED
            break
        if process is not None:
            exit_code = process.exit_code
            if exit_code is not None and exit_code != 0:
                state = PollState.FAILED
                break
        now = clock.now()
        if now >= deadline:
            state = PollState.TIMED_OUT
            break
        await clock.sleep(min(float(interval_s), deadline - now))

    elapsed = clock.now() - start
    kill: Outcome | None = None
    if state is PollState.TIMED_OUT and process is not None:
        kill = await kill_quietly(process, label=label)
    stderr_tail = process.stderr_tail if process is not None else ""
    logger.debug("%s finished: state=%s elapsed=%.1fs", label, state.value, elapsed)
    return PollOutcome(
        state=state,
        elapsed_s=elapsed,
        exit_code=exit_code,
        stderr_tail=stderr_tail,
        kill=kill,
    )
