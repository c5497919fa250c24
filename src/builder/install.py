from __future__ import annotations

import logging
import shlex
from collections.abc import Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from src.builder.polling import SYSTEM_CLOCK, Clock, PollState, wait_for_signal

if TYPE_CHECKING:  # pragma: no cover
    from src.builder.config import BuilderSettings
    from src.builder.workspace import Workspace
    from src.sandbox_backends.base import BackgroundProcess, SandboxHandle
    from src.sandbox_files.bridge import SandboxFile

logger = logging.getLogger(__name__)

DEPENDENCY_DIR = "node_modules"

_LOCKFILES: tuple[tuple[str, str], ...] = (
    ("pnpm-lock.yaml", "pnpm"),
    ("yarn.lock", "yarn"),
    ("package-lock.json", "npm"),
)

# Written by each package manager once it finishes linking node_modules.
INSTALL_MARKERS: tuple[str, ...] = (
    ".package-lock.json",
    ".modules.yaml",
    ".yarn-state.yml",
    ".yarn-integrity",
)


def detect_package_manager(paths: Iterable[str]) -> str:
    names = {p.rsplit("/", 1)[-1] for p in paths if "/" not in p.strip("/")}
    for lockfile, pm in _LOCKFILES:
        if lockfile in names:
            return pm
    return "npm"


def suggest_install_command(files: Iterable[SandboxFile]) -> str:
    pm = detect_package_manager(f.path for f in files if not f.is_folder)
    return f"{pm} install"


def install_commands(package_manager: str) -> list[str]:
    """Plain install first, then one offline-preferring retry."""
    return [
        f"{package_manager} install",
        f"{package_manager} install --prefer-offline",
    ]


@dataclass(frozen=True)
class InstallResult:
    state: PollState
    attempts: int
    command: str
    stderr_tail: str = ""

    @property
    def ok(self) -> bool:
        return self.state is PollState.COMPLETED


async def dependencies_present(handle: SandboxHandle, workspace: Workspace) -> bool:
    entries = await handle.list_files(workspace.join(DEPENDENCY_DIR))
    return bool(entries)


async def _install_finished(
    handle: SandboxHandle, workspace: Workspace, process: BackgroundProcess
) -> bool:
    if process.exit_code == 0:
        return True
    if not await dependencies_present(handle, workspace):
        return False
    for marker in INSTALL_MARKERS:
        if await handle.exists(workspace.join(f"{DEPENDENCY_DIR}/{marker}")):
            return True
    return False


async def _detect_from_workspace(handle: SandboxHandle, workspace: Workspace) -> str:
    entries = await handle.list_files(workspace.path)
    return detect_package_manager(e.name for e in entries if not e.is_dir)


async def install_dependencies(
    handle: SandboxHandle,
    workspace: Workspace,
    *,
    settings: BuilderSettings,
    clock: Clock = SYSTEM_CLOCK,
    package_manager: str | None = None,
) -> InstallResult:
    """Install in the background, polling node_modules for completion.

    Gives up after `settings.install_attempts`; the caller decides whether a
    failed install is fatal.
    """
    pm = package_manager or await _detect_from_workspace(handle, workspace)
    commands = install_commands(pm)[: max(1, settings.install_attempts)]
    result = InstallResult(state=PollState.FAILED, attempts=0, command=commands[0])

    for attempt, cmd in enumerate(commands, start=1):
        logger.info("Installing dependencies in %s (attempt %d): %s", workspace.path, attempt, cmd)
        process = await handle.start_background(
            f"cd {shlex.quote(workspace.path)} && {cmd}", cwd=workspace.path
        )
        outcome = await wait_for_signal(
            check=lambda p=process: _install_finished(handle, workspace, p),
            process=process,
            deadline_s=settings.install_deadline_s,
            interval_s=settings.poll_interval_s,
            clock=clock,
            label=f"install attempt {attempt}",
        )
        result = InstallResult(
            state=outcome.state,
            attempts=attempt,
            command=cmd,
            stderr_tail=outcome.stderr_tail,
        )
        if result.ok:
            return result
        logger.warning(
            "Dependency install attempt %d in %s ended with %s",
            attempt,
            workspace.path,
            outcome.state.value,
        )
    return result
