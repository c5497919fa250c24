from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from src.builder.context import (
    load_project,
    persist_snapshot,
    remember_sandbox,
    require_framework,
)
from src.builder.errors import BuilderError, ErrorKind, redact, to_builder_error
from src.builder.install import install_dependencies
from src.builder.polling import SYSTEM_CLOCK, Clock
from src.builder.toolkit import ensure_toolkit
from src.builder.workspace import workspace_for
from src.sandbox_files.bridge import file_count, restore, snapshot

if TYPE_CHECKING:  # pragma: no cover
    from src.builder.config import BuilderSettings
    from src.builder.locks import ProjectLocks
    from src.projects.store import FileStore, Project, ProjectStore
    from src.sandbox_backends.resolver import SandboxResolver
    from src.templates.registry import FrameworkSpec

logger = logging.getLogger(__name__)

_ARGS = r"[\w\s@./-]"

ALLOWED_COMMAND_RE = re.compile(
    rf"^(?:pnpm|npm)\s+install(?:\s+{_ARGS}+)?$"
    rf"|^(?:pnpm|npm)\s+(?:add|install|run)\s+{_ARGS}+$"
    rf"|^pnpm\s+(?:dlx|exec)\s+{_ARGS}+$"
    rf"|^npx\s+{_ARGS}+$"
    rf"|^(?:pnpm|npm)\s+(?:list|why|outdated)(?:\s+{_ARGS}*)?$",
    re.IGNORECASE,
)

# Checked before the allow-list, so a regex gap there cannot let these through.
FORBIDDEN_COMMAND_RE = re.compile(r"[;&|`$<>\r\n]|\.\.")

TOOLKIT_ADD_RE = re.compile(r"^(?:pnpm\s+dlx|npx)\s+shadcn@?\w*\s+add\s+", re.IGNORECASE)

MAX_COMMAND_CHARS = 500
_MAX_OUTPUT_CHARS = 20_000


def validate_command(command: str) -> str:
    cmd = (command or "").strip()
    if not cmd:
        raise BuilderError.validation("Command is required.")
    if len(cmd) > MAX_COMMAND_CHARS:
        raise BuilderError.validation("Command is too long.")
    if FORBIDDEN_COMMAND_RE.search(cmd):
        raise BuilderError.validation(
            "Command contains characters that are not allowed "
            "(; & | ` $ < > or '..')."
        )
    if not ALLOWED_COMMAND_RE.match(cmd):
        raise BuilderError.validation(
            "Only package manager commands are allowed: npm/pnpm add, install, run, "
            "pnpm dlx/exec, npx, and npm/pnpm list, why, outdated."
        )
    return cmd


@dataclass(frozen=True)
class CommandRunResult:
    stdout: str
    stderr: str
    exit_code: int
    persisted_files: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"stdout": self.stdout, "stderr": self.stderr, "exitCode": self.exit_code}


class CommandGateway:
    """Runs allow-listed package-manager commands in the project's working dir."""

    def __init__(
        self,
        *,
        projects: ProjectStore,
        files: FileStore,
        resolver: SandboxResolver,
        settings: BuilderSettings,
        locks: ProjectLocks,
        clock: Clock = SYSTEM_CLOCK,
    ) -> None:
        self._projects = projects
        self._files = files
        self._resolver = resolver
        self._settings = settings
        self._locks = locks
        self._clock = clock

    async def run(self, project_id: str, command: str) -> CommandRunResult:
        cmd = validate_command(command)
        project = await load_project(self._projects, project_id)
        spec = require_framework(project)
        async with self._locks.hold(project_id, operation="command"):
            project = await load_project(self._projects, project_id)
            try:
                return await self._run(project, spec, cmd)
            except Exception as exc:
                err = to_builder_error(exc)
                logger.error(
                    "Command failed for project %s (kind=%s): %s",
                    project_id,
                    err.kind.value,
                    err.detail,
                    exc_info=err.kind is ErrorKind.UNKNOWN,
                )
                raise err from exc

    async def _run(self, project: Project, spec: FrameworkSpec, cmd: str) -> CommandRunResult:
        resolved = await self._resolver.resolve(project.project_id, project.sandbox_id)
        await remember_sandbox(self._projects, project, resolved)
        handle = resolved.handle
        ws = workspace_for(project, sandbox_root=self._settings.sandbox_root)
        secrets = (handle.sandbox_id,)

        if resolved.is_new:
            stored = await self._files.get_files(project.project_id)
            if file_count(stored):
                await restore(handle, stored, ws.path)
                install = await install_dependencies(
                    handle, ws, settings=self._settings, clock=self._clock
                )
                if not install.ok:
                    logger.warning(
                        "Install before command ended %s for %s", install.state.value, ws.path
                    )

        if spec.toolkit_init_command and TOOLKIT_ADD_RE.match(cmd):
            toolkit = await ensure_toolkit(handle, ws, spec, settings=self._settings)
            if not toolkit.ok:
                return CommandRunResult(
                    stdout="",
                    stderr=f"UI toolkit initialization failed ({toolkit.reason}).",
                    exit_code=1,
                )

        logger.info("Running command for project %s: %s", project.project_id, cmd)
        res = await handle.run_command(cmd, cwd=ws.path, timeout_s=self._settings.command_timeout_s)

        persisted: int | None = None
        if res.ok:
            skipped: list[str] = []
            files = await snapshot(handle, ws.path, skipped=skipped)
            if file_count(files):
                await persist_snapshot(self._files, project.project_id, files, skipped)
                persisted = file_count(files)
            else:
                logger.warning("Snapshot after command was empty for %s; not persisting", ws.path)

        return CommandRunResult(
            stdout=redact(res.stdout, secrets=secrets, max_chars=_MAX_OUTPUT_CHARS),
            stderr=redact(res.stderr, secrets=secrets, max_chars=_MAX_OUTPUT_CHARS),
            exit_code=res.exit_code,
            persisted_files=persisted,
        )
