from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from src.builder.context import (
    load_project,
    persist_snapshot,
    remember_sandbox,
    require_framework,
)
from src.builder.errors import (
    BuilderError,
    ErrorKind,
    Outcome,
    best_effort,
    process_failure,
    to_builder_error,
)
from src.builder.install import InstallResult, install_dependencies
from src.builder.logo import LogoFetcher, fetch_logo, write_logo
from src.builder.polling import SYSTEM_CLOCK, Clock, PollState, kill_quietly, wait_for_signal
from src.builder.toolkit import ensure_toolkit
from src.builder.workspace import Workspace, workspace_for
from src.projects.store import Project, ProjectStatus
from src.sandbox_files.bridge import SandboxFile, file_count, restore, snapshot

if TYPE_CHECKING:  # pragma: no cover
    from src.builder.config import BuilderSettings
    from src.builder.locks import ProjectLocks
    from src.projects.store import FileStore, ProjectStore
    from src.sandbox_backends.base import BackgroundProcess, SandboxHandle
    from src.sandbox_backends.resolver import SandboxResolver
    from src.templates.registry import FrameworkSpec

logger = logging.getLogger(__name__)

MODE_FRESH = "fresh"
MODE_SEED = "seed"
MODE_RECOVERY = "recovery"


@dataclass(frozen=True)
class ScaffoldResult:
    project_id: str
    sandbox_id: str
    status: ProjectStatus
    mode: str
    file_count: int
    toolkit: Outcome
    install: InstallResult | None = None
    logo: Outcome | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_id": self.project_id,
            "status": self.status.value,
            "mode": self.mode,
            "file_count": self.file_count,
            "toolkit_ok": self.toolkit.ok,
            "install_ok": self.install.ok if self.install is not None else None,
            "logo_ok": self.logo.ok if self.logo is not None else None,
        }


class ScaffoldOrchestrator:
    """Takes a project from `scaffolding` to `ready` (or `error`).

    Flow: pick generator, get a sandbox, detect an existing/partial project
    (recovery), else copy the seed or run the generator and install, then
    init the UI toolkit, snapshot and persist, write the logo.
    """

    def __init__(
        self,
        *,
        projects: ProjectStore,
        files: FileStore,
        resolver: SandboxResolver,
        settings: BuilderSettings,
        locks: ProjectLocks,
        clock: Clock = SYSTEM_CLOCK,
        logo_fetcher: LogoFetcher = fetch_logo,
    ) -> None:
        self._projects = projects
        self._files = files
        self._resolver = resolver
        self._settings = settings
        self._locks = locks
        self._clock = clock
        self._logo_fetcher = logo_fetcher

    async def scaffold(self, project_id: str) -> ScaffoldResult:
        project = await load_project(self._projects, project_id)
        try:
            spec = require_framework(project)
        except BuilderError:
            await self._mark_error(project_id)
            raise

        async with self._locks.hold(project_id, operation="scaffold"):
            # Re-read: whoever held the lock may have replaced the sandbox.
            project = await load_project(self._projects, project_id)
            await self._projects.update_project_status(project_id, ProjectStatus.SCAFFOLDING)
            try:
                result = await self._run(project, spec)
            except Exception as exc:
                err = to_builder_error(exc)
                logger.error(
                    "Scaffold failed for project %s (kind=%s): %s",
                    project_id,
                    err.kind.value,
                    err.detail,
                    exc_info=err.kind is ErrorKind.UNKNOWN,
                )
                await self._mark_error(project_id)
                raise err from exc
            await self._projects.update_project_status(project_id, ProjectStatus.READY)
            logger.info(
                "Scaffold finished for project %s (%s, %d files)",
                project_id,
                result.mode,
                result.file_count,
            )
            return result

    async def _mark_error(self, project_id: str) -> Outcome:
        return await best_effort(
            f"mark project {project_id} as error",
            self._projects.update_project_status(project_id, ProjectStatus.ERROR),
        )

    async def _run(self, project: Project, spec: FrameworkSpec) -> ScaffoldResult:
        resolved = await self._resolver.resolve(project.project_id, project.sandbox_id)
        await remember_sandbox(self._projects, project, resolved)
        handle = resolved.handle
        ws = workspace_for(project, sandbox_root=self._settings.sandbox_root)

        if resolved.is_new:
            stored = await self._files.get_files(project.project_id)
            if file_count(stored):
                written = await restore(handle, stored, ws.path)
                logger.info("Restored %d stored files before scaffold of %s", written, ws.path)

        install: InstallResult | None = None
        if await self._existing_project(handle, ws, spec):
            mode = MODE_RECOVERY
            logger.info("Existing project found in %s; recovering", ws.path)
        elif await self._seed_available(handle, spec):
            mode = MODE_SEED
            await self._copy_seed(handle, ws)
        else:
            mode = MODE_FRESH
            await self._generate(handle, ws, spec)
            install = await install_dependencies(
                handle, ws, settings=self._settings, clock=self._clock
            )
            if not install.ok:
                logger.warning(
                    "Dependency install for %s ended %s after %d attempt(s); "
                    "preview start will install on demand",
                    ws.path,
                    install.state.value,
                    install.attempts,
                )

        toolkit = await ensure_toolkit(handle, ws, spec, settings=self._settings)

        files, skipped = await self._snapshot_with_retry(handle, ws)
        files = await persist_snapshot(self._files, project.project_id, files, skipped)

        logo: Outcome | None = None
        if project.logo_url:
            logo = await write_logo(handle, ws, spec, project.logo_url, fetcher=self._logo_fetcher)

        return ScaffoldResult(
            project_id=project.project_id,
            sandbox_id=resolved.sandbox_id,
            status=ProjectStatus.READY,
            mode=mode,
            file_count=file_count(files),
            toolkit=toolkit,
            install=install,
            logo=logo,
        )

    async def _existing_project(
        self, handle: SandboxHandle, ws: Workspace, spec: FrameworkSpec
    ) -> bool:
        entries = await handle.list_files(ws.path)
        markers = {"package.json", *spec.config_markers}
        for e in entries:
            if e.is_dir and e.name in ("src", "app"):
                return True
            if not e.is_dir and e.name in markers:
                return True
        return False

    async def _seed_available(self, handle: SandboxHandle, spec: FrameworkSpec) -> bool:
        if not (self._settings.seed_enabled and spec.seed_supported):
            return False
        return await handle.exists(f"{self._settings.seed_dir}/package.json")

    async def _copy_seed(self, handle: SandboxHandle, ws: Workspace) -> None:
        logger.info("Copying seed template %s into %s", self._settings.seed_dir, ws.path)
        res = await handle.run_command(
            f"mkdir -p {shlex.quote(ws.path)} && "
            f"cp -a {shlex.quote(self._settings.seed_dir)}/. {shlex.quote(ws.path)}/",
            timeout_s=self._settings.command_timeout_s,
        )
        if not res.ok:
            raise process_failure(
                "Copying the project template failed",
                res.stderr or res.stdout,
                secrets=(handle.sandbox_id,),
            )

    async def _generate(self, handle: SandboxHandle, ws: Workspace, spec: FrameworkSpec) -> None:
        await handle.run_command(
            f"mkdir -p {shlex.quote(ws.parent)}",
            timeout_s=self._settings.short_command_timeout_s,
        )
        cmd = spec.generate(ws.dirname)
        logger.info("Generating %s project in %s: %s", spec.framework, ws.path, cmd)
        process = await handle.start_background(cmd, cwd=ws.parent)
        outcome = await wait_for_signal(
            check=lambda: handle.exists(ws.join("package.json")),
            process=process,
            deadline_s=self._settings.generate_deadline_s,
            interval_s=self._settings.poll_interval_s,
            clock=self._clock,
            label=f"generate {spec.framework}",
        )
        if outcome.state is PollState.TIMED_OUT:
            raise BuilderError.timeout(
                "Project setup did not complete in time.",
                detail=f"no package.json in {ws.path} after {outcome.elapsed_s:.0f}s",
            )
        if outcome.state is PollState.FAILED:
            raise process_failure(
                "Project setup failed",
                outcome.stderr_tail,
                secrets=(handle.sandbox_id,),
            )
        remaining = self._settings.generate_deadline_s - outcome.elapsed_s
        await self._settle_generator(process, ws, remaining_s=remaining)

    async def _settle_generator(
        self, process: BackgroundProcess, ws: Workspace, *, remaining_s: float
    ) -> None:
        # package.json lands first; give the generator the rest of its budget to finish.
        async def _exited() -> bool:
            return process.exit_code is not None

        outcome = await wait_for_signal(
            check=_exited,
            deadline_s=max(0.0, remaining_s),
            interval_s=self._settings.poll_interval_s,
            clock=self._clock,
            label="generator settle",
        )
        if outcome.state is PollState.TIMED_OUT:
            logger.warning("Generator for %s still running at deadline; killing it", ws.path)
            await kill_quietly(process, label="generator")
        elif process.exit_code not in (None, 0):
            logger.warning(
                "Generator for %s exited %s after writing package.json: %s",
                ws.path,
                process.exit_code,
                process.stderr_tail[-1000:],
            )

    async def _snapshot_with_retry(
        self, handle: SandboxHandle, ws: Workspace
    ) -> tuple[list[SandboxFile], list[str]]:
        skipped: list[str] = []
        files = await snapshot(handle, ws.path, skipped=skipped)
        if file_count(files) == 0:
            logger.warning(
                "Snapshot of %s found no files; retrying in %.1fs",
                ws.path,
                self._settings.snapshot_retry_delay_s,
            )
            await self._clock.sleep(self._settings.snapshot_retry_delay_s)
            skipped = []
            files = await snapshot(handle, ws.path, skipped=skipped)
        if file_count(files) == 0:
            raise BuilderError(
                ErrorKind.EMPTY_SNAPSHOT,
                "Project files could not be read back from the sandbox. "
                "Previously saved files were left unchanged; please try again.",
                detail=f"empty snapshot of {ws.path} after retry",
            )
        return files, skipped
