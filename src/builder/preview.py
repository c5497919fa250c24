from __future__ import annotations

import logging
import shlex
from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse

from src.builder.context import load_project, remember_sandbox, require_framework
from src.builder.errors import (
    RETRY_HINT,
    BuilderError,
    ErrorKind,
    Outcome,
    best_effort,
    process_failure,
    to_builder_error,
)
from src.builder.install import InstallResult, dependencies_present, install_dependencies
from src.builder.polling import SYSTEM_CLOCK, Clock, PollState, wait_for_signal
from src.builder.preview_logs import PreviewLogTail, sanitize_log_tail
from src.builder.workspace import Workspace, workspace_for
from src.sandbox_files.bridge import file_count, restore

if TYPE_CHECKING:  # pragma: no cover
    from src.builder.config import BuilderSettings
    from src.builder.locks import ProjectLocks
    from src.projects.store import FileStore, Project, ProjectStore
    from src.sandbox_backends.base import SandboxHandle
    from src.sandbox_backends.resolver import SandboxResolver
    from src.templates.registry import FrameworkSpec

logger = logging.getLogger(__name__)


def candidate_ports(last_port: int | None, ports: Sequence[int]) -> list[int]:
    """Last-known port first (when inside the range), then the range, no repeats."""
    out: list[int] = []
    if ports and last_port is not None and min(ports) <= int(last_port) <= max(ports):
        out.append(int(last_port))
    for p in ports:
        if p not in out:
            out.append(p)
    return out


def _public_url(host: str) -> str:
    return host if host.startswith("http") else f"https://{host}"


@dataclass(frozen=True)
class PreviewResult:
    preview_url: str
    preview_port: int
    responding: bool
    sandbox_id: str
    restored_files: int = 0
    install: InstallResult | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "previewUrl": self.preview_url,
            "previewPort": self.preview_port,
            "responding": self.responding,
        }


class PreviewOrchestrator:
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

    async def start_preview(self, project_id: str) -> PreviewResult:
        project = await load_project(self._projects, project_id)
        spec = require_framework(project)
        async with self._locks.hold(project_id, operation="preview"):
            project = await load_project(self._projects, project_id)
            try:
                return await self._start(project, spec)
            except Exception as exc:
                err = to_builder_error(exc)
                logger.error(
                    "Preview start failed for project %s (kind=%s): %s",
                    project_id,
                    err.kind.value,
                    err.detail,
                    exc_info=err.kind is ErrorKind.UNKNOWN,
                )
                raise err from exc

    async def _start(self, project: Project, spec: FrameworkSpec) -> PreviewResult:
        resolved = await self._resolver.resolve(project.project_id, project.sandbox_id)
        await remember_sandbox(self._projects, project, resolved)
        handle = resolved.handle
        ws = workspace_for(project, sandbox_root=self._settings.sandbox_root)

        restored = 0
        if resolved.is_new:
            stored = await self._files.get_files(project.project_id)
            if not file_count(stored):
                raise BuilderError.not_found("Project has no files yet. Run scaffold first.")
            restored = await restore(handle, stored, ws.path)
            logger.info("Restored %d files into fresh sandbox for %s", restored, ws.path)
            need_install = True
        else:
            need_install = not await dependencies_present(handle, ws)

        install: InstallResult | None = None
        if need_install:
            install = await install_dependencies(
                handle, ws, settings=self._settings, clock=self._clock
            )
            if not install.ok:
                raise self._install_error(install, handle)

        await self._kill_dev_server(handle, ws)

        ports = candidate_ports(project.preview_port, self._settings.preview_ports)
        port, responding = await self._launch_first_responding(handle, ws, spec, ports)

        url = _public_url(await handle.expose_port(port))
        await self._projects.update_project_preview(project.project_id, url, port)
        logger.info(
            "Preview for project %s on port %d (responding=%s)",
            project.project_id,
            port,
            responding,
        )
        return PreviewResult(
            preview_url=url,
            preview_port=port,
            responding=responding,
            sandbox_id=resolved.sandbox_id,
            restored_files=restored,
            install=install,
        )

    def _install_error(self, install: InstallResult, handle: SandboxHandle) -> BuilderError:
        if install.state is PollState.TIMED_OUT:
            return BuilderError(
                ErrorKind.TIMEOUT,
                f"Installing dependencies was interrupted. {RETRY_HINT}",
                detail=f"install timed out after {install.attempts} attempt(s)",
            )
        return process_failure(
            "Installing dependencies failed",
            install.stderr_tail,
            secrets=(handle.sandbox_id,),
            retryable=True,
        )

    async def _kill_dev_server(self, handle: SandboxHandle, ws: Workspace) -> Outcome:
        pid = shlex.quote(ws.dev_pid_path)
        cmd = (
            f"if [ -f {pid} ]; then "
            f'kill -TERM -- -"$(cat {pid})" 2>/dev/null || kill -TERM "$(cat {pid})" 2>/dev/null; '
            f"rm -f {pid}; fi; true"
        )

        async def _kill() -> None:
            res = await handle.run_command(cmd, timeout_s=self._settings.short_command_timeout_s)
            if not res.ok:
                raise RuntimeError(res.stderr or f"exit {res.exit_code}")

        return await best_effort("kill stale dev server", _kill())

    async def _port_responds(self, handle: SandboxHandle, port: int) -> bool:
        res = await handle.run_command(
            f"curl -s -o /dev/null -w '%{{http_code}}' --max-time 3 http://127.0.0.1:{int(port)}/",
            timeout_s=self._settings.short_command_timeout_s,
        )
        code = (res.stdout or "").strip()[-3:]
        try:
            status = int(code)
        except ValueError:
            return False
        return 200 <= status < 400

    async def _launch(
        self, handle: SandboxHandle, ws: Workspace, spec: FrameworkSpec, port: int
    ) -> None:
        cmd = (
            f"setsid nohup sh -c {shlex.quote(spec.dev(port))} "
            f"> {shlex.quote(ws.dev_log_path)} 2>&1 < /dev/null & "
            f"echo $! > {shlex.quote(ws.dev_pid_path)}"
        )
        res = await handle.run_command(
            cmd, cwd=ws.path, timeout_s=self._settings.short_command_timeout_s
        )
        if not res.ok:
            raise process_failure(
                "Starting the dev server failed",
                res.stderr or res.stdout,
                secrets=(handle.sandbox_id,),
            )

    async def _launch_first_responding(
        self,
        handle: SandboxHandle,
        ws: Workspace,
        spec: FrameworkSpec,
        ports: list[int],
    ) -> tuple[int, bool]:
        s = self._settings
        busy: set[int] = set()
        for port in ports:
            if await self._port_responds(handle, port):
                logger.info("Port %d already answers for another process; skipping", port)
                busy.add(port)
                continue
            await self._launch(handle, ws, spec, port)
            outcome = await wait_for_signal(
                check=lambda p=port: self._port_responds(handle, p),
                deadline_s=s.port_probe_attempts * s.port_probe_interval_s,
                interval_s=s.port_probe_interval_s,
                clock=self._clock,
                label=f"probe port {port}",
            )
            if outcome.completed:
                return port, True
            logger.warning("Dev server did not answer on port %d; trying next port", port)
            await self._kill_dev_server(handle, ws)

        # Nothing answered: start on the first free candidate and let the client keep polling.
        fallback = next((p for p in ports if p not in busy), ports[0])
        await self._launch(handle, ws, spec, fallback)
        return fallback, False

    async def get_error_tail(self, project_id: str) -> PreviewLogTail | None:
        """Sanitized dev-server log tail. Never provisions or mutates anything."""
        project = await load_project(self._projects, project_id)
        if not project.sandbox_id:
            return None
        handle = await self._resolver.reconnect(project.sandbox_id)
        if handle is None:
            return None
        ws = workspace_for(project, sandbox_root=self._settings.sandbox_root)
        try:
            data = await handle.read_file(ws.dev_log_path)
        except FileNotFoundError:
            return None
        except Exception as exc:
            logger.warning("Reading dev log for project %s failed: %s", project_id, exc)
            return None
        preview_host = urlparse(project.preview_url).hostname if project.preview_url else None
        return sanitize_log_tail(
            data.decode("utf-8", errors="replace"),
            max_chars=self._settings.log_tail_chars,
            secrets=(handle.sandbox_id, preview_host),
        )
