from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from src.builder.commands import CommandGateway, CommandRunResult
from src.builder.config import BuilderSettings, handle_cache_enabled
from src.builder.context import load_project
from src.builder.errors import Outcome
from src.builder.files import FileAction, FileActionResult, ProjectFiles
from src.builder.locks import ProjectLocks
from src.builder.logo import LogoFetcher, fetch_logo
from src.builder.polling import SYSTEM_CLOCK, Clock
from src.builder.preview import PreviewOrchestrator, PreviewResult
from src.builder.preview_logs import PreviewLogTail
from src.builder.scaffold import ScaffoldOrchestrator, ScaffoldResult
from src.sandbox_backends.handle_cache import SandboxHandleCache
from src.sandbox_backends.resolver import SandboxResolver

if TYPE_CHECKING:  # pragma: no cover
    from src.projects.store import FileStore, ProjectStore
    from src.sandbox_backends.base import SandboxProvider
    from src.sandbox_files.bridge import SandboxFile

logger = logging.getLogger(__name__)


class BuilderService:
    """Wires the orchestrators to one set of stores, provider and locks."""

    def __init__(
        self,
        *,
        projects: ProjectStore,
        files: FileStore,
        provider: SandboxProvider,
        settings: BuilderSettings | None = None,
        cache: SandboxHandleCache | None = None,
        clock: Clock = SYSTEM_CLOCK,
        logo_fetcher: LogoFetcher = fetch_logo,
    ) -> None:
        self.settings = settings or BuilderSettings()
        self.projects = projects
        self.files = files
        self.resolver = SandboxResolver(
            provider, cache=cache, keepalive_s=self.settings.sandbox_keepalive_s
        )
        self.locks = ProjectLocks(wait_s=self.settings.lock_wait_s)
        common = {
            "projects": projects,
            "files": files,
            "resolver": self.resolver,
            "settings": self.settings,
        }
        self.scaffolder = ScaffoldOrchestrator(
            **common, locks=self.locks, clock=clock, logo_fetcher=logo_fetcher
        )
        self.previews = PreviewOrchestrator(**common, locks=self.locks, clock=clock)
        self.commands = CommandGateway(**common, locks=self.locks, clock=clock)
        self.project_files = ProjectFiles(**common)

    @classmethod
    def from_env(cls) -> BuilderService:
        from src.db.hasura_client import hasura_client_from_env
        from src.projects.store import HasuraFileStore, HasuraProjectStore
        from src.sandbox_backends.factory import get_provider

        settings = BuilderSettings.from_env()
        client = hasura_client_from_env()
        cache = (
            SandboxHandleCache(ttl_s=settings.handle_cache_ttl_s)
            if handle_cache_enabled()
            else None
        )
        return cls(
            projects=HasuraProjectStore(client),
            files=HasuraFileStore(client),
            provider=get_provider(settings),
            settings=settings,
            cache=cache,
        )

    async def scaffold(self, project_id: str) -> ScaffoldResult:
        return await self.scaffolder.scaffold(project_id)

    async def start_preview(self, project_id: str) -> PreviewResult:
        return await self.previews.start_preview(project_id)

    async def get_preview_error_tail(self, project_id: str) -> PreviewLogTail | None:
        return await self.previews.get_error_tail(project_id)

    async def run_command(self, project_id: str, command: str) -> CommandRunResult:
        return await self.commands.run(project_id, command)

    async def list_files(self, project_id: str) -> list[SandboxFile]:
        return await self.project_files.list_files(project_id)

    async def read_file(self, project_id: str, path: str) -> SandboxFile:
        return await self.project_files.read_file(project_id, path)

    async def apply_file_action(
        self, project_id: str, action: FileAction | str, path: str, content: str | None = None
    ) -> FileActionResult:
        return await self.project_files.apply_action(project_id, action, path, content)

    async def pause_sandbox(self, project_id: str) -> Outcome:
        project = await load_project(self.projects, project_id)
        if not project.sandbox_id:
            return Outcome.failure("no sandbox")
        return await self.resolver.pause(project.sandbox_id)

    async def teardown(self, project_id: str, *, delete_files: bool = False) -> Outcome:
        """Kill the project's sandbox and forget it; optionally drop stored files."""
        await load_project(self.projects, project_id)
        async with self.locks.hold(project_id, operation="teardown"):
            project = await load_project(self.projects, project_id)
            killed = Outcome.success("no sandbox")
            if project.sandbox_id:
                killed = await self.resolver.kill(project.sandbox_id)
                await self.projects.update_project_sandbox_id(project_id, None)
                await self.projects.update_project_preview(project_id, None, None)
            if delete_files:
                await self.files.delete_all_files(project_id)
            logger.info(
                "Tore down project %s (sandbox killed=%s, files deleted=%s)",
                project_id,
                killed.ok,
                delete_files,
            )
            return killed
