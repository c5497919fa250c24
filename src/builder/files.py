from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from src.builder.context import load_project
from src.builder.errors import BuilderError, Outcome, best_effort
from src.builder.workspace import workspace_for
from src.sandbox_files.bridge import SandboxFile
from src.sandbox_files.policy import require_mutation_allowed, sanitize_relative_path

if TYPE_CHECKING:  # pragma: no cover
    from src.builder.config import BuilderSettings
    from src.projects.store import FileStore, Project, ProjectStore
    from src.sandbox_backends.resolver import SandboxResolver

logger = logging.getLogger(__name__)


class FileAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class FileActionResult:
    path: str
    action: FileAction
    sandbox_sync: Outcome

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "action": self.action.value,
            "synced": self.sandbox_sync.ok,
        }


def _checked_path(path: str) -> str:
    try:
        return require_mutation_allowed(path)
    except (ValueError, PermissionError) as exc:
        raise BuilderError.validation(f"Invalid file path: {exc}") from exc


class ProjectFiles:
    """File reads and edits against the durable store, mirrored to a live sandbox.

    The mirror only reconnects; it never provisions a sandbox just to write a file.
    """

    def __init__(
        self,
        *,
        projects: ProjectStore,
        files: FileStore,
        resolver: SandboxResolver,
        settings: BuilderSettings,
    ) -> None:
        self._projects = projects
        self._files = files
        self._resolver = resolver
        self._settings = settings

    async def list_files(self, project_id: str) -> list[SandboxFile]:
        await load_project(self._projects, project_id)
        return await self._files.get_files(project_id)

    async def read_file(self, project_id: str, path: str) -> SandboxFile:
        try:
            rel = sanitize_relative_path(path)
        except ValueError as exc:
            raise BuilderError.validation(f"Invalid file path: {exc}") from exc
        for f in await self.list_files(project_id):
            if f.path == rel and not f.is_folder:
                return f
        raise BuilderError.not_found("File not found.")

    async def apply_action(
        self,
        project_id: str,
        action: FileAction | str,
        path: str,
        content: str | None = None,
    ) -> FileActionResult:
        try:
            act = FileAction(action)
        except ValueError as exc:
            raise BuilderError.validation(f"Unknown file action: {action!r}") from exc
        rel = _checked_path(path)
        if act is FileAction.UPDATE and not content:
            raise BuilderError.validation("Refusing to overwrite a file with empty content.")

        project = await load_project(self._projects, project_id)
        if act is FileAction.DELETE:
            await self._files.delete_file(project_id, rel)
        else:
            await self._files.upsert_file(project_id, SandboxFile(path=rel, content=content or ""))

        sync = await self._mirror(project, act, rel, content or "")
        return FileActionResult(path=rel, action=act, sandbox_sync=sync)

    async def _mirror(
        self, project: Project, act: FileAction, rel: str, content: str
    ) -> Outcome:
        if not project.sandbox_id:
            return Outcome.failure("no sandbox")
        handle = await self._resolver.reconnect(project.sandbox_id)
        if handle is None:
            return Outcome.failure("sandbox not reachable")
        target = workspace_for(project, sandbox_root=self._settings.sandbox_root).join(rel)
        if act is FileAction.DELETE:
            return await best_effort(f"remove {rel} from sandbox", handle.remove_file(target))
        return await best_effort(f"write {rel} to sandbox", handle.write_file(target, content))
