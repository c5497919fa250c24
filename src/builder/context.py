from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from src.builder.errors import BuilderError
from src.sandbox_files.bridge import SandboxFile, carry_over
from src.templates.registry import FrameworkSpec, framework_spec, list_framework_specs

if TYPE_CHECKING:  # pragma: no cover
    from src.projects.store import FileStore, Project, ProjectStore
    from src.sandbox_backends.resolver import ResolvedSandbox

logger = logging.getLogger(__name__)


async def load_project(projects: ProjectStore, project_id: str) -> Project:
    project = await projects.get_project(project_id)
    if project is None:
        raise BuilderError.not_found("Project not found.")
    return project


def require_framework(project: Project) -> FrameworkSpec:
    spec = framework_spec(project.framework)
    if spec is None:
        supported = ", ".join(s.framework for s in list_framework_specs())
        raise BuilderError.validation(
            f"Unsupported framework: {project.framework!r}. Choose one of: {supported}."
        )
    return spec


async def remember_sandbox(
    projects: ProjectStore, project: Project, resolved: ResolvedSandbox
) -> None:
    """Persist a changed sandbox id right away so the next call can reconnect."""
    if resolved.sandbox_id != project.sandbox_id:
        logger.info(
            "Project %s now uses sandbox %s (was %s)",
            project.project_id,
            resolved.sandbox_id,
            project.sandbox_id,
        )
        await projects.update_project_sandbox_id(project.project_id, resolved.sandbox_id)


async def persist_snapshot(
    files: FileStore, project_id: str, snapshot: list[SandboxFile], skipped: list[str]
) -> list[SandboxFile]:
    """Replace the stored manifest, keeping stored rows for skipped binary paths."""
    if skipped:
        stored = await files.get_files(project_id)
        snapshot = carry_over(snapshot, stored, skipped)
        logger.info(
            "Keeping stored rows for %d skipped file(s) of project %s", len(skipped), project_id
        )
    await files.replace_files(project_id, snapshot)
    return snapshot
