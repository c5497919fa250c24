from __future__ import annotations

import hashlib
import posixpath
from dataclasses import dataclass

from src.projects.store import Project, slugify


@dataclass(frozen=True)
class Workspace:
    """Where one project lives inside a sandbox."""

    project_id: str
    key: str
    parent: str

    @property
    def dirname(self) -> str:
        return self.key

    @property
    def path(self) -> str:
        return posixpath.join(self.parent, self.key)

    @property
    def dev_log_path(self) -> str:
        return f"/tmp/builder-dev-{self.key}.log"

    @property
    def dev_pid_path(self) -> str:
        return f"/tmp/builder-dev-{self.key}.pid"

    def join(self, rel: str) -> str:
        return posixpath.join(self.path, rel)


def workspace_for(project: Project, *, sandbox_root: str) -> Workspace:
    # Name for readability, id hash for uniqueness.
    suffix = hashlib.sha256(project.project_id.encode()).hexdigest()[:10]
    key = f"{slugify(project.name)[:40].rstrip('-')}-{suffix}"
    return Workspace(project_id=project.project_id, key=key, parent=sandbox_root.rstrip("/") or "/")
