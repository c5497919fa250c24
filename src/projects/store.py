from __future__ import annotations

import asyncio
import logging
import re
import threading
import uuid
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

from src.sandbox_files.bridge import SandboxFile

if TYPE_CHECKING:  # pragma: no cover
    from src.db.hasura_client import HasuraClient


_SLUG_RE = re.compile(r"[^a-z0-9]+")


def slugify(name: str) -> str:
    """Lowercase, path-safe form of a project name (at most 50 chars)."""
    s = _SLUG_RE.sub("-", (name or "").lower()).strip("-")
    return s[:50].rstrip("-") or "project"


def _sql_str(value: str) -> str:
    return "'" + (value or "").replace("'", "''") + "'"


def _sql_opt_str(value: str | None) -> str:
    return "NULL" if value is None else _sql_str(value)


def _sql_opt_int(value: int | None) -> str:
    return "NULL" if value is None else str(int(value))


_schema_ready = False
_schema_lock = threading.Lock()
_log = logging.getLogger(__name__)


class ProjectStatus(str, Enum):
    SCAFFOLDING = "scaffolding"
    READY = "ready"
    ERROR = "error"
    LISTED = "listed"


@dataclass(frozen=True)
class Project:
    project_id: str
    name: str
    framework: str
    status: ProjectStatus = ProjectStatus.SCAFFOLDING
    sandbox_id: str | None = None
    preview_url: str | None = None
    preview_port: int | None = None
    logo_url: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


_SCHEMA_SQL = """
CREATE SCHEMA IF NOT EXISTS builder_meta;
CREATE TABLE IF NOT EXISTS builder_meta.projects (
  project_id text PRIMARY KEY,
  name text NOT NULL,
  framework text NOT NULL DEFAULT 'nextjs',
  status text NOT NULL DEFAULT 'scaffolding',
  sandbox_id text NULL,
  preview_url text NULL,
  preview_port integer NULL,
  logo_url text NULL,
  created_at timestamptz NOT NULL DEFAULT now(),
  updated_at timestamptz NOT NULL DEFAULT now()
);
CREATE TABLE IF NOT EXISTS builder_meta.project_files (
  project_id text NOT NULL
    REFERENCES builder_meta.projects(project_id) ON DELETE CASCADE,
  path text NOT NULL,
  content text NOT NULL DEFAULT '',
  is_folder boolean NOT NULL DEFAULT false,
  updated_at timestamptz NOT NULL DEFAULT now(),
  PRIMARY KEY (project_id, path)
);
""".strip()


def ensure_builder_schema(client: HasuraClient) -> None:
    global _schema_ready
    if _schema_ready:
        return
    with _schema_lock:
        if _schema_ready:
            return
        _log.info("Running builder schema migration (once per process)")
        client.run_sql(_SCHEMA_SQL)
        _schema_ready = True


def _opt_str(v: Any) -> str | None:
    return str(v) if v is not None else None


def _sql_bool(v: Any) -> bool:
    return str(v).strip().lower() in ("t", "true", "1")


def _parse_status(v: Any) -> ProjectStatus:
    try:
        return ProjectStatus(str(v))
    except ValueError:
        return ProjectStatus.ERROR


_PROJECT_COLUMNS = (
    "project_id, name, framework, status, sandbox_id, preview_url, preview_port, "
    "logo_url, created_at, updated_at"
)


def _row_to_project(r: dict[str, Any]) -> Project:
    return Project(
        project_id=str(r["project_id"]),
        name=str(r["name"]),
        framework=str(r.get("framework") or "nextjs"),
        status=_parse_status(r.get("status")),
        sandbox_id=_opt_str(r.get("sandbox_id")),
        preview_url=_opt_str(r.get("preview_url")),
        preview_port=int(r["preview_port"]) if r.get("preview_port") is not None else None,
        logo_url=_opt_str(r.get("logo_url")),
        created_at=_opt_str(r.get("created_at")),
        updated_at=_opt_str(r.get("updated_at")),
    )


def create_project(
    client: HasuraClient,
    *,
    name: str,
    framework: str,
    logo_url: str | None = None,
    project_id: str | None = None,
) -> Project:
    ensure_builder_schema(client)
    pid = project_id or str(uuid.uuid4())
    values = ", ".join(
        [
            _sql_str(pid),
            _sql_str(name),
            _sql_str(framework),
            _sql_str(ProjectStatus.SCAFFOLDING.value),
            _sql_opt_str(logo_url),
        ]
    )
    client.run_sql(
        "INSERT INTO builder_meta.projects (project_id, name, framework, status, logo_url) "
        f"VALUES ({values}) ON CONFLICT DO NOTHING;"
    )
    p = get_project(client, project_id=pid)
    if p is None:
        raise RuntimeError("failed to create project")
    return p


def get_project(client: HasuraClient, *, project_id: str) -> Project | None:
    ensure_builder_schema(client)
    rows = client.select(
        f"SELECT {_PROJECT_COLUMNS} FROM builder_meta.projects "
        f"WHERE project_id = {_sql_str(project_id)} LIMIT 1;"
    )
    if not rows:
        return None
    return _row_to_project(rows[0])


def _update_project(client: HasuraClient, *, project_id: str, assignments: str) -> None:
    ensure_builder_schema(client)
    client.run_sql(
        f"UPDATE builder_meta.projects SET {assignments}, updated_at = now() "
        f"WHERE project_id = {_sql_str(project_id)};"
    )


def update_project_status(
    client: HasuraClient, *, project_id: str, status: ProjectStatus
) -> None:
    _update_project(
        client, project_id=project_id, assignments=f"status = {_sql_str(status.value)}"
    )


def update_project_sandbox_id(
    client: HasuraClient, *, project_id: str, sandbox_id: str | None
) -> None:
    _update_project(
        client, project_id=project_id, assignments=f"sandbox_id = {_sql_opt_str(sandbox_id)}"
    )


def update_project_preview(
    client: HasuraClient, *, project_id: str, url: str | None, port: int | None
) -> None:
    _update_project(
        client,
        project_id=project_id,
        assignments=f"preview_url = {_sql_opt_str(url)}, preview_port = {_sql_opt_int(port)}",
    )


def get_files(client: HasuraClient, *, project_id: str) -> list[SandboxFile]:
    ensure_builder_schema(client)
    rows = client.select(
        "SELECT path, content, is_folder FROM builder_meta.project_files "
        f"WHERE project_id = {_sql_str(project_id)} ORDER BY path;"
    )
    return [
        SandboxFile(
            path=str(r["path"]),
            content=str(r.get("content") or ""),
            is_folder=_sql_bool(r.get("is_folder")),
        )
        for r in rows
    ]


_INSERT_FILES = "INSERT INTO builder_meta.project_files (project_id, path, content, is_folder)"


def _file_values(project_id: str, f: SandboxFile) -> str:
    return (
        f"({_sql_str(project_id)}, {_sql_str(f.path)}, {_sql_str(f.content)}, "
        f"{'true' if f.is_folder else 'false'})"
    )


def replace_files(
    client: HasuraClient, *, project_id: str, files: Sequence[SandboxFile]
) -> None:
    """Full replace of a project's file rows in one transaction."""
    ensure_builder_schema(client)
    stmts = [
        f"DELETE FROM builder_meta.project_files WHERE project_id = {_sql_str(project_id)};"
    ]
    # Duplicate paths would violate the primary key and roll back the whole replace.
    unique: dict[str, SandboxFile] = {f.path: f for f in files}
    if unique:
        values = ",\n".join(_file_values(project_id, f) for f in unique.values())
        stmts.append(f"{_INSERT_FILES}\nVALUES {values};")
    client.run_sql("\n".join(stmts))


def upsert_file(client: HasuraClient, *, project_id: str, file: SandboxFile) -> None:
    ensure_builder_schema(client)
    client.run_sql(
        f"{_INSERT_FILES} VALUES {_file_values(project_id, file)} "
        "ON CONFLICT (project_id, path) DO UPDATE SET content = EXCLUDED.content, "
        "is_folder = EXCLUDED.is_folder, updated_at = now();"
    )


def delete_file(client: HasuraClient, *, project_id: str, path: str) -> None:
    ensure_builder_schema(client)
    client.run_sql(
        "DELETE FROM builder_meta.project_files "
        f"WHERE project_id = {_sql_str(project_id)} AND path = {_sql_str(path)};"
    )


def delete_all_files(client: HasuraClient, *, project_id: str) -> None:
    ensure_builder_schema(client)
    client.run_sql(
        f"DELETE FROM builder_meta.project_files WHERE project_id = {_sql_str(project_id)};"
    )


class ProjectStore(Protocol):
    async def get_project(self, project_id: str) -> Project | None: ...

    async def update_project_status(self, project_id: str, status: ProjectStatus) -> None: ...

    async def update_project_sandbox_id(self, project_id: str, sandbox_id: str | None) -> None: ...

    async def update_project_preview(
        self, project_id: str, url: str | None, port: int | None
    ) -> None: ...


class FileStore(Protocol):
    async def get_files(self, project_id: str) -> list[SandboxFile]: ...

    async def replace_files(self, project_id: str, files: Sequence[SandboxFile]) -> None: ...

    async def upsert_file(self, project_id: str, file: SandboxFile) -> None: ...

    async def delete_file(self, project_id: str, path: str) -> None: ...

    async def delete_all_files(self, project_id: str) -> None: ...


class HasuraProjectStore:
    """Async facade over the Hasura helpers; calls run in a worker thread."""

    def __init__(self, client: HasuraClient) -> None:
        self._client = client

    async def get_project(self, project_id: str) -> Project | None:
        return await asyncio.to_thread(get_project, self._client, project_id=project_id)

    async def update_project_status(self, project_id: str, status: ProjectStatus) -> None:
        await asyncio.to_thread(
            update_project_status, self._client, project_id=project_id, status=status
        )

    async def update_project_sandbox_id(self, project_id: str, sandbox_id: str | None) -> None:
        await asyncio.to_thread(
            update_project_sandbox_id, self._client, project_id=project_id, sandbox_id=sandbox_id
        )

    async def update_project_preview(
        self, project_id: str, url: str | None, port: int | None
    ) -> None:
        await asyncio.to_thread(
            update_project_preview, self._client, project_id=project_id, url=url, port=port
        )


class HasuraFileStore:
    def __init__(self, client: HasuraClient) -> None:
        self._client = client

    async def get_files(self, project_id: str) -> list[SandboxFile]:
        return await asyncio.to_thread(get_files, self._client, project_id=project_id)

    async def replace_files(self, project_id: str, files: Sequence[SandboxFile]) -> None:
        await asyncio.to_thread(
            replace_files, self._client, project_id=project_id, files=list(files)
        )

    async def upsert_file(self, project_id: str, file: SandboxFile) -> None:
        await asyncio.to_thread(upsert_file, self._client, project_id=project_id, file=file)

    async def delete_file(self, project_id: str, path: str) -> None:
        await asyncio.to_thread(delete_file, self._client, project_id=project_id, path=path)

    async def delete_all_files(self, project_id: str) -> None:
        await asyncio.to_thread(delete_all_files, self._client, project_id=project_id)
