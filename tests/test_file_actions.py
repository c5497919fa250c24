from __future__ import annotations

import asyncio

import pytest

from src.builder.config import BuilderSettings
from src.builder.errors import BuilderError, ErrorKind
from src.builder.files import ProjectFiles
from src.builder.workspace import workspace_for
from src.sandbox_backends.resolver import SandboxResolver
from src.sandbox_files.bridge import SandboxFile
from tests.sandbox_fakes import FakeProvider, MemoryFileStore, MemoryProjectStore, make_project


def _fixture(sandbox_id: str | None = "sbx-1"):
    project = make_project(sandbox_id=sandbox_id)
    provider = FakeProvider()
    handle = provider.add("sbx-1")
    files = MemoryFileStore({"p1": [SandboxFile(path="src/index.ts", content="old")]})
    settings = BuilderSettings()
    pf = ProjectFiles(
        projects=MemoryProjectStore(project),
        files=files,
        resolver=SandboxResolver(provider),
        settings=settings,
    )
    ws = workspace_for(project, sandbox_root=settings.sandbox_root)
    return pf, provider, handle, files, ws


def test_update_writes_store_and_live_sandbox() -> None:
    pf, _provider, handle, files, ws = _fixture()

    result = asyncio.run(pf.apply_action("p1", "update", "/src/index.ts", "new"))

    assert result.path == "src/index.ts"
    assert result.sandbox_sync.ok
    assert files.files["p1"][0].content == "new"
    assert handle.text(ws.join("src/index.ts")) == "new"


def test_delete_removes_from_store_and_sandbox() -> None:
    pf, _provider, handle, files, ws = _fixture()
    handle.put(ws.join("src/index.ts"), "old")

    asyncio.run(pf.apply_action("p1", "delete", "src/index.ts"))

    assert files.paths("p1") == []
    assert ws.join("src/index.ts") not in handle.files


def test_missing_sandbox_only_updates_store() -> None:
    pf, provider, _handle, files, _ws = _fixture(sandbox_id="sbx-gone")

    result = asyncio.run(pf.apply_action("p1", "create", "src/new.ts", "x"))

    assert not result.sandbox_sync.ok
    assert "src/new.ts" in files.paths("p1")
    assert "create" not in provider.call_names()


@pytest.mark.parametrize(
    ("action", "path", "content"),
    [
        ("rename", "src/a.ts", "x"),
        ("create", "../etc/passwd", "x"),
        ("create", "node_modules/react/index.js", "x"),
        ("update", "src/index.ts", ""),
    ],
)
def test_invalid_actions_are_rejected(action: str, path: str, content: str) -> None:
    pf, _provider, _handle, files, _ws = _fixture()
    with pytest.raises(BuilderError) as ei:
        asyncio.run(pf.apply_action("p1", action, path, content))
    assert ei.value.kind is ErrorKind.VALIDATION
    assert files.files["p1"][0].content == "old"


def test_read_file_finds_stored_content() -> None:
    pf, *_ = _fixture()
    assert asyncio.run(pf.read_file("p1", "/src/index.ts")).content == "old"
    with pytest.raises(BuilderError) as ei:
        asyncio.run(pf.read_file("p1", "src/missing.ts"))
    assert ei.value.kind is ErrorKind.NOT_FOUND
