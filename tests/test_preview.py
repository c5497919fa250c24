from __future__ import annotations

import asyncio
from dataclasses import replace

import pytest

from src.builder.config import BuilderSettings
from src.builder.errors import BuilderError, ErrorKind
from src.builder.locks import ProjectLocks
from src.builder.preview import PreviewOrchestrator, candidate_ports
from src.builder.preview_logs import build_preview_fix_prompt, sanitize_log_tail
from src.builder.workspace import workspace_for
from src.sandbox_backends.resolver import SandboxResolver
from src.sandbox_files.bridge import SandboxFile
from tests.sandbox_fakes import (
    FakeClock,
    FakeHandle,
    FakeProcess,
    FakeProvider,
    MemoryFileStore,
    MemoryProjectStore,
    install_writes_node_modules,
    make_project,
    script_dev_server,
)

SETTINGS = BuilderSettings(
    poll_interval_s=1,
    install_deadline_s=10,
    preview_ports=(3000, 3001, 3002),
    port_probe_attempts=3,
    port_probe_interval_s=1,
)

STORED = [
    SandboxFile(path="package.json", content='{"scripts": {"dev": "next dev"}}'),
    SandboxFile(path="src", is_folder=True),
    SandboxFile(path="src/app/page.tsx", content="export default function Page() {}"),
]


def _fixture(project=None, stored=None, *, dev_server=False):
    project = project or make_project(sandbox_id="sbx-1")
    ws = workspace_for(project, sandbox_root=SETTINGS.sandbox_root)

    def _configure(h: FakeHandle) -> None:
        h.on_background(r"npm install", install_writes_node_modules(ws))
        if dev_server:
            script_dev_server(h)

    provider = FakeProvider(configure=_configure)
    handle = provider.add("sbx-1")
    projects = MemoryProjectStore(project)
    files = MemoryFileStore(stored)
    orch = PreviewOrchestrator(
        projects=projects,
        files=files,
        resolver=SandboxResolver(provider),
        settings=SETTINGS,
        locks=ProjectLocks(wait_s=0.01),
        clock=FakeClock().clock,
    )
    return orch, provider, handle, projects, ws


def test_candidate_ports_puts_last_port_first() -> None:
    assert candidate_ports(3002, [3000, 3001, 3002]) == [3002, 3000, 3001]
    assert candidate_ports(8080, [3000, 3001]) == [3000, 3001]
    assert candidate_ports(None, [3000, 3001]) == [3000, 3001]


def test_reused_sandbox_without_dependencies_installs_once() -> None:
    orch, provider, handle, projects, ws = _fixture()
    handle.put(ws.join("package.json"), "{}")
    script_dev_server(handle)

    first = asyncio.run(orch.start_preview("p1"))
    second = asyncio.run(orch.start_preview("p1"))

    installs = [c for c, _ in handle.background if "npm install" in c]
    assert len(installs) == 1
    assert first.install is not None and first.install.ok
    assert second.install is None
    assert provider.call_names() == ["connect", "connect"]
    assert first.responding
    assert projects.projects["p1"].preview_url == "https://3000-sbx-1.e2b.app"
    assert projects.projects["p1"].preview_port == 3000


def test_new_sandbox_restores_stored_files_before_launch() -> None:
    project = make_project(sandbox_id="sbx-expired")
    orch, provider, _handle, projects, ws = _fixture(project, {"p1": STORED}, dev_server=True)

    result = asyncio.run(orch.start_preview("p1"))

    new = provider.handles["sbx-new-1"]
    assert result.sandbox_id == "sbx-new-1"
    assert result.restored_files == 2
    assert new.text(ws.join("src/app/page.tsx")).startswith("export default")
    assert projects.projects["p1"].sandbox_id == "sbx-new-1"
    assert result.preview_url == "https://3000-sbx-new-1.e2b.app"


def test_new_sandbox_without_stored_files_is_not_found() -> None:
    orch, _provider, _handle, _projects, _ws = _fixture(make_project(sandbox_id=None))
    with pytest.raises(BuilderError) as ei:
        asyncio.run(orch.start_preview("p1"))
    assert ei.value.kind is ErrorKind.NOT_FOUND


def test_busy_port_is_skipped_and_last_port_preferred() -> None:
    orch, _provider, handle, projects, ws = _fixture(
        make_project(sandbox_id="sbx-1", preview_port=3001)
    )
    handle.put(ws.join("node_modules/.package-lock.json"), "{}")
    script_dev_server(handle, busy=(3001,))

    result = asyncio.run(orch.start_preview("p1"))

    assert result.preview_port == 3000
    assert result.responding
    launches = [c for c in handle.command_lines() if c.startswith("setsid nohup")]
    assert len(launches) == 1
    assert "-p 3000" in launches[0]


def test_no_port_answers_falls_back_to_first_candidate() -> None:
    orch, _provider, handle, projects, ws = _fixture()
    handle.put(ws.join("node_modules/.package-lock.json"), "{}")
    script_dev_server(handle, working_ports=())

    result = asyncio.run(orch.start_preview("p1"))

    assert result.preview_port == 3000
    assert not result.responding
    launches = [c for c in handle.command_lines() if c.startswith("setsid nohup")]
    assert len(launches) == len(SETTINGS.preview_ports) + 1
    assert projects.projects["p1"].preview_port == 3000


def test_fallback_avoids_port_owned_by_another_process() -> None:
    orch, _provider, handle, projects, ws = _fixture()
    handle.put(ws.join("node_modules/.package-lock.json"), "{}")
    script_dev_server(handle, working_ports=(), busy=(3000,))

    result = asyncio.run(orch.start_preview("p1"))

    assert result.preview_port == 3001
    assert not result.responding
    launches = [c for c in handle.command_lines() if c.startswith("setsid nohup")]
    assert not any("-p 3000" in c for c in launches)
    assert "-p 3001" in launches[-1]
    assert projects.projects["p1"].preview_url == "https://3001-sbx-1.e2b.app"


def test_fallback_uses_first_candidate_when_every_port_is_busy() -> None:
    orch, _provider, handle, _projects, ws = _fixture()
    handle.put(ws.join("node_modules/.package-lock.json"), "{}")
    script_dev_server(handle, working_ports=(), busy=(3000, 3001, 3002))

    result = asyncio.run(orch.start_preview("p1"))

    assert result.preview_port == 3000
    assert not result.responding


def test_install_timeout_is_retryable() -> None:
    orch, _provider, handle, _projects, ws = _fixture()
    handle.put(ws.join("package.json"), "{}")
    handle.on_background(r"npm install", lambda *_: FakeProcess(exit_code=None))

    with pytest.raises(BuilderError) as ei:
        asyncio.run(orch.start_preview("p1"))

    assert ei.value.kind is ErrorKind.TIMEOUT
    assert ei.value.retryable
    assert "interrupted" in ei.value.user_message


def test_install_failure_is_retryable_process_failure() -> None:
    orch, _provider, handle, _projects, ws = _fixture()
    handle.put(ws.join("package.json"), "{}")
    handle.on_background(
        r"npm install", lambda *_: FakeProcess(exit_code=1, stderr_tail="ERESOLVE")
    )

    with pytest.raises(BuilderError) as ei:
        asyncio.run(orch.start_preview("p1"))

    assert ei.value.kind is ErrorKind.PROCESS_FAILURE
    assert ei.value.retryable
    assert "ERESOLVE" in ei.value.user_message


def test_error_tail_redacts_and_classifies() -> None:
    project = make_project(sandbox_id="sbx-1")
    orch, _provider, handle, projects, ws = _fixture(project)
    projects.projects["p1"] = replace(project, preview_url="https://3000-sbx-1.e2b.app")
    handle.put(
        ws.dev_log_path,
        "ready on https://3000-sbx-1.e2b.app\n"
        "Module not found: Can't resolve 'lodash'\n",
    )

    tail = asyncio.run(orch.get_error_tail("p1"))

    assert tail is not None
    assert tail.has_errors
    assert "sbx-1" not in tail.output
    assert "e2b.app" not in tail.output
    assert "Can't resolve 'lodash'" in tail.output


def test_error_tail_is_none_without_log_or_sandbox() -> None:
    orch, _provider, _handle, _projects, _ws = _fixture()
    assert asyncio.run(orch.get_error_tail("p1")) is None

    orch2, provider2, *_ = _fixture(make_project(sandbox_id="sbx-gone"))
    assert asyncio.run(orch2.get_error_tail("p1")) is None
    assert "create" not in provider2.call_names()


def test_sanitize_log_tail_keeps_only_tail() -> None:
    tail = sanitize_log_tail("x" * 100 + "compiled ok", max_chars=11)
    assert tail is not None
    assert tail.output == "compiled ok"
    assert not tail.has_errors
    assert sanitize_log_tail("   \n", max_chars=100) is None


def test_fix_prompt_suggests_installing_missing_package() -> None:
    tail = sanitize_log_tail("Module not found: Can't resolve 'lodash'", max_chars=1000)
    assert tail is not None
    prompt = build_preview_fix_prompt(tail, framework="nextjs")
    assert "Framework: nextjs" in prompt
    assert "First error: Module not found" in prompt
    assert "npm install lodash" in prompt


def test_fix_prompt_for_relative_import_points_at_paths() -> None:
    tail = sanitize_log_tail("Module not found: Can't resolve './Header'", max_chars=1000)
    assert tail is not None
    prompt = build_preview_fix_prompt(tail)
    assert "Check file names and casing" in prompt
    assert "Framework:" not in prompt
