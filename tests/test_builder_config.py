from __future__ import annotations

import pytest

from src.builder.config import DEFAULT_PREVIEW_PORTS, BuilderSettings, handle_cache_enabled
from src.builder.workspace import workspace_for
from tests.sandbox_fakes import make_project


def test_defaults_without_env() -> None:
    s = BuilderSettings.from_env()
    assert s.preview_ports == DEFAULT_PREVIEW_PORTS
    assert s.preview_ports[0] == 3000 and s.preview_ports[-1] == 3010
    assert s.install_attempts == 2


def test_env_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BUILDER_PREVIEW_PORTS", "4000-4002")
    monkeypatch.setenv("BUILDER_GENERATE_DEADLINE_S", "90")
    monkeypatch.setenv("BUILDER_SEED_ENABLED", "off")
    monkeypatch.setenv("BUILDER_SANDBOX_ROOT", "/work/")
    s = BuilderSettings.from_env()
    assert s.preview_ports == (4000, 4001, 4002)
    assert s.generate_deadline_s == 90
    assert s.seed_enabled is False
    assert s.sandbox_root == "/work"


def test_bad_values_fall_back(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BUILDER_PREVIEW_PORTS", "lots")
    monkeypatch.setenv("BUILDER_INSTALL_ATTEMPTS", "0")
    s = BuilderSettings.from_env()
    assert s.preview_ports == DEFAULT_PREVIEW_PORTS
    assert s.install_attempts == 1


def test_handle_cache_is_opt_in(monkeypatch: pytest.MonkeyPatch) -> None:
    assert handle_cache_enabled() is False
    monkeypatch.setenv("BUILDER_HANDLE_CACHE", "1")
    assert handle_cache_enabled() is True


def test_workspace_is_stable_and_unique_per_project() -> None:
    a = workspace_for(make_project("p1", name="Shop"), sandbox_root="/home/user/projects")
    b = workspace_for(make_project("p2", name="Shop"), sandbox_root="/home/user/projects")
    again = workspace_for(make_project("p1", name="Shop"), sandbox_root="/home/user/projects")
    assert a.path == again.path
    assert a.path != b.path
    assert a.path.startswith("/home/user/projects/shop-")
    assert a.dev_log_path == f"/tmp/builder-dev-{a.key}.log"
