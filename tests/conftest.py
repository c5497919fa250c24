import sys
from pathlib import Path

import pytest

# Ensure the repo root is on sys.path so tests can import the local `src/` package.
ROOT = str(Path(__file__).resolve().parents[1])
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)


@pytest.fixture(autouse=True)
def _clean_builder_env(monkeypatch: pytest.MonkeyPatch) -> None:
    # A developer .env must not leak into settings-driven tests.
    for name in (
        "BUILDER_DEV_COMMAND_MAP_JSON",
        "BUILDER_HANDLE_CACHE",
        "BUILDER_PREVIEW_PORTS",
        "BUILDER_SANDBOX_ROOT",
        "BUILDER_INSTALL_ATTEMPTS",
    ):
        monkeypatch.delenv(name, raising=False)
