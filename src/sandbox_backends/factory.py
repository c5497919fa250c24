from __future__ import annotations

from typing import TYPE_CHECKING

from src.builder.config import BuilderSettings, e2b_api_key, e2b_template

if TYPE_CHECKING:  # pragma: no cover
    from .base import SandboxProvider


def get_provider(settings: BuilderSettings | None = None) -> SandboxProvider:
    from .e2b_backend import E2BSandboxProvider

    s = settings or BuilderSettings.from_env()
    return E2BSandboxProvider(
        api_key=e2b_api_key() or None,
        template=e2b_template(),
        timeout_s=s.sandbox_keepalive_s,
    )
