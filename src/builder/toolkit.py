from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from src.builder.errors import Outcome, redact

if TYPE_CHECKING:  # pragma: no cover
    from src.builder.config import BuilderSettings
    from src.builder.workspace import Workspace
    from src.sandbox_backends.base import SandboxHandle
    from src.templates.registry import FrameworkSpec

logger = logging.getLogger(__name__)


async def toolkit_initialized(
    handle: SandboxHandle, workspace: Workspace, spec: FrameworkSpec
) -> bool:
    return await handle.exists(workspace.join(spec.toolkit_config))


async def ensure_toolkit(
    handle: SandboxHandle,
    workspace: Workspace,
    spec: FrameworkSpec,
    *,
    settings: BuilderSettings,
) -> Outcome:
    """Run the UI toolkit init once. Never raises for a failing init."""
    if not spec.toolkit_init_command:
        return Outcome.success(f"no UI toolkit for {spec.framework}")
    if await toolkit_initialized(handle, workspace, spec):
        return Outcome.success("already initialized")

    res = await handle.run_command(
        spec.toolkit_init_command, cwd=workspace.path, timeout_s=settings.toolkit_timeout_s
    )
    if res.ok:
        logger.info("UI toolkit initialized in %s", workspace.path)
        return Outcome.success()
    logger.warning(
        "UI toolkit init exited %s in %s: %s",
        res.exit_code,
        workspace.path,
        (res.stderr or res.stdout)[-2000:],
    )
    tail = redact((res.stderr or res.stdout).strip(), secrets=(handle.sandbox_id,), max_chars=300)
    return Outcome.failure(f"exit {res.exit_code}: {tail}")
