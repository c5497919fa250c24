from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

import requests

from src.builder.errors import Outcome, best_effort

if TYPE_CHECKING:  # pragma: no cover
    from src.builder.workspace import Workspace
    from src.sandbox_backends.base import SandboxHandle
    from src.templates.registry import FrameworkSpec

logger = logging.getLogger(__name__)

LogoFetcher = Callable[[str], bytes]

_MAX_LOGO_BYTES = 2_000_000


def fetch_logo(url: str, *, timeout_s: float = 15, session: requests.Session | None = None) -> bytes:
    if session is None:
        with requests.Session() as http:
            resp = http.get(url, timeout=timeout_s)
    else:
        resp = session.get(url, timeout=timeout_s)
    resp.raise_for_status()
    ctype = (resp.headers.get("content-type") or "").lower()
    if ctype and not ctype.startswith("image/"):
        raise ValueError(f"logo is not an image (content-type={ctype})")
    data = resp.content
    if not data:
        raise ValueError("logo download was empty")
    if len(data) > _MAX_LOGO_BYTES:
        raise ValueError(f"logo too large ({len(data)} bytes)")
    return data


async def write_logo(
    handle: SandboxHandle,
    workspace: Workspace,
    spec: FrameworkSpec,
    url: str,
    *,
    fetcher: LogoFetcher = fetch_logo,
) -> Outcome:
    """Download the project logo into the app's icon asset. Non-blocking."""

    async def _write() -> None:
        data = await asyncio.to_thread(fetcher, url)
        await handle.write_file(workspace.join(spec.icon_path), data)
        logger.info("Wrote project logo to %s", spec.icon_path)

    return await best_effort("logo write-through", _write())
