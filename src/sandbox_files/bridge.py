"""Snapshot/restore between a sandbox working directory and a file manifest.

The bridge never talks to durable storage; callers pair it with a file store.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from src.sandbox_files.policy import DEFAULT_POLICY, Policy, sanitize_relative_path

if TYPE_CHECKING:  # pragma: no cover
    from src.sandbox_backends.base import SandboxHandle

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SandboxFile:
    path: str
    content: str = ""
    is_folder: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "content": self.content, "isFolder": self.is_folder}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> SandboxFile:
        return cls(
            path=str(raw.get("path") or ""),
            content=str(raw.get("content") or ""),
            is_folder=bool(raw.get("isFolder", raw.get("is_folder", False))),
        )


def _looks_binary(data: bytes) -> bool:
    if b"\x00" in data:
        return True
    try:
        data.decode("utf-8")
        return False
    except UnicodeDecodeError:
        return True


def _join(root: str, rel: str) -> str:
    return f"{root.rstrip('/')}/{rel}" if rel else root.rstrip("/")


async def snapshot(
    handle: SandboxHandle,
    root: str,
    *,
    policy: Policy = DEFAULT_POLICY,
    skipped: list[str] | None = None,
) -> list[SandboxFile]:
    """Recursively list `root` into a manifest, parents before children.

    Binary files are left out; their paths are appended to `skipped` when
    given. An empty or missing root yields an empty manifest; retrying is up
    to the caller.
    """
    out: list[SandboxFile] = []
    await _walk(handle, root, "", out, policy, skipped if skipped is not None else [])
    return out


async def _walk(
    handle: SandboxHandle,
    root: str,
    rel_dir: str,
    out: list[SandboxFile],
    policy: Policy,
    skipped: list[str],
) -> None:
    entries = await handle.list_files(_join(root, rel_dir))
    for entry in sorted(entries, key=lambda e: e.name):
        rel = f"{rel_dir}/{entry.name}" if rel_dir else entry.name
        if entry.is_dir:
            if entry.name in policy.skip_snapshot_dirs:
                continue
            out.append(SandboxFile(path=rel, is_folder=True))
            await _walk(handle, root, rel, out, policy, skipped)
            continue
        try:
            data = await handle.read_file(_join(root, rel))
        except FileNotFoundError:
            # Removed between list and read (generator still running).
            logger.debug("skipping vanished file %s", rel)
            continue
        if _looks_binary(data):
            logger.debug("skipping binary file %s (%d bytes)", rel, len(data))
            skipped.append(rel)
            continue
        out.append(SandboxFile(path=rel, content=data.decode("utf-8")))


async def restore(handle: SandboxHandle, files: Iterable[SandboxFile], root: str) -> int:
    """Write every non-folder entry under `root`. Returns the number written."""
    written = 0
    for f in files:
        if f.is_folder:
            continue
        try:
            rel = sanitize_relative_path(f.path)
        except ValueError:
            logger.warning("refusing to restore unsafe path %r", f.path)
            continue
        await handle.write_file(_join(root, rel), f.content)
        written += 1
    return written


def file_count(files: Iterable[SandboxFile]) -> int:
    return sum(1 for f in files if not f.is_folder)


def carry_over(
    files: list[SandboxFile], stored: Iterable[SandboxFile], skipped: Iterable[str]
) -> list[SandboxFile]:
    """Append stored rows for paths the snapshot skipped.

    Persisting replaces a project's rows wholesale, so a skipped path would
    otherwise be dropped from the store.
    """
    keep = set(skipped) - {f.path for f in files}
    if not keep:
        return files
    return [*files, *(f for f in stored if not f.is_folder and f.path in keep)]
