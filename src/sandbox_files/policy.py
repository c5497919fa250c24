from __future__ import annotations

import posixpath
from dataclasses import dataclass

DENY_WRITE_PREFIXES = ("node_modules/", ".git/")

# Build output and dependency trees never enter a snapshot.
SKIP_SNAPSHOT_DIRS = frozenset(
    {
        "node_modules",
        ".git",
        ".next",
        ".nuxt",
        ".svelte-kit",
        ".angular",
        ".turbo",
        ".cache",
        "dist",
    }
)


@dataclass(frozen=True)
class Policy:
    deny_write_prefixes: tuple[str, ...]
    skip_snapshot_dirs: frozenset[str]


DEFAULT_POLICY = Policy(
    deny_write_prefixes=DENY_WRITE_PREFIXES,
    skip_snapshot_dirs=SKIP_SNAPSHOT_DIRS,
)


def sanitize_relative_path(path: str) -> str:
    """Normalize a project path like '/src/App.tsx' to 'src/App.tsx'.

    Raises ValueError for empty paths, NUL bytes and any '..' segment.
    """
    raw = (path or "").strip().replace("\\", "/")
    if not raw:
        raise ValueError("empty path")
    if "\x00" in raw:
        raise ValueError("invalid path")

    # normpath collapses "..", so check the original segments first.
    if ".." in raw.split("/"):
        raise ValueError("path traversal not allowed")

    norm = posixpath.normpath(raw.lstrip("/"))
    if norm in ("", "."):
        raise ValueError("invalid path")
    return norm


def is_denied_path(path: str, *, policy: Policy = DEFAULT_POLICY) -> bool:
    normalized = path.rstrip("/") + "/"
    return any(normalized.startswith(p) for p in policy.deny_write_prefixes)


def require_mutation_allowed(path: str, *, policy: Policy = DEFAULT_POLICY) -> str:
    p = sanitize_relative_path(path)
    if is_denied_path(p, policy=policy):
        raise PermissionError(f"writes not allowed for '{p}'")
    return p
