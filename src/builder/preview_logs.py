from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from src.builder.errors import redact

ERROR_KEYWORDS: tuple[str, ...] = (
    "error",
    "module not found",
    "can't resolve",
    "enoent",
    "failed",
)

_ERROR_RE = re.compile("|".join(re.escape(k) for k in ERROR_KEYWORDS), re.IGNORECASE)


@dataclass(frozen=True)
class PreviewLogTail:
    output: str
    has_errors: bool

    def to_dict(self) -> dict[str, Any]:
        return {"output": self.output, "hasErrors": self.has_errors}


def has_error_keywords(text: str) -> bool:
    return bool(_ERROR_RE.search(text or ""))


def sanitize_log_tail(
    raw: str, *, max_chars: int, secrets: Iterable[str | None] = ()
) -> PreviewLogTail | None:
    """Tail, redact and classify dev-server output. None when there is nothing."""
    text = (raw or "")[-max_chars:]
    if not text.strip():
        return None
    clean = redact(text, secrets=secrets)
    return PreviewLogTail(output=clean, has_errors=has_error_keywords(clean))


def _truncate(text: str, *, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars]


def _first_error_line(text: str) -> str:
    for line in text.splitlines():
        if _ERROR_RE.search(line):
            return line.strip()
    return ""


def build_preview_fix_prompt(tail: PreviewLogTail, *, framework: str = "") -> str:
    """Prompt for the chat layer's "fix now" action."""
    logs = tail.output[-12000:]
    headline = _truncate(_first_error_line(logs), max_chars=500)

    prompt = (
        "The dev server for this project is reporting errors. "
        "Please fix the cause so the preview builds and runs cleanly.\n\n"
        + (f"Framework: {framework}\n" if framework else "")
        + (f"First error: {headline}\n" if headline else "")
        + f"\nDev server log (tail):\n{logs}\n"
    )

    hint = ""
    low = logs.lower()
    if "module not found" in low or "can't resolve" in low:
        m = re.search(r"can't resolve\s+'([^']+)'", logs, flags=re.IGNORECASE)
        target = m.group(1) if m else ""
        if target and not target.startswith((".", "/", "@/")):
            hint += (
                f"\n\nHint: `{target}` looks like a missing package. Add it with "
                f"`npm install {target}` instead of rewriting the import."
            )
        else:
            hint += "\n\nHint: An import path does not resolve. Check file names and casing."
    if "enoent" in low:
        hint += "\n\nHint: A file the app expects does not exist. Create it or fix the path."
    return prompt + hint
