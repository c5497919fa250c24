from __future__ import annotations

import logging
import re
from collections.abc import Awaitable, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    TIMEOUT = "timeout"
    PROCESS_FAILURE = "process_failure"
    EMPTY_SNAPSHOT = "empty_snapshot"
    UNKNOWN = "unknown"


GENERIC_USER_MESSAGE = (
    "Something went wrong while preparing your project. Please try again."
)
RETRY_HINT = "Please try again in a moment."

_USER_DETAIL_MAX_CHARS = 500

_REDACTIONS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\be2b_[A-Za-z0-9]{8,}\b"), "[redacted-key]"),
    (re.compile(r"\bsk-[A-Za-z0-9_\-]{16,}\b"), "[redacted-key]"),
    (re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._\-]+"), "Bearer [redacted]"),
    (re.compile(r"(?i)(x-hasura-admin-secret[\"']?\s*[:=]\s*[\"']?)[^\s\"',}]+"), r"\1[redacted]"),
    (
        re.compile(r"(?i)\b(?:[a-z0-9-]+\.)*[a-z0-9-]+\.e2b\.(?:dev|app)\b"),
        "[sandbox-host]",
    ),
)


def redact(
    text: str, *, secrets: Iterable[str | None] = (), max_chars: int | None = None
) -> str:
    """Strip provider-identifying substrings from text meant for end users.

    `secrets` are exact strings (sandbox ids, hostnames) replaced before the
    pattern pass. With `max_chars`, only the tail is kept.
    """
    out = text or ""
    # Longest first so a hostname is replaced before the id embedded in it.
    for s in sorted((s for s in secrets if s), key=len, reverse=True):
        out = out.replace(s, "[sandbox]")
    for pattern, repl in _REDACTIONS:
        out = pattern.sub(repl, out)
    if max_chars is not None and len(out) > max_chars:
        out = "..." + out[-max_chars:]
    return out


class BuilderError(Exception):
    """Tagged error raised at orchestrator boundaries.

    `user_message` is already redacted and safe to show; `detail` is for logs.
    """

    def __init__(
        self,
        kind: ErrorKind,
        user_message: str,
        *,
        detail: str = "",
        retryable: bool | None = None,
    ) -> None:
        super().__init__(user_message)
        self.kind = kind
        self.user_message = user_message
        self.detail = detail
        self.retryable = kind is ErrorKind.TIMEOUT if retryable is None else retryable

    def __repr__(self) -> str:
        return f"BuilderError(kind={self.kind.value!r}, user_message={self.user_message!r})"

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.user_message,
            "kind": self.kind.value,
            "retryable": self.retryable,
        }

    @classmethod
    def validation(cls, message: str) -> BuilderError:
        return cls(ErrorKind.VALIDATION, message, detail=message)

    @classmethod
    def not_found(cls, message: str) -> BuilderError:
        return cls(ErrorKind.NOT_FOUND, message, detail=message)

    @classmethod
    def timeout(cls, what: str, *, detail: str = "") -> BuilderError:
        return cls(ErrorKind.TIMEOUT, f"{what} {RETRY_HINT}", detail=detail or what)


def process_failure(
    what: str,
    stderr: str,
    *,
    secrets: Iterable[str | None] = (),
    retryable: bool = False,
) -> BuilderError:
    """Build a process_failure error whose message carries the stderr tail."""
    tail = redact((stderr or "").strip(), secrets=secrets, max_chars=_USER_DETAIL_MAX_CHARS)
    msg = f"{what}: {tail}" if tail else what
    return BuilderError(
        ErrorKind.PROCESS_FAILURE, msg, detail=stderr or "", retryable=retryable
    )


def to_builder_error(exc: BaseException) -> BuilderError:
    if isinstance(exc, BuilderError):
        return exc
    if isinstance(exc, TimeoutError):
        return BuilderError(
            ErrorKind.TIMEOUT,
            f"The sandbox took too long to respond. {RETRY_HINT}",
            detail=f"{type(exc).__name__}: {exc}",
        )
    return BuilderError(
        ErrorKind.UNKNOWN,
        GENERIC_USER_MESSAGE,
        detail=f"{type(exc).__name__}: {exc}",
    )


@dataclass(frozen=True)
class Outcome:
    """Result of a best-effort step that never aborts the surrounding flow."""

    ok: bool
    reason: str | None = None

    @classmethod
    def success(cls, reason: str | None = None) -> Outcome:
        return cls(ok=True, reason=reason)

    @classmethod
    def failure(cls, reason: str) -> Outcome:
        return cls(ok=False, reason=reason)


async def best_effort(label: str, op: Awaitable[Any]) -> Outcome:
    try:
        await op
    except Exception as exc:
        logger.warning("%s failed (non-fatal): %s", label, exc, exc_info=True)
        return Outcome.failure(f"{type(exc).__name__}: {exc}")
    return Outcome.success()
