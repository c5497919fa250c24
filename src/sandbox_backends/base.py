from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

OutputCallback = Callable[[str], None]


@dataclass(frozen=True)
class CommandResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass(frozen=True)
class FileEntry:
    name: str
    is_dir: bool


class BackgroundProcess(Protocol):
    """A command started in background mode.

    `exit_code` stays None while the process is running. `stderr_tail` holds
    the most recent stderr output seen so far.
    """

    @property
    def exit_code(self) -> int | None: ...

    @property
    def stderr_tail(self) -> str: ...

    async def wait(self) -> CommandResult: ...

    async def kill(self) -> bool: ...


class SandboxHandle(Protocol):
    """A live sandbox instance.

    Paths are absolute sandbox paths. `list_files` returns [] for a missing
    directory; `read_file` raises FileNotFoundError for a missing file.
    """

    @property
    def sandbox_id(self) -> str: ...

    async def run_command(
        self,
        cmd: str,
        *,
        cwd: str | None = None,
        timeout_s: float | None = None,
        on_stdout: OutputCallback | None = None,
        on_stderr: OutputCallback | None = None,
    ) -> CommandResult: ...

    async def start_background(
        self,
        cmd: str,
        *,
        cwd: str | None = None,
        on_stdout: OutputCallback | None = None,
        on_stderr: OutputCallback | None = None,
    ) -> BackgroundProcess: ...

    async def list_files(self, path: str) -> list[FileEntry]: ...

    async def exists(self, path: str) -> bool: ...

    async def read_file(self, path: str) -> bytes: ...

    async def write_file(self, path: str, content: str | bytes) -> None: ...

    async def remove_file(self, path: str) -> None: ...

    async def expose_port(self, port: int) -> str: ...

    async def keepalive(self, timeout_s: int) -> None: ...


class SandboxProvider(Protocol):
    async def connect(self, sandbox_id: str) -> SandboxHandle: ...

    async def create(self) -> SandboxHandle: ...

    async def pause(self, sandbox_id: str) -> None: ...

    async def kill(self, sandbox_id: str) -> None: ...
