"""E2B-backed implementation of the sandbox provider protocols.

Wraps `e2b.AsyncSandbox` so the orchestrators only ever see
`SandboxProvider` / `SandboxHandle` / `BackgroundProcess`.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from e2b import (
    AsyncSandbox,
    CommandExitException,
    FileType,
    NotFoundException,
    TimeoutException,
)

from src.sandbox_backends.base import CommandResult, FileEntry, OutputCallback

logger = logging.getLogger(__name__)

_STDERR_TAIL_CHARS = 4000


class E2BProcess:
    def __init__(self, handle: Any, *, stderr: str = "") -> None:
        self._handle = handle
        self._exit_code: int | None = None
        self._stdout = ""
        self._stderr = stderr[-_STDERR_TAIL_CHARS:]
        self._result: CommandResult | None = None
        self._task = asyncio.create_task(self._watch())

    def _append_stderr(self, chunk: str) -> None:
        self._stderr = (self._stderr + chunk)[-_STDERR_TAIL_CHARS:]

    async def _watch(self) -> None:
        try:
            res = await self._handle.wait()
            self._result = CommandResult(
                exit_code=int(res.exit_code),
                stdout=res.stdout or "",
                stderr=res.stderr or "",
            )
        except CommandExitException as exc:
            self._result = CommandResult(
                exit_code=int(getattr(exc, "exit_code", 1) or 1),
                stdout=getattr(exc, "stdout", "") or "",
                stderr=getattr(exc, "stderr", "") or "",
            )
        except Exception as exc:
            # Connection to the command dropped; treat as an abnormal exit.
            logger.debug("background command stream ended: %s", exc)
            self._result = CommandResult(exit_code=-1, stderr=str(exc))
        self._exit_code = self._result.exit_code
        if self._result.stderr and not self._stderr:
            self._append_stderr(self._result.stderr)

    @property
    def pid(self) -> int | None:
        return getattr(self._handle, "pid", None)

    @property
    def exit_code(self) -> int | None:
        return self._exit_code

    @property
    def stderr_tail(self) -> str:
        return self._stderr

    def on_stderr(self, chunk: str) -> None:
        self._append_stderr(chunk)

    async def wait(self) -> CommandResult:
        await asyncio.shield(self._task)
        assert self._result is not None
        return self._result

    async def kill(self) -> bool:
        return bool(await self._handle.kill())


class E2BSandboxHandle:
    def __init__(self, sandbox: AsyncSandbox) -> None:
        self._sandbox = sandbox

    @property
    def sandbox_id(self) -> str:
        return str(self._sandbox.sandbox_id)

    async def run_command(
        self,
        cmd: str,
        *,
        cwd: str | None = None,
        timeout_s: float | None = None,
        on_stdout: OutputCallback | None = None,
        on_stderr: OutputCallback | None = None,
    ) -> CommandResult:
        kwargs: dict[str, Any] = {}
        if cwd:
            kwargs["cwd"] = cwd
        if timeout_s is not None:
            kwargs["timeout"] = timeout_s
        if on_stdout is not None:
            kwargs["on_stdout"] = on_stdout
        if on_stderr is not None:
            kwargs["on_stderr"] = on_stderr
        try:
            res = await self._sandbox.commands.run(cmd, **kwargs)
        except CommandExitException as exc:
            return CommandResult(
                exit_code=int(getattr(exc, "exit_code", 1) or 1),
                stdout=getattr(exc, "stdout", "") or "",
                stderr=getattr(exc, "stderr", "") or "",
            )
        except TimeoutException as exc:
            raise TimeoutError(f"command timed out after {timeout_s}s") from exc
        return CommandResult(
            exit_code=int(res.exit_code), stdout=res.stdout or "", stderr=res.stderr or ""
        )

    async def start_background(
        self,
        cmd: str,
        *,
        cwd: str | None = None,
        on_stdout: OutputCallback | None = None,
        on_stderr: OutputCallback | None = None,
    ) -> E2BProcess:
        # Chunks can arrive before `commands.run` returns the handle.
        early: list[str] = []
        process: E2BProcess | None = None

        def _fan_out(chunk: str) -> None:
            if process is None:
                early.append(chunk)
            else:
                process.on_stderr(chunk)
            if on_stderr is not None:
                on_stderr(chunk)

        kwargs: dict[str, Any] = {"background": True, "timeout": 0, "on_stderr": _fan_out}
        if cwd:
            kwargs["cwd"] = cwd
        if on_stdout is not None:
            kwargs["on_stdout"] = on_stdout
        handle = await self._sandbox.commands.run(cmd, **kwargs)
        process = E2BProcess(handle, stderr="".join(early))
        return process

    async def list_files(self, path: str) -> list[FileEntry]:
        try:
            entries = await self._sandbox.files.list(path)
        except NotFoundException:
            return []
        return [FileEntry(name=e.name, is_dir=e.type == FileType.DIR) for e in entries]

    async def exists(self, path: str) -> bool:
        return bool(await self._sandbox.files.exists(path))

    async def read_file(self, path: str) -> bytes:
        try:
            data = await self._sandbox.files.read(path, format="bytes")
        except NotFoundException as exc:
            raise FileNotFoundError(path) from exc
        return bytes(data)

    async def write_file(self, path: str, content: str | bytes) -> None:
        await self._sandbox.files.write(path, content)

    async def remove_file(self, path: str) -> None:
        try:
            await self._sandbox.files.remove(path)
        except NotFoundException:
            return

    async def expose_port(self, port: int) -> str:
        return str(self._sandbox.get_host(port))

    async def keepalive(self, timeout_s: int) -> None:
        await self._sandbox.set_timeout(timeout_s)


class E2BSandboxProvider:
    def __init__(
        self,
        *,
        api_key: str | None = None,
        template: str | None = None,
        timeout_s: int = 1800,
    ) -> None:
        self._api_key = api_key or None
        self._template = template
        self._timeout_s = int(timeout_s)

    def _auth(self) -> dict[str, Any]:
        return {"api_key": self._api_key} if self._api_key else {}

    async def connect(self, sandbox_id: str) -> E2BSandboxHandle:
        sandbox = await AsyncSandbox.connect(sandbox_id, **self._auth())
        return E2BSandboxHandle(sandbox)

    async def create(self) -> E2BSandboxHandle:
        kwargs: dict[str, Any] = {"timeout": self._timeout_s, **self._auth()}
        if self._template:
            kwargs["template"] = self._template
        sandbox = await AsyncSandbox.create(**kwargs)
        logger.info("Created sandbox %s (template=%s)", sandbox.sandbox_id, self._template)
        return E2BSandboxHandle(sandbox)

    async def pause(self, sandbox_id: str) -> None:
        sandbox = await AsyncSandbox.connect(sandbox_id, **self._auth())
        await sandbox.beta_pause()

    async def kill(self, sandbox_id: str) -> None:
        await AsyncSandbox.kill(sandbox_id, **self._auth())
