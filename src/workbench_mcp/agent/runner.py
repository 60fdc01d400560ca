"""Async supervisor for the coding agent CLI."""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import shutil
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Sequence

from ..sessions.models import Task
from ..streaming import ErrorKind
from .utils import agent_environment, sanitize_environment

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[str], None]
DoneCallback = Callable[[str], None]
ErrorCallback = Callable[[str, ErrorKind], None]

FAILURE_MESSAGE = "The agent exited with an error before finishing the request."
CANCELLED_MESSAGE = "The task was cancelled before the agent finished."
STDERR_LIMIT = 64 * 1024


class AgentRunnerError(RuntimeError):
    """Base class for agent runner errors."""


class AgentNotFoundError(AgentRunnerError):
    """Raised when the agent CLI executable cannot be located."""


@dataclass(slots=True)
class AgentExecutionResult:
    """Holds the outcome of a one-shot agent CLI invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class ExecutionHandle:
    """Reference to one running agent process."""

    def __init__(self, task: Task) -> None:
        self.task = task
        self.process: asyncio.subprocess.Process | None = None
        self.returncode: int | None = None
        self.stderr: str = ""
        self._cancel_requested = asyncio.Event()
        self._supervisor: asyncio.Task[None] | None = None

    @property
    def done(self) -> bool:
        return self._supervisor is not None and self._supervisor.done()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested.is_set()

    async def wait(self) -> None:
        """Wait until the process is reaped and the terminal callback has run."""

        if self._supervisor is not None:
            await asyncio.shield(self._supervisor)


class AgentRunner:
    """Launch the agent once per task and stream its stdout as it arrives."""

    def __init__(
        self,
        executable: Path | None = None,
        *,
        timeout: float = 600.0,
        flags: Sequence[str] = ("--print",),
        model: str | None = None,
        kill_grace: float = 5.0,
        read_size: int = 4096,
    ) -> None:
        if timeout <= 0:
            raise ValueError("Agent execution timeout must be greater than zero")
        self._executable_path = self._resolve_executable(executable)
        self._timeout = timeout
        self._flags = tuple(flags)
        self._model = model
        self._kill_grace = kill_grace
        self._read_size = read_size

    @staticmethod
    def _resolve_executable(explicit: Path | None) -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if candidate.exists() and candidate.is_file():
                return candidate
            raise AgentNotFoundError(f"Agent executable not found at {candidate}")

        binary = shutil.which("claude")
        if binary is None:
            raise AgentNotFoundError("Agent CLI executable not found on PATH")
        return Path(binary)

    @property
    def executable(self) -> Path:
        return self._executable_path

    @property
    def timeout(self) -> float:
        return self._timeout

    async def version(self) -> AgentExecutionResult:
        cmd = [str(self._executable_path), "--version"]
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=sanitize_environment(),
        )
        stdout_bytes, stderr_bytes = await process.communicate()
        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        return AgentExecutionResult(args=tuple(cmd), returncode=process.returncode, stdout=stdout, stderr=stderr)

    def build_command(self, prompt: str) -> list[str]:
        args: list[str] = [str(self._executable_path), *self._flags]
        if self._model and "--model" not in self._flags:
            args.extend(["--model", self._model])
        args.append(prompt)
        return args

    def run(
        self,
        task: Task,
        *,
        on_chunk: ChunkCallback,
        on_done: DoneCallback,
        on_error: ErrorCallback,
        cwd: Path | None = None,
    ) -> ExecutionHandle:
        """Start ``task`` and return immediately with a handle.

        Exactly one of ``on_done`` / ``on_error`` is called per handle, after
        every ``on_chunk`` call. Must be called from a running event loop.
        """

        handle = ExecutionHandle(task)
        loop = asyncio.get_running_loop()
        handle._supervisor = loop.create_task(
            self._supervise(handle, cwd, on_chunk, on_done, on_error),
            name=f"agent-{task.task_id}",
        )
        return handle

    def cancel(self, handle: ExecutionHandle) -> None:
        """Forcibly stop the task behind ``handle``. Safe to call repeatedly."""

        if handle.done or handle.cancel_requested:
            return
        handle.task.cancelled = True
        handle._cancel_requested.set()

    async def _supervise(
        self,
        handle: ExecutionHandle,
        cwd: Path | None,
        on_chunk: ChunkCallback,
        on_done: DoneCallback,
        on_error: ErrorCallback,
    ) -> None:
        task = handle.task
        log_extra = {"task_id": task.task_id, "session_id": task.session_id}

        if handle.cancel_requested:
            task.finish("error")
            on_error(CANCELLED_MESSAGE, ErrorKind.EXECUTION_CANCELLED)
            return

        try:
            process = await asyncio.create_subprocess_exec(
                *self.build_command(task.prompt),
                cwd=str(cwd) if cwd is not None else None,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=agent_environment(),
                start_new_session=True,
            )
        except OSError as exc:
            logger.error("Failed to launch agent: %s", exc, extra=log_extra)
            task.finish("error")
            on_error(FAILURE_MESSAGE, ErrorKind.EXECUTION_FAILED)
            return

        handle.process = process
        logger.debug("Agent started", extra={**log_extra, "pid": process.pid})

        stderr_reader = asyncio.ensure_future(_drain(process.stderr))
        consumer = asyncio.ensure_future(self._consume(process, task, on_chunk))
        cancel_waiter = asyncio.ensure_future(handle._cancel_requested.wait())
        try:
            await asyncio.wait(
                {consumer, cancel_waiter},
                timeout=self._timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            cancel_waiter.cancel()
            if not consumer.done():
                consumer.cancel()
                await self._terminate(process)
            await asyncio.gather(consumer, return_exceptions=True)
            handle.stderr = await self._collect_stderr(stderr_reader)
            handle.returncode = process.returncode

        if consumer.cancelled():
            task.finish("error")
            if handle.cancel_requested:
                logger.info("Agent cancelled", extra=log_extra)
                on_error(CANCELLED_MESSAGE, ErrorKind.EXECUTION_CANCELLED)
            else:
                logger.warning(
                    "Agent timed out",
                    extra={**log_extra, "timeout": self._timeout, "stderr": handle.stderr[-2000:]},
                )
                on_error(
                    f"The agent did not finish within {self._timeout:g} seconds and was stopped.",
                    ErrorKind.EXECUTION_TIMEOUT,
                )
            return

        exc = consumer.exception()
        if exc is not None:
            logger.error("Reading agent output failed: %s", exc, extra=log_extra)
            task.finish("error")
            on_error(FAILURE_MESSAGE, ErrorKind.EXECUTION_FAILED)
            return

        returncode = consumer.result()
        if returncode != 0:
            logger.warning(
                "Agent exited with non-zero status",
                extra={**log_extra, "returncode": returncode, "stderr": handle.stderr[-2000:]},
            )
            task.finish("error")
            on_error(FAILURE_MESSAGE, ErrorKind.EXECUTION_FAILED)
            return

        if handle.stderr:
            logger.debug("Agent diagnostics", extra={**log_extra, "stderr": handle.stderr[-2000:]})
        task.finish("done")
        on_done(task.full_text)

    async def _consume(
        self,
        process: asyncio.subprocess.Process,
        task: Task,
        on_chunk: ChunkCallback,
    ) -> int:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        assert process.stdout is not None
        while True:
            data = await process.stdout.read(self._read_size)
            if not data:
                break
            text = decoder.decode(data)
            if text:
                task.append_output(text)
                on_chunk(text)
        tail = decoder.decode(b"", final=True)
        if tail:
            task.append_output(tail)
            on_chunk(tail)
        return await process.wait()

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        _signal_group(process, signal.SIGTERM)
        try:
            await asyncio.wait_for(process.wait(), self._kill_grace)
        except asyncio.TimeoutError:
            _signal_group(process, signal.SIGKILL)
            await process.wait()

    async def _collect_stderr(self, reader: asyncio.Future[str]) -> str:
        try:
            return await asyncio.wait_for(asyncio.shield(reader), max(self._kill_grace, 1.0))
        except asyncio.TimeoutError:
            # Something the agent left behind still holds stderr open.
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)
            return ""


async def _drain(stream: asyncio.StreamReader | None, limit: int = STDERR_LIMIT) -> str:
    """Read a stream to EOF, keeping only its last ``limit`` bytes."""

    if stream is None:
        return ""
    tail = bytearray()
    while True:
        data = await stream.read(4096)
        if not data:
            break
        tail.extend(data)
        if len(tail) > limit:
            del tail[:-limit]
    return tail.decode("utf-8", errors="replace")


def _signal_group(process: asyncio.subprocess.Process, sig: int) -> None:
    """Signal the agent and everything it spawned."""

    try:
        if hasattr(os, "killpg"):
            os.killpg(process.pid, sig)
        elif sig == signal.SIGTERM:
            process.terminate()
        else:
            process.kill()
    except ProcessLookupError:
        pass


__all__ = [
    "AgentExecutionResult",
    "AgentNotFoundError",
    "AgentRunner",
    "AgentRunnerError",
    "ExecutionHandle",
]
