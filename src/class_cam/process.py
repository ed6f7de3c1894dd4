"""Lifecycle wrapper around external transcoding processes."""
from __future__ import annotations

import asyncio
import logging
import signal
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Sequence

from .sources import SourceId

logger = logging.getLogger(__name__)


Spawner = Callable[..., Awaitable[Any]]
"""Coroutine factory compatible with :func:`asyncio.create_subprocess_exec`."""


class ProcessStatus(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    EXITED = "exited"
    FAILED = "failed"


class ProcessError(RuntimeError):
    """Base class for failures of an external media process."""


class ProcessExitError(ProcessError):
    """Raised when a process exits unsuccessfully or cannot be spawned."""

    def __init__(self, code: int | None, message: str | None = None) -> None:
        self.code = code
        super().__init__(message or f"Process exited with code {code}")


class ProcessSpawnError(ProcessExitError):
    """Raised when the executable could not be launched."""

    def __init__(self, executable: str, reason: BaseException) -> None:
        self.executable = executable
        super().__init__(None, f"Failed to launch {executable}: {reason}")


class ProcessTimeoutError(ProcessError, TimeoutError):
    """Raised when a process exceeded its wall-clock deadline."""

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"Process did not finish within {timeout:g}s")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProcessHandle:
    """Own a single external process from spawn to release.

    The handle is acquired with :meth:`start` and released with
    :meth:`terminate` or :meth:`kill`. A release requested while the spawn is
    still pending is applied as soon as the process exists, so every exit
    branch of a caller can release the handle unconditionally.
    """

    def __init__(
        self,
        source_id: SourceId,
        command: Sequence[str],
        *,
        capture_output: bool = False,
        spawner: Spawner | None = None,
    ) -> None:
        if not command:
            raise ValueError("command must not be empty")
        self.source_id = source_id
        self.command: tuple[str, ...] = tuple(str(part) for part in command)
        self.capture_output = bool(capture_output)
        self.start_time: datetime = _utcnow()
        self.status = ProcessStatus.STARTING
        self.last_exit_code: int | None = None
        self._spawner: Spawner = spawner or asyncio.create_subprocess_exec
        self._process: Any | None = None
        self._launch_task: asyncio.Task[None] | None = None
        self._pending_signal: int | None = None
        self._released = False

    # ------------------------------ properties -----------------------------
    @property
    def executable(self) -> str:
        return self.command[0]

    @property
    def pid(self) -> int | None:
        return getattr(self._process, "pid", None)

    @property
    def released(self) -> bool:
        """Return ``True`` once a termination signal has been requested."""

        return self._released

    @property
    def running(self) -> bool:
        return self.status is ProcessStatus.RUNNING

    # ------------------------------ lifecycle ------------------------------
    async def start(self) -> "ProcessHandle":
        """Spawn the process once; concurrent callers share the same spawn."""

        if self._launch_task is None:
            self._launch_task = asyncio.create_task(self._launch())
        await asyncio.shield(self._launch_task)
        return self

    async def _launch(self) -> None:
        stdout = asyncio.subprocess.PIPE if self.capture_output else asyncio.subprocess.DEVNULL
        try:
            process = await self._spawner(
                *self.command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=stdout,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as exc:
            self.status = ProcessStatus.FAILED
            raise ProcessSpawnError(self.executable, exc) from exc
        self._process = process
        self.status = ProcessStatus.RUNNING
        logger.debug("Spawned %s for source %s (pid %s)", self.executable, self.source_id, self.pid)
        if self._pending_signal is not None:
            pending, self._pending_signal = self._pending_signal, None
            self._send(pending)

    def terminate(self) -> None:
        """Request a graceful shutdown without waiting for the exit."""

        self._release(signal.SIGTERM)

    def kill(self) -> None:
        """Forcefully stop the process."""

        self._release(signal.SIGKILL)

    def _release(self, signum: int) -> None:
        self._released = True
        if self._process is None:
            if self.status is ProcessStatus.STARTING:
                self._pending_signal = signum
            return
        self._send(signum)

    def _send(self, signum: int) -> None:
        process = self._process
        if process is None or process.returncode is not None:
            return
        try:
            process.send_signal(signum)
        except ProcessLookupError:  # pragma: no cover - exited between checks
            logger.debug("Process for source %s already exited", self.source_id)

    async def wait(self) -> int:
        """Wait for the process to exit and return its exit code."""

        if self._launch_task is None:
            raise RuntimeError("Process has not been started")
        await asyncio.shield(self._launch_task)
        process = self._require_process()
        code = await process.wait()
        self._record_exit(code)
        return code

    async def communicate(self) -> tuple[bytes, int]:
        """Read the captured output to EOF and return it with the exit code."""

        if not self.capture_output:
            raise RuntimeError("Output capture was not requested for this process")
        if self._launch_task is None:
            raise RuntimeError("Process has not been started")
        await asyncio.shield(self._launch_task)
        output = await self._require_process().stdout.read()
        code = await self.wait()
        return output, code

    def _require_process(self) -> Any:
        if self._process is None:
            raise RuntimeError("Process was not spawned")
        return self._process

    def _record_exit(self, code: int) -> None:
        self.last_exit_code = code
        if code == 0 or self._released:
            self.status = ProcessStatus.EXITED
        else:
            self.status = ProcessStatus.FAILED

    def describe(self) -> dict[str, object]:
        return {
            "source_id": self.source_id,
            "executable": self.executable,
            "pid": self.pid,
            "status": self.status.value,
            "start_time": self.start_time.isoformat(),
            "last_exit_code": self.last_exit_code,
        }


__all__ = [
    "ProcessError",
    "ProcessExitError",
    "ProcessHandle",
    "ProcessSpawnError",
    "ProcessStatus",
    "ProcessTimeoutError",
    "Spawner",
]
