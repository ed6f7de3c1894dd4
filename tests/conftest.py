"""Shared fakes standing in for ffmpeg child processes."""

from __future__ import annotations

import asyncio

import pytest


class FakeStdout:
    def __init__(self, process: "FakeProcess") -> None:
        self._process = process

    async def read(self) -> bytes:
        await self._process.exited.wait()
        return self._process.output


class FakeProcess:
    """Mimic the parts of :class:`asyncio.subprocess.Process` the services use."""

    def __init__(
        self,
        pid: int,
        *,
        output: bytes = b"",
        exit_code: int | None = None,
        exit_on_signal: bool = True,
    ) -> None:
        self.pid = pid
        self.exit_on_signal = exit_on_signal
        self.returncode: int | None = None
        self.output = output
        self.signals: list[int] = []
        self.exited = asyncio.Event()
        self.stdout = FakeStdout(self)
        if exit_code is not None:
            self.finish(exit_code)

    def finish(self, code: int) -> None:
        if self.returncode is not None:
            return
        self.returncode = code
        self.exited.set()

    def send_signal(self, signum: int) -> None:
        self.signals.append(signum)
        if self.exit_on_signal:
            self.finish(-signum)

    async def wait(self) -> int:
        await self.exited.wait()
        assert self.returncode is not None
        return self.returncode


class FakeSpawner:
    """Async callable compatible with ``asyncio.create_subprocess_exec``."""

    def __init__(
        self,
        *,
        output: bytes = b"",
        exit_code: int | None = None,
        delay: float = 0.0,
        error: BaseException | None = None,
        exit_on_signal: bool = True,
    ) -> None:
        self.output = output
        self.exit_on_signal = exit_on_signal
        self.exit_code = exit_code
        self.delay = delay
        self.error = error
        self.calls: list[tuple[tuple[str, ...], dict[str, object]]] = []
        self.processes: list[FakeProcess] = []

    async def __call__(self, *command: str, **kwargs: object) -> FakeProcess:
        self.calls.append((command, kwargs))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        process = FakeProcess(
            1000 + len(self.processes),
            output=self.output,
            exit_code=self.exit_code,
            exit_on_signal=self.exit_on_signal,
        )
        self.processes.append(process)
        return process


@pytest.fixture
def spawner() -> FakeSpawner:
    return FakeSpawner()


@pytest.fixture
def make_spawner():
    return FakeSpawner
