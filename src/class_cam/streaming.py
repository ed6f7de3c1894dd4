"""Continuous HLS transcoding processes, one per camera."""
from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, Union
from urllib.parse import urlsplit, urlunsplit

from .config import DEFAULT_FFMPEG_BINARY, DEFAULT_HLS_SETTINGS, DEFAULT_MEDIA_DIR, HlsSettings
from .process import ProcessHandle, ProcessSpawnError, ProcessStatus, Spawner
from .sources import SourceId, normalise_source_id, source_directory_name

logger = logging.getLogger(__name__)

PLAYLIST_NAME = "index.m3u8"


def redact_url(url: str) -> str:
    """Return ``url`` with any password replaced by ``***``."""

    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    if parts.password is None:
        return url
    host = parts.hostname or ""
    if parts.port is not None:
        host = f"{host}:{parts.port}"
    netloc = f"{parts.username}:***@{host}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


@dataclass(slots=True)
class StreamInfo:
    """Bookkeeping for one active camera stream."""

    source_id: SourceId
    source_url: str
    output_target: Path
    start_time: datetime
    status: ProcessStatus = ProcessStatus.STARTING
    pid: int | None = None
    last_exit_code: int | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "source_id": self.source_id,
            "source_url": redact_url(self.source_url),
            "output_target": str(self.output_target),
            "start_time": self.start_time.isoformat(),
            "status": self.status.value,
            "pid": self.pid,
            "last_exit_code": self.last_exit_code,
        }


@dataclass(frozen=True, slots=True)
class StreamFault:
    """Fault notification delivered to registered listeners."""

    source_id: SourceId
    kind: str
    message: str
    exit_code: int | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "source_id": self.source_id,
            "kind": self.kind,
            "message": self.message,
            "exit_code": self.exit_code,
        }


FaultListener = Callable[[StreamFault], Union[None, Awaitable[None]]]


@dataclass(slots=True)
class _ActiveStream:
    info: StreamInfo
    handle: ProcessHandle
    watcher: asyncio.Task[None] | None = None
    fault_reported: bool = False


class StreamManager:
    """Run at most one ffmpeg HLS process per camera.

    Faults (spawn errors and unexpected exits) remove the camera's bookkeeping
    so it can be started again and are reported once to each listener. No
    automatic restart takes place.
    """

    def __init__(
        self,
        *,
        media_root: Path | str = DEFAULT_MEDIA_DIR,
        binary: str = DEFAULT_FFMPEG_BINARY,
        settings: HlsSettings = DEFAULT_HLS_SETTINGS,
        spawner: Spawner | None = None,
    ) -> None:
        self.media_root = Path(media_root)
        self.media_root.mkdir(parents=True, exist_ok=True)
        self.binary = binary
        self.settings = settings
        self._spawner = spawner
        self._streams: dict[SourceId, _ActiveStream] = {}
        self._listeners: list[FaultListener] = []
        self._listener_tasks: set[asyncio.Task[None]] = set()
        self._watchers: set[asyncio.Task[None]] = set()

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------
    def add_listener(self, listener: FaultListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: FaultListener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def _notify(self, stream: _ActiveStream, fault: StreamFault) -> None:
        if stream.fault_reported:
            return
        stream.fault_reported = True
        for listener in list(self._listeners):
            try:
                result = listener(fault)
            except Exception:  # pragma: no cover - defensive logging
                logger.exception("Stream fault listener failed for %s", fault.source_id)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._listener_tasks.add(task)
                task.add_done_callback(self._listener_done)

    def _listener_done(self, task: asyncio.Task[None]) -> None:
        self._listener_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Stream fault listener failed: %s", exc)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------
    def playlist_path(self, source_id: SourceId) -> Path:
        return self.media_root / source_directory_name(source_id) / PLAYLIST_NAME

    def build_command(self, source_url: str, output_target: Path) -> list[str]:
        settings = self.settings
        return [
            self.binary,
            "-rtsp_transport", "tcp",
            "-timeout", str(settings.network_timeout_us),
            "-i", source_url,
            "-c:v", settings.video_codec,
            "-c:a", settings.audio_codec,
            "-f", "hls",
            "-hls_time", str(settings.segment_seconds),
            "-hls_list_size", str(settings.list_size),
            "-hls_flags", "delete_segments",
            str(output_target),
        ]

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def start(
        self,
        source_id: SourceId,
        source_url: str,
        output_target: Path | str | None = None,
    ) -> StreamInfo:
        """Start streaming ``source_id`` or return the stream already running.

        The launch and the exit watch run in a task owned by the manager, so a
        cancelled caller does not leave the camera half registered.
        """

        source_id = normalise_source_id(source_id)
        existing = self._streams.get(source_id)
        if existing is not None:
            logger.info("Stream %s already active", source_id)
            await existing.handle.start()
            return existing.info

        target = Path(output_target) if output_target is not None else self.playlist_path(source_id)
        target.parent.mkdir(parents=True, exist_ok=True)
        handle = ProcessHandle(
            source_id,
            self.build_command(source_url, target),
            spawner=self._spawner,
        )
        info = StreamInfo(
            source_id=source_id,
            source_url=source_url,
            output_target=target,
            start_time=handle.start_time,
        )
        stream = _ActiveStream(info=info, handle=handle)
        self._streams[source_id] = stream
        logger.info("Starting stream %s from %s", source_id, redact_url(source_url))

        watcher = asyncio.create_task(self._run(stream))
        stream.watcher = watcher
        self._watchers.add(watcher)
        watcher.add_done_callback(self._watchers.discard)

        try:
            await handle.start()
        except ProcessSpawnError as exc:
            self._spawn_failed(stream, exc)
            raise
        self._mark_running(stream)
        return info

    def _mark_running(self, stream: _ActiveStream) -> None:
        stream.info.pid = stream.handle.pid
        if not stream.handle.released and stream.info.status is ProcessStatus.STARTING:
            stream.info.status = ProcessStatus.RUNNING

    def _spawn_failed(self, stream: _ActiveStream, exc: ProcessSpawnError) -> None:
        if stream.fault_reported:
            return
        source_id = stream.info.source_id
        stream.info.status = ProcessStatus.FAILED
        logger.error("Stream %s failed to start: %s", source_id, exc)
        self._forget(stream)
        self._notify(stream, StreamFault(source_id, "error", str(exc)))

    def _forget(self, stream: _ActiveStream) -> bool:
        source_id = stream.info.source_id
        if self._streams.get(source_id) is not stream:
            return False
        del self._streams[source_id]
        return True

    async def _run(self, stream: _ActiveStream) -> None:
        source_id = stream.info.source_id
        try:
            await stream.handle.start()
        except ProcessSpawnError as exc:
            self._spawn_failed(stream, exc)
            return
        self._mark_running(stream)
        try:
            code = await stream.handle.wait()
        except Exception as exc:  # pragma: no cover - defensive logging
            logger.exception("Lost track of stream %s", source_id)
            self._forget(stream)
            self._notify(stream, StreamFault(source_id, "error", str(exc)))
            return
        stream.info.status = stream.handle.status
        stream.info.last_exit_code = code
        if not self._forget(stream):
            logger.debug("Stopped stream %s exited with code %s", source_id, code)
            return
        if code != 0:
            logger.warning("ffmpeg for stream %s exited with code %s", source_id, code)
            self._notify(
                stream,
                StreamFault(
                    source_id,
                    "exit",
                    f"Transcoder exited with code {code}",
                    exit_code=code,
                ),
            )
        else:
            logger.info("Stream %s finished", source_id)

    def stop(self, source_id: SourceId) -> bool:
        """Signal the stream's process and forget it without awaiting exit."""

        source_id = normalise_source_id(source_id)
        stream = self._streams.pop(source_id, None)
        if stream is None:
            return False
        stream.handle.terminate()
        logger.info("Stream %s stopped", source_id)
        return True

    def get(self, source_id: SourceId) -> StreamInfo | None:
        stream = self._streams.get(normalise_source_id(source_id))
        return stream.info if stream is not None else None

    def list_all(self) -> list[StreamInfo]:
        return [stream.info for stream in self._streams.values()]

    def stop_all_streams(self) -> int:
        """Stop every tracked stream and return how many were signalled."""

        stopped = 0
        for source_id in list(self._streams):
            try:
                if self.stop(source_id):
                    stopped += 1
            except Exception:  # pragma: no cover - defensive logging
                logger.exception("Failed to stop stream %s", source_id)
        return stopped

    async def aclose(self) -> None:
        """Stop all streams and wait for their processes to be reaped."""

        self.stop_all_streams()
        if self._watchers:
            await asyncio.gather(*list(self._watchers), return_exceptions=True)
        if self._listener_tasks:
            await asyncio.gather(*list(self._listener_tasks), return_exceptions=True)


__all__ = [
    "FaultListener",
    "PLAYLIST_NAME",
    "StreamFault",
    "StreamInfo",
    "StreamManager",
    "redact_url",
]
