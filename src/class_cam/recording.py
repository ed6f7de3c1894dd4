"""Append-only sensor telemetry recordings stored as JSON Lines."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Mapping

from .config import DEFAULT_RECORDINGS_DIR
from .sources import SourceId, normalise_source_id, source_directory_name


logger = logging.getLogger(__name__)

RECORDING_SUFFIX = ".jsonl"
NO_ACTIVE_RECORDING = "No active recording"

_SCENARIO_PATTERN = re.compile(r"scenario_(\d+)_")


class RecordingNotFoundError(FileNotFoundError):
    """Raised when a recording file does not exist."""


class RecordingParseError(ValueError):
    """Raised when a stored recording contains a malformed line."""

    def __init__(self, filename: str, line_number: int, reason: str) -> None:
        self.filename = filename
        self.line_number = line_number
        super().__init__(f"{filename}: line {line_number} is not valid JSON ({reason})")


class RecordingActiveError(RuntimeError):
    """Raised when an operation targets the file of a live session."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(moment: datetime) -> str:
    """Return ``moment`` as a UTC ISO-8601 string with millisecond precision."""

    moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def recording_filename(
    source_id: SourceId,
    started_at: datetime,
    *,
    scenario_id: int | None = None,
    kind: str = "sensors",
    source_kind: str = "camera",
) -> str:
    stamp = format_timestamp(started_at).replace(":", "-").replace(".", "-")
    prefix = f"scenario_{scenario_id}_" if scenario_id is not None else ""
    return f"{prefix}{kind}_{source_kind}_{source_id}_{stamp}{RECORDING_SUFFIX}"


def parse_scenario_id(filename: str) -> int | None:
    match = _SCENARIO_PATTERN.match(filename)
    return int(match.group(1)) if match else None


def _safe_recording_name(name: str) -> str:
    safe_name = Path(name).name
    if not safe_name or safe_name != name or not safe_name.endswith(RECORDING_SUFFIX):
        raise RecordingNotFoundError("Recording not found")
    return safe_name


def _count_records(path: Path) -> int:
    count = 0
    with path.open("r", encoding="utf-8") as handle:
        for line in handle:
            if line.strip():
                count += 1
    return count


@dataclass(slots=True)
class RecordingSession:
    """An open recording owned by :class:`SensorRecorder`."""

    source_id: SourceId
    source_name: str
    scenario_id: int | None
    filename: str
    path: Path
    started_at: datetime
    stream: IO[str] = field(repr=False)
    record_count: int = 0

    def append(self, record: Mapping[str, object]) -> None:
        line = json.dumps(record, separators=(",", ":"), ensure_ascii=False)
        self.stream.write(line + "\n")
        self.record_count += 1

    def close(self) -> None:
        stream = self.stream
        if stream.closed:
            return
        try:
            stream.flush()
            os.fsync(stream.fileno())
        finally:
            stream.close()

    def duration_s(self, now: datetime | None = None) -> int:
        end = now or _utcnow()
        return int((end - self.started_at).total_seconds())


@dataclass(slots=True)
class SessionInfo:
    source_id: SourceId
    source_name: str
    scenario_id: int | None
    filename: str
    started_at: datetime
    record_count: int
    already_active: bool = False

    def to_dict(self) -> dict[str, object]:
        return {
            "source_id": self.source_id,
            "source_name": self.source_name,
            "scenario_id": self.scenario_id,
            "filename": self.filename,
            "started_at": self.started_at.isoformat(),
            "record_count": self.record_count,
            "already_active": self.already_active,
        }


@dataclass(slots=True)
class RecordingSummary:
    """Outcome of stopping a recording session."""

    source_id: SourceId
    success: bool
    filename: str | None = None
    record_count: int = 0
    duration_s: int = 0
    started_at: datetime | None = None
    ended_at: datetime | None = None
    scenario_id: int | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "source_id": self.source_id,
            "success": self.success,
        }
        if not self.success:
            payload["error"] = self.error
            if self.filename is not None:
                payload["filename"] = self.filename
            return payload
        payload.update(
            {
                "filename": self.filename,
                "record_count": self.record_count,
                "duration_s": self.duration_s,
                "started_at": self.started_at.isoformat() if self.started_at else None,
                "ended_at": self.ended_at.isoformat() if self.ended_at else None,
                "scenario_id": self.scenario_id,
            }
        )
        return payload


@dataclass(slots=True)
class RecordingFile:
    filename: str
    path: Path
    size_bytes: int
    record_count: int
    scenario_id: int | None
    created: datetime
    modified: datetime
    active: bool = False

    def to_dict(self) -> dict[str, object]:
        return {
            "filename": self.filename,
            "size_bytes": self.size_bytes,
            "record_count": self.record_count,
            "scenario_id": self.scenario_id,
            "created": self.created.isoformat(),
            "modified": self.modified.isoformat(),
            "active": self.active,
        }


def load_recording_index(directory: Path, *, active: str | None = None) -> list[RecordingFile]:
    """Describe every recording in ``directory``, newest first."""

    if not directory.is_dir():
        return []
    items: list[RecordingFile] = []
    for path in directory.glob(f"*{RECORDING_SUFFIX}"):
        if not path.is_file():
            continue
        stats = path.stat()
        created_ts = getattr(stats, "st_birthtime", None) or stats.st_ctime
        items.append(
            RecordingFile(
                filename=path.name,
                path=path,
                size_bytes=int(stats.st_size),
                record_count=_count_records(path),
                scenario_id=parse_scenario_id(path.name),
                created=datetime.fromtimestamp(created_ts, tz=timezone.utc),
                modified=datetime.fromtimestamp(stats.st_mtime, tz=timezone.utc),
                active=path.name == active,
            )
        )
    items.sort(key=lambda item: (item.created, item.filename), reverse=True)
    return items


def load_recording_records(path: Path) -> list[dict[str, object]]:
    """Parse every non-blank line of ``path``; any malformed line is fatal."""

    if not path.is_file():
        raise RecordingNotFoundError("Recording not found")
    records: list[dict[str, object]] = []
    with path.open("r", encoding="utf-8") as handle:
        for line_number, line in enumerate(handle, start=1):
            if not line.strip():
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError as exc:
                raise RecordingParseError(path.name, line_number, exc.msg) from exc
            if not isinstance(record, dict):
                raise RecordingParseError(path.name, line_number, "expected an object")
            records.append(record)
    return records


class SensorRecorder:
    """Own one append-only telemetry recording per source.

    Recordings live under ``<root>/camera_<id>/``. Each :meth:`record_data`
    call appends one JSON line that reaches the operating system before the
    call returns, so a crash loses at most the record being written.
    Telemetry for sources without a session is dropped and counted.
    """

    def __init__(
        self,
        directory: Path | str = DEFAULT_RECORDINGS_DIR,
        *,
        kind: str = "sensors",
        source_kind: str = "camera",
    ) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self.kind = kind
        self.source_kind = source_kind
        self._sessions: dict[SourceId, RecordingSession] = {}
        self._dropped: Counter[SourceId] = Counter()

    def source_directory(self, source_id: SourceId) -> Path:
        return self.directory / source_directory_name(
            normalise_source_id(source_id), kind=self.source_kind
        )

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------
    def start_recording(
        self,
        source_id: SourceId,
        source_name: str,
        scenario_id: int | None = None,
    ) -> SessionInfo:
        source_id = normalise_source_id(source_id)
        existing = self._sessions.get(source_id)
        if existing is not None:
            logger.info("Sensor recording already active for %s", source_id)
            return self._session_info(existing, already_active=True)

        started_at = _utcnow()
        filename = recording_filename(
            source_id,
            started_at,
            scenario_id=scenario_id,
            kind=self.kind,
            source_kind=self.source_kind,
        )
        directory = self.source_directory(source_id)
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / filename
        stream = path.open("a", encoding="utf-8", buffering=1)
        session = RecordingSession(
            source_id=source_id,
            source_name=source_name,
            scenario_id=scenario_id,
            filename=filename,
            path=path,
            started_at=started_at,
            stream=stream,
        )
        self._sessions[source_id] = session
        scenario_info = f" (scenario {scenario_id})" if scenario_id is not None else ""
        logger.info("Sensor recording started: %s%s -> %s", source_name, scenario_info, filename)
        return self._session_info(session)

    def record_data(self, source_id: SourceId, payload: Mapping[str, object]) -> bool:
        """Append ``payload`` to the active session, or return ``False``."""

        source_id = normalise_source_id(source_id)
        session = self._sessions.get(source_id)
        if session is None:
            self._dropped[source_id] += 1
            logger.debug("Dropping telemetry for %s: no active recording", source_id)
            return False
        record: dict[str, object] = {"timestamp": format_timestamp(_utcnow())}
        record.update(payload)
        session.append(record)
        return True

    async def stop_recording(self, source_id: SourceId) -> RecordingSummary:
        source_id = normalise_source_id(source_id)
        session = self._sessions.pop(source_id, None)
        if session is None:
            return RecordingSummary(source_id=source_id, success=False, error=NO_ACTIVE_RECORDING)

        await asyncio.to_thread(session.close)
        ended_at = _utcnow()
        duration = session.duration_s(ended_at)
        scenario_info = f" (scenario {session.scenario_id})" if session.scenario_id is not None else ""
        logger.info(
            "Sensor recording stopped: %s%s, %d records in %ds",
            session.source_name,
            scenario_info,
            session.record_count,
            duration,
        )
        return RecordingSummary(
            source_id=session.source_id,
            success=True,
            filename=session.filename,
            record_count=session.record_count,
            duration_s=duration,
            started_at=session.started_at,
            ended_at=ended_at,
            scenario_id=session.scenario_id,
        )

    async def stop_all(self) -> list[RecordingSummary]:
        """Stop every active session concurrently and wait for all of them.

        A session whose file cannot be flushed or closed yields an unsuccessful
        summary carrying the error instead of aborting the other sessions.
        """

        sessions = list(self._sessions.values())
        if not sessions:
            return []
        results = await asyncio.gather(
            *(self.stop_recording(session.source_id) for session in sessions),
            return_exceptions=True,
        )
        summaries: list[RecordingSummary] = []
        for session, result in zip(sessions, results):
            if isinstance(result, Exception):
                logger.error(
                    "Failed to close sensor recording %s: %s", session.filename, result
                )
                result = RecordingSummary(
                    source_id=session.source_id,
                    success=False,
                    filename=session.filename,
                    record_count=session.record_count,
                    started_at=session.started_at,
                    scenario_id=session.scenario_id,
                    error=f"Failed to close recording: {result}",
                )
            elif isinstance(result, BaseException):
                raise result
            summaries.append(result)
        return summaries

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def is_recording(self, source_id: SourceId) -> bool:
        return normalise_source_id(source_id) in self._sessions

    def get_session(self, source_id: SourceId) -> RecordingSession | None:
        return self._sessions.get(normalise_source_id(source_id))

    def get_status(self, source_id: SourceId) -> dict[str, object] | None:
        session = self._sessions.get(normalise_source_id(source_id))
        if session is None:
            return None
        return {
            "source_id": session.source_id,
            "source_name": session.source_name,
            "scenario_id": session.scenario_id,
            "filename": session.filename,
            "started_at": session.started_at.isoformat(),
            "duration_s": session.duration_s(),
            "record_count": session.record_count,
        }

    def dropped_count(self, source_id: SourceId) -> int:
        return self._dropped.get(normalise_source_id(source_id), 0)

    async def list_recordings(self, source_id: SourceId) -> list[RecordingFile]:
        source_id = normalise_source_id(source_id)
        session = self._sessions.get(source_id)
        active = session.filename if session is not None else None
        return await asyncio.to_thread(
            load_recording_index, self.source_directory(source_id), active=active
        )

    async def read_recording(self, source_id: SourceId, filename: str) -> list[dict[str, object]]:
        path = self.source_directory(source_id) / _safe_recording_name(filename)
        return await asyncio.to_thread(load_recording_records, path)

    async def delete_recording(self, source_id: SourceId, filename: str) -> str:
        safe_name = _safe_recording_name(filename)
        source_id = normalise_source_id(source_id)
        session = self._sessions.get(source_id)
        if session is not None and session.filename == safe_name:
            raise RecordingActiveError("Stop the recording before deleting it")
        path = self.source_directory(source_id) / safe_name
        try:
            await asyncio.to_thread(path.unlink)
        except FileNotFoundError as exc:
            raise RecordingNotFoundError("Recording not found") from exc
        logger.info("Deleted sensor recording %s", safe_name)
        return safe_name

    @staticmethod
    def _session_info(session: RecordingSession, *, already_active: bool = False) -> SessionInfo:
        return SessionInfo(
            source_id=session.source_id,
            source_name=session.source_name,
            scenario_id=session.scenario_id,
            filename=session.filename,
            started_at=session.started_at,
            record_count=session.record_count,
            already_active=already_active,
        )


__all__ = [
    "NO_ACTIVE_RECORDING",
    "RecordingActiveError",
    "RecordingFile",
    "RecordingNotFoundError",
    "RecordingParseError",
    "RecordingSession",
    "RecordingSummary",
    "SensorRecorder",
    "SessionInfo",
    "format_timestamp",
    "load_recording_index",
    "load_recording_records",
    "parse_scenario_id",
    "recording_filename",
]
