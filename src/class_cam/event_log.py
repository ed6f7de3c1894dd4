"""History of stream, snapshot and recording events kept for operators."""

from __future__ import annotations

import json
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Deque, Mapping

from .process import ProcessError, ProcessTimeoutError
from .recording import RecordingSummary, SessionInfo, format_timestamp
from .sources import SourceId
from .streaming import StreamFault, StreamInfo, redact_url

logger = logging.getLogger(__name__)

EVENT_CATEGORIES = ("system", "stream", "snapshot", "recording")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: object) -> datetime:
    if not isinstance(value, str):
        raise ValueError("recorded_at must be a string")
    # fromisoformat only understands a trailing "Z" from Python 3.11.
    moment = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


@dataclass(frozen=True, slots=True)
class MediaEvent:
    recorded_at: datetime
    category: str
    event: str
    message: str
    source_id: SourceId | None = None
    details: Mapping[str, object] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        return {
            "recorded_at": format_timestamp(self.recorded_at),
            "category": self.category,
            "event": self.event,
            "message": self.message,
            "source_id": self.source_id,
            "details": dict(self.details),
        }

    @classmethod
    def from_dict(cls, payload: object) -> "MediaEvent":
        if not isinstance(payload, Mapping):
            raise ValueError("event must be an object")
        category = payload["category"]
        if category not in EVENT_CATEGORIES:
            raise ValueError(f"unknown event category {category!r}")
        event = payload["event"]
        message = payload["message"]
        if not isinstance(event, str) or not isinstance(message, str):
            raise ValueError("event and message must be strings")
        source_id = payload.get("source_id")
        if source_id is not None and not isinstance(source_id, (int, str)):
            raise ValueError("source_id must be an integer or a string")
        details = payload.get("details") or {}
        if not isinstance(details, Mapping):
            raise ValueError("details must be an object")
        return cls(
            recorded_at=_parse_timestamp(payload["recorded_at"]),
            category=category,
            event=event,
            message=message,
            source_id=source_id,
            details=dict(details),
        )


class EventLog:
    """Bounded in-memory history mirrored to a JSON Lines file.

    The file is replayed on construction; lines that do not describe a
    :class:`MediaEvent` are skipped and counted in :attr:`skipped_lines`.
    """

    def __init__(self, path: Path | str | None = None, *, max_entries: int = 500) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.path = Path(path) if path is not None else None
        self.skipped_lines = 0
        self._events: Deque[MediaEvent] = deque(maxlen=max_entries)
        self._lock = threading.Lock()
        if self.path is not None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._replay(self.path)

    def _replay(self, path: Path) -> None:
        if not path.is_file():
            return
        with path.open("r", encoding="utf-8") as handle:
            for line in handle:
                if not line.strip():
                    continue
                try:
                    self._events.append(MediaEvent.from_dict(json.loads(line)))
                except (KeyError, TypeError, ValueError):
                    self.skipped_lines += 1
        if self.skipped_lines:
            logger.debug("Skipped %d unreadable lines in %s", self.skipped_lines, path)

    def record(
        self,
        category: str,
        event: str,
        message: str,
        *,
        source_id: SourceId | None = None,
        **details: object,
    ) -> MediaEvent:
        if category not in EVENT_CATEGORIES:
            raise ValueError(f"Unknown event category: {category}")
        entry = MediaEvent(
            recorded_at=_utcnow(),
            category=category,
            event=event,
            message=message,
            source_id=source_id,
            details={key: value for key, value in details.items() if value is not None},
        )
        line = json.dumps(entry.to_dict(), separators=(",", ":"), default=str)
        with self._lock:
            self._events.append(entry)
            if self.path is not None:
                try:
                    with self.path.open("a", encoding="utf-8") as handle:
                        handle.write(line + "\n")
                except OSError as exc:
                    logger.warning("Unable to persist %s event: %s", category, exc)
        return entry

    # ------------------------------------------------------------------
    # Domain events
    # ------------------------------------------------------------------
    def stream_started(self, info: StreamInfo) -> MediaEvent:
        return self.record(
            "stream",
            "started",
            f"Streaming {redact_url(info.source_url)}",
            source_id=info.source_id,
            pid=info.pid,
            playlist=str(info.output_target),
        )

    def stream_stopped(self, source_id: SourceId) -> MediaEvent:
        return self.record("stream", "stopped", "Stream stopped on request", source_id=source_id)

    def stream_fault(self, fault: StreamFault) -> MediaEvent:
        return self.record(
            "stream",
            fault.kind,
            fault.message,
            source_id=fault.source_id,
            exit_code=fault.exit_code,
        )

    def snapshot_failed(self, source_id: SourceId, error: ProcessError) -> MediaEvent:
        event = "timeout" if isinstance(error, ProcessTimeoutError) else "failed"
        return self.record(
            "snapshot",
            event,
            str(error),
            source_id=source_id,
            exit_code=getattr(error, "code", None),
        )

    def recording_started(self, info: SessionInfo) -> MediaEvent:
        return self.record(
            "recording",
            "started",
            f"Recording sensors for {info.source_name}",
            source_id=info.source_id,
            filename=info.filename,
            scenario_id=info.scenario_id,
        )

    def recording_stopped(self, summary: RecordingSummary, *, reason: str = "request") -> MediaEvent:
        if summary.success:
            message = f"Recorded {summary.record_count} samples in {summary.duration_s}s"
            event = "stopped"
        else:
            message = summary.error or "Recording could not be closed"
            event = "failed"
        return self.record(
            "recording",
            event,
            message,
            source_id=summary.source_id,
            filename=summary.filename,
            record_count=summary.record_count,
            reason=reason,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def tail(
        self,
        limit: int | None = None,
        *,
        category: str | None = None,
        source_id: SourceId | None = None,
    ) -> list[MediaEvent]:
        """Return the newest events, oldest first, optionally filtered."""

        with self._lock:
            events = list(self._events)
        if category:
            events = [entry for entry in events if entry.category == category]
        if source_id is not None:
            events = [entry for entry in events if entry.source_id == source_id]
        if limit is not None:
            events = events[-max(1, int(limit)):]
        return events


__all__ = ["EVENT_CATEGORIES", "EventLog", "MediaEvent"]
