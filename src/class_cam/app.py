"""FastAPI application wiring together the ClassCam media services."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from fastapi import Body, FastAPI, HTTPException, Response
from fastapi.responses import FileResponse
from pydantic import BaseModel, Field

from .capture import FrameCapture
from .config import (
    DEFAULT_MEDIA_DIR,
    DEFAULT_RECORDINGS_DIR,
    ConfigManager,
    resolve_directory,
    resolve_ffmpeg_binary,
    validate_stream_url,
)
from .event_log import EventLog
from .frame_cache import FrameCache
from .process import ProcessExitError, ProcessSpawnError, ProcessTimeoutError
from .recording import (
    RecordingActiveError,
    RecordingNotFoundError,
    RecordingParseError,
    SensorRecorder,
)
from .sources import source_directory_name
from .streaming import StreamFault, StreamManager
from .version import APP_VERSION

RECORDINGS_DIR = resolve_directory("CLASSCAM_RECORDINGS_DIR", DEFAULT_RECORDINGS_DIR)
MEDIA_DIR = resolve_directory("CLASSCAM_MEDIA_DIR", DEFAULT_MEDIA_DIR)

HLS_MEDIA_TYPES = {
    ".m3u8": "application/vnd.apple.mpegurl",
    ".ts": "video/MP2T",
}

DEFAULT_STREAM_PATH = "/stream1"


class CameraEndpointPayload(BaseModel):
    host: str | None = None
    port: int | None = Field(default=None, ge=1, le=65535)
    username: str | None = None
    password: str | None = None
    protocol: str | None = None


class CaptureSettingsPayload(BaseModel):
    timeout_s: float | None = Field(default=None, gt=0)
    network_timeout_us: int | None = Field(default=None, gt=0)
    jpeg_quality: int | None = Field(default=None, ge=2, le=31)
    freshness_s: float | None = Field(default=None, ge=0)


class StreamSettingsPayload(BaseModel):
    segment_seconds: int | None = Field(default=None, ge=1)
    list_size: int | None = Field(default=None, ge=1)
    video_codec: str | None = None
    audio_codec: str | None = None


class StreamStartPayload(BaseModel):
    url: str | None = None
    path: str | None = None


class RecordingStartPayload(BaseModel):
    camera_name: str = Field(..., min_length=1)
    scenario_id: int | None = Field(default=None, ge=0)


def create_app(
    config_path: Path | str = Path("data/config.json"),
    *,
    frame_capture: FrameCapture | None = None,
    frame_cache: FrameCache | None = None,
    stream_manager: StreamManager | None = None,
    sensor_recorder: SensorRecorder | None = None,
    event_log: EventLog | None = None,
) -> FastAPI:
    app = FastAPI(title="ClassCam", version=APP_VERSION)

    logger = logging.getLogger(__name__)

    config_path = Path(config_path)
    config_manager = ConfigManager(config_path)
    ffmpeg_binary = resolve_ffmpeg_binary()

    capture_settings = config_manager.get_capture_settings()
    if frame_capture is None:
        frame_capture = FrameCapture(binary=ffmpeg_binary, settings=capture_settings)
    if frame_cache is None:
        frame_cache = FrameCache(freshness_s=capture_settings.freshness_s)
    if stream_manager is None:
        stream_manager = StreamManager(
            media_root=MEDIA_DIR,
            binary=ffmpeg_binary,
            settings=config_manager.get_stream_settings(),
        )
    if sensor_recorder is None:
        sensor_recorder = SensorRecorder(RECORDINGS_DIR)
    if event_log is None:
        event_log = EventLog(config_path.parent / "events.jsonl")

    async def _handle_stream_fault(fault: StreamFault) -> None:
        logger.warning("Stream %s fault (%s): %s", fault.source_id, fault.kind, fault.message)
        event_log.stream_fault(fault)

    stream_manager.add_listener(_handle_stream_fault)

    app.state.config_manager = config_manager
    app.state.frame_capture = frame_capture
    app.state.frame_cache = frame_cache
    app.state.stream_manager = stream_manager
    app.state.sensor_recorder = sensor_recorder
    app.state.event_log = event_log

    def _resolve_source_url(url: str | None = None, path: str | None = None) -> str:
        if url:
            try:
                return validate_stream_url(url)
            except ValueError as exc:
                raise HTTPException(status_code=400, detail=str(exc)) from exc
        endpoint = config_manager.get_camera_endpoint()
        return endpoint.build_url(path or DEFAULT_STREAM_PATH)

    @app.on_event("startup")
    async def startup() -> None:
        event_log.record(
            "system",
            "startup",
            "ClassCam media services starting up.",
            media_dir=str(stream_manager.media_root),
            recordings_dir=str(sensor_recorder.directory),
        )

    @app.on_event("shutdown")
    async def shutdown() -> None:
        event_log.record("system", "shutdown", "ClassCam media services shutting down.")
        try:
            await stream_manager.aclose()
        except Exception:  # pragma: no cover - defensive logging
            logger.exception("Failed to stop camera streams during shutdown")
        summaries = await sensor_recorder.stop_all()
        for summary in summaries:
            event_log.recording_stopped(summary, reason="shutdown")
        frame_cache.clear_all()
        stream_manager.remove_listener(_handle_stream_fault)

    @app.get("/api/health")
    async def health() -> dict[str, object]:
        return {
            "status": "ok",
            "version": APP_VERSION,
            "active_streams": len(stream_manager.list_all()),
        }

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------
    @app.get("/api/config")
    async def get_config() -> dict[str, object]:
        return config_manager.to_dict()

    @app.post("/api/config/camera")
    async def update_camera_endpoint(payload: CameraEndpointPayload) -> dict[str, object]:
        try:
            endpoint = config_manager.set_camera_endpoint(payload.model_dump(exclude_none=True))
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"camera": endpoint.to_dict()}

    @app.post("/api/config/capture")
    async def update_capture_settings(payload: CaptureSettingsPayload) -> dict[str, object]:
        try:
            settings = config_manager.set_capture_settings(payload.model_dump(exclude_none=True))
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        frame_capture.apply_settings(settings)
        frame_cache.freshness_s = settings.freshness_s
        return {"capture": settings.to_dict()}

    @app.post("/api/config/stream")
    async def update_stream_settings(payload: StreamSettingsPayload) -> dict[str, object]:
        try:
            settings = config_manager.set_stream_settings(payload.model_dump(exclude_none=True))
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        # Running transcoders keep their original arguments.
        stream_manager.settings = settings
        return {"stream": settings.to_dict()}

    # ------------------------------------------------------------------
    # Snapshots and streams
    # ------------------------------------------------------------------
    @app.get("/api/cameras/{camera_id}/snapshot")
    async def get_camera_snapshot(camera_id: int) -> Response:
        # Snapshots always come from the configured camera so one cache entry
        # per camera is never served for a different feed.
        source_url = _resolve_source_url()
        try:
            payload = await frame_cache.get_or_create(camera_id, source_url, frame_capture.capture)
        except ProcessTimeoutError as exc:
            event_log.snapshot_failed(camera_id, exc)
            raise HTTPException(status_code=504, detail="Timed out capturing frame") from exc
        except ProcessExitError as exc:
            logger.warning("Snapshot for camera %s failed: %s", camera_id, exc)
            event_log.snapshot_failed(camera_id, exc)
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        response = Response(content=payload, media_type="image/jpeg")
        response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate, max-age=0"
        response.headers["Pragma"] = "no-cache"
        return response

    @app.post("/api/stream/{camera_id}/start")
    async def start_stream(
        camera_id: int, payload: StreamStartPayload | None = None
    ) -> dict[str, object]:
        payload = payload or StreamStartPayload()
        source_url = _resolve_source_url(payload.url, payload.path)
        existing = stream_manager.get(camera_id)
        try:
            info = await stream_manager.start(camera_id, source_url)
        except ProcessSpawnError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        already_active = info is existing
        if not already_active:
            event_log.stream_started(info)
        return {
            "stream": info.to_dict(),
            "playlist": f"/media/{camera_id}/{info.output_target.name}",
            "already_active": already_active,
        }

    @app.post("/api/stream/{camera_id}/stop")
    async def stop_stream(camera_id: int) -> dict[str, object]:
        stopped = stream_manager.stop(camera_id)
        frame_cache.clear(camera_id)
        if stopped:
            event_log.stream_stopped(camera_id)
        return {"stopped": stopped}

    @app.get("/api/stream/{camera_id}")
    async def get_stream(camera_id: int) -> dict[str, object]:
        info = stream_manager.get(camera_id)
        if info is None:
            raise HTTPException(status_code=404, detail="Stream not active")
        return {"stream": info.to_dict()}

    @app.get("/api/streams")
    async def list_streams() -> dict[str, object]:
        streams = [info.to_dict() for info in stream_manager.list_all()]
        return {"count": len(streams), "streams": streams}

    @app.get("/media/{camera_id}/{asset}")
    async def get_media_asset(camera_id: int, asset: str):
        safe_name = Path(asset).name
        media_type = HLS_MEDIA_TYPES.get(Path(safe_name).suffix.lower())
        path = stream_manager.media_root / source_directory_name(camera_id) / safe_name
        if safe_name != asset or media_type is None or not path.is_file():
            raise HTTPException(status_code=404, detail="Media segment not found")
        return FileResponse(path, media_type=media_type, headers={"Cache-Control": "no-cache"})

    # ------------------------------------------------------------------
    # Sensor recordings
    # ------------------------------------------------------------------
    @app.post("/api/sensors/{camera_id}/recording/start")
    async def start_sensor_recording(
        camera_id: int, payload: RecordingStartPayload
    ) -> dict[str, object]:
        try:
            info = sensor_recorder.start_recording(camera_id, payload.camera_name, payload.scenario_id)
        except OSError as exc:
            logger.exception("Failed to open sensor recording for camera %s", camera_id)
            raise HTTPException(status_code=500, detail="Unable to start recording") from exc
        if not info.already_active:
            event_log.recording_started(info)
        return {"recording": info.to_dict()}

    @app.post("/api/sensors/{camera_id}/recording/stop")
    async def stop_sensor_recording(camera_id: int) -> dict[str, object]:
        summary = await sensor_recorder.stop_recording(camera_id)
        if summary.success:
            event_log.recording_stopped(summary)
        return {"recording": summary.to_dict()}

    @app.get("/api/sensors/{camera_id}/recording")
    async def get_sensor_recording_status(camera_id: int) -> dict[str, object]:
        return {
            "recording": sensor_recorder.get_status(camera_id),
            "dropped_records": sensor_recorder.dropped_count(camera_id),
        }

    @app.post("/api/sensors/{camera_id}/data")
    async def ingest_sensor_data(
        camera_id: int, payload: dict[str, Any] = Body(...)
    ) -> dict[str, bool]:
        try:
            recorded = sensor_recorder.record_data(camera_id, payload)
        except (OSError, TypeError, ValueError) as exc:
            logger.exception("Failed to persist telemetry for camera %s", camera_id)
            raise HTTPException(status_code=500, detail="Unable to persist telemetry") from exc
        return {"recorded": recorded}

    @app.get("/api/sensors/{camera_id}/recordings")
    async def list_sensor_recordings(camera_id: int) -> dict[str, object]:
        recordings = await sensor_recorder.list_recordings(camera_id)
        return {"recordings": [item.to_dict() for item in recordings]}

    @app.get("/api/sensors/{camera_id}/recordings/{filename}")
    async def read_sensor_recording(camera_id: int, filename: str) -> dict[str, object]:
        try:
            records = await sensor_recorder.read_recording(camera_id, filename)
        except RecordingNotFoundError as exc:
            raise HTTPException(status_code=404, detail="Recording not found") from exc
        except RecordingParseError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        return {"filename": filename, "count": len(records), "records": records}

    @app.delete("/api/sensors/{camera_id}/recordings/{filename}")
    async def delete_sensor_recording(camera_id: int, filename: str) -> dict[str, object]:
        try:
            deleted = await sensor_recorder.delete_recording(camera_id, filename)
        except RecordingNotFoundError as exc:
            raise HTTPException(status_code=404, detail="Recording not found") from exc
        except RecordingActiveError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return {"deleted": deleted}

    @app.get("/api/logs")
    async def get_event_log(
        limit: int = 50, category: str | None = None, camera_id: int | None = None
    ) -> dict[str, object]:
        entries = event_log.tail(limit, category=category, source_id=camera_id)
        return {"entries": [entry.to_dict() for entry in entries]}

    return app


__all__ = ["create_app"]
