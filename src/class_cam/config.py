"""Configuration management for ClassCam."""
from __future__ import annotations

import json
import math
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Mapping
from urllib.parse import quote, urlsplit

DEFAULT_FFMPEG_BINARY = "ffmpeg"
DEFAULT_RECORDINGS_DIR = Path("recordings")
DEFAULT_MEDIA_DIR = Path("media")

RTSP_PROTOCOLS = ("rtsp", "rtsps")


@dataclass(frozen=True, slots=True)
class CameraEndpoint:
    """Network location and credentials shared by the classroom cameras."""

    host: str = "192.168.8.210"
    port: int = 554
    username: str | None = None
    password: str | None = None
    protocol: str = "rtsp"

    def __post_init__(self) -> None:
        host = str(self.host).strip() if self.host is not None else ""
        if not host:
            raise ValueError("Camera host must not be empty")
        try:
            port = int(self.port)
        except (TypeError, ValueError) as exc:
            raise ValueError("Camera port must be an integer") from exc
        if not (1 <= port <= 65535):
            raise ValueError("Camera port must be between 1 and 65535")
        protocol = str(self.protocol).strip().lower()
        if protocol not in RTSP_PROTOCOLS:
            raise ValueError(f"Unsupported camera protocol: {self.protocol}")
        object.__setattr__(self, "host", host)
        object.__setattr__(self, "port", port)
        object.__setattr__(self, "protocol", protocol)

    def build_url(self, path: str = "/stream1") -> str:
        """Return the stream URL for ``path`` including quoted credentials."""

        cleaned = path if path.startswith("/") else f"/{path}"
        credentials = ""
        if self.username:
            credentials = quote(self.username, safe="")
            if self.password:
                credentials += ":" + quote(self.password, safe="")
            credentials += "@"
        return f"{self.protocol}://{credentials}{self.host}:{self.port}{cleaned}"

    def to_dict(self, *, include_password: bool = False) -> dict[str, object]:
        payload: dict[str, object] = {
            "host": self.host,
            "port": self.port,
            "username": self.username,
            "protocol": self.protocol,
        }
        if include_password:
            payload["password"] = self.password
        else:
            payload["has_password"] = bool(self.password)
        return payload


@dataclass(frozen=True, slots=True)
class CaptureSettings:
    """Limits applied to single-frame snapshot captures."""

    timeout_s: float = 6.0
    network_timeout_us: int = 5_000_000
    jpeg_quality: int = 5
    freshness_s: float = 0.2

    def __post_init__(self) -> None:
        try:
            timeout = float(self.timeout_s)
            freshness = float(self.freshness_s)
        except (TypeError, ValueError) as exc:
            raise ValueError("Capture timings must be numeric") from exc
        if not math.isfinite(timeout) or timeout <= 0:
            raise ValueError("Capture timeout must be a positive number of seconds")
        if not math.isfinite(freshness) or freshness < 0:
            raise ValueError("Snapshot freshness window must not be negative")
        if int(self.network_timeout_us) <= 0:
            raise ValueError("Network timeout must be positive")
        # ffmpeg's -q:v scale for MJPEG runs from 2 (best) to 31 (worst).
        if not (2 <= int(self.jpeg_quality) <= 31):
            raise ValueError("JPEG quality must be between 2 and 31")
        object.__setattr__(self, "timeout_s", timeout)
        object.__setattr__(self, "freshness_s", freshness)
        object.__setattr__(self, "network_timeout_us", int(self.network_timeout_us))
        object.__setattr__(self, "jpeg_quality", int(self.jpeg_quality))

    def to_dict(self) -> dict[str, float | int]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class HlsSettings:
    """Segmenting parameters for continuous camera streams."""

    segment_seconds: int = 2
    list_size: int = 3
    video_codec: str = "copy"
    audio_codec: str = "aac"
    network_timeout_us: int = 5_000_000

    def __post_init__(self) -> None:
        if int(self.segment_seconds) < 1:
            raise ValueError("HLS segment length must be at least one second")
        if int(self.list_size) < 1:
            raise ValueError("HLS playlist size must be at least one segment")
        for name in ("video_codec", "audio_codec"):
            value = getattr(self, name)
            if not isinstance(value, str) or not value.strip():
                raise ValueError(f"{name} must be a non-empty string")
            object.__setattr__(self, name, value.strip())
        object.__setattr__(self, "segment_seconds", int(self.segment_seconds))
        object.__setattr__(self, "list_size", int(self.list_size))
        object.__setattr__(self, "network_timeout_us", int(self.network_timeout_us))

    def to_dict(self) -> dict[str, object]:
        return asdict(self)


def validate_stream_url(url: str) -> str:
    """Return ``url`` stripped, or raise ``ValueError`` unless it is an RTSP URL."""

    cleaned = url.strip() if isinstance(url, str) else ""
    try:
        parts = urlsplit(cleaned)
        hostname = parts.hostname
    except ValueError as exc:
        raise ValueError(f"Invalid stream URL: {exc}") from exc
    if parts.scheme.lower() not in RTSP_PROTOCOLS:
        raise ValueError("Stream URL must use rtsp:// or rtsps://")
    if not hostname:
        raise ValueError("Stream URL must name a host")
    return cleaned


DEFAULT_CAMERA_ENDPOINT = CameraEndpoint()
DEFAULT_CAPTURE_SETTINGS = CaptureSettings()
DEFAULT_HLS_SETTINGS = HlsSettings()


def _parse_section(value: Any, factory, *, default, label: str):
    if value is None:
        return default
    if not isinstance(value, Mapping):
        raise ValueError(f"{label} settings must be provided as a mapping")
    merged = {**asdict(default), **value}
    try:
        return factory(**merged)
    except TypeError as exc:
        raise ValueError(f"Unknown {label} setting: {exc}") from exc


def _parse_camera_endpoint(value: Any, *, default: CameraEndpoint) -> CameraEndpoint:
    return _parse_section(value, CameraEndpoint, default=default, label="Camera")


def _parse_capture_settings(value: Any, *, default: CaptureSettings) -> CaptureSettings:
    return _parse_section(value, CaptureSettings, default=default, label="Capture")


def _parse_hls_settings(value: Any, *, default: HlsSettings) -> HlsSettings:
    return _parse_section(value, HlsSettings, default=default, label="Stream")


def resolve_directory(env_var: str, default: Path) -> Path:
    """Return the directory named by ``env_var`` or ``default``."""

    raw = os.environ.get(env_var)
    if raw and raw.strip():
        return Path(raw.strip())
    return default


def resolve_ffmpeg_binary() -> str:
    raw = os.environ.get("CLASSCAM_FFMPEG")
    if raw and raw.strip():
        return raw.strip()
    return DEFAULT_FFMPEG_BINARY


class ConfigManager:
    """Stores configuration state on disk with thread-safety."""

    def __init__(self, config_path: Path) -> None:
        self._path = Path(config_path)
        self._lock = Lock()
        self._ensure_parent()
        (
            self._camera,
            self._capture,
            self._stream,
        ) = self._load()

    def _ensure_parent(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def _load(self) -> tuple[CameraEndpoint, CaptureSettings, HlsSettings]:
        if not self._path.exists():
            return (
                DEFAULT_CAMERA_ENDPOINT,
                DEFAULT_CAPTURE_SETTINGS,
                DEFAULT_HLS_SETTINGS,
            )
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
            if not isinstance(payload, dict):
                raise ValueError("Configuration file must contain a JSON object")
            camera = _parse_camera_endpoint(
                payload.get("camera"), default=DEFAULT_CAMERA_ENDPOINT
            )
            capture = _parse_capture_settings(
                payload.get("capture"), default=DEFAULT_CAPTURE_SETTINGS
            )
            stream = _parse_hls_settings(payload.get("stream"), default=DEFAULT_HLS_SETTINGS)
            return camera, capture, stream
        except (OSError, ValueError) as exc:
            raise RuntimeError(f"Failed to load configuration: {exc}") from exc

    def _save(self) -> None:
        payload: Dict[str, Any] = {
            "camera": self._camera.to_dict(include_password=True),
            "capture": self._capture.to_dict(),
            "stream": self._stream.to_dict(),
        }
        self._path.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    def get_camera_endpoint(self) -> CameraEndpoint:
        with self._lock:
            return self._camera

    def set_camera_endpoint(self, data: Mapping[str, Any]) -> CameraEndpoint:
        with self._lock:
            camera = _parse_camera_endpoint(data, default=self._camera)
            self._camera = camera
            self._save()
        return camera

    def get_capture_settings(self) -> CaptureSettings:
        with self._lock:
            return self._capture

    def set_capture_settings(self, data: Mapping[str, Any]) -> CaptureSettings:
        with self._lock:
            capture = _parse_capture_settings(data, default=self._capture)
            self._capture = capture
            self._save()
        return capture

    def get_stream_settings(self) -> HlsSettings:
        with self._lock:
            return self._stream

    def set_stream_settings(self, data: Mapping[str, Any]) -> HlsSettings:
        with self._lock:
            stream = _parse_hls_settings(data, default=self._stream)
            self._stream = stream
            self._save()
        return stream

    def to_dict(self) -> dict[str, object]:
        with self._lock:
            return {
                "camera": self._camera.to_dict(),
                "capture": self._capture.to_dict(),
                "stream": self._stream.to_dict(),
            }


__all__ = [
    "CameraEndpoint",
    "CaptureSettings",
    "ConfigManager",
    "DEFAULT_CAMERA_ENDPOINT",
    "DEFAULT_CAPTURE_SETTINGS",
    "DEFAULT_FFMPEG_BINARY",
    "DEFAULT_HLS_SETTINGS",
    "DEFAULT_MEDIA_DIR",
    "DEFAULT_RECORDINGS_DIR",
    "HlsSettings",
    "resolve_directory",
    "resolve_ffmpeg_binary",
    "validate_stream_url",
]
