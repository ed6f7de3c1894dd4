"""Single-frame snapshot capture through a one-shot ffmpeg process."""
from __future__ import annotations

import asyncio
import logging
from typing import Sequence

from .config import DEFAULT_CAPTURE_SETTINGS, DEFAULT_FFMPEG_BINARY, CaptureSettings
from .process import (
    ProcessError,
    ProcessExitError,
    ProcessHandle,
    ProcessTimeoutError,
    Spawner,
)

logger = logging.getLogger(__name__)

CaptureError = ProcessError
"""Umbrella type for snapshot failures (timeouts and process exits)."""


class FrameCapture:
    """Pull one encoded still frame from a camera feed."""

    def __init__(
        self,
        *,
        binary: str = DEFAULT_FFMPEG_BINARY,
        settings: CaptureSettings = DEFAULT_CAPTURE_SETTINGS,
        spawner: Spawner | None = None,
    ) -> None:
        self.binary = binary
        self.settings = settings
        self._spawner = spawner

    @property
    def timeout(self) -> float:
        return self.settings.timeout_s

    def apply_settings(self, settings: CaptureSettings) -> None:
        self.settings = settings

    def build_command(self, source_url: str) -> Sequence[str]:
        return [
            self.binary,
            "-rtsp_transport", "tcp",
            "-timeout", str(self.settings.network_timeout_us),
            "-i", source_url,
            "-frames:v", "1",
            "-f", "image2",
            "-q:v", str(self.settings.jpeg_quality),
            "-",
        ]

    async def capture(self, source_url: str) -> bytes:
        """Return the encoded frame or raise a :data:`CaptureError`."""

        handle = ProcessHandle(
            "snapshot",
            self.build_command(source_url),
            capture_output=True,
            spawner=self._spawner,
        )
        await handle.start()
        try:
            output, code = await asyncio.wait_for(handle.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            handle.kill()
            await handle.wait()
            logger.warning("Snapshot capture timed out after %.1fs", self.timeout)
            raise ProcessTimeoutError(self.timeout) from None
        except asyncio.CancelledError:
            handle.kill()
            raise
        if code == 0 and output:
            return bytes(output)
        logger.debug("Snapshot capture exited with code %s (%d bytes)", code, len(output))
        raise ProcessExitError(code)


__all__ = ["CaptureError", "FrameCapture"]
