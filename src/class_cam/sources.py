"""Helpers for camera and sensor source identifiers."""
from __future__ import annotations

import re

SourceId = int | str

_SOURCE_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


def normalise_source_id(value: object) -> SourceId:
    """Return ``value`` as a source id safe to embed in file names.

    All-digit strings become integers so ``5`` and ``"5"`` name the same
    source and the same ``camera_5`` directory.
    """

    if isinstance(value, bool):
        raise ValueError("Source id must be an integer or a string")
    if isinstance(value, int):
        if value < 0:
            raise ValueError("Source id must not be negative")
        return value
    if isinstance(value, str):
        cleaned = value.strip()
        if not cleaned or not _SOURCE_PATTERN.match(cleaned):
            raise ValueError(f"Invalid source id: {value!r}")
        if cleaned.isdigit():
            return int(cleaned)
        return cleaned
    raise ValueError("Source id must be an integer or a string")


def source_directory_name(source_id: SourceId, *, kind: str = "camera") -> str:
    return f"{kind}_{source_id}"


__all__ = ["SourceId", "normalise_source_id", "source_directory_name"]
