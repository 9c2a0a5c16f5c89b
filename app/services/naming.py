"""Utility helpers for consistent asset naming."""

from __future__ import annotations

from datetime import datetime
import re
import uuid
from pathlib import PurePath
from typing import Optional

__all__ = [
    "slugify",
    "build_object_name",
    "build_temp_name",
    "normalize_extension",
]


def slugify(value: str) -> str:
    """Return a filesystem-friendly representation of *value*."""

    value = value.strip().lower()
    value = re.sub(r"[^a-z0-9]+", "-", value)
    value = re.sub(r"-+", "-", value).strip("-")
    return value or "item"


def normalize_extension(filename: Optional[str], *, default: str = "") -> str:
    """Return the lower-cased suffix of *filename* (with dot) or *default*."""

    suffix = PurePath(filename or "").suffix.lower()
    if not suffix or not re.fullmatch(r"\.[a-z0-9]{1,8}", suffix):
        return default
    return suffix


def build_object_name(*, extension: str = "") -> str:
    """Return an opaque, collision-resistant object name."""

    return uuid.uuid4().hex + extension


def build_temp_name(
    prefix: str,
    *,
    timestamp: Optional[str] = None,
    extension: str = "",
) -> str:
    """Return a unique temp file name such as ``temp-audio-20240101-120000-<hex>.mp3``."""

    stamp = timestamp or datetime.now().strftime("%Y%m%d-%H%M%S")
    token = uuid.uuid4().hex[:12]
    return f"{slugify(prefix)}-{stamp}-{token}{extension}"
