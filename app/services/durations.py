"""Shared duration policy: provenance tags, suspicious values and formatting."""

from __future__ import annotations

import math
from enum import Enum
from typing import Any, FrozenSet, Optional

__all__ = [
    "DEFAULT_DURATION_SECONDS",
    "DISAGREEMENT_THRESHOLD_SECONDS",
    "DurationMethod",
    "PLACEHOLDER_DURATION_SECONDS",
    "SUSPICIOUS_DURATIONS",
    "coerce_duration",
    "durations_disagree",
    "format_duration",
    "is_suspicious_duration",
]


DEFAULT_DURATION_SECONDS = 300
PLACEHOLDER_DURATION_SECONDS = 480
DISAGREEMENT_THRESHOLD_SECONDS = 30

SUSPICIOUS_DURATIONS: FrozenSet[int] = frozenset(
    {0, DEFAULT_DURATION_SECONDS, PLACEHOLDER_DURATION_SECONDS}
)


class DurationMethod(str, Enum):
    """Provenance tag stored next to every duration write."""

    FFPROBE = "ffprobe"
    MUTAGEN = "mutagen"
    METADATA_TAGS = "metadata-tags"
    FILE_SIZE_ESTIMATION = "file-size-estimation"
    FALLBACK = "fallback"
    DEFAULT = "default"
    MANUAL_UPDATE = "manual-update"
    LIVE_MEASUREMENT = "live-measurement"
    BULK_FIX = "bulk-fix"


def coerce_duration(value: Any) -> Optional[int]:
    """Return *value* rounded to whole seconds, or ``None`` when it is not a finite number."""

    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return int(round(number))


def is_suspicious_duration(value: Any) -> bool:
    """Return ``True`` when a stored duration likely came from a fallback path.

    Missing and non-numeric values count as suspicious alongside the known
    sentinels (0, the 300 second default and the 480 second placeholder).
    """

    seconds = coerce_duration(value)
    if seconds is None:
        return True
    return seconds in SUSPICIOUS_DURATIONS


def durations_disagree(stored: Any, live: Any) -> bool:
    stored_seconds = coerce_duration(stored) or 0
    live_seconds = coerce_duration(live) or 0
    return abs(live_seconds - stored_seconds) > DISAGREEMENT_THRESHOLD_SECONDS


def format_duration(seconds: Any) -> str:
    """Render *seconds* as ``M:SS`` or ``H:MM:SS``; zero and invalid input give ``0:00``."""

    if seconds is None or isinstance(seconds, bool):
        return "0:00"
    try:
        total = float(seconds)
    except (TypeError, ValueError):
        return "0:00"
    if not math.isfinite(total) or total <= 0:
        return "0:00"

    whole = int(total)
    hours, remainder = divmod(whole, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"
