"""Ingest-time audio duration estimation.

Uploaded audio arrives as an opaque byte buffer. The estimator copies it to a
temporary file and walks an ordered list of strategies, from the most accurate
(FFprobe) to the cheapest (a file-size heuristic), stopping at the first one
that yields a finite, positive number of seconds. It never raises: an outer
failure falls back to the client hint or the fixed default.
"""

from __future__ import annotations

import contextlib
import logging
import math
import wave
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, Optional, Sequence

from mutagen import File as MutagenFile
from mutagen import MutagenError

from ..services.durations import (
    DEFAULT_DURATION_SECONDS,
    DurationMethod,
    coerce_duration,
    format_duration,
    is_suspicious_duration,
)
from ..services.media_probe import ProbeError, probe_duration
from ..services.naming import build_temp_name, normalize_extension


LOGGER = logging.getLogger(__name__)


# Approximate megabytes per minute at a representative bitrate for each family.
MB_PER_MINUTE = {
    "mp3": 0.94,  # 128 kbps
    "m4a": 0.47,  # 64 kbps AAC
    "aac": 0.47,
    "wav": 10.6,  # 1411 kbps PCM
}
GENERIC_MB_PER_MINUTE = 0.7  # 96 kbps

_MEDIA_FAMILIES = {
    "mp3": ("mp3", "mpeg", "mpga"),
    "m4a": ("m4a", "mp4", "x-m4a"),
    "aac": ("aac",),
    "wav": ("wav", "wave", "x-wav", "vnd.wave"),
}


class EstimationStrategyError(RuntimeError):
    """Raised by a single strategy that could not produce a duration."""


@dataclass(frozen=True)
class EstimationInput:
    """Everything the estimator knows about a freshly uploaded audio file."""

    data: bytes
    media_type: str = ""
    filename: str = ""
    size_bytes: Optional[int] = None
    hint_seconds: Optional[float] = None

    @property
    def effective_size(self) -> int:
        return int(self.size_bytes) if self.size_bytes is not None else len(self.data)

    @property
    def family(self) -> str:
        return classify_media_type(self.media_type, self.filename)


@dataclass(frozen=True)
class DurationEstimate:
    seconds: int
    method: DurationMethod

    @property
    def formatted(self) -> str:
        return format_duration(self.seconds)


StrategyFunc = Callable[[Path, EstimationInput], float]


@dataclass(frozen=True)
class EstimationStrategy:
    """One link of the fallback chain, tagged with the method it reports."""

    method: DurationMethod
    run: StrategyFunc


def classify_media_type(media_type: Optional[str], filename: Optional[str] = None) -> str:
    """Return ``mp3``, ``m4a``, ``aac``, ``wav`` or ``other`` for a MIME type or extension."""

    candidates = []
    cleaned = (media_type or "").strip().lower()
    if cleaned:
        subtype = cleaned.split(";", 1)[0].rsplit("/", 1)[-1].lstrip(".")
        candidates.append(subtype)
    extension = normalize_extension(filename).lstrip(".")
    if extension:
        candidates.append(extension)

    for candidate in candidates:
        for family, aliases in _MEDIA_FAMILIES.items():
            if candidate in aliases:
                return family
    return "other"


def mb_per_minute(family: str) -> float:
    return MB_PER_MINUTE.get(family, GENERIC_MB_PER_MINUTE)


def estimate_from_file_size(size_bytes: int, media_type: Optional[str], filename: Optional[str] = None) -> int:
    """Return ``round(size_mb / mb_per_minute * 60)`` for the detected media family."""

    size_mb = max(int(size_bytes), 0) / (1024 * 1024)
    family = classify_media_type(media_type, filename)
    return int(round(size_mb / mb_per_minute(family) * 60))


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------
def probe_with_ffprobe(path: Path, request: EstimationInput) -> float:
    try:
        return probe_duration(str(path))
    except ProbeError as error:
        raise EstimationStrategyError(str(error)) from error


def read_with_mutagen(path: Path, request: EstimationInput) -> float:
    try:
        metadata = MutagenFile(str(path))
    except (MutagenError, OSError) as error:
        raise EstimationStrategyError(f"mutagen could not parse {path.name}: {error}") from error
    if metadata is None:
        raise EstimationStrategyError(f"mutagen does not recognise {path.name}")
    info = getattr(metadata, "info", None)
    length = getattr(info, "length", None)
    if not length:
        raise EstimationStrategyError("mutagen metadata has no stream length")
    LOGGER.debug("mutagen reported duration %.2fs for %s", float(length), path)
    return float(length)


def _tag_seconds(tags: object) -> Optional[float]:
    # ID3 TLEN is expressed in milliseconds; free-form tags use seconds.
    for key, scale in (("TLEN", 1000.0), ("length", 1.0), ("LENGTH", 1.0), ("duration", 1.0)):
        try:
            value = tags[key]  # type: ignore[index]
        except (KeyError, IndexError, TypeError, ValueError):
            continue
        value = getattr(value, "text", value)
        if isinstance(value, (list, tuple)):
            value = value[0] if value else None
        try:
            number = float(str(value).strip())
        except (TypeError, ValueError):
            continue
        if math.isfinite(number) and number > 0:
            return number / scale
    return None


def parse_metadata_tags(path: Path, request: EstimationInput) -> float:
    if request.family == "wav":
        try:
            with contextlib.closing(wave.open(str(path), "rb")) as handle:
                frames = handle.getnframes()
                rate = handle.getframerate()
        except (wave.Error, EOFError, OSError) as error:
            raise EstimationStrategyError(f"Unreadable WAV header: {error}") from error
        if not rate:
            raise EstimationStrategyError("WAV header reports a zero sample rate")
        LOGGER.debug("WAV duration computed via frames=%s rate=%s", frames, rate)
        return frames / float(rate)

    try:
        metadata = MutagenFile(str(path))
    except (MutagenError, OSError) as error:
        raise EstimationStrategyError(f"Unreadable container metadata: {error}") from error
    tags = getattr(metadata, "tags", None) if metadata is not None else None
    if not tags:
        raise EstimationStrategyError("No metadata tags present")
    seconds = _tag_seconds(tags)
    if seconds is None:
        raise EstimationStrategyError("Metadata tags carry no duration field")
    return seconds


def estimate_with_file_size(path: Path, request: EstimationInput) -> float:
    return float(estimate_from_file_size(request.effective_size, request.media_type, request.filename))


DEFAULT_STRATEGIES: Sequence[EstimationStrategy] = (
    EstimationStrategy(DurationMethod.FFPROBE, probe_with_ffprobe),
    EstimationStrategy(DurationMethod.MUTAGEN, read_with_mutagen),
    EstimationStrategy(DurationMethod.METADATA_TAGS, parse_metadata_tags),
    EstimationStrategy(DurationMethod.FILE_SIZE_ESTIMATION, estimate_with_file_size),
)


def _is_usable(value: object) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
        and value > 0
    )


class DurationEstimator:
    """Resolve a best-effort duration for uploaded audio bytes."""

    def __init__(
        self,
        temp_root: Path,
        *,
        strategies: Optional[Sequence[EstimationStrategy]] = None,
        default_seconds: int = DEFAULT_DURATION_SECONDS,
    ) -> None:
        self._temp_root = temp_root
        self._strategies = tuple(strategies if strategies is not None else DEFAULT_STRATEGIES)
        self._default_seconds = int(default_seconds)

    @property
    def strategies(self) -> Sequence[EstimationStrategy]:
        return self._strategies

    def estimate(self, request: EstimationInput) -> DurationEstimate:
        """Return ``(seconds, method)`` for *request*; never raises."""

        LOGGER.debug(
            "Estimating duration for '%s' (type=%s family=%s size=%.2fMB)",
            request.filename,
            request.media_type,
            request.family,
            request.effective_size / (1024 * 1024),
        )
        try:
            raw_seconds, method = self._run_chain(request)
        except Exception:  # noqa: BLE001 - estimation must never fail the upload
            hint = coerce_duration(request.hint_seconds)
            raw_seconds = hint if hint and hint > 0 else self._default_seconds
            method = DurationMethod.FALLBACK
            LOGGER.exception(
                "All duration strategies failed for '%s'; using fallback %ss",
                request.filename,
                raw_seconds,
            )

        estimate = self._finalize(raw_seconds, method)
        LOGGER.info(
            "Resolved duration for '%s': %ss (%s) via %s%s",
            request.filename,
            estimate.seconds,
            estimate.formatted,
            estimate.method.value,
            " [suspicious]" if is_suspicious_duration(estimate.seconds) else "",
        )
        return estimate

    def _finalize(self, raw_seconds: object, method: DurationMethod) -> DurationEstimate:
        seconds = coerce_duration(raw_seconds)
        if seconds is None or seconds <= 0:
            LOGGER.warning(
                "Invalid duration %r from %s; using default %ss",
                raw_seconds,
                method.value,
                self._default_seconds,
            )
            return DurationEstimate(self._default_seconds, DurationMethod.DEFAULT)
        return DurationEstimate(seconds, method)

    def _run_chain(self, request: EstimationInput) -> tuple[float, DurationMethod]:
        if not self._strategies:
            raise EstimationStrategyError("No duration strategies configured")

        last_value: float = 0.0
        last_method = self._strategies[-1].method
        with self._temporary_copy(request) as path:
            for strategy in self._strategies:
                try:
                    value = strategy.run(path, request)
                except Exception as error:  # noqa: BLE001 - fall through to the next strategy
                    LOGGER.debug("Strategy %s failed: %s", strategy.method.value, error)
                    continue
                if _is_usable(value):
                    LOGGER.debug("Strategy %s produced %.2fs", strategy.method.value, value)
                    return float(value), strategy.method
                LOGGER.debug("Strategy %s returned unusable value %r", strategy.method.value, value)
                last_value, last_method = value, strategy.method
        return last_value, last_method

    @contextlib.contextmanager
    def _temporary_copy(self, request: EstimationInput) -> Iterator[Path]:
        extension = normalize_extension(request.filename, default=".mp3")
        self._temp_root.mkdir(parents=True, exist_ok=True)
        target = self._temp_root / build_temp_name("temp-audio", extension=extension)
        try:
            target.write_bytes(request.data)
            LOGGER.debug("Temp file created: %s", target)
            yield target
        finally:
            try:
                target.unlink(missing_ok=True)
            except OSError as error:
                LOGGER.warning("Could not delete temp file %s: %s", target, error)
            else:
                LOGGER.debug("Temp file deleted: %s", target)


__all__ = [
    "DEFAULT_STRATEGIES",
    "DurationEstimate",
    "DurationEstimator",
    "EstimationInput",
    "EstimationStrategy",
    "EstimationStrategyError",
    "classify_media_type",
    "estimate_from_file_size",
    "mb_per_minute",
    "parse_metadata_tags",
    "probe_with_ffprobe",
    "read_with_mutagen",
]
