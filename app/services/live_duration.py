"""Live duration measurement by opening the published media stream."""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Literal, Optional, Protocol

from .media_probe import DEFAULT_PROBE_TIMEOUT_SECONDS, ProbeError, probe_duration
from .object_store import canonical_asset_url


LOGGER = logging.getLogger(__name__)


StreamErrorKind = Literal["network", "format", "unavailable"]

MAX_RETRIES = 3
RETRY_BACKOFF_SECONDS = 1.0

_NETWORK_MARKERS = (
    "connection",
    "timed out",
    "http error",
    "server returned",
    "network",
    "resolve",
    "i/o error",
)


class MediaStreamError(RuntimeError):
    """Raised when a media stream cannot be opened or decoded."""

    def __init__(self, kind: StreamErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind: StreamErrorKind = kind


class PlaybackError(RuntimeError):
    """Raised when a stream stays unplayable after all retries."""

    def __init__(self, message: str, *, kind: StreamErrorKind, attempts: int) -> None:
        super().__init__(message)
        self.kind: StreamErrorKind = kind
        self.attempts = attempts


@dataclass(frozen=True)
class MediaStream:
    """An opened stream whose metadata (duration) is available."""

    url: str
    duration_seconds: float


class MediaDecoder(Protocol):
    """Protocol describing the media decode capability."""

    def open(self, url: str) -> MediaStream:
        """Open *url* and return once its metadata is available."""


def classify_stream_error(message: str) -> StreamErrorKind:
    lowered = (message or "").lower()
    if "not installed" in lowered or "could not be started" in lowered:
        return "unavailable"
    if any(marker in lowered for marker in _NETWORK_MARKERS):
        return "network"
    return "format"


class FfprobeMediaDecoder:
    """Media decoder backed by FFprobe, which can read HTTP(S) URLs directly."""

    def __init__(self, *, timeout: Optional[float] = DEFAULT_PROBE_TIMEOUT_SECONDS) -> None:
        self._timeout = timeout

    def open(self, url: str) -> MediaStream:
        try:
            seconds = probe_duration(url, timeout=self._timeout)
        except ProbeError as error:
            raise MediaStreamError(classify_stream_error(str(error)), str(error)) from error
        return MediaStream(url=url, duration_seconds=seconds)


@dataclass(frozen=True)
class LiveMeasurement:
    seconds: int
    url: str
    attempts: int


class LiveDurationMeasurer:
    """Open a stream, retrying against the canonical URL with linear backoff.

    The first attempt uses the stored URL. Each of at most ``max_retries``
    further attempts targets the parameter-stripped canonical URL and waits
    ``backoff * attempt`` seconds first.
    """

    def __init__(
        self,
        decoder: MediaDecoder,
        *,
        max_retries: int = MAX_RETRIES,
        backoff_seconds: float = RETRY_BACKOFF_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._decoder = decoder
        self._max_retries = max(int(max_retries), 0)
        self._backoff = max(float(backoff_seconds), 0.0)
        self._sleep = sleep

    def measure(self, url: str) -> LiveMeasurement:
        if not url:
            raise PlaybackError("Article has no audio URL", kind="unavailable", attempts=0)

        fallback_url = canonical_asset_url(url) or url
        last_error: Optional[MediaStreamError] = None
        attempts = 0
        for retry in range(self._max_retries + 1):
            target = url if retry == 0 else fallback_url
            if retry:
                delay = self._backoff * retry
                LOGGER.info(
                    "Retry %s/%s for %s in %.1fs", retry, self._max_retries, target, delay
                )
                if delay > 0:
                    self._sleep(delay)
            attempts += 1
            try:
                stream = self._decoder.open(target)
            except MediaStreamError as error:
                last_error = error
                LOGGER.warning("Could not open %s (%s): %s", target, error.kind, error)
                continue

            value = stream.duration_seconds
            if value is None or not math.isfinite(value) or value <= 0:
                last_error = MediaStreamError("format", f"Stream reported invalid duration {value!r}")
                LOGGER.warning("Stream %s reported invalid duration %r", target, value)
                continue
            seconds = int(round(value))
            LOGGER.debug("Live duration for %s is %ss after %s attempt(s)", target, seconds, attempts)
            return LiveMeasurement(seconds=seconds, url=target, attempts=attempts)

        kind: StreamErrorKind = last_error.kind if last_error is not None else "unavailable"
        raise PlaybackError(
            f"Unable to open audio after {attempts} attempt(s): {last_error}",
            kind=kind,
            attempts=attempts,
        )


__all__ = [
    "FfprobeMediaDecoder",
    "LiveDurationMeasurer",
    "LiveMeasurement",
    "MAX_RETRIES",
    "MediaDecoder",
    "MediaStream",
    "MediaStreamError",
    "PlaybackError",
    "classify_stream_error",
]
