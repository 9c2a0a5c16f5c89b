"""Helpers for asking FFprobe how long a media resource plays."""

from __future__ import annotations

import logging
import math
import shutil
import subprocess
from typing import Optional


LOGGER = logging.getLogger(__name__)


DEFAULT_PROBE_TIMEOUT_SECONDS = 30.0


class ProbeError(RuntimeError):
    """Raised when FFprobe is missing, fails, or prints something unusable."""


def ffprobe_available() -> bool:
    """Return ``True`` when an FFprobe binary is on ``PATH``."""

    return shutil.which("ffprobe") is not None


def build_probe_command(ffprobe_path: str, target: str) -> list[str]:
    return [
        ffprobe_path,
        "-v",
        "error",
        "-show_entries",
        "format=duration",
        "-of",
        "default=noprint_wrappers=1:nokey=1",
        target,
    ]


def parse_probe_output(stdout: str) -> float:
    """Return the first line of *stdout* as positive, finite seconds."""

    lines = [line.strip() for line in (stdout or "").splitlines() if line.strip()]
    if not lines:
        raise ProbeError("FFprobe produced no output")
    try:
        value = float(lines[0])
    except ValueError as error:
        raise ProbeError(f"FFprobe output is not a number: {lines[0]!r}") from error
    if not math.isfinite(value) or value <= 0:
        raise ProbeError(f"FFprobe reported an invalid duration: {lines[0]!r}")
    return value


def probe_duration(target: str, *, timeout: Optional[float] = DEFAULT_PROBE_TIMEOUT_SECONDS) -> float:
    """Return the duration of *target* (a local path or URL) in seconds.

    FFprobe is invoked without a shell. A missing binary, a non-zero exit status,
    a timeout or unparseable output all raise :class:`ProbeError`.
    """

    ffprobe_path = shutil.which("ffprobe")
    if ffprobe_path is None:
        raise ProbeError("FFprobe is not installed")

    command = build_probe_command(ffprobe_path, target)
    LOGGER.debug("Executing FFprobe command: %s", " ".join(command))
    try:
        completed = subprocess.run(
            command,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired as error:
        raise ProbeError(f"FFprobe timed out after {timeout}s") from error
    except OSError as error:
        raise ProbeError(f"FFprobe could not be started: {error}") from error

    if completed.returncode != 0:
        details = (completed.stderr or completed.stdout or "").strip().splitlines()
        LOGGER.debug(
            "FFprobe failed (code=%s) for %s: %s",
            completed.returncode,
            target,
            details[0] if details else "no output",
        )
        raise ProbeError(
            f"FFprobe exited with status {completed.returncode}: "
            f"{details[0] if details else 'Unknown error.'}"
        )

    duration = parse_probe_output(completed.stdout)
    LOGGER.debug("FFprobe reported %.2fs for %s", duration, target)
    return duration


__all__ = [
    "DEFAULT_PROBE_TIMEOUT_SECONDS",
    "ProbeError",
    "build_probe_command",
    "ffprobe_available",
    "parse_probe_output",
    "probe_duration",
]
