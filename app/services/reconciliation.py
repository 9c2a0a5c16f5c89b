"""Playback-time reconciliation of stored and live-measured durations."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Protocol, Set

from .durations import (
    DurationMethod,
    coerce_duration,
    durations_disagree,
    is_suspicious_duration,
)


LOGGER = logging.getLogger(__name__)


class PlaybackState(str, Enum):
    LOADING = "loading"
    MEASURED = "measured"
    FAILED = "failed"


@dataclass(frozen=True)
class Reconciliation:
    """Outcome of comparing a stored duration with a live measurement."""

    stored_seconds: int
    live_seconds: int
    suspicious: bool
    disagreement: bool

    @property
    def adopt_live(self) -> bool:
        return self.suspicious or self.disagreement

    @property
    def backfill(self) -> bool:
        return self.adopt_live

    @property
    def display_seconds(self) -> int:
        return self.live_seconds if self.adopt_live else self.stored_seconds


def reconcile(stored_seconds: Optional[int], live_seconds: int) -> Reconciliation:
    """Decide whether *live_seconds* should replace *stored_seconds*."""

    stored = coerce_duration(stored_seconds) or 0
    live = int(live_seconds)
    return Reconciliation(
        stored_seconds=stored,
        live_seconds=live,
        suspicious=is_suspicious_duration(stored_seconds),
        disagreement=durations_disagree(stored, live),
    )


@dataclass
class PlaybackSession:
    """State of one article loaded into a player.

    ``LOADING`` moves to ``MEASURED`` once stream metadata is available, or to
    ``FAILED`` when the stream cannot be opened. A new session is created for
    every article load; nothing carries over between sessions.
    """

    article_id: str
    stored_seconds: int
    audio_url: str = ""
    state: PlaybackState = PlaybackState.LOADING
    live_seconds: Optional[int] = None
    display_seconds: int = 0
    decision: Optional[Reconciliation] = None
    error_kind: Optional[str] = None
    buffered_fraction: float = 0.0
    ended: bool = False
    closed: bool = False

    def __post_init__(self) -> None:
        stored = coerce_duration(self.stored_seconds)
        self.stored_seconds = stored if stored and stored > 0 else 0
        self.display_seconds = self.stored_seconds

    def metadata_ready(self, live_seconds: object) -> Optional[Reconciliation]:
        """Record the live duration and return the reconciliation, if any."""

        self._require_state(PlaybackState.LOADING)
        live = coerce_duration(live_seconds)
        self.state = PlaybackState.MEASURED
        if live is None or live <= 0:
            LOGGER.info(
                "Live duration %r for article %s is invalid; keeping stored %ss",
                live_seconds,
                self.article_id,
                self.stored_seconds,
            )
            return None
        self.live_seconds = live
        self.decision = reconcile(self.stored_seconds, live)
        self.display_seconds = self.decision.display_seconds
        LOGGER.debug(
            "Article %s: stored=%ss live=%ss suspicious=%s disagreement=%s",
            self.article_id,
            self.stored_seconds,
            live,
            self.decision.suspicious,
            self.decision.disagreement,
        )
        return self.decision

    def fail(self, kind: str) -> None:
        self._require_state(PlaybackState.LOADING)
        self.state = PlaybackState.FAILED
        self.error_kind = kind
        self.display_seconds = self.stored_seconds

    def progress(self, buffered_fraction: float) -> None:
        self.buffered_fraction = max(0.0, min(float(buffered_fraction), 1.0))

    def mark_ended(self) -> None:
        self.ended = True

    def close(self) -> None:
        self.closed = True

    def _require_state(self, expected: PlaybackState) -> None:
        if self.closed:
            raise RuntimeError(f"Session for article {self.article_id} is closed")
        if self.state is not expected:
            raise RuntimeError(
                f"Session for article {self.article_id} is {self.state.value}, "
                f"expected {expected.value}"
            )


class BackfillSink(Protocol):
    """Anything able to persist a corrected duration."""

    def write_duration(
        self,
        article_id: str,
        seconds: int,
        method: DurationMethod,
        *,
        expected_seconds: Optional[int] = None,
    ) -> None:
        """Persist ``(seconds, method)`` for *article_id*."""


class RepositoryBackfill:
    """Backfill sink writing straight to an :class:`ArticleRepository`."""

    def __init__(self, repository) -> None:
        self._repository = repository

    def write_duration(
        self,
        article_id: str,
        seconds: int,
        method: DurationMethod,
        *,
        expected_seconds: Optional[int] = None,
    ) -> None:
        self._repository.update_duration(
            article_id, seconds, method, expected_seconds=expected_seconds
        )


@dataclass
class _PendingBackfills:
    futures: Set[Future] = field(default_factory=set)
    lock: threading.Lock = field(default_factory=threading.Lock)


class Reconciler:
    """Apply reconciliation decisions and schedule fire-and-forget backfills."""

    def __init__(self, sink: BackfillSink, *, executor: Optional[ThreadPoolExecutor] = None) -> None:
        self._sink = sink
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="duration-backfill"
        )
        self._pending = _PendingBackfills()

    @staticmethod
    def decide(stored_seconds: Optional[int], live_seconds: int) -> Reconciliation:
        return reconcile(stored_seconds, live_seconds)

    def on_metadata(self, session: PlaybackSession, live_seconds: object) -> Optional[Reconciliation]:
        decision = session.metadata_ready(live_seconds)
        if decision is not None and decision.backfill:
            self.schedule_backfill(session.article_id, decision)
        return decision

    def schedule_backfill(self, article_id: str, decision: Reconciliation) -> Future:
        LOGGER.info(
            "Scheduling duration backfill for article %s: %ss -> %ss",
            article_id,
            decision.stored_seconds,
            decision.live_seconds,
        )
        future = self._executor.submit(self._write, article_id, decision)
        with self._pending.lock:
            self._pending.futures.add(future)
        future.add_done_callback(self._forget)
        return future

    def wait(self, timeout: Optional[float] = None) -> None:
        """Block until scheduled backfills finish; used by CLIs and tests."""

        with self._pending.lock:
            pending = list(self._pending.futures)
        for future in pending:
            future.exception(timeout=timeout)

    def close(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=True)

    def _forget(self, future: Future) -> None:
        with self._pending.lock:
            self._pending.futures.discard(future)

    def _write(self, article_id: str, decision: Reconciliation) -> bool:
        try:
            self._sink.write_duration(
                article_id,
                decision.live_seconds,
                DurationMethod.LIVE_MEASUREMENT,
                expected_seconds=decision.stored_seconds,
            )
        except Exception:  # noqa: BLE001 - backfill failures never affect playback
            LOGGER.exception("Duration backfill failed for article %s", article_id)
            return False
        LOGGER.info("Duration backfill stored %ss for article %s", decision.live_seconds, article_id)
        return True


__all__ = [
    "BackfillSink",
    "PlaybackSession",
    "PlaybackState",
    "Reconciler",
    "Reconciliation",
    "RepositoryBackfill",
    "reconcile",
]
