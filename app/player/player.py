"""Headless audio player that reconciles durations while loading articles."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Union

from ..services.live_duration import LiveDurationMeasurer, PlaybackError
from ..services.reconciliation import (
    BackfillSink,
    PlaybackSession,
    Reconciler,
    Reconciliation,
)
from ..services.storage import ArticleRecord


LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class LoadedArticle:
    session: PlaybackSession
    decision: Optional[Reconciliation]

    @property
    def display_seconds(self) -> int:
        return self.session.display_seconds


def _article_fields(article: Union[ArticleRecord, Mapping[str, Any]]) -> tuple[str, Any, str]:
    if isinstance(article, ArticleRecord):
        return article.id, article.duration_seconds, article.audio_url or ""
    article_id = article.get("id") or article.get("_id")
    if not article_id:
        raise ValueError("Article payload has no id")
    stored = article.get("duration_seconds", article.get("duration"))
    audio_url = article.get("audio_url") or article.get("audioUrl") or ""
    return str(article_id), stored, str(audio_url)


class Player:
    """Load one article at a time and keep its displayed duration accurate."""

    def __init__(self, measurer: LiveDurationMeasurer, sink: BackfillSink, *, reconciler: Optional[Reconciler] = None) -> None:
        self._measurer = measurer
        self._reconciler = reconciler or Reconciler(sink)
        self._owns_reconciler = reconciler is None
        self._lock = threading.Lock()
        self._session: Optional[PlaybackSession] = None

    @property
    def session(self) -> Optional[PlaybackSession]:
        return self._session

    @property
    def reconciler(self) -> Reconciler:
        return self._reconciler

    def load(self, article: Union[ArticleRecord, Mapping[str, Any]]) -> LoadedArticle:
        """Open *article*'s stream, replacing whatever session was active.

        Raises :class:`PlaybackError` when the stream stays unplayable; the
        session then shows the stored duration and nothing is written back.
        """

        article_id, stored, audio_url = _article_fields(article)
        with self._lock:
            self._quiesce()
            session = PlaybackSession(article_id=article_id, stored_seconds=stored, audio_url=audio_url)
            self._session = session

        LOGGER.info("Loading article %s (stored duration %ss)", article_id, session.stored_seconds)
        try:
            measurement = self._measurer.measure(audio_url)
        except PlaybackError as error:
            if not session.closed:
                session.fail(error.kind)
            LOGGER.error("Playback of article %s failed (%s): %s", article_id, error.kind, error)
            raise

        if session.closed:
            LOGGER.debug("Article %s was replaced before its metadata arrived", article_id)
            return LoadedArticle(session=session, decision=None)
        decision = self._reconciler.on_metadata(session, measurement.seconds)
        return LoadedArticle(session=session, decision=decision)

    def progress(self, buffered_fraction: float) -> None:
        if self._session is not None:
            self._session.progress(buffered_fraction)

    def ended(self) -> None:
        if self._session is not None:
            self._session.mark_ended()

    def stop(self) -> None:
        with self._lock:
            self._quiesce()
            self._session = None

    def close(self) -> None:
        self.stop()
        if self._owns_reconciler:
            self._reconciler.close()

    def _quiesce(self) -> None:
        if self._session is not None and not self._session.closed:
            LOGGER.debug("Closing session for article %s", self._session.article_id)
            self._session.close()


__all__ = ["LoadedArticle", "Player"]
