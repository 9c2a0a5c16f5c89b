from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from typing import List

import pytest

from app.player import Player
from app.services.durations import DurationMethod
from app.services.live_duration import LiveDurationMeasurer, MediaStream, MediaStreamError, PlaybackError
from app.services.reconciliation import PlaybackState, Reconciler


class FixedDecoder:
    def __init__(self, seconds: float | None) -> None:
        self._seconds = seconds
        self.opened: List[str] = []

    def open(self, url: str) -> MediaStream:
        self.opened.append(url)
        if self._seconds is None:
            raise MediaStreamError("network", "connection refused")
        return MediaStream(url=url, duration_seconds=self._seconds)


class RecordingSink:
    def __init__(self) -> None:
        self.writes = []

    def write_duration(self, article_id, seconds, method, *, expected_seconds=None) -> None:
        self.writes.append((article_id, seconds, method))


def _player(decoder: FixedDecoder, sink: RecordingSink) -> Player:
    measurer = LiveDurationMeasurer(decoder, sleep=lambda seconds: None)
    reconciler = Reconciler(sink, executor=ThreadPoolExecutor(max_workers=1))
    return Player(measurer, sink, reconciler=reconciler)


def test_load_backfills_suspicious_duration() -> None:
    sink = RecordingSink()
    player = _player(FixedDecoder(485.0), sink)

    loaded = player.load({"id": "a1", "duration_seconds": 480, "audio_url": "http://media/a1.mp3"})
    player.reconciler.wait(timeout=5)

    assert loaded.display_seconds == 485
    assert loaded.session.state is PlaybackState.MEASURED
    assert sink.writes == [("a1", 485, DurationMethod.LIVE_MEASUREMENT)]


def test_loading_new_article_closes_previous_session() -> None:
    sink = RecordingSink()
    player = _player(FixedDecoder(605.0), sink)

    first = player.load({"id": "a1", "duration_seconds": 600, "audio_url": "http://media/a1.mp3"})
    second = player.load({"id": "a2", "duration_seconds": 600, "audio_url": "http://media/a2.mp3"})

    assert first.session.closed
    assert not second.session.closed
    assert player.session is second.session
    assert sink.writes == []


def test_playback_failure_surfaces_error_and_keeps_stored_value() -> None:
    sink = RecordingSink()
    decoder = FixedDecoder(None)
    player = _player(decoder, sink)

    with pytest.raises(PlaybackError):
        player.load({"id": "a1", "duration": 0, "audioUrl": "http://media/upload/x_1/v3/a1.mp3"})

    session = player.session
    assert session is not None
    assert session.state is PlaybackState.FAILED
    assert session.display_seconds == 0
    assert len(decoder.opened) == 4
    assert decoder.opened[1:] == ["http://media/upload/v3/a1.mp3"] * 3
    assert sink.writes == []


def test_progress_and_stop() -> None:
    player = _player(FixedDecoder(120.0), RecordingSink())
    loaded = player.load({"id": "a1", "duration_seconds": 120, "audio_url": "http://media/a1.mp3"})

    player.progress(0.5)
    player.ended()
    player.stop()

    assert loaded.session.buffered_fraction == 0.5
    assert loaded.session.ended
    assert loaded.session.closed
    assert player.session is None


def test_payload_without_id_is_rejected() -> None:
    player = _player(FixedDecoder(120.0), RecordingSink())

    with pytest.raises(ValueError):
        player.load({"duration": 10})
