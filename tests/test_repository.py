from __future__ import annotations

import logging

import pytest

from app.services.durations import DurationMethod
from app.services.storage import ArticleNotFoundError, ArticleRepository


def _add(repository: ArticleRepository, title: str, **overrides) -> str:
    fields = {
        "duration_seconds": 222,
        "duration_method": "ffprobe",
        "category": "news",
        "published": True,
    }
    fields.update(overrides)
    return repository.add_article(title, **fields)


def test_repository_crud_cycle(repository: ArticleRepository) -> None:
    article_id = _add(
        repository,
        "Morning Briefing",
        description="Daily summary",
        audio_url="http://media.local/storage/audio/upload/v1/audio-articles/a.mp3",
        audio_provider_id="audio-articles/a.mp3",
    )

    record = repository.get_article(article_id)
    assert record is not None
    assert record.title == "Morning Briefing"
    assert record.content == "Audio content"
    assert (record.duration_seconds, record.duration_method) == (222, "ffprobe")
    assert record.play_count == 0

    updated = repository.update_article(article_id, title="Evening Briefing", featured=True)
    assert updated is not None and updated.title == "Evening Briefing" and updated.featured

    assert repository.remove_article(article_id) is True
    assert repository.get_article(article_id) is None
    assert repository.remove_article(article_id) is False


def test_update_article_rejects_unknown_fields(repository: ArticleRepository) -> None:
    article_id = _add(repository, "Talk")

    with pytest.raises(ValueError):
        repository.update_article(article_id, duration_seconds=10)


def test_update_duration_writes_value_and_method_together(repository: ArticleRepository) -> None:
    article_id = _add(repository, "Talk", duration_seconds=480, duration_method="fallback")

    update = repository.update_duration(article_id, 512, DurationMethod.MANUAL_UPDATE)

    assert (update.previous_seconds, update.previous_method) == (480, "fallback")
    assert (update.record.duration_seconds, update.record.duration_method) == (512, "manual-update")
    assert not update.conflicted


def test_update_duration_last_write_wins_with_warning(repository: ArticleRepository, caplog) -> None:
    article_id = _add(repository, "Talk", duration_seconds=480)
    repository.update_duration(article_id, 610, DurationMethod.MANUAL_UPDATE)

    with caplog.at_level(logging.WARNING, logger="app.services.storage"):
        update = repository.update_duration(
            article_id, 605, DurationMethod.LIVE_MEASUREMENT, expected_seconds=480
        )

    assert update.conflicted
    assert update.record.duration_seconds == 605
    assert "changed from 480s to 610s" in caplog.text


def test_update_duration_validates_input(repository: ArticleRepository) -> None:
    article_id = _add(repository, "Talk")

    with pytest.raises(ValueError):
        repository.update_duration(article_id, 0, DurationMethod.MANUAL_UPDATE)
    with pytest.raises(ArticleNotFoundError):
        repository.update_duration("missing", 10, DurationMethod.MANUAL_UPDATE)


def test_update_duration_reports_article_removed_mid_write(
    repository: ArticleRepository, monkeypatch: pytest.MonkeyPatch
) -> None:
    article_id = _add(repository, "Talk")
    original_fetch = repository._fetch_one
    calls = []

    def fetch_then_vanish(connection, requested_id):
        calls.append(requested_id)
        return original_fetch(connection, requested_id) if len(calls) == 1 else None

    monkeypatch.setattr(repository, "_fetch_one", fetch_then_vanish)

    with pytest.raises(ArticleNotFoundError):
        repository.update_duration(article_id, 200, DurationMethod.MANUAL_UPDATE)


def test_list_articles_filters_and_paginates(repository: ArticleRepository) -> None:
    for index in range(5):
        _add(repository, f"News {index}")
    _add(repository, "Sports", category="sports", featured=True)
    _add(repository, "Draft", published=False)

    page = repository.list_articles(page=2, limit=2)
    assert page.total == 6
    assert page.total_pages == 3
    assert len(page.articles) == 2

    sports = repository.list_articles(category="sports")
    assert [article.title for article in sports.articles] == ["Sports"]

    featured = repository.list_articles(featured=True)
    assert featured.total == 1

    newest_first = repository.list_articles(limit=10).articles
    assert newest_first[0].title == "Sports"


def test_search_matches_title_description_and_category(repository: ArticleRepository) -> None:
    _add(repository, "Climate Report", description="Weekly")
    _add(repository, "Markets", description="Climate finance outlook")
    _add(repository, "Football", category="sports")
    _add(repository, "Hidden climate", published=False)

    titles = {article.title for article in repository.search_articles("CLIMATE")}
    assert titles == {"Climate Report", "Markets"}
    assert [article.title for article in repository.search_articles("sports")] == ["Football"]
    assert len(repository.search_articles("")) == 3
    assert repository.search_articles("100%") == []

    _add(repository, "Ärzte heute", category="Gesundheit")
    assert [article.title for article in repository.search_articles("ärzte")] == ["Ärzte heute"]
    assert [article.title for article in repository.search_articles("GESUNDHEIT")] == ["Ärzte heute"]


def test_iter_suspicious_articles(repository: ArticleRepository) -> None:
    _add(repository, "Zero", duration_seconds=0)
    _add(repository, "Default", duration_seconds=300)
    _add(repository, "Placeholder", duration_seconds=480)
    _add(repository, "Real", duration_seconds=222)

    titles = {article.title for article in repository.iter_suspicious_articles()}
    assert titles == {"Zero", "Default", "Placeholder"}


def test_increment_play_count(repository: ArticleRepository) -> None:
    article_id = _add(repository, "Talk")

    repository.increment_play_count(article_id)
    record = repository.increment_play_count(article_id)

    assert record is not None and record.play_count == 2
    assert repository.increment_play_count("missing") is None
    assert repository.ping()
