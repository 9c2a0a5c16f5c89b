from __future__ import annotations

import dataclasses
import io
from typing import Dict, List

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from app.config import AppConfig
from app.processing import DurationEstimator, EstimationStrategy
from app.services.durations import DurationMethod
from app.services.live_duration import LiveDurationMeasurer, MediaStream, MediaStreamError
from app.services.object_store import LocalObjectStore
from app.services.storage import ArticleRepository
from app.web import create_app


def _png_bytes() -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (8, 8), color=(10, 120, 200)).save(buffer, format="PNG")
    return buffer.getvalue()


class StubDecoder:
    """Decoder returning a fixed duration, or failing when ``seconds`` is ``None``."""

    def __init__(self) -> None:
        self.seconds: float | None = 400.0
        self.opened: List[str] = []

    def open(self, url: str) -> MediaStream:
        self.opened.append(url)
        if self.seconds is None:
            raise MediaStreamError("network", "connection refused")
        return MediaStream(url=url, duration_seconds=self.seconds)


@pytest.fixture()
def decoder() -> StubDecoder:
    return StubDecoder()


def _build_app(config: AppConfig, decoder: StubDecoder, *, object_store=None):
    repository = ArticleRepository(config)
    estimator = DurationEstimator(
        config.temp_root,
        strategies=[EstimationStrategy(DurationMethod.FFPROBE, lambda path, request: 184.4)],
    )
    measurer = LiveDurationMeasurer(decoder, sleep=lambda seconds: None)
    return (
        create_app(
            repository,
            config=config,
            object_store=object_store,
            estimator=estimator,
            measurer=measurer,
        ),
        repository,
    )


@pytest.fixture()
def api(temp_config: AppConfig, decoder: StubDecoder):
    app, repository = _build_app(temp_config, decoder)
    with TestClient(app) as client:
        yield client, repository


def _upload(client: TestClient, **fields) -> Dict:
    data = {"title": "Morning Briefing", "category": "news", "description": "Daily"}
    data.update(fields)
    response = client.post(
        "/api/articles",
        data=data,
        files={
            "audio": ("talk.mp3", b"ID3" + b"\x00" * 2048, "audio/mpeg"),
            "thumbnail": ("cover.png", _png_bytes(), "image/png"),
        },
    )
    assert response.status_code == 201, response.text
    return response.json()


def test_health(api) -> None:
    client, _ = api
    response = client.get("/api/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "database": True}


def test_create_article_estimates_duration_and_stores_assets(api, temp_config: AppConfig) -> None:
    client, repository = api

    payload = _upload(client, duration="999")
    article = payload["article"]

    assert article["duration_seconds"] == 184
    assert article["duration_method"] == "ffprobe"
    assert payload["formattedDuration"] == "3:04"
    assert article["audio_url"].startswith("http://testserver/storage/audio/upload/q_auto:low,")
    assert article["published"] is True
    assert list(temp_config.temp_root.iterdir()) == []

    audio_path = article["audio_url"].split("http://testserver", 1)[1]
    served = client.get(audio_path)
    assert served.status_code == 200
    assert served.content.startswith(b"ID3")


def test_create_article_requires_both_files(api) -> None:
    client, _ = api
    response = client.post(
        "/api/articles",
        data={"title": "Missing thumbnail"},
        files={"audio": ("talk.mp3", b"ID3data", "audio/mpeg")},
    )

    assert response.status_code == 400


def test_create_article_rejects_unreadable_thumbnail(api, temp_config: AppConfig) -> None:
    client, repository = api
    response = client.post(
        "/api/articles",
        data={"title": "Broken"},
        files={
            "audio": ("talk.mp3", b"ID3data", "audio/mpeg"),
            "thumbnail": ("cover.png", b"not an image", "image/png"),
        },
    )

    assert response.status_code == 502
    assert list(repository.iter_articles()) == []
    audio_dir = temp_config.objects_root / "audio"
    assert not any(path.is_file() for path in audio_dir.rglob("*"))


def test_list_search_and_get(api) -> None:
    client, _ = api
    created = _upload(client)["article"]
    _upload(client, title="Football roundup", category="sports")
    _upload(client, title="Unpublished", published="false")

    listing = client.get("/api/articles", params={"limit": 1}).json()
    assert listing["total"] == 2
    assert listing["totalPages"] == 2
    assert listing["currentPage"] == 1

    sports = client.get("/api/articles", params={"category": "sports"}).json()
    assert [article["title"] for article in sports["articles"]] == ["Football roundup"]

    found = client.get("/api/articles/search", params={"q": "morning"}).json()
    assert [article["id"] for article in found["articles"]] == [created["id"]]

    first = client.get(f"/api/articles/{created['id']}").json()["article"]
    second = client.get(f"/api/articles/{created['id']}").json()["article"]
    assert (first["play_count"], second["play_count"]) == (1, 2)

    assert client.get("/api/articles/does-not-exist").status_code == 404


def test_manual_duration_update(api) -> None:
    client, repository = api
    article_id = _upload(client)["article"]["id"]

    response = client.put(f"/api/articles/{article_id}/duration", json={"duration": 612.4})
    assert response.status_code == 200
    body = response.json()["article"]
    assert (body["oldDuration"], body["newDuration"]) == (184, 612)
    assert body["method"] == "manual-update"
    assert body["formattedDuration"] == "10:12"

    assert client.put(f"/api/articles/{article_id}/duration", json={"duration": 0}).status_code == 422
    assert client.put(f"/api/articles/{article_id}/duration", json={"duration": "abc"}).status_code == 422
    assert client.put("/api/articles/missing/duration", json={"duration": 10}).status_code == 404

    record = repository.get_article(article_id)
    assert (record.duration_seconds, record.duration_method) == (612, "manual-update")


def test_player_backfill_uses_live_measurement_tag(api) -> None:
    client, repository = api
    article_id = _upload(client)["article"]["id"]

    response = client.put(
        f"/api/articles/{article_id}/duration",
        json={"duration": 240, "method": "live-measurement", "expectedDuration": 184},
    )

    assert response.status_code == 200
    assert response.json()["article"]["conflicted"] is False
    assert repository.get_article(article_id).duration_method == "live-measurement"


def test_fix_duration_success_and_failure(api, decoder: StubDecoder) -> None:
    client, repository = api
    article_id = _upload(client)["article"]["id"]

    response = client.put(f"/api/articles/{article_id}/fix-duration")
    assert response.status_code == 200
    assert response.json()["article"]["newDuration"] == 400
    assert repository.get_article(article_id).duration_method == "live-measurement"

    decoder.seconds = None
    response = client.put(f"/api/articles/{article_id}/fix-duration")
    assert response.status_code == 502
    assert repository.get_article(article_id).duration_seconds == 400


def test_real_duration_reads_through_without_persisting(api, decoder: StubDecoder) -> None:
    client, repository = api
    article_id = _upload(client)["article"]["id"]

    body = client.get(f"/api/articles/{article_id}/real-duration").json()
    assert body["realDuration"] == 400
    assert body["durationSource"] == "audio-url"
    assert body["needsUpdate"] is True
    assert repository.get_article(article_id).duration_seconds == 184

    decoder.seconds = None
    body = client.get(f"/api/articles/{article_id}/real-duration").json()
    assert body["realDuration"] == 184
    assert body["durationSource"] == "database"


def test_bulk_fix_and_debug_report(api, decoder: StubDecoder) -> None:
    client, repository = api
    suspicious_id = _upload(client)["article"]["id"]
    healthy_id = _upload(client, title="Healthy")["article"]["id"]
    client.put(f"/api/articles/{suspicious_id}/duration", json={"duration": 480})

    report = client.get("/api/articles/debug/durations").json()
    assert report["totalArticles"] == 2
    assert report["articlesWith8MinutesDuration"] == 1

    summary = client.post("/api/articles/bulk-fix-durations").json()
    assert summary["processed"] == 1
    assert summary["succeeded"] == 1
    assert repository.get_article(suspicious_id).duration_method == "bulk-fix"
    assert repository.get_article(healthy_id).duration_seconds == 184


def test_update_article_replaces_thumbnail(api, temp_config: AppConfig) -> None:
    client, repository = api
    created = _upload(client)["article"]
    old_thumbnail = temp_config.objects_root / "image" / created["thumbnail_provider_id"]
    assert old_thumbnail.exists()

    response = client.put(
        f"/api/articles/{created['id']}",
        data={"title": "Renamed", "featured": "true"},
        files={"thumbnail": ("new.png", _png_bytes(), "image/png")},
    )

    assert response.status_code == 200
    updated = response.json()["article"]
    assert updated["title"] == "Renamed"
    assert updated["featured"] is True
    assert updated["thumbnail_provider_id"] != created["thumbnail_provider_id"]
    assert not old_thumbnail.exists()


def test_delete_article_releases_assets(api, temp_config: AppConfig) -> None:
    client, repository = api
    created = _upload(client)["article"]
    audio_file = temp_config.objects_root / "audio" / created["audio_provider_id"]
    audio_file.unlink()

    response = client.delete(f"/api/articles/{created['id']}")

    assert response.status_code == 200
    assert repository.get_article(created["id"]) is None
    assert not (temp_config.objects_root / "image" / created["thumbnail_provider_id"]).exists()
    assert client.delete(f"/api/articles/{created['id']}").status_code == 404


class UnreachableAudioStore(LocalObjectStore):
    def delete(self, provider_id: str, *, kind: str) -> bool:
        if kind == "audio":
            raise ConnectionError("media provider unreachable")
        return super().delete(provider_id, kind=kind)


def test_delete_article_continues_when_audio_release_fails(
    temp_config: AppConfig, decoder: StubDecoder
) -> None:
    store = UnreachableAudioStore(temp_config.objects_root, public_base_url=temp_config.public_base_url)
    app, repository = _build_app(temp_config, decoder, object_store=store)
    with TestClient(app) as client:
        created = _upload(client)["article"]
        thumbnail = temp_config.objects_root / "image" / created["thumbnail_provider_id"]
        assert thumbnail.exists()

        response = client.delete(f"/api/articles/{created['id']}")

    assert response.status_code == 200
    assert repository.get_article(created["id"]) is None
    assert not thumbnail.exists()


def test_admin_endpoints_require_token_when_configured(temp_config: AppConfig, decoder: StubDecoder) -> None:
    config = dataclasses.replace(temp_config, admin_token="tok")
    app, repository = _build_app(config, decoder)
    article_id = repository.add_article("Talk", duration_seconds=300, duration_method="default", published=True)

    with TestClient(app) as client:
        denied = client.put(f"/api/articles/{article_id}/duration", json={"duration": 200})
        allowed = client.put(
            f"/api/articles/{article_id}/duration",
            json={"duration": 200},
            headers={"Authorization": "Bearer tok"},
        )
        public = client.get("/api/articles")

    assert denied.status_code == 401
    assert allowed.status_code == 200
    assert public.status_code == 200
