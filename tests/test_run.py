"""Tests for the run.py entrypoint helpers."""

from __future__ import annotations

from types import SimpleNamespace

from typer.testing import CliRunner

import run
from app.config import AppConfig
from app.services.repair import RepairResult, SweepSummary
from app.services.storage import ArticleRepository


def _setup_serve(monkeypatch, tmp_path, upload_limit):
    captured = {}

    monkeypatch.setattr(
        run,
        "initialize_app",
        lambda: SimpleNamespace(storage_root=tmp_path),
    )
    monkeypatch.setattr(run, "_prepare_logging", lambda storage_root: None)
    monkeypatch.setattr(run, "ArticleRepository", lambda config: object())

    dummy_app = SimpleNamespace(state=SimpleNamespace())
    monkeypatch.setattr(run, "create_app", lambda repository, config, root_path: dummy_app)

    class DummyConfig:
        def __init__(self, app, limit_max_request_size=None, **kwargs):
            captured["app"] = app
            captured["config_kwargs"] = dict(kwargs)
            if limit_max_request_size is not None:
                captured["config_kwargs"]["limit_max_request_size"] = limit_max_request_size

    class DummyServer:
        def __init__(self, config):
            captured["server_config"] = config
            captured["server_instance"] = self

        def run(self):
            captured["server_run"] = True

    monkeypatch.setattr(run.uvicorn, "Config", DummyConfig)
    monkeypatch.setattr(run.uvicorn, "Server", DummyServer)
    monkeypatch.setattr(run, "get_max_upload_bytes", lambda: upload_limit)

    run.serve(host="0.0.0.0", port=9000, root_path="api/")

    captured["app_state_server"] = dummy_app.state.server
    return captured


def test_serve_applies_request_size_limit(monkeypatch, tmp_path):
    captured = _setup_serve(monkeypatch, tmp_path, upload_limit=50 * 1024 * 1024)

    assert captured["config_kwargs"]["limit_max_request_size"] == 50 * 1024 * 1024
    assert captured["config_kwargs"]["root_path"] == "/api"
    assert captured["app_state_server"] is captured["server_instance"]
    assert captured["server_run"] is True


def test_serve_omits_limit_when_disabled(monkeypatch, tmp_path):
    captured = _setup_serve(monkeypatch, tmp_path, upload_limit=0)

    assert "limit_max_request_size" not in captured["config_kwargs"]


def test_durations_command_lists_articles(monkeypatch, temp_config: AppConfig):
    repository = ArticleRepository(temp_config)
    repository.add_article("Placeholder talk", duration_seconds=480, duration_method="fallback")
    repository.add_article("Measured talk", duration_seconds=222, duration_method="ffprobe")
    monkeypatch.setattr(run, "initialize_app", lambda: temp_config)
    monkeypatch.setenv("COLUMNS", "200")
    monkeypatch.setattr(run, "_prepare_logging", lambda storage_root: None)

    result = CliRunner().invoke(run.cli, ["durations", "--suspicious"])

    assert result.exit_code == 0, result.output
    assert "Placeholder talk" in result.output
    assert "Measured talk" not in result.output


def test_bulk_fix_command_prints_summary(monkeypatch, temp_config: AppConfig):
    monkeypatch.setattr(run, "initialize_app", lambda: temp_config)
    monkeypatch.setenv("COLUMNS", "200")
    monkeypatch.setattr(run, "_prepare_logging", lambda storage_root: None)
    summary = SweepSummary(
        results=[
            RepairResult(article_id="a", title="Zero", old_seconds=0, error="network"),
            RepairResult(article_id="b", title="Eight", old_seconds=480, new_seconds=512, success=True),
        ]
    )
    monkeypatch.setattr(run, "bulk_fix_durations", lambda repository, measurer: summary)

    result = CliRunner().invoke(run.cli, ["bulk-fix"])

    assert result.exit_code == 0, result.output
    assert "Processed 2 article(s)" in result.output
    assert "1 fixed" in result.output


def test_cleanup_temp_command(monkeypatch, temp_config: AppConfig):
    monkeypatch.setattr(run, "initialize_app", lambda: temp_config)
    monkeypatch.setenv("COLUMNS", "200")
    monkeypatch.setattr(run, "_prepare_logging", lambda storage_root: None)
    (temp_config.temp_root / "temp-audio-old.mp3").write_bytes(b"x")

    result = CliRunner().invoke(run.cli, ["cleanup-temp", "--max-age=-1"])

    assert result.exit_code == 0, result.output
    assert "Removed 1 temp file(s)" in result.output
    assert list(temp_config.temp_root.iterdir()) == []
