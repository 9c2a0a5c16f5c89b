"""Bootstrap logic that prepares runtime directories and the SQLite database."""

from __future__ import annotations

import logging
import sqlite3
import time
from pathlib import Path

from . import config as config_module
from .config import AppConfig, load_config

LOGGER = logging.getLogger(__name__)


STALE_TEMP_FILE_SECONDS = 60 * 60


class BootstrapError(RuntimeError):
    """Raised when initialization cannot be completed."""


def cleanup_temp_files(temp_root: Path, *, max_age_seconds: float = STALE_TEMP_FILE_SECONDS) -> int:
    """Remove files in *temp_root* older than *max_age_seconds*; return the count."""

    if not temp_root.exists():
        LOGGER.debug("No temp directory at %s", temp_root)
        return 0

    now = time.time()
    removed = 0
    for child in temp_root.iterdir():
        if not child.is_file():
            continue
        try:
            age = now - child.stat().st_mtime
            if age > max_age_seconds:
                child.unlink()
                removed += 1
                LOGGER.debug("Removed stale temp file %s (age=%.0fs)", child, age)
        except OSError as error:
            LOGGER.warning("Could not remove temp file %s: %s", child, error)
    if removed:
        LOGGER.info("Removed %s stale temp file(s) from %s", removed, temp_root)
    return removed


class Bootstrapper:
    """High level object orchestrating initialization steps."""

    def __init__(self, config: AppConfig) -> None:
        self._config = config

    @property
    def config(self) -> AppConfig:
        return self._config

    def initialize(self) -> None:
        """Run all bootstrap tasks."""

        LOGGER.debug("Starting bootstrap sequence")
        self._ensure_directories()
        self._ensure_database()
        LOGGER.info("Bootstrap completed successfully")

    def _ensure_directories(self) -> None:
        labelled = (
            ("storage", self._config.storage_root),
            ("temp", self._config.temp_root),
            ("objects", self._config.objects_root),
        )
        for label, path in labelled:
            if not config_module._ensure_writable_directory(path):
                raise BootstrapError(f"The {label} directory '{path}' is not writable.")
            LOGGER.debug("Ensured directory exists: %s", path)

        cleanup_temp_files(self._config.temp_root)

    def _ensure_database(self) -> None:
        LOGGER.debug("Ensuring database schema at %s", self._config.database_file)
        connection = sqlite3.connect(self._config.database_file)
        try:
            cursor = connection.cursor()
            cursor.executescript(
                """
                CREATE TABLE IF NOT EXISTS articles (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    description TEXT NOT NULL DEFAULT '',
                    category TEXT NOT NULL DEFAULT '',
                    content TEXT NOT NULL DEFAULT 'Audio content',
                    duration_seconds INTEGER,
                    duration_method TEXT NOT NULL DEFAULT 'default',
                    audio_url TEXT,
                    audio_provider_id TEXT,
                    thumbnail_url TEXT,
                    thumbnail_provider_id TEXT,
                    play_count INTEGER NOT NULL DEFAULT 0,
                    published INTEGER NOT NULL DEFAULT 0,
                    featured INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_articles_created_at
                    ON articles(created_at);
                """
            )
            connection.commit()
        finally:
            connection.close()


def initialize_app(config_path: Path | None = None) -> AppConfig:
    """Convenience helper that loads configuration and runs initialization."""

    config = load_config(config_path=config_path)
    bootstrapper = Bootstrapper(config)
    bootstrapper.initialize()
    return config


__all__ = ["BootstrapError", "Bootstrapper", "cleanup_temp_files", "initialize_app"]
