"""Configuration loading utilities for the Audio Articles application."""

from __future__ import annotations

import contextlib
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Tuple


LOGGER = logging.getLogger(__name__)


_PERMISSION_SENTINEL = ".audio_articles_write_check"

DEFAULT_PUBLIC_BASE_URL = "http://127.0.0.1:8000"
ADMIN_TOKEN_ENV = "AUDIO_ARTICLES_ADMIN_TOKEN"
PUBLIC_URL_ENV = "AUDIO_ARTICLES_PUBLIC_URL"


def _ensure_writable_directory(path: Path) -> bool:
    """Return ``True`` if *path* can be created and written to."""

    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError:
        return False

    test_file = path / _PERMISSION_SENTINEL
    try:
        with test_file.open("w", encoding="utf-8") as handle:
            handle.write("ok")
    except OSError:
        return False
    finally:
        with contextlib.suppress(OSError):
            test_file.unlink()

    return True


def _select_writable_directory(
    preferred: Path,
    *,
    label: str,
    fallbacks: Iterable[Path] = (),
) -> Tuple[Path, bool]:
    """Return a usable directory based on ``preferred`` and ``fallbacks``.

    The first writable candidate wins. A flag indicating whether a fallback was
    used is returned alongside the path. When nothing can be prepared the
    original ``preferred`` path is returned so that bootstrap can report it.
    """

    preferred = preferred.resolve()
    if _ensure_writable_directory(preferred):
        return preferred, False

    for fallback in fallbacks:
        candidate = fallback.resolve()
        if candidate == preferred:
            continue
        if _ensure_writable_directory(candidate):
            LOGGER.warning(
                "Preferred %s directory '%s' is not writable; using fallback '%s'.",
                label,
                preferred,
                candidate,
            )
            return candidate, True

    LOGGER.warning(
        "%s directory '%s' is not writable and no fallback is available.",
        label.capitalize(),
        preferred,
    )
    return preferred, False


def _normalize_base_url(value: Optional[str]) -> str:
    cleaned = (value or "").strip().rstrip("/")
    return cleaned or DEFAULT_PUBLIC_BASE_URL


@dataclass(frozen=True)
class AppConfig:
    """Runtime paths and service settings for the application."""

    storage_root: Path
    database_file: Path
    temp_root: Path
    public_base_url: str = DEFAULT_PUBLIC_BASE_URL
    admin_token: Optional[str] = None

    @property
    def objects_root(self) -> Path:
        """Location of the local object store."""

        return (self.storage_root / "objects").resolve()

    @property
    def auth_enabled(self) -> bool:
        return bool(self.admin_token)

    @classmethod
    def from_mapping(cls, mapping: Dict[str, Any], *, base_path: Path) -> "AppConfig":
        preferred_storage = (base_path / mapping["storage_root"]).resolve()
        storage_fallback = Path.home() / ".audio_articles" / "storage"
        storage_root, storage_fallback_used = _select_writable_directory(
            preferred_storage,
            label="storage",
            fallbacks=(storage_fallback,),
        )

        database_file = (base_path / mapping["database_file"]).resolve()
        if storage_fallback_used:
            try:
                relative_database = database_file.relative_to(preferred_storage)
            except ValueError:
                relative_database = None
            if relative_database is not None:
                fallback_database = (storage_root / relative_database).resolve()
                if _ensure_writable_directory(fallback_database.parent):
                    LOGGER.warning(
                        "Preferred database location '%s' is not writable; using fallback '%s'.",
                        database_file,
                        fallback_database,
                    )
                    database_file = fallback_database

        if not _ensure_writable_directory(database_file.parent):
            fallback_database = (storage_root / database_file.name).resolve()
            if fallback_database != database_file and _ensure_writable_directory(
                fallback_database.parent
            ):
                LOGGER.warning(
                    "Preferred database location '%s' is not writable; using fallback '%s'.",
                    database_file,
                    fallback_database,
                )
                database_file = fallback_database
            else:
                LOGGER.warning(
                    "Database location '%s' is not writable and no fallback is available.",
                    database_file,
                )

        preferred_temp = (base_path / mapping.get("temp_root", "storage/_temp")).resolve()
        temp_root, _ = _select_writable_directory(
            preferred_temp,
            label="temp",
            fallbacks=(storage_root / "_temp",),
        )

        public_base_url = _normalize_base_url(
            os.environ.get(PUBLIC_URL_ENV) or mapping.get("public_base_url")
        )
        admin_token = (os.environ.get(ADMIN_TOKEN_ENV) or mapping.get("admin_token") or "").strip()

        return cls(
            storage_root=storage_root,
            database_file=database_file,
            temp_root=temp_root,
            public_base_url=public_base_url,
            admin_token=admin_token or None,
        )


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load the application configuration from ``config/default.json`` by default."""

    base_path = Path(__file__).resolve().parent.parent
    if config_path is None:
        config_path = base_path / "config" / "default.json"

    with config_path.open("r", encoding="utf-8") as config_file:
        raw_config = json.load(config_file)

    return AppConfig.from_mapping(raw_config, base_path=base_path)


__all__ = ["AppConfig", "load_config"]
