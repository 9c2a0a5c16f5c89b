"""Persistence helpers backed by SQLite."""

from __future__ import annotations

import logging
import math
import sqlite3
import time
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from ..config import AppConfig
from .durations import SUSPICIOUS_DURATIONS, DurationMethod


@dataclass
class ArticleRecord:
    id: str
    title: str
    description: str
    category: str
    content: str
    duration_seconds: Optional[int]
    duration_method: str
    audio_url: Optional[str]
    audio_provider_id: Optional[str]
    thumbnail_url: Optional[str]
    thumbnail_provider_id: Optional[str]
    play_count: int
    published: bool
    featured: bool
    created_at: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ArticlePage:
    articles: List[ArticleRecord]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        if self.limit <= 0:
            return 0
        return int(math.ceil(self.total / float(self.limit)))


@dataclass
class DurationUpdate:
    """Outcome of a duration write, including the value it replaced."""

    record: ArticleRecord
    previous_seconds: Optional[int]
    previous_method: str
    conflicted: bool = False


class ArticleNotFoundError(LookupError):
    """Raised when a write targets an article that does not exist."""


LOGGER = logging.getLogger(__name__)

_DB_SLOW_WARNING_MS = 450.0

_COLUMNS = (
    "id",
    "title",
    "description",
    "category",
    "content",
    "duration_seconds",
    "duration_method",
    "audio_url",
    "audio_provider_id",
    "thumbnail_url",
    "thumbnail_provider_id",
    "play_count",
    "published",
    "featured",
    "created_at",
)
_SELECT = f"SELECT {', '.join(_COLUMNS)} FROM articles"

_UPDATABLE_FIELDS = {
    "title",
    "description",
    "category",
    "content",
    "thumbnail_url",
    "thumbnail_provider_id",
    "audio_url",
    "audio_provider_id",
    "published",
    "featured",
}


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def _casefold(value: Optional[str]) -> Optional[str]:
    # SQLite's LOWER() only folds ASCII letters.
    return value.casefold() if value else value


def _row_to_record(row: sqlite3.Row) -> ArticleRecord:
    payload = dict(row)
    payload["published"] = bool(payload["published"])
    payload["featured"] = bool(payload["featured"])
    payload["play_count"] = int(payload["play_count"] or 0)
    return ArticleRecord(**payload)


class ArticleRepository:
    """Repository exposing the article store operations."""

    def __init__(self, config: AppConfig) -> None:
        self._db_path = config.database_file

    @staticmethod
    def _summarize_sql(statement: str) -> str:
        collapsed = " ".join(statement.strip().split())
        return collapsed[:180] + ("…" if len(collapsed) > 180 else "")

    def _execute(
        self,
        connection: sqlite3.Connection,
        statement: str,
        parameters: Sequence[Any] | Tuple[Any, ...] | None = None,
        *,
        action: str,
    ) -> sqlite3.Cursor:
        params: Tuple[Any, ...] = tuple(parameters or ())
        start = time.perf_counter()
        try:
            cursor = connection.execute(statement, params)
        except sqlite3.Error:
            LOGGER.exception(
                "Query %s failed: %s", action, self._summarize_sql(statement)
            )
            raise
        duration_ms = (time.perf_counter() - start) * 1000.0
        if duration_ms >= _DB_SLOW_WARNING_MS:
            LOGGER.warning(
                "Slow query %s took %.1fms: %s",
                action,
                duration_ms,
                self._summarize_sql(statement),
            )
        else:
            LOGGER.debug("Query %s finished in %.1fms", action, duration_ms)
        return cursor

    def _connect(self) -> sqlite3.Connection:
        LOGGER.debug("Opening SQLite connection to %s", self._db_path)
        connection = sqlite3.connect(self._db_path)
        connection.row_factory = sqlite3.Row
        connection.create_function("casefold", 1, _casefold, deterministic=True)
        return connection

    def _fetch_one(self, connection: sqlite3.Connection, article_id: str) -> Optional[ArticleRecord]:
        cursor = self._execute(
            connection,
            f"{_SELECT} WHERE id = ?",
            (article_id,),
            action="articles.get",
        )
        row = cursor.fetchone()
        return _row_to_record(row) if row else None

    # ---------------------------------------------------------------------
    # Creation helpers
    # ---------------------------------------------------------------------
    def add_article(
        self,
        title: str,
        *,
        duration_seconds: int,
        duration_method: str,
        description: str = "",
        category: str = "",
        content: str = "Audio content",
        audio_url: Optional[str] = None,
        audio_provider_id: Optional[str] = None,
        thumbnail_url: Optional[str] = None,
        thumbnail_provider_id: Optional[str] = None,
        published: bool = False,
        featured: bool = False,
    ) -> str:
        if not duration_method:
            raise ValueError("duration_method must not be empty")
        article_id = uuid.uuid4().hex
        LOGGER.debug(
            "Adding article '%s' (duration=%ss method=%s)",
            title,
            duration_seconds,
            duration_method,
        )
        with self._connect() as connection:
            self._execute(
                connection,
                """
                INSERT INTO articles(
                    id, title, description, category, content,
                    duration_seconds, duration_method,
                    audio_url, audio_provider_id,
                    thumbnail_url, thumbnail_provider_id,
                    play_count, published, featured, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?)
                """,
                (
                    article_id,
                    title,
                    description,
                    category,
                    content or "Audio content",
                    int(duration_seconds),
                    str(duration_method),
                    audio_url,
                    audio_provider_id,
                    thumbnail_url,
                    thumbnail_provider_id,
                    int(bool(published)),
                    int(bool(featured)),
                    _utcnow(),
                ),
                action="articles.insert",
            )
        LOGGER.info("Article '%s' stored with id=%s", title, article_id)
        return article_id

    # ---------------------------------------------------------------------
    # Lookup helpers
    # ---------------------------------------------------------------------
    def get_article(self, article_id: str) -> Optional[ArticleRecord]:
        with self._connect() as connection:
            return self._fetch_one(connection, article_id)

    def iter_articles(self) -> Iterable[ArticleRecord]:
        with self._connect() as connection:
            cursor = self._execute(
                connection,
                f"{_SELECT} ORDER BY created_at DESC, rowid DESC",
                action="articles.iter",
            )
            rows = cursor.fetchall()
        for row in rows:
            yield _row_to_record(row)

    def iter_suspicious_articles(self) -> Iterable[ArticleRecord]:
        """Yield articles whose stored duration is missing or a known sentinel."""

        sentinels = sorted(SUSPICIOUS_DURATIONS)
        placeholders = ", ".join("?" for _ in sentinels)
        with self._connect() as connection:
            cursor = self._execute(
                connection,
                f"{_SELECT} WHERE duration_seconds IS NULL "
                f"OR duration_seconds IN ({placeholders}) "
                "ORDER BY created_at DESC, rowid DESC",
                sentinels,
                action="articles.suspicious",
            )
            rows = cursor.fetchall()
        for row in rows:
            yield _row_to_record(row)

    def list_articles(
        self,
        *,
        category: Optional[str] = None,
        featured: Optional[bool] = None,
        published_only: bool = True,
        page: int = 1,
        limit: int = 10,
    ) -> ArticlePage:
        page = max(int(page), 1)
        limit = max(int(limit), 1)
        clauses: List[str] = []
        params: List[Any] = []
        if published_only:
            clauses.append("published = 1")
        if category:
            clauses.append("category = ?")
            params.append(category)
        if featured is not None:
            clauses.append("featured = ?")
            params.append(int(featured))
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._connect() as connection:
            total_row = self._execute(
                connection,
                f"SELECT COUNT(*) FROM articles{where}",
                params,
                action="articles.count",
            ).fetchone()
            cursor = self._execute(
                connection,
                f"{_SELECT}{where} ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
                [*params, limit, (page - 1) * limit],
                action="articles.page",
            )
            rows = cursor.fetchall()

        return ArticlePage(
            articles=[_row_to_record(row) for row in rows],
            total=int(total_row[0]) if total_row else 0,
            page=page,
            limit=limit,
        )

    def search_articles(self, query: Optional[str], *, limit: int = 50) -> List[ArticleRecord]:
        """Return published articles whose title, description or category contains *query*."""

        term = (query or "").strip()
        params: List[Any] = []
        where = "published = 1"
        if term:
            escaped = term.casefold().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
            pattern = f"%{escaped}%"
            where += (
                " AND (casefold(title) LIKE ? ESCAPE '\\'"
                " OR casefold(description) LIKE ? ESCAPE '\\'"
                " OR casefold(category) LIKE ? ESCAPE '\\')"
            )
            params.extend([pattern, pattern, pattern])
        params.append(int(limit))
        with self._connect() as connection:
            cursor = self._execute(
                connection,
                f"{_SELECT} WHERE {where} ORDER BY created_at DESC, rowid DESC LIMIT ?",
                params,
                action="articles.search",
            )
            rows = cursor.fetchall()
        LOGGER.debug("Search for '%s' matched %s article(s)", term, len(rows))
        return [_row_to_record(row) for row in rows]

    # ---------------------------------------------------------------------
    # Update helpers
    # ---------------------------------------------------------------------
    def update_article(self, article_id: str, **fields: Any) -> Optional[ArticleRecord]:
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported article field(s): {', '.join(sorted(unknown))}")
        updates = {key: value for key, value in fields.items() if value is not None}
        with self._connect() as connection:
            if updates:
                assignments = ", ".join(f"{key} = ?" for key in updates)
                values = [
                    int(value) if key in {"published", "featured"} else value
                    for key, value in updates.items()
                ]
                self._execute(
                    connection,
                    f"UPDATE articles SET {assignments} WHERE id = ?",
                    [*values, article_id],
                    action="articles.update",
                )
            return self._fetch_one(connection, article_id)

    def update_duration(
        self,
        article_id: str,
        duration_seconds: int,
        method: DurationMethod | str,
        *,
        expected_seconds: Optional[int] = None,
    ) -> DurationUpdate:
        """Write ``(duration_seconds, method)`` together and return what was replaced.

        Concurrent writers follow last-write-wins. When *expected_seconds* is
        given and the stored value has moved on since the caller read it, the
        write still happens but a warning is logged and the update is flagged.
        """

        seconds = int(duration_seconds)
        if seconds <= 0:
            raise ValueError("Duration must be a positive number of seconds")
        method_value = method.value if isinstance(method, DurationMethod) else str(method)
        if not method_value:
            raise ValueError("Duration method must not be empty")

        with self._connect() as connection:
            current = self._fetch_one(connection, article_id)
            if current is None:
                raise ArticleNotFoundError(article_id)
            conflicted = (
                expected_seconds is not None
                and (current.duration_seconds or 0) != int(expected_seconds)
            )
            if conflicted:
                LOGGER.warning(
                    "Duration of article %s changed from %ss to %ss since it was read; "
                    "overwriting with %ss (%s)",
                    article_id,
                    expected_seconds,
                    current.duration_seconds,
                    seconds,
                    method_value,
                )
            self._execute(
                connection,
                "UPDATE articles SET duration_seconds = ?, duration_method = ? WHERE id = ?",
                (seconds, method_value, article_id),
                action="articles.update_duration",
            )
            updated = self._fetch_one(connection, article_id)
        if updated is None:
            raise ArticleNotFoundError(article_id)
        LOGGER.info(
            "Article %s duration %ss -> %ss (%s)",
            article_id,
            current.duration_seconds,
            seconds,
            method_value,
        )
        return DurationUpdate(
            record=updated,
            previous_seconds=current.duration_seconds,
            previous_method=current.duration_method,
            conflicted=conflicted,
        )

    def increment_play_count(self, article_id: str) -> Optional[ArticleRecord]:
        with self._connect() as connection:
            self._execute(
                connection,
                "UPDATE articles SET play_count = play_count + 1 WHERE id = ?",
                (article_id,),
                action="articles.play",
            )
            return self._fetch_one(connection, article_id)

    # ---------------------------------------------------------------------
    # Removal helpers
    # ---------------------------------------------------------------------
    def remove_article(self, article_id: str) -> bool:
        with self._connect() as connection:
            cursor = self._execute(
                connection,
                "DELETE FROM articles WHERE id = ?",
                (article_id,),
                action="articles.delete",
            )
            removed = cursor.rowcount > 0
        LOGGER.debug("Removal of article %s -> %s", article_id, removed)
        return removed

    def ping(self) -> bool:
        """Return ``True`` when the database answers a trivial query."""

        try:
            with self._connect() as connection:
                self._execute(connection, "SELECT 1", action="ping").fetchone()
        except sqlite3.Error:
            return False
        return True


__all__ = [
    "ArticleNotFoundError",
    "ArticlePage",
    "ArticleRecord",
    "ArticleRepository",
    "DurationUpdate",
]
