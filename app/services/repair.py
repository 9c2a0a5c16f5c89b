"""Repair of stored durations from live measurements."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from .durations import DurationMethod, format_duration, is_suspicious_duration
from .live_duration import LiveDurationMeasurer, PlaybackError
from .storage import ArticleNotFoundError, ArticleRecord, ArticleRepository


LOGGER = logging.getLogger(__name__)


@dataclass
class RepairResult:
    article_id: str
    title: str
    old_seconds: Optional[int]
    new_seconds: Optional[int] = None
    method: Optional[str] = None
    success: bool = False
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.article_id,
            "title": self.title,
            "oldDuration": self.old_seconds,
            "newDuration": self.new_seconds,
            "formattedDuration": format_duration(self.new_seconds or self.old_seconds),
            "method": self.method,
            "success": self.success,
            "error": self.error,
        }


@dataclass
class SweepSummary:
    results: List[RepairResult] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return len(self.results)

    @property
    def succeeded(self) -> int:
        return sum(1 for result in self.results if result.success)

    @property
    def failed(self) -> int:
        return self.processed - self.succeeded

    def to_dict(self) -> dict:
        return {
            "success": True,
            "message": f"Bulk fix completed. Processed {self.processed} articles.",
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "results": [result.to_dict() for result in self.results],
        }


def remeasure_article(
    repository: ArticleRepository,
    measurer: LiveDurationMeasurer,
    article: ArticleRecord,
    *,
    method: DurationMethod,
) -> RepairResult:
    """Measure *article* live and store the result with *method*.

    Failures are captured in the returned result; the stored duration is left
    untouched when the stream cannot be measured.
    """

    result = RepairResult(
        article_id=article.id,
        title=article.title,
        old_seconds=article.duration_seconds,
    )
    try:
        measurement = measurer.measure(article.audio_url or "")
        update = repository.update_duration(
            article.id,
            measurement.seconds,
            method,
            expected_seconds=article.duration_seconds,
        )
    except PlaybackError as error:
        result.error = str(error)
        LOGGER.warning("Could not re-measure article %s: %s", article.id, error)
        return result
    except ArticleNotFoundError:
        result.error = "Article not found"
        LOGGER.warning("Article %s disappeared during re-measurement", article.id)
        return result

    result.new_seconds = update.record.duration_seconds
    result.method = update.record.duration_method
    result.success = True
    return result


def bulk_fix_durations(
    repository: ArticleRepository,
    measurer: LiveDurationMeasurer,
    *,
    articles: Optional[Iterable[ArticleRecord]] = None,
) -> SweepSummary:
    """Re-measure every article with a suspicious stored duration.

    Articles are processed one after the other; one failure never aborts the
    sweep. Successful measurements are stored with the ``bulk-fix`` tag.
    """

    candidates = articles if articles is not None else repository.iter_suspicious_articles()
    summary = SweepSummary()
    for article in candidates:
        if not is_suspicious_duration(article.duration_seconds):
            continue
        LOGGER.info(
            "Bulk fix: processing '%s' (current duration %ss)",
            article.title,
            article.duration_seconds,
        )
        try:
            result = remeasure_article(
                repository, measurer, article, method=DurationMethod.BULK_FIX
            )
        except Exception as error:  # noqa: BLE001 - isolate per-article failures
            LOGGER.exception("Bulk fix failed for article %s", article.id)
            result = RepairResult(
                article_id=article.id,
                title=article.title,
                old_seconds=article.duration_seconds,
                error=str(error) or error.__class__.__name__,
            )
        summary.results.append(result)

    LOGGER.info(
        "Bulk fix completed: processed=%s succeeded=%s failed=%s",
        summary.processed,
        summary.succeeded,
        summary.failed,
    )
    return summary


__all__ = ["RepairResult", "SweepSummary", "bulk_fix_durations", "remeasure_article"]
