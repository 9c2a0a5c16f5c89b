"""FastAPI application serving the audio articles API."""

from __future__ import annotations

import asyncio
import contextlib
import contextvars
import functools
import io
import logging
import os
import sqlite3
import sys
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import Any, AsyncIterator, Callable, Dict, Literal, Optional, TypeVar

from fastapi import (
    Depends,
    FastAPI,
    File,
    Form,
    Header,
    HTTPException,
    Query,
    Request,
    UploadFile,
)
from fastapi import status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.types import ASGIApp, Receive, Scope, Send

from ..config import AppConfig
from ..processing import DurationEstimator, EstimationInput
from ..services.durations import (
    PLACEHOLDER_DURATION_SECONDS,
    DurationMethod,
    format_duration,
    is_suspicious_duration,
)
from ..services.live_duration import (
    FfprobeMediaDecoder,
    LiveDurationMeasurer,
    PlaybackError,
)
from ..services.object_store import LocalObjectStore, ObjectStore, ObjectStoreError
from ..services.reconciliation import reconcile
from ..services.repair import bulk_fix_durations, remeasure_article
from ..services.storage import ArticleNotFoundError, ArticleRecord, ArticleRepository

T = TypeVar("T")

MAX_UPLOAD_BYTES_ENV = "AUDIO_ARTICLES_MAX_UPLOAD_BYTES"
_DEFAULT_MAX_UPLOAD_BYTES = 100 * 1024 * 1024
_DEFAULT_UPLOAD_CHUNK_SIZE = 1024 * 1024
_AUDIO_FOLDER = "audio-articles"
_THUMBNAIL_FOLDER = "article-thumbnails"


def get_max_upload_bytes() -> int:
    """Return the configured maximum upload size in bytes (``0`` disables the limit)."""

    raw = (os.environ.get(MAX_UPLOAD_BYTES_ENV) or "").strip()
    if not raw:
        return _DEFAULT_MAX_UPLOAD_BYTES
    try:
        return max(int(raw), 0)
    except ValueError:
        return _DEFAULT_MAX_UPLOAD_BYTES


_REQUEST_ID_VAR: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "audio_articles_request_id",
    default=None,
)
_ACTOR_VAR: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "audio_articles_actor",
    default=None,
)


def _new_correlation_id() -> str:
    return uuid.uuid4().hex


def _format_actor_label(role: str, detail: Optional[str] = None) -> str:
    base = role.strip() if role else "actor"
    if detail is None:
        return base
    suffix = str(detail).strip()
    return f"{base}:{suffix}" if suffix else base


def _collect_correlation_context() -> Dict[str, str]:
    context: Dict[str, str] = {}
    request_id = _REQUEST_ID_VAR.get()
    if request_id:
        context["request_id"] = str(request_id)
    actor = _ACTOR_VAR.get()
    if actor:
        context["actor"] = str(actor)
    return context


class LargeUploadRequest(Request):
    """Request subclass that applies the configured multipart upload limit."""

    async def _get_form(
        self,
        *,
        max_files: int | float = 1000,
        max_fields: int | float = 1000,
        max_part_size: int = 1024 * 1024,
    ) -> Any:
        configured_limit = get_max_upload_bytes()
        effective_limit = int(max_part_size)
        if configured_limit > 0:
            effective_limit = max(int(configured_limit), effective_limit)
        else:
            effective_limit = sys.maxsize
        return await super()._get_form(
            max_files=max_files,
            max_fields=max_fields,
            max_part_size=effective_limit,
        )


class RequestContextMiddleware:
    """Assign a correlation identifier to each request and expose it via contextvars."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        request_id = _new_correlation_id()
        scope_state = scope.get("state")
        if scope_state is None:
            scope_state = {}
            scope["state"] = scope_state
        if isinstance(scope_state, dict):
            scope_state["request_id"] = request_id
        else:
            setattr(scope_state, "request_id", request_id)

        method = scope.get("method")
        actor_hint = _format_actor_label("request", method.upper() if isinstance(method, str) else None)
        request_token = _REQUEST_ID_VAR.set(request_id)
        actor_token = _ACTOR_VAR.set(actor_hint)

        try:
            await self.app(scope, receive, send)
        finally:
            _ACTOR_VAR.reset(actor_token)
            _REQUEST_ID_VAR.reset(request_token)


class ContextualLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that injects correlation context into records."""

    def process(self, msg: Any, kwargs: Dict[str, Any]) -> tuple[Any, Dict[str, Any]]:  # type: ignore[override]
        extra: Dict[str, Any] = dict(self.extra)
        provided = kwargs.get("extra")
        if isinstance(provided, dict):
            extra.update(provided)
        correlation = _collect_correlation_context()
        for key, value in correlation.items():
            extra.setdefault(key, value)
        kwargs["extra"] = extra
        return msg, kwargs


LOGGER = ContextualLoggerAdapter(logging.getLogger(__name__), {})


def _log_event(message: str, **context: Any) -> None:
    details = " ".join(f"{key}={value}" for key, value in context.items() if value is not None)
    LOGGER.info("%s%s", message, f" ({details})" if details else "")


def _read_upload_stream(upload: UploadFile, *, limit: int, chunk_size: int) -> bytes:
    """Synchronously read ``upload`` in bounded chunks, enforcing *limit*."""

    source = upload.file
    if hasattr(source, "seek"):
        with contextlib.suppress(OSError, ValueError):
            source.seek(0)
    buffer = io.BytesIO()
    while True:
        chunk = source.read(chunk_size)
        if not chunk:
            break
        buffer.write(chunk)
        if limit > 0 and buffer.tell() > limit:
            raise HTTPException(
                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                detail=f"File '{upload.filename}' exceeds the {limit} byte upload limit",
            )
    return buffer.getvalue()


async def _read_upload_file(
    upload: UploadFile,
    *,
    chunk_size: int = _DEFAULT_UPLOAD_CHUNK_SIZE,
) -> bytes:
    """Read an uploaded file into memory without blocking the event loop."""

    loop = asyncio.get_running_loop()
    read_operation = functools.partial(
        _read_upload_stream,
        upload,
        limit=get_max_upload_bytes(),
        chunk_size=chunk_size,
    )
    return await loop.run_in_executor(None, read_operation)


def _has_file(upload: Optional[UploadFile]) -> bool:
    return upload is not None and bool(upload.filename)


def _parse_bool(value: Optional[str], *, default: bool = False) -> bool:
    if value is None:
        return default
    cleaned = str(value).strip().lower()
    if not cleaned:
        return default
    return cleaned in {"1", "true", "yes", "on"}


def _parse_hint(value: Optional[str]) -> Optional[float]:
    if value is None or not str(value).strip():
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _serialize_article(article: ArticleRecord) -> Dict[str, Any]:
    payload = article.to_dict()
    payload["duration"] = article.duration_seconds
    payload["formatted_duration"] = format_duration(article.duration_seconds)
    return payload


class DurationPayload(BaseModel):
    duration: float = Field(..., gt=0, allow_inf_nan=False)
    method: Literal["manual-update", "live-measurement"] = "manual-update"
    expected_duration: Optional[int] = Field(default=None, alias="expectedDuration")

    model_config = ConfigDict(populate_by_name=True)


def create_app(
    repository: ArticleRepository,
    *,
    config: AppConfig,
    object_store: Optional[ObjectStore] = None,
    estimator: Optional[DurationEstimator] = None,
    measurer: Optional[LiveDurationMeasurer] = None,
    root_path: str | None = None,
) -> FastAPI:
    """Return a configured FastAPI application."""

    store = object_store or LocalObjectStore(config.objects_root, public_base_url=config.public_base_url)
    duration_estimator = estimator or DurationEstimator(config.temp_root)
    live_measurer = measurer or LiveDurationMeasurer(FfprobeMediaDecoder())

    # Live measurements and sweeps block on network I/O; keep them off the loop
    # and strictly sequential.
    measurement_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="live-duration")

    @contextlib.asynccontextmanager
    async def _lifespan(_: FastAPI) -> AsyncIterator[None]:
        try:
            yield
        finally:
            measurement_executor.shutdown(wait=True, cancel_futures=True)

    app = FastAPI(
        title="Audio Articles",
        description="Publish and stream audio articles",
        root_path=(root_path or "").rstrip("/"),
        request_class=LargeUploadRequest,
        lifespan=_lifespan,
    )
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.server = None
    app.state.repository = repository
    app.state.object_store = store
    app.state.estimator = duration_estimator
    app.state.measurer = live_measurer
    app.state.measurement_executor = measurement_executor

    async def _run_in_worker(operation: Callable[[], T], *, context_label: str) -> T:
        loop = asyncio.get_running_loop()
        parent_context = contextvars.copy_context()

        def _run_with_context() -> T:
            def _invoke() -> T:
                actor_token = _ACTOR_VAR.set(_format_actor_label("job", context_label))
                try:
                    return operation()
                finally:
                    _ACTOR_VAR.reset(actor_token)

            return parent_context.run(_invoke)

        return await loop.run_in_executor(measurement_executor, _run_with_context)

    def require_admin(authorization: Optional[str] = Header(default=None)) -> None:
        if not config.auth_enabled:
            return
        scheme, _, token = (authorization or "").partition(" ")
        if scheme.lower() != "bearer" or token.strip() != config.admin_token:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Admin token required",
                headers={"WWW-Authenticate": "Bearer"},
            )

    def _require_article(article_id: str) -> ArticleRecord:
        article = repository.get_article(article_id)
        if article is None:
            raise HTTPException(status_code=404, detail="Article not found")
        return article

    def _release(provider_id: Optional[str], *, kind: Literal["audio", "image"]) -> None:
        if not provider_id:
            return
        try:
            store.delete(provider_id, kind=kind)
        except Exception:  # noqa: BLE001 - each asset is released independently
            LOGGER.exception("Failed to release %s asset %s", kind, provider_id)

    @app.get("/api/health")
    async def health() -> Dict[str, Any]:
        database_ok = repository.ping()
        return {"status": "ok" if database_ok else "degraded", "database": database_ok}

    @app.get("/storage/{path:path}")
    async def serve_storage_file(path: str) -> FileResponse:
        if not isinstance(store, LocalObjectStore):
            raise HTTPException(status_code=404, detail="File not found")
        target = store.resolve_public_path(path)
        if target is None or not target.exists() or target.is_dir():
            raise HTTPException(status_code=404, detail="File not found")
        return FileResponse(target)

    @app.get("/api/articles")
    async def list_articles(
        category: Optional[str] = Query(default=None),
        featured: Optional[str] = Query(default=None),
        page: int = Query(default=1, ge=1),
        limit: int = Query(default=10, ge=1, le=100),
    ) -> Dict[str, Any]:
        featured_filter = None if featured is None else _parse_bool(featured)
        result = repository.list_articles(
            category=category or None,
            featured=featured_filter,
            page=page,
            limit=limit,
        )
        return {
            "articles": [_serialize_article(article) for article in result.articles],
            "total": result.total,
            "totalPages": result.total_pages,
            "currentPage": result.page,
        }

    @app.get("/api/articles/search")
    async def search_articles(q: Optional[str] = Query(default=None)) -> Dict[str, Any]:
        articles = repository.search_articles(q, limit=50)
        return {"articles": [_serialize_article(article) for article in articles]}

    @app.get("/api/articles/debug/durations")
    async def debug_durations() -> Dict[str, Any]:
        articles = list(repository.iter_articles())
        zero_count = sum(1 for article in articles if not article.duration_seconds or article.duration_seconds <= 0)
        placeholder_count = sum(
            1 for article in articles if article.duration_seconds == PLACEHOLDER_DURATION_SECONDS
        )
        LOGGER.info(
            "Duration report: total=%s zero=%s placeholder=%s",
            len(articles),
            zero_count,
            placeholder_count,
        )
        return {
            "totalArticles": len(articles),
            "articlesWithZeroDuration": zero_count,
            "articlesWith8MinutesDuration": placeholder_count,
            "articles": [
                {
                    "id": article.id,
                    "title": article.title,
                    "duration": article.duration_seconds,
                    "durationMethod": article.duration_method,
                    "durationFormatted": format_duration(article.duration_seconds),
                    "category": article.category,
                    "createdAt": article.created_at,
                    "plays": article.play_count,
                    "hasAudioUrl": bool(article.audio_url),
                    "isSuspicious": is_suspicious_duration(article.duration_seconds),
                }
                for article in articles
            ],
        }

    @app.get("/api/articles/{article_id}")
    async def get_article(article_id: str) -> Dict[str, Any]:
        article = repository.increment_play_count(article_id)
        if article is None:
            raise HTTPException(status_code=404, detail="Article not found")
        return {"article": _serialize_article(article)}

    @app.post(
        "/api/articles",
        status_code=status.HTTP_201_CREATED,
        dependencies=[Depends(require_admin)],
    )
    async def create_article(
        title: str = Form(...),
        description: str = Form(""),
        category: str = Form(""),
        content: str = Form(""),
        published: Optional[str] = Form(None),
        featured: Optional[str] = Form(None),
        duration: Optional[str] = Form(None),
        audio: Optional[UploadFile] = File(None),
        thumbnail: Optional[UploadFile] = File(None),
    ) -> Dict[str, Any]:
        if not _has_file(audio) or not _has_file(thumbnail):
            raise HTTPException(status_code=400, detail="Both audio and thumbnail files are required")
        cleaned_title = title.strip()
        if not cleaned_title:
            raise HTTPException(status_code=400, detail="Title is required")

        _log_event("Creating article", title=cleaned_title, audio=audio.filename)
        audio_bytes = await _read_upload_file(audio)
        thumbnail_bytes = await _read_upload_file(thumbnail)
        if not audio_bytes:
            raise HTTPException(status_code=400, detail="Audio file is empty")

        request_input = EstimationInput(
            data=audio_bytes,
            media_type=audio.content_type or "",
            filename=audio.filename or "",
            size_bytes=len(audio_bytes),
            hint_seconds=_parse_hint(duration),
        )
        loop = asyncio.get_running_loop()
        estimate = await loop.run_in_executor(None, duration_estimator.estimate, request_input)

        try:
            stored_audio = await loop.run_in_executor(
                None,
                functools.partial(
                    store.put,
                    audio_bytes,
                    folder=_AUDIO_FOLDER,
                    kind="audio",
                    filename=audio.filename or "",
                ),
            )
        except ObjectStoreError as error:
            LOGGER.exception("Audio upload failed for '%s'", cleaned_title)
            raise HTTPException(status_code=502, detail=f"Audio upload failed: {error}") from error

        try:
            stored_thumbnail = await loop.run_in_executor(
                None,
                functools.partial(
                    store.put,
                    thumbnail_bytes,
                    folder=_THUMBNAIL_FOLDER,
                    kind="image",
                    filename=thumbnail.filename or "",
                ),
            )
        except ObjectStoreError as error:
            LOGGER.exception("Thumbnail upload failed for '%s'", cleaned_title)
            _release(stored_audio.provider_id, kind="audio")
            raise HTTPException(status_code=502, detail=f"Thumbnail upload failed: {error}") from error

        article_id = repository.add_article(
            cleaned_title,
            description=description.strip(),
            category=category.strip(),
            content=content.strip() or "Audio content",
            duration_seconds=estimate.seconds,
            duration_method=estimate.method.value,
            audio_url=stored_audio.url,
            audio_provider_id=stored_audio.provider_id,
            thumbnail_url=stored_thumbnail.url,
            thumbnail_provider_id=stored_thumbnail.provider_id,
            published=_parse_bool(published, default=True),
            featured=_parse_bool(featured),
        )
        article = repository.get_article(article_id)
        if article is None:
            raise HTTPException(status_code=500, detail="Article creation failed")

        _log_event(
            "Created article",
            article_id=article_id,
            duration=estimate.seconds,
            method=estimate.method.value,
        )
        return {
            "article": _serialize_article(article),
            "durationMethod": estimate.method.value,
            "formattedDuration": estimate.formatted,
        }

    @app.put("/api/articles/{article_id}", dependencies=[Depends(require_admin)])
    async def update_article(
        article_id: str,
        title: Optional[str] = Form(None),
        description: Optional[str] = Form(None),
        category: Optional[str] = Form(None),
        content: Optional[str] = Form(None),
        published: Optional[str] = Form(None),
        featured: Optional[str] = Form(None),
        thumbnail: Optional[UploadFile] = File(None),
    ) -> Dict[str, Any]:
        article = _require_article(article_id)
        _log_event("Updating article", article_id=article_id)

        fields: Dict[str, Any] = {
            "title": title.strip() if title is not None else None,
            "description": description.strip() if description is not None else None,
            "category": category.strip() if category is not None else None,
            "content": content.strip() if content is not None else None,
            "published": _parse_bool(published) if published is not None else None,
            "featured": _parse_bool(featured) if featured is not None else None,
        }
        if fields["title"] == "":
            raise HTTPException(status_code=400, detail="Title must not be empty")

        if _has_file(thumbnail):
            thumbnail_bytes = await _read_upload_file(thumbnail)
            loop = asyncio.get_running_loop()
            try:
                stored = await loop.run_in_executor(
                    None,
                    functools.partial(
                        store.put,
                        thumbnail_bytes,
                        folder=_THUMBNAIL_FOLDER,
                        kind="image",
                        filename=thumbnail.filename or "",
                    ),
                )
            except ObjectStoreError as error:
                LOGGER.exception("Thumbnail replacement failed for article %s", article_id)
                raise HTTPException(status_code=502, detail=f"Thumbnail upload failed: {error}") from error
            fields["thumbnail_url"] = stored.url
            fields["thumbnail_provider_id"] = stored.provider_id
            _release(article.thumbnail_provider_id, kind="image")

        updated = repository.update_article(article_id, **fields)
        if updated is None:
            raise HTTPException(status_code=404, detail="Article not found")
        _log_event("Updated article", article_id=article_id)
        return {"article": _serialize_article(updated)}

    @app.delete("/api/articles/{article_id}", dependencies=[Depends(require_admin)])
    async def delete_article(article_id: str) -> Dict[str, Any]:
        article = _require_article(article_id)
        _log_event("Deleting article", article_id=article_id)

        _release(article.audio_provider_id, kind="audio")
        _release(article.thumbnail_provider_id, kind="image")
        try:
            removed = repository.remove_article(article_id)
        except sqlite3.Error as error:
            LOGGER.exception("Failed to remove record for article %s", article_id)
            raise HTTPException(status_code=500, detail="Failed to delete article") from error
        if not removed:
            raise HTTPException(status_code=404, detail="Article not found")

        _log_event("Deleted article", article_id=article_id)
        return {"message": "Article and associated files deleted successfully"}

    @app.put("/api/articles/{article_id}/duration", dependencies=[Depends(require_admin)])
    async def update_article_duration(article_id: str, payload: DurationPayload) -> Dict[str, Any]:
        method = DurationMethod(payload.method)
        try:
            update = repository.update_duration(
                article_id,
                int(round(payload.duration)),
                method,
                expected_seconds=payload.expected_duration,
            )
        except ArticleNotFoundError as error:
            raise HTTPException(status_code=404, detail="Article not found") from error
        except ValueError as error:
            raise HTTPException(status_code=400, detail="Valid duration is required") from error

        record = update.record
        return {
            "success": True,
            "message": "Duration updated successfully",
            "article": {
                "id": record.id,
                "title": record.title,
                "oldDuration": update.previous_seconds,
                "newDuration": record.duration_seconds,
                "method": record.duration_method,
                "formattedDuration": format_duration(record.duration_seconds),
                "conflicted": update.conflicted,
            },
        }

    @app.put("/api/articles/{article_id}/fix-duration", dependencies=[Depends(require_admin)])
    async def fix_article_duration(article_id: str) -> Dict[str, Any]:
        article = _require_article(article_id)
        if not article.audio_url:
            raise HTTPException(status_code=400, detail="Article has no audio URL")

        _log_event("Fixing article duration", article_id=article_id, current=article.duration_seconds)
        result = await _run_in_worker(
            lambda: remeasure_article(
                repository,
                live_measurer,
                article,
                method=DurationMethod.LIVE_MEASUREMENT,
            ),
            context_label="fix-duration",
        )
        if not result.success:
            raise HTTPException(status_code=502, detail=f"Could not measure audio: {result.error}")
        return {
            "success": True,
            "message": f"Duration fixed from {result.old_seconds}s to {result.new_seconds}s",
            "article": result.to_dict(),
        }

    @app.get("/api/articles/{article_id}/real-duration")
    async def real_duration(article_id: str) -> Dict[str, Any]:
        article = _require_article(article_id)
        stored = article.duration_seconds or 0
        real_seconds = stored
        source = "database"
        decision = None
        if article.audio_url:
            try:
                measurement = await _run_in_worker(
                    lambda: live_measurer.measure(article.audio_url or ""),
                    context_label="real-duration",
                )
            except PlaybackError as error:
                LOGGER.warning(
                    "Could not measure article %s from its audio URL; using stored value: %s",
                    article_id,
                    error,
                )
            else:
                real_seconds = measurement.seconds
                source = "audio-url"
                decision = reconcile(article.duration_seconds, measurement.seconds)

        payload = _serialize_article(article)
        payload.update(
            {
                "realDuration": int(real_seconds),
                "durationSource": source,
                "formattedDuration": format_duration(real_seconds),
                "isSuspicious": is_suspicious_duration(article.duration_seconds),
                "needsUpdate": bool(decision and decision.backfill),
            }
        )
        return payload

    @app.post("/api/articles/bulk-fix-durations", dependencies=[Depends(require_admin)])
    async def bulk_fix() -> Dict[str, Any]:
        _log_event("Starting bulk duration fix")
        summary = await _run_in_worker(
            lambda: bulk_fix_durations(repository, live_measurer),
            context_label="bulk-fix",
        )
        return summary.to_dict()

    return app


__all__ = [
    "ContextualLoggerAdapter",
    "DurationPayload",
    "LargeUploadRequest",
    "RequestContextMiddleware",
    "create_app",
    "get_max_upload_bytes",
]
