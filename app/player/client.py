"""HTTP client used by players to talk to the articles API."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from ..services.durations import DurationMethod


LOGGER = logging.getLogger(__name__)


class ArticleApiError(RuntimeError):
    """Raised when the articles API answers with an error."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ArticleApiClient:
    """Thin synchronous wrapper around the ``/api/articles`` endpoints."""

    def __init__(
        self,
        base_url: str,
        *,
        token: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
        user_agent: str = "audio-articles-player/1.0",
    ) -> None:
        headers = {"User-Agent": user_agent, "Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            follow_redirects=True,
            transport=transport,
        )

    def __enter__(self) -> "ArticleApiClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            response = self._client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as error:
            detail = _extract_detail(error.response)
            raise ArticleApiError(
                f"{method} {path} failed with {error.response.status_code}: {detail}",
                status_code=error.response.status_code,
            ) from error
        except httpx.HTTPError as error:
            raise ArticleApiError(f"{method} {path} failed: {error}") from error
        return response.json()

    def get_article(self, article_id: str) -> Dict[str, Any]:
        payload = self._request("GET", f"/api/articles/{article_id}")
        return payload["article"]

    def list_articles(
        self,
        *,
        category: Optional[str] = None,
        featured: Optional[bool] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {"page": page, "limit": limit}
        if category:
            params["category"] = category
        if featured is not None:
            params["featured"] = "true" if featured else "false"
        return self._request("GET", "/api/articles", params=params)

    def real_duration(self, article_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/api/articles/{article_id}/real-duration")

    def write_duration(
        self,
        article_id: str,
        seconds: int,
        method: DurationMethod | str = DurationMethod.LIVE_MEASUREMENT,
        *,
        expected_seconds: Optional[int] = None,
    ) -> None:
        method_value = method.value if isinstance(method, DurationMethod) else str(method)
        body: Dict[str, Any] = {"duration": int(seconds), "method": method_value}
        if expected_seconds is not None:
            body["expectedDuration"] = int(expected_seconds)
        LOGGER.debug("PUT duration %ss (%s) for article %s", seconds, method_value, article_id)
        self._request("PUT", f"/api/articles/{article_id}/duration", json=body)


def _extract_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(payload, dict) and "detail" in payload:
        return str(payload["detail"])
    return str(payload)[:200]


__all__ = ["ArticleApiClient", "ArticleApiError"]
