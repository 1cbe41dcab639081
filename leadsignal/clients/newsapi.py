"""Client for the NewsAPI `everything` endpoint."""

from __future__ import annotations

from datetime import date
from typing import Any

import httpx

from leadsignal.config import settings

QUOTA_ERROR_CODES = frozenset({"apiKeyExhausted", "maximumResultsReached"})


class NewsApiError(RuntimeError):
    """Base error for content API failures."""

    def __init__(self, message: str, code: str = "NEWSAPI_ERROR") -> None:
        super().__init__(message)
        self.code = code


class NewsApiRateLimitError(NewsApiError):
    """Raised when the content API responds with HTTP 429."""

    def __init__(self, message: str = "Rate limited by NewsAPI") -> None:
        super().__init__(message, code="NEWSAPI_429")


class NewsApiQuotaError(NewsApiError):
    """Raised when the API key has no request budget left."""

    def __init__(self, message: str = "NewsAPI quota exhausted") -> None:
        super().__init__(message, code="NEWSAPI_QUOTA")


class NewsApiTimeoutError(NewsApiError):
    def __init__(self, message: str = "NewsAPI request timed out") -> None:
        super().__init__(message, code="NEWSAPI_TIMEOUT")


class NewsApiSchemaError(NewsApiError):
    def __init__(self, message: str = "Unexpected NewsAPI response schema") -> None:
        super().__init__(message, code="NEWSAPI_SCHEMA_ERR")


class NewsApiClient:
    """Minimal NewsAPI client."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://newsapi.org/v2",
        timeout: float = 15.0,
        http_client: httpx.Client | None = None,
    ) -> None:
        if not api_key:
            raise ValueError("NEWSAPI_KEY is required to create a NewsApiClient.")
        self._api_key = api_key
        self._owns_http_client = http_client is None
        self._http = http_client or httpx.Client(base_url=base_url.rstrip("/"), timeout=timeout)

    @classmethod
    def from_env(cls) -> "NewsApiClient":
        """Instantiate the client using NEWSAPI_KEY."""
        return cls(settings.newsapi_key or "", base_url=settings.newsapi_base_url)

    def close(self) -> None:
        if self._owns_http_client:
            self._http.close()

    def search_everything(
        self,
        query: str,
        *,
        from_date: date,
        language: str = "fr",
        page_size: int = 50,
        page: int = 1,
    ) -> tuple[list[dict[str, Any]], int]:
        """Return one page of articles and the reported total result count."""
        if page_size <= 0:
            raise ValueError("page_size must be a positive integer.")

        params = {
            "q": query,
            "language": language,
            "sortBy": "publishedAt",
            "from": from_date.isoformat(),
            "pageSize": page_size,
            "page": page,
            "apiKey": self._api_key,
        }
        try:
            response = self._http.get("/everything", params=params)
        except httpx.TimeoutException as exc:  # pragma: no cover - network failures
            raise NewsApiTimeoutError() from exc
        except httpx.HTTPError as exc:  # pragma: no cover - network failures
            raise NewsApiError(f"HTTP error calling NewsAPI: {exc}") from exc

        if response.status_code in (408, 504):
            raise NewsApiTimeoutError()

        try:
            data = response.json()
        except ValueError as exc:
            if response.status_code >= 400:
                raise NewsApiError(
                    f"NewsAPI request failed: {response.status_code} - {response.text[:200]}"
                ) from exc
            raise NewsApiSchemaError("Failed to decode NewsAPI response JSON.") from exc

        if response.status_code >= 400 or (isinstance(data, dict) and data.get("status") == "error"):
            error_code = data.get("code") if isinstance(data, dict) else None
            detail = data.get("message") if isinstance(data, dict) else None
            message = f"NewsAPI request failed: {response.status_code}"
            if detail:
                message = f"{message} - {detail}"
            if error_code in QUOTA_ERROR_CODES or response.status_code == 402:
                raise NewsApiQuotaError(message)
            if response.status_code == 429 or error_code == "rateLimited":
                raise NewsApiRateLimitError(message)
            raise NewsApiError(message, code=error_code or "NEWSAPI_ERROR")

        articles = data.get("articles") if isinstance(data, dict) else None
        if not isinstance(articles, list):
            raise NewsApiSchemaError("`articles` missing from NewsAPI response.")
        total = data.get("totalResults")
        return [entry for entry in articles if isinstance(entry, dict)], (
            total if isinstance(total, int) else len(articles)
        )

    def __enter__(self) -> "NewsApiClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
