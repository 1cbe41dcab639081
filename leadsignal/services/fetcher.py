"""Stage content-API articles for every active search query."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any

from leadsignal.clients.newsapi import NewsApiClient, NewsApiError, NewsApiQuotaError
from leadsignal.config import FetchConfig, settings
from leadsignal.models import SearchQuery, SourceItem
from leadsignal.models.base import utcnow
from leadsignal.observability.metrics import metrics
from leadsignal.services.errors import ProviderError, QuotaExceededError
from leadsignal.services.repository import SqlPipelineRepository

logger = logging.getLogger(__name__)


@dataclass
class FetchResult:
    new_items_saved: int = 0
    api_requests: int = 0
    queries_processed: int = 0
    total_items_found: int = 0
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "new_items_saved": self.new_items_saved,
            "api_requests": self.api_requests,
            "queries_processed": self.queries_processed,
            "total_items_found": self.total_items_found,
            "errors": list(self.errors),
        }


class SourceFetcher:
    """Pull recent articles for each active query into the staging table."""

    def __init__(
        self,
        repository: SqlPipelineRepository,
        config: FetchConfig,
        *,
        client: NewsApiClient | None = None,
        sleep: Callable[[float], None] = time.sleep,
        today: Callable[[], date] = date.today,
    ) -> None:
        self._repository = repository
        self._config = config
        self._client = client
        self._sleep = sleep
        self._today = today

    def fetch(self) -> FetchResult:
        client = self._ensure_client()
        queries = self._repository.list_active_queries()
        from_date = self._today() - timedelta(days=self._config.days_back)
        result = FetchResult(queries_processed=len(queries))
        logger.info(
            "fetch.started",
            extra={"queries": len(queries), "from_date": from_date.isoformat()},
        )
        start = time.perf_counter()
        for index, query in enumerate(queries):
            if index:
                self._sleep(self._config.pause_seconds)
            try:
                self._fetch_query(client, query, from_date, result)
            except NewsApiQuotaError as exc:
                metrics.increment("fetch.errors", tags={"code": exc.code})
                logger.error("fetch.quota_exhausted", extra={"query": query.name})
                raise QuotaExceededError(str(exc)) from exc
            except NewsApiError as exc:
                metrics.increment("fetch.errors", tags={"code": exc.code})
                logger.warning(
                    "fetch.query_failed",
                    extra={"query": query.name, "code": exc.code, "error": str(exc)},
                )
                result.errors.append(f"{query.name}: {exc}")
        metrics.timing("fetch.latency_ms", (time.perf_counter() - start) * 1000)
        metrics.increment("fetch.items_saved", value=result.new_items_saved)
        logger.info("fetch.completed", extra=result.as_dict())
        return result

    def _fetch_query(
        self,
        client: NewsApiClient,
        query: SearchQuery,
        from_date: date,
        result: FetchResult,
    ) -> None:
        received = 0
        for page in range(1, self._config.max_pages + 1):
            articles, total = client.search_everything(
                query.query,
                from_date=from_date,
                language=self._config.language,
                page_size=self._config.page_size,
                page=page,
            )
            result.api_requests += 1
            result.total_items_found += len(articles)
            received += len(articles)
            for article in articles:
                item = _article_to_item(article, query)
                if item is not None and self._repository.add_source_item(item):
                    result.new_items_saved += 1
            if len(articles) < self._config.page_size or received >= total:
                break
        self._repository.touch_query(query.id)

    def _ensure_client(self) -> NewsApiClient:
        if self._client is not None:
            return self._client
        if not settings.newsapi_key:
            raise ProviderError("NEWSAPI_KEY is not configured.", code="503_MISSING_API_KEY")
        self._client = NewsApiClient.from_env()
        return self._client


def _article_to_item(article: dict[str, Any], query: SearchQuery) -> SourceItem | None:
    url = article.get("url")
    if not isinstance(url, str) or not url.strip():
        return None
    source = article.get("source") if isinstance(article.get("source"), dict) else {}
    return SourceItem(
        title=article.get("title") or "Untitled",
        description=article.get("description"),
        content=article.get("content"),
        url=url.strip(),
        source_name=source.get("name"),
        author=article.get("author"),
        published_at=parse_timestamp(article.get("publishedAt")),
        fetched_at=utcnow(),
        query_id=query.id,
    )


def parse_timestamp(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.debug("fetch.bad_timestamp", extra={"value": value})
        return None
