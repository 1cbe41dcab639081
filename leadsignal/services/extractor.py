"""LLM-backed extraction of scored signals from staged articles."""

from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Protocol
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from leadsignal.clients.llm import LLMClient, LLMError, OpenAIResponseClient
from leadsignal.config import ExtractionConfig, settings
from leadsignal.models import OwnerType, Signal, SignalSource, SignalType, SourceItem
from leadsignal.observability.metrics import metrics
from leadsignal.services.errors import (
    PayloadValidationError,
    PipelineError,
    ProviderError,
    QuotaExceededError,
)
from leadsignal.services.repository import SqlPipelineRepository

logger = logging.getLogger(__name__)

_FENCE = re.compile(r"```(?:json)?\s*|```", re.IGNORECASE)
_JSON_BLOCK = re.compile(r"\{[\s\S]*\}")

SIGNAL_TYPE_ALIASES = {
    "anniversaire": SignalType.ANNIVERSARY.value,
    "levee": SignalType.FUNDING.value,
    "levée": SignalType.FUNDING.value,
    "ma": SignalType.ACQUISITION.value,
    "m&a": SignalType.ACQUISITION.value,
    "distinction": SignalType.AWARD.value,
    "nomination": SignalType.LEADERSHIP.value,
}


class ExtractedSignal(BaseModel):
    """One entry of the model's `signals` array."""

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    company_name: str = Field(min_length=1, max_length=255)
    signal_type: SignalType
    event_detail: str | None = None
    sector: str | None = None
    estimated_size: str | None = None
    score: int = Field(ge=1, le=5)
    hook_suggestion: str | None = None
    source_url: str | None = None

    @field_validator("signal_type", mode="before")
    @classmethod
    def _normalize_signal_type(cls, value: Any) -> Any:
        if isinstance(value, str):
            lowered = value.strip().lower()
            return SIGNAL_TYPE_ALIASES.get(lowered, lowered)
        return value

    @field_validator("source_url", mode="before")
    @classmethod
    def _blank_url_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value


@dataclass(frozen=True)
class BatchResult:
    processed_count: int = 0
    created_count: int = 0
    auto_enriched: int = 0
    skipped_invalid: int = 0
    duplicates: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "processed_count": self.processed_count,
            "created_count": self.created_count,
            "auto_enriched": self.auto_enriched,
            "skipped_invalid": self.skipped_invalid,
            "duplicates": self.duplicates,
        }


class SignalLauncher(Protocol):
    def launch(self, owner_id: UUID, owner_type: OwnerType = OwnerType.SIGNAL) -> Any:
        ...


def parse_llm_json(text: str) -> dict[str, Any]:
    """Decode a model reply: strict JSON, then without Markdown fences, then the first `{...}` span."""
    candidates = [text, _FENCE.sub("", text or "").strip()]
    match = _JSON_BLOCK.search(text or "")
    if match:
        candidates.append(match.group(0))
    for candidate in candidates:
        try:
            payload = json.loads(candidate)
        except (TypeError, ValueError):
            continue
        if isinstance(payload, dict):
            return payload
    raise PayloadValidationError("Model response was not a valid JSON object.")


class SignalExtractor:
    """Analyze one batch of unprocessed items per call."""

    def __init__(
        self,
        repository: SqlPipelineRepository,
        config: ExtractionConfig,
        *,
        client: LLMClient | None = None,
        launcher: SignalLauncher | None = None,
    ) -> None:
        self._repository = repository
        self._config = config
        self._client = client
        self._launcher = launcher

    @property
    def batch_size(self) -> int:
        return self._config.batch_size

    def analyze_batch(self) -> BatchResult:
        items = self._repository.list_unprocessed(self._config.batch_size)
        if not items:
            logger.info("extraction.batch.empty")
            return BatchResult()

        start = time.perf_counter()
        response_text = self._generate(items)
        payload = parse_llm_json(response_text)
        raw_signals = payload.get("signals")
        if not isinstance(raw_signals, list):
            raise PayloadValidationError("Model response is missing the `signals` array.")

        created: list[Signal] = []
        skipped_invalid = 0
        duplicates = 0
        seen: set[tuple[str, str | None]] = set()
        source_names = {item.url: item.source_name for item in items}
        for entry in raw_signals:
            try:
                extracted = ExtractedSignal.model_validate(entry)
            except ValidationError as exc:
                skipped_invalid += 1
                logger.warning(
                    "extraction.signal.invalid",
                    extra={"errors": exc.error_count(), "entry": str(entry)[:200]},
                )
                continue

            key = (extracted.company_name, extracted.source_url)
            if key in seen or self._repository.signal_exists(*key):
                duplicates += 1
                continue
            seen.add(key)
            signal = self._repository.insert_signal(
                Signal(
                    company_name=extracted.company_name,
                    signal_type=extracted.signal_type.value,
                    event_detail=extracted.event_detail,
                    sector=extracted.sector,
                    estimated_size=extracted.estimated_size,
                    score=extracted.score,
                    hook_suggestion=extracted.hook_suggestion,
                    source_url=extracted.source_url,
                    source_name=source_names.get(extracted.source_url),
                    source=SignalSource.PRESS.value,
                )
            )
            if signal is None:
                duplicates += 1
                continue
            created.append(signal)

        self._repository.mark_processed(item.id for item in items)
        auto_enriched = self._auto_enrich(created)

        result = BatchResult(
            processed_count=len(items),
            created_count=len(created),
            auto_enriched=auto_enriched,
            skipped_invalid=skipped_invalid,
            duplicates=duplicates,
        )
        metrics.timing("extraction.latency_ms", (time.perf_counter() - start) * 1000)
        metrics.increment("extraction.signals_created", value=len(created))
        logger.info("extraction.batch.completed", extra=result.as_dict())
        return result

    def _generate(self, items: list[SourceItem]) -> str:
        client = self._ensure_client()
        try:
            return client.generate(
                system_prompt=self._config.system_prompt,
                user_prompt=self._render_user_prompt(items),
                model=self._config.model,
                temperature=self._config.temperature,
            )
        except LLMError as exc:
            metrics.increment("extraction.errors", tags={"code": exc.code})
            if exc.code == "402_QUOTA_EXCEEDED":
                raise QuotaExceededError(str(exc)) from exc
            raise ProviderError(str(exc), code=exc.code) from exc

    def _auto_enrich(self, signals: list[Signal]) -> int:
        if not self._config.auto_enrich_enabled or self._launcher is None:
            return 0
        launched = 0
        for signal in signals:
            if signal.score < self._config.auto_enrich_min_score:
                continue
            try:
                self._launcher.launch(signal.id, OwnerType.SIGNAL)
            except PipelineError as exc:
                metrics.increment("extraction.auto_enrich.errors", tags={"code": exc.code})
                logger.warning(
                    "extraction.auto_enrich.failed",
                    extra={"signal_id": str(signal.id), "code": exc.code, "error": str(exc)},
                )
                continue
            launched += 1
        return launched

    def _render_user_prompt(self, items: list[SourceItem]) -> str:
        regions = ", ".join(self._config.target_regions) or "All of France"
        articles = "\n---\n\n".join(
            (
                f"[ARTICLE {index}]\n"
                f"Title: {item.title}\n"
                f"Source: {item.source_name or 'Unknown'}\n"
                f"Date: {item.published_at.isoformat() if item.published_at else 'Unknown'}\n"
                f"Description: {item.description or 'N/A'}\n"
                f"Content: {item.content or 'N/A'}\n"
                f"URL: {item.url}\n"
            )
            for index, item in enumerate(items, start=1)
        )
        return (
            "Identify signals in the articles below and return JSON only.\n"
            f"Target regions: {regions}\n"
            f"Minimum headcount: {self._config.min_employees}\n\n"
            f"ARTICLES TO ANALYZE:\n\n{articles}"
        )

    def _ensure_client(self) -> LLMClient:
        if self._client is not None:
            return self._client
        if not settings.openai_api_key:
            raise ProviderError("OPENAI_API_KEY is not configured.", code="503_MISSING_API_KEY")
        self._client = OpenAIResponseClient(settings.openai_api_key)
        return self._client
