"""Turn upcoming company anniversaries from the registry into signals."""

from __future__ import annotations

import calendar
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from leadsignal.clients.registry import RegistryClient, RegistryError, RegistryQuotaError
from leadsignal.config import RegistryConfig, settings
from leadsignal.models import Signal, SignalSource, SignalType
from leadsignal.observability.metrics import metrics
from leadsignal.services.errors import ProviderError, QuotaExceededError
from leadsignal.services.repository import SqlPipelineRepository

logger = logging.getLogger(__name__)

# NAF prefixes: restaurants, retail, consulting, admin services, leisure.
RELEVANT_NAF_PREFIXES = ("56", "47", "70", "82", "93")


@dataclass
class RegistryImportResult:
    api_requests: int = 0
    companies_seen: int = 0
    signals_created: int = 0
    duplicates: int = 0
    windows: list[dict[str, str]] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "api_requests": self.api_requests,
            "companies_seen": self.companies_seen,
            "signals_created": self.signals_created,
            "duplicates": self.duplicates,
            "windows": list(self.windows),
        }


class RegistryImporter:
    """Search companies founded N years before a target date and store anniversary signals."""

    def __init__(
        self,
        repository: SqlPipelineRepository,
        config: RegistryConfig,
        *,
        client: RegistryClient | None = None,
        sleep: Callable[[float], None] = time.sleep,
        today: Callable[[], date] = date.today,
    ) -> None:
        self._repository = repository
        self._config = config
        self._client = client
        self._sleep = sleep
        self._today = today

    def import_anniversaries(self, *, exact_day: bool = False) -> RegistryImportResult:
        """Page through the registry for every configured anniversary.

        By default the whole creation month is searched, which catches up on
        companies a previous run missed. With ``exact_day`` only companies
        founded on the target day are requested, which suits a daily job.
        """
        client = self._ensure_client()
        target = add_months(self._today(), self._config.months_ahead)
        result = RegistryImportResult()
        logger.info(
            "registry.import.started",
            extra={"target_date": target.isoformat(), "exact_day": exact_day},
        )
        start = time.perf_counter()
        for years in self._config.anniversary_years:
            created_from, created_to = creation_window(target, years, exact_day=exact_day)
            result.windows.append(
                {
                    "years": str(years),
                    "from": created_from.isoformat(),
                    "to": created_to.isoformat(),
                }
            )
            try:
                self._import_window(client, years, created_from, created_to, result)
            except RegistryQuotaError as exc:
                metrics.increment("registry.errors", tags={"code": exc.code})
                logger.error("registry.quota_exhausted", extra={"years": years})
                raise QuotaExceededError(str(exc)) from exc
            except RegistryError as exc:
                metrics.increment("registry.errors", tags={"code": exc.code})
                logger.warning(
                    "registry.window_failed",
                    extra={"years": years, "code": exc.code, "error": str(exc)},
                )
                raise ProviderError(str(exc), code="502_REGISTRY_ERROR") from exc
        metrics.timing("registry.latency_ms", (time.perf_counter() - start) * 1000)
        metrics.increment("registry.signals_created", value=result.signals_created)
        logger.info(
            "registry.import.completed",
            extra={key: value for key, value in result.as_dict().items() if key != "windows"},
        )
        return result

    def _import_window(
        self,
        client: RegistryClient,
        years: int,
        created_from: date,
        created_to: date,
        result: RegistryImportResult,
    ) -> None:
        page_size = self._config.page_size
        for page in range(1, self._config.max_pages + 1):
            if page > 1:
                self._sleep(self._config.pause_seconds)
            companies, total = client.search_companies(
                created_from=created_from,
                created_to=created_to,
                page=page,
                per_page=page_size,
                region=self._config.region,
                min_headcount_code=self._config.min_headcount_code,
            )
            result.api_requests += 1
            result.companies_seen += len(companies)
            for company in companies:
                self._store(company, years, result)
            if len(companies) < page_size or page * page_size >= total:
                break

    def _store(self, company: dict[str, Any], years: int, result: RegistryImportResult) -> None:
        signal = self._to_signal(company, years)
        if signal is None:
            return
        if self._repository.signal_exists(signal.company_name, signal.source_url):
            result.duplicates += 1
            return
        if self._repository.insert_signal(signal) is None:
            result.duplicates += 1
            return
        result.signals_created += 1

    def _to_signal(self, company: dict[str, Any], years: int) -> Signal | None:
        name = str(company.get("denomination") or company.get("nom_entreprise") or "").strip()
        founded = _parse_date(company.get("date_creation"))
        if not name or founded is None:
            logger.debug("registry.company_skipped", extra={"siren": company.get("siren")})
            return None
        siren = str(company.get("siren") or "").strip()
        anniversary = add_months(founded, years * 12)
        return Signal(
            company_name=name[:255],
            signal_type=SignalType.ANNIVERSARY.value,
            event_detail=(
                f"Turns {years} on {anniversary.strftime('%d/%m/%Y')} "
                f"(founded {founded.strftime('%d/%m/%Y')})"
            ),
            sector=company.get("libelle_code_naf") or None,
            estimated_size=(company.get("effectif") or company.get("tranche_effectif") or None),
            score=relevance_to_score(registry_relevance(company)),
            source_url=self._config.profile_url_template.format(siren=siren) if siren else None,
            source_name="Pappers",
            source=SignalSource.REGISTRY.value,
        )

    def _ensure_client(self) -> RegistryClient:
        if self._client is not None:
            return self._client
        if not settings.registry_api_key:
            raise ProviderError("REGISTRY_API_KEY is not configured.", code="503_MISSING_API_KEY")
        self._client = RegistryClient.from_env()
        return self._client


def registry_relevance(company: dict[str, Any]) -> int:
    """Score a registry company on 0..100 from headcount, revenue and sector."""
    score = 50
    headcount = str(company.get("effectif") or company.get("tranche_effectif") or "")
    if any(marker in headcount for marker in ("250", "500", "1000")):
        score += 25
    elif "100" in headcount or "200" in headcount:
        score += 20
    elif "50" in headcount:
        score += 15
    elif "20" in headcount:
        score += 10

    revenue = company.get("chiffre_affaires")
    if isinstance(revenue, (int, float)) and not isinstance(revenue, bool):
        if revenue > 50_000_000:
            score += 20
        elif revenue > 10_000_000:
            score += 15
        elif revenue > 5_000_000:
            score += 10

    naf_code = str(company.get("code_naf") or "")
    if naf_code.startswith(RELEVANT_NAF_PREFIXES):
        score += 10
    return min(score, 100)


def relevance_to_score(relevance: int) -> int:
    if relevance >= 90:
        return 5
    if relevance >= 75:
        return 4
    if relevance >= 60:
        return 3
    return 2


def add_months(value: date, months: int) -> date:
    """Shift a date by whole months, clamping the day to the target month."""
    index = value.month - 1 + months
    year = value.year + index // 12
    month = index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def creation_window(target: date, years: int, *, exact_day: bool) -> tuple[date, date]:
    """Creation dates whose ``years``-th anniversary falls on ``target`` (or its month)."""
    year = target.year - years
    last_day = calendar.monthrange(year, target.month)[1]
    if exact_day:
        founded = date(year, target.month, min(target.day, last_day))
        return founded, founded
    return date(year, target.month, 1), date(year, target.month, last_day)


def _parse_date(value: Any) -> date | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None
