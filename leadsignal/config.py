from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path

from pydantic import ConfigDict
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

DEFAULT_PROMPT_PATH = Path(__file__).parent / "prompts" / "signal_extraction.md"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    app_name: str = "LeadSignal"
    app_version: str = "0.1.0"
    environment: str = "development"
    debug: bool = True
    log_level: str = "INFO"

    # Database
    database_url: str | None = "sqlite:///./leadsignal.db"
    database_auto_create: bool = True
    db_pool_min_size: int = 1
    db_pool_max_size: int = 5

    # Providers
    openai_api_key: str | None = None
    newsapi_key: str | None = None
    newsapi_base_url: str = "https://newsapi.org/v2"
    agent_api_key: str | None = None
    agent_base_url: str = "https://api.manus.ai/v1"
    agent_task_url_template: str = "https://manus.ai/tasks/{task_id}"
    agent_profile: str = "manus-1.6"
    agent_task_mode: str = "agent"
    registry_api_key: str | None = None
    registry_base_url: str = "https://api.pappers.fr/v2"
    registry_profile_url_template: str = "https://www.pappers.fr/entreprise/{siren}"

    # Fetching
    fetch_days_back: int = 1
    fetch_language: str = "fr"
    fetch_page_size: int = 50
    fetch_max_pages: int = 3
    fetch_pause_seconds: float = 0.5

    # Registry anniversaries
    registry_anniversary_years: list[int] = [10]
    registry_months_ahead: int = 9
    registry_region: str | None = None
    registry_min_headcount_code: str | None = None
    registry_page_size: int = 100
    registry_max_pages: int = 10
    registry_pause_seconds: float = 0.2

    # Extraction
    extraction_model: str = "gpt-4o-mini"
    extraction_temperature: float = 0.1
    extraction_system_prompt_path: str | None = None
    extraction_batch_size: int = 30
    extraction_min_employees: int = 20
    extraction_target_regions: list[str] = [
        "Île-de-France",
        "Provence-Alpes-Côte d'Azur",
        "Auvergne-Rhône-Alpes",
    ]
    auto_enrich_enabled: bool = True
    auto_enrich_min_score: int = 4

    # Scan orchestration
    scan_time_budget_seconds: float = 85.0
    scan_safety_margin_seconds: float = 10.0
    scan_max_batches_per_invocation: int = 10
    scan_batch_pause_seconds: float = 3.0
    scan_lease_seconds: int = 300
    scan_continuation_mode: str = "thread"
    scan_stale_after_minutes: int = 30
    service_base_url: str = "http://127.0.0.1:8000"

    # Enrichment
    enrichment_poll_pause_seconds: float = 0.5
    enrichment_personas_json: str | None = None

    # Security
    cors_origins: list[str] = []

    # Sentry
    sentry_dsn: str | None = None

    # Metrics
    metrics_backend: str = "stdout"
    metrics_namespace: str = "leadsignal"
    metrics_disable: bool = False
    metrics_sample_rate: float = 1.0
    metrics_statsd_host: str = "127.0.0.1"
    metrics_statsd_port: int = 8125

    model_config = ConfigDict(env_file=".env", case_sensitive=False)


settings = Settings()


@dataclass(frozen=True)
class Persona:
    """Job profile the enrichment agent should look for."""

    name: str
    is_priority: bool = False


DEFAULT_PERSONAS: tuple[Persona, ...] = (
    Persona("Executive Assistant", is_priority=True),
    Persona("Office Manager", is_priority=True),
    Persona("HR Manager"),
    Persona("Managing Director"),
    Persona("CFO"),
    Persona("Communications Manager"),
    Persona("Procurement Manager"),
)


@dataclass(frozen=True)
class FetchConfig:
    days_back: int = 1
    language: str = "fr"
    page_size: int = 50
    max_pages: int = 3
    pause_seconds: float = 0.5


@dataclass(frozen=True)
class RegistryConfig:
    anniversary_years: tuple[int, ...] = (10,)
    months_ahead: int = 9
    region: str | None = None
    min_headcount_code: str | None = None
    page_size: int = 100
    max_pages: int = 10
    pause_seconds: float = 0.2
    profile_url_template: str = "https://www.pappers.fr/entreprise/{siren}"


@dataclass(frozen=True)
class ExtractionConfig:
    system_prompt: str
    model: str = "gpt-4o-mini"
    temperature: float = 0.1
    batch_size: int = 30
    min_employees: int = 20
    target_regions: tuple[str, ...] = ()
    auto_enrich_enabled: bool = False
    auto_enrich_min_score: int = 4


@dataclass(frozen=True)
class ScanConfig:
    batch_size: int = 30
    time_budget_seconds: float = 85.0
    safety_margin_seconds: float = 10.0
    max_batches_per_invocation: int = 10
    batch_pause_seconds: float = 3.0
    lease_seconds: int = 300
    stale_after_minutes: int = 30

    @property
    def effective_budget_seconds(self) -> float:
        return max(self.time_budget_seconds - self.safety_margin_seconds, 0.0)


@dataclass(frozen=True)
class EnrichmentConfig:
    personas: tuple[Persona, ...] = DEFAULT_PERSONAS
    agent_profile: str = "manus-1.6"
    task_mode: str = "agent"
    poll_pause_seconds: float = 0.5


@dataclass(frozen=True)
class PipelineConfig:
    """Configuration bundle assembled once at startup and passed to every component."""

    fetch: FetchConfig
    extraction: ExtractionConfig
    scan: ScanConfig
    enrichment: EnrichmentConfig = field(default_factory=EnrichmentConfig)
    registry: RegistryConfig = field(default_factory=RegistryConfig)


def load_personas(raw: str | None) -> tuple[Persona, ...]:
    """Parse persona JSON (`[{"name": ..., "isPriority": ...}]`), falling back to defaults."""
    if not raw:
        return DEFAULT_PERSONAS
    try:
        payload = json.loads(raw)
    except ValueError:
        logger.warning("config.personas.invalid_json")
        return DEFAULT_PERSONAS
    if not isinstance(payload, list):
        logger.warning("config.personas.not_a_list")
        return DEFAULT_PERSONAS
    personas: list[Persona] = []
    for entry in payload:
        if not isinstance(entry, dict) or not str(entry.get("name", "")).strip():
            continue
        is_priority = entry.get("is_priority", entry.get("isPriority", False))
        personas.append(Persona(name=str(entry["name"]).strip(), is_priority=bool(is_priority)))
    return tuple(personas) or DEFAULT_PERSONAS


def _load_system_prompt(path: str | None) -> str:
    prompt_path = Path(path).expanduser() if path else DEFAULT_PROMPT_PATH
    if not prompt_path.exists():
        raise FileNotFoundError(f"Extraction prompt not found at {prompt_path}")
    return prompt_path.read_text(encoding="utf-8").strip()


def build_pipeline_config(source: Settings | None = None) -> PipelineConfig:
    """Assemble the immutable pipeline configuration from settings."""
    resolved = source or settings
    batch_size = max(resolved.extraction_batch_size, 1)
    years = tuple(year for year in resolved.registry_anniversary_years if year > 0) or (10,)
    return PipelineConfig(
        fetch=FetchConfig(
            days_back=max(resolved.fetch_days_back, 0),
            language=resolved.fetch_language,
            page_size=max(resolved.fetch_page_size, 1),
            max_pages=max(resolved.fetch_max_pages, 1),
            pause_seconds=max(resolved.fetch_pause_seconds, 0.0),
        ),
        extraction=ExtractionConfig(
            system_prompt=_load_system_prompt(resolved.extraction_system_prompt_path),
            model=resolved.extraction_model,
            temperature=resolved.extraction_temperature,
            batch_size=batch_size,
            min_employees=resolved.extraction_min_employees,
            target_regions=tuple(resolved.extraction_target_regions),
            auto_enrich_enabled=resolved.auto_enrich_enabled,
            auto_enrich_min_score=resolved.auto_enrich_min_score,
        ),
        scan=ScanConfig(
            batch_size=batch_size,
            time_budget_seconds=resolved.scan_time_budget_seconds,
            safety_margin_seconds=resolved.scan_safety_margin_seconds,
            max_batches_per_invocation=max(resolved.scan_max_batches_per_invocation, 0),
            batch_pause_seconds=max(resolved.scan_batch_pause_seconds, 0.0),
            lease_seconds=max(resolved.scan_lease_seconds, 1),
            stale_after_minutes=max(resolved.scan_stale_after_minutes, 1),
        ),
        enrichment=EnrichmentConfig(
            personas=load_personas(resolved.enrichment_personas_json),
            agent_profile=resolved.agent_profile,
            task_mode=resolved.agent_task_mode,
            poll_pause_seconds=max(resolved.enrichment_poll_pause_seconds, 0.0),
        ),
        registry=RegistryConfig(
            anniversary_years=years,
            months_ahead=max(resolved.registry_months_ahead, 0),
            region=resolved.registry_region or None,
            min_headcount_code=resolved.registry_min_headcount_code or None,
            page_size=min(max(resolved.registry_page_size, 1), 100),
            max_pages=max(resolved.registry_max_pages, 1),
            pause_seconds=max(resolved.registry_pause_seconds, 0.0),
            profile_url_template=resolved.registry_profile_url_template,
        ),
    )
