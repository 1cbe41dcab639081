"""Wiring of the pipeline components around one repository and one config."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from threading import Lock

from leadsignal.clients.agent import AgentClient
from leadsignal.clients.llm import LLMClient
from leadsignal.clients.newsapi import NewsApiClient
from leadsignal.clients.registry import RegistryClient
from leadsignal.config import PipelineConfig, build_pipeline_config, settings
from leadsignal.services.enrichment.launcher import EnrichmentLauncher
from leadsignal.services.enrichment.reconciler import EnrichmentReconciler
from leadsignal.services.extractor import SignalExtractor
from leadsignal.services.fetcher import SourceFetcher
from leadsignal.services.orchestrator import (
    ContinuationDispatcher,
    ScanOrchestrator,
    build_dispatcher,
)
from leadsignal.services.registry import RegistryImporter
from leadsignal.services.repository import SqlPipelineRepository, build_repository

logger = logging.getLogger(__name__)


@dataclass
class Pipeline:
    config: PipelineConfig
    repository: SqlPipelineRepository
    fetcher: SourceFetcher
    extractor: SignalExtractor
    orchestrator: ScanOrchestrator
    launcher: EnrichmentLauncher
    reconciler: EnrichmentReconciler
    registry: RegistryImporter

    def close(self) -> None:
        self.orchestrator.close()
        self.repository.dispose()


def build_pipeline(
    *,
    repository: SqlPipelineRepository | None = None,
    config: PipelineConfig | None = None,
    dispatcher: ContinuationDispatcher | None = None,
    news_client: NewsApiClient | None = None,
    llm_client: LLMClient | None = None,
    agent_client: AgentClient | None = None,
    registry_client: RegistryClient | None = None,
) -> Pipeline:
    resolved_config = config or build_pipeline_config(settings)
    resolved_repository = repository or build_repository()
    launcher = EnrichmentLauncher(
        resolved_repository, resolved_config.enrichment, client=agent_client
    )
    fetcher = SourceFetcher(resolved_repository, resolved_config.fetch, client=news_client)
    extractor = SignalExtractor(
        resolved_repository,
        resolved_config.extraction,
        client=llm_client,
        launcher=launcher,
    )
    orchestrator = ScanOrchestrator(
        resolved_repository,
        fetcher,
        extractor,
        resolved_config.scan,
        dispatcher=dispatcher
        or build_dispatcher(
            settings.scan_continuation_mode, service_base_url=settings.service_base_url
        ),
    )
    reconciler = EnrichmentReconciler(
        resolved_repository, resolved_config.enrichment, client=agent_client
    )
    registry = RegistryImporter(
        resolved_repository, resolved_config.registry, client=registry_client
    )
    return Pipeline(
        config=resolved_config,
        repository=resolved_repository,
        fetcher=fetcher,
        extractor=extractor,
        orchestrator=orchestrator,
        launcher=launcher,
        reconciler=reconciler,
        registry=registry,
    )


_pipeline: Pipeline | None = None
_pipeline_lock = Lock()


def get_pipeline() -> Pipeline:
    """FastAPI dependency returning the process-wide pipeline."""
    global _pipeline
    with _pipeline_lock:
        if _pipeline is None:
            _pipeline = build_pipeline()
            logger.info("pipeline.initialized")
        return _pipeline


def reset_pipeline() -> None:
    global _pipeline
    with _pipeline_lock:
        if _pipeline is not None:
            _pipeline.close()
        _pipeline = None
