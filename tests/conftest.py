from __future__ import annotations

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

import leadsignal.models  # noqa: F401 - register tables on the metadata
from leadsignal.config import Settings, build_pipeline_config
from leadsignal.main import app
from leadsignal.services.orchestrator import InlineDispatcher
from leadsignal.services.pipeline import build_pipeline, get_pipeline
from leadsignal.services.repository import SqlPipelineRepository
from tests.helpers.clients import (
    StubAgentClient,
    StubLLMClient,
    StubNewsClient,
    StubRegistryClient,
    make_settings,
)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture
def repository(engine) -> SqlPipelineRepository:
    return SqlPipelineRepository(engine)


@pytest.fixture
def llm_client() -> StubLLMClient:
    return StubLLMClient()


@pytest.fixture
def news_client() -> StubNewsClient:
    return StubNewsClient()


@pytest.fixture
def agent_client() -> StubAgentClient:
    return StubAgentClient()


@pytest.fixture
def registry_client() -> StubRegistryClient:
    return StubRegistryClient()


@pytest.fixture
def pipeline_settings() -> Settings:
    return make_settings()


@pytest.fixture
def pipeline(
    repository, llm_client, news_client, agent_client, registry_client, pipeline_settings
):
    return build_pipeline(
        repository=repository,
        config=build_pipeline_config(pipeline_settings),
        dispatcher=InlineDispatcher(),
        news_client=news_client,
        llm_client=llm_client,
        agent_client=agent_client,
        registry_client=registry_client,
    )


@pytest.fixture
def client(pipeline):
    """Test client wired to the in-memory pipeline."""
    app.dependency_overrides[get_pipeline] = lambda: pipeline
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.pop(get_pipeline, None)
