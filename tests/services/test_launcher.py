from __future__ import annotations

from uuid import uuid4

import pytest

from leadsignal.clients.agent import AgentError, AgentQuotaError
from leadsignal.config import DEFAULT_PERSONAS, EnrichmentConfig, Persona
from leadsignal.models import (
    EnrichmentSource,
    LinkedInEngager,
    OwnerType,
    Signal,
    TaskStatus,
)
from leadsignal.services.enrichment import launcher as launcher_module
from leadsignal.services.enrichment.launcher import (
    EnrichmentLauncher,
    build_engager_brief,
    build_signal_brief,
    render_persona_section,
)
from leadsignal.services.errors import NotFoundError
from tests.helpers.clients import StubAgentClient


def _signal(repository, company: str = "Acme Logistique") -> Signal:
    return repository.insert_signal(
        Signal(
            company_name=company,
            signal_type="funding",
            event_detail="Raised 12M EUR",
            sector="Logistics",
            score=5,
            source_url=f"https://news.test/{company}",
        )
    )


def _engager(repository, **overrides) -> LinkedInEngager:
    payload = {
        "name": "Camille Martin",
        "headline": "Office Manager at Acme",
        "company": "Acme",
        "linkedin_url": "https://www.linkedin.com/in/camille-martin/",
        "post_url": "https://www.linkedin.com/posts/acme-1",
    }
    payload.update(overrides)
    engager, _ = repository.add_engager(LinkedInEngager(**payload))
    return engager


def test_launch_creates_processing_task(repository):
    agent = StubAgentClient()
    launcher = EnrichmentLauncher(repository, EnrichmentConfig(), client=agent)
    signal = _signal(repository)

    result = launcher.launch(signal.id)

    assert result.status == "processing"
    assert result.task_id == "task-1"
    assert result.task_url == "https://agent.test/tasks/task-1"
    task = repository.get_task(result.enrichment_id)
    assert task.status == TaskStatus.PROCESSING.value
    assert task.enrichment_source == EnrichmentSource.AGENT.value
    assert task.company_name == "Acme Logistique"
    assert task.raw_payload["task"] == {"id": "task-1"}
    assert repository.get_signal(signal.id).enrichment_status == "processing"
    assert agent.created[0]["agent_profile"] == "manus-1.6"
    assert "Acme Logistique" in agent.created[0]["prompt"]


def test_second_launch_reuses_open_task(repository):
    agent = StubAgentClient()
    launcher = EnrichmentLauncher(repository, EnrichmentConfig(), client=agent)
    signal = _signal(repository)

    first = launcher.launch(signal.id)
    second = launcher.launch(signal.id)

    assert second.status == "processing"
    assert second.enrichment_id == first.enrichment_id
    assert len(agent.created) == 1


def test_completed_agent_task_is_not_relaunched(repository):
    agent = StubAgentClient()
    launcher = EnrichmentLauncher(repository, EnrichmentConfig(), client=agent)
    signal = _signal(repository)
    first = launcher.launch(signal.id)
    repository.update_task(first.enrichment_id, status=TaskStatus.COMPLETED.value)

    result = launcher.launch(signal.id)

    assert result.status == "already_enriched"
    assert len(agent.created) == 1


def test_unknown_owner_raises_not_found(repository):
    launcher = EnrichmentLauncher(repository, EnrichmentConfig(), client=StubAgentClient())

    with pytest.raises(NotFoundError):
        launcher.launch(uuid4())
    with pytest.raises(NotFoundError):
        launcher.launch(uuid4(), OwnerType.ENGAGER)


def test_missing_agent_key_falls_back_to_guess(repository, monkeypatch):
    monkeypatch.setattr(launcher_module.settings, "agent_api_key", None)
    launcher = EnrichmentLauncher(repository, EnrichmentConfig())
    signal = _signal(repository)

    result = launcher.launch(signal.id)

    assert result.status == "fallback"
    assert result.error_code is None
    task = repository.get_task(result.enrichment_id)
    assert task.status == TaskStatus.COMPLETED.value
    assert task.enrichment_source == EnrichmentSource.FALLBACK.value
    assert task.company_info == {"website": "https://www.acmelogistique.com"}
    assert task.external_task_id is None
    assert repository.get_signal(signal.id).enrichment_status == "completed"
    assert repository.list_contacts(OwnerType.SIGNAL, signal.id) == []


def test_fallback_task_allows_a_later_agent_launch(repository, monkeypatch):
    monkeypatch.setattr(launcher_module.settings, "agent_api_key", None)
    signal = _signal(repository)
    EnrichmentLauncher(repository, EnrichmentConfig()).launch(signal.id)

    agent = StubAgentClient()
    result = EnrichmentLauncher(repository, EnrichmentConfig(), client=agent).launch(signal.id)

    assert result.status == "processing"
    assert len(agent.created) == 1


def test_quota_error_falls_back_with_quota_code(repository):
    agent = StubAgentClient()
    agent.create_error = AgentQuotaError("credits exhausted")
    launcher = EnrichmentLauncher(repository, EnrichmentConfig(), client=agent)
    signal = _signal(repository)

    result = launcher.launch(signal.id)

    assert result.status == "fallback"
    assert result.error_code == "402_QUOTA_EXCEEDED"
    assert "credits exhausted" in result.message


def test_provider_error_falls_back_with_upstream_code(repository):
    agent = StubAgentClient()
    agent.create_error = AgentError("bad gateway", code="AGENT_502")
    launcher = EnrichmentLauncher(repository, EnrichmentConfig(), client=agent)

    result = launcher.launch(_signal(repository).id)

    assert result.error_code == "502_AGENT_UPSTREAM"


def test_engager_fallback_creates_guessed_contact(repository):
    agent = StubAgentClient()
    agent.create_error = AgentQuotaError()
    launcher = EnrichmentLauncher(repository, EnrichmentConfig(), client=agent)
    engager = _engager(repository)

    result = launcher.launch(engager.id, OwnerType.ENGAGER)

    assert result.status == "fallback"
    assert result.contacts_created == 1
    contacts = repository.list_contacts(OwnerType.ENGAGER, engager.id)
    assert len(contacts) == 1
    assert contacts[0].email == "camille.martin@acme.com"
    assert contacts[0].source == EnrichmentSource.FALLBACK.value
    assert contacts[0].priority_score == 5
    stored = repository.get_engager(engager.id)
    assert stored.contact_id == contacts[0].id
    assert stored.transferred_to_contacts is True
    assert stored.enrichment_status == "completed"


def test_engager_launch_uses_profile_brief(repository):
    agent = StubAgentClient()
    launcher = EnrichmentLauncher(repository, EnrichmentConfig(), client=agent)
    engager = _engager(repository)

    launcher.launch(engager.id, OwnerType.ENGAGER)

    prompt = agent.created[0]["prompt"]
    assert "camille-martin" in prompt
    assert "Office Manager at Acme" in prompt


def test_persona_section_orders_priority_profiles_first():
    section = render_persona_section(
        (Persona("CFO"), Persona("Office Manager", is_priority=True))
    )

    lines = section.splitlines()
    assert lines[1] == "1. **Office Manager** - priority contact"
    assert "2. CFO" in lines


def test_signal_brief_mentions_every_persona():
    signal = Signal(company_name="Acme", signal_type="award", score=4)

    brief = build_signal_brief(signal, DEFAULT_PERSONAS)

    assert all(persona.name in brief for persona in DEFAULT_PERSONAS)
    assert "Sector: Not specified" in brief


def test_engager_brief_without_profile_url():
    engager = LinkedInEngager(name="Jo Doe", linkedin_url="")

    brief = build_engager_brief(engager)

    assert "LinkedIn username: Not available" in brief
