"""Open agent research tasks for signals and engagers."""

from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass
from typing import Any
from uuid import UUID

from leadsignal.clients.agent import AgentClient, AgentError, AgentQuotaError
from leadsignal.config import EnrichmentConfig, Persona, settings
from leadsignal.models import (
    EnrichmentSource,
    EnrichmentStatus,
    EnrichmentTask,
    LinkedInEngager,
    OwnerType,
    Signal,
    TaskStatus,
)
from leadsignal.models.base import utcnow
from leadsignal.observability.metrics import metrics
from leadsignal.services.enrichment.contacts import (
    guess_domain,
    guess_email,
    normalize_contacts,
)
from leadsignal.services.errors import NotFoundError
from leadsignal.services.repository import SqlPipelineRepository

logger = logging.getLogger(__name__)

_LINKEDIN_USERNAME = re.compile(r"linkedin\.com/in/([^/?]+)")


@dataclass(frozen=True)
class LaunchResult:
    status: str
    owner_id: UUID
    owner_type: str
    enrichment_id: UUID | None = None
    task_id: str | None = None
    task_url: str | None = None
    message: str | None = None
    error_code: str | None = None
    contacts_created: int = 0

    def as_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["owner_id"] = str(self.owner_id)
        payload["enrichment_id"] = str(self.enrichment_id) if self.enrichment_id else None
        return payload


def render_persona_section(personas: tuple[Persona, ...]) -> str:
    priority = [persona for persona in personas if persona.is_priority]
    secondary = [persona for persona in personas if not persona.is_priority]
    lines = ["## PRIORITY PROFILES (in order)"]
    lines.extend(
        f"{index}. **{persona.name}** - priority contact"
        for index, persona in enumerate(priority, start=1)
    )
    if secondary:
        lines.append("")
        lines.append("## SECONDARY PROFILES (if no priority profile is found)")
        lines.extend(
            f"{index}. {persona.name}"
            for index, persona in enumerate(secondary, start=len(priority) + 1)
        )
    return "\n".join(lines)


def build_signal_brief(signal: Signal, personas: tuple[Persona, ...]) -> str:
    """Company-research brief asking for 3 to 5 operational decision makers."""
    return f"""You are a B2B contact researcher who identifies real operational decision makers.

## TARGET COMPANY
- Name: {signal.company_name}
- Sector: {signal.sector or "Not specified"}
- Context: {signal.event_detail or signal.signal_type}

## MISSION
Find 3 to 5 OPERATIONAL contacts who actually buy services and products for this company.

{render_persona_section(personas)}

Avoid strategic titles (CEO, VP, Head of) that do not handle operational purchasing.
When no professional email can be found, use the firstname.lastname@company.com pattern in lower case.

## RESPONSE FORMAT (JSON ONLY)
{{
  "contacts": [
    {{
      "full_name": "First Last",
      "first_name": "First",
      "last_name": "Last",
      "job_title": "Exact title",
      "department": "Department",
      "location": "City, Country",
      "email": "email@company.com",
      "linkedin_url": "https://linkedin.com/in/username",
      "is_priority_persona": true
    }}
  ],
  "company_info": {{
    "website": "https://...",
    "industry": "Sector",
    "employee_count": "Range",
    "headquarters": "City"
  }},
  "search_method": "How the contacts were found"
}}

If the company cannot be found or no contact qualifies, return an empty `contacts` array,
`N/A` company_info values and an `error` string explaining why.

Never ask questions. Always return valid JSON."""


def build_engager_brief(engager: LinkedInEngager) -> str:
    """Single-person brief for someone who engaged with a monitored post."""
    match = _LINKEDIN_USERNAME.search(engager.linkedin_url or "")
    username = match.group(1) if match else "Not available"
    return f"""You are a B2B contact researcher. Complete the details of one LinkedIn contact.

## CONTACT
- Name: {engager.name}
- LinkedIn headline: {engager.headline or "Not available"}
- Detected company: {engager.company or "Not specified"}
- LinkedIn URL: {engager.linkedin_url or "Not available"}
- LinkedIn username: {username}

## MISSION
Find this person's professional email and complete profile. When no email can be found,
use the firstname.lastname@company-domain.com pattern.

## RESPONSE FORMAT (JSON ONLY)
{{
  "contact": {{
    "full_name": "{engager.name}",
    "first_name": "First",
    "last_name": "Last",
    "job_title": "Exact title",
    "department": "Department",
    "company": "Company name",
    "location": "City, Country",
    "email": "email@company.com",
    "email_alternatif": "second email if found",
    "phone": "number if found",
    "linkedin_url": "{engager.linkedin_url or ''}"
  }},
  "enrichment_method": "How the details were found"
}}

If nothing can be found, return the known fields in `contact` and an `error` string.
Never ask questions. Always return valid JSON."""


class EnrichmentLauncher:
    """Open at most one agent task per owner, degrading to a local guess when the agent is unavailable."""

    def __init__(
        self,
        repository: SqlPipelineRepository,
        config: EnrichmentConfig,
        *,
        client: AgentClient | None = None,
    ) -> None:
        self._repository = repository
        self._config = config
        self._client = client

    def launch(self, owner_id: UUID, owner_type: OwnerType = OwnerType.SIGNAL) -> LaunchResult:
        owner = self._repository.get_owner(owner_type, owner_id)
        if owner is None:
            raise NotFoundError(f"{owner_type.value.capitalize()} {owner_id} not found.")

        latest = self._repository.latest_task_for_owner(owner_type, owner_id)
        if latest is not None and latest.status == TaskStatus.PROCESSING.value:
            logger.info(
                "enrichment.launch.already_processing",
                extra={"owner_id": str(owner_id), "owner_type": owner_type.value},
            )
            return LaunchResult(
                status="processing",
                owner_id=owner_id,
                owner_type=owner_type.value,
                enrichment_id=latest.id,
                task_id=latest.external_task_id,
                task_url=latest.external_task_url,
                message="Enrichment already in progress.",
            )
        if (
            latest is not None
            and latest.status == TaskStatus.COMPLETED.value
            and latest.enrichment_source == EnrichmentSource.AGENT.value
        ):
            return LaunchResult(
                status="already_enriched",
                owner_id=owner_id,
                owner_type=owner_type.value,
                enrichment_id=latest.id,
                message="Owner was already enriched.",
            )

        company_name = _owner_company(owner)
        client = self._ensure_client()
        if client is None:
            return self._fallback(owner, owner_type, "AGENT_API_KEY is not configured.")

        brief = (
            build_engager_brief(owner)
            if owner_type == OwnerType.ENGAGER
            else build_signal_brief(owner, self._config.personas)
        )
        try:
            handle = client.create_task(
                brief,
                agent_profile=self._config.agent_profile,
                task_mode=self._config.task_mode,
            )
        except AgentError as exc:
            metrics.increment("enrichment.launch.errors", tags={"code": exc.code})
            logger.warning(
                "enrichment.launch.provider_failed",
                extra={"owner_id": str(owner_id), "code": exc.code, "error": str(exc)},
            )
            error_code = "402_QUOTA_EXCEEDED" if isinstance(exc, AgentQuotaError) else "502_AGENT_UPSTREAM"
            return self._fallback(owner, owner_type, str(exc), error_code=error_code)

        task = self._repository.create_task(
            EnrichmentTask(
                owner_type=owner_type.value,
                owner_id=owner_id,
                company_name=company_name,
                external_task_id=handle.task_id,
                external_task_url=handle.task_url,
                status=TaskStatus.PROCESSING.value,
                enrichment_source=EnrichmentSource.AGENT.value,
                raw_payload={
                    "task": handle.raw,
                    "personas": [asdict(persona) for persona in self._config.personas],
                },
            )
        )
        self._repository.set_owner_enrichment(
            owner_type, owner_id, EnrichmentStatus.PROCESSING.value
        )
        metrics.increment("enrichment.launched", tags={"owner_type": owner_type.value})
        logger.info(
            "enrichment.launched",
            extra={
                "owner_id": str(owner_id),
                "owner_type": owner_type.value,
                "task_id": handle.task_id,
            },
        )
        return LaunchResult(
            status="processing",
            owner_id=owner_id,
            owner_type=owner_type.value,
            enrichment_id=task.id,
            task_id=handle.task_id,
            task_url=handle.task_url,
            message="Enrichment task created.",
        )

    def _fallback(
        self,
        owner: Signal | LinkedInEngager,
        owner_type: OwnerType,
        reason: str,
        *,
        error_code: str | None = None,
    ) -> LaunchResult:
        company_name = _owner_company(owner)
        domain = guess_domain(company_name)
        task = self._repository.create_task(
            EnrichmentTask(
                owner_type=owner_type.value,
                owner_id=owner.id,
                company_name=company_name,
                status=TaskStatus.COMPLETED.value,
                enrichment_source=EnrichmentSource.FALLBACK.value,
                company_info={"website": f"https://www.{domain}"} if domain else None,
                search_method="Guessed from the company name",
                error_message=reason,
                completed_at=utcnow(),
            )
        )
        contacts_created = 0
        if owner_type == OwnerType.ENGAGER:
            contacts_created = self._create_engager_contact(owner, task)
        self._repository.set_owner_enrichment(
            owner_type, owner.id, EnrichmentStatus.COMPLETED.value
        )
        metrics.increment("enrichment.fallback", tags={"owner_type": owner_type.value})
        logger.info(
            "enrichment.fallback",
            extra={"owner_id": str(owner.id), "owner_type": owner_type.value, "reason": reason},
        )
        return LaunchResult(
            status="fallback",
            owner_id=owner.id,
            owner_type=owner_type.value,
            enrichment_id=task.id,
            message=reason,
            error_code=error_code,
            contacts_created=contacts_created,
        )

    def _create_engager_contact(self, engager: LinkedInEngager, task: EnrichmentTask) -> int:
        if self._repository.owner_has_contacts(OwnerType.ENGAGER, engager.id):
            return 0
        raw = {
            "full_name": engager.name,
            "job_title": engager.headline,
            "linkedin_url": engager.linkedin_url,
            "email": guess_email(engager.name, engager.company),
        }
        contacts = self._repository.insert_contacts(
            normalize_contacts(
                [raw],
                owner_type=OwnerType.ENGAGER,
                owner_id=engager.id,
                task_id=task.id,
                source=EnrichmentSource.FALLBACK.value,
            )
        )
        if contacts:
            self._repository.link_engager_contact(engager.id, contacts[0].id)
        return len(contacts)

    def _ensure_client(self) -> AgentClient | None:
        if self._client is not None:
            return self._client
        if not settings.agent_api_key:
            return None
        self._client = AgentClient.from_env()
        return self._client


def _owner_company(owner: Signal | LinkedInEngager) -> str | None:
    if isinstance(owner, LinkedInEngager):
        return owner.company
    return owner.company_name
