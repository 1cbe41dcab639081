"""Poll open agent tasks and persist the contacts they produce."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from typing import Any
from uuid import UUID

from leadsignal.clients.agent import AgentClient, AgentError, AgentQuotaError
from leadsignal.config import EnrichmentConfig, settings
from leadsignal.models import EnrichmentStatus, EnrichmentTask, OwnerType, TaskStatus
from leadsignal.models.base import utcnow
from leadsignal.observability.metrics import metrics
from leadsignal.services.enrichment.contacts import clean_company_info, normalize_contacts
from leadsignal.services.enrichment.result_parser import parse_agent_output
from leadsignal.services.errors import NotFoundError, PipelineError
from leadsignal.services.repository import SqlPipelineRepository

logger = logging.getLogger(__name__)

COMPLETED_PROVIDER_STATUSES = frozenset({"completed", "done"})
FAILED_PROVIDER_STATUSES = frozenset({"failed", "error"})


@dataclass(frozen=True)
class CheckResult:
    owner_id: UUID
    owner_type: str
    status: str
    contacts_found: int = 0
    message: str | None = None
    provider_status: str | None = None
    error_code: str | None = None
    company_name: str | None = None

    def as_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["owner_id"] = str(self.owner_id)
        return payload


@dataclass
class BatchCheckResult:
    checked: int = 0
    completed: int = 0
    still_processing: int = 0
    failed: int = 0
    total_contacts: int = 0
    results: list[CheckResult] = field(default_factory=list)

    def add(self, result: CheckResult) -> None:
        self.checked += 1
        self.total_contacts += result.contacts_found
        if result.status == TaskStatus.COMPLETED.value:
            self.completed += 1
        elif result.status == TaskStatus.PROCESSING.value:
            self.still_processing += 1
        else:
            self.failed += 1
        self.results.append(result)

    def as_dict(self) -> dict[str, Any]:
        return {
            "checked": self.checked,
            "completed": self.completed,
            "still_processing": self.still_processing,
            "failed": self.failed,
            "total_contacts": self.total_contacts,
            "results": [result.as_dict() for result in self.results],
        }


class EnrichmentReconciler:
    def __init__(
        self,
        repository: SqlPipelineRepository,
        config: EnrichmentConfig,
        *,
        client: AgentClient | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._repository = repository
        self._config = config
        self._client = client
        self._sleep = sleep

    def check(self, owner_id: UUID, owner_type: OwnerType = OwnerType.SIGNAL) -> CheckResult:
        """Reconcile the latest task of one owner."""
        if self._repository.get_owner(owner_type, owner_id) is None:
            raise NotFoundError(f"{owner_type.value.capitalize()} {owner_id} not found.")
        task = self._repository.latest_task_for_owner(owner_type, owner_id)
        if task is None:
            return CheckResult(
                owner_id=owner_id,
                owner_type=owner_type.value,
                status="no_task",
                message="No enrichment task for this owner.",
            )
        if task.status != TaskStatus.PROCESSING.value:
            contacts = self._repository.list_contacts(owner_type, owner_id)
            return CheckResult(
                owner_id=owner_id,
                owner_type=owner_type.value,
                status=task.status,
                contacts_found=len(contacts),
                message=task.error_message,
                provider_status=task.provider_status,
                company_name=task.company_name,
            )
        return self.check_task(task)

    def check_all(self) -> BatchCheckResult:
        """Reconcile every processing task, one at a time."""
        batch = BatchCheckResult()
        tasks = self._repository.list_processing_tasks()
        logger.info("enrichment.check_all.started", extra={"tasks": len(tasks)})
        for index, task in enumerate(tasks):
            if index:
                self._sleep(self._config.poll_pause_seconds)
            try:
                result = self.check_task(task)
            except PipelineError as exc:
                logger.exception(
                    "enrichment.check.failed",
                    extra={"task_id": str(task.id), "code": exc.code},
                )
                self._repository.update_task(task.id, last_error=str(exc))
                result = CheckResult(
                    owner_id=task.owner_id,
                    owner_type=task.owner_type,
                    status=TaskStatus.PROCESSING.value,
                    message=str(exc),
                    error_code=exc.code,
                    company_name=task.company_name,
                )
            except Exception as exc:  # noqa: BLE001 - one broken task must not stop the batch
                logger.exception("enrichment.check.crashed", extra={"task_id": str(task.id)})
                message = f"{type(exc).__name__}: {exc}"[:500]
                self._repository.update_task(task.id, last_error=message)
                result = CheckResult(
                    owner_id=task.owner_id,
                    owner_type=task.owner_type,
                    status=TaskStatus.PROCESSING.value,
                    message=message,
                    error_code="500_INTERNAL",
                    company_name=task.company_name,
                )
            batch.add(result)
        metrics.increment("enrichment.check_all.completed", value=batch.completed)
        logger.info(
            "enrichment.check_all.finished",
            extra={key: value for key, value in batch.as_dict().items() if key != "results"},
        )
        return batch

    def check_task(self, task: EnrichmentTask) -> CheckResult:
        owner_type = OwnerType(task.owner_type)
        if not task.external_task_id:
            return self._mark_failed(task, owner_type, "Enrichment task has no external task id.")

        client = self._ensure_client()
        if client is None:
            return self._still_processing(
                task,
                owner_type,
                last_error="AGENT_API_KEY is not configured.",
                error_code="503_MISSING_API_KEY",
            )

        try:
            document = client.get_task(task.external_task_id)
        except AgentError as exc:
            metrics.increment("enrichment.check.errors", tags={"code": exc.code})
            logger.warning(
                "enrichment.check.provider_failed",
                extra={"task_id": str(task.id), "code": exc.code, "error": str(exc)},
            )
            error_code = "402_QUOTA_EXCEEDED" if isinstance(exc, AgentQuotaError) else exc.code
            return self._still_processing(task, owner_type, last_error=str(exc), error_code=error_code)

        provider_status = str(document.get("status") or "").strip().lower()
        if provider_status in FAILED_PROVIDER_STATUSES:
            detail = document.get("error") or document.get("message") or "Agent task failed."
            return self._mark_failed(task, owner_type, str(detail), provider_status=provider_status)
        if provider_status not in COMPLETED_PROVIDER_STATUSES:
            self._repository.update_task(task.id, provider_status=provider_status or None)
            return CheckResult(
                owner_id=task.owner_id,
                owner_type=owner_type.value,
                status=TaskStatus.PROCESSING.value,
                provider_status=provider_status or None,
                message="Agent task still running.",
                company_name=task.company_name,
            )
        return self._complete(task, owner_type, document, client, provider_status)

    def _complete(
        self,
        task: EnrichmentTask,
        owner_type: OwnerType,
        document: dict[str, Any],
        client: AgentClient,
        provider_status: str,
    ) -> CheckResult:
        output = document.get("output")
        parsed = parse_agent_output(output, fetch_file=client.download_json)

        inserted = 0
        if parsed.contacts and not self._repository.owner_has_contacts(owner_type, task.owner_id):
            contacts = self._repository.insert_contacts(
                normalize_contacts(
                    parsed.contacts,
                    owner_type=owner_type,
                    owner_id=task.owner_id,
                    task_id=task.id,
                    external_task_id=task.external_task_id,
                )
            )
            inserted = len(contacts)
            if owner_type == OwnerType.ENGAGER and contacts:
                self._repository.link_engager_contact(task.owner_id, contacts[0].id)

        self._repository.update_task(
            task.id,
            status=TaskStatus.COMPLETED.value,
            provider_status=provider_status,
            company_info=clean_company_info(parsed.company_info),
            search_method=parsed.search_method,
            error_message=parsed.error if not parsed.contacts else None,
            raw_payload={
                **(task.raw_payload or {}),
                "external_task_id": task.external_task_id,
                "output": output,
                "agent_error": parsed.error,
                "parsed_from": parsed.source,
            },
            external_task_id=None,
            completed_at=utcnow(),
        )
        self._repository.set_owner_enrichment(
            owner_type, task.owner_id, EnrichmentStatus.COMPLETED.value
        )
        metrics.increment("enrichment.completed", tags={"owner_type": owner_type.value})
        logger.info(
            "enrichment.completed",
            extra={
                "task_id": str(task.id),
                "owner_id": str(task.owner_id),
                "contacts_found": len(parsed.contacts),
                "contacts_inserted": inserted,
            },
        )
        return CheckResult(
            owner_id=task.owner_id,
            owner_type=owner_type.value,
            status=TaskStatus.COMPLETED.value,
            contacts_found=len(parsed.contacts),
            message=parsed.error,
            provider_status=provider_status,
            company_name=task.company_name,
        )

    def _mark_failed(
        self,
        task: EnrichmentTask,
        owner_type: OwnerType,
        message: str,
        *,
        provider_status: str | None = None,
    ) -> CheckResult:
        self._repository.update_task(
            task.id,
            status=TaskStatus.ERROR.value,
            provider_status=provider_status,
            error_message=message,
            completed_at=utcnow(),
        )
        self._repository.set_owner_enrichment(
            owner_type, task.owner_id, EnrichmentStatus.FAILED.value
        )
        metrics.increment("enrichment.failed", tags={"owner_type": owner_type.value})
        logger.warning(
            "enrichment.failed",
            extra={"task_id": str(task.id), "owner_id": str(task.owner_id), "error": message},
        )
        return CheckResult(
            owner_id=task.owner_id,
            owner_type=owner_type.value,
            status=TaskStatus.ERROR.value,
            message=message,
            provider_status=provider_status,
            company_name=task.company_name,
        )

    def _still_processing(
        self,
        task: EnrichmentTask,
        owner_type: OwnerType,
        *,
        last_error: str,
        error_code: str,
    ) -> CheckResult:
        self._repository.update_task(task.id, last_error=last_error)
        return CheckResult(
            owner_id=task.owner_id,
            owner_type=owner_type.value,
            status=TaskStatus.PROCESSING.value,
            message=last_error,
            error_code=error_code,
            company_name=task.company_name,
        )

    def _ensure_client(self) -> AgentClient | None:
        if self._client is not None:
            return self._client
        if not settings.agent_api_key:
            return None
        self._client = AgentClient.from_env()
        return self._client
