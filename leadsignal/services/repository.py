"""SQLModel persistence for the signal pipeline."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import or_, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from leadsignal.config import settings
from leadsignal.core.database import build_engine
from leadsignal.models import (
    Contact,
    EnrichmentTask,
    LinkedInEngager,
    OwnerType,
    ScanRun,
    ScanStatus,
    SearchQuery,
    Signal,
    SourceItem,
    TaskStatus,
)
from leadsignal.models.base import utcnow
from leadsignal.observability.metrics import metrics
from leadsignal.services.errors import PersistenceError

logger = logging.getLogger(__name__)


class SqlPipelineRepository:
    """Repository over the staging, signal, scan and enrichment tables.

    Every write is a single-row insert guarded by a unique constraint or a
    conditional update, so callers can retry without duplicating rows.
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    @property
    def engine(self) -> Engine:
        return self._engine

    def dispose(self) -> None:
        """Close the underlying SQLAlchemy engine."""
        self._engine.dispose()

    # Source items ---------------------------------------------------------

    def add_source_item(self, item: SourceItem) -> bool:
        """Stage an item unless its url is already known. Returns True when inserted."""
        with self._guard("source_item.add", url=item.url):
            with self._session() as session:
                existing = session.exec(select(SourceItem.id).where(SourceItem.url == item.url))
                if existing.first() is not None:
                    return False
                session.add(item)
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    metrics.increment("persistence.conflict", tags={"table": "source_items"})
                    return False
                return True

    def list_unprocessed(self, limit: int) -> list[SourceItem]:
        with self._guard("source_item.list_unprocessed"):
            with self._session() as session:
                statement = (
                    select(SourceItem)
                    .where(SourceItem.processed.is_(False))
                    .order_by(
                        SourceItem.published_at.desc().nulls_last(),
                        SourceItem.fetched_at.desc(),
                    )
                    .limit(max(limit, 0))
                )
                return list(session.exec(statement).all())

    def mark_processed(self, item_ids: Iterable[UUID]) -> int:
        ids = list(item_ids)
        if not ids:
            return 0
        with self._guard("source_item.mark_processed", count=len(ids)):
            with self._session() as session:
                result = session.execute(
                    update(SourceItem).where(SourceItem.id.in_(ids)).values(processed=True)
                )
                session.commit()
                return result.rowcount or 0

    def list_active_queries(self) -> list[SearchQuery]:
        with self._guard("search_query.list"):
            with self._session() as session:
                statement = (
                    select(SearchQuery)
                    .where(SearchQuery.is_active.is_(True))
                    .order_by(SearchQuery.created_at)
                )
                return list(session.exec(statement).all())

    def add_search_query(self, name: str, query: str, *, is_active: bool = True) -> SearchQuery:
        record = SearchQuery(name=name, query=query, is_active=is_active)
        with self._guard("search_query.add", name=name):
            with self._session() as session:
                session.add(record)
                session.commit()
                session.refresh(record)
                return record

    def touch_query(self, query_id: UUID, fetched_at: datetime | None = None) -> None:
        with self._guard("search_query.touch", query_id=str(query_id)):
            with self._session() as session:
                session.execute(
                    update(SearchQuery)
                    .where(SearchQuery.id == query_id)
                    .values(last_fetched_at=fetched_at or utcnow())
                )
                session.commit()

    # Signals --------------------------------------------------------------

    def signal_exists(self, company_name: str, source_url: str | None) -> bool:
        with self._guard("signal.exists", company_name=company_name):
            with self._session() as session:
                statement = select(Signal.id).where(Signal.company_name == company_name)
                if source_url is None:
                    statement = statement.where(Signal.source_url.is_(None))
                else:
                    statement = statement.where(Signal.source_url == source_url)
                return session.exec(statement).first() is not None

    def insert_signal(self, signal: Signal) -> Signal | None:
        """Insert a signal; returns None when the (company, url) pair already exists."""
        with self._guard("signal.insert", company_name=signal.company_name):
            with self._session() as session:
                session.add(signal)
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    metrics.increment("persistence.conflict", tags={"table": "signals"})
                    logger.info(
                        "signal.insert.duplicate",
                        extra={"company_name": signal.company_name, "source_url": signal.source_url},
                    )
                    return None
                session.refresh(signal)
                return signal

    def get_signal(self, signal_id: UUID) -> Signal | None:
        with self._guard("signal.get", signal_id=str(signal_id)):
            with self._session() as session:
                return session.get(Signal, signal_id)

    def list_signals(self, *, limit: int = 50) -> list[Signal]:
        with self._guard("signal.list"):
            with self._session() as session:
                statement = select(Signal).order_by(Signal.created_at.desc()).limit(limit)
                return list(session.exec(statement).all())

    # Scan runs ------------------------------------------------------------

    def create_scan(self) -> ScanRun:
        scan = ScanRun()
        with self._guard("scan.create"):
            with self._session() as session:
                session.add(scan)
                session.commit()
                session.refresh(scan)
                return scan

    def get_scan(self, scan_id: UUID) -> ScanRun | None:
        with self._guard("scan.get", scan_id=str(scan_id)):
            with self._session() as session:
                return session.get(ScanRun, scan_id)

    def record_fetch(self, scan_id: UUID, items_fetched: int) -> bool:
        return self._update_running(
            "scan.record_fetch",
            scan_id,
            {"items_fetched": ScanRun.items_fetched + max(items_fetched, 0)},
        )

    def record_batch(self, scan_id: UUID, *, processed: int, created: int) -> bool:
        """Atomically add one batch's counts to a running scan."""
        return self._update_running(
            "scan.record_batch",
            scan_id,
            {
                "items_analyzed": ScanRun.items_analyzed + max(processed, 0),
                "signals_created": ScanRun.signals_created + max(created, 0),
                "batches_run": ScanRun.batches_run + 1,
            },
        )

    def complete_scan(self, scan_id: UUID) -> bool:
        return self._update_running(
            "scan.complete",
            scan_id,
            {
                "status": ScanStatus.COMPLETED.value,
                "completed_at": utcnow(),
                "lease_token": None,
                "lease_expires_at": None,
            },
        )

    def fail_scan(self, scan_id: UUID, error_message: str) -> bool:
        return self._update_running(
            "scan.fail",
            scan_id,
            {
                "status": ScanStatus.FAILED.value,
                "completed_at": utcnow(),
                "error_message": error_message,
                "lease_token": None,
                "lease_expires_at": None,
            },
        )

    def claim_scan(self, scan_id: UUID, token: str, *, lease_seconds: int) -> bool:
        """Take the single-flight lease on a running scan.

        Succeeds when no lease is held, the held lease expired, or the caller
        already owns it. Each successful claim counts as one invocation.
        """
        now = utcnow()
        with self._guard("scan.claim", scan_id=str(scan_id)):
            with self._session() as session:
                result = session.execute(
                    update(ScanRun)
                    .where(
                        ScanRun.id == scan_id,
                        ScanRun.status == ScanStatus.RUNNING.value,
                        or_(
                            ScanRun.lease_token.is_(None),
                            ScanRun.lease_expires_at.is_(None),
                            ScanRun.lease_expires_at < now,
                            ScanRun.lease_token == token,
                        ),
                    )
                    .values(
                        lease_token=token,
                        lease_expires_at=now + timedelta(seconds=lease_seconds),
                        invocations=ScanRun.invocations + 1,
                    )
                )
                session.commit()
                return (result.rowcount or 0) == 1

    def release_scan(self, scan_id: UUID, token: str) -> bool:
        with self._guard("scan.release", scan_id=str(scan_id)):
            with self._session() as session:
                result = session.execute(
                    update(ScanRun)
                    .where(ScanRun.id == scan_id, ScanRun.lease_token == token)
                    .values(lease_token=None, lease_expires_at=None)
                )
                session.commit()
                return (result.rowcount or 0) == 1

    def list_scans(self, *, limit: int = 20) -> list[ScanRun]:
        with self._guard("scan.list"):
            with self._session() as session:
                statement = select(ScanRun).order_by(ScanRun.started_at.desc()).limit(limit)
                return list(session.exec(statement).all())

    def list_stale_scans(self, older_than: datetime) -> list[ScanRun]:
        """Running scans started before `older_than` that no live lease covers."""
        now = utcnow()
        with self._guard("scan.list_stale"):
            with self._session() as session:
                statement = (
                    select(ScanRun)
                    .where(
                        ScanRun.status == ScanStatus.RUNNING.value,
                        ScanRun.started_at < older_than,
                        or_(ScanRun.lease_expires_at.is_(None), ScanRun.lease_expires_at < now),
                    )
                    .order_by(ScanRun.started_at)
                )
                return list(session.exec(statement).all())

    # Engagers -------------------------------------------------------------

    def add_engager(self, engager: LinkedInEngager) -> tuple[LinkedInEngager, bool]:
        """Insert an engager, or return the existing row for the same profile and post."""
        with self._guard("engager.add", linkedin_url=engager.linkedin_url):
            with self._session() as session:
                existing = self._find_engager(session, engager.linkedin_url, engager.post_url)
                if existing is not None:
                    return existing, False
                session.add(engager)
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    existing = self._find_engager(session, engager.linkedin_url, engager.post_url)
                    if existing is None:
                        raise
                    return existing, False
                session.refresh(engager)
                return engager, True

    def get_engager(self, engager_id: UUID) -> LinkedInEngager | None:
        with self._guard("engager.get", engager_id=str(engager_id)):
            with self._session() as session:
                return session.get(LinkedInEngager, engager_id)

    def link_engager_contact(self, engager_id: UUID, contact_id: UUID) -> None:
        with self._guard("engager.link_contact", engager_id=str(engager_id)):
            with self._session() as session:
                session.execute(
                    update(LinkedInEngager)
                    .where(LinkedInEngager.id == engager_id)
                    .values(contact_id=contact_id, transferred_to_contacts=True)
                )
                session.commit()

    # Owners ---------------------------------------------------------------

    def get_owner(self, owner_type: OwnerType, owner_id: UUID) -> Signal | LinkedInEngager | None:
        if owner_type == OwnerType.ENGAGER:
            return self.get_engager(owner_id)
        return self.get_signal(owner_id)

    def set_owner_enrichment(self, owner_type: OwnerType, owner_id: UUID, status: str) -> None:
        model = LinkedInEngager if owner_type == OwnerType.ENGAGER else Signal
        with self._guard(
            "owner.set_enrichment", owner_type=owner_type.value, owner_id=str(owner_id)
        ):
            with self._session() as session:
                session.execute(
                    update(model).where(model.id == owner_id).values(enrichment_status=status)
                )
                session.commit()

    # Enrichment tasks -----------------------------------------------------

    def create_task(self, task: EnrichmentTask) -> EnrichmentTask:
        with self._guard("task.create", owner_id=str(task.owner_id)):
            with self._session() as session:
                session.add(task)
                session.commit()
                session.refresh(task)
                return task

    def get_task(self, task_id: UUID) -> EnrichmentTask | None:
        with self._guard("task.get", task_id=str(task_id)):
            with self._session() as session:
                return session.get(EnrichmentTask, task_id)

    def latest_task_for_owner(
        self, owner_type: OwnerType, owner_id: UUID
    ) -> EnrichmentTask | None:
        with self._guard("task.latest", owner_type=owner_type.value, owner_id=str(owner_id)):
            with self._session() as session:
                statement = (
                    select(EnrichmentTask)
                    .where(
                        EnrichmentTask.owner_type == owner_type.value,
                        EnrichmentTask.owner_id == owner_id,
                    )
                    .order_by(EnrichmentTask.created_at.desc())
                )
                return session.exec(statement).first()

    def update_task(self, task_id: UUID, **fields: Any) -> EnrichmentTask:
        with self._guard("task.update", task_id=str(task_id)):
            with self._session() as session:
                task = session.get(EnrichmentTask, task_id)
                if task is None:
                    raise PersistenceError(
                        f"Enrichment task {task_id} not found.", code="404_NOT_FOUND"
                    )
                for key, value in fields.items():
                    setattr(task, key, value)
                task.updated_at = utcnow()
                session.add(task)
                session.commit()
                session.refresh(task)
                return task

    def list_processing_tasks(self, *, limit: int | None = None) -> list[EnrichmentTask]:
        with self._guard("task.list_processing"):
            with self._session() as session:
                statement = (
                    select(EnrichmentTask)
                    .where(EnrichmentTask.status == TaskStatus.PROCESSING.value)
                    .order_by(EnrichmentTask.created_at)
                )
                if limit is not None:
                    statement = statement.limit(max(limit, 0))
                return list(session.exec(statement).all())

    # Contacts -------------------------------------------------------------

    def owner_has_contacts(self, owner_type: OwnerType, owner_id: UUID) -> bool:
        with self._guard("contact.exists", owner_id=str(owner_id)):
            with self._session() as session:
                statement = select(Contact.id).where(_contact_owner_clause(owner_type, owner_id))
                return session.exec(statement).first() is not None

    def insert_contacts(self, contacts: list[Contact]) -> list[Contact]:
        if not contacts:
            return []
        with self._guard("contact.insert", count=len(contacts)):
            with self._session() as session:
                session.add_all(contacts)
                session.commit()
                for contact in contacts:
                    session.refresh(contact)
                metrics.increment("contacts.created", value=len(contacts))
                return contacts

    def list_contacts(self, owner_type: OwnerType, owner_id: UUID) -> list[Contact]:
        with self._guard("contact.list", owner_id=str(owner_id)):
            with self._session() as session:
                statement = (
                    select(Contact)
                    .where(_contact_owner_clause(owner_type, owner_id))
                    .order_by(Contact.priority_score.desc(), Contact.created_at)
                )
                return list(session.exec(statement).all())

    # Internals ------------------------------------------------------------

    def _update_running(self, event: str, scan_id: UUID, values: dict[str, Any]) -> bool:
        """Apply `values` only while the scan is still running; terminal rows stay frozen."""
        with self._guard(event, scan_id=str(scan_id)):
            with self._session() as session:
                result = session.execute(
                    update(ScanRun)
                    .where(ScanRun.id == scan_id, ScanRun.status == ScanStatus.RUNNING.value)
                    .values(**values)
                )
                session.commit()
                applied = (result.rowcount or 0) == 1
                if not applied:
                    logger.warning(f"{event}.skipped", extra={"scan_id": str(scan_id)})
                return applied

    @staticmethod
    def _find_engager(session: Session, linkedin_url: str, post_url: str) -> LinkedInEngager | None:
        statement = select(LinkedInEngager).where(
            LinkedInEngager.linkedin_url == linkedin_url,
            LinkedInEngager.post_url == post_url,
        )
        return session.exec(statement).first()

    @contextmanager
    def _guard(self, event: str, **extra: Any) -> Iterator[None]:
        try:
            yield
        except PersistenceError:
            raise
        except SQLAlchemyError as exc:
            logger.exception("persistence.error", extra={"operation": event, **extra})
            metrics.increment("persistence.error", tags={"operation": event})
            raise PersistenceError(f"Database operation {event} failed.", code="500_INTERNAL") from exc

    @contextmanager
    def _session(self) -> Iterator[Session]:
        with Session(self._engine, expire_on_commit=False) as session:
            yield session


def _contact_owner_clause(owner_type: OwnerType, owner_id: UUID):
    if owner_type == OwnerType.ENGAGER:
        return Contact.engager_id == owner_id
    return Contact.signal_id == owner_id


def build_repository(database_url: str | None = None) -> SqlPipelineRepository:
    """Instantiate the repository using DATABASE_URL."""
    resolved_url = database_url or settings.database_url
    if not resolved_url:
        raise PersistenceError("DATABASE_URL is required.", code="503_MISSING_DATABASE")
    try:
        engine = build_engine(
            resolved_url,
            pool_min_size=settings.db_pool_min_size,
            pool_max_size=settings.db_pool_max_size,
            auto_create_schema=settings.database_auto_create,
        )
    except SQLAlchemyError:
        logger.exception("repository.init_failed")
        raise
    logger.info("repository.initialized")
    return SqlPipelineRepository(engine)
