"""Agent task handles and the contacts they produce."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

import sqlalchemy as sa
from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text, Uuid
from sqlmodel import Field, SQLModel

from leadsignal.models.base import JSON_BACKING_TYPE, UtcNow, utcnow


class OwnerType(str, Enum):
    SIGNAL = "signal"
    ENGAGER = "engager"


class TaskStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


class EnrichmentSource(str, Enum):
    AGENT = "agent"
    FALLBACK = "fallback"


class EnrichmentTask(SQLModel, table=True):
    """One external agent task opened for a signal or an engager."""

    __tablename__ = "enrichment_tasks"
    __table_args__ = (
        sa.Index("ix_enrichment_tasks_owner", "owner_type", "owner_id"),
        sa.Index("ix_enrichment_tasks_status", "status"),
    )

    id: UUID = Field(
        default_factory=uuid4,
        sa_column=Column(Uuid(as_uuid=True), primary_key=True, nullable=False),
    )
    owner_type: str = Field(sa_column=Column(String(length=32), nullable=False))
    owner_id: UUID = Field(sa_column=Column(Uuid(as_uuid=True), nullable=False))
    company_name: str | None = Field(
        default=None, sa_column=Column(String(length=255), nullable=True)
    )
    external_task_id: str | None = Field(
        default=None, sa_column=Column(String(length=255), nullable=True)
    )
    external_task_url: str | None = Field(
        default=None, sa_column=Column(String(length=1024), nullable=True)
    )
    status: str = Field(
        default=TaskStatus.PROCESSING.value,
        sa_column=Column(String(length=32), nullable=False, server_default="processing"),
    )
    enrichment_source: str = Field(
        default=EnrichmentSource.AGENT.value,
        sa_column=Column(String(length=32), nullable=False, server_default="agent"),
    )
    provider_status: str | None = Field(
        default=None, sa_column=Column(String(length=64), nullable=True)
    )
    raw_payload: dict[str, Any] | None = Field(
        default=None, sa_column=Column(JSON_BACKING_TYPE, nullable=True)
    )
    company_info: dict[str, Any] | None = Field(
        default=None, sa_column=Column(JSON_BACKING_TYPE, nullable=True)
    )
    search_method: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    error_message: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    last_error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False, server_default=UtcNow()),
    )
    updated_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(
            DateTime(timezone=True),
            nullable=False,
            server_default=UtcNow(),
            onupdate=UtcNow(),
        ),
    )
    completed_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )


class Contact(SQLModel, table=True):
    """A named person attached to a signal or an engager."""

    __tablename__ = "contacts"
    __table_args__ = (
        sa.Index("ix_contacts_signal_id", "signal_id"),
        sa.Index("ix_contacts_engager_id", "engager_id"),
    )

    id: UUID = Field(
        default_factory=uuid4,
        sa_column=Column(Uuid(as_uuid=True), primary_key=True, nullable=False),
    )
    signal_id: UUID | None = Field(
        default=None,
        sa_column=Column(
            Uuid(as_uuid=True), sa.ForeignKey("signals.id", ondelete="CASCADE"), nullable=True
        ),
    )
    engager_id: UUID | None = Field(
        default=None,
        sa_column=Column(
            Uuid(as_uuid=True),
            sa.ForeignKey("linkedin_engagers.id", ondelete="CASCADE"),
            nullable=True,
        ),
    )
    enrichment_task_id: UUID | None = Field(
        default=None,
        sa_column=Column(
            Uuid(as_uuid=True),
            sa.ForeignKey("enrichment_tasks.id", ondelete="SET NULL"),
            nullable=True,
        ),
    )
    full_name: str = Field(sa_column=Column(String(length=255), nullable=False))
    first_name: str | None = Field(default=None, sa_column=Column(String(length=128), nullable=True))
    last_name: str | None = Field(default=None, sa_column=Column(String(length=128), nullable=True))
    job_title: str | None = Field(default=None, sa_column=Column(String(length=255), nullable=True))
    department: str | None = Field(
        default=None, sa_column=Column(String(length=255), nullable=True)
    )
    location: str | None = Field(default=None, sa_column=Column(String(length=255), nullable=True))
    email: str | None = Field(default=None, sa_column=Column(String(length=320), nullable=True))
    email_alternate: str | None = Field(
        default=None, sa_column=Column(String(length=320), nullable=True)
    )
    phone: str | None = Field(default=None, sa_column=Column(String(length=64), nullable=True))
    linkedin_url: str | None = Field(
        default=None, sa_column=Column(String(length=1024), nullable=True)
    )
    priority_score: int = Field(
        default=3, sa_column=Column(Integer, nullable=False, server_default="3")
    )
    is_priority_target: bool = Field(
        default=False, sa_column=Column(Boolean, nullable=False, server_default=sa.false())
    )
    outreach_status: str = Field(
        default="new",
        sa_column=Column(String(length=32), nullable=False, server_default="new"),
    )
    source: str = Field(
        default="agent",
        sa_column=Column(String(length=32), nullable=False, server_default="agent"),
    )
    raw_data: dict[str, Any] | None = Field(
        default=None, sa_column=Column(JSON_BACKING_TYPE, nullable=True)
    )
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False, server_default=UtcNow()),
    )
