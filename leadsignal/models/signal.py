"""Scored business signals extracted from staged content."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import UUID, uuid4

import sqlalchemy as sa
from sqlalchemy import Column, DateTime, Integer, String, Text, Uuid
from sqlmodel import Field, SQLModel

from leadsignal.models.base import UtcNow, utcnow


class SignalType(str, Enum):
    ANNIVERSARY = "anniversary"
    FUNDING = "funding"
    ACQUISITION = "acquisition"
    AWARD = "award"
    EXPANSION = "expansion"
    LEADERSHIP = "leadership"


class SignalSource(str, Enum):
    PRESS = "press"
    REGISTRY = "registry"


class SignalStatus(str, Enum):
    NEW = "new"
    QUALIFIED = "qualified"
    CONTACTED = "contacted"
    CONVERTED = "converted"


class EnrichmentStatus(str, Enum):
    NONE = "none"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Signal(SQLModel, table=True):
    """A company event worth an outreach, scored 1..5."""

    __tablename__ = "signals"
    __table_args__ = (
        sa.UniqueConstraint("company_name", "source_url", name="uq_signals_company_source_url"),
        sa.Index("ix_signals_enrichment_status", "enrichment_status"),
        sa.Index("ix_signals_score", "score"),
    )

    id: UUID = Field(
        default_factory=uuid4,
        sa_column=Column(Uuid(as_uuid=True), primary_key=True, nullable=False),
    )
    company_name: str = Field(sa_column=Column(String(length=255), nullable=False))
    signal_type: str = Field(sa_column=Column(String(length=32), nullable=False))
    event_detail: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    sector: str | None = Field(default=None, sa_column=Column(String(length=255), nullable=True))
    estimated_size: str | None = Field(
        default=None, sa_column=Column(String(length=64), nullable=True)
    )
    score: int = Field(sa_column=Column(Integer, nullable=False))
    hook_suggestion: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    source_url: str | None = Field(
        default=None, sa_column=Column(String(length=2048), nullable=True)
    )
    source_name: str | None = Field(
        default=None, sa_column=Column(String(length=255), nullable=True)
    )
    source: str = Field(
        default=SignalSource.PRESS.value,
        sa_column=Column(String(length=32), nullable=False, server_default="press"),
    )
    status: str = Field(
        default=SignalStatus.NEW.value,
        sa_column=Column(String(length=32), nullable=False, server_default="new"),
    )
    enrichment_status: str = Field(
        default=EnrichmentStatus.NONE.value,
        sa_column=Column(String(length=32), nullable=False, server_default="none"),
    )
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False, server_default=UtcNow()),
    )
