"""Durable progress record for a fetch-and-analyze scan."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import UUID, uuid4

import sqlalchemy as sa
from sqlalchemy import Column, DateTime, Integer, String, Text, Uuid
from sqlmodel import Field, SQLModel

from leadsignal.models.base import UtcNow, utcnow


class ScanStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_SCAN_STATUSES = frozenset({ScanStatus.COMPLETED.value, ScanStatus.FAILED.value})


def _counter_column() -> Column:
    return Column(Integer, nullable=False, server_default="0")


class ScanRun(SQLModel, table=True):
    """Cumulative counters for one scan across all of its invocations."""

    __tablename__ = "scan_runs"
    __table_args__ = (sa.Index("ix_scan_runs_status_started", "status", "started_at"),)

    id: UUID = Field(
        default_factory=uuid4,
        sa_column=Column(Uuid(as_uuid=True), primary_key=True, nullable=False),
    )
    status: str = Field(
        default=ScanStatus.RUNNING.value,
        sa_column=Column(String(length=32), nullable=False, server_default="running"),
    )
    items_fetched: int = Field(default=0, sa_column=_counter_column())
    items_analyzed: int = Field(default=0, sa_column=_counter_column())
    signals_created: int = Field(default=0, sa_column=_counter_column())
    batches_run: int = Field(default=0, sa_column=_counter_column())
    invocations: int = Field(default=0, sa_column=_counter_column())
    started_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False, server_default=UtcNow()),
    )
    completed_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    error_message: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    lease_token: str | None = Field(
        default=None, sa_column=Column(String(length=64), nullable=True)
    )
    lease_expires_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SCAN_STATUSES
