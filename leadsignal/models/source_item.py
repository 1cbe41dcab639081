"""Staged content items and the search queries that produce them."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

import sqlalchemy as sa
from sqlalchemy import Boolean, Column, DateTime, String, Text, Uuid
from sqlmodel import Field, SQLModel

from leadsignal.models.base import UtcNow, utcnow


class SearchQuery(SQLModel, table=True):
    """A content-API query the fetcher runs while it is active."""

    __tablename__ = "search_queries"

    id: UUID = Field(
        default_factory=uuid4,
        sa_column=Column(Uuid(as_uuid=True), primary_key=True, nullable=False),
    )
    name: str = Field(sa_column=Column(String(length=255), nullable=False))
    query: str = Field(sa_column=Column(Text, nullable=False))
    is_active: bool = Field(
        default=True, sa_column=Column(Boolean, nullable=False, server_default=sa.true())
    )
    last_fetched_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False, server_default=UtcNow()),
    )


class SourceItem(SQLModel, table=True):
    """Raw article staged for analysis. Rows are append-only."""

    __tablename__ = "source_items"
    __table_args__ = (
        sa.UniqueConstraint("url", name="uq_source_items_url"),
        sa.Index("ix_source_items_processed_published", "processed", "published_at"),
    )

    id: UUID = Field(
        default_factory=uuid4,
        sa_column=Column(Uuid(as_uuid=True), primary_key=True, nullable=False),
    )
    title: str = Field(sa_column=Column(Text, nullable=False))
    description: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    content: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    url: str = Field(sa_column=Column(String(length=2048), nullable=False))
    source_name: str | None = Field(
        default=None, sa_column=Column(String(length=255), nullable=True)
    )
    author: str | None = Field(default=None, sa_column=Column(String(length=255), nullable=True))
    published_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    fetched_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False, server_default=UtcNow()),
    )
    query_id: UUID | None = Field(
        default=None,
        sa_column=Column(
            Uuid(as_uuid=True),
            sa.ForeignKey("search_queries.id", ondelete="SET NULL"),
            nullable=True,
        ),
    )
    processed: bool = Field(
        default=False, sa_column=Column(Boolean, nullable=False, server_default=sa.false())
    )
