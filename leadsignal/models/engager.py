"""People who engaged with a monitored LinkedIn post."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

import sqlalchemy as sa
from sqlalchemy import Boolean, Column, DateTime, String, Uuid
from sqlmodel import Field, SQLModel

from leadsignal.models.base import UtcNow, utcnow


class LinkedInEngager(SQLModel, table=True):
    __tablename__ = "linkedin_engagers"
    __table_args__ = (
        sa.UniqueConstraint("linkedin_url", "post_url", name="uq_linkedin_engagers_profile_post"),
    )

    id: UUID = Field(
        default_factory=uuid4,
        sa_column=Column(Uuid(as_uuid=True), primary_key=True, nullable=False),
    )
    name: str = Field(sa_column=Column(String(length=255), nullable=False))
    headline: str | None = Field(default=None, sa_column=Column(String(length=512), nullable=True))
    company: str | None = Field(default=None, sa_column=Column(String(length=255), nullable=True))
    linkedin_url: str = Field(sa_column=Column(String(length=1024), nullable=False))
    engagement_type: str = Field(
        default="like",
        sa_column=Column(String(length=32), nullable=False, server_default="like"),
    )
    post_url: str = Field(
        default="", sa_column=Column(String(length=1024), nullable=False, server_default="")
    )
    enrichment_status: str = Field(
        default="none",
        sa_column=Column(String(length=32), nullable=False, server_default="none"),
    )
    contact_id: UUID | None = Field(
        default=None, sa_column=Column(Uuid(as_uuid=True), nullable=True)
    )
    transferred_to_contacts: bool = Field(
        default=False, sa_column=Column(Boolean, nullable=False, server_default=sa.false())
    )
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False, server_default=UtcNow()),
    )
