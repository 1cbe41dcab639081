"""Create staging, signal, scan and enrichment tables.

`source_items.url` and `signals(company_name, source_url)` carry the unique
constraints the repository relies on for idempotent inserts.
"""

from __future__ import annotations

import logging

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "4b2f9c1e7a10"
down_revision = None
branch_labels = None
depends_on = None

logger = logging.getLogger(__name__)

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")


def _now() -> sa.TextClause:
    if op.get_bind().dialect.name == "postgresql":
        return sa.text("timezone('utc', now())")
    return sa.text("CURRENT_TIMESTAMP")


def upgrade() -> None:
    now = _now()
    op.create_table(
        "search_queries",
        sa.Column("id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("query", sa.Text(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_fetched_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=now),
        sa.PrimaryKeyConstraint("id", name="pk_search_queries"),
    )
    op.create_table(
        "source_items",
        sa.Column("id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("content", sa.Text(), nullable=True),
        sa.Column("url", sa.String(length=2048), nullable=False),
        sa.Column("source_name", sa.String(length=255), nullable=True),
        sa.Column("author", sa.String(length=255), nullable=True),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("fetched_at", sa.DateTime(timezone=True), nullable=False, server_default=now),
        sa.Column(
            "query_id",
            sa.Uuid(as_uuid=True),
            sa.ForeignKey("search_queries.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("processed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.PrimaryKeyConstraint("id", name="pk_source_items"),
        sa.UniqueConstraint("url", name="uq_source_items_url"),
    )
    op.create_index(
        "ix_source_items_processed_published", "source_items", ["processed", "published_at"]
    )

    op.create_table(
        "signals",
        sa.Column("id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("company_name", sa.String(length=255), nullable=False),
        sa.Column("signal_type", sa.String(length=32), nullable=False),
        sa.Column("event_detail", sa.Text(), nullable=True),
        sa.Column("sector", sa.String(length=255), nullable=True),
        sa.Column("estimated_size", sa.String(length=64), nullable=True),
        sa.Column("score", sa.Integer(), nullable=False),
        sa.Column("hook_suggestion", sa.Text(), nullable=True),
        sa.Column("source_url", sa.String(length=2048), nullable=True),
        sa.Column("source_name", sa.String(length=255), nullable=True),
        sa.Column("source", sa.String(length=32), nullable=False, server_default="press"),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="new"),
        sa.Column("enrichment_status", sa.String(length=32), nullable=False, server_default="none"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=now),
        sa.PrimaryKeyConstraint("id", name="pk_signals"),
        sa.UniqueConstraint("company_name", "source_url", name="uq_signals_company_source_url"),
    )
    op.create_index("ix_signals_enrichment_status", "signals", ["enrichment_status"])
    op.create_index("ix_signals_score", "signals", ["score"])

    op.create_table(
        "scan_runs",
        sa.Column("id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="running"),
        sa.Column("items_fetched", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("items_analyzed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("signals_created", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("batches_run", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("invocations", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False, server_default=now),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("lease_token", sa.String(length=64), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_scan_runs"),
    )
    op.create_index("ix_scan_runs_status_started", "scan_runs", ["status", "started_at"])

    op.create_table(
        "linkedin_engagers",
        sa.Column("id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("headline", sa.String(length=512), nullable=True),
        sa.Column("company", sa.String(length=255), nullable=True),
        sa.Column("linkedin_url", sa.String(length=1024), nullable=False),
        sa.Column("engagement_type", sa.String(length=32), nullable=False, server_default="like"),
        sa.Column("post_url", sa.String(length=1024), nullable=False, server_default=""),
        sa.Column("enrichment_status", sa.String(length=32), nullable=False, server_default="none"),
        sa.Column("contact_id", sa.Uuid(as_uuid=True), nullable=True),
        sa.Column(
            "transferred_to_contacts", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=now),
        sa.PrimaryKeyConstraint("id", name="pk_linkedin_engagers"),
        sa.UniqueConstraint("linkedin_url", "post_url", name="uq_linkedin_engagers_profile_post"),
    )

    op.create_table(
        "enrichment_tasks",
        sa.Column("id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("owner_type", sa.String(length=32), nullable=False),
        sa.Column("owner_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("company_name", sa.String(length=255), nullable=True),
        sa.Column("external_task_id", sa.String(length=255), nullable=True),
        sa.Column("external_task_url", sa.String(length=1024), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="processing"),
        sa.Column("enrichment_source", sa.String(length=32), nullable=False, server_default="agent"),
        sa.Column("provider_status", sa.String(length=64), nullable=True),
        sa.Column("raw_payload", JSON_TYPE, nullable=True),
        sa.Column("company_info", JSON_TYPE, nullable=True),
        sa.Column("search_method", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=now),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=now),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_enrichment_tasks"),
    )
    op.create_index("ix_enrichment_tasks_owner", "enrichment_tasks", ["owner_type", "owner_id"])
    op.create_index("ix_enrichment_tasks_status", "enrichment_tasks", ["status"])

    op.create_table(
        "contacts",
        sa.Column("id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column(
            "signal_id",
            sa.Uuid(as_uuid=True),
            sa.ForeignKey("signals.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column(
            "engager_id",
            sa.Uuid(as_uuid=True),
            sa.ForeignKey("linkedin_engagers.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column(
            "enrichment_task_id",
            sa.Uuid(as_uuid=True),
            sa.ForeignKey("enrichment_tasks.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("full_name", sa.String(length=255), nullable=False),
        sa.Column("first_name", sa.String(length=128), nullable=True),
        sa.Column("last_name", sa.String(length=128), nullable=True),
        sa.Column("job_title", sa.String(length=255), nullable=True),
        sa.Column("department", sa.String(length=255), nullable=True),
        sa.Column("location", sa.String(length=255), nullable=True),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("email_alternate", sa.String(length=320), nullable=True),
        sa.Column("phone", sa.String(length=64), nullable=True),
        sa.Column("linkedin_url", sa.String(length=1024), nullable=True),
        sa.Column("priority_score", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("is_priority_target", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("outreach_status", sa.String(length=32), nullable=False, server_default="new"),
        sa.Column("source", sa.String(length=32), nullable=False, server_default="agent"),
        sa.Column("raw_data", JSON_TYPE, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=now),
        sa.PrimaryKeyConstraint("id", name="pk_contacts"),
    )
    op.create_index("ix_contacts_signal_id", "contacts", ["signal_id"])
    op.create_index("ix_contacts_engager_id", "contacts", ["engager_id"])
    logger.info("pipeline.migration.applied", extra={"revision": revision})


def downgrade() -> None:
    op.drop_index("ix_contacts_engager_id", table_name="contacts")
    op.drop_index("ix_contacts_signal_id", table_name="contacts")
    op.drop_table("contacts")
    op.drop_index("ix_enrichment_tasks_status", table_name="enrichment_tasks")
    op.drop_index("ix_enrichment_tasks_owner", table_name="enrichment_tasks")
    op.drop_table("enrichment_tasks")
    op.drop_table("linkedin_engagers")
    op.drop_index("ix_scan_runs_status_started", table_name="scan_runs")
    op.drop_table("scan_runs")
    op.drop_index("ix_signals_score", table_name="signals")
    op.drop_index("ix_signals_enrichment_status", table_name="signals")
    op.drop_table("signals")
    op.drop_index("ix_source_items_processed_published", table_name="source_items")
    op.drop_table("source_items")
    op.drop_table("search_queries")
