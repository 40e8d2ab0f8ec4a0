"""Initial schema: templates, messages, inbox and journey enrollments.

Revision ID: 0001
Revises:
Create Date: 2026-10-18

"""
from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSONB = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    # -- Templates --
    op.create_table(
        "templates",
        sa.Column("id", sa.String(128), primary_key=True),
        sa.Column("name", sa.String(256), nullable=False),
        sa.Column("category", sa.String(32), nullable=True),
        sa.Column("active", sa.Boolean, server_default=sa.true()),
        sa.Column("version", sa.Integer, server_default="1"),
        sa.Column("document", JSONB, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    # -- Messages --
    op.create_table(
        "messages",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("related_entity_id", sa.String(128), nullable=True),
        sa.Column("template_id", sa.String(128), nullable=False),
        sa.Column("channel", sa.String(16), nullable=False),
        sa.Column("priority", sa.String(16), nullable=False),
        sa.Column("variant_id", sa.String(64), nullable=True),
        sa.Column("payload", JSONB, nullable=True),
        sa.Column("variables", JSONB, nullable=True),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("retry_count", sa.Integer, server_default="0"),
        sa.Column("max_retries", sa.Integer, server_default="2"),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("estimated_delivery", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_reason", sa.String(32), nullable=True),
        sa.Column("error", sa.Text, nullable=True),
        sa.Column("parent_message_id", sa.String(64), nullable=True),
        sa.Column("origin_message_id", sa.String(64), nullable=True),
        sa.Column("journey_id", sa.String(128), nullable=True),
        sa.Column("enrollment_id", sa.String(64), nullable=True),
        sa.Column("step_id", sa.String(128), nullable=True),
        sa.Column("respect_quiet_hours", sa.Boolean, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_messages_user_sent", "messages", ["user_id", "status", "sent_at"])
    op.create_index("ix_messages_status_scheduled", "messages", ["status", "scheduled_at"])

    # -- Inbox --
    op.create_table(
        "inbox_messages",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("origin_message_id", sa.String(64), nullable=False, unique=True),
        sa.Column("template_id", sa.String(128), nullable=False),
        sa.Column("related_entity_id", sa.String(128), nullable=True),
        sa.Column("title", sa.Text, nullable=True),
        sa.Column("body", sa.Text, server_default=""),
        sa.Column("cta", JSONB, nullable=True),
        sa.Column("channel_config", JSONB, nullable=True),
        sa.Column("read", sa.Boolean, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_inbox_messages_user_id", "inbox_messages", ["user_id"])

    # -- Journey Enrollments --
    op.create_table(
        "journey_enrollments",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("journey_id", sa.String(128), nullable=False),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("related_entity_id", sa.String(128), nullable=True),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("current_step_id", sa.String(128), nullable=True),
        sa.Column("next_execution_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_steps", JSONB, nullable=True),
        sa.Column("messages_sent", JSONB, nullable=True),
        sa.Column("context", JSONB, nullable=True),
        sa.Column("enrolled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("exited_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("exit_reason", sa.String(128), nullable=True),
        sa.Column("claimed_by", sa.String(128), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer, server_default="0"),
    )
    op.create_index(
        "ix_journey_enrollments_user_id", "journey_enrollments", ["user_id", "journey_id"]
    )
    op.create_index(
        "ix_journey_enrollments_due", "journey_enrollments", ["status", "next_execution_at"]
    )


def downgrade() -> None:
    op.drop_table("journey_enrollments")
    op.drop_table("inbox_messages")
    op.drop_table("messages")
    op.drop_table("templates")
