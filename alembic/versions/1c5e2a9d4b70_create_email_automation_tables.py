"""create email automation tables

Revision ID: 1c5e2a9d4b70
Revises:
Create Date: 2026-10-19 09:12:44.201733
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "1c5e2a9d4b70"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")


def upgrade() -> None:
    op.create_table(
        "email_automation_workflows",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("trigger_type", sa.String(length=32), nullable=False),
        sa.Column("trigger_config", JSONType, nullable=True),
        sa.Column("target_audience", JSONType, nullable=True),
        sa.Column("settings", JSONType, nullable=True),
        sa.Column("active_from", sa.DateTime(timezone=True), nullable=True),
        sa.Column("active_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_fire_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("step_index_map", JSONType, nullable=True),
        sa.Column("graph_version", sa.Integer(), nullable=False),
        sa.Column("total_executions", sa.Integer(), nullable=False),
        sa.Column("successful_executions", sa.Integer(), nullable=False),
        sa.Column("failed_executions", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        op.f("ix_email_automation_workflows_created_by"), "email_automation_workflows", ["created_by"], unique=False
    )
    op.create_index(
        "ix_email_automation_workflows_status_trigger",
        "email_automation_workflows",
        ["status", "trigger_type"],
        unique=False,
    )
    op.create_index(
        "ix_email_automation_workflows_next_fire",
        "email_automation_workflows",
        ["status", "next_fire_at"],
        unique=False,
    )

    op.create_table(
        "email_automation_steps",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column(
            "workflow_id",
            sa.String(length=36),
            sa.ForeignKey("email_automation_workflows.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("step_type", sa.String(length=16), nullable=False),
        sa.Column("order_index", sa.Integer(), nullable=False),
        sa.Column("template_id", sa.String(length=64), nullable=True),
        sa.Column("config", JSONType, nullable=True),
        sa.Column("execution_conditions", JSONType, nullable=True),
        sa.Column("execution_count", sa.Integer(), nullable=False),
        sa.Column("success_count", sa.Integer(), nullable=False),
        sa.Column("failure_count", sa.Integer(), nullable=False),
        sa.Column("conversion_count", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("workflow_id", "order_index", name="uq_email_automation_steps_order"),
    )
    op.create_index(op.f("ix_email_automation_steps_workflow_id"), "email_automation_steps", ["workflow_id"], unique=False)

    op.create_table(
        "workflow_executions",
        sa.Column("execution_id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("workflow_id", sa.String(length=36), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("trigger_data", JSONType, nullable=False),
        sa.Column("variables", JSONType, nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("current_step_index", sa.Integer(), nullable=False),
        sa.Column("graph_version", sa.Integer(), nullable=False),
        sa.Column("active_key", sa.String(length=128), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("waiting_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.UniqueConstraint("active_key", name="uq_workflow_executions_active_key"),
    )
    op.create_index(op.f("ix_workflow_executions_workflow_id"), "workflow_executions", ["workflow_id"], unique=False)
    op.create_index(op.f("ix_workflow_executions_user_id"), "workflow_executions", ["user_id"], unique=False)
    op.create_index(
        "ix_workflow_executions_workflow_user",
        "workflow_executions",
        ["workflow_id", "user_id", "started_at"],
        unique=False,
    )
    op.create_index("ix_workflow_executions_status", "workflow_executions", ["status"], unique=False)

    op.create_table(
        "workflow_execution_step_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("execution_id", sa.String(length=36), nullable=False),
        sa.Column("workflow_id", sa.String(length=36), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("step_id", sa.String(length=36), nullable=False),
        sa.Column("step_index", sa.Integer(), nullable=False),
        sa.Column("step_type", sa.String(length=16), nullable=False),
        sa.Column("outcome", sa.String(length=16), nullable=False),
        sa.Column("detail", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        op.f("ix_workflow_execution_step_logs_execution_id"),
        "workflow_execution_step_logs",
        ["execution_id"],
        unique=False,
    )
    op.create_index(
        "ix_step_logs_frequency",
        "workflow_execution_step_logs",
        ["workflow_id", "user_id", "step_type", "outcome", "created_at"],
        unique=False,
    )

    op.create_table(
        "event_outbox",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("idempotency_key", sa.String(), nullable=False),
        sa.Column("aggregate_id", sa.String(length=64), nullable=True),
        sa.Column("payload", JSONType, nullable=False),
        sa.Column("available_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processed", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("retry_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.UniqueConstraint("event_type", "idempotency_key", name="uq_event_outbox_idempotency"),
    )
    op.create_index(op.f("ix_event_outbox_event_type"), "event_outbox", ["event_type"], unique=False)
    op.create_index(op.f("ix_event_outbox_aggregate_id"), "event_outbox", ["aggregate_id"], unique=False)
    op.create_index("ix_event_outbox_due", "event_outbox", ["processed", "available_at"], unique=False)

    op.create_table(
        "email_suppressions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("scope", sa.String(length=32), nullable=False),
        sa.Column("reason", sa.String(length=64), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
    )
    op.create_index("ix_email_suppressions_email_scope", "email_suppressions", ["email", "scope"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_email_suppressions_email_scope", table_name="email_suppressions")
    op.drop_table("email_suppressions")

    op.drop_index("ix_event_outbox_due", table_name="event_outbox")
    op.drop_index(op.f("ix_event_outbox_aggregate_id"), table_name="event_outbox")
    op.drop_index(op.f("ix_event_outbox_event_type"), table_name="event_outbox")
    op.drop_table("event_outbox")

    op.drop_index("ix_step_logs_frequency", table_name="workflow_execution_step_logs")
    op.drop_index(op.f("ix_workflow_execution_step_logs_execution_id"), table_name="workflow_execution_step_logs")
    op.drop_table("workflow_execution_step_logs")

    op.drop_index("ix_workflow_executions_status", table_name="workflow_executions")
    op.drop_index("ix_workflow_executions_workflow_user", table_name="workflow_executions")
    op.drop_index(op.f("ix_workflow_executions_user_id"), table_name="workflow_executions")
    op.drop_index(op.f("ix_workflow_executions_workflow_id"), table_name="workflow_executions")
    op.drop_table("workflow_executions")

    op.drop_index(op.f("ix_email_automation_steps_workflow_id"), table_name="email_automation_steps")
    op.drop_table("email_automation_steps")

    op.drop_index("ix_email_automation_workflows_next_fire", table_name="email_automation_workflows")
    op.drop_index("ix_email_automation_workflows_status_trigger", table_name="email_automation_workflows")
    op.drop_index(op.f("ix_email_automation_workflows_created_by"), table_name="email_automation_workflows")
    op.drop_table("email_automation_workflows")
