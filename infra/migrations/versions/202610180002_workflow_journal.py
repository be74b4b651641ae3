"""workflow instances, signal journal and step records

Revision ID: 202610180002
Revises: 202610180001
Create Date: 2026-10-18
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "202610180002"
down_revision = "202610180001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "workflow_instances",
        sa.Column("key", sa.String(), nullable=False),
        sa.Column("workflow_type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("state", sa.String(), nullable=True),
        sa.Column("input", sa.JSON(), nullable=False),
        sa.Column("result", sa.JSON(), nullable=True),
        sa.Column("last_error", sa.String(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("key"),
    )
    op.create_index("ix_workflow_instances_workflow_type", "workflow_instances", ["workflow_type"])
    op.create_index("ix_workflow_instances_status", "workflow_instances", ["status"])
    op.create_index("ix_workflow_instances_started_at", "workflow_instances", ["started_at"])
    op.create_index("ix_workflow_instances_updated_at", "workflow_instances", ["updated_at"])
    op.create_index("ix_workflow_instances_completed_at", "workflow_instances", ["completed_at"])

    op.create_table(
        "workflow_signals",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("instance_key", sa.String(), nullable=False),
        sa.Column("signal_name", sa.String(), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["instance_key"], ["workflow_instances.key"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_workflow_signals_instance_key", "workflow_signals", ["instance_key"])
    op.create_index("ix_workflow_signals_signal_name", "workflow_signals", ["signal_name"])
    op.create_index("ix_workflow_signals_received_at", "workflow_signals", ["received_at"])
    op.create_index("ix_workflow_signals_instance_id", "workflow_signals", ["instance_key", "id"])

    op.create_table(
        "workflow_steps",
        sa.Column("instance_key", sa.String(), nullable=False),
        sa.Column("step_seq", sa.Integer(), nullable=False),
        sa.Column("activity_name", sa.String(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("result", sa.JSON(), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["instance_key"], ["workflow_instances.key"]),
        sa.PrimaryKeyConstraint("instance_key", "step_seq"),
    )


def downgrade() -> None:
    op.drop_table("workflow_steps")
    op.drop_index("ix_workflow_signals_instance_id", table_name="workflow_signals")
    op.drop_index("ix_workflow_signals_received_at", table_name="workflow_signals")
    op.drop_index("ix_workflow_signals_signal_name", table_name="workflow_signals")
    op.drop_index("ix_workflow_signals_instance_key", table_name="workflow_signals")
    op.drop_table("workflow_signals")
    op.drop_index("ix_workflow_instances_completed_at", table_name="workflow_instances")
    op.drop_index("ix_workflow_instances_updated_at", table_name="workflow_instances")
    op.drop_index("ix_workflow_instances_started_at", table_name="workflow_instances")
    op.drop_index("ix_workflow_instances_status", table_name="workflow_instances")
    op.drop_index("ix_workflow_instances_workflow_type", table_name="workflow_instances")
    op.drop_table("workflow_instances")
