"""workflow instance closing marker and ownership lease

Revision ID: 202610180003
Revises: 202610180002
Create Date: 2026-10-18
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "202610180003"
down_revision = "202610180002"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("workflow_instances", sa.Column("closing_at", sa.DateTime(timezone=True), nullable=True))
    op.add_column("workflow_instances", sa.Column("owner_id", sa.String(), nullable=True))
    op.add_column(
        "workflow_instances",
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_workflow_instances_owner_id", "workflow_instances", ["owner_id"])
    op.create_index("ix_workflow_instances_lease_expires_at", "workflow_instances", ["lease_expires_at"])


def downgrade() -> None:
    op.drop_index("ix_workflow_instances_lease_expires_at", table_name="workflow_instances")
    op.drop_index("ix_workflow_instances_owner_id", table_name="workflow_instances")
    op.drop_column("workflow_instances", "lease_expires_at")
    op.drop_column("workflow_instances", "owner_id")
    op.drop_column("workflow_instances", "closing_at")
