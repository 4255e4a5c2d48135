"""Workflow instances with optimistic versioning.

Revision ID: 001
Revises: None
Create Date: 2026-10-17
"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "workflow_instances",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("template_id", sa.String(64), nullable=False, index=True),
        sa.Column("template_version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("organization_id", sa.String(64), nullable=True, index=True),
        sa.Column("title", sa.String(256), nullable=False, server_default=""),
        sa.Column("status", sa.String(20), nullable=False, index=True),
        sa.Column("current_stage", sa.String(64), nullable=True),
        sa.Column("assigned_to", sa.String(128), nullable=True),
        # Compare-and-swap counter; every save bumps it by one
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("document_json", sa.Text(), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )
    op.create_index(
        "ix_workflow_instances_org_status",
        "workflow_instances",
        ["organization_id", "status"],
    )


def downgrade() -> None:
    op.drop_index("ix_workflow_instances_org_status", table_name="workflow_instances")
    op.drop_table("workflow_instances")
