"""Initial process tables.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18
"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create process definition, instance and task tables."""
    # Create bpm_process_definitions table
    op.create_table(
        "bpm_process_definitions",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("definition_key", sa.String(length=255), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=50), nullable=False),
        sa.Column("graph", sa.JSON(), nullable=False),
        sa.Column("sa_orm_sentinel", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_bpm_process_definitions_definition_key",
        "bpm_process_definitions",
        ["definition_key"],
    )
    op.create_index(
        "ix_bpm_process_definitions_key_version",
        "bpm_process_definitions",
        ["definition_key", "version"],
        unique=True,
    )
    op.create_index(
        "ix_bpm_process_definitions_key_status",
        "bpm_process_definitions",
        ["definition_key", "status"],
    )

    # Create bpm_process_instances table
    op.create_table(
        "bpm_process_instances",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("definition_key", sa.String(length=255), nullable=False),
        sa.Column("definition_version", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=50), nullable=False),
        sa.Column("variables", sa.JSON(), nullable=False),
        sa.Column("execution_path", sa.JSON(), nullable=False),
        sa.Column("current_node_id", sa.String(length=255), nullable=True),
        sa.Column("business_key", sa.String(length=255), nullable=True),
        sa.Column("started_by", sa.String(length=255), nullable=True),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_stack", sa.Text(), nullable=True),
        sa.Column("sa_orm_sentinel", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_bpm_process_instances_status",
        "bpm_process_instances",
        ["status"],
    )
    op.create_index(
        "ix_bpm_process_instances_definition",
        "bpm_process_instances",
        ["definition_key", "definition_version"],
    )
    op.create_index(
        "ix_bpm_process_instances_business_key",
        "bpm_process_instances",
        ["business_key"],
    )
    op.create_index(
        "ix_bpm_process_instances_started_by",
        "bpm_process_instances",
        ["started_by"],
    )

    # Create bpm_process_tasks table
    op.create_table(
        "bpm_process_tasks",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("instance_id", sa.Uuid(), nullable=False),
        sa.Column("node_id", sa.String(length=255), nullable=False),
        sa.Column("node_name", sa.String(length=500), nullable=False),
        sa.Column("status", sa.String(length=50), nullable=False),
        sa.Column("sub_status", sa.String(length=50), nullable=True),
        sa.Column("assignee_id", sa.String(length=255), nullable=True),
        sa.Column("candidate_user_ids", sa.JSON(), nullable=False),
        sa.Column("candidate_group_ids", sa.JSON(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("form_key", sa.String(length=255), nullable=True),
        sa.Column("form_data", sa.JSON(), nullable=False),
        sa.Column("task_variables", sa.JSON(), nullable=False),
        sa.Column("completion_variables", sa.JSON(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("due_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("overdue", sa.Boolean(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("completed_by", sa.String(length=255), nullable=True),
        sa.Column("completion_comment", sa.Text(), nullable=True),
        sa.Column("execution_context", sa.JSON(), nullable=False),
        sa.Column("history", sa.JSON(), nullable=False),
        sa.Column("suspended_from", sa.String(length=50), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False),
        sa.Column("max_retries", sa.Integer(), nullable=False),
        sa.Column("sa_orm_sentinel", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["instance_id"],
            ["bpm_process_instances.id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_bpm_process_tasks_instance_id",
        "bpm_process_tasks",
        ["instance_id"],
    )
    op.create_index(
        "ix_bpm_process_tasks_instance_node",
        "bpm_process_tasks",
        ["instance_id", "node_id"],
    )
    op.create_index(
        "ix_bpm_process_tasks_assignee_id",
        "bpm_process_tasks",
        ["assignee_id"],
    )
    op.create_index(
        "ix_bpm_process_tasks_status",
        "bpm_process_tasks",
        ["status"],
    )
    op.create_index(
        "ix_bpm_process_tasks_due_date",
        "bpm_process_tasks",
        ["due_date"],
    )


def downgrade() -> None:
    """Drop process tables."""
    op.drop_table("bpm_process_tasks")
    op.drop_table("bpm_process_instances")
    op.drop_table("bpm_process_definitions")
