"""Create durable workflow state and step result tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261017_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "workflow_states",
        sa.Column("execution_id", sa.String(), nullable=False),
        sa.Column("workflow_name", sa.String(), nullable=False),
        sa.Column("workflow_path", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("current_step", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_steps", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("pause_reason", sa.String(), nullable=True),
        sa.Column("can_resume", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("model", sa.String(), nullable=False, server_default="auto"),
        sa.Column("working_directory", sa.String(), nullable=False, server_default="."),
        sa.Column("options_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("tasks_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("session_mappings_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("revision", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("paused_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resumed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("execution_id"),
    )
    op.create_index(
        "ix_workflow_states_workflow_name",
        "workflow_states",
        ["workflow_name"],
        unique=False,
    )
    op.create_index("ix_workflow_states_status", "workflow_states", ["status"], unique=False)
    op.create_index(
        "idx_workflow_states_status_resume",
        "workflow_states",
        ["status", "can_resume"],
        unique=False,
    )

    op.create_table(
        "workflow_step_results",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("execution_id", sa.String(), nullable=False),
        sa.Column("step_index", sa.Integer(), nullable=False),
        sa.Column("step_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("session_id", sa.String(), nullable=True),
        sa.Column("output_session", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("resume_session", sa.String(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("output", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(
            ["execution_id"],
            ["workflow_states.execution_id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "execution_id",
            "step_index",
            name="uq_workflow_step_results_execution_step",
        ),
    )
    op.create_index(
        "ix_workflow_step_results_execution_id",
        "workflow_step_results",
        ["execution_id"],
        unique=False,
    )
    op.create_index(
        "ix_workflow_step_results_status",
        "workflow_step_results",
        ["status"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_workflow_step_results_status", table_name="workflow_step_results")
    op.drop_index("ix_workflow_step_results_execution_id", table_name="workflow_step_results")
    op.drop_table("workflow_step_results")
    op.drop_index("idx_workflow_states_status_resume", table_name="workflow_states")
    op.drop_index("ix_workflow_states_status", table_name="workflow_states")
    op.drop_index("ix_workflow_states_workflow_name", table_name="workflow_states")
    op.drop_table("workflow_states")
