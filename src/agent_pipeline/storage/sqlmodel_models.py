"""SQLModel ORM tables for durable workflow state."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class WorkflowStateRow(SQLModel, table=True):
    __tablename__ = "workflow_states"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_workflow_states_status_resume", "status", "can_resume"),)

    execution_id: str = Field(primary_key=True)
    workflow_name: str = Field(index=True)
    workflow_path: str
    status: str = Field(index=True)
    current_step: int = Field(default=0)
    total_steps: int = Field(default=0)
    pause_reason: str | None = None
    can_resume: bool = Field(default=True)
    model: str = Field(default="auto")
    working_directory: str = Field(default=".")
    options_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    tasks_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    session_mappings_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    revision: int = Field(default=0)
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    paused_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    resumed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class WorkflowStepResultRow(SQLModel, table=True):
    __tablename__ = "workflow_step_results"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint(
            "execution_id",
            "step_index",
            name="uq_workflow_step_results_execution_step",
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    execution_id: str = Field(
        sa_column=Column(
            ForeignKey("workflow_states.execution_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    step_index: int
    step_id: str
    status: str = Field(index=True)
    session_id: str | None = None
    output_session: bool = Field(default=False)
    resume_session: str | None = None
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    ended_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    output: str | None = Field(default=None, sa_column=Column(Text))
    error: str | None = Field(default=None, sa_column=Column(Text))
