"""Durable workflow state store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from agent_pipeline.orchestrator.errors import StateConflictError
from agent_pipeline.orchestrator.models import (
    TERMINAL_TASK_STATUSES,
    PauseReason,
    StepResult,
    StepStatus,
    TaskOptions,
    TaskRecord,
    TaskStatus,
    WorkflowState,
    WorkflowStatus,
)
from agent_pipeline.storage.alembic_runner import upgrade_head
from agent_pipeline.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from agent_pipeline.storage.sqlmodel_models import WorkflowStateRow, WorkflowStepResultRow

logger = logging.getLogger(__name__)

RESUMABLE_STATUSES = (WorkflowStatus.PAUSED.value, WorkflowStatus.TIMEOUT.value)
RESOLVED_STEP_STATUSES = frozenset({StepStatus.COMPLETED, StepStatus.SKIPPED})


class WorkflowStateStore:
    """Keyed persistence of execution progress.

    Every status transition is a guarded UPDATE: the row only changes when it is
    still in the expected state (or revision), so a pause racing natural
    completion cannot silently overwrite the other writer.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def create(  # noqa: PLR0913
        self,
        *,
        workflow_name: str,
        workflow_path: str,
        tasks: list[TaskRecord],
        model: str,
        working_directory: str,
        options: TaskOptions | None = None,
    ) -> WorkflowState:
        """Create a pending execution record for a task list.

        Tasks that already completed count as resolved steps, and their sessions
        seed ``session_mappings``.
        """

        now = utc_now()
        state = WorkflowState(
            execution_id=_generate_execution_id(now),
            workflow_name=workflow_name,
            workflow_path=workflow_path,
            started_at=now,
            updated_at=now,
            current_step=sum(1 for task in tasks if task.status in TERMINAL_TASK_STATUSES),
            total_steps=len(tasks),
            session_mappings={
                task.id: task.session_id
                for task in tasks
                if task.status == TaskStatus.COMPLETED and task.session_id and task.output_session
            },
            model=model,
            working_directory=working_directory,
            options=options or TaskOptions(),
            tasks=[TaskRecord.from_dict(task.to_dict()) for task in tasks],
        )
        return self.save(state)

    def save(self, state: WorkflowState) -> WorkflowState:
        """Insert a new state or overwrite an existing one at the same revision.

        Raises:
            StateConflictError: the stored revision moved since ``state`` was loaded.
        """

        now = utc_now()
        with Session(self.engine) as session:
            existing = session.get(WorkflowStateRow, state.execution_id)
            values = _state_values(state)
            values["updated_at"] = to_db_datetime(now)
            if existing is None:
                session.add(WorkflowStateRow(execution_id=state.execution_id, **values))
            else:
                result = session.exec(
                    sa_update(WorkflowStateRow)
                    .where(
                        col(WorkflowStateRow.execution_id) == state.execution_id,
                        col(WorkflowStateRow.revision) == state.revision,
                    )
                    .values({**values, "revision": state.revision + 1}),
                )
                if result.rowcount != 1:
                    session.rollback()
                    raise StateConflictError(
                        "Workflow state changed concurrently; reload and retry "
                        f"(execution_id={state.execution_id}).",
                    )

            session.exec(
                sa_delete(WorkflowStepResultRow).where(
                    col(WorkflowStepResultRow.execution_id) == state.execution_id,
                ),
            )
            for step in state.completed_steps:
                session.add(_to_step_row(state.execution_id, step))
            session.commit()

        saved = self.load(state.execution_id)
        if saved is None:
            raise StateConflictError(f"Workflow state vanished during save: {state.execution_id}")
        return saved

    def load(self, execution_id: str) -> WorkflowState | None:
        with Session(self.engine) as session:
            row = session.get(WorkflowStateRow, execution_id)
            if row is None:
                return None
            steps = self._step_rows(session, execution_id)
            return _to_state(row, steps)

    def get_status(self, execution_id: str) -> WorkflowStatus | None:
        with Session(self.engine) as session:
            status = session.exec(
                select(WorkflowStateRow.status).where(
                    WorkflowStateRow.execution_id == execution_id,
                ),
            ).one_or_none()
        return WorkflowStatus(status) if status is not None else None

    def list_states(self, *, status: WorkflowStatus | None = None) -> list[WorkflowState]:
        """Return stored executions, newest first."""

        with Session(self.engine) as session:
            statement = select(WorkflowStateRow).order_by(col(WorkflowStateRow.started_at).desc())
            if status is not None:
                statement = statement.where(WorkflowStateRow.status == status.value)
            rows = session.exec(statement).all()
            return [_to_state(row, self._step_rows(session, row.execution_id)) for row in rows]

    def list_resumable(self) -> list[WorkflowState]:
        return [
            state
            for state in self.list_states(status=WorkflowStatus.PAUSED)
            if state.can_resume
        ]

    def delete(self, execution_id: str) -> bool:
        with Session(self.engine) as session:
            session.exec(
                sa_delete(WorkflowStepResultRow).where(
                    col(WorkflowStepResultRow.execution_id) == execution_id,
                ),
            )
            result = session.exec(
                sa_delete(WorkflowStateRow).where(
                    col(WorkflowStateRow.execution_id) == execution_id,
                ),
            )
            session.commit()
            return result.rowcount == 1

    def cleanup(self, max_age: timedelta) -> int:
        """Delete non-running executions started before ``now - max_age``."""

        cutoff = to_db_datetime(utc_now() - max_age)
        with Session(self.engine) as session:
            stale_ids = session.exec(
                select(WorkflowStateRow.execution_id).where(
                    col(WorkflowStateRow.started_at) < cutoff,
                    col(WorkflowStateRow.status) != WorkflowStatus.RUNNING.value,
                ),
            ).all()
            if not stale_ids:
                return 0
            session.exec(
                sa_delete(WorkflowStepResultRow).where(
                    col(WorkflowStepResultRow.execution_id).in_(stale_ids),
                ),
            )
            session.exec(
                sa_delete(WorkflowStateRow).where(
                    col(WorkflowStateRow.execution_id).in_(stale_ids),
                ),
            )
            session.commit()
        logger.info("Removed %d stale workflow states", len(stale_ids))
        return len(stale_ids)

    def start(self, execution_id: str) -> WorkflowState | None:
        """Move a pending execution to running."""

        return self._transition(
            execution_id,
            expected=(WorkflowStatus.PENDING.value,),
            values={"status": WorkflowStatus.RUNNING.value},
        )

    def pause(
        self,
        execution_id: str,
        reason: PauseReason = PauseReason.MANUAL,
    ) -> WorkflowState | None:
        """Suspend a running execution; returns None unless it was exactly running."""

        now = to_db_datetime(utc_now())
        target = WorkflowStatus.TIMEOUT if reason == PauseReason.TIMEOUT else WorkflowStatus.PAUSED
        return self._transition(
            execution_id,
            expected=(WorkflowStatus.RUNNING.value,),
            values={
                "status": target.value,
                "pause_reason": reason.value,
                "can_resume": reason != PauseReason.ERROR,
                "paused_at": now,
            },
        )

    def resume(self, execution_id: str) -> WorkflowState | None:
        """Move a resumable paused/timeout execution back to running."""

        now = to_db_datetime(utc_now())
        return self._transition(
            execution_id,
            expected=RESUMABLE_STATUSES,
            values={
                "status": WorkflowStatus.RUNNING.value,
                "pause_reason": None,
                "resumed_at": now,
            },
            require_resumable=True,
        )

    def complete(self, execution_id: str) -> WorkflowState | None:
        """Finish an execution whose tasks all resolved, even if a pause raced the last one."""

        return self._transition(
            execution_id,
            expected=(WorkflowStatus.RUNNING.value, WorkflowStatus.PAUSED.value),
            values={"status": WorkflowStatus.COMPLETED.value},
        )

    def fail(self, execution_id: str) -> WorkflowState | None:
        """Mark an active execution failed and not resumable."""

        return self._transition(
            execution_id,
            expected=(
                WorkflowStatus.PENDING.value,
                WorkflowStatus.RUNNING.value,
                WorkflowStatus.PAUSED.value,
            ),
            values={"status": WorkflowStatus.FAILED.value, "can_resume": False},
        )

    def update_tasks(self, execution_id: str, tasks: Iterable[TaskRecord]) -> bool:
        """Persist the current task snapshot; the status is left untouched."""

        payload = json.dumps([task.to_dict() for task in tasks], ensure_ascii=False)
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(WorkflowStateRow)
                .where(col(WorkflowStateRow.execution_id) == execution_id)
                .values(
                    tasks_json=payload,
                    updated_at=to_db_datetime(utc_now()),
                    revision=col(WorkflowStateRow.revision) + 1,
                ),
            )
            session.commit()
            return result.rowcount == 1

    def record_step_result(self, execution_id: str, result: StepResult) -> WorkflowState | None:
        """Upsert one step result and fold it into execution progress."""

        while True:
            now = to_db_datetime(utc_now())
            with Session(self.engine) as session:
                row = session.get(WorkflowStateRow, execution_id)
                if row is None:
                    return None

                previous_status = self._upsert_step_row(session, execution_id, result)

                mappings = _load_json_dict(row.session_mappings_json)
                if result.session_id and result.output_session and result.step_id:
                    mappings[result.step_id] = result.session_id

                values: dict[str, Any] = {
                    "session_mappings_json": json.dumps(mappings, ensure_ascii=False),
                    "updated_at": now,
                    "revision": row.revision + 1,
                }
                if result.status in RESOLVED_STEP_STATUSES:
                    current_step = row.current_step
                    if previous_status not in RESOLVED_STEP_STATUSES:
                        current_step = min(current_step + 1, row.total_steps)
                    values["current_step"] = current_step
                    if (
                        current_step >= row.total_steps
                        and row.status == WorkflowStatus.RUNNING.value
                    ):
                        values["status"] = WorkflowStatus.COMPLETED.value
                elif result.status == StepStatus.FAILED:
                    values["status"] = WorkflowStatus.FAILED.value
                    values["can_resume"] = False

                update_result = session.exec(
                    sa_update(WorkflowStateRow)
                    .where(
                        col(WorkflowStateRow.execution_id) == execution_id,
                        col(WorkflowStateRow.revision) == row.revision,
                    )
                    .values(**values),
                )
                if update_result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()
            return self.load(execution_id)

    def _transition(
        self,
        execution_id: str,
        *,
        expected: tuple[str, ...],
        values: dict[str, Any],
        require_resumable: bool = False,
    ) -> WorkflowState | None:
        conditions = [
            col(WorkflowStateRow.execution_id) == execution_id,
            col(WorkflowStateRow.status).in_(expected),
        ]
        if require_resumable:
            conditions.append(col(WorkflowStateRow.can_resume).is_(True))
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(WorkflowStateRow)
                .where(*conditions)
                .values(
                    **values,
                    updated_at=to_db_datetime(utc_now()),
                    revision=col(WorkflowStateRow.revision) + 1,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            session.commit()
        return self.load(execution_id)

    def _upsert_step_row(
        self,
        session: Session,
        execution_id: str,
        result: StepResult,
    ) -> StepStatus | None:
        """Insert or replace the row for ``result.step_index``; return the replaced status."""

        existing = session.exec(
            select(WorkflowStepResultRow).where(
                WorkflowStepResultRow.execution_id == execution_id,
                WorkflowStepResultRow.step_index == result.step_index,
            ),
        ).one_or_none()
        if existing is None:
            session.add(_to_step_row(execution_id, result))
            return None
        previous_status = StepStatus(existing.status)
        existing.step_id = result.step_id
        existing.status = result.status.value
        existing.session_id = result.session_id
        existing.output_session = result.output_session
        existing.resume_session = result.resume_session
        existing.started_at = _optional_db_datetime(result.started_at)
        existing.ended_at = _optional_db_datetime(result.ended_at)
        existing.output = result.output
        existing.error = result.error
        session.add(existing)
        return previous_status

    def _step_rows(self, session: Session, execution_id: str) -> list[WorkflowStepResultRow]:
        return list(
            session.exec(
                select(WorkflowStepResultRow)
                .where(WorkflowStepResultRow.execution_id == execution_id)
                .order_by(col(WorkflowStepResultRow.step_index).asc()),
            ).all(),
        )


def _generate_execution_id(now: datetime) -> str:
    return f"exec_{now.strftime('%Y%m%d%H%M%S')}_{uuid4().hex[:12]}"


def _optional_db_datetime(value: datetime | None) -> datetime | None:
    return to_db_datetime(value) if value is not None else None


def _optional_aware_datetime(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def _load_json_dict(raw: str | None) -> dict[str, str]:
    if not raw:
        return {}
    parsed = json.loads(raw)
    if not isinstance(parsed, dict):
        return {}
    return {str(key): str(value) for key, value in parsed.items()}


def _state_values(state: WorkflowState) -> dict[str, Any]:
    return {
        "workflow_name": state.workflow_name,
        "workflow_path": state.workflow_path,
        "status": state.status.value,
        "current_step": state.current_step,
        "total_steps": state.total_steps,
        "pause_reason": state.pause_reason.value if state.pause_reason is not None else None,
        "can_resume": state.can_resume,
        "model": state.model,
        "working_directory": state.working_directory,
        "options_json": json.dumps(state.options.to_dict(), ensure_ascii=False, sort_keys=True),
        "tasks_json": json.dumps([task.to_dict() for task in state.tasks], ensure_ascii=False),
        "session_mappings_json": json.dumps(state.session_mappings, ensure_ascii=False),
        "revision": state.revision,
        "started_at": to_db_datetime(state.started_at),
        "paused_at": _optional_db_datetime(state.paused_at),
        "resumed_at": _optional_db_datetime(state.resumed_at),
    }


def _to_step_row(execution_id: str, step: StepResult) -> WorkflowStepResultRow:
    return WorkflowStepResultRow(
        execution_id=execution_id,
        step_index=step.step_index,
        step_id=step.step_id,
        status=step.status.value,
        session_id=step.session_id,
        output_session=step.output_session,
        resume_session=step.resume_session,
        started_at=_optional_db_datetime(step.started_at),
        ended_at=_optional_db_datetime(step.ended_at),
        output=step.output,
        error=step.error,
    )


def _to_step_result(row: WorkflowStepResultRow) -> StepResult:
    return StepResult(
        step_index=row.step_index,
        step_id=row.step_id,
        status=StepStatus(row.status),
        session_id=row.session_id,
        output_session=row.output_session,
        resume_session=row.resume_session,
        started_at=_optional_aware_datetime(row.started_at),
        ended_at=_optional_aware_datetime(row.ended_at),
        output=row.output,
        error=row.error,
    )


def _to_state(row: WorkflowStateRow, steps: list[WorkflowStepResultRow]) -> WorkflowState:
    tasks_payload = json.loads(row.tasks_json) if row.tasks_json else []
    options_payload = json.loads(row.options_json) if row.options_json else {}
    return WorkflowState(
        execution_id=row.execution_id,
        workflow_name=row.workflow_name,
        workflow_path=row.workflow_path,
        started_at=to_utc_aware_datetime(row.started_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        status=WorkflowStatus(row.status),
        current_step=row.current_step,
        total_steps=row.total_steps,
        session_mappings=_load_json_dict(row.session_mappings_json),
        completed_steps=[_to_step_result(step) for step in steps],
        pause_reason=PauseReason(row.pause_reason) if row.pause_reason is not None else None,
        can_resume=row.can_resume,
        paused_at=_optional_aware_datetime(row.paused_at),
        resumed_at=_optional_aware_datetime(row.resumed_at),
        model=row.model,
        working_directory=row.working_directory,
        options=TaskOptions.from_dict(options_payload),
        tasks=[TaskRecord.from_dict(item) for item in tasks_payload],
        revision=row.revision,
    )
