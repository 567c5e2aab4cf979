"""Controllers for pipeline CLI commands."""

from __future__ import annotations

import shlex
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from agent_pipeline.config import Settings
from agent_pipeline.orchestrator.availability import ToolAvailabilityCache
from agent_pipeline.orchestrator.backend import StepExecutor
from agent_pipeline.orchestrator.errors import StateConflictError, WorkflowDefinitionError
from agent_pipeline.orchestrator.models import (
    PauseReason,
    PipelineOutcome,
    PipelineRunResult,
    TaskRecord,
    WorkflowState,
)
from agent_pipeline.orchestrator.pipeline import PipelineOrchestrator, ProgressCallback
from agent_pipeline.orchestrator.repository import WorkflowStateStore
from agent_pipeline.orchestrator.workflow import load_workflow, workflow_to_tasks


@dataclass(slots=True)
class RunWorkflowCommand:
    """CLI input for running a workflow file."""

    db_path: Path | None
    workflow_path: Path
    inputs: tuple[str, ...] = ()
    model: str | None = None
    working_directory: Path | None = None
    output_format: str | None = None


@dataclass(slots=True)
class ResumeExecutionCommand:
    """CLI input for resuming a paused execution."""

    db_path: Path | None
    execution_id: str


@dataclass(slots=True)
class PauseExecutionCommand:
    """CLI input for pausing a running execution."""

    db_path: Path | None
    execution_id: str


@dataclass(slots=True)
class ListStatesCommand:
    """CLI input for execution listing."""

    db_path: Path | None
    resumable_only: bool = False


@dataclass(slots=True)
class InspectStateCommand:
    """CLI input for execution inspection."""

    db_path: Path | None
    execution_id: str


@dataclass(slots=True)
class DeleteStateCommand:
    db_path: Path | None
    execution_id: str


@dataclass(slots=True)
class CleanupStatesCommand:
    """CLI input for retention cleanup."""

    db_path: Path | None
    max_age_days: int | None = None


@dataclass(slots=True)
class ValidateWorkflowCommand:
    workflow_path: Path


@dataclass(slots=True)
class CheckToolCommand:
    """CLI input for CLI availability probe."""

    command_line: str | None = None


@dataclass(slots=True)
class PipelineCommandResult:
    """Lines to print plus overall success."""

    lines: list[str]
    success: bool


class PipelineCliController:
    """Execute pipeline CLI commands and render human-readable lines."""

    def run_workflow(self, command: RunWorkflowCommand) -> PipelineCommandResult:
        settings = Settings.from_env(db_path=command.db_path)
        if command.output_format is not None:
            settings.executor.output_format = command.output_format
        try:
            settings.validate()
        except ValueError as error:
            return PipelineCommandResult(lines=[f"Configuration error: {error}"], success=False)
        try:
            workflow = load_workflow(command.workflow_path)
            tasks = workflow_to_tasks(
                workflow,
                inputs=_parse_inputs(command.inputs),
                base_options=settings.task_options(),
            )
        except ValueError as error:
            return PipelineCommandResult(lines=[f"Invalid workflow: {error}"], success=False)

        working_directory = command.working_directory or settings.pipeline.working_directory
        lines = [f"Workflow: {workflow.name} ({len(tasks)} tasks)"]
        with _store(settings) as store:
            orchestrator = _orchestrator(settings, store)
            result = orchestrator.run(
                tasks,
                model=command.model or settings.executor.default_model,
                working_directory=working_directory.resolve(),
                options=settings.task_options(),
                on_progress=_progress_printer(lines),
                workflow_name=workflow.name,
                workflow_path=str(command.workflow_path),
            )
        lines.extend(_render_run_result(result))
        return PipelineCommandResult(lines=lines, success=result.outcome != PipelineOutcome.FAILED)

    def resume(self, command: ResumeExecutionCommand) -> PipelineCommandResult:
        settings = Settings.from_env(db_path=command.db_path)
        try:
            settings.validate()
        except ValueError as error:
            return PipelineCommandResult(lines=[f"Configuration error: {error}"], success=False)
        lines: list[str] = []
        with _store(settings) as store:
            orchestrator = _orchestrator(settings, store)
            try:
                result = orchestrator.resume(
                    command.execution_id,
                    on_progress=_progress_printer(lines),
                )
            except (ValueError, StateConflictError) as error:
                return PipelineCommandResult(lines=[str(error)], success=False)
        lines.extend(_render_run_result(result))
        return PipelineCommandResult(lines=lines, success=result.outcome != PipelineOutcome.FAILED)

    def pause(self, command: PauseExecutionCommand) -> PipelineCommandResult:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            state = store.pause(command.execution_id, PauseReason.MANUAL)
            current = store.load(command.execution_id) if state is None else state
        if current is None:
            return PipelineCommandResult(
                lines=[f"Execution not found: {command.execution_id}"],
                success=False,
            )
        if state is None:
            return PipelineCommandResult(
                lines=[
                    f"Execution {command.execution_id} is not running "
                    f"(status={current.status.value}).",
                ],
                success=False,
            )
        return PipelineCommandResult(
            lines=[f"Execution paused: {command.execution_id}"],
            success=True,
        )

    def list_states(self, command: ListStatesCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            states = store.list_resumable() if command.resumable_only else store.list_states()

        lines = [f"Executions: {len(states)}"]
        for state in states:
            lines.append(
                f"  {state.execution_id} workflow={state.workflow_name} "
                f"status={state.status.value} step={state.current_step}/{state.total_steps} "
                f"pause_reason={state.pause_reason.value if state.pause_reason else '-'} "
                f"can_resume={state.can_resume} started_at={state.started_at.isoformat()}",
            )
        return lines

    def inspect(self, command: InspectStateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            state = store.load(command.execution_id)
        if state is None:
            return [f"Execution not found: {command.execution_id}"]
        return _render_state(state)

    def delete(self, command: DeleteStateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            deleted = store.delete(command.execution_id)
        if not deleted:
            return [f"Execution not found: {command.execution_id}"]
        return [f"Execution deleted: {command.execution_id}"]

    def cleanup(self, command: CleanupStatesCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        max_age_days = (
            command.max_age_days
            if command.max_age_days is not None
            else settings.store.retention_days
        )
        with _store(settings) as store:
            removed = store.cleanup(timedelta(days=max_age_days))
        return [f"Removed executions older than {max_age_days} days: {removed}"]

    def validate_workflow(self, command: ValidateWorkflowCommand) -> PipelineCommandResult:
        try:
            workflow = load_workflow(command.workflow_path)
        except WorkflowDefinitionError as error:
            return PipelineCommandResult(lines=[f"Invalid workflow: {error}"], success=False)

        steps = workflow.claude_steps()
        lines = [f"Workflow: {workflow.name}", f"Claude steps: {len(steps)}"]
        for task in workflow_to_tasks(workflow, require_inputs=False):
            resume = task.resume_from_task_id or task.continue_from or "-"
            lines.append(
                f"  {task.id} name={task.name or '-'} model={task.model or 'default'} "
                f"resume={resume} condition={task.condition.value if task.condition else '-'}",
            )
        return PipelineCommandResult(lines=lines, success=True)

    def check_tool(self, command: CheckToolCommand) -> PipelineCommandResult:
        settings = Settings.from_env()
        probe_command = (
            tuple(shlex.split(command.command_line))
            if command.command_line
            else settings.executor.command
        )
        cache = ToolAvailabilityCache(
            probe_command,
            ttl_seconds=settings.pipeline.availability_ttl_seconds,
        )
        verdict = cache.check()
        if not verdict.available:
            return PipelineCommandResult(
                lines=[f"CLI unavailable: {verdict.executable} ({verdict.error})"],
                success=False,
            )
        return PipelineCommandResult(
            lines=[
                f"CLI available: {verdict.resolved_path}",
                f"Version: {verdict.version or 'unknown'}",
            ],
            success=True,
        )


def _parse_inputs(values: tuple[str, ...]) -> dict[str, str]:
    parsed: dict[str, str] = {}
    for value in values:
        if "=" not in value:
            raise ValueError(f"Invalid input {value!r}. Expected format 'name=value'.")
        name, raw = value.split("=", 1)
        parsed[name.strip()] = raw
    return parsed


def _progress_printer(lines: list[str]) -> ProgressCallback:
    def _on_progress(tasks: list[TaskRecord], index: int) -> None:
        task = tasks[index]
        lines.append(f"  [{index + 1}/{len(tasks)}] {task.label}: {task.status.value}")

    return _on_progress


def _render_run_result(result: PipelineRunResult) -> list[str]:
    lines = [
        f"Execution: {result.execution_id or '-'}",
        f"Outcome: {result.outcome.value}",
        f"Invocations: {result.executed}",
    ]
    if result.pause_reason is not None:
        lines.append(f"Pause reason: {result.pause_reason.value}")
    if result.error:
        lines.append(f"Error: {result.error}")
    for task in result.tasks:
        lines.append(_render_task(task))
    return lines


def _render_task(task: TaskRecord) -> str:
    result_lines = (task.results or "").strip().splitlines()
    detail = task.skip_reason or (result_lines[0] if result_lines else "-")
    return (
        f"  {task.id} status={task.status.value} session={task.session_id or '-'} "
        f"detail={detail}"
    )


def _render_state(state: WorkflowState) -> list[str]:
    lines = [
        f"Execution: {state.execution_id}",
        f"Workflow: {state.workflow_name} ({state.workflow_path or '-'})",
        f"Status: {state.status.value}",
        f"Step: {state.current_step}/{state.total_steps}",
        f"Pause reason: {state.pause_reason.value if state.pause_reason else '-'}",
        f"Can resume: {state.can_resume}",
        f"Model: {state.model}",
        f"Working directory: {state.working_directory}",
        f"Started: {state.started_at.isoformat()}",
        f"Paused: {state.paused_at.isoformat() if state.paused_at else '-'}",
        f"Resumed: {state.resumed_at.isoformat() if state.resumed_at else '-'}",
        f"Session mappings: {len(state.session_mappings)}",
    ]
    for step_id, session_id in state.session_mappings.items():
        lines.append(f"  {step_id} -> {session_id}")
    lines.append(f"Steps: {len(state.completed_steps)}")
    for step in state.completed_steps:
        lines.append(
            f"  #{step.step_index} {step.step_id} status={step.status.value} "
            f"session={step.session_id or '-'} error={step.error or '-'}",
        )
    lines.append(f"Tasks: {len(state.tasks)}")
    for task in state.tasks:
        lines.append(_render_task(task))
    return lines


def _orchestrator(settings: Settings, store: WorkflowStateStore) -> PipelineOrchestrator:
    executor = StepExecutor(
        command=settings.executor.command,
        known_models=settings.executor.known_models or None,
        default_timeout_seconds=settings.executor.timeout_seconds or None,
        poll_interval_seconds=settings.executor.poll_interval_seconds,
    )
    return PipelineOrchestrator(
        executor,
        store=store,
        retry_rate_limits=settings.pipeline.retry_rate_limits,
        max_retries=settings.pipeline.max_retries,
    )


@contextmanager
def _store(settings: Settings) -> Iterator[WorkflowStateStore]:
    store = WorkflowStateStore(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    store.init_schema()
    try:
        yield store
    finally:
        store.close()

