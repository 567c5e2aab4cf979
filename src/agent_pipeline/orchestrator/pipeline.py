"""Sequential pipeline orchestrator with pause, resume and session continuity."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime
from pathlib import Path

from agent_pipeline.orchestrator.backend.base import TaskExecutor
from agent_pipeline.orchestrator.conditions import evaluate_condition
from agent_pipeline.orchestrator.errors import (
    CancellationError,
    PipelineError,
    RateLimitError,
    StateConflictError,
)
from agent_pipeline.orchestrator.events import EventKind, PipelineEvent, PipelineEventStream
from agent_pipeline.orchestrator.models import (
    MANUAL_PAUSE_MARKER,
    CommandResult,
    PauseReason,
    PipelineOutcome,
    PipelineRunResult,
    StepResult,
    StepStatus,
    TaskOptions,
    TaskRecord,
    TaskStatus,
    WorkflowStatus,
)
from agent_pipeline.orchestrator.repository import WorkflowStateStore
from agent_pipeline.orchestrator.sessions import parse_tool_output, resolve_session_reference
from agent_pipeline.storage.common import utc_now

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[list[TaskRecord], int], None]
CompleteCallback = Callable[[list[TaskRecord]], None]
ErrorCallback = Callable[[str, list[TaskRecord]], None]

CANCELLED_MARKER = "CANCELLED"
EXTERNALLY_PAUSED_STATUSES = frozenset({WorkflowStatus.PAUSED, WorkflowStatus.TIMEOUT})


@dataclass(slots=True)
class PipelineCallbacks:
    """Optional host callbacks mirrored by the event stream."""

    on_progress: ProgressCallback | None = None
    on_complete: CompleteCallback | None = None
    on_error: ErrorCallback | None = None


@dataclass(slots=True)
class _RunContext:
    tasks: list[TaskRecord]
    model: str
    working_directory: Path
    options: TaskOptions
    callbacks: PipelineCallbacks
    session_mappings: dict[str, str]
    execution_id: str | None = None
    executed: int = 0


class PipelineOrchestrator:
    """Drive an ordered task list through a step executor, one task at a time.

    Tasks are mutated in place, so the caller's list always reflects the latest
    status. When a store is configured every transition is persisted under one
    execution id, which makes the run resumable after a restart.
    """

    def __init__(  # noqa: PLR0913
        self,
        executor: TaskExecutor,
        *,
        store: WorkflowStateStore | None = None,
        events: PipelineEventStream | None = None,
        retry_rate_limits: bool = False,
        max_retries: int = 3,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.executor = executor
        self.store = store
        self.events = events or PipelineEventStream()
        self.retry_rate_limits = retry_rate_limits
        self.max_retries = max_retries
        self._clock = clock
        self._run_lock = threading.Lock()
        self._pause_requested = threading.Event()
        self._pause_reason = PauseReason.MANUAL
        self._execution_id: str | None = None

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    @property
    def execution_id(self) -> str | None:
        return self._execution_id

    def pause(self, reason: PauseReason = PauseReason.MANUAL) -> None:
        """Request a pause at the next task boundary.

        A request made before ``run`` starts suspends that run before its first
        task. Whatever way a run ends, it drops the request, so a pause aimed at one
        run never leaks into the next.
        """

        self._pause_reason = reason
        self._pause_requested.set()
        logger.info("Pause requested (%s)", reason.value)

    def cancel(self) -> bool:
        """Kill the in-flight invocation; the task is left paused and resumable."""

        return self.executor.cancel()

    def run(  # noqa: PLR0913
        self,
        tasks: list[TaskRecord],
        *,
        model: str,
        working_directory: Path,
        options: TaskOptions | None = None,
        on_progress: ProgressCallback | None = None,
        on_complete: CompleteCallback | None = None,
        on_error: ErrorCallback | None = None,
        workflow_name: str = "pipeline",
        workflow_path: str = "",
    ) -> PipelineRunResult:
        """Run ``tasks`` in array order until done, paused, or halted by an error."""

        context = _RunContext(
            tasks=tasks,
            model=model,
            working_directory=Path(working_directory),
            options=options or TaskOptions(),
            callbacks=PipelineCallbacks(on_progress, on_complete, on_error),
            session_mappings={},
        )
        with self._exclusive_run():
            if self.store is not None:
                state = self.store.create(
                    workflow_name=workflow_name,
                    workflow_path=workflow_path,
                    tasks=tasks,
                    model=model,
                    working_directory=str(context.working_directory),
                    options=context.options,
                )
                started = self.store.start(state.execution_id)
                if started is None:
                    raise StateConflictError(
                        f"Execution {state.execution_id} could not be started.",
                    )
                context.execution_id = state.execution_id
                logger.info("Started execution %s (%s)", state.execution_id, workflow_name)
            return self._drive(context)

    def resume(
        self,
        execution_id: str,
        *,
        on_progress: ProgressCallback | None = None,
        on_complete: CompleteCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> PipelineRunResult:
        """Rebuild a paused execution from the store and continue it.

        Raises:
            ValueError: the store is missing or the execution does not exist.
            StateConflictError: the execution is not in a resumable state.
        """

        if self.store is None:
            raise ValueError("Resuming by execution id requires a state store.")
        existing = self.store.load(execution_id)
        if existing is None:
            raise ValueError(f"Execution not found: {execution_id}")

        with self._exclusive_run():
            state = self.store.resume(execution_id)
            if state is None:
                raise StateConflictError(
                    f"Execution {execution_id} is not resumable "
                    f"(status={existing.status.value}, can_resume={existing.can_resume}).",
                )
            logger.info("Resuming execution %s at step %d", execution_id, state.current_step)
            context = _RunContext(
                tasks=state.tasks,
                model=state.model,
                working_directory=Path(state.working_directory),
                options=state.options,
                callbacks=PipelineCallbacks(on_progress, on_complete, on_error),
                session_mappings=dict(state.session_mappings),
                execution_id=execution_id,
            )
            return self._drive(context)

    @contextmanager
    def _exclusive_run(self) -> Iterator[None]:
        if not self._run_lock.acquire(blocking=False):
            raise RuntimeError("Pipeline is already running.")
        try:
            yield
        finally:
            self._run_lock.release()

    def _drive(self, context: _RunContext) -> PipelineRunResult:
        """Run the task loop; a pause request never outlives the run that saw it."""

        try:
            return self._drive_tasks(context)
        finally:
            self._pause_requested.clear()

    def _drive_tasks(self, context: _RunContext) -> PipelineRunResult:  # noqa: C901
        tasks = context.tasks
        self._execution_id = context.execution_id
        for task in tasks:
            if task.status == TaskStatus.COMPLETED and task.session_id and task.output_session:
                context.session_mappings.setdefault(task.id, task.session_id)

        interrupted = self._reset_interrupted_tasks(context)
        if interrupted is not None:
            return interrupted

        deferred_errors: list[str] = []
        for index, task in enumerate(tasks):
            if task.status != TaskStatus.PENDING:
                continue

            pause_reason = self._boundary_pause(context)
            if pause_reason is not None:
                task.status = TaskStatus.PAUSED
                task.results = MANUAL_PAUSE_MARKER
                return self._finish_paused(context, index, pause_reason, persist_pause=True)

            verdict = evaluate_condition(tasks, index, working_directory=context.working_directory)
            if not verdict.should_run:
                task.status = TaskStatus.SKIPPED
                task.skip_reason = verdict.reason
                self._notify(context, f"Skipping {task.label}: {verdict.reason}")
                self._record_step(context, index, StepStatus.SKIPPED)
                self._emit_progress(context, index)
                continue

            task_options = self._task_options(context, task)
            task.status = TaskStatus.RUNNING
            self._persist_tasks(context)
            self._emit_progress(context, index)

            started_at = utc_now()
            failure: PipelineError | None = None
            result: CommandResult | None = None
            try:
                result = self._invoke(context, task, task_options)
                result.raise_for_failure()
            except PipelineError as error:
                failure = error
            context.executed += 1

            if failure is not None and failure.recoverable:
                return self._suspend_task(context, index, failure, started_at=started_at)

            if failure is None and result is not None:
                parsed = parse_tool_output(result.output, task_options.output_format)
                task.status = TaskStatus.COMPLETED
                task.results = parsed.result_text
                task.session_id = result.session_id or parsed.session_id
                if task.session_id and task.output_session:
                    context.session_mappings[task.id] = task.session_id
                self._record_step(
                    context,
                    index,
                    StepStatus.COMPLETED,
                    started_at=started_at,
                    output=result.output,
                    resume_session=task_options.resume_session_id,
                )
                self._persist_tasks(context)
                self._emit_progress(context, index)
                continue

            error_text = str(failure)
            message = f"Task {task.label} failed: {error_text}"
            task.status = TaskStatus.ERROR
            task.results = error_text
            self._record_step(
                context,
                index,
                StepStatus.FAILED,
                started_at=started_at,
                output=failure.output if failure is not None else None,
                error=error_text,
                resume_session=task_options.resume_session_id,
            )
            self._persist_tasks(context)
            self._emit_progress(context, index)
            if task.continue_on_error:
                logger.warning("%s; continuing (continue_on_error)", message)
                deferred_errors.append(message)
                continue
            return self._finish_failed(context, index, message)

        if deferred_errors:
            return self._finish_failed(context, len(tasks) - 1, "; ".join(deferred_errors))
        return self._finish_completed(context)

    def _suspend_task(
        self,
        context: _RunContext,
        index: int,
        failure: PipelineError,
        *,
        started_at: datetime,
    ) -> PipelineRunResult:
        """Park the task after a recoverable failure so the execution can resume there."""

        task = context.tasks[index]
        task.status = TaskStatus.PAUSED
        if isinstance(failure, CancellationError):
            task.results = CANCELLED_MARKER
            reason = PauseReason.MANUAL
            step_status = StepStatus.PAUSED
        elif isinstance(failure, RateLimitError):
            task.paused_until = failure.reset_at
            task.results = str(failure)
            reason = PauseReason.RATE_LIMIT
            step_status = StepStatus.TIMEOUT if failure.is_timeout else StepStatus.PAUSED
        else:
            task.results = str(failure)
            reason = PauseReason.TIMEOUT
            step_status = StepStatus.TIMEOUT
        if not isinstance(failure, CancellationError):
            self._notify(context, f"Task {task.label} paused ({reason.value}): {failure}")
        return self._finish_paused(
            context,
            index,
            reason,
            persist_pause=True,
            step_status=step_status,
            started_at=started_at,
        )

    def _reset_interrupted_tasks(self, context: _RunContext) -> PipelineRunResult | None:
        """Return paused/orphaned running tasks to pending, honouring ``paused_until``."""

        for index, task in enumerate(context.tasks):
            if task.status not in {TaskStatus.PAUSED, TaskStatus.RUNNING}:
                continue
            if task.paused_until is not None:
                delay = task.paused_until - self._clock()
                if delay > 0:
                    logger.info("Waiting %.0f seconds before retrying %s", delay, task.label)
                    if self._pause_requested.wait(timeout=delay):
                        reason = self._consume_pause()
                        return self._finish_paused(context, index, reason, persist_pause=True)
            task.status = TaskStatus.PENDING
            task.paused_until = None
            task.results = None
        return None

    def _boundary_pause(self, context: _RunContext) -> PauseReason | None:
        if self._pause_requested.is_set():
            return self._consume_pause()
        if self.store is not None and context.execution_id is not None:
            status = self.store.get_status(context.execution_id)
            if status in EXTERNALLY_PAUSED_STATUSES:
                logger.info("Execution %s was paused externally", context.execution_id)
                return PauseReason.MANUAL
        return None

    def _consume_pause(self) -> PauseReason:
        self._pause_requested.clear()
        return self._pause_reason

    def _task_options(self, context: _RunContext, task: TaskRecord) -> TaskOptions:
        base = task.options or context.options
        session_id = self._resolve_resume_session(context, task)
        if session_id:
            return replace(base, resume_session_id=session_id)
        return base

    def _resolve_resume_session(self, context: _RunContext, task: TaskRecord) -> str | None:
        if task.resume_from_task_id:
            source = next(
                (item for item in context.tasks if item.id == task.resume_from_task_id),
                None,
            )
            if source is not None and source.session_id:
                return source.session_id
            session_id = context.session_mappings.get(task.resume_from_task_id)
            if session_id is None:
                logger.warning(
                    "No session recorded for %s; %s starts a fresh conversation",
                    task.resume_from_task_id,
                    task.label,
                )
            return session_id
        if task.continue_from:
            session_id = resolve_session_reference(context.session_mappings, task.continue_from)
            if session_id is None:
                logger.warning(
                    "Session reference %r did not resolve; %s starts a fresh conversation",
                    task.continue_from,
                    task.label,
                )
            return session_id
        return None

    def _invoke(
        self,
        context: _RunContext,
        task: TaskRecord,
        options: TaskOptions,
    ) -> CommandResult:
        model = task.model or context.model
        logger.info("Running task %s with model %s", task.label, model)
        if self.retry_rate_limits:
            return self.executor.execute_with_retry(
                task.prompt,
                model,
                context.working_directory,
                options,
                max_retries=self.max_retries,
            )
        return self.executor.execute(task.prompt, model, context.working_directory, options)

    def _finish_paused(  # noqa: PLR0913
        self,
        context: _RunContext,
        index: int,
        reason: PauseReason,
        *,
        persist_pause: bool,
        step_status: StepStatus | None = None,
        started_at: datetime | None = None,
    ) -> PipelineRunResult:
        task = context.tasks[index]
        if step_status is not None:
            self._record_step(
                context,
                index,
                step_status,
                started_at=started_at,
                error=task.results,
            )
        if persist_pause and self.store is not None and context.execution_id is not None:
            if self.store.pause(context.execution_id, reason) is None:
                logger.debug("Execution %s was already suspended", context.execution_id)
        self._persist_tasks(context)
        self._emit_progress(context, index)
        self._publish(context, EventKind.PAUSED, index, f"Paused at {task.label} ({reason.value})")
        logger.info("Pipeline paused at task %s (%s)", task.label, reason.value)
        return PipelineRunResult(
            outcome=PipelineOutcome.PAUSED,
            tasks=context.tasks,
            execution_id=context.execution_id,
            current_index=index,
            pause_reason=reason,
            executed=context.executed,
        )

    def _finish_failed(self, context: _RunContext, index: int, message: str) -> PipelineRunResult:
        if self.store is not None and context.execution_id is not None:
            self.store.fail(context.execution_id)
        logger.error("Pipeline failed: %s", message)
        if context.callbacks.on_error is not None:
            context.callbacks.on_error(message, context.tasks)
        self._publish(context, EventKind.ERROR, index, message)
        return PipelineRunResult(
            outcome=PipelineOutcome.FAILED,
            tasks=context.tasks,
            execution_id=context.execution_id,
            current_index=index,
            error=message,
            executed=context.executed,
        )

    def _finish_completed(self, context: _RunContext) -> PipelineRunResult:
        if self.store is not None and context.execution_id is not None:
            self.store.complete(context.execution_id)
        logger.info("Pipeline completed (%d tasks)", len(context.tasks))
        if context.callbacks.on_complete is not None:
            context.callbacks.on_complete(context.tasks)
        self._publish(context, EventKind.COMPLETE, None, "Pipeline completed")
        return PipelineRunResult(
            outcome=PipelineOutcome.COMPLETED,
            tasks=context.tasks,
            execution_id=context.execution_id,
            executed=context.executed,
        )

    def _record_step(  # noqa: PLR0913
        self,
        context: _RunContext,
        index: int,
        status: StepStatus,
        *,
        started_at: datetime | None = None,
        output: str | None = None,
        error: str | None = None,
        resume_session: str | None = None,
    ) -> None:
        if self.store is None or context.execution_id is None:
            return
        task = context.tasks[index]
        self.store.record_step_result(
            context.execution_id,
            StepResult(
                step_index=index,
                step_id=task.id,
                status=status,
                session_id=task.session_id,
                output_session=task.output_session,
                resume_session=resume_session,
                started_at=started_at,
                ended_at=utc_now(),
                output=output,
                error=error,
            ),
        )

    def _persist_tasks(self, context: _RunContext) -> None:
        if self.store is not None and context.execution_id is not None:
            self.store.update_tasks(context.execution_id, context.tasks)

    def _emit_progress(self, context: _RunContext, index: int) -> None:
        if context.callbacks.on_progress is not None:
            context.callbacks.on_progress(context.tasks, index)
        self._publish(context, EventKind.PROGRESS, index, None)

    def _notify(self, context: _RunContext, message: str) -> None:
        logger.info(message)
        self._publish(context, EventKind.MESSAGE, None, message)

    def _publish(
        self,
        context: _RunContext,
        kind: EventKind,
        index: int | None,
        message: str | None,
    ) -> None:
        self.events.publish(
            PipelineEvent(
                kind=kind,
                tasks=_snapshot(context.tasks),
                current_index=index,
                message=message,
                execution_id=context.execution_id,
            ),
        )


def _snapshot(tasks: Iterable[TaskRecord]) -> list[TaskRecord]:
    return [replace(task) for task in tasks]
