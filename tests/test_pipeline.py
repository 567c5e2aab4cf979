from __future__ import annotations

import json
import shlex
import sys
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import allure
import pytest

from agent_pipeline.orchestrator.errors import (
    RateLimitError,
    RetryExhaustedError,
    StateConflictError,
    TaskValidationError,
)
from agent_pipeline.orchestrator.events import EventKind, PipelineEventStream
from agent_pipeline.orchestrator.models import (
    MANUAL_PAUSE_MARKER,
    CommandResult,
    ConditionType,
    PauseReason,
    PipelineOutcome,
    StepStatus,
    TaskOptions,
    TaskRecord,
    TaskStatus,
    WorkflowStatus,
)
from agent_pipeline.orchestrator.pipeline import CANCELLED_MARKER, PipelineOrchestrator
from agent_pipeline.orchestrator.repository import WorkflowStateStore

pytestmark = [
    allure.epic("Pipeline Execution"),
    allure.feature("Orchestration"),
]

Response = CommandResult | Exception | Callable[[TaskOptions], CommandResult]


@dataclass(slots=True)
class _Call:
    prompt: str
    model: str
    options: TaskOptions
    max_retries: int | None = None


class ScriptedExecutor:
    """Executor double answering per prompt; unscripted prompts succeed with a fresh session."""

    def __init__(
        self,
        responses: dict[str, Response] | None = None,
        *,
        on_execute: Callable[[str], None] | None = None,
    ) -> None:
        self.responses = dict(responses or {})
        self.on_execute = on_execute
        self.calls: list[_Call] = []

    @property
    def prompts(self) -> list[str]:
        return [call.prompt for call in self.calls]

    def execute(
        self,
        prompt: str,
        model: str,
        working_directory: Path,
        options: TaskOptions | None = None,
    ) -> CommandResult:
        return self._answer(_Call(prompt=prompt, model=model, options=options or TaskOptions()))

    def execute_with_retry(
        self,
        prompt: str,
        model: str,
        working_directory: Path,
        options: TaskOptions | None = None,
        *,
        max_retries: int = 3,
    ) -> CommandResult:
        return self._answer(
            _Call(
                prompt=prompt,
                model=model,
                options=options or TaskOptions(),
                max_retries=max_retries,
            ),
        )

    def cancel(self) -> bool:
        return False

    def _answer(self, call: _Call) -> CommandResult:
        self.calls.append(call)
        if self.on_execute is not None:
            self.on_execute(call.prompt)
        response = self.responses.get(call.prompt)
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(call.options)
        if response is not None:
            return response
        return _success(f"ses_{len(self.calls)}", text=f"done: {call.prompt}")


def _success(session_id: str, *, text: str = "ok") -> CommandResult:
    return CommandResult(
        success=True,
        output=json.dumps({"type": "result", "result": text, "session_id": session_id}),
        exit_code=0,
        session_id=session_id,
    )


def _failure(error: str) -> CommandResult:
    return CommandResult(success=False, output="", error=error, exit_code=1)


def _rate_limited(reset_at: float, *, is_timeout: bool = False) -> CommandResult:
    return CommandResult(
        success=False,
        output="",
        error="Claude AI usage limit reached",
        exit_code=1,
        rate_limit_reset_at=reset_at,
        rate_limit_is_timeout=is_timeout,
    )


def _json_options() -> TaskOptions:
    return TaskOptions(output_format="json")


def test_second_task_resumes_session_of_first_task(tmp_path: Path) -> None:
    tasks = [
        TaskRecord(id="a", prompt="A"),
        TaskRecord(id="b", prompt="B", resume_from_task_id="a"),
    ]
    executor = ScriptedExecutor({"A": _success("s1")})
    completed: list[list[TaskRecord]] = []

    result = PipelineOrchestrator(executor).run(
        tasks,
        model="auto",
        working_directory=tmp_path,
        options=_json_options(),
        on_complete=completed.append,
    )

    assert result.outcome == PipelineOutcome.COMPLETED
    assert executor.prompts == ["A", "B"]
    assert executor.calls[0].options.resume_session_id is None
    assert executor.calls[1].options.resume_session_id == "s1"
    assert tasks[0].session_id == "s1"
    assert tasks[0].results == "ok"
    assert [task.status for task in tasks] == [TaskStatus.COMPLETED, TaskStatus.COMPLETED]
    assert len(completed) == 1


def test_rerun_skips_completed_prefix_and_reuses_its_session(tmp_path: Path) -> None:
    tasks = [
        TaskRecord(id="a", prompt="A", status=TaskStatus.COMPLETED, session_id="s0"),
        TaskRecord(id="b", prompt="B", resume_from_task_id="a"),
    ]
    executor = ScriptedExecutor()

    result = PipelineOrchestrator(executor).run(tasks, model="auto", working_directory=tmp_path)

    assert result.outcome == PipelineOutcome.COMPLETED
    assert result.executed == 1
    assert executor.prompts == ["B"]
    assert executor.calls[0].options.resume_session_id == "s0"


def test_task_model_overrides_pipeline_model(tmp_path: Path) -> None:
    tasks = [
        TaskRecord(id="a", prompt="A", model="claude-opus-4-20250514"),
        TaskRecord(id="b", prompt="B"),
    ]
    executor = ScriptedExecutor()

    PipelineOrchestrator(executor).run(tasks, model="auto", working_directory=tmp_path)

    assert [call.model for call in executor.calls] == ["claude-opus-4-20250514", "auto"]


def test_pause_requested_before_run_suspends_first_task(tmp_path: Path) -> None:
    tasks = [TaskRecord(id="a", prompt="A"), TaskRecord(id="b", prompt="B")]
    executor = ScriptedExecutor()
    orchestrator = PipelineOrchestrator(executor)

    orchestrator.pause()
    paused = orchestrator.run(tasks, model="auto", working_directory=tmp_path)

    assert paused.outcome == PipelineOutcome.PAUSED
    assert paused.pause_reason == PauseReason.MANUAL
    assert paused.current_index == 0
    assert executor.calls == []
    assert tasks[0].status == TaskStatus.PAUSED
    assert tasks[0].results == MANUAL_PAUSE_MARKER

    resumed = orchestrator.run(tasks, model="auto", working_directory=tmp_path)

    assert resumed.outcome == PipelineOutcome.COMPLETED
    assert executor.prompts == ["A", "B"]


def test_pause_during_run_stops_at_next_task_boundary(tmp_path: Path) -> None:
    tasks = [TaskRecord(id="a", prompt="A"), TaskRecord(id="b", prompt="B")]
    orchestrator: PipelineOrchestrator

    def _pause_after_first(prompt: str) -> None:
        if prompt == "A":
            orchestrator.pause()

    executor = ScriptedExecutor(on_execute=_pause_after_first)
    orchestrator = PipelineOrchestrator(executor)

    result = orchestrator.run(tasks, model="auto", working_directory=tmp_path)

    assert result.outcome == PipelineOutcome.PAUSED
    assert result.current_index == 1
    assert tasks[0].status == TaskStatus.COMPLETED
    assert tasks[1].status == TaskStatus.PAUSED
    assert executor.prompts == ["A"]


@pytest.mark.parametrize(
    "response",
    [
        _failure("boom"),
        _rate_limited(time.time() + 600),
        CommandResult(success=False, output="", error="too slow", exit_code=124, timed_out=True),
    ],
    ids=["failure", "rate-limit", "timeout"],
)
def test_pause_requested_during_unsuccessful_task_does_not_leak_into_next_run(
    tmp_path: Path,
    response: CommandResult,
) -> None:
    orchestrator: PipelineOrchestrator

    def _pause_while_running(prompt: str) -> None:
        if prompt == "A":
            orchestrator.pause()

    executor = ScriptedExecutor({"A": response}, on_execute=_pause_while_running)
    orchestrator = PipelineOrchestrator(executor)

    first = orchestrator.run(
        [TaskRecord(id="a", prompt="A")],
        model="auto",
        working_directory=tmp_path,
    )
    second = orchestrator.run(
        [TaskRecord(id="x", prompt="X")],
        model="auto",
        working_directory=tmp_path,
    )

    assert first.outcome != PipelineOutcome.COMPLETED
    assert second.outcome == PipelineOutcome.COMPLETED
    assert executor.prompts == ["A", "X"]


def test_on_failure_task_is_skipped_after_success(tmp_path: Path) -> None:
    tasks = [
        TaskRecord(id="a", prompt="A"),
        TaskRecord(id="b", prompt="B", condition=ConditionType.ON_FAILURE),
    ]
    executor = ScriptedExecutor()

    result = PipelineOrchestrator(executor).run(tasks, model="auto", working_directory=tmp_path)

    assert result.outcome == PipelineOutcome.COMPLETED
    assert executor.prompts == ["A"]
    assert tasks[1].status == TaskStatus.SKIPPED
    assert tasks[1].skip_reason == "Condition 'on_failure' not met (previous step succeeded)"


def test_conditions_follow_tolerated_failure(tmp_path: Path) -> None:
    tasks = [
        TaskRecord(id="a", prompt="A", continue_on_error=True),
        TaskRecord(id="b", prompt="B", condition=ConditionType.ALWAYS),
        TaskRecord(id="c", prompt="C", condition=ConditionType.ON_FAILURE, depends_on=("a",)),
        TaskRecord(id="d", prompt="D", condition=ConditionType.ON_SUCCESS, depends_on=("a",)),
    ]
    executor = ScriptedExecutor({"A": _failure("lint errors")})
    errors: list[str] = []

    result = PipelineOrchestrator(executor).run(
        tasks,
        model="auto",
        working_directory=tmp_path,
        on_error=lambda message, _tasks: errors.append(message),
    )

    assert executor.prompts == ["A", "B", "C"]
    assert [task.status for task in tasks] == [
        TaskStatus.ERROR,
        TaskStatus.COMPLETED,
        TaskStatus.COMPLETED,
        TaskStatus.SKIPPED,
    ]
    assert tasks[3].skip_reason == "Condition 'on_success' not met (previous step failed)"
    assert result.outcome == PipelineOutcome.FAILED
    assert errors == ["Task a failed: lint errors"]


def test_failure_halts_pipeline_and_reports_error(tmp_path: Path) -> None:
    tasks = [TaskRecord(id="a", prompt="A"), TaskRecord(id="b", prompt="B")]
    executor = ScriptedExecutor({"A": _failure("boom on stderr")})
    reported: list[tuple[str, list[TaskStatus]]] = []

    result = PipelineOrchestrator(executor).run(
        tasks,
        model="auto",
        working_directory=tmp_path,
        on_error=lambda message, items: reported.append(
            (message, [task.status for task in items]),
        ),
    )

    assert result.outcome == PipelineOutcome.FAILED
    assert result.error == "Task a failed: boom on stderr"
    assert executor.prompts == ["A"]
    assert tasks[0].results == "boom on stderr"
    assert reported == [
        ("Task a failed: boom on stderr", [TaskStatus.ERROR, TaskStatus.PENDING]),
    ]


def test_rate_limit_pauses_run_and_keeps_later_tasks_pending(
    tmp_path: Path,
    store: WorkflowStateStore,
) -> None:
    reset_at = time.time() + 600
    tasks = [TaskRecord(id="a", prompt="A"), TaskRecord(id="b", prompt="B")]
    executor = ScriptedExecutor({"A": _rate_limited(reset_at)})

    result = PipelineOrchestrator(executor, store=store).run(
        tasks,
        model="auto",
        working_directory=tmp_path,
    )

    assert result.outcome == PipelineOutcome.PAUSED
    assert result.pause_reason == PauseReason.RATE_LIMIT
    assert executor.prompts == ["A"]
    assert tasks[0].status == TaskStatus.PAUSED
    assert tasks[0].paused_until == reset_at
    assert tasks[1].status == TaskStatus.PENDING

    assert result.execution_id is not None
    state = store.load(result.execution_id)
    assert state is not None
    assert state.status == WorkflowStatus.PAUSED
    assert state.pause_reason == PauseReason.RATE_LIMIT
    assert state.can_resume is True
    assert state.current_step == 0
    assert [step.status for step in state.completed_steps] == [StepStatus.PAUSED]


def test_far_rate_limit_reset_keeps_execution_paused_and_resumable(
    tmp_path: Path,
    store: WorkflowStateStore,
) -> None:
    tasks = [TaskRecord(id="a", prompt="A")]
    executor = ScriptedExecutor({"A": _rate_limited(time.time() + 8 * 3600, is_timeout=True)})

    result = PipelineOrchestrator(executor, store=store).run(
        tasks,
        model="auto",
        working_directory=tmp_path,
    )

    assert result.pause_reason == PauseReason.RATE_LIMIT
    assert result.execution_id is not None
    state = store.load(result.execution_id)
    assert state is not None
    assert state.status == WorkflowStatus.PAUSED
    assert state.pause_reason == PauseReason.RATE_LIMIT
    assert state.can_resume is True
    assert state.completed_steps[0].status == StepStatus.TIMEOUT
    assert [item.execution_id for item in store.list_resumable()] == [result.execution_id]


def test_timed_out_invocation_is_resumable(tmp_path: Path, store: WorkflowStateStore) -> None:
    tasks = [TaskRecord(id="a", prompt="A")]
    timed_out = CommandResult(
        success=False,
        output="",
        error="Invocation timed out after 5 seconds.",
        exit_code=124,
        timed_out=True,
    )
    executor = ScriptedExecutor({"A": timed_out})
    orchestrator = PipelineOrchestrator(executor, store=store)

    paused = orchestrator.run(tasks, model="auto", working_directory=tmp_path)
    assert paused.pause_reason == PauseReason.TIMEOUT
    assert paused.execution_id is not None
    assert store.get_status(paused.execution_id) == WorkflowStatus.TIMEOUT

    executor.responses.clear()
    resumed = orchestrator.resume(paused.execution_id)

    assert resumed.outcome == PipelineOutcome.COMPLETED
    assert executor.prompts == ["A", "A"]


def test_failing_check_command_skips_task(tmp_path: Path) -> None:
    python = shlex.quote(sys.executable)
    tasks = [
        TaskRecord(id="a", prompt="A", check=f"{python} -c 'import sys; sys.exit(1)'"),
        TaskRecord(id="b", prompt="B", check=f"{python} -c 'import sys; sys.exit(0)'"),
    ]
    executor = ScriptedExecutor()

    result = PipelineOrchestrator(executor).run(tasks, model="auto", working_directory=tmp_path)

    assert result.outcome == PipelineOutcome.COMPLETED
    assert executor.prompts == ["B"]
    assert tasks[0].status == TaskStatus.SKIPPED
    assert tasks[0].skip_reason is not None
    assert tasks[0].skip_reason.startswith("Check command failed:")
    assert tasks[0].skip_reason.endswith("(exit code 1)")


def test_resume_after_restart_reuses_persisted_session(tmp_path: Path) -> None:
    db_path = tmp_path / "restart.db"
    tasks = [
        TaskRecord(id="a", prompt="A"),
        TaskRecord(id="b", prompt="B", resume_from_task_id="a"),
        TaskRecord(id="c", prompt="C"),
    ]

    first_store = WorkflowStateStore(db_path)
    first_store.init_schema()
    first = PipelineOrchestrator(
        ScriptedExecutor({"A": _success("s1"), "B": _rate_limited(time.time() - 1)}),
        store=first_store,
    ).run(
        tasks,
        model="auto",
        working_directory=tmp_path,
        options=_json_options(),
        workflow_name="review",
    )
    first_store.close()
    assert first.outcome == PipelineOutcome.PAUSED
    assert first.execution_id is not None

    second_store = WorkflowStateStore(db_path)
    second_store.init_schema()
    assert [state.execution_id for state in second_store.list_resumable()] == [first.execution_id]
    executor = ScriptedExecutor()
    resumed = PipelineOrchestrator(executor, store=second_store).resume(first.execution_id)

    assert resumed.outcome == PipelineOutcome.COMPLETED
    assert executor.prompts == ["B", "C"]
    assert executor.calls[0].options.resume_session_id == "s1"
    assert executor.calls[0].options.output_format == "json"
    state = second_store.load(first.execution_id)
    second_store.close()
    assert state is not None
    assert state.status == WorkflowStatus.COMPLETED
    assert state.workflow_name == "review"
    assert state.session_mappings["a"] == "s1"
    assert state.resumed_at is not None


def test_continue_from_resolves_template_and_literal_session(tmp_path: Path) -> None:
    tasks = [
        TaskRecord(id="a", prompt="A"),
        TaskRecord(id="b", prompt="B", continue_from="${{ steps.a.outputs.session_id }}"),
        TaskRecord(id="c", prompt="C", continue_from="ses_external"),
        TaskRecord(id="d", prompt="D", continue_from="${{ steps.missing.outputs.session_id }}"),
    ]
    executor = ScriptedExecutor({"A": _success("s1")})

    PipelineOrchestrator(executor).run(tasks, model="auto", working_directory=tmp_path)

    assert [call.options.resume_session_id for call in executor.calls] == [
        None,
        "s1",
        "ses_external",
        None,
    ]


def test_task_without_output_session_is_not_mapped(tmp_path: Path) -> None:
    tasks = [
        TaskRecord(id="a", prompt="A", output_session=False),
        TaskRecord(id="b", prompt="B", continue_from="steps.a.outputs.session_id"),
    ]
    executor = ScriptedExecutor({"A": _success("s1")})

    PipelineOrchestrator(executor).run(tasks, model="auto", working_directory=tmp_path)

    assert executor.calls[1].options.resume_session_id is None


def test_cancelled_invocation_leaves_task_paused(
    tmp_path: Path,
    store: WorkflowStateStore,
) -> None:
    tasks = [TaskRecord(id="a", prompt="A"), TaskRecord(id="b", prompt="B")]
    cancelled = CommandResult(
        success=False,
        output="",
        error="Invocation cancelled.",
        cancelled=True,
    )
    executor = ScriptedExecutor({"A": cancelled})

    result = PipelineOrchestrator(executor, store=store).run(
        tasks,
        model="auto",
        working_directory=tmp_path,
    )

    assert result.outcome == PipelineOutcome.PAUSED
    assert result.pause_reason == PauseReason.MANUAL
    assert tasks[0].status == TaskStatus.PAUSED
    assert tasks[0].results == CANCELLED_MARKER
    assert result.execution_id is not None
    state = store.load(result.execution_id)
    assert state is not None
    assert state.status == WorkflowStatus.PAUSED
    assert state.can_resume is True


def test_external_store_pause_is_honoured_at_task_boundary(
    tmp_path: Path,
    store: WorkflowStateStore,
) -> None:
    tasks = [TaskRecord(id="a", prompt="A"), TaskRecord(id="b", prompt="B")]
    orchestrator: PipelineOrchestrator

    def _pause_from_elsewhere(prompt: str) -> None:
        if prompt == "A":
            assert orchestrator.execution_id is not None
            assert store.pause(orchestrator.execution_id) is not None

    executor = ScriptedExecutor(on_execute=_pause_from_elsewhere)
    orchestrator = PipelineOrchestrator(executor, store=store)

    paused = orchestrator.run(tasks, model="auto", working_directory=tmp_path)

    assert paused.outcome == PipelineOutcome.PAUSED
    assert paused.current_index == 1
    assert executor.prompts == ["A"]

    assert paused.execution_id is not None
    resumed = orchestrator.resume(paused.execution_id)

    assert resumed.outcome == PipelineOutcome.COMPLETED
    assert executor.prompts == ["A", "B"]


def test_event_stream_mirrors_callbacks(tmp_path: Path) -> None:
    tasks = [TaskRecord(id="a", prompt="A"), TaskRecord(id="b", prompt="B")]
    events = PipelineEventStream()
    subscription = events.subscribe()
    progress: list[tuple[int, TaskStatus]] = []

    PipelineOrchestrator(ScriptedExecutor(), events=events).run(
        tasks,
        model="auto",
        working_directory=tmp_path,
        on_progress=lambda items, index: progress.append((index, items[index].status)),
    )
    received = subscription.drain()

    progress_events = [event for event in received if event.kind == EventKind.PROGRESS]
    assert [
        (event.current_index, event.tasks[event.current_index].status)
        for event in progress_events
    ] == progress
    assert progress == [
        (0, TaskStatus.RUNNING),
        (0, TaskStatus.COMPLETED),
        (1, TaskStatus.RUNNING),
        (1, TaskStatus.COMPLETED),
    ]
    assert received[-1].kind == EventKind.COMPLETE
    assert received[0].tasks[0] is not tasks[0]


def test_store_records_every_step_and_completes(
    tmp_path: Path,
    store: WorkflowStateStore,
) -> None:
    tasks = [
        TaskRecord(id="a", prompt="A"),
        TaskRecord(id="b", prompt="B", condition=ConditionType.ON_FAILURE),
        TaskRecord(id="c", prompt="C", resume_from_task_id="a"),
    ]
    executor = ScriptedExecutor({"A": _success("s1")})

    result = PipelineOrchestrator(executor, store=store).run(
        tasks,
        model="auto",
        working_directory=tmp_path,
        workflow_path="workflows/review.yml",
    )

    assert result.execution_id is not None
    state = store.load(result.execution_id)
    assert state is not None
    assert state.status == WorkflowStatus.COMPLETED
    assert state.current_step == 3
    assert state.total_steps == 3
    assert state.workflow_path == "workflows/review.yml"
    assert [(step.step_id, step.status) for step in state.completed_steps] == [
        ("a", StepStatus.COMPLETED),
        ("b", StepStatus.SKIPPED),
        ("c", StepStatus.COMPLETED),
    ]
    assert state.completed_steps[2].resume_session == "s1"
    assert state.session_mappings["a"] == "s1"
    assert [task.status for task in state.tasks] == [
        TaskStatus.COMPLETED,
        TaskStatus.SKIPPED,
        TaskStatus.COMPLETED,
    ]


def test_validation_error_fails_run_and_blocks_resume(
    tmp_path: Path,
    store: WorkflowStateStore,
) -> None:
    tasks = [TaskRecord(id="a", prompt="A")]
    executor = ScriptedExecutor({"A": TaskValidationError("Invalid model: gpt-4")})
    orchestrator = PipelineOrchestrator(executor, store=store)

    result = orchestrator.run(tasks, model="gpt-4", working_directory=tmp_path)

    assert result.outcome == PipelineOutcome.FAILED
    assert result.error == "Task a failed: Invalid model: gpt-4"
    assert result.execution_id is not None
    state = store.load(result.execution_id)
    assert state is not None
    assert state.status == WorkflowStatus.FAILED
    assert state.can_resume is False
    with pytest.raises(StateConflictError, match="not resumable"):
        orchestrator.resume(result.execution_id)


def test_resume_requires_store_and_known_execution(store: WorkflowStateStore) -> None:
    with pytest.raises(ValueError, match="requires a state store"):
        PipelineOrchestrator(ScriptedExecutor()).resume("exec_missing")
    with pytest.raises(ValueError, match="Execution not found"):
        PipelineOrchestrator(ScriptedExecutor(), store=store).resume("exec_missing")


def test_overlapping_run_is_rejected(tmp_path: Path) -> None:
    orchestrator: PipelineOrchestrator
    observed: list[bool] = []

    def _start_again(prompt: str) -> None:
        observed.append(orchestrator.is_running)
        with pytest.raises(RuntimeError, match="already running"):
            orchestrator.run(
                [TaskRecord(id="x", prompt="X")],
                model="auto",
                working_directory=tmp_path,
            )

    executor = ScriptedExecutor(on_execute=_start_again)
    orchestrator = PipelineOrchestrator(executor)

    result = orchestrator.run(
        [TaskRecord(id="a", prompt="A")],
        model="auto",
        working_directory=tmp_path,
    )

    assert result.outcome == PipelineOutcome.COMPLETED
    assert observed == [True]
    assert orchestrator.is_running is False


def test_retry_mode_delegates_to_executor_retry(tmp_path: Path) -> None:
    executor = ScriptedExecutor()

    PipelineOrchestrator(executor, retry_rate_limits=True, max_retries=5).run(
        [TaskRecord(id="a", prompt="A")],
        model="auto",
        working_directory=tmp_path,
    )

    assert [call.max_retries for call in executor.calls] == [5]


def test_exhausted_rate_limit_retries_fail_the_run(
    tmp_path: Path,
    store: WorkflowStateStore,
) -> None:
    executor = ScriptedExecutor(
        {"A": RetryExhaustedError("Maximum retries exceeded", output="usage limit")},
    )

    result = PipelineOrchestrator(executor, store=store, retry_rate_limits=True).run(
        [TaskRecord(id="a", prompt="A")],
        model="auto",
        working_directory=tmp_path,
    )

    assert result.outcome == PipelineOutcome.FAILED
    assert result.execution_id is not None
    state = store.load(result.execution_id)
    assert state is not None
    assert state.can_resume is False
    assert state.completed_steps[0].output == "usage limit"


def test_raised_rate_limit_error_parks_task_until_reset(
    tmp_path: Path,
    store: WorkflowStateStore,
) -> None:
    tasks = [TaskRecord(id="a", prompt="A"), TaskRecord(id="b", prompt="B")]
    executor = ScriptedExecutor({"A": RateLimitError("usage limit", reset_at=4_102_444_800.0)})

    result = PipelineOrchestrator(executor, store=store).run(
        tasks,
        model="auto",
        working_directory=tmp_path,
    )

    assert result.outcome == PipelineOutcome.PAUSED
    assert result.pause_reason == PauseReason.RATE_LIMIT
    assert tasks[0].status == TaskStatus.PAUSED
    assert tasks[0].paused_until == 4_102_444_800.0
    assert tasks[1].status == TaskStatus.PENDING


def test_future_paused_until_waits_and_honours_pause(tmp_path: Path) -> None:
    tasks = [TaskRecord(id="a", prompt="A", status=TaskStatus.PAUSED, paused_until=1_000.0)]
    executor = ScriptedExecutor()
    orchestrator = PipelineOrchestrator(executor, clock=lambda: 0.0)

    orchestrator.pause()
    result = orchestrator.run(tasks, model="auto", working_directory=tmp_path)

    assert result.outcome == PipelineOutcome.PAUSED
    assert executor.calls == []
    assert tasks[0].paused_until == 1_000.0
