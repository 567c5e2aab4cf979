"""Domain models for pipeline tasks and durable workflow state."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any

from agent_pipeline.orchestrator.errors import (
    CancellationError,
    ExecutionError,
    RateLimitError,
    StepTimeoutError,
)


class TaskStatus(str, Enum):
    """Scheduling lifecycle of one pipeline task."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    PAUSED = "paused"
    SKIPPED = "skipped"


class ConditionType(str, Enum):
    """When a task runs relative to its dependency outcome."""

    ON_SUCCESS = "on_success"
    ON_FAILURE = "on_failure"
    ALWAYS = "always"


class WorkflowStatus(str, Enum):
    """Durable execution states."""

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"


class PauseReason(str, Enum):
    """Why an execution was suspended."""

    MANUAL = "manual"
    RATE_LIMIT = "rate_limit"
    ERROR = "error"
    TIMEOUT = "timeout"


class StepStatus(str, Enum):
    """Per-step durable result states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"
    TIMEOUT = "timeout"
    SKIPPED = "skipped"


class PipelineOutcome(str, Enum):
    """Terminal state of one orchestrator run."""

    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"


TERMINAL_TASK_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.ERROR, TaskStatus.SKIPPED},
)

MANUAL_PAUSE_MARKER = "MANUALLY PAUSED"


@dataclass(slots=True)
class TaskOptions:
    """Flags forwarded to the external CLI for one invocation."""

    allow_all_tools: bool = False
    bypass_permissions: bool = False
    output_format: str = "text"
    max_turns: int | None = None
    verbose: bool = False
    system_prompt: str | None = None
    append_system_prompt: str | None = None
    continue_conversation: bool = False
    resume_session_id: str | None = None
    allowed_tools: tuple[str, ...] = ()
    disallowed_tools: tuple[str, ...] = ()
    mcp_config: str | None = None
    permission_prompt_tool: str | None = None
    timeout_seconds: float | None = None

    @property
    def skip_permissions(self) -> bool:
        # Either flag maps to the same CLI switch.
        return self.allow_all_tools or self.bypass_permissions

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["allowed_tools"] = list(self.allowed_tools)
        payload["disallowed_tools"] = list(self.disallowed_tools)
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> TaskOptions:
        if not payload:
            return cls()
        known = {item.name for item in fields(cls)}
        values = {key: value for key, value in payload.items() if key in known}
        for key in ("allowed_tools", "disallowed_tools"):
            if key in values:
                values[key] = tuple(values[key] or ())
        return cls(**values)


@dataclass(slots=True)
class CommandResult:
    """Outcome of one external CLI invocation."""

    success: bool
    output: str
    error: str | None = None
    exit_code: int | None = None
    session_id: str | None = None
    timed_out: bool = False
    cancelled: bool = False
    rate_limit_reset_at: float | None = None
    rate_limit_is_timeout: bool = False
    duration_ms: int = 0

    @property
    def rate_limited(self) -> bool:
        return self.rate_limit_reset_at is not None

    def raise_for_failure(self) -> None:
        """Raise the error class matching a failed invocation; successes pass through.

        Raises:
            CancellationError: the invocation was cancelled.
            StepTimeoutError: the invocation ran past its time budget.
            RateLimitError: the CLI reported a usage limit.
            ExecutionError: any other non-zero exit.
        """

        if self.success:
            return
        message = self.error or f"Command failed with exit code {self.exit_code}"
        if self.cancelled:
            raise CancellationError(message, output=self.output)
        if self.timed_out:
            raise StepTimeoutError(message, output=self.output)
        if self.rate_limit_reset_at is not None:
            raise RateLimitError(
                message,
                reset_at=self.rate_limit_reset_at,
                is_timeout=self.rate_limit_is_timeout,
                output=self.output,
            )
        raise ExecutionError(message, output=self.output, exit_code=self.exit_code)


@dataclass(slots=True)
class TaskRecord:
    """One invocation of the external tool within a pipeline."""

    id: str
    prompt: str
    name: str | None = None
    status: TaskStatus = TaskStatus.PENDING
    depends_on: tuple[str, ...] = ()
    condition: ConditionType | None = None
    check: str | None = None
    model: str | None = None
    session_id: str | None = None
    resume_from_task_id: str | None = None
    continue_from: str | None = None
    output_session: bool = True
    continue_on_error: bool = False
    paused_until: float | None = None
    results: str | None = None
    skip_reason: str | None = None
    options: TaskOptions | None = None

    @property
    def label(self) -> str:
        return self.name or self.id

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "prompt": self.prompt,
            "name": self.name,
            "status": self.status.value,
            "depends_on": list(self.depends_on),
            "condition": self.condition.value if self.condition is not None else None,
            "check": self.check,
            "model": self.model,
            "session_id": self.session_id,
            "resume_from_task_id": self.resume_from_task_id,
            "continue_from": self.continue_from,
            "output_session": self.output_session,
            "continue_on_error": self.continue_on_error,
            "paused_until": self.paused_until,
            "results": self.results,
            "skip_reason": self.skip_reason,
            "options": self.options.to_dict() if self.options is not None else None,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> TaskRecord:
        condition = payload.get("condition")
        options = payload.get("options")
        return cls(
            id=str(payload["id"]),
            prompt=str(payload.get("prompt", "")),
            name=payload.get("name"),
            status=TaskStatus(payload.get("status", TaskStatus.PENDING.value)),
            depends_on=tuple(payload.get("depends_on") or ()),
            condition=ConditionType(condition) if condition else None,
            check=payload.get("check"),
            model=payload.get("model"),
            session_id=payload.get("session_id"),
            resume_from_task_id=payload.get("resume_from_task_id"),
            continue_from=payload.get("continue_from"),
            output_session=bool(payload.get("output_session", True)),
            continue_on_error=bool(payload.get("continue_on_error", False)),
            paused_until=payload.get("paused_until"),
            results=payload.get("results"),
            skip_reason=payload.get("skip_reason"),
            options=TaskOptions.from_dict(options) if options else None,
        )


@dataclass(slots=True)
class StepResult:
    """Durable record of one step attempt within an execution."""

    step_index: int
    step_id: str
    status: StepStatus = StepStatus.PENDING
    session_id: str | None = None
    output_session: bool = False
    resume_session: str | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    output: str | None = None
    error: str | None = None


@dataclass(slots=True)
class WorkflowState:
    """Durable progress of one pipeline execution."""

    execution_id: str
    workflow_name: str
    workflow_path: str
    started_at: datetime
    updated_at: datetime
    status: WorkflowStatus = WorkflowStatus.PENDING
    current_step: int = 0
    total_steps: int = 0
    session_mappings: dict[str, str] = field(default_factory=dict)
    completed_steps: list[StepResult] = field(default_factory=list)
    pause_reason: PauseReason | None = None
    can_resume: bool = True
    paused_at: datetime | None = None
    resumed_at: datetime | None = None
    model: str = "auto"
    working_directory: str = "."
    options: TaskOptions = field(default_factory=TaskOptions)
    tasks: list[TaskRecord] = field(default_factory=list)
    revision: int = 0


@dataclass(slots=True)
class PipelineRunResult:
    """Summary of one orchestrator run."""

    outcome: PipelineOutcome
    tasks: list[TaskRecord]
    execution_id: str | None = None
    current_index: int | None = None
    pause_reason: PauseReason | None = None
    error: str | None = None
    executed: int = 0
