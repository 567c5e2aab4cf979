"""Error taxonomy for pipeline execution."""

from __future__ import annotations


class PipelineError(RuntimeError):
    """Pipeline failure with a resumability hint."""

    recoverable = False

    def __init__(self, message: str, *, output: str | None = None) -> None:
        super().__init__(message)
        self.output = output


class TaskValidationError(PipelineError):
    """Bad model or working directory, rejected before any subprocess spawns."""


class SpawnError(PipelineError):
    """The external CLI process could not be started."""


class ExecutionError(PipelineError):
    """Non-zero exit without a rate-limit marker."""

    def __init__(
        self,
        message: str,
        *,
        output: str | None = None,
        exit_code: int | None = None,
    ) -> None:
        super().__init__(message, output=output)
        self.exit_code = exit_code


class RetryExhaustedError(ExecutionError):
    """Rate-limit retries ran out or the cumulative wait budget was exceeded."""


class RateLimitError(PipelineError):
    """Usage limit reached; retry is allowed after ``reset_at``.

    ``is_timeout`` marks a reset more than six hours away.
    """

    recoverable = True

    def __init__(
        self,
        message: str,
        *,
        reset_at: float,
        is_timeout: bool = False,
        output: str | None = None,
    ) -> None:
        super().__init__(message, output=output)
        self.reset_at = reset_at
        self.is_timeout = is_timeout


class StepTimeoutError(PipelineError):
    """Invocation exceeded its time budget; the execution stays resumable."""

    recoverable = True


class CancellationError(PipelineError):
    """User cancelled the in-flight invocation."""

    recoverable = True


class StateConflictError(RuntimeError):
    """Durable state changed concurrently and the write was rejected."""


class WorkflowDefinitionError(ValueError):
    """Workflow file is missing, unparsable, or structurally invalid."""
