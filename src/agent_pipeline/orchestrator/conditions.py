"""Run-condition evaluation for pipeline tasks."""

from __future__ import annotations

import logging
import shlex
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from agent_pipeline.orchestrator.models import ConditionType, TaskRecord, TaskStatus

logger = logging.getLogger(__name__)

RESOLVED_DEPENDENCY_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.ERROR})
CHECK_TIMEOUT_SECONDS = 60.0


@dataclass(slots=True)
class ConditionVerdict:
    """Whether a task should run, and the skip reason when it should not."""

    should_run: bool
    reason: str | None = None


def last_resolved_dependency(tasks: Sequence[TaskRecord], index: int) -> TaskRecord | None:
    """Return the most recently resolved dependency of ``tasks[index]``.

    Explicit ``depends_on`` ids are searched in array order; without them the
    preceding tasks are used. Skipped tasks never count as resolved.
    """

    task = tasks[index]
    if task.depends_on:
        wanted = set(task.depends_on)
        candidates = [item for item in tasks[:index] if item.id in wanted]
    else:
        candidates = list(tasks[:index])
    for candidate in reversed(candidates):
        if candidate.status in RESOLVED_DEPENDENCY_STATUSES:
            return candidate
    return None


def evaluate_condition(
    tasks: Sequence[TaskRecord],
    index: int,
    *,
    working_directory: Path,
) -> ConditionVerdict:
    """Decide whether ``tasks[index]`` runs given its dependency outcome and check command."""

    task = tasks[index]
    condition = task.condition or ConditionType.ALWAYS
    if task.condition is not None and condition != ConditionType.ALWAYS:
        dependency = last_resolved_dependency(tasks, index)
        previous_success = dependency is None or dependency.status == TaskStatus.COMPLETED
        wanted_success = condition == ConditionType.ON_SUCCESS
        if previous_success != wanted_success:
            outcome = "succeeded" if previous_success else "failed"
            return ConditionVerdict(
                should_run=False,
                reason=f"Condition '{condition.value}' not met (previous step {outcome})",
            )

    if task.check:
        passed, detail = run_check_command(task.check, working_directory=working_directory)
        if not passed:
            return ConditionVerdict(
                should_run=False,
                reason=f"Check command failed: {task.check} ({detail})",
            )
    return ConditionVerdict(should_run=True)


def run_check_command(
    command: str,
    *,
    working_directory: Path,
    timeout_seconds: float = CHECK_TIMEOUT_SECONDS,
) -> tuple[bool, str]:
    """Run a check command as an argv (never through a shell); return (passed, detail)."""

    try:
        argv = shlex.split(command)
    except ValueError as error:
        return False, f"unparsable command: {error}"
    if not argv:
        return False, "empty command"

    try:
        completed = subprocess.run(  # noqa: S603
            argv,
            cwd=working_directory,
            check=False,
            capture_output=True,
            text=True,
            timeout=timeout_seconds,
        )
    except subprocess.TimeoutExpired:
        return False, "timed out"
    except OSError as error:
        return False, f"failed to start: {error}"

    logger.debug("Check command %r exited with %d", command, completed.returncode)
    if completed.returncode == 0:
        return True, "exit code 0"
    return False, f"exit code {completed.returncode}"
