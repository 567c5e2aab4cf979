"""Executor interface consumed by the pipeline orchestrator."""

from __future__ import annotations

from pathlib import Path
from typing import Protocol

from agent_pipeline.orchestrator.models import CommandResult, TaskOptions


class TaskExecutor(Protocol):
    """Protocol implemented by step executors."""

    def execute(
        self,
        prompt: str,
        model: str,
        working_directory: Path,
        options: TaskOptions | None = None,
    ) -> CommandResult:
        """Run one invocation and return its outcome."""

    def execute_with_retry(
        self,
        prompt: str,
        model: str,
        working_directory: Path,
        options: TaskOptions | None = None,
        *,
        max_retries: int = 3,
    ) -> CommandResult:
        """Run one invocation, waiting out rate limits up to ``max_retries`` attempts."""

    def cancel(self) -> bool:
        """Kill the in-flight invocation, if any."""
