"""Executor implementations for the assistant CLI."""

from agent_pipeline.orchestrator.backend.base import TaskExecutor
from agent_pipeline.orchestrator.backend.cli_backend import StepExecutor

__all__ = [
    "StepExecutor",
    "TaskExecutor",
]
