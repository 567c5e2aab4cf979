"""Shared test fixtures."""

from __future__ import annotations

import os
import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

from agent_pipeline.orchestrator.repository import WorkflowStateStore

SRC_DIR = Path(__file__).resolve().parents[1] / "src"
ECHO_AGENT_COMMAND = (sys.executable, "-m", "agent_pipeline.orchestrator.backend.echo_agent")


@pytest.fixture()
def echo_command(monkeypatch: pytest.MonkeyPatch) -> tuple[str, ...]:
    """Command line of the local CLI stand-in, importable from child processes."""

    existing = os.environ.get("PYTHONPATH")
    monkeypatch.setenv(
        "PYTHONPATH",
        os.pathsep.join([str(SRC_DIR), existing]) if existing else str(SRC_DIR),
    )
    return ECHO_AGENT_COMMAND


@pytest.fixture()
def echo_log(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Record every echo agent invocation to a JSON-lines file."""

    log_path = tmp_path / "echo-agent.jsonl"
    monkeypatch.setenv("AGENT_PIPELINE_ECHO_LOG", str(log_path))
    return log_path


@pytest.fixture()
def store(tmp_path: Path) -> Iterator[WorkflowStateStore]:
    state_store = WorkflowStateStore(tmp_path / "state.db")
    state_store.init_schema()
    try:
        yield state_store
    finally:
        state_store.close()
