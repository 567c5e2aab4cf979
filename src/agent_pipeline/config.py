"""Runtime configuration for the pipeline engine and its CLI."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path

from agent_pipeline.orchestrator.models import TaskOptions

OUTPUT_FORMATS = ("text", "json", "stream-json")


@dataclass(slots=True)
class ExecutorSettings:
    """External CLI invocation settings."""

    command: tuple[str, ...] = ("claude",)
    default_model: str = "auto"
    known_models: tuple[str, ...] = ()
    output_format: str = "json"
    max_turns: int = 10
    skip_permissions: bool = False
    timeout_seconds: float = 0.0
    poll_interval_seconds: float = 0.05


@dataclass(slots=True)
class PipelineSettings:
    """Orchestration settings."""

    working_directory: Path = Path(".")
    retry_rate_limits: bool = False
    max_retries: int = 3
    # How many independent pipelines an embedding host may run side by side; a single
    # pipeline never runs tasks in parallel.
    parallel_tasks: int = 1
    availability_ttl_seconds: float = 300.0


@dataclass(slots=True)
class StoreSettings:
    """Durable state retention settings."""

    retention_days: int = 30


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".agent_pipeline.db")
    sqlite_busy_timeout_ms: int = 5_000
    executor: ExecutorSettings = field(default_factory=ExecutorSettings)
    pipeline: PipelineSettings = field(default_factory=PipelineSettings)
    store: StoreSettings = field(default_factory=StoreSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("AGENT_PIPELINE_DB_PATH", ".agent_pipeline.db")),
            sqlite_busy_timeout_ms=int(os.getenv("AGENT_PIPELINE_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            executor=ExecutorSettings(
                command=_env_command("AGENT_PIPELINE_CLI_COMMAND", default=("claude",)),
                default_model=os.getenv("AGENT_PIPELINE_DEFAULT_MODEL", "auto"),
                known_models=_env_csv("AGENT_PIPELINE_KNOWN_MODELS"),
                output_format=os.getenv("AGENT_PIPELINE_OUTPUT_FORMAT", "json"),
                max_turns=int(os.getenv("AGENT_PIPELINE_MAX_TURNS", "10")),
                skip_permissions=_env_bool("AGENT_PIPELINE_SKIP_PERMISSIONS", default=False),
                timeout_seconds=float(os.getenv("AGENT_PIPELINE_TIMEOUT_SECONDS", "0")),
                poll_interval_seconds=float(
                    os.getenv("AGENT_PIPELINE_POLL_INTERVAL_SECONDS", "0.05"),
                ),
            ),
            pipeline=PipelineSettings(
                working_directory=Path(os.getenv("AGENT_PIPELINE_WORKING_DIRECTORY", ".")),
                retry_rate_limits=_env_bool("AGENT_PIPELINE_RETRY_RATE_LIMITS", default=False),
                max_retries=int(os.getenv("AGENT_PIPELINE_MAX_RETRIES", "3")),
                parallel_tasks=int(os.getenv("AGENT_PIPELINE_PARALLEL_TASKS", "1")),
                availability_ttl_seconds=float(
                    os.getenv("AGENT_PIPELINE_AVAILABILITY_TTL_SECONDS", "300"),
                ),
            ),
            store=StoreSettings(
                retention_days=int(os.getenv("AGENT_PIPELINE_STATE_RETENTION_DAYS", "30")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error on out-of-range values."""

        if not self.executor.command:
            raise ValueError("AGENT_PIPELINE_CLI_COMMAND must not be empty.")
        if not self.executor.default_model.strip():
            raise ValueError("AGENT_PIPELINE_DEFAULT_MODEL must not be empty.")
        if (
            self.executor.known_models
            and self.executor.default_model != "auto"
            and self.executor.default_model not in self.executor.known_models
        ):
            raise ValueError(
                "AGENT_PIPELINE_DEFAULT_MODEL must be 'auto' or one of "
                f"AGENT_PIPELINE_KNOWN_MODELS: {self.executor.default_model!r}",
            )
        if self.executor.output_format not in OUTPUT_FORMATS:
            raise ValueError(
                "AGENT_PIPELINE_OUTPUT_FORMAT must be one of "
                f"{', '.join(OUTPUT_FORMATS)}: {self.executor.output_format!r}",
            )
        if self.executor.max_turns <= 0:
            raise ValueError("AGENT_PIPELINE_MAX_TURNS must be > 0.")
        if self.executor.timeout_seconds < 0:
            raise ValueError("AGENT_PIPELINE_TIMEOUT_SECONDS must be >= 0.")
        if self.executor.poll_interval_seconds <= 0:
            raise ValueError("AGENT_PIPELINE_POLL_INTERVAL_SECONDS must be > 0.")
        if self.pipeline.max_retries <= 0:
            raise ValueError("AGENT_PIPELINE_MAX_RETRIES must be > 0.")
        if not 1 <= self.pipeline.parallel_tasks <= 8:  # noqa: PLR2004
            raise ValueError("AGENT_PIPELINE_PARALLEL_TASKS must be between 1 and 8.")
        if self.pipeline.availability_ttl_seconds < 0:
            raise ValueError("AGENT_PIPELINE_AVAILABILITY_TTL_SECONDS must be >= 0.")
        if self.store.retention_days < 0:
            raise ValueError("AGENT_PIPELINE_STATE_RETENTION_DAYS must be >= 0.")
        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("AGENT_PIPELINE_SQLITE_BUSY_TIMEOUT_MS must be > 0.")

    def task_options(self) -> TaskOptions:
        """Default per-invocation flags derived from executor settings."""

        return TaskOptions(
            bypass_permissions=self.executor.skip_permissions,
            output_format=self.executor.output_format,
            max_turns=self.executor.max_turns,
            timeout_seconds=self.executor.timeout_seconds or None,
        )


def _env_command(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return tuple(shlex.split(raw))
    except ValueError as error:
        raise ValueError(f"Invalid command for {name}: {raw!r} ({error})") from error


def _env_csv(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "")
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
