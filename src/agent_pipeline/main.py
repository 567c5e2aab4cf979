"""CLI entrypoint for agent-pipeline."""

import logging
from pathlib import Path

import rich_click as click

from agent_pipeline import __version__
from agent_pipeline.orchestrator.controllers import (
    CheckToolCommand,
    CleanupStatesCommand,
    DeleteStateCommand,
    InspectStateCommand,
    ListStatesCommand,
    PauseExecutionCommand,
    PipelineCliController,
    PipelineCommandResult,
    ResumeExecutionCommand,
    RunWorkflowCommand,
    ValidateWorkflowCommand,
)

click.rich_click.USE_MARKDOWN = True
PIPELINE_CONTROLLER = PipelineCliController()


@click.group()
@click.version_option(version=__version__, prog_name="agent-pipeline")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
def agent_pipeline(verbose: bool) -> None:
    """Run resumable pipelines of assistant CLI invocations."""

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


@agent_pipeline.command("run")
@click.argument("workflow_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--input",
    "inputs",
    multiple=True,
    help="Workflow input as name=value. Can be repeated.",
)
@click.option(
    "--model",
    default=None,
    help="Model override; defaults to AGENT_PIPELINE_DEFAULT_MODEL.",
)
@click.option(
    "--working-directory",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=None,
    help="Directory the CLI runs in; defaults to AGENT_PIPELINE_WORKING_DIRECTORY.",
)
@click.option(
    "--output-format",
    type=click.Choice(["text", "json", "stream-json"], case_sensitive=False),
    default=None,
    help="CLI output format; json is required to capture session ids.",
)
def run_workflow(  # noqa: PLR0913
    workflow_path: Path,
    db_path: Path | None,
    inputs: tuple[str, ...],
    model: str | None,
    working_directory: Path | None,
    output_format: str | None,
) -> None:
    """Run every step of a workflow file, persisting progress for resume."""

    _emit_result(
        PIPELINE_CONTROLLER.run_workflow(
            RunWorkflowCommand(
                db_path=db_path,
                workflow_path=workflow_path,
                inputs=inputs,
                model=model,
                working_directory=working_directory,
                output_format=output_format.lower() if output_format else None,
            ),
        ),
        failure="Workflow run failed.",
    )


@agent_pipeline.command("resume")
@click.argument("execution_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def resume_execution(execution_id: str, db_path: Path | None) -> None:
    """Resume a paused or timed-out execution from its first unfinished task."""

    _emit_result(
        PIPELINE_CONTROLLER.resume(
            ResumeExecutionCommand(db_path=db_path, execution_id=execution_id),
        ),
        failure="Resume failed.",
    )


@agent_pipeline.command("pause")
@click.argument("execution_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def pause_execution(execution_id: str, db_path: Path | None) -> None:
    """Pause a running execution at its next task boundary."""

    _emit_result(
        PIPELINE_CONTROLLER.pause(
            PauseExecutionCommand(db_path=db_path, execution_id=execution_id),
        ),
        failure="Pause failed.",
    )


@agent_pipeline.command("states")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--resumable/--all",
    "resumable_only",
    default=False,
    show_default=True,
    help="Only list paused executions that can be resumed.",
)
def list_states(db_path: Path | None, resumable_only: bool) -> None:
    """List stored executions, newest first."""

    _emit_lines(
        PIPELINE_CONTROLLER.list_states(
            ListStatesCommand(db_path=db_path, resumable_only=resumable_only),
        ),
    )


@agent_pipeline.command("inspect")
@click.argument("execution_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def inspect_state(execution_id: str, db_path: Path | None) -> None:
    """Show one execution with its steps, sessions, and tasks."""

    _emit_lines(
        PIPELINE_CONTROLLER.inspect(
            InspectStateCommand(db_path=db_path, execution_id=execution_id),
        ),
    )


@agent_pipeline.command("delete")
@click.argument("execution_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def delete_state(execution_id: str, db_path: Path | None) -> None:
    """Delete one stored execution."""

    _emit_lines(
        PIPELINE_CONTROLLER.delete(
            DeleteStateCommand(db_path=db_path, execution_id=execution_id),
        ),
    )


@agent_pipeline.command("cleanup")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--max-age-days",
    type=click.IntRange(min=0),
    default=None,
    help=(
        "Delete finished executions older than this; "
        "defaults to AGENT_PIPELINE_STATE_RETENTION_DAYS."
    ),
)
def cleanup_states(db_path: Path | None, max_age_days: int | None) -> None:
    """Delete old executions that are not running."""

    _emit_lines(
        PIPELINE_CONTROLLER.cleanup(
            CleanupStatesCommand(db_path=db_path, max_age_days=max_age_days),
        ),
    )


@agent_pipeline.command("validate")
@click.argument("workflow_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def validate_workflow(workflow_path: Path) -> None:
    """Validate a workflow file and list its Claude steps."""

    _emit_result(
        PIPELINE_CONTROLLER.validate_workflow(ValidateWorkflowCommand(workflow_path=workflow_path)),
        failure="Workflow is invalid.",
    )


@agent_pipeline.command("check-tool")
@click.option(
    "--command",
    "command_line",
    default=None,
    help="Command line to probe, for example 'claude'; defaults to AGENT_PIPELINE_CLI_COMMAND.",
)
def check_tool(command_line: str | None) -> None:
    """Check that the assistant CLI is installed and answers --version."""

    _emit_result(
        PIPELINE_CONTROLLER.check_tool(CheckToolCommand(command_line=command_line)),
        failure="CLI availability check failed.",
    )


def _emit_result(result: PipelineCommandResult, *, failure: str) -> None:
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException(failure)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_pipeline()
