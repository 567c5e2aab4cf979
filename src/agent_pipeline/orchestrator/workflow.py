"""GitHub-Actions-style workflow files: parsing, validation and task conversion."""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import yaml

from agent_pipeline.orchestrator.errors import WorkflowDefinitionError
from agent_pipeline.orchestrator.models import ConditionType, TaskOptions, TaskRecord
from agent_pipeline.orchestrator.sessions import is_session_id, step_reference_target

logger = logging.getLogger(__name__)

CLAUDE_STEP_MARKER = "claude-pipeline-action"
DEFAULT_STEP_USES = "anthropics/claude-pipeline-action@v1"
VALID_CONDITIONS = tuple(item.value for item in ConditionType)

_SIMPLE_STEP_ID = re.compile(r"^[A-Za-z0-9_-]+$")
_INPUT_VARIABLE = re.compile(r"\$\{\{\s*inputs\.(\w+)\s*\}\}")
_ENV_VARIABLE = re.compile(r"\$\{\{\s*env\.(\w+)\s*\}\}")


@dataclass(slots=True)
class WorkflowDefinition:
    """Validated workflow document."""

    name: str
    jobs: dict[str, Any]
    inputs: dict[str, dict[str, Any]] = field(default_factory=dict)
    env: dict[str, str] = field(default_factory=dict)
    raw: dict[str, Any] = field(default_factory=dict)
    source_path: Path | None = None

    def claude_steps(self) -> list[dict[str, Any]]:
        steps: list[dict[str, Any]] = []
        for job in self.jobs.values():
            steps.extend(step for step in job.get("steps", []) if is_claude_step(step))
        return steps


def is_claude_step(step: Mapping[str, Any]) -> bool:
    uses = step.get("uses")
    return isinstance(uses, str) and CLAUDE_STEP_MARKER in uses


def session_reference_step(value: str) -> str | None:
    """Return the step id a ``resume_session`` value points at.

    Both the bare step id and the templated ``${{ steps.<id>.outputs.session_id }}``
    form are accepted.
    """

    stripped = value.strip()
    if _SIMPLE_STEP_ID.match(stripped):
        return stripped
    return step_reference_target(stripped)


def load_workflow(path: Path) -> WorkflowDefinition:
    """Read and validate a workflow file.

    Raises:
        WorkflowDefinitionError: the file is missing, not YAML, or invalid.
    """

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as error:
        raise WorkflowDefinitionError(f"Cannot read workflow file {path}: {error}") from error
    workflow = parse_workflow(content, source=str(path))
    workflow.source_path = path
    return workflow


def parse_workflow(content: str, *, source: str = "<string>") -> WorkflowDefinition:
    try:
        payload = yaml.safe_load(content)
    except yaml.YAMLError as error:
        raise WorkflowDefinitionError(
            f"Failed to parse workflow YAML ({source}): {error}",
        ) from error

    validate_workflow(payload)
    inputs = _declared_inputs(payload)
    return WorkflowDefinition(
        name=str(payload["name"]),
        jobs=payload["jobs"],
        inputs={str(key): dict(value or {}) for key, value in inputs.items()},
        env={str(key): str(value) for key, value in (payload.get("env") or {}).items()},
        raw=payload,
    )


def _declared_inputs(payload: Mapping[Any, Any]) -> Mapping[str, Any]:
    if payload.get("inputs"):
        return payload["inputs"]
    # YAML 1.1 loads a bare `on:` key as boolean True.
    trigger = payload.get("on", payload.get(True)) or {}
    if not isinstance(trigger, dict):
        return {}
    dispatch = trigger.get("workflow_dispatch") or {}
    return dispatch.get("inputs") or {} if isinstance(dispatch, dict) else {}


def validate_workflow(payload: Any) -> None:  # noqa: C901
    """Raise WorkflowDefinitionError describing the first structural problem."""

    if not isinstance(payload, dict):
        raise WorkflowDefinitionError("Workflow must be a YAML mapping.")
    if not payload.get("name"):
        raise WorkflowDefinitionError("Workflow must have a name")

    jobs = payload.get("jobs")
    if not isinstance(jobs, dict) or not jobs:
        raise WorkflowDefinitionError("Workflow must have at least one job")

    step_ids: set[str] = set()
    references: list[tuple[str, str]] = []
    for job_name, job in jobs.items():
        steps = job.get("steps") if isinstance(job, dict) else None
        if not isinstance(steps, list) or not steps:
            raise WorkflowDefinitionError(f"Job '{job_name}' must have at least one step")

        for step in steps:
            if not isinstance(step, dict):
                raise WorkflowDefinitionError(f"Job '{job_name}' has a step that is not a mapping")
            step_id = step.get("id")
            if step_id is not None:
                if str(step_id) in step_ids:
                    raise WorkflowDefinitionError(f"Duplicate step id '{step_id}'")
                step_ids.add(str(step_id))
            if not is_claude_step(step):
                continue

            label = str(step.get("name") or step_id or "unnamed")
            with_block = step.get("with")
            if not isinstance(with_block, dict) or not with_block.get("prompt"):
                raise WorkflowDefinitionError(f"Claude step '{label}' must have a prompt")

            check = with_block.get("check")
            if check is not None and not isinstance(check, str):
                raise WorkflowDefinitionError(
                    f"Check command in step '{label}' must be a string",
                )
            condition = with_block.get("condition")
            if condition is not None and condition not in VALID_CONDITIONS:
                raise WorkflowDefinitionError(
                    f"Invalid condition type in step '{label}': {condition}. "
                    f"Must be one of: {', '.join(VALID_CONDITIONS)}",
                )

            resume_session = with_block.get("resume_session")
            if resume_session:
                value = str(resume_session)
                if is_session_id(value):
                    continue
                target = session_reference_step(value)
                if target is None:
                    raise WorkflowDefinitionError(
                        f"Invalid session reference in step '{label}': {value}",
                    )
                references.append((label, target))

    for label, target in references:
        if target not in step_ids:
            raise WorkflowDefinitionError(f"Step '{label}' references unknown step '{target}'")


def resolve_variables(
    template: str,
    *,
    inputs: Mapping[str, str] | None = None,
    env: Mapping[str, str] | None = None,
) -> str:
    """Substitute ``${{ inputs.x }}`` and ``${{ env.x }}``; unknown names become ''."""

    resolved = template
    if inputs is not None:
        resolved = _INPUT_VARIABLE.sub(lambda match: str(inputs.get(match.group(1), "")), resolved)
    if env is not None:
        resolved = _ENV_VARIABLE.sub(lambda match: str(env.get(match.group(1), "")), resolved)
    return resolved


def resolve_inputs(
    workflow: WorkflowDefinition,
    provided: Mapping[str, str] | None = None,
    *,
    require_inputs: bool = True,
) -> dict[str, str]:
    """Merge provided input values with declared defaults.

    Raises:
        WorkflowDefinitionError: a required input has neither a value nor a default
            and ``require_inputs`` is set.
    """

    values = dict(provided or {})
    for name, definition in workflow.inputs.items():
        if name in values:
            continue
        if definition.get("default") is not None:
            values[name] = str(definition["default"])
        elif definition.get("required") and require_inputs:
            raise WorkflowDefinitionError(f"Missing required input: {name}")
    return values


def workflow_to_tasks(
    workflow: WorkflowDefinition,
    *,
    inputs: Mapping[str, str] | None = None,
    base_options: TaskOptions | None = None,
    require_inputs: bool = True,
) -> list[TaskRecord]:
    """Convert the workflow's Claude steps into an ordered task list.

    With ``require_inputs=False`` missing required inputs render as empty strings,
    which is enough for listing steps without running them.
    """

    input_values = resolve_inputs(workflow, inputs, require_inputs=require_inputs)
    tasks: list[TaskRecord] = []
    for job in workflow.jobs.values():
        job_env = {**workflow.env, **{str(k): str(v) for k, v in (job.get("env") or {}).items()}}
        for step in job["steps"]:
            if not is_claude_step(step):
                logger.debug("Ignoring non-Claude step %s", step.get("id") or step.get("name"))
                continue
            env = {**job_env, **{str(k): str(v) for k, v in (step.get("env") or {}).items()}}
            tasks.append(
                _step_to_task(
                    step,
                    index=len(tasks),
                    inputs=input_values,
                    env=env,
                    base_options=base_options,
                ),
            )
    return tasks


def _step_to_task(
    step: Mapping[str, Any],
    *,
    index: int,
    inputs: Mapping[str, str],
    env: Mapping[str, str],
    base_options: TaskOptions | None,
) -> TaskRecord:
    with_block: dict[str, Any] = step["with"]
    resume_from_task_id = None
    continue_from = None
    resume_session = with_block.get("resume_session")
    if resume_session:
        value = str(resume_session).strip()
        if is_session_id(value):
            continue_from = value
        else:
            resume_from_task_id = session_reference_step(value)

    depends_on = with_block.get("depends_on") or ()
    if isinstance(depends_on, str):
        depends_on = (depends_on,)

    condition = with_block.get("condition")
    return TaskRecord(
        id=str(step.get("id") or f"step-{index}"),
        name=step.get("name"),
        prompt=resolve_variables(str(with_block["prompt"]), inputs=inputs, env=env),
        model=with_block.get("model"),
        depends_on=tuple(str(item) for item in depends_on),
        condition=ConditionType(condition) if condition else None,
        check=with_block.get("check"),
        resume_from_task_id=resume_from_task_id,
        continue_from=continue_from,
        output_session=bool(with_block.get("output_session", False)),
        continue_on_error=bool(
            with_block.get("continue_on_error", step.get("continue-on-error", False)),
        ),
        options=_step_options(with_block, base_options),
    )


def _step_options(
    with_block: Mapping[str, Any],
    base_options: TaskOptions | None,
) -> TaskOptions | None:
    overrides = {
        key: bool(with_block[key])
        for key in ("allow_all_tools", "bypass_permissions")
        if key in with_block
    }
    if not overrides:
        return None
    return replace(base_options or TaskOptions(), **overrides)


def tasks_to_workflow(
    name: str,
    tasks: list[TaskRecord],
    *,
    model: str,
    description: str | None = None,
) -> dict[str, Any]:
    """Render a task list as a workflow document."""

    referenced = {task.resume_from_task_id for task in tasks if task.resume_from_task_id}
    for task in tasks:
        target = step_reference_target(task.continue_from) if task.continue_from else None
        if target is not None:
            referenced.add(target)
    steps: list[dict[str, Any]] = []
    for task in tasks:
        with_block: dict[str, Any] = {"prompt": task.prompt, "model": task.model or model}
        if task.options is not None:
            with_block["allow_all_tools"] = task.options.allow_all_tools
            with_block["bypass_permissions"] = task.options.bypass_permissions
        if task.resume_from_task_id:
            with_block["resume_session"] = (
                f"${{{{ steps.{task.resume_from_task_id}.outputs.session_id }}}}"
            )
        elif task.continue_from:
            with_block["resume_session"] = task.continue_from
        if task.output_session and task.id in referenced:
            with_block["output_session"] = True
        if task.condition is not None:
            with_block["condition"] = task.condition.value
        if task.check:
            with_block["check"] = task.check
        if task.continue_on_error:
            with_block["continue_on_error"] = True
        if task.depends_on:
            with_block["depends_on"] = list(task.depends_on)
        steps.append(
            {
                "id": task.id,
                "name": task.name or f"Task {task.id}",
                "uses": DEFAULT_STEP_USES,
                "with": with_block,
            },
        )

    return {
        "name": name,
        "on": {
            "workflow_dispatch": {
                "inputs": {
                    "description": {
                        "description": description or "Pipeline execution",
                        "required": False,
                        "type": "string",
                    },
                },
            },
        },
        "jobs": {
            "pipeline": {
                "name": "Pipeline Execution",
                "runs-on": "ubuntu-latest",
                "steps": steps,
            },
        },
    }


def to_yaml(payload: Mapping[str, Any]) -> str:
    return yaml.safe_dump(dict(payload), sort_keys=False, allow_unicode=True, width=1_000_000)


def save_workflow(path: Path, payload: Mapping[str, Any]) -> Path:
    """Validate and write a workflow document; returns the written path."""

    validate_workflow(dict(payload))
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(to_yaml(payload), encoding="utf-8")
    logger.info("Workflow saved to %s", path)
    return path
