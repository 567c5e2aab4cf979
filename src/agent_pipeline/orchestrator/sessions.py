"""Session reference resolution and structured CLI output parsing."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass

logger = logging.getLogger(__name__)

_STEP_SESSION_REFERENCE = re.compile(
    r"^\s*(?:\$\{\{\s*)?steps\.([A-Za-z0-9_-]+)\.outputs\.session_id(?:\s*\}\})?\s*$",
)
_SESSION_ID_TOKEN = re.compile(
    r"^(?:ses_[A-Za-z0-9_-]+"
    r"|[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12})$",
)


def step_reference_target(reference: str) -> str | None:
    """Return the step id named by a ``steps.<id>.outputs.session_id`` reference."""

    match = _STEP_SESSION_REFERENCE.match(reference)
    return match.group(1) if match else None


def is_session_id(value: str) -> bool:
    return bool(_SESSION_ID_TOKEN.match(value.strip()))


def resolve_session_reference(
    session_mappings: Mapping[str, str],
    reference: str | None,
) -> str | None:
    """Map a symbolic session reference to a concrete session id.

    Templated step references resolve through ``session_mappings``; a bare
    session-id token is returned as is. Anything else resolves to None, which
    callers treat as "start a fresh conversation".
    """

    if not reference:
        return None

    step_id = step_reference_target(reference)
    if step_id is not None:
        return session_mappings.get(step_id) or None

    token = reference.strip()
    if is_session_id(token):
        return token
    return None


@dataclass(slots=True)
class ParsedToolOutput:
    """Result text and session id extracted from CLI stdout."""

    result_text: str
    session_id: str | None


def parse_tool_output(output: str, output_format: str | None) -> ParsedToolOutput:
    """Extract ``result`` and ``session_id`` from JSON output.

    Non-JSON formats and malformed JSON fall back to the raw text; this never raises.
    """

    if output_format != "json":
        return ParsedToolOutput(result_text=output, session_id=None)

    try:
        payload = json.loads(output.strip())
    except json.JSONDecodeError:
        logger.warning("CLI output is not valid JSON; keeping raw text")
        return ParsedToolOutput(result_text=output, session_id=None)

    if not isinstance(payload, dict):
        return ParsedToolOutput(result_text=output, session_id=None)

    session_id = payload.get("session_id")
    result = payload.get("result")
    if isinstance(result, str) and result:
        result_text = result
    else:
        result_text = json.dumps(payload, indent=2, ensure_ascii=False)
    return ParsedToolOutput(
        result_text=result_text,
        session_id=session_id if isinstance(session_id, str) and session_id else None,
    )
