"""Deterministic detection of the external CLI usage-limit signal."""

from __future__ import annotations

import re
import time
from dataclasses import dataclass

RATE_LIMIT_MARKER = "Claude AI usage limit reached"
_RATE_LIMIT_PATTERN = re.compile(re.escape(RATE_LIMIT_MARKER) + r"\|(\d+)")

TIMEOUT_CLASS_WAIT_SECONDS = 6 * 60 * 60


@dataclass(slots=True)
class RateLimitInfo:
    """Parsed usage-limit signal."""

    reset_at: float
    wait_seconds: float
    is_timeout: bool


def detect_rate_limit(
    *,
    stdout: str,
    stderr: str | None = None,
    now: float | None = None,
) -> RateLimitInfo | None:
    """Return reset info when output carries ``<marker>|<unix-timestamp>``.

    A reset further away than six hours is flagged ``is_timeout`` so callers can
    park the execution as a resumable timeout instead of a short rate-limit pause.
    """

    match = _RATE_LIMIT_PATTERN.search(f"{stdout} {stderr or ''}")
    if match is None:
        return None

    reset_at = float(int(match.group(1)))
    current = time.time() if now is None else now
    wait_seconds = max(0.0, reset_at - current)
    return RateLimitInfo(
        reset_at=reset_at,
        wait_seconds=wait_seconds,
        is_timeout=wait_seconds > TIMEOUT_CLASS_WAIT_SECONDS,
    )
