"""Caller-owned cache of whether the assistant CLI is installed."""

from __future__ import annotations

import logging
import shutil
import subprocess
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

PROBE_TIMEOUT_SECONDS = 10.0


@dataclass(slots=True)
class ToolAvailability:
    """Verdict of one probe."""

    available: bool
    executable: str
    resolved_path: str | None = None
    version: str | None = None
    error: str | None = None
    checked_at: float = 0.0


class ToolAvailabilityCache:
    """Probe ``<command> --version`` (then ``--help``) and remember the verdict for a TTL.

    One instance is owned and passed around by the caller; there is no module-level
    cache.
    """

    def __init__(
        self,
        command: Iterable[str] = ("claude",),
        *,
        ttl_seconds: float = 300.0,
        probe_timeout_seconds: float = PROBE_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.command = tuple(command)
        if not self.command:
            raise ValueError("Probe command must not be empty.")
        if ttl_seconds < 0:
            raise ValueError("ttl_seconds must be >= 0.")
        self.ttl_seconds = ttl_seconds
        self.probe_timeout_seconds = probe_timeout_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._cached: ToolAvailability | None = None

    def check(self, *, force: bool = False) -> ToolAvailability:
        with self._lock:
            cached = self._cached
            if (
                not force
                and cached is not None
                and self._clock() - cached.checked_at < self.ttl_seconds
            ):
                return cached
            result = self._probe()
            self._cached = result
            return result

    def is_available(self) -> bool:
        return self.check().available

    def invalidate(self) -> None:
        with self._lock:
            self._cached = None

    def _probe(self) -> ToolAvailability:
        executable = self.command[0]
        checked_at = self._clock()
        resolved = shutil.which(executable)
        if resolved is None:
            logger.info("CLI executable not found in PATH: %s", executable)
            return ToolAvailability(
                available=False,
                executable=executable,
                error=f"Executable not found in PATH: {executable}",
                checked_at=checked_at,
            )

        error: str | None = "Probe command failed."
        for flag in ("--version", "--help"):
            try:
                completed = subprocess.run(  # noqa: S603
                    [resolved, *self.command[1:], flag],
                    check=False,
                    capture_output=True,
                    text=True,
                    timeout=self.probe_timeout_seconds,
                )
            except subprocess.TimeoutExpired:
                error = "Probe timed out."
                break
            except OSError as probe_error:
                error = f"Probe failed to start: {probe_error}"
                break

            if completed.returncode == 0:
                first_line = completed.stdout.strip().splitlines()[:1]
                version = first_line[0] if first_line and flag == "--version" else None
                logger.debug("CLI probe %s succeeded: %s", flag, version or "-")
                return ToolAvailability(
                    available=True,
                    executable=executable,
                    resolved_path=resolved,
                    version=version,
                    checked_at=checked_at,
                )

        return ToolAvailability(
            available=False,
            executable=executable,
            resolved_path=resolved,
            error=error,
            checked_at=checked_at,
        )
