"""Subprocess-based executor for the external assistant CLI."""

from __future__ import annotations

import logging
import os
import subprocess
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import replace
from pathlib import Path
from typing import IO

from agent_pipeline.orchestrator.errors import (
    RetryExhaustedError,
    SpawnError,
    TaskValidationError,
)
from agent_pipeline.orchestrator.models import CommandResult, TaskOptions
from agent_pipeline.orchestrator.rate_limit import detect_rate_limit
from agent_pipeline.orchestrator.sessions import parse_tool_output

logger = logging.getLogger(__name__)

DEFAULT_COMMAND: tuple[str, ...] = ("claude",)
DEFAULT_MAX_TURNS = 10
SKIP_PERMISSIONS_FLAG = "--dangerously-skip-permissions"
COMMAND_NOT_FOUND_EXIT_CODE = 127
TIMEOUT_EXIT_CODE = 124

MAX_SINGLE_WAIT_SECONDS = 30 * 60
MAX_CUMULATIVE_WAIT_SECONDS = 90 * 60

OutputListener = Callable[[str, str], None]


class StepExecutor:
    """Run one pipeline task as an invocation of the assistant CLI.

    Exactly one process is tracked at a time; ``cancel`` may be called from another
    thread and kills that process.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        command: Iterable[str] = DEFAULT_COMMAND,
        known_models: Iterable[str] | None = None,
        default_timeout_seconds: float | None = None,
        poll_interval_seconds: float = 0.05,
        on_output: OutputListener | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.command = tuple(command)
        if not self.command:
            raise ValueError("Executor command must not be empty.")
        self.known_models = frozenset(known_models) if known_models is not None else None
        self.default_timeout_seconds = default_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.on_output = on_output
        self._clock = clock
        self._lock = threading.Lock()
        self._cancel_requested = threading.Event()
        self._process: subprocess.Popen[str] | None = None
        self._waiting = False

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._process is not None

    def cancel(self) -> bool:
        """Request cancellation of the active invocation or rate-limit wait."""

        with self._lock:
            active = self._process is not None or self._waiting
            if active:
                self._cancel_requested.set()
        if active:
            logger.info("Cancelling current CLI invocation")
        return active

    def build_args(self, prompt: str, model: str, options: TaskOptions | None = None) -> list[str]:
        """Render the CLI argument vector for one invocation."""

        opts = options or TaskOptions()
        args = list(self.command)
        fresh_session = not opts.continue_conversation and not opts.resume_session_id

        if opts.continue_conversation:
            args.append("--continue")
        elif opts.resume_session_id:
            args.extend(["-r", opts.resume_session_id])
        args.extend(["-p", prompt])

        if model != "auto":
            args.extend(["--model", model])
        if opts.output_format and opts.output_format != "text":
            args.extend(["--output-format", opts.output_format])
        if opts.max_turns and opts.max_turns != DEFAULT_MAX_TURNS:
            args.extend(["--max-turns", str(opts.max_turns)])
        if opts.verbose:
            args.append("--verbose")

        if fresh_session:
            if opts.system_prompt:
                args.extend(["--system-prompt", opts.system_prompt])
            if opts.append_system_prompt:
                args.extend(["--append-system-prompt", opts.append_system_prompt])

        if opts.skip_permissions:
            args.append(SKIP_PERMISSIONS_FLAG)
        else:
            if opts.allowed_tools:
                args.extend(["--allowedTools", ",".join(opts.allowed_tools)])
            if opts.disallowed_tools:
                args.extend(["--disallowedTools", ",".join(opts.disallowed_tools)])

        if opts.mcp_config:
            args.extend(["--mcp-config", opts.mcp_config])
        if opts.permission_prompt_tool and fresh_session:
            args.extend(["--permission-prompt-tool", opts.permission_prompt_tool])
        return args

    def validate(self, model: str, working_directory: Path) -> None:
        if not model or not model.strip():
            raise TaskValidationError("Model must not be empty.")
        if model != "auto" and self.known_models is not None and model not in self.known_models:
            raise TaskValidationError(f"Invalid model: {model}")
        if not working_directory.is_dir():
            raise TaskValidationError(f"Invalid working directory: {working_directory}")

    def execute(
        self,
        prompt: str,
        model: str,
        working_directory: Path,
        options: TaskOptions | None = None,
    ) -> CommandResult:
        """Spawn the CLI and wait for it to exit, time out, or be cancelled."""

        opts = options or TaskOptions()
        working_directory = Path(working_directory)
        self.validate(model, working_directory)
        run_args = self.build_args(prompt, model, opts)
        timeout_seconds = opts.timeout_seconds or self.default_timeout_seconds

        logger.debug("Running %s in %s", run_args[0], working_directory)
        started = time.monotonic()
        try:
            process = subprocess.Popen(  # noqa: S603
                run_args,
                cwd=working_directory,
                env=os.environ.copy(),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except FileNotFoundError as error:
            raise SpawnError(f"CLI command not found: {run_args[0]}") from error
        except OSError as error:
            raise SpawnError(f"CLI failed to start: {error}") from error

        with self._lock:
            self._process = process
        stdout_chunks: list[str] = []
        stderr_chunks: list[str] = []
        readers = [
            _start_reader(process.stdout, stdout_chunks, "stdout", self.on_output),
            _start_reader(process.stderr, stderr_chunks, "stderr", self.on_output),
        ]
        try:
            returncode, timed_out, cancelled = self._wait_for_exit(
                process,
                timeout_seconds=timeout_seconds,
            )
        finally:
            for reader in readers:
                reader.join(timeout=5)
            with self._lock:
                self._process = None
                self._cancel_requested.clear()

        stdout = "".join(stdout_chunks)
        stderr = "".join(stderr_chunks)
        duration_ms = int((time.monotonic() - started) * 1000)
        return self._build_result(
            stdout=stdout,
            stderr=stderr,
            returncode=returncode,
            timed_out=timed_out,
            cancelled=cancelled,
            timeout_seconds=timeout_seconds,
            output_format=opts.output_format,
            duration_ms=duration_ms,
        )

    def execute_with_retry(
        self,
        prompt: str,
        model: str,
        working_directory: Path,
        options: TaskOptions | None = None,
        *,
        max_retries: int = 3,
    ) -> CommandResult:
        """Execute, waiting out usage limits for at most ``max_retries`` attempts.

        Raises:
            RetryExhaustedError: the last attempt was still rate limited, or the
                cumulative wait would exceed the allowed budget.
        """

        opts = options or TaskOptions()
        session_id = opts.resume_session_id
        total_wait = 0.0
        attempts = max(1, max_retries)

        for attempt in range(attempts):
            attempt_options = opts
            if attempt > 0 and session_id:
                attempt_options = replace(opts, resume_session_id=session_id)

            result = self.execute(prompt, model, working_directory, attempt_options)
            if result.success or not result.rate_limited:
                return result
            if result.session_id:
                session_id = result.session_id

            if attempt == attempts - 1:
                break

            reset_at = result.rate_limit_reset_at or self._clock()
            wait_seconds = min(max(0.0, reset_at - self._clock()), MAX_SINGLE_WAIT_SECONDS)
            if total_wait + wait_seconds > MAX_CUMULATIVE_WAIT_SECONDS:
                raise RetryExhaustedError(
                    "Cumulative rate-limit wait would exceed the allowed budget.",
                    output=result.error or result.output,
                    exit_code=result.exit_code,
                )
            total_wait += wait_seconds
            logger.info(
                "Rate limit detected, attempt %d/%d; waiting %.0f seconds",
                attempt + 1,
                attempts,
                wait_seconds,
            )
            if self._wait(wait_seconds):
                return CommandResult(
                    success=False,
                    output=result.output,
                    error="Invocation cancelled while waiting for rate-limit reset.",
                    exit_code=result.exit_code,
                    cancelled=True,
                )

        raise RetryExhaustedError(
            f"Maximum retries exceeded ({attempts} attempts, still rate limited).",
            output=result.error or result.output,
            exit_code=result.exit_code,
        )

    def _wait(self, seconds: float) -> bool:
        """Sleep for ``seconds`` unless cancelled; return True when cancelled."""

        if seconds <= 0:
            return False
        with self._lock:
            self._waiting = True
        try:
            return self._cancel_requested.wait(timeout=seconds)
        finally:
            with self._lock:
                self._waiting = False
                self._cancel_requested.clear()

    def _wait_for_exit(
        self,
        process: subprocess.Popen[str],
        *,
        timeout_seconds: float | None,
    ) -> tuple[int | None, bool, bool]:
        start_monotonic = time.monotonic()
        while True:
            returncode = process.poll()
            if returncode is not None:
                return returncode, False, False

            if self._cancel_requested.is_set():
                _terminate_process(process)
                return process.returncode, False, True

            if timeout_seconds and time.monotonic() - start_monotonic >= timeout_seconds:
                _terminate_process(process)
                return process.returncode, True, False

            time.sleep(self.poll_interval_seconds)

    def _build_result(  # noqa: PLR0913
        self,
        *,
        stdout: str,
        stderr: str,
        returncode: int | None,
        timed_out: bool,
        cancelled: bool,
        timeout_seconds: float | None,
        output_format: str,
        duration_ms: int,
    ) -> CommandResult:
        if cancelled:
            return CommandResult(
                success=False,
                output=stdout,
                error="Invocation cancelled.",
                exit_code=returncode,
                cancelled=True,
                duration_ms=duration_ms,
            )
        if timed_out:
            return CommandResult(
                success=False,
                output=stdout,
                error=f"Invocation timed out after {timeout_seconds:g} seconds.",
                exit_code=TIMEOUT_EXIT_CODE,
                timed_out=True,
                duration_ms=duration_ms,
            )

        exit_code = returncode if returncode is not None else 0
        if exit_code == 0:
            session_id = None
            if output_format == "json":
                session_id = parse_tool_output(stdout, output_format).session_id
            return CommandResult(
                success=True,
                output=stdout,
                exit_code=0,
                session_id=session_id,
                duration_ms=duration_ms,
            )

        error_message = (
            stderr.strip() or stdout.strip() or f"Command failed with exit code {exit_code}"
        )
        if exit_code == COMMAND_NOT_FOUND_EXIT_CODE:
            error_message = f"CLI command not found in PATH: {self.command[0]}"
        rate_limit = detect_rate_limit(stdout=stdout, stderr=stderr, now=self._clock())
        return CommandResult(
            success=False,
            output=stdout,
            error=error_message,
            exit_code=exit_code,
            rate_limit_reset_at=rate_limit.reset_at if rate_limit else None,
            rate_limit_is_timeout=rate_limit.is_timeout if rate_limit else False,
            duration_ms=duration_ms,
        )


def _start_reader(
    stream: IO[str] | None,
    chunks: list[str],
    name: str,
    listener: OutputListener | None,
) -> threading.Thread:
    def _pump() -> None:
        if stream is None:
            return
        for line in iter(stream.readline, ""):
            chunks.append(line)
            if listener is not None:
                listener(name, line)
        stream.close()

    thread = threading.Thread(target=_pump, daemon=True, name=f"cli-{name}-reader")
    thread.start()
    return thread


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
