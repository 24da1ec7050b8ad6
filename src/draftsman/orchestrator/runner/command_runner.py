"""Subprocess-based runner for external investigate/fix commands.

The command receives a JSON request file and must write a JSON outcome file
(see ``outcome_from_payload``). Exit code 75 (EX_TEMPFAIL) marks a transient
failure; any other non-zero exit is classified from stderr.
"""

from __future__ import annotations

import json
import logging
import os
import shlex
import subprocess
import time
from collections.abc import Callable
from pathlib import Path
from typing import IO

from draftsman.orchestrator.runner.base import (
    RunnerFailed,
    RunnerOutcome,
    RunnerOutcomeError,
    RunnerRequest,
    load_json,
    outcome_from_payload,
    write_json,
)

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
TRANSIENT_EXIT_CODES: tuple[int, ...] = (75,)
STDERR_TAIL_CHARS = 2000
CANCEL_POLL_SECONDS = 1.0


class CommandRunnerError(RuntimeError):
    """Runner execution error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class CommandRunner:
    """Execute a command template once per job attempt."""

    def __init__(
        self,
        command_template: str,
        *,
        workdir_root: Path,
        timeout_seconds: int,
        graceful_cancel_seconds: int = 10,
    ) -> None:
        self.command_template = command_template
        self.workdir_root = workdir_root
        self.timeout_seconds = timeout_seconds
        self.graceful_cancel_seconds = graceful_cancel_seconds

    def run(self, request: RunnerRequest) -> RunnerOutcome:
        workdir = self.workdir_root / request.job_id / f"attempt-{request.attempt}"
        request_file = workdir / "request.json"
        outcome_file = workdir / "outcome.json"
        stdout_path = workdir / "stdout.log"
        stderr_path = workdir / "stderr.log"
        write_json(request_file, request.to_payload())
        outcome_file.unlink(missing_ok=True)

        try:
            run_args = build_run_args(
                command_template=self.command_template,
                request_file=request_file,
                outcome_file=outcome_file,
                job_id=request.job_id,
                mode=request.mode.value,
            )
        except CommandRunnerError as error:
            return RunnerFailed(error=str(error), retryable=error.transient)

        env = os.environ.copy()
        env["DRAFTSMAN_JOB_ID"] = request.job_id
        env["DRAFTSMAN_MODE"] = request.mode.value
        env["DRAFTSMAN_REQUEST_FILE"] = str(request_file)
        env["DRAFTSMAN_OUTCOME_FILE"] = str(outcome_file)

        try:
            with (
                stdout_path.open("w", encoding="utf-8") as stdout_handle,
                stderr_path.open("w", encoding="utf-8") as stderr_handle,
            ):
                exit_code, timed_out, canceled = _run_subprocess(
                    run_args=run_args,
                    env=env,
                    cwd=workdir,
                    timeout_seconds=self.timeout_seconds,
                    stdout_handle=stdout_handle,
                    stderr_handle=stderr_handle,
                    cancel_requested=request.cancel_requested,
                    graceful_cancel_seconds=self.graceful_cancel_seconds,
                )
        except FileNotFoundError:
            return RunnerFailed(error=f"runner command not found: {run_args[0]}", retryable=False)
        except OSError as error:
            return RunnerFailed(error=f"runner failed to start: {error}", retryable=True)

        if timed_out:
            return RunnerFailed(
                error=f"runner exceeded {self.timeout_seconds}s",
                retryable=False,
                timed_out=True,
            )
        if canceled:
            return RunnerFailed(error="runner stopped after cancel request", retryable=False)
        if exit_code != 0:
            return RunnerFailed(
                error=_failure_text(exit_code=exit_code, stderr_path=stderr_path),
                retryable=True if exit_code in TRANSIENT_EXIT_CODES else None,
            )

        if not outcome_file.exists():
            return RunnerFailed(error="runner exited 0 without writing an outcome", retryable=False)
        try:
            return outcome_from_payload(load_json(outcome_file))
        except (json.JSONDecodeError, RunnerOutcomeError) as error:
            logger.warning("Invalid runner outcome for job %s: %s", request.job_id, error)
            return RunnerFailed(error=f"invalid runner outcome: {error}", retryable=False)


def build_run_args(
    *,
    command_template: str,
    request_file: Path,
    outcome_file: Path,
    job_id: str,
    mode: str,
) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise CommandRunnerError("Runner command template is empty.", transient=False)
    try:
        rendered = stripped.format(
            request_file=shlex.quote(str(request_file)),
            outcome_file=shlex.quote(str(outcome_file)),
            job_id=shlex.quote(job_id),
            mode=shlex.quote(mode),
        )
    except (KeyError, IndexError) as error:
        raise CommandRunnerError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise CommandRunnerError("Runner command template rendered empty command.", transient=False)
    return argv


def _failure_text(*, exit_code: int, stderr_path: Path) -> str:
    try:
        stderr = stderr_path.read_text("utf-8", errors="replace").strip()
    except OSError:
        stderr = ""
    if len(stderr) > STDERR_TAIL_CHARS:
        stderr = stderr[-STDERR_TAIL_CHARS:]
    if stderr:
        return f"runner exited with code {exit_code}: {stderr}"
    return f"runner exited with code {exit_code}"


def _run_subprocess(  # noqa: PLR0913
    *,
    run_args: list[str],
    env: dict[str, str],
    cwd: Path,
    timeout_seconds: int,
    stdout_handle: IO[str],
    stderr_handle: IO[str],
    cancel_requested: Callable[[], bool] | None,
    graceful_cancel_seconds: int,
) -> tuple[int, bool, bool]:
    """Returns ``(exit_code, timed_out, canceled)``."""

    process = subprocess.Popen(  # noqa: S603
        run_args,
        env=env,
        cwd=cwd,
        stdout=stdout_handle,
        stderr=stderr_handle,
        text=True,
    )
    start_monotonic = time.monotonic()
    cancel_deadline: float | None = None
    next_cancel_poll = start_monotonic
    graceful_seconds = max(0, graceful_cancel_seconds)

    while True:
        returncode = process.poll()
        if returncode is not None:
            return returncode, False, False

        now = time.monotonic()
        if now - start_monotonic >= timeout_seconds:
            _terminate_process(process)
            return TIMEOUT_EXIT_CODE, True, False

        if cancel_deadline is None and cancel_requested is not None and now >= next_cancel_poll:
            next_cancel_poll = now + CANCEL_POLL_SECONDS
            if cancel_requested():
                cancel_deadline = now + graceful_seconds
        if cancel_deadline is not None and now >= cancel_deadline:
            _terminate_process(process)
            return TIMEOUT_EXIT_CODE, False, True

        time.sleep(0.1)


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
