"""Runner interface: one call, exactly one terminal outcome."""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from draftsman.orchestrator.models import JobMode


class RunnerOutcomeError(ValueError):
    """Runner produced something that is not one of the three outcomes."""


@dataclass(slots=True)
class RunnerRequest:
    """Inputs for one runner invocation."""

    job_id: str
    mode: JobMode
    repo: str
    workspace_ref: str | None
    ticket_ref: str | None = None
    checkpoint: dict[str, Any] | None = None
    answer: dict[str, Any] | None = None
    attempt: int = 1
    cancel_requested: Callable[[], bool] | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "mode": self.mode.value,
            "repo": self.repo,
            "workspace_ref": self.workspace_ref,
            "ticket_ref": self.ticket_ref,
            "checkpoint": self.checkpoint,
            "answer": self.answer,
            "attempt": self.attempt,
        }


@dataclass(slots=True)
class RunnerSuccess:
    result: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class RunnerFailed:
    """``retryable=None`` leaves the decision to the failure classifier."""

    error: str
    retryable: bool | None = None
    timed_out: bool = False


@dataclass(slots=True)
class RunnerNeedsInput:
    checkpoint: dict[str, Any]
    question: dict[str, Any]
    ttl_seconds: int | None = None


RunnerOutcome = RunnerSuccess | RunnerFailed | RunnerNeedsInput


class Runner(Protocol):
    """Protocol implemented by investigate/fix runners."""

    def run(self, request: RunnerRequest) -> RunnerOutcome:
        """Execute one bounded unit of work and report its outcome."""


def outcome_to_payload(outcome: RunnerOutcome) -> dict[str, Any]:
    if isinstance(outcome, RunnerSuccess):
        return {"status": "success", "result": outcome.result}
    if isinstance(outcome, RunnerFailed):
        payload: dict[str, Any] = {"status": "failed", "error": outcome.error}
        if outcome.retryable is not None:
            payload["retryable"] = outcome.retryable
        return payload
    payload = {
        "status": "needs_input",
        "checkpoint": outcome.checkpoint,
        "question": outcome.question,
    }
    if outcome.ttl_seconds is not None:
        payload["ttl_seconds"] = outcome.ttl_seconds
    return payload


def outcome_from_payload(payload: dict[str, Any]) -> RunnerOutcome:
    """Parse the JSON outcome contract written by external runners."""

    status = payload.get("status")
    if status == "success":
        result = payload.get("result", {})
        if not isinstance(result, dict):
            raise RunnerOutcomeError("success.result must be an object")
        return RunnerSuccess(result=result)
    if status == "failed":
        error = payload.get("error")
        if not isinstance(error, str) or not error.strip():
            raise RunnerOutcomeError("failed.error must be a non-empty string")
        retryable = payload.get("retryable")
        if retryable is not None and not isinstance(retryable, bool):
            raise RunnerOutcomeError("failed.retryable must be a boolean")
        return RunnerFailed(error=error, retryable=retryable)
    if status == "needs_input":
        checkpoint = payload.get("checkpoint")
        question = payload.get("question")
        if not isinstance(checkpoint, dict) or not isinstance(question, dict):
            raise RunnerOutcomeError("needs_input requires checkpoint and question objects")
        ttl_seconds = payload.get("ttl_seconds")
        if ttl_seconds is not None and (
            isinstance(ttl_seconds, bool) or not isinstance(ttl_seconds, int) or ttl_seconds <= 0
        ):
            raise RunnerOutcomeError("needs_input.ttl_seconds must be a positive integer")
        return RunnerNeedsInput(checkpoint=checkpoint, question=question, ttl_seconds=ttl_seconds)
    raise RunnerOutcomeError(f"Unknown runner outcome status: {status!r}")


def write_json(path: Path, payload: dict[str, Any]) -> None:
    """Persist JSON payload using deterministic formatting."""

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True), "utf-8")


def load_json(path: Path) -> dict[str, Any]:
    """Load JSON document and validate top-level object type."""

    payload = json.loads(path.read_text("utf-8"))
    if not isinstance(payload, dict):
        raise RunnerOutcomeError(f"Expected JSON object in {path}")
    return payload
