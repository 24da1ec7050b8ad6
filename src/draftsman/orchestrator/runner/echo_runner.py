"""Local deterministic runner for demos and command-runner integration tests.

``investigate`` completes immediately. ``fix`` first asks for confirmation
and completes once an answer arrives.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Any

from draftsman.orchestrator.runner.base import (
    RunnerNeedsInput,
    RunnerOutcome,
    RunnerRequest,
    RunnerSuccess,
    load_json,
    outcome_to_payload,
    write_json,
)


def decide(request: dict[str, Any]) -> RunnerOutcome:
    repo = str(request.get("repo", ""))
    job_id = str(request.get("job_id", ""))
    if request.get("mode") != "fix":
        return RunnerSuccess(result={"summary": f"Investigated {repo}", "runner": "echo"})

    answer = request.get("answer")
    if not answer:
        return RunnerNeedsInput(
            checkpoint={"step": "plan_ready", "repo": repo},
            question={"text": f"Open a pull request against {repo}?", "options": ["yes", "no"]},
        )

    reply = str((answer.get("payload") or {}).get("text", "")).strip().lower()
    if reply.startswith("n"):
        return RunnerSuccess(result={"summary": "Fix abandoned by responder", "runner": "echo"})
    return RunnerSuccess(
        result={
            "summary": f"Opened draft pull request for {repo}",
            "pull_request": f"{repo}#draft-{job_id[:8]}",
            "runner": "echo",
        },
    )


class EchoRunner:
    """In-process flavour of the echo runner."""

    def run(self, request: RunnerRequest) -> RunnerOutcome:
        return decide(request.to_payload())


def main(argv: list[str] | None = None) -> int:
    """Read a request file and write the deterministic outcome."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--request-file", required=True)
    parser.add_argument("--outcome-file", required=True)
    args = parser.parse_args(argv)

    request = load_json(Path(args.request_file))
    write_json(Path(args.outcome_file), outcome_to_payload(decide(request)))
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
