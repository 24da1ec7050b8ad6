"""Runner implementations."""

from draftsman.orchestrator.runner.base import (
    Runner,
    RunnerFailed,
    RunnerNeedsInput,
    RunnerOutcome,
    RunnerRequest,
    RunnerSuccess,
)
from draftsman.orchestrator.runner.command_runner import CommandRunner, CommandRunnerError
from draftsman.orchestrator.runner.echo_runner import EchoRunner

__all__ = [
    "CommandRunner",
    "CommandRunnerError",
    "EchoRunner",
    "Runner",
    "RunnerFailed",
    "RunnerNeedsInput",
    "RunnerOutcome",
    "RunnerRequest",
    "RunnerSuccess",
]
