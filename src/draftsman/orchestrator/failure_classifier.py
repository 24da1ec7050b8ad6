"""Deterministic runner failure classification for worker retry policy."""

from __future__ import annotations

from dataclasses import dataclass

from draftsman.orchestrator.models import FailureClass

RUNNER_FAILURE_CLASSIFIER_VERSION = 1

RETRYABLE_FAILURE_CLASSES = frozenset(
    {FailureClass.RUNNER_TRANSIENT, FailureClass.RUNNER_CRASHED, FailureClass.INFRA_TRANSIENT},
)

_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "authentication failed",
    "bad credentials",
    "invalid token",
)
_REPOSITORY_PATTERNS: tuple[str, ...] = (
    "repository not found",
    "merge conflict",
    "protected branch",
    "not a git repository",
)
_RATE_LIMIT_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "please retry",
    "try again later",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "service unavailable",
    "connection reset",
    "connection refused",
    "network error",
    "could not resolve host",
    "timed out",
    "dns",
    "502",
    "503",
)


@dataclass(slots=True)
class RunnerFailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    @property
    def retryable(self) -> bool:
        return self.failure_class in RETRYABLE_FAILURE_CLASSES

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for audit events."""

        return {
            "classifier_version": RUNNER_FAILURE_CLASSIFIER_VERSION,
            "failure_class": self.failure_class.value,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_runner_failure(  # noqa: PLR0911
    *,
    error: str,
    retryable: bool | None = None,
    timed_out: bool = False,
    crashed: bool = False,
) -> RunnerFailureClassification:
    """Classify a FAILED runner outcome into a deterministic retry class.

    An explicit ``retryable`` hint from the runner wins over text patterns.
    Timeouts are never retried.
    """

    if timed_out:
        return RunnerFailureClassification(
            failure_class=FailureClass.RUNNER_TIMEOUT,
            reason_code="runner_timeout",
            matched_rule="timeout",
            matched_pattern=None,
        )
    if retryable is not None:
        return RunnerFailureClassification(
            failure_class=(
                FailureClass.RUNNER_TRANSIENT if retryable else FailureClass.RUNNER_NON_RETRYABLE
            ),
            reason_code="runner_hint",
            matched_rule="runner_retryable_hint",
            matched_pattern=None,
        )

    haystack = error.lower()

    pattern = _first_match(haystack, _ACCESS_OR_AUTH_PATTERNS)
    if pattern is not None:
        return RunnerFailureClassification(
            failure_class=FailureClass.RUNNER_NON_RETRYABLE,
            reason_code="runner_access_or_auth",
            matched_rule="access_or_auth",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _REPOSITORY_PATTERNS)
    if pattern is not None:
        return RunnerFailureClassification(
            failure_class=FailureClass.RUNNER_NON_RETRYABLE,
            reason_code="runner_repository_state",
            matched_rule="repository_state",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _RATE_LIMIT_TRANSIENT_PATTERNS)
    if pattern is not None:
        return RunnerFailureClassification(
            failure_class=FailureClass.RUNNER_TRANSIENT,
            reason_code="runner_rate_limit_transient",
            matched_rule="rate_limit_transient",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _GENERIC_TRANSIENT_PATTERNS)
    if pattern is not None:
        return RunnerFailureClassification(
            failure_class=FailureClass.RUNNER_TRANSIENT,
            reason_code="runner_transient",
            matched_rule="generic_transient",
            matched_pattern=pattern,
        )

    if crashed:
        return RunnerFailureClassification(
            failure_class=FailureClass.RUNNER_CRASHED,
            reason_code="runner_crashed",
            matched_rule="unhandled_exception",
            matched_pattern=None,
        )

    return RunnerFailureClassification(
        failure_class=FailureClass.RUNNER_NON_RETRYABLE,
        reason_code="runner_non_retryable",
        matched_rule="fallback_non_retryable",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
