from __future__ import annotations

import allure
import pytest

from draftsman.orchestrator.failure_classifier import (
    RUNNER_FAILURE_CLASSIFIER_VERSION,
    classify_runner_failure,
)
from draftsman.orchestrator.models import FailureClass

pytestmark = [
    allure.epic("Job Orchestration"),
    allure.feature("Failure Classification"),
]


def test_classifier_version_is_stable() -> None:
    assert RUNNER_FAILURE_CLASSIFIER_VERSION == 1


def test_timeout_wins_over_everything() -> None:
    classified = classify_runner_failure(error="rate limit", retryable=True, timed_out=True)
    assert classified.failure_class == FailureClass.RUNNER_TIMEOUT
    assert classified.retryable is False


def test_runner_hint_wins_over_text_patterns() -> None:
    hinted = classify_runner_failure(error="Permission denied", retryable=True)
    assert hinted.failure_class == FailureClass.RUNNER_TRANSIENT
    assert hinted.matched_rule == "runner_retryable_hint"

    refused = classify_runner_failure(error="service unavailable", retryable=False)
    assert refused.failure_class == FailureClass.RUNNER_NON_RETRYABLE


def test_access_errors_are_not_retried() -> None:
    classified = classify_runner_failure(error="git push: Permission denied (publickey)")
    assert classified.failure_class == FailureClass.RUNNER_NON_RETRYABLE
    assert classified.reason_code == "runner_access_or_auth"
    assert classified.matched_pattern == "permission denied"


def test_repository_state_errors_are_not_retried() -> None:
    classified = classify_runner_failure(error="CONFLICT: Merge conflict in app.py")
    assert classified.matched_rule == "repository_state"
    assert classified.retryable is False


def test_rate_limit_is_transient() -> None:
    classified = classify_runner_failure(error="HTTP 429 too many requests, please retry")
    assert classified.failure_class == FailureClass.RUNNER_TRANSIENT
    assert classified.matched_rule == "rate_limit_transient"
    assert classified.matched_pattern == "too many requests"


@pytest.mark.parametrize(
    "error",
    ["Connection reset by peer", "upstream 503", "Could not resolve host: github.com"],
)
def test_network_noise_is_transient(error: str) -> None:
    classified = classify_runner_failure(error=error)
    assert classified.matched_rule == "generic_transient"
    assert classified.retryable is True


def test_unmatched_crash_is_retryable() -> None:
    classified = classify_runner_failure(error="KeyError: 'plan'", crashed=True)
    assert classified.failure_class == FailureClass.RUNNER_CRASHED
    assert classified.retryable is True


def test_classifier_falls_back_to_non_retryable() -> None:
    classified = classify_runner_failure(error="tests failed: 3 errors")
    assert classified.failure_class == FailureClass.RUNNER_NON_RETRYABLE
    assert classified.matched_rule == "fallback_non_retryable"
    assert classified.to_event_details() == {
        "classifier_version": 1,
        "failure_class": "runner_non_retryable",
        "reason_code": "runner_non_retryable",
        "matched_rule": "fallback_non_retryable",
        "matched_pattern": None,
    }
