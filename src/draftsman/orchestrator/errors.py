"""Error taxonomy for orchestration.

``TransientInfraError`` is retried by queue policy. ``StaleStateError`` means a
compare-and-swap lost against a concurrent writer: callers re-read and decide
whether to retry or treat the step as a no-op. ``InvalidInputError`` and its
subclasses are raised at the ingress boundary and never reach the queue.
"""

from __future__ import annotations

from draftsman.orchestrator.models import AnswerView, JobStatus


class DraftsmanError(Exception):
    """Base class for orchestration errors."""


class TransientInfraError(DraftsmanError):
    """Store or queue connectivity problem worth retrying."""


class JobNotFoundError(DraftsmanError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class IllegalTransitionError(DraftsmanError):
    def __init__(self, status_from: JobStatus, status_to: JobStatus) -> None:
        super().__init__(f"Illegal job transition: {status_from.value} -> {status_to.value}")
        self.status_from = status_from
        self.status_to = status_to


class StaleStateError(DraftsmanError):
    """Persisted status/version no longer matches what the caller expected."""

    def __init__(
        self,
        *,
        job_id: str,
        expected_status: JobStatus,
        actual_status: JobStatus,
        expected_version: int | None,
        actual_version: int,
    ) -> None:
        super().__init__(
            f"Stale job state for {job_id}: expected status={expected_status.value} "
            f"version={expected_version}, found status={actual_status.value} "
            f"version={actual_version}",
        )
        self.job_id = job_id
        self.expected_status = expected_status
        self.actual_status = actual_status
        self.expected_version = expected_version
        self.actual_version = actual_version


class InvalidInputError(DraftsmanError):
    """Synchronous ingress rejection with a typed reason code."""

    reason = "invalid_input"


class InvalidAnswerError(InvalidInputError):
    reason = "invalid_answer"


class QuestionNotFoundError(InvalidInputError):
    reason = "question_not_found"


class QuestionClosedError(InvalidInputError):
    reason = "question_closed"


class QuestionExpiredError(InvalidInputError):
    reason = "question_expired"


class UnauthorizedResponderError(InvalidInputError):
    reason = "unauthorized"


class DuplicateAnswerError(DraftsmanError):
    """Answer with this source_event_id was already recorded."""

    def __init__(self, prior: AnswerView) -> None:
        super().__init__(
            f"Duplicate answer for question {prior.question_id}: "
            f"source_event_id={prior.source_event_id}",
        )
        self.prior = prior
