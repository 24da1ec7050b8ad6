"""Cross-channel answer ingestion.

Every rejection happens here, synchronously, before anything is enqueued.
The final accept re-checks question state inside the store transaction, so
an answer racing the expiry timer either resumes the job or is rejected as
closed; it never does both.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Protocol

from draftsman.orchestrator.errors import (
    DuplicateAnswerError,
    InvalidAnswerError,
    QuestionClosedError,
    QuestionExpiredError,
    QuestionNotFoundError,
    UnauthorizedResponderError,
)
from draftsman.orchestrator.models import AnswerView, QuestionStatus, QuestionView, ResumeResult
from draftsman.orchestrator.repository import JobRepository
from draftsman.storage.common import Clock

logger = logging.getLogger(__name__)

WILDCARD = "*"


class ResponderPolicy(Protocol):
    def is_authorized(self, *, question: QuestionView, source: str, responder_id: str) -> bool:
        """Whether ``responder_id`` on ``source`` may answer ``question``."""


class AllowlistResponderPolicy:
    """Answers must come from a channel the question was sent to.

    When a channel has an allowlist, only the listed responder ids (or ``*``)
    may answer through it.
    """

    def __init__(self, allowlist: Mapping[str, frozenset[str]] | None = None) -> None:
        self.allowlist = dict(allowlist or {})

    def is_authorized(self, *, question: QuestionView, source: str, responder_id: str) -> bool:
        if source not in question.delivery_targets:
            return False
        allowed = self.allowlist.get(source)
        if not allowed:
            return True
        return WILDCARD in allowed or responder_id in allowed


class ResumeIngestion:
    def __init__(
        self,
        repository: JobRepository,
        *,
        policy: ResponderPolicy | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.repository = repository
        self.policy = policy or AllowlistResponderPolicy()
        self.clock = clock or repository.clock

    def validate_and_accept(  # noqa: PLR0913
        self,
        *,
        question_id: str,
        source: str,
        responder_id: str,
        payload: Any,
        source_event_id: str,
    ) -> ResumeResult:
        if not source.strip() or not responder_id.strip() or not source_event_id.strip():
            raise InvalidAnswerError("source, responder_id and source_event_id are required")
        if not isinstance(payload, dict) or not payload:
            raise InvalidAnswerError("answer payload must be a non-empty object")

        question = self.repository.get_question(question_id)
        if question is None:
            raise QuestionNotFoundError(f"Question not found: {question_id}")

        prior = self.repository.find_answer(
            question_id=question_id,
            source_event_id=source_event_id,
        )
        if prior is not None:
            return _replayed(prior)

        if question.status != QuestionStatus.OPEN:
            raise QuestionClosedError(f"Question {question_id} is already {question.status.value}")
        if self.clock() >= question.expires_at:
            raise QuestionExpiredError(f"Question {question_id} has expired")
        if not self.policy.is_authorized(
            question=question,
            source=source,
            responder_id=responder_id,
        ):
            raise UnauthorizedResponderError(
                f"{responder_id} via {source} may not answer question {question_id}",
            )

        try:
            answer = self.repository.accept_answer(
                question_id=question_id,
                source=source,
                responder_id=responder_id,
                payload=payload,
                source_event_id=source_event_id,
            )
        except DuplicateAnswerError as error:
            return _replayed(error.prior)
        except QuestionClosedError:
            prior = self.repository.find_answer(
                question_id=question_id,
                source_event_id=source_event_id,
            )
            if prior is not None:
                return _replayed(prior)
            raise

        return ResumeResult(job_id=answer.job_id, accepted=True, answer_id=answer.answer_id)


def _replayed(prior: AnswerView) -> ResumeResult:
    logger.info(
        "Answer event %s for question %s already recorded",
        prior.source_event_id,
        prior.question_id,
    )
    return ResumeResult(
        job_id=prior.job_id,
        accepted=True,
        answer_id=prior.answer_id,
        deduped=True,
    )
