"""Expiration scheduler for open questions.

Each open question owns exactly one ``expire:<question_id>`` message on the
orchestration lane, due at ``expires_at``. The handler re-validates wall-clock
time and question status, so early or replayed deliveries are harmless.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING

from sqlmodel import Session

from draftsman.orchestrator.models import (
    OrchestrationAction,
    OrchestrationMessage,
    QuestionStatus,
    QueueLane,
)
from draftsman.orchestrator.queue import enqueue_message
from draftsman.storage.common import Clock, utc_now

if TYPE_CHECKING:
    from draftsman.orchestrator.repository import JobRepository

logger = logging.getLogger(__name__)


def expire_message_id(question_id: str) -> str:
    return f"expire:{question_id}"


def schedule_expiry(  # noqa: PLR0913
    session: Session,
    *,
    job_id: str,
    trigger: str,
    question_id: str,
    expires_at: datetime,
    max_attempts: int,
    now: datetime,
) -> bool:
    """Stage the delayed expire action for a question inside ``session``."""

    return enqueue_message(
        session,
        message_id=expire_message_id(question_id),
        lane=QueueLane.ORCHESTRATION,
        job_id=job_id,
        kind=OrchestrationAction.EXPIRE_WAITING_INPUT.value,
        payload=OrchestrationMessage(
            job_id=job_id,
            trigger=trigger,
            action=OrchestrationAction.EXPIRE_WAITING_INPUT,
            question_id=question_id,
        ).to_payload(),
        max_attempts=max_attempts,
        due_at=expires_at,
        now=now,
    )


class ExpireOutcome(str, Enum):
    EXPIRED = "expired"
    ALREADY_CLOSED = "already_closed"
    NOT_DUE = "not_due"
    LOST_RACE = "lost_race"


@dataclass(slots=True)
class ExpireResult:
    outcome: ExpireOutcome
    job_id: str | None = None
    due_at: datetime | None = None


class ExpirationScheduler:
    """Fires auto-expiry for questions that were never answered."""

    def __init__(self, repository: JobRepository, *, clock: Clock = utc_now) -> None:
        self.repository = repository
        self.clock = clock

    def handle(self, message: OrchestrationMessage) -> ExpireResult:
        if message.question_id is None:
            raise ValueError(f"Expire message for job {message.job_id} has no question_id")

        question = self.repository.get_question(message.question_id)
        if question is None or question.status != QuestionStatus.OPEN:
            return ExpireResult(outcome=ExpireOutcome.ALREADY_CLOSED, job_id=message.job_id)

        if self.clock() < question.expires_at:
            return ExpireResult(
                outcome=ExpireOutcome.NOT_DUE,
                job_id=question.job_id,
                due_at=question.expires_at,
            )

        job = self.repository.expire_question(question_id=question.question_id)
        if job is None:
            return ExpireResult(outcome=ExpireOutcome.LOST_RACE, job_id=question.job_id)
        logger.info("Question %s expired; job %s is now expired", question.question_id, job.job_id)
        return ExpireResult(outcome=ExpireOutcome.EXPIRED, job_id=job.job_id)

    def reconcile(self) -> int:
        """Re-create missing expire timers for open questions; returns how many."""

        restored = 0
        for question in self.repository.list_open_questions():
            if self.repository.ensure_expiry_scheduled(question_id=question.question_id):
                restored += 1
                logger.warning(
                    "Restored missing expiry timer for question %s (job %s)",
                    question.question_id,
                    question.job_id,
                )
        return restored
