from __future__ import annotations

import allure
import pytest
from sqlalchemy import update as sa_update
from sqlmodel import Session, col

from draftsman.orchestrator.expiration import (
    ExpirationScheduler,
    ExpireOutcome,
    expire_message_id,
)
from draftsman.orchestrator.models import (
    JobStatus,
    MessageStatus,
    NotificationKind,
    OrchestrationAction,
    OrchestrationMessage,
    QuestionStatus,
)
from draftsman.orchestrator.resume import ResumeIngestion
from draftsman.storage.sqlmodel_models import QueueMessage

pytestmark = [
    allure.epic("Job Orchestration"),
    allure.feature("Question Expiry"),
]


def _expire_message(question) -> OrchestrationMessage:
    return OrchestrationMessage(
        job_id=question.job_id,
        trigger="trello",
        action=OrchestrationAction.EXPIRE_WAITING_INPUT,
        question_id=question.question_id,
    )


def test_pause_arms_one_timer_due_at_the_deadline(question, orchestration_queue) -> None:
    timer = orchestration_queue.get(expire_message_id(question.question_id))

    assert timer is not None
    assert timer.status == MessageStatus.PENDING
    assert timer.due_at == question.expires_at
    assert timer.payload["question_id"] == question.question_id


def test_early_delivery_is_not_due(repository, question, clock) -> None:
    clock.advance(hours=23)

    result = ExpirationScheduler(repository, clock=clock).handle(_expire_message(question))

    assert result.outcome == ExpireOutcome.NOT_DUE
    assert result.due_at == question.expires_at
    assert repository.require_job(question.job_id).status == JobStatus.WAITING_FOR_INPUT


def test_due_delivery_expires_question_and_job(repository, question, clock) -> None:
    clock.advance(hours=24)

    result = ExpirationScheduler(repository, clock=clock).handle(_expire_message(question))

    assert result.outcome == ExpireOutcome.EXPIRED
    assert repository.get_question(question.question_id).status == QuestionStatus.EXPIRED
    job = repository.require_job(question.job_id)
    assert job.status == JobStatus.EXPIRED
    assert job.finished_at == clock.now


def test_expiry_enqueues_a_single_expired_notification(
    repository,
    question,
    clock,
    notification_queue,
) -> None:
    clock.advance(hours=25)
    scheduler = ExpirationScheduler(repository, clock=clock)

    scheduler.handle(_expire_message(question))
    replay = scheduler.handle(_expire_message(question))

    assert replay.outcome == ExpireOutcome.ALREADY_CLOSED
    kinds = [
        message.kind for message in notification_queue.list_messages(job_id=question.job_id)
    ]
    assert kinds.count(NotificationKind.EXPIRED.value) == 1


def test_answered_question_is_already_closed_for_the_timer(repository, question, clock) -> None:
    ResumeIngestion(repository).validate_and_accept(
        question_id=question.question_id,
        source="trello",
        responder_id="member-1",
        payload={"text": "yes"},
        source_event_id="comment-1",
    )
    clock.advance(hours=24, minutes=2)

    result = ExpirationScheduler(repository, clock=clock).handle(_expire_message(question))

    assert result.outcome == ExpireOutcome.ALREADY_CLOSED
    assert repository.require_job(question.job_id).status == JobStatus.RESUMED


def test_expire_message_without_question_is_rejected(repository) -> None:
    with pytest.raises(ValueError, match="no question_id"):
        ExpirationScheduler(repository).handle(
            OrchestrationMessage(
                job_id="job-1",
                trigger="trello",
                action=OrchestrationAction.EXPIRE_WAITING_INPUT,
            ),
        )


def test_reconcile_restores_a_lost_timer(
    repository,
    question,
    clock,
    orchestration_queue,
) -> None:
    with Session(repository.engine) as session:
        session.exec(
            sa_update(QueueMessage)
            .where(col(QueueMessage.message_id) == expire_message_id(question.question_id))
            .values(status=MessageStatus.DONE.value),
        )
        session.commit()

    scheduler = ExpirationScheduler(repository, clock=clock)

    assert scheduler.reconcile() == 1
    assert scheduler.reconcile() == 0
    timer = orchestration_queue.get(expire_message_id(question.question_id))
    assert timer.status == MessageStatus.PENDING
    assert timer.attempt == 0
    assert timer.due_at == question.expires_at


def test_reconcile_ignores_closed_questions(repository, question, clock) -> None:
    clock.advance(hours=24)
    scheduler = ExpirationScheduler(repository, clock=clock)
    scheduler.handle(_expire_message(question))

    assert scheduler.reconcile() == 0
