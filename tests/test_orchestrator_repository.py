from __future__ import annotations

import threading
from datetime import timedelta

import allure
import pytest

from draftsman.orchestrator.audit import EventKind
from draftsman.orchestrator.errors import (
    DuplicateAnswerError,
    IllegalTransitionError,
    JobNotFoundError,
    QuestionClosedError,
    QuestionExpiredError,
    StaleStateError,
)
from draftsman.orchestrator.models import (
    FailureClass,
    JobMode,
    JobStatus,
    MessageStatus,
    NotificationKind,
    QuestionStatus,
)
from draftsman.orchestrator.repository import JobRepository

pytestmark = [
    allure.epic("Job Orchestration"),
    allure.feature("Job State Store"),
]


def _pause(repository: JobRepository, job_id: str, *, ttl: timedelta = timedelta(hours=24)):
    running = repository.claim_execution(
        job_id=job_id,
        message_id=f"msg-{job_id}",
        expected_status=JobStatus.QUEUED,
    )
    return repository.pause_for_input(
        job_id=job_id,
        expected_version=running.version,
        checkpoint={"step": "plan"},
        question={"text": "Ship it?"},
        ttl=ttl,
    )


def test_transition_bumps_version_and_records_event(submit_job, repository) -> None:
    job = submit_job("t1").job

    moved = repository.transition(
        job_id=job.job_id,
        expected_status=JobStatus.QUEUED,
        new_status=JobStatus.RUNNING,
        payload={"by": "test"},
        expected_version=job.version,
    )

    assert moved.status == JobStatus.RUNNING
    assert moved.version == job.version + 1
    last = repository.audit.history(job.job_id)[-1]
    assert last.kind == EventKind.STATUS_CHANGED
    assert (last.status_from, last.status_to) == (JobStatus.QUEUED, JobStatus.RUNNING)
    assert last.payload == {"by": "test"}


def test_transition_with_wrong_expected_status_is_stale(submit_job, repository) -> None:
    job = submit_job("t2").job

    with pytest.raises(StaleStateError) as excinfo:
        repository.transition(
            job_id=job.job_id,
            expected_status=JobStatus.RUNNING,
            new_status=JobStatus.COMPLETED,
        )

    assert excinfo.value.actual_status == JobStatus.QUEUED
    assert repository.require_job(job.job_id).status == JobStatus.QUEUED
    assert len(repository.audit.history(job.job_id)) == 1


def test_transition_with_old_version_is_stale(submit_job, repository) -> None:
    job = submit_job("t3").job
    repository.transition(
        job_id=job.job_id,
        expected_status=JobStatus.QUEUED,
        new_status=JobStatus.RUNNING,
    )

    with pytest.raises(StaleStateError):
        repository.transition(
            job_id=job.job_id,
            expected_status=JobStatus.RUNNING,
            new_status=JobStatus.COMPLETED,
            expected_version=job.version,
        )
    assert repository.require_job(job.job_id).status == JobStatus.RUNNING


def test_illegal_edge_is_rejected_without_touching_state(submit_job, repository) -> None:
    job = submit_job("t4").job

    with pytest.raises(IllegalTransitionError):
        repository.transition(
            job_id=job.job_id,
            expected_status=JobStatus.QUEUED,
            new_status=JobStatus.COMPLETED,
        )

    stored = repository.require_job(job.job_id)
    assert stored.status == JobStatus.QUEUED
    assert stored.version == job.version


def test_unknown_job_raises_not_found(repository) -> None:
    with pytest.raises(JobNotFoundError):
        repository.transition(
            job_id="missing",
            expected_status=JobStatus.QUEUED,
            new_status=JobStatus.RUNNING,
        )
    with pytest.raises(JobNotFoundError):
        repository.require_job("missing")


def test_concurrent_transitions_from_same_version_have_one_winner(
    submit_job,
    repository,
    db_path,
) -> None:
    job = submit_job("race").job
    running = repository.claim_execution(
        job_id=job.job_id,
        message_id="m1",
        expected_status=JobStatus.QUEUED,
    )
    targets = [JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELED, JobStatus.COMPLETED]
    barrier = threading.Barrier(len(targets))
    winners: list[JobStatus] = []
    losers: list[Exception] = []
    lock = threading.Lock()

    def _attempt(target: JobStatus) -> None:
        local = JobRepository(db_path, clock=repository.clock)
        try:
            barrier.wait()
            local.transition(
                job_id=job.job_id,
                expected_status=JobStatus.RUNNING,
                new_status=target,
                expected_version=running.version,
            )
            with lock:
                winners.append(target)
        except StaleStateError as error:
            with lock:
                losers.append(error)
        finally:
            local.close()

    threads = [threading.Thread(target=_attempt, args=(target,)) for target in targets]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert len(winners) == 1
    assert len(losers) == len(targets) - 1
    assert repository.require_job(job.job_id).status == winners[0]


def test_claim_execution_sets_owner_and_attempt(submit_job, repository) -> None:
    job = submit_job("claim").job

    running = repository.claim_execution(
        job_id=job.job_id,
        message_id="msg-1",
        expected_status=JobStatus.QUEUED,
    )
    reclaimed = repository.claim_execution(
        job_id=job.job_id,
        message_id="msg-1",
        expected_status=JobStatus.RUNNING,
        expected_version=running.version,
    )

    assert running.active_message_id == "msg-1"
    assert running.execution_attempt == 1
    assert running.started_at is not None
    assert reclaimed.execution_attempt == 2
    assert reclaimed.version == running.version + 1
    assert reclaimed.started_at == running.started_at
    with pytest.raises(StaleStateError):
        repository.claim_execution(
            job_id=job.job_id,
            message_id="someone-else",
            expected_status=JobStatus.RUNNING,
        )


def test_pause_for_input_persists_checkpoint_question_and_timer(
    submit_job,
    repository,
    orchestration_queue,
    clock,
) -> None:
    job = submit_job("pause").job

    paused, question = _pause(repository, job.job_id)

    assert paused.status == JobStatus.WAITING_FOR_INPUT
    assert paused.current_checkpoint_id == question.checkpoint_id
    assert question.status == QuestionStatus.OPEN
    assert question.expires_at == clock.now + timedelta(hours=24)
    assert question.prompt == {"text": "Ship it?"}
    timer = orchestration_queue.get(f"expire:{question.question_id}")
    assert timer is not None
    assert timer.due_at == question.expires_at
    assert timer.payload["question_id"] == question.question_id
    kinds = [event.kind for event in repository.audit.history(job.job_id)]
    assert EventKind.CHECKPOINT_CREATED in kinds
    assert EventKind.QUESTION_ASKED in kinds


def test_accept_answer_resumes_job_and_enqueues_resume(
    submit_job,
    repository,
    orchestration_queue,
) -> None:
    job = submit_job("answer").job
    _, question = _pause(repository, job.job_id)

    answer = repository.accept_answer(
        question_id=question.question_id,
        source="trello",
        responder_id="member-1",
        payload={"text": "yes"},
        source_event_id="comment-1",
    )

    assert answer.job_id == job.job_id
    assert repository.require_job(job.job_id).status == JobStatus.RESUMED
    assert repository.get_question(question.question_id).status == QuestionStatus.ANSWERED
    resume = orchestration_queue.get(f"resume:{question.question_id}")
    assert resume is not None
    assert resume.payload["resumeFromCheckpointId"] == question.checkpoint_id
    assert resume.payload["answer_id"] == answer.answer_id

    with pytest.raises(DuplicateAnswerError) as excinfo:
        repository.accept_answer(
            question_id=question.question_id,
            source="trello",
            responder_id="member-1",
            payload={"text": "yes"},
            source_event_id="comment-1",
        )
    assert excinfo.value.prior.answer_id == answer.answer_id
    with pytest.raises(QuestionClosedError):
        repository.accept_answer(
            question_id=question.question_id,
            source="slack",
            responder_id="U2",
            payload={"text": "no"},
            source_event_id="slack-1",
        )


def test_accept_answer_after_deadline_is_rejected(submit_job, repository, clock) -> None:
    job = submit_job("late").job
    _, question = _pause(repository, job.job_id)
    clock.advance(hours=24)

    with pytest.raises(QuestionExpiredError):
        repository.accept_answer(
            question_id=question.question_id,
            source="trello",
            responder_id="member-1",
            payload={"text": "yes"},
            source_event_id="comment-1",
        )
    assert repository.require_job(job.job_id).status == JobStatus.WAITING_FOR_INPUT


def test_expire_question_only_after_deadline(submit_job, repository, clock) -> None:
    job = submit_job("expire").job
    _, question = _pause(repository, job.job_id)

    assert repository.expire_question(question_id=question.question_id) is None
    clock.advance(hours=24)
    expired = repository.expire_question(question_id=question.question_id)

    assert expired is not None
    assert expired.status == JobStatus.EXPIRED
    assert expired.finished_at == clock.now
    assert repository.expire_question(question_id=question.question_id) is None


def test_cancel_queued_job_is_immediate(submit_job, repository, notification_queue) -> None:
    job = submit_job("cancel-q").job

    canceled = repository.request_cancel(job_id=job.job_id, grace=timedelta(seconds=60))

    assert canceled.status == JobStatus.CANCELED
    assert notification_queue.get(f"notify:{job.job_id}:canceled") is not None
    with pytest.raises(IllegalTransitionError):
        repository.request_cancel(job_id=job.job_id, grace=timedelta(seconds=60))


def test_cancel_waiting_job_closes_question(submit_job, repository) -> None:
    job = submit_job("cancel-w").job
    _, question = _pause(repository, job.job_id)

    canceled = repository.request_cancel(job_id=job.job_id, grace=timedelta(seconds=60))

    assert canceled.status == JobStatus.CANCELED
    assert repository.get_question(question.question_id).status == QuestionStatus.CANCELED
    assert repository.list_open_questions() == []


def test_cancel_running_job_sets_flag_and_schedules_grace(
    submit_job,
    repository,
    orchestration_queue,
    clock,
) -> None:
    job = submit_job("cancel-r").job
    running = repository.claim_execution(
        job_id=job.job_id,
        message_id="m",
        expected_status=JobStatus.QUEUED,
    )

    flagged = repository.request_cancel(job_id=job.job_id, grace=timedelta(seconds=45))
    again = repository.request_cancel(job_id=job.job_id, grace=timedelta(seconds=45))

    assert flagged.status == JobStatus.RUNNING
    assert flagged.version == running.version
    assert flagged.cancel_requested_at == clock.now
    assert again.cancel_requested_at == clock.now
    assert repository.is_cancel_requested(job.job_id) is True
    grace = orchestration_queue.get(f"cancel:{job.job_id}")
    assert grace is not None
    assert grace.due_at == clock.now + timedelta(seconds=45)
    kinds = [event.kind for event in repository.audit.history(job.job_id)]
    assert kinds.count(EventKind.CANCEL_REQUESTED) == 1


def test_force_terminal_expires_waiting_job(submit_job, repository, notification_queue) -> None:
    job = submit_job("dead-w").job
    _, question = _pause(repository, job.job_id)

    forced = repository.force_terminal(
        job_id=job.job_id,
        reason="attempts exhausted",
        message_id=f"expire:{question.question_id}",
    )

    assert forced is not None
    assert forced.status == JobStatus.EXPIRED
    assert forced.failure_class == FailureClass.DEAD_LETTER
    assert repository.get_question(question.question_id).status == QuestionStatus.EXPIRED
    assert notification_queue.get(f"notify:{job.job_id}:expired") is not None
    assert repository.force_terminal(job_id=job.job_id, reason="again", message_id="x") is None


def test_force_terminal_leaves_waiting_job_to_its_own_timer(submit_job, repository) -> None:
    job = submit_job("dead-stale").job
    paused, question = _pause(repository, job.job_id)

    forced = repository.force_terminal(
        job_id=job.job_id,
        reason="ack failed",
        message_id=f"msg-{job.job_id}",
    )

    assert forced is None
    stored = repository.require_job(job.job_id)
    assert stored.status == JobStatus.WAITING_FOR_INPUT
    assert stored.version == paused.version
    assert repository.get_question(question.question_id).status == QuestionStatus.OPEN
    kinds = [event.kind for event in repository.audit.history(job.job_id)]
    assert EventKind.DEAD_LETTER not in kinds


def test_force_terminal_on_resumed_job_needs_its_resume_message(submit_job, repository) -> None:
    job = submit_job("dead-resumed").job
    _, question = _pause(repository, job.job_id)
    repository.accept_answer(
        question_id=question.question_id,
        source="trello",
        responder_id="member-1",
        payload={"text": "yes"},
        source_event_id="comment-1",
    )

    stale = repository.force_terminal(
        job_id=job.job_id,
        reason="lease expired",
        message_id=f"expire:{question.question_id}",
    )
    owned = repository.force_terminal(
        job_id=job.job_id,
        reason="lease expired",
        message_id=f"resume:{question.question_id}",
    )

    assert stale is None
    assert owned is not None
    assert owned.status == JobStatus.FAILED
    assert owned.failure_class == FailureClass.DEAD_LETTER


def test_force_terminal_on_running_job_needs_the_active_message(submit_job, repository) -> None:
    job = submit_job("dead-running").job
    repository.claim_execution(
        job_id=job.job_id,
        message_id="owner",
        expected_status=JobStatus.QUEUED,
    )

    assert repository.force_terminal(job_id=job.job_id, reason="x", message_id="other") is None
    forced = repository.force_terminal(job_id=job.job_id, reason="x", message_id="owner")

    assert forced is not None
    assert forced.status == JobStatus.FAILED


def test_ensure_expiry_scheduled_revives_a_finished_timer(
    submit_job,
    repository,
    orchestration_queue,
    clock,
) -> None:
    job = submit_job("revive").job
    _, question = _pause(repository, job.job_id)
    clock.advance(hours=24)
    for _ in range(2):
        message = orchestration_queue.claim(worker_id="w")
        assert message is not None
        orchestration_queue.ack(message)
    timer_id = f"expire:{question.question_id}"
    assert orchestration_queue.get(timer_id).status == MessageStatus.DONE

    assert repository.ensure_expiry_scheduled(question_id=question.question_id) is True
    revived = orchestration_queue.get(timer_id)
    assert revived.status == MessageStatus.PENDING
    assert revived.attempt == 0
    assert repository.ensure_expiry_scheduled(question_id=question.question_id) is False


def test_terminal_notifications_are_deduplicated_by_kind(
    submit_job,
    repository,
    notification_queue,
) -> None:
    job = submit_job("dedup-notify", mode=JobMode.INVESTIGATE).job
    running = repository.claim_execution(
        job_id=job.job_id,
        message_id="m",
        expected_status=JobStatus.QUEUED,
    )
    repository.complete_job(job_id=job.job_id, expected_version=running.version, result={})

    messages = notification_queue.list_messages(job_id=job.job_id)
    assert [message.message_id for message in messages] == [f"notify:{job.job_id}:success"]
    payload = messages[0].payload
    assert payload["kind"] == NotificationKind.SUCCESS.value
    assert payload["channel_targets"] == ["trello", "slack"]
    assert payload["payload"]["repo"] == "org/app"


def test_list_jobs_filters_by_status_and_details_include_events(
    submit_job,
    repository,
    clock,
) -> None:
    first = submit_job("list-1").job
    clock.advance(seconds=1)
    second = submit_job("list-2").job
    repository.request_cancel(job_id=second.job_id, grace=timedelta(seconds=1))

    assert [job.job_id for job in repository.list_jobs(status=JobStatus.QUEUED)] == [first.job_id]
    assert [job.job_id for job in repository.list_jobs()] == [second.job_id, first.job_id]
    details = repository.get_job_details(second.job_id)
    assert details is not None
    assert [event.sequence for event in details.events] == [1, 2]
    assert repository.get_job_details("missing") is None
