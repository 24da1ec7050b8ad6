"""Versioned job state store backed by SQLModel + SQLite.

Every mutation is a single transaction: the guarded status change, its audit
events, and any queue messages it implies commit or roll back together.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from draftsman.orchestrator.audit import AuditTrail, EventKind, append_event, to_event_view
from draftsman.orchestrator.errors import (
    DuplicateAnswerError,
    IllegalTransitionError,
    JobNotFoundError,
    QuestionClosedError,
    QuestionExpiredError,
    QuestionNotFoundError,
    StaleStateError,
)
from draftsman.orchestrator.expiration import expire_message_id, schedule_expiry
from draftsman.orchestrator.models import (
    TERMINAL_STATUSES,
    AnswerView,
    CheckpointView,
    FailureClass,
    GateResult,
    JobCreate,
    JobDetails,
    JobMode,
    JobStatus,
    JobView,
    MessageStatus,
    NotificationKind,
    OrchestrationAction,
    OrchestrationMessage,
    QuestionStatus,
    QuestionView,
    QueueLane,
)
from draftsman.orchestrator.notifier import enqueue_notification
from draftsman.orchestrator.queue import enqueue_message
from draftsman.orchestrator.transitions import ensure_legal, path_to
from draftsman.storage.alembic_runner import upgrade_head
from draftsman.storage.common import (
    Clock,
    build_sqlite_engine,
    dump_json,
    load_json_list,
    load_json_object,
    optional_utc_aware,
    to_db_datetime,
    to_utc_aware,
    utc_now,
)
from draftsman.storage.sqlmodel_models import (
    Job,
    JobAnswer,
    JobCheckpoint,
    JobEvent,
    JobQuestion,
    QueueMessage,
)

logger = logging.getLogger(__name__)

DEFAULT_QUESTION_TTL = timedelta(hours=24)


def resume_message_id(question_id: str) -> str:
    return f"resume:{question_id}"


def cancel_message_id(job_id: str) -> str:
    return f"cancel:{job_id}"


class JobRepository:
    """Job state persistence facade."""

    def __init__(  # noqa: PLR0913
        self,
        db_path: Path,
        *,
        busy_timeout_ms: int = 5000,
        clock: Clock = utc_now,
        orchestration_max_attempts: int = 3,
        notification_max_attempts: int = 5,
    ) -> None:
        self.db_path = db_path
        self.clock = clock
        self.orchestration_max_attempts = orchestration_max_attempts
        self.notification_max_attempts = notification_max_attempts
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)
        self.audit = AuditTrail(self.engine, clock=clock)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # -- creation -------------------------------------------------------------

    def create_or_get(self, *, dedup_key: str, builder: Callable[[], JobCreate]) -> GateResult:
        """Return the job holding ``dedup_key``, creating it on first sight.

        The insert races only against the unique index on ``dedup_key``; the
        loser rolls back and reads the winner.
        """

        existing = self.get_job_by_dedup_key(dedup_key)
        if existing is not None:
            return GateResult(job=existing, deduped=True)

        payload = builder()
        now = self.clock()
        job_id = str(uuid4())
        try:
            with Session(self.engine) as session:
                row = Job(
                    job_id=job_id,
                    dedup_key=dedup_key,
                    source=payload.source,
                    external_event_id=payload.external_event_id,
                    mode=payload.mode.value,
                    repo=payload.repo,
                    workspace_ref=payload.workspace_ref,
                    ticket_ref=payload.ticket_ref,
                    status=JobStatus.QUEUED.value,
                    version=1,
                    channel_targets_json=dump_json(payload.channel_targets()),
                    created_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                )
                session.add(row)
                session.flush()
                append_event(
                    session,
                    job_id=job_id,
                    kind=EventKind.CREATED,
                    payload={
                        "dedup_key": dedup_key,
                        "source": payload.source,
                        "mode": payload.mode.value,
                        "repo": payload.repo,
                    },
                    now=now,
                    status_to=JobStatus.QUEUED,
                )
                enqueue_message(
                    session,
                    message_id=dedup_key,
                    lane=QueueLane.ORCHESTRATION,
                    job_id=job_id,
                    kind=OrchestrationAction.START.value,
                    payload=OrchestrationMessage(
                        job_id=job_id,
                        trigger=payload.source,
                        action=OrchestrationAction.START,
                    ).to_payload(),
                    max_attempts=self.orchestration_max_attempts,
                    due_at=now,
                    now=now,
                )
                view = _to_job_view(row)
                session.commit()
        except IntegrityError:
            winner = self.get_job_by_dedup_key(dedup_key)
            if winner is None:
                raise
            return GateResult(job=winner, deduped=True)

        logger.info("Created job %s for %s (%s)", job_id, dedup_key, payload.mode.value)
        return GateResult(job=view, deduped=False)

    # -- guarded transitions --------------------------------------------------

    def transition(
        self,
        *,
        job_id: str,
        expected_status: JobStatus,
        new_status: JobStatus,
        payload: dict[str, Any] | None = None,
        expected_version: int | None = None,
    ) -> JobView:
        """Compare-and-swap one legal edge and record it in the audit trail."""

        ensure_legal(expected_status, new_status)
        now = self.clock()
        with Session(self.engine) as session:
            row = self._transition_in_session(
                session,
                job_id=job_id,
                expected_status=expected_status,
                new_status=new_status,
                now=now,
                payload=payload,
                expected_version=expected_version,
            )
            view = _to_job_view(row)
            session.commit()
        return view

    def claim_execution(
        self,
        *,
        job_id: str,
        message_id: str,
        expected_status: JobStatus,
        expected_version: int | None = None,
    ) -> JobView:
        """Take ownership of a run for one queue message.

        ``queued`` and ``resumed`` jobs move to ``running``. A ``running`` job
        may only be re-claimed by the message that already owns it (lease
        redelivery); the version bump makes the previous owner's outcome stale.
        """

        now = self.clock()
        with Session(self.engine) as session:
            if expected_status == JobStatus.RUNNING:
                conditions = [
                    col(Job.job_id) == job_id,
                    col(Job.status) == JobStatus.RUNNING.value,
                    col(Job.active_message_id) == message_id,
                ]
                if expected_version is not None:
                    conditions.append(col(Job.version) == expected_version)
                result = session.exec(
                    sa_update(Job)
                    .where(*conditions)
                    .values(
                        version=col(Job.version) + 1,
                        execution_attempt=col(Job.execution_attempt) + 1,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    self._raise_stale(
                        session,
                        job_id=job_id,
                        expected_status=expected_status,
                        expected_version=expected_version,
                    )
                row = self._load_job(session, job_id)
                append_event(
                    session,
                    job_id=job_id,
                    kind=EventKind.EXECUTION_CLAIMED,
                    payload={
                        "message_id": message_id,
                        "execution_attempt": row.execution_attempt,
                        "reclaimed": True,
                    },
                    now=now,
                )
            else:
                row = self._transition_in_session(
                    session,
                    job_id=job_id,
                    expected_status=expected_status,
                    new_status=JobStatus.RUNNING,
                    now=now,
                    payload={"message_id": message_id},
                    expected_version=expected_version,
                    values={
                        "active_message_id": message_id,
                        "execution_attempt": col(Job.execution_attempt) + 1,
                        "started_at": func.coalesce(col(Job.started_at), to_db_datetime(now)),
                    },
                )
            view = _to_job_view(row)
            session.commit()
        return view

    def complete_job(
        self,
        *,
        job_id: str,
        expected_version: int,
        result: dict[str, Any],
    ) -> JobView:
        now = self.clock()
        with Session(self.engine) as session:
            row = self._transition_in_session(
                session,
                job_id=job_id,
                expected_status=JobStatus.RUNNING,
                new_status=JobStatus.COMPLETED,
                now=now,
                expected_version=expected_version,
                values={
                    "result_json": dump_json(result),
                    "active_message_id": None,
                    "finished_at": to_db_datetime(now),
                },
            )
            self._notify(
                session,
                row=row,
                kind=NotificationKind.SUCCESS,
                payload={"status": JobStatus.COMPLETED.value, "result": result},
                now=now,
            )
            view = _to_job_view(row)
            session.commit()
        logger.info("Job %s completed", job_id)
        return view

    def fail_job(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        expected_version: int,
        error: str,
        failure_class: FailureClass,
        extra_event: str | None = None,
    ) -> JobView:
        """Mark a running job failed and enqueue its single failure notification."""

        now = self.clock()
        with Session(self.engine) as session:
            row = self._transition_in_session(
                session,
                job_id=job_id,
                expected_status=JobStatus.RUNNING,
                new_status=JobStatus.FAILED,
                now=now,
                payload={"error": error, "failure_class": failure_class.value},
                expected_version=expected_version,
                values={
                    "failure_class": failure_class.value,
                    "error_summary": error,
                    "active_message_id": None,
                    "finished_at": to_db_datetime(now),
                },
            )
            if extra_event is not None:
                append_event(
                    session,
                    job_id=job_id,
                    kind=extra_event,
                    payload={"error": error, "failure_class": failure_class.value},
                    now=now,
                )
            self._notify(
                session,
                row=row,
                kind=NotificationKind.FAILURE,
                payload={
                    "status": JobStatus.FAILED.value,
                    "error": error,
                    "failure_class": failure_class.value,
                },
                now=now,
            )
            view = _to_job_view(row)
            session.commit()
        logger.info("Job %s failed (%s): %s", job_id, failure_class.value, error)
        return view

    def pause_for_input(
        self,
        *,
        job_id: str,
        expected_version: int,
        checkpoint: dict[str, Any],
        question: dict[str, Any],
        ttl: timedelta = DEFAULT_QUESTION_TTL,
    ) -> tuple[JobView, QuestionView]:
        """Persist checkpoint and question, park the job, arm its expiry timer.

        Nothing in memory survives this call: the paused job is only data.
        """

        now = self.clock()
        checkpoint_id = str(uuid4())
        question_id = str(uuid4())
        expires_at = now + ttl
        with Session(self.engine) as session:
            row = self._transition_in_session(
                session,
                job_id=job_id,
                expected_status=JobStatus.RUNNING,
                new_status=JobStatus.WAITING_FOR_INPUT,
                now=now,
                payload={"checkpoint_id": checkpoint_id, "question_id": question_id},
                expected_version=expected_version,
                values={"current_checkpoint_id": checkpoint_id, "active_message_id": None},
            )
            session.add(
                JobCheckpoint(
                    checkpoint_id=checkpoint_id,
                    job_id=job_id,
                    payload_json=dump_json(checkpoint),
                    created_at=to_db_datetime(now),
                ),
            )
            session.flush()
            question_row = JobQuestion(
                question_id=question_id,
                job_id=job_id,
                checkpoint_id=checkpoint_id,
                prompt_json=dump_json(question),
                status=QuestionStatus.OPEN.value,
                delivery_targets_json=row.channel_targets_json,
                asked_at=to_db_datetime(now),
                expires_at=to_db_datetime(expires_at),
            )
            session.add(question_row)
            session.flush()
            append_event(
                session,
                job_id=job_id,
                kind=EventKind.CHECKPOINT_CREATED,
                payload={"checkpoint_id": checkpoint_id},
                now=now,
            )
            append_event(
                session,
                job_id=job_id,
                kind=EventKind.QUESTION_ASKED,
                payload={"question_id": question_id, "expires_at": expires_at.isoformat()},
                now=now,
            )
            schedule_expiry(
                session,
                job_id=job_id,
                trigger=row.source,
                question_id=question_id,
                expires_at=expires_at,
                max_attempts=self.orchestration_max_attempts,
                now=now,
            )
            self._notify(
                session,
                row=row,
                kind=NotificationKind.QUESTION,
                payload={
                    "question_id": question_id,
                    "prompt": question,
                    "expires_at": expires_at.isoformat(),
                },
                now=now,
                question_id=question_id,
            )
            job_view = _to_job_view(row)
            question_view = _to_question_view(question_row)
            session.commit()
        logger.info("Job %s waiting for input on question %s", job_id, question_id)
        return job_view, question_view

    def expire_question(self, *, question_id: str) -> JobView | None:
        """Close an overdue open question and expire its job.

        Returns None when the question is no longer open or not yet due, which
        is also how a lost race against an accepted answer shows up.
        """

        now = self.clock()
        with Session(self.engine) as session:
            closed = session.exec(
                sa_update(JobQuestion)
                .where(
                    col(JobQuestion.question_id) == question_id,
                    col(JobQuestion.status) == QuestionStatus.OPEN.value,
                    col(JobQuestion.expires_at) <= to_db_datetime(now),
                )
                .values(status=QuestionStatus.EXPIRED.value, closed_at=to_db_datetime(now)),
            )
            if closed.rowcount != 1:
                return None
            question = self._load_question(session, question_id)
            append_event(
                session,
                job_id=question.job_id,
                kind=EventKind.QUESTION_EXPIRED,
                payload={"question_id": question_id},
                now=now,
            )
            row = self._transition_in_session(
                session,
                job_id=question.job_id,
                expected_status=JobStatus.WAITING_FOR_INPUT,
                new_status=JobStatus.EXPIRED,
                now=now,
                payload={"question_id": question_id},
                values={"finished_at": to_db_datetime(now)},
            )
            self._notify(
                session,
                row=row,
                kind=NotificationKind.EXPIRED,
                payload={"status": JobStatus.EXPIRED.value, "question_id": question_id},
                now=now,
            )
            view = _to_job_view(row)
            session.commit()
        return view

    def accept_answer(  # noqa: PLR0913
        self,
        *,
        question_id: str,
        source: str,
        responder_id: str,
        payload: dict[str, Any],
        source_event_id: str,
    ) -> AnswerView:
        """Record the answer, close the question, resume the job, enqueue resume.

        Raises ``DuplicateAnswerError`` when ``source_event_id`` was already
        recorded for this question, and the typed ``InvalidInputError``
        subclasses when the question cannot take an answer any more.
        """

        now = self.clock()
        answer_id = str(uuid4())
        with Session(self.engine) as session:
            prior = session.exec(
                select(JobAnswer).where(
                    JobAnswer.question_id == question_id,
                    JobAnswer.source_event_id == source_event_id,
                ),
            ).one_or_none()
            if prior is not None:
                raise DuplicateAnswerError(_to_answer_view(prior))

            closed = session.exec(
                sa_update(JobQuestion)
                .where(
                    col(JobQuestion.question_id) == question_id,
                    col(JobQuestion.status) == QuestionStatus.OPEN.value,
                    col(JobQuestion.expires_at) > to_db_datetime(now),
                )
                .values(status=QuestionStatus.ANSWERED.value, closed_at=to_db_datetime(now)),
            )
            if closed.rowcount != 1:
                current = session.get(JobQuestion, question_id)
                if current is None:
                    raise QuestionNotFoundError(f"Question not found: {question_id}")
                if current.status != QuestionStatus.OPEN.value:
                    raise QuestionClosedError(
                        f"Question {question_id} is already {current.status}",
                    )
                raise QuestionExpiredError(f"Question {question_id} has expired")

            question = self._load_question(session, question_id)
            answer_row = JobAnswer(
                answer_id=answer_id,
                question_id=question_id,
                job_id=question.job_id,
                source=source,
                responder_id=responder_id,
                payload_json=dump_json(payload),
                source_event_id=source_event_id,
                answered_at=to_db_datetime(now),
            )
            session.add(answer_row)
            session.flush()
            append_event(
                session,
                job_id=question.job_id,
                kind=EventKind.ANSWER_ACCEPTED,
                payload={
                    "question_id": question_id,
                    "answer_id": answer_id,
                    "source": source,
                    "responder_id": responder_id,
                    "source_event_id": source_event_id,
                },
                now=now,
            )
            self._transition_in_session(
                session,
                job_id=question.job_id,
                expected_status=JobStatus.WAITING_FOR_INPUT,
                new_status=JobStatus.RESUMED,
                now=now,
                payload={"question_id": question_id, "answer_id": answer_id},
            )
            enqueue_message(
                session,
                message_id=resume_message_id(question_id),
                lane=QueueLane.ORCHESTRATION,
                job_id=question.job_id,
                kind=OrchestrationAction.RESUME.value,
                payload=OrchestrationMessage(
                    job_id=question.job_id,
                    trigger=source,
                    action=OrchestrationAction.RESUME,
                    resume_from_checkpoint_id=question.checkpoint_id,
                    question_id=question_id,
                    answer_id=answer_id,
                ).to_payload(),
                max_attempts=self.orchestration_max_attempts,
                due_at=now,
                now=now,
            )
            view = _to_answer_view(answer_row)
            session.commit()
        logger.info("Accepted answer %s for question %s via %s", answer_id, question_id, source)
        return view

    # -- cancellation and dead letters ---------------------------------------

    def request_cancel(self, *, job_id: str, grace: timedelta) -> JobView:
        """Cancel now when nothing is executing, otherwise ask the worker to stop.

        A running or resumed job gets ``cancel_requested_at`` plus a delayed
        ``cancel`` message that forces the terminal state after ``grace``.
        """

        now = self.clock()
        with Session(self.engine) as session:
            row = self._load_job(session, job_id)
            status = JobStatus(row.status)
            if status in TERMINAL_STATUSES:
                raise IllegalTransitionError(status, JobStatus.CANCELED)

            if status in {JobStatus.RUNNING, JobStatus.RESUMED}:
                if row.cancel_requested_at is None:
                    session.exec(
                        sa_update(Job)
                        .where(col(Job.job_id) == job_id)
                        .values(
                            cancel_requested_at=to_db_datetime(now),
                            updated_at=to_db_datetime(now),
                        ),
                    )
                    append_event(
                        session,
                        job_id=job_id,
                        kind=EventKind.CANCEL_REQUESTED,
                        payload={"grace_seconds": grace.total_seconds(), "status": status.value},
                        now=now,
                    )
                    enqueue_message(
                        session,
                        message_id=cancel_message_id(job_id),
                        lane=QueueLane.ORCHESTRATION,
                        job_id=job_id,
                        kind=OrchestrationAction.CANCEL.value,
                        payload=OrchestrationMessage(
                            job_id=job_id,
                            trigger="operator",
                            action=OrchestrationAction.CANCEL,
                        ).to_payload(),
                        max_attempts=self.orchestration_max_attempts,
                        due_at=now + grace,
                        now=now,
                    )
                row = self._load_job(session, job_id)
                view = _to_job_view(row)
                session.commit()
                logger.info("Cancel requested for job %s (%s)", job_id, status.value)
                return view

            row = self._cancel_in_session(session, row=row, now=now, reason="operator request")
            view = _to_job_view(row)
            session.commit()
        logger.info("Job %s canceled from %s", job_id, status.value)
        return view

    def cancel_job(self, *, job_id: str, reason: str) -> JobView | None:
        """Force a pending cancellation to the terminal ``canceled`` state.

        Returns None when the job already reached a terminal state.
        """

        now = self.clock()
        with Session(self.engine) as session:
            row = self._load_job(session, job_id)
            if JobStatus(row.status) in TERMINAL_STATUSES:
                return None
            row = self._cancel_in_session(session, row=row, now=now, reason=reason)
            view = _to_job_view(row)
            session.commit()
        logger.info("Job %s canceled: %s", job_id, reason)
        return view

    def force_terminal(self, *, job_id: str, reason: str, message_id: str) -> JobView | None:
        """Dead-letter handling: drive the job to ``failed`` or ``expired``.

        Waiting jobs expire (their open question is closed as expired); every
        other non-terminal job fails with failure class ``dead_letter``. A
        message that no longer owns the job leaves it untouched.
        """

        now = self.clock()
        with Session(self.engine) as session:
            row = self._load_job(session, job_id)
            status = JobStatus(row.status)
            if status in TERMINAL_STATUSES:
                return None
            if not self._message_owns_job(session, row=row, message_id=message_id):
                logger.warning(
                    "Dead letter %s no longer owns job %s (%s); leaving it alone",
                    message_id,
                    job_id,
                    status.value,
                )
                return None

            if status == JobStatus.WAITING_FOR_INPUT:
                target = JobStatus.EXPIRED
                kind = NotificationKind.EXPIRED
                self._close_open_questions(
                    session,
                    job_id=job_id,
                    status=QuestionStatus.EXPIRED,
                    now=now,
                )
            else:
                target = JobStatus.FAILED
                kind = NotificationKind.FAILURE

            append_event(
                session,
                job_id=job_id,
                kind=EventKind.DEAD_LETTER,
                payload={"message_id": message_id, "reason": reason, "status": status.value},
                now=now,
            )
            row = self._walk_in_session(
                session,
                row=row,
                target=target,
                now=now,
                payload={"reason": reason, "message_id": message_id},
                values={
                    "failure_class": FailureClass.DEAD_LETTER.value,
                    "error_summary": reason,
                    "active_message_id": None,
                    "finished_at": to_db_datetime(now),
                },
            )
            self._notify(
                session,
                row=row,
                kind=kind,
                payload={
                    "status": target.value,
                    "error": reason,
                    "failure_class": FailureClass.DEAD_LETTER.value,
                },
                now=now,
            )
            view = _to_job_view(row)
            session.commit()
        logger.error(
            "DEAD LETTER: job %s forced %s -> %s after message %s: %s",
            job_id,
            status.value,
            target.value,
            message_id,
            reason,
        )
        return view

    def ensure_expiry_scheduled(self, *, question_id: str) -> bool:
        """Make sure an open question has a pending expire message.

        Returns True when a timer had to be created or revived.
        """

        now = self.clock()
        with Session(self.engine) as session:
            question = session.get(JobQuestion, question_id)
            if question is None or question.status != QuestionStatus.OPEN.value:
                return False
            existing = session.get(QueueMessage, expire_message_id(question_id))
            if existing is None:
                job = self._load_job(session, question.job_id)
                schedule_expiry(
                    session,
                    job_id=question.job_id,
                    trigger=job.source,
                    question_id=question_id,
                    expires_at=to_utc_aware(question.expires_at),
                    max_attempts=self.orchestration_max_attempts,
                    now=now,
                )
            elif existing.status in {MessageStatus.DONE.value, MessageStatus.DEAD.value}:
                existing.status = MessageStatus.PENDING.value
                existing.attempt = 0
                existing.due_at = question.expires_at
                existing.leased_by = None
                existing.lease_expires_at = None
                existing.updated_at = to_db_datetime(now)
                session.add(existing)
            else:
                return False
            session.commit()
        return True

    # -- reads ----------------------------------------------------------------

    def get_job(self, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.get(Job, job_id)
            return _to_job_view(row) if row is not None else None

    def require_job(self, job_id: str) -> JobView:
        job = self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def get_job_by_dedup_key(self, dedup_key: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.exec(select(Job).where(Job.dedup_key == dedup_key)).one_or_none()
            return _to_job_view(row) if row is not None else None

    def is_cancel_requested(self, job_id: str) -> bool:
        with Session(self.engine) as session:
            requested_at = session.exec(
                select(Job.cancel_requested_at).where(Job.job_id == job_id),
            ).one_or_none()
        return requested_at is not None

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        with Session(self.engine) as session:
            statement = select(Job).order_by(col(Job.updated_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(Job.status == status.value)
            rows = session.exec(statement).all()
            return [_to_job_view(row) for row in rows]

    def get_job_details(self, job_id: str) -> JobDetails | None:
        with Session(self.engine) as session:
            row = session.get(Job, job_id)
            if row is None:
                return None
            events = session.exec(
                select(JobEvent)
                .where(JobEvent.job_id == job_id)
                .order_by(col(JobEvent.sequence).asc()),
            ).all()
            questions = session.exec(
                select(JobQuestion)
                .where(JobQuestion.job_id == job_id)
                .order_by(col(JobQuestion.asked_at).asc()),
            ).all()
            return JobDetails(
                job=_to_job_view(row),
                events=[to_event_view(event) for event in events],
                questions=[_to_question_view(question) for question in questions],
            )

    def get_checkpoint(self, checkpoint_id: str) -> CheckpointView | None:
        with Session(self.engine) as session:
            row = session.get(JobCheckpoint, checkpoint_id)
            if row is None:
                return None
            return CheckpointView(
                checkpoint_id=row.checkpoint_id,
                job_id=row.job_id,
                payload=load_json_object(row.payload_json),
                created_at=to_utc_aware(row.created_at),
            )

    def get_question(self, question_id: str) -> QuestionView | None:
        with Session(self.engine) as session:
            row = session.get(JobQuestion, question_id)
            return _to_question_view(row) if row is not None else None

    def list_questions(self, job_id: str) -> list[QuestionView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(JobQuestion)
                .where(JobQuestion.job_id == job_id)
                .order_by(col(JobQuestion.asked_at).asc()),
            ).all()
            return [_to_question_view(row) for row in rows]

    def list_open_questions(self) -> list[QuestionView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(JobQuestion)
                .where(JobQuestion.status == QuestionStatus.OPEN.value)
                .order_by(col(JobQuestion.expires_at).asc()),
            ).all()
            return [_to_question_view(row) for row in rows]

    def get_answer(self, answer_id: str) -> AnswerView | None:
        with Session(self.engine) as session:
            row = session.get(JobAnswer, answer_id)
            return _to_answer_view(row) if row is not None else None

    def get_answer_for_question(self, question_id: str) -> AnswerView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(JobAnswer).where(JobAnswer.question_id == question_id),
            ).one_or_none()
            return _to_answer_view(row) if row is not None else None

    def find_answer(self, *, question_id: str, source_event_id: str) -> AnswerView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(JobAnswer).where(
                    JobAnswer.question_id == question_id,
                    JobAnswer.source_event_id == source_event_id,
                ),
            ).one_or_none()
            return _to_answer_view(row) if row is not None else None

    # -- internals ------------------------------------------------------------

    def _transition_in_session(  # noqa: PLR0913
        self,
        session: Session,
        *,
        job_id: str,
        expected_status: JobStatus,
        new_status: JobStatus,
        now: datetime,
        payload: dict[str, Any] | None = None,
        expected_version: int | None = None,
        values: dict[str, Any] | None = None,
    ) -> Job:
        ensure_legal(expected_status, new_status)
        conditions = [
            col(Job.job_id) == job_id,
            col(Job.status) == expected_status.value,
        ]
        if expected_version is not None:
            conditions.append(col(Job.version) == expected_version)
        result = session.exec(
            sa_update(Job)
            .where(*conditions)
            .values(
                status=new_status.value,
                version=col(Job.version) + 1,
                updated_at=to_db_datetime(now),
                **(values or {}),
            ),
        )
        if result.rowcount != 1:
            self._raise_stale(
                session,
                job_id=job_id,
                expected_status=expected_status,
                expected_version=expected_version,
            )
        append_event(
            session,
            job_id=job_id,
            kind=EventKind.STATUS_CHANGED,
            payload=payload,
            now=now,
            status_from=expected_status,
            status_to=new_status,
        )
        return self._load_job(session, job_id)

    def _walk_in_session(  # noqa: PLR0913
        self,
        session: Session,
        *,
        row: Job,
        target: JobStatus,
        now: datetime,
        payload: dict[str, Any],
        values: dict[str, Any],
    ) -> Job:
        """Reach ``target`` through legal edges only, one audited hop at a time."""

        current = JobStatus(row.status)
        steps = path_to(current, target)
        for index, step in enumerate(steps):
            row = self._transition_in_session(
                session,
                job_id=row.job_id,
                expected_status=current,
                new_status=step,
                now=now,
                payload=payload,
                values=values if index == len(steps) - 1 else None,
            )
            current = step
        return row

    def _cancel_in_session(self, session: Session, *, row: Job, now: datetime, reason: str) -> Job:
        if JobStatus(row.status) == JobStatus.WAITING_FOR_INPUT:
            self._close_open_questions(
                session,
                job_id=row.job_id,
                status=QuestionStatus.CANCELED,
                now=now,
            )
        row = self._walk_in_session(
            session,
            row=row,
            target=JobStatus.CANCELED,
            now=now,
            payload={"reason": reason},
            values={"active_message_id": None, "finished_at": to_db_datetime(now)},
        )
        self._notify(
            session,
            row=row,
            kind=NotificationKind.CANCELED,
            payload={"status": JobStatus.CANCELED.value, "reason": reason},
            now=now,
        )
        return row

    def _message_owns_job(self, session: Session, *, row: Job, message_id: str) -> bool:
        status = JobStatus(row.status)
        if status == JobStatus.QUEUED:
            return message_id == row.dedup_key
        if status == JobStatus.RUNNING:
            return message_id == row.active_message_id
        if status == JobStatus.RESUMED:
            answered = session.exec(
                select(JobQuestion).where(
                    JobQuestion.job_id == row.job_id,
                    JobQuestion.status == QuestionStatus.ANSWERED.value,
                    JobQuestion.checkpoint_id == row.current_checkpoint_id,
                ),
            ).all()
            return any(
                message_id == resume_message_id(question.question_id) for question in answered
            )
        if status == JobStatus.WAITING_FOR_INPUT:
            open_question = session.exec(
                select(JobQuestion).where(
                    JobQuestion.job_id == row.job_id,
                    JobQuestion.status == QuestionStatus.OPEN.value,
                ),
            ).one_or_none()
            return open_question is not None and message_id == expire_message_id(
                open_question.question_id,
            )
        return False

    def _close_open_questions(
        self,
        session: Session,
        *,
        job_id: str,
        status: QuestionStatus,
        now: datetime,
    ) -> None:
        session.exec(
            sa_update(JobQuestion)
            .where(
                col(JobQuestion.job_id) == job_id,
                col(JobQuestion.status) == QuestionStatus.OPEN.value,
            )
            .values(status=status.value, closed_at=to_db_datetime(now)),
        )

    def _notify(  # noqa: PLR0913
        self,
        session: Session,
        *,
        row: Job,
        kind: NotificationKind,
        payload: dict[str, Any],
        now: datetime,
        question_id: str | None = None,
    ) -> None:
        enqueue_notification(
            session,
            job_id=row.job_id,
            channel_targets=load_json_list(row.channel_targets_json),
            kind=kind,
            payload={"repo": row.repo, "mode": row.mode, "ticket_ref": row.ticket_ref, **payload},
            max_attempts=self.notification_max_attempts,
            now=now,
            question_id=question_id,
        )

    def _raise_stale(
        self,
        session: Session,
        *,
        job_id: str,
        expected_status: JobStatus,
        expected_version: int | None,
    ) -> None:
        current = session.exec(
            select(Job).where(Job.job_id == job_id).execution_options(populate_existing=True),
        ).one_or_none()
        if current is None:
            raise JobNotFoundError(job_id)
        raise StaleStateError(
            job_id=job_id,
            expected_status=expected_status,
            actual_status=JobStatus(current.status),
            expected_version=expected_version,
            actual_version=current.version,
        )

    def _load_job(self, session: Session, job_id: str) -> Job:
        row = session.exec(
            select(Job).where(Job.job_id == job_id).execution_options(populate_existing=True),
        ).one_or_none()
        if row is None:
            raise JobNotFoundError(job_id)
        return row

    def _load_question(self, session: Session, question_id: str) -> JobQuestion:
        row = session.exec(
            select(JobQuestion)
            .where(JobQuestion.question_id == question_id)
            .execution_options(populate_existing=True),
        ).one_or_none()
        if row is None:
            raise QuestionNotFoundError(f"Question not found: {question_id}")
        return row


def _to_job_view(row: Job) -> JobView:
    return JobView(
        job_id=row.job_id,
        dedup_key=row.dedup_key,
        source=row.source,
        external_event_id=row.external_event_id,
        mode=JobMode(row.mode),
        repo=row.repo,
        workspace_ref=row.workspace_ref,
        ticket_ref=row.ticket_ref,
        status=JobStatus(row.status),
        version=row.version,
        current_checkpoint_id=row.current_checkpoint_id,
        channel_targets=load_json_list(row.channel_targets_json),
        execution_attempt=row.execution_attempt,
        active_message_id=row.active_message_id,
        cancel_requested_at=optional_utc_aware(row.cancel_requested_at),
        failure_class=FailureClass(row.failure_class) if row.failure_class else None,
        error_summary=row.error_summary,
        result=load_json_object(row.result_json) if row.result_json else None,
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
        started_at=optional_utc_aware(row.started_at),
        finished_at=optional_utc_aware(row.finished_at),
    )


def _to_question_view(row: JobQuestion) -> QuestionView:
    return QuestionView(
        question_id=row.question_id,
        job_id=row.job_id,
        checkpoint_id=row.checkpoint_id,
        prompt=load_json_object(row.prompt_json),
        status=QuestionStatus(row.status),
        delivery_targets=load_json_list(row.delivery_targets_json),
        asked_at=to_utc_aware(row.asked_at),
        expires_at=to_utc_aware(row.expires_at),
        closed_at=optional_utc_aware(row.closed_at),
    )


def _to_answer_view(row: JobAnswer) -> AnswerView:
    return AnswerView(
        answer_id=row.answer_id,
        question_id=row.question_id,
        job_id=row.job_id,
        source=row.source,
        responder_id=row.responder_id,
        payload=load_json_object(row.payload_json),
        source_event_id=row.source_event_id,
        answered_at=to_utc_aware(row.answered_at),
    )
