"""Append-only per-job audit trail."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from draftsman.orchestrator.errors import JobNotFoundError
from draftsman.orchestrator.models import JobEventView, JobStatus
from draftsman.storage.common import (
    Clock,
    dump_json,
    load_json_object,
    to_db_datetime,
    to_utc_aware,
    utc_now,
)
from draftsman.storage.sqlmodel_models import Job, JobEvent


class EventKind:
    """Audit event kinds written by the orchestration components."""

    CREATED = "created"
    STATUS_CHANGED = "status_changed"
    EXECUTION_CLAIMED = "execution_claimed"
    ATTEMPT_FAILED = "attempt_failed"
    CHECKPOINT_CREATED = "checkpoint_created"
    QUESTION_ASKED = "question_asked"
    QUESTION_EXPIRED = "question_expired"
    ANSWER_ACCEPTED = "answer_accepted"
    CANCEL_REQUESTED = "cancel_requested"
    RUNNER_TIMEOUT = "runner_timeout"
    DEAD_LETTER = "dead_letter"
    NOTIFICATION_DELIVERED = "notification_delivered"
    NOTIFICATION_FAILED = "notification_failed"
    SHUTDOWN_REQUESTED = "shutdown_requested"


def append_event(  # noqa: PLR0913
    session: Session,
    *,
    job_id: str,
    kind: str,
    payload: dict[str, Any] | None,
    now: datetime,
    status_from: JobStatus | None = None,
    status_to: JobStatus | None = None,
) -> JobEvent:
    """Allocate the next per-job sequence and stage the event in ``session``.

    The counter lives on the job row, so allocation and insert commit or roll
    back together with whatever else the caller does in the transaction.
    """

    result = session.exec(
        sa_update(Job)
        .where(col(Job.job_id) == job_id)
        .values(last_event_sequence=col(Job.last_event_sequence) + 1),
    )
    if result.rowcount != 1:
        raise JobNotFoundError(job_id)
    sequence = session.exec(
        select(Job.last_event_sequence).where(Job.job_id == job_id),
    ).one()
    row = JobEvent(
        job_id=job_id,
        sequence=sequence,
        kind=kind,
        status_from=status_from.value if status_from is not None else None,
        status_to=status_to.value if status_to is not None else None,
        payload_json=dump_json(payload) if payload else None,
        created_at=to_db_datetime(now),
    )
    session.add(row)
    return row


def to_event_view(row: JobEvent) -> JobEventView:
    return JobEventView(
        event_id=row.event_id or 0,
        job_id=row.job_id,
        sequence=row.sequence,
        kind=row.kind,
        status_from=JobStatus(row.status_from) if row.status_from is not None else None,
        status_to=JobStatus(row.status_to) if row.status_to is not None else None,
        created_at=to_utc_aware(row.created_at),
        payload=load_json_object(row.payload_json),
    )


class AuditTrail:
    """Read side of the audit log plus standalone appends."""

    def __init__(self, engine: Engine, *, clock: Clock = utc_now) -> None:
        self.engine = engine
        self.clock = clock

    def append(
        self,
        *,
        job_id: str,
        kind: str,
        payload: dict[str, Any] | None = None,
    ) -> JobEventView:
        with Session(self.engine) as session:
            row = append_event(
                session,
                job_id=job_id,
                kind=kind,
                payload=payload,
                now=self.clock(),
            )
            session.commit()
            session.refresh(row)
            return to_event_view(row)

    def history(self, job_id: str) -> list[JobEventView]:
        """All events of one job in sequence order."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(JobEvent)
                .where(JobEvent.job_id == job_id)
                .order_by(col(JobEvent.sequence).asc()),
            ).all()
        return [to_event_view(row) for row in rows]


def replay_transitions(events: list[JobEventView]) -> list[tuple[JobStatus | None, JobStatus]]:
    """Reconstruct the status history from audit events in sequence order."""

    transitions: list[tuple[JobStatus | None, JobStatus]] = []
    for event in sorted(events, key=lambda item: item.sequence):
        if event.status_to is None:
            continue
        if event.status_from == event.status_to:
            continue
        transitions.append((event.status_from, event.status_to))
    return transitions


def find_sequence_gaps(events: list[JobEventView]) -> list[int]:
    """Missing sequence numbers between 1 and the highest recorded one."""

    present = {event.sequence for event in events}
    if not present:
        return []
    return [number for number in range(1, max(present) + 1) if number not in present]
