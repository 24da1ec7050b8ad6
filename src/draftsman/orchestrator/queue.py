"""Durable SQLite-backed message queue with lanes, leases and dead letters.

Delivery is at-least-once: a claimed message is leased to one worker and
returns to the lane when the lease expires without an ack. Delayed actions
(retries with backoff, question expiry timers, cancel grace periods) are plain
messages with a future ``due_at``; there is no separate timer subsystem.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, NamedTuple

from sqlalchemy import update as sa_update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, func, select

from draftsman.orchestrator.models import MessageStatus, QueueLane, QueueMessageView
from draftsman.storage.common import (
    Clock,
    dump_json,
    load_json_object,
    optional_utc_aware,
    to_db_datetime,
    to_utc_aware,
    utc_now,
)
from draftsman.storage.sqlmodel_models import QueueMessage

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RetryPolicy:
    """Bounded attempts with full-jitter exponential backoff."""

    max_attempts: int = 3
    retry_base_seconds: float = 30.0
    retry_max_seconds: float = 900.0
    lease_seconds: int = 300

    def compute_delay(self, *, retry_number: int, rng: random.Random) -> float:
        max_delay = min(
            self.retry_max_seconds,
            self.retry_base_seconds * (2 ** max(retry_number - 1, 0)),
        )
        return rng.uniform(0, max_delay)


class RetryDecision(NamedTuple):
    retried: bool
    dead_lettered: bool
    due_at: datetime | None


def enqueue_message(  # noqa: PLR0913
    session: Session,
    *,
    message_id: str,
    lane: QueueLane,
    job_id: str,
    kind: str,
    payload: dict[str, Any],
    max_attempts: int,
    due_at: datetime,
    now: datetime,
) -> bool:
    """Stage a message in ``session``; returns False when the id already exists."""

    statement = (
        sqlite_insert(QueueMessage)
        .values(
            message_id=message_id,
            lane=lane.value,
            job_id=job_id,
            kind=kind,
            payload_json=dump_json(payload),
            status=MessageStatus.PENDING.value,
            attempt=0,
            max_attempts=max_attempts,
            due_at=to_db_datetime(due_at),
            created_at=to_db_datetime(now),
            updated_at=to_db_datetime(now),
        )
        .on_conflict_do_nothing(index_elements=["message_id"])
    )
    result = session.exec(statement)
    return result.rowcount == 1


class DurableQueue:
    """One lane of the durable queue."""

    def __init__(
        self,
        engine: Engine,
        *,
        lane: QueueLane,
        policy: RetryPolicy,
        clock: Clock = utc_now,
        rng: random.Random | None = None,
    ) -> None:
        self.engine = engine
        self.lane = lane
        self.policy = policy
        self.clock = clock
        self._random = rng or random.Random()  # noqa: S311

    def enqueue(
        self,
        *,
        message_id: str,
        job_id: str,
        kind: str,
        payload: dict[str, Any],
        due_at: datetime | None = None,
    ) -> bool:
        now = self.clock()
        with Session(self.engine) as session:
            inserted = enqueue_message(
                session,
                message_id=message_id,
                lane=self.lane,
                job_id=job_id,
                kind=kind,
                payload=payload,
                max_attempts=self.policy.max_attempts,
                due_at=due_at or now,
                now=now,
            )
            session.commit()
        return inserted

    def reap_expired_leases(self) -> list[QueueMessageView]:
        """Return expired leases to the lane; dead-letter those out of attempts.

        Returns the messages that were dead-lettered so the caller can force
        their jobs into a terminal state.
        """

        now = self.clock()
        dead: list[QueueMessageView] = []
        with Session(self.engine) as session:
            rows = session.exec(
                select(QueueMessage).where(
                    QueueMessage.lane == self.lane.value,
                    QueueMessage.status == MessageStatus.LEASED.value,
                    col(QueueMessage.lease_expires_at) <= to_db_datetime(now),
                ),
            ).all()
            for row in rows:
                exhausted = row.attempt >= row.max_attempts
                row.status = (MessageStatus.DEAD if exhausted else MessageStatus.PENDING).value
                row.last_error = "lease expired before acknowledgement"
                row.leased_by = None
                row.lease_expires_at = None
                row.due_at = to_db_datetime(now)
                row.updated_at = to_db_datetime(now)
                session.add(row)
                if exhausted:
                    dead.append(_to_message_view(row))
                logger.warning(
                    "Lease expired for message %s (attempt %d/%d), %s",
                    row.message_id,
                    row.attempt,
                    row.max_attempts,
                    "dead-lettered" if exhausted else "redelivering",
                )
            session.commit()
        return dead

    def claim(self, *, worker_id: str) -> QueueMessageView | None:
        """Atomically lease the next due message of this lane."""

        while True:
            now = self.clock()
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(QueueMessage)
                    .where(
                        QueueMessage.lane == self.lane.value,
                        QueueMessage.status == MessageStatus.PENDING.value,
                        col(QueueMessage.due_at) <= to_db_datetime(now),
                    )
                    .order_by(
                        col(QueueMessage.due_at).asc(),
                        col(QueueMessage.created_at).asc(),
                    )
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(QueueMessage)
                    .where(
                        col(QueueMessage.message_id) == candidate.message_id,
                        col(QueueMessage.status) == MessageStatus.PENDING.value,
                        col(QueueMessage.attempt) == candidate.attempt,
                    )
                    .values(
                        status=MessageStatus.LEASED.value,
                        attempt=candidate.attempt + 1,
                        leased_by=worker_id,
                        lease_expires_at=to_db_datetime(
                            now + timedelta(seconds=self.policy.lease_seconds),
                        ),
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                claimed = session.exec(
                    select(QueueMessage)
                    .where(QueueMessage.message_id == candidate.message_id)
                    .execution_options(populate_existing=True),
                ).one()
                view = _to_message_view(claimed)
                session.commit()
                return view

    def ack(self, message: QueueMessageView) -> bool:
        acked = self._finish(message, status=MessageStatus.DONE, error=None)
        if not acked:
            logger.warning("Ack lost for message %s: lease no longer held", message.message_id)
        return acked

    def dead_letter(self, message: QueueMessageView, *, error: str) -> bool:
        return self._finish(message, status=MessageStatus.DEAD, error=error)

    def retry(
        self,
        message: QueueMessageView,
        *,
        error: str,
        payload: dict[str, Any] | None = None,
    ) -> RetryDecision:
        """Schedule redelivery with backoff, or dead-letter when attempts are exhausted."""

        if not message.attempts_left:
            dead = self.dead_letter(message, error=error)
            return RetryDecision(retried=False, dead_lettered=dead, due_at=None)

        now = self.clock()
        due_at = now + timedelta(
            seconds=self.policy.compute_delay(retry_number=message.attempt, rng=self._random),
        )
        values: dict[str, Any] = {
            "status": MessageStatus.PENDING.value,
            "due_at": to_db_datetime(due_at),
            "last_error": error,
            "leased_by": None,
            "lease_expires_at": None,
            "updated_at": to_db_datetime(now),
        }
        if payload is not None:
            values["payload_json"] = dump_json(payload)
        retried = self._update_leased(message, values=values)
        return RetryDecision(
            retried=retried,
            dead_lettered=False,
            due_at=due_at if retried else None,
        )

    def defer(self, message: QueueMessageView, *, due_at: datetime) -> bool:
        """Put a message back until ``due_at`` without consuming an attempt."""

        now = self.clock()
        return self._update_leased(
            message,
            values={
                "status": MessageStatus.PENDING.value,
                "attempt": max(0, message.attempt - 1),
                "due_at": to_db_datetime(due_at),
                "leased_by": None,
                "lease_expires_at": None,
                "updated_at": to_db_datetime(now),
            },
        )

    def get(self, message_id: str) -> QueueMessageView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(QueueMessage).where(QueueMessage.message_id == message_id),
            ).one_or_none()
        return _to_message_view(row) if row is not None else None

    def list_messages(
        self,
        *,
        status: MessageStatus | None = None,
        job_id: str | None = None,
        limit: int = 50,
    ) -> list[QueueMessageView]:
        with Session(self.engine) as session:
            statement = (
                select(QueueMessage)
                .where(QueueMessage.lane == self.lane.value)
                .order_by(col(QueueMessage.due_at).asc(), col(QueueMessage.created_at).asc())
                .limit(limit)
            )
            if status is not None:
                statement = statement.where(QueueMessage.status == status.value)
            if job_id is not None:
                statement = statement.where(QueueMessage.job_id == job_id)
            rows = session.exec(statement).all()
        return [_to_message_view(row) for row in rows]

    def count(self, *, statuses: tuple[MessageStatus, ...]) -> int:
        with Session(self.engine) as session:
            return session.exec(
                select(func.count())
                .select_from(QueueMessage)
                .where(
                    QueueMessage.lane == self.lane.value,
                    col(QueueMessage.status).in_([status.value for status in statuses]),
                ),
            ).one()

    def _finish(
        self,
        message: QueueMessageView,
        *,
        status: MessageStatus,
        error: str | None,
    ) -> bool:
        now = self.clock()
        values: dict[str, Any] = {
            "status": status.value,
            "leased_by": None,
            "lease_expires_at": None,
            "updated_at": to_db_datetime(now),
        }
        if error is not None:
            values["last_error"] = error
        return self._update_leased(message, values=values)

    def _update_leased(self, message: QueueMessageView, *, values: dict[str, Any]) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(QueueMessage)
                .where(
                    col(QueueMessage.message_id) == message.message_id,
                    col(QueueMessage.status) == MessageStatus.LEASED.value,
                    col(QueueMessage.leased_by) == message.leased_by,
                    col(QueueMessage.attempt) == message.attempt,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True


def _to_message_view(row: QueueMessage) -> QueueMessageView:
    return QueueMessageView(
        message_id=row.message_id,
        lane=QueueLane(row.lane),
        job_id=row.job_id,
        kind=row.kind,
        payload=load_json_object(row.payload_json),
        status=MessageStatus(row.status),
        attempt=row.attempt,
        max_attempts=row.max_attempts,
        due_at=to_utc_aware(row.due_at),
        lease_expires_at=optional_utc_aware(row.lease_expires_at),
        leased_by=row.leased_by,
        last_error=row.last_error,
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
    )
