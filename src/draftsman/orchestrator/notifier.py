"""Notification lane: enqueue helpers and the dispatching worker.

Notification failures never feed back into job status. Terminal delivery
failures become ``notification_failed`` audit warnings.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy.exc import OperationalError
from sqlmodel import Session

from draftsman.orchestrator.audit import AuditTrail, EventKind
from draftsman.orchestrator.channels import ChannelRegistry, DeliveryResult
from draftsman.orchestrator.errors import TransientInfraError
from draftsman.orchestrator.models import (
    NotificationKind,
    NotificationMessage,
    QueueLane,
    QueueMessageView,
)
from draftsman.orchestrator.queue import DurableQueue, enqueue_message

logger = logging.getLogger(__name__)


def notification_message_id(
    job_id: str,
    kind: NotificationKind,
    *,
    question_id: str | None = None,
) -> str:
    """Deterministic id: one message per job and terminal kind, one per question."""

    if kind == NotificationKind.QUESTION:
        if question_id is None:
            raise ValueError("Question notifications require question_id")
        return f"notify:{job_id}:question:{question_id}"
    return f"notify:{job_id}:{kind.value}"


def enqueue_notification(  # noqa: PLR0913
    session: Session,
    *,
    job_id: str,
    channel_targets: list[str],
    kind: NotificationKind,
    payload: dict[str, Any],
    max_attempts: int,
    now: datetime,
    question_id: str | None = None,
) -> bool:
    message = NotificationMessage(
        job_id=job_id,
        channel_targets=channel_targets,
        kind=kind,
        payload=payload,
    )
    return enqueue_message(
        session,
        message_id=notification_message_id(job_id, kind, question_id=question_id),
        lane=QueueLane.NOTIFICATIONS,
        job_id=job_id,
        kind=kind.value,
        payload=message.to_payload(),
        max_attempts=max_attempts,
        due_at=now,
        now=now,
    )


@dataclass(slots=True)
class NotifierRunSummary:
    processed: int = 0
    delivered: int = 0
    retried: int = 0
    failed: int = 0
    idle_polls: int = 0

    def add(self, other: NotifierRunSummary) -> None:
        self.processed += other.processed
        self.delivered += other.delivered
        self.retried += other.retried
        self.failed += other.failed
        self.idle_polls += other.idle_polls


class NotificationWorker:
    """Consumes the notification lane and fans out to channel adapters."""

    def __init__(
        self,
        *,
        queue: DurableQueue,
        registry: ChannelRegistry,
        audit: AuditTrail,
        worker_id: str,
        poll_interval_seconds: float = 1.0,
    ) -> None:
        self.queue = queue
        self.registry = registry
        self.audit = audit
        self.worker_id = worker_id
        self.poll_interval_seconds = poll_interval_seconds
        self._stop_requested = False

    def run_once(self) -> NotifierRunSummary:
        summary = NotifierRunSummary()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary
        self.queue.reap_expired_leases()
        message = self.queue.claim(worker_id=self.worker_id)
        if message is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        try:
            self._dispatch(message, summary=summary)
        except (OperationalError, TransientInfraError) as error:
            logger.warning("Transient error dispatching %s: %s", message.message_id, error)
            decision = self.queue.retry(message, error=f"transient infra error: {error}")
            if decision.retried:
                summary.retried = 1
            else:
                summary.failed = 1
                logger.error("Notification %s dead-lettered after infra errors", message.message_id)
        return summary

    def run_loop(
        self,
        *,
        max_messages: int | None = None,
        max_idle_polls: int | None = 1,
    ) -> NotifierRunSummary:
        aggregate = NotifierRunSummary()
        consecutive_idle = 0
        while True:
            if self._stop_requested:
                return aggregate
            if max_messages is not None and aggregate.processed >= max_messages:
                return aggregate
            summary = self.run_once()
            aggregate.add(summary)
            if summary.processed == 0:
                consecutive_idle += 1
                if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                    return aggregate
                self._sleep_with_stop(self.poll_interval_seconds)
                continue
            consecutive_idle = 0

    def request_stop(self, *, reason: str) -> None:
        logger.info("Notification worker %s stopping: %s", self.worker_id, reason)
        self._stop_requested = True

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    def _dispatch(self, message: QueueMessageView, *, summary: NotifierRunSummary) -> None:
        try:
            notification = NotificationMessage.from_payload(message.payload)
        except (KeyError, ValueError) as error:
            logger.error("Malformed notification %s: %s", message.message_id, error)
            self.queue.dead_letter(message, error=f"malformed payload: {error}")
            summary.failed = 1
            return
        pending = [str(target) for target in message.payload.get("pending_targets") or []]
        targets = pending or notification.channel_targets

        failures: dict[str, DeliveryResult] = {}
        for target in targets:
            result = self._deliver_one(target=target, notification=notification)
            if not result.ok:
                failures[target] = result
        delivered = [target for target in targets if target not in failures]
        if delivered:
            self.audit.append(
                job_id=notification.job_id,
                kind=EventKind.NOTIFICATION_DELIVERED,
                payload={
                    "notification_kind": notification.kind.value,
                    "targets": delivered,
                    "attempt": message.attempt,
                },
            )

        if not failures:
            self.queue.ack(message)
            summary.delivered = 1
            return

        retryable = [target for target, result in failures.items() if result.retryable]
        permanent = [target for target, result in failures.items() if not result.retryable]
        error_summary = "; ".join(
            f"{target}: {result.error or 'delivery failed'}" for target, result in failures.items()
        )
        if permanent:
            self._record_failure(
                notification=notification,
                targets=permanent,
                failures=failures,
                attempt=message.attempt,
            )

        if retryable and message.attempts_left:
            payload = dict(message.payload)
            payload["pending_targets"] = retryable
            decision = self.queue.retry(message, error=error_summary, payload=payload)
            if decision.retried:
                summary.retried = 1
                return

        if retryable:
            self._record_failure(
                notification=notification,
                targets=retryable,
                failures=failures,
                attempt=message.attempt,
            )
            self.queue.dead_letter(message, error=error_summary)
        else:
            self.queue.ack(message)
        summary.failed = 1

    def _deliver_one(self, *, target: str, notification: NotificationMessage) -> DeliveryResult:
        adapter = self.registry.get(target)
        if adapter is None:
            return DeliveryResult.failed(f"no adapter registered for {target}", retryable=False)
        try:
            return adapter.deliver(notification)
        except Exception as error:  # noqa: BLE001
            logger.warning("Channel %s raised while delivering: %s", target, error)
            return DeliveryResult.failed(f"{type(error).__name__}: {error}")

    def _record_failure(
        self,
        *,
        notification: NotificationMessage,
        targets: list[str],
        failures: dict[str, DeliveryResult],
        attempt: int,
    ) -> None:
        logger.warning(
            "Notification %s for job %s failed for %s",
            notification.kind.value,
            notification.job_id,
            ", ".join(targets),
        )
        self.audit.append(
            job_id=notification.job_id,
            kind=EventKind.NOTIFICATION_FAILED,
            payload={
                "severity": "warning",
                "notification_kind": notification.kind.value,
                "targets": targets,
                "errors": {target: failures[target].error for target in targets},
                "attempt": attempt,
            },
        )
