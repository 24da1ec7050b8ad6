"""Orchestration lane consumer.

One claimed message is one bounded step: reload the job, run the Runner at
most once, apply exactly one guarded transition, ack. Waiting for a human is
never a step; the worker returns as soon as the question is persisted.
"""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Iterator
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import NamedTuple

from sqlalchemy.exc import OperationalError

from draftsman.invocation import mode_support_line
from draftsman.orchestrator.audit import EventKind
from draftsman.orchestrator.errors import JobNotFoundError, StaleStateError, TransientInfraError
from draftsman.orchestrator.expiration import ExpirationScheduler, ExpireOutcome
from draftsman.orchestrator.failure_classifier import classify_runner_failure
from draftsman.orchestrator.models import (
    FailureClass,
    JobStatus,
    JobView,
    OrchestrationAction,
    OrchestrationMessage,
    QueueMessageView,
)
from draftsman.orchestrator.queue import DurableQueue
from draftsman.orchestrator.repository import DEFAULT_QUESTION_TTL, JobRepository
from draftsman.orchestrator.runner.base import (
    Runner,
    RunnerFailed,
    RunnerNeedsInput,
    RunnerOutcome,
    RunnerRequest,
    RunnerSuccess,
)

logger = logging.getLogger(__name__)

MAX_CLAIM_ATTEMPTS = 3


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    paused: int = 0
    expired: int = 0
    canceled: int = 0
    timeouts: int = 0
    dead_lettered: int = 0
    skipped: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        for name in self.__slots__:
            setattr(self, name, getattr(self, name) + getattr(other, name))


class RunnerCall(NamedTuple):
    outcome: RunnerOutcome
    crashed: bool


class OrchestratorWorker:
    """Consumes orchestration actions and drives jobs through the Runner."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        queue: DurableQueue,
        runner: Runner,
        worker_id: str,
        poll_interval_seconds: float = 5.0,
        runner_timeout_seconds: float = 1800.0,
        question_ttl: timedelta = DEFAULT_QUESTION_TTL,
    ) -> None:
        self.repository = repository
        self.queue = queue
        self.runner = runner
        self.worker_id = worker_id
        self.poll_interval_seconds = poll_interval_seconds
        self.runner_timeout_seconds = runner_timeout_seconds
        self.question_ttl = question_ttl
        self.expiration = ExpirationScheduler(repository, clock=repository.clock)
        self._stop_requested = False
        self._current_job_id: str | None = None

    def run_once(self) -> WorkerRunSummary:
        """Process at most one orchestration message."""

        summary = WorkerRunSummary()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        for dead in self.queue.reap_expired_leases():
            self._on_dead_letter(dead, reason=dead.last_error or "lease expired")
            summary.dead_lettered += 1

        message = self.queue.claim(worker_id=self.worker_id)
        if message is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        self._current_job_id = message.job_id
        try:
            self._dispatch(message, summary=summary)
        except StaleStateError as error:
            logger.info("Dropping outcome of %s: %s", message.message_id, error)
            self.queue.ack(message)
            summary.skipped = 1
        except (OperationalError, TransientInfraError) as error:
            logger.warning("Transient error on %s: %s", message.message_id, error)
            decision = self.queue.retry(message, error=f"transient infra error: {error}")
            if decision.retried:
                summary.retried = 1
            else:
                self._on_dead_letter(message, reason=f"transient infra error: {error}")
                summary.dead_lettered = 1
        finally:
            self._current_job_id = None
        return summary

    def run_loop(
        self,
        *,
        max_messages: int | None = None,
        max_idle_polls: int | None = 1,
    ) -> WorkerRunSummary:
        """Run until idle or ``max_messages`` reached.

        Args:
            max_messages: Stop after processing this many messages (None = unlimited).
            max_idle_polls: Consecutive empty polls before exiting (None = never).
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        logger.info("Worker %s started", self.worker_id)
        logger.info(mode_support_line())
        with self._signal_handlers():
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
        """Finish the current message, then stop claiming."""

        self._stop_requested = True
        job_id = self._current_job_id
        if job_id is None:
            return
        try:
            self.repository.audit.append(
                job_id=job_id,
                kind=EventKind.SHUTDOWN_REQUESTED,
                payload={"reason": reason, "worker_id": self.worker_id},
            )
        except (OperationalError, JobNotFoundError):  # pragma: no cover - best effort
            logger.warning("Could not record shutdown request for job %s", job_id)

    # -- dispatch -------------------------------------------------------------

    def _dispatch(self, message: QueueMessageView, *, summary: WorkerRunSummary) -> None:
        try:
            action = OrchestrationMessage.from_payload(message.payload)
        except (KeyError, ValueError) as error:
            logger.error("Malformed orchestration message %s: %s", message.message_id, error)
            self.queue.dead_letter(message, error=f"malformed payload: {error}")
            summary.dead_lettered = 1
            return

        if action.action == OrchestrationAction.EXPIRE_WAITING_INPUT:
            self._handle_expire(message, action=action, summary=summary)
        elif action.action == OrchestrationAction.CANCEL:
            job = self.repository.cancel_job(
                job_id=action.job_id,
                reason="cancel grace period elapsed",
            )
            self.queue.ack(message)
            if job is not None:
                summary.canceled = 1
            else:
                summary.skipped = 1
        else:
            self._handle_execution(message, action=action, summary=summary)

    def _handle_expire(
        self,
        message: QueueMessageView,
        *,
        action: OrchestrationMessage,
        summary: WorkerRunSummary,
    ) -> None:
        result = self.expiration.handle(action)
        if result.outcome == ExpireOutcome.NOT_DUE and result.due_at is not None:
            logger.info("Expiry for %s delivered early; deferring", action.question_id)
            self.queue.defer(message, due_at=result.due_at)
            summary.skipped = 1
            return
        self.queue.ack(message)
        if result.outcome == ExpireOutcome.EXPIRED:
            summary.expired = 1
        else:
            summary.skipped = 1

    def _handle_execution(
        self,
        message: QueueMessageView,
        *,
        action: OrchestrationMessage,
        summary: WorkerRunSummary,
    ) -> None:
        job = self._claim_for_run(message, action=action)
        if job is None:
            self.queue.ack(message)
            summary.skipped = 1
            return

        if job.cancel_requested_at is not None:
            self._finish_canceled(message, job_id=job.job_id, summary=summary)
            return

        request = self._build_request(job, action=action)
        call = self._invoke_runner(request)

        if self.repository.is_cancel_requested(job.job_id):
            self._finish_canceled(message, job_id=job.job_id, summary=summary)
            return

        outcome = call.outcome
        if isinstance(outcome, RunnerSuccess):
            self.repository.complete_job(
                job_id=job.job_id,
                expected_version=job.version,
                result=outcome.result,
            )
            self.queue.ack(message)
            summary.succeeded = 1
        elif isinstance(outcome, RunnerNeedsInput):
            ttl = (
                timedelta(seconds=outcome.ttl_seconds)
                if outcome.ttl_seconds is not None
                else self.question_ttl
            )
            self.repository.pause_for_input(
                job_id=job.job_id,
                expected_version=job.version,
                checkpoint=outcome.checkpoint,
                question=outcome.question,
                ttl=ttl,
            )
            self.queue.ack(message)
            summary.paused = 1
        else:
            self._handle_failure(
                message,
                job=job,
                outcome=outcome,
                crashed=call.crashed,
                summary=summary,
            )

    def _handle_failure(  # noqa: PLR0913
        self,
        message: QueueMessageView,
        *,
        job: JobView,
        outcome: RunnerFailed,
        crashed: bool,
        summary: WorkerRunSummary,
    ) -> None:
        classification = classify_runner_failure(
            error=outcome.error,
            retryable=outcome.retryable,
            timed_out=outcome.timed_out,
            crashed=crashed,
        )

        if classification.failure_class == FailureClass.RUNNER_TIMEOUT:
            logger.error("Runner timeout for job %s: %s", job.job_id, outcome.error)
            self.repository.fail_job(
                job_id=job.job_id,
                expected_version=job.version,
                error=outcome.error,
                failure_class=FailureClass.RUNNER_TIMEOUT,
                extra_event=EventKind.RUNNER_TIMEOUT,
            )
            self.queue.ack(message)
            summary.failed = 1
            summary.timeouts = 1
            return

        if not classification.retryable:
            self.repository.fail_job(
                job_id=job.job_id,
                expected_version=job.version,
                error=outcome.error,
                failure_class=classification.failure_class,
            )
            self.queue.ack(message)
            summary.failed = 1
            return

        if message.attempts_left:
            decision = self.queue.retry(message, error=outcome.error)
            self.repository.audit.append(
                job_id=job.job_id,
                kind=EventKind.ATTEMPT_FAILED,
                payload={
                    "error": outcome.error,
                    "attempt": message.attempt,
                    "max_attempts": message.max_attempts,
                    "retry_due_at": decision.due_at.isoformat() if decision.due_at else None,
                    **classification.to_event_details(),
                },
            )
            summary.retried = 1
            return

        self.repository.fail_job(
            job_id=job.job_id,
            expected_version=job.version,
            error=outcome.error,
            failure_class=classification.failure_class,
            extra_event=EventKind.DEAD_LETTER,
        )
        self.queue.dead_letter(message, error=outcome.error)
        logger.error(
            "DEAD LETTER: job %s failed after %d attempts: %s",
            job.job_id,
            message.attempt,
            outcome.error,
        )
        summary.failed = 1
        summary.dead_lettered = 1

    def _finish_canceled(
        self,
        message: QueueMessageView,
        *,
        job_id: str,
        summary: WorkerRunSummary,
    ) -> None:
        self.repository.cancel_job(job_id=job_id, reason="cancel requested")
        self.queue.ack(message)
        summary.canceled = 1

    def _claim_for_run(
        self,
        message: QueueMessageView,
        *,
        action: OrchestrationMessage,
    ) -> JobView | None:
        """Move the job into ``running`` for this message, or None for a no-op.

        The queue payload is only a hint: status, version and checkpoint are
        re-read from the store before every attempt.
        """

        expected = (
            JobStatus.QUEUED if action.action == OrchestrationAction.START else JobStatus.RESUMED
        )
        for _ in range(MAX_CLAIM_ATTEMPTS):
            job = self.repository.get_job(action.job_id)
            if job is None:
                logger.warning(
                    "Message %s refers to unknown job %s",
                    message.message_id,
                    action.job_id,
                )
                return None
            if (
                action.resume_from_checkpoint_id is not None
                and action.resume_from_checkpoint_id != job.current_checkpoint_id
            ):
                logger.info("Message %s points at a superseded checkpoint", message.message_id)
                return None

            if job.status == expected:
                claim_status = expected
            elif job.status == JobStatus.RUNNING and job.active_message_id == message.message_id:
                claim_status = JobStatus.RUNNING
            else:
                logger.info(
                    "Job %s is %s; %s is a no-op",
                    job.job_id,
                    job.status.value,
                    message.message_id,
                )
                return None

            try:
                return self.repository.claim_execution(
                    job_id=job.job_id,
                    message_id=message.message_id,
                    expected_status=claim_status,
                    expected_version=job.version,
                )
            except StaleStateError as error:
                logger.info("Claim raced for job %s: %s", job.job_id, error)
        return None

    def _build_request(self, job: JobView, *, action: OrchestrationMessage) -> RunnerRequest:
        checkpoint = None
        answer = None
        if action.action == OrchestrationAction.RESUME and job.current_checkpoint_id:
            stored = self.repository.get_checkpoint(job.current_checkpoint_id)
            checkpoint = stored.payload if stored is not None else None
            for question in self.repository.list_questions(job.job_id):
                if question.checkpoint_id != job.current_checkpoint_id:
                    continue
                found = self.repository.get_answer_for_question(question.question_id)
                if found is not None:
                    answer = {
                        "answer_id": found.answer_id,
                        "question_id": found.question_id,
                        "source": found.source,
                        "responder_id": found.responder_id,
                        "payload": found.payload,
                    }
        return RunnerRequest(
            job_id=job.job_id,
            mode=job.mode,
            repo=job.repo,
            workspace_ref=job.workspace_ref,
            ticket_ref=job.ticket_ref,
            checkpoint=checkpoint,
            answer=answer,
            attempt=job.execution_attempt,
            cancel_requested=lambda: self.repository.is_cancel_requested(job.job_id),
        )

    def _invoke_runner(self, request: RunnerRequest) -> RunnerCall:
        """Run with a hard time bound; a runner exception counts as FAILED.

        Once the bound passes the abandoned runner sees ``cancel_requested()``
        return True, so a cooperative runner winds down instead of lingering.
        """

        abandoned = threading.Event()
        job_cancel_requested = request.cancel_requested
        request = replace(
            request,
            cancel_requested=lambda: abandoned.is_set()
            or (job_cancel_requested is not None and job_cancel_requested()),
        )
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"runner-{request.job_id}")
        future = executor.submit(self.runner.run, request)
        try:
            outcome = future.result(timeout=self.runner_timeout_seconds)
            return RunnerCall(outcome=outcome, crashed=False)
        except FuturesTimeoutError:
            abandoned.set()
            return RunnerCall(
                outcome=RunnerFailed(
                    error=f"runner produced no outcome within {self.runner_timeout_seconds}s",
                    retryable=False,
                    timed_out=True,
                ),
                crashed=False,
            )
        except Exception as error:  # noqa: BLE001
            logger.exception("Runner raised for job %s", request.job_id)
            return RunnerCall(
                outcome=RunnerFailed(error=f"{type(error).__name__}: {error}"),
                crashed=True,
            )
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    def _on_dead_letter(self, message: QueueMessageView, *, reason: str) -> None:
        try:
            if message.kind == OrchestrationAction.CANCEL.value:
                self.repository.cancel_job(job_id=message.job_id, reason=reason)
            else:
                self.repository.force_terminal(
                    job_id=message.job_id,
                    reason=reason,
                    message_id=message.message_id,
                )
        except (OperationalError, JobNotFoundError):
            logger.exception("Could not force terminal state for job %s", message.job_id)

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(reason=f"signal {name}")

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
