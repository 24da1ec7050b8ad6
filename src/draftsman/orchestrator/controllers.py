"""Controllers for draftsman CLI commands."""

from __future__ import annotations

import json
import logging
import signal
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

import rich_click as click

from draftsman.config import LaneSettings, Settings
from draftsman.invocation import describe_invocation, mode_support_line
from draftsman.orchestrator.channels import (
    ChannelAdapter,
    ChannelRegistry,
    LogChannelAdapter,
    WebhookChannelAdapter,
)
from draftsman.orchestrator.errors import (
    IllegalTransitionError,
    InvalidInputError,
    JobNotFoundError,
)
from draftsman.orchestrator.expiration import ExpirationScheduler
from draftsman.orchestrator.gate import IdempotencyGate
from draftsman.orchestrator.models import JobStatus, MessageStatus, QueueLane
from draftsman.orchestrator.notifier import NotificationWorker
from draftsman.orchestrator.pool import LanePool
from draftsman.orchestrator.queue import DurableQueue, RetryPolicy
from draftsman.orchestrator.repository import JobRepository
from draftsman.orchestrator.resume import AllowlistResponderPolicy, ResumeIngestion
from draftsman.orchestrator.runner import CommandRunner, EchoRunner, Runner
from draftsman.orchestrator.worker import OrchestratorWorker

logger = logging.getLogger(__name__)

SERVE_POLL_SECONDS = 1.0


@dataclass(slots=True)
class JobSubmitCommand:
    """CLI input for a ticket invocation."""

    db_path: Path | None
    source: str
    event_id: str
    repo: str
    text: str
    workspace_ref: str | None
    ticket_ref: str | None


@dataclass(slots=True)
class JobListCommand:
    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class JobMutateCommand:
    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class JobAnswerCommand:
    """CLI input for an answer arriving from any channel."""

    db_path: Path | None
    question_id: str
    source: str
    responder_id: str
    event_id: str
    text: str


@dataclass(slots=True)
class WorkerRunCommand:
    db_path: Path | None
    lane: str
    once: bool
    max_messages: int | None
    max_idle_polls: int | None


@dataclass(slots=True)
class WorkerServeCommand:
    db_path: Path | None
    duration_seconds: float | None


@dataclass(slots=True)
class QueueListCommand:
    db_path: Path | None
    lane: str
    status: str | None
    limit: int


@dataclass(slots=True)
class DbCommand:
    db_path: Path | None


class DraftsmanCliController:
    """Command handlers for the ``draftsman`` CLI; each returns output lines."""

    def submit(self, command: JobSubmitCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository, _user_errors():
            gate = IdempotencyGate(
                repository,
                secondary_channels=settings.jobs.secondary_channels,
            )
            result = gate.accept_invocation(
                source=command.source,
                external_event_id=command.event_id,
                text=command.text,
                repo=command.repo,
                workspace_ref=command.workspace_ref,
                ticket_ref=command.ticket_ref,
            )
        job = result.job
        verb = "Existing job" if result.deduped else "Job queued"
        return [
            f"{verb}: {job.job_id}",
            f"Mode: {job.mode.value}",
            f"Status: {job.status.value}",
            f"Channels: {', '.join(job.channel_targets)}",
        ]

    def list_jobs(self, command: JobListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _repository(settings) as repository:
            jobs = repository.list_jobs(status=status_filter, limit=command.limit)

        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.job_id} mode={job.mode.value} status={job.status.value} "
                f"repo={job.repo} attempt={job.execution_attempt} "
                f"updated_at={job.updated_at.isoformat()}",
            )
        return lines

    def inspect_job(self, command: JobMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            details = repository.get_job_details(command.job_id)
        if details is None:
            return [f"Job not found: {command.job_id}"]

        job = details.job
        lines = [
            f"Job: {job.job_id}",
            f"Dedup key: {job.dedup_key}",
            f"Mode: {job.mode.value}",
            f"Repo: {job.repo}",
            f"Status: {job.status.value}",
            f"Version: {job.version}",
            f"Attempt: {job.execution_attempt}",
            f"Checkpoint: {job.current_checkpoint_id or '-'}",
            f"Failure class: {job.failure_class.value if job.failure_class else '-'}",
            f"Error: {job.error_summary or '-'}",
            f"Result: {json.dumps(job.result, sort_keys=True) if job.result else '-'}",
            f"Questions: {len(details.questions)}",
        ]
        for question in details.questions:
            lines.append(
                f"  question {question.question_id} status={question.status.value} "
                f"expires_at={question.expires_at.isoformat()} "
                f"text={question.prompt.get('text', '-')}",
            )
        lines.append(f"Events: {len(details.events)}")
        for event in details.events:
            lines.append(
                f"  #{event.sequence} {event.created_at.isoformat()} {event.kind} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def cancel_job(self, command: JobMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository, _user_errors():
            job = repository.request_cancel(
                job_id=command.job_id,
                grace=timedelta(seconds=settings.jobs.cancel_grace_seconds),
            )
        if job.status == JobStatus.CANCELED:
            return [f"Job canceled: {job.job_id}"]
        return [
            f"Cancel requested: {job.job_id} (status={job.status.value}, "
            f"grace={settings.jobs.cancel_grace_seconds}s)",
        ]

    def answer(self, command: JobAnswerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository, _user_errors():
            ingestion = ResumeIngestion(
                repository,
                policy=AllowlistResponderPolicy(settings.channels.responder_allowlist),
            )
            result = ingestion.validate_and_accept(
                question_id=command.question_id,
                source=command.source,
                responder_id=command.responder_id,
                payload={"text": command.text},
                source_event_id=command.event_id,
            )
        prefix = "Answer already recorded" if result.deduped else "Answer accepted"
        return [f"{prefix}: {result.answer_id} (job {result.job_id} resumes)"]

    def run_worker(self, command: WorkerRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        lane = _parse_lane(command.lane)
        with _repository(settings) as repository:
            if lane == QueueLane.NOTIFICATIONS:
                registry = _build_registry(settings)
                try:
                    worker = _build_notifier(repository, settings, registry=registry)
                    summary = (
                        worker.run_once()
                        if command.once
                        else worker.run_loop(
                            max_messages=command.max_messages,
                            max_idle_polls=command.max_idle_polls,
                        )
                    )
                finally:
                    registry.close()
                return [
                    "Notifier summary: "
                    f"processed={summary.processed} delivered={summary.delivered} "
                    f"retried={summary.retried} failed={summary.failed} "
                    f"idle_polls={summary.idle_polls}",
                ]

            orchestrator = _build_orchestrator(
                repository,
                settings,
                worker_id=settings.worker.worker_id,
            )
            run_summary = (
                orchestrator.run_once()
                if command.once
                else orchestrator.run_loop(
                    max_messages=command.max_messages,
                    max_idle_polls=command.max_idle_polls,
                )
            )
        return [
            "Worker summary: "
            f"processed={run_summary.processed} succeeded={run_summary.succeeded} "
            f"failed={run_summary.failed} retried={run_summary.retried} "
            f"paused={run_summary.paused} expired={run_summary.expired} "
            f"canceled={run_summary.canceled} timeouts={run_summary.timeouts} "
            f"dead_lettered={run_summary.dead_lettered} skipped={run_summary.skipped} "
            f"idle_polls={run_summary.idle_polls}",
        ]

    def serve(self, command: WorkerServeCommand) -> list[str]:
        """Run both lanes with their configured concurrency until interrupted."""

        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        stop = threading.Event()
        with _repository(settings) as repository:
            restored = ExpirationScheduler(repository, clock=repository.clock).reconcile()
            registry = _build_registry(settings)
            pools = [
                LanePool(
                    lane=QueueLane.ORCHESTRATION.value,
                    concurrency=settings.orchestration.concurrency,
                    factory=lambda worker_id: _build_orchestrator(
                        repository,
                        settings,
                        worker_id=worker_id,
                    ),
                    worker_id_prefix=settings.worker.worker_id,
                ),
                LanePool(
                    lane=QueueLane.NOTIFICATIONS.value,
                    concurrency=settings.notifications.concurrency,
                    factory=lambda worker_id: _build_notifier(
                        repository,
                        settings,
                        registry=registry,
                        worker_id=worker_id,
                    ),
                    worker_id_prefix=settings.worker.worker_id,
                ),
            ]
            logger.info(mode_support_line())
            try:
                with _stop_on_signals(stop):
                    for pool in pools:
                        pool.start()
                    stop.wait(command.duration_seconds)
            finally:
                for pool in pools:
                    pool.stop(reason="serve shutting down")
                for pool in pools:
                    pool.join(timeout=settings.worker.graceful_shutdown_seconds)
                registry.close()
            still_running = sum(pool.alive for pool in pools)

        lines = [
            f"Expiry timers restored: {restored}",
            f"Served lanes: orchestration x{settings.orchestration.concurrency}, "
            f"notifications x{settings.notifications.concurrency}",
        ]
        if still_running:
            lines.append(f"Workers still running after grace period: {still_running}")
        return lines

    def list_queue(self, command: QueueListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        lane = _parse_lane(command.lane)
        status_filter = _parse_message_status(command.status)
        with _repository(settings) as repository:
            queue = _build_queue(repository, lane=lane, lane_settings=_lane(settings, lane))
            messages = queue.list_messages(status=status_filter, limit=command.limit)
            backlog = queue.count(statuses=(MessageStatus.PENDING, MessageStatus.LEASED))
            dead = queue.count(statuses=(MessageStatus.DEAD,))

        lines = [f"Lane {lane.value}: backlog={backlog} dead={dead}", f"Messages: {len(messages)}"]
        for message in messages:
            lines.append(
                f"  {message.message_id} job={message.job_id} kind={message.kind} "
                f"status={message.status.value} attempt={message.attempt}/"
                f"{message.max_attempts} due_at={message.due_at.isoformat()} "
                f"error={message.last_error or '-'}",
            )
        return lines

    def reconcile_expiry(self, command: DbCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            restored = ExpirationScheduler(repository, clock=repository.clock).reconcile()
        return [f"Expiry timers restored: {restored}"]

    def modes(self) -> list[str]:
        return [f"Invocations: {describe_invocation()}", mode_support_line()]


def _parse_status(value: str | None) -> JobStatus | None:
    if value is None:
        return None
    try:
        return JobStatus(value.strip().lower())
    except ValueError as error:
        raise click.BadParameter(f"Unsupported job status: {value!r}") from error


def _parse_message_status(value: str | None) -> MessageStatus | None:
    if value is None:
        return None
    try:
        return MessageStatus(value.strip().lower())
    except ValueError as error:
        raise click.BadParameter(f"Unsupported message status: {value!r}") from error


def _parse_lane(value: str) -> QueueLane:
    try:
        return QueueLane(value.strip().lower())
    except ValueError as error:
        raise click.BadParameter(f"Unsupported lane: {value!r}") from error


def _lane(settings: Settings, lane: QueueLane) -> LaneSettings:
    if lane == QueueLane.NOTIFICATIONS:
        return settings.notifications
    return settings.orchestration


def _build_queue(
    repository: JobRepository,
    *,
    lane: QueueLane,
    lane_settings: LaneSettings,
) -> DurableQueue:
    return DurableQueue(
        repository.engine,
        lane=lane,
        policy=RetryPolicy(
            max_attempts=lane_settings.max_attempts,
            retry_base_seconds=lane_settings.retry_base_seconds,
            retry_max_seconds=lane_settings.retry_max_seconds,
            lease_seconds=lane_settings.lease_seconds,
        ),
        clock=repository.clock,
    )


def _build_runner(settings: Settings) -> Runner:
    if not settings.runner.command_template.strip():
        return EchoRunner()
    return CommandRunner(
        settings.runner.command_template,
        workdir_root=settings.runner.workdir,
        timeout_seconds=settings.runner.timeout_seconds,
        graceful_cancel_seconds=settings.runner.graceful_cancel_seconds,
    )


def _build_registry(settings: Settings) -> ChannelRegistry:
    adapters: dict[str, ChannelAdapter] = {
        channel: WebhookChannelAdapter(
            url,
            timeout_seconds=settings.channels.webhook_timeout_seconds,
        )
        for channel, url in settings.channels.webhook_urls.items()
    }
    return ChannelRegistry(adapters, fallback=LogChannelAdapter)


def _build_orchestrator(
    repository: JobRepository,
    settings: Settings,
    *,
    worker_id: str,
) -> OrchestratorWorker:
    return OrchestratorWorker(
        repository=repository,
        queue=_build_queue(
            repository,
            lane=QueueLane.ORCHESTRATION,
            lane_settings=settings.orchestration,
        ),
        runner=_build_runner(settings),
        worker_id=worker_id,
        poll_interval_seconds=settings.worker.poll_interval_seconds,
        runner_timeout_seconds=settings.runner.timeout_seconds,
        question_ttl=timedelta(seconds=settings.jobs.question_ttl_seconds),
    )


def _build_notifier(
    repository: JobRepository,
    settings: Settings,
    *,
    registry: ChannelRegistry,
    worker_id: str | None = None,
) -> NotificationWorker:
    return NotificationWorker(
        queue=_build_queue(
            repository,
            lane=QueueLane.NOTIFICATIONS,
            lane_settings=settings.notifications,
        ),
        registry=registry,
        audit=repository.audit,
        worker_id=worker_id or f"{settings.worker.worker_id}-notify",
        poll_interval_seconds=settings.worker.poll_interval_seconds,
    )


@contextmanager
def _user_errors() -> Iterator[None]:
    try:
        yield
    except (InvalidInputError, IllegalTransitionError, JobNotFoundError) as error:
        raise click.ClickException(str(error)) from error


@contextmanager
def _stop_on_signals(stop: threading.Event) -> Iterator[None]:
    def _handler(signum: int, _frame: object) -> None:
        logger.info("Received %s; stopping workers", signal.Signals(signum).name)
        stop.set()

    try:
        previous = {
            signum: signal.signal(signum, _handler) for signum in (signal.SIGINT, signal.SIGTERM)
        }
    except ValueError:
        yield
        return
    try:
        yield
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)


@contextmanager
def _repository(settings: Settings) -> Iterator[JobRepository]:
    repository = JobRepository(
        db_path=settings.db_path,
        busy_timeout_ms=settings.busy_timeout_ms,
        orchestration_max_attempts=settings.orchestration.max_attempts,
        notification_max_attempts=settings.notifications.max_attempts,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
