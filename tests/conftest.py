"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from draftsman.orchestrator.channels import ChannelRegistry, DeliveryResult
from draftsman.orchestrator.gate import ExternalEvent, IdempotencyGate
from draftsman.orchestrator.models import (
    GateResult,
    JobMode,
    JobStatus,
    NotificationMessage,
    QueueLane,
)
from draftsman.orchestrator.notifier import NotificationWorker
from draftsman.orchestrator.queue import DurableQueue, RetryPolicy
from draftsman.orchestrator.repository import JobRepository
from draftsman.orchestrator.runner.base import RunnerOutcome, RunnerRequest
from draftsman.orchestrator.worker import OrchestratorWorker


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class ScriptedRunner:
    """Returns queued outcomes in order; callables are invoked with the request."""

    def __init__(self, *outcomes: RunnerOutcome | Callable[[RunnerRequest], RunnerOutcome]):
        self.outcomes = list(outcomes)
        self.requests: list[RunnerRequest] = []

    def run(self, request: RunnerRequest) -> RunnerOutcome:
        self.requests.append(request)
        outcome = self.outcomes.pop(0)
        if callable(outcome):
            return outcome(request)
        return outcome


class RecordingAdapter:
    def __init__(self, *results: DeliveryResult) -> None:
        self.results = list(results)
        self.delivered: list[NotificationMessage] = []

    def deliver(self, message: NotificationMessage) -> DeliveryResult:
        self.delivered.append(message)
        if self.results:
            return self.results.pop(0)
        return DeliveryResult.delivered()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 10, 19, 9, 0, tzinfo=UTC))


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "draftsman.db"


@pytest.fixture()
def repository(db_path: Path, clock: FakeClock):
    repo = JobRepository(db_path, clock=clock)
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def orchestration_queue(repository: JobRepository, clock: FakeClock) -> DurableQueue:
    return DurableQueue(
        repository.engine,
        lane=QueueLane.ORCHESTRATION,
        policy=RetryPolicy(
            max_attempts=3,
            retry_base_seconds=0,
            retry_max_seconds=0,
            lease_seconds=2_100,
        ),
        clock=clock,
    )


@pytest.fixture()
def notification_queue(repository: JobRepository, clock: FakeClock) -> DurableQueue:
    return DurableQueue(
        repository.engine,
        lane=QueueLane.NOTIFICATIONS,
        policy=RetryPolicy(
            max_attempts=5,
            retry_base_seconds=0,
            retry_max_seconds=0,
            lease_seconds=120,
        ),
        clock=clock,
    )


@pytest.fixture()
def gate(repository: JobRepository) -> IdempotencyGate:
    return IdempotencyGate(repository, secondary_channels=("slack",))


@pytest.fixture()
def submit_job(gate: IdempotencyGate) -> Callable[..., GateResult]:
    def _submit(
        event_id: str = "a1",
        *,
        mode: JobMode = JobMode.FIX,
        source: str = "trello",
        repo: str = "org/app",
    ) -> GateResult:
        return gate.accept(
            ExternalEvent(
                source=source,
                external_event_id=event_id,
                mode=mode,
                repo=repo,
                ticket_ref=f"{source}-card-{event_id}",
            ),
        )

    return _submit


@pytest.fixture()
def make_worker(
    repository: JobRepository,
    orchestration_queue: DurableQueue,
) -> Callable[..., OrchestratorWorker]:
    def _make(runner, **kwargs) -> OrchestratorWorker:
        kwargs.setdefault("poll_interval_seconds", 0.01)
        return OrchestratorWorker(
            repository=repository,
            queue=orchestration_queue,
            runner=runner,
            worker_id=kwargs.pop("worker_id", "test-worker"),
            **kwargs,
        )

    return _make


@pytest.fixture()
def make_notifier(
    repository: JobRepository,
    notification_queue: DurableQueue,
) -> Callable[..., NotificationWorker]:
    def _make(adapters: dict) -> NotificationWorker:
        return NotificationWorker(
            queue=notification_queue,
            registry=ChannelRegistry(adapters),
            audit=repository.audit,
            worker_id="test-notifier",
            poll_interval_seconds=0.01,
        )

    return _make


@pytest.fixture()
def scripted_runner() -> type[ScriptedRunner]:
    return ScriptedRunner


@pytest.fixture()
def recording_adapter() -> type[RecordingAdapter]:
    return RecordingAdapter


@pytest.fixture()
def question(submit_job, repository: JobRepository):
    """An open question on a job that paused mid-run."""

    job = submit_job("asked").job
    running = repository.claim_execution(
        job_id=job.job_id,
        message_id="start",
        expected_status=JobStatus.QUEUED,
    )
    _, asked = repository.pause_for_input(
        job_id=job.job_id,
        expected_version=running.version,
        checkpoint={"step": "plan"},
        question={"text": "Proceed?"},
    )
    return asked
