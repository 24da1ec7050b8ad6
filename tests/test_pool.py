from __future__ import annotations

import threading
import time

import allure
import pytest

from draftsman.orchestrator.pool import LanePool

pytestmark = [
    allure.epic("Job Orchestration"),
    allure.feature("Worker Lifecycle"),
]


class IdleWorker:
    def __init__(self, worker_id: str, *, crash_first: bool = False) -> None:
        self.worker_id = worker_id
        self.crash_first = crash_first
        self.started = threading.Event()
        self._stopped = threading.Event()
        self.stop_reason: str | None = None

    def run_loop(self, *, max_messages: int | None = None, max_idle_polls: int | None = 1):
        self.started.set()
        if self.crash_first:
            raise RuntimeError("boom")
        self._stopped.wait(10)

    def request_stop(self, *, reason: str) -> None:
        self.stop_reason = reason
        self._stopped.set()


def _wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def test_pool_runs_concurrency_workers_and_stops_them() -> None:
    created: list[IdleWorker] = []

    def factory(worker_id: str) -> IdleWorker:
        worker = IdleWorker(worker_id)
        created.append(worker)
        return worker

    pool = LanePool(lane="orchestration", concurrency=3, factory=factory, worker_id_prefix="w")
    pool.start()

    assert _wait_for(lambda: len(created) == 3 and all(w.started.is_set() for w in created))
    assert sorted(worker.worker_id for worker in created) == [
        "w-orchestration-1",
        "w-orchestration-2",
        "w-orchestration-3",
    ]

    pool.stop(reason="SIGTERM")
    pool.join(timeout=5)

    assert pool.alive == 0
    assert {worker.stop_reason for worker in created} == {"SIGTERM"}


def test_crashed_worker_is_replaced() -> None:
    created: list[IdleWorker] = []

    def factory(worker_id: str) -> IdleWorker:
        worker = IdleWorker(worker_id, crash_first=not created)
        created.append(worker)
        return worker

    pool = LanePool(lane="notifications", concurrency=1, factory=factory, worker_id_prefix="n")
    pool.start()

    assert _wait_for(lambda: len(created) == 2 and created[1].started.is_set())
    pool.stop(reason="done")
    pool.join(timeout=5)
    assert pool.alive == 0


def test_pool_needs_at_least_one_worker() -> None:
    with pytest.raises(ValueError, match="at least one worker"):
        LanePool(lane="orchestration", concurrency=0, factory=IdleWorker, worker_id_prefix="w")
