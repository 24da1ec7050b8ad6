"""Bounded worker thread pools, one per queue lane."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import Protocol

logger = logging.getLogger(__name__)

RESTART_DELAY_SECONDS = 1.0


class LaneWorker(Protocol):
    def run_loop(self, *, max_messages: int | None = None, max_idle_polls: int | None = 1):
        """Consume messages until stopped or idle."""

    def request_stop(self, *, reason: str) -> None:
        """Finish the current message, then return from ``run_loop``."""


class LanePool:
    """Runs ``concurrency`` independent workers for one lane.

    Each thread owns its worker; the only shared state between threads is
    the database, where leases and compare-and-swap updates arbitrate.
    """

    def __init__(
        self,
        *,
        lane: str,
        concurrency: int,
        factory: Callable[[str], LaneWorker],
        worker_id_prefix: str,
    ) -> None:
        if concurrency < 1:
            raise ValueError(f"Lane {lane} needs at least one worker, got {concurrency}")
        self.lane = lane
        self.concurrency = concurrency
        self.factory = factory
        self.worker_id_prefix = worker_id_prefix
        self._stop = threading.Event()
        self._workers: list[LaneWorker] = []
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()

    def start(self) -> None:
        for index in range(self.concurrency):
            worker_id = f"{self.worker_id_prefix}-{self.lane}-{index + 1}"
            thread = threading.Thread(
                target=self._run_worker,
                args=(worker_id,),
                name=worker_id,
                daemon=True,
            )
            self._threads.append(thread)
            thread.start()
        logger.info("Started %d %s worker(s)", self.concurrency, self.lane)

    def stop(self, *, reason: str) -> None:
        self._stop.set()
        with self._lock:
            workers = list(self._workers)
        for worker in workers:
            worker.request_stop(reason=reason)

    def join(self, timeout: float | None = None) -> None:
        deadline = None if timeout is None else time.monotonic() + timeout
        for thread in self._threads:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            thread.join(remaining)

    @property
    def alive(self) -> int:
        return sum(1 for thread in self._threads if thread.is_alive())

    def _run_worker(self, worker_id: str) -> None:
        while not self._stop.is_set():
            worker = self.factory(worker_id)
            with self._lock:
                self._workers.append(worker)
            if self._stop.is_set():
                worker.request_stop(reason="pool stopped")
            try:
                worker.run_loop(max_idle_polls=None)
            except Exception:  # noqa: BLE001
                logger.exception("Worker %s crashed; restarting", worker_id)
                self._stop.wait(RESTART_DELAY_SECONDS)
            finally:
                with self._lock:
                    self._workers.remove(worker)
