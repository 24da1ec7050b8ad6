from __future__ import annotations

import random
from datetime import timedelta

import allure
import pytest

from draftsman.orchestrator.models import MessageStatus, QueueLane
from draftsman.orchestrator.queue import DurableQueue, RetryPolicy

pytestmark = [
    allure.epic("Job Orchestration"),
    allure.feature("Durable Queue"),
]


@pytest.fixture()
def queue(repository, clock) -> DurableQueue:
    return DurableQueue(
        repository.engine,
        lane=QueueLane.ORCHESTRATION,
        policy=RetryPolicy(
            max_attempts=2,
            retry_base_seconds=10,
            retry_max_seconds=60,
            lease_seconds=30,
        ),
        clock=clock,
        rng=random.Random(7),
    )


def test_enqueue_is_idempotent_per_message_id(queue) -> None:
    assert queue.enqueue(message_id="m1", job_id="job-1", kind="start", payload={"n": 1})
    assert not queue.enqueue(message_id="m1", job_id="job-1", kind="start", payload={"n": 2})

    [message] = queue.list_messages()
    assert message.payload == {"n": 1}
    assert message.status == MessageStatus.PENDING
    assert message.attempt == 0


def test_claim_leases_the_oldest_due_message(queue, clock) -> None:
    queue.enqueue(
        message_id="later",
        job_id="job-1",
        kind="start",
        payload={},
        due_at=clock.now + timedelta(minutes=5),
    )
    queue.enqueue(message_id="now", job_id="job-2", kind="start", payload={})

    claimed = queue.claim(worker_id="w1")

    assert claimed.message_id == "now"
    assert claimed.status == MessageStatus.LEASED
    assert claimed.attempt == 1
    assert claimed.leased_by == "w1"
    assert claimed.lease_expires_at == clock.now + timedelta(seconds=30)
    assert queue.claim(worker_id="w2") is None


def test_lanes_do_not_see_each_other(queue, notification_queue) -> None:
    notification_queue.enqueue(message_id="n1", job_id="job-1", kind="success", payload={})

    assert queue.claim(worker_id="w1") is None
    assert notification_queue.claim(worker_id="w1").message_id == "n1"


def test_ack_requires_the_current_lease(queue) -> None:
    queue.enqueue(message_id="m1", job_id="job-1", kind="start", payload={})
    claimed = queue.claim(worker_id="w1")

    assert queue.ack(claimed) is True
    assert queue.ack(claimed) is False
    assert queue.get("m1").status == MessageStatus.DONE


def test_retry_applies_bounded_backoff_then_dead_letters(queue, clock) -> None:
    queue.enqueue(message_id="m1", job_id="job-1", kind="start", payload={})

    first = queue.claim(worker_id="w1")
    decision = queue.retry(first, error="boom")

    assert decision.retried is True
    assert clock.now <= decision.due_at <= clock.now + timedelta(seconds=10)
    clock.advance(seconds=10)
    second = queue.claim(worker_id="w1")
    assert second.attempt == 2
    assert second.last_error == "boom"

    final = queue.retry(second, error="boom again")

    assert final.retried is False
    assert final.dead_lettered is True
    message = queue.get("m1")
    assert message.status == MessageStatus.DEAD
    assert message.last_error == "boom again"


def test_retry_can_rewrite_the_payload(queue) -> None:
    queue.enqueue(message_id="m1", job_id="job-1", kind="success", payload={"a": 1})
    claimed = queue.claim(worker_id="w1")

    queue.retry(claimed, error="partial", payload={"a": 1, "pending_targets": ["slack"]})

    assert queue.get("m1").payload["pending_targets"] == ["slack"]


def test_defer_returns_the_attempt(queue, clock) -> None:
    queue.enqueue(message_id="m1", job_id="job-1", kind="expire", payload={})
    claimed = queue.claim(worker_id="w1")

    assert queue.defer(claimed, due_at=clock.now + timedelta(hours=1))

    message = queue.get("m1")
    assert message.status == MessageStatus.PENDING
    assert message.attempt == 0
    assert queue.claim(worker_id="w1") is None


def test_expired_lease_is_redelivered_then_dead_lettered(queue, clock) -> None:
    queue.enqueue(message_id="m1", job_id="job-1", kind="start", payload={})
    first = queue.claim(worker_id="crashed")
    clock.advance(seconds=31)

    assert queue.reap_expired_leases() == []
    assert queue.ack(first) is False
    second = queue.claim(worker_id="w2")
    assert second.attempt == 2
    clock.advance(seconds=31)

    [dead] = queue.reap_expired_leases()

    assert dead.message_id == "m1"
    assert dead.status == MessageStatus.DEAD
    assert queue.get("m1").last_error == "lease expired before acknowledgement"


def test_count_filters_by_status(queue) -> None:
    queue.enqueue(message_id="m1", job_id="job-1", kind="start", payload={})
    queue.enqueue(message_id="m2", job_id="job-2", kind="start", payload={})
    queue.ack(queue.claim(worker_id="w1"))

    assert queue.count(statuses=(MessageStatus.PENDING,)) == 1
    assert queue.count(statuses=(MessageStatus.PENDING, MessageStatus.DONE)) == 2


@pytest.mark.parametrize(("retry_number", "ceiling"), [(1, 10), (2, 20), (3, 40), (6, 60)])
def test_backoff_ceiling_doubles_up_to_the_cap(retry_number: int, ceiling: float) -> None:
    policy = RetryPolicy(retry_base_seconds=10, retry_max_seconds=60)
    rng = random.Random(3)

    delays = [policy.compute_delay(retry_number=retry_number, rng=rng) for _ in range(50)]

    assert all(0 <= delay <= ceiling for delay in delays)
