from __future__ import annotations

from datetime import timedelta
from typing import Any

import pytest
from sqlalchemy.orm import Session, sessionmaker

from services.task_queue import SqlTaskQueue, Task, TaskStatus
from tests.helpers.time_utils import ManualClock


def test_enqueue_and_claim(task_queue: SqlTaskQueue) -> None:
    task_id = task_queue.enqueue("quote:update", '{"x": 1}', max_retry=2, timeout=timedelta(seconds=7))

    task = task_queue.claim()

    assert task is not None
    assert task.id == task_id
    assert task.kind == "quote:update"
    assert task.payload == '{"x": 1}'
    assert task.attempts == 1
    assert task.max_retry == 2
    assert task.timeout == timedelta(seconds=7)
    assert task_queue.get_status(task_id) is TaskStatus.ACTIVE
    assert task_queue.claim() is None


def test_enqueue_uses_defaults(session_factory: sessionmaker[Session], clock: ManualClock) -> None:
    queue = SqlTaskQueue(session_factory, default_max_retry=4, default_timeout=timedelta(seconds=9), clock=clock)
    queue.enqueue("quote:update", "{}")

    task = queue.claim()

    assert task is not None
    assert (task.max_retry, task.timeout) == (4, timedelta(seconds=9))


def test_ack_completes_task(task_queue: SqlTaskQueue) -> None:
    task_id = task_queue.enqueue("quote:update", "{}")
    task = task_queue.claim()
    assert task is not None

    task_queue.ack(task)

    assert task_queue.get_status(task_id) is TaskStatus.DONE
    assert task_queue.claim() is None


def test_nack_redelivers_with_exponential_backoff(task_queue: SqlTaskQueue, clock: ManualClock) -> None:
    task_id = task_queue.enqueue("quote:update", "{}", max_retry=3)

    first = task_queue.claim()
    assert first is not None
    task_queue.nack(first, "boom")
    assert task_queue.get_status(task_id) is TaskStatus.QUEUED
    assert task_queue.next_available_at(task_id) == clock() + timedelta(seconds=1)
    assert task_queue.claim() is None

    clock.advance(seconds=1)
    second = task_queue.claim()
    assert second is not None
    assert second.attempts == 2
    task_queue.nack(second, "boom")
    assert task_queue.next_available_at(task_id) == clock() + timedelta(seconds=2)


def test_nack_buries_task_after_max_retry(task_queue: SqlTaskQueue, clock: ManualClock) -> None:
    task_id = task_queue.enqueue("quote:update", "{}", max_retry=1)
    outcomes: list[TaskStatus | None] = []

    for _ in range(2):
        clock.advance(minutes=1)
        task = task_queue.claim()
        assert task is not None
        outcomes.append(task_queue.nack(task, "boom"))

    assert outcomes == [TaskStatus.QUEUED, TaskStatus.DEAD]
    assert task_queue.get_status(task_id) is TaskStatus.DEAD
    clock.advance(hours=1)
    assert task_queue.claim() is None


def test_expired_lease_is_redelivered(task_queue: SqlTaskQueue, clock: ManualClock) -> None:
    task_id = task_queue.enqueue("quote:update", "{}", timeout=timedelta(seconds=30))
    stale = task_queue.claim()
    assert stale is not None

    clock.advance(seconds=29)
    assert task_queue.claim() is None
    clock.advance(seconds=1)
    redelivered = task_queue.claim()

    assert redelivered is not None
    assert redelivered.id == task_id
    assert redelivered.attempts == 2

    # The first worker lost its lease, so its ack and nack are ignored.
    task_queue.ack(stale)
    assert task_queue.get_status(task_id) is TaskStatus.ACTIVE
    assert task_queue.nack(stale, "late") is None
    task_queue.ack(redelivered)
    assert task_queue.get_status(task_id) is TaskStatus.DONE


def test_expired_lease_on_last_attempt_buries_task(task_queue: SqlTaskQueue, clock: ManualClock) -> None:
    task_id = task_queue.enqueue("quote:update", "{}", max_retry=0, timeout=timedelta(seconds=5))
    assert task_queue.claim() is not None

    clock.advance(seconds=5)
    buried: list[tuple[Task, str]] = []

    assert task_queue.claim(on_dead=lambda task, reason: buried.append((task, reason))) is None
    assert task_queue.get_status(task_id) is TaskStatus.DEAD
    assert [(task.id, reason) for task, reason in buried] == [(task_id, "lease expired")]


def test_claim_filters_by_kind_and_keeps_order(task_queue: SqlTaskQueue, clock: ManualClock) -> None:
    other = task_queue.enqueue("other", "{}")
    clock.advance(seconds=1)
    first = task_queue.enqueue("quote:update", "1")
    clock.advance(seconds=1)
    second = task_queue.enqueue("quote:update", "2")

    claimed = [task_queue.claim(["quote:update"]), task_queue.claim(["quote:update"])]

    assert [task.id for task in claimed if task is not None] == [first, second]
    assert task_queue.claim(["quote:update"]) is None
    assert task_queue.get_status(other) is TaskStatus.QUEUED
    assert task_queue.count(status=TaskStatus.ACTIVE) == 2


@pytest.mark.parametrize("kwargs", [{"default_max_retry": -1}, {"default_timeout": timedelta(0)}])
def test_rejects_invalid_defaults(session_factory: sessionmaker[Session], kwargs: dict[str, Any]) -> None:
    with pytest.raises(ValueError):
        SqlTaskQueue(session_factory, **kwargs)
