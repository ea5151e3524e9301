from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Callable, Collection, Protocol
from uuid import UUID, uuid4

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.orm import Session, sessionmaker

from db import models
from db.repositories import as_utc, store_errors, utcnow

logger = logging.getLogger(__name__)


class TaskStatus(StrEnum):
    QUEUED = "queued"
    ACTIVE = "active"
    DONE = "done"
    DEAD = "dead"


@dataclass(frozen=True)
class Task:
    id: UUID
    kind: str
    payload: str
    attempts: int
    max_retry: int
    timeout: timedelta


DeadTaskCallback = Callable[[Task, str], None]


class TaskEnqueuer(Protocol):
    def enqueue(
        self, kind: str, payload: str, *, max_retry: int | None = None, timeout: timedelta | None = None
    ) -> UUID: ...


class SqlTaskQueue(TaskEnqueuer):
    """At-least-once task queue stored next to the quote updates.

    A claimed task is leased for its timeout. A task whose lease runs out
    before it is acknowledged is handed out again, so handlers must tolerate
    seeing the same task more than once. ``attempts`` counts deliveries and
    doubles as a version: ack/nack from a worker whose lease was taken over
    match no row and are ignored.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        default_max_retry: int = 3,
        default_timeout: timedelta = timedelta(seconds=30),
        retry_backoff: timedelta = timedelta(seconds=1),
        max_backoff: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if default_max_retry < 0:
            raise ValueError("default_max_retry must be >= 0")
        if default_timeout <= timedelta(0):
            raise ValueError("default_timeout must be positive")
        self._session_factory = session_factory
        self.default_max_retry = default_max_retry
        self.default_timeout = default_timeout
        self.retry_backoff = retry_backoff
        self.max_backoff = max_backoff
        self._clock = clock

    def enqueue(
        self, kind: str, payload: str, *, max_retry: int | None = None, timeout: timedelta | None = None
    ) -> UUID:
        now = self._clock()
        task = models.TaskOrm(
            id=uuid4(),
            kind=kind,
            payload=payload,
            status=TaskStatus.QUEUED.value,
            attempts=0,
            max_retry=self.default_max_retry if max_retry is None else max_retry,
            timeout_seconds=(timeout or self.default_timeout).total_seconds(),
            available_at=now,
            created_at=now,
        )
        with store_errors("enqueue"), self._session_factory.begin() as session:
            session.add(task)
        return task.id

    def claim(
        self,
        kinds: Collection[str] | None = None,
        *,
        batch_size: int = 10,
        on_dead: DeadTaskCallback | None = None,
    ) -> Task | None:
        """Lease the next due task, or return ``None`` when nothing is due.

        Tasks whose last delivery let the lease expire are buried on the way
        and passed to ``on_dead``.
        """
        now = self._clock()
        due = or_(
            and_(models.TaskOrm.status == TaskStatus.QUEUED.value, models.TaskOrm.available_at <= now),
            and_(models.TaskOrm.status == TaskStatus.ACTIVE.value, models.TaskOrm.lease_expires_at <= now),
        )
        stmt = select(models.TaskOrm).where(due).order_by(models.TaskOrm.available_at).limit(batch_size)
        if kinds is not None:
            stmt = stmt.where(models.TaskOrm.kind.in_(list(kinds)))

        with store_errors("claim"), self._session_factory() as session:
            candidates = list(session.scalars(stmt))

        for candidate in candidates:
            if candidate.status == TaskStatus.ACTIVE.value and candidate.attempts > candidate.max_retry:
                # The last allowed delivery timed out without being acknowledged.
                buried = self._transition(
                    candidate.id, candidate.attempts, status=TaskStatus.DEAD, last_error="lease expired"
                )
                if buried:
                    logger.error("Task %s (%s) exhausted its retries after lease expiry", candidate.id, candidate.kind)
                    if on_dead is not None:
                        on_dead(self._to_task(candidate), "lease expired")
                continue

            timeout = timedelta(seconds=candidate.timeout_seconds)
            claim = (
                update(models.TaskOrm)
                .where(
                    models.TaskOrm.id == candidate.id,
                    models.TaskOrm.status == candidate.status,
                    models.TaskOrm.attempts == candidate.attempts,
                )
                .values(
                    status=TaskStatus.ACTIVE.value,
                    attempts=models.TaskOrm.attempts + 1,
                    lease_expires_at=now + timeout,
                )
            )
            with store_errors("claim"), self._session_factory.begin() as session:
                result = session.execute(claim, execution_options={"synchronize_session": False})
                claimed = result.rowcount  # type: ignore[attr-defined]
            if claimed:
                if candidate.status == TaskStatus.ACTIVE.value:
                    logger.warning("Redelivering task %s after lease expiry", candidate.id)
                return self._to_task(candidate, attempts=candidate.attempts + 1)
        return None

    def ack(self, task: Task) -> None:
        if not self._transition(task.id, task.attempts, status=TaskStatus.DONE):
            logger.warning("Task %s was acknowledged after its lease was taken over", task.id)

    def nack(self, task: Task, error: str) -> TaskStatus | None:
        """Schedule a redelivery with exponential backoff, or bury the task once its retries are spent.

        Returns the status the task moved to, or ``None`` when its lease had
        already been taken over.
        """
        if task.attempts > task.max_retry:
            status = TaskStatus.DEAD
            applied = self._transition(task.id, task.attempts, status=status, last_error=error)
            if applied:
                logger.error("Task %s (%s) failed permanently: %s", task.id, task.kind, error)
        else:
            status = TaskStatus.QUEUED
            delay = min(self.retry_backoff * (2 ** (task.attempts - 1)), self.max_backoff)
            applied = self._transition(
                task.id,
                task.attempts,
                status=status,
                last_error=error,
                available_at=self._clock() + delay,
            )
        if not applied:
            logger.warning("Task %s was rejected after its lease was taken over", task.id)
            return None
        return status

    def get_status(self, task_id: UUID) -> TaskStatus | None:
        with store_errors("get_status"), self._session_factory() as session:
            status = session.scalar(select(models.TaskOrm.status).where(models.TaskOrm.id == task_id))
        return TaskStatus(status) if status is not None else None

    def count(self, *, kind: str | None = None, status: TaskStatus | None = None) -> int:
        stmt = select(func.count()).select_from(models.TaskOrm)
        if kind is not None:
            stmt = stmt.where(models.TaskOrm.kind == kind)
        if status is not None:
            stmt = stmt.where(models.TaskOrm.status == status.value)
        with store_errors("count"), self._session_factory() as session:
            return int(session.scalar(stmt) or 0)

    def next_available_at(self, task_id: UUID) -> datetime | None:
        with store_errors("next_available_at"), self._session_factory() as session:
            value = session.scalar(select(models.TaskOrm.available_at).where(models.TaskOrm.id == task_id))
        return as_utc(value) if value is not None else None

    @staticmethod
    def _to_task(orm_task: models.TaskOrm, *, attempts: int | None = None) -> Task:
        return Task(
            id=orm_task.id,
            kind=orm_task.kind,
            payload=orm_task.payload,
            attempts=orm_task.attempts if attempts is None else attempts,
            max_retry=orm_task.max_retry,
            timeout=timedelta(seconds=orm_task.timeout_seconds),
        )

    def _transition(
        self,
        task_id: UUID,
        attempts: int,
        *,
        status: TaskStatus,
        last_error: str | None = None,
        available_at: datetime | None = None,
    ) -> bool:
        values: dict[str, object] = {"status": status.value, "lease_expires_at": None}
        if last_error is not None:
            values["last_error"] = last_error
        if available_at is not None:
            values["available_at"] = available_at
        stmt = (
            update(models.TaskOrm)
            .where(
                models.TaskOrm.id == task_id,
                models.TaskOrm.status == TaskStatus.ACTIVE.value,
                models.TaskOrm.attempts == attempts,
            )
            .values(**values)
        )
        with store_errors("task transition"), self._session_factory.begin() as session:
            result = session.execute(stmt, execution_options={"synchronize_session": False})
            return bool(result.rowcount)  # type: ignore[attr-defined]


__all__ = ["DeadTaskCallback", "SqlTaskQueue", "Task", "TaskEnqueuer", "TaskStatus"]
