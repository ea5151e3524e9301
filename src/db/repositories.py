from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, Iterator
from uuid import UUID

from sqlalchemy import Update, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from db import models
from domain.errors import InfrastructureError, InvalidTransitionError
from domain.quotes import (
    IN_FLIGHT_STATUSES,
    RUNNABLE_STATUSES,
    CurrencyCode,
    QuoteStatus,
    QuoteUpdate,
    UpdateId,
)

logger = logging.getLogger(__name__)

# An in-flight record can complete between a conflicting insert and the
# lookup that follows it; the insert is then simply retried.
_CREATE_ATTEMPTS = 3


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@contextmanager
def store_errors(action: str) -> Iterator[None]:
    try:
        yield
    except IntegrityError:
        raise
    except SQLAlchemyError as exc:
        raise InfrastructureError(f"store unavailable during {action}") from exc


class QuoteUpdateRepository:
    """Durable record of quote update attempts.

    Every method runs in its own transaction, so one repository can be shared
    by request handlers and workers. Status changes are guarded ``UPDATE``
    statements: a change whose expected prior status no longer holds matches no
    row and raises ``InvalidTransitionError`` instead of being applied.
    """

    def __init__(self, session_factory: sessionmaker[Session], *, clock: Callable[[], datetime] = utcnow) -> None:
        self._session_factory = session_factory
        self._clock = clock

    def create_or_join(self, base: str, quote: str, candidate_id: UUID) -> UUID:
        """Insert a PENDING update, or return the id of the pair's in-flight update."""
        for _ in range(_CREATE_ATTEMPTS):
            try:
                with store_errors("create_or_join"), self._session_factory.begin() as session:
                    session.add(
                        models.QuoteUpdateOrm(
                            id=candidate_id,
                            base=base,
                            quote=quote,
                            status=QuoteStatus.PENDING.value,
                            requested_at=self._clock(),
                        )
                    )
                return candidate_id
            except IntegrityError:
                existing_id = self._find_in_flight_id(base, quote)
                if existing_id is not None:
                    return existing_id
                logger.debug("In-flight update for %s/%s finished before lookup, retrying insert", base, quote)
        raise InfrastructureError(f"could not create or join an update for {base}/{quote}")

    def mark_running(self, update_id: UUID) -> None:
        stmt = (
            update(models.QuoteUpdateOrm)
            .where(
                models.QuoteUpdateOrm.id == update_id,
                models.QuoteUpdateOrm.status.in_([status.value for status in RUNNABLE_STATUSES]),
            )
            .values(status=QuoteStatus.RUNNING.value, updated_at=self._clock(), error=None)
        )
        try:
            rowcount = self._execute_guarded(stmt, "mark_running")
        except IntegrityError as exc:
            # A FAILED record may not re-enter execution while a newer update
            # for the same pair is in flight.
            raise InvalidTransitionError(
                f"quote update {update_id} cannot run: another update for the pair is in flight",
                update_id=str(update_id),
                current=self._current_status(update_id),
            ) from exc
        if rowcount == 0:
            self._raise_transition_error(update_id, expected="PENDING/FAILED")

    def complete(
        self,
        update_id: UUID,
        *,
        status: QuoteStatus,
        price: str | None = None,
        error: str | None = None,
    ) -> None:
        """Move a RUNNING update to SUCCESS (with ``price``) or FAILED (with ``error``)."""
        if status is QuoteStatus.SUCCESS:
            if price is None:
                raise ValueError("price is required to complete an update successfully")
            values = {"price": price, "error": None}
        elif status is QuoteStatus.FAILED:
            values = {"price": None, "error": error or "unknown error"}
        else:
            raise ValueError(f"invalid status for complete: {status}")

        stmt = (
            update(models.QuoteUpdateOrm)
            .where(
                models.QuoteUpdateOrm.id == update_id,
                models.QuoteUpdateOrm.status == QuoteStatus.RUNNING.value,
            )
            .values(status=status.value, updated_at=self._clock(), **values)
        )
        if self._execute_guarded(stmt, "complete") == 0:
            self._raise_transition_error(update_id, expected="RUNNING")

    def fail_pending(self, update_id: UUID, error: str) -> None:
        """Fail an update that never reached a worker (its task could not be enqueued)."""
        stmt = (
            update(models.QuoteUpdateOrm)
            .where(
                models.QuoteUpdateOrm.id == update_id,
                models.QuoteUpdateOrm.status == QuoteStatus.PENDING.value,
            )
            .values(status=QuoteStatus.FAILED.value, updated_at=self._clock(), price=None, error=error)
        )
        if self._execute_guarded(stmt, "fail_pending") == 0:
            self._raise_transition_error(update_id, expected="PENDING")

    def fail_in_flight(self, update_id: UUID, error: str) -> None:
        """Fail a PENDING or RUNNING update whose task will never be delivered again."""
        stmt = (
            update(models.QuoteUpdateOrm)
            .where(
                models.QuoteUpdateOrm.id == update_id,
                models.QuoteUpdateOrm.status.in_([status.value for status in IN_FLIGHT_STATUSES]),
            )
            .values(status=QuoteStatus.FAILED.value, updated_at=self._clock(), price=None, error=error)
        )
        if self._execute_guarded(stmt, "fail_in_flight") == 0:
            self._raise_transition_error(update_id, expected="PENDING/RUNNING")

    def get(self, update_id: UUID) -> QuoteUpdate | None:
        with store_errors("get"), self._session_factory() as session:
            orm_update = session.get(models.QuoteUpdateOrm, update_id)
            if orm_update is None:
                return None
            return self._to_domain(orm_update)

    def get_latest_success(self, base: str, quote: str) -> QuoteUpdate | None:
        stmt = (
            select(models.QuoteUpdateOrm)
            .where(
                models.QuoteUpdateOrm.base == base,
                models.QuoteUpdateOrm.quote == quote,
                models.QuoteUpdateOrm.status == QuoteStatus.SUCCESS.value,
            )
            .order_by(models.QuoteUpdateOrm.updated_at.desc(), models.QuoteUpdateOrm.requested_at.desc())
            .limit(1)
        )
        with store_errors("get_latest_success"), self._session_factory() as session:
            orm_update = session.scalars(stmt).first()
            if orm_update is None:
                return None
            return self._to_domain(orm_update)

    def ping(self) -> None:
        with store_errors("ping"), self._session_factory() as session:
            session.execute(select(1))

    def _find_in_flight_id(self, base: str, quote: str) -> UUID | None:
        stmt = (
            select(models.QuoteUpdateOrm.id)
            .where(
                models.QuoteUpdateOrm.base == base,
                models.QuoteUpdateOrm.quote == quote,
                models.QuoteUpdateOrm.status.in_([status.value for status in IN_FLIGHT_STATUSES]),
            )
            .order_by(models.QuoteUpdateOrm.requested_at.desc())
            .limit(1)
        )
        with store_errors("find_in_flight"), self._session_factory() as session:
            return session.scalar(stmt)

    def _execute_guarded(self, stmt: Update, action: str) -> int:
        with store_errors(action), self._session_factory.begin() as session:
            result = session.execute(stmt, execution_options={"synchronize_session": False})
            return int(result.rowcount)  # type: ignore[attr-defined]

    def _current_status(self, update_id: UUID) -> QuoteStatus | None:
        with store_errors("get"), self._session_factory() as session:
            status = session.scalar(select(models.QuoteUpdateOrm.status).where(models.QuoteUpdateOrm.id == update_id))
        return QuoteStatus(status) if status is not None else None

    def _raise_transition_error(self, update_id: UUID, *, expected: str) -> None:
        current = self._current_status(update_id)
        if current is None:
            message = f"quote update {update_id} not found"
        else:
            message = f"quote update {update_id} is {current}, expected {expected}"
        raise InvalidTransitionError(message, update_id=str(update_id), current=current)

    @staticmethod
    def _to_domain(orm_update: models.QuoteUpdateOrm) -> QuoteUpdate:
        return QuoteUpdate(
            id=UpdateId(orm_update.id),
            base=CurrencyCode(orm_update.base),
            quote=CurrencyCode(orm_update.quote),
            status=QuoteStatus(orm_update.status),
            price=orm_update.price,
            error=orm_update.error,
            requested_at=as_utc(orm_update.requested_at),
            updated_at=as_utc(orm_update.updated_at) if orm_update.updated_at is not None else None,
        )


__all__ = ["QuoteUpdateRepository", "as_utc", "store_errors", "utcnow"]
