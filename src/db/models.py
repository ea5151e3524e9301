from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import CHAR, DateTime, Float, Index, Integer, String, Text, Uuid, text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

IN_FLIGHT_PREDICATE = "status IN ('PENDING', 'RUNNING')"


class Base(DeclarativeBase):
    pass


class QuoteUpdateOrm(Base):
    __tablename__ = "quote_updates"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    base: Mapped[str] = mapped_column(CHAR(3), nullable=False)
    quote: Mapped[str] = mapped_column(CHAR(3), nullable=False)
    # Provider decimal string, stored as text so it is returned exactly as received.
    price: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_quote_updates_pair_time", "base", "quote", "updated_at"),
        # At most one in-flight update per pair.
        Index(
            "uq_quote_updates_pair_in_flight",
            "base",
            "quote",
            unique=True,
            sqlite_where=text(IN_FLIGHT_PREDICATE),
            postgresql_where=text(IN_FLIGHT_PREDICATE),
        ),
    )


class TaskOrm(Base):
    __tablename__ = "tasks"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    kind: Mapped[str] = mapped_column(String, nullable=False)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retry: Mapped[int] = mapped_column(Integer, nullable=False)
    timeout_seconds: Mapped[float] = mapped_column(Float, nullable=False)
    available_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (Index("ix_tasks_status_available", "status", "available_at"),)
