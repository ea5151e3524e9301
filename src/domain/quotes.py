from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import NamedTuple, NewType
from uuid import UUID

from pydantic import BaseModel, model_validator

UpdateId = NewType("UpdateId", UUID)
CurrencyCode = NewType("CurrencyCode", str)


class QuoteStatus(StrEnum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


IN_FLIGHT_STATUSES = frozenset({QuoteStatus.PENDING, QuoteStatus.RUNNING})
RUNNABLE_STATUSES = frozenset({QuoteStatus.PENDING, QuoteStatus.FAILED})


class CurrencyPair(NamedTuple):
    base: CurrencyCode
    quote: CurrencyCode

    def __str__(self) -> str:
        return f"{self.base}/{self.quote}"


class QuoteUpdate(BaseModel):
    """One attempt at refreshing the quote of a currency pair.

    ``price`` is the provider's decimal string, kept verbatim. It is set only
    for SUCCESS records, ``error`` only for FAILED ones.
    """

    id: UpdateId
    base: CurrencyCode
    quote: CurrencyCode
    status: QuoteStatus
    price: str | None = None
    error: str | None = None
    requested_at: datetime
    updated_at: datetime | None = None

    @model_validator(mode="after")
    def _validate_outcome_fields(self) -> QuoteUpdate:
        if self.status is QuoteStatus.SUCCESS and self.price is None:
            raise ValueError("SUCCESS quote update requires a price")
        if self.status is not QuoteStatus.SUCCESS and self.price is not None:
            raise ValueError("only SUCCESS quote updates carry a price")
        if self.status is not QuoteStatus.FAILED and self.error is not None:
            raise ValueError("only FAILED quote updates carry an error")
        return self

    @property
    def pair(self) -> CurrencyPair:
        return CurrencyPair(self.base, self.quote)


class QuoteUpdateView(BaseModel):
    """What callers get to see of a quote update.

    - SUCCESS: ``price`` and ``updated_at`` are set.
    - FAILED: ``error`` is set.
    - PENDING / RUNNING: none of the three.
    """

    update_id: UpdateId | None = None
    base: CurrencyCode
    quote: CurrencyCode
    status: QuoteStatus
    price: str | None = None
    updated_at: datetime | None = None
    error: str | None = None

    @classmethod
    def from_update(cls, update: QuoteUpdate) -> QuoteUpdateView:
        view = cls(update_id=update.id, base=update.base, quote=update.quote, status=update.status)
        if update.status is QuoteStatus.SUCCESS:
            view.price = update.price
            view.updated_at = update.updated_at
        elif update.status is QuoteStatus.FAILED:
            view.error = update.error
        return view


class LatestQuote(BaseModel):
    base: CurrencyCode
    quote: CurrencyCode
    price: str
    updated_at: datetime

    def to_view(self) -> QuoteUpdateView:
        return QuoteUpdateView(
            base=self.base,
            quote=self.quote,
            status=QuoteStatus.SUCCESS,
            price=self.price,
            updated_at=self.updated_at,
        )


__all__ = [
    "IN_FLIGHT_STATUSES",
    "RUNNABLE_STATUSES",
    "CurrencyCode",
    "CurrencyPair",
    "LatestQuote",
    "QuoteStatus",
    "QuoteUpdate",
    "QuoteUpdateView",
    "UpdateId",
]
