from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from domain.quotes import QuoteStatus


class QuoteServiceError(Exception):
    """Base class for every error the quote update core reports to its callers."""


class InvalidFormatError(QuoteServiceError):
    pass


class UnsupportedCurrencyError(QuoteServiceError):
    def __init__(self, code: str) -> None:
        super().__init__(f"unsupported currency: {code}")
        self.code = code


class InvalidIdError(QuoteServiceError):
    def __init__(self, update_id: str) -> None:
        super().__init__(f"invalid update_id: {update_id!r}")
        self.update_id = update_id


class NotFoundError(QuoteServiceError):
    pass


class InvalidTransitionError(QuoteServiceError):
    """A guarded status update matched no row.

    ``current`` is the status the record was found in afterwards, or ``None``
    when the record does not exist.
    """

    def __init__(self, message: str, *, update_id: str, current: QuoteStatus | None = None) -> None:
        super().__init__(message)
        self.update_id = update_id
        self.current = current


class InfrastructureError(QuoteServiceError):
    pass


class SourceError(QuoteServiceError):
    """Every configured rate source failed; ``errors`` keeps each failure in attempt order."""

    def __init__(self, errors: list[tuple[str, Exception]]) -> None:
        details = "; ".join(f"{name}: {exc}" for name, exc in errors)
        super().__init__(f"all rate sources failed: {details}" if errors else "all rate sources failed")
        self.errors = errors


__all__ = [
    "InfrastructureError",
    "InvalidFormatError",
    "InvalidIdError",
    "InvalidTransitionError",
    "NotFoundError",
    "QuoteServiceError",
    "SourceError",
    "UnsupportedCurrencyError",
]
