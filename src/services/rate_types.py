from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal


@dataclass(frozen=True)
class RateQuote:
    """Rate reported by a source: ``price`` is the decimal string as the source gave it."""

    price: str
    observed_at: datetime


def format_rate(value: Decimal) -> str:
    """Render a rate as a plain decimal string (no exponent, no rounding)."""
    return format(value, "f")


__all__ = ["RateQuote", "format_rate"]
