from __future__ import annotations

from typing import Iterable

from config import DEFAULT_SUPPORTED_CURRENCIES

from .errors import InvalidFormatError, UnsupportedCurrencyError
from .quotes import CurrencyCode, CurrencyPair


def is_valid_currency_code(code: str) -> bool:
    return len(code) == 3 and code.isascii() and code.isalpha()


class PairValidator:
    """Normalizes currency codes to upper case and checks them against an allow-list."""

    def __init__(self, supported_currencies: Iterable[str] | None = None) -> None:
        codes = {code.upper() for code in (supported_currencies or DEFAULT_SUPPORTED_CURRENCIES)}
        if not codes:
            msg = "supported_currencies must contain at least one entry"
            raise ValueError(msg)
        self._supported = frozenset(codes)

    @property
    def supported_currencies(self) -> frozenset[str]:
        return self._supported

    def is_supported(self, code: str) -> bool:
        return code.upper() in self._supported

    def parse_pair(self, pair: str) -> CurrencyPair:
        """Validate a combined ``BASE/QUOTE`` token."""
        parts = pair.strip().split("/")
        if len(parts) != 2:
            raise InvalidFormatError(f"invalid currency pair format: {pair!r}, expected BASE/QUOTE")
        return self.validate(parts[0], parts[1])

    def validate(self, base: str, quote: str) -> CurrencyPair:
        # Both codes are format-checked before either is looked up, so a
        # malformed code always reports InvalidFormat.
        normalized = [self._normalize(code) for code in (base, quote)]
        for code in normalized:
            if code not in self._supported:
                raise UnsupportedCurrencyError(code)
        return CurrencyPair(CurrencyCode(normalized[0]), CurrencyCode(normalized[1]))

    @staticmethod
    def _normalize(code: str) -> str:
        if not is_valid_currency_code(code):
            raise InvalidFormatError(f"invalid currency code format: {code!r}")
        return code.upper()


__all__ = ["PairValidator", "is_valid_currency_code"]
