from __future__ import annotations

import logging
from datetime import datetime, timedelta

from domain.quotes import CurrencyCode, LatestQuote

from .kv_cache import KeyValueCache

logger = logging.getLogger(__name__)


class LatestQuoteCache:
    """Last successful price per pair, kept in front of the quote store.

    Best effort only: read and write failures are logged and reported as a
    miss, callers then fall back to the store.
    """

    KEY_PREFIX = "latest"

    def __init__(self, cache: KeyValueCache | None, ttl: timedelta) -> None:
        if ttl <= timedelta(0):
            msg = "ttl must be positive"
            raise ValueError(msg)
        self.cache = cache
        self.ttl = ttl

    @classmethod
    def key(cls, base: str, quote: str) -> str:
        return f"{cls.KEY_PREFIX}:{{{base}:{quote}}}"

    def get(self, base: str, quote: str) -> LatestQuote | None:
        if self.cache is None:
            return None
        key = self.key(base, quote)
        try:
            price, updated_at = self.cache.get_fields(key, ("price", "updated_at"))
        except Exception:
            logger.warning("Failed to read latest quote cache for key %s", key, exc_info=True)
            return None
        if price is None or updated_at is None:
            return None
        try:
            observed_at = datetime.fromisoformat(updated_at)
        except ValueError:
            logger.warning("Ignoring malformed latest quote cache entry %s", key)
            return None
        return LatestQuote(base=CurrencyCode(base), quote=CurrencyCode(quote), price=price, updated_at=observed_at)

    def set(self, base: str, quote: str, price: str, updated_at: datetime) -> None:
        if self.cache is None:
            return
        key = self.key(base, quote)
        try:
            self.cache.set_fields(key, {"price": price, "updated_at": updated_at.isoformat()}, self.ttl)
        except Exception:
            logger.warning("Failed to update latest quote cache for key %s", key, exc_info=True)


__all__ = ["LatestQuoteCache"]
