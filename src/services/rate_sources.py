from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Protocol, Sequence

from domain.errors import SourceError

from .kv_cache import KeyValueCache
from .rate_types import RateQuote

logger = logging.getLogger(__name__)


class RateSource(Protocol):
    source_name: str

    def get_rate(self, base: str, quote: str) -> RateQuote: ...


class RateSourceFacade(RateSource):
    """Asks each source in order and returns the first rate obtained."""

    def __init__(self, sources: Sequence[RateSource], *, source_name: str = "fallback") -> None:
        if not sources:
            msg = "RateSourceFacade requires at least one source"
            raise ValueError(msg)
        self.sources = list(sources)
        self.source_name = source_name

    def get_rate(self, base: str, quote: str) -> RateQuote:
        errors: list[tuple[str, Exception]] = []
        for source in self.sources:
            try:
                return source.get_rate(base, quote)
            except Exception as exc:
                logger.warning("Rate source %s failed for %s/%s: %s", source.source_name, base, quote, exc)
                errors.append((source.source_name, exc))
        raise SourceError(errors)


class CachedRateSource(RateSource):
    """Serves a source's successful rates from the cache for ``ttl``.

    Failures are never cached: the next call after a failure always reaches
    the wrapped source.
    """

    KEY_PREFIX = "provider_cache"

    def __init__(self, source: RateSource, cache: KeyValueCache, ttl: timedelta) -> None:
        if ttl <= timedelta(0):
            msg = "ttl must be positive"
            raise ValueError(msg)
        self.source = source
        self.cache = cache
        self.ttl = ttl
        self.source_name = source.source_name

    def cache_key(self, base: str, quote: str) -> str:
        return f"{self.KEY_PREFIX}:{self.source_name}:{{{base}:{quote}}}"

    def get_rate(self, base: str, quote: str) -> RateQuote:
        key = self.cache_key(base, quote)
        cached = self._read(key)
        if cached is not None:
            return cached

        fetched = self.source.get_rate(base, quote)
        try:
            self.cache.set_fields(
                key,
                {"price": fetched.price, "updated_at": fetched.observed_at.isoformat()},
                self.ttl,
            )
        except Exception:
            logger.warning("Failed to cache rate for key %s", key, exc_info=True)
        return fetched

    def _read(self, key: str) -> RateQuote | None:
        try:
            price, updated_at = self.cache.get_fields(key, ("price", "updated_at"))
        except Exception:
            logger.warning("Failed to read cached rate for key %s", key, exc_info=True)
            return None
        if price is None or updated_at is None:
            return None
        try:
            observed_at = datetime.fromisoformat(updated_at)
        except ValueError:
            return None
        return RateQuote(price=price, observed_at=observed_at)


__all__ = ["CachedRateSource", "RateSource", "RateSourceFacade"]
