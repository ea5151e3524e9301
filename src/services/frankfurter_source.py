from __future__ import annotations

from datetime import date, datetime, time, timezone
from typing import Any, Callable

from .http_client import JsonHttpClient, RateSourceAPIError, parse_rate
from .rate_sources import RateSource
from .rate_types import RateQuote, format_rate

# API docs: https://frankfurter.dev


class FrankfurterSource(RateSource):
    def __init__(
        self,
        *,
        client: JsonHttpClient | None = None,
        source_name: str = "frankfurter",
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.client = client or JsonHttpClient(base_url="https://api.frankfurter.dev/v1", service_name="Frankfurter")
        self.source_name = source_name
        self._clock = clock

    def get_rate(self, base: str, quote: str) -> RateQuote:
        base = base.upper()
        quote = quote.upper()
        payload = self.client.get("/latest", params={"base": base, "symbols": quote})

        rates = payload.get("rates")
        if not isinstance(rates, dict):
            raise RateSourceAPIError("Frankfurter payload missing rates", payload=payload)
        if quote not in rates:
            raise RateSourceAPIError(f"no rate for {quote} in Frankfurter response", payload=payload)

        return RateQuote(price=format_rate(parse_rate(rates[quote], payload)), observed_at=self._observed_at(payload))

    def _observed_at(self, payload: dict[str, Any]) -> datetime:
        raw_date = payload.get("date")
        if isinstance(raw_date, str):
            try:
                return datetime.combine(date.fromisoformat(raw_date), time.min, tzinfo=timezone.utc)
            except ValueError:
                pass
        return self._clock()


__all__ = ["FrankfurterSource"]
