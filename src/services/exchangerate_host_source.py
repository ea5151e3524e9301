from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable

from .http_client import JsonHttpClient, RateSourceAPIError, parse_rate
from .rate_sources import RateSource
from .rate_types import RateQuote, format_rate

# API docs: https://exchangerate.host/documentation


class ExchangeRateHostSource(RateSource):
    def __init__(
        self,
        *,
        api_key: str = "",
        client: JsonHttpClient | None = None,
        source_name: str = "exchangerate_host",
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.client = client or JsonHttpClient(
            base_url="https://api.exchangerate.host", service_name="exchangerate.host"
        )
        self.api_key = api_key
        self.source_name = source_name
        self._clock = clock

    def get_rate(self, base: str, quote: str) -> RateQuote:
        base = base.upper()
        quote = quote.upper()
        payload = self.client.get(
            "/live",
            params={"access_key": self.api_key, "source": base, "currencies": quote},
        )

        if not payload.get("success"):
            error = payload.get("error")
            detail = error.get("info") if isinstance(error, dict) else None
            message = f"exchangerate.host returned success=false for {base}/{quote}"
            raise RateSourceAPIError(f"{message}: {detail}" if detail else message, payload=payload)

        quotes = payload.get("quotes")
        key = f"{base}{quote}"
        if not isinstance(quotes, dict) or key not in quotes:
            raise RateSourceAPIError(f"no rate for {key} in exchangerate.host response", payload=payload)

        return RateQuote(price=format_rate(parse_rate(quotes[key], payload)), observed_at=self._observed_at(payload))

    def _observed_at(self, payload: dict[str, Any]) -> datetime:
        raw_ts = payload.get("timestamp")
        if isinstance(raw_ts, int):
            return datetime.fromtimestamp(raw_ts, tz=timezone.utc)
        return self._clock()


__all__ = ["ExchangeRateHostSource"]
