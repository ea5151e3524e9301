from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any

import requests
from requests import Response
from requests.adapters import HTTPAdapter
from urllib3.util import Retry


class RateSourceAPIError(Exception):
    def __init__(self, message: str, *, status_code: int | None = None, payload: Any | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


class JsonHttpClient:
    """GET-only JSON client with retries on throttling and gateway errors."""

    def __init__(
        self,
        *,
        base_url: str,
        service_name: str,
        timeout: float = 5.0,
        session: requests.Session | None = None,
        retry_attempts: int = 2,
        retry_backoff_seconds: float = 0.5,
    ) -> None:
        if not base_url:
            msg = "base_url must be provided"
            raise ValueError(msg)
        self.base_url = base_url.rstrip("/")
        self.service_name = service_name
        self.timeout = timeout
        self._session = session or requests.Session()

        retry = Retry(
            total=retry_attempts,
            backoff_factor=retry_backoff_seconds,
            status_forcelist=[429, 502, 503, 504],
            allowed_methods=frozenset({"GET"}),
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry)
        self._session.mount("https://", adapter)
        self._session.mount("http://", adapter)

    def get(self, path: str, *, params: dict[str, Any] | None = None) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = self._session.request("GET", url, params=params, timeout=self.timeout)
            response.raise_for_status()
        except requests.HTTPError as exc:
            error_response = exc.response
            message, payload = self._extract_error(error_response)
            status_code = error_response.status_code if error_response is not None else None
            raise RateSourceAPIError(message, status_code=status_code, payload=payload) from exc
        except requests.RequestException as exc:
            status_code = getattr(getattr(exc, "response", None), "status_code", None)
            raise RateSourceAPIError(f"{self.service_name} request failed: {exc}", status_code=status_code) from exc

        try:
            body = response.json()
        except ValueError as exc:
            raise RateSourceAPIError(f"{self.service_name} returned invalid JSON", payload=response.text) from exc

        if not isinstance(body, dict):
            raise RateSourceAPIError(f"{self.service_name} returned unexpected payload type", payload=body)
        return body

    def _extract_error(self, response: Response | None) -> tuple[str, Any | None]:
        message = f"{self.service_name} request failed"
        payload: Any | None = None
        if response is None:
            return message, payload

        message = f"{message} with status {response.status_code}"
        try:
            payload = response.json()
            if isinstance(payload, dict):
                detail = payload.get("message") or payload.get("error")
                if isinstance(detail, dict):
                    detail = detail.get("info") or detail.get("type")
                if detail:
                    message = f"{message}: {detail}"
        except ValueError:
            payload = response.text
        return message, payload


def parse_rate(value: Any, payload: Any = None) -> Decimal:
    try:
        rate = Decimal(str(value))
    except InvalidOperation as exc:
        raise RateSourceAPIError(f"non-numeric rate {value!r}", payload=payload) from exc
    if not rate.is_finite() or rate <= 0:
        raise RateSourceAPIError(f"invalid rate {value!r}", payload=payload)
    return rate


__all__ = ["JsonHttpClient", "RateSourceAPIError", "parse_rate"]
