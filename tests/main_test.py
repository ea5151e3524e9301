from __future__ import annotations

from datetime import timedelta
from typing import Any, cast

import pytest
import requests

from config import AppSettings
from main import build_rate_source, main
from services.exchangerate_host_source import ExchangeRateHostSource
from services.frankfurter_source import FrankfurterSource
from services.kv_cache import InMemoryKeyValueCache
from services.rate_sources import CachedRateSource


class _StubSession:
    def mount(self, prefix: str, adapter: Any) -> None:
        return None


def _settings(**overrides: Any) -> AppSettings:
    return AppSettings(_env_file=None, **overrides)  # type: ignore[call-arg]


def test_build_rate_source_wraps_each_source_in_order() -> None:
    settings = _settings(source_price_ttl_seconds=120, exchangerate_host_api_key="key")

    facade = build_rate_source(settings, InMemoryKeyValueCache(), session=cast(requests.Session, _StubSession()))

    assert [source.source_name for source in facade.sources] == ["frankfurter", "exchangerate_host"]
    assert all(isinstance(source, CachedRateSource) for source in facade.sources)
    cached = cast(list[CachedRateSource], facade.sources)
    assert all(source.ttl == timedelta(seconds=120) for source in cached)
    assert isinstance(cached[0].source, FrankfurterSource)
    assert isinstance(cached[1].source, ExchangeRateHostSource)
    assert cached[1].source.api_key == "key"


def test_build_rate_source_rejects_unknown_names() -> None:
    with pytest.raises(ValueError, match="unknown rate source"):
        build_rate_source(_settings(rate_sources=["frankfurter", "bogus"]), InMemoryKeyValueCache())


def test_build_rate_source_requires_a_source() -> None:
    with pytest.raises(ValueError):
        build_rate_source(_settings(rate_sources=[]), InMemoryKeyValueCache())


def test_settings_validation() -> None:
    settings = _settings(supported_currencies=[" usd ", "eur"], rate_sources=[" Frankfurter "])

    assert settings.supported_currencies == ["USD", "EUR"]
    assert settings.rate_sources == ["frankfurter"]
    with pytest.raises(ValueError):
        _settings(supported_currencies=[])
    with pytest.raises(ValueError):
        _settings(latest_price_ttl_seconds=0)


def test_cli_request_and_result(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Any, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'cli.db'}")
    monkeypatch.setattr("main.config", lambda: _settings())

    assert main(["init-db"]) == 0
    assert main(["request", "eur/mxn"]) == 0
    update_id, status = capsys.readouterr().out.strip().splitlines()[-1].split()

    assert status == "PENDING"
    assert main(["result", update_id]) == 0
    assert '"status": "PENDING"' in capsys.readouterr().out
    assert main(["result", "nope"]) == 1
    assert main(["latest", "EUR", "MXN"]) == 1
