from __future__ import annotations

from typing import Generator
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import Engine

from api.api import create_app
from config import AppSettings
from main import AppContext, build_app_context
from services.kv_cache import InMemoryKeyValueCache
from tests.helpers.doubles import FailingKeyValueCache, StubRateSource, UnreachableRepository


@pytest.fixture()
def context(db_engine: Engine, kv_cache: InMemoryKeyValueCache, rate_source: StubRateSource) -> AppContext:
    settings = AppSettings(_env_file=None)  # type: ignore[call-arg]
    return build_app_context(settings, engine=db_engine, cache=kv_cache, rate_source=rate_source)


@pytest.fixture()
def client(context: AppContext) -> Generator[TestClient, None, None]:
    with TestClient(create_app(context)) as test_client:
        yield test_client


def test_request_update_is_accepted(client: TestClient, context: AppContext) -> None:
    response = client.post("/quotes/update", json={"pair": "EUR/MXN"})

    assert response.status_code == 202
    body = response.json()
    assert body["status"] == "PENDING"
    assert context.queue.count() == 1

    again = client.post("/quotes/update", json={"pair": "eur/mxn"})
    assert again.json()["update_id"] == body["update_id"]


@pytest.mark.parametrize(
    "body,message",
    [
        ({"pair": ""}, "pair must not be empty"),
        ({}, "pair must not be empty"),
        ({"pair": "EURMXN"}, "invalid currency pair format"),
        ({"pair": "ZZZ/MXN"}, "unsupported currency: ZZZ"),
    ],
)
def test_request_update_rejects_bad_pairs(client: TestClient, body: dict[str, str], message: str) -> None:
    response = client.post("/quotes/update", json=body)

    assert response.status_code == 400
    assert message in response.json()["error"]


def test_get_result_lifecycle(client: TestClient, context: AppContext) -> None:
    update_id = client.post("/quotes/update", json={"pair": "EUR/MXN"}).json()["update_id"]

    pending = client.get(f"/quotes/{update_id}")
    assert pending.status_code == 200
    assert pending.json() == {"update_id": update_id, "base": "EUR", "quote": "MXN", "status": "PENDING"}

    worker = context.build_worker()
    try:
        assert worker.process_next() is True
    finally:
        worker.close()

    done = client.get(f"/quotes/{update_id}").json()
    assert done["status"] == "SUCCESS"
    assert done["price"] == "1.0850"
    assert "updated_at" in done
    assert "error" not in done


def test_get_result_errors(client: TestClient) -> None:
    assert client.get("/quotes/not-a-uuid").status_code == 400
    missing = client.get(f"/quotes/{uuid4()}")
    assert missing.status_code == 404
    assert "not found" in missing.json()["error"]


def test_get_latest(client: TestClient, context: AppContext) -> None:
    assert client.get("/quotes/latest", params={"base": "EUR", "quote": "MXN"}).status_code == 404

    update_id, _ = context.service.request_update("EUR/MXN")
    context.service.execute(update_id, "EUR", "MXN")
    response = client.get("/quotes/latest", params={"base": "eur", "quote": "mxn"})

    assert response.status_code == 200
    body = response.json()
    assert (body["base"], body["quote"], body["price"]) == ("EUR", "MXN", "1.0850")
    assert set(body) == {"base", "quote", "price", "updated_at"}


def test_get_latest_validates_input(client: TestClient) -> None:
    assert client.get("/quotes/latest", params={"base": "EUR"}).status_code == 400
    assert client.get("/quotes/latest", params={"base": "EUR", "quote": "ZZZ"}).status_code == 400


def test_store_outage_maps_to_service_unavailable(client: TestClient, context: AppContext) -> None:
    context.service.repository = UnreachableRepository()  # type: ignore[assignment]

    response = client.post("/quotes/update", json={"pair": "EUR/MXN"})

    assert response.status_code == 503
    assert response.json() == {"error": "store unavailable during create_or_join"}


def test_health_and_readiness(client: TestClient, context: AppContext) -> None:
    assert client.get("/healthz").text == "OK"
    assert client.get("/readyz").json() == {"status": "ready"}

    context.cache = FailingKeyValueCache()
    not_ready = client.get("/readyz")
    assert not_ready.status_code == 503
    assert not_ready.json() == {"status": "unavailable"}
