from datetime import timedelta
from typing import Generator

import pytest
from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from db.models import Base
from db.repositories import QuoteUpdateRepository
from domain.validation import PairValidator
from services.kv_cache import InMemoryKeyValueCache
from services.latest_quote_cache import LatestQuoteCache
from services.quote_service import QuoteService
from services.task_queue import SqlTaskQueue
from tests.helpers.doubles import StubRateSource
from tests.helpers.time_utils import ManualClock

engine: Engine = create_engine(
    "sqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
test_session_factory = sessionmaker(engine, expire_on_commit=False)

LATEST_TTL = timedelta(minutes=10)


@pytest.fixture(scope="function")
def db_engine() -> Engine:
    return engine


@pytest.fixture(scope="function")
def session_factory() -> sessionmaker[Session]:
    return test_session_factory


@pytest.fixture(scope="function", autouse=True)
def reset_db() -> Generator[None, None, None]:
    Base.metadata.create_all(engine)
    yield
    Base.metadata.drop_all(engine)


@pytest.fixture(scope="function")
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture(scope="function")
def repository(session_factory: sessionmaker[Session], clock: ManualClock) -> QuoteUpdateRepository:
    return QuoteUpdateRepository(session_factory, clock=clock)


@pytest.fixture(scope="function")
def task_queue(session_factory: sessionmaker[Session], clock: ManualClock) -> SqlTaskQueue:
    return SqlTaskQueue(session_factory, clock=clock)


@pytest.fixture(scope="function")
def kv_cache(clock: ManualClock) -> InMemoryKeyValueCache:
    return InMemoryKeyValueCache(clock=clock)


@pytest.fixture(scope="function")
def rate_source() -> StubRateSource:
    return StubRateSource(price="1.0850")


@pytest.fixture(scope="function")
def quote_service(
    repository: QuoteUpdateRepository,
    rate_source: StubRateSource,
    task_queue: SqlTaskQueue,
    kv_cache: InMemoryKeyValueCache,
) -> QuoteService:
    return QuoteService(
        repository,
        rate_source,
        PairValidator(),
        task_queue,
        LatestQuoteCache(kv_cache, ttl=LATEST_TTL),
    )
