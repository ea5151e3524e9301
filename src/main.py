from __future__ import annotations

import argparse
import logging
import signal
import threading
from dataclasses import dataclass
from datetime import timedelta
from typing import Sequence

import requests
from sqlalchemy import Engine
from sqlalchemy.orm import Session, sessionmaker

from config import AppSettings, config
from db.db import create_engine_from_url, init_db
from db.repositories import QuoteUpdateRepository
from domain.errors import QuoteServiceError
from domain.quotes import QuoteUpdateView
from domain.validation import PairValidator
from services.exchangerate_host_source import ExchangeRateHostSource
from services.frankfurter_source import FrankfurterSource
from services.http_client import JsonHttpClient
from services.kv_cache import InMemoryKeyValueCache, KeyValueCache
from services.latest_quote_cache import LatestQuoteCache
from services.quote_service import QuoteService
from services.rate_sources import CachedRateSource, RateSource, RateSourceFacade
from services.task_queue import SqlTaskQueue
from services.worker import QueueWorker, build_quote_worker

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)


def build_source(name: str, settings: AppSettings, session: requests.Session | None = None) -> RateSource:
    retry = {
        "retry_attempts": settings.http_retry_attempts,
        "retry_backoff_seconds": settings.http_retry_backoff_seconds,
    }
    if name == "frankfurter":
        client = JsonHttpClient(
            base_url=settings.frankfurter_base_url,
            service_name="Frankfurter",
            timeout=settings.frankfurter_timeout_seconds,
            session=session,
            **retry,
        )
        return FrankfurterSource(client=client)
    if name == "exchangerate_host":
        client = JsonHttpClient(
            base_url=settings.exchangerate_host_base_url,
            service_name="exchangerate.host",
            timeout=settings.exchangerate_host_timeout_seconds,
            session=session,
            **retry,
        )
        return ExchangeRateHostSource(api_key=settings.exchangerate_host_api_key, client=client)
    raise ValueError(f"unknown rate source: {name!r}")


def build_rate_source(
    settings: AppSettings, cache: KeyValueCache, session: requests.Session | None = None
) -> RateSourceFacade:
    """Configured sources in order, each behind its own cache."""
    ttl = timedelta(seconds=settings.source_price_ttl_seconds)
    sources: list[RateSource] = [
        CachedRateSource(build_source(name, settings, session), cache, ttl) for name in settings.rate_sources
    ]
    return RateSourceFacade(sources)


@dataclass
class AppContext:
    engine: Engine
    session_factory: sessionmaker[Session]
    repository: QuoteUpdateRepository
    cache: KeyValueCache
    queue: SqlTaskQueue
    service: QuoteService
    settings: AppSettings

    def build_worker(self) -> QueueWorker:
        return build_quote_worker(
            self.service,
            self.queue,
            concurrency=self.settings.worker_concurrency,
            poll_interval=self.settings.worker_poll_interval_seconds,
        )

    def close(self) -> None:
        self.engine.dispose()


def build_app_context(
    settings: AppSettings | None = None,
    *,
    engine: Engine | None = None,
    cache: KeyValueCache | None = None,
    rate_source: RateSource | None = None,
) -> AppContext:
    settings = settings or config()
    engine = engine or create_engine_from_url(settings.database_url, timeout=settings.db_timeout_seconds)
    session_factory = init_db(engine)
    cache = cache if cache is not None else InMemoryKeyValueCache()

    task_timeout = timedelta(seconds=settings.task_timeout_seconds)
    repository = QuoteUpdateRepository(session_factory)
    queue = SqlTaskQueue(session_factory, default_max_retry=settings.task_max_retry, default_timeout=task_timeout)
    service = QuoteService(
        repository,
        rate_source or build_rate_source(settings, cache),
        PairValidator(settings.supported_currencies),
        queue,
        LatestQuoteCache(cache, timedelta(seconds=settings.latest_price_ttl_seconds)),
        task_max_retry=settings.task_max_retry,
        task_timeout=task_timeout,
    )
    return AppContext(
        engine=engine,
        session_factory=session_factory,
        repository=repository,
        cache=cache,
        queue=queue,
        service=service,
        settings=settings,
    )


def _print_view(view: QuoteUpdateView) -> None:
    print(view.model_dump_json(indent=2, exclude_none=True))


def run_worker(context: AppContext, *, once: bool) -> None:
    worker = context.build_worker()
    try:
        if once:
            processed = 0
            while worker.process_next():
                processed += 1
            print(f"Processed {processed} task(s)")
            return

        stop_event = threading.Event()
        signal.signal(signal.SIGINT, lambda *_: stop_event.set())
        signal.signal(signal.SIGTERM, lambda *_: stop_event.set())
        worker.run(stop_event)
    finally:
        worker.close()


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Request and inspect FX quote updates.")
    parser.add_argument("--log-level", default=None, help="Overrides LOG_LEVEL from the environment.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init-db", help="Create the database tables.")
    request_parser = subparsers.add_parser("request", help="Request a quote update, e.g. EUR/MXN.")
    request_parser.add_argument("pair")
    result_parser = subparsers.add_parser("result", help="Show a quote update.")
    result_parser.add_argument("update_id")
    latest_parser = subparsers.add_parser("latest", help="Show the last known quote for a pair.")
    latest_parser.add_argument("base")
    latest_parser.add_argument("quote")
    worker_parser = subparsers.add_parser("worker", help="Execute queued quote updates.")
    worker_parser.add_argument("--once", action="store_true", help="Drain due tasks and exit.")

    args = parser.parse_args(argv)
    settings = config()
    configure_logging(args.log_level or settings.log_level)

    context = build_app_context(settings)
    try:
        if args.command == "init-db":
            print(f"Database ready at {settings.database_url}")
        elif args.command == "request":
            update_id, status = context.service.request_update(args.pair)
            print(f"{update_id} {status}")
        elif args.command == "result":
            _print_view(context.service.get_result(args.update_id))
        elif args.command == "latest":
            _print_view(context.service.get_latest(args.base, args.quote))
        elif args.command == "worker":
            run_worker(context, once=args.once)
    except QuoteServiceError as exc:
        logger.error("%s failed: %s", args.command, exc)
        return 1
    finally:
        context.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
