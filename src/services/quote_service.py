from __future__ import annotations

import logging
from datetime import timedelta
from uuid import UUID, uuid4

from pydantic import BaseModel

from db.repositories import QuoteUpdateRepository
from domain.errors import (
    InfrastructureError,
    InvalidFormatError,
    InvalidIdError,
    InvalidTransitionError,
    NotFoundError,
    QuoteServiceError,
)
from domain.quotes import QuoteStatus, QuoteUpdateView, UpdateId
from domain.validation import PairValidator

from .latest_quote_cache import LatestQuoteCache
from .rate_sources import RateSource
from .task_queue import TaskEnqueuer

logger = logging.getLogger(__name__)

TASK_KIND_UPDATE_QUOTE = "quote:update"


class UpdateQuotePayload(BaseModel):
    update_id: UUID
    base: str
    quote: str


class QuoteService:
    """Coordinates quote update requests, their execution and result lookups.

    ``request_update`` only records the request and hands it to the task
    queue; ``execute`` runs later, possibly in another process, when the task
    is delivered. Delivery is at-least-once, so ``execute`` relies on the
    repository's guarded transitions to make a duplicate delivery harmless.
    """

    def __init__(
        self,
        repository: QuoteUpdateRepository,
        rate_source: RateSource,
        validator: PairValidator,
        task_queue: TaskEnqueuer,
        latest_cache: LatestQuoteCache,
        *,
        task_max_retry: int = 3,
        task_timeout: timedelta = timedelta(seconds=30),
    ) -> None:
        self.repository = repository
        self.rate_source = rate_source
        self.validator = validator
        self.task_queue = task_queue
        self.latest_cache = latest_cache
        self.task_max_retry = task_max_retry
        self.task_timeout = task_timeout

    def request_update(self, pair: str) -> tuple[UpdateId, QuoteStatus]:
        if not pair or not pair.strip():
            raise InvalidFormatError("pair must not be empty")
        base, quote = self.validator.parse_pair(pair)

        candidate_id = uuid4()
        update_id = self.repository.create_or_join(base, quote, candidate_id)
        if update_id != candidate_id:
            logger.info("Joined in-flight update %s for %s/%s", update_id, base, quote)
            return UpdateId(update_id), QuoteStatus.PENDING

        payload = UpdateQuotePayload(update_id=update_id, base=base, quote=quote)
        try:
            self.task_queue.enqueue(
                TASK_KIND_UPDATE_QUOTE,
                payload.model_dump_json(),
                max_retry=self.task_max_retry,
                timeout=self.task_timeout,
            )
        except Exception as exc:
            logger.error("Failed to enqueue update %s for %s/%s: %s", update_id, base, quote, exc)
            try:
                self.repository.fail_pending(update_id, f"enqueue failed: {exc}")
            except QuoteServiceError:
                logger.warning("Could not mark update %s as failed after enqueue error", update_id, exc_info=True)
            raise InfrastructureError("task queue unavailable") from exc

        logger.info("Enqueued update %s for %s/%s", update_id, base, quote)
        return UpdateId(update_id), QuoteStatus.PENDING

    def execute(self, update_id: UUID, base: str, quote: str) -> None:
        """Fetch the rate for one update and record the outcome.

        Returns quietly when the update is no longer runnable (finished, or
        superseded by a newer in-flight update). A source failure is recorded
        as FAILED and then re-raised so the task queue retries the delivery.
        """
        try:
            pair = self.validator.validate(base, quote)
        except QuoteServiceError as exc:
            logger.error("Rejecting update %s with invalid pair %s/%s: %s", update_id, base, quote, exc)
            if self._mark_running(update_id):
                self._complete(update_id, status=QuoteStatus.FAILED, error=str(exc))
            return

        if not self._mark_running(update_id):
            return

        try:
            rate = self.rate_source.get_rate(pair.base, pair.quote)
        except Exception as exc:
            logger.error("Update %s for %s failed: %s", update_id, pair, exc)
            self._complete(update_id, status=QuoteStatus.FAILED, error=str(exc))
            raise

        if self._complete(update_id, status=QuoteStatus.SUCCESS, price=rate.price):
            logger.info("Update %s for %s completed at %s", update_id, pair, rate.price)
            self.latest_cache.set(pair.base, pair.quote, rate.price, rate.observed_at)

    def abandon(self, update_id: UUID, reason: str) -> bool:
        """Fail an update whose task was given up on, so the pair accepts new requests."""
        try:
            self.repository.fail_in_flight(update_id, f"task abandoned: {reason}")
        except InvalidTransitionError as exc:
            logger.info("Update %s needs no cleanup after its task died: %s", update_id, exc)
            return False
        logger.warning("Update %s failed after its task died: %s", update_id, reason)
        return True

    def get_result(self, update_id: str | UUID) -> QuoteUpdateView:
        parsed = self._parse_update_id(update_id)
        update = self.repository.get(parsed)
        if update is None:
            raise NotFoundError(f"quote update {parsed} not found")
        return QuoteUpdateView.from_update(update)

    def get_latest(self, base: str, quote: str) -> QuoteUpdateView:
        """Last known price for a pair; served from the cache or the store, never fetched."""
        pair = self.validator.validate(base, quote)
        cached = self.latest_cache.get(pair.base, pair.quote)
        if cached is not None:
            return cached.to_view()

        update = self.repository.get_latest_success(pair.base, pair.quote)
        if update is None or update.price is None:
            raise NotFoundError(f"no quote available for {pair}")
        updated_at = update.updated_at or update.requested_at
        self.latest_cache.set(pair.base, pair.quote, update.price, updated_at)
        view = QuoteUpdateView.from_update(update)
        view.update_id = None
        return view

    def _mark_running(self, update_id: UUID) -> bool:
        try:
            self.repository.mark_running(update_id)
        except InvalidTransitionError as exc:
            if exc.current is QuoteStatus.RUNNING:
                # An earlier delivery timed out or crashed mid-flight; take over.
                logger.warning("Update %s is already running, resuming after redelivery", update_id)
                return True
            logger.warning("Skipping update %s: %s", update_id, exc)
            return False
        return True

    def _complete(
        self,
        update_id: UUID,
        *,
        status: QuoteStatus,
        price: str | None = None,
        error: str | None = None,
    ) -> bool:
        try:
            self.repository.complete(update_id, status=status, price=price, error=error)
        except InvalidTransitionError as exc:
            logger.warning("Discarding %s outcome for update %s: %s", status, update_id, exc)
            return False
        return True

    @staticmethod
    def _parse_update_id(update_id: str | UUID) -> UUID:
        if isinstance(update_id, UUID):
            return update_id
        try:
            return UUID(update_id)
        except (TypeError, ValueError) as exc:
            raise InvalidIdError(str(update_id)) from exc


__all__ = ["QuoteService", "TASK_KIND_UPDATE_QUOTE", "UpdateQuotePayload"]
