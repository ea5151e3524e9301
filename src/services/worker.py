from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Callable, Mapping

from pydantic import ValidationError

from .quote_service import TASK_KIND_UPDATE_QUOTE, QuoteService, UpdateQuotePayload
from .task_queue import DeadTaskCallback, SqlTaskQueue, Task, TaskStatus

logger = logging.getLogger(__name__)

TaskHandler = Callable[[Task], None]


def build_update_quote_handler(service: QuoteService) -> TaskHandler:
    def handle(task: Task) -> None:
        try:
            payload = UpdateQuotePayload.model_validate_json(task.payload)
        except ValidationError as exc:
            # Redelivering cannot fix a payload, so it is dropped.
            logger.error("Dropping task %s with undecodable payload: %s", task.id, exc)
            return
        service.execute(payload.update_id, payload.base, payload.quote)

    return handle


def build_abandon_quote_handler(service: QuoteService) -> DeadTaskCallback:
    def abandon(task: Task, reason: str) -> None:
        try:
            payload = UpdateQuotePayload.model_validate_json(task.payload)
        except ValidationError:
            return
        service.abandon(payload.update_id, reason)

    return abandon


class QueueWorker:
    """Pulls tasks off the queue and runs their handlers.

    Each handler runs on a pool thread and is given the task's timeout. A
    handler that raises or overruns is ``nack``ed, which schedules a retry.
    A handler that overruns keeps its pool slot until it returns, and no new
    task is claimed while every slot is taken. When a task is buried, the
    ``on_dead`` callback registered for its kind is told why.
    """

    def __init__(
        self,
        queue: SqlTaskQueue,
        handlers: Mapping[str, TaskHandler],
        *,
        on_dead: Mapping[str, DeadTaskCallback] | None = None,
        concurrency: int = 1,
        poll_interval: float = 5.0,
    ) -> None:
        if concurrency <= 0:
            raise ValueError("concurrency must be positive")
        if not handlers:
            raise ValueError("at least one task handler is required")
        self.queue = queue
        self.handlers = dict(handlers)
        self.on_dead = dict(on_dead or {})
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self._executor = ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix="task-handler")
        self._slots = threading.BoundedSemaphore(concurrency)

    def process_next(self) -> bool:
        """Run a single due task.

        Returns ``False`` when the queue had nothing to hand out or every
        handler slot is still held by an overrunning handler.
        """
        if not self._slots.acquire(blocking=False):
            logger.debug("All %s handler slot(s) are busy", self.concurrency)
            return False
        try:
            task = self.queue.claim(self.handlers.keys(), on_dead=self._bury)
        except Exception:
            self._slots.release()
            raise
        if task is None:
            self._slots.release()
            return False

        handler = self.handlers[task.kind]
        logger.debug("Processing task %s (%s), attempt %s", task.id, task.kind, task.attempts)
        future = self._executor.submit(handler, task)
        future.add_done_callback(self._release_slot)
        try:
            future.result(timeout=task.timeout.total_seconds())
        except FutureTimeoutError:
            future.cancel()
            logger.error("Task %s (%s) timed out after %s", task.id, task.kind, task.timeout)
            self._reject(task, f"timed out after {task.timeout.total_seconds():g}s")
            return True
        except Exception as exc:
            logger.exception("Task %s (%s) failed", task.id, task.kind)
            self._reject(task, str(exc) or exc.__class__.__name__)
            return True

        self.queue.ack(task)
        return True

    def run(self, stop_event: threading.Event) -> None:
        """Poll with ``concurrency`` loops until ``stop_event`` is set."""
        loops = [
            threading.Thread(target=self._loop, args=(stop_event,), name=f"task-poller-{index}", daemon=True)
            for index in range(self.concurrency)
        ]
        logger.info("Worker started with %s poller(s) for %s", self.concurrency, ", ".join(sorted(self.handlers)))
        for loop in loops:
            loop.start()
        for loop in loops:
            loop.join()
        logger.info("Worker stopped")

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def _reject(self, task: Task, error: str) -> None:
        if self.queue.nack(task, error) is TaskStatus.DEAD:
            self._bury(task, error)

    def _bury(self, task: Task, reason: str) -> None:
        callback = self.on_dead.get(task.kind)
        if callback is not None:
            callback(task, reason)

    def _release_slot(self, _future: Future[None]) -> None:
        self._slots.release()

    def _loop(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                processed = self.process_next()
            except Exception:
                logger.exception("Worker poll failed")
                processed = False
            if not processed:
                stop_event.wait(self.poll_interval)


def build_quote_worker(
    service: QuoteService, queue: SqlTaskQueue, *, concurrency: int = 1, poll_interval: float = 5.0
) -> QueueWorker:
    return QueueWorker(
        queue,
        {TASK_KIND_UPDATE_QUOTE: build_update_quote_handler(service)},
        on_dead={TASK_KIND_UPDATE_QUOTE: build_abandon_quote_handler(service)},
        concurrency=concurrency,
        poll_interval=poll_interval,
    )


__all__ = [
    "QueueWorker",
    "TaskHandler",
    "build_abandon_quote_handler",
    "build_quote_worker",
    "build_update_quote_handler",
]
