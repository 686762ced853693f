"""Detached execution of submitted lookup tasks."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures

logger = logging.getLogger(__name__)


class TaskExecutor:
    """Thread pool running one job per task.

    Submitters never await the returned future; job outcomes travel back
    through the task store. Exceptions escaping a job are logged here.
    """

    def __init__(self, max_workers: int = 4, *, thread_name_prefix: str = "lookup-task") -> None:
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix=thread_name_prefix,
        )
        self._lock = threading.Lock()
        self._futures: dict[str, Future[None]] = {}

    def submit(self, task_id: str, job: Callable[[], None]) -> Future[None]:
        future = self._executor.submit(job)
        with self._lock:
            self._futures[task_id] = future
        future.add_done_callback(lambda done: self._on_done(task_id, done))
        return future

    def _on_done(self, task_id: str, future: Future[None]) -> None:
        with self._lock:
            if self._futures.get(task_id) is future:
                del self._futures[task_id]
        if future.cancelled():
            logger.warning("Task job %s was cancelled before it started", task_id)
            return
        error = future.exception()
        if error is not None:
            logger.error(
                "Task job %s crashed",
                task_id,
                exc_info=(type(error), error, error.__traceback__),
            )

    def active_count(self) -> int:
        with self._lock:
            return len(self._futures)

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until every submitted job finished; False on timeout."""

        with self._lock:
            pending = list(self._futures.values())
        if not pending:
            return True
        _, not_done = wait_futures(pending, timeout=timeout)
        return not not_done

    def shutdown(self, *, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
