"""
Supervised worker pool for run processing.

Start and Retry hand runs to RunExecutor instead of spawning detached
threads, so the number of runs processed at once is bounded, pending work
is visible as a gauge, and any exception escaping a job is logged.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Callable, Optional, Set

from database.monitoring import worker_pending_runs
from logging_setup import sanitize_for_logging

logger = logging.getLogger(__name__)


class RunExecutor:
    """Bounded thread pool that processes runs in the background."""

    def __init__(self, pool_size: int = 4, thread_name_prefix: str = "verification-run"):
        self.pool_size = pool_size
        self._executor = ThreadPoolExecutor(max_workers=pool_size, thread_name_prefix=thread_name_prefix)
        self._lock = threading.Lock()
        self._pending: Set[Future] = set()
        self._closed = False

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._pending)

    def submit(self, job: Callable[..., None], *args, label: str = "") -> Future:
        """Queue a job.

        Raises:
            RuntimeError: If the executor has been shut down
        """
        with self._lock:
            if self._closed:
                raise RuntimeError("RunExecutor is shut down")
            future = self._executor.submit(job, *args)
            self._pending.add(future)
        worker_pending_runs.inc()
        future.add_done_callback(lambda f: self._on_done(f, label))
        return future

    def _on_done(self, future: Future, label: str) -> None:
        if future.cancelled():
            logger.warning("Background job cancelled: %s", sanitize_for_logging(label))
        elif future.exception() is not None:
            error = future.exception()
            logger.error(
                "Background job %s raised: %s",
                sanitize_for_logging(label), sanitize_for_logging(str(error)),
                exc_info=(type(error), error, error.__traceback__),
            )
        # a job only stops counting as pending once its outcome is logged
        with self._lock:
            self._pending.discard(future)
        worker_pending_runs.dec()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until every submitted job has finished.

        Jobs submitted while waiting are waited for too.

        Returns:
            True if the pool went idle before the timeout
        """
        while True:
            with self._lock:
                pending = set(self._pending)
            if not pending:
                return True
            _, not_done = wait(pending, timeout=timeout)
            if not_done:
                return False

    def shutdown(self, wait_for_jobs: bool = True) -> None:
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=wait_for_jobs)
