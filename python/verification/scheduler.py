"""
Durable delayed-task scheduler.

Tasks are rows in scheduled_tasks, so pending work survives a restart.
A background thread polls for due tasks, claims each one with a
conditional update, and dispatches it to the handler registered for its
task_type.
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional
from uuid import UUID

from database.connection import DatabaseSessionProvider
from database.models import utcnow
from database.repositories import ScheduledTaskRepository
from logging_setup import sanitize_for_logging

logger = logging.getLogger(__name__)

TaskHandler = Callable[[Dict[str, Any], int], None]


class DelayedTaskScheduler:
    """Runs scheduled_tasks rows when they fall due.

    A handler receives the task payload and the attempt number. Raising
    marks the task failed; follow-up scheduling is the handler's concern.
    """

    def __init__(
        self,
        db_provider: DatabaseSessionProvider,
        poll_interval_seconds: float = 5.0,
        clock: Callable[[], datetime] = utcnow
    ):
        self.db_provider = db_provider
        self.poll_interval_seconds = poll_interval_seconds
        self.clock = clock
        self._handlers: Dict[str, TaskHandler] = {}
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def register(self, task_type: str, handler: TaskHandler) -> None:
        self._handlers[task_type] = handler

    def schedule(self, task_type: str, payload: Dict[str, Any], delay_seconds: float) -> UUID:
        """Persist a task due after delay_seconds."""
        run_at = self.clock() + timedelta(seconds=delay_seconds)
        with self.db_provider.session_scope() as session:
            task = ScheduledTaskRepository(session).schedule(task_type, payload, run_at)
            task_id = task.id
        logger.info("Scheduled %s task %s for %s", task_type, task_id, run_at.isoformat())
        return task_id

    def run_due(self, now: Optional[datetime] = None, limit: int = 50) -> int:
        """Execute every task due at `now`.

        Returns:
            Number of tasks executed (succeeded or failed)
        """
        now = now or self.clock()
        with self.db_provider.session_scope() as session:
            due = [(task.id, task.task_type, dict(task.payload or {}))
                   for task in ScheduledTaskRepository(session).list_due(now, limit)]

        executed = 0
        for task_id, task_type, payload in due:
            with self.db_provider.session_scope() as session:
                repo = ScheduledTaskRepository(session)
                if not repo.claim(task_id):
                    continue
                attempt = repo.get_by_id(task_id).attempts

            executed += 1
            handler = self._handlers.get(task_type)
            if handler is None:
                logger.error("No handler registered for task type %s", sanitize_for_logging(task_type))
                self._finish(task_id, f"no handler for task type {task_type}")
                continue

            try:
                handler(payload, attempt)
            except Exception as e:
                logger.warning(
                    "Scheduled task %s (%s) failed: %s",
                    task_id, task_type, sanitize_for_logging(str(e)),
                )
                self._finish(task_id, str(e))
            else:
                self._finish(task_id, None)
        return executed

    def _finish(self, task_id: UUID, error: Optional[str]) -> None:
        with self.db_provider.session_scope() as session:
            repo = ScheduledTaskRepository(session)
            if error is None:
                repo.complete(task_id)
            else:
                repo.fail(task_id, error)

    # ============================================
    # BACKGROUND THREAD
    # ============================================

    def start(self) -> None:
        """Requeue tasks interrupted by a previous process and start polling."""
        if self._thread is not None and self._thread.is_alive():
            return
        with self.db_provider.session_scope() as session:
            requeued = ScheduledTaskRepository(session).requeue_running()
        if requeued:
            logger.info("Requeued %d interrupted scheduled task(s)", requeued)

        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="delayed-task-scheduler", daemon=True)
        self._thread.start()

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.run_due()
            except Exception:
                logger.exception("Scheduled task poll failed")
            self._stop.wait(self.poll_interval_seconds)

    def stop(self, timeout: float = 10.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
