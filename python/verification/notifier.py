"""
Completion notifications with durable retry.

The first delivery attempt happens inline. A failed attempt is audited and
a retry is persisted as a scheduled task; each retry that fails schedules
the next one until max_retries is reached.
"""

import logging
from typing import Any, Dict, Optional

from config_manager import NotificationConfig
from database.models import AuditAction
from logging_setup import sanitize_for_logging
from verification.collaborators import AuditEvent, AuditSink, NotificationGateway
from verification.scheduler import DelayedTaskScheduler

logger = logging.getLogger(__name__)

NOTIFICATION_RETRY_TASK = "notification_retry"


class RetryingNotifier:
    """Delivers verification-complete notices, retrying through the scheduler."""

    def __init__(
        self,
        gateway: NotificationGateway,
        scheduler: DelayedTaskScheduler,
        audit: AuditSink,
        config: Optional[NotificationConfig] = None
    ):
        self.gateway = gateway
        self.scheduler = scheduler
        self.audit = audit
        self.config = config or NotificationConfig()
        scheduler.register(NOTIFICATION_RETRY_TASK, self._handle_retry)

    def _delay_for(self, retry: int) -> int:
        delays = self.config.retry_delays_seconds
        return delays[min(retry - 1, len(delays) - 1)]

    def notify(self, application_id: str, decision: str, run_id: str) -> bool:
        """Attempt delivery; on failure schedule the first retry.

        Returns:
            True if the notice was delivered now
        """
        try:
            self.gateway.notify_verification_complete(application_id, decision)
            return True
        except Exception as e:
            self._on_failure(application_id, decision, run_id, retry=0, error=e)
            return False

    def _handle_retry(self, payload: Dict[str, Any], attempt: int) -> None:
        application_id = payload['application_id']
        decision = payload['decision']
        retry = int(payload.get('retry', 1))
        try:
            self.gateway.notify_verification_complete(application_id, decision)
        except Exception as e:
            self._on_failure(application_id, decision, payload.get('run_id'), retry=retry, error=e)
            raise
        logger.info(
            "Notification delivered for application %s on retry %d",
            sanitize_for_logging(application_id), retry,
        )

    def _on_failure(self, application_id: str, decision: str, run_id: Optional[str],
                    retry: int, error: Exception) -> None:
        next_retry = retry + 1
        will_retry = next_retry <= self.config.max_retries
        logger.warning(
            "Notification for application %s failed (retry %d): %s",
            sanitize_for_logging(application_id), retry, sanitize_for_logging(str(error)),
        )
        if will_retry:
            self.scheduler.schedule(
                NOTIFICATION_RETRY_TASK,
                {
                    'application_id': application_id,
                    'decision': decision,
                    'run_id': run_id,
                    'retry': next_retry,
                },
                delay_seconds=self._delay_for(next_retry),
            )
        else:
            logger.error(
                "Giving up on notification for application %s after %d retries",
                sanitize_for_logging(application_id), retry,
            )
        # audit failures never cancel the scheduled retry
        try:
            self.audit.log(AuditEvent(
                action=AuditAction.NOTIFICATION_FAILED,
                resource_type="verification_run",
                resource_id=run_id,
                details={
                    'application_id': application_id,
                    'decision': decision,
                    'retry': retry,
                    'will_retry': will_retry,
                },
                success=False,
                error_message=str(error),
            ))
        except Exception:
            logger.exception("Audit log write failed for notification of application %s",
                             sanitize_for_logging(application_id))
