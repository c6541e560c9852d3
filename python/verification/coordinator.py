"""
Run coordination.

VerificationCoordinator owns the run lifecycle:

    queued -> in_progress -> completed | failed
    completed | failed | cancelled -> queued   (retry only)

start() admits a run and hands it to the worker pool; process() fans out
to every source provider, stores their hits and statuses, scores the run
against its pinned policy and records the outcome. Provider failures are
absorbed as degraded results; only failures of the pipeline itself mark
a run failed.
"""

import logging
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Union
from uuid import UUID

from sqlalchemy.orm import Session

from database.connection import DatabaseSessionProvider
from database.models import (
    ACTIVE_RUN_STATUSES,
    AuditAction,
    Decision,
    RunStatus,
    SourceHit,
    VerificationRun,
    utcnow,
)
from database.monitoring import record_run_finished, record_run_started, record_source_call
from database.repositories import DuplicateEntityError, SourceHitRepository, VerificationRunRepository
from logging_setup import sanitize_for_logging
from verification.collaborators import (
    ApplicantGateway,
    ApplicationStatusGateway,
    AuditEvent,
    AuditSink,
)
from verification.errors import ConflictError, NotFoundError, OrchestrationError, ProviderDegraded, ValidationError
from verification.policy import PolicyResolver
from verification.scoring import score
from verification.sources.base import SourceCheckProvider, SourceCheckResult, degraded_result
from verification.worker import RunExecutor

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"
RESOURCE_TYPE = "verification_run"
MAX_APPLICATION_ID_LENGTH = 64

# Application status after a completed run
APPLICATION_STATUS_BY_DECISION = {
    Decision.CLEAR: "clear",
    Decision.REVIEW: "under_review",
    Decision.NOT_CLEAR: "not_clear",
}
APPLICATION_STATUS_IN_PROGRESS = "in_progress"

# How often the fan-out checks whether queued source calls got a slot
SLOT_POLL_SECONDS = 0.05


def _outcome_of(run: VerificationRun) -> Dict[str, Any]:
    """Audit snapshot of a run's recorded outcome"""
    return {
        'status': run.status.value,
        'decision': run.decision.value if run.decision else None,
        'risk_score': run.risk_score,
        'reason_codes': list(run.reason_codes or []),
        'scoring_breakdown': dict(run.scoring_breakdown or {}),
        'source_results': dict(run.source_results or {}),
        'error_message': run.error_message,
        'started_at': run.started_at.isoformat() if run.started_at else None,
        'completed_at': run.completed_at.isoformat() if run.completed_at else None,
    }


class _SourceCall:
    """One provider call of a fan-out; started_at is set once it holds a slot."""

    def __init__(self, provider: SourceCheckProvider):
        self.provider = provider
        self.started_at: Optional[float] = None
        self.future: Optional[Future] = None


class VerificationCoordinator:
    """Admits, processes and retries verification runs.

    Args:
        db_provider: Database session provider
        policy_resolver: Resolves the active and pinned policies
        providers: Source check providers, queried concurrently on every run
        applications: Application status collaborator
        applicants: Applicant snapshot collaborator
        notifier: Object with notify(application_id, decision, run_id)
        audit: Audit sink
        executor: Worker pool that runs process() in the background
        provider_timeout_seconds: Deadline for every provider call, counted from
            the moment the call gets a slot
        max_concurrent_source_calls: Cap on simultaneous provider calls across all runs
        source_queue_timeout_seconds: How long a call may wait for a slot before
            the run fails
        hit_store: Factory for the Source Hit Store, given a session
    """

    def __init__(
        self,
        db_provider: DatabaseSessionProvider,
        policy_resolver: PolicyResolver,
        providers: Sequence[SourceCheckProvider],
        applications: ApplicationStatusGateway,
        applicants: ApplicantGateway,
        notifier: Any,
        audit: AuditSink,
        executor: RunExecutor,
        provider_timeout_seconds: float = 30.0,
        max_concurrent_source_calls: int = 8,
        hit_store: Callable[[Session], SourceHitRepository] = SourceHitRepository,
        stale_run_minutes: int = 60,
        source_queue_timeout_seconds: float = 120.0
    ):
        names = [provider.name for provider in providers]
        if not providers:
            raise ValueError("At least one source provider is required")
        if len(set(names)) != len(names) or not all(names):
            raise ValueError(f"Provider names must be unique and non-empty: {names}")

        self.db_provider = db_provider
        self.policy_resolver = policy_resolver
        self.providers = list(providers)
        self.applications = applications
        self.applicants = applicants
        self.notifier = notifier
        self.audit = audit
        self.executor = executor
        self.provider_timeout_seconds = provider_timeout_seconds
        self.source_queue_timeout_seconds = source_queue_timeout_seconds
        self.hit_store = hit_store
        self.stale_run_minutes = stale_run_minutes
        # shared by every run, so outbound calls are capped process-wide
        self._source_executor = ThreadPoolExecutor(
            max_workers=max_concurrent_source_calls,
            thread_name_prefix="source-check",
        )

    # ============================================
    # INPUT VALIDATION
    # ============================================

    @staticmethod
    def _validate_application_id(application_id: Any) -> str:
        if application_id is None or not str(application_id).strip():
            raise ValidationError("application_id is required", field="application_id")
        application_id = str(application_id).strip()
        if len(application_id) > MAX_APPLICATION_ID_LENGTH:
            raise ValidationError(
                f"application_id exceeds {MAX_APPLICATION_ID_LENGTH} characters",
                field="application_id",
            )
        return application_id

    @staticmethod
    def _parse_run_id(run_id: Union[str, UUID]) -> UUID:
        if isinstance(run_id, UUID):
            return run_id
        try:
            return UUID(str(run_id))
        except (ValueError, TypeError):
            raise ValidationError(f"Invalid run id: {sanitize_for_logging(run_id, 100)}", field="run_id")

    # ============================================
    # BEST-EFFORT COLLABORATOR CALLS
    # ============================================

    def _audit(self, event: AuditEvent) -> None:
        try:
            self.audit.log(event)
        except Exception:
            logger.exception("Audit log write failed for %s %s", event.action.value, event.resource_id)

    def _transition_application(self, application_id: str, new_status: str, reason: str) -> None:
        try:
            self.applications.transition(application_id, new_status, SYSTEM_ACTOR, reason)
        except Exception as e:
            logger.warning(
                "Application %s status update to %s failed: %s",
                sanitize_for_logging(application_id), new_status, sanitize_for_logging(str(e)),
            )

    def _notify(self, application_id: str, decision: Decision, run_id: UUID) -> None:
        try:
            self.notifier.notify(application_id, decision.value, str(run_id))
        except Exception as e:
            logger.warning(
                "Notification for application %s failed: %s",
                sanitize_for_logging(application_id), sanitize_for_logging(str(e)),
            )

    def _submit(self, run_id: UUID) -> None:
        self.executor.submit(self.process, run_id, label=f"process run {run_id}")

    # ============================================
    # START
    # ============================================

    def start(
        self,
        application_id: str,
        actor_id: Optional[str] = None,
        ip_address: Optional[str] = None
    ) -> VerificationRun:
        """
        Admit a new run for an application and schedule its processing.

        Returns immediately with the queued run; callers poll get_run().

        Raises:
            ValidationError: Bad application id, or payment not completed
            NotFoundError: Unknown application
            ConflictError: The application already has an active run
        """
        application_id = self._validate_application_id(application_id)
        info = self.applications.require_payment_completed(application_id)
        policy = self.policy_resolver.resolve_active_policy(info.destination_country)

        try:
            with self.db_provider.session_scope() as session:
                run = VerificationRunRepository(session).create(
                    application_id, policy.version, policy.policy_id
                )
        except DuplicateEntityError:
            raise ConflictError(
                f"Verification already in progress for application {application_id}",
                field="application_id",
            )

        record_run_started("start")
        logger.info(
            "Verification run %s queued for application %s (policy %s)",
            run.id, sanitize_for_logging(application_id), policy.version,
        )
        self._audit(AuditEvent(
            action=AuditAction.VERIFICATION_STARTED,
            resource_type=RESOURCE_TYPE,
            resource_id=str(run.id),
            actor_id=actor_id,
            actor_ip=ip_address,
            details={
                'application_id': application_id,
                'policy_version': policy.version,
                'policy_is_default': policy.is_default,
                'policy_id': str(policy.policy_id) if policy.policy_id else None,
            },
        ))
        self._transition_application(application_id, APPLICATION_STATUS_IN_PROGRESS, "Verification started")
        self._submit(run.id)
        return run

    # ============================================
    # PROCESS
    # ============================================

    def _call_provider(self, provider: SourceCheckProvider, snapshot) -> SourceCheckResult:
        started = time.monotonic()
        try:
            result = provider.check(snapshot)
            if not isinstance(result, SourceCheckResult):
                raise ProviderDegraded(provider.name, f"unexpected result type {type(result).__name__}")
        except Exception as e:
            record_source_call(provider.name, "error", time.monotonic() - started)
            logger.warning(
                "Source %s degraded for application %s: %s",
                provider.name, sanitize_for_logging(snapshot.application_id), sanitize_for_logging(str(e)),
            )
            return degraded_result(provider.name, str(e) or type(e).__name__)
        record_source_call(provider.name, "ok", time.monotonic() - started)
        return result

    def _run_call(self, call: _SourceCall, snapshot) -> SourceCheckResult:
        call.started_at = time.monotonic()
        return self._call_provider(call.provider, snapshot)

    def _timed_out(self, call: _SourceCall, snapshot) -> SourceCheckResult:
        call.future.cancel()
        record_source_call(call.provider.name, "timeout", self.provider_timeout_seconds)
        logger.warning(
            "Source %s timed out after %ss for application %s",
            call.provider.name, self.provider_timeout_seconds,
            sanitize_for_logging(snapshot.application_id),
        )
        return degraded_result(
            call.provider.name,
            f"timed out after {self.provider_timeout_seconds}s",
            reason="timeout",
        )

    def _fan_out(self, snapshot) -> Dict[str, SourceCheckResult]:
        """Query every provider concurrently and wait for all of them.

        A call's deadline starts when it gets a slot in the shared source
        executor, not when it is queued. Calls still running at their
        deadline resolve to a degraded result and their late output is
        discarded. A call that gets no slot within the queue timeout
        fails the run instead of being scored as unchecked.

        Raises:
            OrchestrationError: If a provider call never started
        """
        queued_at = time.monotonic()
        calls = [_SourceCall(provider) for provider in self.providers]
        for call in calls:
            call.future = self._source_executor.submit(self._run_call, call, snapshot)

        results: Dict[str, SourceCheckResult] = {}
        pending = {call.future: call for call in calls}
        while pending:
            now = time.monotonic()
            for future, call in list(pending.items()):
                if future.done():
                    results[call.provider.name] = future.result()
                    del pending[future]
                elif call.started_at is None:
                    if now - queued_at >= self.source_queue_timeout_seconds:
                        for waiting in pending:
                            waiting.cancel()
                        raise OrchestrationError(
                            f"Source {call.provider.name} got no call slot within "
                            f"{self.source_queue_timeout_seconds}s",
                            field="sources",
                        )
                elif now - call.started_at >= self.provider_timeout_seconds:
                    results[call.provider.name] = self._timed_out(call, snapshot)
                    del pending[future]
            if not pending:
                break

            deadlines = [
                (call.started_at + self.provider_timeout_seconds) if call.started_at is not None
                else (queued_at + self.source_queue_timeout_seconds)
                for call in pending.values()
            ]
            timeout = max(0.0, min(deadlines) - time.monotonic())
            # queued calls may get a slot at any moment
            if any(call.started_at is None for call in pending.values()):
                timeout = min(timeout, SLOT_POLL_SECONDS)
            wait(pending, timeout=timeout, return_when=FIRST_COMPLETED)

        return {call.provider.name: results[call.provider.name] for call in calls}

    def process(self, run_id: Union[str, UUID]) -> None:
        """
        Execute a queued run to a terminal state.

        Claiming the run is a conditional queued -> in_progress update, so
        a run is never processed twice concurrently; a run that is not
        queued is left untouched.
        """
        run_id = self._parse_run_id(run_id)
        with self.db_provider.session_scope() as session:
            repo = VerificationRunRepository(session)
            claimed = repo.claim(run_id)
            run = repo.get_by_id(run_id)
        if run is None:
            logger.warning("Run %s vanished before processing", run_id)
            return
        if not claimed:
            logger.info("Run %s not queued (status %s), skipping", run_id, run.status.value)
            return

        application_id = run.application_id
        try:
            snapshot = self.applicants.snapshot(application_id)
            policy = self.policy_resolver.resolve_pinned(run.policy_id, run.policy_version)
            results = self._fan_out(snapshot)

            with self.db_provider.session_scope() as session:
                store = self.hit_store(session)
                runs = VerificationRunRepository(session)
                for source_name, result in results.items():
                    store.add_many(run_id, source_name, [hit.to_record() for hit in result.hits])
                runs.record_source_results(
                    run_id, {name: result.status.to_dict() for name, result in results.items()}
                )
                hits = store.list_by_run(run_id)
                outcome = score(
                    hits,
                    {name: result.status for name, result in results.items()},
                    policy,
                )
                runs.complete(
                    run_id,
                    decision=outcome.decision,
                    risk_score=outcome.score,
                    reason_codes=outcome.reason_codes,
                    scoring_breakdown=outcome.breakdown,
                )
        except Exception as e:
            self._fail_run(run_id, application_id, e)
            return

        record_run_finished(RunStatus.COMPLETED.value, outcome.decision.value)
        degraded = sorted(name for name, result in results.items() if result.degraded)
        logger.info(
            "Run %s completed: decision=%s score=%s reasons=%s degraded=%s",
            run_id, outcome.decision.value, outcome.score, outcome.reason_codes, degraded,
        )
        self._audit(AuditEvent(
            action=AuditAction.VERIFICATION_COMPLETED,
            resource_type=RESOURCE_TYPE,
            resource_id=str(run_id),
            actor_id=SYSTEM_ACTOR,
            details={
                'application_id': application_id,
                'policy_version': policy.version,
                'hit_count': len(hits),
                'degraded_sources': degraded,
            },
            new_value=outcome.to_dict(),
        ))
        self._transition_application(
            application_id,
            APPLICATION_STATUS_BY_DECISION[outcome.decision],
            f"Verification completed: {outcome.decision.value}",
        )
        self._notify(application_id, outcome.decision, run_id)

    def _fail_run(self, run_id: UUID, application_id: str, cause: Exception) -> None:
        error = cause
        if not isinstance(cause, OrchestrationError):
            error = OrchestrationError(str(cause) or type(cause).__name__)
        message = sanitize_for_logging(str(error))
        logger.error("Run %s failed: %s", run_id, message, exc_info=cause if cause.__traceback__ else None)
        try:
            with self.db_provider.session_scope() as session:
                VerificationRunRepository(session).fail(run_id, message)
        except Exception:
            logger.exception("Could not record failure of run %s", run_id)
            return
        record_run_finished(RunStatus.FAILED.value, None)
        self._audit(AuditEvent(
            action=AuditAction.VERIFICATION_FAILED,
            resource_type=RESOURCE_TYPE,
            resource_id=str(run_id),
            actor_id=SYSTEM_ACTOR,
            details={'application_id': application_id, 'error_code': error.code},
            success=False,
            error_message=message,
        ))

    # ============================================
    # RETRY
    # ============================================

    def retry(
        self,
        run_id: Union[str, UUID],
        actor_id: Optional[str] = None,
        ip_address: Optional[str] = None
    ) -> VerificationRun:
        """
        Reset a terminal run to queued and process it again.

        Deletes the run's hits and clears its outcome; the previous outcome
        is kept in the audit trail.

        Raises:
            NotFoundError: Unknown run
            ConflictError: Run is still active, or another run of the
                application became active
        """
        run_id = self._parse_run_id(run_id)
        try:
            with self.db_provider.session_scope() as session:
                runs = VerificationRunRepository(session)
                run = runs.get_by_id(run_id)
                if run is None:
                    raise NotFoundError(f"Verification run not found: {run_id}", field="run_id")
                if run.status in ACTIVE_RUN_STATUSES:
                    raise ConflictError(
                        f"Run {run_id} is {run.status.value}; only finished runs can be retried",
                        field="run_id",
                    )
                previous = _outcome_of(run)
                application_id = run.application_id

                deleted = self.hit_store(session).delete_by_run(run_id)
                if not runs.reset_for_retry(run_id):
                    raise ConflictError(f"Run {run_id} changed state during retry", field="run_id")
        except DuplicateEntityError:
            raise ConflictError(
                f"Another verification is active for application {application_id}",
                field="run_id",
            )

        record_run_started("retry")
        logger.info("Run %s reset for retry (%d hits deleted)", run_id, deleted)
        self._audit(AuditEvent(
            action=AuditAction.VERIFICATION_RETRIED,
            resource_type=RESOURCE_TYPE,
            resource_id=str(run_id),
            actor_id=actor_id,
            actor_ip=ip_address,
            details={'application_id': application_id, 'deleted_hits': deleted},
            old_value=previous,
            new_value={'status': RunStatus.QUEUED.value},
        ))
        self._submit(run_id)
        return self.get_run(run_id)

    # ============================================
    # QUERIES
    # ============================================

    def get_run(self, run_id: Union[str, UUID]) -> VerificationRun:
        """
        Raises:
            NotFoundError: Unknown run
        """
        run_id = self._parse_run_id(run_id)
        with self.db_provider.session_scope() as session:
            run = VerificationRunRepository(session).get_by_id(run_id)
        if run is None:
            raise NotFoundError(f"Verification run not found: {run_id}", field="run_id")
        return run

    def list_runs_by_application(self, application_id: str) -> List[VerificationRun]:
        application_id = self._validate_application_id(application_id)
        with self.db_provider.session_scope() as session:
            return VerificationRunRepository(session).list_by_application(application_id)

    def get_active_run(self, application_id: str) -> Optional[VerificationRun]:
        application_id = self._validate_application_id(application_id)
        with self.db_provider.session_scope() as session:
            return VerificationRunRepository(session).get_active(application_id)

    def list_hits(self, run_id: Union[str, UUID]) -> List[SourceHit]:
        """Hits of a run, highest match confidence first.

        Raises:
            NotFoundError: Unknown run
        """
        run_id = self._parse_run_id(run_id)
        with self.db_provider.session_scope() as session:
            if VerificationRunRepository(session).get_by_id(run_id) is None:
                raise NotFoundError(f"Verification run not found: {run_id}", field="run_id")
            return self.hit_store(session).list_by_run(run_id)

    # ============================================
    # RECOVERY AND SHUTDOWN
    # ============================================

    def resume_pending_runs(self) -> int:
        """
        Recover runs left behind by a previous process.

        in_progress runs older than stale_run_minutes are marked failed;
        queued runs are submitted again.

        Returns:
            Number of queued runs resubmitted
        """
        cutoff = utcnow() - timedelta(minutes=self.stale_run_minutes)
        with self.db_provider.session_scope() as session:
            runs = VerificationRunRepository(session)
            stale = [(run.id, run.application_id) for run in runs.list_stale_in_progress(cutoff)]
            queued = [run.id for run in runs.list_by_status(RunStatus.QUEUED)]

        for run_id, application_id in stale:
            self._fail_run(run_id, application_id, OrchestrationError("Run interrupted before completion"))
        for run_id in queued:
            self._submit(run_id)

        if stale or queued:
            logger.info("Recovered runs: %d stale failed, %d queued resubmitted", len(stale), len(queued))
        return len(queued)

    def shutdown(self, wait_for_runs: bool = True) -> None:
        self.executor.shutdown(wait_for_jobs=wait_for_runs)
        self._source_executor.shutdown(wait=False, cancel_futures=True)
