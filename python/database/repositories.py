"""
Repository Pattern for Verification Engine Database Operations

Provides clean data access layer with proper typing and error handling.
Repositories flush but never commit; transaction boundaries belong to the
caller (DatabaseSessionProvider.session_scope).
"""

import logging
from typing import List, Optional, Dict, Any, Tuple, Iterable
from uuid import UUID
from datetime import datetime

from sqlalchemy import select, func, update, delete, and_, or_, case
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError

from database.models import (
    VerificationRun,
    SourceHit,
    Policy,
    AuditLog,
    ScheduledTask,
    RunStatus,
    Decision,
    AuditAction,
    TaskStatus,
    ACTIVE_RUN_STATUSES,
    RETRYABLE_RUN_STATUSES,
    utcnow,
)
from database.monitoring import timed_query

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Base exception for repository errors."""
    pass


class EntityNotFoundError(RepositoryError):
    """Raised when an entity is not found."""
    pass


class DuplicateEntityError(RepositoryError):
    """Raised when attempting to create a duplicate entity."""
    pass


# ============================================
# VERIFICATION RUN REPOSITORY
# ============================================

class VerificationRunRepository:
    """Repository for verification run operations."""

    def __init__(self, session: Session):
        self.session = session

    def create(self, application_id: str, policy_version: str,
               policy_id: Optional[UUID] = None) -> VerificationRun:
        """
        Insert a new queued run.

        Args:
            application_id: Application under verification
            policy_version: Policy version pinned for the run's lifetime
            policy_id: Stored policy pinned for the run, None for the configured default

        Returns:
            Created VerificationRun

        Raises:
            DuplicateEntityError: If the application already has an active run
        """
        run = VerificationRun(
            application_id=application_id,
            status=RunStatus.QUEUED,
            policy_version=policy_version,
            policy_id=policy_id,
            reason_codes=[],
            source_results={},
            scoring_breakdown={},
        )
        try:
            self.session.add(run)
            self.session.flush()
        except IntegrityError as e:
            self.session.rollback()
            raise DuplicateEntityError(
                f"Application {application_id} already has an active run: {e.orig}"
            )

        logger.debug(f"Created verification run: {run.id} (application {application_id})")
        return run

    @timed_query("run_get_by_id")
    def get_by_id(self, run_id: UUID) -> Optional[VerificationRun]:
        """Get run by ID."""
        query = select(VerificationRun).where(VerificationRun.id == run_id)
        return self.session.execute(query).scalar_one_or_none()

    def require(self, run_id: UUID) -> VerificationRun:
        """Get run by ID or raise EntityNotFoundError."""
        run = self.get_by_id(run_id)
        if run is None:
            raise EntityNotFoundError(f"Verification run not found: {run_id}")
        return run

    @timed_query("run_list_by_application")
    def list_by_application(self, application_id: str) -> List[VerificationRun]:
        """List all runs for an application, newest first."""
        query = select(VerificationRun).where(
            VerificationRun.application_id == application_id
        ).order_by(VerificationRun.created_at.desc())
        return list(self.session.execute(query).scalars().all())

    def get_active(self, application_id: str) -> Optional[VerificationRun]:
        """Get the queued or in_progress run of an application, if any."""
        query = select(VerificationRun).where(
            and_(
                VerificationRun.application_id == application_id,
                VerificationRun.status.in_(ACTIVE_RUN_STATUSES)
            )
        )
        return self.session.execute(query).scalars().first()

    def list_by_status(self, status: RunStatus) -> List[VerificationRun]:
        """List runs in a given status, oldest first."""
        query = select(VerificationRun).where(
            VerificationRun.status == status
        ).order_by(VerificationRun.created_at)
        return list(self.session.execute(query).scalars().all())

    def list_stale_in_progress(self, started_before: datetime) -> List[VerificationRun]:
        """List in_progress runs that started before the given instant."""
        query = select(VerificationRun).where(
            and_(
                VerificationRun.status == RunStatus.IN_PROGRESS,
                or_(
                    VerificationRun.started_at.is_(None),
                    VerificationRun.started_at < started_before
                )
            )
        )
        return list(self.session.execute(query).scalars().all())

    def claim(self, run_id: UUID) -> bool:
        """
        Move a run from queued to in_progress.

        Conditional update; only one caller can win the transition.

        Returns:
            True if this caller claimed the run
        """
        result = self.session.execute(
            update(VerificationRun)
            .where(
                and_(
                    VerificationRun.id == run_id,
                    VerificationRun.status == RunStatus.QUEUED
                )
            )
            .values(status=RunStatus.IN_PROGRESS, started_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def record_source_results(self, run_id: UUID, results: Dict[str, Dict[str, Any]]) -> VerificationRun:
        """
        Merge per-source status payloads into the run's source_results.

        Args:
            run_id: UUID of the run
            results: source name -> status payload

        Returns:
            Updated run
        """
        run = self.require(run_id)
        merged = dict(run.source_results or {})
        merged.update(results)
        run.source_results = merged
        self.session.flush()
        return run

    def complete(
        self,
        run_id: UUID,
        decision: Decision,
        risk_score: float,
        reason_codes: List[str],
        scoring_breakdown: Dict[str, Any]
    ) -> VerificationRun:
        """
        Persist the scored outcome and mark the run completed.

        Raises:
            EntityNotFoundError: If run not found
        """
        run = self.require(run_id)
        run.status = RunStatus.COMPLETED
        run.decision = decision
        run.risk_score = risk_score
        run.reason_codes = list(reason_codes)
        run.scoring_breakdown = dict(scoring_breakdown)
        run.completed_at = utcnow()
        run.error_message = None
        self.session.flush()
        return run

    def fail(self, run_id: UUID, error_message: str) -> Optional[VerificationRun]:
        """
        Mark a run failed. A failed run carries no decision.

        Returns:
            Updated run, or None if the run no longer exists
        """
        run = self.get_by_id(run_id)
        if run is None:
            return None
        run.status = RunStatus.FAILED
        run.decision = None
        run.risk_score = None
        run.completed_at = utcnow()
        run.error_message = error_message
        self.session.flush()
        return run

    def reset_for_retry(self, run_id: UUID) -> bool:
        """
        Reset a terminal run back to queued.

        Conditional on the run being failed, completed or cancelled.

        Returns:
            True if the run was reset, False if it is not in a retryable state

        Raises:
            DuplicateEntityError: If another run of the application is active
        """
        try:
            result = self.session.execute(
                update(VerificationRun)
                .where(
                    and_(
                        VerificationRun.id == run_id,
                        VerificationRun.status.in_(RETRYABLE_RUN_STATUSES)
                    )
                )
                .values(
                    status=RunStatus.QUEUED,
                    decision=None,
                    risk_score=None,
                    reason_codes=[],
                    source_results={},
                    scoring_breakdown={},
                    started_at=None,
                    completed_at=None,
                    error_message=None,
                )
                .execution_options(synchronize_session=False)
            )
        except IntegrityError as e:
            self.session.rollback()
            raise DuplicateEntityError(f"Another run is active for run {run_id}'s application: {e.orig}")
        return result.rowcount == 1

    def count_by_status(self) -> Dict[str, int]:
        """Number of runs per status."""
        query = select(VerificationRun.status, func.count()).group_by(VerificationRun.status)
        return {row[0].value: row[1] for row in self.session.execute(query)}


# ============================================
# SOURCE HIT REPOSITORY
# ============================================

class SourceHitRepository:
    """
    Source Hit Store: persists and retrieves hits tied to a run.

    Hits are append-only within a run; the only removal is the
    whole-run wipe performed before a retry.
    """

    HIT_FIELDS = (
        'source_type', 'query_terms', 'match_confidence', 'match_type',
        'severity', 'record_data', 'record_url', 'jurisdiction',
        'record_date', 'hit_metadata',
    )

    def __init__(self, session: Session):
        self.session = session

    def add(self, run_id: UUID, source_name: str, hit_data: Dict[str, Any]) -> SourceHit:
        """
        Persist one hit.

        Args:
            run_id: Owning run
            source_name: Name of the source that produced the hit
            hit_data: Hit fields (see HIT_FIELDS)

        Returns:
            Created SourceHit
        """
        values = {key: hit_data[key] for key in self.HIT_FIELDS if hit_data.get(key) is not None}
        hit = SourceHit(verification_run_id=run_id, source_name=source_name, **values)
        self.session.add(hit)
        self.session.flush()
        return hit

    def add_many(self, run_id: UUID, source_name: str, hits: Iterable[Dict[str, Any]]) -> List[SourceHit]:
        """Persist several hits from the same source."""
        return [self.add(run_id, source_name, hit_data) for hit_data in hits]

    @timed_query("hit_list_by_run")
    def list_by_run(self, run_id: UUID) -> List[SourceHit]:
        """List hits of a run, highest match confidence first."""
        query = select(SourceHit).where(
            SourceHit.verification_run_id == run_id
        ).order_by(SourceHit.match_confidence.desc(), SourceHit.source_name)
        return list(self.session.execute(query).scalars().all())

    def delete_by_run(self, run_id: UUID) -> int:
        """
        Delete every hit owned by a run.

        Returns:
            Number of deleted hits
        """
        result = self.session.execute(
            delete(SourceHit)
            .where(SourceHit.verification_run_id == run_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount


# ============================================
# POLICY REPOSITORY
# ============================================

class PolicyRepository:
    """Repository for scoring policies."""

    def __init__(self, session: Session):
        self.session = session

    def create(self, policy_data: Dict[str, Any]) -> Policy:
        """
        Create a new policy.

        Raises:
            DuplicateEntityError: If name/version already exists
        """
        try:
            policy = Policy(**policy_data)
            self.session.add(policy)
            self.session.flush()
            return policy
        except IntegrityError as e:
            self.session.rollback()
            raise DuplicateEntityError(f"Policy already exists: {e.orig}")

    @staticmethod
    def _effective_at(at: datetime):
        return and_(
            Policy.is_active == True,
            Policy.effective_from <= at,
            or_(Policy.effective_until.is_(None), Policy.effective_until > at)
        )

    @timed_query("policy_find_active")
    def find_active(self, destination_country: Optional[str], at: datetime) -> Optional[Policy]:
        """
        Find the policy in effect at an instant.

        Destination-specific policies win over global ones; ties break on
        the most recent effective_from.
        """
        conditions = [self._effective_at(at)]
        ordering = []
        if destination_country:
            conditions.append(
                or_(Policy.destination_country == destination_country,
                    Policy.destination_country.is_(None))
            )
            # destination match sorts before global
            ordering.append(case((Policy.destination_country.is_(None), 1), else_=0))
        else:
            conditions.append(Policy.destination_country.is_(None))
        ordering.append(Policy.effective_from.desc())

        query = select(Policy).where(and_(*conditions)).order_by(*ordering).limit(1)
        return self.session.execute(query).scalars().first()

    @timed_query("policy_get_by_id")
    def get_by_id(self, policy_id: UUID) -> Optional[Policy]:
        """Get policy by ID, whether or not it is still active."""
        query = select(Policy).where(Policy.id == policy_id)
        return self.session.execute(query).scalar_one_or_none()


# ============================================
# AUDIT REPOSITORY
# ============================================

class AuditRepository:
    """Repository for audit log operations."""

    def __init__(self, session: Session):
        self.session = session

    def log(
        self,
        action: AuditAction,
        resource_type: str,
        resource_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        actor_ip: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        old_value: Optional[Dict[str, Any]] = None,
        new_value: Optional[Dict[str, Any]] = None,
        success: bool = True,
        error_message: Optional[str] = None
    ) -> AuditLog:
        """
        Create an audit log entry.

        Args:
            action: Type of action
            resource_type: Type of resource affected
            resource_id: ID of resource
            actor_*: Actor information
            details: Additional details
            old_value: Value before change
            new_value: Value after change
            success: Whether action succeeded
            error_message: Error if failed

        Returns:
            Created AuditLog
        """
        log = AuditLog(
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            actor_id=actor_id,
            actor_ip=actor_ip,
            details=details,
            old_value=old_value,
            new_value=new_value,
            success=success,
            error_message=error_message
        )

        self.session.add(log)
        self.session.flush()
        return log

    def search(
        self,
        action: Optional[AuditAction] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        offset: int = 0,
        limit: int = 100
    ) -> Tuple[List[AuditLog], int]:
        """
        Search audit logs with filters.

        Returns:
            Tuple of (logs list, total count)
        """
        conditions = []

        if action:
            conditions.append(AuditLog.action == action)
        if resource_type:
            conditions.append(AuditLog.resource_type == resource_type)
        if resource_id:
            conditions.append(AuditLog.resource_id == resource_id)
        if actor_id:
            conditions.append(AuditLog.actor_id == actor_id)
        if start_date:
            conditions.append(AuditLog.timestamp >= start_date)
        if end_date:
            conditions.append(AuditLog.timestamp <= end_date)

        count_query = select(func.count()).select_from(AuditLog)
        if conditions:
            count_query = count_query.where(and_(*conditions))
        total = self.session.execute(count_query).scalar_one()

        query = select(AuditLog)
        if conditions:
            query = query.where(and_(*conditions))
        query = query.order_by(AuditLog.timestamp.desc()).offset(offset).limit(limit)

        logs = list(self.session.execute(query).scalars().all())
        return logs, total


# ============================================
# SCHEDULED TASK REPOSITORY
# ============================================

class ScheduledTaskRepository:
    """Repository for durable delayed tasks."""

    def __init__(self, session: Session):
        self.session = session

    def schedule(self, task_type: str, payload: Dict[str, Any], run_at: datetime) -> ScheduledTask:
        """Insert a pending task due at run_at."""
        task = ScheduledTask(
            task_type=task_type,
            payload=payload,
            status=TaskStatus.PENDING,
            run_at=run_at,
            attempts=0
        )
        self.session.add(task)
        self.session.flush()
        return task

    def get_by_id(self, task_id: UUID) -> Optional[ScheduledTask]:
        """Get task by ID."""
        return self.session.get(ScheduledTask, task_id)

    def list_due(self, now: datetime, limit: int = 50) -> List[ScheduledTask]:
        """Pending tasks whose run_at has passed, earliest first."""
        query = select(ScheduledTask).where(
            and_(
                ScheduledTask.status == TaskStatus.PENDING,
                ScheduledTask.run_at <= now
            )
        ).order_by(ScheduledTask.run_at).limit(limit)
        return list(self.session.execute(query).scalars().all())

    def claim(self, task_id: UUID) -> bool:
        """
        Move a task from pending to running.

        Returns:
            True if this caller claimed the task
        """
        result = self.session.execute(
            update(ScheduledTask)
            .where(
                and_(
                    ScheduledTask.id == task_id,
                    ScheduledTask.status == TaskStatus.PENDING
                )
            )
            .values(status=TaskStatus.RUNNING, attempts=ScheduledTask.attempts + 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def complete(self, task_id: UUID) -> None:
        """Mark a task completed."""
        self.session.execute(
            update(ScheduledTask)
            .where(ScheduledTask.id == task_id)
            .values(status=TaskStatus.COMPLETED, completed_at=utcnow(), last_error=None)
            .execution_options(synchronize_session=False)
        )

    def fail(self, task_id: UUID, error_message: str) -> None:
        """Mark a task failed."""
        self.session.execute(
            update(ScheduledTask)
            .where(ScheduledTask.id == task_id)
            .values(status=TaskStatus.FAILED, completed_at=utcnow(), last_error=error_message)
            .execution_options(synchronize_session=False)
        )

    def list_by_status(self, status: TaskStatus) -> List[ScheduledTask]:
        """List tasks in a given status, earliest due first."""
        query = select(ScheduledTask).where(
            ScheduledTask.status == status
        ).order_by(ScheduledTask.run_at)
        return list(self.session.execute(query).scalars().all())

    def requeue_running(self) -> int:
        """
        Return tasks left running by a crashed process to pending.

        Returns:
            Number of requeued tasks
        """
        result = self.session.execute(
            update(ScheduledTask)
            .where(ScheduledTask.status == TaskStatus.RUNNING)
            .values(status=TaskStatus.PENDING)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount
