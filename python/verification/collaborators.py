"""
Collaborators consumed by the verification engine.

The engine does not own applicants, applications, notifications or the
audit store. It talks to them through the protocols below; concrete
implementations cover the application service over HTTP, an in-memory
directory for local runs and tests, and the database audit trail.
"""

import logging
import threading
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional, Protocol

import requests

from database.connection import DatabaseSessionProvider
from database.models import AuditAction, normalize_name, normalize_document
from database.repositories import AuditRepository
from logging_setup import sanitize_for_logging
from verification.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

PAYMENT_COMPLETED = "payment_completed"

DECISION_TEXTS = {
    'clear': "Approved",
    'review': "Under Review",
    'not_clear': "Not Approved",
}


def decision_text(decision: str) -> str:
    """Applicant-facing wording of a decision"""
    return DECISION_TEXTS.get(decision, decision)


# ============================================
# SNAPSHOTS
# ============================================

@dataclass(frozen=True)
class DocumentRef:
    """A document uploaded for an application.

    data carries whatever the upload pipeline extracted (MRZ lines,
    liveness signals, etc.); the engine never reads the file itself.
    """
    document_id: str
    type: str
    is_verified: bool = True
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ApplicantSnapshot:
    """Read-only view of the applicant taken at the start of processing"""
    application_id: str
    first_name: str
    last_name: str
    middle_name: Optional[str] = None
    date_of_birth: Optional[str] = None
    nationality: Optional[str] = None
    passport_number: Optional[str] = None
    destination_country: Optional[str] = None
    documents: List[DocumentRef] = field(default_factory=list)

    @property
    def full_name(self) -> str:
        """Normalized "first last" used for name matching"""
        return normalize_name(f"{self.first_name} {self.last_name}")

    def query_terms(self) -> Dict[str, Any]:
        """Normalized input sent to watchlist sources"""
        return {
            'first_name': normalize_name(self.first_name),
            'last_name': normalize_name(self.last_name),
            'middle_name': normalize_name(self.middle_name) or None,
            'date_of_birth': self.date_of_birth,
            'nationality': self.nationality,
            'passport_number': normalize_document(self.passport_number) or None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ApplicantSnapshot':
        documents = [
            DocumentRef(
                document_id=str(doc.get('document_id') or doc.get('id', '')),
                type=str(doc.get('type', 'other')),
                is_verified=bool(doc.get('is_verified', True)),
                data=dict(doc.get('data') or {}),
            )
            for doc in data.get('documents') or []
        ]
        return cls(
            application_id=str(data['application_id']),
            first_name=data.get('first_name') or '',
            last_name=data.get('last_name') or '',
            middle_name=data.get('middle_name'),
            date_of_birth=data.get('date_of_birth'),
            nationality=data.get('nationality'),
            passport_number=data.get('passport_number'),
            destination_country=data.get('destination_country'),
            documents=documents,
        )


@dataclass(frozen=True)
class ApplicationInfo:
    """What the engine needs to know about an application at admission"""
    application_id: str
    status: str
    destination_country: Optional[str] = None


@dataclass
class AuditEvent:
    """One audit trail entry"""
    action: AuditAction
    resource_type: str
    resource_id: Optional[str] = None
    actor_id: Optional[str] = None
    actor_ip: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    old_value: Optional[Dict[str, Any]] = None
    new_value: Optional[Dict[str, Any]] = None
    success: bool = True
    error_message: Optional[str] = None


# ============================================
# PROTOCOLS
# ============================================

class ApplicationStatusGateway(Protocol):
    def require_payment_completed(self, application_id: str) -> ApplicationInfo:
        """Return the application or raise NotFoundError/ValidationError."""
        ...

    def transition(self, application_id: str, new_status: str, actor_id: str, reason: str) -> None:
        ...


class ApplicantGateway(Protocol):
    def snapshot(self, application_id: str) -> ApplicantSnapshot:
        ...


class NotificationGateway(Protocol):
    def notify_verification_complete(self, application_id: str, decision: str) -> None:
        ...


class AuditSink(Protocol):
    def log(self, event: AuditEvent) -> None:
        ...


# ============================================
# IN-MEMORY APPLICATION DIRECTORY
# ============================================

class InMemoryApplicationDirectory:
    """Application status and applicant lookups backed by dictionaries.

    Used for local runs without the application service, and by tests.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._applications: Dict[str, ApplicationInfo] = {}
        self._snapshots: Dict[str, ApplicantSnapshot] = {}
        self.transitions: List[tuple] = []

    def register(self, snapshot: ApplicantSnapshot, status: str = PAYMENT_COMPLETED) -> None:
        with self._lock:
            self._applications[snapshot.application_id] = ApplicationInfo(
                application_id=snapshot.application_id,
                status=status,
                destination_country=snapshot.destination_country,
            )
            self._snapshots[snapshot.application_id] = snapshot

    def status_of(self, application_id: str) -> Optional[str]:
        with self._lock:
            info = self._applications.get(application_id)
            return info.status if info else None

    def require_payment_completed(self, application_id: str) -> ApplicationInfo:
        with self._lock:
            info = self._applications.get(application_id)
        if info is None:
            raise NotFoundError(f"Application not found: {application_id}", field="application_id")
        if info.status != PAYMENT_COMPLETED:
            raise ValidationError(
                "Application must have completed payment before verification",
                field="application_id",
                suggestion=f"current status is '{info.status}'",
            )
        return info

    def transition(self, application_id: str, new_status: str, actor_id: str, reason: str) -> None:
        with self._lock:
            info = self._applications.get(application_id)
            if info is None:
                raise NotFoundError(f"Application not found: {application_id}", field="application_id")
            self._applications[application_id] = ApplicationInfo(
                application_id=application_id,
                status=new_status,
                destination_country=info.destination_country,
            )
            self.transitions.append((application_id, new_status, actor_id, reason))

    def snapshot(self, application_id: str) -> ApplicantSnapshot:
        with self._lock:
            snapshot = self._snapshots.get(application_id)
        if snapshot is None:
            raise NotFoundError(f"Applicant not found for application: {application_id}")
        return snapshot


# ============================================
# HTTP APPLICATION SERVICE CLIENT
# ============================================

class HttpApplicationGateway:
    """Application status and applicant snapshot over the application service API.

    Endpoints:
        GET  {base}/applications/{id}
        POST {base}/applications/{id}/status
        GET  {base}/applications/{id}/verification-snapshot
    """

    def __init__(self, base_url: str, timeout: float = 10.0, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()

    def _get(self, path: str) -> Dict[str, Any]:
        response = self.session.get(f"{self.base_url}{path}", timeout=self.timeout)
        if response.status_code == 404:
            raise NotFoundError(f"Not found: {path}")
        response.raise_for_status()
        return response.json()

    def require_payment_completed(self, application_id: str) -> ApplicationInfo:
        data = self._get(f"/applications/{application_id}")
        info = ApplicationInfo(
            application_id=str(data.get('id', application_id)),
            status=data.get('status', ''),
            destination_country=data.get('destination_country'),
        )
        if info.status != PAYMENT_COMPLETED:
            raise ValidationError(
                "Application must have completed payment before verification",
                field="application_id",
                suggestion=f"current status is '{info.status}'",
            )
        return info

    def transition(self, application_id: str, new_status: str, actor_id: str, reason: str) -> None:
        response = self.session.post(
            f"{self.base_url}/applications/{application_id}/status",
            json={'status': new_status, 'actor_id': actor_id, 'reason': reason},
            timeout=self.timeout,
        )
        response.raise_for_status()

    def snapshot(self, application_id: str) -> ApplicantSnapshot:
        data = self._get(f"/applications/{application_id}/verification-snapshot")
        data.setdefault('application_id', application_id)
        return ApplicantSnapshot.from_dict(data)


# ============================================
# NOTIFICATION GATEWAYS
# ============================================

class HttpNotificationGateway:
    """Posts completion notices to the notification service."""

    def __init__(self, base_url: str, timeout: float = 10.0, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()

    def notify_verification_complete(self, application_id: str, decision: str) -> None:
        response = self.session.post(
            f"{self.base_url}/notifications/verification-complete",
            json={
                'application_id': application_id,
                'decision': decision,
                'decision_text': decision_text(decision),
            },
            timeout=self.timeout,
        )
        response.raise_for_status()


class LogOnlyNotificationGateway:
    """Writes completion notices to the log when no notification service is configured."""

    def notify_verification_complete(self, application_id: str, decision: str) -> None:
        logger.info(
            "Verification complete: application=%s decision=%s (%s)",
            sanitize_for_logging(application_id), decision, decision_text(decision),
        )


# ============================================
# AUDIT
# ============================================

class DatabaseAuditSink:
    """Writes audit events to the audit_logs table in their own transaction."""

    def __init__(self, db_provider: DatabaseSessionProvider):
        self.db_provider = db_provider

    def log(self, event: AuditEvent) -> None:
        with self.db_provider.session_scope() as session:
            AuditRepository(session).log(**asdict(event))
