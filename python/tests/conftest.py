"""
Shared fixtures for the verification engine tests.

Tests run against a file-backed SQLite database so sessions can be used
from the worker threads that process runs.
"""

import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest
from sqlalchemy import create_engine

from config_manager import NotificationConfig, PolicyConfig, ScoringConfig
from database.connection import create_test_provider
from database.repositories import PolicyRepository
from verification.collaborators import (
    ApplicantSnapshot,
    AuditEvent,
    DocumentRef,
    InMemoryApplicationDirectory,
)
from verification.coordinator import VerificationCoordinator
from verification.policy import DatabasePolicySource, PolicyResolver, PolicySnapshot
from verification.sources import default_providers
from verification.worker import RunExecutor

# ICAO 9303 specimen with the expiry moved to 2034 (check digits recomputed)
MRZ_LINE1 = "P<UTOERIKSSON<<ANNA<MARIA<<<<<<<<<<<<<<<<<<<"
MRZ_LINE2 = "L898902C36UTO7408122F3404159ZE184226B<<<<<16"


def passport(mrz=(MRZ_LINE1, MRZ_LINE2), **data) -> DocumentRef:
    return DocumentRef(document_id="doc-passport", type="passport", data={'mrz': list(mrz), **data})


def selfie(**liveness) -> DocumentRef:
    return DocumentRef(
        document_id="doc-selfie",
        type="selfie",
        data={'liveness': liveness, 'face_encoding_generated': True},
    )


def make_applicant(application_id: str = "APP-1", first_name: str = "Alice", last_name: str = "Walker",
                   documents: Optional[List[DocumentRef]] = None, **kwargs) -> ApplicantSnapshot:
    return ApplicantSnapshot(
        application_id=application_id,
        first_name=first_name,
        last_name=last_name,
        passport_number=kwargs.pop('passport_number', "L898902C3"),
        destination_country=kwargs.pop('destination_country', "FR"),
        documents=[passport()] if documents is None else documents,
        **kwargs,
    )


class RecordingAuditSink:
    """Keeps audit events in memory."""

    def __init__(self):
        self._lock = threading.Lock()
        self.events: List[AuditEvent] = []

    def log(self, event: AuditEvent) -> None:
        with self._lock:
            self.events.append(event)

    def actions(self) -> List[str]:
        with self._lock:
            return [event.action.value for event in self.events]

    def of(self, action) -> List[AuditEvent]:
        with self._lock:
            return [event for event in self.events if event.action == action]


class RecordingNotifier:
    """Stands in for RetryingNotifier; can be told to fail."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: List[Dict[str, Any]] = []

    def notify(self, application_id: str, decision: str, run_id: str) -> bool:
        if self.fail:
            raise ConnectionError("notification service unavailable")
        self.sent.append({'application_id': application_id, 'decision': decision, 'run_id': run_id})
        return True


class ManualExecutor:
    """Collects submitted jobs; tests decide when they run."""

    pending = 0

    def __init__(self):
        self.jobs = []

    def submit(self, job, *args, label: str = ""):
        self.jobs.append((job, args))

    def run_all(self) -> None:
        while self.jobs:
            job, args = self.jobs.pop(0)
            job(*args)

    def shutdown(self, wait_for_jobs: bool = True) -> None:
        self.jobs.clear()


@pytest.fixture
def engine(tmp_path):
    """SQLite engine shared across threads."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'verification.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    yield engine
    engine.dispose()


@pytest.fixture
def db_provider(engine):
    """Initialized provider with every table created."""
    provider = create_test_provider(engine)
    provider.init()
    provider.create_tables()
    yield provider


@pytest.fixture
def scoring_config():
    return ScoringConfig()


@pytest.fixture
def default_policy(scoring_config):
    return PolicySnapshot.default(PolicyConfig(), scoring_config)


@pytest.fixture
def seeded_policy(db_provider):
    """The global policy installed by the initial migration."""
    with db_provider.session_scope() as session:
        PolicyRepository(session).create({
            'name': "Default Global Policy",
            'version': "1.0.0",
            'rules': {
                'sanctions': {'enabled': True, 'match_threshold': 80, 'weight': 70, 'potential_weight': 30},
                'pep': {'enabled': True, 'match_threshold': 80, 'weight': 40, 'potential_weight': 20},
                'documents': {'enabled': True, 'required_types': ['passport'], 'min_confidence': 70,
                              'weight': 25, 'low_confidence_weight': 15},
            },
            'thresholds': {'clear': {'max': 30}, 'review': {'min': 30, 'max': 59}, 'not_clear': {'min': 60}},
            'source_weights': {'sanctions': 0.4, 'pep': 0.3, 'documents': 0.3},
            'is_active': True,
            'destination_country': None,
            'effective_from': datetime.now(timezone.utc) - timedelta(days=1),
            'created_by': "system",
        })


@pytest.fixture
def policy_resolver(db_provider, scoring_config, default_policy):
    return PolicyResolver(DatabasePolicySource(db_provider, scoring_config), default_policy)


@pytest.fixture
def directory():
    return InMemoryApplicationDirectory()


@pytest.fixture
def audit():
    return RecordingAuditSink()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def notification_config():
    return NotificationConfig(retry_delays_seconds=[300, 1800, 7200], max_retries=3)


@pytest.fixture
def make_coordinator(db_provider, policy_resolver, directory, audit, notifier):
    """Factory for coordinators; shuts every one down after the test."""
    created = []

    def factory(providers=None, executor=None, **kwargs):
        coordinator = VerificationCoordinator(
            db_provider=db_provider,
            policy_resolver=kwargs.pop('policy_resolver', policy_resolver),
            providers=providers if providers is not None else default_providers(),
            applications=directory,
            applicants=directory,
            notifier=kwargs.pop('notifier', notifier),
            audit=audit,
            executor=executor or RunExecutor(pool_size=2),
            **kwargs,
        )
        created.append(coordinator)
        return coordinator

    yield factory
    for coordinator in created:
        coordinator.shutdown(wait_for_runs=True)
