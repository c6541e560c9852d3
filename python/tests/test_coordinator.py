"""
Tests for the run coordinator: admission, processing, failure isolation,
retry and recovery.
"""

import threading
import time
from datetime import timedelta

import pytest
from sqlalchemy import update

from database.models import AuditAction, Decision, RunStatus, VerificationRun, utcnow
from database.repositories import PolicyRepository, SourceHitRepository, VerificationRunRepository
from verification.errors import ConflictError, NotFoundError, ValidationError
from verification.policy import DatabasePolicySource, PolicyResolver
from verification.scoring import (
    DOCUMENT_VERIFICATION_FAILED,
    POTENTIAL_PEP_MATCH,
    SANCTIONS_MATCH,
)
from verification.sources import DocumentProvider, PepProvider, SanctionsProvider
from verification.sources.base import SourceCheckProvider

from conftest import ManualExecutor, RecordingNotifier, make_applicant, passport


class ExplodingProvider(SourceCheckProvider):
    """Raises on every call."""

    def __init__(self, name):
        self.name = name

    def check(self, snapshot):
        raise ConnectionError(f"{self.name} backend unreachable")


class BlockingProvider(SourceCheckProvider):
    """Blocks until released."""

    def __init__(self, name, release: threading.Event):
        self.name = name
        self.release = release

    def check(self, snapshot):
        self.release.wait(10)
        raise RuntimeError("released too late")


class BrokenPolicySource:
    """Policy store that is reachable at admission but not when pinning."""

    def __init__(self, source):
        self.source = source

    def find_active(self, destination_country, at):
        return self.source.find_active(destination_country, at)

    def find_by_id(self, policy_id):
        raise RuntimeError("policy store unavailable")


class SlowProvider(SourceCheckProvider):
    """Delegates to another provider after a delay."""

    def __init__(self, inner, delay):
        self.inner = inner
        self.name = inner.name
        self.delay = delay

    def check(self, snapshot):
        time.sleep(self.delay)
        return self.inner.check(snapshot)


def reference_providers():
    return [SanctionsProvider(), PepProvider(), DocumentProvider()]


def finish(coordinator) -> None:
    assert coordinator.executor.wait_idle(timeout=30)


# ============================================
# START AND PROCESS
# ============================================

class TestStartAndProcess:
    """Happy paths through start() and process()."""

    def test_clean_applicant_is_cleared(self, make_coordinator, directory, audit, notifier):
        directory.register(make_applicant("APP-1"))
        coordinator = make_coordinator(reference_providers())

        run = coordinator.start("APP-1", actor_id="agent-7")
        assert run.status == RunStatus.QUEUED
        assert run.policy_version == "1.0.0"
        finish(coordinator)

        run = coordinator.get_run(run.id)
        assert run.status == RunStatus.COMPLETED
        assert run.decision == Decision.CLEAR
        assert run.risk_score == 0
        assert run.reason_codes == []
        assert set(run.source_results) == {'sanctions', 'pep', 'documents'}
        assert run.started_at is not None and run.completed_at is not None
        assert coordinator.list_hits(run.id) == []

        assert audit.actions() == ['verification_started', 'verification_completed']
        assert audit.of(AuditAction.VERIFICATION_STARTED)[0].actor_id == "agent-7"
        assert [t[1] for t in directory.transitions] == ['in_progress', 'clear']
        assert notifier.sent == [{'application_id': "APP-1", 'decision': 'clear', 'run_id': str(run.id)}]

    def test_listed_applicant_is_not_cleared(self, make_coordinator, directory):
        directory.register(make_applicant("APP-2", first_name="John", last_name="Smith"))
        coordinator = make_coordinator(reference_providers())

        run = coordinator.start("APP-2")
        finish(coordinator)

        run = coordinator.get_run(run.id)
        assert run.decision == Decision.NOT_CLEAR
        assert run.reason_codes == [SANCTIONS_MATCH, POTENTIAL_PEP_MATCH]
        assert run.scoring_breakdown['total'] == 90
        assert directory.status_of("APP-2") == "not_clear"

        hits = coordinator.list_hits(run.id)
        assert [(hit.source_name, hit.match_confidence) for hit in hits] == [('sanctions', 100), ('pep', 40)]
        assert hits[0].hit_metadata['list_type'] == "SDN"

    def test_missing_passport_fails_documents_only(self, make_coordinator, directory):
        directory.register(make_applicant("APP-3", documents=[]))
        coordinator = make_coordinator(reference_providers())

        run = coordinator.start("APP-3")
        finish(coordinator)

        run = coordinator.get_run(run.id)
        assert run.risk_score == 25
        assert run.decision == Decision.CLEAR
        assert run.reason_codes == [DOCUMENT_VERIFICATION_FAILED]
        assert run.source_results['documents']['overall_status'] == 'missing_documents'

    def test_queries(self, make_coordinator, directory):
        directory.register(make_applicant("APP-4"))
        coordinator = make_coordinator(reference_providers(), executor=ManualExecutor())

        run = coordinator.start("APP-4")
        assert coordinator.get_active_run("APP-4").id == run.id
        assert [r.id for r in coordinator.list_runs_by_application("APP-4")] == [run.id]

        coordinator.executor.run_all()
        assert coordinator.get_active_run("APP-4") is None

    def test_process_skips_runs_that_are_not_queued(self, make_coordinator, directory, audit):
        directory.register(make_applicant("APP-5"))
        coordinator = make_coordinator(reference_providers(), executor=ManualExecutor())
        run = coordinator.start("APP-5")
        coordinator.executor.run_all()

        coordinator.process(run.id)

        assert audit.actions().count('verification_completed') == 1


class TestAdmission:
    """start() rejects what it cannot run."""

    def test_unknown_application(self, make_coordinator):
        with pytest.raises(NotFoundError):
            make_coordinator(executor=ManualExecutor()).start("NOPE")

    def test_unpaid_application(self, make_coordinator, directory):
        directory.register(make_applicant("APP-6"), status="submitted")
        with pytest.raises(ValidationError):
            make_coordinator(executor=ManualExecutor()).start("APP-6")

    @pytest.mark.parametrize("application_id", [None, "", "   ", "X" * 65])
    def test_bad_application_id(self, make_coordinator, application_id):
        with pytest.raises(ValidationError):
            make_coordinator(executor=ManualExecutor()).start(application_id)

    def test_second_start_conflicts(self, make_coordinator, directory):
        directory.register(make_applicant("APP-7"))
        coordinator = make_coordinator(executor=ManualExecutor())
        coordinator.start("APP-7")

        with pytest.raises(ConflictError):
            coordinator.start("APP-7")

    def test_concurrent_starts_admit_one_run(self, make_coordinator, directory):
        directory.register(make_applicant("APP-8"))
        coordinator = make_coordinator(executor=ManualExecutor())
        barrier = threading.Barrier(4)
        outcomes = []
        lock = threading.Lock()

        def attempt():
            barrier.wait()
            try:
                coordinator.start("APP-8")
                result = 'started'
            except ConflictError:
                result = 'conflict'
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=attempt) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(30)

        assert sorted(outcomes) == ['conflict', 'conflict', 'conflict', 'started']
        assert len(coordinator.list_runs_by_application("APP-8")) == 1

    def test_new_run_allowed_after_completion(self, make_coordinator, directory):
        directory.register(make_applicant("APP-9"))
        coordinator = make_coordinator(reference_providers(), executor=ManualExecutor())
        first = coordinator.start("APP-9")
        coordinator.executor.run_all()

        directory.register(make_applicant("APP-9"))
        second = coordinator.start("APP-9")

        assert second.id != first.id
        assert len(coordinator.list_runs_by_application("APP-9")) == 2

    def test_provider_names_must_be_unique(self, make_coordinator):
        with pytest.raises(ValueError):
            make_coordinator([SanctionsProvider(), SanctionsProvider()])


# ============================================
# FAILURE ISOLATION
# ============================================

class TestFailureIsolation:
    """Degraded sources versus failed runs."""

    def test_raising_provider_is_degraded(self, make_coordinator, directory):
        directory.register(make_applicant("APP-10"))
        coordinator = make_coordinator([SanctionsProvider(), ExplodingProvider("pep"), DocumentProvider()])

        run = coordinator.start("APP-10")
        finish(coordinator)

        run = coordinator.get_run(run.id)
        assert run.status == RunStatus.COMPLETED
        assert run.decision == Decision.CLEAR
        assert run.source_results['pep']['kind'] == 'degraded'
        assert run.source_results['pep']['reason'] == 'error'
        assert "unreachable" in run.source_results['pep']['error']
        assert run.source_results['sanctions']['kind'] == 'watchlist'

    def test_degraded_documents_count_as_failed(self, make_coordinator, directory):
        directory.register(make_applicant("APP-11"))
        coordinator = make_coordinator([SanctionsProvider(), PepProvider(), ExplodingProvider("documents")])

        run = coordinator.start("APP-11")
        finish(coordinator)

        run = coordinator.get_run(run.id)
        assert run.reason_codes == [DOCUMENT_VERIFICATION_FAILED]
        assert run.source_results['documents']['verified'] is False

    def test_slow_provider_times_out(self, make_coordinator, directory, audit):
        directory.register(make_applicant("APP-12"))
        release = threading.Event()
        coordinator = make_coordinator(
            [SanctionsProvider(), BlockingProvider("pep", release), DocumentProvider()],
            provider_timeout_seconds=0.2,
        )
        try:
            run = coordinator.start("APP-12")
            finish(coordinator)
        finally:
            release.set()

        run = coordinator.get_run(run.id)
        assert run.status == RunStatus.COMPLETED
        assert run.source_results['pep']['kind'] == 'degraded'
        assert run.source_results['pep']['reason'] == 'timeout'
        completed = audit.of(AuditAction.VERIFICATION_COMPLETED)[0]
        assert completed.details['degraded_sources'] == ['pep']

    def test_timeout_counts_from_slot_not_queue(self, make_coordinator, directory):
        directory.register(make_applicant("APP-16", first_name="John", last_name="Smith"))
        coordinator = make_coordinator(
            [SlowProvider(PepProvider(), 0.3), SanctionsProvider(), DocumentProvider()],
            provider_timeout_seconds=0.2,
            max_concurrent_source_calls=1,
        )

        run = coordinator.start("APP-16")
        finish(coordinator)

        run = coordinator.get_run(run.id)
        assert run.status == RunStatus.COMPLETED
        assert run.source_results['pep']['reason'] == 'timeout'
        assert run.source_results['sanctions']['kind'] == 'watchlist'
        assert run.source_results['documents']['kind'] == 'documents'
        assert run.reason_codes == [SANCTIONS_MATCH]
        assert run.decision == Decision.NOT_CLEAR

    def test_call_that_never_gets_a_slot_fails_run(self, make_coordinator, directory, audit, notifier):
        directory.register(make_applicant("APP-17", first_name="John", last_name="Smith"))
        release = threading.Event()
        coordinator = make_coordinator(
            [BlockingProvider("pep", release), SanctionsProvider(), DocumentProvider()],
            provider_timeout_seconds=5,
            max_concurrent_source_calls=1,
            source_queue_timeout_seconds=0.2,
        )
        try:
            run = coordinator.start("APP-17")
            finish(coordinator)
        finally:
            release.set()

        run = coordinator.get_run(run.id)
        assert run.status == RunStatus.FAILED
        assert run.decision is None
        assert "no call slot" in run.error_message
        assert audit.of(AuditAction.VERIFICATION_FAILED)[0].details['error_code'] == 'ORCHESTRATION_ERROR'
        assert notifier.sent == []

    def test_policy_failure_fails_run(self, make_coordinator, directory, audit, default_policy, notifier,
                                      db_provider, scoring_config, seeded_policy):
        directory.register(make_applicant("APP-13"))
        source = BrokenPolicySource(DatabasePolicySource(db_provider, scoring_config))
        resolver = PolicyResolver(source, default_policy)
        coordinator = make_coordinator(reference_providers(), policy_resolver=resolver)

        run = coordinator.start("APP-13")
        finish(coordinator)

        run = coordinator.get_run(run.id)
        assert run.status == RunStatus.FAILED
        assert run.decision is None
        assert "policy store unavailable" in run.error_message
        failed = audit.of(AuditAction.VERIFICATION_FAILED)[0]
        assert failed.success is False
        assert failed.details['error_code'] == 'ORCHESTRATION_ERROR'
        assert notifier.sent == []

    def test_missing_applicant_fails_run(self, make_coordinator, directory):
        directory.register(make_applicant("APP-14"))
        coordinator = make_coordinator(reference_providers(), executor=ManualExecutor())
        run = coordinator.start("APP-14")
        directory._snapshots.clear()

        coordinator.executor.run_all()

        assert coordinator.get_run(run.id).status == RunStatus.FAILED

    def test_notification_failure_is_best_effort(self, make_coordinator, directory):
        directory.register(make_applicant("APP-15"))
        coordinator = make_coordinator(reference_providers(), notifier=RecordingNotifier(fail=True))

        run = coordinator.start("APP-15")
        finish(coordinator)

        run = coordinator.get_run(run.id)
        assert run.status == RunStatus.COMPLETED
        assert directory.status_of("APP-15") == "clear"


# ============================================
# RETRY
# ============================================

class TestRetry:
    """Retry resets a finished run and processes it again."""

    def test_retry_completed_run(self, make_coordinator, directory, audit, db_provider):
        directory.register(make_applicant("APP-20", first_name="John", last_name="Smith"))
        coordinator = make_coordinator(reference_providers(), executor=ManualExecutor())
        run = coordinator.start("APP-20")
        coordinator.executor.run_all()
        assert len(coordinator.list_hits(run.id)) == 2

        retried = coordinator.retry(run.id, actor_id="agent-1")

        assert retried.id == run.id
        assert retried.status == RunStatus.QUEUED
        assert retried.decision is None
        assert retried.risk_score is None
        assert retried.source_results == {}
        assert coordinator.list_hits(run.id) == []

        event = audit.of(AuditAction.VERIFICATION_RETRIED)[0]
        assert event.old_value['decision'] == 'not_clear'
        assert event.old_value['reason_codes'] == [SANCTIONS_MATCH, POTENTIAL_PEP_MATCH]
        assert event.details['deleted_hits'] == 2
        assert event.actor_id == "agent-1"

        coordinator.executor.run_all()
        run = coordinator.get_run(run.id)
        assert run.status == RunStatus.COMPLETED
        assert run.decision == Decision.NOT_CLEAR
        assert len(coordinator.list_hits(run.id)) == 2

    def test_retry_failed_run(self, make_coordinator, directory, default_policy, db_provider, scoring_config):
        directory.register(make_applicant("APP-21"))
        resolver = PolicyResolver(BrokenPolicySource(DatabasePolicySource(db_provider, scoring_config)), default_policy)
        broken = make_coordinator(reference_providers(), policy_resolver=resolver, executor=ManualExecutor())
        run = broken.start("APP-21")
        broken.executor.run_all()
        assert broken.get_run(run.id).status == RunStatus.FAILED

        healthy = make_coordinator(reference_providers(), executor=ManualExecutor())
        healthy.retry(run.id)
        healthy.executor.run_all()

        run = healthy.get_run(run.id)
        assert run.status == RunStatus.COMPLETED
        assert run.error_message is None

    def test_retry_active_run_conflicts(self, make_coordinator, directory):
        directory.register(make_applicant("APP-22"))
        coordinator = make_coordinator(executor=ManualExecutor())
        run = coordinator.start("APP-22")

        with pytest.raises(ConflictError):
            coordinator.retry(run.id)

    def test_retry_when_application_has_another_active_run(self, make_coordinator, directory):
        directory.register(make_applicant("APP-23", first_name="John", last_name="Smith"))
        coordinator = make_coordinator(reference_providers(), executor=ManualExecutor())
        first = coordinator.start("APP-23")
        coordinator.executor.run_all()
        directory.register(make_applicant("APP-23", first_name="John", last_name="Smith"))
        coordinator.start("APP-23")

        with pytest.raises(ConflictError):
            coordinator.retry(first.id)

        first = coordinator.get_run(first.id)
        assert first.status == RunStatus.COMPLETED
        assert len(coordinator.list_hits(first.id)) == 2

    def test_retry_unknown_run(self, make_coordinator):
        with pytest.raises(NotFoundError):
            make_coordinator(executor=ManualExecutor()).retry("00000000-0000-0000-0000-000000000000")

    def test_retry_malformed_id(self, make_coordinator):
        with pytest.raises(ValidationError):
            make_coordinator(executor=ManualExecutor()).retry("not-a-uuid")


# ============================================
# RECOVERY
# ============================================

class TestRecovery:
    """Startup recovery of runs left by a previous process."""

    def test_resume_pending_runs(self, make_coordinator, db_provider, audit):
        with db_provider.session_scope() as session:
            runs = VerificationRunRepository(session)
            queued = runs.create("APP-30", "1.0.0")
            stale = runs.create("APP-31", "1.0.0")
            runs.claim(stale.id)
            session.execute(
                update(VerificationRun)
                .where(VerificationRun.id == stale.id)
                .values(started_at=utcnow() - timedelta(hours=3))
            )

        coordinator = make_coordinator(executor=ManualExecutor())
        resumed = coordinator.resume_pending_runs()

        assert resumed == 1
        assert [args for _, args in coordinator.executor.jobs] == [(queued.id,)]
        stale_run = coordinator.get_run(stale.id)
        assert stale_run.status == RunStatus.FAILED
        assert "interrupted" in stale_run.error_message
        assert audit.of(AuditAction.VERIFICATION_FAILED)[0].resource_id == str(stale.id)

    def test_recent_in_progress_run_is_left_alone(self, make_coordinator, db_provider):
        with db_provider.session_scope() as session:
            runs = VerificationRunRepository(session)
            run = runs.create("APP-32", "1.0.0")
            runs.claim(run.id)

        coordinator = make_coordinator(executor=ManualExecutor())
        coordinator.resume_pending_runs()

        assert coordinator.get_run(run.id).status == RunStatus.IN_PROGRESS


class TestPolicyPinning:
    """Runs are scored with the exact policy row chosen at admission."""

    @staticmethod
    def store_policy(db_provider, name, not_clear_min, is_active=True):
        review_min = min(30, not_clear_min - 1)
        with db_provider.session_scope() as session:
            policy = PolicyRepository(session).create({
                'name': name,
                'version': "2.0",
                'rules': {},
                'thresholds': {
                    'clear': {'max': review_min},
                    'review': {'min': review_min, 'max': not_clear_min - 1},
                    'not_clear': {'min': not_clear_min},
                },
                'source_weights': {},
                'is_active': is_active,
                'destination_country': None,
                'effective_from': utcnow() - timedelta(days=1),
            })
            return policy.id

    def test_inactive_policy_with_same_version_is_not_used(self, make_coordinator, directory, db_provider):
        self.store_policy(db_provider, "Archived Strict", not_clear_min=10, is_active=False)
        lenient_id = self.store_policy(db_provider, "Lenient", not_clear_min=95)
        directory.register(make_applicant("APP-50", first_name="John", last_name="Smith"))
        coordinator = make_coordinator(reference_providers(), executor=ManualExecutor())

        run = coordinator.start("APP-50")
        assert run.policy_id == lenient_id
        coordinator.executor.run_all()

        run = coordinator.get_run(run.id)
        assert run.scoring_breakdown['total'] == 90
        assert run.decision == Decision.REVIEW

    def test_pinned_policy_holds_after_deactivation(self, make_coordinator, directory, db_provider, audit):
        lenient_id = self.store_policy(db_provider, "Lenient", not_clear_min=95)
        directory.register(make_applicant("APP-51", first_name="John", last_name="Smith"))
        coordinator = make_coordinator(reference_providers(), executor=ManualExecutor())

        run = coordinator.start("APP-51")
        with db_provider.session_scope() as session:
            PolicyRepository(session).get_by_id(lenient_id).is_active = False
        coordinator.executor.run_all()

        assert coordinator.get_run(run.id).decision == Decision.REVIEW
        started = audit.of(AuditAction.VERIFICATION_STARTED)[0]
        assert started.details['policy_id'] == str(lenient_id)

    def test_default_policy_runs_have_no_policy_id(self, make_coordinator, directory):
        directory.register(make_applicant("APP-52"))
        coordinator = make_coordinator(reference_providers(), executor=ManualExecutor())

        run = coordinator.start("APP-52")
        coordinator.executor.run_all()

        assert run.policy_id is None
        assert coordinator.get_run(run.id).status == RunStatus.COMPLETED


class TestHitStore:
    """The coordinator writes hits through the injected store."""

    def test_custom_hit_store(self, make_coordinator, directory):
        used = []

        def store_factory(session):
            used.append(session)
            return SourceHitRepository(session)

        directory.register(make_applicant("APP-40", documents=[passport()]))
        coordinator = make_coordinator(reference_providers(), executor=ManualExecutor(), hit_store=store_factory)
        coordinator.start("APP-40")
        coordinator.executor.run_all()

        assert used
