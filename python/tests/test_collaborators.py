"""
Tests for the collaborator gateways and service wiring.

HTTP gateways are exercised against a mocked requests.Session so no
application or notification service is needed.
"""

from unittest.mock import MagicMock

import pytest
import requests

from config_manager import ConfigManager
from verification.collaborators import (
    HttpApplicationGateway,
    HttpNotificationGateway,
    InMemoryApplicationDirectory,
    LogOnlyNotificationGateway,
)
from verification.errors import NotFoundError, ValidationError

from conftest import MRZ_LINE1, MRZ_LINE2


def http_response(status_code=200, payload=None):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload or {}
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(f"{status_code} error")
    return response


@pytest.fixture
def http_session():
    return MagicMock(spec=requests.Session)


# ============================================
# APPLICATION SERVICE
# ============================================

class TestHttpApplicationGateway:
    """Application status and snapshots over HTTP."""

    def test_payment_completed(self, http_session):
        http_session.get.return_value = http_response(payload={
            'id': 'APP-1', 'status': 'payment_completed', 'destination_country': 'FR'
        })
        gateway = HttpApplicationGateway("http://apps.local/api/", timeout=3, session=http_session)

        info = gateway.require_payment_completed("APP-1")

        assert info.destination_country == 'FR'
        http_session.get.assert_called_once_with("http://apps.local/api/applications/APP-1", timeout=3)

    def test_unpaid_application_rejected(self, http_session):
        http_session.get.return_value = http_response(payload={'id': 'APP-1', 'status': 'submitted'})
        gateway = HttpApplicationGateway("http://apps.local/api", session=http_session)

        with pytest.raises(ValidationError) as exc_info:
            gateway.require_payment_completed("APP-1")
        assert "submitted" in exc_info.value.suggestion

    def test_unknown_application(self, http_session):
        http_session.get.return_value = http_response(status_code=404)
        gateway = HttpApplicationGateway("http://apps.local/api", session=http_session)

        with pytest.raises(NotFoundError):
            gateway.require_payment_completed("APP-404")

    def test_server_error_propagates(self, http_session):
        http_session.get.return_value = http_response(status_code=502)
        gateway = HttpApplicationGateway("http://apps.local/api", session=http_session)

        with pytest.raises(requests.HTTPError):
            gateway.snapshot("APP-1")

    def test_snapshot(self, http_session):
        http_session.get.return_value = http_response(payload={
            'first_name': 'Anna',
            'last_name': 'Eriksson',
            'destination_country': 'FR',
            'documents': [
                {'id': 'doc-1', 'type': 'passport', 'data': {'mrz_line1': MRZ_LINE1, 'mrz_line2': MRZ_LINE2}},
            ],
        })
        gateway = HttpApplicationGateway("http://apps.local/api", session=http_session)

        snapshot = gateway.snapshot("APP-1")

        assert snapshot.application_id == "APP-1"
        assert snapshot.full_name == "anna eriksson"
        assert snapshot.documents[0].document_id == "doc-1"
        assert snapshot.documents[0].is_verified is True

    def test_transition_posts_status(self, http_session):
        http_session.post.return_value = http_response()
        gateway = HttpApplicationGateway("http://apps.local/api", timeout=3, session=http_session)

        gateway.transition("APP-1", "in_progress", "system", "Verification started")

        http_session.post.assert_called_once_with(
            "http://apps.local/api/applications/APP-1/status",
            json={'status': 'in_progress', 'actor_id': 'system', 'reason': 'Verification started'},
            timeout=3,
        )


# ============================================
# NOTIFICATIONS
# ============================================

class TestNotificationGateways:
    """Completion notices."""

    def test_http_payload_carries_decision_text(self, http_session):
        http_session.post.return_value = http_response()
        gateway = HttpNotificationGateway("http://notify.local", session=http_session)

        gateway.notify_verification_complete("APP-1", "not_clear")

        payload = http_session.post.call_args.kwargs['json']
        assert payload == {'application_id': 'APP-1', 'decision': 'not_clear', 'decision_text': 'Not Approved'}

    def test_http_failure_raises(self, http_session):
        http_session.post.return_value = http_response(status_code=503)
        gateway = HttpNotificationGateway("http://notify.local", session=http_session)

        with pytest.raises(requests.HTTPError):
            gateway.notify_verification_complete("APP-1", "clear")

    def test_log_only(self, caplog):
        with caplog.at_level("INFO"):
            LogOnlyNotificationGateway().notify_verification_complete("APP-1", "review")

        assert "Under Review" in caplog.text


# ============================================
# SERVICE WIRING
# ============================================

class TestBuildServices:
    """Collaborator selection from configuration."""

    def test_urls_select_http_gateways(self, tmp_path, db_provider):
        from api.server import build_services

        path = tmp_path / "config.yaml"
        path.write_text(
            "collaborators:\n"
            "  application_service_url: http://apps.local/api\n"
            "  notification_service_url: http://notify.local\n",
            encoding="utf-8",
        )
        services = build_services(ConfigManager(str(path)), db_provider)
        try:
            assert isinstance(services.coordinator.applications, HttpApplicationGateway)
            assert isinstance(services.notifier.gateway, HttpNotificationGateway)
            assert [p.name for p in services.coordinator.providers] == ['sanctions', 'pep', 'documents']
        finally:
            services.coordinator.shutdown()

    def test_defaults_without_urls(self, tmp_path, db_provider):
        from api.server import build_services

        services = build_services(ConfigManager(str(tmp_path / "absent.yaml")), db_provider)
        try:
            assert isinstance(services.coordinator.applications, InMemoryApplicationDirectory)
            assert isinstance(services.notifier.gateway, LogOnlyNotificationGateway)
        finally:
            services.coordinator.shutdown()
