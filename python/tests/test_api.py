"""
API endpoint tests for the CreditGate API

Uses FastAPI's TestClient against the real services on an in-memory SQLite
database; only the bureau and the security logger are mocked. Tests cover
caller identity, the error body format and status mapping, consents,
scoring and health.
"""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient

sys.path.insert(0, str(Path(__file__).parent.parent))

from api import middleware, server
from bureau_client import TransientBureauError
from database.consent_service import ConsentLifecycleService, get_consent_service
from database.query_service import QueryOrchestrator, get_query_orchestrator

from conftest import CONSULTANT_RFC, TITULAR_RFC


@pytest.fixture
def client(db_provider, bureau, config, security_logger):
    """Create test client wired to the test database."""
    orchestrator = QueryOrchestrator(db_provider, bureau, config, security_logger)

    def consent_service():
        with db_provider.session_scope() as session:
            yield ConsentLifecycleService(session, config)

    server.app.dependency_overrides[get_query_orchestrator] = lambda: orchestrator
    server.app.dependency_overrides[get_consent_service] = consent_service
    with patch.object(server, '_config', config), \
            patch.object(server, '_startup_time', datetime.now(timezone.utc)), \
            patch.object(middleware, 'get_security_logger', return_value=security_logger):
        yield TestClient(server.app)
    server.app.dependency_overrides.clear()


def _headers(entity_id, user_id=1, max_queries=5, name=None):
    headers = {
        "X-Entity-ID": str(entity_id),
        "X-User-ID": str(user_id),
        "X-Max-Monthly-Queries": str(max_queries),
    }
    if name:
        headers["X-Entity-Name"] = name
    return headers


@pytest.fixture
def titular_headers(entities):
    return _headers(entities['titular'], user_id=11)


@pytest.fixture
def consultant_headers(entities):
    return _headers(entities['consultant'], user_id=21, name="ABC Financiera")


@pytest.fixture
def consented(entities, grant_self_consent, grant_query_consent):
    grant_self_consent(entities['titular'])
    return grant_query_consent(entities['titular'], entities['consultant'])


def _in_days(days):
    return (datetime.now(timezone.utc) + timedelta(days=days)).isoformat()


# ============================================
# IDENTITY
# ============================================

class TestIdentity:
    """Caller identity arrives as gateway headers."""

    def test_missing_identity_headers(self, client):
        response = client.get("/api/v1/quota")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "HTTP_401"

    def test_plan_limit_defaults_from_config(self, client, entities, config):
        response = client.get(
            "/api/v1/quota",
            headers={"X-Entity-ID": str(entities['consultant']), "X-User-ID": "21"}
        )

        assert response.status_code == 200
        assert response.json()["limit"] == config.quota.default_monthly_queries

    def test_negative_limit_rejected(self, client, entities):
        response = client.get("/api/v1/quota", headers=_headers(entities['consultant'], max_queries=-1))

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"


# ============================================
# SCORING
# ============================================

class TestScoring:

    def test_calculate_score(self, client, consented, consultant_headers):
        response = client.post(f"/api/v1/scoring/{TITULAR_RFC}", headers=consultant_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["score"]["score_total"] == 900
        assert data["score"]["risk_tier"]["label"] == "EXCELENTE"
        assert data["consent_id"] == consented
        assert data["remaining_queries"] == 4
        assert data["titular"]["tax_id"] == TITULAR_RFC
        assert set(data["score"]["components"]) == {
            "payment_history", "debt_level", "credit_age", "credit_mix", "recent_behavior"
        }

    def test_no_consent_is_403(self, client, entities, grant_self_consent, consultant_headers):
        grant_self_consent(entities['titular'])

        response = client.post(f"/api/v1/scoring/{TITULAR_RFC}", headers=consultant_headers)

        assert response.status_code == 403
        error = response.json()["error"]
        assert error["code"] == "NO_CONSENT"
        assert error["details"]["reason"] == "no active consent between the parties"

    def test_unknown_titular_is_404(self, client, entities, consultant_headers):
        response = client.post("/api/v1/scoring/ZZZZ991231AB1", headers=consultant_headers)

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "TITULAR_NOT_FOUND"

    def test_malformed_tax_id_is_422(self, client, entities, consultant_headers):
        response = client.post("/api/v1/scoring/ABC", headers=consultant_headers)

        assert response.status_code == 422
        error = response.json()["error"]
        assert error["code"] == "TAX_ID_INVALID_LENGTH"
        assert error["field"] == "tax_id"
        assert "suggestion" in error

    def test_quota_exhausted_is_429(self, client, consented, entities):
        headers = _headers(entities['consultant'], max_queries=0)

        response = client.post(f"/api/v1/scoring/{TITULAR_RFC}", headers=headers)

        assert response.status_code == 429
        details = response.json()["error"]["details"]
        assert details["limit"] == 0
        assert details["remaining"] == 0
        assert "resets_at" in details

    def test_bureau_failure_is_500(self, client, consented, consultant_headers, bureau):
        bureau.get_bureau_summary.side_effect = TransientBureauError("Bureau returned 502")

        response = client.post(f"/api/v1/scoring/{TITULAR_RFC}", headers=consultant_headers)

        assert response.status_code == 500
        error = response.json()["error"]
        assert error["code"] == "UPSTREAM_FAILURE"
        assert "502" not in error["message"]

    def test_history_and_compare(self, client, consented, consultant_headers):
        client.post(f"/api/v1/scoring/{TITULAR_RFC}", headers=consultant_headers)

        history = client.get(f"/api/v1/scoring/{TITULAR_RFC}/history", headers=consultant_headers)
        compare = client.get(f"/api/v1/scoring/{TITULAR_RFC}/compare", headers=consultant_headers)

        assert history.status_code == 200
        assert len(history.json()["data"]) == 1
        assert history.json()["remaining_queries"] is None
        assert compare.status_code == 200
        assert compare.json()["data"]["previous"] is None

    def test_latest_without_score_is_404(self, client, consented, consultant_headers):
        response = client.get(f"/api/v1/scoring/{TITULAR_RFC}/latest", headers=consultant_headers)

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "SCORE_NOT_FOUND"


class TestCreditHistory:

    def test_full_history(self, client, consented, consultant_headers):
        response = client.get(
            f"/api/v1/credit-history/{TITULAR_RFC}/full", headers=consultant_headers
        )

        assert response.status_code == 200
        assert len(response.json()["data"]["payments"]) == 50

    def test_payments_by_obligation(self, client, consented, consultant_headers, bureau):
        response = client.get(
            f"/api/v1/credit-history/{TITULAR_RFC}/payments",
            params={"obligation_id": 9},
            headers=consultant_headers
        )

        assert response.status_code == 200
        bureau.get_payments.assert_called_once_with(TITULAR_RFC, 9)

    def test_self_query(self, client, entities, grant_self_consent, titular_headers):
        grant_self_consent(entities['titular'])

        response = client.get(f"/api/v1/credit-history/{TITULAR_RFC}", headers=titular_headers)

        assert response.status_code == 200
        assert response.json()["consent_id"] == 0


# ============================================
# CONSENTS
# ============================================

class TestEntityConsents:

    def test_create_and_conflict(self, client, titular_headers):
        first = client.post(
            "/api/v1/entity-consents", json={"expires_at": _in_days(365)}, headers=titular_headers
        )
        second = client.post(
            "/api/v1/entity-consents", json={"expires_at": _in_days(30)}, headers=titular_headers
        )

        assert first.status_code == 201
        assert first.json()["state"] == "ACTIVE"
        assert second.status_code == 409
        assert second.json()["error"]["code"] == "CONSENT_CONFLICT"
        assert second.json()["error"]["details"]["consent_id"] == first.json()["id"]

    def test_revoke_twice(self, client, titular_headers):
        created = client.post(
            "/api/v1/entity-consents", json={"expires_at": _in_days(30)}, headers=titular_headers
        ).json()

        revoked = client.patch(
            f"/api/v1/entity-consents/{created['id']}/revoke", headers=titular_headers
        )
        again = client.patch(
            f"/api/v1/entity-consents/{created['id']}/revoke", headers=titular_headers
        )

        assert revoked.status_code == 200
        assert revoked.json()["state"] == "REVOKED"
        assert again.status_code == 409
        assert again.json()["error"]["code"] == "INVALID_CONSENT_STATE"

    def test_missing_expiry_is_validation_error(self, client, titular_headers):
        response = client.post("/api/v1/entity-consents", json={}, headers=titular_headers)

        assert response.status_code == 422
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert error["field"] == "expires_at"
        assert error["details"][0]["field"] == "expires_at"

    def test_other_entity_cannot_read(self, client, titular_headers, consultant_headers):
        created = client.post(
            "/api/v1/entity-consents", json={"expires_at": _in_days(30)}, headers=titular_headers
        ).json()

        response = client.get(f"/api/v1/entity-consents/{created['id']}", headers=consultant_headers)

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "NOT_CONSENT_OWNER"

    def test_renew(self, client, titular_headers):
        created = client.post(
            "/api/v1/entity-consents", json={"expires_at": _in_days(30)}, headers=titular_headers
        ).json()

        shorter = client.patch(
            f"/api/v1/entity-consents/{created['id']}/renew",
            json={"expires_at": _in_days(10)},
            headers=titular_headers
        )
        longer = client.patch(
            f"/api/v1/entity-consents/{created['id']}/renew",
            json={"expires_at": _in_days(90)},
            headers=titular_headers
        )

        assert shorter.status_code == 422
        assert shorter.json()["error"]["code"] == "EXPIRY_NOT_EXTENDED"
        assert longer.status_code == 200


class TestQueryConsents:

    def test_grant_then_query(self, client, entities, grant_self_consent,
                              titular_headers, consultant_headers):
        grant_self_consent(entities['titular'])
        created = client.post(
            "/api/v1/query-consents",
            json={"consultant_tax_id": CONSULTANT_RFC.lower(), "expires_at": _in_days(30)},
            headers=titular_headers
        )
        assert created.status_code == 201
        consent_id = created.json()["id"]

        received = client.get("/api/v1/query-consents/received", headers=consultant_headers)
        assert [c["id"] for c in received.json()] == [consent_id]

        scored = client.post(f"/api/v1/scoring/{TITULAR_RFC}", headers=consultant_headers)
        assert scored.status_code == 200

        detail = client.get(f"/api/v1/query-consents/{consent_id}", headers=titular_headers).json()
        assert detail["usage_count"] == 1
        assert detail["recent_queries"][0]["query_type"] == "SCORE_CALCULATION"
        assert detail["recent_queries"][0]["consultant_name"] == "ABC Financiera"

    def test_revoked_consent_blocks_queries(self, client, consented, titular_headers,
                                            consultant_headers):
        client.patch(f"/api/v1/query-consents/{consented}/revoke", headers=titular_headers)

        response = client.post(f"/api/v1/scoring/{TITULAR_RFC}", headers=consultant_headers)
        assert response.status_code == 403

    def test_unknown_consultant(self, client, titular_headers):
        response = client.post(
            "/api/v1/query-consents",
            json={"consultant_tax_id": "QQQ010101AB1", "expires_at": _in_days(30)},
            headers=titular_headers
        )

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "CONSULTANT_NOT_FOUND"

    def test_verify(self, client, consented, consultant_headers):
        response = client.post(
            "/api/v1/query-consents/verify",
            json={"tax_id": TITULAR_RFC},
            headers=consultant_headers
        )

        assert response.status_code == 200
        assert response.json()["permitted"] is True
        assert response.json()["consent_id"] == consented

    def test_verify_denial_is_200(self, client, entities, consultant_headers):
        response = client.post(
            "/api/v1/query-consents/verify",
            json={"tax_id": TITULAR_RFC},
            headers=consultant_headers
        )

        assert response.status_code == 200
        assert response.json()["permitted"] is False


# ============================================
# HEALTH AND ERRORS
# ============================================

class TestHealth:

    def test_healthy(self, client, db_provider, config):
        with patch.object(server, 'get_db_provider', return_value=db_provider):
            response = client.get("/api/v1/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"]["healthy"] is True
        assert data["algorithm_version"] == config.scoring.algorithm_version
        assert data["uptime_seconds"] >= 0
        assert "query_stats" in data
        assert isinstance(data["slow_operations"], list)

    def test_database_unavailable(self, client):
        with patch.object(server, 'get_db_provider', side_effect=RuntimeError("down")):
            response = client.get("/api/v1/health")

        assert response.status_code == 200
        assert response.json()["status"] == "error"
        assert response.json()["error_message"] == "RuntimeError"


class TestErrorHandling:

    def test_unhandled_error_is_opaque(self, entities, config, security_logger):
        failing = MagicMock()
        failing.quota_usage.side_effect = RuntimeError("connection string leaked")
        server.app.dependency_overrides[get_query_orchestrator] = lambda: failing
        try:
            with patch.object(server, '_config', config), \
                    patch.object(middleware, 'get_security_logger', return_value=security_logger):
                client = TestClient(server.app, raise_server_exceptions=False)
                response = client.get("/api/v1/quota", headers=_headers(entities['consultant']))
        finally:
            server.app.dependency_overrides.clear()

        assert response.status_code == 500
        error = response.json()["error"]
        assert error["code"] == "INTERNAL_ERROR"
        assert "leaked" not in error["message"]

    def test_request_id_echoed(self, client, entities):
        response = client.get(
            "/api/v1/quota",
            headers={**_headers(entities['consultant']), "X-Request-ID": "req-123"}
        )
        assert response.headers["X-Request-ID"] == "req-123"

    def test_request_id_reaches_security_events(self, client, entities, security_logger):
        client.get(
            "/api/v1/quota",
            headers={**_headers(entities['consultant'], user_id=21), "X-Request-ID": "req-456"}
        )

        args, kwargs = security_logger.set_request_context.call_args
        assert args == ("req-456",)
        assert kwargs["user_id"] == "21"
        security_logger.clear_request_context.assert_called_once()

    def test_not_found_endpoint(self, client):
        response = client.get("/api/v1/nonexistent")
        assert response.status_code == 404

    def test_openapi_available(self, client):
        response = client.get("/api/openapi.json")
        assert response.status_code == 200
        assert "/api/v1/scoring/{tax_id}" in response.json()["paths"]
