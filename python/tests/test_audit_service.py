"""
Tests for the query audit trail.
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from database.audit_service import AuditLogService, LogEntry
from database.models import QueryLog, QueryOutcome, QueryType
from database.repositories import ConsentRepository, QueryLogRepository


def _entry(entities, outcome=QueryOutcome.SUCCESS, consent_id=0, **kwargs):
    return LogEntry(
        titular_id=entities['titular'],
        consultant_id=entities['consultant'],
        query_type=kwargs.pop('query_type', QueryType.SCORE_CALCULATION),
        outcome=outcome,
        consent_id=consent_id,
        **kwargs
    )


class TestRecordLog:

    def test_success_with_consent_updates_usage(
        self, entities, grant_query_consent, session
    ):
        consent_id = grant_query_consent(entities['titular'], entities['consultant'])

        log = AuditLogService(session).record_log(
            _entry(entities, consent_id=consent_id, operator_user_id=21, origin_ip="10.0.0.9")
        )
        session.expire_all()

        consent = ConsentRepository(session).get_query_consent(consent_id)
        assert consent.usage_count == 1
        assert consent.last_used_at is not None
        assert log.consent_id == consent_id
        assert log.operator_user_id == 21
        assert log.origin_ip == "10.0.0.9"

    def test_denial_does_not_touch_usage(self, entities, grant_query_consent, session):
        consent_id = grant_query_consent(entities['titular'], entities['consultant'])

        AuditLogService(session).record_log(
            _entry(entities, QueryOutcome.DENIED_QUOTA_EXCEEDED, consent_id=consent_id,
                   detail="5/5")
        )
        session.expire_all()

        assert ConsentRepository(session).get_query_consent(consent_id).usage_count == 0

    def test_self_query_stores_null_consent(self, entities, session):
        log = AuditLogService(session).record_log(_entry(entities, consent_id=0))
        assert log.consent_id is None

    def test_denial_reason_kept_as_detail(self, entities, session):
        log = AuditLogService(session).record_log(
            _entry(entities, QueryOutcome.DENIED_NO_CONSENT,
                   detail="no active consent between the parties")
        )

        stored = session.get(QueryLog, log.id)
        assert stored.outcome == QueryOutcome.DENIED_NO_CONSENT
        assert stored.detail == "no active consent between the parties"

    def test_every_attempt_appends_a_row(self, entities, session):
        service = AuditLogService(session)
        for outcome in QueryOutcome:
            service.record_log(_entry(entities, outcome))

        logs, total = QueryLogRepository(session).search(consultant_id=entities['consultant'])
        assert total == len(QueryOutcome)
        assert {log.outcome for log in logs} == set(QueryOutcome)

    def test_search_filters_by_outcome(self, entities, session):
        service = AuditLogService(session)
        service.record_log(_entry(entities, QueryOutcome.SUCCESS))
        service.record_log(_entry(entities, QueryOutcome.UPSTREAM_FAILURE))
        service.record_log(_entry(entities, QueryOutcome.UPSTREAM_FAILURE))

        _, total = QueryLogRepository(session).search(outcome=QueryOutcome.UPSTREAM_FAILURE)
        assert total == 2

    @pytest.mark.parametrize("query_type", list(QueryType))
    def test_all_query_types_storable(self, entities, session, query_type):
        log = AuditLogService(session).record_log(_entry(entities, query_type=query_type))
        assert log.query_type == query_type
