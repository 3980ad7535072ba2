"""
Tests for operation timing and the statistics reported by the health check.
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from database.consent_service import ConsentAuthorizationService
from database.monitoring import (
    configure_monitoring,
    get_db_metrics,
    get_slow_query_report,
    query_timer,
    reset_metrics,
    timed_query,
)


@pytest.fixture(autouse=True)
def clean_metrics():
    reset_metrics()
    yield
    reset_metrics()
    configure_monitoring()


class TestQueryTimer:

    def test_records_operation(self):
        with query_timer("consumption_increment"):
            pass
        with query_timer("consumption_increment"):
            pass

        stats = get_db_metrics()["operations"]["consumption_increment"]
        assert stats["count"] == 2
        assert stats["errors"] == 0
        assert stats["last_executed"] is not None

    def test_error_counted_and_reraised(self):
        with pytest.raises(ValueError):
            with query_timer("save_snapshot"):
                raise ValueError("boom")

        assert get_db_metrics()["operations"]["save_snapshot"]["errors"] == 1

    def test_slow_operations_reported(self):
        configure_monitoring(slow_query_threshold_ms=0, enable_prometheus=False, enable_logging=False)

        with query_timer("verify_query_permission"):
            sum(range(1000))

        report = get_slow_query_report()
        assert [entry["operation"] for entry in report] == ["verify_query_permission"]
        assert report[0]["slow_queries"] == 1

    def test_fast_operations_not_reported(self):
        with query_timer("quota_usage"):
            pass

        assert get_slow_query_report() == []

    def test_reset_clears_operations(self):
        with query_timer("quota_usage"):
            pass

        reset_metrics()

        assert get_db_metrics()["operations"] == {}


class TestTimedQuery:

    def test_decorator_keeps_name_and_result(self):
        @timed_query("lookup")
        def lookup(value):
            """Return the value doubled."""
            return value * 2

        assert lookup(21) == 42
        assert lookup.__name__ == "lookup"
        assert get_db_metrics()["operations"]["lookup"]["count"] == 1

    def test_permission_check_is_timed(self, session, entities):
        ConsentAuthorizationService(session).verify_query_permission(
            entities['consultant'], entities['titular']
        )

        assert get_db_metrics()["operations"]["verify_query_permission"]["count"] == 1
