"""
Unit tests for database models, helpers and repositories.

Tests consent state derivation, timestamp handling, tax id utilities and
the repository layer against an in-memory SQLite database.
"""

import sys
from datetime import date, datetime, timedelta, timezone
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from database.models import (
    ConsentState,
    EntityType,
    METERED_QUERY_TYPES,
    QueryType,
    derive_consent_state,
    ensure_utc,
    utcnow,
)
from database.repositories import (
    ConsentRepository,
    ConsumptionRepository,
    DuplicateEntityError,
    EntityNotFoundError,
    EntityRepository,
)
from errors import InputValidationError
from text_utils import infer_entity_type, sanitize_for_logging, validate_tax_id

from conftest import CONSULTANT_RFC, TITULAR_RFC

START = datetime(2024, 1, 1, tzinfo=timezone.utc)
END = datetime(2024, 12, 31, tzinfo=timezone.utc)


class TestConsentState:
    """Tests for derive_consent_state."""

    def test_active_inside_window(self):
        assert derive_consent_state(False, START, END, datetime(2024, 6, 1, tzinfo=timezone.utc)) == ConsentState.ACTIVE

    def test_bounds_are_inclusive(self):
        """A consent is active at the exact start and expiry instants."""
        assert derive_consent_state(False, START, END, START) == ConsentState.ACTIVE
        assert derive_consent_state(False, START, END, END) == ConsentState.ACTIVE

    def test_pending_before_start(self):
        assert derive_consent_state(False, START, END, START - timedelta(seconds=1)) == ConsentState.PENDING

    def test_expired_after_expiry(self):
        assert derive_consent_state(False, START, END, END + timedelta(seconds=1)) == ConsentState.EXPIRED

    def test_revoked_wins(self):
        """Revocation overrides the window in every position."""
        for now in (START - timedelta(days=1), START, END + timedelta(days=1)):
            assert derive_consent_state(True, START, END, now) == ConsentState.REVOKED

    def test_naive_values_treated_as_utc(self):
        naive_start = START.replace(tzinfo=None)
        assert derive_consent_state(False, naive_start, END, START) == ConsentState.ACTIVE


class TestEnsureUtc:

    def test_none(self):
        assert ensure_utc(None) is None

    def test_naive_gets_utc(self):
        assert ensure_utc(datetime(2024, 3, 1, 12, 0)).tzinfo == timezone.utc

    def test_offset_converted(self):
        local = datetime(2024, 3, 1, 6, 0, tzinfo=timezone(timedelta(hours=-6)))
        assert ensure_utc(local) == datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class TestEnums:

    def test_consent_verification_not_metered(self):
        assert QueryType.CONSENT_VERIFICATION not in METERED_QUERY_TYPES
        assert QueryType.SCORE_HISTORY not in METERED_QUERY_TYPES

    def test_data_queries_metered(self):
        assert QueryType.SCORE_CALCULATION in METERED_QUERY_TYPES
        assert QueryType.PAYMENTS in METERED_QUERY_TYPES

    def test_entity_type_values(self):
        assert EntityType("FISICA") == EntityType.FISICA
        assert EntityType.MORAL.value == "MORAL"


class TestTaxIdUtilities:
    """Tests for RFC validation and log sanitization."""

    @pytest.mark.parametrize("tax_id,expected", [
        (TITULAR_RFC, "FISICA"),
        (CONSULTANT_RFC, "MORAL"),
        ("GODE56123GR8X", None),
    ])
    def test_infer_entity_type(self, tax_id, expected):
        assert infer_entity_type(tax_id) == expected

    def test_validate_normalizes(self):
        assert validate_tax_id("  gode561231gr8 ") == TITULAR_RFC

    @pytest.mark.parametrize("tax_id,code", [
        ("", "TAX_ID_REQUIRED"),
        (None, "TAX_ID_REQUIRED"),
        ("GODE5612", "TAX_ID_INVALID_LENGTH"),
        ("1234567890123", "TAX_ID_INVALID_FORMAT"),
    ])
    def test_validate_rejects(self, tax_id, code):
        with pytest.raises(InputValidationError) as exc_info:
            validate_tax_id(tax_id, field="consultant_tax_id")
        assert exc_info.value.code == code
        assert exc_info.value.field == "consultant_tax_id"

    def test_sanitize_strips_control_characters(self):
        assert sanitize_for_logging("GODE561231GR8\nFAKE ENTRY") == "GODE561231GR8 FAKE ENTRY"

    def test_sanitize_truncates(self):
        assert len(sanitize_for_logging("x" * 1000)) == 500

    def test_sanitize_empty(self):
        assert sanitize_for_logging("") == ""


class TestEntityRepository:

    def test_create_normalizes_tax_id(self, session):
        entity = EntityRepository(session).create({
            'legal_name': 'Mario López',
            'tax_id': ' lopm800101ab1 ',
            'entity_type': 'FISICA',
        })

        assert entity.tax_id == "LOPM800101AB1"
        assert entity.entity_type == EntityType.FISICA
        assert entity.is_active is True

    def test_duplicate_tax_id(self, entities, session):
        with pytest.raises(DuplicateEntityError):
            EntityRepository(session).create({
                'legal_name': 'Duplicate',
                'tax_id': TITULAR_RFC,
                'entity_type': 'FISICA',
            })

    def test_lookup_by_tax_id(self, entities, session):
        entity = EntityRepository(session).get_by_tax_id(CONSULTANT_RFC)

        assert entity.id == entities['consultant']
        assert entity.plan.max_monthly_queries == 100

    def test_set_active(self, entities, session):
        repo = EntityRepository(session)

        assert repo.set_active(entities['other'], False).is_active is False
        with pytest.raises(EntityNotFoundError):
            repo.set_active(9999, False)


class TestConsentRepository:

    def test_latest_expiring_query_consent_governs(self, entities, session):
        repo = ConsentRepository(session)
        now = utcnow()
        repo.create_query_consent(
            entities['titular'], entities['consultant'], now - timedelta(days=1), now + timedelta(days=5)
        )
        longer = repo.create_query_consent(
            entities['titular'], entities['consultant'], now - timedelta(days=1), now + timedelta(days=50)
        )

        found = repo.find_active_query_consent(entities['titular'], entities['consultant'], now)
        assert found.id == longer.id

    def test_pending_consent_is_not_active(self, entities, session):
        repo = ConsentRepository(session)
        now = utcnow()
        repo.create_entity_consent(entities['titular'], now + timedelta(days=1), now + timedelta(days=10))

        assert repo.find_active_entity_consent(entities['titular'], now) is None
        assert repo.find_unexpired_entity_consent(entities['titular'], now) is not None

    def test_increment_usage_unknown_consent(self, session):
        assert ConsentRepository(session).increment_usage(9999, utcnow()) is False


class TestConsumptionRepository:

    def test_increment_creates_then_adds(self, entities, session):
        repo = ConsumptionRepository(session)
        period = date(2024, 5, 1)

        assert repo.increment(entities['consultant'], period) == 1
        assert repo.increment(entities['consultant'], period) == 2
        assert repo.get_count(entities['consultant'], period) == 2

    def test_increment_respects_limit(self, entities, session):
        repo = ConsumptionRepository(session)
        period = date(2024, 5, 1)

        assert repo.increment(entities['consultant'], period, limit=1) == 1
        assert repo.increment(entities['consultant'], period, limit=1) is None
        assert repo.get_count(entities['consultant'], period) == 1

    def test_zero_limit_never_increments(self, entities, session):
        repo = ConsumptionRepository(session)

        assert repo.increment(entities['consultant'], date(2024, 5, 1), limit=0) is None
        assert repo.get_count(entities['consultant'], date(2024, 5, 1)) == 0
