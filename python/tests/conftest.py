"""
Shared fixtures for the CreditGate test suite.

Tests run against an in-memory SQLite database (StaticPool, so every
session sees the same connection) built through create_test_provider.
"""

import sys
from datetime import timedelta
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

sys.path.insert(0, str(Path(__file__).parent.parent))

from config_manager import ConfigManager
from database.connection import create_test_provider
from database.models import Base, utcnow
from database.repositories import ConsentRepository, EntityRepository
from request_context import RequestContext

TITULAR_RFC = "GODE561231GR8"
CONSULTANT_RFC = "ABC010203XY9"
OTHER_RFC = "XYZ990101AA1"


@pytest.fixture
def engine():
    """In-memory SQLite engine with all tables created."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def db_provider(engine):
    provider = create_test_provider(engine)
    provider.init()
    return provider


@pytest.fixture
def session(db_provider):
    """Session committed at teardown; use for single-service tests."""
    with db_provider.session_scope() as session:
        yield session


@pytest.fixture
def config(tmp_path):
    """Default configuration (no config file on disk)."""
    return ConfigManager(str(tmp_path / "config.yaml"))


@pytest.fixture
def entities(db_provider):
    """Seed a titular (individual), a consultant and a second company.

    Returns:
        Dict of role -> entity id
    """
    with db_provider.session_scope() as session:
        repo = EntityRepository(session)
        plan = repo.create_plan("PROFESIONAL", 100)
        titular = repo.create({
            'legal_name': 'Delia Gómez Estrada',
            'tax_id': TITULAR_RFC,
            'entity_type': 'FISICA',
            'plan_id': plan.id,
        })
        consultant = repo.create({
            'legal_name': 'ABC Financiera SA de CV',
            'tax_id': CONSULTANT_RFC,
            'entity_type': 'MORAL',
            'plan_id': plan.id,
        })
        other = repo.create({
            'legal_name': 'XYZ Crédito SA',
            'tax_id': OTHER_RFC,
            'entity_type': 'MORAL',
        })
        return {'titular': titular.id, 'consultant': consultant.id, 'other': other.id}


@pytest.fixture
def grant_self_consent(db_provider):
    """Factory creating an active self-consent for an entity."""
    def _grant(entity_id, days=30):
        now = utcnow()
        with db_provider.session_scope() as session:
            consent = ConsentRepository(session).create_entity_consent(
                entity_id, now - timedelta(days=1), now + timedelta(days=days)
            )
            return consent.id
    return _grant


@pytest.fixture
def grant_query_consent(db_provider):
    """Factory creating an active query consent between two entities."""
    def _grant(titular_id, consultant_id, days=30):
        now = utcnow()
        with db_provider.session_scope() as session:
            consent = ConsentRepository(session).create_query_consent(
                titular_id, consultant_id, now - timedelta(days=1), now + timedelta(days=days)
            )
            return consent.id
    return _grant


@pytest.fixture
def titular_ctx(entities):
    return RequestContext(
        entity_id=entities['titular'],
        user_id=11,
        max_monthly_queries=5,
        entity_name="Delia Gómez Estrada",
        origin_ip="10.0.0.5",
    )


@pytest.fixture
def consultant_ctx(entities):
    return RequestContext(
        entity_id=entities['consultant'],
        user_id=21,
        max_monthly_queries=5,
        entity_name="ABC Financiera",
        origin_ip="10.0.0.9",
    )


@pytest.fixture
def clean_summary():
    """Bureau summary of a subject with a spotless six-year history."""
    return {
        'max_dias_atraso': 0,
        'total_pagos_atrasados': 0,
        'obligaciones_vencidas': 0,
        'obligaciones_cartera_vencida': 0,
        'saldo_total_actual': 0,
        'monto_total_vencido': 0,
        'meses_historial_crediticio': 72,
    }


@pytest.fixture
def security_logger():
    return MagicMock()


@pytest.fixture
def bureau(config, clean_summary):
    """Bureau client double returning a clean subject."""
    client = MagicMock()
    client.config = config
    client.get_bureau_summary.return_value = clean_summary
    client.get_obligation_details.return_value = []
    client.get_pending_payments.return_value = []
    client.get_credit_summary.return_value = {'total_pagos': 24, 'pagos_puntuales': 24}
    client.get_payments.return_value = [{'id': i, 'monto': 1000} for i in range(60)]
    return client
