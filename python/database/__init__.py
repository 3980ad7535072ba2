"""
Database Package for the CreditGate Credit Access Service

This package provides:
- SQLAlchemy ORM models for entities, consents, counters, logs and scores
- Session provider with auto-committing transaction scopes
- Repository pattern for data access
- Service layer (consent, quota, audit, scoring history, query orchestration)
- Performance monitoring and query timing
"""

from database.models import (
    Base,
    SubscriptionPlan,
    Entity,
    EntityConsent,
    QueryConsent,
    ConsumptionCounter,
    QueryLog,
    ScoreSnapshot,
    EntityType,
    ConsentState,
    QueryType,
    QueryOutcome,
)
from database.connection import (
    DatabaseSessionProvider,
    DatabaseSettings,
    get_db_provider,
    # Initialization
    init_db,
    close_db,
    # Testing support
    create_test_provider,
)
from database.monitoring import (
    query_timer,
    timed_query,
    get_db_metrics,
    get_slow_query_report,
    reset_metrics,
    configure_monitoring,
    check_health,
    HealthStatus,
)

__all__ = [
    # Base
    'Base',
    # Models
    'SubscriptionPlan',
    'Entity',
    'EntityConsent',
    'QueryConsent',
    'ConsumptionCounter',
    'QueryLog',
    'ScoreSnapshot',
    # Enums
    'EntityType',
    'ConsentState',
    'QueryType',
    'QueryOutcome',
    # Database provider
    'DatabaseSessionProvider',
    'DatabaseSettings',
    'get_db_provider',
    # Initialization
    'init_db',
    'close_db',
    # Testing support
    'create_test_provider',
    # Monitoring
    'query_timer',
    'timed_query',
    'get_db_metrics',
    'get_slow_query_report',
    'reset_metrics',
    'configure_monitoring',
    'check_health',
    'HealthStatus',
]
