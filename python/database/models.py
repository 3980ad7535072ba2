"""
SQLAlchemy ORM Models for the CreditGate consent and scoring service

Tables:
1. subscription_plans - Plans defining the monthly query allowance
2. entities - Titulars and consultants (individuals and companies)
3. entity_consents - Self-consent: an entity authorizes the platform to hold its data
4. query_consents - Third-party consent: titular authorizes a consultant
5. consumption_counters - Queries performed per consultant per calendar month
6. query_logs - Append-only audit trail of every authorization decision
7. score_snapshots - Append-only history of computed credit scores

All timestamps are stored as timezone-aware UTC. Backends that drop the
offset (SQLite) hand back naive values, see ensure_utc().
"""

from datetime import date, datetime, timezone
from enum import Enum as PyEnum
from typing import List, Optional

from sqlalchemy import (
    String, Integer, Boolean, Date, DateTime, Text,
    ForeignKey, Index, CheckConstraint, UniqueConstraint, Enum, JSON
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship, declarative_base, Mapped, mapped_column
from sqlalchemy.sql import func

# Base class for all models
Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================
# ENUMS
# ============================================

class EntityType(str, PyEnum):
    """Persona fisica (individual) or persona moral (company)"""
    FISICA = "FISICA"
    MORAL = "MORAL"


class ConsentState(str, PyEnum):
    """Derived lifecycle state of a consent record (never stored)"""
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    REVOKED = "REVOKED"


class QueryType(str, PyEnum):
    """Kind of access attempted against a titular's data"""
    SCORE_CALCULATION = "SCORE_CALCULATION"
    SCORE_HISTORY = "SCORE_HISTORY"
    CREDIT_SUMMARY = "CREDIT_SUMMARY"
    FULL_HISTORY = "FULL_HISTORY"
    OBLIGATIONS = "OBLIGATIONS"
    PAYMENTS = "PAYMENTS"
    CONSENT_VERIFICATION = "CONSENT_VERIFICATION"


class QueryOutcome(str, PyEnum):
    """Outcome recorded for each query attempt"""
    SUCCESS = "SUCCESS"
    DENIED_NO_CONSENT = "DENIED_NO_CONSENT"
    DENIED_INACTIVE_ENTITY = "DENIED_INACTIVE_ENTITY"
    DENIED_QUOTA_EXCEEDED = "DENIED_QUOTA_EXCEEDED"
    UPSTREAM_FAILURE = "UPSTREAM_FAILURE"


# Query types that consume monthly quota
METERED_QUERY_TYPES = frozenset({
    QueryType.SCORE_CALCULATION,
    QueryType.CREDIT_SUMMARY,
    QueryType.FULL_HISTORY,
    QueryType.OBLIGATIONS,
    QueryType.PAYMENTS,
})


# ============================================
# MIXIN CLASSES
# ============================================

class TimestampMixin:
    """Mixin for created_at and updated_at timestamps"""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False
    )


class ConsentWindowMixin:
    """Validity window and revocation fields shared by both consent kinds"""
    starts_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    revoked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    revoked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def state(self, now: Optional[datetime] = None) -> ConsentState:
        """Derive the lifecycle state at the given instant"""
        return derive_consent_state(
            self.revoked, self.starts_at, self.expires_at, now or utcnow()
        )

    def is_active(self, now: Optional[datetime] = None) -> bool:
        return self.state(now) == ConsentState.ACTIVE


# ============================================
# ENTITY TABLES
# ============================================

class SubscriptionPlan(Base, TimestampMixin):
    """Plan assigned to an entity; defines the monthly query allowance"""
    __tablename__ = "subscription_plans"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    max_monthly_queries: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        CheckConstraint('max_monthly_queries >= 0', name='ck_plan_max_queries'),
    )

    def __repr__(self) -> str:
        return f"<SubscriptionPlan(id={self.id}, name='{self.name}', max={self.max_monthly_queries})>"


class Entity(Base, TimestampMixin):
    """
    A titular or consultant: an individual (13-char RFC) or a company (12-char RFC).

    Deactivation blocks every query where the entity is titular or consultant.
    """
    __tablename__ = "entities"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    legal_name: Mapped[str] = mapped_column(String(300), nullable=False)
    tax_id: Mapped[str] = mapped_column(String(13), nullable=False, unique=True, index=True)
    entity_type: Mapped[EntityType] = mapped_column(Enum(EntityType), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, index=True)
    plan_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey("subscription_plans.id", ondelete="SET NULL"),
        nullable=True
    )

    plan: Mapped[Optional["SubscriptionPlan"]] = relationship("SubscriptionPlan", lazy="joined")
    entity_consents: Mapped[List["EntityConsent"]] = relationship(
        "EntityConsent",
        back_populates="entity",
        lazy="select"
    )

    __table_args__ = (
        CheckConstraint("entity_type IN ('FISICA', 'MORAL')", name='ck_entity_type'),
    )

    def __repr__(self) -> str:
        return f"<Entity(id={self.id}, tax_id='{self.tax_id}', active={self.is_active})>"


# ============================================
# CONSENT TABLES
# ============================================

class EntityConsent(Base, TimestampMixin, ConsentWindowMixin):
    """
    Self-consent: the entity authorizes the platform to hold and process its data.

    At most one non-revoked, unexpired record may exist per entity; creation
    takes a row lock on the owning entity to enforce it.
    """
    __tablename__ = "entity_consents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("entities.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    entity: Mapped["Entity"] = relationship("Entity", back_populates="entity_consents")

    __table_args__ = (
        CheckConstraint('expires_at > starts_at', name='ck_entity_consent_window'),
        Index('ix_entity_consent_lookup', 'entity_id', 'revoked', 'expires_at'),
    )

    def __repr__(self) -> str:
        return f"<EntityConsent(id={self.id}, entity_id={self.entity_id}, revoked={self.revoked})>"


class QueryConsent(Base, TimestampMixin, ConsentWindowMixin):
    """
    Third-party consent: the titular authorizes one consultant to query its data.

    Several historical records may exist for the same pair; only an active
    one governs new queries.
    """
    __tablename__ = "query_consents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    titular_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("entities.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    consultant_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("entities.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    # Usage, maintained by the audit log on successful queries
    usage_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    origin_ip: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    titular: Mapped["Entity"] = relationship("Entity", foreign_keys=[titular_id])
    consultant: Mapped["Entity"] = relationship("Entity", foreign_keys=[consultant_id])

    __table_args__ = (
        CheckConstraint('titular_id <> consultant_id', name='ck_query_consent_parties'),
        CheckConstraint('expires_at > starts_at', name='ck_query_consent_window'),
        Index('ix_query_consent_pair', 'titular_id', 'consultant_id', 'revoked'),
    )

    def __repr__(self) -> str:
        return (
            f"<QueryConsent(id={self.id}, titular={self.titular_id}, "
            f"consultant={self.consultant_id}, revoked={self.revoked})>"
        )


# ============================================
# QUOTA TABLE
# ============================================

class ConsumptionCounter(Base):
    """
    Queries performed by a consultant in one calendar month.

    Keyed by (entity_id, period_start); only ever incremented, through an
    atomic upsert (see ConsumptionRepository).
    """
    __tablename__ = "consumption_counters"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("entities.id", ondelete="CASCADE"),
        nullable=False
    )
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    queries_performed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False
    )

    __table_args__ = (
        UniqueConstraint('entity_id', 'period_start', name='uq_consumption_entity_period'),
        CheckConstraint('queries_performed >= 0', name='ck_consumption_non_negative'),
    )

    def __repr__(self) -> str:
        return (
            f"<ConsumptionCounter(entity_id={self.entity_id}, period={self.period_start}, "
            f"used={self.queries_performed})>"
        )


# ============================================
# AUDIT TABLES
# ============================================

class QueryLog(Base):
    """
    Audit trail of every authorization decision.

    Immutable - no updates or deletes allowed.
    """
    __tablename__ = "query_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Timestamp (no updated_at - query logs are immutable)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
        index=True
    )

    # NULL for denials and self-queries
    consent_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey("query_consents.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )
    titular_id: Mapped[int] = mapped_column(Integer, ForeignKey("entities.id"), nullable=False)
    consultant_id: Mapped[int] = mapped_column(Integer, ForeignKey("entities.id"), nullable=False)
    operator_user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    consultant_name: Mapped[Optional[str]] = mapped_column(String(300), nullable=True)

    query_type: Mapped[QueryType] = mapped_column(Enum(QueryType), nullable=False)
    outcome: Mapped[QueryOutcome] = mapped_column(Enum(QueryOutcome), nullable=False, index=True)
    detail: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    origin_ip: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    __table_args__ = (
        Index('ix_query_log_titular', 'titular_id', 'timestamp'),
        Index('ix_query_log_consultant', 'consultant_id', 'timestamp'),
    )

    def __repr__(self) -> str:
        return f"<QueryLog(id={self.id}, type={self.query_type}, outcome={self.outcome})>"


class ScoreSnapshot(Base):
    """
    Persisted result of one scoring computation.

    Append-only history per titular; prior snapshots are never updated.
    """
    __tablename__ = "score_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("entities.id", ondelete="CASCADE"),
        nullable=False
    )
    score_total: Mapped[int] = mapped_column(Integer, nullable=False)
    risk_tier: Mapped[str] = mapped_column(String(20), nullable=False)
    no_history: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    positive_factors: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    negative_factors: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    components: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    algorithm_version: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    computed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False
    )

    __table_args__ = (
        CheckConstraint('score_total >= 0 AND score_total <= 1000', name='ck_snapshot_score_range'),
        Index('ix_snapshot_entity_date', 'entity_id', 'computed_at'),
    )

    def __repr__(self) -> str:
        return f"<ScoreSnapshot(entity_id={self.entity_id}, score={self.score_total}, tier={self.risk_tier})>"


# ============================================
# HELPER FUNCTIONS
# ============================================

def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Attach UTC to naive datetimes read back from the database.

    Args:
        value: Datetime from a model attribute (can be None)

    Returns:
        Timezone-aware datetime, or None
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def derive_consent_state(
    revoked: bool,
    starts_at: datetime,
    expires_at: datetime,
    now: datetime
) -> ConsentState:
    """
    Derive the lifecycle state of a consent window.

    REVOKED wins over everything; otherwise the window decides. Both
    bounds are inclusive for ACTIVE.
    """
    if revoked:
        return ConsentState.REVOKED
    now = ensure_utc(now)
    if now > ensure_utc(expires_at):
        return ConsentState.EXPIRED
    if now < ensure_utc(starts_at):
        return ConsentState.PENDING
    return ConsentState.ACTIVE
