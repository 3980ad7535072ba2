"""
Repository Pattern for CreditGate Database Operations

Provides clean data access layer with proper typing and error handling.
Services depend only on these narrow interfaces (find active consent,
upsert counter, append log, append snapshot).
"""

import logging
from datetime import date, datetime
from typing import List, Optional, Dict, Any, Tuple

from sqlalchemy import select, func, update, and_
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError

from database.models import (
    Entity,
    SubscriptionPlan,
    EntityConsent,
    QueryConsent,
    ConsumptionCounter,
    QueryLog,
    ScoreSnapshot,
    EntityType,
    QueryOutcome,
    QueryType,
    utcnow,
)

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Base exception for repository errors."""
    pass


class EntityNotFoundError(RepositoryError):
    """Raised when an entity is not found."""
    pass


class DuplicateEntityError(RepositoryError):
    """Raised when attempting to create a duplicate entity."""
    pass


# ============================================
# ENTITY REPOSITORY
# ============================================

class EntityRepository:
    """Repository for titular/consultant entities and their plans."""

    def __init__(self, session: Session):
        self.session = session

    def create_plan(self, name: str, max_monthly_queries: int) -> SubscriptionPlan:
        plan = SubscriptionPlan(name=name, max_monthly_queries=max_monthly_queries)
        self.session.add(plan)
        self.session.flush()
        return plan

    def create(self, entity_data: Dict[str, Any]) -> Entity:
        """
        Create a new entity.

        Args:
            entity_data: Dictionary containing entity fields

        Returns:
            Created Entity instance

        Raises:
            DuplicateEntityError: If an entity with the same tax id exists
        """
        try:
            entity_data['tax_id'] = entity_data.get('tax_id', '').strip().upper()
            if isinstance(entity_data.get('entity_type'), str):
                entity_data['entity_type'] = EntityType(entity_data['entity_type'])

            entity = Entity(**entity_data)
            self.session.add(entity)
            self.session.flush()

            logger.debug(f"Created entity: {entity.id} ({entity.tax_id})")
            return entity

        except IntegrityError as e:
            self.session.rollback()
            raise DuplicateEntityError(f"Entity already exists: {e}")

    def get_by_id(self, entity_id: int) -> Optional[Entity]:
        return self.session.get(Entity, entity_id)

    def get_by_tax_id(self, tax_id: str) -> Optional[Entity]:
        """
        Get entity by tax identifier (RFC).

        Args:
            tax_id: Normalized tax identifier

        Returns:
            Entity or None
        """
        query = select(Entity).where(Entity.tax_id == tax_id)
        return self.session.execute(query).scalar_one_or_none()

    def lock(self, entity_id: int) -> Entity:
        """
        Load an entity holding a row lock until the transaction ends.

        Serializes consent creation per entity. SQLite ignores FOR UPDATE
        but already serializes writers.

        Raises:
            EntityNotFoundError: If the entity does not exist
        """
        query = select(Entity).where(Entity.id == entity_id).with_for_update()
        entity = self.session.execute(query).scalar_one_or_none()
        if entity is None:
            raise EntityNotFoundError(f"Entity {entity_id} not found")
        return entity

    def set_active(self, entity_id: int, active: bool) -> Entity:
        entity = self.get_by_id(entity_id)
        if entity is None:
            raise EntityNotFoundError(f"Entity {entity_id} not found")
        entity.is_active = active
        self.session.flush()
        return entity


# ============================================
# CONSENT REPOSITORY
# ============================================

class ConsentRepository:
    """Repository for self-consents and third-party query consents."""

    def __init__(self, session: Session):
        self.session = session

    # --- self-consent -------------------------------------------------

    def find_active_entity_consent(self, entity_id: int, now: datetime) -> Optional[EntityConsent]:
        """
        Find the entity's active self-consent at `now`.

        Active means not revoked and start <= now <= expiry.
        """
        query = (
            select(EntityConsent)
            .where(
                and_(
                    EntityConsent.entity_id == entity_id,
                    EntityConsent.revoked == False,  # noqa: E712
                    EntityConsent.starts_at <= now,
                    EntityConsent.expires_at >= now,
                )
            )
            .order_by(EntityConsent.expires_at.desc())
            .limit(1)
        )
        return self.session.execute(query).scalar_one_or_none()

    def find_unexpired_entity_consent(self, entity_id: int, now: datetime) -> Optional[EntityConsent]:
        """Find a non-revoked self-consent whose expiry is still ahead (active or pending)."""
        query = (
            select(EntityConsent)
            .where(
                and_(
                    EntityConsent.entity_id == entity_id,
                    EntityConsent.revoked == False,  # noqa: E712
                    EntityConsent.expires_at >= now,
                )
            )
            .limit(1)
        )
        return self.session.execute(query).scalar_one_or_none()

    def create_entity_consent(
        self,
        entity_id: int,
        starts_at: datetime,
        expires_at: datetime
    ) -> EntityConsent:
        consent = EntityConsent(
            entity_id=entity_id,
            starts_at=starts_at,
            expires_at=expires_at,
            revoked=False
        )
        self.session.add(consent)
        self.session.flush()
        return consent

    def get_entity_consent(self, consent_id: int) -> Optional[EntityConsent]:
        return self.session.get(EntityConsent, consent_id)

    def list_entity_consents(self, entity_id: int) -> List[EntityConsent]:
        query = (
            select(EntityConsent)
            .where(EntityConsent.entity_id == entity_id)
            .order_by(EntityConsent.created_at.desc(), EntityConsent.id.desc())
        )
        return list(self.session.execute(query).scalars().all())

    # --- third-party consent -----------------------------------------

    def find_active_query_consent(
        self,
        titular_id: int,
        consultant_id: int,
        now: datetime
    ) -> Optional[QueryConsent]:
        """
        Find the active query consent between a titular and a consultant.

        When several overlap, the one expiring last governs.
        """
        query = (
            select(QueryConsent)
            .where(
                and_(
                    QueryConsent.titular_id == titular_id,
                    QueryConsent.consultant_id == consultant_id,
                    QueryConsent.revoked == False,  # noqa: E712
                    QueryConsent.starts_at <= now,
                    QueryConsent.expires_at >= now,
                )
            )
            .order_by(QueryConsent.expires_at.desc(), QueryConsent.id.desc())
            .limit(1)
        )
        return self.session.execute(query).scalar_one_or_none()

    def create_query_consent(
        self,
        titular_id: int,
        consultant_id: int,
        starts_at: datetime,
        expires_at: datetime,
        origin_ip: Optional[str] = None
    ) -> QueryConsent:
        consent = QueryConsent(
            titular_id=titular_id,
            consultant_id=consultant_id,
            starts_at=starts_at,
            expires_at=expires_at,
            revoked=False,
            usage_count=0,
            origin_ip=origin_ip
        )
        self.session.add(consent)
        self.session.flush()
        return consent

    def get_query_consent(self, consent_id: int) -> Optional[QueryConsent]:
        return self.session.get(QueryConsent, consent_id)

    def list_granted(self, titular_id: int) -> List[QueryConsent]:
        """Query consents granted by a titular, newest first."""
        query = (
            select(QueryConsent)
            .where(QueryConsent.titular_id == titular_id)
            .order_by(QueryConsent.created_at.desc(), QueryConsent.id.desc())
        )
        return list(self.session.execute(query).scalars().all())

    def list_received(self, consultant_id: int) -> List[QueryConsent]:
        """Query consents received by a consultant, newest first."""
        query = (
            select(QueryConsent)
            .where(QueryConsent.consultant_id == consultant_id)
            .order_by(QueryConsent.created_at.desc(), QueryConsent.id.desc())
        )
        return list(self.session.execute(query).scalars().all())

    def increment_usage(self, consent_id: int, used_at: datetime) -> bool:
        """
        Atomically bump a query consent's usage counter.

        Returns:
            True if a row was updated
        """
        stmt = (
            update(QueryConsent)
            .where(QueryConsent.id == consent_id)
            .values(
                usage_count=QueryConsent.usage_count + 1,
                last_used_at=used_at,
                updated_at=used_at
            )
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        return result.rowcount > 0

    # --- shared mutations ---------------------------------------------

    def revoke(self, consent, revoked_at: datetime):
        consent.revoked = True
        consent.revoked_at = revoked_at
        self.session.flush()
        return consent

    def renew(self, consent, expires_at: datetime):
        consent.expires_at = expires_at
        self.session.flush()
        return consent


# ============================================
# CONSUMPTION REPOSITORY
# ============================================

class ConsumptionRepository:
    """
    Repository for per-period query counters.

    Increments are single-statement upserts so concurrent requests from
    several service instances never lose updates.
    """

    def __init__(self, session: Session):
        self.session = session

    def get_count(self, entity_id: int, period_start: date) -> int:
        query = select(ConsumptionCounter.queries_performed).where(
            and_(
                ConsumptionCounter.entity_id == entity_id,
                ConsumptionCounter.period_start == period_start,
            )
        )
        return self.session.execute(query).scalar_one_or_none() or 0

    def _insert_for_dialect(self):
        dialect = self.session.get_bind().dialect.name
        if dialect == "postgresql":
            return postgresql.insert
        if dialect == "sqlite":
            return sqlite.insert
        raise RepositoryError(f"Atomic counter upsert not supported on dialect '{dialect}'")

    def increment(
        self,
        entity_id: int,
        period_start: date,
        now: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> Optional[int]:
        """
        Upsert-with-increment the counter for (entity_id, period_start).

        Args:
            entity_id: Consultant entity being metered
            period_start: First day of the quota period
            now: Timestamp stamped as last update
            limit: When given, only increment while the stored count is
                below it (compare-and-increment)

        Returns:
            The new count, or None when `limit` was already reached
        """
        if limit is not None and limit <= 0:
            return None

        now = now or utcnow()
        table = ConsumptionCounter.__table__
        insert = self._insert_for_dialect()

        stmt = insert(table).values(
            entity_id=entity_id,
            period_start=period_start,
            queries_performed=1,
            last_updated=now,
        )
        conflict_kwargs = {
            "index_elements": [table.c.entity_id, table.c.period_start],
            "set_": {
                "queries_performed": table.c.queries_performed + 1,
                "last_updated": now,
            },
        }
        if limit is not None:
            conflict_kwargs["where"] = table.c.queries_performed < limit

        stmt = stmt.on_conflict_do_update(**conflict_kwargs).returning(table.c.queries_performed)
        return self.session.execute(stmt).scalar_one_or_none()


# ============================================
# QUERY LOG REPOSITORY
# ============================================

class QueryLogRepository:
    """Repository for the append-only query audit trail."""

    def __init__(self, session: Session):
        self.session = session

    def append(
        self,
        titular_id: int,
        consultant_id: int,
        query_type: QueryType,
        outcome: QueryOutcome,
        consent_id: Optional[int] = None,
        operator_user_id: Optional[int] = None,
        consultant_name: Optional[str] = None,
        origin_ip: Optional[str] = None,
        detail: Optional[str] = None,
        timestamp: Optional[datetime] = None
    ) -> QueryLog:
        """
        Append a query log entry.

        Args:
            titular_id: Entity whose data was requested
            consultant_id: Entity that made the request
            query_type: Kind of query
            outcome: Authorization/processing outcome
            consent_id: Query consent used (None for denials and self-queries)
            operator_user_id: User acting for the consultant
            consultant_name: Denormalized consultant name
            origin_ip: Caller address
            detail: Denial reason or failure description
            timestamp: Decision time (defaults to now)

        Returns:
            Created QueryLog
        """
        log = QueryLog(
            titular_id=titular_id,
            consultant_id=consultant_id,
            query_type=query_type,
            outcome=outcome,
            consent_id=consent_id or None,
            operator_user_id=operator_user_id,
            consultant_name=consultant_name,
            origin_ip=origin_ip,
            detail=detail,
            timestamp=timestamp or utcnow()
        )
        self.session.add(log)
        self.session.flush()
        return log

    def list_for_consent(self, consent_id: int, limit: int = 10) -> List[QueryLog]:
        query = (
            select(QueryLog)
            .where(QueryLog.consent_id == consent_id)
            .order_by(QueryLog.timestamp.desc(), QueryLog.id.desc())
            .limit(limit)
        )
        return list(self.session.execute(query).scalars().all())

    def search(
        self,
        titular_id: Optional[int] = None,
        consultant_id: Optional[int] = None,
        outcome: Optional[QueryOutcome] = None,
        query_type: Optional[QueryType] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        offset: int = 0,
        limit: int = 100
    ) -> Tuple[List[QueryLog], int]:
        """
        Search query logs with filters.

        Returns:
            Tuple of (logs list, total count)
        """
        conditions = []

        if titular_id is not None:
            conditions.append(QueryLog.titular_id == titular_id)
        if consultant_id is not None:
            conditions.append(QueryLog.consultant_id == consultant_id)
        if outcome:
            conditions.append(QueryLog.outcome == outcome)
        if query_type:
            conditions.append(QueryLog.query_type == query_type)
        if start_date:
            conditions.append(QueryLog.timestamp >= start_date)
        if end_date:
            conditions.append(QueryLog.timestamp <= end_date)

        count_query = select(func.count()).select_from(QueryLog)
        if conditions:
            count_query = count_query.where(and_(*conditions))
        total = self.session.execute(count_query).scalar_one()

        query = select(QueryLog)
        if conditions:
            query = query.where(and_(*conditions))
        query = query.order_by(QueryLog.timestamp.desc(), QueryLog.id.desc()).offset(offset).limit(limit)

        logs = list(self.session.execute(query).scalars().all())
        return logs, total


# ============================================
# SCORE SNAPSHOT REPOSITORY
# ============================================

class ScoreSnapshotRepository:
    """Repository for the append-only score history."""

    def __init__(self, session: Session):
        self.session = session

    def append(
        self,
        entity_id: int,
        score_total: int,
        risk_tier: str,
        positive_factors: List[str],
        negative_factors: List[str],
        components: Optional[Dict[str, Any]] = None,
        no_history: bool = False,
        algorithm_version: Optional[str] = None,
        computed_at: Optional[datetime] = None
    ) -> ScoreSnapshot:
        snapshot = ScoreSnapshot(
            entity_id=entity_id,
            score_total=score_total,
            risk_tier=risk_tier,
            positive_factors=list(positive_factors),
            negative_factors=list(negative_factors),
            components=components,
            no_history=no_history,
            algorithm_version=algorithm_version,
            computed_at=computed_at or utcnow()
        )
        self.session.add(snapshot)
        self.session.flush()
        return snapshot

    def list_recent(self, entity_id: int, limit: int = 12) -> List[ScoreSnapshot]:
        """Most recent snapshots first."""
        query = (
            select(ScoreSnapshot)
            .where(ScoreSnapshot.entity_id == entity_id)
            .order_by(ScoreSnapshot.computed_at.desc(), ScoreSnapshot.id.desc())
            .limit(limit)
        )
        return list(self.session.execute(query).scalars().all())

    def latest(self, entity_id: int) -> Optional[ScoreSnapshot]:
        snapshots = self.list_recent(entity_id, limit=1)
        return snapshots[0] if snapshots else None
