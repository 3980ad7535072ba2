"""
Consent Authorization and Lifecycle Services for CreditGate

Two consent kinds guard every query:
- EntityConsent (self-consent): the titular lets the platform hold its data
- QueryConsent: the titular lets one specific consultant query its data

ConsentAuthorizationService answers "may X see Y's data right now?" and has
no side effects. ConsentLifecycleService creates, revokes and renews
consents; only the owning titular may mutate or view them.

State machine (derived, never stored):
    PENDING -> ACTIVE -> EXPIRED
    PENDING | ACTIVE -> REVOKED
EXPIRED and REVOKED are terminal; renewal extends the expiry of a
PENDING or ACTIVE consent.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from config_manager import ConfigManager, get_config
from database.models import (
    ConsentState,
    Entity,
    EntityConsent,
    QueryConsent,
    QueryOutcome,
    ensure_utc,
    utcnow,
)
from database.monitoring import timed_query
from database.repositories import (
    ConsentRepository,
    EntityNotFoundError,
    EntityRepository,
    QueryLogRepository,
)
from errors import (
    AccessDeniedError,
    ConsentConflictError,
    InputValidationError,
    InvalidConsentStateError,
    NotFoundError,
)
from request_context import RequestContext
from text_utils import validate_tax_id

logger = logging.getLogger(__name__)

SELF_CONSENT_MISSING = "entity lacks active self-consent"
TITULAR_NOT_AUTHORIZED = "titular has not authorized data sharing"
NO_ACTIVE_CONSENT = "no active consent between the parties"
TITULAR_INACTIVE = "titular entity is inactive"
CONSULTANT_INACTIVE = "consultant entity is inactive"

# Synthetic consent id returned for self-queries
SELF_QUERY_CONSENT_ID = 0

MUTABLE_STATES = (ConsentState.ACTIVE, ConsentState.PENDING)


@dataclass(frozen=True)
class ConsentDecision:
    """Outcome of a query permission check"""
    permitted: bool
    reason: Optional[str] = None
    consent_id: Optional[int] = None
    outcome: QueryOutcome = QueryOutcome.SUCCESS

    @classmethod
    def deny(cls, reason: str, outcome: QueryOutcome = QueryOutcome.DENIED_NO_CONSENT) -> 'ConsentDecision':
        return cls(permitted=False, reason=reason, outcome=outcome)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'permitted': self.permitted,
            'reason': self.reason,
            'consent_id': self.consent_id,
        }


# ============================================
# READ-SIDE VIEWS
# ============================================

def entity_consent_view(consent: EntityConsent, now: Optional[datetime] = None) -> Dict[str, Any]:
    return {
        'id': consent.id,
        'entity_id': consent.entity_id,
        'starts_at': ensure_utc(consent.starts_at),
        'expires_at': ensure_utc(consent.expires_at),
        'revoked': consent.revoked,
        'revoked_at': ensure_utc(consent.revoked_at),
        'state': consent.state(now).value,
        'created_at': ensure_utc(consent.created_at),
    }


def query_consent_view(consent: QueryConsent, now: Optional[datetime] = None) -> Dict[str, Any]:
    return {
        'id': consent.id,
        'titular_id': consent.titular_id,
        'consultant_id': consent.consultant_id,
        'starts_at': ensure_utc(consent.starts_at),
        'expires_at': ensure_utc(consent.expires_at),
        'revoked': consent.revoked,
        'revoked_at': ensure_utc(consent.revoked_at),
        'state': consent.state(now).value,
        'usage_count': consent.usage_count,
        'last_used_at': ensure_utc(consent.last_used_at),
        'origin_ip': consent.origin_ip,
        'created_at': ensure_utc(consent.created_at),
    }


# ============================================
# AUTHORIZATION
# ============================================

class ConsentAuthorizationService:
    """Pure read-decision over the consent store"""

    def __init__(self, session: Session):
        self.session = session
        self.consents = ConsentRepository(session)

    @timed_query("verify_query_permission")
    def verify_query_permission(
        self,
        consultant_id: int,
        titular_id: int,
        now: Optional[datetime] = None
    ) -> ConsentDecision:
        """
        Decide whether the consultant may query the titular's data.

        Self-queries need only the entity's own active self-consent and never
        look at QueryConsent. Third-party queries need the titular's active
        self-consent AND an active QueryConsent for the pair.

        Args:
            consultant_id: Entity requesting the data
            titular_id: Entity whose data is requested
            now: Evaluation instant (defaults to now)

        Returns:
            ConsentDecision; consent_id is 0 for self-queries
        """
        now = now or utcnow()

        if consultant_id == titular_id:
            if self.consents.find_active_entity_consent(titular_id, now) is None:
                return ConsentDecision.deny(SELF_CONSENT_MISSING)
            return ConsentDecision(permitted=True, consent_id=SELF_QUERY_CONSENT_ID)

        if self.consents.find_active_entity_consent(titular_id, now) is None:
            return ConsentDecision.deny(TITULAR_NOT_AUTHORIZED)

        consent = self.consents.find_active_query_consent(titular_id, consultant_id, now)
        if consent is None:
            return ConsentDecision.deny(NO_ACTIVE_CONSENT)

        return ConsentDecision(permitted=True, consent_id=consent.id)

    def check_entities_active(self, consultant: Entity, titular: Entity) -> Optional[ConsentDecision]:
        """Return a denial when either party is deactivated, else None"""
        if not titular.is_active:
            return ConsentDecision.deny(TITULAR_INACTIVE, QueryOutcome.DENIED_INACTIVE_ENTITY)
        if not consultant.is_active:
            return ConsentDecision.deny(CONSULTANT_INACTIVE, QueryOutcome.DENIED_INACTIVE_ENTITY)
        return None


# ============================================
# LIFECYCLE
# ============================================

class ConsentLifecycleService:
    """Create, view, revoke and renew consents on behalf of the titular"""

    def __init__(self, session: Session, config: Optional[ConfigManager] = None):
        self.session = session
        self.config = config or get_config()
        self.consents = ConsentRepository(session)
        self.entities = EntityRepository(session)
        self.logs = QueryLogRepository(session)

    # --- helpers --------------------------------------------------------

    def _require_entity(self, entity_id: int) -> Entity:
        entity = self.entities.get_by_id(entity_id)
        if entity is None:
            raise NotFoundError(f"Entity {entity_id} not found", code="ENTITY_NOT_FOUND")
        return entity

    @staticmethod
    def _require_owner(owner_id: int, ctx: RequestContext) -> None:
        if owner_id != ctx.entity_id:
            raise AccessDeniedError(
                "Only the titular that granted this consent may access it",
                code="NOT_CONSENT_OWNER"
            )

    @staticmethod
    def _require_mutable(consent, now: datetime, action: str) -> None:
        state = consent.state(now)
        if state not in MUTABLE_STATES:
            raise InvalidConsentStateError(
                f"Cannot {action} a consent in state {state.value}",
                payload={'state': state.value}
            )

    @staticmethod
    def _validate_renewal(consent, new_expires_at: datetime) -> datetime:
        new_expires_at = ensure_utc(new_expires_at)
        if new_expires_at <= ensure_utc(consent.expires_at):
            raise InputValidationError(
                "New expiry must be later than the current expiry",
                field="expires_at",
                code="EXPIRY_NOT_EXTENDED",
                suggestion=f"Use a date after {ensure_utc(consent.expires_at).isoformat()}"
            )
        return new_expires_at

    def start_of_local_day(self, now: datetime) -> datetime:
        """Midnight of the current local day, as UTC"""
        tz = self.config.get_timezone()
        local_day = ensure_utc(now).astimezone(tz).date()
        return ensure_utc(datetime.combine(local_day, time.min, tzinfo=tz))

    # --- self-consent ---------------------------------------------------

    def create_entity_consent(
        self,
        ctx: RequestContext,
        expires_at: datetime,
        starts_at: Optional[datetime] = None,
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Create the caller's self-consent.

        Args:
            ctx: Caller identity (the owning entity)
            expires_at: End of the validity window
            starts_at: Start of the window (defaults to now; must not be in the past)
            now: Evaluation instant (defaults to now)

        Raises:
            InputValidationError: If the window is invalid
            ConsentConflictError: If a non-revoked, unexpired self-consent exists
        """
        now = now or utcnow()
        starts_at = ensure_utc(starts_at) if starts_at else now
        expires_at = ensure_utc(expires_at)

        tolerance = timedelta(seconds=self.config.consent.start_tolerance_seconds)
        if starts_at < now - tolerance:
            raise InputValidationError(
                "Consent start cannot be in the past",
                field="starts_at",
                code="START_IN_PAST",
                suggestion="Omit starts_at to start immediately"
            )
        if expires_at <= starts_at:
            raise InputValidationError(
                "Consent expiry must be after its start",
                field="expires_at",
                code="INVALID_CONSENT_WINDOW"
            )

        try:
            self.entities.lock(ctx.entity_id)
        except EntityNotFoundError:
            raise NotFoundError(f"Entity {ctx.entity_id} not found", code="ENTITY_NOT_FOUND")

        existing = self.consents.find_unexpired_entity_consent(ctx.entity_id, now)
        if existing is not None:
            raise ConsentConflictError(
                "An active self-consent already exists for this entity",
                payload={'consent_id': existing.id}
            )

        consent = self.consents.create_entity_consent(ctx.entity_id, starts_at, expires_at)
        logger.info(f"Self-consent {consent.id} created for entity {ctx.entity_id}")
        return entity_consent_view(consent, now)

    def _load_entity_consent(self, ctx: RequestContext, consent_id: int) -> EntityConsent:
        consent = self.consents.get_entity_consent(consent_id)
        if consent is None:
            raise NotFoundError(f"Self-consent {consent_id} not found", code="CONSENT_NOT_FOUND")
        self._require_owner(consent.entity_id, ctx)
        return consent

    def get_entity_consent(self, ctx: RequestContext, consent_id: int) -> Dict[str, Any]:
        return entity_consent_view(self._load_entity_consent(ctx, consent_id))

    def list_entity_consents(self, ctx: RequestContext) -> List[Dict[str, Any]]:
        now = utcnow()
        return [entity_consent_view(c, now) for c in self.consents.list_entity_consents(ctx.entity_id)]

    def revoke_entity_consent(
        self,
        ctx: RequestContext,
        consent_id: int,
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        now = now or utcnow()
        consent = self._load_entity_consent(ctx, consent_id)
        self._require_mutable(consent, now, "revoke")
        self.consents.revoke(consent, now)
        logger.info(f"Self-consent {consent_id} revoked by entity {ctx.entity_id}")
        return entity_consent_view(consent, now)

    def renew_entity_consent(
        self,
        ctx: RequestContext,
        consent_id: int,
        new_expires_at: datetime,
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        now = now or utcnow()
        consent = self._load_entity_consent(ctx, consent_id)
        self._require_mutable(consent, now, "renew")
        self.consents.renew(consent, self._validate_renewal(consent, new_expires_at))
        logger.info(f"Self-consent {consent_id} renewed until {consent.expires_at}")
        return entity_consent_view(consent, now)

    # --- third-party consent ---------------------------------------------

    def create_query_consent(
        self,
        ctx: RequestContext,
        consultant_tax_id: str,
        expires_at: datetime,
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Authorize a consultant to query the caller's data.

        The consent starts at the beginning of the current local day.

        Raises:
            InputValidationError: Bad tax id, window, or consultant == titular
            NotFoundError: Consultant unknown
            AccessDeniedError: Consultant deactivated
        """
        now = now or utcnow()
        tax_id = validate_tax_id(consultant_tax_id, field="consultant_tax_id")

        consultant = self.entities.get_by_tax_id(tax_id)
        if consultant is None:
            raise NotFoundError("Consultant entity not found", code="CONSULTANT_NOT_FOUND")
        if consultant.id == ctx.entity_id:
            raise InputValidationError(
                "A query consent cannot be granted to yourself",
                field="consultant_tax_id",
                code="SELF_QUERY_CONSENT",
                suggestion="Self-queries are covered by the self-consent"
            )
        if not consultant.is_active:
            raise AccessDeniedError(CONSULTANT_INACTIVE, code="CONSULTANT_INACTIVE")

        starts_at = self.start_of_local_day(now)
        expires_at = ensure_utc(expires_at)
        if expires_at <= starts_at or expires_at <= now:
            raise InputValidationError(
                "Consent expiry must be in the future",
                field="expires_at",
                code="INVALID_CONSENT_WINDOW"
            )

        consent = self.consents.create_query_consent(
            titular_id=ctx.entity_id,
            consultant_id=consultant.id,
            starts_at=starts_at,
            expires_at=expires_at,
            origin_ip=ctx.origin_ip
        )
        logger.info(
            f"Query consent {consent.id} granted by entity {ctx.entity_id} to {consultant.id}"
        )
        return query_consent_view(consent, now)

    def _load_query_consent(self, ctx: RequestContext, consent_id: int) -> QueryConsent:
        consent = self.consents.get_query_consent(consent_id)
        if consent is None:
            raise NotFoundError(f"Query consent {consent_id} not found", code="CONSENT_NOT_FOUND")
        self._require_owner(consent.titular_id, ctx)
        return consent

    def get_query_consent_detail(self, ctx: RequestContext, consent_id: int) -> Dict[str, Any]:
        """Consent view plus usage and its most recent query log rows

        Usage and logs stay visible after revocation.
        """
        consent = self._load_query_consent(ctx, consent_id)
        view = query_consent_view(consent)
        limit = self.config.consent.recent_logs_limit
        view['recent_queries'] = [
            {
                'id': log.id,
                'timestamp': ensure_utc(log.timestamp),
                'query_type': log.query_type.value,
                'outcome': log.outcome.value,
                'consultant_name': log.consultant_name,
            }
            for log in self.logs.list_for_consent(consent_id, limit=limit)
        ]
        return view

    def list_granted(self, ctx: RequestContext) -> List[Dict[str, Any]]:
        now = utcnow()
        return [query_consent_view(c, now) for c in self.consents.list_granted(ctx.entity_id)]

    def list_received(self, ctx: RequestContext) -> List[Dict[str, Any]]:
        now = utcnow()
        return [query_consent_view(c, now) for c in self.consents.list_received(ctx.entity_id)]

    def revoke_query_consent(
        self,
        ctx: RequestContext,
        consent_id: int,
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        now = now or utcnow()
        consent = self._load_query_consent(ctx, consent_id)
        self._require_mutable(consent, now, "revoke")
        self.consents.revoke(consent, now)
        logger.info(f"Query consent {consent_id} revoked by entity {ctx.entity_id}")
        return query_consent_view(consent, now)

    def renew_query_consent(
        self,
        ctx: RequestContext,
        consent_id: int,
        new_expires_at: datetime,
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        now = now or utcnow()
        consent = self._load_query_consent(ctx, consent_id)
        self._require_mutable(consent, now, "renew")
        self.consents.renew(consent, self._validate_renewal(consent, new_expires_at))
        logger.info(f"Query consent {consent_id} renewed until {consent.expires_at}")
        return query_consent_view(consent, now)


# ============================================
# FASTAPI DEPENDENCY INJECTION
# ============================================

_consent_service_factory = None


def configure_consent_service(db_provider, config=None):
    """
    Configure the consent service factory for dependency injection.

    Call this during application startup.

    Args:
        db_provider: DatabaseSessionProvider instance
        config: Optional ConfigManager instance
    """
    global _consent_service_factory
    _consent_service_factory = (db_provider, config)


def get_consent_service():
    """
    FastAPI dependency for getting a ConsentLifecycleService.

    The session commits when the request handler returns and rolls back if
    it raises.

    Yields:
        ConsentLifecycleService instance

    Raises:
        RuntimeError: If consent service not configured
    """
    if _consent_service_factory is None:
        raise RuntimeError(
            "Consent service not configured. Call configure_consent_service() first."
        )

    db_provider, config = _consent_service_factory

    with db_provider.session_scope() as session:
        yield ConsentLifecycleService(session, config)
