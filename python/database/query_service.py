"""
Query Orchestrator for CreditGate

Runs every credit-data query through the same gate:

    validate tax id -> resolve titular -> entity status -> consent
    -> quota check -> bureau fetch -> score -> counter + snapshot -> audit log

Each step uses its own short transaction; the bureau fetch happens outside
any transaction. Denials are logged before the error is raised so no caller
sees a refusal that is not in the audit trail. The success log is written
after the result is computed and never aborts it.

Usage:
    orchestrator = QueryOrchestrator(db_provider, BureauClient(config), config)
    result = orchestrator.calculate_score(ctx, "GODE561231GR8")
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from config_manager import ConfigManager, get_config
from bureau_client import (
    BureauClient,
    BureauDataNotFound,
    fetch_full_history,
    fetch_scoring_inputs,
)
from database import monitoring
from database.audit_service import AuditLogService, LogEntry
from database.consent_service import ConsentAuthorizationService, ConsentDecision
from database.models import Entity, QueryOutcome, QueryType, utcnow
from database.quota_service import QuotaLedger, QuotaStatus
from database.repositories import EntityRepository
from database.scoring_service import ScoringHistoryService
from errors import (
    AccessDeniedError,
    InputValidationError,
    NotFoundError,
    QuotaExceededError,
    UpstreamError,
)
from request_context import RequestContext
from scoring_engine import compute_score, no_history_result
from security_logger import SecurityLogger, get_security_logger
from text_utils import sanitize_for_logging, validate_tax_id

logger = logging.getLogger(__name__)

UPSTREAM_MESSAGE = "Credit bureau is temporarily unavailable"


@dataclass(frozen=True)
class QueryGrant:
    """A query that passed entity, consent and (if metered) quota checks"""
    titular_id: int
    titular_tax_id: str
    titular_name: str
    titular_type: str
    consultant_name: str
    consent_id: int
    quota: Optional[QuotaStatus] = None

    def titular_view(self) -> Dict[str, Any]:
        return {
            'id': self.titular_id,
            'tax_id': self.titular_tax_id,
            'legal_name': self.titular_name,
            'entity_type': self.titular_type,
        }


class QueryOrchestrator:
    """Authorizes, meters, fetches, scores and logs credit-data queries"""

    def __init__(
        self,
        db_provider,
        bureau_client: Optional[BureauClient] = None,
        config: Optional[ConfigManager] = None,
        security_logger: Optional[SecurityLogger] = None
    ):
        self.db = db_provider
        self.config = config or get_config()
        self.bureau = bureau_client or BureauClient(self.config)
        self.security_logger = security_logger or get_security_logger()

    # ============================================
    # AUDIT
    # ============================================

    def _record(
        self,
        ctx: RequestContext,
        grant_or_titular_id,
        query_type: QueryType,
        outcome: QueryOutcome,
        now: datetime,
        consent_id: int = 0,
        consultant_name: Optional[str] = None,
        detail: Optional[str] = None
    ) -> None:
        """Write one QueryLog row; failures are reported, never raised"""
        titular_id = grant_or_titular_id
        if isinstance(grant_or_titular_id, QueryGrant):
            titular_id = grant_or_titular_id.titular_id
            consent_id = grant_or_titular_id.consent_id
            consultant_name = grant_or_titular_id.consultant_name

        monitoring.record_query_outcome(query_type.value, outcome.value)
        entry = LogEntry(
            titular_id=titular_id,
            consultant_id=ctx.entity_id,
            query_type=query_type,
            outcome=outcome,
            consent_id=consent_id,
            operator_user_id=ctx.user_id,
            consultant_name=consultant_name or ctx.entity_name or None,
            origin_ip=ctx.origin_ip,
            detail=detail,
        )
        try:
            with self.db.session_scope() as session:
                AuditLogService(session).record_log(entry, now=now)
        except Exception as e:
            logger.exception(
                "Audit log write failed for %s by entity %s", query_type.value, ctx.entity_id
            )
            self.security_logger.log_audit_failure(
                consultant_id=ctx.entity_id,
                titular_id=titular_id,
                query_type=query_type.value,
                error=type(e).__name__,
            )
            monitoring.record_audit_failure(query_type.value)

    # ============================================
    # GATE
    # ============================================

    def _deny(
        self,
        ctx: RequestContext,
        titular: Entity,
        decision: ConsentDecision,
        query_type: QueryType,
        now: datetime
    ) -> None:
        self._record(
            ctx, titular.id, query_type, decision.outcome, now, detail=decision.reason
        )
        self.security_logger.log_access_denied(
            consultant_id=ctx.entity_id,
            titular_id=titular.id,
            reason=decision.reason,
            query_type=query_type.value,
            outcome=decision.outcome.value,
        )
        code = "ENTITY_INACTIVE" if decision.outcome == QueryOutcome.DENIED_INACTIVE_ENTITY else "NO_CONSENT"
        raise AccessDeniedError(decision.reason, code=code)

    def _quota_exceeded(
        self,
        ctx: RequestContext,
        grant: QueryGrant,
        status: QuotaStatus,
        query_type: QueryType,
        now: datetime
    ) -> None:
        if self.config.audit.log_quota_exceeded:
            self._record(
                ctx, grant, query_type, QueryOutcome.DENIED_QUOTA_EXCEEDED, now,
                detail=f"{status.used}/{status.limit}"
            )
        self.security_logger.log_quota_exceeded(ctx.entity_id, status.used, status.limit)
        raise QuotaExceededError(
            used=status.used,
            limit=status.limit,
            period_start=status.period_start.isoformat(),
            resets_at=status.resets_at.isoformat(),
        )

    def _decide(self, ctx: RequestContext, tax_id: str, now: datetime):
        """Resolve both parties and evaluate the consent decision

        Returns:
            (titular, consultant, decision) where decision is the first
            denial found or the consent decision
        """
        try:
            tax_id = validate_tax_id(tax_id)
        except InputValidationError as e:
            self.security_logger.log_validation_failure(
                field=e.field or "tax_id",
                error_code=e.code,
                input_value=tax_id or "",
                source="query_service",
                additional_context={"consultant_id": ctx.entity_id},
            )
            raise
        with self.db.session_scope() as session:
            entities = EntityRepository(session)
            titular = entities.get_by_tax_id(tax_id)
            if titular is None:
                raise NotFoundError("Titular entity not found", code="TITULAR_NOT_FOUND")
            consultant = entities.get_by_id(ctx.entity_id)
            if consultant is None:
                raise NotFoundError("Consultant entity not found", code="CONSULTANT_NOT_FOUND")

            authorization = ConsentAuthorizationService(session)
            decision = authorization.check_entities_active(consultant, titular)
            if decision is None:
                decision = authorization.verify_query_permission(consultant.id, titular.id, now)
        return titular, consultant, decision

    def authorize(
        self,
        ctx: RequestContext,
        tax_id: str,
        query_type: QueryType,
        metered: bool = True,
        now: Optional[datetime] = None
    ) -> QueryGrant:
        """
        Run the entity, consent and quota checks for one query.

        Denials are logged and raised. Nothing is logged for a grant; the
        caller logs the final outcome once the query completes.

        Raises:
            InputValidationError: Malformed tax id (security log only)
            NotFoundError: Unknown titular or consultant (no log)
            AccessDeniedError: Inactive entity or missing consent
            QuotaExceededError: Monthly quota exhausted (metered queries only)
        """
        now = now or utcnow()
        titular, consultant, decision = self._decide(ctx, tax_id, now)
        if not decision.permitted:
            self._deny(ctx, titular, decision, query_type, now)

        grant = QueryGrant(
            titular_id=titular.id,
            titular_tax_id=titular.tax_id,
            titular_name=titular.legal_name,
            titular_type=titular.entity_type.value,
            consultant_name=ctx.entity_name or consultant.legal_name,
            consent_id=decision.consent_id or 0,
        )
        if not metered:
            return grant

        with self.db.session_scope() as session:
            status = QuotaLedger(session, self.config).check_limit(
                ctx.entity_id, ctx.max_monthly_queries, now
            )
        if not status.permitted:
            self._quota_exceeded(ctx, grant, status, query_type, now)

        return replace(grant, quota=status)

    def _fetch(self, ctx: RequestContext, grant: QueryGrant, query_type: QueryType,
               fetch: Callable[[str], Any], now: datetime) -> Any:
        try:
            return fetch(grant.titular_tax_id)
        except UpstreamError as e:
            logger.error(
                "Bureau fetch failed for %s (%s): %s",
                sanitize_for_logging(grant.titular_tax_id), query_type.value, e
            )
            self._record(
                ctx, grant, query_type, QueryOutcome.UPSTREAM_FAILURE, now,
                detail=type(e).__name__
            )
            raise UpstreamError(UPSTREAM_MESSAGE)

    def _consume(
        self,
        ctx: RequestContext,
        grant: QueryGrant,
        query_type: QueryType,
        now: datetime,
        on_recorded: Optional[Callable] = None
    ) -> Any:
        """Atomically take one quota slot and run `on_recorded` in the same transaction

        If a concurrent query took the last slot first, nothing is persisted
        and the attempt is refused as quota exceeded.
        """
        result = None
        with self.db.session_scope() as session:
            count = QuotaLedger(session, self.config).record_query(
                ctx.entity_id, ctx.max_monthly_queries, now
            )
            if count is not None and on_recorded is not None:
                result = on_recorded(session)

        if count is None:
            status = grant.quota
            exhausted = QuotaStatus(
                permitted=False,
                used=status.limit,
                limit=status.limit,
                remaining=0,
                period_start=status.period_start,
                resets_at=status.resets_at,
            )
            self._quota_exceeded(ctx, grant, exhausted, query_type, now)
        return result

    def _metered_query(
        self,
        ctx: RequestContext,
        tax_id: str,
        query_type: QueryType,
        fetch: Callable[[str], Any]
    ) -> Dict[str, Any]:
        now = utcnow()
        grant = self.authorize(ctx, tax_id, query_type, now=now)
        data = self._fetch(ctx, grant, query_type, fetch, now)
        self._consume(ctx, grant, query_type, now)
        self._record(ctx, grant, query_type, QueryOutcome.SUCCESS, now)
        return self._response(grant, query_type, data=data)

    @staticmethod
    def _response(grant: QueryGrant, query_type: QueryType, **payload) -> Dict[str, Any]:
        response = {
            'titular': grant.titular_view(),
            'query_type': query_type.value,
            'consent_id': grant.consent_id,
        }
        if grant.quota is not None:
            response['remaining_queries'] = max(grant.quota.remaining - 1, 0)
        response.update(payload)
        return response

    # ============================================
    # SCORING
    # ============================================

    def calculate_score(self, ctx: RequestContext, tax_id: str) -> Dict[str, Any]:
        """
        Compute, persist and return the titular's credit score.

        Args:
            ctx: Caller identity
            tax_id: Titular RFC

        Returns:
            Dict with titular, score, snapshot_id, consent_id and remaining_queries
        """
        query_type = QueryType.SCORE_CALCULATION
        now = utcnow()
        grant = self.authorize(ctx, tax_id, query_type, now=now)

        inputs = self._fetch(
            ctx, grant, query_type,
            lambda rfc: fetch_scoring_inputs(self.bureau, rfc),
            now
        )
        if inputs.no_history:
            result = no_history_result(computed_at=now)
        else:
            result = compute_score(
                inputs.summary, inputs.obligations, inputs.pending_payments, computed_at=now
            )

        def save(session):
            return ScoringHistoryService(session, self.config).save_snapshot(grant.titular_id, result).id

        snapshot_id = self._consume(ctx, grant, query_type, now, on_recorded=save)
        self._record(ctx, grant, query_type, QueryOutcome.SUCCESS, now)

        logger.info(
            "Score %s (%s) computed for titular %s by entity %s",
            result.score_total, result.risk_tier.label, grant.titular_id, ctx.entity_id
        )
        return self._response(grant, query_type, score=result.to_dict(), snapshot_id=snapshot_id)

    def _history_view(
        self,
        ctx: RequestContext,
        tax_id: str,
        read: Callable[[ScoringHistoryService, int], Any]
    ) -> Dict[str, Any]:
        query_type = QueryType.SCORE_HISTORY
        now = utcnow()
        grant = self.authorize(ctx, tax_id, query_type, metered=False, now=now)
        # The grant is logged even when there is nothing stored to read
        self._record(ctx, grant, query_type, QueryOutcome.SUCCESS, now)
        with self.db.session_scope() as session:
            data = read(ScoringHistoryService(session, self.config), grant.titular_id)
        return self._response(grant, query_type, data=data)

    def score_history(self, ctx: RequestContext, tax_id: str, limit: Optional[int] = None) -> Dict[str, Any]:
        return self._history_view(ctx, tax_id, lambda svc, entity_id: svc.history(entity_id, limit))

    def latest_score(self, ctx: RequestContext, tax_id: str) -> Dict[str, Any]:
        return self._history_view(ctx, tax_id, lambda svc, entity_id: svc.latest(entity_id))

    def compare_scores(self, ctx: RequestContext, tax_id: str) -> Dict[str, Any]:
        return self._history_view(ctx, tax_id, lambda svc, entity_id: svc.compare(entity_id))

    # ============================================
    # CREDIT HISTORY
    # ============================================

    def _not_found_as(self, func: Callable[[str], Any], default: Any) -> Callable[[str], Any]:
        def fetch(tax_id: str) -> Any:
            try:
                return func(tax_id)
            except BureauDataNotFound:
                return default
        return fetch

    def get_credit_summary(self, ctx: RequestContext, tax_id: str) -> Dict[str, Any]:
        return self._metered_query(
            ctx, tax_id, QueryType.CREDIT_SUMMARY,
            self._not_found_as(self.bureau.get_credit_summary, None)
        )

    def get_full_history(self, ctx: RequestContext, tax_id: str) -> Dict[str, Any]:
        max_payments = self.config.scoring.max_payments_returned
        return self._metered_query(
            ctx, tax_id, QueryType.FULL_HISTORY,
            lambda rfc: fetch_full_history(self.bureau, rfc, max_payments=max_payments)
        )

    def get_obligations(self, ctx: RequestContext, tax_id: str) -> Dict[str, Any]:
        return self._metered_query(
            ctx, tax_id, QueryType.OBLIGATIONS,
            self._not_found_as(self.bureau.get_obligation_details, [])
        )

    def get_payments(
        self,
        ctx: RequestContext,
        tax_id: str,
        obligation_id: Optional[int] = None
    ) -> Dict[str, Any]:
        return self._metered_query(
            ctx, tax_id, QueryType.PAYMENTS,
            self._not_found_as(lambda rfc: self.bureau.get_payments(rfc, obligation_id), [])
        )

    # ============================================
    # CONSENT VERIFICATION AND QUOTA
    # ============================================

    def verify_consent(
        self,
        ctx: RequestContext,
        tax_id: str,
        query_type: QueryType = QueryType.CONSENT_VERIFICATION
    ) -> Dict[str, Any]:
        """
        Check whether the caller may query the titular, and log the decision.

        Unlike the data queries a denial is returned, not raised. A granted
        third-party check counts as a use of the consent.
        """
        now = utcnow()
        titular, _, decision = self._decide(ctx, tax_id, now)
        outcome = decision.outcome if not decision.permitted else QueryOutcome.SUCCESS
        self._record(
            ctx, titular.id, query_type, outcome, now,
            consent_id=decision.consent_id or 0,
            detail=decision.reason
        )
        if not decision.permitted:
            self.security_logger.log_access_denied(
                consultant_id=ctx.entity_id,
                titular_id=titular.id,
                reason=decision.reason,
                query_type=query_type.value,
                outcome=decision.outcome.value,
            )
        return {
            'titular_id': titular.id,
            'tax_id': titular.tax_id,
            'query_type': query_type.value,
            **decision.to_dict(),
        }

    def quota_usage(self, ctx: RequestContext) -> Dict[str, Any]:
        with self.db.session_scope() as session:
            status = QuotaLedger(session, self.config).check_limit(
                ctx.entity_id, ctx.max_monthly_queries
            )
        return status.to_dict()


# ============================================
# FASTAPI DEPENDENCY INJECTION
# ============================================

_query_orchestrator: Optional[QueryOrchestrator] = None


def configure_query_orchestrator(
    db_provider,
    bureau_client: Optional[BureauClient] = None,
    config: Optional[ConfigManager] = None,
    security_logger: Optional[SecurityLogger] = None
) -> QueryOrchestrator:
    """
    Configure the orchestrator used by the API routes.

    Call this during application startup.
    """
    global _query_orchestrator
    _query_orchestrator = QueryOrchestrator(db_provider, bureau_client, config, security_logger)
    return _query_orchestrator


def get_query_orchestrator() -> QueryOrchestrator:
    """
    FastAPI dependency for the configured QueryOrchestrator.

    Raises:
        RuntimeError: If the orchestrator is not configured
    """
    if _query_orchestrator is None:
        raise RuntimeError(
            "Query orchestrator not configured. Call configure_query_orchestrator() first."
        )
    return _query_orchestrator
