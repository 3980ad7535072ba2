"""
Audit Log Service for CreditGate

Appends one QueryLog row per authorization decision. A successful query
attributed to a third-party consent also bumps that consent's usage
counter in the same transaction.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from database.models import QueryLog, QueryOutcome, QueryType, utcnow
from database.repositories import ConsentRepository, QueryLogRepository

logger = logging.getLogger(__name__)


@dataclass
class LogEntry:
    """One query attempt to record"""
    titular_id: int
    consultant_id: int
    query_type: QueryType
    outcome: QueryOutcome
    consent_id: int = 0
    operator_user_id: Optional[int] = None
    consultant_name: Optional[str] = None
    origin_ip: Optional[str] = None
    detail: Optional[str] = None


class AuditLogService:
    """Records query attempts and maintains consent usage counters"""

    def __init__(self, session: Session):
        self.session = session
        self.logs = QueryLogRepository(session)
        self.consents = ConsentRepository(session)

    def record_log(self, entry: LogEntry, now: Optional[datetime] = None) -> QueryLog:
        """
        Append the log row; on success with a real consent, update its usage.

        Args:
            entry: Attempt to record
            now: Decision time (defaults to now)

        Returns:
            Created QueryLog
        """
        now = now or utcnow()
        log = self.logs.append(
            titular_id=entry.titular_id,
            consultant_id=entry.consultant_id,
            query_type=entry.query_type,
            outcome=entry.outcome,
            consent_id=entry.consent_id,
            operator_user_id=entry.operator_user_id,
            consultant_name=entry.consultant_name,
            origin_ip=entry.origin_ip,
            detail=entry.detail,
            timestamp=now,
        )

        if entry.outcome == QueryOutcome.SUCCESS and entry.consent_id:
            if not self.consents.increment_usage(entry.consent_id, now):
                logger.warning(f"Usage update skipped: query consent {entry.consent_id} not found")

        logger.debug(
            f"Query log {log.id}: {entry.query_type.value} {entry.outcome.value} "
            f"consultant={entry.consultant_id} titular={entry.titular_id}"
        )
        return log
