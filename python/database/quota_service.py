"""
Quota Ledger for CreditGate

Per-consultant, per-calendar-month query counters. The period key is the
first day of the current month in the configured local timezone and is
computed by a single function for both the check and the increment.

Usage:
    with db_provider.session_scope() as session:
        ledger = QuotaLedger(session, config)
        status = ledger.check_limit(entity_id, monthly_max=100)
        if status.permitted:
            ledger.record_query(entity_id, monthly_max=100)
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from config_manager import ConfigManager, get_config
from database.models import utcnow
from database.monitoring import query_timer
from database.repositories import ConsumptionRepository

logger = logging.getLogger(__name__)


def period_start_for(now: datetime, tz: ZoneInfo) -> date:
    """First day of the calendar month containing `now`, in local time"""
    local = now.astimezone(tz)
    return date(local.year, local.month, 1)


def next_period_start(period_start: date) -> date:
    if period_start.month == 12:
        return date(period_start.year + 1, 1, 1)
    return date(period_start.year, period_start.month + 1, 1)


@dataclass(frozen=True)
class QuotaStatus:
    """Result of a quota check"""
    permitted: bool
    used: int
    limit: int
    remaining: int
    period_start: date
    resets_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            'permitted': self.permitted,
            'used': self.used,
            'limit': self.limit,
            'remaining': self.remaining,
            'period_start': self.period_start.isoformat(),
            'resets_at': self.resets_at.isoformat(),
        }


class QuotaLedger:
    """Checks and increments monthly query counters"""

    def __init__(self, session: Session, config: Optional[ConfigManager] = None):
        self.session = session
        self.config = config or get_config()
        self.repo = ConsumptionRepository(session)
        self._tz = self.config.get_timezone()

    def current_period(self, now: Optional[datetime] = None) -> date:
        return period_start_for(now or utcnow(), self._tz)

    def check_limit(
        self,
        entity_id: int,
        monthly_max: int,
        now: Optional[datetime] = None
    ) -> QuotaStatus:
        """
        Check whether the entity may perform another query this period.

        Args:
            entity_id: Consultant entity
            monthly_max: Plan limit from the caller's identity
            now: Evaluation instant (defaults to now)

        Returns:
            QuotaStatus with permitted = used < monthly_max and
            remaining = monthly_max - used as of this check
        """
        period = self.current_period(now)
        with query_timer("quota_check"):
            used = self.repo.get_count(entity_id, period)

        resets_at = datetime.combine(next_period_start(period), time.min, tzinfo=self._tz)
        return QuotaStatus(
            permitted=used < monthly_max,
            used=used,
            limit=monthly_max,
            remaining=max(monthly_max - used, 0),
            period_start=period,
            resets_at=resets_at,
        )

    def record_query(
        self,
        entity_id: int,
        monthly_max: Optional[int] = None,
        now: Optional[datetime] = None
    ) -> Optional[int]:
        """
        Increment the entity's counter for the current period.

        With `monthly_max` the increment is conditional on the stored count
        still being below it, so two concurrent requests racing for the last
        slot cannot both succeed.

        Returns:
            The new count, or None if the limit was reached first
        """
        now = now or utcnow()
        period = self.current_period(now)
        with query_timer("quota_increment"):
            count = self.repo.increment(entity_id, period, now=now, limit=monthly_max)

        if count is None:
            logger.info(f"Quota increment refused for entity {entity_id}: limit {monthly_max} reached")
        return count
