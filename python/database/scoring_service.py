"""
Score History Service for CreditGate

Persists scoring results as append-only snapshots and serves the
read-side views over them (recent history, latest, comparison of the
two most recent).
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from config_manager import ConfigManager, get_config
from database.models import ScoreSnapshot, ensure_utc
from database.monitoring import timed_query
from database.repositories import ScoreSnapshotRepository
from errors import NotFoundError
from scoring_engine import ScoreResult

logger = logging.getLogger(__name__)


def snapshot_view(snapshot: ScoreSnapshot) -> Dict[str, Any]:
    return {
        'id': snapshot.id,
        'entity_id': snapshot.entity_id,
        'score_total': snapshot.score_total,
        'risk_tier': snapshot.risk_tier,
        'no_history': snapshot.no_history,
        'positive_factors': list(snapshot.positive_factors or []),
        'negative_factors': list(snapshot.negative_factors or []),
        'algorithm_version': snapshot.algorithm_version,
        'computed_at': ensure_utc(snapshot.computed_at),
    }


class ScoringHistoryService:
    """Writes and reads ScoreSnapshot rows for one titular at a time"""

    def __init__(self, session: Session, config: Optional[ConfigManager] = None):
        self.session = session
        self.config = config or get_config()
        self.snapshots = ScoreSnapshotRepository(session)

    @timed_query("save_snapshot")
    def save_snapshot(self, entity_id: int, result: ScoreResult) -> ScoreSnapshot:
        """Append a snapshot of `result`; prior snapshots are never touched"""
        snapshot = self.snapshots.append(
            entity_id=entity_id,
            score_total=result.score_total,
            risk_tier=result.risk_tier.label,
            positive_factors=result.positive_factors,
            negative_factors=result.negative_factors,
            components={name: comp.points for name, comp in result.components.items()},
            no_history=result.no_history,
            algorithm_version=self.config.scoring.algorithm_version,
            computed_at=result.computed_at,
        )
        logger.debug(f"Score snapshot {snapshot.id} saved for entity {entity_id}")
        return snapshot

    def history(self, entity_id: int, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        limit = limit or self.config.scoring.history_limit
        return [snapshot_view(s) for s in self.snapshots.list_recent(entity_id, limit=limit)]

    def latest(self, entity_id: int) -> Dict[str, Any]:
        snapshot = self.snapshots.latest(entity_id)
        if snapshot is None:
            raise NotFoundError("No score has been computed for this entity", code="SCORE_NOT_FOUND")
        return snapshot_view(snapshot)

    def compare(self, entity_id: int) -> Dict[str, Any]:
        """
        Compare the two most recent snapshots.

        With a single snapshot, `previous` and the difference fields are None.

        Raises:
            NotFoundError: If the entity has never been scored
        """
        recent = self.snapshots.list_recent(entity_id, limit=2)
        if not recent:
            raise NotFoundError("No score has been computed for this entity", code="SCORE_NOT_FOUND")

        current = recent[0]
        previous = recent[1] if len(recent) > 1 else None

        comparison = {
            'current': snapshot_view(current),
            'previous': snapshot_view(previous) if previous else None,
            'difference': None,
            'percent_change': None,
            'improved': None,
        }
        if previous is not None:
            difference = current.score_total - previous.score_total
            comparison['difference'] = difference
            comparison['improved'] = difference > 0
            if previous.score_total:
                comparison['percent_change'] = round(difference / previous.score_total * 100, 2)
        return comparison
