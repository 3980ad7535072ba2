"""
Operational Monitoring for CreditGate

This module provides:
- Query timing context manager for slow query detection
- Prometheus metrics for query outcomes, audit failures and bureau calls
- Database connection pool monitoring

Usage:
    from database.monitoring import query_timer, record_query_outcome

    with query_timer("consumption_increment"):
        repo.increment(entity_id, period)
"""

import logging
import time
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from functools import wraps
from typing import Optional, Dict, Any, List, Callable

from prometheus_client import Histogram, Counter, Gauge
from sqlalchemy import text

logger = logging.getLogger(__name__)


# ============================================
# CONFIGURATION
# ============================================

@dataclass
class MonitoringConfig:
    """Configuration for monitoring."""
    slow_query_threshold_ms: float = 1000.0  # Log queries slower than this
    warning_threshold_ms: float = 500.0       # Warn for queries slower than this
    enable_prometheus: bool = True
    enable_logging: bool = True


_config = MonitoringConfig()


def configure_monitoring(
    slow_query_threshold_ms: float = 1000.0,
    warning_threshold_ms: float = 500.0,
    enable_prometheus: bool = True,
    enable_logging: bool = True
) -> None:
    """
    Configure monitoring settings.

    Args:
        slow_query_threshold_ms: Log queries slower than this (ms)
        warning_threshold_ms: Warn for queries slower than this (ms)
        enable_prometheus: Enable Prometheus metrics
        enable_logging: Enable logging
    """
    global _config
    _config = MonitoringConfig(
        slow_query_threshold_ms=slow_query_threshold_ms,
        warning_threshold_ms=warning_threshold_ms,
        enable_prometheus=enable_prometheus,
        enable_logging=enable_logging
    )


# ============================================
# PROMETHEUS METRICS
# ============================================

db_query_duration = Histogram(
    'creditgate_db_query_duration_seconds',
    'Database query duration in seconds',
    ['operation', 'status'],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
)

db_slow_queries_total = Counter(
    'creditgate_db_slow_queries_total',
    'Total number of slow database queries',
    ['operation']
)

credit_queries_total = Counter(
    'creditgate_credit_queries_total',
    'Credit data query attempts by type and outcome',
    ['query_type', 'outcome']
)

audit_log_failures_total = Counter(
    'creditgate_audit_log_failures_total',
    'Audit log writes that failed after the query result was computed',
    ['query_type']
)

bureau_requests_total = Counter(
    'creditgate_bureau_requests_total',
    'Requests sent to the credit bureau by dataset and status',
    ['dataset', 'status']
)

db_pool_checked_out = Gauge(
    'creditgate_db_pool_checked_out',
    'Number of connections currently checked out'
)


def record_query_outcome(query_type: str, outcome: str) -> None:
    if _config.enable_prometheus:
        credit_queries_total.labels(query_type=query_type, outcome=outcome).inc()


def record_audit_failure(query_type: str) -> None:
    if _config.enable_prometheus:
        audit_log_failures_total.labels(query_type=query_type).inc()


def record_bureau_request(dataset: str, status: str) -> None:
    if _config.enable_prometheus:
        bureau_requests_total.labels(dataset=dataset, status=status).inc()


# ============================================
# QUERY STATS TRACKING
# ============================================

@dataclass
class QueryStats:
    """Statistics for a single operation."""
    operation: str
    count: int = 0
    total_time_ms: float = 0.0
    max_time_ms: float = 0.0
    errors: int = 0
    slow_queries: int = 0
    last_executed: Optional[datetime] = None

    @property
    def avg_time_ms(self) -> float:
        return self.total_time_ms / self.count if self.count > 0 else 0.0

    def record(self, duration_ms: float, error: bool = False, slow: bool = False) -> None:
        self.count += 1
        self.total_time_ms += duration_ms
        self.max_time_ms = max(self.max_time_ms, duration_ms)
        self.last_executed = datetime.now()

        if error:
            self.errors += 1
        if slow:
            self.slow_queries += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            'operation': self.operation,
            'count': self.count,
            'avg_time_ms': round(self.avg_time_ms, 2),
            'max_time_ms': round(self.max_time_ms, 2),
            'errors': self.errors,
            'slow_queries': self.slow_queries,
            'last_executed': self.last_executed.isoformat() if self.last_executed else None
        }


class QueryStatsCollector:
    """Thread-safe collector for query statistics."""

    def __init__(self):
        self._stats: Dict[str, QueryStats] = {}
        self._lock = threading.Lock()
        self._start_time = datetime.now()

    def record(self, operation: str, duration_ms: float, error: bool = False, slow: bool = False) -> None:
        with self._lock:
            if operation not in self._stats:
                self._stats[operation] = QueryStats(operation=operation)
            self._stats[operation].record(duration_ms, error, slow)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'uptime_seconds': (datetime.now() - self._start_time).total_seconds(),
                'operations': {
                    op: stats.to_dict() for op, stats in self._stats.items()
                }
            }

    def get_slow_queries(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                stats.to_dict()
                for stats in self._stats.values()
                if stats.slow_queries > 0
            ]

    def reset(self) -> None:
        with self._lock:
            self._stats.clear()
            self._start_time = datetime.now()


_stats_collector = QueryStatsCollector()


def get_db_metrics() -> Dict[str, Any]:
    """Get current query statistics."""
    return _stats_collector.get_stats()


def get_slow_query_report() -> List[Dict[str, Any]]:
    return _stats_collector.get_slow_queries()


def reset_metrics() -> None:
    _stats_collector.reset()


# ============================================
# QUERY TIMER
# ============================================

@contextmanager
def query_timer(operation: str):
    """
    Context manager to time and monitor database operations.

    Logs slow operations and records metrics for monitoring.

    Args:
        operation: Name of the operation (e.g., 'consumption_increment')
    """
    start_time = time.perf_counter()
    error_occurred = False

    try:
        yield
    except Exception:
        error_occurred = True
        raise
    finally:
        duration = time.perf_counter() - start_time
        duration_ms = duration * 1000

        is_slow = duration_ms > _config.slow_query_threshold_ms
        is_warning = duration_ms > _config.warning_threshold_ms

        _stats_collector.record(
            operation=operation,
            duration_ms=duration_ms,
            error=error_occurred,
            slow=is_slow
        )

        if _config.enable_prometheus:
            status = "error" if error_occurred else "success"
            db_query_duration.labels(operation=operation, status=status).observe(duration)
            if is_slow:
                db_slow_queries_total.labels(operation=operation).inc()

        if _config.enable_logging:
            if is_slow:
                logger.warning(
                    f"SLOW QUERY: {operation} took {duration_ms:.2f}ms "
                    f"(threshold: {_config.slow_query_threshold_ms}ms)"
                )
            elif is_warning and not error_occurred:
                logger.info(f"Query {operation} took {duration_ms:.2f}ms")


def timed_query(operation: str):
    """
    Decorator to time and monitor service methods.

    Usage:
        @timed_query("check_limit")
        def check_limit(self, entity_id, monthly_max):
            ...
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            with query_timer(operation):
                return func(*args, **kwargs)
        return wrapper
    return decorator


# ============================================
# HEALTH CHECK
# ============================================

@dataclass
class HealthStatus:
    """Database health status."""
    healthy: bool
    latency_ms: float
    pool_checked_out: int = 0
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'healthy': self.healthy,
            'latency_ms': round(self.latency_ms, 2),
            'pool_checked_out': self.pool_checked_out,
            'error': self.error,
            'timestamp': self.timestamp.isoformat()
        }


def check_health(engine, session_factory) -> HealthStatus:
    """
    Perform database health check with metrics.

    Args:
        engine: SQLAlchemy Engine
        session_factory: SQLAlchemy session factory

    Returns:
        HealthStatus with check results
    """
    start_time = time.perf_counter()

    try:
        session = session_factory()
        try:
            session.execute(text("SELECT 1"))
            latency = (time.perf_counter() - start_time) * 1000

            # StaticPool/NullPool do not track checkouts
            checked_out = getattr(engine.pool, "checkedout", lambda: 0)()
            if _config.enable_prometheus:
                db_pool_checked_out.set(checked_out)

            return HealthStatus(healthy=True, latency_ms=latency, pool_checked_out=checked_out)
        finally:
            session.close()

    except Exception as e:
        latency = (time.perf_counter() - start_time) * 1000
        logger.error(f"Database health check failed: {e}")
        return HealthStatus(healthy=False, latency_ms=latency, error=str(e))
