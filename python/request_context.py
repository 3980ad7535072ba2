"""
Explicit per-request identity passed into service calls.

The upstream gateway authenticates the caller; this service receives the
consultant entity, the operator user and the plan limit as plain values.
"""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class RequestContext:
    """Authenticated caller identity"""
    entity_id: int
    user_id: int
    max_monthly_queries: int
    entity_name: str = ""
    origin_ip: Optional[str] = None
    request_id: str = ""
