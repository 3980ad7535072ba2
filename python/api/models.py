"""
Pydantic request/response schemas for the CreditGate API

Response models mirror the dict views returned by the service layer.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from database.models import QueryType


# ============================================
# REQUESTS
# ============================================

class EntityConsentCreate(BaseModel):
    """Request schema for creating the caller's self-consent."""
    expires_at: datetime = Field(..., description="End of the validity window (ISO 8601)")
    starts_at: Optional[datetime] = Field(
        default=None,
        description="Start of the validity window; defaults to now and cannot be in the past"
    )


class QueryConsentCreate(BaseModel):
    """Request schema for authorizing a consultant to query the caller's data."""
    consultant_tax_id: str = Field(
        ...,
        min_length=1,
        max_length=20,
        description="RFC of the consultant entity (12 or 13 characters)"
    )
    expires_at: datetime = Field(..., description="End of the validity window (ISO 8601)")

    @field_validator('consultant_tax_id')
    @classmethod
    def strip_tax_id(cls, v: str) -> str:
        return v.strip()


class ConsentRenewal(BaseModel):
    """Request schema for extending a consent."""
    expires_at: datetime = Field(..., description="New expiry; must be later than the current one")


class ConsentVerificationRequest(BaseModel):
    """Request schema for a consultant checking its access to a titular."""
    tax_id: str = Field(..., min_length=1, max_length=20, description="Titular RFC")
    query_type: QueryType = Field(
        default=QueryType.CONSENT_VERIFICATION,
        description="Query type recorded in the audit trail"
    )


# ============================================
# CONSENTS
# ============================================

class EntityConsentResponse(BaseModel):
    """Self-consent with its derived state."""
    id: int
    entity_id: int
    starts_at: datetime
    expires_at: datetime
    revoked: bool
    revoked_at: Optional[datetime] = None
    state: str = Field(..., description="PENDING, ACTIVE, EXPIRED or REVOKED")
    created_at: Optional[datetime] = None


class QueryLogSummary(BaseModel):
    """One audit row shown in a consent detail view."""
    id: int
    timestamp: datetime
    query_type: str
    outcome: str
    consultant_name: Optional[str] = None


class QueryConsentResponse(BaseModel):
    """Query consent with its derived state and usage."""
    id: int
    titular_id: int
    consultant_id: int
    starts_at: datetime
    expires_at: datetime
    revoked: bool
    revoked_at: Optional[datetime] = None
    state: str = Field(..., description="PENDING, ACTIVE, EXPIRED or REVOKED")
    usage_count: int = Field(default=0, ge=0)
    last_used_at: Optional[datetime] = None
    origin_ip: Optional[str] = None
    created_at: Optional[datetime] = None
    recent_queries: List[QueryLogSummary] = Field(
        default_factory=list,
        description="Most recent queries made under this consent (detail view only)"
    )


class ConsentDecisionResponse(BaseModel):
    """Result of a consent verification."""
    titular_id: int
    tax_id: str
    query_type: str
    permitted: bool
    reason: Optional[str] = None
    consent_id: Optional[int] = Field(
        default=None,
        description="Matched query consent id; 0 for self-queries"
    )


# ============================================
# QUOTA
# ============================================

class QuotaResponse(BaseModel):
    """Monthly quota usage for the caller."""
    permitted: bool
    used: int = Field(..., ge=0)
    limit: int = Field(..., ge=0)
    remaining: int = Field(..., ge=0)
    period_start: str = Field(..., description="First day of the current period (YYYY-MM-DD)")
    resets_at: str = Field(..., description="Start of the next period (ISO 8601)")


# ============================================
# SCORING
# ============================================

class TitularSummary(BaseModel):
    id: int
    tax_id: str
    legal_name: str
    entity_type: str


class RiskTierResponse(BaseModel):
    label: str
    description: str
    range: str


class ComponentScoreResponse(BaseModel):
    """Points and explanatory factors for one score component."""
    name: str
    points: int = Field(..., ge=0)
    max_points: int
    percentage: float
    positive_factors: List[str] = Field(default_factory=list)
    negative_factors: List[str] = Field(default_factory=list)
    details: Dict[str, Any] = Field(default_factory=dict)


class RecommendationResponse(BaseModel):
    priority: str = Field(..., description="ALTA, MEDIA or BAJA")
    category: str
    title: str
    description: str
    impact: str


class ScoreResultResponse(BaseModel):
    """Full scoring output."""
    score_total: int = Field(..., ge=0, le=1000)
    risk_tier: RiskTierResponse
    no_history: bool = Field(..., description="True when the bureau has no record of the titular")
    components: Dict[str, ComponentScoreResponse]
    positive_factors: List[str]
    negative_factors: List[str]
    recommendations: List[RecommendationResponse]
    computed_at: str
    base_data: Dict[str, Any] = Field(default_factory=dict)


class QueryResponse(BaseModel):
    """Fields shared by every gated query response."""
    titular: TitularSummary
    query_type: str
    consent_id: int = Field(..., description="Query consent used; 0 for self-queries")
    remaining_queries: Optional[int] = Field(
        default=None,
        description="Queries left this period after this one (metered queries only)"
    )


class ScoreCalculationResponse(QueryResponse):
    score: ScoreResultResponse
    snapshot_id: Optional[int] = None


class ScoreSnapshotResponse(BaseModel):
    """One persisted score."""
    id: int
    entity_id: int
    score_total: int
    risk_tier: str
    no_history: bool
    positive_factors: List[str]
    negative_factors: List[str]
    algorithm_version: Optional[str] = None
    computed_at: datetime


class ScoreHistoryResponse(QueryResponse):
    data: List[ScoreSnapshotResponse]


class LatestScoreResponse(QueryResponse):
    data: ScoreSnapshotResponse


class ScoreComparison(BaseModel):
    current: ScoreSnapshotResponse
    previous: Optional[ScoreSnapshotResponse] = None
    difference: Optional[int] = None
    percent_change: Optional[float] = None
    improved: Optional[bool] = None


class ScoreComparisonResponse(QueryResponse):
    data: ScoreComparison


class CreditDataResponse(QueryResponse):
    """Raw bureau data returned by the credit-history queries."""
    data: Any = None


# ============================================
# HEALTH AND ERRORS
# ============================================

class HealthResponse(BaseModel):
    """Response schema for health check endpoint."""
    status: str = Field(default="healthy", description="Service status")
    database: Dict[str, Any] = Field(default_factory=dict, description="Database health check")
    algorithm_version: str = Field(..., description="Scoring algorithm version")
    memory_usage_mb: Optional[float] = Field(
        default=None,
        description="Current memory usage in MB"
    )
    uptime_seconds: Optional[int] = Field(
        default=None,
        description="Server uptime in seconds"
    )
    query_stats: Dict[str, Any] = Field(
        default_factory=dict,
        description="Per-operation timing since startup"
    )
    slow_operations: List[Dict[str, Any]] = Field(
        default_factory=list,
        description="Operations that crossed the slow query threshold"
    )
    error_message: Optional[str] = None


class ErrorDetail(BaseModel):
    """Detailed error information."""
    code: str = Field(..., description="Error code for programmatic handling")
    message: str = Field(..., description="Human-readable error message")
    field: Optional[str] = Field(default=None, description="Field that caused error")
    suggestion: Optional[str] = Field(default=None, description="How to fix the error")
    details: Optional[Any] = Field(default=None, description="Structured error payload")
    timestamp: str = Field(..., description="Error timestamp (ISO 8601)")


class ErrorResponse(BaseModel):
    """Standardized error response format."""
    error: ErrorDetail
