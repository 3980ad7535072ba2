"""
FastAPI CreditGate API Server

Provides REST API endpoints for consent management, quota usage and gated
credit-history queries. The caller is authenticated upstream; identity
arrives as trusted headers and is turned into a RequestContext.

Usage:
    uvicorn api.server:app --reload --port 8000
"""

import os
import logging
from datetime import datetime, timezone
from typing import List, Optional

import psutil
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Security
from fastapi.security import APIKeyHeader

from api.models import (
    ConsentDecisionResponse,
    ConsentRenewal,
    ConsentVerificationRequest,
    CreditDataResponse,
    EntityConsentCreate,
    EntityConsentResponse,
    ErrorResponse,
    HealthResponse,
    LatestScoreResponse,
    QueryConsentCreate,
    QueryConsentResponse,
    QuotaResponse,
    ScoreCalculationResponse,
    ScoreComparisonResponse,
    ScoreHistoryResponse,
)
from api.middleware import (
    setup_cors,
    setup_exception_handlers,
    RequestLoggingMiddleware,
)
from bureau_client import BureauClient
from config_manager import get_config, ConfigManager, ConfigurationError
from database.connection import DatabaseSettings, close_db, get_db_provider, init_db
from database.consent_service import (
    ConsentLifecycleService,
    configure_consent_service,
    get_consent_service,
)
from database.monitoring import (
    check_health,
    configure_monitoring,
    get_db_metrics,
    get_slow_query_report,
)
from database.query_service import (
    QueryOrchestrator,
    configure_query_orchestrator,
    get_query_orchestrator,
)
from request_context import RequestContext
from security_logger import get_security_logger

# Setup logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# Environment variables with defaults
API_HOST = os.getenv("API_HOST", "127.0.0.1")
API_PORT = int(os.getenv("API_PORT", "8000"))
CONFIG_PATH = os.getenv("CONFIG_PATH", "config.yaml")
API_KEY = os.getenv("API_KEY", "")  # Required for authenticated endpoints

# Global state
_config: Optional[ConfigManager] = None
_startup_time: Optional[datetime] = None

# API Key security scheme
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)

GATED_RESPONSES = {
    403: {"model": ErrorResponse, "description": "No active consent or entity inactive"},
    404: {"model": ErrorResponse, "description": "Titular not found"},
    422: {"model": ErrorResponse, "description": "Invalid tax id"},
    500: {"model": ErrorResponse, "description": "Bureau unavailable or internal error"},
}
METERED_RESPONSES = {
    **GATED_RESPONSES,
    429: {"model": ErrorResponse, "description": "Monthly quota exhausted"},
}


async def verify_api_key(api_key: Optional[str] = Security(api_key_header)) -> str:
    """Verify API key for protected endpoints.

    If API_KEY environment variable is not set, authentication is disabled.
    """
    if not API_KEY:
        # API key not configured - allow all requests (development mode)
        return "dev-mode"

    if not api_key:
        raise HTTPException(
            status_code=401, detail="Missing API key. Provide X-API-Key header."
        )

    if api_key != API_KEY:
        raise HTTPException(status_code=403, detail="Invalid API key")

    return api_key


def get_config_instance() -> ConfigManager:
    """Dependency to get the config instance."""
    global _config
    if _config is None:
        _config = get_config(CONFIG_PATH)
    return _config


def get_request_context(
    request: Request,
    x_entity_id: Optional[int] = Header(default=None),
    x_user_id: Optional[int] = Header(default=None),
    x_max_monthly_queries: Optional[int] = Header(default=None, ge=0),
    x_entity_name: Optional[str] = Header(default=None),
    config: ConfigManager = Depends(get_config_instance),
    api_key: str = Depends(verify_api_key),
) -> RequestContext:
    """Build the caller identity from the gateway headers."""
    if x_entity_id is None or x_user_id is None:
        raise HTTPException(
            status_code=401,
            detail="Missing caller identity. Provide X-Entity-ID and X-User-ID headers.",
        )

    max_queries = x_max_monthly_queries
    if max_queries is None:
        max_queries = config.quota.default_monthly_queries

    return RequestContext(
        entity_id=x_entity_id,
        user_id=x_user_id,
        max_monthly_queries=max_queries,
        entity_name=x_entity_name or "",
        origin_ip=request.client.host if request.client else None,
        request_id=getattr(request.state, "request_id", ""),
    )


# Create FastAPI application
app = FastAPI(
    title="CreditGate API",
    description="Consent-gated access to credit history and credit scoring",
    version="1.0.0",
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
)

# Setup middleware
setup_cors(app)
app.add_middleware(RequestLoggingMiddleware)
setup_exception_handlers(app)


@app.on_event("startup")
async def startup():
    """Load configuration, connect to the database and wire the services."""
    global _config, _startup_time

    logger.info("Starting CreditGate API...")

    try:
        _config = get_config(CONFIG_PATH)
        logger.info(f"Configuration loaded from {_config.config_path}")

        db_provider = init_db(DatabaseSettings.from_env(_config.database))
        configure_monitoring()
        configure_consent_service(db_provider, _config)
        configure_query_orchestrator(
            db_provider,
            bureau_client=BureauClient(_config),
            config=_config,
            security_logger=get_security_logger(),
        )

        _startup_time = datetime.now(timezone.utc)
        logger.info("API ready: bureau=%s", _config.bureau.base_url)

    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        raise
    except Exception as e:
        logger.error(f"Startup error: {e}")
        raise


@app.on_event("shutdown")
async def shutdown():
    """Cleanup on shutdown."""
    logger.info("Shutting down CreditGate API...")
    close_db()


# ============================================
# SCORING
# ============================================

@app.post(
    "/api/v1/scoring/{tax_id}",
    response_model=ScoreCalculationResponse,
    responses=METERED_RESPONSES,
    summary="Calculate credit score",
    description="Compute and store the titular's credit score (consumes one query)",
)
def calculate_score(
    tax_id: str,
    ctx: RequestContext = Depends(get_request_context),
    orchestrator: QueryOrchestrator = Depends(get_query_orchestrator),
):
    return orchestrator.calculate_score(ctx, tax_id)


@app.get(
    "/api/v1/scoring/{tax_id}/history",
    response_model=ScoreHistoryResponse,
    responses=GATED_RESPONSES,
    summary="Score history",
    description="Most recent stored scores, newest first (does not consume quota)",
)
def score_history(
    tax_id: str,
    limit: Optional[int] = Query(default=None, ge=1, le=100),
    ctx: RequestContext = Depends(get_request_context),
    orchestrator: QueryOrchestrator = Depends(get_query_orchestrator),
):
    return orchestrator.score_history(ctx, tax_id, limit)


@app.get(
    "/api/v1/scoring/{tax_id}/latest",
    response_model=LatestScoreResponse,
    responses=GATED_RESPONSES,
    summary="Latest score",
)
def latest_score(
    tax_id: str,
    ctx: RequestContext = Depends(get_request_context),
    orchestrator: QueryOrchestrator = Depends(get_query_orchestrator),
):
    return orchestrator.latest_score(ctx, tax_id)


@app.get(
    "/api/v1/scoring/{tax_id}/compare",
    response_model=ScoreComparisonResponse,
    responses=GATED_RESPONSES,
    summary="Compare the two most recent scores",
)
def compare_scores(
    tax_id: str,
    ctx: RequestContext = Depends(get_request_context),
    orchestrator: QueryOrchestrator = Depends(get_query_orchestrator),
):
    return orchestrator.compare_scores(ctx, tax_id)


# ============================================
# CREDIT HISTORY
# ============================================

@app.get(
    "/api/v1/credit-history/{tax_id}",
    response_model=CreditDataResponse,
    responses=METERED_RESPONSES,
    summary="Credit summary statistics",
)
def credit_summary(
    tax_id: str,
    ctx: RequestContext = Depends(get_request_context),
    orchestrator: QueryOrchestrator = Depends(get_query_orchestrator),
):
    return orchestrator.get_credit_summary(ctx, tax_id)


@app.get(
    "/api/v1/credit-history/{tax_id}/full",
    response_model=CreditDataResponse,
    responses=METERED_RESPONSES,
    summary="Full credit history",
    description="Summary, obligations and the most recent payments",
)
def full_history(
    tax_id: str,
    ctx: RequestContext = Depends(get_request_context),
    orchestrator: QueryOrchestrator = Depends(get_query_orchestrator),
):
    return orchestrator.get_full_history(ctx, tax_id)


@app.get(
    "/api/v1/credit-history/{tax_id}/obligations",
    response_model=CreditDataResponse,
    responses=METERED_RESPONSES,
    summary="Obligation details",
)
def obligations(
    tax_id: str,
    ctx: RequestContext = Depends(get_request_context),
    orchestrator: QueryOrchestrator = Depends(get_query_orchestrator),
):
    return orchestrator.get_obligations(ctx, tax_id)


@app.get(
    "/api/v1/credit-history/{tax_id}/payments",
    response_model=CreditDataResponse,
    responses=METERED_RESPONSES,
    summary="Payment history",
)
def payments(
    tax_id: str,
    obligation_id: Optional[int] = Query(default=None, ge=1),
    ctx: RequestContext = Depends(get_request_context),
    orchestrator: QueryOrchestrator = Depends(get_query_orchestrator),
):
    return orchestrator.get_payments(ctx, tax_id, obligation_id)


# ============================================
# SELF-CONSENTS
# ============================================

@app.post(
    "/api/v1/entity-consents",
    response_model=EntityConsentResponse,
    status_code=201,
    responses={
        409: {"model": ErrorResponse, "description": "An active self-consent already exists"},
        422: {"model": ErrorResponse, "description": "Invalid consent window"},
    },
    summary="Create self-consent",
)
def create_entity_consent(
    body: EntityConsentCreate,
    ctx: RequestContext = Depends(get_request_context),
    service: ConsentLifecycleService = Depends(get_consent_service),
):
    return service.create_entity_consent(ctx, body.expires_at, starts_at=body.starts_at)


@app.get(
    "/api/v1/entity-consents",
    response_model=List[EntityConsentResponse],
    summary="List own self-consents",
)
def list_entity_consents(
    ctx: RequestContext = Depends(get_request_context),
    service: ConsentLifecycleService = Depends(get_consent_service),
):
    return service.list_entity_consents(ctx)


@app.get(
    "/api/v1/entity-consents/{consent_id}",
    response_model=EntityConsentResponse,
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    summary="Get self-consent",
)
def get_entity_consent(
    consent_id: int,
    ctx: RequestContext = Depends(get_request_context),
    service: ConsentLifecycleService = Depends(get_consent_service),
):
    return service.get_entity_consent(ctx, consent_id)


@app.patch(
    "/api/v1/entity-consents/{consent_id}/revoke",
    response_model=EntityConsentResponse,
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    summary="Revoke self-consent",
)
def revoke_entity_consent(
    consent_id: int,
    ctx: RequestContext = Depends(get_request_context),
    service: ConsentLifecycleService = Depends(get_consent_service),
):
    return service.revoke_entity_consent(ctx, consent_id)


@app.patch(
    "/api/v1/entity-consents/{consent_id}/renew",
    response_model=EntityConsentResponse,
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    summary="Renew self-consent",
)
def renew_entity_consent(
    consent_id: int,
    body: ConsentRenewal,
    ctx: RequestContext = Depends(get_request_context),
    service: ConsentLifecycleService = Depends(get_consent_service),
):
    return service.renew_entity_consent(ctx, consent_id, body.expires_at)


# ============================================
# QUERY CONSENTS
# ============================================

@app.post(
    "/api/v1/query-consents",
    response_model=QueryConsentResponse,
    status_code=201,
    responses={
        403: {"model": ErrorResponse, "description": "Consultant inactive"},
        404: {"model": ErrorResponse, "description": "Consultant not found"},
        422: {"model": ErrorResponse, "description": "Invalid consultant or window"},
    },
    summary="Authorize a consultant",
)
def create_query_consent(
    body: QueryConsentCreate,
    ctx: RequestContext = Depends(get_request_context),
    service: ConsentLifecycleService = Depends(get_consent_service),
):
    return service.create_query_consent(ctx, body.consultant_tax_id, body.expires_at)


@app.get(
    "/api/v1/query-consents",
    response_model=List[QueryConsentResponse],
    summary="List consents granted by the caller",
)
def list_granted_consents(
    ctx: RequestContext = Depends(get_request_context),
    service: ConsentLifecycleService = Depends(get_consent_service),
):
    return service.list_granted(ctx)


@app.get(
    "/api/v1/query-consents/received",
    response_model=List[QueryConsentResponse],
    summary="List consents received by the caller",
)
def list_received_consents(
    ctx: RequestContext = Depends(get_request_context),
    service: ConsentLifecycleService = Depends(get_consent_service),
):
    return service.list_received(ctx)


@app.post(
    "/api/v1/query-consents/verify",
    response_model=ConsentDecisionResponse,
    responses={404: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
    summary="Verify access to a titular",
)
def verify_consent(
    body: ConsentVerificationRequest,
    ctx: RequestContext = Depends(get_request_context),
    orchestrator: QueryOrchestrator = Depends(get_query_orchestrator),
):
    return orchestrator.verify_consent(ctx, body.tax_id, body.query_type)


@app.get(
    "/api/v1/query-consents/{consent_id}",
    response_model=QueryConsentResponse,
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    summary="Query consent detail with recent usage",
)
def get_query_consent(
    consent_id: int,
    ctx: RequestContext = Depends(get_request_context),
    service: ConsentLifecycleService = Depends(get_consent_service),
):
    return service.get_query_consent_detail(ctx, consent_id)


@app.patch(
    "/api/v1/query-consents/{consent_id}/revoke",
    response_model=QueryConsentResponse,
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    summary="Revoke a query consent",
)
def revoke_query_consent(
    consent_id: int,
    ctx: RequestContext = Depends(get_request_context),
    service: ConsentLifecycleService = Depends(get_consent_service),
):
    return service.revoke_query_consent(ctx, consent_id)


@app.patch(
    "/api/v1/query-consents/{consent_id}/renew",
    response_model=QueryConsentResponse,
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    summary="Renew a query consent",
)
def renew_query_consent(
    consent_id: int,
    body: ConsentRenewal,
    ctx: RequestContext = Depends(get_request_context),
    service: ConsentLifecycleService = Depends(get_consent_service),
):
    return service.renew_query_consent(ctx, consent_id, body.expires_at)


# ============================================
# QUOTA AND HEALTH
# ============================================

@app.get(
    "/api/v1/quota",
    response_model=QuotaResponse,
    summary="Quota usage",
    description="Queries used and remaining in the current monthly period",
)
def quota_usage(
    ctx: RequestContext = Depends(get_request_context),
    orchestrator: QueryOrchestrator = Depends(get_query_orchestrator),
):
    return orchestrator.quota_usage(ctx)


@app.get(
    "/api/v1/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check service and database health",
)
def health_check(config: ConfigManager = Depends(get_config_instance)):
    """Return health status. Always returns HTTP 200."""
    try:
        provider = get_db_provider()
        database = check_health(provider.engine, provider.session_factory).to_dict()

        memory_usage_mb = None
        try:
            process = psutil.Process()
            memory_usage_mb = round(process.memory_info().rss / (1024 * 1024), 2)
        except psutil.Error:
            pass

        uptime_seconds = None
        if _startup_time:
            uptime = datetime.now(timezone.utc) - _startup_time
            uptime_seconds = int(uptime.total_seconds())

        return HealthResponse(
            status="healthy" if database["healthy"] else "degraded",
            database=database,
            algorithm_version=config.scoring.algorithm_version,
            memory_usage_mb=memory_usage_mb,
            uptime_seconds=uptime_seconds,
            query_stats=get_db_metrics()["operations"],
            slow_operations=get_slow_query_report(),
        )
    except Exception as e:
        # Always return HTTP 200, but report error in JSON
        logger.error(f"Health check failed: {e}")
        return HealthResponse(
            status="error",
            algorithm_version="unknown",
            error_message=type(e).__name__,
        )


# Root redirect to docs
@app.get("/", include_in_schema=False)
async def root():
    """Redirect root to API documentation."""
    from fastapi.responses import RedirectResponse

    return RedirectResponse(url="/api/docs")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=API_HOST, port=API_PORT)
