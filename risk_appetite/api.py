"""
FastAPI Router for Risk Appetite Endpoints.

Provides REST API for:
- Metric evaluation and observation recording
- Category and enterprise roll-ups
- Chain validation
- Statement approval and metric activation (gated)
- Breach workflow and statistics
- Batch sweep
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from .engine import AppetiteEngine
from .schemas import (
    ApprovalRequest,
    BoardAcceptanceCreate,
    BreachResolve,
    BreachResponse,
    BreachStatisticsResponse,
    CategoryStatusResponse,
    ChainValidationResponse,
    EnterpriseStatusResponse,
    GateResponse,
    ObservationCreate,
    ObservationResponse,
    RemediationCreate,
    SweepReportResponse,
    SweepRequest,
    ThresholdEvaluationResponse,
)
from .types import (
    ConfigurationError,
    EntityNotFoundError,
    InvalidBreachTransitionError,
    OperationResult,
    PersistenceError,
)

router = APIRouter(prefix="/appetite", tags=["Risk Appetite"])


# =============================================================
# HELPER: Engine dependency
# =============================================================

def get_engine(request: Request) -> AppetiteEngine:
    engine = getattr(request.app.state, "appetite_engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Appetite engine not configured")
    return engine


def _refused(result: OperationResult) -> HTTPException:
    return HTTPException(status_code=409, detail=result.error)


# =============================================================
# EVALUATION ENDPOINTS
# =============================================================

@router.get("/metrics/{metric_id}/evaluation", response_model=ThresholdEvaluationResponse)
def evaluate_metric(metric_id: str, engine: AppetiteEngine = Depends(get_engine)):
    """Evaluate the metric's latest indicator value. Never cached."""
    return ThresholdEvaluationResponse.model_validate(engine.evaluate_metric(metric_id))


@router.post("/metrics/{metric_id}/observations", response_model=ObservationResponse)
def record_observation(
    metric_id: str,
    body: ObservationCreate,
    engine: AppetiteEngine = Depends(get_engine),
):
    """
    Record an observed value and update the breach ledger.

    Returns the metric's open breach after the change, if any.
    """
    result = engine.record_observation_and_maybe_breach(
        body.organization_id,
        metric_id,
        body.value,
        indicator_value_ref=body.indicator_value_ref,
        acting_user_id=body.acting_user_id,
        idempotency_key=body.idempotency_key,
    )
    if not result.success:
        raise _refused(result)

    breach = result.data
    return ObservationResponse(
        breach=BreachResponse.model_validate(breach) if breach is not None else None
    )


@router.post("/metrics/{metric_id}/activate", response_model=GateResponse)
def activate_metric(
    metric_id: str,
    body: ApprovalRequest,
    engine: AppetiteEngine = Depends(get_engine),
):
    """Activate a metric. 409 lists every blocking condition."""
    result = engine.activate_metric(metric_id, body.user_id)
    if not result.success:
        raise _refused(result)
    return GateResponse(success=True)


# =============================================================
# ROLL-UP ENDPOINTS
# =============================================================

@router.get("/categories/{category_id}/status", response_model=CategoryStatusResponse)
def get_category_status(category_id: str, engine: AppetiteEngine = Depends(get_engine)):
    return CategoryStatusResponse.model_validate(engine.get_category_status(category_id))


@router.get("/organizations/{organization_id}/status", response_model=EnterpriseStatusResponse)
def get_enterprise_status(organization_id: str, engine: AppetiteEngine = Depends(get_engine)):
    return EnterpriseStatusResponse.model_validate(engine.get_enterprise_status(organization_id))


@router.get("/organizations/{organization_id}/chain", response_model=ChainValidationResponse)
def validate_chain(organization_id: str, engine: AppetiteEngine = Depends(get_engine)):
    """Collect-all chain validation. Warnings never make it invalid."""
    return ChainValidationResponse.model_validate(engine.validate_chain(organization_id))


# =============================================================
# STATEMENT ENDPOINTS
# =============================================================

@router.post("/statements/{statement_id}/approve", response_model=GateResponse)
def approve_statement(
    statement_id: str,
    body: ApprovalRequest,
    engine: AppetiteEngine = Depends(get_engine),
):
    """Approve a DRAFT statement. 409 carries the full gap list."""
    result = engine.approve_statement(statement_id, body.user_id)
    if not result.success:
        raise _refused(result)
    return GateResponse(success=True)


# =============================================================
# BREACH ENDPOINTS
# =============================================================

@router.get("/organizations/{organization_id}/breaches", response_model=List[BreachResponse])
def list_breaches(
    organization_id: str,
    metric_id: Optional[str] = Query(None, description="Filter by metric"),
    open_only: bool = Query(False, description="Only OPEN / IN_PROGRESS"),
    engine: AppetiteEngine = Depends(get_engine),
):
    breaches = engine.list_breaches(organization_id, metric_id=metric_id, open_only=open_only)
    return [BreachResponse.model_validate(b) for b in breaches]


@router.get(
    "/organizations/{organization_id}/breaches/statistics",
    response_model=BreachStatisticsResponse,
)
def breach_statistics(organization_id: str, engine: AppetiteEngine = Depends(get_engine)):
    return BreachStatisticsResponse.model_validate(engine.breach_statistics(organization_id))


@router.get("/breaches/{breach_id}", response_model=BreachResponse)
def get_breach(breach_id: str, engine: AppetiteEngine = Depends(get_engine)):
    return BreachResponse.model_validate(engine.get_breach(breach_id))


@router.get("/breaches/{breach_id}/chain", response_model=List[BreachResponse])
def escalation_chain(breach_id: str, engine: AppetiteEngine = Depends(get_engine)):
    """Escalation history, oldest first."""
    return [BreachResponse.model_validate(b) for b in engine.escalation_chain(breach_id)]


@router.post("/breaches/{breach_id}/remediation", response_model=BreachResponse)
def start_remediation(
    breach_id: str,
    body: RemediationCreate,
    engine: AppetiteEngine = Depends(get_engine),
):
    breach = engine.start_remediation(breach_id, body.plan, body.owner_id, body.due_date)
    return BreachResponse.model_validate(breach)


@router.post("/breaches/{breach_id}/resolve", response_model=BreachResponse)
def resolve_breach(
    breach_id: str,
    body: BreachResolve,
    engine: AppetiteEngine = Depends(get_engine),
):
    return BreachResponse.model_validate(engine.resolve_breach(breach_id, body.user_id, body.notes))


@router.post("/breaches/{breach_id}/board-acceptance", response_model=BreachResponse)
def board_accept(
    breach_id: str,
    body: BoardAcceptanceCreate,
    engine: AppetiteEngine = Depends(get_engine),
):
    breach = engine.board_accept(
        breach_id,
        body.user_id,
        body.rationale,
        temporary_threshold=body.temporary_threshold,
        valid_until=body.valid_until,
    )
    return BreachResponse.model_validate(breach)


# =============================================================
# SWEEP ENDPOINT
# =============================================================

@router.post("/sweep", response_model=SweepReportResponse)
def run_sweep(body: SweepRequest, engine: AppetiteEngine = Depends(get_engine)):
    """Re-evaluate every active linked metric now."""
    return SweepReportResponse.model_validate(engine.run_sweep(body.organization_id))


# =============================================================
# ERROR MAPPING
# =============================================================

def register_error_handlers(app: FastAPI) -> None:
    """Map engine exceptions to HTTP responses."""

    @app.exception_handler(EntityNotFoundError)
    async def not_found(request: Request, exc: EntityNotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(InvalidBreachTransitionError)
    async def invalid_transition(request: Request, exc: InvalidBreachTransitionError):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(ConfigurationError)
    async def configuration_error(request: Request, exc: ConfigurationError):
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(PersistenceError)
    async def persistence_error(request: Request, exc: PersistenceError):
        status_code = 503 if exc.is_retryable else 500
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})


def create_app(engine: AppetiteEngine) -> FastAPI:
    """FastAPI application serving the appetite router."""
    app = FastAPI(
        title="Risk Appetite & Tolerance API",
        description="Tolerance evaluation, breach ledger and appetite governance.",
        version="1.0.0",
    )
    app.state.appetite_engine = engine
    register_error_handlers(app)
    app.include_router(router)

    @app.get("/")
    def root():
        return {"status": "ok", "message": "Risk Appetite API is running"}

    return app
