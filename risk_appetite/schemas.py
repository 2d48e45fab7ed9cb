"""
Pydantic Schemas for the Risk Appetite API.
"""

from datetime import date, datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .types import (
    AppetiteLevel,
    AppetiteStatus,
    BreachSeverity,
    BreachStatus,
    GapSeverity,
)


# =============================================================
# EVALUATION
# =============================================================

class ThresholdEvaluationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    status: AppetiteStatus
    threshold: str
    explanation: str = ""


class ObservationCreate(BaseModel):
    """Observed value for a tolerance metric."""

    organization_id: str
    value: float
    indicator_value_ref: Optional[str] = None
    acting_user_id: Optional[str] = None
    idempotency_key: Optional[str] = Field(None, max_length=128)
    """Reuse on retries. Defaults to metric id + detection window."""


# =============================================================
# BREACHES
# =============================================================

class BreachResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    organization_id: str
    tolerance_metric_id: str
    severity: BreachSeverity
    status: BreachStatus
    breach_value: float
    threshold_value: float
    detected_at: datetime
    indicator_value_id: Optional[str] = None
    prior_breach_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    updated_at: Optional[datetime] = None

    remediation_plan: Optional[str] = None
    remediation_owner: Optional[str] = None
    remediation_due_date: Optional[date] = None

    escalated_to: Optional[List[str]] = None
    escalated_at: Optional[datetime] = None

    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolution_notes: Optional[str] = None

    board_accepted_by: Optional[str] = None
    board_accepted_at: Optional[datetime] = None
    board_acceptance_rationale: Optional[str] = None
    temporary_threshold: Optional[float] = None
    exception_valid_until: Optional[date] = None


class ObservationResponse(BaseModel):
    """Ledger outcome of an observation. breach is None when nothing is open."""

    breach: Optional[BreachResponse] = None


class RemediationCreate(BaseModel):
    plan: str = Field(..., min_length=1)
    owner_id: str
    due_date: Optional[date] = None


class BreachResolve(BaseModel):
    user_id: str
    notes: Optional[str] = None


class BoardAcceptanceCreate(BaseModel):
    user_id: str
    rationale: str = Field(..., min_length=1)
    temporary_threshold: Optional[float] = None
    valid_until: Optional[date] = None


class BreachStatisticsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    total: int
    open: int
    by_severity: Dict[str, int]
    by_status: Dict[str, int]
    avg_resolution_days: float


# =============================================================
# ROLL-UPS
# =============================================================

class MetricStatusResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    status: AppetiteStatus
    value: Optional[float] = None
    threshold: str
    last_updated: Optional[date] = None


class CategoryStatusResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    category_id: str
    category_name: str
    appetite_level: AppetiteLevel
    status: AppetiteStatus
    metrics: List[MetricStatusResponse] = []


class EnterpriseSummaryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    total_categories: int
    red_count: int
    amber_count: int
    green_count: int
    unknown_count: int


class EnterpriseStatusResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    overall_status: AppetiteStatus
    categories: List[CategoryStatusResponse] = []
    summary: EnterpriseSummaryResponse


# =============================================================
# CHAIN VALIDATION AND GATE
# =============================================================

class ChainGapResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    category: str
    issue: str
    severity: GapSeverity
    details: Optional[str] = None


class ChainValidationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    is_valid: bool
    gaps: List[ChainGapResponse] = []


class ApprovalRequest(BaseModel):
    """Acting user for a gated transition."""

    user_id: str


class GateResponse(BaseModel):
    success: bool
    error: Optional[str] = None


# =============================================================
# SWEEP
# =============================================================

class SweepRequest(BaseModel):
    organization_id: Optional[str] = None


class SweepReportResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    started_at: datetime
    finished_at: Optional[datetime] = None
    evaluated: int
    breaches_open: int
    statuses: Dict[str, int]
    failures: Dict[str, str]
    skipped: List[str]
    cancelled: bool
