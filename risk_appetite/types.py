"""
Risk Appetite Engine - Type Definitions.

============================================================
PURPOSE
============================================================
Type definitions shared by every layer of the appetite engine:
status vocabulary, tolerance metric configuration, breach ledger
entries, chain validation gaps, roll-up views and error types.

============================================================
STATUS VOCABULARY
============================================================
GREEN   - within tolerance
AMBER   - approaching a limit (early warning)
RED     - limit breached
UNKNOWN - no usable data (never treated as GREEN)

============================================================
DESIGN PRINCIPLES
============================================================
1. Computed statuses are ephemeral: never persisted, never cached
2. A null threshold means "no boundary on that side", never 0
3. Business refusals are values (OperationResult), not exceptions
4. Configuration and persistence failures are exceptions

============================================================
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional


# ============================================================
# ENUMERATIONS
# ============================================================

class MetricType(str, Enum):
    """How observed values are compared against a metric's limits."""

    RANGE = "RANGE"
    """Acceptable band with lower and upper limits."""

    MAXIMUM = "MAXIMUM"
    """Lower is better (NPL ratio, downtime, error rates)."""

    MINIMUM = "MINIMUM"
    """Higher is better (capital adequacy, liquidity, uptime)."""

    DIRECTIONAL = "DIRECTIONAL"
    """Judged by percentage change over a lookback window."""


class MaterialityType(str, Enum):
    """Materiality perspective of a tolerance metric."""

    INTERNAL = "INTERNAL"
    EXTERNAL = "EXTERNAL"
    DUAL = "DUAL"


class AppetiteLevel(str, Enum):
    """Declared willingness to accept risk in a category."""

    ZERO = "ZERO"
    LOW = "LOW"
    MODERATE = "MODERATE"
    HIGH = "HIGH"


class AppetiteStatus(str, Enum):
    """RAG status produced by evaluation and aggregation."""

    GREEN = "GREEN"
    """Within tolerance."""

    AMBER = "AMBER"
    """Outside the amber band - early warning."""

    RED = "RED"
    """Outside the red band - tolerance breached."""

    UNKNOWN = "UNKNOWN"
    """No current value, no baseline, or nothing monitored."""


class TrendPolarity(str, Enum):
    """Which direction of change is adverse for a DIRECTIONAL metric."""

    INCREASING_IS_BAD = "INCREASING_IS_BAD"
    DECREASING_IS_BAD = "DECREASING_IS_BAD"


class BreachSeverity(str, Enum):
    """Severity recorded on a breach ledger entry."""

    AMBER = "AMBER"
    RED = "RED"


class BreachStatus(str, Enum):
    """Lifecycle status of a breach ledger entry."""

    OPEN = "OPEN"
    """Detected, no remediation started."""

    IN_PROGRESS = "IN_PROGRESS"
    """Remediation under way."""

    RESOLVED = "RESOLVED"
    """Metric returned to GREEN or resolved manually."""

    CLOSED = "CLOSED"
    """Superseded by an escalated entry."""

    BOARD_ACCEPTED = "BOARD_ACCEPTED"
    """Board accepted the excursion. Terminal and immutable."""


class MetricConfigStatus(str, Enum):
    """Governance status of a tolerance metric definition."""

    DRAFT = "DRAFT"
    APPROVED = "APPROVED"
    SUPERSEDED = "SUPERSEDED"


class StatementStatus(str, Enum):
    """Governance status of a risk appetite statement."""

    DRAFT = "DRAFT"
    APPROVED = "APPROVED"
    SUPERSEDED = "SUPERSEDED"


class GapSeverity(str, Enum):
    """Severity of a chain validation gap."""

    CRITICAL = "CRITICAL"
    """Blocks approval actions."""

    WARNING = "WARNING"
    """Visible, never blocking."""


# ============================================================
# METRIC CONFIGURATION
# ============================================================

@dataclass(frozen=True)
class DirectionalConfig:
    """Trend settings for a DIRECTIONAL metric."""

    lookback_days: int
    """Compare against the latest value at or before today - lookback_days."""

    allowed_change_pct: float
    """Adverse change tolerated before AMBER. RED above twice this."""

    trend: TrendPolarity
    """Which direction of change is adverse."""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DirectionalConfig":
        """Build from the JSON shape stored on the metric row."""
        return cls(
            lookback_days=int(data["lookback_days"]),
            allowed_change_pct=float(data["allowed_change_pct"]),
            trend=TrendPolarity(data["trend"]),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lookback_days": self.lookback_days,
            "allowed_change_pct": self.allowed_change_pct,
            "trend": self.trend.value,
        }


@dataclass
class ToleranceMetric:
    """
    A quantitative boundary on one measurable signal.

    Detached from the ORM so the evaluator stays a pure function.
    All six thresholds are independently nullable.
    """

    id: str
    organization_id: str
    metric_name: str
    metric_type: MetricType

    appetite_category_id: Optional[str] = None
    unit: Optional[str] = None
    materiality_type: MaterialityType = MaterialityType.INTERNAL

    # Threshold bands
    green_min: Optional[float] = None
    green_max: Optional[float] = None
    amber_min: Optional[float] = None
    amber_max: Optional[float] = None
    red_min: Optional[float] = None
    red_max: Optional[float] = None

    directional_config: Optional[DirectionalConfig] = None

    indicator_id: Optional[str] = None
    """Linked KRI. Required before activation."""

    is_active: bool = False
    status: MetricConfigStatus = MetricConfigStatus.DRAFT

    escalation_rules: Dict[str, Any] = field(default_factory=dict)
    """Per-severity overrides of the default escalation rules."""

    aggregation_weight: float = 1.0
    """Stored for future weighted scoring. Not used by aggregation."""


@dataclass(frozen=True)
class IndicatorObservation:
    """One value of a Key Risk Indicator."""

    id: str
    indicator_id: str
    value: float
    value_date: date


# ============================================================
# EVALUATION RESULTS
# ============================================================

@dataclass(frozen=True)
class ThresholdEvaluationResult:
    """Verdict for a single observed value. Never cached."""

    status: AppetiteStatus
    threshold: str
    """Human-readable description of the band that applied."""

    explanation: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "threshold": self.threshold,
            "explanation": self.explanation,
        }


# ============================================================
# BREACH LEDGER
# ============================================================

@dataclass
class AppetiteBreach:
    """
    Detached snapshot of a breach ledger row.

    Returned by the tracker after its transaction commits, so callers
    never hold a live ORM object.
    """

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

    # Remediation
    remediation_plan: Optional[str] = None
    remediation_owner: Optional[str] = None
    remediation_due_date: Optional[date] = None

    # Escalation
    escalated_to: Optional[List[str]] = None
    escalated_at: Optional[datetime] = None

    # Resolution
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolution_notes: Optional[str] = None

    # Board acceptance
    board_accepted_by: Optional[str] = None
    board_accepted_at: Optional[datetime] = None
    board_acceptance_rationale: Optional[str] = None
    temporary_threshold: Optional[float] = None
    exception_valid_until: Optional[date] = None

    @property
    def is_open(self) -> bool:
        return self.status in (BreachStatus.OPEN, BreachStatus.IN_PROGRESS)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "tolerance_metric_id": self.tolerance_metric_id,
            "severity": self.severity.value,
            "status": self.status.value,
            "breach_value": self.breach_value,
            "threshold_value": self.threshold_value,
            "detected_at": self.detected_at.isoformat(),
            "indicator_value_id": self.indicator_value_id,
            "prior_breach_id": self.prior_breach_id,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "resolution_notes": self.resolution_notes,
        }


@dataclass
class BreachStatistics:
    """Ledger statistics for one organization."""

    total: int = 0
    open: int = 0
    by_severity: Dict[str, int] = field(
        default_factory=lambda: {s.value: 0 for s in BreachSeverity}
    )
    by_status: Dict[str, int] = field(
        default_factory=lambda: {s.value: 0 for s in BreachStatus}
    )
    avg_resolution_days: float = 0.0


# ============================================================
# CHAIN VALIDATION
# ============================================================

@dataclass(frozen=True)
class ChainValidationGap:
    """One missing link in category -> metric -> indicator -> data."""

    category: str
    issue: str
    severity: GapSeverity
    details: Optional[str] = None

    def render(self) -> str:
        return f"• {self.category}: {self.issue}"


@dataclass
class ChainValidationResult:
    """Collect-all result of chain validation."""

    is_valid: bool
    gaps: List[ChainValidationGap] = field(default_factory=list)

    @property
    def critical_gaps(self) -> List[ChainValidationGap]:
        return [g for g in self.gaps if g.severity == GapSeverity.CRITICAL]

    @property
    def warnings(self) -> List[ChainValidationGap]:
        return [g for g in self.gaps if g.severity == GapSeverity.WARNING]


# ============================================================
# ROLL-UP VIEWS
# ============================================================

@dataclass
class MetricStatusEntry:
    """Per-metric line of a category roll-up."""

    id: str
    name: str
    status: AppetiteStatus
    value: Optional[float]
    threshold: str
    last_updated: Optional[date]


@dataclass
class CategoryAppetiteStatus:
    """Category-level roll-up. Recomputed on every request."""

    category_id: str
    category_name: str
    appetite_level: AppetiteLevel
    status: AppetiteStatus
    metrics: List[MetricStatusEntry] = field(default_factory=list)


@dataclass
class EnterpriseSummary:
    """Category counts per status."""

    total_categories: int = 0
    red_count: int = 0
    amber_count: int = 0
    green_count: int = 0
    unknown_count: int = 0


@dataclass
class EnterpriseAppetiteStatus:
    """Enterprise-level roll-up. Recomputed on every request."""

    overall_status: AppetiteStatus
    categories: List[CategoryAppetiteStatus] = field(default_factory=list)
    summary: EnterpriseSummary = field(default_factory=EnterpriseSummary)


# ============================================================
# OPERATION RESULTS
# ============================================================

@dataclass
class OperationResult:
    """
    Typed outcome of a gated or tracked operation.

    A refusal is success=False with a user-readable error that lists
    every violated condition. Callers never rely on exceptions for it.
    """

    success: bool
    error: Optional[str] = None
    data: Any = None

    @classmethod
    def ok(cls, data: Any = None) -> "OperationResult":
        return cls(success=True, data=data)

    @classmethod
    def refused(cls, error: str) -> "OperationResult":
        return cls(success=False, error=error)


@dataclass
class SweepReport:
    """Outcome of a batch re-evaluation across metrics."""

    started_at: datetime
    finished_at: Optional[datetime] = None
    evaluated: int = 0
    breaches_open: int = 0
    statuses: Dict[str, int] = field(
        default_factory=lambda: {s.value: 0 for s in AppetiteStatus}
    )
    failures: Dict[str, str] = field(default_factory=dict)
    """metric_id -> error message."""

    skipped: List[str] = field(default_factory=list)
    """Metrics not started because the sweep was cancelled."""

    cancelled: bool = False


# ============================================================
# ERROR TYPES
# ============================================================

class AppetiteEngineError(Exception):
    """Base exception for the appetite engine."""
    pass


class ConfigurationError(AppetiteEngineError):
    """
    Metric or engine configuration cannot be evaluated.

    Programmer/configuration error. Never coerced to a status.
    """
    pass


class EntityNotFoundError(AppetiteEngineError):
    """A referenced metric, category, statement or breach does not exist."""

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found: {entity_id}")


class PersistenceError(AppetiteEngineError):
    """
    Persistence-layer failure (network, lock, constraint).

    Distinct from business refusals so callers can tell
    "please retry" from "please fix your configuration".
    """

    def __init__(
        self,
        message: str,
        is_retryable: bool = False,
        cause: Optional[Exception] = None,
    ):
        self.is_retryable = is_retryable
        self.cause = cause
        super().__init__(message)


class InvalidBreachTransitionError(AppetiteEngineError):
    """Raised when a breach lifecycle change is not allowed."""

    def __init__(
        self,
        from_status: BreachStatus,
        to_status: BreachStatus,
        reason: str = "",
    ):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Invalid breach transition from {from_status.value} "
            f"to {to_status.value}: {reason}"
        )
