"""
Risk Appetite Engine - ORM Models.

============================================================
PURPOSE
============================================================
SQLAlchemy ORM models for the appetite configuration tree,
indicator observations and the breach ledger.

Includes:
- Risks (read-only input to chain validation)
- Risk appetite statements and categories
- Tolerance metrics
- Indicator (KRI) values
- Appetite breaches (the ledger)

============================================================
LEDGER INVARIANT
============================================================
At most one breach per metric with status OPEN or IN_PROGRESS.
Enforced by a partial unique index so it holds across service
instances, not only inside one process.

============================================================
"""

from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)

from .clock import utcnow
from .database import Base
from .types import (
    AppetiteBreach,
    AppetiteLevel,
    BreachSeverity,
    BreachStatus,
    DirectionalConfig,
    IndicatorObservation,
    MaterialityType,
    MetricConfigStatus,
    MetricType,
    ToleranceMetric,
)


def _new_id() -> str:
    return str(uuid4())


OPEN_LIKE_SQL = "status IN ('OPEN', 'IN_PROGRESS')"


class RiskRecord(Base):
    """
    Risk register entry.

    Only the category of active risks matters to this engine.
    """

    __tablename__ = "risks"

    id = Column(String(36), primary_key=True, default=_new_id)
    organization_id = Column(String(36), nullable=False, index=True)
    title = Column(String(255), nullable=False, default="")
    category = Column(String(128), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)


class AppetiteStatementRecord(Base):
    """Versioned risk appetite statement. Approval is gated."""

    __tablename__ = "risk_appetite_statements"

    id = Column(String(36), primary_key=True, default=_new_id)
    organization_id = Column(String(36), nullable=False, index=True)
    version_number = Column(Integer, nullable=False, default=1)
    statement_text = Column(Text, nullable=True)

    status = Column(String(16), nullable=False, default="DRAFT")
    effective_from = Column(Date, nullable=True)
    effective_to = Column(Date, nullable=True)

    approved_by = Column(String(36), nullable=True)
    approved_date = Column(Date, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)


class AppetiteCategoryRecord(Base):
    """Declared appetite level for one risk category."""

    __tablename__ = "risk_appetite_categories"

    id = Column(String(36), primary_key=True, default=_new_id)
    statement_id = Column(
        String(36), ForeignKey("risk_appetite_statements.id"), nullable=True
    )
    organization_id = Column(String(36), nullable=False, index=True)
    risk_category = Column(String(128), nullable=False)
    appetite_level = Column(String(16), nullable=False, default=AppetiteLevel.MODERATE.value)
    rationale = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_appetite_categories_org_category", "organization_id", "risk_category"),
    )


class ToleranceMetricRecord(Base):
    """Quantitative boundary operationalising an appetite category."""

    __tablename__ = "tolerance_metrics"

    id = Column(String(36), primary_key=True, default=_new_id)
    organization_id = Column(String(36), nullable=False, index=True)
    appetite_category_id = Column(
        String(36), ForeignKey("risk_appetite_categories.id"), nullable=False, index=True
    )

    metric_name = Column(String(255), nullable=False)
    metric_description = Column(Text, nullable=True)
    metric_type = Column(String(16), nullable=False)
    unit = Column(String(32), nullable=True)
    materiality_type = Column(String(16), nullable=False, default=MaterialityType.INTERNAL.value)

    # Threshold bands (each independently nullable)
    green_min = Column(Float, nullable=True)
    green_max = Column(Float, nullable=True)
    amber_min = Column(Float, nullable=True)
    amber_max = Column(Float, nullable=True)
    red_min = Column(Float, nullable=True)
    red_max = Column(Float, nullable=True)

    indicator_id = Column(String(36), nullable=True, index=True)
    """Linked KRI."""

    directional_config = Column(JSON, nullable=True)
    escalation_rules = Column(JSON, nullable=True)

    status = Column(String(16), nullable=False, default=MetricConfigStatus.DRAFT.value)
    is_active = Column(Boolean, nullable=False, default=False)
    activated_by = Column(String(36), nullable=True)
    activated_at = Column(DateTime, nullable=True)

    aggregation_weight = Column(Float, nullable=False, default=1.0)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_tolerance_metrics_active", "organization_id", "is_active"),
    )

    def to_metric(self) -> ToleranceMetric:
        """Detached domain view for the evaluator."""
        directional = (
            DirectionalConfig.from_dict(self.directional_config)
            if self.directional_config
            else None
        )
        return ToleranceMetric(
            id=self.id,
            organization_id=self.organization_id,
            metric_name=self.metric_name,
            metric_type=MetricType(self.metric_type),
            appetite_category_id=self.appetite_category_id,
            unit=self.unit,
            materiality_type=MaterialityType(self.materiality_type or MaterialityType.INTERNAL.value),
            green_min=self.green_min,
            green_max=self.green_max,
            amber_min=self.amber_min,
            amber_max=self.amber_max,
            red_min=self.red_min,
            red_max=self.red_max,
            directional_config=directional,
            indicator_id=self.indicator_id,
            is_active=bool(self.is_active),
            status=MetricConfigStatus(self.status),
            escalation_rules=dict(self.escalation_rules or {}),
            aggregation_weight=self.aggregation_weight if self.aggregation_weight is not None else 1.0,
        )


class IndicatorValueRecord(Base):
    """One observation of a Key Risk Indicator."""

    __tablename__ = "kri_values"

    id = Column(String(36), primary_key=True, default=_new_id)
    indicator_id = Column(String(36), nullable=False)
    value = Column(Float, nullable=False)
    value_date = Column(Date, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_kri_values_indicator_date", "indicator_id", "value_date"),
    )

    def to_observation(self) -> IndicatorObservation:
        return IndicatorObservation(
            id=self.id,
            indicator_id=self.indicator_id,
            value=self.value,
            value_date=self.value_date,
        )


class AppetiteBreachRecord(Base):
    """
    Breach ledger entry.

    Written only by the breach tracker and the breach workflow.
    """

    __tablename__ = "appetite_breaches"

    id = Column(String(36), primary_key=True, default=_new_id)
    organization_id = Column(String(36), nullable=False)
    tolerance_metric_id = Column(
        String(36), ForeignKey("tolerance_metrics.id"), nullable=False, index=True
    )
    indicator_value_id = Column(String(36), nullable=True)
    """Observation that last wrote this entry."""

    severity = Column(String(8), nullable=False)
    breach_value = Column(Float, nullable=False)
    threshold_value = Column(Float, nullable=False)
    detected_at = Column(DateTime, nullable=False, default=utcnow)

    prior_breach_id = Column(String(36), ForeignKey("appetite_breaches.id"), nullable=True)
    """AMBER entry this RED entry escalated from."""

    idempotency_key = Column(String(128), nullable=True)
    """metric id + detection window of the last observation applied."""

    status = Column(String(16), nullable=False, default=BreachStatus.OPEN.value)

    # Remediation
    remediation_plan = Column(Text, nullable=True)
    remediation_owner = Column(String(36), nullable=True)
    remediation_due_date = Column(Date, nullable=True)

    # Escalation
    escalated_to = Column(JSON, nullable=True)
    escalated_at = Column(DateTime, nullable=True)

    # Resolution
    resolved_at = Column(DateTime, nullable=True)
    resolved_by = Column(String(36), nullable=True)
    resolution_notes = Column(Text, nullable=True)

    # Board acceptance
    board_accepted_by = Column(String(36), nullable=True)
    board_accepted_at = Column(DateTime, nullable=True)
    board_acceptance_rationale = Column(Text, nullable=True)
    temporary_threshold = Column(Float, nullable=True)
    exception_valid_until = Column(Date, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_appetite_breaches_status", "organization_id", "status"),
        Index(
            "uq_appetite_breaches_one_open",
            "tolerance_metric_id",
            unique=True,
            postgresql_where=text(OPEN_LIKE_SQL),
            sqlite_where=text(OPEN_LIKE_SQL),
        ),
    )

    def to_breach(self) -> AppetiteBreach:
        """Detached snapshot safe to hand out after commit."""
        return AppetiteBreach(
            id=self.id,
            organization_id=self.organization_id,
            tolerance_metric_id=self.tolerance_metric_id,
            severity=BreachSeverity(self.severity),
            status=BreachStatus(self.status),
            breach_value=self.breach_value,
            threshold_value=self.threshold_value,
            detected_at=self.detected_at,
            indicator_value_id=self.indicator_value_id,
            prior_breach_id=self.prior_breach_id,
            idempotency_key=self.idempotency_key,
            updated_at=self.updated_at,
            remediation_plan=self.remediation_plan,
            remediation_owner=self.remediation_owner,
            remediation_due_date=self.remediation_due_date,
            escalated_to=list(self.escalated_to) if self.escalated_to else None,
            escalated_at=self.escalated_at,
            resolved_at=self.resolved_at,
            resolved_by=self.resolved_by,
            resolution_notes=self.resolution_notes,
            board_accepted_by=self.board_accepted_by,
            board_accepted_at=self.board_accepted_at,
            board_acceptance_rationale=self.board_acceptance_rationale,
            temporary_threshold=self.temporary_threshold,
            exception_valid_until=self.exception_valid_until,
        )
