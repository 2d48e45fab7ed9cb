"""
Risk Appetite Engine - Repository.

============================================================
PURPOSE
============================================================
Repository pattern implementation for appetite persistence.

Provides clean interface for:
- Reading the configuration tree (statements, categories, metrics)
- Reading indicator observations
- Locking and writing the breach ledger
- Writing approval / activation stamps

No other module builds queries.

============================================================
"""

from datetime import date, datetime
from typing import List, Optional, Set

from sqlalchemy import and_, desc, func, select
from sqlalchemy.orm import Session

from .models import (
    AppetiteBreachRecord,
    AppetiteCategoryRecord,
    AppetiteStatementRecord,
    IndicatorValueRecord,
    RiskRecord,
    ToleranceMetricRecord,
)
from .types import BreachStatus


OPEN_LIKE_VALUES = (BreachStatus.OPEN.value, BreachStatus.IN_PROGRESS.value)


class AppetiteRepository:
    """
    Repository for appetite engine persistence operations.

    ============================================================
    METHODS
    ============================================================
    - Configuration: get_metric, get_category, list_categories, ...
    - Indicators: get_latest_value, get_value_as_of, has_value_since
    - Ledger: lock_metric, get_open_breach, add_breach, ...
    - Gate writes: mark_statement_approved, mark_metric_active

    ============================================================
    """

    def __init__(self, session: Session):
        """
        Initialize repository with database session.

        Args:
            session: SQLAlchemy session
        """
        self._session = session

    @property
    def session(self) -> Session:
        return self._session

    # --------------------------------------------------------
    # STATEMENTS
    # --------------------------------------------------------

    def get_statement(self, statement_id: str) -> Optional[AppetiteStatementRecord]:
        return self._session.get(AppetiteStatementRecord, statement_id)

    def mark_statement_approved(
        self,
        statement: AppetiteStatementRecord,
        approved_by: str,
        approved_at: datetime,
    ) -> AppetiteStatementRecord:
        """Stamp the approval fields. The gate decides whether to call this."""
        statement.status = "APPROVED"
        statement.approved_by = approved_by
        statement.approved_date = approved_at.date()
        statement.updated_at = approved_at
        self._session.flush()
        return statement

    # --------------------------------------------------------
    # CATEGORIES
    # --------------------------------------------------------

    def get_category(self, category_id: str) -> Optional[AppetiteCategoryRecord]:
        return self._session.get(AppetiteCategoryRecord, category_id)

    def list_categories(self, organization_id: str) -> List[AppetiteCategoryRecord]:
        stmt = (
            select(AppetiteCategoryRecord)
            .where(AppetiteCategoryRecord.organization_id == organization_id)
            .order_by(AppetiteCategoryRecord.risk_category)
        )
        return list(self._session.execute(stmt).scalars().all())

    def defined_risk_categories(self, organization_id: str) -> Set[str]:
        """Risk categories that have an appetite definition."""
        stmt = (
            select(AppetiteCategoryRecord.risk_category)
            .where(AppetiteCategoryRecord.organization_id == organization_id)
            .distinct()
        )
        return set(self._session.execute(stmt).scalars().all())

    def risk_categories_in_use(self, organization_id: str) -> List[str]:
        """Distinct categories of active risk records, sorted."""
        stmt = (
            select(RiskRecord.category)
            .where(and_(
                RiskRecord.organization_id == organization_id,
                RiskRecord.is_active.is_(True),
            ))
            .distinct()
            .order_by(RiskRecord.category)
        )
        return list(self._session.execute(stmt).scalars().all())

    def categories_without_metrics(self, organization_id: str) -> List[AppetiteCategoryRecord]:
        """Appetite categories owning no tolerance metric at all."""
        metric_count = (
            select(func.count(ToleranceMetricRecord.id))
            .where(ToleranceMetricRecord.appetite_category_id == AppetiteCategoryRecord.id)
            .correlate(AppetiteCategoryRecord)
            .scalar_subquery()
        )
        stmt = (
            select(AppetiteCategoryRecord)
            .where(and_(
                AppetiteCategoryRecord.organization_id == organization_id,
                metric_count == 0,
            ))
            .order_by(AppetiteCategoryRecord.risk_category)
        )
        return list(self._session.execute(stmt).scalars().all())

    # --------------------------------------------------------
    # METRICS
    # --------------------------------------------------------

    def get_metric(self, metric_id: str) -> Optional[ToleranceMetricRecord]:
        return self._session.get(ToleranceMetricRecord, metric_id)

    def lock_metric(self, metric_id: str) -> Optional[ToleranceMetricRecord]:
        """
        Row-lock the metric (SELECT ... FOR UPDATE).

        Serialises ledger read-modify-write for one metric across
        service instances. Databases without row locks ignore it.
        """
        stmt = (
            select(ToleranceMetricRecord)
            .where(ToleranceMetricRecord.id == metric_id)
            .with_for_update()
        )
        return self._session.execute(stmt).scalars().first()

    def list_active_metrics(self, category_id: str) -> List[ToleranceMetricRecord]:
        stmt = (
            select(ToleranceMetricRecord)
            .where(and_(
                ToleranceMetricRecord.appetite_category_id == category_id,
                ToleranceMetricRecord.is_active.is_(True),
            ))
            .order_by(ToleranceMetricRecord.metric_name)
        )
        return list(self._session.execute(stmt).scalars().all())

    def list_active_metrics_for_org(
        self,
        organization_id: Optional[str] = None,
        linked_only: bool = False,
    ) -> List[ToleranceMetricRecord]:
        """Active metrics of one organization, or of all when None."""
        conditions = [ToleranceMetricRecord.is_active.is_(True)]
        if organization_id is not None:
            conditions.append(ToleranceMetricRecord.organization_id == organization_id)
        if linked_only:
            conditions.append(ToleranceMetricRecord.indicator_id.is_not(None))

        stmt = (
            select(ToleranceMetricRecord)
            .where(and_(*conditions))
            .order_by(ToleranceMetricRecord.metric_name)
        )
        return list(self._session.execute(stmt).scalars().all())

    def active_metrics_without_indicator(self, organization_id: str) -> List[ToleranceMetricRecord]:
        stmt = (
            select(ToleranceMetricRecord)
            .where(and_(
                ToleranceMetricRecord.organization_id == organization_id,
                ToleranceMetricRecord.is_active.is_(True),
                ToleranceMetricRecord.indicator_id.is_(None),
            ))
            .order_by(ToleranceMetricRecord.metric_name)
        )
        return list(self._session.execute(stmt).scalars().all())

    def mark_metric_active(
        self,
        metric: ToleranceMetricRecord,
        activated_by: str,
        activated_at: datetime,
    ) -> ToleranceMetricRecord:
        """Stamp the activation fields. The gate decides whether to call this."""
        metric.is_active = True
        metric.activated_by = activated_by
        metric.activated_at = activated_at
        metric.updated_at = activated_at
        self._session.flush()
        return metric

    # --------------------------------------------------------
    # INDICATOR VALUES
    # --------------------------------------------------------

    def get_latest_value(
        self,
        indicator_id: str,
        as_of: Optional[date] = None,
    ) -> Optional[IndicatorValueRecord]:
        """Most recent observation, optionally at or before a date."""
        conditions = [IndicatorValueRecord.indicator_id == indicator_id]
        if as_of is not None:
            conditions.append(IndicatorValueRecord.value_date <= as_of)

        stmt = (
            select(IndicatorValueRecord)
            .where(and_(*conditions))
            .order_by(desc(IndicatorValueRecord.value_date), desc(IndicatorValueRecord.created_at))
            .limit(1)
        )
        return self._session.execute(stmt).scalars().first()

    def get_value_as_of(self, indicator_id: str, on_date: date) -> Optional[IndicatorValueRecord]:
        """Most recent observation at or before on_date."""
        return self.get_latest_value(indicator_id, as_of=on_date)

    def has_value_since(self, indicator_id: str, since: date) -> bool:
        stmt = (
            select(IndicatorValueRecord.id)
            .where(and_(
                IndicatorValueRecord.indicator_id == indicator_id,
                IndicatorValueRecord.value_date >= since,
            ))
            .limit(1)
        )
        return self._session.execute(stmt).first() is not None

    def add_indicator_value(
        self,
        indicator_id: str,
        value: float,
        value_date: date,
    ) -> IndicatorValueRecord:
        record = IndicatorValueRecord(
            indicator_id=indicator_id,
            value=value,
            value_date=value_date,
        )
        self._session.add(record)
        self._session.flush()
        return record

    # --------------------------------------------------------
    # BREACH LEDGER
    # --------------------------------------------------------

    def get_breach(
        self,
        breach_id: str,
        for_update: bool = False,
    ) -> Optional[AppetiteBreachRecord]:
        stmt = select(AppetiteBreachRecord).where(AppetiteBreachRecord.id == breach_id)
        if for_update:
            stmt = stmt.with_for_update()
        return self._session.execute(stmt).scalars().first()

    def get_open_breach(
        self,
        metric_id: str,
        for_update: bool = False,
    ) -> Optional[AppetiteBreachRecord]:
        """Most recent OPEN/IN_PROGRESS entry for a metric."""
        stmt = (
            select(AppetiteBreachRecord)
            .where(and_(
                AppetiteBreachRecord.tolerance_metric_id == metric_id,
                AppetiteBreachRecord.status.in_(OPEN_LIKE_VALUES),
            ))
            .order_by(desc(AppetiteBreachRecord.detected_at))
            .limit(1)
        )
        if for_update:
            stmt = stmt.with_for_update()
        return self._session.execute(stmt).scalars().first()

    def list_open_breaches(self, metric_id: str) -> List[AppetiteBreachRecord]:
        """Every OPEN/IN_PROGRESS entry for a metric, row-locked."""
        stmt = (
            select(AppetiteBreachRecord)
            .where(and_(
                AppetiteBreachRecord.tolerance_metric_id == metric_id,
                AppetiteBreachRecord.status.in_(OPEN_LIKE_VALUES),
            ))
            .with_for_update()
        )
        return list(self._session.execute(stmt).scalars().all())

    def list_breaches(
        self,
        organization_id: str,
        metric_id: Optional[str] = None,
        open_only: bool = False,
    ) -> List[AppetiteBreachRecord]:
        conditions = [AppetiteBreachRecord.organization_id == organization_id]
        if metric_id is not None:
            conditions.append(AppetiteBreachRecord.tolerance_metric_id == metric_id)
        if open_only:
            conditions.append(AppetiteBreachRecord.status.in_(OPEN_LIKE_VALUES))

        stmt = (
            select(AppetiteBreachRecord)
            .where(and_(*conditions))
            .order_by(desc(AppetiteBreachRecord.detected_at))
        )
        return list(self._session.execute(stmt).scalars().all())

    def count_breaches(self, metric_id: str) -> int:
        stmt = (
            select(func.count(AppetiteBreachRecord.id))
            .where(AppetiteBreachRecord.tolerance_metric_id == metric_id)
        )
        return int(self._session.execute(stmt).scalar_one())

    def add_breach(self, record: AppetiteBreachRecord) -> AppetiteBreachRecord:
        """Insert a ledger entry and flush so the unique index is checked now."""
        self._session.add(record)
        self._session.flush()
        return record

    def flush(self) -> None:
        self._session.flush()
