"""
Seed helpers for appetite engine tests.
"""

from datetime import date, datetime
from typing import Any, Dict, Optional

from risk_appetite.database import transaction_scope
from risk_appetite.models import (
    AppetiteCategoryRecord,
    AppetiteStatementRecord,
    IndicatorValueRecord,
    RiskRecord,
    ToleranceMetricRecord,
)


ORG_ID = "org-1"
NOW = datetime(2025, 6, 15, 12, 0, 0)
TODAY = NOW.date()


class Seeder:
    """Writes configuration rows in their own committed transactions."""

    def __init__(self, session_factory):
        self._factory = session_factory

    def _add(self, record):
        with transaction_scope(self._factory) as session:
            session.add(record)
            session.flush()
            return record.id

    def risk(self, category: str, is_active: bool = True, organization_id: str = ORG_ID) -> str:
        return self._add(RiskRecord(
            organization_id=organization_id,
            title=f"{category} risk",
            category=category,
            is_active=is_active,
        ))

    def statement(self, status: str = "DRAFT", organization_id: str = ORG_ID) -> str:
        return self._add(AppetiteStatementRecord(
            organization_id=organization_id,
            status=status,
            statement_text="We accept moderate operational risk.",
        ))

    def category(
        self,
        risk_category: str = "Operational",
        appetite_level: str = "MODERATE",
        statement_id: Optional[str] = None,
        organization_id: str = ORG_ID,
    ) -> str:
        return self._add(AppetiteCategoryRecord(
            organization_id=organization_id,
            statement_id=statement_id,
            risk_category=risk_category,
            appetite_level=appetite_level,
        ))

    def metric(
        self,
        category_id: str,
        name: str = "NPL ratio",
        metric_type: str = "MAXIMUM",
        indicator_id: Optional[str] = "kri-1",
        is_active: bool = True,
        organization_id: str = ORG_ID,
        escalation_rules: Optional[Dict[str, Any]] = None,
        **thresholds,
    ) -> str:
        if metric_type == "MAXIMUM" and not thresholds:
            thresholds = {"green_max": 80, "amber_max": 80, "red_max": 100}
        return self._add(ToleranceMetricRecord(
            organization_id=organization_id,
            appetite_category_id=category_id,
            metric_name=name,
            metric_type=metric_type,
            indicator_id=indicator_id,
            is_active=is_active,
            escalation_rules=escalation_rules,
            **thresholds,
        ))

    def value(self, indicator_id: str, value: float, value_date: date = TODAY) -> str:
        return self._add(IndicatorValueRecord(
            indicator_id=indicator_id,
            value=value,
            value_date=value_date,
        ))
