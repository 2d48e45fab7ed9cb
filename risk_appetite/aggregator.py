"""
Risk Appetite Engine - Status Aggregator.

============================================================
PURPOSE
============================================================
Read-side roll-up of current metric statuses:

    metric -> category -> enterprise

Recomputed on every call from the latest indicator values.
Never cached, never persisted, and independent of the breach
ledger.

============================================================
PRECEDENCE (every level)
============================================================
any RED     -> RED
any AMBER   -> AMBER
any UNKNOWN -> UNKNOWN
all GREEN   -> GREEN
nothing     -> UNKNOWN (no monitoring is not evidence of safety)

============================================================
"""

from datetime import date
from typing import Iterable

from .evaluator import evaluate_metric_status
from .indicators import IndicatorStore
from .models import ToleranceMetricRecord
from .repository import AppetiteRepository
from .types import (
    AppetiteLevel,
    AppetiteStatus,
    CategoryAppetiteStatus,
    EnterpriseAppetiteStatus,
    EnterpriseSummary,
    EntityNotFoundError,
    MetricStatusEntry,
)


_PRECEDENCE = (
    AppetiteStatus.RED,
    AppetiteStatus.AMBER,
    AppetiteStatus.UNKNOWN,
    AppetiteStatus.GREEN,
)


def worst_status(statuses: Iterable[AppetiteStatus]) -> AppetiteStatus:
    """Reduce statuses by precedence. Empty input is UNKNOWN."""
    present = {AppetiteStatus(s) for s in statuses}
    for status in _PRECEDENCE:
        if status in present:
            return status
    return AppetiteStatus.UNKNOWN


class StatusAggregator:
    """Category and enterprise roll-ups."""

    def __init__(self, repository: AppetiteRepository, indicator_store: IndicatorStore):
        self._repository = repository
        self._indicators = indicator_store

    def metric_entry(self, record: ToleranceMetricRecord, today: date) -> MetricStatusEntry:
        metric = record.to_metric()

        latest = None
        if metric.indicator_id:
            latest = self._indicators.get_latest_value(metric.indicator_id)

        if latest is None:
            return MetricStatusEntry(
                id=metric.id,
                name=metric.metric_name,
                status=AppetiteStatus.UNKNOWN,
                value=None,
                threshold="No data",
                last_updated=None,
            )

        result = evaluate_metric_status(
            metric,
            latest.value,
            history_lookup=self._indicators.get_value_as_of,
            as_of=today,
        )
        return MetricStatusEntry(
            id=metric.id,
            name=metric.metric_name,
            status=result.status,
            value=latest.value,
            threshold=result.threshold,
            last_updated=latest.value_date,
        )

    def category_status(self, category_id: str, today: date) -> CategoryAppetiteStatus:
        """
        Roll up the active metrics of one category.

        Raises:
            EntityNotFoundError: Unknown category
        """
        category = self._repository.get_category(category_id)
        if category is None:
            raise EntityNotFoundError("AppetiteCategory", category_id)

        entries = [
            self.metric_entry(record, today)
            for record in self._repository.list_active_metrics(category_id)
        ]

        return CategoryAppetiteStatus(
            category_id=category.id,
            category_name=category.risk_category,
            appetite_level=AppetiteLevel(category.appetite_level),
            status=worst_status(e.status for e in entries),
            metrics=entries,
        )

    def enterprise_status(self, organization_id: str, today: date) -> EnterpriseAppetiteStatus:
        """Roll up every category of an organization with the same reducer."""
        categories = [
            self.category_status(category.id, today)
            for category in self._repository.list_categories(organization_id)
        ]

        summary = EnterpriseSummary(total_categories=len(categories))
        for category in categories:
            if category.status == AppetiteStatus.RED:
                summary.red_count += 1
            elif category.status == AppetiteStatus.AMBER:
                summary.amber_count += 1
            elif category.status == AppetiteStatus.GREEN:
                summary.green_count += 1
            else:
                summary.unknown_count += 1

        return EnterpriseAppetiteStatus(
            overall_status=worst_status(c.status for c in categories),
            categories=categories,
            summary=summary,
        )
