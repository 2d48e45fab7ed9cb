"""
Risk Appetite Engine - Chain Validator.

============================================================
PURPOSE
============================================================
Checks the configuration chain

    risk category -> appetite category -> tolerance metric
                  -> indicator -> fresh data

for one organization and reports every gap found.

============================================================
CHECKS
============================================================
1. APPETITE STATEMENT  CRITICAL  risk categories in use without
                                 an appetite definition
2. TOLERANCE METRICS   CRITICAL  appetite categories without any
                                 tolerance metric
3. KRI LINKAGE         CRITICAL  active metrics without an
                                 indicator link
4. KRI DATA            WARNING   active linked metrics whose
                                 indicator has no fresh value

All checks always run. The chain is valid when no CRITICAL
gap exists; warnings never block.

============================================================
"""

import logging
from datetime import date
from typing import List

from .config import FreshnessConfig
from .indicators import IndicatorStore, has_fresh_observation
from .repository import AppetiteRepository
from .types import ChainValidationGap, ChainValidationResult, GapSeverity


logger = logging.getLogger(__name__)


APPETITE_STATEMENT = "APPETITE STATEMENT"
TOLERANCE_METRICS = "TOLERANCE METRICS"
KRI_LINKAGE = "KRI LINKAGE"
KRI_DATA = "KRI DATA"


class ChainValidator:
    """
    Collect-all validation of an organization's appetite chain.

    Read-only. Also the sole precondition of statement approval.
    """

    def __init__(
        self,
        repository: AppetiteRepository,
        indicator_store: IndicatorStore,
        freshness: FreshnessConfig,
    ):
        self._repository = repository
        self._indicators = indicator_store
        self._freshness = freshness

    def validate(self, organization_id: str, today: date) -> ChainValidationResult:
        """
        Run every check for an organization.

        Args:
            organization_id: Organization to validate
            today: Reference date for the freshness window

        Returns:
            ChainValidationResult with every gap found
        """
        gaps: List[ChainValidationGap] = []
        gaps.extend(self._check_appetite_definitions(organization_id))
        gaps.extend(self._check_metrics_defined(organization_id))
        gaps.extend(self._check_indicator_links(organization_id))
        gaps.extend(self._check_indicator_data(organization_id, today))

        result = ChainValidationResult(
            is_valid=not any(g.severity == GapSeverity.CRITICAL for g in gaps),
            gaps=gaps,
        )

        logger.info(
            f"Chain validation for {organization_id}: "
            f"{len(result.critical_gaps)} critical, {len(result.warnings)} warnings"
        )
        return result

    # --------------------------------------------------------
    # CHECKS
    # --------------------------------------------------------

    def _check_appetite_definitions(self, organization_id: str) -> List[ChainValidationGap]:
        in_use = self._repository.risk_categories_in_use(organization_id)
        defined = self._repository.defined_risk_categories(organization_id)
        missing = [c for c in in_use if c not in defined]

        if not missing:
            return []
        return [ChainValidationGap(
            category=APPETITE_STATEMENT,
            issue=f"{len(missing)} risk categories missing appetite definition",
            severity=GapSeverity.CRITICAL,
            details=f"Categories: {', '.join(missing)}",
        )]

    def _check_metrics_defined(self, organization_id: str) -> List[ChainValidationGap]:
        empty = self._repository.categories_without_metrics(organization_id)

        if not empty:
            return []
        return [ChainValidationGap(
            category=TOLERANCE_METRICS,
            issue=f"{len(empty)} appetite categories without tolerance metrics",
            severity=GapSeverity.CRITICAL,
            details=f"Categories: {', '.join(c.risk_category for c in empty)}",
        )]

    def _check_indicator_links(self, organization_id: str) -> List[ChainValidationGap]:
        unlinked = self._repository.active_metrics_without_indicator(organization_id)

        if not unlinked:
            return []
        return [ChainValidationGap(
            category=KRI_LINKAGE,
            issue=f"{len(unlinked)} active tolerance metrics not linked to KRIs",
            severity=GapSeverity.CRITICAL,
            details=f"Metrics: {', '.join(m.metric_name for m in unlinked)}",
        )]

    def _check_indicator_data(self, organization_id: str, today: date) -> List[ChainValidationGap]:
        window = self._freshness.window_days
        gaps = []

        for metric in self._repository.list_active_metrics_for_org(organization_id, linked_only=True):
            if has_fresh_observation(self._indicators, metric.indicator_id, today, window):
                continue
            gaps.append(ChainValidationGap(
                category=KRI_DATA,
                issue=f'Metric "{metric.metric_name}" has no KRI data in last {window} days',
                severity=GapSeverity.WARNING,
                details="Tolerance thresholds cannot be enforced without active KRI monitoring",
            ))

        return gaps
