"""
Risk Appetite Engine - Approval Gate.

============================================================
PURPOSE
============================================================
The only writes to statement status and metric activation.

Both transitions share one shape:

    load target -> check preconditions -> refuse with every
    violated condition (no write) -> else stamp status,
    actor and timestamp -> success

Refusals are OperationResult values, never exceptions.
Persistence failures still raise PersistenceError.

============================================================
"""

import logging
from datetime import datetime
from typing import List

from .config import FreshnessConfig
from .indicators import IndicatorStore, has_fresh_observation
from .repository import AppetiteRepository
from .types import ChainValidationGap, OperationResult, StatementStatus
from .validator import ChainValidator


logger = logging.getLogger(__name__)


def render_approval_refusal(critical_gaps: List[ChainValidationGap]) -> str:
    """User-readable list of every gap blocking statement approval."""
    return (
        f"Cannot approve RAS: {len(critical_gaps)} critical gaps detected:\n\n"
        + "\n".join(g.render() for g in critical_gaps)
        + "\n\nResolve these issues before approval."
    )


def render_activation_refusal(violations: List[str]) -> str:
    """User-readable list of every condition blocking metric activation."""
    return (
        "Cannot activate tolerance metric:\n\n"
        + "\n".join(f"• {v}" for v in violations)
        + "\n\nResolve these issues before activation."
    )


class ApprovalGate:
    """
    Gated governance transitions.

    Runs inside the caller's transaction: a refusal returns before
    any write, a success leaves the stamped row to be committed.
    """

    def __init__(
        self,
        repository: AppetiteRepository,
        validator: ChainValidator,
        indicator_store: IndicatorStore,
        freshness: FreshnessConfig,
    ):
        self._repository = repository
        self._validator = validator
        self._indicators = indicator_store
        self._freshness = freshness

    def approve_statement(
        self,
        statement_id: str,
        approver_id: str,
        now: datetime,
    ) -> OperationResult:
        """
        DRAFT -> APPROVED, blocked by any CRITICAL chain gap.

        Args:
            statement_id: Statement to approve
            approver_id: Acting user
            now: Approval timestamp

        Returns:
            OperationResult (data: statement id on success)
        """
        statement = self._repository.get_statement(statement_id)
        if statement is None:
            return OperationResult.refused("Statement not found")

        problems = []
        if statement.status != StatementStatus.DRAFT.value:
            problems.append(
                f"Statement is {statement.status}: only DRAFT statements can be approved."
            )

        validation = self._validator.validate(statement.organization_id, now.date())
        critical = validation.critical_gaps
        if critical:
            problems.append(render_approval_refusal(critical))

        if problems:
            logger.warning(
                f"Approval of statement {statement_id} refused "
                f"({len(critical)} critical gaps)"
            )
            return OperationResult.refused("\n\n".join(problems))

        self._repository.mark_statement_approved(statement, approver_id, now)
        logger.info(f"Statement {statement_id} approved by {approver_id}")
        return OperationResult.ok(data={"statement_id": statement_id})

    def activate_metric(
        self,
        metric_id: str,
        activator_id: str,
        now: datetime,
    ) -> OperationResult:
        """
        Activate a tolerance metric.

        Refused when the metric has no linked indicator, or the
        indicator has no fresh observation.
        """
        metric = self._repository.get_metric(metric_id)
        if metric is None:
            return OperationResult.refused("Metric not found")

        window = self._freshness.window_days
        violations = []

        if not metric.indicator_id:
            violations.append("No KRI linked. Please link a KRI before activation.")
        if not has_fresh_observation(self._indicators, metric.indicator_id, now.date(), window):
            violations.append(
                f"Linked KRI has no data in last {window} days. "
                "Please ensure KRI is actively monitored before activation."
            )

        if violations:
            logger.warning(
                f"Activation of metric {metric.metric_name} refused: "
                f"{len(violations)} violation(s)"
            )
            return OperationResult.refused(render_activation_refusal(violations))

        self._repository.mark_metric_active(metric, activator_id, now)
        logger.info(f"Metric {metric.metric_name} activated by {activator_id}")
        return OperationResult.ok(data={"metric_id": metric_id})
