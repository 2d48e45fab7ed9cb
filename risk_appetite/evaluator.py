"""
Risk Appetite Engine - Threshold Evaluator.

============================================================
PURPOSE
============================================================
Classify one observed value against a tolerance metric's
limits. Pure functions: no I/O except the history lookup
that DIRECTIONAL metrics are handed by the caller.

============================================================
RULES PER METRIC TYPE
============================================================
RANGE       RED outside [red_min, red_max]
            AMBER outside [amber_min, amber_max]
            else GREEN
MAXIMUM     RED value > red_max, AMBER value > amber_max
MINIMUM     RED value < red_min, AMBER value < amber_min
DIRECTIONAL change% = (current - historical) / historical * 100
            no baseline in window  -> UNKNOWN
            baseline == 0          -> UNKNOWN
            favourable direction   -> GREEN
            adverse |change%| > 2x allowed -> RED
            adverse |change%| > allowed    -> AMBER

A null bound means "no boundary on that side". It is never
compared as 0 and never silently skipped.

============================================================
"""

from datetime import date, timedelta
from typing import Callable, Optional

from .types import (
    AppetiteStatus,
    ConfigurationError,
    IndicatorObservation,
    MetricType,
    ThresholdEvaluationResult,
    ToleranceMetric,
    TrendPolarity,
)


HistoryLookup = Callable[[str, date], Optional[IndicatorObservation]]
"""(indicator_id, on_date) -> latest observation at or before on_date."""


# ============================================================
# FORMATTING
# ============================================================

def format_number(value: Optional[float], null_text: str = "") -> str:
    """Render a threshold without a trailing '.0' for whole numbers."""
    if value is None:
        return null_text
    value = float(value)
    if value.is_integer():
        return str(int(value))
    return str(value)


def _lower(value: Optional[float]) -> str:
    return format_number(value, "-∞")


def _upper(value: Optional[float]) -> str:
    return format_number(value, "∞")


def _below(value: float, bound: Optional[float]) -> bool:
    return bound is not None and value < bound


def _above(value: float, bound: Optional[float]) -> bool:
    return bound is not None and value > bound


# ============================================================
# METRIC-TYPE EVALUATORS
# ============================================================

def evaluate_range(metric: ToleranceMetric, value: float) -> ThresholdEvaluationResult:
    """Acceptable band. Either side of each band may be open."""
    if _below(value, metric.red_min) or _above(value, metric.red_max):
        return ThresholdEvaluationResult(
            status=AppetiteStatus.RED,
            threshold=f"Outside {_lower(metric.red_min)} to {_upper(metric.red_max)}",
            explanation=f"Value {format_number(value)} exceeds red boundaries",
        )

    if _below(value, metric.amber_min) or _above(value, metric.amber_max):
        return ThresholdEvaluationResult(
            status=AppetiteStatus.AMBER,
            threshold=f"{_lower(metric.amber_min)} to {_upper(metric.amber_max)}",
            explanation=f"Value {format_number(value)} approaching limits",
        )

    return ThresholdEvaluationResult(
        status=AppetiteStatus.GREEN,
        threshold=f"{_lower(metric.green_min)} to {_upper(metric.green_max)}",
        explanation=f"Value {format_number(value)} within acceptable range",
    )


def evaluate_maximum(metric: ToleranceMetric, value: float) -> ThresholdEvaluationResult:
    """Lower is better."""
    if _above(value, metric.red_max):
        return ThresholdEvaluationResult(
            status=AppetiteStatus.RED,
            threshold=f">{format_number(metric.red_max)}",
            explanation=(
                f"Value {format_number(value)} exceeds maximum limit "
                f"{format_number(metric.red_max)}"
            ),
        )

    if _above(value, metric.amber_max):
        return ThresholdEvaluationResult(
            status=AppetiteStatus.AMBER,
            threshold=f"{format_number(metric.amber_max)} to {_upper(metric.red_max)}",
            explanation=f"Value {format_number(value)} approaching maximum limit",
        )

    ceiling = metric.green_max if metric.green_max is not None else metric.amber_max
    return ThresholdEvaluationResult(
        status=AppetiteStatus.GREEN,
        threshold=f"≤{_upper(ceiling)}",
        explanation=f"Value {format_number(value)} within acceptable limit",
    )


def evaluate_minimum(metric: ToleranceMetric, value: float) -> ThresholdEvaluationResult:
    """Higher is better."""
    if _below(value, metric.red_min):
        return ThresholdEvaluationResult(
            status=AppetiteStatus.RED,
            threshold=f"<{format_number(metric.red_min)}",
            explanation=(
                f"Value {format_number(value)} below minimum requirement "
                f"{format_number(metric.red_min)}"
            ),
        )

    if _below(value, metric.amber_min):
        return ThresholdEvaluationResult(
            status=AppetiteStatus.AMBER,
            threshold=f"{_lower(metric.red_min)} to {format_number(metric.amber_min)}",
            explanation=f"Value {format_number(value)} approaching minimum requirement",
        )

    floor = metric.green_min if metric.green_min is not None else metric.amber_min
    return ThresholdEvaluationResult(
        status=AppetiteStatus.GREEN,
        threshold=f"≥{_lower(floor)}",
        explanation=f"Value {format_number(value)} meets requirement",
    )


def evaluate_directional(
    metric: ToleranceMetric,
    value: float,
    history_lookup: Optional[HistoryLookup],
    as_of: date,
) -> ThresholdEvaluationResult:
    """Judge the adverse percentage change over the lookback window."""
    config = metric.directional_config
    if config is None:
        raise ConfigurationError(
            f"DIRECTIONAL metric {metric.id} has no directional configuration"
        )
    if history_lookup is None:
        raise ConfigurationError(
            f"DIRECTIONAL metric {metric.id} evaluated without a history lookup"
        )

    historical = None
    if metric.indicator_id is not None:
        lookback_date = as_of - timedelta(days=config.lookback_days)
        historical = history_lookup(metric.indicator_id, lookback_date)

    if historical is None:
        return ThresholdEvaluationResult(
            status=AppetiteStatus.UNKNOWN,
            threshold="Insufficient history",
            explanation=f"No data found for {config.lookback_days} days ago",
        )

    baseline = float(historical.value)
    if baseline == 0:
        return ThresholdEvaluationResult(
            status=AppetiteStatus.UNKNOWN,
            threshold="Zero baseline",
            explanation="Cannot calculate % change from zero baseline",
        )

    change_pct = (value - baseline) / baseline * 100
    allowed = config.allowed_change_pct

    adverse = (
        (config.trend == TrendPolarity.INCREASING_IS_BAD and change_pct > 0)
        or (config.trend == TrendPolarity.DECREASING_IS_BAD and change_pct < 0)
    )

    if not adverse:
        return ThresholdEvaluationResult(
            status=AppetiteStatus.GREEN,
            threshold="Favorable trend",
            explanation=f"{change_pct:.1f}% change (favorable direction)",
        )

    magnitude = abs(change_pct)

    if magnitude > allowed * 2:
        return ThresholdEvaluationResult(
            status=AppetiteStatus.RED,
            threshold=f">{format_number(allowed * 2)}% change",
            explanation=f"{change_pct:.1f}% adverse change (critical)",
        )

    if magnitude > allowed:
        return ThresholdEvaluationResult(
            status=AppetiteStatus.AMBER,
            threshold=f"{format_number(allowed)} to {format_number(allowed * 2)}% change",
            explanation=f"{change_pct:.1f}% adverse change (warning)",
        )

    return ThresholdEvaluationResult(
        status=AppetiteStatus.GREEN,
        threshold=f"≤{format_number(allowed)}% change",
        explanation=f"{change_pct:.1f}% change (acceptable)",
    )


# ============================================================
# DISPATCH
# ============================================================

def evaluate_metric_status(
    metric: ToleranceMetric,
    value: float,
    history_lookup: Optional[HistoryLookup] = None,
    as_of: Optional[date] = None,
) -> ThresholdEvaluationResult:
    """
    Evaluate an observed value against a metric's limits.

    Args:
        metric: Tolerance metric configuration
        value: Observed indicator value
        history_lookup: Baseline lookup, used by DIRECTIONAL only
        as_of: Evaluation date for the DIRECTIONAL lookback

    Returns:
        ThresholdEvaluationResult (fresh on every call)

    Raises:
        ConfigurationError: Unknown metric type or incomplete
            DIRECTIONAL configuration
    """
    metric_type = metric.metric_type

    if metric_type == MetricType.RANGE:
        return evaluate_range(metric, value)
    if metric_type == MetricType.MAXIMUM:
        return evaluate_maximum(metric, value)
    if metric_type == MetricType.MINIMUM:
        return evaluate_minimum(metric, value)
    if metric_type == MetricType.DIRECTIONAL:
        if as_of is None:
            raise ConfigurationError(
                f"DIRECTIONAL metric {metric.id} evaluated without an as-of date"
            )
        return evaluate_directional(metric, value, history_lookup, as_of)

    raise ConfigurationError(f"Unknown metric_type: {metric_type!r}")


def breach_threshold_value(
    metric: ToleranceMetric,
    status: AppetiteStatus,
    value: float,
) -> float:
    """
    Numeric threshold crossed by a non-GREEN verdict.

    Stored on the breach ledger entry at detection time.
    """
    if status not in (AppetiteStatus.AMBER, AppetiteStatus.RED):
        raise ConfigurationError(f"No breach threshold for status {status.value}")

    red = status == AppetiteStatus.RED
    metric_type = metric.metric_type

    if metric_type == MetricType.MAXIMUM:
        threshold = metric.red_max if red else metric.amber_max
    elif metric_type == MetricType.MINIMUM:
        threshold = metric.red_min if red else metric.amber_min
    elif metric_type == MetricType.RANGE:
        low, high = (metric.red_min, metric.red_max) if red else (metric.amber_min, metric.amber_max)
        threshold = high if _above(value, high) else low
    elif metric_type == MetricType.DIRECTIONAL:
        if metric.directional_config is None:
            raise ConfigurationError(
                f"DIRECTIONAL metric {metric.id} has no directional configuration"
            )
        allowed = metric.directional_config.allowed_change_pct
        threshold = allowed * 2 if red else allowed
    else:
        raise ConfigurationError(f"Unknown metric_type: {metric_type!r}")

    if threshold is None:
        raise ConfigurationError(
            f"Metric {metric.id} reported {status.value} without a matching threshold"
        )
    return float(threshold)
