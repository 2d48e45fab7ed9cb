"""
Tests for the AppetiteEngine facade.

Tests cover:
- Evaluation of the latest indicator value
- Recording observations through the ledger
- Batch sweep, cancellation and failure capture
- Construction from configuration
"""

import threading

import pytest

from risk_appetite.alerting import BreachNotifier
from risk_appetite.config import AppetiteEngineConfig, DatabaseConfig
from risk_appetite.engine import AppetiteEngine
from risk_appetite.types import (
    AppetiteStatus,
    BreachSeverity,
    EntityNotFoundError,
)

from .helpers import ORG_ID


class TestEvaluateMetric:
    """Evaluation of the latest indicator value."""

    def test_latest_value(self, engine, seed):
        metric_id = seed.metric(seed.category(), indicator_id="kri-1")
        seed.value("kri-1", 85)

        result = engine.evaluate_metric(metric_id)

        assert result.status == AppetiteStatus.AMBER
        assert result.threshold == "80 to 100"

    def test_no_data_is_unknown(self, engine, seed):
        metric_id = seed.metric(seed.category(), indicator_id="kri-1")

        result = engine.evaluate_metric(metric_id)

        assert result.status == AppetiteStatus.UNKNOWN
        assert result.threshold == "No data"

    def test_unknown_metric(self, engine):
        with pytest.raises(EntityNotFoundError):
            engine.evaluate_metric("missing")

    def test_evaluation_never_writes(self, engine, seed):
        metric_id = seed.metric(seed.category(), indicator_id="kri-1")
        seed.value("kri-1", 150)

        engine.evaluate_metric(metric_id)

        assert engine.list_breaches(ORG_ID) == []


class TestRecordObservation:
    """Evaluate-and-track in one call."""

    def test_red_value_opens_breach(self, engine, seed, sender):
        metric_id = seed.metric(seed.category())

        result = engine.record_observation_and_maybe_breach(
            ORG_ID, metric_id, 120, indicator_value_ref="obs-9"
        )

        assert result.success
        breach = result.data
        assert breach.severity == BreachSeverity.RED
        assert breach.threshold_value == 100
        assert breach.indicator_value_id == "obs-9"
        sender.assert_called_once()

    def test_green_value_returns_no_breach(self, engine, seed):
        metric_id = seed.metric(seed.category())

        result = engine.record_observation_and_maybe_breach(ORG_ID, metric_id, 10)

        assert result.success
        assert result.data is None

    def test_explicit_idempotency_key(self, engine, seed):
        metric_id = seed.metric(seed.category())

        result = engine.record_observation_and_maybe_breach(
            ORG_ID, metric_id, 85, idempotency_key="batch-42"
        )

        assert result.data.idempotency_key == "batch-42"

    def test_missing_metric_refused(self, engine):
        result = engine.record_observation_and_maybe_breach(ORG_ID, "missing", 120)

        assert not result.success
        assert result.error == "Metric not found"

    def test_other_organization_refused(self, engine, seed):
        metric_id = seed.metric(seed.category())

        result = engine.record_observation_and_maybe_breach("org-2", metric_id, 120)

        assert not result.success
        assert result.error == "Metric does not belong to this organization"
        assert engine.list_breaches(ORG_ID) == []


class TestSweep:
    """Batch re-evaluation of active linked metrics."""

    @pytest.fixture
    def metrics(self, seed):
        category_id = seed.category()
        ids = {
            "red": seed.metric(category_id, name="Red", indicator_id="kri-red"),
            "amber": seed.metric(category_id, name="Amber", indicator_id="kri-amber"),
            "green": seed.metric(category_id, name="Green", indicator_id="kri-green"),
            "empty": seed.metric(category_id, name="Empty", indicator_id="kri-empty"),
        }
        seed.metric(category_id, name="Unlinked", indicator_id=None)
        seed.value("kri-red", 150)
        seed.value("kri-amber", 90)
        seed.value("kri-green", 10)
        return ids

    def test_counts(self, engine, metrics):
        report = engine.run_sweep(ORG_ID)

        assert report.evaluated == 4
        assert report.statuses == {"GREEN": 1, "AMBER": 1, "RED": 1, "UNKNOWN": 1}
        assert report.breaches_open == 2
        assert report.failures == {}
        assert report.skipped == []
        assert report.cancelled is False

    def test_repeated_sweep_is_idempotent(self, engine, metrics, sender):
        engine.run_sweep(ORG_ID)
        engine.run_sweep(ORG_ID)

        assert len(engine.list_breaches(ORG_ID)) == 2
        assert sender.call_count == 2

    def test_cancelled_before_start_skips_everything(self, engine, metrics):
        cancel = threading.Event()
        cancel.set()

        report = engine.run_sweep(ORG_ID, cancel_event=cancel)

        assert report.cancelled is True
        assert report.evaluated == 0
        assert report.skipped == sorted(metrics.values())
        assert engine.list_breaches(ORG_ID) == []

    def test_failing_metric_is_captured(self, engine, seed, metrics):
        broken_id = seed.metric(
            seed.category("Market"), name="Broken", metric_type="DIRECTIONAL", indicator_id="kri-dir"
        )
        seed.value("kri-dir", 10)

        report = engine.run_sweep(ORG_ID)

        assert list(report.failures) == [broken_id]
        assert report.evaluated == 4

    def test_organization_filter(self, engine, seed, metrics):
        other = seed.metric(seed.category(organization_id="org-2"), organization_id="org-2", indicator_id="kri-red")

        report = engine.run_sweep("org-2")

        assert report.evaluated == 1
        assert engine.list_breaches("org-2")[0].tolerance_metric_id == other


class TestConstruction:
    """Building an engine from configuration."""

    def test_from_config(self):
        config = AppetiteEngineConfig(database=DatabaseConfig(url="sqlite://"))

        engine = AppetiteEngine.from_config(config, create_tables=True)

        assert isinstance(engine.notifier, BreachNotifier)
        assert engine.config is config
        with pytest.raises(EntityNotFoundError):
            engine.evaluate_metric("missing")

    def test_invalid_config_rejected(self):
        config = AppetiteEngineConfig(database=DatabaseConfig(url="sqlite://"))
        config.sweep.max_workers = 0

        with pytest.raises(ValueError, match="max_workers"):
            AppetiteEngine.from_config(config)
