"""
Tests for engine configuration.
"""

from risk_appetite.config import (
    AppetiteEngineConfig,
    EscalationConfig,
    RetryConfig,
    get_default_config,
    load_config_from_dict,
    load_config_from_env,
)
from risk_appetite.types import BreachSeverity


class TestDefaults:
    """Default configuration values."""

    def test_freshness_window_is_ninety_days(self):
        assert get_default_config().freshness.window_days == 90

    def test_default_escalation_rules(self):
        escalation = EscalationConfig()

        assert escalation.amber.sla_days == 30
        assert escalation.amber.notify == ["CRO", "Risk Committee"]
        assert escalation.amber.action_required == "Remediation plan mandatory"
        assert escalation.red.sla_days == 7
        assert escalation.red.notify == ["CEO", "BRC", "Board"]
        assert escalation.red.action_required == "Board paper mandatory"

    def test_default_config_is_valid(self):
        assert get_default_config().validate() == []


class TestEscalationOverrides:
    """A metric's escalation_rules replace the default per severity."""

    def test_override_applies_to_its_severity_only(self):
        overrides = {"red": {"sla_days": 1, "notify": ["CEO"], "action_required": "Call"}}
        escalation = EscalationConfig()

        red = escalation.rule_for(BreachSeverity.RED, overrides)
        amber = escalation.rule_for(BreachSeverity.AMBER, overrides)

        assert red.sla_days == 1
        assert red.notify == ["CEO"]
        assert amber.sla_days == 30


class TestRetry:
    """Backoff grows exponentially and is capped."""

    def test_delays(self):
        retry = RetryConfig(max_attempts=5, base_delay_seconds=0.5, max_delay_seconds=1.5)

        assert retry.delay_for(1) == 0.5
        assert retry.delay_for(2) == 1.0
        assert retry.delay_for(3) == 1.5
        assert retry.delay_for(4) == 1.5


class TestLoading:
    """Loading from dicts and the environment."""

    def test_partial_dict_keeps_defaults(self):
        config = load_config_from_dict({
            "freshness": {"window_days": 30},
            "sweep": {"max_workers": 8},
        })

        assert config.freshness.window_days == 30
        assert config.sweep.max_workers == 8
        assert config.retry.max_attempts == 3
        assert config.escalation.red.sla_days == 7

    def test_dict_escalation_override(self):
        config = load_config_from_dict({
            "escalation": {"amber": {"sla_days": 14, "notify": ["CRO"], "action_required": "Plan"}},
        })

        assert config.escalation.amber.sla_days == 14
        assert config.escalation.red.sla_days == 7

    def test_validate_reports_problems(self):
        config = AppetiteEngineConfig()
        config.sweep.max_workers = 0
        config.freshness.window_days = -1

        errors = config.validate()

        assert len(errors) == 2

    def test_env(self, monkeypatch):
        monkeypatch.setenv("APPETITE_DATABASE_URL", "sqlite:///from-env.db")
        monkeypatch.setenv("APPETITE_FRESHNESS_DAYS", "45")
        monkeypatch.setenv("APPETITE_SWEEP_WORKERS", "2")
        monkeypatch.setenv("APPETITE_ALERTING_ENABLED", "false")

        config = load_config_from_env()

        assert config.database.url == "sqlite:///from-env.db"
        assert config.freshness.window_days == 45
        assert config.sweep.max_workers == 2
        assert config.alerting.enabled is False
