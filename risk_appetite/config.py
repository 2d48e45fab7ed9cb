"""
Risk Appetite Engine - Configuration.

============================================================
PURPOSE
============================================================
Configuration for the appetite engine: freshness window,
default escalation rules, read retry policy, batch sweep
sizing, alerting and database connection settings.

============================================================
DEFAULTS
============================================================
- Freshness window: 90 days (chain validation + activation)
- AMBER breach: 30 day SLA, CRO + Risk Committee
- RED breach: 7 day SLA, CEO + BRC + Board
- Sweep workers: 4 (keep below the connection pool size)

============================================================
"""

import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from .types import BreachSeverity


# ============================================================
# INDIVIDUAL CONFIGURATIONS
# ============================================================

@dataclass
class FreshnessConfig:
    """
    Indicator data freshness rule.

    Shared by chain validation (WARNING) and metric activation
    (blocking). There is exactly one window for both.
    """

    window_days: int = 90
    """An indicator is fresh if it has a value dated within this window."""


@dataclass
class EscalationRule:
    """Who is told about a breach of one severity, and how fast."""

    sla_days: int
    notify: List[str]
    action_required: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EscalationRule":
        return cls(
            sla_days=int(data.get("sla_days", 0)),
            notify=list(data.get("notify", [])),
            action_required=str(data.get("action_required", "")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sla_days": self.sla_days,
            "notify": list(self.notify),
            "action_required": self.action_required,
        }


@dataclass
class EscalationConfig:
    """
    Default escalation rules per breach severity.

    A metric's own escalation_rules (keys "amber" / "red") override
    these per severity.
    """

    amber: EscalationRule = field(default_factory=lambda: EscalationRule(
        sla_days=30,
        notify=["CRO", "Risk Committee"],
        action_required="Remediation plan mandatory",
    ))

    red: EscalationRule = field(default_factory=lambda: EscalationRule(
        sla_days=7,
        notify=["CEO", "BRC", "Board"],
        action_required="Board paper mandatory",
    ))

    def rule_for(
        self,
        severity: BreachSeverity,
        overrides: Optional[Dict[str, Any]] = None,
    ) -> EscalationRule:
        """Resolve the rule for a severity, applying metric overrides."""
        key = severity.value.lower()
        if overrides and isinstance(overrides.get(key), dict):
            return EscalationRule.from_dict(overrides[key])
        return self.amber if severity == BreachSeverity.AMBER else self.red

    def to_dict(self) -> Dict[str, Any]:
        return {"amber": self.amber.to_dict(), "red": self.red.to_dict()}


@dataclass
class RetryConfig:
    """
    Bounded exponential backoff for idempotent reads.

    Ledger writes are never retried by this policy.
    """

    max_attempts: int = 3
    base_delay_seconds: float = 0.1
    max_delay_seconds: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based)."""
        return min(self.max_delay_seconds, self.base_delay_seconds * (2 ** (attempt - 1)))


@dataclass
class SweepConfig:
    """Nightly re-evaluation across all active metrics."""

    max_workers: int = 4
    """Parallel metrics. Keep at or below the database pool size."""


@dataclass
class AlertingConfig:
    """Breach notification settings."""

    enabled: bool = True
    """Dispatch to the sender. When False alerts are only logged."""

    min_alert_interval_seconds: int = 300
    """Repeat alerts for the same breach (or, without one, the same metric
    and severity) inside this window are dropped."""

    max_history: int = 100
    """Recent alerts kept in memory for inspection."""


@dataclass
class DatabaseConfig:
    """Connection settings for the persistence layer."""

    url: str = "sqlite:///risk_appetite.db"
    pool_size: int = 10
    max_overflow: int = 20
    pool_timeout: int = 30
    pool_recycle: int = 1800
    echo: bool = False


# ============================================================
# ROOT CONFIGURATION
# ============================================================

@dataclass
class AppetiteEngineConfig:
    """Complete engine configuration."""

    freshness: FreshnessConfig = field(default_factory=FreshnessConfig)
    escalation: EscalationConfig = field(default_factory=EscalationConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    sweep: SweepConfig = field(default_factory=SweepConfig)
    alerting: AlertingConfig = field(default_factory=AlertingConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)

    detection_window_hours: int = 24
    """Width of the window used to build breach idempotency keys."""

    def validate(self) -> List[str]:
        """Return a list of configuration problems (empty if valid)."""
        errors = []
        if self.freshness.window_days <= 0:
            errors.append("freshness.window_days must be positive")
        if self.retry.max_attempts < 1:
            errors.append("retry.max_attempts must be at least 1")
        if self.sweep.max_workers < 1:
            errors.append("sweep.max_workers must be at least 1")
        if self.detection_window_hours <= 0:
            errors.append("detection_window_hours must be positive")
        return errors


def get_default_config() -> AppetiteEngineConfig:
    """Get default configuration."""
    return AppetiteEngineConfig()


# ============================================================
# CONFIGURATION LOADING
# ============================================================

def load_config_from_dict(data: Dict[str, Any]) -> AppetiteEngineConfig:
    """
    Load configuration from a dictionary.

    Missing sections and keys keep their defaults.

    Args:
        data: Configuration dictionary (e.g. parsed from JSON/YAML)

    Returns:
        AppetiteEngineConfig instance
    """
    config = get_default_config()

    if "freshness" in data:
        f = data["freshness"]
        config.freshness = FreshnessConfig(
            window_days=f.get("window_days", 90),
        )

    if "escalation" in data:
        e = data["escalation"]
        if "amber" in e:
            config.escalation.amber = EscalationRule.from_dict(e["amber"])
        if "red" in e:
            config.escalation.red = EscalationRule.from_dict(e["red"])

    if "retry" in data:
        r = data["retry"]
        config.retry = RetryConfig(
            max_attempts=r.get("max_attempts", 3),
            base_delay_seconds=r.get("base_delay_seconds", 0.1),
            max_delay_seconds=r.get("max_delay_seconds", 2.0),
        )

    if "sweep" in data:
        config.sweep = SweepConfig(
            max_workers=data["sweep"].get("max_workers", 4),
        )

    if "alerting" in data:
        a = data["alerting"]
        config.alerting = AlertingConfig(
            enabled=a.get("enabled", True),
            min_alert_interval_seconds=a.get("min_alert_interval_seconds", 300),
            max_history=a.get("max_history", 100),
        )

    if "database" in data:
        d = data["database"]
        config.database = DatabaseConfig(
            url=d.get("url", config.database.url),
            pool_size=d.get("pool_size", 10),
            max_overflow=d.get("max_overflow", 20),
            pool_timeout=d.get("pool_timeout", 30),
            pool_recycle=d.get("pool_recycle", 1800),
            echo=d.get("echo", False),
        )

    if "detection_window_hours" in data:
        config.detection_window_hours = int(data["detection_window_hours"])

    return config


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_config_from_env() -> AppetiteEngineConfig:
    """
    Load configuration from environment variables (and .env).

    Recognised variables:
        APPETITE_DATABASE_URL / DATABASE_URL
        APPETITE_FRESHNESS_DAYS
        APPETITE_SWEEP_WORKERS
        APPETITE_ALERTING_ENABLED
    """
    load_dotenv()
    config = get_default_config()

    url = os.getenv("APPETITE_DATABASE_URL") or os.getenv("DATABASE_URL")
    if url:
        config.database.url = url

    freshness_days = os.getenv("APPETITE_FRESHNESS_DAYS")
    if freshness_days:
        config.freshness.window_days = int(freshness_days)

    workers = os.getenv("APPETITE_SWEEP_WORKERS")
    if workers:
        config.sweep.max_workers = int(workers)

    alerting = os.getenv("APPETITE_ALERTING_ENABLED")
    if alerting:
        config.alerting.enabled = _env_bool(alerting)

    return config
