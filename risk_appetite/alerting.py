"""
Risk Appetite Engine - Breach Notifications.

============================================================
PURPOSE
============================================================
Escalation notices for newly opened or escalated breaches.

Provides:
- Message construction per escalation rule
- Deduplication of repeats inside a time window
- Recent alert history
- Hand-off to an injectable sender

Notification is fire-and-forget: a failing sender is logged
and swallowed, it never rolls back a committed breach.

============================================================
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .clock import ClockProtocol, SystemClock
from .config import AlertingConfig
from .types import BreachSeverity


logger = logging.getLogger(__name__)


AlertSender = Callable[["BreachAlert"], Any]
"""Transport hook. Receives the alert; return value is ignored."""


@dataclass
class BreachAlert:
    """
    Structured breach notice.
    """

    metric_id: str
    """Breached tolerance metric."""

    metric_name: str
    severity: BreachSeverity

    recipients: List[str]
    """Escalation audience from the resolved rule."""

    sla_days: int
    action_required: str

    breach_id: Optional[str] = None
    value: Optional[float] = None
    threshold_value: Optional[float] = None

    timestamp: Optional[datetime] = None
    """When the alert was created."""

    @property
    def title(self) -> str:
        return f"{self.severity.value} appetite breach: {self.metric_name}"

    def format_message(self) -> str:
        """
        Plain-text body for the sender.

        Returns:
            Formatted message string
        """
        lines = [self.title, ""]

        if self.value is not None and self.threshold_value is not None:
            lines.append(f"Observed: {self.value:g} (threshold {self.threshold_value:g})")

        lines.extend([
            f"Notify: {', '.join(self.recipients)}",
            f"Action required: {self.action_required}",
            f"Response due within {self.sla_days} days",
        ])

        if self.timestamp is not None:
            lines.extend(["", f"{self.timestamp.strftime('%Y-%m-%d %H:%M:%S')} UTC"])

        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "metric_id": self.metric_id,
            "metric_name": self.metric_name,
            "severity": self.severity.value,
            "recipients": list(self.recipients),
            "sla_days": self.sla_days,
            "action_required": self.action_required,
            "breach_id": self.breach_id,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }


class BreachNotifier:
    """
    Dispatches breach notices.

    ============================================================
    FEATURES
    ============================================================
    - Deduplication per breach (or per metric and severity when
      no breach id is given) within a time window
    - Bounded alert history
    - Optional sender callable (email, chat, ticketing ...)
    - Sender failures logged, never raised

    ============================================================
    """

    def __init__(
        self,
        config: Optional[AlertingConfig] = None,
        sender: Optional[AlertSender] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        """
        Initialize notifier.

        Args:
            config: Alerting configuration
            sender: Optional transport, called with each BreachAlert
            clock: Time source (defaults to system clock)
        """
        self._config = config or AlertingConfig()
        self._sender = sender
        self._clock = clock or SystemClock()

        self._lock = threading.Lock()
        self._last_alert_times: Dict[str, datetime] = {}
        self._recent_alerts: List[BreachAlert] = []

    # --------------------------------------------------------
    # MAIN ALERT METHOD
    # --------------------------------------------------------

    def notify(
        self,
        metric_id: str,
        metric_name: str,
        severity: BreachSeverity,
        recipients: List[str],
        sla_days: int,
        action_required: str,
        breach_id: Optional[str] = None,
        value: Optional[float] = None,
        threshold_value: Optional[float] = None,
    ) -> Optional[BreachAlert]:
        """
        Send a breach notice.

        Returns:
            The alert if it was dispatched, None if deduplicated
        """
        alert = BreachAlert(
            metric_id=metric_id,
            metric_name=metric_name,
            severity=severity,
            recipients=list(recipients),
            sla_days=sla_days,
            action_required=action_required,
            breach_id=breach_id,
            value=value,
            threshold_value=threshold_value,
            timestamp=self._clock.now(),
        )

        with self._lock:
            if not self._should_send(alert):
                logger.debug(f"Duplicate breach alert suppressed: {alert.title}")
                return None
            self._add_to_history(alert)

        self._log_alert(alert)

        if not self._config.enabled:
            logger.debug(f"Alerting disabled, not dispatching: {alert.title}")
            return alert

        if self._sender is not None:
            try:
                self._sender(alert)
            except Exception as e:
                logger.error(f"Failed to dispatch breach alert for {metric_id}: {e}", exc_info=True)

        return alert

    # --------------------------------------------------------
    # DEDUPLICATION
    # --------------------------------------------------------

    def _should_send(self, alert: BreachAlert) -> bool:
        """A new breach id always notifies. Alerts without one dedupe on metric and severity."""
        if alert.breach_id is not None:
            key = f"breach:{alert.breach_id}"
        else:
            key = f"{alert.metric_id}:{alert.severity.value}"
        last_time = self._last_alert_times.get(key)

        if last_time is not None:
            elapsed = (alert.timestamp - last_time).total_seconds()
            if elapsed < self._config.min_alert_interval_seconds:
                return False

        self._last_alert_times[key] = alert.timestamp
        return True

    def _add_to_history(self, alert: BreachAlert) -> None:
        self._recent_alerts.append(alert)

        if len(self._recent_alerts) > self._config.max_history:
            self._recent_alerts = self._recent_alerts[-self._config.max_history:]

    def _log_alert(self, alert: BreachAlert) -> None:
        """Log alert at appropriate level."""
        log_message = (
            f"[{alert.severity.value}] {alert.title} -> "
            f"{', '.join(alert.recipients)} (SLA {alert.sla_days}d)"
        )
        if alert.severity == BreachSeverity.RED:
            logger.warning(log_message)
        else:
            logger.info(log_message)

    # --------------------------------------------------------
    # HISTORY ACCESS
    # --------------------------------------------------------

    def get_recent_alerts(
        self,
        count: int = 10,
        severity: Optional[BreachSeverity] = None,
    ) -> List[BreachAlert]:
        """Get recent alerts."""
        with self._lock:
            alerts = list(self._recent_alerts)

        if severity:
            alerts = [a for a in alerts if a.severity == severity]

        return alerts[-count:]


def create_logging_sender(
    target_logger: Optional[logging.Logger] = None,
) -> AlertSender:
    """
    Sender that writes the formatted notice to a logger.

    Stand-in transport for deployments without a mail or chat hook.
    """
    target = target_logger or logging.getLogger("risk_appetite.notifications")

    def send(alert: BreachAlert) -> None:
        target.warning(alert.format_message())

    return send
