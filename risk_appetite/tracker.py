"""
Risk Appetite Engine - Breach Tracker.

============================================================
PURPOSE
============================================================
Sole writer of the breach ledger.

Turns evaluated observations into ledger changes through the
breach state machine, and runs the manual breach workflow
(remediation, resolution, board acceptance).

============================================================
CRITICAL INVARIANTS
============================================================
1. At most one OPEN/IN_PROGRESS breach per metric
2. Recording the same observation twice writes once
3. An AMBER -> RED escalation keeps its provenance
   (RED.prior_breach_id = AMBER.id, AMBER closed)
4. BOARD_ACCEPTED entries are never modified
5. Notifications go out after commit and never fail a write

============================================================
SERIALISATION
============================================================
Per metric, in this order:
- in-process lock (one threading.Lock per metric id)
- row lock on the metric (SELECT ... FOR UPDATE)
- partial unique index on open breaches

Different metrics never share a lock. A concurrent insert that
loses the unique index race is rolled back and the decision is
re-run once under the same idempotency key.

============================================================
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from .alerting import BreachNotifier
from .clock import ClockProtocol, SystemClock
from .config import AppetiteEngineConfig, get_default_config
from .database import call_with_read_retry, session_scope, transaction_scope
from .models import AppetiteBreachRecord, ToleranceMetricRecord
from .repository import AppetiteRepository
from .state_machine import (
    BreachAction,
    decide_breach_action,
    require_mutable,
    severity_for,
    validate_status_transition,
)
from .types import (
    AppetiteBreach,
    AppetiteStatus,
    BreachSeverity,
    BreachStatistics,
    BreachStatus,
    ConfigurationError,
    EntityNotFoundError,
    PersistenceError,
)


logger = logging.getLogger(__name__)


RESOLVED_BY_GREEN_NOTE = "Metric returned to GREEN zone"
ESCALATED_NOTE = "Escalated to RED"


@dataclass
class _BreachNotice:
    """Notification queued inside a transaction, sent after commit."""

    metric_id: str
    metric_name: str
    severity: BreachSeverity
    escalation_rules: Dict
    breach_id: str
    value: float
    threshold_value: float


@dataclass
class _Outcome:
    breach: Optional[AppetiteBreach] = None
    notices: List[_BreachNotice] = field(default_factory=list)


class BreachTracker:
    """
    Breach ledger writer.

    ============================================================
    RESPONSIBILITIES
    ============================================================
    1. Apply observations to the ledger (open, refresh,
       escalate, de-escalate, resolve)
    2. Breach workflow: remediation, manual resolution,
       board acceptance
    3. Ledger reads: escalation chain, statistics

    ============================================================
    THREAD SAFETY
    ============================================================
    Every ledger read-modify-write for a metric runs under
    that metric's lock. The lock registry itself is guarded.

    ============================================================
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        config: Optional[AppetiteEngineConfig] = None,
        clock: Optional[ClockProtocol] = None,
        notifier: Optional[BreachNotifier] = None,
    ):
        """
        Initialize the breach tracker.

        Args:
            session_factory: SQLAlchemy session factory
            config: Engine configuration
            clock: Time source for detection timestamps
            notifier: Breach notification dispatcher
        """
        self._session_factory = session_factory
        self._config = config or get_default_config()
        self._clock = clock or SystemClock()
        self._notifier = notifier

        self._registry_lock = threading.Lock()
        self._metric_locks: Dict[str, threading.Lock] = {}

    # --------------------------------------------------------
    # LOCKING
    # --------------------------------------------------------

    def _lock_for(self, metric_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._metric_locks.get(metric_id)
            if lock is None:
                lock = threading.Lock()
                self._metric_locks[metric_id] = lock
            return lock

    def build_idempotency_key(self, metric_id: str, detected_at: Optional[datetime] = None) -> str:
        """
        Key identifying one observation of a metric.

        Metric id plus the start of the detection window the
        observation falls in (UTC day by default).
        """
        detected_at = detected_at or self._clock.now()
        window = timedelta(hours=self._config.detection_window_hours)
        since_epoch = detected_at - datetime(1970, 1, 1)
        window_start = datetime(1970, 1, 1) + window * (since_epoch // window)
        return f"{metric_id}:{window_start.strftime('%Y-%m-%dT%H:%M')}"

    # --------------------------------------------------------
    # OBSERVATIONS
    # --------------------------------------------------------

    def record_observation(
        self,
        organization_id: str,
        metric_id: str,
        indicator_value_ref: Optional[str],
        status: AppetiteStatus,
        value: float,
        threshold_value: Optional[float],
        idempotency_key: Optional[str] = None,
        acting_user_id: Optional[str] = None,
    ) -> Optional[AppetiteBreach]:
        """
        Apply one evaluated observation to the ledger.

        Args:
            organization_id: Owning organization
            metric_id: Tolerance metric observed
            indicator_value_ref: Observation that produced the value
            status: Evaluator verdict
            value: Observed value
            threshold_value: Threshold crossed (AMBER/RED only)
            idempotency_key: Defaults to metric id + detection window
            acting_user_id: Recorded as resolver on GREEN

        Returns:
            The open breach after the change, or None when the
            metric has no open breach (GREEN, UNKNOWN, nothing open)

        Raises:
            ConfigurationError: Unknown status
            EntityNotFoundError: Metric does not exist in organization_id
            PersistenceError: Ledger write failed
        """
        try:
            status = AppetiteStatus(status)
        except ValueError:
            raise ConfigurationError(f"Unknown appetite status: {status!r}")

        if status == AppetiteStatus.UNKNOWN:
            logger.debug(f"Metric {metric_id} UNKNOWN, ledger unchanged")
            return None

        if status in (AppetiteStatus.AMBER, AppetiteStatus.RED) and threshold_value is None:
            raise ConfigurationError(
                f"{status.value} observation for metric {metric_id} has no threshold value"
            )

        key = idempotency_key or self.build_idempotency_key(metric_id)

        def apply() -> _Outcome:
            return self._apply_observation(
                organization_id, metric_id, indicator_value_ref,
                status, value, threshold_value, key, acting_user_id,
            )

        with self._lock_for(metric_id):
            try:
                outcome = apply()
            except PersistenceError as e:
                if not isinstance(e.cause, IntegrityError):
                    raise
                logger.warning(
                    f"Concurrent breach write for metric {metric_id}, "
                    f"re-running decision under key {key}"
                )
                outcome = apply()

        self._dispatch(outcome.notices)
        return outcome.breach

    def _apply_observation(
        self,
        organization_id: str,
        metric_id: str,
        indicator_value_ref: Optional[str],
        status: AppetiteStatus,
        value: float,
        threshold_value: Optional[float],
        key: str,
        acting_user_id: Optional[str],
    ) -> _Outcome:
        """One read-modify-write transaction. Caller holds the metric lock."""
        with transaction_scope(self._session_factory) as session:
            repository = AppetiteRepository(session)

            metric = repository.lock_metric(metric_id)
            if metric is None:
                raise EntityNotFoundError("ToleranceMetric", metric_id)
            if metric.organization_id != organization_id:
                raise EntityNotFoundError("ToleranceMetric", metric_id)

            open_breach = repository.get_open_breach(metric_id, for_update=True)
            open_severity = BreachSeverity(open_breach.severity) if open_breach else None
            action = decide_breach_action(open_severity, status)
            now = self._clock.now()

            if action == BreachAction.NO_OP:
                return _Outcome()

            if action == BreachAction.RESOLVE:
                self._resolve_open(repository, metric_id, acting_user_id, now)
                return _Outcome()

            if action == BreachAction.REFRESH:
                if open_breach.idempotency_key == key and open_breach.breach_value == value:
                    logger.debug(f"Observation {key} already recorded, no write")
                    return _Outcome(breach=open_breach.to_breach())

                require_mutable(BreachStatus(open_breach.status))
                open_breach.breach_value = value
                open_breach.indicator_value_id = indicator_value_ref
                open_breach.idempotency_key = key
                open_breach.updated_at = now
                repository.flush()
                logger.debug(f"Breach {open_breach.id} refreshed ({open_breach.severity})")
                return _Outcome(breach=open_breach.to_breach())

            if action == BreachAction.DEESCALATE:
                require_mutable(BreachStatus(open_breach.status))
                open_breach.severity = BreachSeverity.AMBER.value
                open_breach.breach_value = value
                open_breach.threshold_value = threshold_value
                open_breach.indicator_value_id = indicator_value_ref
                open_breach.idempotency_key = key
                open_breach.updated_at = now
                repository.flush()
                logger.info(f"Breach {open_breach.id} de-escalated RED -> AMBER for {metric.metric_name}")
                return _Outcome(breach=open_breach.to_breach())

            prior_id = None
            if action == BreachAction.ESCALATE:
                validate_status_transition(BreachStatus(open_breach.status), BreachStatus.CLOSED)
                open_breach.status = BreachStatus.CLOSED.value
                open_breach.resolved_at = now
                open_breach.resolution_notes = ESCALATED_NOTE
                open_breach.updated_at = now
                repository.flush()
                prior_id = open_breach.id

            severity = severity_for(status)
            rule = self._config.escalation.rule_for(severity, metric.escalation_rules)
            record = repository.add_breach(AppetiteBreachRecord(
                organization_id=organization_id,
                tolerance_metric_id=metric_id,
                indicator_value_id=indicator_value_ref,
                severity=severity.value,
                breach_value=value,
                threshold_value=threshold_value,
                detected_at=now,
                prior_breach_id=prior_id,
                idempotency_key=key,
                status=BreachStatus.OPEN.value,
                escalated_to=list(rule.notify),
                escalated_at=now,
                created_at=now,
                updated_at=now,
            ))

            if prior_id:
                logger.warning(
                    f"Breach escalated AMBER -> RED for {metric.metric_name}: "
                    f"{record.id} (prior {prior_id})"
                )
            else:
                logger.info(f"{severity.value} breach opened for {metric.metric_name}: {record.id}")

            notice = _BreachNotice(
                metric_id=metric_id,
                metric_name=metric.metric_name,
                severity=severity,
                escalation_rules=dict(metric.escalation_rules or {}),
                breach_id=record.id,
                value=value,
                threshold_value=threshold_value,
            )
            return _Outcome(breach=record.to_breach(), notices=[notice])

    def _resolve_open(
        self,
        repository: AppetiteRepository,
        metric_id: str,
        acting_user_id: Optional[str],
        now: datetime,
    ) -> int:
        breaches = repository.list_open_breaches(metric_id)
        for breach in breaches:
            validate_status_transition(BreachStatus(breach.status), BreachStatus.RESOLVED)
            breach.status = BreachStatus.RESOLVED.value
            breach.resolved_at = now
            breach.resolved_by = acting_user_id
            breach.resolution_notes = RESOLVED_BY_GREEN_NOTE
            breach.updated_at = now
        repository.flush()

        if breaches:
            logger.info(f"Resolved {len(breaches)} breach(es) for metric {metric_id}: back to GREEN")
        return len(breaches)

    def _dispatch(self, notices: List[_BreachNotice]) -> None:
        if self._notifier is None:
            return
        for notice in notices:
            rule = self._config.escalation.rule_for(notice.severity, notice.escalation_rules)
            try:
                self._notifier.notify(
                    metric_id=notice.metric_id,
                    metric_name=notice.metric_name,
                    severity=notice.severity,
                    recipients=rule.notify,
                    sla_days=rule.sla_days,
                    action_required=rule.action_required,
                    breach_id=notice.breach_id,
                    value=notice.value,
                    threshold_value=notice.threshold_value,
                )
            except Exception as e:
                logger.error(f"Breach notification failed for {notice.breach_id}: {e}", exc_info=True)

    # --------------------------------------------------------
    # BREACH WORKFLOW
    # --------------------------------------------------------

    def _metric_id_of(self, breach_id: str) -> str:
        def read() -> str:
            with session_scope(self._session_factory) as session:
                record = AppetiteRepository(session).get_breach(breach_id)
                if record is None:
                    raise EntityNotFoundError("AppetiteBreach", breach_id)
                return record.tolerance_metric_id

        return call_with_read_retry(read, self._config.retry, "breach lookup")

    def _update_breach(
        self,
        breach_id: str,
        target: BreachStatus,
        mutate: Callable[[AppetiteBreachRecord, ToleranceMetricRecord, datetime], None],
    ) -> AppetiteBreach:
        """Locked lifecycle change of one breach."""
        metric_id = self._metric_id_of(breach_id)

        with self._lock_for(metric_id):
            with transaction_scope(self._session_factory) as session:
                repository = AppetiteRepository(session)
                metric = repository.lock_metric(metric_id)

                record = repository.get_breach(breach_id, for_update=True)
                if record is None:
                    raise EntityNotFoundError("AppetiteBreach", breach_id)

                current = BreachStatus(record.status)
                require_mutable(current)
                validate_status_transition(current, target)

                now = self._clock.now()
                mutate(record, metric, now)
                record.status = target.value
                record.updated_at = now
                repository.flush()

                logger.info(f"Breach {breach_id} {current.value} -> {target.value}")
                return record.to_breach()

    def start_remediation(
        self,
        breach_id: str,
        plan: str,
        owner_id: str,
        due_date: Optional[date] = None,
    ) -> AppetiteBreach:
        """
        Record a remediation plan and move OPEN -> IN_PROGRESS.

        Without a due date the escalation rule's SLA applies.
        """
        def mutate(record: AppetiteBreachRecord, metric: ToleranceMetricRecord, now: datetime) -> None:
            due = due_date
            if due is None:
                rule = self._config.escalation.rule_for(
                    BreachSeverity(record.severity), metric.escalation_rules
                )
                due = now.date() + timedelta(days=rule.sla_days)
            record.remediation_plan = plan
            record.remediation_owner = owner_id
            record.remediation_due_date = due

        return self._update_breach(breach_id, BreachStatus.IN_PROGRESS, mutate)

    def resolve_breach(
        self,
        breach_id: str,
        user_id: str,
        notes: Optional[str] = None,
    ) -> AppetiteBreach:
        """Resolve a breach manually."""
        def mutate(record: AppetiteBreachRecord, metric: ToleranceMetricRecord, now: datetime) -> None:
            record.resolved_at = now
            record.resolved_by = user_id
            record.resolution_notes = notes

        return self._update_breach(breach_id, BreachStatus.RESOLVED, mutate)

    def board_accept(
        self,
        breach_id: str,
        user_id: str,
        rationale: str,
        temporary_threshold: Optional[float] = None,
        valid_until: Optional[date] = None,
    ) -> AppetiteBreach:
        """
        Board accepts the excursion.

        Terminal: the entry can never be modified afterwards.
        """
        def mutate(record: AppetiteBreachRecord, metric: ToleranceMetricRecord, now: datetime) -> None:
            record.board_accepted_by = user_id
            record.board_accepted_at = now
            record.board_acceptance_rationale = rationale
            record.temporary_threshold = temporary_threshold
            record.exception_valid_until = valid_until

        return self._update_breach(breach_id, BreachStatus.BOARD_ACCEPTED, mutate)

    # --------------------------------------------------------
    # LEDGER READS
    # --------------------------------------------------------

    def get_breach(self, breach_id: str) -> AppetiteBreach:
        def read() -> AppetiteBreach:
            with session_scope(self._session_factory) as session:
                record = AppetiteRepository(session).get_breach(breach_id)
                if record is None:
                    raise EntityNotFoundError("AppetiteBreach", breach_id)
                return record.to_breach()

        return call_with_read_retry(read, self._config.retry, "breach read")

    def list_breaches(
        self,
        organization_id: str,
        metric_id: Optional[str] = None,
        open_only: bool = False,
    ) -> List[AppetiteBreach]:
        def read() -> List[AppetiteBreach]:
            with session_scope(self._session_factory) as session:
                records = AppetiteRepository(session).list_breaches(
                    organization_id, metric_id=metric_id, open_only=open_only
                )
                return [r.to_breach() for r in records]

        return call_with_read_retry(read, self._config.retry, "breach list")

    def escalation_chain(self, breach_id: str) -> List[AppetiteBreach]:
        """
        Walk prior_breach_id links back to the first breach.

        Returns:
            Breaches ordered from the original detection to breach_id
        """
        def read() -> List[AppetiteBreach]:
            with session_scope(self._session_factory) as session:
                return self._walk_chain(AppetiteRepository(session), breach_id)

        return call_with_read_retry(read, self._config.retry, "escalation chain")

    def _walk_chain(self, repository: AppetiteRepository, breach_id: str) -> List[AppetiteBreach]:
        chain: List[AppetiteBreach] = []
        seen = set()
        current_id: Optional[str] = breach_id

        while current_id and current_id not in seen:
            seen.add(current_id)
            record = repository.get_breach(current_id)
            if record is None:
                if not chain:
                    raise EntityNotFoundError("AppetiteBreach", breach_id)
                break
            chain.append(record.to_breach())
            current_id = record.prior_breach_id

        chain.reverse()
        return chain

    def breach_statistics(self, organization_id: str) -> BreachStatistics:
        """Counts by severity and status, and mean days to resolution."""
        breaches = self.list_breaches(organization_id)
        stats = BreachStatistics(total=len(breaches))

        resolution_days = []
        for breach in breaches:
            stats.by_severity[breach.severity.value] += 1
            stats.by_status[breach.status.value] += 1
            if breach.is_open:
                stats.open += 1
            if breach.status == BreachStatus.RESOLVED and breach.resolved_at is not None:
                elapsed = breach.resolved_at - breach.detected_at
                resolution_days.append(elapsed.total_seconds() / 86400)

        if resolution_days:
            stats.avg_resolution_days = round(sum(resolution_days) / len(resolution_days), 1)

        return stats
