"""
Risk Appetite Engine - Engine Facade.

============================================================
PURPOSE
============================================================
Single entry point for dashboards, API layers and schedulers.

Owns session handling: reads run in a read-only session and
are retried on transient failures, gated writes run in one
transaction, ledger writes go through the breach tracker.

============================================================
OPERATIONS
============================================================
evaluate_metric(metric_id)                -> ThresholdEvaluationResult
record_observation_and_maybe_breach(...)  -> OperationResult
get_category_status(category_id)          -> CategoryAppetiteStatus
get_enterprise_status(org_id)             -> EnterpriseAppetiteStatus
validate_chain(org_id)                    -> ChainValidationResult
approve_statement(statement_id, user)     -> OperationResult
activate_metric(metric_id, user)          -> OperationResult
run_sweep(org_id, cancel_event)           -> SweepReport

Breach workflow: start_remediation, resolve_breach,
board_accept, escalation_chain, breach_statistics.

============================================================
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import date
from typing import Callable, List, Optional, Tuple, TypeVar

from sqlalchemy.orm import sessionmaker

from .aggregator import StatusAggregator
from .alerting import BreachNotifier
from .clock import ClockProtocol, SystemClock
from .config import AppetiteEngineConfig, get_default_config
from .database import (
    call_with_read_retry,
    create_all_tables,
    create_database_engine,
    create_session_factory,
    session_scope,
    transaction_scope,
)
from .evaluator import breach_threshold_value, evaluate_metric_status
from .gate import ApprovalGate
from .indicators import SqlIndicatorStore
from .repository import AppetiteRepository
from .tracker import BreachTracker
from .types import (
    AppetiteBreach,
    AppetiteStatus,
    BreachStatistics,
    CategoryAppetiteStatus,
    ChainValidationResult,
    EnterpriseAppetiteStatus,
    EntityNotFoundError,
    IndicatorObservation,
    OperationResult,
    SweepReport,
    ThresholdEvaluationResult,
    ToleranceMetric,
)
from .validator import ChainValidator


logger = logging.getLogger(__name__)

T = TypeVar("T")


NO_DATA = ThresholdEvaluationResult(
    status=AppetiteStatus.UNKNOWN,
    threshold="No data",
    explanation="No current indicator value",
)


@dataclass
class _Evaluation:
    """Verdict plus what the tracker needs to record it."""

    metric: ToleranceMetric
    result: ThresholdEvaluationResult
    value: Optional[float]
    threshold_value: Optional[float]
    observation_id: Optional[str]


class AppetiteEngine:
    """
    Risk Appetite & Tolerance engine.

    ============================================================
    FAILURE HANDLING
    ============================================================
    - Configuration errors raise ConfigurationError
    - Missing data maps to UNKNOWN, never to an exception
    - Governance refusals are OperationResult(success=False)
    - Persistence failures raise PersistenceError
      (is_retryable tells the caller whether to retry)

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
        Initialize the engine.

        Args:
            session_factory: SQLAlchemy session factory
            config: Engine configuration (defaults if None)
            clock: Time source (system clock if None)
            notifier: Breach notifier (logging-only if None)
        """
        self._session_factory = session_factory
        self._config = config or get_default_config()
        self._clock = clock or SystemClock()
        self._notifier = notifier or BreachNotifier(self._config.alerting, clock=self._clock)

        self._tracker = BreachTracker(
            session_factory,
            config=self._config,
            clock=self._clock,
            notifier=self._notifier,
        )

        logger.info("AppetiteEngine initialized")

    @classmethod
    def from_config(
        cls,
        config: AppetiteEngineConfig,
        create_tables: bool = False,
        **kwargs,
    ) -> "AppetiteEngine":
        """Build engine, database connection and session factory from config."""
        errors = config.validate()
        if errors:
            raise ValueError(f"Invalid appetite engine configuration: {'; '.join(errors)}")

        db_engine = create_database_engine(config.database)
        if create_tables:
            create_all_tables(db_engine)
        return cls(create_session_factory(db_engine), config=config, **kwargs)

    @property
    def config(self) -> AppetiteEngineConfig:
        return self._config

    @property
    def tracker(self) -> BreachTracker:
        return self._tracker

    @property
    def notifier(self) -> BreachNotifier:
        return self._notifier

    # --------------------------------------------------------
    # SESSION HELPERS
    # --------------------------------------------------------

    def _read(self, operation: Callable[[AppetiteRepository], T], description: str) -> T:
        def run() -> T:
            with session_scope(self._session_factory) as session:
                return operation(AppetiteRepository(session))

        return call_with_read_retry(run, self._config.retry, description)

    def _today(self) -> date:
        return self._clock.today()

    # --------------------------------------------------------
    # EVALUATION
    # --------------------------------------------------------

    def _evaluate(
        self,
        repository: AppetiteRepository,
        metric_id: str,
        value: Optional[float] = None,
        observation_id: Optional[str] = None,
    ) -> _Evaluation:
        """Evaluate a supplied value, or the latest observation when None."""
        record = repository.get_metric(metric_id)
        if record is None:
            raise EntityNotFoundError("ToleranceMetric", metric_id)

        metric = record.to_metric()
        store = SqlIndicatorStore(repository)

        if value is None:
            latest: Optional[IndicatorObservation] = None
            if metric.indicator_id:
                latest = store.get_latest_value(metric.indicator_id)
            if latest is None:
                return _Evaluation(metric, NO_DATA, None, None, None)
            value = latest.value
            observation_id = latest.id

        result = evaluate_metric_status(
            metric,
            value,
            history_lookup=store.get_value_as_of,
            as_of=self._today(),
        )

        threshold_value = None
        if result.status in (AppetiteStatus.AMBER, AppetiteStatus.RED):
            threshold_value = breach_threshold_value(metric, result.status, value)

        return _Evaluation(metric, result, value, threshold_value, observation_id)

    def evaluate_metric(self, metric_id: str) -> ThresholdEvaluationResult:
        """
        Evaluate a metric's latest indicator value.

        Raises:
            EntityNotFoundError: Unknown metric
            ConfigurationError: Metric cannot be evaluated
        """
        evaluation = self._read(lambda repo: self._evaluate(repo, metric_id), "metric evaluation")
        return evaluation.result

    def record_observation_and_maybe_breach(
        self,
        organization_id: str,
        metric_id: str,
        value: float,
        indicator_value_ref: Optional[str] = None,
        acting_user_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> OperationResult:
        """
        Evaluate an observed value and apply it to the breach ledger.

        Returns:
            OperationResult whose data is the open breach (or None)

        Raises:
            ConfigurationError: Metric cannot be evaluated
            PersistenceError: Ledger read or write failed
        """
        try:
            evaluation = self._read(
                lambda repo: self._evaluate(repo, metric_id, value, indicator_value_ref),
                "metric evaluation",
            )
        except EntityNotFoundError:
            return OperationResult.refused("Metric not found")

        if evaluation.metric.organization_id != organization_id:
            return OperationResult.refused("Metric does not belong to this organization")

        breach = self._track(evaluation, acting_user_id, idempotency_key)
        return OperationResult.ok(data=breach)

    def _track(
        self,
        evaluation: _Evaluation,
        acting_user_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> Optional[AppetiteBreach]:
        if evaluation.result.status == AppetiteStatus.UNKNOWN:
            return None

        return self._tracker.record_observation(
            organization_id=evaluation.metric.organization_id,
            metric_id=evaluation.metric.id,
            indicator_value_ref=evaluation.observation_id,
            status=evaluation.result.status,
            value=evaluation.value,
            threshold_value=evaluation.threshold_value,
            idempotency_key=idempotency_key,
            acting_user_id=acting_user_id,
        )

    # --------------------------------------------------------
    # ROLL-UPS AND VALIDATION
    # --------------------------------------------------------

    def get_category_status(self, category_id: str) -> CategoryAppetiteStatus:
        return self._read(
            lambda repo: StatusAggregator(repo, SqlIndicatorStore(repo)).category_status(
                category_id, self._today()
            ),
            "category status",
        )

    def get_enterprise_status(self, organization_id: str) -> EnterpriseAppetiteStatus:
        return self._read(
            lambda repo: StatusAggregator(repo, SqlIndicatorStore(repo)).enterprise_status(
                organization_id, self._today()
            ),
            "enterprise status",
        )

    def _validator(self, repository: AppetiteRepository) -> ChainValidator:
        return ChainValidator(repository, SqlIndicatorStore(repository), self._config.freshness)

    def validate_chain(self, organization_id: str) -> ChainValidationResult:
        return self._read(
            lambda repo: self._validator(repo).validate(organization_id, self._today()),
            "chain validation",
        )

    # --------------------------------------------------------
    # APPROVAL GATE
    # --------------------------------------------------------

    def _gate(self, repository: AppetiteRepository) -> ApprovalGate:
        return ApprovalGate(
            repository,
            self._validator(repository),
            SqlIndicatorStore(repository),
            self._config.freshness,
        )

    def approve_statement(self, statement_id: str, approver_id: str) -> OperationResult:
        """DRAFT -> APPROVED, blocked by critical chain gaps."""
        with transaction_scope(self._session_factory) as session:
            return self._gate(AppetiteRepository(session)).approve_statement(
                statement_id, approver_id, self._clock.now()
            )

    def activate_metric(self, metric_id: str, activator_id: str) -> OperationResult:
        """Activate a metric, blocked without a linked and fresh indicator."""
        with transaction_scope(self._session_factory) as session:
            return self._gate(AppetiteRepository(session)).activate_metric(
                metric_id, activator_id, self._clock.now()
            )

    # --------------------------------------------------------
    # BREACH WORKFLOW
    # --------------------------------------------------------

    def start_remediation(
        self,
        breach_id: str,
        plan: str,
        owner_id: str,
        due_date: Optional[date] = None,
    ) -> AppetiteBreach:
        return self._tracker.start_remediation(breach_id, plan, owner_id, due_date)

    def resolve_breach(
        self,
        breach_id: str,
        user_id: str,
        notes: Optional[str] = None,
    ) -> AppetiteBreach:
        return self._tracker.resolve_breach(breach_id, user_id, notes)

    def board_accept(
        self,
        breach_id: str,
        user_id: str,
        rationale: str,
        temporary_threshold: Optional[float] = None,
        valid_until: Optional[date] = None,
    ) -> AppetiteBreach:
        return self._tracker.board_accept(
            breach_id, user_id, rationale, temporary_threshold, valid_until
        )

    def get_breach(self, breach_id: str) -> AppetiteBreach:
        return self._tracker.get_breach(breach_id)

    def list_breaches(
        self,
        organization_id: str,
        metric_id: Optional[str] = None,
        open_only: bool = False,
    ) -> List[AppetiteBreach]:
        return self._tracker.list_breaches(organization_id, metric_id, open_only)

    def escalation_chain(self, breach_id: str) -> List[AppetiteBreach]:
        return self._tracker.escalation_chain(breach_id)

    def breach_statistics(self, organization_id: str) -> BreachStatistics:
        return self._tracker.breach_statistics(organization_id)

    # --------------------------------------------------------
    # BATCH SWEEP
    # --------------------------------------------------------

    def _sweep_metric(
        self,
        metric_id: str,
        cancel_event: threading.Event,
    ) -> Optional[Tuple[AppetiteStatus, Optional[AppetiteBreach]]]:
        """Re-evaluate one metric. None means skipped (cancelled)."""
        if cancel_event.is_set():
            return None

        evaluation = self._read(lambda repo: self._evaluate(repo, metric_id), "sweep evaluation")
        breach = self._track(evaluation)
        return evaluation.result.status, breach

    def run_sweep(
        self,
        organization_id: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> SweepReport:
        """
        Re-evaluate every active linked metric against its latest value.

        Metrics fan out on a bounded worker pool, each in its own
        transaction. Cancellation is checked before each metric
        starts, never inside one. A failing metric is recorded in
        the report and does not stop the sweep.

        Args:
            organization_id: Restrict to one organization (all if None)
            cancel_event: Set to stop starting new metrics

        Returns:
            SweepReport
        """
        cancel_event = cancel_event or threading.Event()
        report = SweepReport(started_at=self._clock.now())

        metric_ids = self._read(
            lambda repo: [
                m.id for m in repo.list_active_metrics_for_org(organization_id, linked_only=True)
            ],
            "sweep metric list",
        )

        logger.info(f"Sweep started: {len(metric_ids)} metrics, {self._config.sweep.max_workers} workers")

        with ThreadPoolExecutor(
            max_workers=self._config.sweep.max_workers,
            thread_name_prefix="appetite-sweep",
        ) as executor:
            futures = {
                executor.submit(self._sweep_metric, metric_id, cancel_event): metric_id
                for metric_id in metric_ids
            }

            for future in as_completed(futures):
                metric_id = futures[future]
                try:
                    outcome = future.result()
                except Exception as e:
                    logger.error(f"Sweep failed for metric {metric_id}: {e}", exc_info=True)
                    report.failures[metric_id] = str(e)
                    continue

                if outcome is None:
                    report.skipped.append(metric_id)
                    continue

                status, breach = outcome
                report.evaluated += 1
                report.statuses[status.value] += 1
                if breach is not None and breach.is_open:
                    report.breaches_open += 1

        report.skipped.sort()
        report.cancelled = cancel_event.is_set()
        report.finished_at = self._clock.now()

        logger.info(
            f"Sweep finished: {report.evaluated} evaluated, {report.breaches_open} open breaches, "
            f"{len(report.failures)} failures, {len(report.skipped)} skipped"
        )
        return report
