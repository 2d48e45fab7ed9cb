"""
Tests for the Breach Tracker.

Tests cover:
- Opening, refreshing, escalating, de-escalating and resolving
- Idempotence of repeated observations
- Escalation provenance
- Board acceptance immutability
- Breach workflow and statistics
- Serialisation of concurrent observations
"""

import threading
from datetime import date, timedelta
from unittest.mock import MagicMock, patch

import pytest

from risk_appetite.alerting import BreachNotifier
from risk_appetite.config import AlertingConfig, DatabaseConfig
from risk_appetite.database import (
    create_all_tables,
    create_database_engine,
    create_session_factory,
)
from risk_appetite.repository import AppetiteRepository
from risk_appetite.tracker import BreachTracker
from risk_appetite.types import (
    AppetiteStatus,
    BreachSeverity,
    BreachStatus,
    ConfigurationError,
    EntityNotFoundError,
    InvalidBreachTransitionError,
)

from .helpers import NOW, ORG_ID, TODAY, Seeder


@pytest.fixture
def metric_id(seed):
    category_id = seed.category()
    return seed.metric(category_id, name="NPL ratio")


def record(tracker, metric_id, status, value, threshold=None, **kwargs):
    if threshold is None and status == AppetiteStatus.AMBER:
        threshold = 80
    if threshold is None and status == AppetiteStatus.RED:
        threshold = 100
    return tracker.record_observation(
        ORG_ID, metric_id, kwargs.pop("ref", "obs-1"), status, value, threshold, **kwargs
    )


# =============================================================
# TEST: Observation transitions
# =============================================================

class TestOpenAndRefresh:
    """New breaches and repeated observations."""

    def test_amber_opens_breach(self, tracker, metric_id, sender):
        breach = record(tracker, metric_id, AppetiteStatus.AMBER, 85)

        assert breach.severity == BreachSeverity.AMBER
        assert breach.status == BreachStatus.OPEN
        assert breach.breach_value == 85
        assert breach.threshold_value == 80
        assert breach.detected_at == NOW
        assert breach.escalated_to == ["CRO", "Risk Committee"]
        sender.assert_called_once()

    def test_same_observation_twice_writes_once(self, tracker, metric_id, clock, sender):
        """Second identical call is a no-op, not an insert."""
        first = record(tracker, metric_id, AppetiteStatus.AMBER, 85)
        clock.advance(minutes=5)
        second = record(tracker, metric_id, AppetiteStatus.AMBER, 85)

        assert second.id == first.id
        assert second.updated_at == first.updated_at
        assert len(tracker.list_breaches(ORG_ID)) == 1
        assert sender.call_count == 1

    def test_same_severity_new_value_refreshes(self, tracker, metric_id, clock, sender):
        first = record(tracker, metric_id, AppetiteStatus.AMBER, 85)
        clock.advance(hours=1)
        second = record(tracker, metric_id, AppetiteStatus.AMBER, 90, ref="obs-2")

        assert second.id == first.id
        assert second.breach_value == 90
        assert second.indicator_value_id == "obs-2"
        assert second.updated_at == NOW + timedelta(hours=1)
        assert second.detected_at == NOW
        assert len(tracker.list_breaches(ORG_ID)) == 1
        assert sender.call_count == 1

    def test_unknown_is_noop(self, tracker, metric_id):
        assert record(tracker, metric_id, AppetiteStatus.UNKNOWN, 0) is None
        assert tracker.list_breaches(ORG_ID) == []

    def test_green_without_open_breach_is_noop(self, tracker, metric_id):
        assert record(tracker, metric_id, AppetiteStatus.GREEN, 10) is None
        assert tracker.list_breaches(ORG_ID) == []


class TestEscalation:
    """AMBER -> RED keeps provenance, RED -> AMBER does not."""

    def test_amber_to_red_links_prior_breach(self, tracker, metric_id, sender):
        amber = record(tracker, metric_id, AppetiteStatus.AMBER, 85)
        red = record(tracker, metric_id, AppetiteStatus.RED, 120, ref="obs-2")

        assert red.id != amber.id
        assert red.severity == BreachSeverity.RED
        assert red.prior_breach_id == amber.id
        assert red.escalated_to == ["CEO", "BRC", "Board"]

        closed = tracker.get_breach(amber.id)
        assert closed.status == BreachStatus.CLOSED
        assert closed.resolution_notes == "Escalated to RED"

        open_rows = tracker.list_breaches(ORG_ID, open_only=True)
        assert [b.id for b in open_rows] == [red.id]

        assert sender.call_count == 2
        assert sender.call_args[0][0].severity == BreachSeverity.RED

    def test_red_to_amber_downgrades_in_place(self, tracker, metric_id, sender):
        """De-escalation mutates the RED entry: no new row, no link."""
        red = record(tracker, metric_id, AppetiteStatus.RED, 120)
        amber = record(tracker, metric_id, AppetiteStatus.AMBER, 85, ref="obs-2")

        assert amber.id == red.id
        assert amber.severity == BreachSeverity.AMBER
        assert amber.breach_value == 85
        assert amber.threshold_value == 80
        assert amber.prior_breach_id is None
        assert len(tracker.list_breaches(ORG_ID)) == 1
        assert sender.call_count == 1

    def test_escalation_chain(self, tracker, metric_id):
        amber = record(tracker, metric_id, AppetiteStatus.AMBER, 85)
        red = record(tracker, metric_id, AppetiteStatus.RED, 120)

        chain = tracker.escalation_chain(red.id)

        assert [b.id for b in chain] == [amber.id, red.id]

    def test_escalation_uses_metric_override(self, seed, tracker, sender):
        category_id = seed.category()
        metric_id = seed.metric(
            category_id,
            escalation_rules={"red": {"sla_days": 2, "notify": ["CRO"], "action_required": "Call CRO"}},
        )

        record(tracker, metric_id, AppetiteStatus.RED, 120)

        alert = sender.call_args[0][0]
        assert alert.recipients == ["CRO"]
        assert alert.sla_days == 2


class TestResolution:
    """Returning to GREEN resolves every open breach."""

    def test_green_resolves(self, tracker, metric_id):
        breach = record(tracker, metric_id, AppetiteStatus.AMBER, 85)

        result = record(tracker, metric_id, AppetiteStatus.GREEN, 50, acting_user_id="user-9")

        assert result is None
        resolved = tracker.get_breach(breach.id)
        assert resolved.status == BreachStatus.RESOLVED
        assert resolved.resolved_by == "user-9"
        assert resolved.resolution_notes == "Metric returned to GREEN zone"

    def test_amber_after_green_opens_new_breach(self, tracker, metric_id):
        first = record(tracker, metric_id, AppetiteStatus.AMBER, 85)
        record(tracker, metric_id, AppetiteStatus.GREEN, 50)
        second = record(tracker, metric_id, AppetiteStatus.AMBER, 86)

        assert second.id != first.id
        assert len(tracker.list_breaches(ORG_ID)) == 2

    def test_reopened_breach_notifies_inside_alert_interval(
        self, session_factory, config, clock, metric_id
    ):
        """A new ledger row is announced even within min_alert_interval_seconds."""
        sender = MagicMock()
        notifier = BreachNotifier(AlertingConfig(), sender=sender, clock=clock)
        tracker = BreachTracker(session_factory, config=config, clock=clock, notifier=notifier)

        first = record(tracker, metric_id, AppetiteStatus.AMBER, 85)
        clock.advance(seconds=60)
        record(tracker, metric_id, AppetiteStatus.GREEN, 50)
        clock.advance(seconds=60)
        second = record(tracker, metric_id, AppetiteStatus.AMBER, 86)

        assert second.id != first.id
        assert sender.call_count == 2
        assert [c[0][0].breach_id for c in sender.call_args_list] == [first.id, second.id]


class TestErrors:
    """Configuration and lookup failures raise."""

    def test_unknown_status(self, tracker, metric_id):
        with pytest.raises(ConfigurationError):
            tracker.record_observation(ORG_ID, metric_id, None, "PURPLE", 1, 1)

    def test_breach_without_threshold(self, tracker, metric_id):
        with pytest.raises(ConfigurationError):
            tracker.record_observation(ORG_ID, metric_id, None, AppetiteStatus.RED, 120, None)

    def test_unknown_metric(self, tracker):
        with pytest.raises(EntityNotFoundError):
            record(tracker, "missing", AppetiteStatus.RED, 120)

    def test_metric_of_another_organization(self, tracker, metric_id, sender):
        """The ledger is never written under an organization that does not own the metric."""
        with pytest.raises(EntityNotFoundError):
            tracker.record_observation(
                "org-other", metric_id, "obs-1", AppetiteStatus.AMBER, 85, 80
            )

        assert tracker.list_breaches("org-other") == []
        assert tracker.list_breaches(ORG_ID) == []
        sender.assert_not_called()

        record(tracker, metric_id, AppetiteStatus.AMBER, 85)
        assert record(tracker, metric_id, AppetiteStatus.GREEN, 50) is None
        assert tracker.list_breaches(ORG_ID, open_only=True) == []

    def test_notification_failure_does_not_fail_write(self, tracker, metric_id, sender):
        sender.side_effect = RuntimeError("mail relay down")

        breach = record(tracker, metric_id, AppetiteStatus.RED, 120)

        assert tracker.get_breach(breach.id).status == BreachStatus.OPEN


# =============================================================
# TEST: Breach workflow
# =============================================================

class TestWorkflow:
    """Remediation, manual resolution and board acceptance."""

    def test_start_remediation_defaults_due_date_to_sla(self, tracker, metric_id):
        breach = record(tracker, metric_id, AppetiteStatus.AMBER, 85)

        updated = tracker.start_remediation(breach.id, "Reduce exposure", "owner-1")

        assert updated.status == BreachStatus.IN_PROGRESS
        assert updated.remediation_plan == "Reduce exposure"
        assert updated.remediation_due_date == TODAY + timedelta(days=30)

    def test_due_date_uses_metric_sla_override(self, seed, tracker):
        metric_id = seed.metric(
            seed.category(),
            escalation_rules={"amber": {"sla_days": 5, "notify": ["CRO"], "action_required": "Plan"}},
        )
        breach = record(tracker, metric_id, AppetiteStatus.AMBER, 85)

        updated = tracker.start_remediation(breach.id, "Reduce exposure", "owner-1")

        assert updated.remediation_due_date == TODAY + timedelta(days=5)

    def test_in_progress_breach_still_tracked(self, tracker, metric_id):
        breach = record(tracker, metric_id, AppetiteStatus.AMBER, 85)
        tracker.start_remediation(breach.id, "Plan", "owner-1", date(2025, 7, 1))

        red = record(tracker, metric_id, AppetiteStatus.RED, 120)

        assert red.prior_breach_id == breach.id

    def test_manual_resolution(self, tracker, metric_id):
        breach = record(tracker, metric_id, AppetiteStatus.AMBER, 85)

        resolved = tracker.resolve_breach(breach.id, "user-1", "Limit raised")

        assert resolved.status == BreachStatus.RESOLVED
        assert resolved.resolution_notes == "Limit raised"

    def test_resolved_breach_cannot_start_remediation(self, tracker, metric_id):
        breach = record(tracker, metric_id, AppetiteStatus.AMBER, 85)
        tracker.resolve_breach(breach.id, "user-1")

        with pytest.raises(InvalidBreachTransitionError):
            tracker.start_remediation(breach.id, "Plan", "owner-1")

    def test_board_accepted_breach_is_immutable(self, tracker, metric_id):
        breach = record(tracker, metric_id, AppetiteStatus.RED, 120)
        accepted = tracker.board_accept(
            breach.id, "board-1", "Temporary market dislocation",
            temporary_threshold=130, valid_until=date(2025, 12, 31),
        )
        assert accepted.status == BreachStatus.BOARD_ACCEPTED

        with pytest.raises(InvalidBreachTransitionError, match="immutable"):
            tracker.resolve_breach(breach.id, "user-1")
        with pytest.raises(InvalidBreachTransitionError):
            tracker.start_remediation(breach.id, "Plan", "owner-1")

        record(tracker, metric_id, AppetiteStatus.GREEN, 50)
        after = tracker.get_breach(breach.id)
        assert after.status == BreachStatus.BOARD_ACCEPTED
        assert after.temporary_threshold == 130
        assert after.resolved_at is None

    def test_unknown_breach(self, tracker):
        with pytest.raises(EntityNotFoundError):
            tracker.resolve_breach("missing", "user-1")


class TestStatistics:
    """Ledger statistics."""

    def test_counts_and_resolution_time(self, tracker, metric_id, clock):
        record(tracker, metric_id, AppetiteStatus.AMBER, 85)
        record(tracker, metric_id, AppetiteStatus.RED, 120)
        clock.advance(days=2, hours=12)
        record(tracker, metric_id, AppetiteStatus.GREEN, 50)

        stats = tracker.breach_statistics(ORG_ID)

        assert stats.total == 2
        assert stats.open == 0
        assert stats.by_severity == {"AMBER": 1, "RED": 1}
        assert stats.by_status["CLOSED"] == 1
        assert stats.by_status["RESOLVED"] == 1
        assert stats.avg_resolution_days == 2.5


# =============================================================
# TEST: Serialisation
# =============================================================

class TestSerialisation:
    """One open breach per metric under concurrency."""

    def test_idempotency_key_uses_detection_window(self, tracker, config):
        assert tracker.build_idempotency_key("m-1", NOW) == "m-1:2025-06-15T00:00"

        config.detection_window_hours = 6
        assert tracker.build_idempotency_key("m-1", NOW) == "m-1:2025-06-15T12:00"

    def test_locks_are_per_metric(self, tracker):
        assert tracker._lock_for("a") is tracker._lock_for("a")
        assert tracker._lock_for("a") is not tracker._lock_for("b")

    def test_lost_insert_race_reruns_once(self, tracker, metric_id, sender):
        """A unique index conflict is rolled back and decided again."""
        first = record(tracker, metric_id, AppetiteStatus.AMBER, 85)

        real_get_open_breach = AppetiteRepository.get_open_breach
        calls = []

        def stale_first_read(self, metric, for_update=False):
            calls.append(metric)
            if len(calls) == 1:
                return None
            return real_get_open_breach(self, metric, for_update=for_update)

        with patch.object(AppetiteRepository, "get_open_breach", stale_first_read):
            second = record(tracker, metric_id, AppetiteStatus.AMBER, 86)

        assert len(calls) == 2
        assert second.id == first.id
        assert second.breach_value == 86
        assert len(tracker.list_breaches(ORG_ID)) == 1
        assert sender.call_count == 1

    def test_concurrent_observations_same_metric(self, tmp_path, config, clock):
        db = create_database_engine(DatabaseConfig(url=f"sqlite:///{tmp_path / 'ledger.db'}"))
        create_all_tables(db)
        factory = create_session_factory(db)
        seed = Seeder(factory)
        metric_id = seed.metric(seed.category())
        tracker = BreachTracker(factory, config=config, clock=clock)

        results = []
        errors = []
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            try:
                results.append(record(tracker, metric_id, AppetiteStatus.AMBER, 85))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        try:
            assert errors == []
            assert len({b.id for b in results}) == 1
            assert len(tracker.list_breaches(ORG_ID)) == 1
        finally:
            db.dispose()
