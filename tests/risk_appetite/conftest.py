"""
Shared fixtures for appetite engine tests.

Every test gets its own in-memory SQLite database, a mock clock
fixed at 2025-06-15 12:00 UTC and a notifier whose sender is a
MagicMock.
"""

from unittest.mock import MagicMock

import pytest

from risk_appetite.alerting import BreachNotifier
from risk_appetite.clock import MockClock
from risk_appetite.config import AlertingConfig, DatabaseConfig, get_default_config
from risk_appetite.database import (
    create_all_tables,
    create_database_engine,
    create_session_factory,
)
from risk_appetite.engine import AppetiteEngine
from risk_appetite.tracker import BreachTracker

from .helpers import NOW, Seeder


@pytest.fixture
def clock():
    return MockClock(NOW)


@pytest.fixture
def config():
    cfg = get_default_config()
    cfg.database = DatabaseConfig(url="sqlite://")
    cfg.alerting = AlertingConfig(enabled=True, min_alert_interval_seconds=0)
    cfg.sweep.max_workers = 1
    return cfg


@pytest.fixture
def db_engine(config):
    engine = create_database_engine(config.database)
    create_all_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest.fixture
def seed(session_factory):
    return Seeder(session_factory)


@pytest.fixture
def sender():
    return MagicMock()


@pytest.fixture
def notifier(config, sender, clock):
    return BreachNotifier(config.alerting, sender=sender, clock=clock)


@pytest.fixture
def tracker(session_factory, config, clock, notifier):
    return BreachTracker(session_factory, config=config, clock=clock, notifier=notifier)


@pytest.fixture
def engine(session_factory, config, clock, notifier):
    return AppetiteEngine(session_factory, config=config, clock=clock, notifier=notifier)
