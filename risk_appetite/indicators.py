"""
Risk Appetite Engine - Indicator Store.

============================================================
PURPOSE
============================================================
Read boundary for Key Risk Indicator observations, plus the
single freshness predicate shared by chain validation and
metric activation.

============================================================
"""

from abc import ABC, abstractmethod
from datetime import date, timedelta
from typing import Optional

from .repository import AppetiteRepository
from .types import IndicatorObservation


class IndicatorStore(ABC):
    """Read access to indicator observations."""

    @abstractmethod
    def get_latest_value(
        self,
        indicator_id: str,
        as_of: Optional[date] = None,
    ) -> Optional[IndicatorObservation]:
        """Most recent observation, optionally at or before as_of."""
        pass

    @abstractmethod
    def get_value_as_of(
        self,
        indicator_id: str,
        on_date: date,
    ) -> Optional[IndicatorObservation]:
        """Most recent observation at or before on_date."""
        pass

    @abstractmethod
    def has_value_since(self, indicator_id: str, since: date) -> bool:
        """Whether any observation is dated on or after since."""
        pass


class SqlIndicatorStore(IndicatorStore):
    """Indicator store over the kri_values table."""

    def __init__(self, repository: AppetiteRepository):
        self._repository = repository

    def get_latest_value(
        self,
        indicator_id: str,
        as_of: Optional[date] = None,
    ) -> Optional[IndicatorObservation]:
        record = self._repository.get_latest_value(indicator_id, as_of=as_of)
        return record.to_observation() if record else None

    def get_value_as_of(
        self,
        indicator_id: str,
        on_date: date,
    ) -> Optional[IndicatorObservation]:
        record = self._repository.get_value_as_of(indicator_id, on_date)
        return record.to_observation() if record else None

    def has_value_since(self, indicator_id: str, since: date) -> bool:
        return self._repository.has_value_since(indicator_id, since)


def has_fresh_observation(
    store: IndicatorStore,
    indicator_id: Optional[str],
    today: date,
    window_days: int,
) -> bool:
    """
    Freshness rule: a value dated within the last window_days.

    The chain validator reports a stale indicator as a WARNING and
    the activation gate refuses it. Both ask this function.
    """
    if indicator_id is None:
        return False
    return store.has_value_since(indicator_id, today - timedelta(days=window_days))
