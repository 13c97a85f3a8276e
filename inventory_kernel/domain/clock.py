"""
Clock -- injectable time source.

Services receive a Clock through their constructor and never call
``datetime.now()`` themselves, so ledger dates are reproducible in tests
and in the reconciliation runner.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone


class Clock(ABC):
    """Source of timezone-aware UTC timestamps."""

    @abstractmethod
    def now(self) -> datetime:
        ...


class SystemClock(Clock):
    """Wall-clock time in UTC. The only sanctioned read of real time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Controlled clock for tests.

    ``now()`` keeps returning the same instant until ``advance()`` or
    ``set_time()`` moves it.
    """

    def __init__(self, start: datetime | None = None):
        self._current = start or datetime(2025, 1, 6, 9, 0, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._current

    def advance(self, seconds: float = 1) -> datetime:
        self._current = self._current + timedelta(seconds=seconds)
        return self._current

    def set_time(self, moment: datetime) -> None:
        self._current = moment
