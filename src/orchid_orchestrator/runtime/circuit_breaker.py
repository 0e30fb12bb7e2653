"""Health-driven circuit breaker."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta
from enum import StrEnum

from orchid_orchestrator.config.models import CircuitBreakerSettings
from orchid_orchestrator.runtime.state import CircuitBreakerInfo, utcnow


class BreakerOutcome(StrEnum):
    """What a single health observation did to the breaker."""

    UNCHANGED = "unchanged"
    OPENED = "opened"
    HALF_OPENED = "half_opened"
    CLOSED = "closed"
    REOPENED = "reopened"


class CircuitBreakerPolicy:
    """Applies health results to a :class:`CircuitBreakerInfo`.

    ``closed`` counts failures and opens at the threshold with
    ``next_retry = now + backoff``. ``open`` ignores results until
    ``next_retry`` is reached and then moves to ``half_open``; that tick is
    not evaluated. ``half_open`` closes on a success (backoff resets to the
    initial value) or reopens with a multiplied, capped backoff.
    """

    def __init__(
        self,
        settings: CircuitBreakerSettings | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings or CircuitBreakerSettings()
        self._clock = clock

    def new_info(self) -> CircuitBreakerInfo:
        return CircuitBreakerInfo(backoff_seconds=self.settings.initial_backoff_seconds)

    def reset(self, info: CircuitBreakerInfo) -> None:
        info.state = "closed"
        info.failures = 0
        info.backoff_seconds = self.settings.initial_backoff_seconds
        info.next_retry = None

    def record(self, info: CircuitBreakerInfo, *, success: bool) -> BreakerOutcome:
        now = self._clock()

        if info.state == "open":
            if info.next_retry is not None and now < info.next_retry:
                return BreakerOutcome.UNCHANGED
            info.state = "half_open"
            return BreakerOutcome.HALF_OPENED

        if info.state == "half_open":
            if success:
                self.reset(info)
                return BreakerOutcome.CLOSED
            info.failures += 1
            info.backoff_seconds = min(
                info.backoff_seconds * self.settings.backoff_multiplier,
                self.settings.max_backoff_seconds,
            )
            self._open(info, now)
            return BreakerOutcome.REOPENED

        if success:
            info.failures = 0
            return BreakerOutcome.UNCHANGED

        info.failures += 1
        info.last_failure = now
        if info.failures >= self.settings.threshold:
            self._open(info, now)
            return BreakerOutcome.OPENED
        return BreakerOutcome.UNCHANGED

    def _open(self, info: CircuitBreakerInfo, now: datetime) -> None:
        info.state = "open"
        info.last_failure = now
        info.next_retry = now + timedelta(seconds=info.backoff_seconds)
