"""
Cooperative polling primitives.

Every engine loop is `while not state.expired(pacing.now()): pacing.pause(...)`
followed by one external call. Timeouts are wall-clock based, so a slow
terminal means fewer polls rather than an early give-up. Raising the cancel
token makes the next `pause()` return False immediately.
"""

from __future__ import annotations

import datetime as dt
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from mt5_orchestrator.types import Outcome


class CancelToken:
    """Thread-safe cancellation flag that can be waited on."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to `seconds`; returns True if cancelled meanwhile."""
        if seconds <= 0:
            return self._event.is_set()
        return self._event.wait(seconds)


class Pacing:
    """Real clocks: monotonic for timeouts, UTC wall clock for schedules."""

    def __init__(self, cancel: CancelToken | None = None) -> None:
        self.cancel = cancel or CancelToken()

    def now(self) -> float:
        return time.monotonic()

    def utcnow(self) -> dt.datetime:
        return dt.datetime.now(dt.timezone.utc)

    def pause(self, seconds: float) -> bool:
        """Wait between polls. Returns False when the run was cancelled."""
        return not self.cancel.wait(seconds)

    @property
    def cancelled(self) -> bool:
        return self.cancel.cancelled


class VirtualPacing(Pacing):
    """
    Simulated clock: `pause()` advances time instantly and notifies listeners.

    Used with SimBroker for offline runs and tests; listeners receive the new
    virtual time and typically move the simulated market.
    """

    def __init__(
        self,
        start_utc: dt.datetime | None = None,
        cancel: CancelToken | None = None,
    ) -> None:
        super().__init__(cancel)
        self._t = 0.0
        self._start_utc = start_utc or dt.datetime(2024, 1, 2, 10, 0, tzinfo=dt.timezone.utc)
        self._listeners: List[Callable[[float], None]] = []

    def on_pause(self, listener: Callable[[float], None]) -> None:
        self._listeners.append(listener)

    def now(self) -> float:
        return self._t

    def utcnow(self) -> dt.datetime:
        return self._start_utc + dt.timedelta(seconds=self._t)

    def pause(self, seconds: float) -> bool:
        if self.cancel.cancelled:
            return False
        self._t += max(0.0, float(seconds))
        for listener in list(self._listeners):
            listener(self._t)
        return not self.cancel.cancelled


@dataclass
class MonitorState:
    """Owned by exactly one engine run; discarded when the run returns."""
    started_at: float
    timeout: float
    poll_interval: float
    outcome: Optional[Outcome] = None
    polls: int = 0
    failed_polls: int = 0
    notes: List[str] = field(default_factory=list)

    def elapsed(self, now: float) -> float:
        return now - self.started_at

    def expired(self, now: float) -> bool:
        return self.elapsed(now) >= self.timeout

    def resolve(self, outcome: Outcome) -> Outcome:
        self.outcome = outcome
        return outcome
