"""
Market condition classification.

Priority, first match wins:

1. NEWS       within `minutes_before_news` of a scheduled release (or up to
              `minutes_after_news` after it)
2. BREAKOUT   spread wider than `breakout_spread_points`
3. GRID       volatility < low threshold
4. HIGH_VOLATILITY  volatility >= high threshold
5. SCALP      everything in between

The volatility input is pluggable. SpreadVolatilityProxy (spread x 10) is a
placeholder; RollingRangeVolatility measures realized mid-price movement.
"""

from __future__ import annotations

import datetime as dt
import logging
from collections import deque
from dataclasses import dataclass
from typing import Deque, Iterable, Optional, Protocol, Tuple

import numpy as np

from mt5_orchestrator.errors import ConfigurationError
from mt5_orchestrator.types import Condition, Tick

log = logging.getLogger(__name__)

DEFAULT_NEWS_TIMES: Tuple[dt.time, ...] = (
    dt.time(8, 30),
    dt.time(12, 30),
    dt.time(14, 30),
    dt.time(18, 30),
    dt.time(19, 30),
)


class VolatilityEstimator(Protocol):
    def estimate(self, tick: Tick, point: float) -> float: ...


class SpreadVolatilityProxy:
    """Spread in points times a fixed multiplier."""

    def __init__(self, multiplier: float = 10.0) -> None:
        self.multiplier = float(multiplier)

    def estimate(self, tick: Tick, point: float) -> float:
        return round(tick.spread_points(point), 3) * self.multiplier


class RollingRangeVolatility:
    """
    Mean absolute mid-price change over the last `window` samples, in points,
    times `scale`. Falls back to the spread proxy until two samples exist.
    """

    def __init__(self, window: int = 20, scale: float = 10.0, fallback: VolatilityEstimator | None = None) -> None:
        if window < 2:
            raise ConfigurationError("window must be >= 2")
        self.scale = float(scale)
        self._mids: Deque[float] = deque(maxlen=int(window))
        self._fallback = fallback or SpreadVolatilityProxy()

    def estimate(self, tick: Tick, point: float) -> float:
        self._mids.append(tick.mid)
        if len(self._mids) < 2:
            return self._fallback.estimate(tick, point)
        mids = np.asarray(self._mids, dtype=float)
        moves = np.abs(np.diff(mids)) / point
        return float(moves.mean() * self.scale)


@dataclass(frozen=True)
class NewsSchedule:
    """Fixed daily UTC release times; a stand-in for an economic calendar."""
    times: Tuple[dt.time, ...] = DEFAULT_NEWS_TIMES
    minutes_before: int = 5
    minutes_after: int = 15

    def active_release(self, now: dt.datetime) -> Optional[dt.datetime]:
        """The release whose window covers `now`, if any."""
        now = _as_utc(now)
        before = dt.timedelta(minutes=self.minutes_before)
        after = dt.timedelta(minutes=self.minutes_after)
        for day in (-1, 0, 1):
            date = (now + dt.timedelta(days=day)).date()
            for t in self.times:
                at = dt.datetime.combine(date, t, tzinfo=dt.timezone.utc)
                if at - before <= now <= at + after:
                    return at
        return None

    def is_news_window(self, now: dt.datetime) -> bool:
        return self.active_release(now) is not None


def _as_utc(value: dt.datetime) -> dt.datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


@dataclass(frozen=True)
class MarketAssessment:
    condition: Condition
    volatility_points: float
    spread_points: float
    reason: str


class MarketConditionClassifier:
    def __init__(
        self,
        *,
        low_threshold: float = 15.0,
        high_threshold: float = 40.0,
        breakout_spread_points: float = 3.0,
        news: NewsSchedule | None = NewsSchedule(),
        volatility: VolatilityEstimator | None = None,
    ) -> None:
        if not 0 < low_threshold < high_threshold:
            raise ConfigurationError("thresholds must satisfy 0 < low < high")
        self.low_threshold = float(low_threshold)
        self.high_threshold = float(high_threshold)
        self.breakout_spread_points = float(breakout_spread_points)
        self.news = news
        self.volatility = volatility or SpreadVolatilityProxy()

    def assess(self, tick: Tick, point: float, now: dt.datetime) -> MarketAssessment:
        spread = round(tick.spread_points(point), 3)
        vol = self.volatility.estimate(tick, point)

        if self.news is not None:
            release = self.news.active_release(now)
            if release is not None:
                return MarketAssessment(Condition.NEWS, vol, spread, f"release at {release:%H:%M} UTC")
        if spread > self.breakout_spread_points:
            return MarketAssessment(
                Condition.BREAKOUT, vol, spread, f"spread {spread:.1f} > {self.breakout_spread_points:.1f} pts"
            )
        if vol < self.low_threshold:
            return MarketAssessment(Condition.GRID, vol, spread, f"volatility {vol:.1f} < {self.low_threshold:.1f}")
        if vol >= self.high_threshold:
            return MarketAssessment(
                Condition.HIGH_VOLATILITY, vol, spread, f"volatility {vol:.1f} >= {self.high_threshold:.1f}"
            )
        return MarketAssessment(Condition.SCALP, vol, spread, f"volatility {vol:.1f} in normal band")

    def classify(self, tick: Tick, point: float, now: dt.datetime) -> Condition:
        return self.assess(tick, point, now).condition


def schedule_from_strings(values: Iterable[str], minutes_before: int = 5, minutes_after: int = 15) -> NewsSchedule:
    """Build a schedule from "HH:MM" strings."""
    times = []
    for raw in values:
        try:
            hh, mm = raw.strip().split(":")
            times.append(dt.time(int(hh), int(mm)))
        except ValueError as exc:
            raise ConfigurationError(f"invalid news time {raw!r} (expected HH:MM)") from exc
    if not times:
        raise ConfigurationError("news schedule is empty")
    return NewsSchedule(tuple(times), minutes_before, minutes_after)
