"""
Continuous classify -> dispatch -> account loop.

Each cycle samples the market, picks a condition, runs the matching engine
with its preset and adds the realized P&L to the running total. The run
stops after `max_cycles`, when the total falls below the loss limit
(`-loss_limit_multiple * base_risk`), or when the pacing's cancel token is
raised.

Failure handling per cycle:
- ConfigurationError: recorded as CONFIG_ERROR, best-effort flatten of the symbol
- any other exception: logged, best-effort flatten of the symbol, next cycle
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from mt5_orchestrator.broker.base import Broker
from mt5_orchestrator.classifier import MarketConditionClassifier, NewsSchedule, schedule_from_strings
from mt5_orchestrator.config import OrchestratorConfig
from mt5_orchestrator.engines.common import flatten
from mt5_orchestrator.engines.grid import GridLadder, GridPreset
from mt5_orchestrator.engines.hedge import QuickHedgeEngine, QuickHedgePreset
from mt5_orchestrator.engines.oco import BREAKOUT_PRESET, NEWS_PRESET, StraddleEngine, StraddlePreset
from mt5_orchestrator.engines.scalp import ScalpEngine, ScalpPreset
from mt5_orchestrator.errors import ConfigurationError
from mt5_orchestrator.events import OrchestratorObserver
from mt5_orchestrator.monitor import Pacing
from mt5_orchestrator.types import Condition, CycleResult, EngineResult, Outcome

log = logging.getLogger(__name__)


class Engine(Protocol):
    def run(self) -> EngineResult: ...


@dataclass(frozen=True)
class EnginePresets:
    grid: GridPreset = GridPreset()
    scalp: ScalpPreset = ScalpPreset()
    hedge: QuickHedgePreset = QuickHedgePreset()
    news: StraddlePreset = NEWS_PRESET
    breakout: StraddlePreset = BREAKOUT_PRESET


@dataclass(frozen=True)
class RunSummary:
    symbol: str
    initial_balance: float
    final_balance: float
    cycles_completed: int
    total_pnl: float
    stop_reason: str  # "max_cycles" | "circuit_breaker" | "cancelled"
    results: Tuple[CycleResult, ...] = field(default_factory=tuple)

    @property
    def balance_change(self) -> float:
        return round(self.final_balance - self.initial_balance, 2)


class CycleRunner:
    def __init__(
        self,
        broker: Broker,
        symbol: str,
        *,
        base_risk: float = 20.0,
        max_cycles: int = 10,
        inter_cycle_seconds: float = 30.0,
        loss_limit_multiple: float = 5.0,
        classifier: MarketConditionClassifier | None = None,
        presets: EnginePresets = EnginePresets(),
        pacing: Pacing | None = None,
        observer: OrchestratorObserver | None = None,
        engine_overrides: Optional[Dict[Condition, Callable[[], Engine]]] = None,
        side_picker: Callable | None = None,
    ) -> None:
        if base_risk <= 0:
            raise ConfigurationError("base_risk must be positive")
        if max_cycles < 0:
            raise ConfigurationError("max_cycles must be >= 0")
        self._broker = broker
        self._symbol = symbol
        self.base_risk = float(base_risk)
        self.max_cycles = int(max_cycles)
        self.inter_cycle_seconds = float(inter_cycle_seconds)
        self.loss_limit = -float(loss_limit_multiple) * self.base_risk
        self.classifier = classifier or MarketConditionClassifier()
        self.presets = presets
        self._pacing = pacing or Pacing()
        self._observer = observer or OrchestratorObserver()
        self._overrides = dict(engine_overrides or {})
        self._side_picker = side_picker

    @classmethod
    def from_config(
        cls,
        cfg: OrchestratorConfig,
        broker: Broker,
        *,
        pacing: Pacing | None = None,
        observer: OrchestratorObserver | None = None,
        classifier: MarketConditionClassifier | None = None,
    ) -> "CycleRunner":
        if classifier is None:
            news = None
            if cfg.enable_news_mode and cfg.news_times:
                news = schedule_from_strings(cfg.news_times, minutes_before=cfg.minutes_before_news)
            elif cfg.enable_news_mode:
                news = NewsSchedule(minutes_before=cfg.minutes_before_news)
            classifier = MarketConditionClassifier(
                low_threshold=cfg.low_volatility_threshold,
                high_threshold=cfg.high_volatility_threshold,
                news=news,
            )
        return cls(
            broker,
            cfg.symbol,
            base_risk=cfg.base_risk,
            max_cycles=cfg.max_cycles,
            inter_cycle_seconds=cfg.inter_cycle_seconds,
            loss_limit_multiple=cfg.loss_limit_multiple,
            classifier=classifier,
            pacing=pacing,
            observer=observer,
        )

    def build_engine(self, condition: Condition) -> Engine:
        override = self._overrides.get(condition)
        if override is not None:
            return override()

        common = dict(pacing=self._pacing, observer=self._observer)
        if condition is Condition.GRID:
            return GridLadder(self._broker, self._symbol, self.presets.grid, **common)
        if condition is Condition.SCALP:
            return ScalpEngine(
                self._broker, self._symbol, self.base_risk, self.presets.scalp, side_picker=self._side_picker, **common
            )
        if condition is Condition.HIGH_VOLATILITY:
            return QuickHedgeEngine(
                self._broker, self._symbol, self.base_risk, self.presets.hedge, side_picker=self._side_picker, **common
            )
        if condition is Condition.NEWS:
            return StraddleEngine(self._broker, self._symbol, self.presets.news, **common)
        if condition is Condition.BREAKOUT:
            return StraddleEngine(self._broker, self._symbol, self.presets.breakout, **common)
        raise ConfigurationError(f"No engine for condition {condition!r}")

    def run_cycle(self, cycle: int) -> CycleResult:
        condition: Condition | None = None
        before: float | None = None
        try:
            before = self._broker.get_balance()
            meta = self._broker.get_symbol_metadata(self._symbol)
            tick = self._broker.get_tick(self._symbol)
            assessment = self.classifier.assess(tick, meta.point, self._pacing.utcnow())
            condition = assessment.condition
            self._observer.on_cycle_started(cycle, assessment)

            result = self.build_engine(condition).run()
            return CycleResult(cycle, condition, result.outcome, result.realized_pnl, result.tickets, result.reason)
        except ConfigurationError as exc:
            log.error("Cycle %d configuration error: %s, flattening %s", cycle, exc, self._symbol)
            self._observer.on_error(f"cycle {cycle}", exc)
            pnl = self._flatten_after_failure(cycle, before)
            return CycleResult(cycle, condition, Outcome.CONFIG_ERROR, pnl, (), str(exc))
        except Exception as exc:
            log.exception("Cycle %d failed, flattening %s", cycle, self._symbol)
            self._observer.on_error(f"cycle {cycle}", exc)
            pnl = self._flatten_after_failure(cycle, before)
            return CycleResult(cycle, condition, Outcome.ERROR, pnl, (), f"{type(exc).__name__}: {exc}")

    def _flatten_after_failure(self, cycle: int, before: float | None) -> float:
        try:
            flatten(self._broker, self._symbol)
            if before is not None:
                return round(self._broker.get_balance() - before, 2)
        except Exception as exc:
            log.error("Flatten after failed cycle %d also failed: %s", cycle, exc)
        return 0.0

    def run(self) -> RunSummary:
        initial = self._broker.get_balance()
        log.info(
            "Starting %s base_risk=%.2f max_cycles=%s loss_limit=%.2f balance=%.2f",
            self._symbol, self.base_risk, self.max_cycles or "unbounded", self.loss_limit, initial,
        )
        results: List[CycleResult] = []
        total = 0.0
        stop_reason = "max_cycles"
        cycle = 0

        while self.max_cycles == 0 or cycle < self.max_cycles:
            if self._pacing.cancelled:
                stop_reason = "cancelled"
                break
            cycle += 1
            result = self.run_cycle(cycle)
            results.append(result)
            total = round(total + result.realized_pnl, 2)
            self._observer.on_cycle_complete(result, total)

            if total < self.loss_limit:
                log.warning("Circuit breaker tripped: total %.2f < limit %.2f", total, self.loss_limit)
                self._observer.on_circuit_breaker(total, self.loss_limit)
                stop_reason = "circuit_breaker"
                break

            more = self.max_cycles == 0 or cycle < self.max_cycles
            if more and not self._pacing.pause(self.inter_cycle_seconds):
                stop_reason = "cancelled"
                break

        final = self._broker.get_balance()
        summary = RunSummary(
            symbol=self._symbol,
            initial_balance=initial,
            final_balance=final,
            cycles_completed=len(results),
            total_pnl=total,
            stop_reason=stop_reason,
            results=tuple(results),
        )
        log.info(
            "Run finished cycles=%d total=%.2f balance %.2f -> %.2f (%s)",
            summary.cycles_completed, total, initial, final, stop_reason,
        )
        return summary
