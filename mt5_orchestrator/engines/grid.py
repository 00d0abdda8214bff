"""
Symmetric grid of limit orders.

Buy limits at ask - i*spacing and sell limits at bid + i*spacing for
i = 1..levels, each with its own stop-loss/take-profit. The grid runs for a
fixed duration, reports running P&L, then flattens the symbol regardless of
what filled. Flattening is symbol-scoped and idempotent, so a rejected level
needs no compensation beyond it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List

from mt5_orchestrator.broker.base import Broker
from mt5_orchestrator.engines.common import flatten, realized_since
from mt5_orchestrator.errors import ConfigurationError
from mt5_orchestrator.events import OrchestratorObserver
from mt5_orchestrator.monitor import MonitorState, Pacing
from mt5_orchestrator.orders import OrderIntent, build_intent, submit_intent
from mt5_orchestrator.types import EngineResult, OrderKind, Outcome, Side, Tick

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class GridPreset:
    name: str = "grid"
    levels: int = 3
    spacing_points: int = 20
    volume_per_level: float = 0.01
    stop_loss_points: int = 30
    take_profit_points: int = 50
    run_seconds: float = 900.0
    report_interval: float = 5.0


class GridLadder:
    def __init__(
        self,
        broker: Broker,
        symbol: str,
        preset: GridPreset = GridPreset(),
        *,
        pacing: Pacing | None = None,
        observer: OrchestratorObserver | None = None,
    ) -> None:
        self._broker = broker
        self._symbol = symbol
        self.preset = preset
        self._pacing = pacing or Pacing()
        self._observer = observer or OrchestratorObserver()

    def levels(self, tick: Tick, point: float, digits: int | None = None) -> List[OrderIntent]:
        """Plan the ladder: buys below the ask first, then sells above the bid."""
        p = self.preset
        if p.levels < 1:
            raise ConfigurationError("grid needs at least one level")
        if p.spacing_points <= 0:
            raise ConfigurationError("grid spacing must be positive")

        def _level(side: Side, ref: float, i: int) -> OrderIntent:
            return build_intent(
                side,
                ref,
                -side.sign * i * p.spacing_points,
                point,
                symbol=self._symbol,
                kind=OrderKind.limit(side),
                volume=p.volume_per_level,
                stop_loss_points=p.stop_loss_points,
                take_profit_points=p.take_profit_points,
                digits=digits,
                tag=f"{p.name} {side.name.lower()} L{i}",
            )

        buys = [_level(Side.BUY, tick.ask, i) for i in range(1, p.levels + 1)]
        sells = [_level(Side.SELL, tick.bid, i) for i in range(1, p.levels + 1)]
        return buys + sells

    def run(self) -> EngineResult:
        p = self.preset
        meta = self._broker.get_symbol_metadata(self._symbol)
        tick = self._broker.get_tick(self._symbol)
        plan = self.levels(tick, meta.point, meta.digits)

        before = self._broker.get_balance()
        tickets: List[int] = []
        rejected = 0
        for intent in plan:
            res = submit_intent(self._broker, intent, self._observer)
            if res.ok:
                tickets.append(res.ticket)
            else:
                rejected += 1
        log.info("%s placed %d/%d levels around bid=%s ask=%s", p.name, len(tickets), len(plan), tick.bid, tick.ask)

        outcome = Outcome.COMPLETED
        reason = f"{rejected} level(s) rejected" if rejected else ""
        if not tickets:
            outcome, reason = Outcome.FAILED, "no grid level accepted"
        else:
            state = MonitorState(self._pacing.now(), p.run_seconds, p.report_interval)
            while not state.expired(self._pacing.now()):
                if not self._pacing.pause(p.report_interval):
                    outcome, reason = Outcome.CANCELLED, "cancelled by caller"
                    break
                state.polls += 1
                self._observer.on_progress(p.name, round(self._broker.get_balance() - before, 2))

        flatten(self._broker, self._symbol)
        pnl = realized_since(self._broker, before) if tickets else 0.0
        result = EngineResult(p.name, outcome, pnl, tuple(tickets), reason)
        self._observer.on_engine_complete(result)
        return result
