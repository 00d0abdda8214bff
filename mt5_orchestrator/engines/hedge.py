"""
Adverse-movement hedging.

After a primary position is opened the monitor polls the price at which that
position could be closed (bid for a long, ask for a short). Once the loss
reaches `trigger_points` it opens a market order on the opposite side with
the same volume and no stop-loss/take-profit, which freezes the combined
floating P&L at the trigger point. A primary that the terminal already
closed (SL/TP) ends the watch without a hedge.

The trigger must be strictly inside the primary's stop-loss, otherwise the
stop closes the position before a hedge could ever be placed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from mt5_orchestrator.broker.base import Broker
from mt5_orchestrator.engines.common import flatten, realized_since, second_parity_side
from mt5_orchestrator.errors import ConfigurationError, TerminalConnectionError
from mt5_orchestrator.events import OrchestratorObserver
from mt5_orchestrator.monitor import MonitorState, Pacing
from mt5_orchestrator.orders import build_market_intent, submit_intent
from mt5_orchestrator.sizing import require_within_limits, size_for_symbol
from mt5_orchestrator.types import EngineResult, Outcome, Side, Tick

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class PrimaryPosition:
    ticket: int
    side: Side
    volume: float
    entry_price: float
    stop_loss_points: Optional[int] = None


@dataclass(frozen=True)
class HedgeParams:
    trigger_points: float = 15.0
    poll_interval: float = 2.0
    window: float = 300.0


@dataclass(frozen=True)
class HedgeResult:
    outcome: Outcome
    hedge_ticket: Optional[int] = None
    movement_points: float = 0.0
    trigger_price: Optional[float] = None
    polls: int = 0
    failed_polls: int = 0
    failed_placements: int = 0
    reason: str = ""


def adverse_points(primary: PrimaryPosition, tick: Tick, point: float) -> float:
    """Loss of the primary in points; negative while the position is in profit."""
    closing = tick.closing_price(primary.side)
    return (primary.entry_price - closing) * primary.side.sign / point


def check_trigger(trigger_points: float, stop_loss_points: Optional[float]) -> None:
    if trigger_points <= 0:
        raise ConfigurationError("hedge trigger must be positive")
    if stop_loss_points is not None and trigger_points >= stop_loss_points:
        raise ConfigurationError(
            f"hedge trigger {trigger_points} pts >= stop-loss {stop_loss_points} pts: the stop would always close first"
        )


class AdverseMovementMonitor:
    def __init__(
        self,
        broker: Broker,
        symbol: str,
        params: HedgeParams = HedgeParams(),
        *,
        pacing: Pacing | None = None,
        observer: OrchestratorObserver | None = None,
    ) -> None:
        self._broker = broker
        self._symbol = symbol
        self._params = params
        self._pacing = pacing or Pacing()
        self._observer = observer or OrchestratorObserver()

    def watch(self, primary: PrimaryPosition) -> HedgeResult:
        p = self._params
        check_trigger(p.trigger_points, primary.stop_loss_points)
        meta = self._broker.get_symbol_metadata(self._symbol)
        state = MonitorState(self._pacing.now(), p.window, p.poll_interval)
        failed_placements = 0
        worst = 0.0

        while not state.expired(self._pacing.now()):
            if not self._pacing.pause(p.poll_interval):
                state.resolve(Outcome.CANCELLED)
                return HedgeResult(
                    Outcome.CANCELLED, None, worst, None, state.polls, state.failed_polls, failed_placements,
                    "cancelled by caller",
                )
            state.polls += 1
            try:
                tickets = self._broker.list_tickets()
                tick = self._broker.get_tick(self._symbol)
            except TerminalConnectionError as exc:
                state.failed_polls += 1
                log.warning("hedge poll %d failed: %s", state.polls, exc)
                continue

            if not tickets.has_position(primary.ticket):
                # Closed by its own SL/TP.
                state.resolve(Outcome.PRIMARY_CLOSED)
                log.info("Primary #%s no longer open, nothing to hedge", primary.ticket)
                return HedgeResult(
                    Outcome.PRIMARY_CLOSED, None, worst, None, state.polls, state.failed_polls, failed_placements,
                    f"primary #{primary.ticket} closed by the terminal",
                )

            movement = adverse_points(primary, tick, meta.point)
            worst = max(worst, movement)
            if movement < p.trigger_points:
                continue

            hedge_side = primary.side.opposite
            intent = build_market_intent(
                hedge_side,
                tick.entry_price(hedge_side),
                meta.point,
                symbol=self._symbol,
                volume=primary.volume,
                digits=meta.digits,
                tag=f"hedge #{primary.ticket}",
            )
            res = submit_intent(self._broker, intent, self._observer)
            if not res.ok:
                # Keep watching; the next poll retries while the window lasts.
                failed_placements += 1
                log.warning("Hedge for #%s failed retcode=%s, retrying next poll", primary.ticket, res.retcode)
                continue

            state.resolve(Outcome.HEDGED)
            log.info("Hedged #%s with #%s at %.1f pts adverse", primary.ticket, res.ticket, movement)
            self._observer.on_hedge_placed(primary.ticket, res.ticket, movement)
            return HedgeResult(
                Outcome.HEDGED, res.ticket, movement, res.price or intent.price,
                state.polls, state.failed_polls, failed_placements,
            )

        state.resolve(Outcome.NOT_HEDGED)
        return HedgeResult(
            Outcome.NOT_HEDGED, None, worst, None, state.polls, state.failed_polls, failed_placements,
            f"max adverse {worst:.1f} pts < trigger {p.trigger_points} within {p.window:.0f}s",
        )


@dataclass(frozen=True)
class QuickHedgePreset:
    name: str = "hedge"
    risk_multiplier: float = 0.7
    stop_loss_points: int = 25
    take_profit_points: int = 40
    trigger_points: float = 15.0
    poll_interval: float = 2.0
    window: float = 300.0
    hold_seconds: float = 30.0


class QuickHedgeEngine:
    """High-volatility play: risk-sized primary, hedge on adverse move, hold, flatten."""

    def __init__(
        self,
        broker: Broker,
        symbol: str,
        base_risk: float,
        preset: QuickHedgePreset = QuickHedgePreset(),
        *,
        pacing: Pacing | None = None,
        observer: OrchestratorObserver | None = None,
        side_picker: Callable | None = None,
    ) -> None:
        self._broker = broker
        self._symbol = symbol
        self._base_risk = float(base_risk)
        self.preset = preset
        self._pacing = pacing or Pacing()
        self._observer = observer or OrchestratorObserver()
        self._side_picker = side_picker or second_parity_side

    def run(self) -> EngineResult:
        p = self.preset
        check_trigger(p.trigger_points, p.stop_loss_points)
        meta = self._broker.get_symbol_metadata(self._symbol)
        sizing = require_within_limits(size_for_symbol(self._base_risk * p.risk_multiplier, p.stop_loss_points, meta))

        before = self._broker.get_balance()
        side = self._side_picker(self._pacing.utcnow())
        tick = self._broker.get_tick(self._symbol)
        intent = build_market_intent(
            side,
            tick.entry_price(side),
            meta.point,
            symbol=self._symbol,
            volume=sizing.volume,
            stop_loss_points=p.stop_loss_points,
            take_profit_points=p.take_profit_points,
            digits=meta.digits,
            tag=f"{p.name} primary",
        )
        res = submit_intent(self._broker, intent, self._observer)
        if not res.ok:
            return self._finish(EngineResult(p.name, Outcome.FAILED, 0.0, (), f"primary rejected retcode={res.retcode}"))

        primary = PrimaryPosition(
            ticket=res.ticket,
            side=side,
            volume=res.volume or intent.volume,
            entry_price=res.price or intent.price,
            stop_loss_points=p.stop_loss_points,
        )
        monitor = AdverseMovementMonitor(
            self._broker,
            self._symbol,
            HedgeParams(p.trigger_points, p.poll_interval, p.window),
            pacing=self._pacing,
            observer=self._observer,
        )
        hedge = monitor.watch(primary)
        tickets = (primary.ticket,) if hedge.hedge_ticket is None else (primary.ticket, hedge.hedge_ticket)

        if hedge.outcome is not Outcome.CANCELLED and p.hold_seconds > 0:
            self._pacing.pause(p.hold_seconds)
        flatten(self._broker, self._symbol)
        return self._finish(
            EngineResult(p.name, hedge.outcome, realized_since(self._broker, before), tickets, hedge.reason)
        )

    def _finish(self, result: EngineResult) -> EngineResult:
        self._observer.on_engine_complete(result)
        return result
