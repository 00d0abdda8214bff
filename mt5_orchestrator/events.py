"""
Observer interface the orchestration core publishes to.

Decision logic never prints; it calls these hooks and lets observers decide
what to do with them (log, render, journal).

Usage:
    observer = CompositeObserver([LoggingObserver(), RichConsoleObserver()])
    runner = CycleRunner(..., observer=observer)
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Iterable, List

from mt5_orchestrator.broker.base import PlacementResult
from mt5_orchestrator.types import CycleResult, EngineResult, Outcome

if TYPE_CHECKING:
    from mt5_orchestrator.classifier import MarketAssessment
    from mt5_orchestrator.orders import OrderIntent

log = logging.getLogger(__name__)


class OrchestratorObserver:
    """No-op base; subclasses override the hooks they care about."""

    def on_order_placed(self, intent: "OrderIntent", result: PlacementResult) -> None:
        pass

    def on_placement_failed(self, intent: "OrderIntent", result: PlacementResult) -> None:
        pass

    def on_order_cancelled(self, ticket: int, retcode: int) -> None:
        pass

    def on_fill_detected(self, engine: str, outcome: Outcome, tickets: tuple[int, ...]) -> None:
        pass

    def on_hedge_placed(self, primary_ticket: int, hedge_ticket: int, movement_points: float) -> None:
        pass

    def on_progress(self, engine: str, running_pnl: float) -> None:
        pass

    def on_engine_complete(self, result: EngineResult) -> None:
        pass

    def on_cycle_started(self, cycle: int, assessment: "MarketAssessment") -> None:
        pass

    def on_cycle_complete(self, result: CycleResult, total_pnl: float) -> None:
        pass

    def on_circuit_breaker(self, total_pnl: float, limit: float) -> None:
        pass

    def on_error(self, where: str, exc: BaseException) -> None:
        pass


class CompositeObserver(OrchestratorObserver):
    """Fans every hook out; a failing observer is logged and skipped."""

    def __init__(self, observers: Iterable[OrchestratorObserver] = ()) -> None:
        self._observers: List[OrchestratorObserver] = list(observers)

    def add(self, observer: OrchestratorObserver) -> None:
        self._observers.append(observer)

    def _emit(self, hook: str, *args) -> None:
        for obs in self._observers:
            try:
                getattr(obs, hook)(*args)
            except Exception as exc:
                log.error("Observer %s.%s failed: %s", type(obs).__name__, hook, exc)

    def on_order_placed(self, intent, result):
        self._emit("on_order_placed", intent, result)

    def on_placement_failed(self, intent, result):
        self._emit("on_placement_failed", intent, result)

    def on_order_cancelled(self, ticket, retcode):
        self._emit("on_order_cancelled", ticket, retcode)

    def on_fill_detected(self, engine, outcome, tickets):
        self._emit("on_fill_detected", engine, outcome, tickets)

    def on_hedge_placed(self, primary_ticket, hedge_ticket, movement_points):
        self._emit("on_hedge_placed", primary_ticket, hedge_ticket, movement_points)

    def on_progress(self, engine, running_pnl):
        self._emit("on_progress", engine, running_pnl)

    def on_engine_complete(self, result):
        self._emit("on_engine_complete", result)

    def on_cycle_started(self, cycle, assessment):
        self._emit("on_cycle_started", cycle, assessment)

    def on_cycle_complete(self, result, total_pnl):
        self._emit("on_cycle_complete", result, total_pnl)

    def on_circuit_breaker(self, total_pnl, limit):
        self._emit("on_circuit_breaker", total_pnl, limit)

    def on_error(self, where, exc):
        self._emit("on_error", where, exc)


class LoggingObserver(OrchestratorObserver):
    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._log = logger or logging.getLogger("mt5_orchestrator.activity")

    def on_fill_detected(self, engine, outcome, tickets):
        self._log.info("%s fill detected outcome=%s tickets=%s", engine, outcome.value, list(tickets))

    def on_hedge_placed(self, primary_ticket, hedge_ticket, movement_points):
        self._log.info(
            "Hedge #%s placed against #%s after %.1f pts adverse", hedge_ticket, primary_ticket, movement_points
        )

    def on_progress(self, engine, running_pnl):
        self._log.info("%s running P/L %.2f", engine, running_pnl)

    def on_engine_complete(self, result):
        self._log.info(
            "%s finished outcome=%s pnl=%.2f tickets=%s %s",
            result.engine, result.outcome.value, result.realized_pnl, list(result.tickets), result.reason,
        )

    def on_cycle_started(self, cycle, assessment):
        self._log.info(
            "Cycle #%d condition=%s volatility=%.1f pts spread=%.1f pts (%s)",
            cycle, assessment.condition.name, assessment.volatility_points, assessment.spread_points, assessment.reason,
        )

    def on_cycle_complete(self, result, total_pnl):
        self._log.info(
            "Cycle #%d done outcome=%s pnl=%.2f total=%.2f", result.cycle, result.outcome.value, result.realized_pnl, total_pnl
        )

    def on_circuit_breaker(self, total_pnl, limit):
        self._log.warning("Circuit breaker: total P/L %.2f below %.2f, stopping", total_pnl, limit)

    def on_error(self, where, exc):
        self._log.error("%s: %s", where, exc)
