from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from mt5_orchestrator.broker.base import Broker
from mt5_orchestrator.engines.common import cancel_ticket, realized_since, second_parity_side
from mt5_orchestrator.errors import TerminalConnectionError
from mt5_orchestrator.events import OrchestratorObserver
from mt5_orchestrator.monitor import Pacing
from mt5_orchestrator.orders import build_market_intent, submit_intent
from mt5_orchestrator.sizing import require_within_limits, size_for_symbol
from mt5_orchestrator.types import EngineResult, Outcome

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScalpPreset:
    name: str = "scalp"
    stop_loss_points: int = 15
    take_profit_points: int = 25
    max_hold_seconds: float = 60.0
    risk_multiplier: float = 1.0


class ScalpEngine:
    """
    Risk-sized market order with SL/TP attached, held for a fixed time and then
    closed by ticket unless the terminal already closed it on SL/TP.
    """

    def __init__(
        self,
        broker: Broker,
        symbol: str,
        base_risk: float,
        preset: ScalpPreset = ScalpPreset(),
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
            tag=p.name,
        )
        res = submit_intent(self._broker, intent, self._observer)
        if not res.ok:
            return self._finish(EngineResult(p.name, Outcome.FAILED, 0.0, (), f"rejected retcode={res.retcode}"))

        ticket = res.ticket
        log.info("%s %s %s lots, holding up to %.0fs", p.name, side.name, intent.volume, p.max_hold_seconds)
        if not self._pacing.pause(p.max_hold_seconds):
            # Position keeps its SL/TP; the caller decides whether to flatten.
            return self._finish(
                EngineResult(p.name, Outcome.CANCELLED, realized_since(self._broker, before), (ticket,), "cancelled by caller")
            )

        try:
            still_open = self._broker.list_tickets().has_position(ticket)
        except TerminalConnectionError as exc:
            log.warning("%s: ticket list unavailable (%s), closing #%s anyway", p.name, exc, ticket)
            still_open = True

        if still_open:
            cancel_ticket(self._broker, ticket, self._observer)
            outcome = Outcome.CLOSED_ON_TIMEOUT
        else:
            outcome = Outcome.CLOSED_BY_TERMINAL
        return self._finish(EngineResult(p.name, outcome, realized_since(self._broker, before), (ticket,)))

    def _finish(self, result: EngineResult) -> EngineResult:
        self._observer.on_engine_complete(result)
        return result
