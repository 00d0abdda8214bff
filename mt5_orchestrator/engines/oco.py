"""
Paired conditional orders (OCO) and the straddle engine built on them.

The monitor places a buy-stop above the ask and a sell-stop below the bid,
then watches the terminal's pending-ticket list. A ticket that disappears
from the pending list has filled; the other one is cancelled. Tickets are
read through a TicketSource so a push-based feed can replace polling without
touching the resolution logic.

Lifecycle of one run:

    PLACING --both placed--> ARMED --fill/timeout/cancel--> RESOLVED
       |
       +--placement failed (sibling cancelled)--> FAILED
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum, auto
from typing import Optional, Protocol, Tuple

from mt5_orchestrator.broker.base import Broker
from mt5_orchestrator.engines.common import cancel_ticket, flatten, realized_since
from mt5_orchestrator.errors import ConfigurationError, TerminalConnectionError
from mt5_orchestrator.events import OrchestratorObserver
from mt5_orchestrator.monitor import MonitorState, Pacing
from mt5_orchestrator.orders import build_intent, submit_intent
from mt5_orchestrator.types import EngineResult, OrderKind, Outcome, Side, TicketSnapshot

log = logging.getLogger(__name__)

FINAL_SNAPSHOT_ATTEMPTS = 3


class TicketSource(Protocol):
    def snapshot(self) -> TicketSnapshot: ...


class PollingTicketSource:
    """Reads the ticket lists straight from the terminal on every call."""

    def __init__(self, broker: Broker) -> None:
        self._broker = broker

    def snapshot(self) -> TicketSnapshot:
        return self._broker.list_tickets()


class PairState(Enum):
    PLACING = auto()
    ARMED = auto()
    RESOLVED = auto()
    FAILED = auto()


@dataclass(frozen=True)
class PairParams:
    distance_points: int
    volume: float
    stop_loss_points: Optional[int] = None
    take_profit_points: Optional[int] = None
    poll_interval: float = 3.0
    timeout: float = 180.0
    tag: str = "OCO"


@dataclass(frozen=True)
class PairResult:
    outcome: Outcome
    state: PairState
    buy_ticket: Optional[int] = None
    sell_ticket: Optional[int] = None
    filled: Tuple[int, ...] = ()
    polls: int = 0
    failed_polls: int = 0
    reason: str = ""

    @property
    def tickets(self) -> Tuple[int, ...]:
        return tuple(t for t in (self.buy_ticket, self.sell_ticket) if t)


class ConditionalPairMonitor:
    def __init__(
        self,
        broker: Broker,
        symbol: str,
        params: PairParams,
        *,
        pacing: Pacing | None = None,
        tickets: TicketSource | None = None,
        observer: OrchestratorObserver | None = None,
        name: str = "oco",
    ) -> None:
        self._broker = broker
        self._symbol = symbol
        self._params = params
        self._pacing = pacing or Pacing()
        self._tickets = tickets or PollingTicketSource(broker)
        self._observer = observer or OrchestratorObserver()
        self._name = name
        self.state = PairState.PLACING
        self._buy: Optional[int] = None
        self._sell: Optional[int] = None

    def run(self) -> PairResult:
        p = self._params
        if p.distance_points <= 0:
            raise ConfigurationError("distance_points must be positive")

        meta = self._broker.get_symbol_metadata(self._symbol)
        tick = self._broker.get_tick(self._symbol)
        common = dict(
            symbol=self._symbol,
            volume=p.volume,
            stop_loss_points=p.stop_loss_points,
            take_profit_points=p.take_profit_points,
            digits=meta.digits,
        )
        buy_intent = build_intent(
            Side.BUY, tick.ask, p.distance_points, meta.point,
            kind=OrderKind.BUY_STOP, tag=f"{p.tag} buy", **common,
        )
        sell_intent = build_intent(
            Side.SELL, tick.bid, -p.distance_points, meta.point,
            kind=OrderKind.SELL_STOP, tag=f"{p.tag} sell", **common,
        )

        self.state = PairState.PLACING
        buy_res = submit_intent(self._broker, buy_intent, self._observer)
        if not buy_res.ok:
            return self._failed(f"buy stop rejected retcode={buy_res.retcode}")
        self._buy = buy_res.ticket

        sell_res = submit_intent(self._broker, sell_intent, self._observer)
        if not sell_res.ok:
            # Never leave a lone conditional order live.
            if not cancel_ticket(self._broker, self._buy, self._observer):
                log.error("%s: could not withdraw buy stop #%s, flattening %s", self._name, self._buy, self._symbol)
                flatten(self._broker, self._symbol)
            return self._failed(f"sell stop rejected retcode={sell_res.retcode}")
        self._sell = sell_res.ticket

        self.state = PairState.ARMED
        log.info(
            "%s armed buy_stop=%s@%s sell_stop=%s@%s timeout=%.0fs",
            self._name, self._buy, buy_intent.price, self._sell, sell_intent.price, p.timeout,
        )
        return self._watch(MonitorState(self._pacing.now(), p.timeout, p.poll_interval))

    def _watch(self, state: MonitorState) -> PairResult:
        while not state.expired(self._pacing.now()):
            if not self._pacing.pause(state.poll_interval):
                return self._on_cancel(state)
            snap = self._poll(state)
            if snap is None:
                continue
            resolved = self._evaluate(snap, state)
            if resolved is not None:
                return resolved

        snap = None
        for _ in range(FINAL_SNAPSHOT_ATTEMPTS):
            snap = self._poll(state)
            if snap is not None:
                break
        if snap is not None:
            resolved = self._evaluate(snap, state)
            if resolved is not None:
                return resolved
            still_pending = [t for t in (self._buy, self._sell) if snap.is_pending(t)]
        else:
            log.warning("%s: no ticket snapshot at timeout, cancelling both", self._name)
            still_pending = [self._buy, self._sell]

        for ticket in still_pending:
            cancel_ticket(self._broker, ticket, self._observer)
        state.resolve(Outcome.TIMEOUT)
        return self._resolved(state, (), f"no fill within {state.timeout:.0f}s")

    def _poll(self, state: MonitorState) -> TicketSnapshot | None:
        state.polls += 1
        try:
            return self._tickets.snapshot()
        except TerminalConnectionError as exc:
            state.failed_polls += 1
            log.warning("%s poll %d failed: %s", self._name, state.polls, exc)
            return None

    def _evaluate(self, snap: TicketSnapshot, state: MonitorState) -> PairResult | None:
        buy_pending = snap.is_pending(self._buy)
        sell_pending = snap.is_pending(self._sell)
        if buy_pending and sell_pending:
            return None

        if not buy_pending and not sell_pending:
            buy_pos = snap.has_position(self._buy)
            sell_pos = snap.has_position(self._sell)
            if buy_pos and not sell_pos:
                outcome, filled = Outcome.UPWARD, (self._buy,)
            elif sell_pos and not buy_pos:
                outcome, filled = Outcome.DOWNWARD, (self._sell,)
            else:
                outcome, filled = Outcome.BOTH, (self._buy, self._sell)
        elif not buy_pending:
            outcome, filled = Outcome.UPWARD, (self._buy,)
            cancel_ticket(self._broker, self._sell, self._observer)
        else:
            outcome, filled = Outcome.DOWNWARD, (self._sell,)
            cancel_ticket(self._broker, self._buy, self._observer)

        state.resolve(outcome)
        log.info("%s resolved outcome=%s filled=%s after %d polls", self._name, outcome.value, list(filled), state.polls)
        self._observer.on_fill_detected(self._name, outcome, filled)
        return self._resolved(state, filled, "")

    def _on_cancel(self, state: MonitorState) -> PairResult:
        snap = self._poll(state)
        if snap is None:
            pending = [self._buy, self._sell]
        else:
            pending = [t for t in (self._buy, self._sell) if snap.is_pending(t)]
        for ticket in pending:
            cancel_ticket(self._broker, ticket, self._observer)
        state.resolve(Outcome.CANCELLED)
        log.info("%s cancelled, withdrew %s", self._name, pending)
        return self._resolved(state, (), "cancelled by caller")

    def _resolved(self, state: MonitorState, filled: Tuple[int, ...], reason: str) -> PairResult:
        self.state = PairState.RESOLVED
        return PairResult(
            outcome=state.outcome or Outcome.TIMEOUT,
            state=self.state,
            buy_ticket=self._buy,
            sell_ticket=self._sell,
            filled=tuple(filled),
            polls=state.polls,
            failed_polls=state.failed_polls,
            reason=reason,
        )

    def _failed(self, reason: str) -> PairResult:
        self.state = PairState.FAILED
        log.warning("%s placement failed: %s", self._name, reason)
        return PairResult(
            outcome=Outcome.FAILED,
            state=self.state,
            buy_ticket=self._buy,
            sell_ticket=self._sell,
            reason=reason,
        )


@dataclass(frozen=True)
class StraddlePreset:
    """
    hold_*_seconds of None means the surviving position is left to its own
    stop-loss/take-profit and the symbol is not flattened.
    """
    name: str
    distance_points: int
    volume: float
    stop_loss_points: int
    take_profit_points: int
    poll_interval: float
    timeout: float
    lead_in_seconds: float = 0.0
    hold_single_seconds: Optional[float] = None
    hold_both_seconds: Optional[float] = None
    flatten_after: bool = False

    def pair_params(self) -> PairParams:
        return PairParams(
            distance_points=self.distance_points,
            volume=self.volume,
            stop_loss_points=self.stop_loss_points,
            take_profit_points=self.take_profit_points,
            poll_interval=self.poll_interval,
            timeout=self.timeout,
            tag=self.name,
        )


BREAKOUT_PRESET = StraddlePreset(
    name="breakout",
    distance_points=20,
    volume=0.01,
    stop_loss_points=20,
    take_profit_points=40,
    poll_interval=3.0,
    timeout=180.0,
)

NEWS_PRESET = StraddlePreset(
    name="news",
    distance_points=15,
    volume=0.02,
    stop_loss_points=20,
    take_profit_points=40,
    poll_interval=1.0,
    timeout=120.0,
    lead_in_seconds=30.0,
    hold_single_seconds=60.0,
    hold_both_seconds=30.0,
    flatten_after=True,
)


class StraddleEngine:
    """Breakout / news trading: optional lead-in, OCO pair, optional hold and flatten."""

    def __init__(
        self,
        broker: Broker,
        symbol: str,
        preset: StraddlePreset = BREAKOUT_PRESET,
        *,
        pacing: Pacing | None = None,
        tickets: TicketSource | None = None,
        observer: OrchestratorObserver | None = None,
    ) -> None:
        self._broker = broker
        self._symbol = symbol
        self.preset = preset
        self._pacing = pacing or Pacing()
        self._tickets = tickets
        self._observer = observer or OrchestratorObserver()

    def run(self) -> EngineResult:
        p = self.preset
        before = self._broker.get_balance()

        if p.lead_in_seconds > 0:
            log.info("%s: waiting %.0fs before placing", p.name, p.lead_in_seconds)
            if not self._pacing.pause(p.lead_in_seconds):
                return self._finish(EngineResult(p.name, Outcome.CANCELLED, 0.0, (), "cancelled during lead-in"))

        monitor = ConditionalPairMonitor(
            self._broker,
            self._symbol,
            p.pair_params(),
            pacing=self._pacing,
            tickets=self._tickets,
            observer=self._observer,
            name=p.name,
        )
        pair = monitor.run()
        if pair.outcome is Outcome.FAILED:
            return self._finish(EngineResult(p.name, Outcome.FAILED, 0.0, pair.tickets, pair.reason))

        hold = None
        if pair.outcome in (Outcome.UPWARD, Outcome.DOWNWARD):
            hold = p.hold_single_seconds
        elif pair.outcome is Outcome.BOTH:
            hold = p.hold_both_seconds
        if hold:
            log.info("%s: holding %.0fs after %s", p.name, hold, pair.outcome.value)
            self._pacing.pause(hold)

        if p.flatten_after:
            flatten(self._broker, self._symbol)

        return self._finish(
            EngineResult(p.name, pair.outcome, realized_since(self._broker, before), pair.tickets, pair.reason)
        )

    def _finish(self, result: EngineResult) -> EngineResult:
        self._observer.on_engine_complete(result)
        return result
