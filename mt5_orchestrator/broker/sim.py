"""
In-memory trading terminal.

Behaves like the real terminal where the engines can observe it: pending
orders fill when price crosses them and turn into positions with the same
ticket, positions close on stop-loss/take-profit, closes realize P&L into the
balance, and every request is answered with a terminal retcode.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, replace
from typing import Deque, Dict, List

import numpy as np

from mt5_orchestrator.broker.base import (
    RETCODE_DONE,
    RETCODE_INVALID,
    RETCODE_INVALID_PRICE,
    PendingOrder,
    PlacementResult,
    Position,
)
from mt5_orchestrator.errors import TerminalConnectionError, TerminalError
from mt5_orchestrator.instruments import SymbolMetadata, validate_metadata, validate_symbol
from mt5_orchestrator.types import OrderKind, Side, Tick, TicketSnapshot

log = logging.getLogger(__name__)

RETCODE_INVALID_VOLUME = 10014
RETCODE_INVALID_STOPS = 10016

EURUSD = SymbolMetadata(
    symbol="EURUSD",
    point=0.00001,
    digits=5,
    volume_min=0.01,
    volume_max=100.0,
    volume_step=0.01,
    contract_size=100_000.0,
    tick_value=1.0,
    tick_size=0.00001,
)


@dataclass
class _SimOrder:
    ticket: int
    symbol: str
    kind: OrderKind
    volume: float
    price: float
    stop_loss: float | None
    take_profit: float | None
    comment: str


@dataclass
class _SimPosition:
    ticket: int
    symbol: str
    side: Side
    volume: float
    open_price: float
    stop_loss: float | None
    take_profit: float | None
    comment: str


class SimBroker:
    def __init__(self, *, balance: float = 10_000.0, symbols: List[SymbolMetadata] | None = None) -> None:
        self.balance = float(balance)
        self.connected = False
        self.orders: List[dict] = []  # every request that reached the terminal
        self.cancelled: List[int] = []
        self.closed: List[tuple[int, float]] = []  # (ticket, realized pnl)
        self._meta: Dict[str, SymbolMetadata] = {}
        self._ticks: Dict[str, Tick] = {}
        self._pending: Dict[int, _SimOrder] = {}
        self._positions: Dict[int, _SimPosition] = {}
        self._next_ticket = 1000
        self._forced_retcodes: Deque[int] = deque()
        self._poll_failures = 0
        for meta in symbols or [EURUSD]:
            self.add_symbol(meta)

    # ------------------------------------------------------------------
    # Simulation controls
    # ------------------------------------------------------------------

    def add_symbol(self, meta: SymbolMetadata) -> None:
        self._meta[validate_symbol(meta.symbol)] = validate_metadata(meta)

    def set_tick(self, symbol: str, bid: float, ask: float) -> None:
        symbol = validate_symbol(symbol)
        if bid > ask:
            raise ValueError("Invalid tick (bid > ask)")
        meta = self._metadata(symbol)
        self._ticks[symbol] = Tick(
            bid=meta.normalize_price(bid),
            ask=meta.normalize_price(ask),
            timestamp=time.time(),
        )
        self._evaluate(symbol)

    def shift(self, symbol: str, points: float) -> Tick:
        """Move bid and ask together by `points`."""
        tick = self.get_tick(symbol)
        dp = points * self._metadata(symbol).point
        self.set_tick(symbol, tick.bid + dp, tick.ask + dp)
        return self.get_tick(symbol)

    def queue_retcodes(self, *codes: int) -> None:
        """The next placements answer with these codes (non-success codes place nothing)."""
        self._forced_retcodes.extend(int(c) for c in codes)

    def fail_next_polls(self, count: int) -> None:
        self._poll_failures += int(count)

    def floating_pnl(self, symbol: str | None = None) -> float:
        total = 0.0
        for pos in self._positions.values():
            if symbol is None or pos.symbol == symbol:
                total += self._position_profit(pos, self._ticks[pos.symbol].closing_price(pos.side))
        return round(total, 2)

    def equity(self) -> float:
        return round(self.balance + self.floating_pnl(), 2)

    # ------------------------------------------------------------------
    # Broker protocol
    # ------------------------------------------------------------------

    def connect(self) -> None:
        self.connected = True

    def disconnect(self) -> None:
        self.connected = False

    def get_tick(self, symbol: str) -> Tick:
        symbol = validate_symbol(symbol)
        tick = self._ticks.get(symbol)
        if tick is None:
            raise TerminalError(f"No quotes for {symbol}")
        return tick

    def get_symbol_metadata(self, symbol: str) -> SymbolMetadata:
        return self._metadata(validate_symbol(symbol))

    def place_market_order(
        self,
        symbol: str,
        side: Side,
        volume: float,
        stop_loss: float | None = None,
        take_profit: float | None = None,
        comment: str = "",
    ) -> PlacementResult:
        symbol = validate_symbol(symbol)
        tick = self.get_tick(symbol)
        self._record(symbol, OrderKind.market(side), volume, None, stop_loss, take_profit, comment)

        forced = self._forced_retcode()
        if forced is not None:
            return PlacementResult(ticket=0, retcode=forced, comment="forced")
        code = self._check_volume(symbol, volume)
        if code is None:
            code = self._check_stops(side, tick.closing_price(side), stop_loss, take_profit)
        if code is not None:
            return PlacementResult(ticket=0, retcode=code, comment="rejected")

        ticket = self._new_ticket()
        price = tick.entry_price(side)
        self._positions[ticket] = _SimPosition(
            ticket=ticket,
            symbol=symbol,
            side=side,
            volume=float(volume),
            open_price=price,
            stop_loss=stop_loss,
            take_profit=take_profit,
            comment=comment,
        )
        return PlacementResult(ticket=ticket, retcode=RETCODE_DONE, price=price, volume=float(volume), comment="done")

    def place_conditional_order(
        self,
        symbol: str,
        kind: OrderKind,
        price: float,
        volume: float,
        stop_loss: float | None = None,
        take_profit: float | None = None,
        comment: str = "",
    ) -> PlacementResult:
        symbol = validate_symbol(symbol)
        if kind.is_market:
            raise ValueError("place_conditional_order needs a pending order kind")
        tick = self.get_tick(symbol)
        self._record(symbol, kind, volume, price, stop_loss, take_profit, comment)

        forced = self._forced_retcode()
        if forced is not None:
            return PlacementResult(ticket=0, retcode=forced, comment="forced")
        code = self._check_volume(symbol, volume)
        if code is None and not _pending_price_valid(kind, price, tick):
            code = RETCODE_INVALID_PRICE
        if code is None:
            code = self._check_stops(kind.side, price, stop_loss, take_profit)
        if code is not None:
            return PlacementResult(ticket=0, retcode=code, comment="rejected")

        ticket = self._new_ticket()
        self._pending[ticket] = _SimOrder(
            ticket=ticket,
            symbol=symbol,
            kind=kind,
            volume=float(volume),
            price=float(price),
            stop_loss=stop_loss,
            take_profit=take_profit,
            comment=comment,
        )
        return PlacementResult(ticket=ticket, retcode=RETCODE_DONE, price=float(price), volume=float(volume), comment="placed")

    def cancel_or_close(self, ticket: int, volume: float | None = None) -> int:
        ticket = int(ticket)
        if ticket in self._pending:
            del self._pending[ticket]
            self.cancelled.append(ticket)
            return RETCODE_DONE
        pos = self._positions.get(ticket)
        if pos is None:
            return RETCODE_INVALID
        close_volume = pos.volume if volume is None or volume <= 0 else min(float(volume), pos.volume)
        self._close(pos, self._ticks[pos.symbol].closing_price(pos.side), close_volume)
        return RETCODE_DONE

    def list_tickets(self) -> TicketSnapshot:
        if self._poll_failures > 0:
            self._poll_failures -= 1
            raise TerminalConnectionError("simulated communication failure")
        return TicketSnapshot(pending=frozenset(self._pending), positions=frozenset(self._positions))

    def get_positions(self, symbol: str | None = None) -> list[Position]:
        out: list[Position] = []
        for p in self._positions.values():
            if symbol is not None and p.symbol != symbol:
                continue
            out.append(
                Position(
                    ticket=p.ticket,
                    symbol=p.symbol,
                    side=p.side,
                    volume=p.volume,
                    open_price=p.open_price,
                    stop_loss=p.stop_loss,
                    take_profit=p.take_profit,
                    profit=round(self._position_profit(p, self._ticks[p.symbol].closing_price(p.side)), 2),
                    comment=p.comment,
                )
            )
        return out

    def get_pending_orders(self, symbol: str | None = None) -> list[PendingOrder]:
        return [
            PendingOrder(
                ticket=o.ticket,
                symbol=o.symbol,
                kind=o.kind,
                volume=o.volume,
                price=o.price,
                stop_loss=o.stop_loss,
                take_profit=o.take_profit,
                comment=o.comment,
            )
            for o in self._pending.values()
            if symbol is None or o.symbol == symbol
        ]

    def get_balance(self) -> float:
        return round(self.balance, 2)

    def close_all_for_symbol(self, symbol: str) -> int:
        symbol = validate_symbol(symbol)
        handled = 0
        for ticket in [t for t, p in self._positions.items() if p.symbol == symbol]:
            self.cancel_or_close(ticket)
            handled += 1
        for ticket in [t for t, o in self._pending.items() if o.symbol == symbol]:
            self.cancel_or_close(ticket)
            handled += 1
        return handled

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _metadata(self, symbol: str) -> SymbolMetadata:
        meta = self._meta.get(symbol)
        if meta is None:
            raise TerminalError(f"Unknown symbol {symbol}")
        return meta

    def _new_ticket(self) -> int:
        self._next_ticket += 1
        return self._next_ticket

    def _forced_retcode(self) -> int | None:
        if not self._forced_retcodes:
            return None
        code = self._forced_retcodes.popleft()
        return None if code == RETCODE_DONE else code

    def _record(self, symbol, kind, volume, price, sl, tp, comment) -> None:
        self.orders.append(
            {
                "symbol": symbol,
                "kind": kind,
                "volume": float(volume),
                "price": price,
                "stop_loss": sl,
                "take_profit": tp,
                "comment": comment,
            }
        )

    def _check_volume(self, symbol: str, volume: float) -> int | None:
        meta = self._metadata(symbol)
        if volume < meta.volume_min - 1e-12 or volume > meta.volume_max + 1e-12:
            return RETCODE_INVALID_VOLUME
        return None

    @staticmethod
    def _check_stops(side: Side, ref: float, sl: float | None, tp: float | None) -> int | None:
        if sl is not None and (sl - ref) * side.sign >= 0:
            return RETCODE_INVALID_STOPS
        if tp is not None and (tp - ref) * side.sign <= 0:
            return RETCODE_INVALID_STOPS
        return None

    def _position_profit(self, pos: _SimPosition, close_price: float, volume: float | None = None) -> float:
        meta = self._meta[pos.symbol]
        vol = pos.volume if volume is None else volume
        points = (close_price - pos.open_price) * pos.side.sign / meta.point
        return points * meta.point_value * vol

    def _close(self, pos: _SimPosition, price: float, volume: float) -> None:
        pnl = round(self._position_profit(pos, price, volume), 2)
        self.balance += pnl
        remaining = round(pos.volume - volume, 8)
        if remaining > 0:
            self._positions[pos.ticket] = replace(pos, volume=remaining)
        else:
            del self._positions[pos.ticket]
        self.closed.append((pos.ticket, pnl))
        log.debug("sim close ticket=%s vol=%s price=%s pnl=%.2f", pos.ticket, volume, price, pnl)

    def _evaluate(self, symbol: str) -> None:
        tick = self._ticks[symbol]
        for order in [o for o in self._pending.values() if o.symbol == symbol]:
            if _pending_triggered(order.kind, order.price, tick):
                del self._pending[order.ticket]
                self._positions[order.ticket] = _SimPosition(
                    ticket=order.ticket,
                    symbol=symbol,
                    side=order.kind.side,
                    volume=order.volume,
                    open_price=order.price,
                    stop_loss=order.stop_loss,
                    take_profit=order.take_profit,
                    comment=order.comment,
                )
                log.debug("sim fill ticket=%s kind=%s price=%s", order.ticket, order.kind.name, order.price)

        for pos in [p for p in self._positions.values() if p.symbol == symbol]:
            px = tick.closing_price(pos.side)
            if pos.stop_loss is not None and (px - pos.stop_loss) * pos.side.sign <= 0:
                self._close(pos, pos.stop_loss, pos.volume)
            elif pos.take_profit is not None and (px - pos.take_profit) * pos.side.sign >= 0:
                self._close(pos, pos.take_profit, pos.volume)


def _pending_price_valid(kind: OrderKind, price: float, tick: Tick) -> bool:
    if kind is OrderKind.BUY_STOP:
        return price > tick.ask
    if kind is OrderKind.SELL_STOP:
        return price < tick.bid
    if kind is OrderKind.BUY_LIMIT:
        return price < tick.ask
    if kind is OrderKind.SELL_LIMIT:
        return price > tick.bid
    return False


def _pending_triggered(kind: OrderKind, price: float, tick: Tick) -> bool:
    if kind is OrderKind.BUY_STOP:
        return tick.ask >= price
    if kind is OrderKind.SELL_STOP:
        return tick.bid <= price
    if kind is OrderKind.BUY_LIMIT:
        return tick.ask <= price
    if kind is OrderKind.SELL_LIMIT:
        return tick.bid >= price
    return False


class RandomWalkFeed:
    """
    Drives SimBroker quotes with a Gaussian random walk on the mid price.

    Attach it to VirtualPacing so every simulated pause moves the market:
        feed = RandomWalkFeed(sim, "EURUSD", start_mid=1.1, spread_points=2)
        pacing.on_pause(feed)
    """

    def __init__(
        self,
        broker: SimBroker,
        symbol: str,
        *,
        start_mid: float,
        spread_points: float = 2.0,
        sigma_points_per_sec: float = 0.8,
        seed: int | None = None,
    ) -> None:
        self._broker = broker
        self._symbol = validate_symbol(symbol)
        self._meta = broker.get_symbol_metadata(self._symbol)
        self._mid = float(start_mid)
        self._spread_points = float(spread_points)
        self._sigma = float(sigma_points_per_sec)
        self._rng = np.random.default_rng(seed)
        self._last_t = 0.0
        self._publish()

    def __call__(self, t: float) -> None:
        dt_s = max(0.0, t - self._last_t)
        self._last_t = t
        if dt_s <= 0:
            return
        steps = max(1, int(dt_s))
        moves = self._rng.normal(0.0, self._sigma * np.sqrt(dt_s / steps), size=steps)
        for move in moves:
            self._mid += float(move) * self._meta.point
            self._publish()

    def _publish(self) -> None:
        half = self._spread_points * self._meta.point / 2.0
        self._broker.set_tick(self._symbol, self._mid - half, self._mid + half)
