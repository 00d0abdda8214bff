"""
MetaTrader 5 terminal adapter.

Wraps the `MetaTrader5` Python package (Windows only) behind the Broker
protocol:
- Order sends go through a token-bucket rate limiter
- Terminal calls run under a circuit breaker
- Connect refuses anything but a demo account
- Symbols are auto-selected into Market Watch before use

The package is imported lazily so the rest of the orchestrator (and the
simulator) works on machines without it.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict

from mt5_orchestrator.broker.base import (
    RETCODE_DONE,
    RETCODE_INVALID,
    PendingOrder,
    PlacementResult,
    Position,
)
from mt5_orchestrator.config import TerminalConfig
from mt5_orchestrator.errors import (
    CircuitOpenError,
    TerminalConnectionError,
    TerminalDependencyError,
    TerminalError,
)
from mt5_orchestrator.instruments import SymbolMetadata, validate_metadata, validate_symbol
from mt5_orchestrator.types import OrderKind, Side, Tick, TicketSnapshot

log = logging.getLogger(__name__)

_ORDER_TYPE_NAMES = {
    OrderKind.MARKET_BUY: "ORDER_TYPE_BUY",
    OrderKind.MARKET_SELL: "ORDER_TYPE_SELL",
    OrderKind.BUY_LIMIT: "ORDER_TYPE_BUY_LIMIT",
    OrderKind.SELL_LIMIT: "ORDER_TYPE_SELL_LIMIT",
    OrderKind.BUY_STOP: "ORDER_TYPE_BUY_STOP",
    OrderKind.SELL_STOP: "ORDER_TYPE_SELL_STOP",
}


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"  # next call is a trial


class RateLimiter:
    """Token bucket for order sends: `burst_size` back-to-back, refilled at `max_rate` per second."""

    def __init__(
        self,
        max_rate: float = 5.0,
        burst_size: int = 3,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._rate = float(max_rate)
        self._burst = float(burst_size)
        self._tokens = float(burst_size)
        self._clock = clock
        self._sleep = sleep
        self._stamp = clock()
        self._lock = threading.Lock()

    def acquire(self, timeout: float = 5.0) -> bool:
        """Take one token, waiting for a refill if needed; False when the wait would exceed `timeout`."""
        with self._lock:
            now = self._clock()
            self._tokens = min(self._burst, self._tokens + (now - self._stamp) * self._rate)
            self._stamp = now
            if self._tokens >= 1.0:
                self._tokens -= 1.0
                return True
            wait = (1.0 - self._tokens) / self._rate
            if wait > timeout:
                return False
            self._sleep(wait)
            self._tokens = 0.0
            self._stamp = now + wait
            return True


class CircuitBreaker:
    """
    Stops calling the terminal after `threshold` consecutive connection
    failures. Once `timeout` seconds have passed one trial call goes through:
    success closes the circuit, another failure re-opens it.

    Only TerminalConnectionError counts as a failure.
    """

    def __init__(self, threshold: int = 5, timeout: float = 30.0, *, clock: Callable[[], float] = time.monotonic):
        self._threshold = int(threshold)
        self._timeout = float(timeout)
        self._clock = clock
        self._failures = 0
        self._opened_at: float | None = None
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        with self._lock:
            if self._opened_at is None:
                return CircuitState.CLOSED
            if self._clock() - self._opened_at >= self._timeout:
                return CircuitState.HALF_OPEN
            return CircuitState.OPEN

    @contextmanager
    def protect(self):
        if self.state is CircuitState.OPEN:
            raise CircuitOpenError(f"Terminal circuit open after {self._failures} failures, retry in {self._timeout:.0f}s")
        try:
            yield
        except TerminalConnectionError:
            with self._lock:
                self._failures += 1
                if self._failures >= self._threshold:
                    self._opened_at = self._clock()
                    log.warning("Terminal circuit opened after %d consecutive failures", self._failures)
            raise
        with self._lock:
            self._failures = 0
            self._opened_at = None


def _load_mt5_module() -> Any:
    try:
        import MetaTrader5 as mt5
    except Exception as exc:
        raise TerminalDependencyError(
            "Failed to import 'MetaTrader5' (pip install MetaTrader5; Windows only)."
        ) from exc
    return mt5


@dataclass
class MT5Broker:
    config: TerminalConfig = field(default_factory=TerminalConfig)
    require_demo: bool = True
    magic: int = 240501
    deviation_points: int = 10
    mt5_module: Any | None = None
    rate_limiter: RateLimiter = field(default_factory=RateLimiter)
    circuit_breaker: CircuitBreaker = field(default_factory=CircuitBreaker)

    _mt5: Any | None = field(default=None, init=False, repr=False)
    _selected: set = field(default_factory=set, init=False, repr=False)
    _meta_cache: Dict[str, SymbolMetadata] = field(default_factory=dict, init=False, repr=False)

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    def connect(self) -> None:
        mt5 = self.mt5_module if self.mt5_module is not None else _load_mt5_module()
        kwargs: Dict[str, Any] = {"timeout": int(self.config.timeout_ms)}
        if self.config.path:
            kwargs["path"] = self.config.path
        if self.config.login is not None:
            kwargs["login"] = int(self.config.login)
        if self.config.password:
            kwargs["password"] = self.config.password
        if self.config.server:
            kwargs["server"] = self.config.server

        log.info("Connecting to MT5 terminal login=%s server=%s", self.config.login, self.config.server)
        if not mt5.initialize(**kwargs):
            raise TerminalConnectionError(f"MT5 initialize failed: {mt5.last_error()}")
        self._mt5 = mt5

        if self.require_demo:
            try:
                self._assert_demo_account()
            except Exception:
                self.disconnect()
                raise

    def disconnect(self) -> None:
        if self._mt5 is None:
            return
        try:
            self._mt5.shutdown()
        finally:
            self._mt5 = None
            self._selected.clear()
            self._meta_cache.clear()
        log.info("Disconnected from MT5 terminal")

    def _assert_demo_account(self) -> None:
        info = self._api().account_info()
        if info is None:
            raise TerminalError(
                "Connected to MT5, but could not read account info. This is unsafe; refusing to continue."
            )
        if info.trade_mode != self._mt5.ACCOUNT_TRADE_MODE_DEMO:
            raise TerminalError(
                f"Refusing to run because account {info.login} is not a demo account (trade_mode={info.trade_mode})."
            )

    def _api(self) -> Any:
        if self._mt5 is None:
            raise TerminalError("Broker is not connected")
        return self._mt5

    def _call(self, name: str, *args, **kwargs) -> Any:
        """Run one terminal call under the circuit breaker; None means the terminal failed."""
        mt5 = self._api()
        with self.circuit_breaker.protect():
            result = getattr(mt5, name)(*args, **kwargs)
            if result is None:
                raise TerminalConnectionError(f"{name} failed: {mt5.last_error()}")
        return result

    def _ensure_selected(self, symbol: str) -> None:
        if symbol in self._selected:
            return
        info = self._call("symbol_info", symbol)
        if not info.visible and not self._api().symbol_select(symbol, True):
            raise TerminalError(f"symbol_select({symbol}) failed: {self._mt5.last_error()}")
        self._selected.add(symbol)

    # ------------------------------------------------------------------
    # Market data
    # ------------------------------------------------------------------

    def get_tick(self, symbol: str) -> Tick:
        symbol = validate_symbol(symbol)
        self._ensure_selected(symbol)
        t = self._call("symbol_info_tick", symbol)
        return Tick(bid=float(t.bid), ask=float(t.ask), timestamp=float(t.time))

    def get_symbol_metadata(self, symbol: str) -> SymbolMetadata:
        symbol = validate_symbol(symbol)
        cached = self._meta_cache.get(symbol)
        if cached is not None:
            return cached
        self._ensure_selected(symbol)
        info = self._call("symbol_info", symbol)
        meta = SymbolMetadata(
            symbol=symbol,
            point=float(info.point),
            digits=int(info.digits),
            volume_min=float(info.volume_min),
            volume_max=float(info.volume_max),
            volume_step=float(info.volume_step),
            contract_size=float(info.trade_contract_size),
            tick_value=float(info.trade_tick_value),
            tick_size=float(info.trade_tick_size),
        )
        self._meta_cache[symbol] = validate_metadata(meta)
        return meta

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    def _filling_mode(self, symbol: str) -> int:
        mt5 = self._api()
        mask = int(getattr(self._call("symbol_info", symbol), "filling_mode", 0) or 0)
        if mask & 0x02:
            return mt5.ORDER_FILLING_IOC
        if mask & 0x01:
            return mt5.ORDER_FILLING_FOK
        return mt5.ORDER_FILLING_RETURN

    def _send(self, request: Dict[str, Any]) -> PlacementResult:
        if not self.rate_limiter.acquire():
            raise TerminalConnectionError("order rate limit exceeded")
        res = self._call("order_send", request)
        log.debug("order_send %s -> retcode=%s order=%s", request, res.retcode, getattr(res, "order", 0))
        return PlacementResult(
            ticket=int(getattr(res, "order", 0) or 0),
            retcode=int(res.retcode),
            price=float(getattr(res, "price", 0.0) or 0.0),
            volume=float(getattr(res, "volume", 0.0) or 0.0),
            comment=str(getattr(res, "comment", "") or ""),
        )

    def _order_type(self, kind: OrderKind) -> int:
        return getattr(self._api(), _ORDER_TYPE_NAMES[kind])

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
        mt5 = self._api()
        tick = self.get_tick(symbol)
        request = {
            "action": mt5.TRADE_ACTION_DEAL,
            "symbol": symbol,
            "volume": float(volume),
            "type": self._order_type(OrderKind.market(side)),
            "price": tick.entry_price(side),
            "deviation": self.deviation_points,
            "magic": self.magic,
            "comment": comment[:31],
            "type_time": mt5.ORDER_TIME_GTC,
            "type_filling": self._filling_mode(symbol),
        }
        if stop_loss is not None:
            request["sl"] = float(stop_loss)
        if take_profit is not None:
            request["tp"] = float(take_profit)
        return self._send(request)

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
        self._ensure_selected(symbol)
        mt5 = self._api()
        request = {
            "action": mt5.TRADE_ACTION_PENDING,
            "symbol": symbol,
            "volume": float(volume),
            "type": self._order_type(kind),
            "price": float(price),
            "magic": self.magic,
            "comment": comment[:31],
            "type_time": mt5.ORDER_TIME_GTC,
            "type_filling": mt5.ORDER_FILLING_RETURN,
        }
        if stop_loss is not None:
            request["sl"] = float(stop_loss)
        if take_profit is not None:
            request["tp"] = float(take_profit)
        return self._send(request)

    def cancel_or_close(self, ticket: int, volume: float | None = None) -> int:
        mt5 = self._api()
        ticket = int(ticket)
        # Unknown tickets come back as None or an empty tuple depending on terminal build.
        orders = mt5.orders_get(ticket=ticket)
        if orders:
            return self._send({"action": mt5.TRADE_ACTION_REMOVE, "order": ticket}).retcode

        positions = mt5.positions_get(ticket=ticket)
        if not positions:
            return RETCODE_INVALID
        pos = positions[0]
        side = Side.BUY if pos.type == mt5.POSITION_TYPE_BUY else Side.SELL
        close_side = side.opposite
        close_volume = float(pos.volume) if volume is None or volume <= 0 else min(float(volume), float(pos.volume))
        tick = self.get_tick(pos.symbol)
        request = {
            "action": mt5.TRADE_ACTION_DEAL,
            "symbol": pos.symbol,
            "position": ticket,
            "volume": close_volume,
            "type": self._order_type(OrderKind.market(close_side)),
            "price": tick.entry_price(close_side),
            "deviation": self.deviation_points,
            "magic": self.magic,
            "comment": "close",
            "type_time": mt5.ORDER_TIME_GTC,
            "type_filling": self._filling_mode(pos.symbol),
        }
        return self._send(request).retcode

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def list_tickets(self) -> TicketSnapshot:
        orders = self._call("orders_get")
        positions = self._call("positions_get")
        return TicketSnapshot(
            pending=frozenset(int(o.ticket) for o in orders),
            positions=frozenset(int(p.ticket) for p in positions),
        )

    def get_positions(self, symbol: str | None = None) -> list[Position]:
        mt5 = self._api()
        raw = self._call("positions_get", symbol=validate_symbol(symbol)) if symbol else self._call("positions_get")
        return [
            Position(
                ticket=int(p.ticket),
                symbol=p.symbol,
                side=Side.BUY if p.type == mt5.POSITION_TYPE_BUY else Side.SELL,
                volume=float(p.volume),
                open_price=float(p.price_open),
                stop_loss=float(p.sl) or None,
                take_profit=float(p.tp) or None,
                profit=float(p.profit),
                comment=p.comment,
            )
            for p in raw
        ]

    def get_pending_orders(self, symbol: str | None = None) -> list[PendingOrder]:
        raw = self._call("orders_get", symbol=validate_symbol(symbol)) if symbol else self._call("orders_get")
        by_code = {getattr(self._api(), name): kind for kind, name in _ORDER_TYPE_NAMES.items()}
        out: list[PendingOrder] = []
        for o in raw:
            kind = by_code.get(o.type)
            if kind is None or kind.is_market:
                continue
            out.append(
                PendingOrder(
                    ticket=int(o.ticket),
                    symbol=o.symbol,
                    kind=kind,
                    volume=float(o.volume_current),
                    price=float(o.price_open),
                    stop_loss=float(o.sl) or None,
                    take_profit=float(o.tp) or None,
                    comment=o.comment,
                )
            )
        return out

    def get_balance(self) -> float:
        return float(self._call("account_info").balance)

    def close_all_for_symbol(self, symbol: str) -> int:
        symbol = validate_symbol(symbol)
        handled = 0
        for pos in self.get_positions(symbol):
            code = self.cancel_or_close(pos.ticket)
            if code == RETCODE_DONE:
                handled += 1
            else:
                log.warning("Close #%s failed retcode=%s", pos.ticket, code)
        for order in self.get_pending_orders(symbol):
            code = self.cancel_or_close(order.ticket)
            if code == RETCODE_DONE:
                handled += 1
            else:
                log.warning("Cancel #%s failed retcode=%s", order.ticket, code)
        return handled
