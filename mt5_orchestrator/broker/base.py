from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from mt5_orchestrator.instruments import SymbolMetadata
from mt5_orchestrator.types import OrderKind, Side, Tick, TicketSnapshot

# TRADE_RETCODE_DONE: the only code that means the request went through.
RETCODE_DONE = 10009
RETCODE_REJECT = 10006
RETCODE_INVALID = 10013
RETCODE_INVALID_PRICE = 10015
RETCODE_NO_MONEY = 10019


@dataclass(frozen=True)
class PlacementResult:
    ticket: int
    retcode: int
    price: float = 0.0
    volume: float = 0.0
    comment: str = ""

    @property
    def ok(self) -> bool:
        return self.retcode == RETCODE_DONE


@dataclass(frozen=True)
class Position:
    ticket: int
    symbol: str
    side: Side
    volume: float
    open_price: float
    stop_loss: float | None = None
    take_profit: float | None = None
    profit: float = 0.0
    comment: str = ""


@dataclass(frozen=True)
class PendingOrder:
    ticket: int
    symbol: str
    kind: OrderKind
    volume: float
    price: float
    stop_loss: float | None = None
    take_profit: float | None = None
    comment: str = ""


class Broker(Protocol):
    """
    Semantic contract of the trading terminal.

    Adapters translate these calls to a concrete terminal; engines depend on
    nothing else.
    """

    def connect(self) -> None: ...

    def disconnect(self) -> None: ...

    def get_tick(self, symbol: str) -> Tick: ...

    def get_symbol_metadata(self, symbol: str) -> SymbolMetadata: ...

    def place_market_order(
        self,
        symbol: str,
        side: Side,
        volume: float,
        stop_loss: float | None = None,
        take_profit: float | None = None,
        comment: str = "",
    ) -> PlacementResult: ...

    def place_conditional_order(
        self,
        symbol: str,
        kind: OrderKind,
        price: float,
        volume: float,
        stop_loss: float | None = None,
        take_profit: float | None = None,
        comment: str = "",
    ) -> PlacementResult: ...

    def cancel_or_close(self, ticket: int, volume: float | None = None) -> int:
        """Cancel a pending order or close a position (optionally partially); returns the retcode."""
        ...

    def list_tickets(self) -> TicketSnapshot: ...

    def get_positions(self, symbol: str | None = None) -> list[Position]: ...

    def get_pending_orders(self, symbol: str | None = None) -> list[PendingOrder]: ...

    def get_balance(self) -> float: ...

    def close_all_for_symbol(self, symbol: str) -> int:
        """Close every position and cancel every pending order on `symbol`; returns how many were handled."""
        ...
