"""
Core type definitions shared by the sizing helpers, the engines and the
cycle runner.

Everything here is an immutable value: ticks are fetched on demand and never
cached, results are produced once and only ever appended to a running total.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, auto
from typing import FrozenSet, Optional, Tuple


class Side(Enum):
    """Direction of an order or position."""
    BUY = "BUY"
    SELL = "SELL"

    @property
    def opposite(self) -> "Side":
        return Side.SELL if self is Side.BUY else Side.BUY

    @property
    def sign(self) -> int:
        return 1 if self is Side.BUY else -1


class OrderKind(Enum):
    """
    The closed set of terminal order types.

    Values are the terminal's own numeric codes (ORDER_TYPE_*), so adapters
    can pass them through unchanged.
    """
    MARKET_BUY = 0
    MARKET_SELL = 1
    BUY_LIMIT = 2
    SELL_LIMIT = 3
    BUY_STOP = 4
    SELL_STOP = 5

    @property
    def side(self) -> Side:
        return Side.BUY if self.value % 2 == 0 else Side.SELL

    @property
    def is_market(self) -> bool:
        return self in (OrderKind.MARKET_BUY, OrderKind.MARKET_SELL)

    @property
    def is_pending(self) -> bool:
        return not self.is_market

    @staticmethod
    def market(side: Side) -> "OrderKind":
        return OrderKind.MARKET_BUY if side is Side.BUY else OrderKind.MARKET_SELL

    @staticmethod
    def stop(side: Side) -> "OrderKind":
        return OrderKind.BUY_STOP if side is Side.BUY else OrderKind.SELL_STOP

    @staticmethod
    def limit(side: Side) -> "OrderKind":
        return OrderKind.BUY_LIMIT if side is Side.BUY else OrderKind.SELL_LIMIT


class Condition(Enum):
    """Market condition picked by the classifier for the next cycle."""
    GRID = auto()             # Low volatility, range-bound
    SCALP = auto()            # Medium volatility, normal conditions
    HIGH_VOLATILITY = auto()  # Needs protection (hedge)
    NEWS = auto()             # Close to a scheduled release
    BREAKOUT = auto()         # Unusually wide spread


class Outcome(Enum):
    """Why an engine run ended."""
    UPWARD = "upward"                  # Buy side of a pair filled
    DOWNWARD = "downward"              # Sell side of a pair filled
    BOTH = "both"                      # Both sides filled (spike)
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    FAILED = "failed"                  # Placement failure, compensated
    HEDGED = "hedged"
    NOT_HEDGED = "not_hedged"
    PRIMARY_CLOSED = "primary_closed"  # Primary gone before the trigger
    COMPLETED = "completed"            # Fixed-duration run finished
    CLOSED_BY_TERMINAL = "closed_by_terminal"  # SL/TP hit before our close
    CLOSED_ON_TIMEOUT = "closed_on_timeout"
    CONFIG_ERROR = "config_error"
    ERROR = "error"


@dataclass(frozen=True)
class Tick:
    bid: float
    ask: float
    timestamp: float

    @property
    def mid(self) -> float:
        return (self.bid + self.ask) / 2.0

    def spread_points(self, point: float) -> float:
        return (self.ask - self.bid) / point

    def entry_price(self, side: Side) -> float:
        """Price a new position on `side` would open at."""
        return self.ask if side is Side.BUY else self.bid

    def closing_price(self, side: Side) -> float:
        """Price an existing position on `side` would close at."""
        return self.bid if side is Side.BUY else self.ask


@dataclass(frozen=True)
class TicketSnapshot:
    """One read of the terminal's pending-order and position ticket lists."""
    pending: FrozenSet[int] = frozenset()
    positions: FrozenSet[int] = frozenset()

    def is_pending(self, ticket: int) -> bool:
        return int(ticket) in self.pending

    def has_position(self, ticket: int) -> bool:
        return int(ticket) in self.positions


@dataclass(frozen=True)
class EngineResult:
    """What every engine run hands back: the P&L and enough state to say why."""
    engine: str
    outcome: Outcome
    realized_pnl: float = 0.0
    tickets: Tuple[int, ...] = ()
    reason: str = ""


@dataclass(frozen=True)
class CycleResult:
    cycle: int
    condition: Optional[Condition]
    outcome: Outcome
    realized_pnl: float
    tickets: Tuple[int, ...] = field(default_factory=tuple)
    reason: str = ""
