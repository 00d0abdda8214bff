from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from mt5_orchestrator.broker.base import Broker, PlacementResult
from mt5_orchestrator.errors import ConfigurationError
from mt5_orchestrator.instruments import step_decimals
from mt5_orchestrator.types import OrderKind, Side

if TYPE_CHECKING:
    from mt5_orchestrator.events import OrchestratorObserver

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrderIntent:
    symbol: str
    side: Side
    kind: OrderKind
    volume: float
    price: float | None = None  # entry for pending kinds, reference for market
    stop_loss: float | None = None
    take_profit: float | None = None
    tag: str = ""


def build_intent(
    side: Side,
    reference_price: float,
    offset_points: int,
    point: float,
    *,
    symbol: str,
    kind: OrderKind,
    volume: float,
    stop_loss_points: int | None = None,
    take_profit_points: int | None = None,
    digits: int | None = None,
    tag: str = "",
) -> OrderIntent:
    """
    Turn a points offset from the reference price into absolute prices.

    `reference_price` is the ask for BUY and the bid for SELL; a negative
    offset places the entry below it. Stop-loss sits below the entry for BUY
    and above it for SELL; take-profit the other way round.
    """
    if kind.side is not side:
        raise ConfigurationError(f"order kind {kind.name} does not match side {side.name}")
    if point <= 0:
        raise ConfigurationError("point must be positive")
    if volume <= 0:
        raise ConfigurationError("volume must be positive")
    for name, pts in (("stop_loss_points", stop_loss_points), ("take_profit_points", take_profit_points)):
        if pts is not None and pts <= 0:
            raise ConfigurationError(f"{name} must be positive when set")

    ndigits = step_decimals(point) if digits is None else int(digits)

    def _norm(px: float) -> float:
        return round(round(px / point) * point, ndigits)

    entry = _norm(reference_price + int(offset_points) * point)
    sl = tp = None
    if stop_loss_points is not None:
        sl = _norm(entry - side.sign * stop_loss_points * point)
    if take_profit_points is not None:
        tp = _norm(entry + side.sign * take_profit_points * point)

    return OrderIntent(
        symbol=symbol,
        side=side,
        kind=kind,
        volume=float(volume),
        price=entry,
        stop_loss=sl,
        take_profit=tp,
        tag=tag,
    )


def build_market_intent(
    side: Side,
    reference_price: float,
    point: float,
    *,
    symbol: str,
    volume: float,
    stop_loss_points: int | None = None,
    take_profit_points: int | None = None,
    digits: int | None = None,
    tag: str = "",
) -> OrderIntent:
    return build_intent(
        side,
        reference_price,
        0,
        point,
        symbol=symbol,
        kind=OrderKind.market(side),
        volume=volume,
        stop_loss_points=stop_loss_points,
        take_profit_points=take_profit_points,
        digits=digits,
        tag=tag,
    )


def submit_intent(
    broker: Broker,
    intent: OrderIntent,
    observer: "OrchestratorObserver | None" = None,
) -> PlacementResult:
    if intent.kind.is_market:
        res = broker.place_market_order(
            intent.symbol,
            intent.side,
            intent.volume,
            stop_loss=intent.stop_loss,
            take_profit=intent.take_profit,
            comment=intent.tag,
        )
    else:
        if intent.price is None:
            raise ConfigurationError(f"{intent.kind.name} requires a price")
        res = broker.place_conditional_order(
            intent.symbol,
            intent.kind,
            intent.price,
            intent.volume,
            stop_loss=intent.stop_loss,
            take_profit=intent.take_profit,
            comment=intent.tag,
        )

    if res.ok:
        log.info(
            "Order placed symbol=%s kind=%s vol=%s price=%s sl=%s tp=%s tag=%s ticket=%s",
            intent.symbol, intent.kind.name, intent.volume, res.price or intent.price,
            intent.stop_loss, intent.take_profit, intent.tag, res.ticket,
        )
        if observer is not None:
            observer.on_order_placed(intent, res)
    else:
        log.warning(
            "Order rejected symbol=%s kind=%s tag=%s retcode=%s comment=%s",
            intent.symbol, intent.kind.name, intent.tag, res.retcode, res.comment,
        )
        if observer is not None:
            observer.on_placement_failed(intent, res)
    return res
