from __future__ import annotations

import datetime as dt
import logging

from mt5_orchestrator.broker.base import RETCODE_DONE, Broker
from mt5_orchestrator.errors import TerminalError
from mt5_orchestrator.types import Side

log = logging.getLogger(__name__)

CANCEL_ATTEMPTS = 3


def cancel_ticket(broker: Broker, ticket: int, observer=None, attempts: int = CANCEL_ATTEMPTS) -> bool:
    """Cancel (or close) a ticket, retrying a few times. Returns True on success."""
    retcode = None
    for attempt in range(1, attempts + 1):
        try:
            retcode = broker.cancel_or_close(ticket)
        except TerminalError as exc:
            log.warning("Cancel #%s attempt %d failed: %s", ticket, attempt, exc)
            continue
        if retcode == RETCODE_DONE:
            log.info("Cancelled #%s", ticket)
            if observer is not None:
                observer.on_order_cancelled(ticket, retcode)
            return True
        log.warning("Cancel #%s attempt %d rejected retcode=%s", ticket, attempt, retcode)
    log.error("Giving up cancelling #%s after %d attempts (last retcode=%s)", ticket, attempts, retcode)
    return False


def flatten(broker: Broker, symbol: str) -> int:
    """Close every position and cancel every pending order on the symbol."""
    handled = broker.close_all_for_symbol(symbol)
    log.info("Flattened %s (%d tickets)", symbol, handled)
    return handled


def realized_since(broker: Broker, balance_before: float) -> float:
    return round(broker.get_balance() - balance_before, 2)


def second_parity_side(now: dt.datetime) -> Side:
    """Even UTC second buys, odd second sells."""
    return Side.BUY if now.second % 2 == 0 else Side.SELL
