from __future__ import annotations

import math
import re
from dataclasses import dataclass

from mt5_orchestrator.errors import ConfigurationError


_SYMBOL_RE = re.compile(r"^[A-Z0-9][A-Z0-9._#-]{1,31}$")  # e.g. EURUSD, XAUUSD, US500.cash


@dataclass(frozen=True)
class SymbolMetadata:
    """
    Read-only trading properties of one symbol, as reported by the terminal.

    - point:        smallest quoted price increment (EURUSD: 0.00001)
    - tick_value:   money per `tick_size` move for one lot
    - volume_*:     broker volume limits in lots
    """

    symbol: str
    point: float
    digits: int
    volume_min: float = 0.01
    volume_max: float = 100.0
    volume_step: float = 0.01
    contract_size: float = 100_000.0
    tick_value: float = 1.0
    tick_size: float = 0.00001

    @property
    def point_value(self) -> float:
        """Money gained or lost per one point of movement for one lot."""
        if self.tick_size <= 0:
            raise ConfigurationError(f"{self.symbol}: tick_size must be positive")
        return self.tick_value * self.point / self.tick_size

    def normalize_price(self, price: float) -> float:
        return round(round(price / self.point) * self.point, self.digits)

    def points_to_price(self, points: float) -> float:
        return points * self.point

    def price_to_points(self, distance: float) -> float:
        return distance / self.point

    def normalize_volume(self, volume: float) -> float:
        """Snap to the nearest volume step and clamp into broker limits."""
        return clamp_volume(snap_volume(volume, self.volume_step), self.volume_min, self.volume_max, self.volume_step)


def step_decimals(step: float) -> int:
    """Number of decimals needed to print multiples of `step` exactly."""
    if step <= 0:
        return 8
    return max(0, min(8, int(math.ceil(-math.log10(step) - 1e-9))))


def snap_volume(volume: float, step: float) -> float:
    if step <= 0:
        raise ConfigurationError("volume_step must be positive")
    return round(round(volume / step) * step, step_decimals(step))


def clamp_volume(volume: float, volume_min: float, volume_max: float, step: float) -> float:
    return round(max(volume_min, min(volume_max, volume)), step_decimals(step))


def validate_symbol(symbol: str) -> str:
    s = (symbol or "").strip().upper()
    if not s:
        raise ConfigurationError("Symbol is required")
    if not _SYMBOL_RE.match(s):
        raise ConfigurationError(f"Invalid symbol: {symbol!r}")
    return s


def validate_metadata(meta: SymbolMetadata) -> SymbolMetadata:
    if meta.point <= 0:
        raise ConfigurationError(f"{meta.symbol}: point must be positive")
    if meta.volume_step <= 0:
        raise ConfigurationError(f"{meta.symbol}: volume_step must be positive")
    if meta.volume_min <= 0 or meta.volume_max < meta.volume_min:
        raise ConfigurationError(
            f"{meta.symbol}: invalid volume limits min={meta.volume_min} max={meta.volume_max}"
        )
    return meta
