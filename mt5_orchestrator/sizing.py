"""
Risk-budget position sizing.

The volume is chosen so that hitting the stop loses `risk_money`: the raw
volume is snapped to the nearest volume step (rounded, not truncated, to stay
closest to the requested risk) and then clamped into broker limits. Clamping
changes the realized risk, so it is reported on the result instead of being
absorbed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from mt5_orchestrator.errors import ConfigurationError
from mt5_orchestrator.instruments import SymbolMetadata, clamp_volume, snap_volume

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class SizingResult:
    volume: float
    raw_volume: float
    snapped_volume: float
    risk_money: float
    stop_points: int
    point_value: float

    @property
    def clamped(self) -> bool:
        return self.volume != self.snapped_volume

    @property
    def realized_risk(self) -> float:
        """Money lost if the stop is hit at the final volume."""
        return self.volume * self.stop_points * self.point_value


def size_position(
    risk_money: float,
    stop_points: int,
    point_value: float,
    volume_min: float,
    volume_max: float,
    volume_step: float,
) -> SizingResult:
    if risk_money <= 0:
        raise ConfigurationError("risk_money must be positive")
    if int(stop_points) != stop_points or stop_points <= 0:
        raise ConfigurationError("stop_points must be a positive integer")
    if point_value <= 0:
        raise ConfigurationError("point_value must be positive")
    if volume_step <= 0:
        raise ConfigurationError("volume_step must be positive")
    if volume_min <= 0 or volume_max < volume_min:
        raise ConfigurationError(f"invalid volume limits min={volume_min} max={volume_max}")

    raw = float(risk_money) / (int(stop_points) * float(point_value))
    snapped = snap_volume(raw, volume_step)
    volume = clamp_volume(snapped, volume_min, volume_max, volume_step)
    result = SizingResult(
        volume=volume,
        raw_volume=raw,
        snapped_volume=snapped,
        risk_money=float(risk_money),
        stop_points=int(stop_points),
        point_value=float(point_value),
    )
    if result.clamped:
        log.warning(
            "Volume clamped raw=%.4f snapped=%s final=%s limits=[%s, %s] realized_risk=%.2f requested=%.2f",
            raw, snapped, volume, volume_min, volume_max, result.realized_risk, risk_money,
        )
    return result


def size_for_symbol(risk_money: float, stop_points: int, meta: SymbolMetadata) -> SizingResult:
    return size_position(
        risk_money,
        stop_points,
        meta.point_value,
        meta.volume_min,
        meta.volume_max,
        meta.volume_step,
    )


def require_within_limits(result: SizingResult) -> SizingResult:
    """Reject a sizing that had to be clamped; engines call this before placing anything."""
    if result.clamped:
        raise ConfigurationError(
            f"risk {result.risk_money:.2f} over {result.stop_points} pts needs {result.snapped_volume} lots, "
            f"outside broker limits (would trade {result.volume} lots, risking {result.realized_risk:.2f})"
        )
    return result
