from mt5_orchestrator.engines.grid import GridLadder, GridPreset
from mt5_orchestrator.engines.hedge import (
    AdverseMovementMonitor,
    HedgeParams,
    PrimaryPosition,
    QuickHedgeEngine,
    QuickHedgePreset,
)
from mt5_orchestrator.engines.oco import (
    BREAKOUT_PRESET,
    NEWS_PRESET,
    ConditionalPairMonitor,
    PairParams,
    PollingTicketSource,
    StraddleEngine,
    StraddlePreset,
)
from mt5_orchestrator.engines.scalp import ScalpEngine, ScalpPreset

__all__ = [
    "AdverseMovementMonitor",
    "BREAKOUT_PRESET",
    "ConditionalPairMonitor",
    "GridLadder",
    "GridPreset",
    "HedgeParams",
    "NEWS_PRESET",
    "PairParams",
    "PollingTicketSource",
    "PrimaryPosition",
    "QuickHedgeEngine",
    "QuickHedgePreset",
    "ScalpEngine",
    "ScalpPreset",
    "StraddleEngine",
    "StraddlePreset",
]
