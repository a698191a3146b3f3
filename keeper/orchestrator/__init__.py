"""
Keeper loops: scan, evaluate and settle on a fixed cadence.
"""

from keeper.orchestrator.keeper_loop import CycleResult, KeeperLoop, LoopConfig, LoopState
from keeper.orchestrator.loops import (
    BetSettlementMonitor,
    LimitOrderExecutor,
    LiquidationMonitor,
    TapToTradeExecutor,
    TpSlMonitor,
)

__all__ = [
    "CycleResult",
    "KeeperLoop",
    "LoopConfig",
    "LoopState",
    "BetSettlementMonitor",
    "LimitOrderExecutor",
    "LiquidationMonitor",
    "TapToTradeExecutor",
    "TpSlMonitor",
]
