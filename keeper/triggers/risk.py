"""
Liquidation predicate and PnL.

The venue's risk rules live on the ledger; the keeper only needs a local
predicate good enough to decide when submitting `liquidatePosition` is worth
it. A liquidation the contract disagrees with reverts harmlessly.
"""

from __future__ import annotations

from typing import Protocol

from keeper.store.models import Side

BPS = 10_000


def calculate_pnl(side: Side, size: int, entry_price: float, price: float) -> int:
    """PnL in collateral units: size * (price - entry) / entry, sign flipped for shorts."""
    if entry_price <= 0:
        return 0
    move = (price - entry_price) / entry_price
    pnl = size * move
    return int(pnl if side.is_long else -pnl)


class RiskEvaluator(Protocol):
    def should_liquidate(
        self, price: float, collateral: int, size: int, entry_price: float, side: Side
    ) -> bool:
        ...


class MarginRiskEvaluator:
    """
    Liquidate once the unrealized loss eats `threshold_bps` of collateral
    (9000 = 90%).
    """

    def __init__(self, threshold_bps: int = 9_000) -> None:
        if not 0 < threshold_bps <= BPS:
            raise ValueError(f"threshold_bps must be in (0, {BPS}], got {threshold_bps}")
        self.threshold_bps = threshold_bps

    def should_liquidate(
        self, price: float, collateral: int, size: int, entry_price: float, side: Side
    ) -> bool:
        if collateral <= 0:
            return True
        pnl = calculate_pnl(side, size, entry_price, price)
        if pnl >= 0:
            return False
        return -pnl * BPS >= collateral * self.threshold_bps

    def liquidation_price(self, collateral: int, size: int, entry_price: float, side: Side) -> float:
        """Price at which `should_liquidate` starts returning True."""
        if size <= 0:
            return 0.0
        move = collateral * self.threshold_bps / BPS / size
        return entry_price * (1 - move) if side.is_long else entry_price * (1 + move)
