"""
Trigger evaluation: (entity, price, now) -> Decision.

Everything here is pure. Staleness is checked by the caller before a price
reaches these functions; an entity that is not in its actionable status is
answered with WAIT("not_actionable") before any price logic runs.

Trigger rules (price comparisons are inclusive):

    LimitOpen           long: price <= trigger     short: price >= trigger
    TakeProfit/LimitClose  long: price >= trigger  short: price <= trigger
    StopLoss            long: price <= trigger     short: price >= trigger
    Tap / grid order    LimitOpen rule and start <= now <= end; EXPIRE after end
    Bet                 WON inside [entry_time, target_time] within target +/- band/2;
                        LOST once now > target_time
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

from keeper.config.symbols import SymbolConfig
from keeper.store.models import (
    Bet,
    BetStatus,
    Order,
    OrderKind,
    OrderStatus,
    Position,
    PositionStatus,
    Side,
    TpSlConfig,
)
from keeper.triggers.risk import MarginRiskEvaluator, RiskEvaluator


class Action(str, Enum):
    FIRE = "fire"
    WAIT = "wait"
    EXPIRE = "expire"


@dataclass(frozen=True)
class Decision:
    action: Action
    reason: str
    won: Optional[bool] = None  # bets only

    @property
    def fired(self) -> bool:
        return self.action is Action.FIRE

    @classmethod
    def fire(cls, reason: str, won: Optional[bool] = None) -> "Decision":
        return cls(Action.FIRE, reason, won)

    @classmethod
    def wait(cls, reason: str) -> "Decision":
        return cls(Action.WAIT, reason)

    @classmethod
    def expire(cls, reason: str) -> "Decision":
        return cls(Action.EXPIRE, reason)


NOT_ACTIONABLE = Decision.wait("not_actionable")

# Reasons
LIMIT_OPEN_HIT = "limit_open_hit"
LIMIT_CLOSE_HIT = "limit_close_hit"
TAKE_PROFIT_HIT = "take_profit_hit"
STOP_LOSS_HIT = "stop_loss_hit"
LIQUIDATION = "liquidation"
WINDOW_ELAPSED = "window_elapsed"
ORDER_EXPIRED = "order_expired"
BET_WON = "bet_won"
BET_LOST = "bet_lost"


def limit_open_hit(side: Side, price: float, trigger: float) -> bool:
    return price <= trigger if side.is_long else price >= trigger


def take_profit_hit(side: Side, price: float, trigger: float) -> bool:
    return price >= trigger if side.is_long else price <= trigger


def stop_loss_hit(side: Side, price: float, trigger: float) -> bool:
    return price <= trigger if side.is_long else price >= trigger


# LimitClose closes in profit direction, same rule as take-profit.
limit_close_hit = take_profit_hit


def evaluate_limit_order(order: Order, price: float, now: float) -> Decision:
    """LIMIT_OPEN / LIMIT_CLOSE / STOP_LOSS with optional expiry in `end_time`."""
    if order.status is not OrderStatus.PENDING:
        return NOT_ACTIONABLE
    if order.end_time is not None and now > order.end_time:
        return Decision.expire(ORDER_EXPIRED)
    if order.kind is OrderKind.LIMIT_OPEN:
        hit, reason = limit_open_hit(order.side, price, order.trigger_price), LIMIT_OPEN_HIT
    elif order.kind is OrderKind.LIMIT_CLOSE:
        hit, reason = limit_close_hit(order.side, price, order.trigger_price), LIMIT_CLOSE_HIT
    elif order.kind is OrderKind.STOP_LOSS:
        hit, reason = stop_loss_hit(order.side, price, order.trigger_price), STOP_LOSS_HIT
    else:
        raise ValueError(f"not a limit order kind: {order.kind.name}")
    return Decision.fire(reason) if hit else Decision.wait("price_not_reached")


def evaluate_windowed_order(order: Order, price: float, now: float) -> Decision:
    """Tap-to-trade and grid orders: LimitOpen rule inside [start, end]."""
    if order.status is not OrderStatus.PENDING:
        return NOT_ACTIONABLE
    if order.end_time is not None and now > order.end_time:
        return Decision.expire(WINDOW_ELAPSED)
    if order.start_time is not None and now < order.start_time:
        return Decision.wait("window_not_open")
    if limit_open_hit(order.side, price, order.trigger_price):
        return Decision.fire(LIMIT_OPEN_HIT)
    return Decision.wait("price_not_reached")


def evaluate_tpsl(config: TpSlConfig, position: Position, price: float) -> Decision:
    """Stop-loss wins when both levels are crossed."""
    if position.status is not PositionStatus.OPEN:
        return NOT_ACTIONABLE
    if config.stop_loss is not None and stop_loss_hit(position.side, price, config.stop_loss):
        return Decision.fire(STOP_LOSS_HIT)
    if config.take_profit is not None and take_profit_hit(position.side, price, config.take_profit):
        return Decision.fire(TAKE_PROFIT_HIT)
    return Decision.wait("price_not_reached")


def evaluate_liquidation(position: Position, price: float, risk: RiskEvaluator) -> Decision:
    if position.status is not PositionStatus.OPEN:
        return NOT_ACTIONABLE
    if risk.should_liquidate(price, position.collateral, position.size, position.entry_price, position.side):
        return Decision.fire(LIQUIDATION)
    return Decision.wait("healthy")


def evaluate_bet(bet: Bet, price: float, now: float, band: float) -> Decision:
    """`band` is the full width of the winning range around the target."""
    if bet.status is not BetStatus.ACTIVE:
        return NOT_ACTIONABLE
    if now > bet.target_time:
        return Decision.fire(BET_LOST, won=False)
    if now < bet.entry_time:
        return Decision.wait("window_not_open")
    if abs(price - bet.target_price) <= band / 2:
        return Decision.fire(BET_WON, won=True)
    return Decision.wait("outside_band")


class TriggerEvaluator:
    """
    Binds the pure rules to per-symbol configuration and the risk collaborator.

    Args:
        symbols: symbol -> SymbolConfig (bet band widths)
        risk: liquidation predicate
        default_bet_band: band for symbols without config
    """

    def __init__(
        self,
        symbols: Optional[Dict[str, SymbolConfig]] = None,
        risk: Optional[RiskEvaluator] = None,
        default_bet_band: float = 10.0,
    ) -> None:
        self._symbols = symbols or {}
        self.risk = risk or MarginRiskEvaluator()
        self._default_band = default_bet_band

    def bet_band(self, symbol: str) -> float:
        cfg = self._symbols.get(symbol)
        return cfg.bet_band if cfg is not None else self._default_band

    def order(self, order: Order, price: float, now: float) -> Decision:
        if order.kind.is_windowed:
            return evaluate_windowed_order(order, price, now)
        return evaluate_limit_order(order, price, now)

    def tpsl(self, config: TpSlConfig, position: Position, price: float) -> Decision:
        return evaluate_tpsl(config, position, price)

    def liquidation(self, position: Position, price: float) -> Decision:
        return evaluate_liquidation(position, price, self.risk)

    def bet(self, bet: Bet, price: float, now: float) -> Decision:
        return evaluate_bet(bet, price, now, self.bet_band(bet.symbol))
