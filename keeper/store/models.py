"""
Entity types held by the keeper stores.

Entities are frozen; a store replaces the stored value on every change so a
reference handed to a caller is a consistent snapshot, never a live handle.
Prices are floats in quote currency, collateral/size/amounts are integer USDC
units (6 decimals), timestamps are unix seconds unless the name says `_ms`.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Dict, Optional, Tuple


class Side(Enum):
    LONG = auto()
    SHORT = auto()

    @property
    def is_long(self) -> bool:
        return self is Side.LONG

    @classmethod
    def from_is_long(cls, is_long: bool) -> "Side":
        return cls.LONG if is_long else cls.SHORT


class OrderKind(Enum):
    LIMIT_OPEN = auto()
    LIMIT_CLOSE = auto()
    STOP_LOSS = auto()
    TAP_TO_TRADE = auto()
    GRID_CELL = auto()

    @property
    def is_windowed(self) -> bool:
        return self in (OrderKind.TAP_TO_TRADE, OrderKind.GRID_CELL)


class OrderStatus(Enum):
    """
    PENDING ──> EXECUTING ──┬──> EXECUTED
       │  ▲         │       ├──> FAILED
       │  │         │       └──> PARTIAL_FAILURE ──> EXECUTED | FAILED (operator)
       │  └─ re-sign ┴──> NEEDS_RESIGN ──> CANCELLED | EXPIRED
       └──> CANCELLED | EXPIRED
    """
    PENDING = auto()
    EXECUTING = auto()
    EXECUTED = auto()
    FAILED = auto()
    NEEDS_RESIGN = auto()
    CANCELLED = auto()
    EXPIRED = auto()
    PARTIAL_FAILURE = auto()


class PositionStatus(Enum):
    OPEN = auto()
    CLOSING = auto()
    CLOSED = auto()
    PARTIAL_FAILURE = auto()
    FAILED = auto()


class BetStatus(Enum):
    ACTIVE = auto()
    SETTLING = auto()
    WON = auto()
    LOST = auto()
    CANCELLED = auto()
    PARTIAL_FAILURE = auto()
    FAILED = auto()


class GridSessionStatus(Enum):
    ACTIVE = auto()
    CANCELLED = auto()


class GridCellStatus(Enum):
    PENDING = auto()
    ACTIVE = auto()
    EXPIRED = auto()
    CANCELLED = auto()
    FULLY_EXECUTED = auto()


@dataclass(frozen=True)
class SessionKey:
    """Delegated signing capability: `delegate` may sign orders for `authorized_by` until expiry."""
    delegate: str
    expires_at_ms: int
    authorized_by: str
    auth_signature: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.delegate,
            "expires_at": self.expires_at_ms,
            "authorized_by": self.authorized_by,
        }


@dataclass(frozen=True)
class SettlementRecord:
    """What an interrupted settlement already did on the ledger, kept for the operator."""
    finalized: Tuple[Tuple[str, str], ...] = ()  # (call label, tx hash)
    remaining: Tuple[str, ...] = ()
    failed_call: Optional[str] = None
    error: Optional[str] = None
    # (call label, tx hash) sent but without a receipt; may still land
    unconfirmed: Optional[Tuple[str, str]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "finalized": [{"call": label, "tx_hash": tx} for label, tx in self.finalized],
            "remaining": list(self.remaining),
            "failed_call": self.failed_call,
            "error": self.error,
            "unconfirmed": (
                {"call": self.unconfirmed[0], "tx_hash": self.unconfirmed[1]} if self.unconfirmed else None
            ),
        }


@dataclass(frozen=True)
class Order:
    owner: str
    kind: OrderKind
    symbol: str
    side: Side
    trigger_price: float
    collateral: int
    leverage: int
    venue: str = "base"
    nonce: str = "0"
    signature: str = ""
    session_key: Optional[SessionKey] = None
    start_time: Optional[float] = None
    end_time: Optional[float] = None  # window end for tap/grid, expiry for limit orders
    grid_session_id: Optional[str] = None
    cell_id: Optional[str] = None
    position_id: Optional[str] = None  # target position for LIMIT_CLOSE / STOP_LOSS
    take_profit: Optional[float] = None  # applied to the opened position
    stop_loss: Optional[float] = None
    ledger_id: Optional[int] = None  # on-ledger order id for limit orders
    id: str = ""
    status: OrderStatus = OrderStatus.PENDING
    created_at: float = 0.0
    updated_at: float = 0.0
    executed_at: Optional[float] = None
    execution_price: Optional[float] = None
    tx_hashes: Tuple[str, ...] = ()
    result_position_id: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0
    settlement: Optional[SettlementRecord] = None

    @property
    def expires_at(self) -> Optional[float]:
        return self.end_time

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner": self.owner,
            "kind": self.kind.name,
            "symbol": self.symbol,
            "side": self.side.name,
            "trigger_price": self.trigger_price,
            "collateral": self.collateral,
            "leverage": self.leverage,
            "venue": self.venue,
            "nonce": self.nonce,
            "session_key": self.session_key.to_dict() if self.session_key else None,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "grid_session_id": self.grid_session_id,
            "cell_id": self.cell_id,
            "position_id": self.position_id,
            "ledger_id": self.ledger_id,
            "take_profit": self.take_profit,
            "stop_loss": self.stop_loss,
            "status": self.status.name,
            "created_at": self.created_at,
            "executed_at": self.executed_at,
            "execution_price": self.execution_price,
            "tx_hashes": list(self.tx_hashes),
            "error": self.error,
            "attempts": self.attempts,
            "settlement": self.settlement.to_dict() if self.settlement else None,
        }


@dataclass(frozen=True)
class Position:
    owner: str
    symbol: str
    side: Side
    collateral: int
    size: int
    leverage: int
    entry_price: float
    venue: str = "base"
    opened_at: float = 0.0
    ledger_id: Optional[int] = None  # id on the position manager contract
    id: str = ""
    status: PositionStatus = PositionStatus.OPEN
    created_at: float = 0.0
    updated_at: float = 0.0
    close_reason: Optional[str] = None
    close_price: Optional[float] = None
    closed_at: Optional[float] = None
    tx_hashes: Tuple[str, ...] = ()
    error: Optional[str] = None
    attempts: int = 0
    settlement: Optional[SettlementRecord] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner": self.owner,
            "symbol": self.symbol,
            "side": self.side.name,
            "collateral": self.collateral,
            "size": self.size,
            "leverage": self.leverage,
            "entry_price": self.entry_price,
            "venue": self.venue,
            "opened_at": self.opened_at,
            "ledger_id": self.ledger_id,
            "status": self.status.name,
            "close_reason": self.close_reason,
            "close_price": self.close_price,
            "closed_at": self.closed_at,
            "tx_hashes": list(self.tx_hashes),
            "error": self.error,
            "settlement": self.settlement.to_dict() if self.settlement else None,
        }


@dataclass(frozen=True)
class TpSlConfig:
    position_id: str
    owner: str
    symbol: str
    side: Side
    entry_price: float
    take_profit: Optional[float] = None
    stop_loss: Optional[float] = None
    created_at: float = 0.0
    updated_at: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position_id": self.position_id,
            "owner": self.owner,
            "symbol": self.symbol,
            "side": self.side.name,
            "entry_price": self.entry_price,
            "take_profit": self.take_profit,
            "stop_loss": self.stop_loss,
            "updated_at": self.updated_at,
        }


def bet_key(venue: str, bet_id: str) -> str:
    """Bet ids are only unique within a venue."""
    return f"{venue}-{bet_id}"


@dataclass(frozen=True)
class Bet:
    bet_id: str
    owner: str
    symbol: str
    bet_amount: int
    target_price: float
    target_time: float
    entry_price: float
    entry_time: float
    multiplier: int  # basis 100: 110 == 1.1x
    venue: str = "base"
    id: str = ""
    status: BetStatus = BetStatus.ACTIVE
    created_at: float = 0.0
    updated_at: float = 0.0
    settle_price: Optional[float] = None
    settled_at: Optional[float] = None
    won: Optional[bool] = None
    tx_hashes: Tuple[str, ...] = ()
    error: Optional[str] = None
    attempts: int = 0
    settlement: Optional[SettlementRecord] = None

    @property
    def payout(self) -> int:
        return self.bet_amount * self.multiplier // 100

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "bet_id": self.bet_id,
            "venue": self.venue,
            "owner": self.owner,
            "symbol": self.symbol,
            "bet_amount": self.bet_amount,
            "target_price": self.target_price,
            "target_time": self.target_time,
            "entry_price": self.entry_price,
            "entry_time": self.entry_time,
            "multiplier": self.multiplier,
            "status": self.status.name,
            "settle_price": self.settle_price,
            "settled_at": self.settled_at,
            "won": self.won,
            "tx_hashes": list(self.tx_hashes),
            "settlement": self.settlement.to_dict() if self.settlement else None,
        }


@dataclass(frozen=True)
class GridSession:
    owner: str
    symbol: str
    margin_total: int
    leverage: int
    timeframe_sec: int
    grid_size_x: int
    grid_size_y_bps: int
    reference_time: float
    reference_price: float
    venue: str = "base"
    id: str = ""
    status: GridSessionStatus = GridSessionStatus.ACTIVE
    created_at: float = 0.0
    updated_at: float = 0.0
    cancelled_at: Optional[float] = None

    @property
    def is_active(self) -> bool:
        return self.status is GridSessionStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner": self.owner,
            "symbol": self.symbol,
            "margin_total": self.margin_total,
            "leverage": self.leverage,
            "timeframe_sec": self.timeframe_sec,
            "grid_size_x": self.grid_size_x,
            "grid_size_y_bps": self.grid_size_y_bps,
            "reference_time": self.reference_time,
            "reference_price": self.reference_price,
            "venue": self.venue,
            "is_active": self.is_active,
            "created_at": self.created_at,
            "cancelled_at": self.cancelled_at,
        }


@dataclass(frozen=True)
class GridCell:
    session_id: str
    owner: str
    x: int
    y: int
    trigger_price: float
    start_time: float
    end_time: float
    side: Side
    click_count: int
    collateral_per_order: int
    id: str = ""
    status: GridCellStatus = GridCellStatus.PENDING
    orders_created: int = 0
    executed_count: int = 0
    order_ids: Tuple[str, ...] = ()
    created_at: float = 0.0
    updated_at: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "x": self.x,
            "y": self.y,
            "trigger_price": self.trigger_price,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "side": self.side.name,
            "click_count": self.click_count,
            "collateral_per_order": self.collateral_per_order,
            "status": self.status.name,
            "orders_created": self.orders_created,
            "executed_count": self.executed_count,
            "order_ids": list(self.order_ids),
        }
