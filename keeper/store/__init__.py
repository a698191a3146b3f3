"""
Store package: entity types, status graphs and the in-memory repositories.
"""

from keeper.store.bet_store import BetStore
from keeper.store.grid_store import GridStore
from keeper.store.models import (
    Bet,
    BetStatus,
    GridCell,
    GridCellStatus,
    GridSession,
    GridSessionStatus,
    Order,
    OrderKind,
    OrderStatus,
    Position,
    PositionStatus,
    SessionKey,
    SettlementRecord,
    Side,
    TpSlConfig,
    bet_key,
)
from keeper.store.order_store import OrderStore
from keeper.store.position_index import PositionIndex
from keeper.store.repository import EntityStore
from keeper.store.state_machine import (
    BET_GRAPH,
    GRID_CELL_GRAPH,
    GRID_SESSION_GRAPH,
    ORDER_GRAPH,
    POSITION_GRAPH,
    VIA_OPERATOR,
    VIA_RESIGN,
    VIA_ROLLBACK,
    StateTransition,
    StatusGraph,
)

__all__ = [
    "BetStore",
    "GridStore",
    "OrderStore",
    "PositionIndex",
    "EntityStore",
    "Bet",
    "BetStatus",
    "GridCell",
    "GridCellStatus",
    "GridSession",
    "GridSessionStatus",
    "Order",
    "OrderKind",
    "OrderStatus",
    "Position",
    "PositionStatus",
    "SessionKey",
    "SettlementRecord",
    "Side",
    "TpSlConfig",
    "bet_key",
    "BET_GRAPH",
    "GRID_CELL_GRAPH",
    "GRID_SESSION_GRAPH",
    "ORDER_GRAPH",
    "POSITION_GRAPH",
    "VIA_OPERATOR",
    "VIA_RESIGN",
    "VIA_ROLLBACK",
    "StateTransition",
    "StatusGraph",
]
