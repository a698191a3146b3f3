"""
Read-side queries for the request layer: prices, entities, stats and loop status.

Everything returned is a plain dict ready for JSON, built from the frozen
entity snapshots, so nothing handed out can change store state.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Type

from keeper.core.errors import EntityNotFound
from keeper.store import (
    BetStatus,
    BetStore,
    GridStore,
    OrderKind,
    OrderStatus,
    OrderStore,
    PositionIndex,
    PositionStatus,
)

LIMIT_KINDS = (OrderKind.LIMIT_OPEN, OrderKind.LIMIT_CLOSE, OrderKind.STOP_LOSS)
TAP_KINDS = (OrderKind.TAP_TO_TRADE, OrderKind.GRID_CELL)


def _status(enum: Type[Enum], value: Optional[str]) -> Optional[Enum]:
    if value is None:
        return None
    try:
        return enum[value.upper()]
    except KeyError:
        raise ValueError(f"unknown {enum.__name__}: {value}") from None


class KeeperQueries:
    def __init__(
        self,
        prices,
        orders: OrderStore,
        positions: PositionIndex,
        bets: BetStore,
        grid: GridStore,
        loops: Iterable[Any] = (),
        sequencer=None,
        feed=None,
        price_signer=None,
    ) -> None:
        self.prices = prices
        self.orders = orders
        self.positions = positions
        self.bets = bets
        self.grid = grid
        self.loops = list(loops)
        self.sequencer = sequencer
        self.feed = feed
        self.price_signer = price_signer

    # prices

    def price(self, symbol: str) -> Optional[Dict[str, Any]]:
        tick = self.prices.get(symbol)
        return tick.to_dict() if tick else None

    def all_prices(self) -> Dict[str, Dict[str, Any]]:
        return {symbol: tick.to_dict() for symbol, tick in self.prices.snapshot().items()}

    # orders

    def order(self, order_id: str) -> Dict[str, Any]:
        return self.orders.require(order_id).to_dict()

    def list_orders(
        self,
        owner: Optional[str] = None,
        group: Optional[str] = None,
        status: Optional[str] = None,
        kind: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        found = self.orders.query(status=_status(OrderStatus, status), owner=owner, group=group, kind=kind)
        return [o.to_dict() for o in found]

    # positions

    def position(self, position_id: str) -> Dict[str, Any]:
        out = self.positions.require(position_id).to_dict()
        tpsl = self.positions.get_tpsl(position_id)
        out["tpsl"] = tpsl.to_dict() if tpsl else None
        return out

    def list_positions(self, owner: Optional[str] = None, status: Optional[str] = None) -> List[Dict[str, Any]]:
        found = self.positions.query(status=_status(PositionStatus, status), owner=owner)
        return [p.to_dict() for p in found]

    def tpsl_of(self, owner: str) -> List[Dict[str, Any]]:
        return [c.to_dict() for c in self.positions.tpsl_configs() if c.owner.lower() == owner.lower()]

    # bets

    def bet(self, venue: str, bet_id: str) -> Dict[str, Any]:
        bet = self.bets.get_bet(venue, bet_id)
        if bet is None:
            raise EntityNotFound("bet", f"{venue}-{bet_id}")
        return bet.to_dict()

    def list_bets(self, owner: Optional[str] = None, status: Optional[str] = None) -> List[Dict[str, Any]]:
        return [b.to_dict() for b in self.bets.query(status=_status(BetStatus, status), owner=owner)]

    # grid

    def grid_session(self, session_id: str) -> Dict[str, Any]:
        session = self.grid.sessions.require(session_id)
        out = session.to_dict()
        out["cells"] = [c.to_dict() for c in self.grid.cells_of(session_id)]
        return out

    def grid_sessions_of(self, owner: str) -> List[Dict[str, Any]]:
        return [s.to_dict() for s in self.grid.sessions_of(owner)]

    # aggregates

    def stats(self) -> Dict[str, Any]:
        return {
            "limit_orders": self.orders.stats(LIMIT_KINDS),
            "tap_orders": self.orders.stats(TAP_KINDS),
            "positions": self.positions.count_by_status(),
            "tpsl_configs": len(self.positions.tpsl_configs()),
            "bets": self.bets.stats(),
            "grid": self.grid.stats(),
            "settlements": self.sequencer.get_stats() if self.sequencer is not None else {},
        }

    def loop_status(self) -> List[Dict[str, Any]]:
        return [loop.status() for loop in self.loops]

    def feed_status(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"cache": self.prices.get_stats()}
        if self.feed is not None:
            out["feed"] = self.feed.health()
        if self.price_signer is not None:
            out["price_signer"] = self.price_signer.status()
        return out
