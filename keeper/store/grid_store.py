"""
Grid sessions and their cells.

A session owns cells; a cell owns the orders created for it. Cell status is
derived from its orders: the first order makes a PENDING cell ACTIVE, and the
cell is FULLY_EXECUTED once executed orders reach `click_count`.
"""

from __future__ import annotations

import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from keeper.core.errors import ValidationError
from keeper.store.models import GridCell, GridCellStatus, GridSession, GridSessionStatus
from keeper.store.repository import EntityStore
from keeper.store.state_machine import GRID_CELL_GRAPH, GRID_SESSION_GRAPH

OPEN_CELL = (GridCellStatus.PENDING, GridCellStatus.ACTIVE)


class GridStore:
    def __init__(self, clock: Callable[[], float] = time.time, **kwargs) -> None:
        self._clock = clock
        self.sessions: EntityStore[GridSession] = EntityStore(
            GRID_SESSION_GRAPH,
            id_prefix="grid",
            indexes={"owner": lambda s: s.owner, "symbol": lambda s: s.symbol, "venue": lambda s: s.venue},
            clock=clock,
            **kwargs,
        )
        self.cells: EntityStore[GridCell] = EntityStore(
            GRID_CELL_GRAPH,
            id_prefix="cell",
            indexes={"owner": lambda c: c.owner, "group": lambda c: c.session_id},
            expiry=lambda c: c.end_time,
            clock=clock,
            **kwargs,
        )

    # sessions

    def create_session(self, session: GridSession) -> GridSession:
        if session.margin_total <= 0:
            raise ValidationError("margin_total must be positive")
        if session.leverage <= 0:
            raise ValidationError("leverage must be positive")
        return self.sessions.create(session)

    def get_session(self, session_id: str) -> Optional[GridSession]:
        return self.sessions.get(session_id)

    def sessions_of(self, owner: str) -> List[GridSession]:
        return self.sessions.query(owner=owner)

    def cancel_session(self, session_id: str, owner: str) -> List[GridCell]:
        """Deactivate a session and cancel its pending/active cells. Returns the cancelled cells."""
        session = self.sessions.require(session_id)
        if session.owner.lower() != owner.lower():
            raise ValidationError("Not authorized to cancel this grid")
        if session.is_active:
            self.sessions.transition(
                session_id, GridSessionStatus.CANCELLED, reason="cancelled_by_owner", cancelled_at=self._clock()
            )
        return [
            self.cells.transition(c.id, GridCellStatus.CANCELLED, reason="session_cancelled")
            for c in self.cells.query(status=OPEN_CELL, group=session_id)
        ]

    # cells

    def create_cell(self, cell: GridCell) -> GridCell:
        session = self.sessions.require(cell.session_id)
        if not session.is_active:
            raise ValidationError("Grid session is not active")
        if cell.owner.lower() != session.owner.lower():
            raise ValidationError("Cell owner does not match grid owner")
        if cell.end_time <= cell.start_time:
            raise ValidationError("Cell window end must be after start")
        if cell.click_count <= 0:
            raise ValidationError("click_count must be positive")
        return self.cells.create(cell)

    def get_cell(self, cell_id: str) -> Optional[GridCell]:
        return self.cells.get(cell_id)

    def cells_of(self, session_id: str) -> List[GridCell]:
        return self.cells.query(group=session_id)

    def require_open_cell(self, cell_id: str) -> Tuple[GridCell, GridSession]:
        """The cell and its session, if the cell can still take orders."""
        cell = self.cells.require(cell_id)
        if cell.status not in OPEN_CELL:
            raise ValidationError(f"Cannot add order to cell with status: {cell.status.name}")
        session = self.sessions.require(cell.session_id)
        if not session.is_active:
            raise ValidationError("Grid session is not active")
        return cell, session

    def add_order_to_cell(self, cell_id: str, order_id: str) -> GridCell:
        cell, _ = self.require_open_cell(cell_id)
        attrs = {"order_ids": cell.order_ids + (order_id,), "orders_created": cell.orders_created + 1}
        if cell.status is GridCellStatus.PENDING:
            return self.cells.transition(cell_id, GridCellStatus.ACTIVE, reason="first_order", **attrs)
        return self.cells.update(cell_id, **attrs)

    def record_execution(self, cell_id: str) -> GridCell:
        """Count one executed order; the cell completes once it reaches its click count."""
        cell = self.cells.require(cell_id)
        executed = cell.executed_count + 1
        if executed >= cell.click_count and cell.status is GridCellStatus.ACTIVE:
            return self.cells.transition(
                cell_id, GridCellStatus.FULLY_EXECUTED, reason="click_count_reached", executed_count=executed
            )
        return self.cells.update(cell_id, executed_count=executed)

    def cancel_cell(self, cell_id: str, owner: str) -> GridCell:
        cell = self.cells.require(cell_id)
        if cell.owner.lower() != owner.lower():
            raise ValidationError("Not authorized to cancel this cell")
        if cell.status not in OPEN_CELL:
            raise ValidationError(f"Cannot cancel cell with status: {cell.status.name}")
        return self.cells.transition(cell_id, GridCellStatus.CANCELLED, reason="cancelled_by_owner")

    def active_cells(self) -> List[GridCell]:
        """ACTIVE cells whose session is still active."""
        out = []
        for cell in self.cells.query(status=GridCellStatus.ACTIVE):
            session = self.sessions.get(cell.session_id)
            if session is not None and session.is_active:
                out.append(cell)
        return out

    def cleanup(self, now: Optional[float] = None) -> List[GridCell]:
        return self.cells.cleanup_expired(now)

    def stats(self) -> Dict[str, Any]:
        sessions = self.sessions.all()
        cells = self.cells.all()
        return {
            "total_sessions": len(sessions),
            "active_sessions": sum(1 for s in sessions if s.is_active),
            "total_cells": len(cells),
            "active_cells": sum(1 for c in cells if c.status is GridCellStatus.ACTIVE),
            "total_orders": sum(c.orders_created for c in cells),
            "unique_traders": len({s.owner.lower() for s in sessions}),
        }
