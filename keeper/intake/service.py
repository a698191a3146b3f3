"""
Intake: the only way entities enter the stores.

Every request is validated here, signatures included, and rejected with a
ValidationError carrying the reason before anything is stored. After
creation an entity is mutated only by the loop owning its kind, or by an
owner-authorized cancel / re-sign / TP-SL update going through this class.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from keeper.auth.session_validator import SessionAuthValidator
from keeper.config.venues import VenueConfig
from keeper.core.errors import ValidationError
from keeper.store import (
    Bet,
    BetStore,
    GridCell,
    GridSession,
    GridStore,
    Order,
    OrderKind,
    OrderStore,
    Position,
    PositionIndex,
    SessionKey,
    TpSlConfig,
)

log = logging.getLogger("keeper")

LIMIT_KINDS = (OrderKind.LIMIT_OPEN, OrderKind.LIMIT_CLOSE, OrderKind.STOP_LOSS)
TAP_KINDS = (OrderKind.TAP_TO_TRADE, OrderKind.GRID_CELL)


class IntakeService:
    """
    Args:
        venues: venue name -> VenueConfig; orders are validated against the
            executor contract of their venue
        symbols: tradable symbols; None accepts any symbol
        max_leverage: upper bound for order and grid leverage
    """

    def __init__(
        self,
        orders: OrderStore,
        positions: PositionIndex,
        bets: BetStore,
        grid: GridStore,
        validator: SessionAuthValidator,
        venues: Dict[str, VenueConfig],
        symbols: Optional[Iterable[str]] = None,
        max_leverage: int = 100,
        log_event: Optional[Callable[..., None]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.orders = orders
        self.positions = positions
        self.bets = bets
        self.grid = grid
        self.validator = validator
        self.venues = venues
        self._symbols = set(symbols) if symbols is not None else None
        self.max_leverage = max_leverage
        self._log_event = log_event or self._default_log
        self._clock = clock

    def _default_log(self, event: str, level: str = "info", **kwargs: Any) -> None:
        getattr(log, level)(json.dumps({"event": event, **kwargs}, default=str))

    # --- orders ---

    def submit_order(self, order: Order) -> Order:
        """Validate fields and signature, then store as PENDING."""
        self._check_order_fields(order)
        self._authorize(order)
        stored = self.orders.create(order)
        self._log_event(
            "order_created",
            id=stored.id,
            kind=stored.kind.name,
            owner=stored.owner,
            symbol=stored.symbol,
            side=stored.side.name,
            trigger_price=stored.trigger_price,
            session=stored.session_key is not None,
        )
        return stored

    def submit_batch(self, orders: Sequence[Order]) -> List[Order]:
        """All-or-nothing: every order is validated before any is stored."""
        if not orders:
            raise ValidationError("Batch is empty")
        for i, order in enumerate(orders):
            try:
                self._check_order_fields(order)
                self._authorize(order)
            except ValidationError as exc:
                raise ValidationError(f"Order {i}: {exc.reason}") from exc
        created = [self.orders.create(o) for o in orders]
        self._log_event("order_batch_created", count=len(created), owner=created[0].owner)
        return created

    def resign_order(
        self,
        order_id: str,
        owner: str,
        nonce: str,
        signature: str,
        session_key: Optional[SessionKey] = None,
    ) -> Order:
        """NEEDS_RESIGN -> PENDING once the fresh signature checks out."""
        current = self.orders.require(order_id)
        candidate = dataclasses.replace(
            current, nonce=nonce, signature=signature, session_key=session_key or current.session_key
        )
        self._authorize(candidate)
        order = self.orders.resign(order_id, owner, nonce, signature, session_key)
        self._log_event("order_resigned", id=order_id, owner=owner)
        return order

    def cancel_order(self, order_id: str, owner: str) -> Order:
        order = self.orders.cancel(order_id, owner)
        self._log_event("order_cancelled", id=order_id, owner=owner)
        return order

    def cancel_cell_orders(self, cell_id: str) -> List[Order]:
        return self.orders.cancel_where("cell_cancelled", cell=cell_id)

    def cancel_grid_orders(self, session_id: str) -> List[Order]:
        return self.orders.cancel_where("grid_cancelled", group=session_id)

    def _check_order_fields(self, order: Order) -> None:
        venue = self._venue(order.venue)
        self._check_symbol(order.symbol)
        if order.id:
            raise ValidationError("Order id is assigned by the store")
        if order.trigger_price <= 0:
            raise ValidationError("Trigger price must be positive")
        if order.collateral <= 0:
            raise ValidationError("Collateral must be positive")
        if not 0 < order.leverage <= self.max_leverage:
            raise ValidationError(f"Leverage must be between 1 and {self.max_leverage}")
        try:
            if int(order.nonce) < 0:
                raise ValidationError("Nonce must not be negative")
        except (TypeError, ValueError):
            raise ValidationError("Nonce must be an integer") from None

        if order.kind in TAP_KINDS:
            if order.start_time is None or order.end_time is None:
                raise ValidationError("Tap orders need a time window")
            if order.end_time <= order.start_time:
                raise ValidationError("Window end must be after start")
            if order.end_time < self._clock():
                raise ValidationError("Window already elapsed")
            if order.kind is OrderKind.GRID_CELL and not order.cell_id:
                raise ValidationError("Grid orders need a cell")
            if not venue.tap_to_trade_executor:
                raise ValidationError(f"Venue {venue.name} has no tap-to-trade executor")
        else:
            if order.ledger_id is None:
                raise ValidationError("Limit orders need their on-ledger order id")
            if order.end_time is not None and order.end_time < self._clock():
                raise ValidationError("Order already expired")
            if order.kind in (OrderKind.LIMIT_CLOSE, OrderKind.STOP_LOSS):
                self._check_closing_target(order)
            elif order.take_profit is not None or order.stop_loss is not None:
                self._check_order_tpsl(order)

    def _check_closing_target(self, order: Order) -> None:
        if not order.position_id:
            raise ValidationError("Closing orders need a target position")
        position = self.positions.get(order.position_id)
        if position is None:
            raise ValidationError(f"Unknown position: {order.position_id}")
        if position.owner.lower() != order.owner.lower():
            raise ValidationError("Not your position")
        if position.symbol != order.symbol or position.side != order.side:
            raise ValidationError("Order does not match the target position")

    def _check_order_tpsl(self, order: Order) -> None:
        # entry is unknown until execution; the trigger price stands in for it
        PositionIndex.check_levels(order.side, order.trigger_price, order.take_profit, order.stop_loss)

    def _authorize(self, order: Order) -> None:
        venue = self._venue(order.venue)
        target = venue.tap_to_trade_executor if order.kind in TAP_KINDS else venue.limit_executor
        result = self.validator.validate_order(order, target)
        if not result.valid:
            raise ValidationError(result.reason or "Invalid order signature")

    # --- grid ---

    def create_grid(self, session: GridSession) -> GridSession:
        self._venue(session.venue)
        self._check_symbol(session.symbol)
        if not 0 < session.leverage <= self.max_leverage:
            raise ValidationError(f"Leverage must be between 1 and {self.max_leverage}")
        if session.timeframe_sec <= 0 or session.grid_size_x <= 0 or session.grid_size_y_bps <= 0:
            raise ValidationError("Grid timeframe and sizes must be positive")
        created = self.grid.create_session(session)
        self._log_event("grid_created", id=created.id, owner=created.owner, symbol=created.symbol)
        return created

    def create_cell(self, cell: GridCell) -> GridCell:
        if cell.trigger_price <= 0:
            raise ValidationError("Trigger price must be positive")
        if cell.collateral_per_order <= 0:
            raise ValidationError("Collateral per order must be positive")
        created = self.grid.create_cell(cell)
        self._log_event("grid_cell_created", id=created.id, session=created.session_id, x=created.x, y=created.y)
        return created

    def place_cell_order(self, cell_id: str, order: Order) -> Order:
        """One click on a cell: a signed GRID_CELL order inheriting the cell's trigger and window."""
        cell, session = self.grid.require_open_cell(cell_id)
        if cell.orders_created >= cell.click_count:
            raise ValidationError("Cell already has all its orders")
        if order.owner.lower() != cell.owner.lower():
            raise ValidationError("Not authorized to trade this cell")
        order = dataclasses.replace(
            order,
            kind=OrderKind.GRID_CELL,
            symbol=session.symbol,
            side=cell.side,
            trigger_price=cell.trigger_price,
            collateral=cell.collateral_per_order,
            leverage=session.leverage,
            venue=session.venue,
            start_time=cell.start_time,
            end_time=cell.end_time,
            grid_session_id=session.id,
            cell_id=cell.id,
        )
        stored = self.submit_order(order)
        self.grid.add_order_to_cell(cell_id, stored.id)
        return stored

    def cancel_grid(self, session_id: str, owner: str) -> Dict[str, int]:
        cells = self.grid.cancel_session(session_id, owner)
        orders = self.cancel_grid_orders(session_id)
        self._log_event("grid_cancelled", id=session_id, cells=len(cells), orders=len(orders))
        return {"cancelled_cells": len(cells), "cancelled_orders": len(orders)}

    def cancel_cell(self, cell_id: str, owner: str) -> Dict[str, int]:
        self.grid.cancel_cell(cell_id, owner)
        orders = self.cancel_cell_orders(cell_id)
        self._log_event("grid_cell_cancelled", id=cell_id, orders=len(orders))
        return {"cancelled_orders": len(orders)}

    # --- positions ---

    def register_position(self, position: Position) -> Position:
        """Track a position opened on the ledger outside the keeper (market order)."""
        self._venue(position.venue)
        self._check_symbol(position.symbol)
        if position.ledger_id is None:
            raise ValidationError("Position needs its on-ledger id")
        if position.collateral <= 0 or position.size <= 0 or position.entry_price <= 0:
            raise ValidationError("Collateral, size and entry price must be positive")
        for existing in self.positions.query(venue=position.venue):
            if existing.ledger_id == position.ledger_id:
                raise ValidationError(f"Position {position.ledger_id} already tracked on {position.venue}")
        stored = self.positions.create(position)
        self._log_event("position_registered", id=stored.id, ledger_id=stored.ledger_id, owner=stored.owner)
        return stored

    def set_tpsl(
        self,
        position_id: str,
        owner: str,
        take_profit: Optional[float] = None,
        stop_loss: Optional[float] = None,
    ) -> TpSlConfig:
        return self.positions.set_tpsl(position_id, owner, take_profit, stop_loss)

    def delete_tpsl(self, position_id: str, owner: str) -> bool:
        return self.positions.delete_tpsl(position_id, owner)

    # --- bets ---

    def register_bet(self, bet: Bet) -> Bet:
        self._venue(bet.venue)
        self._check_symbol(bet.symbol)
        if self.bets.get_bet(bet.venue, bet.bet_id) is not None:
            raise ValidationError(f"Bet {bet.bet_id} already tracked on {bet.venue}")
        try:
            int(bet.bet_id)
        except (TypeError, ValueError):
            raise ValidationError("Bet id must be an integer") from None
        if bet.bet_amount <= 0:
            raise ValidationError("Bet amount must be positive")
        if bet.target_price <= 0 or bet.entry_price <= 0:
            raise ValidationError("Prices must be positive")
        if bet.target_time <= bet.entry_time:
            raise ValidationError("Target time must be after entry time")
        if bet.multiplier < 100:
            raise ValidationError("Multiplier must be at least 1x (100)")
        stored = self.bets.create(bet)
        self._log_event(
            "bet_registered",
            id=stored.id,
            owner=stored.owner,
            symbol=stored.symbol,
            target_price=stored.target_price,
            target_time=stored.target_time,
        )
        return stored

    # --- helpers ---

    def _venue(self, name: str) -> VenueConfig:
        venue = self.venues.get(name)
        if venue is None:
            raise ValidationError(f"Unknown venue: {name}")
        return venue

    def _check_symbol(self, symbol: str) -> None:
        if not symbol:
            raise ValidationError("Symbol is required")
        if self._symbols is not None and symbol not in self._symbols:
            raise ValidationError(f"Unsupported symbol: {symbol}")
