"""
Order store: limit, stop-loss, tap-to-trade and grid orders.

Indexed by owner, grid session (group), cell, kind, venue and target
position. Orders carrying a window or expiry are swept to EXPIRED by
`cleanup_expired` once the deadline passes, unless a settlement holds them.
"""

from __future__ import annotations

import time
from typing import Callable, Dict, Iterable, List, Optional

from keeper.core.errors import ValidationError
from keeper.store.models import Order, OrderKind, OrderStatus, SessionKey
from keeper.store.repository import EntityStore
from keeper.store.state_machine import ORDER_GRAPH, VIA_RESIGN

CANCELLABLE = (OrderStatus.PENDING, OrderStatus.NEEDS_RESIGN)


class OrderStore(EntityStore[Order]):
    def __init__(self, clock: Callable[[], float] = time.time, **kwargs) -> None:
        super().__init__(
            ORDER_GRAPH,
            id_prefix="ord",
            indexes={
                "owner": lambda o: o.owner,
                "group": lambda o: o.grid_session_id,
                "cell": lambda o: o.cell_id,
                "kind": lambda o: o.kind.name,
                "venue": lambda o: o.venue,
                "position": lambda o: o.position_id,
            },
            expiry=lambda o: o.end_time,
            clock=clock,
            **kwargs,
        )

    def pending(self, kinds: Optional[Iterable[OrderKind]] = None) -> List[Order]:
        orders = self.query(status=OrderStatus.PENDING)
        if kinds is None:
            return orders
        wanted = set(kinds)
        return [o for o in orders if o.kind in wanted]

    def cancel(self, order_id: str, owner: str, reason: str = "cancelled_by_owner") -> Order:
        order = self.require(order_id)
        if order.owner.lower() != owner.lower():
            raise ValidationError("Not authorized to cancel this order")
        if order.status not in CANCELLABLE:
            raise ValidationError(f"Cannot cancel order with status: {order.status.name}")
        return self.transition(order_id, OrderStatus.CANCELLED, reason=reason)

    def cancel_where(self, reason: str, **filters: Optional[str]) -> List[Order]:
        """Cancel every cancellable order matching the index filters (e.g. cell=..., group=...)."""
        return [
            self.transition(o.id, OrderStatus.CANCELLED, reason=reason)
            for o in self.query(status=CANCELLABLE, **filters)
        ]

    def resign(
        self,
        order_id: str,
        owner: str,
        nonce: str,
        signature: str,
        session_key: Optional[SessionKey] = None,
    ) -> Order:
        """NEEDS_RESIGN -> PENDING with a fresh nonce and signature from the owner."""
        order = self.require(order_id)
        if order.owner.lower() != owner.lower():
            raise ValidationError("Not authorized to update this order")
        if order.status is not OrderStatus.NEEDS_RESIGN:
            raise ValidationError(f"Order is not in NEEDS_RESIGN status: {order.status.name}")
        return self.transition(
            order_id,
            OrderStatus.PENDING,
            reason="resigned",
            via=VIA_RESIGN,
            nonce=nonce,
            signature=signature,
            session_key=session_key or order.session_key,
            error=None,
            attempts=0,
        )

    def stats(self, kinds: Optional[Iterable[OrderKind]] = None) -> Dict[str, int]:
        orders = self.all()
        if kinds is not None:
            wanted = set(kinds)
            orders = [o for o in orders if o.kind in wanted]
        counts = {s: 0 for s in OrderStatus}
        for o in orders:
            counts[o.status] += 1
        return {
            "total": len(orders),
            "pending": counts[OrderStatus.PENDING],
            "executing": counts[OrderStatus.EXECUTING],
            "executed": counts[OrderStatus.EXECUTED],
            "cancelled": counts[OrderStatus.CANCELLED],
            "expired": counts[OrderStatus.EXPIRED],
            "failed": counts[OrderStatus.FAILED],
            "needs_resign": counts[OrderStatus.NEEDS_RESIGN],
            "partial_failure": counts[OrderStatus.PARTIAL_FAILURE],
        }
