"""
Status graphs for every stored entity kind.

Each graph lists the allowed edges. Some edges are restricted to a named
path and are rejected unless the caller passes that path explicitly:

- "rollback": in-progress status back to where it came from; only used by
  settlement when zero ledger calls of a plan finalized
- "resign":   NEEDS_RESIGN -> PENDING after the owner supplied a new signature
- "operator": PARTIAL_FAILURE -> terminal, after manual settlement

A status with no outgoing edges is terminal.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple

from keeper.core.errors import IllegalTransition
from keeper.store.models import (
    BetStatus,
    GridCellStatus,
    GridSessionStatus,
    OrderStatus,
    PositionStatus,
)

VIA_ROLLBACK = "rollback"
VIA_RESIGN = "resign"
VIA_OPERATOR = "operator"


@dataclass
class StateTransition:
    """Record of a status change."""
    from_status: Enum
    to_status: Enum
    timestamp_ms: int
    reason: Optional[str] = None
    via: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class StatusGraph:
    """
    Args:
        kind: entity kind name used in errors
        edges: from -> {to: required path or None}
        in_progress: statuses meaning "a settlement holds this entity"
    """

    def __init__(
        self,
        kind: str,
        edges: Mapping[Enum, Mapping[Enum, Optional[str]]],
        in_progress: FrozenSet[Enum] = frozenset(),
        expired: Optional[Enum] = None,
    ) -> None:
        self.kind = kind
        self._edges = {src: dict(dst) for src, dst in edges.items()}
        self.in_progress = in_progress
        self.expired = expired
        statuses = set(self._edges)
        for dst in self._edges.values():
            statuses.update(dst)
        self.terminal: FrozenSet[Enum] = frozenset(s for s in statuses if not self._edges.get(s))
        self._rollback: Dict[Enum, Enum] = {}
        for src, dst in self._edges.items():
            for to, via in dst.items():
                if via == VIA_ROLLBACK:
                    self._rollback[src] = to

    def is_terminal(self, status: Enum) -> bool:
        return status in self.terminal

    def can_transition(self, from_status: Enum, to_status: Enum, via: Optional[str] = None) -> bool:
        dst = self._edges.get(from_status, {})
        if to_status not in dst:
            return False
        return dst[to_status] == via

    def check(self, entity_id: str, from_status: Enum, to_status: Enum, via: Optional[str] = None) -> None:
        if not self.can_transition(from_status, to_status, via):
            raise IllegalTransition(self.kind, entity_id, from_status, to_status)

    def rollback_target(self, entity_id: str, status: Enum) -> Enum:
        if status not in self._rollback:
            raise IllegalTransition(self.kind, entity_id, status, "rollback")
        return self._rollback[status]

    def can_expire(self, status: Enum) -> bool:
        return self.expired is not None and self.can_transition(status, self.expired)

    def edges(self) -> Tuple[Tuple[Enum, Enum, Optional[str]], ...]:
        return tuple((s, t, v) for s, dst in self._edges.items() for t, v in dst.items())


ORDER_GRAPH = StatusGraph(
    "order",
    {
        OrderStatus.PENDING: {
            OrderStatus.EXECUTING: None,
            OrderStatus.NEEDS_RESIGN: None,
            OrderStatus.CANCELLED: None,
            OrderStatus.EXPIRED: None,
        },
        OrderStatus.EXECUTING: {
            OrderStatus.EXECUTED: None,
            OrderStatus.FAILED: None,
            OrderStatus.NEEDS_RESIGN: None,
            OrderStatus.PARTIAL_FAILURE: None,
            OrderStatus.PENDING: VIA_ROLLBACK,
        },
        OrderStatus.NEEDS_RESIGN: {
            OrderStatus.PENDING: VIA_RESIGN,
            OrderStatus.CANCELLED: None,
            OrderStatus.EXPIRED: None,
        },
        OrderStatus.PARTIAL_FAILURE: {
            OrderStatus.EXECUTED: VIA_OPERATOR,
            OrderStatus.FAILED: VIA_OPERATOR,
        },
    },
    in_progress=frozenset({OrderStatus.EXECUTING}),
    expired=OrderStatus.EXPIRED,
)

POSITION_GRAPH = StatusGraph(
    "position",
    {
        PositionStatus.OPEN: {PositionStatus.CLOSING: None},
        PositionStatus.CLOSING: {
            PositionStatus.CLOSED: None,
            PositionStatus.PARTIAL_FAILURE: None,
            PositionStatus.FAILED: None,
            PositionStatus.OPEN: VIA_ROLLBACK,
        },
        PositionStatus.PARTIAL_FAILURE: {
            PositionStatus.CLOSED: VIA_OPERATOR,
            PositionStatus.FAILED: VIA_OPERATOR,
        },
    },
    in_progress=frozenset({PositionStatus.CLOSING}),
)

BET_GRAPH = StatusGraph(
    "bet",
    {
        BetStatus.ACTIVE: {BetStatus.SETTLING: None, BetStatus.CANCELLED: None},
        BetStatus.SETTLING: {
            BetStatus.WON: None,
            BetStatus.LOST: None,
            BetStatus.PARTIAL_FAILURE: None,
            BetStatus.FAILED: None,
            BetStatus.ACTIVE: VIA_ROLLBACK,
        },
        BetStatus.PARTIAL_FAILURE: {
            BetStatus.WON: VIA_OPERATOR,
            BetStatus.LOST: VIA_OPERATOR,
            BetStatus.FAILED: VIA_OPERATOR,
        },
    },
    in_progress=frozenset({BetStatus.SETTLING}),
)

GRID_SESSION_GRAPH = StatusGraph(
    "grid_session",
    {GridSessionStatus.ACTIVE: {GridSessionStatus.CANCELLED: None}},
)

GRID_CELL_GRAPH = StatusGraph(
    "grid_cell",
    {
        GridCellStatus.PENDING: {
            GridCellStatus.ACTIVE: None,
            GridCellStatus.EXPIRED: None,
            GridCellStatus.CANCELLED: None,
        },
        GridCellStatus.ACTIVE: {
            GridCellStatus.FULLY_EXECUTED: None,
            GridCellStatus.EXPIRED: None,
            GridCellStatus.CANCELLED: None,
        },
    },
    expired=GridCellStatus.EXPIRED,
)
