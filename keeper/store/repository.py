"""
In-memory entity store with secondary indices and status-graph enforcement.

All mutation happens on the event loop thread, so there are no locks: every
public method finishes its map and index updates before returning and never
awaits in between.
"""

from __future__ import annotations

import itertools
import json
import logging
import time
from collections import defaultdict, deque
from dataclasses import replace
from enum import Enum
from typing import (
    Any,
    Callable,
    Deque,
    Dict,
    Generic,
    Iterable,
    List,
    Mapping,
    Optional,
    Set,
    TypeVar,
    Union,
)

from keeper.core.errors import EntityNotFound, IllegalTransition, ValidationError
from keeper.store.state_machine import VIA_ROLLBACK, StateTransition, StatusGraph

log = logging.getLogger("keeper")

E = TypeVar("E")
IndexFn = Callable[[Any], Optional[str]]
StatusFilter = Union[Enum, Iterable[Enum], None]


class EntityStore(Generic[E]):
    """
    Args:
        graph: the entity's StatusGraph
        id_prefix: prefix for generated ids ("ord" -> "ord-1")
        indexes: name -> key function; `query(name=value)` filters on it
        expiry: entity -> deadline (unix sec) or None, used by cleanup_expired
        clock: unix-seconds clock
        max_history: transitions kept per entity
    """

    def __init__(
        self,
        graph: StatusGraph,
        id_prefix: str,
        indexes: Optional[Mapping[str, IndexFn]] = None,
        expiry: Optional[Callable[[E], Optional[float]]] = None,
        clock: Callable[[], float] = time.time,
        max_history: int = 50,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.graph = graph
        self.kind = graph.kind
        self._prefix = id_prefix
        self._seq = itertools.count(1)
        self._index_fns: Dict[str, IndexFn] = dict(indexes or {})
        self._expiry = expiry
        self._clock = clock
        self._max_history = max_history
        self._log_event = log_event or self._default_log
        self._items: Dict[str, E] = {}
        self._indexes: Dict[str, Dict[str, Set[str]]] = {name: defaultdict(set) for name in self._index_fns}
        self._by_status: Dict[Enum, Set[str]] = defaultdict(set)
        self._history: Dict[str, Deque[StateTransition]] = {}
        self._stats = {"created": 0, "transitions": 0, "rejected": 0, "rollbacks": 0, "expired": 0}

    def _default_log(self, event: str, level: str = "info", **kwargs) -> None:
        getattr(log, level)(json.dumps({"event": event, **kwargs}, default=str))

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, entity_id: str) -> bool:
        return entity_id in self._items

    def new_id(self) -> str:
        return f"{self._prefix}-{next(self._seq)}"

    def create(self, entity: E) -> E:
        """Store a new entity; assigns `id` when empty. Returns the stored value."""
        entity_id = getattr(entity, "id", "") or self.new_id()
        if entity_id in self._items:
            raise ValidationError(f"duplicate {self.kind} id: {entity_id}")
        now = self._clock()
        stored = replace(
            entity,
            id=entity_id,
            created_at=getattr(entity, "created_at", 0.0) or now,
            updated_at=now,
        )
        self._items[entity_id] = stored
        self._index_add(stored)
        self._history[entity_id] = deque(maxlen=self._max_history)
        self._stats["created"] += 1
        return stored

    def get(self, entity_id: str) -> Optional[E]:
        return self._items.get(entity_id)

    def require(self, entity_id: str) -> E:
        entity = self._items.get(entity_id)
        if entity is None:
            raise EntityNotFound(self.kind, entity_id)
        return entity

    def all(self) -> List[E]:
        return list(self._items.values())

    def query(self, status: StatusFilter = None, **filters: Optional[str]) -> List[E]:
        """
        Filter by status (one or several) and any named index, e.g.
        `orders.query(status=OrderStatus.PENDING, owner="0xabc")`.
        """
        ids: Optional[Set[str]] = None
        if status is not None:
            statuses = [status] if isinstance(status, Enum) else list(status)
            ids = set().union(*(self._by_status.get(s, set()) for s in statuses)) if statuses else set()
        for name, value in filters.items():
            if value is None:
                continue
            if name not in self._indexes:
                raise ValueError(f"{self.kind} store has no index '{name}'")
            matched = self._indexes[name].get(_norm(value), set())
            ids = set(matched) if ids is None else ids & matched
        if ids is None:
            return list(self._items.values())
        return [self._items[i] for i in sorted(ids, key=_id_order) if i in self._items]

    def transition(
        self,
        entity_id: str,
        new_status: Enum,
        reason: Optional[str] = None,
        via: Optional[str] = None,
        **attributes: Any,
    ) -> E:
        """
        Move an entity along its graph, applying `attributes` in the same step.

        Raises:
            EntityNotFound, IllegalTransition
        """
        current = self.require(entity_id)
        old_status = current.status
        try:
            self.graph.check(entity_id, old_status, new_status, via)
        except IllegalTransition:
            self._stats["rejected"] += 1
            raise
        updated = self._replace(current, status=new_status, **attributes)
        self._record(entity_id, old_status, new_status, reason, via)
        return updated

    def rollback(self, entity_id: str, reason: Optional[str] = None, **attributes: Any) -> E:
        """Undo an in-progress status; only valid when nothing reached the ledger."""
        current = self.require(entity_id)
        target = self.graph.rollback_target(entity_id, current.status)
        self._stats["rollbacks"] += 1
        return self.transition(entity_id, target, reason=reason, via=VIA_ROLLBACK, **attributes)

    def update(self, entity_id: str, **attributes: Any) -> E:
        """Change non-status attributes."""
        if "status" in attributes:
            raise ValueError("use transition() to change status")
        return self._replace(self.require(entity_id), **attributes)

    def cleanup_expired(self, now: Optional[float] = None) -> List[E]:
        """Move every non-terminal entity whose deadline has passed to the expired status."""
        if self._expiry is None or self.graph.expired is None:
            return []
        now = self._clock() if now is None else now
        expired: List[E] = []
        for entity in list(self._items.values()):
            if not self.graph.can_expire(entity.status):
                continue
            deadline = self._expiry(entity)
            if deadline is None or now <= deadline:
                continue
            expired.append(self.transition(entity.id, self.graph.expired, reason="window_elapsed"))
        if expired:
            self._stats["expired"] += len(expired)
            self._log_event("entities_expired", kind=self.kind, count=len(expired))
        return expired

    def history(self, entity_id: str) -> List[StateTransition]:
        return list(self._history.get(entity_id, ()))

    def count_by_status(self) -> Dict[str, int]:
        return {s.name: len(ids) for s, ids in self._by_status.items() if ids}

    def prune_terminal(self, max_age_sec: float, now: Optional[float] = None) -> int:
        """Drop terminal entities not updated for `max_age_sec`; returns how many."""
        now = self._clock() if now is None else now
        stale = [
            e for e in self._items.values()
            if self.graph.is_terminal(e.status) and now - e.updated_at > max_age_sec
        ]
        for e in stale:
            self._index_remove(e)
            del self._items[e.id]
            self._history.pop(e.id, None)
        return len(stale)

    def get_stats(self) -> Dict[str, Any]:
        return {**self._stats, "total": len(self._items), "by_status": self.count_by_status()}

    def _replace(self, current: E, **attributes: Any) -> E:
        updated = replace(current, updated_at=self._clock(), **attributes)
        self._index_remove(current)
        self._items[current.id] = updated
        self._index_add(updated)
        return updated

    def _record(
        self, entity_id: str, old: Enum, new: Enum, reason: Optional[str], via: Optional[str]
    ) -> None:
        self._stats["transitions"] += 1
        self._history.setdefault(entity_id, deque(maxlen=self._max_history)).append(
            StateTransition(
                from_status=old,
                to_status=new,
                timestamp_ms=int(self._clock() * 1000),
                reason=reason,
                via=via,
            )
        )
        self._log_event(
            "status_transition",
            level="debug",
            kind=self.kind,
            id=entity_id,
            from_status=old.name,
            to_status=new.name,
            reason=reason,
        )

    def _index_add(self, entity: E) -> None:
        self._by_status[entity.status].add(entity.id)
        for name, fn in self._index_fns.items():
            key = fn(entity)
            if key is not None:
                self._indexes[name][_norm(key)].add(entity.id)

    def _index_remove(self, entity: E) -> None:
        self._by_status[entity.status].discard(entity.id)
        for name, fn in self._index_fns.items():
            key = fn(entity)
            if key is None:
                continue
            bucket = self._indexes[name].get(_norm(key))
            if bucket is not None:
                bucket.discard(entity.id)
                if not bucket:
                    del self._indexes[name][_norm(key)]


def _norm(key: Any) -> str:
    """Index keys are case-insensitive (addresses arrive in mixed case)."""
    return str(key).lower()


def _id_order(entity_id: str):
    prefix, _, tail = entity_id.rpartition("-")
    return (prefix, int(tail)) if tail.isdigit() else (entity_id, 0)
