"""
Typed errors for the keeper.

Taxonomy:
- ValidationError: malformed request or failed signature/session check (never retried)
- StaleDataError: price older than the staleness bound (skip, re-evaluate next tick)
- TriggerRace: trigger no longer holds or entity already claimed (skip, no mutation)
- SettlementPartialFailure: a plan call failed after an earlier call finalized
- TransportError: ledger or price feed unreachable (retried with backoff)
- ReceiptUnconfirmed: a submitted call with no receipt; held for the operator, never re-fired

Loops catch everything below KeeperError per entity so one bad entity never
stalls a scan. Startup errors (missing keys) are plain RuntimeError and abort.
"""

from __future__ import annotations

from typing import Any, List, Optional


class KeeperError(Exception):
    """Base class for all keeper errors."""


class ValidationError(KeeperError):
    """Request rejected before it reaches a store."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class EntityNotFound(KeeperError):
    def __init__(self, kind: str, entity_id: str) -> None:
        super().__init__(f"{kind} not found: {entity_id}")
        self.kind = kind
        self.entity_id = entity_id


class IllegalTransition(KeeperError):
    """Status change not allowed by the entity's graph."""

    def __init__(self, kind: str, entity_id: str, from_status: Any, to_status: Any) -> None:
        super().__init__(
            f"{kind} {entity_id}: illegal transition {_name(from_status)} -> {_name(to_status)}"
        )
        self.kind = kind
        self.entity_id = entity_id
        self.from_status = from_status
        self.to_status = to_status


class StaleDataError(KeeperError):
    def __init__(self, symbol: str, age_sec: Optional[float], bound_sec: float) -> None:
        age = "missing" if age_sec is None else f"{age_sec:.1f}s"
        super().__init__(f"price for {symbol} is stale ({age} > {bound_sec:.0f}s)")
        self.symbol = symbol
        self.age_sec = age_sec
        self.bound_sec = bound_sec


class TriggerRace(KeeperError):
    """Trigger condition gone or entity claimed by someone else before settlement."""


class TransportError(KeeperError):
    """Ledger or feed collaborator unreachable."""


class ReceiptUnconfirmed(TransportError):
    """A call was accepted by the node but its receipt never arrived; it may still land."""

    def __init__(self, label: str, tx_hash: str, reason: str) -> None:
        super().__init__(f"{label} unconfirmed ({tx_hash}): {reason}")
        self.label = label
        self.tx_hash = tx_hash
        self.reason = reason


class CallReverted(KeeperError):
    """A submitted ledger call finalized with a failed receipt."""

    def __init__(self, label: str, tx_hash: str, reason: Optional[str] = None) -> None:
        super().__init__(f"{label} reverted ({tx_hash}): {reason or 'no reason'}")
        self.label = label
        self.tx_hash = tx_hash
        self.reason = reason


class SettlementPartialFailure(KeeperError):
    """Some plan calls finalized before one failed; operator action required."""

    def __init__(
        self,
        entity_id: str,
        finalized: List[str],
        failed_call: str,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(
            f"settlement of {entity_id} partially applied: finalized={finalized} failed={failed_call}"
        )
        self.entity_id = entity_id
        self.finalized = finalized
        self.failed_call = failed_call
        self.cause = cause


def _name(status: Any) -> str:
    return getattr(status, "name", str(status))
