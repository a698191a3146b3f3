"""
SettlementSequencer: turns a fired trigger into an ordered run of ledger calls.

Sequence for one entity:

1. Claim: optimistic transition to the in-progress status (EXECUTING,
   CLOSING, SETTLING). A second firing on the next tick finds the entity
   non-actionable, so a plan can never be issued twice.
2. Plan: the caller's builder returns the calls (core call, fee transfers,
   refund).
3. Issue: one nonce lease covering the whole plan is taken from the
   per-signer NonceManager, then every call is submitted with the next
   number and its receipt awaited before the next call goes out.
4. Commit: all calls final -> terminal status with tx hashes.
5. Failure:
   - at least one call already final, or a call sent whose receipt never
     came back: PARTIAL_FAILURE, with a SettlementRecord of finalized,
     unconfirmed and remaining calls kept on the entity; CRITICAL alert.
     Nothing is retried or compensated here; the operator settles by hand
     and calls `resolve()`.
   - nothing final: in-memory rollback to the pre-claim status, or FAILED
     once the entity used up `max_attempts`. Tap orders whose signature or
     user nonce was rejected go to NEEDS_RESIGN instead.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from keeper.core.errors import (
    CallReverted,
    IllegalTransition,
    ReceiptUnconfirmed,
    SettlementPartialFailure,
    TransportError,
    TriggerRace,
)
from keeper.execution.calls import SettlementPlan
from keeper.infra.ledger import LedgerCall, LedgerClient, LedgerReceipt
from keeper.infra.nonce import NonceManager
from keeper.store.models import SettlementRecord
from keeper.store.repository import EntityStore
from keeper.store.state_machine import VIA_OPERATOR

log = logging.getLogger("keeper")

SuccessStatus = Union[Enum, Callable[[SettlementPlan], Enum]]
SuccessAttrs = Callable[[SettlementPlan, List[LedgerReceipt]], Dict[str, Any]]

_RESIGN_PATTERN = re.compile(r"nonce|user signature|invalid signature", re.IGNORECASE)


def signature_rejected(exc: BaseException) -> bool:
    """A revert blaming the trader's nonce or signature; a fresh signature can fix it."""
    if not isinstance(exc, CallReverted):
        return False
    reason = exc.reason or ""
    return bool(_RESIGN_PATTERN.search(reason)) and "price" not in reason.lower()


class Outcome(str, Enum):
    SETTLED = "settled"
    PARTIAL_FAILURE = "partial_failure"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"
    NEEDS_RESIGN = "needs_resign"


@dataclass
class SettlementResult:
    entity_id: str
    outcome: Outcome
    entity: Any
    plan: Optional[SettlementPlan] = None
    receipts: List[LedgerReceipt] = field(default_factory=list)
    error: Optional[BaseException] = None
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.SETTLED

    @property
    def tx_hashes(self) -> Tuple[str, ...]:
        return tuple(r.tx_hash for r in self.receipts)


class SettlementSequencer:
    """
    Args:
        ledgers: venue -> LedgerClient (signing as the keeper)
        nonces: shared NonceManager; one per process
        inter_call_delay: optional pause between calls of one plan
        receipt_timeout: max wait for each call's receipt
        max_attempts: claims per entity before a clean failure becomes FAILED
        lease_timeout: max wait for the signer's nonce lease
    """

    def __init__(
        self,
        ledgers: Dict[str, LedgerClient],
        nonces: NonceManager,
        inter_call_delay: float = 0.0,
        receipt_timeout: float = 120.0,
        max_attempts: int = 5,
        lease_timeout: Optional[float] = 60.0,
        breaker=None,
        metrics=None,
        alerts=None,
        log_event: Optional[Callable[..., None]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._ledgers = ledgers
        self._nonces = nonces
        self._inter_call_delay = inter_call_delay
        self._receipt_timeout = receipt_timeout
        self.max_attempts = max_attempts
        self._lease_timeout = lease_timeout
        self._breaker = breaker
        self._metrics = metrics
        self._alerts = alerts
        self._log_event = log_event or self._default_log
        self._sleep = sleep
        self._clock = clock
        self._stats = {outcome.value: 0 for outcome in Outcome}

    def _default_log(self, event: str, level: str = "info", **kwargs) -> None:
        getattr(log, level)(json.dumps({"event": event, **kwargs}, default=str))

    def ledger(self, venue: str) -> LedgerClient:
        try:
            return self._ledgers[venue]
        except KeyError:
            raise ValueError(f"no ledger configured for venue {venue}") from None

    async def settle(
        self,
        store: EntityStore,
        entity_id: str,
        *,
        loop: str,
        in_progress: Enum,
        success_status: SuccessStatus,
        build_plan: Callable[[Any], SettlementPlan],
        success_attrs: Optional[SuccessAttrs] = None,
        needs_resign: Optional[Callable[[BaseException], bool]] = None,
        symbol: Optional[str] = None,
    ) -> SettlementResult:
        """
        Raises:
            TriggerRace: the entity could not be claimed (already in flight or terminal)
        """
        entity = store.require(entity_id)
        try:
            claimed = store.transition(
                entity_id, in_progress, reason=f"{loop}_fired", attempts=entity.attempts + 1
            )
        except IllegalTransition as exc:
            raise TriggerRace(f"{entity_id} not claimable: {exc}") from exc

        started = self._clock()
        try:
            plan = build_plan(claimed)
        except Exception as exc:
            self._log_event("settlement_plan_failed", level="error", loop=loop, id=entity_id, error=str(exc))
            return await self._fail_clean(store, claimed, loop, exc, None, needs_resign, symbol, started)

        self._log_event(
            "settlement_started",
            loop=loop,
            id=entity_id,
            venue=plan.venue,
            calls=list(plan.labels),
            attempt=claimed.attempts,
        )
        finalized, receipts, failed_call, error, unconfirmed = await self._issue(plan, loop)

        if error is None:
            attrs = success_attrs(plan, receipts) if success_attrs else {}
            status = success_status(plan) if callable(success_status) else success_status
            settled = store.transition(
                entity_id,
                status,
                reason=f"{loop}_settled",
                tx_hashes=tuple(r.tx_hash for r in receipts),
                error=None,
                settlement=None,
                **attrs,
            )
            result = self._result(settled, Outcome.SETTLED, loop, started, plan, receipts)
            self._log_event(
                "settlement_complete",
                loop=loop,
                id=entity_id,
                status=status.name,
                tx_hashes=list(result.tx_hashes),
                duration_ms=round(result.duration_ms, 1),
            )
            return result

        # an unconfirmed call may still land, so re-firing could apply it twice
        if finalized or unconfirmed:
            return await self._partial_failure(
                store, claimed, loop, plan, finalized, receipts, failed_call, error, symbol, started, unconfirmed
            )
        return await self._fail_clean(store, claimed, loop, error, plan, needs_resign, symbol, started)

    def resolve(self, store: EntityStore, entity_id: str, status: Enum, note: str = "") -> Any:
        """Operator closes out a PARTIAL_FAILURE entity after settling it by hand."""
        entity = store.transition(entity_id, status, reason=note or "operator_resolved", via=VIA_OPERATOR)
        self._log_event("settlement_resolved", level="warning", id=entity_id, status=status.name, note=note)
        return entity

    def get_stats(self) -> Dict[str, int]:
        return dict(self._stats)

    async def _issue(
        self, plan: SettlementPlan, loop: str
    ) -> Tuple[
        List[Tuple[str, str]], List[LedgerReceipt], Optional[str], Optional[BaseException], Optional[Tuple[str, str]]
    ]:
        finalized: List[Tuple[str, str]] = []
        receipts: List[LedgerReceipt] = []
        current: Optional[str] = None
        try:
            ledger = self.ledger(plan.venue)
            async with self._nonces.reserve(
                plan.venue, ledger.address, len(plan.calls), timeout=self._lease_timeout
            ) as lease:
                for i, call in enumerate(plan.calls):
                    current = call.label
                    receipt = await self._submit_and_wait(ledger, call.with_sequence(lease.next()), plan, loop)
                    finalized.append((call.label, receipt.tx_hash))
                    receipts.append(receipt)
                    if self._inter_call_delay > 0 and i < len(plan.calls) - 1:
                        await self._sleep(self._inter_call_delay)
        except Exception as exc:
            unconfirmed = (exc.label, exc.tx_hash) if isinstance(exc, ReceiptUnconfirmed) else None
            failed = current or (plan.calls[0].label if plan.calls else None)
            return finalized, receipts, failed, exc, unconfirmed
        return finalized, receipts, None, None, None

    async def _submit_and_wait(
        self, ledger: LedgerClient, call: LedgerCall, plan: SettlementPlan, loop: str
    ) -> LedgerReceipt:
        t0 = self._clock()
        try:
            handle = await ledger.submit(call)
            self._log_event(
                "ledger_call_submitted",
                loop=loop,
                id=plan.entity_id,
                call=call.label,
                nonce=call.sequence_number,
                tx_hash=handle.tx_hash,
            )
        except TransportError as exc:
            self._transport_failure(plan, call, exc)
            raise
        except CallReverted:
            self._count_call(plan.venue, call.label, "rejected")
            raise
        try:
            receipt = await ledger.wait_for_receipt(handle, self._receipt_timeout)
        except TransportError as exc:
            self._transport_failure(plan, call, exc)
            if isinstance(exc, ReceiptUnconfirmed):
                raise
            raise ReceiptUnconfirmed(call.label, handle.tx_hash, str(exc)) from exc
        if not receipt.success:
            self._count_call(plan.venue, call.label, "reverted")
            raise CallReverted(call.label, receipt.tx_hash, receipt.revert_reason)

        latency_ms = (self._clock() - t0) * 1000
        self._count_call(plan.venue, call.label, "ok")
        if self._metrics:
            self._metrics.ledger_call_latency_ms.labels(venue=plan.venue, label=call.label).observe(latency_ms)
        if self._breaker is not None:
            self._breaker.record_success()
        self._log_event(
            "ledger_call_finalized",
            loop=loop,
            id=plan.entity_id,
            call=call.label,
            tx_hash=receipt.tx_hash,
            gas_used=receipt.gas_used,
            block=receipt.block_number,
        )
        return receipt

    def _transport_failure(self, plan: SettlementPlan, call: LedgerCall, exc: TransportError) -> None:
        self._count_call(plan.venue, call.label, "transport_error")
        if self._breaker is not None:
            self._breaker.record_error(f"{plan.venue}:{call.label}", exc)

    async def _partial_failure(
        self,
        store: EntityStore,
        claimed: Any,
        loop: str,
        plan: SettlementPlan,
        finalized: List[Tuple[str, str]],
        receipts: List[LedgerReceipt],
        failed_call: Optional[str],
        error: BaseException,
        symbol: Optional[str],
        started: float,
        unconfirmed: Optional[Tuple[str, str]] = None,
    ) -> SettlementResult:
        done = {label for label, _ in finalized}
        remaining = tuple(label for label in plan.labels if label not in done)
        record = SettlementRecord(
            finalized=tuple(finalized),
            remaining=remaining,
            failed_call=failed_call,
            error=str(error),
            unconfirmed=unconfirmed,
        )
        status_enum = type(claimed.status)
        entity = store.transition(
            claimed.id,
            status_enum.PARTIAL_FAILURE,
            reason="receipt_unconfirmed" if unconfirmed else "call_failed_after_finalized",
            tx_hashes=tuple(tx for _, tx in finalized),
            settlement=record,
            error=str(error),
        )
        partial = SettlementPartialFailure(claimed.id, [label for label, _ in finalized], failed_call or "", error)
        self._log_event(
            "settlement_partial_failure",
            level="critical",
            loop=loop,
            id=claimed.id,
            venue=plan.venue,
            **record.to_dict(),
        )
        if self._metrics:
            self._metrics.partial_failures.labels(loop=loop).inc()
        if self._alerts is not None:
            extra = {"unconfirmed_tx": unconfirmed[1]} if unconfirmed else {}
            await self._alerts.alert_partial_failure(
                claimed.id,
                [label for label, _ in finalized],
                failed_call or "",
                symbol=symbol,
                venue=plan.venue,
                error=str(error),
                **extra,
            )
        return self._result(entity, Outcome.PARTIAL_FAILURE, loop, started, plan, receipts, partial)

    async def _fail_clean(
        self,
        store: EntityStore,
        claimed: Any,
        loop: str,
        error: BaseException,
        plan: Optional[SettlementPlan],
        needs_resign: Optional[Callable[[BaseException], bool]],
        symbol: Optional[str],
        started: float,
    ) -> SettlementResult:
        """Nothing reached the ledger: re-sign, give up, or put the entity back."""
        status_enum = type(claimed.status)
        reason = str(error)
        if needs_resign is not None and needs_resign(error):
            entity = store.transition(claimed.id, status_enum.NEEDS_RESIGN, reason="signature_rejected", error=reason)
            outcome = Outcome.NEEDS_RESIGN
            self._log_event("settlement_needs_resign", level="warning", loop=loop, id=claimed.id, error=reason)
        elif claimed.attempts >= self.max_attempts:
            entity = store.transition(claimed.id, status_enum.FAILED, reason="max_attempts", error=reason)
            outcome = Outcome.FAILED
            self._log_event(
                "settlement_failed", level="error", loop=loop, id=claimed.id, attempts=claimed.attempts, error=reason
            )
            if self._alerts is not None:
                await self._alerts.alert_settlement_failed(
                    claimed.id, reason, symbol=symbol, attempts=claimed.attempts
                )
        else:
            entity = store.rollback(claimed.id, reason="no_call_finalized", error=reason)
            outcome = Outcome.ROLLED_BACK
            self._log_event(
                "settlement_rolled_back",
                level="warning",
                loop=loop,
                id=claimed.id,
                attempts=claimed.attempts,
                error_type=type(error).__name__,
                error=reason,
            )
        return self._result(entity, outcome, loop, started, plan, [], error)

    def _result(
        self,
        entity: Any,
        outcome: Outcome,
        loop: str,
        started: float,
        plan: Optional[SettlementPlan],
        receipts: List[LedgerReceipt],
        error: Optional[BaseException] = None,
    ) -> SettlementResult:
        duration_ms = (self._clock() - started) * 1000
        self._stats[outcome.value] += 1
        if self._metrics:
            self._metrics.settlements.labels(loop=loop, outcome=outcome.value).inc()
            self._metrics.settlement_duration_ms.labels(loop=loop).observe(duration_ms)
        return SettlementResult(
            entity_id=entity.id,
            outcome=outcome,
            entity=entity,
            plan=plan,
            receipts=list(receipts),
            error=error,
            duration_ms=duration_ms,
        )

    def _count_call(self, venue: str, label: str, result: str) -> None:
        if self._metrics:
            self._metrics.ledger_calls.labels(venue=venue, label=label, result=result).inc()
