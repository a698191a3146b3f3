"""
Per-signer nonce manager.

Every (venue, signer) pair gets one owning task. Requesters ask that task for
a lease covering N consecutive sequence numbers; the next requester for the
same signer is parked until the current lease is released, so settlement
plans from all five loops can never interleave their numbers.

On release the holder reports how many numbers it actually put on the wire.
Unused numbers go back to the pool (the next lease starts right after the
last used one) so the ledger never sees a gap. If a submission outcome is
unknown (transport error mid-send) the lease is flagged and the owner task
re-reads the pending nonce from the ledger before granting the next lease.
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional

from keeper.core.errors import KeeperError

log = logging.getLogger("keeper")

NonceFetcher = Callable[[str, str], Awaitable[int]]


def signer_key(venue: str, address: str) -> str:
    return f"{venue}:{address.lower()}"


class NonceLeaseExhausted(KeeperError):
    """More numbers taken from a lease than were reserved."""


class NonceLease:
    """
    Exclusive hold on a block of consecutive sequence numbers for one signer.

    `next()` hands out numbers in order. `mark_ambiguous()` records that a
    submission may or may not have reached the ledger; the manager then
    resyncs from the ledger instead of trusting the local count.
    """

    def __init__(self, key: str, start: int, count: int) -> None:
        self.key = key
        self.start = start
        self.count = count
        self.used = 0
        self.ambiguous = False
        self.released = False
        self._done = asyncio.Event()

    @property
    def numbers(self) -> List[int]:
        return list(range(self.start, self.start + self.count))

    def next(self) -> int:
        if self.released:
            raise NonceLeaseExhausted(f"lease {self.key}@{self.start} already released")
        if self.used >= self.count:
            raise NonceLeaseExhausted(
                f"lease {self.key}@{self.start} exhausted ({self.count} reserved)"
            )
        n = self.start + self.used
        self.used += 1
        return n

    def mark_ambiguous(self) -> None:
        self.ambiguous = True

    def release(self) -> None:
        if self.released:
            return
        self.released = True
        self._done.set()

    async def wait_released(self) -> None:
        await self._done.wait()


@dataclass
class _LeaseRequest:
    count: int
    future: asyncio.Future


@dataclass
class _SignerState:
    venue: str
    address: str
    inbox: asyncio.Queue = field(default_factory=asyncio.Queue)
    task: Optional[asyncio.Task] = None
    next_nonce: Optional[int] = None
    current: Optional[NonceLease] = None
    leases_granted: int = 0
    resyncs: int = 0


class NonceManager:
    """
    Hands out sequence-number leases, one owning task per signer.

    Args:
        fetch_pending_nonce: async (venue, address) -> ledger's pending
            transaction count; used on first use and after ambiguous leases
        log_event: optional structured logger callback
    """

    def __init__(
        self,
        fetch_pending_nonce: NonceFetcher,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self._fetch = fetch_pending_nonce
        self._log_event = log_event or self._default_log
        self._signers: Dict[str, _SignerState] = {}
        self._closed = False

    def _default_log(self, event: str, level: str = "info", **kwargs) -> None:
        getattr(log, level)(json.dumps({"event": event, **kwargs}))

    async def acquire(
        self,
        venue: str,
        address: str,
        count: int,
        timeout: Optional[float] = None,
    ) -> NonceLease:
        """Wait for exclusive use of `count` consecutive numbers for this signer."""
        if count <= 0:
            raise ValueError("count must be > 0")
        if self._closed:
            raise RuntimeError("NonceManager is closed")
        state = self._state_for(venue, address)
        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        state.inbox.put_nowait(_LeaseRequest(count=count, future=fut))
        try:
            return await asyncio.wait_for(asyncio.shield(fut), timeout=timeout)
        except (asyncio.TimeoutError, asyncio.CancelledError):
            # a grant that lands after we gave up must not hold the signer
            if fut.done() and not fut.cancelled() and fut.exception() is None:
                fut.result().release()
            else:
                fut.cancel()
            raise

    def release(self, lease: NonceLease) -> None:
        lease.release()

    @asynccontextmanager
    async def reserve(
        self, venue: str, address: str, count: int, timeout: Optional[float] = None
    ) -> AsyncIterator[NonceLease]:
        """
        Usage:
            async with nonces.reserve("base", keeper, 3) as lease:
                await ledger.submit(call.with_sequence(lease.next()))
        """
        lease = await self.acquire(venue, address, count, timeout=timeout)
        try:
            yield lease
        except BaseException:
            if lease.used:
                lease.mark_ambiguous()
            raise
        finally:
            lease.release()

    def peek(self, venue: str, address: str) -> Optional[int]:
        state = self._signers.get(signer_key(venue, address))
        return state.next_nonce if state else None

    def invalidate(self, venue: str, address: str) -> None:
        """Force a ledger resync before the next lease (e.g. after an external tx)."""
        state = self._signers.get(signer_key(venue, address))
        if state is not None:
            state.next_nonce = None

    def get_stats(self) -> Dict[str, dict]:
        return {
            key: {
                "next_nonce": s.next_nonce,
                "leased": s.current is not None and not s.current.released,
                "waiting": s.inbox.qsize(),
                "leases_granted": s.leases_granted,
                "resyncs": s.resyncs,
            }
            for key, s in self._signers.items()
        }

    async def close(self) -> None:
        self._closed = True
        tasks = [s.task for s in self._signers.values() if s.task is not None]
        for t in tasks:
            t.cancel()
        for t in tasks:
            try:
                await t
            except asyncio.CancelledError:
                pass

    def _state_for(self, venue: str, address: str) -> _SignerState:
        key = signer_key(venue, address)
        state = self._signers.get(key)
        if state is None:
            state = _SignerState(venue=venue, address=address)
            self._signers[key] = state
        if state.task is None or state.task.done():
            state.task = asyncio.create_task(self._run(key, state), name=f"nonce:{key}")
        return state

    async def _run(self, key: str, state: _SignerState) -> None:
        while True:
            req: _LeaseRequest = await state.inbox.get()
            if req.future.done():
                # requester gave up (timeout/cancel) before the grant
                continue
            if state.next_nonce is None:
                try:
                    state.next_nonce = await self._fetch(state.venue, state.address)
                except Exception as exc:
                    state.resyncs += 1
                    self._log_event("nonce_sync_failed", level="warning", signer=key, error=str(exc))
                    if not req.future.done():
                        req.future.set_exception(exc)
                    continue
                state.resyncs += 1
                self._log_event("nonce_synced", signer=key, next_nonce=state.next_nonce)

            lease = NonceLease(key, state.next_nonce, req.count)
            state.current = lease
            state.leases_granted += 1
            req.future.set_result(lease)
            await lease.wait_released()
            state.current = None

            if lease.ambiguous:
                state.next_nonce = None
                self._log_event(
                    "nonce_resync_scheduled",
                    signer=key,
                    lease_start=lease.start,
                    used=lease.used,
                )
            else:
                state.next_nonce = lease.start + lease.used
                if lease.used < lease.count:
                    self._log_event(
                        "nonce_returned",
                        signer=key,
                        returned=lease.count - lease.used,
                        next_nonce=state.next_nonce,
                    )
