import asyncio

import pytest

from keeper.infra.nonce import NonceLeaseExhausted, NonceManager, signer_key


class MockLedgerNonces:
    """Pending nonce source per (venue, address)."""
    def __init__(self, start: int = 10):
        self.pending = start
        self.calls = 0

    async def __call__(self, venue: str, address: str) -> int:
        self.calls += 1
        return self.pending


@pytest.mark.asyncio
async def test_first_lease_syncs_from_ledger():
    """The first lease starts at the ledger's pending nonce."""
    source = MockLedgerNonces(start=42)
    nonces = NonceManager(source)
    async with nonces.reserve("base", "0xKeeper", 3) as lease:
        assert [lease.next(), lease.next(), lease.next()] == [42, 43, 44]
    assert nonces.peek("base", "0xkeeper") == 45
    assert source.calls == 1
    await nonces.close()


@pytest.mark.asyncio
async def test_unused_numbers_are_returned():
    """A lease that used 1 of 3 numbers leaves no gap."""
    nonces = NonceManager(MockLedgerNonces(start=0))
    async with nonces.reserve("base", "0xk", 3) as lease:
        lease.next()
    async with nonces.reserve("base", "0xk", 2) as lease:
        assert lease.next() == 1
    await nonces.close()


@pytest.mark.asyncio
async def test_leases_never_interleave():
    """Two plans on one signer get disjoint consecutive blocks, in grant order."""
    nonces = NonceManager(MockLedgerNonces(start=100))
    issued = []

    async def plan(name: str, calls: int):
        async with nonces.reserve("base", "0xk", calls) as lease:
            for _ in range(calls):
                issued.append((name, lease.next()))
                await asyncio.sleep(0.001)

    await asyncio.gather(plan("a", 3), plan("b", 2), plan("c", 1))
    numbers = [n for _, n in issued]
    assert numbers == list(range(100, 106))
    # each plan's numbers are contiguous
    for name in "abc":
        mine = [n for who, n in issued if who == name]
        assert mine == list(range(mine[0], mine[0] + len(mine)))
    await nonces.close()


@pytest.mark.asyncio
async def test_signers_are_independent():
    """Different venues hold separate counters."""
    source = MockLedgerNonces(start=5)
    nonces = NonceManager(source)
    async with nonces.reserve("base", "0xk", 1) as a:
        async with nonces.reserve("flow", "0xk", 1) as b:
            assert a.next() == 5
            assert b.next() == 5
    assert source.calls == 2
    await nonces.close()


@pytest.mark.asyncio
async def test_failure_after_use_forces_resync():
    """An exception after a number was used makes the next lease re-read the ledger."""
    source = MockLedgerNonces(start=7)
    nonces = NonceManager(source)
    with pytest.raises(RuntimeError):
        async with nonces.reserve("base", "0xk", 2) as lease:
            lease.next()
            raise RuntimeError("transport died mid-send")
    source.pending = 8
    async with nonces.reserve("base", "0xk", 1) as lease:
        assert lease.next() == 8
    assert source.calls == 2
    await nonces.close()


@pytest.mark.asyncio
async def test_failure_before_use_keeps_counter():
    """Nothing sent means nothing ambiguous: no resync."""
    source = MockLedgerNonces(start=3)
    nonces = NonceManager(source)
    with pytest.raises(ValueError):
        async with nonces.reserve("base", "0xk", 2):
            raise ValueError("plan rejected")
    async with nonces.reserve("base", "0xk", 1) as lease:
        assert lease.next() == 3
    assert source.calls == 1
    await nonces.close()


@pytest.mark.asyncio
async def test_lease_cannot_overdraw():
    """Taking more numbers than reserved raises."""
    nonces = NonceManager(MockLedgerNonces())
    async with nonces.reserve("base", "0xk", 1) as lease:
        lease.next()
        with pytest.raises(NonceLeaseExhausted):
            lease.next()
    await nonces.close()


@pytest.mark.asyncio
async def test_acquire_timeout_does_not_block_signer():
    """A requester that times out does not leave the signer locked."""
    nonces = NonceManager(MockLedgerNonces(start=0))
    held = await nonces.acquire("base", "0xk", 1)
    with pytest.raises(asyncio.TimeoutError):
        await nonces.acquire("base", "0xk", 1, timeout=0.01)
    held.next()
    held.release()
    lease = await nonces.acquire("base", "0xk", 1, timeout=1)
    assert lease.next() == 1
    lease.release()
    await nonces.close()


@pytest.mark.asyncio
async def test_invalidate_triggers_resync():
    """invalidate() drops the local counter."""
    source = MockLedgerNonces(start=1)
    nonces = NonceManager(source)
    async with nonces.reserve("base", "0xk", 1) as lease:
        lease.next()
    await asyncio.sleep(0.01)
    nonces.invalidate("base", "0xk")
    assert nonces.peek("base", "0xk") is None
    source.pending = 50
    async with nonces.reserve("base", "0xk", 1) as lease:
        assert lease.next() == 50
    stats = nonces.get_stats()[signer_key("base", "0xk")]
    assert stats["leases_granted"] == 2
    await nonces.close()


@pytest.mark.asyncio
async def test_sync_failure_propagates():
    """A ledger error while syncing reaches the requester."""

    async def broken(venue, address):
        raise ConnectionError("rpc down")

    nonces = NonceManager(broken)
    with pytest.raises(ConnectionError):
        await nonces.acquire("base", "0xk", 1, timeout=1)
    await nonces.close()
