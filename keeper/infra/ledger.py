"""
Ledger egress: call types and the async web3 client used for settlement.

A LedgerCall is an already-encoded contract call; the sequence number is
stamped on it just before submission from a NonceLease. `submit()` returns
once the node has accepted the signed transaction, `wait_for_receipt()`
once it is final (mined).
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
import time
from dataclasses import dataclass, replace
from typing import Any, Optional, Sequence, Tuple

import aiohttp
from eth_abi import encode
from web3 import AsyncWeb3, Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception

from keeper.core.errors import CallReverted, ReceiptUnconfirmed, TransportError

log = logging.getLogger("keeper")

_TRANSPORT_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, ConnectionError, OSError)
# node wording when the same signed transaction is already in its pool
_ALREADY_KNOWN = ("already known", "known transaction")


@dataclass(frozen=True)
class LedgerCall:
    label: str
    target: str
    data: bytes
    value: int = 0
    gas_budget: int = 200_000
    sequence_number: Optional[int] = None

    def with_sequence(self, n: int) -> "LedgerCall":
        return replace(self, sequence_number=n)


@dataclass(frozen=True)
class SubmissionHandle:
    tx_hash: str
    call: LedgerCall
    submitted_at: float


@dataclass(frozen=True)
class LedgerReceipt:
    tx_hash: str
    success: bool
    gas_used: int
    block_number: int
    revert_reason: Optional[str] = None
    # (emitting address, topics as 0x-hex)
    logs: Tuple[Tuple[str, Tuple[str, ...]], ...] = ()


def function_selector(signature: str) -> bytes:
    return Web3.keccak(text=signature)[:4]


def encode_call(signature: str, args: Sequence[Any]) -> bytes:
    """
    ABI-encode a call from its canonical signature.

    encode_call("closePosition(uint256,uint256)", [7, 6_500_000_000_000])
    """
    arg_types = _split_types(signature[signature.index("(") + 1 : signature.rindex(")")])
    return function_selector(signature) + encode(arg_types, list(args))


def _split_types(inner: str) -> list[str]:
    """Split top-level comma separated ABI types, keeping tuples intact."""
    types: list[str] = []
    depth = 0
    current = ""
    for ch in inner:
        if ch == "," and depth == 0:
            types.append(current)
            current = ""
            continue
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        current += ch
    if current:
        types.append(current)
    return types


class LedgerClient:
    """Minimal surface the settlement layer needs from a ledger."""

    venue: str
    address: str

    async def pending_nonce(self, address: str) -> int:
        raise NotImplementedError

    async def submit(self, call: LedgerCall) -> SubmissionHandle:
        raise NotImplementedError

    async def wait_for_receipt(self, handle: SubmissionHandle, timeout: float) -> LedgerReceipt:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class Web3Ledger(LedgerClient):
    """
    Async JSON-RPC ledger client signing with a local eth_account key.

    Transport failures (connection reset, timeout) are retried with
    exponential backoff plus jitter, then surfaced as TransportError. Node
    rejections (bad nonce, revert on submission) are CallReverted and are
    never retried here.
    """

    def __init__(
        self,
        venue: str,
        rpc_url: str,
        chain_id: int,
        account,
        request_timeout: float = 10.0,
        retries: int = 2,
        w3: Optional[AsyncWeb3] = None,
    ) -> None:
        self.venue = venue
        self.chain_id = chain_id
        self._account = account
        self.address = account.address
        self._retries = retries
        self._w3 = w3 or AsyncWeb3(
            AsyncWeb3.AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout})
        )

    async def pending_nonce(self, address: str) -> int:
        return await self._with_retry(
            "get_transaction_count",
            lambda: self._w3.eth.get_transaction_count(Web3.to_checksum_address(address), "pending"),
        )

    async def submit(self, call: LedgerCall) -> SubmissionHandle:
        if call.sequence_number is None:
            raise ValueError(f"{call.label}: sequence number not assigned")
        gas_price = await self._with_retry("gas_price", lambda: self._w3.eth.gas_price)
        tx = {
            "to": Web3.to_checksum_address(call.target),
            "data": call.data,
            "value": call.value,
            "gas": call.gas_budget,
            "gasPrice": gas_price,
            "nonce": call.sequence_number,
            "chainId": self.chain_id,
        }
        signed = self._account.sign_transaction(tx)
        try:
            tx_hash = await self._with_retry(
                "send_raw_transaction",
                lambda: self._w3.eth.send_raw_transaction(signed.raw_transaction),
            )
        except (ContractLogicError, Web3Exception, ValueError) as exc:
            if not any(marker in str(exc).lower() for marker in _ALREADY_KNOWN):
                raise CallReverted(call.label, "", str(exc)) from exc
            # a retried send whose first attempt did reach the node
            tx_hash = signed.hash
            log.info(json.dumps({"event": "ledger_tx_already_known", "venue": self.venue, "call": call.label}))
        return SubmissionHandle(tx_hash=Web3.to_hex(tx_hash), call=call, submitted_at=time.time())

    async def wait_for_receipt(self, handle: SubmissionHandle, timeout: float) -> LedgerReceipt:
        try:
            receipt = await self._w3.eth.wait_for_transaction_receipt(
                handle.tx_hash, timeout=timeout, poll_latency=0.5
            )
        except TimeExhausted as exc:
            raise ReceiptUnconfirmed(handle.call.label, handle.tx_hash, f"no receipt after {timeout}s") from exc
        except _TRANSPORT_ERRORS as exc:
            raise ReceiptUnconfirmed(handle.call.label, handle.tx_hash, f"receipt poll failed: {exc}") from exc

        success = receipt["status"] == 1
        reason = None
        if not success:
            reason = await self._revert_reason(handle.call, receipt["blockNumber"])
        return LedgerReceipt(
            tx_hash=handle.tx_hash,
            success=success,
            gas_used=int(receipt["gasUsed"]),
            block_number=int(receipt["blockNumber"]),
            revert_reason=reason,
            logs=tuple(
                (str(entry["address"]), tuple(Web3.to_hex(t) for t in entry["topics"]))
                for entry in receipt.get("logs", [])
            ),
        )

    async def close(self) -> None:
        provider = self._w3.provider
        disconnect = getattr(provider, "disconnect", None)
        if disconnect is not None:
            await disconnect()

    async def _revert_reason(self, call: LedgerCall, block_number: int) -> Optional[str]:
        """Replay the call at its block to recover the revert message."""
        try:
            await self._w3.eth.call(
                {
                    "from": self.address,
                    "to": Web3.to_checksum_address(call.target),
                    "data": call.data,
                    "value": call.value,
                },
                block_identifier=block_number,
            )
        except ContractLogicError as exc:
            return str(exc)
        except (Web3Exception, ValueError, *_TRANSPORT_ERRORS) as exc:
            log.warning(json.dumps({"event": "revert_reason_unavailable", "venue": self.venue, "call": call.label, "error": str(exc)}))
        return None

    async def _with_retry(self, what: str, fn):
        backoff = 0.2
        for attempt in range(self._retries + 1):
            try:
                return await fn()
            except _TRANSPORT_ERRORS as exc:
                if attempt >= self._retries:
                    raise TransportError(f"{self.venue} {what} failed: {exc}") from exc
                log.warning(
                    json.dumps(
                        {
                            "event": "ledger_retry",
                            "venue": self.venue,
                            "op": what,
                            "attempt": attempt + 1,
                            "error": str(exc),
                        }
                    )
                )
                await asyncio.sleep(backoff + random.uniform(0, backoff * 0.5))
                backoff *= 2
