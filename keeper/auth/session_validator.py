"""
Order signature and session-key validation.

Orders are signed EIP-191 (personal_sign) over

    keccak(packed(address trader, string symbol, bool isLong,
                  uint256 collateral, uint256 leverage, uint256 nonce,
                  address targetContract))

either by the trader directly, or by a session key the trader authorized by
signing

    keccak(packed("Authorize session key ", address delegate,
                  " for Tethra Tap-to-Trade until ", uint256 expirySeconds))

Both checks fail closed: every failure, including malformed input, comes back
as ValidationResult(valid=False, reason=...). Nothing is raised.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from eth_account import Account
from eth_account.messages import encode_defunct
from web3 import Web3

from keeper.store.models import Order, SessionKey

log = logging.getLogger("keeper")

AUTH_PREFIX = "Authorize session key "
AUTH_SUFFIX = " for Tethra Tap-to-Trade until "

SESSION_EXPIRED = "Session expired"
SESSION_NOT_AUTHORIZED = "Session not authorized by trader"
INVALID_SESSION_AUTH = "Invalid session authorization signature"
NOT_FROM_SESSION_KEY = "Order signature not from session key"
INVALID_ORDER_SIGNATURE = "Invalid order signature"
WRONG_CONTRACT = "Order signed for a different contract"


@dataclass(frozen=True)
class OrderPayload:
    trader: str
    symbol: str
    is_long: bool
    collateral: int
    leverage: int
    nonce: int
    target_contract: str

    @classmethod
    def from_order(cls, order: Order, target_contract: str) -> "OrderPayload":
        return cls(
            trader=order.owner,
            symbol=order.symbol,
            is_long=order.side.is_long,
            collateral=int(order.collateral),
            leverage=int(order.leverage),
            nonce=int(order.nonce),
            target_contract=target_contract,
        )

    def for_contract(self, target_contract: str) -> "OrderPayload":
        return OrderPayload(
            self.trader, self.symbol, self.is_long, self.collateral, self.leverage, self.nonce, target_contract
        )


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    reason: Optional[str] = None
    signer: Optional[str] = None

    @classmethod
    def ok(cls, signer: str) -> "ValidationResult":
        return cls(True, None, signer)

    @classmethod
    def reject(cls, reason: str) -> "ValidationResult":
        return cls(False, reason)


def order_message_hash(payload: OrderPayload) -> bytes:
    return Web3.solidity_keccak(
        ["address", "string", "bool", "uint256", "uint256", "uint256", "address"],
        [
            Web3.to_checksum_address(payload.trader),
            payload.symbol,
            payload.is_long,
            payload.collateral,
            payload.leverage,
            payload.nonce,
            Web3.to_checksum_address(payload.target_contract),
        ],
    )


def session_auth_hash(delegate: str, expires_at_ms: int) -> bytes:
    return Web3.solidity_keccak(
        ["string", "address", "string", "uint256"],
        [AUTH_PREFIX, Web3.to_checksum_address(delegate), AUTH_SUFFIX, expires_at_ms // 1000],
    )


def recover_signer(message_hash: bytes, signature: str) -> str:
    """EIP-191 recovery over the raw 32-byte hash."""
    return Account.recover_message(encode_defunct(primitive=message_hash), signature=signature)


def _same(a: str, b: str) -> bool:
    return a.lower() == b.lower()


class SessionAuthValidator:
    """
    Args:
        known_contracts: every executor address across venues; used to tell a
            signature for another contract apart from a plain bad signature
        clock_ms: current time in epoch milliseconds
    """

    def __init__(
        self,
        known_contracts: Iterable[str] = (),
        clock_ms: Optional[Callable[[], int]] = None,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self._known = [c for c in known_contracts if c]
        self._clock_ms = clock_ms or (lambda: int(time.time() * 1000))
        self._log_event = log_event or self._default_log

    def _default_log(self, event: str, level: str = "info", **kwargs) -> None:
        getattr(log, level)(json.dumps({"event": event, **kwargs}, default=str))

    def validate_direct(self, owner: str, payload: OrderPayload, signature: str) -> ValidationResult:
        try:
            if not _same(payload.trader, owner):
                return self._reject(INVALID_ORDER_SIGNATURE, owner=owner, trader=payload.trader)
            signer = recover_signer(order_message_hash(payload), signature)
            if _same(signer, owner):
                return ValidationResult.ok(signer)
            if self._signed_for_other_contract(payload, signature, owner):
                return self._reject(WRONG_CONTRACT, owner=owner, target=payload.target_contract)
            return self._reject(INVALID_ORDER_SIGNATURE, owner=owner, recovered=signer)
        except Exception as exc:
            return self._reject(INVALID_ORDER_SIGNATURE, owner=owner, error=str(exc))

    def validate_delegated(
        self,
        owner: str,
        payload: OrderPayload,
        signature: str,
        session_key: SessionKey,
        now_ms: Optional[int] = None,
    ) -> ValidationResult:
        """Expiry, owner match, owner's authorization, then the delegate's order signature."""
        try:
            now_ms = self._clock_ms() if now_ms is None else now_ms
            if session_key.expires_at_ms <= now_ms:
                return self._reject(SESSION_EXPIRED, owner=owner, delegate=session_key.delegate)
            if not _same(session_key.authorized_by, owner) or not _same(payload.trader, owner):
                return self._reject(SESSION_NOT_AUTHORIZED, owner=owner, authorized_by=session_key.authorized_by)

            auth_signer = recover_signer(
                session_auth_hash(session_key.delegate, session_key.expires_at_ms), session_key.auth_signature
            )
            if not _same(auth_signer, owner):
                return self._reject(INVALID_SESSION_AUTH, owner=owner, recovered=auth_signer)

            signer = recover_signer(order_message_hash(payload), signature)
            if _same(signer, session_key.delegate):
                return ValidationResult.ok(signer)
            if self._signed_for_other_contract(payload, signature, session_key.delegate):
                return self._reject(WRONG_CONTRACT, owner=owner, target=payload.target_contract)
            return self._reject(NOT_FROM_SESSION_KEY, owner=owner, recovered=signer, delegate=session_key.delegate)
        except Exception as exc:
            return self._reject(INVALID_SESSION_AUTH, owner=owner, error=str(exc))

    def validate_order(self, order: Order, target_contract: str, now_ms: Optional[int] = None) -> ValidationResult:
        payload = OrderPayload.from_order(order, target_contract)
        if order.session_key is not None:
            return self.validate_delegated(order.owner, payload, order.signature, order.session_key, now_ms)
        return self.validate_direct(order.owner, payload, order.signature)

    def _signed_for_other_contract(self, payload: OrderPayload, signature: str, expected: str) -> bool:
        for contract in self._known:
            if _same(contract, payload.target_contract):
                continue
            if _same(recover_signer(order_message_hash(payload.for_contract(contract)), signature), expected):
                return True
        return False

    def _reject(self, reason: str, **context) -> ValidationResult:
        self._log_event("order_auth_rejected", level="warning", reason=reason, **context)
        return ValidationResult.reject(reason)
