"""
Price attestation signer.

Contracts accept a price only with a signature from the configured price
signer over keccak(packed(string symbol, uint256 price8dec, uint256 timestamp)),
EIP-191 prefixed. The timestamp is set `lag_sec` in the past so ledger clocks
that run slightly behind ours do not reject it as "Price in future".
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from eth_account import Account
from eth_account.messages import encode_defunct
from web3 import Web3

from keeper.core.units import price_to_units

log = logging.getLogger("keeper")

SIGNED_PRICE_ABI = "(string,uint256,uint256,bytes)"


@dataclass(frozen=True)
class SignedPrice:
    symbol: str
    price: int  # 8 decimals
    timestamp: int
    signature: bytes

    def as_abi(self) -> Tuple[str, int, int, bytes]:
        return (self.symbol, self.price, self.timestamp, self.signature)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "price": str(self.price),
            "timestamp": self.timestamp,
            "signature": Web3.to_hex(self.signature),
        }


def price_digest(symbol: str, price_units: int, timestamp: int) -> bytes:
    return Web3.solidity_keccak(["string", "uint256", "uint256"], [symbol, price_units, timestamp])


class PriceSigner:
    def __init__(
        self,
        account,
        expected_address: Optional[str] = None,
        lag_sec: int = 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._account = account
        self.address: str = account.address
        self.lag_sec = lag_sec
        self._clock = clock
        self.signed_count = 0
        if expected_address and expected_address.lower() != self.address.lower():
            log.warning(
                json.dumps(
                    {
                        "event": "price_signer_mismatch",
                        "signer": self.address,
                        "expected": expected_address,
                    }
                )
            )

    def sign(self, symbol: str, price: float, timestamp: Optional[int] = None) -> SignedPrice:
        if price <= 0:
            raise ValueError(f"refusing to sign non-positive price for {symbol}: {price}")
        ts = int(self._clock()) - self.lag_sec if timestamp is None else timestamp
        units = price_to_units(price)
        signed = self._account.sign_message(encode_defunct(primitive=price_digest(symbol, units, ts)))
        self.signed_count += 1
        return SignedPrice(symbol=symbol, price=units, timestamp=ts, signature=bytes(signed.signature))

    @staticmethod
    def recover(signed: SignedPrice) -> str:
        digest = price_digest(signed.symbol, signed.price, signed.timestamp)
        return Account.recover_message(encode_defunct(primitive=digest), signature=signed.signature)

    def status(self) -> Dict[str, Any]:
        return {"address": self.address, "lag_sec": self.lag_sec, "signed": self.signed_count}
