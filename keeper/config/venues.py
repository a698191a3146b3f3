"""
Execution venues (ledgers) the keeper settles against.

Each venue has its own RPC endpoint, chain id, nonce space and contract set.
Defaults point at the public testnets; every field can be overridden with
`KP_<VENUE>_<FIELD>`, e.g. `KP_BASE_RPC_URL`.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Dict, Iterable, List


@dataclass(frozen=True)
class VenueConfig:
    name: str
    chain_id: int
    rpc_url: str
    position_manager: str
    treasury_manager: str
    market_executor: str
    limit_executor: str
    tap_to_trade_executor: str
    one_tap_profit: str

    def executor_addresses(self) -> List[str]:
        """Contracts a trader may address an order signature to."""
        return [self.tap_to_trade_executor, self.limit_executor, self.market_executor]


_DEFAULTS: Dict[str, Dict[str, object]] = {
    "base": {
        "chain_id": 84532,
        "rpc_url": "https://sepolia.base.org",
        "position_manager": "0x03Fd49Dd2Cc23AdC08De0d4Fcb3b4EEe1c8F8d66",
        "treasury_manager": "0xCb5A11a2913763a01FA97CBDE67BCAB4Bf234D97",
        "market_executor": "0x841f70066ba831650c4D97BD59cc001c890cf6b6",
        "limit_executor": "0xd26CEE69B76bED0D086f6D1D75BB8fC0fE76f7Ed",
        "tap_to_trade_executor": "0x79Cb84cF317235EA5C61Cce662373D982853E8d8",
        "one_tap_profit": "0x5D4c52a7aD4Fb6B43C6B212Db1C1e0A7f9B0f73c",
    },
    "flow": {
        "chain_id": 545,
        "rpc_url": "https://testnet.evm.nodes.onflow.org",
        "position_manager": "0x50951f3AE8e622E007A174e7AE08f25659bCe4B0",
        "treasury_manager": "0xa1c84C31165282C05450b2a86f80999dD263b071",
        "market_executor": "0xCb5A11a2913763a01FA97CBDE67BCAB4Bf234D97",
        "limit_executor": "0x3c4AadE89D4af90666b859DaFB7DDB61C4E58C60",
        "tap_to_trade_executor": "0x2f994B6Ffbe5f943cb1F1932b1CF41d81780A091",
        "one_tap_profit": "0xE47b99032f7a7Efef1917A7CAA81455A3C552d17",
    },
}

SUPPORTED_VENUES = tuple(_DEFAULTS)


def load_venue(name: str) -> VenueConfig:
    key = name.strip().lower()
    if key not in _DEFAULTS:
        raise ValueError(f"Unknown venue: {name}. Supported venues: {', '.join(SUPPORTED_VENUES)}")
    defaults = _DEFAULTS[key]
    prefix = f"KP_{key.upper()}_"
    values = {
        field_name: os.getenv(prefix + field_name.upper()) or default
        for field_name, default in defaults.items()
    }
    values["chain_id"] = int(values["chain_id"])
    return VenueConfig(name=key, **values)


def load_venues(names: Iterable[str]) -> Dict[str, VenueConfig]:
    return {venue.name: venue for venue in (load_venue(n) for n in names if n.strip())}
