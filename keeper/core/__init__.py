"""
Core utilities package.

Typed errors, JSON helpers and ledger unit conversion shared by every layer.
"""

from keeper.core.errors import (
    CallReverted,
    EntityNotFound,
    IllegalTransition,
    KeeperError,
    ReceiptUnconfirmed,
    SettlementPartialFailure,
    StaleDataError,
    TransportError,
    TriggerRace,
    ValidationError,
)
from keeper.core.units import (
    PRICE_DECIMALS,
    USDC_DECIMALS,
    price_from_units,
    price_to_units,
    usdc_from_units,
    usdc_to_units,
)

__all__ = [
    "CallReverted",
    "EntityNotFound",
    "IllegalTransition",
    "KeeperError",
    "ReceiptUnconfirmed",
    "SettlementPartialFailure",
    "StaleDataError",
    "TransportError",
    "TriggerRace",
    "ValidationError",
    "PRICE_DECIMALS",
    "USDC_DECIMALS",
    "price_from_units",
    "price_to_units",
    "usdc_from_units",
    "usdc_to_units",
]
