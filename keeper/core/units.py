"""
Fixed-point helpers for ledger units.

Prices travel on the ledger with 8 decimals, USDC amounts with 6. Keeper-side
evaluation works on floats; anything that leaves the process goes through
these helpers so rounding is done once, with Decimal, half-up.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

PRICE_DECIMALS = 8
USDC_DECIMALS = 6


def to_units(value: float | str | Decimal, decimals: int) -> int:
    quant = Decimal(str(value)).quantize(Decimal(1).scaleb(-decimals), rounding=ROUND_HALF_UP)
    return int(quant.scaleb(decimals))


def from_units(value: int, decimals: int) -> float:
    return float(Decimal(value).scaleb(-decimals))


def price_to_units(price: float) -> int:
    return to_units(price, PRICE_DECIMALS)


def price_from_units(units: int) -> float:
    return from_units(units, PRICE_DECIMALS)


def usdc_to_units(amount: float | str) -> int:
    return to_units(amount, USDC_DECIMALS)


def usdc_from_units(units: int) -> float:
    return from_units(units, USDC_DECIMALS)
