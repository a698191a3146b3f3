"""
Market data package: latest-price cache and the Pyth price feed.
"""

from keeper.market_data.price_cache import PriceCache, PriceSource, PriceSubscription, PriceTick
from keeper.market_data.price_feed import (
    FeedState,
    PythPriceFeed,
    parse_price_message,
    parse_rest_update,
)

__all__ = [
    "PriceCache",
    "PriceSource",
    "PriceSubscription",
    "PriceTick",
    "FeedState",
    "PythPriceFeed",
    "parse_price_message",
    "parse_rest_update",
]
