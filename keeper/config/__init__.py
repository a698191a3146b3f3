"""
Configuration package.

Environment settings, execution venues and per-symbol overrides.
"""

from keeper.config.config import Settings, env_bool
from keeper.config.symbols import (
    DEFAULT_SYMBOLS,
    StalenessPolicy,
    SymbolConfig,
    load_symbol_overrides,
    load_symbols,
)
from keeper.config.venues import SUPPORTED_VENUES, VenueConfig, load_venue, load_venues

__all__ = [
    "Settings",
    "env_bool",
    "DEFAULT_SYMBOLS",
    "StalenessPolicy",
    "SymbolConfig",
    "load_symbol_overrides",
    "load_symbols",
    "SUPPORTED_VENUES",
    "VenueConfig",
    "load_venue",
    "load_venues",
]
