"""Per-symbol configuration with optional YAML overrides.

Optional file path via env `KP_SYMBOL_CONFIG`, default `configs/symbols.yaml`.
The file maps symbol -> overrides, e.g.:

    SOL:
      bet_band: 0.05
      staleness_sec: {position: 30}
    ETH:
      bet_band: 5

Unknown symbols in the file are added (a `pyth_price_id` is then required to
stream them).
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

log = logging.getLogger("keeper")

DEFAULT_STALENESS_SEC = 60.0

# Entity kinds a staleness bound can be scoped to.
KIND_POSITION = "position"
KIND_ORDER = "order"
KIND_TAP = "tap"
KIND_BET = "bet"


@dataclass(frozen=True)
class SymbolConfig:
    symbol: str
    pyth_price_id: str
    # Full width of the winning price band for bets; half on each side of target.
    bet_band: float = 10.0
    staleness_sec: Dict[str, float] = field(default_factory=dict)

    def staleness_for(self, kind: Optional[str], default: float) -> float:
        if kind and kind in self.staleness_sec:
            return float(self.staleness_sec[kind])
        return float(self.staleness_sec.get("default", default))


DEFAULT_SYMBOLS: Dict[str, SymbolConfig] = {
    "BTC": SymbolConfig("BTC", "0xe62df6c8b4a85fe1a67db44dc12de5db330f7ac66b72dc658afedf0f4a415b43"),
    "ETH": SymbolConfig("ETH", "0xff61491a931112ddf1bd8147cd1b641375f79f5825126d665480874634fd0ace"),
    "SOL": SymbolConfig("SOL", "0xef0d8b6fda2ceba41da15d4095d1da392a0d2f8ed0c6c7bc0f4cfac8c280b56d", bet_band=0.05),
    "AVAX": SymbolConfig("AVAX", "0x93da3352f9f1d105fdfe4971cfa80e9dd777bfc5d0f683ebb6e1294b92137bb7"),
    "BNB": SymbolConfig("BNB", "0x2f95862b045670cd22bee3114c39763a4a08beeb663b145d283c31d7d1101c4f"),
    "XRP": SymbolConfig("XRP", "0xec5d399846a9209f3fe5881d70aae9268c94339ff9817e8d18ff19fa05eea1c8"),
    "DOGE": SymbolConfig("DOGE", "0xdcef50dd0a4cd2dcc17e45df1676dcb336a11a61c69df7a0299b0150c672d25c"),
    "LINK": SymbolConfig("LINK", "0x8ac0c70fff57e9aefdf5edf44b51d62c2d433653cbb2cf5cc06bb115af04d221"),
}


def load_symbol_overrides(path: str | None = None) -> Dict[str, Dict[str, Any]]:
    if path is None:
        path = os.getenv("KP_SYMBOL_CONFIG", "configs/symbols.yaml")
    p = Path(path)
    if not p.exists():
        return {}
    with p.open("r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh)
    if not isinstance(data, dict):
        return {}
    return {str(k).upper(): v for k, v in data.items() if isinstance(v, dict)}


def load_symbols(path: str | None = None) -> Dict[str, SymbolConfig]:
    """Defaults merged with the YAML overrides."""
    symbols = dict(DEFAULT_SYMBOLS)
    for symbol, overrides in load_symbol_overrides(path).items():
        base = symbols.get(symbol)
        staleness = overrides.get("staleness_sec")
        if isinstance(staleness, (int, float)):
            staleness = {"default": float(staleness)}
        if base is None:
            if not overrides.get("pyth_price_id"):
                log.warning(json.dumps({"event": "symbol_config_skipped", "symbol": symbol, "reason": "missing pyth_price_id"}))
                continue
            base = SymbolConfig(symbol, str(overrides["pyth_price_id"]))
        symbols[symbol] = replace(
            base,
            pyth_price_id=str(overrides.get("pyth_price_id", base.pyth_price_id)),
            bet_band=float(overrides.get("bet_band", base.bet_band)),
            staleness_sec={**base.staleness_sec, **(staleness or {})},
        )
    return symbols


class StalenessPolicy:
    """
    Single source of truth for "how old may a price be before a trigger
    on it is ignored". Bound resolution: symbol+kind, symbol default,
    global kind, global default.
    """

    def __init__(
        self,
        default_sec: float = DEFAULT_STALENESS_SEC,
        per_kind: Optional[Dict[str, float]] = None,
        symbols: Optional[Dict[str, SymbolConfig]] = None,
    ) -> None:
        self.default_sec = default_sec
        self._per_kind = dict(per_kind or {})
        self._symbols = symbols or {}

    def bound_for(self, symbol: str, kind: Optional[str] = None) -> float:
        fallback = self._per_kind.get(kind, self.default_sec) if kind else self.default_sec
        cfg = self._symbols.get(symbol)
        if cfg is None:
            return fallback
        return cfg.staleness_for(kind, fallback)
