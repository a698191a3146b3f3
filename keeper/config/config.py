"""
Environment-driven configuration with validation.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Dict, List

from dotenv import load_dotenv

from keeper.config.symbols import (
    KIND_BET,
    KIND_ORDER,
    KIND_POSITION,
    KIND_TAP,
    StalenessPolicy,
    SymbolConfig,
    load_symbols,
)
from keeper.config.venues import VenueConfig, load_venues

load_dotenv()


def env_bool(key: str, default: bool) -> bool:
    val = os.getenv(key)
    if val is None:
        return default
    return val.lower() in {"1", "true", "yes", "y"}


@dataclass(frozen=True)
class Settings:
    venues: List[str]
    keeper_private_key: str | None
    price_signer_private_key: str | None
    price_signer_address: str | None
    # Price ingress
    pyth_ws_url: str
    hermes_rest_url: str
    http_timeout: float
    feed_max_reconnect_attempts: int
    feed_reconnect_base_sec: float
    feed_max_reconnect_delay_sec: float
    fallback_poll_sec: float
    fallback_window_sec: float
    price_max_age_sec: float
    price_log_sample: float
    subscriber_queue_size: int
    # Staleness bounds (sec), per entity kind
    staleness_default_sec: float
    staleness_position_sec: float
    staleness_order_sec: float
    staleness_tap_sec: float
    staleness_bet_sec: float
    # Loop cadence
    liquidation_interval_sec: float
    tpsl_interval_sec: float
    limit_order_interval_sec: float
    tap_interval_sec: float
    bet_interval_sec: float
    cleanup_interval_sec: float
    # Settlement
    fee_rate_bps: int
    keeper_share_bps: int
    gas_close: int
    gas_limit_open: int
    gas_transfer: int
    gas_bet_settle: int
    attestation_lag_sec: int
    inter_call_delay_sec: float
    receipt_timeout_sec: float
    ledger_call_retries: int
    max_settlement_attempts: int
    liquidation_threshold_bps: int
    circuit_error_threshold: int
    circuit_cooldown_sec: float
    # Ops
    metrics_port: int
    metrics_token: str | None
    alert_webhook_url: str | None
    alert_webhook_type: str  # generic, slack, discord, pagerduty
    alert_enabled: bool
    log_level: str
    log_file: str | None
    symbol_config_path: str | None

    def dump(self) -> dict:
        """Return a dict of settings for sanity checks/logging (keys redacted)."""
        data = self.__dict__.copy()
        for key in ("keeper_private_key", "price_signer_private_key", "metrics_token"):
            if data.get(key):
                data[key] = "***"
        return data

    @staticmethod
    def _venues() -> List[str]:
        raw = os.getenv("KP_VENUES", "base")
        return [v.strip().lower() for v in raw.split(",") if v.strip()]

    @classmethod
    def load(cls) -> "Settings":
        def _int_env(key: str, default: int) -> int:
            raw = os.getenv(key)
            if raw is None or raw == "":
                return default
            return int(raw)

        def _float_env(key: str, default: float) -> float:
            raw = os.getenv(key)
            if raw is None or raw == "":
                return default
            return float(raw)

        staleness_default = _float_env("KP_STALENESS_SEC", 60.0)
        cfg = cls(
            venues=cls._venues(),
            keeper_private_key=os.getenv("KP_KEEPER_PRIVATE_KEY"),
            price_signer_private_key=os.getenv("KP_PRICE_SIGNER_PRIVATE_KEY"),
            price_signer_address=os.getenv("KP_PRICE_SIGNER_ADDRESS"),
            pyth_ws_url=os.getenv("KP_PYTH_WS_URL", "wss://hermes.pyth.network/ws"),
            hermes_rest_url=os.getenv("KP_HERMES_REST_URL", "https://hermes.pyth.network"),
            http_timeout=_float_env("KP_HTTP_TIMEOUT", 5.0),
            feed_max_reconnect_attempts=_int_env("KP_FEED_MAX_RECONNECT_ATTEMPTS", 5),
            feed_reconnect_base_sec=_float_env("KP_FEED_RECONNECT_BASE_SEC", 5.0),
            feed_max_reconnect_delay_sec=_float_env("KP_FEED_MAX_RECONNECT_DELAY_SEC", 60.0),
            fallback_poll_sec=_float_env("KP_FALLBACK_POLL_SEC", 2.0),
            fallback_window_sec=_float_env("KP_FALLBACK_WINDOW_SEC", 60.0),
            price_max_age_sec=_float_env("KP_PRICE_MAX_AGE_SEC", 60.0),
            price_log_sample=_float_env("KP_PRICE_LOG_SAMPLE", 0.01),
            subscriber_queue_size=_int_env("KP_SUBSCRIBER_QUEUE_SIZE", 256),
            staleness_default_sec=staleness_default,
            staleness_position_sec=_float_env("KP_STALENESS_POSITION_SEC", staleness_default),
            staleness_order_sec=_float_env("KP_STALENESS_ORDER_SEC", staleness_default),
            staleness_tap_sec=_float_env("KP_STALENESS_TAP_SEC", staleness_default),
            staleness_bet_sec=_float_env("KP_STALENESS_BET_SEC", staleness_default),
            liquidation_interval_sec=_float_env("KP_LIQUIDATION_INTERVAL_SEC", 1.0),
            tpsl_interval_sec=_float_env("KP_TPSL_INTERVAL_SEC", 2.0),
            limit_order_interval_sec=_float_env("KP_LIMIT_ORDER_INTERVAL_SEC", 5.0),
            tap_interval_sec=_float_env("KP_TAP_INTERVAL_SEC", 1.0),
            bet_interval_sec=_float_env("KP_BET_INTERVAL_SEC", 1.0),
            cleanup_interval_sec=_float_env("KP_CLEANUP_INTERVAL_SEC", 30.0),
            fee_rate_bps=_int_env("KP_FEE_RATE_BPS", 5),
            keeper_share_bps=_int_env("KP_KEEPER_SHARE_BPS", 2000),
            gas_close=_int_env("KP_GAS_CLOSE", 500_000),
            gas_limit_open=_int_env("KP_GAS_LIMIT_OPEN", 600_000),
            gas_transfer=_int_env("KP_GAS_TRANSFER", 200_000),
            gas_bet_settle=_int_env("KP_GAS_BET_SETTLE", 300_000),
            attestation_lag_sec=_int_env("KP_ATTESTATION_LAG_SEC", 60),
            inter_call_delay_sec=_float_env("KP_INTER_CALL_DELAY_SEC", 0.0),
            receipt_timeout_sec=_float_env("KP_RECEIPT_TIMEOUT_SEC", 120.0),
            ledger_call_retries=_int_env("KP_LEDGER_CALL_RETRIES", 2),
            max_settlement_attempts=_int_env("KP_MAX_SETTLEMENT_ATTEMPTS", 5),
            liquidation_threshold_bps=_int_env("KP_LIQUIDATION_THRESHOLD_BPS", 9000),
            circuit_error_threshold=_int_env("KP_CIRCUIT_ERROR_THRESHOLD", 5),
            circuit_cooldown_sec=_float_env("KP_CIRCUIT_COOLDOWN_SEC", 10.0),
            metrics_port=_int_env("KP_METRICS_PORT", 9095),
            metrics_token=os.getenv("KP_METRICS_TOKEN"),
            alert_webhook_url=os.getenv("KP_ALERT_WEBHOOK_URL"),
            alert_webhook_type=os.getenv("KP_ALERT_WEBHOOK_TYPE", "generic"),
            alert_enabled=env_bool("KP_ALERT_ENABLED", True),
            log_level=os.getenv("KP_LOG_LEVEL", "INFO").upper(),
            log_file=os.getenv("KP_LOG_FILE", "keeper.log") or None,
            symbol_config_path=os.getenv("KP_SYMBOL_CONFIG"),
        )
        _sanity_check(cfg)
        cfg._validate()
        return cfg

    def load_venues(self) -> Dict[str, VenueConfig]:
        return load_venues(self.venues)

    def load_symbols(self) -> Dict[str, SymbolConfig]:
        return load_symbols(self.symbol_config_path)

    def staleness_policy(self, symbols: Dict[str, SymbolConfig] | None = None) -> StalenessPolicy:
        return StalenessPolicy(
            default_sec=self.staleness_default_sec,
            per_kind={
                KIND_POSITION: self.staleness_position_sec,
                KIND_ORDER: self.staleness_order_sec,
                KIND_TAP: self.staleness_tap_sec,
                KIND_BET: self.staleness_bet_sec,
            },
            symbols=symbols,
        )

    def resolve_signer(self):
        from eth_account import Account

        if self.keeper_private_key:
            return Account.from_key(self.keeper_private_key)
        raise RuntimeError("Missing credentials: set KP_KEEPER_PRIVATE_KEY")

    def resolve_price_signer(self):
        from eth_account import Account

        if self.price_signer_private_key:
            return Account.from_key(self.price_signer_private_key)
        raise RuntimeError("Missing credentials: set KP_PRICE_SIGNER_PRIVATE_KEY")

    def _validate(self) -> None:
        if not self.venues:
            raise ValueError("KP_VENUES must list at least one venue")
        if self.fee_rate_bps < 0 or self.fee_rate_bps > 10_000:
            raise ValueError("KP_FEE_RATE_BPS must be within [0, 10000]")
        if self.keeper_share_bps < 0 or self.keeper_share_bps > 10_000:
            raise ValueError("KP_KEEPER_SHARE_BPS must be within [0, 10000]")
        if self.price_max_age_sec <= 0 or self.staleness_default_sec <= 0:
            raise ValueError("Price age bounds must be > 0")
        for name in (
            "liquidation_interval_sec",
            "tpsl_interval_sec",
            "limit_order_interval_sec",
            "tap_interval_sec",
            "bet_interval_sec",
            "cleanup_interval_sec",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0")
        if self.max_settlement_attempts <= 0:
            raise ValueError("KP_MAX_SETTLEMENT_ATTEMPTS must be > 0")
        if self.subscriber_queue_size <= 0:
            raise ValueError("KP_SUBSCRIBER_QUEUE_SIZE must be > 0")
        if not 0.0 <= self.price_log_sample <= 1.0:
            raise ValueError("KP_PRICE_LOG_SAMPLE must be within [0, 1]")

        import logging

        if self.attestation_lag_sec < 10:
            logging.getLogger("keeper").warning(
                f"WARNING: KP_ATTESTATION_LAG_SEC={self.attestation_lag_sec} is small. "
                "Ledger clock drift may reject attestations as 'price in future'."
            )
        if self.staleness_default_sec > 120:
            logging.getLogger("keeper").warning(
                f"WARNING: KP_STALENESS_SEC={self.staleness_default_sec} is loose. "
                "Triggers may fire on outdated prices."
            )
        if self.metrics_port and not self.metrics_token:
            logging.getLogger("keeper").warning(
                "WARNING: KP_METRICS_TOKEN not set. /status and /metrics are unauthenticated."
            )


def _sanity_check(cfg: Settings) -> None:
    """
    Log critical settings once at startup so overrides are obvious.
    """
    import json
    import logging

    logger = logging.getLogger("keeper")
    payload = {
        "event": "config_loaded",
        "venues": cfg.venues,
        "staleness_default_sec": cfg.staleness_default_sec,
        "fee_rate_bps": cfg.fee_rate_bps,
        "keeper_share_bps": cfg.keeper_share_bps,
        "max_settlement_attempts": cfg.max_settlement_attempts,
        "intervals": [
            cfg.liquidation_interval_sec,
            cfg.tpsl_interval_sec,
            cfg.limit_order_interval_sec,
            cfg.tap_interval_sec,
            cfg.bet_interval_sec,
        ],
    }
    logger.info(json.dumps(payload))
