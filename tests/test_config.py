"""
Tests for env settings, venue overrides and per-symbol YAML config.
"""

import os

import pytest
from eth_account import Account

from keeper.config import (
    DEFAULT_SYMBOLS,
    Settings,
    StalenessPolicy,
    SymbolConfig,
    env_bool,
    load_symbol_overrides,
    load_symbols,
    load_venue,
    load_venues,
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith("KP_"):
            monkeypatch.delenv(key)


class TestSettings:
    def test_defaults(self):
        """Without env overrides the keeper targets base with the stock cadence."""
        cfg = Settings.load()
        assert cfg.venues == ["base"]
        assert cfg.fee_rate_bps == 5
        assert cfg.keeper_share_bps == 2000
        assert cfg.max_settlement_attempts == 5
        assert cfg.liquidation_threshold_bps == 9000
        assert cfg.staleness_tap_sec == 60.0

    def test_env_overrides(self, monkeypatch):
        """KP_* variables override defaults; kind bounds inherit the global bound."""
        monkeypatch.setenv("KP_VENUES", "Base, flow")
        monkeypatch.setenv("KP_STALENESS_SEC", "30")
        monkeypatch.setenv("KP_STALENESS_BET_SEC", "5")
        monkeypatch.setenv("KP_FEE_RATE_BPS", "10")
        monkeypatch.setenv("KP_LOG_LEVEL", "debug")
        cfg = Settings.load()
        assert cfg.venues == ["base", "flow"]
        assert cfg.staleness_order_sec == 30.0
        assert cfg.staleness_bet_sec == 5.0
        assert cfg.fee_rate_bps == 10
        assert cfg.log_level == "DEBUG"

    @pytest.mark.parametrize(
        "key, value",
        [
            ("KP_FEE_RATE_BPS", "10001"),
            ("KP_KEEPER_SHARE_BPS", "-1"),
            ("KP_TAP_INTERVAL_SEC", "0"),
            ("KP_MAX_SETTLEMENT_ATTEMPTS", "0"),
            ("KP_PRICE_LOG_SAMPLE", "1.5"),
            ("KP_VENUES", " , "),
        ],
    )
    def test_invalid_values(self, monkeypatch, key, value):
        """Out-of-range settings abort the load."""
        monkeypatch.setenv(key, value)
        with pytest.raises(ValueError):
            Settings.load()

    def test_dump_redacts_secrets(self, monkeypatch):
        """Keys and tokens never appear in the settings dump."""
        monkeypatch.setenv("KP_KEEPER_PRIVATE_KEY", "0x" + "11" * 32)
        monkeypatch.setenv("KP_METRICS_TOKEN", "s3cret")
        dump = Settings.load().dump()
        assert dump["keeper_private_key"] == "***"
        assert dump["metrics_token"] == "***"
        assert dump["price_signer_private_key"] is None

    def test_resolve_signer(self, monkeypatch):
        """Signers come from their private keys; a missing key is fatal."""
        with pytest.raises(RuntimeError, match="KP_KEEPER_PRIVATE_KEY"):
            Settings.load().resolve_signer()
        account = Account.create()
        monkeypatch.setenv("KP_KEEPER_PRIVATE_KEY", account.key.hex())
        assert Settings.load().resolve_signer().address == account.address
        with pytest.raises(RuntimeError, match="KP_PRICE_SIGNER_PRIVATE_KEY"):
            Settings.load().resolve_price_signer()

    def test_staleness_policy_from_settings(self, monkeypatch):
        """Per-kind env bounds feed the shared staleness policy."""
        monkeypatch.setenv("KP_STALENESS_POSITION_SEC", "15")
        policy = Settings.load().staleness_policy()
        assert policy.bound_for("BTC", "position") == 15.0
        assert policy.bound_for("BTC", "order") == 60.0
        assert policy.bound_for("BTC") == 60.0

    def test_env_bool(self, monkeypatch):
        """Truthy strings parse as True; unset falls back."""
        monkeypatch.setenv("KP_FLAG", "Yes")
        assert env_bool("KP_FLAG", False) is True
        monkeypatch.setenv("KP_FLAG", "off")
        assert env_bool("KP_FLAG", True) is False
        assert env_bool("KP_MISSING", True) is True


class TestVenues:
    def test_defaults_and_override(self, monkeypatch):
        """Each venue field can be overridden with KP_<VENUE>_<FIELD>."""
        monkeypatch.setenv("KP_BASE_RPC_URL", "http://localhost:8545")
        monkeypatch.setenv("KP_BASE_CHAIN_ID", "31337")
        venue = load_venue("BASE")
        assert venue.name == "base"
        assert venue.rpc_url == "http://localhost:8545"
        assert venue.chain_id == 31337
        assert load_venue("flow").chain_id == 545

    def test_unknown_venue(self):
        """Unsupported venues are a configuration error."""
        with pytest.raises(ValueError, match="Unknown venue"):
            load_venue("moon")

    def test_load_many(self):
        """load_venues keys by normalized name and skips blanks."""
        assert set(load_venues(["base", " ", "Flow"])) == {"base", "flow"}

    def test_executor_addresses(self):
        """Orders may be signed for any executor of the venue."""
        venue = load_venue("base")
        assert venue.executor_addresses() == [
            venue.tap_to_trade_executor,
            venue.limit_executor,
            venue.market_executor,
        ]


class TestSymbols:
    def test_missing_file_gives_defaults(self, tmp_path):
        """No YAML file means the built-in symbol set."""
        assert load_symbols(str(tmp_path / "absent.yaml")) == DEFAULT_SYMBOLS

    def test_yaml_overrides(self, tmp_path):
        """Overrides merge into defaults; new symbols need a feed id."""
        path = tmp_path / "symbols.yaml"
        path.write_text(
            "sol:\n"
            "  bet_band: 0.1\n"
            "  staleness_sec: {position: 30}\n"
            "ETH:\n"
            "  staleness_sec: 20\n"
            "PEPE:\n"
            "  bet_band: 1\n"
            "ARB:\n"
            "  pyth_price_id: '0xabc'\n"
        )
        symbols = load_symbols(str(path))
        assert symbols["SOL"].bet_band == 0.1
        assert symbols["SOL"].staleness_sec == {"position": 30}
        assert symbols["ETH"].staleness_sec == {"default": 20.0}
        assert "PEPE" not in symbols
        assert symbols["ARB"].pyth_price_id == "0xabc"
        assert symbols["ARB"].bet_band == 10.0

    def test_env_path(self, tmp_path, monkeypatch):
        """KP_SYMBOL_CONFIG points at the override file."""
        path = tmp_path / "symbols.yaml"
        path.write_text("BTC:\n  bet_band: 25\n")
        monkeypatch.setenv("KP_SYMBOL_CONFIG", str(path))
        assert load_symbol_overrides() == {"BTC": {"bet_band": 25}}

    def test_non_mapping_file_ignored(self, tmp_path):
        """A YAML list is not a symbol map."""
        path = tmp_path / "symbols.yaml"
        path.write_text("- BTC\n- ETH\n")
        assert load_symbol_overrides(str(path)) == {}


class TestStalenessPolicy:
    def test_resolution_order(self):
        """symbol+kind, then symbol default, then global kind, then global default."""
        symbols = {
            "SOL": SymbolConfig("SOL", "0x01", staleness_sec={"bet": 5.0, "default": 20.0}),
            "ETH": SymbolConfig("ETH", "0x02"),
        }
        policy = StalenessPolicy(default_sec=60.0, per_kind={"tap": 10.0}, symbols=symbols)
        assert policy.bound_for("SOL", "bet") == 5.0
        assert policy.bound_for("SOL", "tap") == 20.0
        assert policy.bound_for("ETH", "tap") == 10.0
        assert policy.bound_for("BTC") == 60.0
