"""
Tests for fee arithmetic, settlement plan shapes and price attestation.
"""

import pytest
from eth_abi import decode
from eth_account import Account

from conftest import FakeClock
from keeper.config.venues import VenueConfig
from keeper.core.units import price_from_units, price_to_units, usdc_from_units, usdc_to_units
from keeper.execution import PlanBuilder, PriceSigner, compute_fees, compute_refund, opened_position_id
from keeper.execution.calls import CLOSE_SIG, POSITION_OPENED_TOPIC, SETTLE_BET_SIG, TAP_SESSION_SIG, TAP_SIG
from keeper.infra.ledger import LedgerReceipt, function_selector
from keeper.store import Bet, Order, OrderKind, Position, SessionKey, Side

VENUE = VenueConfig(
    name="base",
    chain_id=84532,
    rpc_url="http://localhost:8545",
    position_manager="0x1000000000000000000000000000000000000001",
    treasury_manager="0x1000000000000000000000000000000000000002",
    market_executor="0x1000000000000000000000000000000000000003",
    limit_executor="0x1000000000000000000000000000000000000004",
    tap_to_trade_executor="0x1000000000000000000000000000000000000005",
    one_tap_profit="0x1000000000000000000000000000000000000006",
)
TRADER = "0x2000000000000000000000000000000000000001"
KEEPER = "0x3000000000000000000000000000000000000001"


@pytest.fixture
def signer(clock):
    return PriceSigner(Account.create(), lag_sec=60, clock=clock)


@pytest.fixture
def plans(signer):
    return PlanBuilder({"base": VENUE}, signer, KEEPER, fee_rate_bps=5, keeper_share_bps=2_000)


def position(collateral=100_000_000, size=1_000_000_000, entry=3_000.0, ledger_id=42) -> Position:
    return Position(
        owner=TRADER,
        symbol="ETH",
        side=Side.LONG,
        collateral=collateral,
        size=size,
        leverage=10,
        entry_price=entry,
        ledger_id=ledger_id,
        id="pos-1",
    )


def order(kind=OrderKind.LIMIT_OPEN, **kw) -> Order:
    fields = dict(
        owner=TRADER,
        kind=kind,
        symbol="BTC",
        side=Side.LONG,
        trigger_price=65_000.0,
        collateral=10_000_000,
        leverage=10,
        nonce="4",
        signature="0x" + "ab" * 65,
        id="ord-1",
    )
    fields.update(kw)
    return Order(**fields)


class TestFees:
    def test_split(self):
        """5 bps of collateral; the keeper takes 20% of it."""
        fees = compute_fees(100_000_000, fee_rate_bps=5, keeper_share_bps=2_000)
        assert (fees.total, fees.keeper, fees.treasury) == (50_000, 10_000, 40_000)

    def test_small_collateral_rounds_down(self):
        """Integer division never charges more than the rate."""
        assert compute_fees(1_000).total == 0

    @pytest.mark.parametrize("pnl", [-200_000_000, -100_000_000, -99_950_000, -1, 0, 1, 50_000_000])
    def test_refund_never_negative(self, pnl):
        """A loss bigger than collateral plus fee refunds zero."""
        assert compute_refund(100_000_000, pnl, 50_000) >= 0

    def test_refund_monotonic_in_pnl(self):
        """More profit never means less refund."""
        refunds = [compute_refund(100_000_000, pnl, 50_000) for pnl in range(-120_000_000, 60_000_000, 7_000_000)]
        assert refunds == sorted(refunds)

    def test_refund_values(self):
        """Profit adds to collateral; loss and fee come off it."""
        assert compute_refund(1_000, 200, 10) == 1_190
        assert compute_refund(1_000, -200, 10) == 790
        assert compute_refund(1_000, -995, 10) == 0


class TestPlans:
    def test_close_with_refund_full_plan(self, plans):
        """Close, treasury fee, keeper fee and refund, in that order."""
        plan = plans.close_with_refund(position(), 3_300.0)
        assert plan.labels == ("close", "treasury_fee", "keeper_fee", "trader_refund")
        assert plan.calls[0].target == VENUE.position_manager
        assert all(c.target == VENUE.treasury_manager for c in plan.calls[1:])
        assert plan.context["pnl"] == 100_000_000
        assert plan.context["refund"] == 100_000_000 + 100_000_000 - 50_000
        assert plan.calls[0].data[:4] == function_selector(CLOSE_SIG)

    def test_zero_amount_transfers_skipped(self, plans):
        """No fee on tiny collateral and no refund after a wipe-out."""
        tiny = plans.close_with_refund(position(collateral=1_000, size=10_000), 3_000.0)
        assert tiny.labels == ("close", "trader_refund")
        wiped = plans.close_with_refund(position(), 1_000.0)
        assert wiped.labels == ("close", "treasury_fee", "keeper_fee")
        assert wiped.context["refund"] == 0

    def test_custom_pnl(self, signer):
        """A pluggable PnL function drives the refund."""
        builder = PlanBuilder({"base": VENUE}, signer, KEEPER, pnl_fn=lambda pos, price: 0)
        plan = builder.close_with_refund(position(), 9_999.0)
        assert plan.context["pnl"] == 0
        assert plan.context["refund"] == 100_000_000 - 50_000

    def test_liquidation_single_call(self, plans):
        """Liquidation is one call to the market executor."""
        plan = plans.liquidation(position(), 2_700.0)
        assert plan.labels == ("liquidate",)
        assert plan.calls[0].target == VENUE.market_executor

    def test_missing_ledger_id(self, plans):
        """Positions and limit orders without a ledger id cannot be planned."""
        with pytest.raises(ValueError):
            plans.liquidation(position(ledger_id=None), 2_700.0)
        with pytest.raises(ValueError):
            plans.limit_order(order(ledger_id=None), 65_000.0)

    @pytest.mark.parametrize(
        "kind, label",
        [
            (OrderKind.LIMIT_OPEN, "execute_limit_open"),
            (OrderKind.LIMIT_CLOSE, "execute_limit_close"),
            (OrderKind.STOP_LOSS, "execute_stop_loss"),
        ],
    )
    def test_limit_order_labels(self, plans, kind, label):
        """Each limit kind maps to its own executor entry point."""
        plan = plans.limit_order(order(kind, ledger_id=9), 65_000.0)
        assert plan.labels == (label,)
        assert plan.calls[0].target == VENUE.limit_executor

    def test_tap_order_direct_and_session(self, plans):
        """Session-key orders use the session entry point."""
        direct = plans.tap_order(order(OrderKind.TAP_TO_TRADE), 65_000.0)
        assert direct.calls[0].data[:4] == function_selector(TAP_SIG)
        session = SessionKey(
            delegate="0x4000000000000000000000000000000000000001",
            expires_at_ms=1_700_003_600_000,
            authorized_by=TRADER,
            auth_signature="0x" + "cd" * 65,
        )
        delegated = plans.tap_order(order(OrderKind.TAP_TO_TRADE, session_key=session), 65_000.0)
        assert delegated.calls[0].data[:4] == function_selector(TAP_SESSION_SIG)
        assert delegated.calls[0].target == VENUE.tap_to_trade_executor

    def test_bet_plan_arguments(self, plans):
        """settleBet carries the bet id, 8-decimal price, time and outcome."""
        bet = Bet(
            bet_id="17",
            owner=TRADER,
            symbol="SOL",
            bet_amount=1_000,
            target_price=110.0,
            target_time=1_700_000_060.0,
            entry_price=100.0,
            entry_time=1_700_000_000.0,
            multiplier=200,
            id="base-17",
        )
        plan = plans.bet(bet, 109.5, 1_700_000_030.0, True)
        data = plan.calls[0].data
        assert data[:4] == function_selector(SETTLE_BET_SIG)
        assert decode(["uint256", "uint256", "uint256", "bool"], data[4:]) == (17, 10_950_000_000, 1_700_000_030, True)
        assert plan.context["won"] is True

    def test_unknown_venue(self, plans):
        """A venue that is not configured is a plan error."""
        with pytest.raises(ValueError):
            plans.tap_order(order(OrderKind.TAP_TO_TRADE, venue="moon"), 65_000.0)


class TestOpenedPositionId:
    def test_found_in_manager_log(self):
        """The id is topic[1] of PositionOpened from the position manager."""
        receipt = LedgerReceipt(
            tx_hash="0x01",
            success=True,
            gas_used=1,
            block_number=1,
            logs=(
                (VENUE.treasury_manager, (POSITION_OPENED_TOPIC, hex(5))),
                (VENUE.position_manager.lower(), (POSITION_OPENED_TOPIC, "0x" + "0" * 62 + "2a")),
            ),
        )
        assert opened_position_id(receipt, VENUE.position_manager) == 42

    def test_absent(self):
        """Receipts without the event give None."""
        receipt = LedgerReceipt(tx_hash="0x01", success=True, gas_used=1, block_number=1)
        assert opened_position_id(receipt, VENUE.position_manager) is None


class TestPriceSigner:
    def test_signature_recovers_signer(self, signer, clock: FakeClock):
        """The attested price recovers to the signer, stamped lag_sec in the past."""
        signed = signer.sign("BTC", 65_000.5)
        assert signed.price == 6_500_050_000_000
        assert signed.timestamp == int(clock.now) - 60
        assert PriceSigner.recover(signed) == signer.address
        assert signer.status()["signed"] == 1

    def test_refuses_non_positive(self, signer):
        """Zero prices are never attested."""
        with pytest.raises(ValueError):
            signer.sign("BTC", 0.0)


class TestUnits:
    def test_price_half_up(self):
        """Prices go out with 8 decimals, rounded half-up."""
        assert price_to_units(0.000000005) == 1
        assert price_to_units(65_000.123456784) == 6_500_012_345_678
        assert price_from_units(10_950_000_000) == 109.5

    def test_usdc(self):
        """USDC amounts use 6 decimals both ways."""
        assert usdc_to_units("12.5") == 12_500_000
        assert usdc_from_units(1_500_000) == 1.5
