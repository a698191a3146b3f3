"""
Tests for the pure trigger rules and the liquidation predicate.
"""

import pytest

from keeper.config.symbols import SymbolConfig
from keeper.store import (
    Bet,
    BetStatus,
    Order,
    OrderKind,
    OrderStatus,
    Position,
    PositionStatus,
    Side,
    TpSlConfig,
)
from keeper.triggers import (
    Action,
    MarginRiskEvaluator,
    TriggerEvaluator,
    calculate_pnl,
    evaluate_bet,
    evaluate_limit_order,
    evaluate_liquidation,
    evaluate_tpsl,
    evaluate_windowed_order,
    limit_open_hit,
    stop_loss_hit,
    take_profit_hit,
)

T0 = 1_700_000_000.0


def order(kind=OrderKind.LIMIT_OPEN, side=Side.LONG, trigger=65_000.0, **kw) -> Order:
    return Order(
        owner="0xa",
        kind=kind,
        symbol="BTC",
        side=side,
        trigger_price=trigger,
        collateral=100_000_000,
        leverage=10,
        **kw,
    )


def position(side=Side.LONG, entry=100.0, collateral=1_000, size=10_000, **kw) -> Position:
    return Position(
        owner="0xa",
        symbol="ETH",
        side=side,
        collateral=collateral,
        size=size,
        leverage=10,
        entry_price=entry,
        id="pos-1",
        **kw,
    )


def tpsl(side=Side.LONG, tp=None, sl=None) -> TpSlConfig:
    return TpSlConfig("pos-1", "0xa", "ETH", side, 100.0, take_profit=tp, stop_loss=sl)


def bet(**kw) -> Bet:
    fields = dict(
        bet_id="1",
        owner="0xa",
        symbol="SOL",
        bet_amount=1_000,
        target_price=110.0,
        target_time=T0 + 60,
        entry_price=100.0,
        entry_time=T0,
        multiplier=200,
    )
    fields.update(kw)
    return Bet(**fields)


class TestPriceRules:
    @pytest.mark.parametrize("price", [90.0, 100.0, 110.0])
    def test_long_and_short_mirror(self, price):
        """Short rules mirror the long rules."""
        trigger = 100.0
        assert limit_open_hit(Side.LONG, price, trigger) == (price <= trigger)
        assert limit_open_hit(Side.SHORT, price, trigger) == (price >= trigger)
        assert take_profit_hit(Side.LONG, price, trigger) == (price >= trigger)
        assert stop_loss_hit(Side.SHORT, price, trigger) == (price >= trigger)

    def test_comparisons_inclusive(self):
        """Touching the trigger counts."""
        assert limit_open_hit(Side.LONG, 65_000.0, 65_000.0)
        assert take_profit_hit(Side.SHORT, 50.0, 50.0)
        assert stop_loss_hit(Side.LONG, 50.0, 50.0)


class TestLimitOrders:
    def test_long_limit_open_fires_at_trigger(self):
        """Long LimitOpen fires once price is at or below the trigger."""
        assert evaluate_limit_order(order(), 65_000.0, T0).fired
        assert evaluate_limit_order(order(), 65_000.01, T0).action is Action.WAIT

    def test_limit_close_uses_profit_direction(self):
        """A long LimitClose fires above its trigger; a short one below."""
        assert evaluate_limit_order(order(OrderKind.LIMIT_CLOSE, trigger=70_000.0), 70_100.0, T0).fired
        assert evaluate_limit_order(order(OrderKind.LIMIT_CLOSE, Side.SHORT, 60_000.0), 59_000.0, T0).fired
        assert not evaluate_limit_order(order(OrderKind.LIMIT_CLOSE, trigger=70_000.0), 69_000.0, T0).fired

    def test_stop_loss_order(self):
        """A short stop-loss fires once price rises to it."""
        decision = evaluate_limit_order(order(OrderKind.STOP_LOSS, Side.SHORT, 66_000.0), 66_500.0, T0)
        assert decision.fired
        assert decision.reason == "stop_loss_hit"

    def test_expiry_beats_price(self):
        """Past its end_time an order expires even if the price would fire it."""
        decision = evaluate_limit_order(order(end_time=T0), 1.0, T0 + 1)
        assert decision.action is Action.EXPIRE

    def test_only_pending_orders_act(self):
        """Non-PENDING orders are not actionable."""
        decision = evaluate_limit_order(order(status=OrderStatus.EXECUTING), 1.0, T0)
        assert decision.action is Action.WAIT
        assert decision.reason == "not_actionable"

    def test_windowed_kind_rejected(self):
        """Tap orders are not evaluated by the limit rules."""
        with pytest.raises(ValueError):
            evaluate_limit_order(order(OrderKind.TAP_TO_TRADE), 1.0, T0)


class TestWindowedOrders:
    def windowed(self, **kw):
        return order(OrderKind.TAP_TO_TRADE, start_time=T0, end_time=T0 + 60, **kw)

    def test_fires_inside_window(self):
        """Inside [start, end] the LimitOpen rule applies, bounds included."""
        assert evaluate_windowed_order(self.windowed(), 64_000.0, T0).fired
        assert evaluate_windowed_order(self.windowed(), 64_000.0, T0 + 60).fired

    def test_waits_before_start(self):
        """Before the window opens nothing fires."""
        assert evaluate_windowed_order(self.windowed(), 64_000.0, T0 - 1).reason == "window_not_open"

    def test_expires_after_end(self):
        """After the window the order expires whatever the price."""
        assert evaluate_windowed_order(self.windowed(), 64_000.0, T0 + 61).action is Action.EXPIRE

    def test_evaluator_routes_by_kind(self):
        """TriggerEvaluator.order picks the windowed rule for tap and grid orders."""
        evaluator = TriggerEvaluator()
        grid = order(OrderKind.GRID_CELL, start_time=T0 + 10, end_time=T0 + 60)
        assert evaluator.order(grid, 1.0, T0).reason == "window_not_open"
        assert evaluator.order(order(), 1.0, T0).fired


class TestTpSl:
    def test_long_take_profit(self):
        """Long TP fires at or above the level."""
        assert evaluate_tpsl(tpsl(tp=120.0), position(), 120.0).reason == "take_profit_hit"
        assert not evaluate_tpsl(tpsl(tp=120.0), position(), 119.0).fired

    def test_short_stop_loss(self):
        """Short SL fires at or above the level."""
        config = tpsl(Side.SHORT, sl=105.0)
        assert evaluate_tpsl(config, position(Side.SHORT), 105.0).reason == "stop_loss_hit"
        assert not evaluate_tpsl(config, position(Side.SHORT), 104.0).fired

    def test_stop_loss_wins_a_tie(self):
        """With both levels crossed by one price, stop-loss is reported."""
        # a trailing stop above entry and a TP below it are both crossed at 110
        config = tpsl(tp=108.0, sl=112.0)
        assert evaluate_tpsl(config, position(), 110.0).reason == "stop_loss_hit"

    def test_closing_position_not_actionable(self):
        """Only OPEN positions are evaluated."""
        decision = evaluate_tpsl(tpsl(sl=90.0), position(status=PositionStatus.CLOSING), 50.0)
        assert decision.reason == "not_actionable"


class TestBets:
    def test_won_inside_band_and_window(self):
        """Price 109 at T0+30 is within 110 +/- 2: the bet is won."""
        decision = evaluate_bet(bet(), 109.0, T0 + 30, band=4.0)
        assert decision.fired
        assert decision.won is True

    def test_lost_after_target_time(self):
        """Past target_time the bet is lost whatever the price."""
        decision = evaluate_bet(bet(), 110.0, T0 + 61, band=4.0)
        assert decision.fired
        assert decision.won is False

    def test_band_edge_included(self):
        """A price exactly band/2 away still wins."""
        assert evaluate_bet(bet(), 108.0, T0 + 30, band=4.0).won is True
        assert evaluate_bet(bet(), 107.99, T0 + 30, band=4.0).reason == "outside_band"

    def test_waits_before_entry(self):
        """Before entry_time a bet never settles."""
        assert evaluate_bet(bet(), 110.0, T0 - 1, band=4.0).reason == "window_not_open"

    def test_settled_bet_not_actionable(self):
        """Only ACTIVE bets are evaluated."""
        assert evaluate_bet(bet(status=BetStatus.SETTLING), 110.0, T0 + 30, 4.0).reason == "not_actionable"

    def test_band_from_symbol_config(self):
        """The evaluator looks the band up per symbol."""
        evaluator = TriggerEvaluator({"SOL": SymbolConfig("SOL", "0x01", bet_band=0.05)}, default_bet_band=10.0)
        assert evaluator.bet_band("SOL") == 0.05
        assert evaluator.bet_band("BTC") == 10.0
        assert evaluator.bet(bet(), 109.0, T0 + 30).reason == "outside_band"


class TestRisk:
    def test_pnl_sign(self):
        """A 10% move is +/-10% of size depending on side."""
        assert calculate_pnl(Side.LONG, 10_000, 100.0, 110.0) == 1_000
        assert calculate_pnl(Side.SHORT, 10_000, 100.0, 110.0) == -1_000
        assert calculate_pnl(Side.LONG, 10_000, 0.0, 110.0) == 0

    def test_liquidates_at_threshold(self):
        """Loss reaching 90% of collateral liquidates; less does not."""
        risk = MarginRiskEvaluator(9_000)
        # 10x: a 10% adverse move costs all of the collateral
        assert risk.should_liquidate(90.0, 1_000, 10_000, 100.0, Side.LONG)
        assert not risk.should_liquidate(92.0, 1_000, 10_000, 100.0, Side.LONG)
        assert risk.should_liquidate(110.0, 1_000, 10_000, 100.0, Side.SHORT)

    def test_profit_never_liquidates(self):
        """Positions in profit are healthy."""
        assert not MarginRiskEvaluator().should_liquidate(150.0, 1_000, 10_000, 100.0, Side.LONG)

    def test_liquidation_price(self):
        """liquidation_price matches the predicate's boundary."""
        risk = MarginRiskEvaluator(9_000)
        assert risk.liquidation_price(1_000, 10_000, 100.0, Side.LONG) == pytest.approx(91.0)
        assert risk.liquidation_price(1_000, 10_000, 100.0, Side.SHORT) == pytest.approx(109.0)

    def test_threshold_bounds(self):
        """Thresholds outside (0, 10000] are rejected."""
        with pytest.raises(ValueError):
            MarginRiskEvaluator(0)

    def test_evaluate_liquidation(self):
        """Unhealthy open positions fire; closing ones are skipped."""
        risk = MarginRiskEvaluator()
        assert evaluate_liquidation(position(), 90.0, risk).reason == "liquidation"
        assert evaluate_liquidation(position(), 99.0, risk).reason == "healthy"
        assert evaluate_liquidation(position(status=PositionStatus.CLOSING), 1.0, risk).reason == "not_actionable"
