"""
Tests for request intake (validation, signatures, cancel, re-sign, grid clicks)
and the read-side queries built on the same stores.
"""

from dataclasses import replace
from unittest.mock import MagicMock

import pytest
from eth_account import Account
from eth_account.messages import encode_defunct
from web3 import Web3

from conftest import FakeClock
from keeper.auth import OrderPayload, SessionAuthValidator, order_message_hash
from keeper.auth.session_validator import INVALID_ORDER_SIGNATURE, WRONG_CONTRACT
from keeper.config.venues import VenueConfig
from keeper.core.errors import EntityNotFound, ValidationError
from keeper.intake import IntakeService, KeeperQueries
from keeper.market_data.price_cache import PriceCache, PriceTick
from keeper.store import (
    Bet,
    BetStore,
    GridCell,
    GridCellStatus,
    GridSession,
    GridStore,
    Order,
    OrderKind,
    OrderStatus,
    OrderStore,
    Position,
    PositionIndex,
    Side,
)

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
LIMIT_KINDS = (OrderKind.LIMIT_OPEN, OrderKind.LIMIT_CLOSE, OrderKind.STOP_LOSS)


class Harness:
    def __init__(self, clock: FakeClock) -> None:
        self.clock = clock
        self.orders = OrderStore(clock=clock)
        self.positions = PositionIndex(clock=clock)
        self.bets = BetStore(clock=clock)
        self.grid = GridStore(clock=clock)
        self.prices = PriceCache(clock=clock)
        validator = SessionAuthValidator(VENUE.executor_addresses(), clock_ms=lambda: int(clock.now * 1000))
        self.intake = IntakeService(
            self.orders,
            self.positions,
            self.bets,
            self.grid,
            validator,
            {"base": VENUE},
            symbols=["BTC", "ETH", "SOL"],
            max_leverage=50,
            clock=clock,
        )
        self.queries = KeeperQueries(self.prices, self.orders, self.positions, self.bets, self.grid)


@pytest.fixture
def h(clock):
    return Harness(clock)


@pytest.fixture
def trader():
    return Account.create()


def unsigned(account, clock: FakeClock, kind=OrderKind.TAP_TO_TRADE, **kw) -> Order:
    fields = dict(
        owner=account.address,
        kind=kind,
        symbol="BTC",
        side=Side.LONG,
        trigger_price=65_000.0,
        collateral=10_000_000,
        leverage=10,
        nonce="1",
    )
    if kind in LIMIT_KINDS:
        fields["ledger_id"] = 3
    else:
        fields.update(start_time=clock.now, end_time=clock.now + 60)
    fields.update(kw)
    return Order(**fields)


def signature_for(account, order: Order, contract: str) -> str:
    message = order_message_hash(OrderPayload.from_order(order, contract))
    signed = Account.sign_message(encode_defunct(primitive=message), private_key=account.key)
    return Web3.to_hex(signed.signature)


def signed(account, clock: FakeClock, kind=OrderKind.TAP_TO_TRADE, contract=None, **kw) -> Order:
    order = unsigned(account, clock, kind, **kw)
    if contract is None:
        contract = VENUE.limit_executor if kind in LIMIT_KINDS else VENUE.tap_to_trade_executor
    return replace(order, signature=signature_for(account, order, contract))


def open_position(h: Harness, owner: str, **kw) -> Position:
    fields = dict(
        owner=owner,
        symbol="BTC",
        side=Side.LONG,
        collateral=10_000_000,
        size=100_000_000,
        leverage=10,
        entry_price=60_000.0,
        ledger_id=11,
    )
    fields.update(kw)
    return h.intake.register_position(Position(**fields))


def grid_session(owner: str, clock: FakeClock, **kw) -> GridSession:
    fields = dict(
        owner=owner,
        symbol="ETH",
        margin_total=100_000_000,
        leverage=20,
        timeframe_sec=60,
        grid_size_x=5,
        grid_size_y_bps=50,
        reference_time=clock.now,
        reference_price=3_000.0,
    )
    fields.update(kw)
    return GridSession(**fields)


def grid_cell(session: GridSession, clock: FakeClock, **kw) -> GridCell:
    fields = dict(
        session_id=session.id,
        owner=session.owner,
        x=1,
        y=2,
        trigger_price=3_030.0,
        start_time=clock.now,
        end_time=clock.now + 60,
        side=Side.SHORT,
        click_count=2,
        collateral_per_order=5_000_000,
    )
    fields.update(kw)
    return GridCell(**fields)


def cell_click(account, clock: FakeClock, session: GridSession, cell: GridCell, nonce: str = "1") -> Order:
    """A click signed over exactly the fields the cell will impose."""
    return signed(
        account,
        clock,
        OrderKind.GRID_CELL,
        symbol=session.symbol,
        side=cell.side,
        trigger_price=cell.trigger_price,
        collateral=cell.collateral_per_order,
        leverage=session.leverage,
        nonce=nonce,
    )


class TestSubmitOrder:
    def test_signed_tap_order_stored_pending(self, h, trader, clock):
        """A valid tap order gets an id and starts PENDING."""
        stored = h.intake.submit_order(signed(trader, clock))
        assert stored.id == "ord-1"
        assert stored.status is OrderStatus.PENDING
        assert stored.created_at == clock.now

    def test_signed_limit_order_stored(self, h, trader, clock):
        """Limit orders are checked against the limit executor."""
        stored = h.intake.submit_order(signed(trader, clock, OrderKind.LIMIT_OPEN))
        assert stored.kind is OrderKind.LIMIT_OPEN

    def test_bad_signature_stores_nothing(self, h, trader, clock):
        """A signature by someone else is rejected before creation."""
        order = unsigned(trader, clock)
        forged = replace(order, signature=signature_for(Account.create(), order, VENUE.tap_to_trade_executor))
        with pytest.raises(ValidationError) as exc:
            h.intake.submit_order(forged)
        assert exc.value.reason == INVALID_ORDER_SIGNATURE
        assert len(h.orders) == 0

    def test_limit_order_signed_for_tap_executor(self, h, trader, clock):
        """Replaying a tap signature on the limit executor is refused."""
        order = signed(trader, clock, OrderKind.LIMIT_OPEN, contract=VENUE.tap_to_trade_executor)
        with pytest.raises(ValidationError) as exc:
            h.intake.submit_order(order)
        assert exc.value.reason == WRONG_CONTRACT

    @pytest.mark.parametrize(
        "overrides, reason",
        [
            ({"symbol": "DOGE"}, "Unsupported symbol: DOGE"),
            ({"venue": "moon"}, "Unknown venue: moon"),
            ({"leverage": 51}, "Leverage must be between 1 and 50"),
            ({"collateral": 0}, "Collateral must be positive"),
            ({"trigger_price": 0.0}, "Trigger price must be positive"),
            ({"nonce": "abc"}, "Nonce must be an integer"),
            ({"id": "ord-99"}, "Order id is assigned by the store"),
        ],
    )
    def test_field_checks(self, h, trader, clock, overrides, reason):
        """Malformed fields are rejected with a readable reason."""
        with pytest.raises(ValidationError) as exc:
            h.intake.submit_order(unsigned(trader, clock, **overrides))
        assert exc.value.reason == reason

    def test_tap_window_checks(self, h, trader, clock):
        """Tap orders need a window that is well-formed and not over."""
        with pytest.raises(ValidationError, match="time window"):
            h.intake.submit_order(unsigned(trader, clock, start_time=None))
        with pytest.raises(ValidationError, match="after start"):
            h.intake.submit_order(unsigned(trader, clock, end_time=clock.now))
        with pytest.raises(ValidationError, match="already elapsed"):
            h.intake.submit_order(unsigned(trader, clock, start_time=clock.now - 120, end_time=clock.now - 60))

    def test_limit_order_needs_ledger_id(self, h, trader, clock):
        """Without the on-ledger id a limit order cannot be executed."""
        with pytest.raises(ValidationError, match="on-ledger"):
            h.intake.submit_order(unsigned(trader, clock, OrderKind.LIMIT_OPEN, ledger_id=None))

    def test_limit_open_tpsl_checked_against_trigger(self, h, trader, clock):
        """A long take-profit below the trigger price is refused."""
        with pytest.raises(ValidationError, match="Take Profit"):
            h.intake.submit_order(signed(trader, clock, OrderKind.LIMIT_OPEN, take_profit=60_000.0))
        ok = h.intake.submit_order(signed(trader, clock, OrderKind.LIMIT_OPEN, take_profit=70_000.0, stop_loss=60_000.0))
        assert ok.take_profit == 70_000.0

    def test_closing_order_needs_matching_position(self, h, trader, clock):
        """LimitClose must target an existing position of the same owner, symbol and side."""
        with pytest.raises(ValidationError, match="Unknown position"):
            h.intake.submit_order(signed(trader, clock, OrderKind.LIMIT_CLOSE, position_id="pos-9"))
        pos = open_position(h, trader.address)
        with pytest.raises(ValidationError, match="does not match"):
            h.intake.submit_order(signed(trader, clock, OrderKind.LIMIT_CLOSE, position_id=pos.id, side=Side.SHORT))
        stored = h.intake.submit_order(signed(trader, clock, OrderKind.STOP_LOSS, position_id=pos.id))
        assert stored.position_id == pos.id

    def test_closing_order_on_someone_elses_position(self, h, trader, clock):
        """Orders cannot close positions of another owner."""
        pos = open_position(h, Account.create().address)
        with pytest.raises(ValidationError, match="Not your position"):
            h.intake.submit_order(signed(trader, clock, OrderKind.LIMIT_CLOSE, position_id=pos.id))


class TestBatch:
    def test_all_or_nothing(self, h, trader, clock):
        """One invalid order rejects the whole batch and stores nothing."""
        batch = [signed(trader, clock, nonce="1"), unsigned(trader, clock, nonce="2", leverage=0)]
        with pytest.raises(ValidationError) as exc:
            h.intake.submit_batch(batch)
        assert exc.value.reason.startswith("Order 1:")
        assert len(h.orders) == 0

    def test_valid_batch_created(self, h, trader, clock):
        """Every order of a valid batch is stored."""
        created = h.intake.submit_batch([signed(trader, clock, nonce=str(n)) for n in range(3)])
        assert [o.id for o in created] == ["ord-1", "ord-2", "ord-3"]

    def test_empty_batch(self, h):
        """An empty batch is a validation error."""
        with pytest.raises(ValidationError):
            h.intake.submit_batch([])


class TestCancelAndResign:
    def test_cancel_owner_only(self, h, trader, clock):
        """Only the owner cancels; case of the address does not matter."""
        stored = h.intake.submit_order(signed(trader, clock))
        with pytest.raises(ValidationError):
            h.intake.cancel_order(stored.id, Account.create().address)
        cancelled = h.intake.cancel_order(stored.id, trader.address.lower())
        assert cancelled.status is OrderStatus.CANCELLED

    def test_cancel_unknown(self, h, trader):
        """Cancelling a missing order raises EntityNotFound."""
        with pytest.raises(EntityNotFound):
            h.intake.cancel_order("ord-404", trader.address)

    def needs_resign(self, h, trader, clock) -> Order:
        stored = h.intake.submit_order(signed(trader, clock))
        h.orders.transition(stored.id, OrderStatus.EXECUTING)
        return h.orders.transition(stored.id, OrderStatus.NEEDS_RESIGN, error="nonce too low")

    def test_resign_restores_pending(self, h, trader, clock):
        """A fresh valid signature brings the order back to PENDING."""
        order = self.needs_resign(h, trader, clock)
        fresh = signed(trader, clock, nonce="2")
        resigned = h.intake.resign_order(order.id, trader.address, "2", fresh.signature)
        assert resigned.status is OrderStatus.PENDING
        assert resigned.nonce == "2"
        assert resigned.error is None

    def test_resign_with_bad_signature(self, h, trader, clock):
        """A signature not matching the new nonce leaves the order untouched."""
        order = self.needs_resign(h, trader, clock)
        stale = signed(trader, clock, nonce="1")
        with pytest.raises(ValidationError):
            h.intake.resign_order(order.id, trader.address, "2", stale.signature)
        assert h.orders.require(order.id).status is OrderStatus.NEEDS_RESIGN


class TestGrid:
    def setup_grid(self, h, trader, clock, **cell_kw):
        session = h.intake.create_grid(grid_session(trader.address, clock))
        cell = h.intake.create_cell(grid_cell(session, clock, **cell_kw))
        return session, cell

    def test_click_inherits_cell_fields(self, h, trader, clock):
        """A click becomes a GRID_CELL order on the cell's trigger and window."""
        session, cell = self.setup_grid(h, trader, clock)
        order = h.intake.place_cell_order(cell.id, cell_click(trader, clock, session, cell))
        assert order.kind is OrderKind.GRID_CELL
        assert (order.trigger_price, order.side, order.cell_id) == (3_030.0, Side.SHORT, cell.id)
        assert order.grid_session_id == session.id
        updated = h.grid.get_cell(cell.id)
        assert updated.status is GridCellStatus.ACTIVE
        assert updated.order_ids == (order.id,)

    def test_cell_click_limit(self, h, trader, clock):
        """No more orders than click_count."""
        session, cell = self.setup_grid(h, trader, clock, click_count=1)
        h.intake.place_cell_order(cell.id, cell_click(trader, clock, session, cell, "1"))
        with pytest.raises(ValidationError, match="all its orders"):
            h.intake.place_cell_order(cell.id, cell_click(trader, clock, session, cell, "2"))

    def test_click_by_other_trader(self, h, trader, clock):
        """Only the cell owner may click it."""
        session, cell = self.setup_grid(h, trader, clock)
        intruder = Account.create()
        with pytest.raises(ValidationError, match="Not authorized"):
            h.intake.place_cell_order(cell.id, cell_click(intruder, clock, session, cell))

    def test_cancel_grid_cancels_cells_and_orders(self, h, trader, clock):
        """Cancelling a grid takes its open cells and orders with it."""
        session, cell = self.setup_grid(h, trader, clock)
        h.intake.place_cell_order(cell.id, cell_click(trader, clock, session, cell, "1"))
        h.intake.create_cell(grid_cell(session, clock, x=2))
        result = h.intake.cancel_grid(session.id, trader.address)
        assert result == {"cancelled_cells": 2, "cancelled_orders": 1}
        assert h.orders.query(status=OrderStatus.CANCELLED, group=session.id)

    def test_cancel_cell(self, h, trader, clock):
        """Cancelling one cell cancels only its orders."""
        session, cell = self.setup_grid(h, trader, clock)
        h.intake.place_cell_order(cell.id, cell_click(trader, clock, session, cell))
        assert h.intake.cancel_cell(cell.id, trader.address) == {"cancelled_orders": 1}

    def test_click_on_cancelled_cell_stores_nothing(self, h, trader, clock):
        """A click after the owner cancelled the cell is refused before any order exists."""
        session, cell = self.setup_grid(h, trader, clock)
        h.intake.cancel_cell(cell.id, trader.address)
        with pytest.raises(ValidationError, match="CANCELLED"):
            h.intake.place_cell_order(cell.id, cell_click(trader, clock, session, cell))
        assert h.orders.query(status=OrderStatus.PENDING) == []

    def test_click_on_cancelled_grid_stores_nothing(self, h, trader, clock):
        """Cells of a cancelled grid take no more clicks."""
        session, cell = self.setup_grid(h, trader, clock)
        h.intake.cancel_grid(session.id, trader.address)
        with pytest.raises(ValidationError):
            h.intake.place_cell_order(cell.id, cell_click(trader, clock, session, cell))
        assert h.orders.query(status=OrderStatus.PENDING) == []

    def test_grid_field_checks(self, h, trader, clock):
        """Grid leverage and sizes are validated."""
        with pytest.raises(ValidationError, match="Leverage"):
            h.intake.create_grid(grid_session(trader.address, clock, leverage=100))
        with pytest.raises(ValidationError, match="positive"):
            h.intake.create_grid(grid_session(trader.address, clock, grid_size_x=0))


class TestPositionsAndBets:
    def test_register_position(self, h, trader):
        """Externally opened positions are tracked once per ledger id and venue."""
        pos = open_position(h, trader.address)
        assert pos.id == "pos-1"
        with pytest.raises(ValidationError, match="already tracked"):
            open_position(h, trader.address)
        with pytest.raises(ValidationError, match="on-ledger id"):
            open_position(h, trader.address, ledger_id=None)

    def test_tpsl_through_intake(self, h, trader):
        """set_tpsl and delete_tpsl go through the owner check."""
        pos = open_position(h, trader.address)
        config = h.intake.set_tpsl(pos.id, trader.address, take_profit=66_000.0)
        assert config.take_profit == 66_000.0
        assert h.intake.delete_tpsl(pos.id, trader.address) is True
        assert h.intake.delete_tpsl(pos.id, trader.address) is False

    def bet(self, owner: str, clock: FakeClock, **kw) -> Bet:
        fields = dict(
            bet_id="17",
            owner=owner,
            symbol="SOL",
            bet_amount=1_000_000,
            target_price=110.0,
            target_time=clock.now + 60,
            entry_price=100.0,
            entry_time=clock.now,
            multiplier=200,
        )
        fields.update(kw)
        return Bet(**fields)

    def test_register_bet(self, h, trader, clock):
        """Bets are keyed by venue and on-ledger bet id."""
        stored = h.intake.register_bet(self.bet(trader.address, clock))
        assert stored.id == "base-17"
        with pytest.raises(ValidationError, match="already tracked"):
            h.intake.register_bet(self.bet(trader.address, clock))

    @pytest.mark.parametrize(
        "overrides, match",
        [
            ({"bet_id": "x1"}, "integer"),
            ({"bet_amount": 0}, "amount"),
            ({"multiplier": 99}, "Multiplier"),
            ({"target_time": 1_700_000_000.0}, "after entry"),
        ],
    )
    def test_bet_field_checks(self, h, trader, clock, overrides, match):
        """Malformed bets never reach the store."""
        with pytest.raises(ValidationError, match=match):
            h.intake.register_bet(self.bet(trader.address, clock, **overrides))
        assert len(h.bets) == 0


class TestQueries:
    def test_prices(self, h, clock):
        """Prices come from the cache as plain dicts."""
        assert h.queries.price("BTC") is None
        h.prices.update("BTC", PriceTick("BTC", 65_000.0, 1.5, clock.now))
        assert h.queries.price("BTC")["price"] == 65_000.0
        assert set(h.queries.all_prices()) == {"BTC"}

    def test_orders_by_owner_and_status(self, h, trader, clock):
        """Listing filters by owner (any case), status and kind."""
        first = h.intake.submit_order(signed(trader, clock, nonce="1"))
        h.intake.submit_order(signed(trader, clock, OrderKind.LIMIT_OPEN, nonce="2"))
        h.intake.cancel_order(first.id, trader.address)
        pending = h.queries.list_orders(owner=trader.address.lower(), status="pending")
        assert [o["kind"] for o in pending] == ["LIMIT_OPEN"]
        assert len(h.queries.list_orders(kind="tap_to_trade")) == 1
        with pytest.raises(ValueError):
            h.queries.list_orders(status="bogus")

    def test_missing_entities(self, h):
        """Unknown ids raise EntityNotFound."""
        with pytest.raises(EntityNotFound):
            h.queries.order("ord-1")
        with pytest.raises(EntityNotFound):
            h.queries.bet("base", "1")

    def test_position_includes_tpsl(self, h, trader):
        """A position view carries its TP/SL config."""
        pos = open_position(h, trader.address)
        assert h.queries.position(pos.id)["tpsl"] is None
        h.intake.set_tpsl(pos.id, trader.address, stop_loss=55_000.0)
        assert h.queries.position(pos.id)["tpsl"]["stop_loss"] == 55_000.0
        assert len(h.queries.tpsl_of(trader.address.lower())) == 1

    def test_grid_session_with_cells(self, h, trader, clock):
        """A grid view lists its cells."""
        session = h.intake.create_grid(grid_session(trader.address, clock))
        h.intake.create_cell(grid_cell(session, clock))
        view = h.queries.grid_session(session.id)
        assert len(view["cells"]) == 1
        assert h.queries.grid_sessions_of(trader.address)[0]["id"] == session.id

    def test_stats_and_status(self, h, clock):
        """Aggregates cover every store; loops report their own status."""
        stats = h.queries.stats()
        assert set(stats) == {"limit_orders", "tap_orders", "positions", "tpsl_configs", "bets", "grid", "settlements"}
        assert stats["settlements"] == {}
        loop = MagicMock()
        loop.status.return_value = {"name": "limit_orders", "running": True}
        queries = KeeperQueries(h.prices, h.orders, h.positions, h.bets, h.grid, loops=[loop])
        assert queries.loop_status() == [{"name": "limit_orders", "running": True}]
        assert "cache" in queries.feed_status()
