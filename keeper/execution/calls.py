"""
Settlement plans: fee arithmetic and the ledger calls for each trigger kind.

Plans by kind:

    liquidation     liquidatePosition(id, signedPrice)
    tp/sl close     closePosition(id, price), collectFee(trader, treasuryFee),
                    refundCollateral(keeper, keeperFee), refundCollateral(trader, refund)
    limit order     executeLimitOpenOrder | executeLimitCloseOrder | executeStopLossOrder
    tap / grid      executeTapToTrade (or the session-key variant)
    bet             settleBet(betId, price, time, won)

Transfers with a zero amount are left out of the plan.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Tuple

from web3 import Web3

from keeper.config.venues import VenueConfig
from keeper.core.units import price_to_units
from keeper.execution.price_signer import SIGNED_PRICE_ABI, PriceSigner
from keeper.infra.ledger import LedgerCall, LedgerReceipt, encode_call
from keeper.store.models import Bet, Order, OrderKind, Position
from keeper.triggers.risk import calculate_pnl

BPS = 10_000

LIQUIDATE_SIG = f"liquidatePosition(uint256,{SIGNED_PRICE_ABI})"
CLOSE_SIG = "closePosition(uint256,uint256)"
COLLECT_FEE_SIG = "collectFee(address,uint256)"
REFUND_SIG = "refundCollateral(address,uint256)"
LIMIT_OPEN_SIG = f"executeLimitOpenOrder(uint256,{SIGNED_PRICE_ABI})"
LIMIT_CLOSE_SIG = f"executeLimitCloseOrder(uint256,{SIGNED_PRICE_ABI})"
STOP_LOSS_SIG = f"executeStopLossOrder(uint256,{SIGNED_PRICE_ABI})"
TAP_SIG = f"executeTapToTrade(address,string,bool,uint256,uint256,{SIGNED_PRICE_ABI},uint256,bytes)"
TAP_SESSION_SIG = (
    f"executeTapToTradeWithSession(address,string,bool,uint256,uint256,{SIGNED_PRICE_ABI},"
    "uint256,bytes,address,uint256,bytes)"
)
SETTLE_BET_SIG = "settleBet(uint256,uint256,uint256,bool)"

POSITION_OPENED_TOPIC = Web3.to_hex(
    Web3.keccak(text="PositionOpened(uint256,address,string,bool,uint256,uint256,uint256,uint256)")
)

PnlFn = Callable[[Position, float], int]


@dataclass(frozen=True)
class FeeSplit:
    total: int
    keeper: int
    treasury: int


def compute_fees(collateral: int, fee_rate_bps: int = 5, keeper_share_bps: int = 2_000) -> FeeSplit:
    """Fee is charged on collateral, not size; the keeper gets its share, the treasury the rest."""
    total = collateral * fee_rate_bps // BPS
    keeper = total * keeper_share_bps // BPS
    return FeeSplit(total=total, keeper=keeper, treasury=total - keeper)


def compute_refund(collateral: int, pnl: int, total_fee: int) -> int:
    if pnl >= 0:
        return collateral + pnl - total_fee
    return max(0, collateral - abs(pnl) - total_fee)


@dataclass(frozen=True)
class GasBudgets:
    close: int = 500_000
    limit_open: int = 600_000
    transfer: int = 200_000
    bet_settle: int = 300_000


@dataclass(frozen=True)
class SettlementPlan:
    entity_id: str
    venue: str
    calls: Tuple[LedgerCall, ...]
    # Values the caller stores on success (execution price, pnl, fees).
    context: Dict[str, object] = field(default_factory=dict)

    @property
    def labels(self) -> Tuple[str, ...]:
        return tuple(c.label for c in self.calls)


def default_pnl(position: Position, price: float) -> int:
    return calculate_pnl(position.side, position.size, position.entry_price, price)


def _ledger_id(kind: str, entity_id: str, ledger_id: Optional[int]) -> int:
    if ledger_id is None:
        raise ValueError(f"{kind} {entity_id} has no ledger id")
    return int(ledger_id)


def opened_position_id(receipt: LedgerReceipt, position_manager: str) -> Optional[int]:
    """Position id from the PositionOpened event, indexed as topic[1]."""
    for address, topics in receipt.logs:
        if address.lower() != position_manager.lower() or not topics:
            continue
        if topics[0].lower() == POSITION_OPENED_TOPIC.lower() and len(topics) > 1:
            return int(topics[1], 16)
    return None


class PlanBuilder:
    """
    Builds SettlementPlans for every trigger kind.

    Args:
        venues: venue name -> VenueConfig (contract addresses)
        price_signer: attests prices for calls that need an on-ledger proof
        keeper_address: receives the keeper fee share
        pnl_fn: (position, price) -> pnl in collateral units
    """

    def __init__(
        self,
        venues: Dict[str, VenueConfig],
        price_signer: PriceSigner,
        keeper_address: str,
        fee_rate_bps: int = 5,
        keeper_share_bps: int = 2_000,
        gas: Optional[GasBudgets] = None,
        pnl_fn: Optional[PnlFn] = None,
    ) -> None:
        self.venues = venues
        self.price_signer = price_signer
        self.keeper_address = keeper_address
        self.fee_rate_bps = fee_rate_bps
        self.keeper_share_bps = keeper_share_bps
        self.gas = gas or GasBudgets()
        self.pnl_fn = pnl_fn or default_pnl

    def venue(self, name: str) -> VenueConfig:
        try:
            return self.venues[name]
        except KeyError:
            raise ValueError(f"unknown venue: {name}") from None

    def liquidation(self, position: Position, price: float) -> SettlementPlan:
        venue = self.venue(position.venue)
        signed = self.price_signer.sign(position.symbol, price)
        pid = _ledger_id("position", position.id, position.ledger_id)
        call = LedgerCall(
            label="liquidate",
            target=venue.market_executor,
            data=encode_call(LIQUIDATE_SIG, [pid, signed.as_abi()]),
            gas_budget=self.gas.close,
        )
        return SettlementPlan(position.id, venue.name, (call,), {"price": price})

    def close_with_refund(self, position: Position, price: float) -> SettlementPlan:
        """Close at `price`, then split the fee and refund the trader."""
        venue = self.venue(position.venue)
        pid = _ledger_id("position", position.id, position.ledger_id)
        pnl = self.pnl_fn(position, price)
        fees = compute_fees(position.collateral, self.fee_rate_bps, self.keeper_share_bps)
        refund = compute_refund(position.collateral, pnl, fees.total)

        calls = [
            LedgerCall(
                label="close",
                target=venue.position_manager,
                data=encode_call(CLOSE_SIG, [pid, price_to_units(price)]),
                gas_budget=self.gas.close,
            )
        ]
        if fees.treasury > 0:
            calls.append(self._transfer(venue, "treasury_fee", COLLECT_FEE_SIG, position.owner, fees.treasury))
        if fees.keeper > 0:
            calls.append(self._transfer(venue, "keeper_fee", REFUND_SIG, self.keeper_address, fees.keeper))
        if refund > 0:
            calls.append(self._transfer(venue, "trader_refund", REFUND_SIG, position.owner, refund))
        return SettlementPlan(
            position.id,
            venue.name,
            tuple(calls),
            {"price": price, "pnl": pnl, "fee": fees.total, "keeper_fee": fees.keeper, "refund": refund},
        )

    def limit_order(self, order: Order, price: float) -> SettlementPlan:
        venue = self.venue(order.venue)
        oid = _ledger_id("order", order.id, order.ledger_id)
        signed = self.price_signer.sign(order.symbol, price)
        if order.kind is OrderKind.LIMIT_OPEN:
            sig, gas, label = LIMIT_OPEN_SIG, self.gas.limit_open, "execute_limit_open"
        elif order.kind is OrderKind.LIMIT_CLOSE:
            sig, gas, label = LIMIT_CLOSE_SIG, self.gas.close, "execute_limit_close"
        elif order.kind is OrderKind.STOP_LOSS:
            sig, gas, label = STOP_LOSS_SIG, self.gas.close, "execute_stop_loss"
        else:
            raise ValueError(f"not a limit order kind: {order.kind.name}")
        call = LedgerCall(label=label, target=venue.limit_executor, data=encode_call(sig, [oid, signed.as_abi()]), gas_budget=gas)
        return SettlementPlan(order.id, venue.name, (call,), {"price": price})

    def tap_order(self, order: Order, price: float) -> SettlementPlan:
        """Tap-to-trade and grid orders open at market with the trader's (or session key's) signature."""
        venue = self.venue(order.venue)
        signed = self.price_signer.sign(order.symbol, price)
        args = [
            Web3.to_checksum_address(order.owner),
            order.symbol,
            order.side.is_long,
            int(order.collateral),
            int(order.leverage),
            signed.as_abi(),
            int(order.nonce),
            Web3.to_bytes(hexstr=order.signature),
        ]
        sk = order.session_key
        if sk is None:
            data = encode_call(TAP_SIG, args)
        else:
            data = encode_call(
                TAP_SESSION_SIG,
                args + [Web3.to_checksum_address(sk.delegate), sk.expires_at_ms // 1000, Web3.to_bytes(hexstr=sk.auth_signature)],
            )
        call = LedgerCall(label="execute_tap", target=venue.tap_to_trade_executor, data=data, gas_budget=self.gas.limit_open)
        return SettlementPlan(order.id, venue.name, (call,), {"price": price})

    def bet(self, bet: Bet, price: float, now: float, won: bool) -> SettlementPlan:
        venue = self.venue(bet.venue)
        call = LedgerCall(
            label="settle_bet",
            target=venue.one_tap_profit,
            data=encode_call(SETTLE_BET_SIG, [int(bet.bet_id), price_to_units(price), int(now), won]),
            gas_budget=self.gas.bet_settle,
        )
        return SettlementPlan(bet.id, venue.name, (call,), {"price": price, "time": int(now), "won": won})

    def _transfer(self, venue: VenueConfig, label: str, sig: str, to: str, amount: int) -> LedgerCall:
        return LedgerCall(
            label=label,
            target=venue.treasury_manager,
            data=encode_call(sig, [Web3.to_checksum_address(to), amount]),
            gas_budget=self.gas.transfer,
        )
