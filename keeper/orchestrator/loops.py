"""
The five keeper loops.

    LiquidationMonitor     open positions past the margin threshold -> liquidate
    TpSlMonitor            TP/SL configs -> close, fee split, refund
    LimitOrderExecutor     limit open / limit close / stop-loss orders
    TapToTradeExecutor     tap-to-trade and grid-cell orders inside their window
    BetSettlementMonitor   one-tap-profit bets -> WON / LOST

Each owns its slice of the stores; the settlement sequencer serializes the
ledger calls and enforces the claim.
"""

from __future__ import annotations

from typing import Any, Iterable, List, Optional

from keeper.config.symbols import KIND_BET, KIND_ORDER, KIND_POSITION, KIND_TAP
from keeper.core.errors import ValidationError
from keeper.execution.calls import PlanBuilder, SettlementPlan, opened_position_id
from keeper.execution.settlement import SettlementResult, signature_rejected
from keeper.infra.ledger import LedgerReceipt
from keeper.orchestrator.keeper_loop import KeeperLoop, LoopConfig
from keeper.store import (
    BetStatus,
    BetStore,
    GridStore,
    Order,
    OrderKind,
    OrderStatus,
    OrderStore,
    Position,
    PositionIndex,
    PositionStatus,
    TpSlConfig,
)
from keeper.triggers.evaluator import NOT_ACTIONABLE, Decision

LIMIT_KINDS = (OrderKind.LIMIT_OPEN, OrderKind.LIMIT_CLOSE, OrderKind.STOP_LOSS)
TAP_KINDS = (OrderKind.TAP_TO_TRADE, OrderKind.GRID_CELL)


def _close_attrs(reason: str, now: float):
    def attrs(plan: SettlementPlan, receipts: List[LedgerReceipt]):
        return {"close_reason": reason, "close_price": plan.context["price"], "closed_at": now}
    return attrs


def _execution_attrs(now: float):
    def attrs(plan: SettlementPlan, receipts: List[LedgerReceipt]):
        return {"execution_price": plan.context["price"], "executed_at": now}
    return attrs


class LiquidationMonitor(KeeperLoop):
    def __init__(
        self,
        positions: PositionIndex,
        plans: PlanBuilder,
        prices,
        evaluator,
        sequencer,
        interval_sec: float = 1.0,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            LoopConfig("liquidation", interval_sec, staleness_kind=KIND_POSITION), prices, evaluator, sequencer, **kwargs
        )
        self.positions = positions
        self.plans = plans

    def candidates(self) -> Iterable[Position]:
        return self.positions.open_positions()

    def refresh(self, entity_id: str) -> Optional[Position]:
        return self.positions.get(entity_id)

    def evaluate(self, entity: Position, price: float, now: float) -> Decision:
        return self.evaluator.liquidation(entity, price)

    async def settle(self, entity: Position, decision: Decision, price: float, now: float) -> SettlementResult:
        result = await self.sequencer.settle(
            self.positions,
            entity.id,
            loop=self.name,
            in_progress=PositionStatus.CLOSING,
            success_status=PositionStatus.CLOSED,
            build_plan=lambda p: self.plans.liquidation(p, price),
            success_attrs=_close_attrs(decision.reason, now),
            symbol=entity.symbol,
        )
        if result.ok:
            self.positions.drop_tpsl(entity.id)
        return result


class TpSlMonitor(KeeperLoop):
    """Candidates are TP/SL configs; the claimed entity is the position they belong to."""

    def __init__(
        self,
        positions: PositionIndex,
        plans: PlanBuilder,
        prices,
        evaluator,
        sequencer,
        interval_sec: float = 2.0,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            LoopConfig("tpsl", interval_sec, staleness_kind=KIND_POSITION), prices, evaluator, sequencer, **kwargs
        )
        self.positions = positions
        self.plans = plans

    def candidates(self) -> Iterable[TpSlConfig]:
        return self.positions.tpsl_configs()

    def entity_id(self, entity: TpSlConfig) -> str:
        return entity.position_id

    def refresh(self, entity_id: str) -> Optional[TpSlConfig]:
        return self.positions.get_tpsl(entity_id)

    def evaluate(self, entity: TpSlConfig, price: float, now: float) -> Decision:
        position = self.positions.get(entity.position_id)
        if position is None:
            return NOT_ACTIONABLE
        return self.evaluator.tpsl(entity, position, price)

    async def settle(self, entity: TpSlConfig, decision: Decision, price: float, now: float) -> SettlementResult:
        result = await self.sequencer.settle(
            self.positions,
            entity.position_id,
            loop=self.name,
            in_progress=PositionStatus.CLOSING,
            success_status=PositionStatus.CLOSED,
            build_plan=lambda p: self.plans.close_with_refund(p, price),
            success_attrs=_close_attrs(decision.reason, now),
            symbol=entity.symbol,
        )
        if result.ok:
            self.positions.drop_tpsl(entity.position_id)
            self._log_event(
                "tpsl_closed",
                id=entity.position_id,
                trigger=decision.reason,
                price=price,
                pnl=result.plan.context.get("pnl") if result.plan else None,
                refund=result.plan.context.get("refund") if result.plan else None,
            )
        return result


class _OrderLoop(KeeperLoop):
    """Shared handling for order-backed loops: expiry and position bookkeeping after execution."""

    kinds: tuple = ()

    def __init__(self, config: LoopConfig, orders: OrderStore, positions: PositionIndex, plans: PlanBuilder, *args, **kwargs):
        super().__init__(config, *args, **kwargs)
        self.orders = orders
        self.positions = positions
        self.plans = plans

    def candidates(self) -> Iterable[Order]:
        return self.orders.pending(self.kinds)

    def refresh(self, entity_id: str) -> Optional[Order]:
        return self.orders.get(entity_id)

    def evaluate(self, entity: Order, price: float, now: float) -> Decision:
        return self.evaluator.order(entity, price, now)

    def on_expire(self, entity: Order, decision: Decision) -> None:
        self.orders.transition(entity.id, OrderStatus.EXPIRED, reason=decision.reason)
        self._log_event("order_expired", id=entity.id, kind=entity.kind.name, reason=decision.reason)

    def cleanup(self, now: float) -> int:
        return len(self.orders.cleanup_expired(now))

    def _register_opened(self, order: Order, result: SettlementResult, now: float) -> Optional[Position]:
        """Track the position an executed open created, with the order's TP/SL attached."""
        venue = self.plans.venue(order.venue)
        ledger_id = None
        for receipt in result.receipts:
            ledger_id = opened_position_id(receipt, venue.position_manager)
            if ledger_id is not None:
                break
        if ledger_id is None:
            self._log_event("opened_position_unknown", level="warning", id=order.id, tx_hashes=list(result.tx_hashes))
            return None

        price = result.plan.context["price"]
        position = self.positions.create(
            Position(
                owner=order.owner,
                symbol=order.symbol,
                side=order.side,
                collateral=order.collateral,
                size=order.collateral * order.leverage,
                leverage=order.leverage,
                entry_price=price,
                venue=order.venue,
                opened_at=now,
                ledger_id=ledger_id,
            )
        )
        self.orders.update(order.id, result_position_id=position.id)
        if order.take_profit is not None or order.stop_loss is not None:
            try:
                self.positions.set_tpsl(position.id, order.owner, order.take_profit, order.stop_loss)
            except ValidationError as exc:
                # levels no longer valid against the actual entry price
                self._log_event("order_tpsl_rejected", level="warning", id=order.id, position=position.id, error=str(exc))
        self._log_event("position_opened", id=position.id, order=order.id, ledger_id=ledger_id, entry_price=price)
        return position


class LimitOrderExecutor(_OrderLoop):
    kinds = LIMIT_KINDS

    def __init__(
        self,
        orders: OrderStore,
        positions: PositionIndex,
        plans: PlanBuilder,
        prices,
        evaluator,
        sequencer,
        interval_sec: float = 5.0,
        cleanup_interval_sec: float = 30.0,
        **kwargs: Any,
    ) -> None:
        config = LoopConfig("limit_orders", interval_sec, cleanup_interval_sec, staleness_kind=KIND_ORDER)
        super().__init__(config, orders, positions, plans, prices, evaluator, sequencer, **kwargs)

    async def settle(self, entity: Order, decision: Decision, price: float, now: float) -> SettlementResult:
        result = await self.sequencer.settle(
            self.orders,
            entity.id,
            loop=self.name,
            in_progress=OrderStatus.EXECUTING,
            success_status=OrderStatus.EXECUTED,
            build_plan=lambda o: self.plans.limit_order(o, price),
            success_attrs=_execution_attrs(now),
            symbol=entity.symbol,
        )
        if not result.ok:
            return result
        if entity.kind is OrderKind.LIMIT_OPEN:
            self._register_opened(entity, result, now)
        elif entity.position_id:
            self._mark_closed(entity, decision, price, now)
        return result

    def _mark_closed(self, order: Order, decision: Decision, price: float, now: float) -> None:
        position = self.positions.get(order.position_id)
        if position is None or position.status is not PositionStatus.OPEN:
            self._log_event(
                "closed_position_not_tracked",
                level="warning",
                id=order.id,
                position=order.position_id,
                status=position.status.name if position else None,
            )
            return
        self.positions.transition(position.id, PositionStatus.CLOSING, reason=f"{self.name}_fired")
        self.positions.transition(
            position.id,
            PositionStatus.CLOSED,
            reason=f"{self.name}_settled",
            close_reason=decision.reason,
            close_price=price,
            closed_at=now,
        )
        self.positions.drop_tpsl(position.id)


class TapToTradeExecutor(_OrderLoop):
    """Tap and grid orders; a rejected trader signature parks the order in NEEDS_RESIGN."""

    kinds = TAP_KINDS

    def __init__(
        self,
        orders: OrderStore,
        positions: PositionIndex,
        grid: GridStore,
        plans: PlanBuilder,
        prices,
        evaluator,
        sequencer,
        interval_sec: float = 1.0,
        cleanup_interval_sec: float = 30.0,
        **kwargs: Any,
    ) -> None:
        config = LoopConfig("tap_to_trade", interval_sec, cleanup_interval_sec, staleness_kind=KIND_TAP)
        super().__init__(config, orders, positions, plans, prices, evaluator, sequencer, **kwargs)
        self.grid = grid

    async def settle(self, entity: Order, decision: Decision, price: float, now: float) -> SettlementResult:
        result = await self.sequencer.settle(
            self.orders,
            entity.id,
            loop=self.name,
            in_progress=OrderStatus.EXECUTING,
            success_status=OrderStatus.EXECUTED,
            build_plan=lambda o: self.plans.tap_order(o, price),
            success_attrs=_execution_attrs(now),
            needs_resign=signature_rejected,
            symbol=entity.symbol,
        )
        if not result.ok:
            return result
        self._register_opened(entity, result, now)
        if entity.cell_id:
            cell = self.grid.record_execution(entity.cell_id)
            self._log_event(
                "grid_cell_progress",
                cell=cell.id,
                executed=cell.executed_count,
                click_count=cell.click_count,
                status=cell.status.name,
            )
        return result

    def cleanup(self, now: float) -> int:
        swept = super().cleanup(now)
        expired_cells = self.grid.cleanup(now)
        for cell in expired_cells:
            # orders of a lapsed cell can no longer fill
            self.orders.cancel_where("cell_expired", cell=cell.id)
        return swept + len(expired_cells)


class BetSettlementMonitor(KeeperLoop):
    def __init__(
        self,
        bets: BetStore,
        plans: PlanBuilder,
        prices,
        evaluator,
        sequencer,
        interval_sec: float = 1.0,
        **kwargs: Any,
    ) -> None:
        super().__init__(LoopConfig("bets", interval_sec, staleness_kind=KIND_BET), prices, evaluator, sequencer, **kwargs)
        self.bets = bets
        self.plans = plans

    def candidates(self) -> Iterable[Any]:
        return self.bets.active()

    def refresh(self, entity_id: str):
        return self.bets.get(entity_id)

    def evaluate(self, entity, price: float, now: float) -> Decision:
        return self.evaluator.bet(entity, price, now)

    async def settle(self, entity, decision: Decision, price: float, now: float) -> SettlementResult:
        def attrs(plan: SettlementPlan, receipts: List[LedgerReceipt]):
            return {"settle_price": plan.context["price"], "settled_at": now, "won": plan.context["won"]}

        return await self.sequencer.settle(
            self.bets,
            entity.id,
            loop=self.name,
            in_progress=BetStatus.SETTLING,
            success_status=lambda plan: BetStatus.WON if plan.context["won"] else BetStatus.LOST,
            build_plan=lambda b: self.plans.bet(b, price, now, bool(decision.won)),
            success_attrs=attrs,
            symbol=entity.symbol,
        )
