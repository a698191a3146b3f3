"""
Keeper wiring and supervision.

`Keeper` builds every component from Settings and the two signer accounts,
runs the five loops under one TaskGroup and tears everything down in order.
Ledgers can be injected (tests, dry runs); otherwise one Web3Ledger per venue
signs as the keeper account.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Coroutine, Dict, List, Optional, Set

from keeper.auth import SessionAuthValidator
from keeper.config.config import Settings
from keeper.execution import GasBudgets, PlanBuilder, PriceSigner, SettlementSequencer
from keeper.infra.ledger import LedgerClient, Web3Ledger
from keeper.infra.nonce import NonceManager
from keeper.infra.price_client import HermesClient
from keeper.intake import IntakeService, KeeperQueries
from keeper.market_data.price_cache import PriceCache
from keeper.market_data.price_feed import PythPriceFeed
from keeper.monitoring import AlertManager, HealthChecker, KeeperMetrics, StatusBoard
from keeper.orchestrator import (
    BetSettlementMonitor,
    KeeperLoop,
    LimitOrderExecutor,
    LiquidationMonitor,
    TapToTradeExecutor,
    TpSlMonitor,
)
from keeper.risk import CircuitBreaker, CircuitBreakerConfig
from keeper.store import BetStore, GridStore, OrderStore, PositionIndex
from keeper.triggers import MarginRiskEvaluator, TriggerEvaluator

log = logging.getLogger("keeper")

HEALTH_INTERVAL_SEC = 5.0


class Keeper:
    def __init__(
        self,
        cfg: Settings,
        keeper_account,
        price_account,
        metrics: Optional[KeeperMetrics] = None,
        status_board: Optional[StatusBoard] = None,
        health: Optional[HealthChecker] = None,
        alerts: Optional[AlertManager] = None,
        ledgers: Optional[Dict[str, LedgerClient]] = None,
    ) -> None:
        self.cfg = cfg
        self.metrics = metrics
        self.status_board = status_board
        self.health = health
        self.alerts = alerts
        self._background: Set[asyncio.Task] = set()
        self._health_task: Optional[asyncio.Task] = None
        self._stopping = False

        self.venues = cfg.load_venues()
        self.symbols = cfg.load_symbols()
        self.prices = PriceCache(
            max_age_sec=cfg.price_max_age_sec,
            staleness=cfg.staleness_policy(self.symbols),
            log_sample=cfg.price_log_sample,
            subscriber_queue_size=cfg.subscriber_queue_size,
            metrics=metrics,
        )

        self.orders = OrderStore()
        self.positions = PositionIndex()
        self.bets = BetStore()
        self.grid = GridStore()

        self.ledgers: Dict[str, LedgerClient] = ledgers or {
            name: Web3Ledger(
                name,
                venue.rpc_url,
                venue.chain_id,
                keeper_account,
                request_timeout=cfg.http_timeout,
                retries=cfg.ledger_call_retries,
            )
            for name, venue in self.venues.items()
        }
        self.nonces = NonceManager(self._pending_nonce)
        self.breaker = CircuitBreaker(
            CircuitBreakerConfig(error_threshold=cfg.circuit_error_threshold, cooldown_sec=cfg.circuit_cooldown_sec),
            on_trip=self._on_circuit_trip,
            on_reset=self._on_circuit_reset,
        )

        self.price_signer = PriceSigner(
            price_account, expected_address=cfg.price_signer_address, lag_sec=cfg.attestation_lag_sec
        )
        self.plans = PlanBuilder(
            self.venues,
            self.price_signer,
            keeper_account.address,
            fee_rate_bps=cfg.fee_rate_bps,
            keeper_share_bps=cfg.keeper_share_bps,
            gas=GasBudgets(cfg.gas_close, cfg.gas_limit_open, cfg.gas_transfer, cfg.gas_bet_settle),
        )
        self.evaluator = TriggerEvaluator(self.symbols, MarginRiskEvaluator(cfg.liquidation_threshold_bps))
        self.sequencer = SettlementSequencer(
            self.ledgers,
            self.nonces,
            inter_call_delay=cfg.inter_call_delay_sec,
            receipt_timeout=cfg.receipt_timeout_sec,
            max_attempts=cfg.max_settlement_attempts,
            breaker=self.breaker,
            metrics=metrics,
            alerts=alerts,
        )

        shared = dict(
            keeper_address=keeper_account.address,
            breaker=self.breaker,
            metrics=metrics,
            status_board=status_board,
        )
        common = (self.prices, self.evaluator, self.sequencer)
        self.loops: List[KeeperLoop] = [
            LiquidationMonitor(self.positions, self.plans, *common, interval_sec=cfg.liquidation_interval_sec, **shared),
            TpSlMonitor(self.positions, self.plans, *common, interval_sec=cfg.tpsl_interval_sec, **shared),
            LimitOrderExecutor(
                self.orders,
                self.positions,
                self.plans,
                *common,
                interval_sec=cfg.limit_order_interval_sec,
                cleanup_interval_sec=cfg.cleanup_interval_sec,
                **shared,
            ),
            TapToTradeExecutor(
                self.orders,
                self.positions,
                self.grid,
                self.plans,
                *common,
                interval_sec=cfg.tap_interval_sec,
                cleanup_interval_sec=cfg.cleanup_interval_sec,
                **shared,
            ),
            BetSettlementMonitor(self.bets, self.plans, *common, interval_sec=cfg.bet_interval_sec, **shared),
        ]

        self.hermes = HermesClient(cfg.hermes_rest_url, timeout=cfg.http_timeout)
        self.feed = PythPriceFeed(
            self.prices,
            self.symbols,
            self.hermes,
            ws_url=cfg.pyth_ws_url,
            max_reconnect_attempts=cfg.feed_max_reconnect_attempts,
            reconnect_base_sec=cfg.feed_reconnect_base_sec,
            max_reconnect_delay_sec=cfg.feed_max_reconnect_delay_sec,
            fallback_poll_sec=cfg.fallback_poll_sec,
            fallback_window_sec=cfg.fallback_window_sec,
            metrics=metrics,
            alerts=alerts,
        )

        known_contracts = [a for v in self.venues.values() for a in v.executor_addresses()]
        self.validator = SessionAuthValidator(known_contracts)
        self.intake = IntakeService(
            self.orders,
            self.positions,
            self.bets,
            self.grid,
            self.validator,
            self.venues,
            symbols=list(self.symbols) or None,
        )
        self.queries = KeeperQueries(
            self.prices,
            self.orders,
            self.positions,
            self.bets,
            self.grid,
            loops=self.loops,
            sequencer=self.sequencer,
            feed=self.feed,
            price_signer=self.price_signer,
        )

    @property
    def loop_names(self) -> List[str]:
        return [loop.name for loop in self.loops]

    async def _pending_nonce(self, venue: str, address: str) -> int:
        return await self.ledgers[venue].pending_nonce(address)

    # circuit breaker callbacks are sync; alert delivery runs in the background

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _on_circuit_trip(self, where: str, cooldown: float) -> None:
        if self.metrics:
            self.metrics.circuit_tripped.set(1)
        if self.health:
            self.health.set_component_health("ledger", False, f"circuit open after {where}")
        if self.alerts:
            self._spawn(self.alerts.alert_circuit_breaker(True, where, cooldown_sec=cooldown))

    def _on_circuit_reset(self) -> None:
        if self.metrics:
            self.metrics.circuit_tripped.set(0)
        if self.health:
            self.health.set_component_health("ledger", True)
        if self.alerts:
            self._spawn(self.alerts.alert_circuit_breaker(False, "cooldown elapsed"))

    def status_extra(self) -> Dict[str, Any]:
        return {
            "stats": self.queries.stats,
            "feed": self.queries.feed_status,
            "nonces": self.nonces.get_stats,
            "circuit": self.breaker.get_state,
        }

    # lifecycle

    async def run(self) -> None:
        """Run the feed and all loops until stop(); one crashed loop stops the rest."""
        self._stopping = False
        self.feed.start()
        if self.health:
            self.health.set_component_health("ledger", True)
            self._health_task = asyncio.create_task(self._health_watch(), name="health-watch")
        crashes: List[Exception] = []
        try:
            async with asyncio.TaskGroup() as tg:
                for loop in self.loops:
                    tg.create_task(self._watch_loop(loop, crashes), name=f"loop:{loop.name}")
                if self.health:
                    self.health.set_ready(True)
        finally:
            if self.health:
                self.health.set_ready(False)
        if crashes:
            raise ExceptionGroup("keeper loops crashed", crashes)

    async def _watch_loop(self, loop: KeeperLoop, crashes: List[Exception]) -> None:
        # a crash must not escape into the task group: that would cancel the
        # siblings mid-settlement instead of letting them drain
        if self._stopping:
            return
        try:
            await loop.run()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.error(json.dumps({"event": "loop_crashed", "loop": loop.name, "error": str(exc)}))
            crashes.append(exc)
            self.stop()
            if self.alerts:
                try:
                    await self.alerts.alert_loop_crashed(loop.name, str(exc))
                except Exception as alert_exc:
                    log.warning(json.dumps({"event": "alert_error", "loop": loop.name, "error": str(alert_exc)}))

    async def _health_watch(self) -> None:
        while True:
            feed = self.feed.health()
            self.health.set_component_health("price_feed", feed["status"] != "disconnected", feed["status"])
            for loop in self.loops:
                self.health.set_component_health(f"loop:{loop.name}", loop.is_running)
            await asyncio.sleep(HEALTH_INTERVAL_SEC)

    def stop(self) -> None:
        self._stopping = True
        for loop in self.loops:
            loop.stop()

    async def close(self) -> None:
        self.stop()
        if self._health_task is not None:
            self._health_task.cancel()
            await asyncio.gather(self._health_task, return_exceptions=True)
        await self.feed.stop()
        await self.hermes.close()
        self.prices.close()
        await self.nonces.close()
        for name, ledger in self.ledgers.items():
            try:
                await ledger.close()
            except Exception as exc:
                log.warning(json.dumps({"event": "ledger_close_error", "venue": name, "error": str(exc)}))
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
