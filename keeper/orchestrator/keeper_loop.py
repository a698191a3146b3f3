"""
KeeperLoop: periodic scan -> evaluate -> settle cycle shared by all keeper loops.

States: STOPPED -> RUNNING -> STOPPING -> STOPPED.

Each cycle:
    1. skip entirely while the ledger circuit breaker is open
    2. scan candidates; per entity: price fresh? actionable? evaluate
       - stale price: StaleDataError, counted and skipped (not a failure)
       - EXPIRE: moved to its expired status right away
       - FIRE: queued (an entity is queued at most once)
    3. drain the queue one settlement at a time; before each, the entity and
       trigger are re-checked (TriggerRace if either no longer holds)
    4. every `cleanup_interval_sec`, sweep expired entities

`stop()` may be called from anywhere: it only prevents new cycles and new
settlements from starting. A settlement already issuing calls runs to its end.
Per-entity errors are logged with context and never escape the cycle.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Optional, Set, Tuple

from keeper.core.errors import StaleDataError, TriggerRace
from keeper.execution.settlement import SettlementResult, SettlementSequencer
from keeper.market_data.price_cache import PriceCache, PriceTick
from keeper.triggers.evaluator import Action, Decision, TriggerEvaluator

log = logging.getLogger("keeper")


class LoopState(Enum):
    STOPPED = auto()
    RUNNING = auto()
    STOPPING = auto()


@dataclass
class LoopConfig:
    name: str
    interval_sec: float
    cleanup_interval_sec: Optional[float] = None
    staleness_kind: Optional[str] = None
    max_queue: int = 1_000


@dataclass
class CycleResult:
    success: bool
    scanned: int = 0
    fired: int = 0
    expired: int = 0
    stale_skips: int = 0
    settled: int = 0
    errors: int = 0
    skipped_reason: Optional[str] = None
    duration_ms: float = 0.0
    outcomes: Dict[str, int] = field(default_factory=dict)


@dataclass
class _Fired:
    entity_id: str
    symbol: str
    decision: Decision
    price: float


class KeeperLoop:
    """
    Subclasses provide the slice of state the loop owns:

        candidates()                -> entities to look at this cycle
        entity_id(e) / symbol_of(e)
        refresh(entity_id)          -> current snapshot or None
        evaluate(e, price, now)     -> Decision
        on_expire(e, decision)      -> move to the expired status
        settle(e, decision, price, now) -> SettlementResult
        cleanup(now)                -> number of entities swept
    """

    def __init__(
        self,
        config: LoopConfig,
        prices: PriceCache,
        evaluator: TriggerEvaluator,
        sequencer: SettlementSequencer,
        keeper_address: str = "",
        breaker=None,
        metrics=None,
        status_board=None,
        log_event: Optional[Callable[..., None]] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.name = config.name
        self.prices = prices
        self.evaluator = evaluator
        self.sequencer = sequencer
        self.keeper_address = keeper_address
        self._breaker = breaker
        self._metrics = metrics
        self._status_board = status_board
        self._log_event = log_event or self._default_log
        self._clock = clock
        self._sleep = sleep

        self.state = LoopState.STOPPED
        self._stop = asyncio.Event()
        self._queue: Deque[_Fired] = deque()
        self._queued: Set[str] = set()
        self._snapshot: Dict[str, PriceTick] = {}
        self._subscription = None
        self._in_flight: Optional[str] = None
        self._last_cleanup = 0.0
        self._cycle_count = 0
        self._last_cycle: Optional[CycleResult] = None
        self._last_cycle_at: Optional[float] = None
        self._totals = {"fired": 0, "settled": 0, "expired": 0, "stale_skips": 0, "errors": 0, "races": 0}

    def _default_log(self, event: str, level: str = "info", **kwargs: Any) -> None:
        getattr(log, level)(json.dumps({"event": event, "loop": self.name, **kwargs}, default=str))

    # --- subclass hooks ---

    def candidates(self) -> Iterable[Any]:
        raise NotImplementedError

    def entity_id(self, entity: Any) -> str:
        return entity.id

    def symbol_of(self, entity: Any) -> str:
        return entity.symbol

    def refresh(self, entity_id: str) -> Optional[Any]:
        raise NotImplementedError

    def evaluate(self, entity: Any, price: float, now: float) -> Decision:
        raise NotImplementedError

    def on_expire(self, entity: Any, decision: Decision) -> None:
        raise NotImplementedError(f"{self.name} has no expiry")

    async def settle(self, entity: Any, decision: Decision, price: float, now: float) -> SettlementResult:
        raise NotImplementedError

    def cleanup(self, now: float) -> int:
        return 0

    # --- lifecycle ---

    @property
    def is_running(self) -> bool:
        return self.state is LoopState.RUNNING

    def stop(self) -> None:
        """Prevent new cycles and settlements; an in-flight settlement completes."""
        if self.state is LoopState.RUNNING:
            self.state = LoopState.STOPPING
            self._log_event("loop_stopping", in_flight=self._in_flight, queued=len(self._queue))
        self._stop.set()

    async def run(self) -> None:
        if self.state is not LoopState.STOPPED:
            raise RuntimeError(f"{self.name} already running")
        self._stop = asyncio.Event()
        self.state = LoopState.RUNNING
        self._subscription = self.prices.subscribe(self._on_prices, name=self.name)
        self._log_event("loop_started", interval_sec=self.config.interval_sec)
        try:
            while not self._stop.is_set():
                await self.run_cycle()
                await self._publish_status()
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=self.config.interval_sec)
                except asyncio.TimeoutError:
                    pass
        finally:
            self.prices.unsubscribe(self._subscription)
            self._subscription = None
            self.state = LoopState.STOPPED
            self._log_event("loop_stopped", cycles=self._cycle_count)
            await self._publish_status()

    def _on_prices(self, snapshot: Dict[str, PriceTick]) -> None:
        self._snapshot = snapshot

    # --- cycle ---

    async def run_cycle(self, now: Optional[float] = None) -> CycleResult:
        start = time.perf_counter()
        self._cycle_count += 1
        now = self._clock() if now is None else now

        if self._breaker is not None and self._breaker.is_tripped:
            self._log_event(
                "circuit_open_skip", level="warning", cooldown_remaining=round(self._breaker.cooldown_remaining, 1)
            )
            result = CycleResult(success=True, skipped_reason="circuit_open")
            return self._finish(result, start)

        result = CycleResult(success=True)
        try:
            self._scan(now, result)
        except Exception as exc:
            # candidate enumeration itself failed
            result.success = False
            result.errors += 1
            self._record_error(exc, stage="scan")

        await self._drain(result)

        if self.config.cleanup_interval_sec and now - self._last_cleanup >= self.config.cleanup_interval_sec:
            self._last_cleanup = now
            try:
                swept = self.cleanup(now)
            except Exception as exc:
                result.errors += 1
                self._record_error(exc, stage="cleanup")
            else:
                result.expired += swept
                if swept and self._metrics:
                    self._metrics.entities_expired.labels(loop=self.name).inc(swept)

        return self._finish(result, start)

    def _scan(self, now: float, result: CycleResult) -> None:
        entities = list(self.candidates())
        if self._metrics:
            self._metrics.tracked_entities.labels(loop=self.name).set(len(entities))
        for entity in entities:
            result.scanned += 1
            entity_id = self.entity_id(entity)
            if entity_id in self._queued:
                continue
            try:
                symbol = self.symbol_of(entity)
                tick = self._fresh_price(symbol, now)
                decision = self.evaluate(entity, tick.price, now)
                if decision.action is Action.EXPIRE:
                    self.on_expire(entity, decision)
                    result.expired += 1
                    if self._metrics:
                        self._metrics.entities_expired.labels(loop=self.name).inc()
                elif decision.action is Action.FIRE:
                    self._enqueue(_Fired(entity_id, symbol, decision, tick.price))
                    result.fired += 1
            except StaleDataError as exc:
                result.stale_skips += 1
                if self._metrics:
                    self._metrics.stale_skips.labels(loop=self.name, symbol=exc.symbol).inc()
                self._log_event("price_stale", level="debug", id=entity_id, symbol=exc.symbol, age=exc.age_sec)
            except Exception as exc:
                result.errors += 1
                self._record_error(exc, stage="evaluate", id=entity_id)

    def _fresh_price(self, symbol: str, now: float) -> PriceTick:
        """Latest pushed tick (cache read before the first push), checked against the staleness bound."""
        tick = self._snapshot.get(symbol) or self.prices.get(symbol)
        bound = self.prices.staleness.bound_for(symbol, self.config.staleness_kind)
        if tick is None:
            raise StaleDataError(symbol, None, bound)
        age = tick.age(now)
        if age > bound:
            raise StaleDataError(symbol, age, bound)
        return tick

    def _enqueue(self, fired: _Fired) -> None:
        if len(self._queue) >= self.config.max_queue:
            self._log_event("settlement_queue_full", level="warning", id=fired.entity_id, size=len(self._queue))
            return
        self._queue.append(fired)
        self._queued.add(fired.entity_id)
        if self._metrics:
            self._metrics.triggers_fired.labels(loop=self.name, reason=fired.decision.reason).inc()
            self._metrics.loop_queue_depth.labels(loop=self.name).set(len(self._queue))
        self._log_event("trigger_fired", id=fired.entity_id, symbol=fired.symbol, reason=fired.decision.reason, price=fired.price)

    async def _drain(self, result: CycleResult) -> None:
        while self._queue and not self._stop.is_set():
            fired = self._queue.popleft()
            self._queued.discard(fired.entity_id)
            if self._metrics:
                self._metrics.loop_queue_depth.labels(loop=self.name).set(len(self._queue))
            self._in_flight = fired.entity_id
            try:
                settlement = await self._settle_one(fired)
            except TriggerRace as exc:
                self._totals["races"] += 1
                self._log_event("trigger_race", level="debug", id=fired.entity_id, reason=str(exc))
                continue
            except Exception as exc:
                result.errors += 1
                self._record_error(exc, stage="settle", id=fired.entity_id)
                continue
            finally:
                self._in_flight = None
            result.settled += 1
            key = settlement.outcome.value
            result.outcomes[key] = result.outcomes.get(key, 0) + 1

    async def _settle_one(self, fired: _Fired) -> SettlementResult:
        """Re-check entity and trigger against the current price, then settle."""
        now = self._clock()
        entity = self.refresh(fired.entity_id)
        if entity is None:
            raise TriggerRace(f"{fired.entity_id} disappeared")
        try:
            tick = self._fresh_price(fired.symbol, now)
        except StaleDataError as exc:
            raise TriggerRace(f"price went stale before settlement: {exc}") from exc
        decision = self.evaluate(entity, tick.price, now)
        if not decision.fired:
            raise TriggerRace(f"trigger no longer holds ({decision.reason})")
        return await self.settle(entity, decision, tick.price, now)

    def _record_error(self, exc: BaseException, stage: str, **context: Any) -> None:
        self._totals["errors"] += 1
        if self._metrics:
            self._metrics.loop_errors.labels(loop=self.name, error_type=type(exc).__name__).inc()
        self._log_event(
            "loop_entity_error",
            level="error",
            stage=stage,
            error_type=type(exc).__name__,
            error=str(exc),
            **context,
        )

    def _finish(self, result: CycleResult, start: float) -> CycleResult:
        result.duration_ms = (time.perf_counter() - start) * 1000
        self._last_cycle = result
        self._last_cycle_at = self._clock()
        for key in ("fired", "settled", "expired", "stale_skips"):
            self._totals[key] += getattr(result, key)
        if self._metrics:
            self._metrics.loop_scans.labels(loop=self.name).inc()
            self._metrics.loop_scan_ms.labels(loop=self.name).observe(result.duration_ms)
        if result.fired or result.expired or result.errors:
            self._log_event(
                "cycle_done",
                cycle=self._cycle_count,
                scanned=result.scanned,
                fired=result.fired,
                settled=result.settled,
                expired=result.expired,
                stale_skips=result.stale_skips,
                errors=result.errors,
                outcomes=result.outcomes,
                duration_ms=round(result.duration_ms, 1),
            )
        return result

    async def _publish_status(self) -> None:
        if self._status_board is not None:
            await self._status_board.update(self.name, self.status())

    def status(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "is_running": self.is_running,
            "state": self.state.name,
            "check_interval": self.config.interval_sec,
            "tracked_prices": sorted(self._snapshot) if self._snapshot else self.prices.symbols(),
            "keeper_address": self.keeper_address,
            "cycles": self._cycle_count,
            "queued": len(self._queue),
            "in_flight": self._in_flight,
            "last_cycle_at": self._last_cycle_at,
            "totals": dict(self._totals),
        }
