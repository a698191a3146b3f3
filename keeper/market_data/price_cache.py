"""
Latest-price cache shared by every keeper loop.

Ticks are immutable and replaced whole on update. An update is accepted only
if it is newer than what is stored and younger than the max age. After each
accepted update the full snapshot is offered to every subscriber's bounded
queue; a full queue drops its oldest snapshot and counts the drop, so a slow
subscriber never holds up the feed.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import random
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Deque, Dict, List, Optional, Union

from keeper.config.symbols import StalenessPolicy
from keeper.core.errors import StaleDataError

if TYPE_CHECKING:
    from keeper.monitoring.metrics_rich import KeeperMetrics

log = logging.getLogger("keeper")


class PriceSource(str, Enum):
    STREAM = "stream"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class PriceTick:
    symbol: str
    price: float
    confidence: float
    publish_time: float  # unix seconds
    source: PriceSource = PriceSource.STREAM

    def age(self, now: Optional[float] = None) -> float:
        return (time.time() if now is None else now) - self.publish_time

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "price": self.price,
            "confidence": self.confidence,
            "publish_time": self.publish_time,
            "source": self.source.value,
        }


Snapshot = Dict[str, PriceTick]
SnapshotCallback = Callable[[Snapshot], Union[None, Awaitable[None]]]


class PriceSubscription:
    """
    Bounded, drop-oldest queue of snapshots for one consumer.

    Consume with `drain()` (non-blocking), `await next()`, or by passing a
    callback to `PriceCache.subscribe`, which runs a pump task.
    """

    def __init__(
        self,
        name: str,
        max_queue: int,
        on_drop: Optional[Callable[["PriceSubscription"], None]] = None,
    ) -> None:
        if max_queue <= 0:
            raise ValueError("max_queue must be > 0")
        self.name = name
        self.max_queue = max_queue
        self.dropped = 0
        self.delivered = 0
        self.closed = False
        self._queue: Deque[Snapshot] = deque()
        self._ready = asyncio.Event()
        self._on_drop = on_drop
        self._pump: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._queue)

    def offer(self, snapshot: Snapshot) -> None:
        if self.closed:
            return
        if len(self._queue) >= self.max_queue:
            self._queue.popleft()
            self.dropped += 1
            if self._on_drop:
                self._on_drop(self)
        self._queue.append(snapshot)
        self._ready.set()

    def drain(self) -> List[Snapshot]:
        items = list(self._queue)
        self._queue.clear()
        self._ready.clear()
        self.delivered += len(items)
        return items

    async def next(self) -> Snapshot:
        while not self._queue:
            if self.closed:
                raise RuntimeError(f"subscription {self.name} closed")
            self._ready.clear()
            await self._ready.wait()
        snap = self._queue.popleft()
        if not self._queue:
            self._ready.clear()
        self.delivered += 1
        return snap

    def close(self) -> None:
        self.closed = True
        self._ready.set()
        if self._pump is not None:
            self._pump.cancel()


class PriceCache:
    """
    Args:
        max_age_sec: ticks older than this are rejected on update
        staleness: per symbol / entity kind bound used by `is_stale`
        log_sample: fraction of accepted updates logged at INFO
        subscriber_queue_size: default per-subscriber queue bound
        clock: unix-seconds clock, injectable for tests
    """

    def __init__(
        self,
        max_age_sec: float = 60.0,
        staleness: Optional[StalenessPolicy] = None,
        log_sample: float = 0.01,
        subscriber_queue_size: int = 256,
        metrics: Optional["KeeperMetrics"] = None,
        clock: Callable[[], float] = time.time,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.max_age_sec = max_age_sec
        self.staleness = staleness or StalenessPolicy(default_sec=max_age_sec)
        self._log_sample = log_sample
        self._queue_size = subscriber_queue_size
        self._metrics = metrics
        self._clock = clock
        self._rng = rng or random.Random()
        self._ticks: Dict[str, PriceTick] = {}
        self._subs: List[PriceSubscription] = []
        self.accepted = 0
        self.rejected = 0
        self.last_update: Optional[float] = None

    def update(self, symbol: str, tick: PriceTick) -> bool:
        now = self._clock()
        if tick.price <= 0:
            self._reject(symbol, "non_positive")
            return False
        if now - tick.publish_time > self.max_age_sec:
            self._reject(symbol, "too_old")
            return False
        current = self._ticks.get(symbol)
        if current is not None and tick.publish_time <= current.publish_time:
            self._reject(symbol, "not_newer")
            return False

        self._ticks[symbol] = tick
        self.accepted += 1
        self.last_update = now
        if self._metrics:
            self._metrics.price_updates.labels(symbol=symbol, source=tick.source.value).inc()
        if self._rng.random() < self._log_sample:
            log.info(
                json.dumps(
                    {
                        "event": "price_update",
                        "symbol": symbol,
                        "price": tick.price,
                        "conf": tick.confidence,
                        "publish_time": tick.publish_time,
                        "source": tick.source.value,
                    }
                )
            )
        if self._subs:
            snap = self.snapshot()
            for sub in self._subs:
                sub.offer(snap)
        return True

    def get(self, symbol: str) -> Optional[PriceTick]:
        return self._ticks.get(symbol)

    def snapshot(self) -> Snapshot:
        return dict(self._ticks)

    def prices(self) -> Dict[str, float]:
        return {s: t.price for s, t in self._ticks.items()}

    def symbols(self) -> List[str]:
        return sorted(self._ticks)

    def age(self, symbol: str, now: Optional[float] = None) -> Optional[float]:
        tick = self._ticks.get(symbol)
        if tick is None:
            return None
        return tick.age(self._clock() if now is None else now)

    def is_stale(self, symbol: str, now: Optional[float] = None, kind: Optional[str] = None) -> bool:
        age = self.age(symbol, now)
        if age is None:
            return True
        return age > self.staleness.bound_for(symbol, kind)

    def require_fresh(
        self, symbol: str, now: Optional[float] = None, kind: Optional[str] = None
    ) -> PriceTick:
        """Return the tick or raise StaleDataError if missing or past the bound."""
        bound = self.staleness.bound_for(symbol, kind)
        age = self.age(symbol, now)
        tick = self._ticks.get(symbol)
        if tick is None or age is None or age > bound:
            raise StaleDataError(symbol, age, bound)
        return tick

    def subscribe(
        self,
        callback: Optional[SnapshotCallback] = None,
        max_queue: Optional[int] = None,
        name: Optional[str] = None,
    ) -> PriceSubscription:
        """
        Register a consumer. With a callback a pump task delivers snapshots in
        order, so this must then be called from a running event loop.
        """
        sub = PriceSubscription(
            name=name or f"sub-{len(self._subs) + 1}",
            max_queue=max_queue or self._queue_size,
            on_drop=self._on_drop,
        )
        if callback is not None:
            loop = asyncio.get_running_loop()
            sub._pump = loop.create_task(self._pump(sub, callback), name=f"price-pump:{sub.name}")
        self._subs.append(sub)
        return sub

    def unsubscribe(self, sub: PriceSubscription) -> None:
        sub.close()
        if sub in self._subs:
            self._subs.remove(sub)

    def close(self) -> None:
        for sub in list(self._subs):
            self.unsubscribe(sub)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "symbols": len(self._ticks),
            "accepted": self.accepted,
            "rejected": self.rejected,
            "last_update": self.last_update,
            "subscribers": {s.name: {"queued": len(s), "dropped": s.dropped} for s in self._subs},
        }

    def _reject(self, symbol: str, reason: str) -> None:
        self.rejected += 1
        if self._metrics:
            self._metrics.price_rejected.labels(symbol=symbol, reason=reason).inc()

    def _on_drop(self, sub: PriceSubscription) -> None:
        if self._metrics:
            self._metrics.subscriber_drops.labels(subscriber=sub.name).inc()
        log.warning(
            json.dumps(
                {
                    "event": "subscriber_queue_overflow",
                    "subscriber": sub.name,
                    "dropped": sub.dropped,
                    "max_queue": sub.max_queue,
                }
            )
        )

    async def _pump(self, sub: PriceSubscription, callback: SnapshotCallback) -> None:
        while not sub.closed:
            snap = await sub.next()
            try:
                result = callback(snap)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                log.error(
                    json.dumps({"event": "subscriber_callback_error", "subscriber": sub.name, "error": str(exc)}),
                    exc_info=True,
                )
