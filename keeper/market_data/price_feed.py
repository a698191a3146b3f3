"""
Pyth Hermes price ingress.

Streams `price_update` messages over WebSocket into the PriceCache. On
disconnect it reconnects with an exponential delay (`base * 2**(attempt-1)`,
capped); once the attempt budget is spent it switches to REST polling for a
fixed window (ticks tagged FALLBACK), then tries the stream again.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Mapping, Optional

import aiohttp

from keeper.config.symbols import SymbolConfig
from keeper.core import json_utils
from keeper.core.errors import TransportError
from keeper.infra.price_client import HermesClient
from keeper.market_data.price_cache import PriceCache, PriceSource, PriceTick

if TYPE_CHECKING:
    from keeper.monitoring.alerting import AlertManager
    from keeper.monitoring.metrics_rich import KeeperMetrics

log = logging.getLogger("keeper")


class FeedState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FALLBACK = "fallback"
    STOPPED = "stopped"


def normalize_feed_id(feed_id: str) -> str:
    fid = feed_id.lower()
    return fid[2:] if fid.startswith("0x") else fid


def _tick_from_price(
    symbol: str, price_obj: Mapping[str, Any], source: PriceSource
) -> Optional[PriceTick]:
    try:
        expo = int(price_obj["expo"])
        price = int(price_obj["price"]) * (10 ** expo)
        conf = int(price_obj.get("conf", 0)) * (10 ** expo)
        publish_time = float(price_obj["publish_time"])
    except (KeyError, TypeError, ValueError):
        return None
    return PriceTick(symbol=symbol, price=price, confidence=conf, publish_time=publish_time, source=source)


def parse_price_message(msg: Mapping[str, Any], id_to_symbol: Mapping[str, str]) -> Optional[PriceTick]:
    """
    Parse a Hermes WebSocket message.

    {"type": "price_update", "price_feed": {"id": "e62d...", "price":
     {"price": "6500012345678", "conf": "1234", "expo": -8, "publish_time": 1700000000}}}

    Returns None for other message types and unknown feed ids.
    """
    if msg.get("type") != "price_update":
        return None
    feed = msg.get("price_feed")
    if not isinstance(feed, Mapping):
        return None
    symbol = id_to_symbol.get(normalize_feed_id(str(feed.get("id", ""))))
    if symbol is None or not isinstance(feed.get("price"), Mapping):
        return None
    return _tick_from_price(symbol, feed["price"], PriceSource.STREAM)


def parse_rest_update(item: Mapping[str, Any], id_to_symbol: Mapping[str, str]) -> Optional[PriceTick]:
    """Parse one entry of the REST `parsed` list; same shape as `price_feed`."""
    if not isinstance(item, Mapping):
        return None
    symbol = id_to_symbol.get(normalize_feed_id(str(item.get("id", ""))))
    if symbol is None or not isinstance(item.get("price"), Mapping):
        return None
    return _tick_from_price(symbol, item["price"], PriceSource.FALLBACK)


class PythPriceFeed:
    """
    Args:
        cache: destination PriceCache
        symbols: symbol -> SymbolConfig (feed ids)
        rest: HermesClient used for the fallback window
        max_reconnect_attempts: stream attempts before falling back
        reconnect_base_sec: delay before attempt n is `base * 2**(n-1)`
        max_reconnect_delay_sec: cap on that delay
        fallback_poll_sec / fallback_window_sec: REST cadence and duration
        stale_after_sec: no accepted tick for this long reports "stale"
    """

    def __init__(
        self,
        cache: PriceCache,
        symbols: Mapping[str, SymbolConfig],
        rest: HermesClient,
        ws_url: str = "wss://hermes.pyth.network/ws",
        max_reconnect_attempts: int = 5,
        reconnect_base_sec: float = 5.0,
        max_reconnect_delay_sec: float = 60.0,
        fallback_poll_sec: float = 2.0,
        fallback_window_sec: float = 60.0,
        stale_after_sec: float = 30.0,
        session: Optional[aiohttp.ClientSession] = None,
        metrics: Optional["KeeperMetrics"] = None,
        alerts: Optional["AlertManager"] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.cache = cache
        self.ws_url = ws_url
        self._rest = rest
        self._id_to_symbol: Dict[str, str] = {
            normalize_feed_id(cfg.pyth_price_id): sym for sym, cfg in symbols.items()
        }
        self._max_attempts = max_reconnect_attempts
        self._base_delay = reconnect_base_sec
        self._max_delay = max_reconnect_delay_sec
        self._poll_sec = fallback_poll_sec
        self._window_sec = fallback_window_sec
        self._stale_after = stale_after_sec
        self._session = session
        self._owns_session = session is None
        self._metrics = metrics
        self._alerts = alerts
        self._sleep = sleep
        self.state = FeedState.IDLE
        self.reconnect_attempts = 0
        self.messages = 0
        self.last_message_at: Optional[float] = None
        self._stopping = False
        self._recovering = False
        self._task: Optional[asyncio.Task] = None

    @property
    def feed_ids(self) -> list[str]:
        return list(self._id_to_symbol)

    @property
    def symbols(self) -> list[str]:
        return sorted(self._id_to_symbol.values())

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._stopping = False
            self._task = asyncio.create_task(self.run(), name="pyth-feed")
            self._task.add_done_callback(self._on_task_done)
        return self._task

    def _on_task_done(self, task: asyncio.Task) -> None:
        if task.cancelled() or self._stopping:
            return
        exc = task.exception()
        if exc is None:
            return
        log.error(
            json.dumps({"event": "feed_crashed", "error": str(exc), "restarting": True}),
            exc_info=(type(exc), exc, exc.__traceback__),
        )
        self.start()

    def reconnect_delay(self, attempt: int) -> float:
        return min(self._base_delay * (2 ** (attempt - 1)), self._max_delay)

    async def stop(self) -> None:
        self._stopping = True
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None
        self._set_state(FeedState.STOPPED)

    async def run(self) -> None:
        while not self._stopping:
            try:
                await self._stream_once()
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
                log.warning(json.dumps({"event": "feed_error", "error": str(exc), "attempt": self.reconnect_attempts}))
            except Exception as exc:
                log.exception(
                    json.dumps({"event": "feed_unexpected_error", "error": str(exc), "attempt": self.reconnect_attempts})
                )
            if self._stopping:
                break

            self.reconnect_attempts += 1
            if self.reconnect_attempts > self._max_attempts:
                await self._run_fallback()
                self.reconnect_attempts = 0
                continue

            delay = self.reconnect_delay(self.reconnect_attempts)
            self._set_state(FeedState.RECONNECTING)
            if self._metrics:
                self._metrics.feed_reconnects.inc()
            log.warning(
                json.dumps(
                    {
                        "event": "feed_reconnect",
                        "attempt": self.reconnect_attempts,
                        "max_attempts": self._max_attempts,
                        "delay_sec": delay,
                    }
                )
            )
            await self._sleep(delay)

    async def _stream_once(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        self._set_state(FeedState.CONNECTING)
        async with self._session.ws_connect(self.ws_url, heartbeat=30) as ws:
            await ws.send_str(json_utils.dumps({"type": "subscribe", "ids": self.feed_ids}))
            self._set_state(FeedState.CONNECTED)
            log.info(json.dumps({"event": "feed_connected", "url": self.ws_url, "symbols": self.symbols}))
            self.reconnect_attempts = 0
            if self._recovering:
                self._recovering = False
                if self._alerts:
                    await self._alerts.alert_feed(False, "stream reconnected after REST fallback")
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self.handle_message(msg.data)
                elif msg.type in (aiohttp.WSMsgType.ERROR, aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.CLOSING):
                    break
        log.warning(json.dumps({"event": "feed_disconnected", "url": self.ws_url}))

    def handle_message(self, raw: str | bytes | Mapping[str, Any]) -> Optional[PriceTick]:
        """Parse one stream message and push it into the cache; returns the accepted tick."""
        self.messages += 1
        if isinstance(raw, Mapping):
            data = raw
        else:
            try:
                data = json_utils.loads(raw)
            except ValueError:
                log.debug(json.dumps({"event": "feed_bad_message"}))
                return None
            if not isinstance(data, Mapping):
                return None
        try:
            tick = parse_price_message(data, self._id_to_symbol)
        except Exception as exc:
            # one bad message must not take the stream down
            log.warning(json.dumps({"event": "feed_bad_message", "error": str(exc)}))
            return None
        if tick is None:
            return None
        if self.cache.update(tick.symbol, tick):
            self.last_message_at = time.time()
            return tick
        return None

    async def poll_once(self) -> int:
        """One REST fallback poll; returns how many ticks the cache accepted."""
        try:
            items = await self._rest.latest_price_updates(self.feed_ids)
        except TransportError as exc:
            log.warning(json.dumps({"event": "feed_fallback_poll_failed", "error": str(exc)}))
            return 0
        accepted = 0
        for item in items:
            tick = parse_rest_update(item, self._id_to_symbol)
            if tick is not None and self.cache.update(tick.symbol, tick):
                accepted += 1
        if accepted:
            self.last_message_at = time.time()
        return accepted

    async def _run_fallback(self) -> None:
        self._set_state(FeedState.FALLBACK)
        self._recovering = True
        reason = f"stream down after {self._max_attempts} reconnect attempts"
        log.error(json.dumps({"event": "feed_fallback_start", "reason": reason, "window_sec": self._window_sec}))
        if self._alerts:
            await self._alerts.alert_feed(True, reason, window_sec=self._window_sec)
        deadline = time.monotonic() + self._window_sec
        while not self._stopping and time.monotonic() < deadline:
            await self.poll_once()
            await self._sleep(self._poll_sec)
        log.info(json.dumps({"event": "feed_fallback_end", "retrying_stream": not self._stopping}))

    def health(self, now: Optional[float] = None) -> Dict[str, Any]:
        """connected / stale / disconnected, plus last update and monitored assets."""
        now = time.time() if now is None else now
        if self.state in (FeedState.CONNECTED, FeedState.FALLBACK):
            if self.last_message_at is not None and now - self.last_message_at <= self._stale_after:
                status = "connected"
            else:
                status = "stale"
        else:
            status = "disconnected"
        return {
            "status": status,
            "state": self.state.value,
            "last_update": self.last_message_at,
            "assets_monitored": len(self._id_to_symbol),
            "symbols": self.symbols,
            "reconnect_attempts": self.reconnect_attempts,
            "fallback_active": self.state == FeedState.FALLBACK,
        }

    def _set_state(self, state: FeedState) -> None:
        if state == self.state:
            return
        self.state = state
        if self._metrics:
            self._metrics.feed_connected.set(1 if state == FeedState.CONNECTED else 0)
            self._metrics.feed_fallback_active.set(1 if state == FeedState.FALLBACK else 0)
