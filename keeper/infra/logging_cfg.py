"""
Structured logging setup for the keeper.

- Rich console handler for operators, JSON lines to file for ingestion
- File writes go through a background thread so scans never block on disk
- Repetitive warnings (feed reconnects, ledger retries) are throttled per symbol
"""

from __future__ import annotations

import atexit
import json
import logging
import queue
import sys
import threading
import time
from datetime import datetime
from typing import Dict, Optional, Set

from rich.logging import RichHandler

DEFAULT_THROTTLED_EVENTS = frozenset(
    {
        "feed_reconnect",
        "price_stale",
        "ledger_retry",
        "subscriber_queue_overflow",
        "circuit_open_skip",
    }
)


class JsonFormatter(logging.Formatter):
    """One JSON object per line; embedded JSON messages are merged, not quoted."""

    def format(self, record: logging.LogRecord) -> str:
        ts = record.created
        payload = {
            "ts": ts,
            "ts_iso": datetime.fromtimestamp(ts).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "name": record.name,
        }
        msg = record.getMessage()
        data = _parse_event(msg)
        if data is not None:
            payload.update(data)
        else:
            payload["msg"] = msg
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, separators=(",", ":"), default=str)


class AsyncQueueHandler(logging.Handler):
    """
    Queue records and let a daemon thread hand them to the target handler.

    The queue is bounded; records that do not fit are counted and dropped
    and the total is reported on close.
    """

    def __init__(self, target_handler: logging.Handler, max_queue_size: int = 10000):
        super().__init__()
        self._queue: queue.Queue = queue.Queue(maxsize=max_queue_size)
        self._target = target_handler
        self._shutdown = False
        self.dropped = 0
        self._thread = threading.Thread(target=self._worker, daemon=True, name="keeper-log-writer")
        self._thread.start()
        atexit.register(self.close)

    def emit(self, record: logging.LogRecord) -> None:
        if self._shutdown:
            return
        try:
            self._queue.put_nowait(record)
        except queue.Full:
            self.dropped += 1

    def _worker(self) -> None:
        while not self._shutdown or not self._queue.empty():
            try:
                record = self._queue.get(timeout=0.1)
            except queue.Empty:
                continue
            try:
                self._target.emit(record)
            except Exception:
                self._target.handleError(record)
            finally:
                self._queue.task_done()

    def close(self) -> None:
        if self._shutdown:
            return
        self._shutdown = True
        if self._thread.is_alive():
            self._thread.join(timeout=2.0)
        if self.dropped > 0:
            sys.stderr.write(f"[logging] Dropped {self.dropped} log records due to queue overflow\n")
        self._target.close()
        super().close()


class ThrottledFilter(logging.Filter):
    """
    Let the first occurrence of a throttled event through, then suppress
    repeats for `cooldown_sec`. Repeats are keyed by event plus symbol and
    venue, so a stale BTC feed does not hide a stale ETH feed.
    """

    def __init__(self, cooldown_sec: float = 30.0, throttled_events: Optional[Set[str]] = None):
        super().__init__()
        self._cooldown = cooldown_sec
        self._last_seen: Dict[str, float] = {}
        self._throttled_events = set(throttled_events or DEFAULT_THROTTLED_EVENTS)

    def filter(self, record: logging.LogRecord) -> bool:
        data = _parse_event(record.getMessage())
        if data is None:
            return True
        event = data.get("event", "")
        if event not in self._throttled_events:
            return True

        now = time.monotonic()
        key = f"{event}:{data.get('symbol', '')}:{data.get('venue', '')}"
        last = self._last_seen.get(key)
        if last is not None and now - last < self._cooldown:
            return False
        self._last_seen[key] = now
        return True


def _parse_event(msg: str) -> Optional[dict]:
    if not msg.startswith("{"):
        return None
    try:
        data = json.loads(msg)
    except (json.JSONDecodeError, TypeError):
        return None
    return data if isinstance(data, dict) else None


def build_logger(
    name: str = "keeper",
    level: int | str = logging.INFO,
    file_path: Optional[str] = "keeper.log",
    async_file: bool = True,
    throttle_warnings: bool = True,
) -> logging.Logger:
    """
    Build the process logger. Calling it again only updates levels.

    Args:
        name: Logger name; modules log through `logging.getLogger("keeper")`
        level: Minimum level (int or name such as "INFO")
        file_path: JSON lines file, None to disable
        async_file: Write the file from a background thread
        throttle_warnings: Attach ThrottledFilter to the console handler
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if logger.handlers:
        for h in logger.handlers:
            h.setLevel(level)
        return logger

    console = RichHandler(
        rich_tracebacks=False,
        show_time=True,
        show_level=True,
        show_path=False,
        markup=False,
    )
    console.setLevel(level)
    console.setFormatter(logging.Formatter("%(message)s"))
    if throttle_warnings:
        console.addFilter(ThrottledFilter(cooldown_sec=30.0))
    logger.addHandler(console)

    if file_path:
        file_handler = logging.FileHandler(file_path)
        file_handler.setFormatter(JsonFormatter())
        file_handler.setLevel(level)
        if async_file:
            handler: logging.Handler = AsyncQueueHandler(file_handler, max_queue_size=10000)
            handler.setLevel(level)
            logger.addHandler(handler)
        else:
            logger.addHandler(file_handler)

    logger.propagate = False
    return logger


def log_event(logger: logging.Logger, event: str, level: int = logging.INFO, **data) -> None:
    """
    Log a structured event.

    Usage:
        log_event(log, "settlement_done", entity_id="7", calls=3)
    """
    logger.log(level, json.dumps({"event": event, **data}, default=str))
