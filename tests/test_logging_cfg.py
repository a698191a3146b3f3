"""
Tests for the keeper logging setup: JSON lines, throttling and the async file writer.
"""

import json
import logging

import pytest

from keeper.infra.logging_cfg import (
    AsyncQueueHandler,
    JsonFormatter,
    ThrottledFilter,
    build_logger,
    log_event,
)


def record(msg: str, level: int = logging.WARNING) -> logging.LogRecord:
    return logging.LogRecord("keeper", level, __file__, 1, msg, None, None)


class ListHandler(logging.Handler):
    def __init__(self) -> None:
        super().__init__()
        self.records = []

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(record)


class TestJsonFormatter:
    def test_event_messages_are_merged(self):
        """A JSON event message becomes top-level fields."""
        line = JsonFormatter().format(record(json.dumps({"event": "settled", "id": "ord-1"})))
        data = json.loads(line)
        assert data["event"] == "settled"
        assert data["id"] == "ord-1"
        assert data["level"] == "WARNING"
        assert "msg" not in data

    def test_plain_messages_kept(self):
        """Non-JSON text lands under msg."""
        assert json.loads(JsonFormatter().format(record("hello")))["msg"] == "hello"


class TestThrottledFilter:
    def test_repeats_suppressed_per_symbol(self):
        """A throttled event passes once per symbol within the cooldown."""
        f = ThrottledFilter(cooldown_sec=60.0)
        btc = json.dumps({"event": "price_stale", "symbol": "BTC"})
        eth = json.dumps({"event": "price_stale", "symbol": "ETH"})
        assert f.filter(record(btc))
        assert not f.filter(record(btc))
        assert f.filter(record(eth))

    def test_other_events_pass(self):
        """Only listed events are throttled."""
        f = ThrottledFilter(cooldown_sec=60.0)
        msg = json.dumps({"event": "settlement_partial_failure", "id": "pos-1"})
        assert f.filter(record(msg))
        assert f.filter(record(msg))
        assert f.filter(record("not json"))

    def test_expired_cooldown(self):
        """With a zero cooldown nothing is suppressed."""
        f = ThrottledFilter(cooldown_sec=0.0, throttled_events={"ledger_retry"})
        msg = json.dumps({"event": "ledger_retry", "venue": "base"})
        assert f.filter(record(msg))
        assert f.filter(record(msg))


class TestAsyncQueueHandler:
    def test_records_reach_target_on_close(self):
        """Queued records are written by the worker before close returns."""
        target = ListHandler()
        handler = AsyncQueueHandler(target, max_queue_size=100)
        for i in range(5):
            handler.emit(record(f"line {i}"))
        handler.close()
        assert [r.getMessage() for r in target.records] == [f"line {i}" for i in range(5)]
        handler.emit(record("late"))
        assert len(target.records) == 5


class TestBuildLogger:
    @pytest.fixture
    def logger_name(self, request):
        name = f"keeper.test.{request.node.name}"
        yield name
        logger = logging.getLogger(name)
        for h in list(logger.handlers):
            logger.removeHandler(h)
            h.close()

    def test_console_and_json_file(self, tmp_path, logger_name):
        """Events go to the JSON file; a second call only changes levels."""
        path = tmp_path / "keeper.log"
        logger = build_logger(logger_name, level="debug", file_path=str(path), async_file=False)
        assert logger.level == logging.DEBUG
        assert len(logger.handlers) == 2
        assert logger.propagate is False
        log_event(logger, "settlement_done", entity_id="7", calls=3)
        for h in logger.handlers:
            h.flush()
        line = json.loads(path.read_text().strip())
        assert (line["event"], line["entity_id"], line["calls"]) == ("settlement_done", "7", 3)

        again = build_logger(logger_name, level="WARNING", file_path=str(path))
        assert again is logger
        assert len(logger.handlers) == 2
        assert all(h.level == logging.WARNING for h in logger.handlers)

    def test_no_file(self, logger_name):
        """file_path=None leaves only the console handler."""
        logger = build_logger(logger_name, level="bogus", file_path=None)
        assert len(logger.handlers) == 1
        assert logger.level == logging.INFO
