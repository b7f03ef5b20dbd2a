"""
Tests for structured logging helpers.
"""
import logging
import sys

from xsettle.core.json_utils import dumps, loads
from xsettle.infra.logging_cfg import JsonFormatter, ThrottledFilter, build_logger, log_event


def make_record(msg: str, level: int = logging.INFO) -> logging.LogRecord:
    return logging.LogRecord("xsettle.test", level, __file__, 1, msg, None, None)


class ListHandler(logging.Handler):
    def __init__(self):
        super().__init__()
        self.records = []

    def emit(self, record):
        self.records.append(record)


class TestJsonFormatter:
    def test_fields(self):
        out = loads(JsonFormatter().format(make_record("hello")))
        assert out["msg"] == "hello"
        assert out["level"] == "INFO"
        assert out["name"] == "xsettle.test"
        assert "ts_iso" in out
        assert "exc_info" not in out

    def test_exception_included(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", None, sys.exc_info())
        out = loads(JsonFormatter().format(record))
        assert "RuntimeError: boom" in out["exc_info"]


class TestThrottledFilter:
    def test_repeats_suppressed_per_deal(self):
        f = ThrottledFilter(cooldown_sec=60.0)
        tick_a = dumps({"event": "event_poll_tick", "deal_id": "0xa"})
        tick_b = dumps({"event": "event_poll_tick", "deal_id": "0xb"})
        assert f.filter(make_record(tick_a))
        assert not f.filter(make_record(tick_a))
        assert f.filter(make_record(tick_b))

    def test_other_events_pass(self):
        f = ThrottledFilter(cooldown_sec=60.0)
        msg = dumps({"event": "run_started", "deal_id": "0xa"})
        assert f.filter(make_record(msg))
        assert f.filter(make_record(msg))

    def test_plain_text_passes(self):
        f = ThrottledFilter(cooldown_sec=60.0)
        assert f.filter(make_record("Shutdown complete"))
        assert f.filter(make_record("[1, 2]"))

    def test_zero_cooldown_never_throttles(self):
        f = ThrottledFilter(cooldown_sec=0.0)
        msg = dumps({"event": "heartbeat_sent"})
        assert f.filter(make_record(msg))
        assert f.filter(make_record(msg))


class TestBuildLogger:
    def test_console_only_and_idempotent(self):
        logger = build_logger("xsettle.test.build", "debug", file_path=None, json_console=True)
        try:
            assert logger.level == logging.DEBUG
            assert len(logger.handlers) == 1
            assert logger.propagate is False
            again = build_logger("xsettle.test.build", logging.WARNING, file_path=None)
            assert again is logger
            assert len(again.handlers) == 1
            assert again.handlers[0].level == logging.WARNING
        finally:
            logger.handlers.clear()

    def test_sync_file_handler(self, tmp_path):
        path = tmp_path / "engine.log"
        logger = build_logger("xsettle.test.file", file_path=str(path), async_file=False, json_console=True)
        try:
            log_event(logger, "run_started", deal_id="0xabc")
            for h in logger.handlers:
                h.flush()
            line = path.read_text().strip().splitlines()[-1]
            assert loads(loads(line)["msg"]) == {"event": "run_started", "deal_id": "0xabc"}
        finally:
            for h in logger.handlers:
                h.close()
            logger.handlers.clear()


class TestLogEvent:
    def test_payload_and_level(self):
        logger = logging.getLogger("xsettle.test.events")
        logger.propagate = False
        handler = ListHandler()
        logger.addHandler(handler)
        try:
            log_event(logger, "step_failed", logging.WARNING, step="deposit", error="reverted")
        finally:
            logger.removeHandler(handler)
        record = handler.records[0]
        assert record.levelno == logging.WARNING
        assert loads(record.getMessage()) == {"event": "step_failed", "step": "deposit", "error": "reverted"}
