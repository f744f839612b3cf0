"""
Unit tests for logging configuration
"""

import json
import sys

import pytest
from loguru import logger

from config.logging import pipeline_context, sentry_tags, setup_logging
from trade_engine.core.enums import EventType, PositionLevel


@pytest.fixture
def log_dir(tmp_path):
    yield setup_logging(tmp_path / "logs", console=False)
    logger.remove()
    logger.add(sys.stderr)


def test_context_prefix():
    record = {"extra": {"connection_id": "conn-1", "symbol": "BTCUSDT", "level": "real", "event": "promoted"}}
    pipeline_context(record)
    assert record["extra"]["context"] == "[conn-1 BTCUSDT real] "

    plain = {"extra": {}}
    pipeline_context(plain)
    assert plain["extra"]["context"] == ""


def test_sentry_tags():
    extra = {"event": "sync_error", "connection_id": "conn-1", "symbol": None, "candidate": "abc"}
    assert sentry_tags(extra) == {"event": "sync_error", "connection_id": "conn-1"}


@pytest.mark.asyncio
async def test_events_sink_collects_only_pipeline_events(log_dir, events):
    await events.emit(
        None,
        EventType.SYNC_ERROR,
        "Position 1 sync failed",
        connection_id="conn-1",
        symbol="BTCUSDT",
        level=PositionLevel.EXCHANGE,
    )
    logger.info("plain message")
    # закрыть sinks, чтобы буферы ушли на диск
    logger.remove()

    files = list(log_dir.glob("events_*.jsonl"))
    assert len(files) == 1
    lines = [json.loads(line) for line in files[0].read_text(encoding="utf-8").splitlines()]

    assert len(lines) == 1
    record = lines[0]["record"]
    assert record["message"] == "Position 1 sync failed"
    assert record["level"]["name"] == "CRITICAL"
    assert record["extra"]["event"] == EventType.SYNC_ERROR.value
    assert record["extra"]["connection_id"] == "conn-1"
    assert record["extra"]["context"] == "[conn-1 BTCUSDT exchange] "
    assert list(log_dir.glob("engine_*"))
