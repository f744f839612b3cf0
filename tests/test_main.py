"""
Unit tests for entry point helpers
"""

import json

from trade_engine.main import build_runtimes, load_snapshot
from trade_engine.pipeline.connector import PaperExchangeConnector
from trade_engine.pipeline.coordination import PresetCoordinationEngine
from trade_engine.pipeline.feed import InMemoryFeed
from trade_engine.pipeline.settings import normalize_settings


def test_load_snapshot(tmp_path):
    path = tmp_path / "pipeline_settings.json"
    path.write_text(json.dumps({"connections": {"paper": {"symbols": ["BTCUSDT"]}}}), encoding="utf-8")

    assert load_snapshot(str(path))["connections"]["paper"]["symbols"] == ["BTCUSDT"]
    assert load_snapshot(str(tmp_path / "missing.json")) == {}


def test_build_runtimes_skips_disabled(session_maker, events):
    settings = normalize_settings({
        "connections": {
            "paper": {"symbols": ["BTCUSDT"]},
            "bybit": {"symbols": ["ETHUSDT"], "is_enabled": False},
        }
    })
    coordination = PresetCoordinationEngine(events=events)
    connectors = {}

    def factory(connection):
        connectors[connection.connection_id] = PaperExchangeConnector(balance=500.0)
        return connectors[connection.connection_id]

    runtimes = build_runtimes(settings, InMemoryFeed(), session_maker, coordination, factory)

    assert [r.connection_id for r in runtimes] == ["paper"]
    assert set(connectors) == {"paper"}
    assert runtimes[0].aggregator is coordination.aggregator
    assert runtimes[0].coordination is coordination
