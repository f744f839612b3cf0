"""
Pipeline Module

Индикации и позиции по уровням:
- Market Activity Gate (hysteresis)
- Parameter Expander (кандидаты)
- Indication state machines + fan-out
- Base aggregator (симулированные сделки)
- Main/Real promotion
- Exchange position sync
- Configuration sets (preset coordination)
"""

from trade_engine.pipeline.config import PIPELINE_CONFIG, get_config
from trade_engine.pipeline.settings import (
    ConnectionSettings,
    PipelineSettings,
    normalize_connection_settings,
    normalize_settings,
)
from trade_engine.pipeline.expander import ConfigurationCandidate, RangeSpec, TrailingSpec, build_candidates
from trade_engine.pipeline.events import event_emitter, EventEmitter
from trade_engine.pipeline.activity_gate import MarketActivityGate
from trade_engine.pipeline.aggregator import BaseAggregator
from trade_engine.pipeline.promotion import PromotionEngine, CycleReport
from trade_engine.pipeline.exchange_sync import ExchangeSync
from trade_engine.pipeline.connector import ExchangeConnector, PaperExchangeConnector
from trade_engine.pipeline.coordination import PresetCoordinationEngine
from trade_engine.pipeline.runtime import ConnectionRuntime
from trade_engine.pipeline.queries import QueryService

__all__ = [
    "PIPELINE_CONFIG",
    "get_config",
    "ConnectionSettings",
    "PipelineSettings",
    "normalize_connection_settings",
    "normalize_settings",
    "ConfigurationCandidate",
    "RangeSpec",
    "TrailingSpec",
    "build_candidates",
    "event_emitter",
    "EventEmitter",
    "MarketActivityGate",
    "BaseAggregator",
    "PromotionEngine",
    "CycleReport",
    "ExchangeSync",
    "ExchangeConnector",
    "PaperExchangeConnector",
    "PresetCoordinationEngine",
    "ConnectionRuntime",
    "QueryService",
]
