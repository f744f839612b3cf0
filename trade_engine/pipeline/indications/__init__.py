"""
Indications - detectors, state machines и fan-out сигналов.
"""

from trade_engine.pipeline.indications.detectors import Detection, build_detector
from trade_engine.pipeline.indications.state_machine import (
    IndicationStateMachine,
    Signal,
    continuation_confirmed,
)
from trade_engine.pipeline.indications.fanout import CandidateRegistry, accepts
from trade_engine.pipeline.indications.engine import IndicationEngine

__all__ = [
    "Detection",
    "build_detector",
    "IndicationStateMachine",
    "Signal",
    "continuation_confirmed",
    "CandidateRegistry",
    "accepts",
    "IndicationEngine",
]
