"""
Trade Engine

Multi-level indication/position promotion pipeline:
Base → Main → Real → Exchange.
"""

__version__ = "0.1.0"
