"""Multi-source content sync engine."""

__version__ = "0.1.0"
