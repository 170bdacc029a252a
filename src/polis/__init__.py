"""POLIS — autonomous prediction-market collective."""

__version__ = "0.4.0"
