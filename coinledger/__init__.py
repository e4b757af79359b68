# Ledger package
"""Crypto trading ledger: order execution and limit-order matching."""

__version__ = "0.1.0"
