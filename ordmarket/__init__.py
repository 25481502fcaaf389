"""Ordinals marketplace toolkit: addresses, transactions, PSBT trades, royalties, ord and Magic Eden lookups, live events."""

__version__ = "0.1.0"