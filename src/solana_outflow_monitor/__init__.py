"""Solana outflow monitor - notable exchange-wallet transfer detection."""

__version__ = "0.1.0"
