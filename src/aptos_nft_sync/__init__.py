"""Aptos NFT Sync - incremental marketplace listing, sales and stats reconciliation."""

__version__ = "0.1.0"
