"""Append-only movement ledger for opportunities."""
