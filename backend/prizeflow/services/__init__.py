"""Ledger and verification services."""
