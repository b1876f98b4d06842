"""Crash-safe persistence: atomic writes, event ledger, sync checkpoints."""
