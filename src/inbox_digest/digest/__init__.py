"""Digest worklist: lifecycle state store and consumer-facing actions."""
