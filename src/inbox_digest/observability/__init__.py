"""Logging, Prometheus metrics and health endpoints."""
