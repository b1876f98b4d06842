"""Judgment engine client and fail-open batch classifier."""
