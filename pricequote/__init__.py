"""Basket aggregation and per-store price quoting service."""
