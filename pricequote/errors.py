"""Exceptions raised by the quoting engine.

Per-item problems (unknown ingredient, missing price, ...) are never raised;
they are reported as missing items on the store quote.
"""

from __future__ import annotations


class QuoteError(RuntimeError):
    """Base class for request-level quoting failures."""


class BasketValidationError(QuoteError):
    """The basket itself is unusable (unknown recipe, zero servings, non-finite quantity)."""


class BackingStoreError(QuoteError):
    """The catalog, mapping or price cache store could not be read."""


class QuoteDeadlineExceeded(QuoteError):
    """The per-store fan-out did not finish within the request deadline."""
