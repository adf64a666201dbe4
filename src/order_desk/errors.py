"""Exception hierarchy shared by the catalog and ledger layers."""

from __future__ import annotations


class OrderDeskError(Exception):
    """Base class for domain errors surfaced to callers."""


class LedgerBusyError(OrderDeskError):
    """Raised when the ledger lock could not be acquired in time. Retryable."""


class NotFoundError(OrderDeskError):
    """Raised when a referenced client, order, or product is unknown."""


class ValidationError(OrderDeskError):
    """Raised when a request cannot be committed as submitted."""


class PersistenceError(OrderDeskError):
    """Raised when appending to or saving the workbook fails."""


class RenderError(OrderDeskError):
    """Raised by document renderers; never escapes an order commit."""


__all__ = [
    "OrderDeskError",
    "LedgerBusyError",
    "NotFoundError",
    "ValidationError",
    "PersistenceError",
    "RenderError",
]
