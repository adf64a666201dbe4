"""Enumerations and fixed values shared across Order Desk modules.

Centralises the sheet names, ledger column positions and pricing defaults so
that the data access layer, the catalog engine and the order ledger rely on a
single source of truth.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum, IntEnum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

DEFAULT_COMMISSION_RATE = Decimal("1.5")
DEFAULT_SALE_COMMISSION = Decimal("1.0")
DEFAULT_CACHE_TTL_SECONDS = 300
DEFAULT_CACHE_MAX_BYTES = 100_000
DEFAULT_LOCK_TIMEOUT_SECONDS = 30
DEFAULT_INVOICE_PREFIX = "INV-"

ORIGINAL_REVISION = "Original"
REVISION_PREFIX = "Rev:"

# Header row written to a fresh ORDERS sheet; positions match OrderColumn.
ORDER_HEADER = (
    "Version",
    "INVOICE_NUMBER",
    "TIME STAMP",
    "TOTAL UNITS",
    "COMMISSION",
    "TOTAL",
    "CLIENT",
    "COMMENT",
    "ADDRESS",
    "PRODUCTS",
)


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    PRODUCTS = "PRODUCTS"
    ORDERS = "ORDERS"
    CLIENT_DATA = "CLIENT DATA"
    DELETED_PRODUCTS = "DELETED_PRODUCTS"


class NodeType(str, Enum):
    """Enumerate the node markers written to the product sheet."""

    PARENT = "Parent"
    CHILD = "Child"


class OrderColumn(IntEnum):
    """Zero-based column positions of a ledger row on the ``ORDERS`` sheet."""

    REVISION = 0
    INVOICE_ID = 1
    TIMESTAMP = 2
    TOTAL_PIECES = 3
    TOTAL_COMMISSION = 4
    TOTAL_AMOUNT = 5
    CLIENT = 6
    COMMENT = 7
    ADDRESS = 8
    LINE_ITEMS_START = 9


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DEFAULT_COMMISSION_RATE",
    "DEFAULT_SALE_COMMISSION",
    "DEFAULT_CACHE_TTL_SECONDS",
    "DEFAULT_CACHE_MAX_BYTES",
    "DEFAULT_LOCK_TIMEOUT_SECONDS",
    "DEFAULT_INVOICE_PREFIX",
    "ORIGINAL_REVISION",
    "REVISION_PREFIX",
    "ORDER_HEADER",
    "SheetName",
    "NodeType",
    "OrderColumn",
]
