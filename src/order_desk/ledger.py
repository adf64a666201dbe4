"""Append-only order ledger.

Every committed order becomes exactly one new row on the ``ORDERS`` sheet.
Rows are never updated or deleted: editing an invoice appends another row
with the same invoice id and the next ``Rev:N`` label, so the sheet keeps the
complete revision history of every order.

Commits are serialized through :class:`~order_desk.core_logic.LedgerLock`.
The lock covers client lookup, pricing, revision numbering and the append;
document rendering starts only after it has been released.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any, Iterable, List, Optional, Sequence, Set, Tuple

from openpyxl.cell.cell import ILLEGAL_CHARACTERS_RE

from . import data_manager, log
from .catalog import CatalogSnapshot
from .constants import (
    DEFAULT_INVOICE_PREFIX,
    ORDER_HEADER,
    ORIGINAL_REVISION,
    REVISION_PREFIX,
    OrderColumn,
)
from .core_logic import RuntimeContext, persist_context
from .documents import InvoiceDocument, RenderResult, render_document
from .errors import LedgerBusyError, NotFoundError, PersistenceError, ValidationError
from .line_items import LineItem, encode, is_encodable_sku
from .products import Product


_CENTS = Decimal("0.01")
_REVISION_PREFIX_PATTERN = re.compile(r"^Rev:\d+\s*")
_REVISION_NUMBER_PATTERN = re.compile(r"^Rev:\s*(\d+)")


@dataclass(frozen=True)
class RequestedLine:
    """One SKU/quantity pair as submitted by the caller."""

    sku: str
    quantity: int


@dataclass(frozen=True)
class OrderRequest:
    """Caller intent for committing a new order or a revision of one.

    ``edit_invoice_id`` marks the request as a revision of an existing
    invoice. Otherwise ``invoice_id`` optionally names the new invoice; a
    fresh id is generated when it is omitted. ``client_name`` and ``address``
    override the values found in the client directory.
    """

    client_id: str
    lines: Tuple[RequestedLine, ...]
    comment: str = ""
    address: Optional[str] = None
    client_name: Optional[str] = None
    invoice_id: Optional[str] = None
    edit_invoice_id: Optional[str] = None


@dataclass(frozen=True)
class OrderRecord:
    """One ledger row: the order header followed by its line items."""

    revision_label: str
    invoice_id: str
    timestamp: Optional[datetime]
    total_pieces: int
    total_commission: Decimal
    total_amount: Decimal
    client_name: str
    comment: str
    address: str
    line_items: Tuple[LineItem, ...] = ()
    row_number: Optional[int] = field(default=None, compare=False)
    document: Optional[RenderResult] = field(default=None, compare=False)

    @property
    def is_revision(self) -> bool:
        return self.revision_label.startswith(REVISION_PREFIX)

    def to_row(self) -> List[Any]:
        """Return the ledger cells: nine header columns, then one token per item."""

        header: List[Any] = [None] * int(OrderColumn.LINE_ITEMS_START)
        header[OrderColumn.REVISION] = self.revision_label
        header[OrderColumn.INVOICE_ID] = self.invoice_id
        header[OrderColumn.TIMESTAMP] = self.timestamp.isoformat() if self.timestamp else ""
        header[OrderColumn.TOTAL_PIECES] = self.total_pieces
        header[OrderColumn.TOTAL_COMMISSION] = self.total_commission
        header[OrderColumn.TOTAL_AMOUNT] = self.total_amount
        header[OrderColumn.CLIENT] = self.client_name
        header[OrderColumn.COMMENT] = self.comment
        header[OrderColumn.ADDRESS] = self.address
        return header + [encode(item) for item in self.line_items]


@dataclass(frozen=True)
class PricedOrder:
    """Line items and totals computed from a catalog snapshot."""

    line_items: Tuple[LineItem, ...]
    total_amount: Decimal
    total_pieces: int
    total_commission: Decimal
    dropped_skus: Tuple[str, ...] = ()


def unit_terms(product: Product) -> Tuple[Decimal, Decimal]:
    """Return the ``(unit_price, commission_rate)`` a product sells at.

    On-sale products earn the sale commission. They sell at the sale price
    only when one is set; otherwise the regular price applies.
    """

    if product.on_sale:
        price = product.sale_price if product.sale_price > 0 else product.price
        return price, product.sale_commission
    return product.price, product.commission_rate


def price_order(snapshot: CatalogSnapshot, lines: Iterable[RequestedLine]) -> PricedOrder:
    """Price ``lines`` against ``snapshot``.

    Lines with a non-positive quantity are ignored and SKUs missing from the
    catalog are dropped.

    Args:
        snapshot (CatalogSnapshot): Catalog to look products up in.
        lines (Iterable[RequestedLine]): Requested SKUs and quantities.

    Returns:
        PricedOrder: Priced line items and totals.

    Raises:
        ValidationError: If a matched product's SKU cannot be encoded.
    """

    items: List[LineItem] = []
    dropped: List[str] = []
    total_amount = Decimal("0")
    total_pieces = 0
    total_commission = Decimal("0")

    for line in lines:
        quantity = int(line.quantity or 0)
        if quantity <= 0:
            continue
        product = snapshot.find_by_sku(line.sku)
        if product is None:
            dropped.append(str(line.sku))
            continue
        if not is_encodable_sku(product.sku):
            raise ValidationError(f"SKU cannot be stored on the ledger: {product.sku!r}")

        unit_price, rate = unit_terms(product)
        units = max(1, product.units_per_case)
        total_amount += unit_price * quantity
        total_pieces += units * quantity
        total_commission += rate * quantity * units
        items.append(
            LineItem(
                sku=product.sku,
                quantity=quantity,
                unit_price=unit_price.quantize(_CENTS),
                was_on_sale=product.on_sale,
            )
        )

    if dropped:
        log.warning("Dropped unknown SKUs from order: %s", ", ".join(dropped))
    return PricedOrder(
        line_items=tuple(items),
        total_amount=total_amount.quantize(_CENTS),
        total_pieces=total_pieces,
        total_commission=total_commission.quantize(_CENTS),
        dropped_skus=tuple(dropped),
    )


def cell_text(row: Sequence[Any], column: int) -> str:
    """Return the stripped text of ``row[column]``, or ``""`` when absent."""

    if column >= len(row) or row[column] is None:
        return ""
    return str(row[column]).strip()


def base_invoice_id(invoice_id: str) -> str:
    """Strip a leading ``Rev:N`` marker from an invoice reference."""

    return _REVISION_PREFIX_PATTERN.sub("", str(invoice_id or "").strip()).strip()


def revision_number(label: str) -> int:
    """Return ``N`` for a ``Rev:N`` label and ``0`` for anything else."""

    match = _REVISION_NUMBER_PATTERN.match(str(label or "").strip())
    return int(match.group(1)) if match else 0


def next_revision(rows: Iterable[Sequence[Any]], edit_invoice_id: str) -> Tuple[str, str]:
    """Compute the label and invoice id of the next revision of an invoice.

    Args:
        rows (Iterable[Sequence[Any]]): Existing ledger rows.
        edit_invoice_id (str): Invoice being edited, optionally carrying a
            ``Rev:N`` prefix.

    Returns:
        tuple[str, str]: ``("Rev:{N+1}", base_invoice_id)`` where ``N`` is the
            highest revision already on the ledger (0 when only the original
            exists).

    Raises:
        NotFoundError: If no row carries the invoice id.
    """

    requested = str(edit_invoice_id or "").strip()
    base = base_invoice_id(requested)
    found = False
    highest = 0
    for row in rows:
        invoice = cell_text(row, OrderColumn.INVOICE_ID)
        if not invoice or invoice not in (base, requested):
            continue
        found = True
        highest = max(highest, revision_number(cell_text(row, OrderColumn.REVISION)))
    if not found:
        raise NotFoundError(f"Unknown invoice: {requested}")
    return f"{REVISION_PREFIX}{highest + 1}", base


def generate_invoice_id(
    existing: Set[str],
    *,
    prefix: str = DEFAULT_INVOICE_PREFIX,
    when: Optional[datetime] = None,
) -> str:
    """Generate a sortable invoice id not present in ``existing``.

    Args:
        existing (set[str]): Invoice ids already on the ledger.
        prefix (str): Designator prepended to the identifier.
        when (datetime | None): Timestamp the id is derived from. Defaults to
            the current UTC time.

    Returns:
        str: Identifier formed as ``{prefix}{YYYYMMDDHHMMSSffffff}``, suffixed
            with ``-N`` on collision.
    """

    when = when or datetime.now(UTC)
    candidate = f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}"
    unique = candidate
    counter = 2
    while unique in existing:
        unique = f"{candidate}-{counter}"
        counter += 1
    return unique


def check_storable(row: Sequence[Any]) -> None:
    """Raise :class:`ValidationError` when a cell holds text a worksheet rejects."""

    for column, value in enumerate(row):
        if isinstance(value, str) and ILLEGAL_CHARACTERS_RE.search(value):
            header = ORDER_HEADER[column] if column < len(ORDER_HEADER) else "Line item"
            raise ValidationError(f"{header} contains control characters that cannot be stored")


def build_invoice_document(record: OrderRecord) -> InvoiceDocument:
    return InvoiceDocument(
        invoice_id=record.invoice_id,
        revision_label=record.revision_label,
        client_name=record.client_name,
        address=record.address,
        comment=record.comment,
        issued_at=record.timestamp or datetime.now(UTC),
        total_pieces=record.total_pieces,
        total_commission=record.total_commission,
        total_amount=record.total_amount,
        line_items=record.line_items,
    )


class OrderLedger:
    """Commits priced orders to the ``ORDERS`` sheet of a runtime context."""

    def __init__(self, context: RuntimeContext) -> None:
        self._context = context

    def commit(self, request: OrderRequest) -> OrderRecord:
        """Price and append ``request`` as a new ledger row.

        Args:
            request (OrderRequest): Order or revision to commit.

        Returns:
            OrderRecord: The appended row. ``document`` holds the outcome of
                the invoice rendering that followed the commit.

        Raises:
            LedgerBusyError: If the ledger lock is not acquired within the
                configured timeout. Retryable.
            NotFoundError: If the client, or the invoice being edited, is
                unknown.
            ValidationError: If no requested line matches the catalog or a
                requested new invoice id is already taken, or a text field
                holds characters a worksheet cannot store.
            PersistenceError: If the row cannot be appended or saved.
        """

        lock = self._context.ledger_lock
        timeout_ms = int(self._context.settings.lock_timeout_seconds * 1000)
        if not lock.acquire(timeout_ms):
            log.warning("Ledger busy; gave up after %d ms", timeout_ms)
            raise LedgerBusyError("The order ledger is busy. Please try again in a few seconds.")
        try:
            record = self._append(request)
        finally:
            lock.release()

        result = render_document(self._context.renderer, build_invoice_document(record))
        if result.ok:
            log.info("Invoice %s rendered to %s", record.invoice_id, result.reference)
        return replace(record, document=result)

    def _append(self, request: OrderRequest) -> OrderRecord:
        context = self._context
        client = context.clients.get_client(request.client_id)
        if client is None:
            log.warning("Order rejected for unknown client '%s'", request.client_id)
            raise NotFoundError(f"Client not found: {request.client_id}")

        priced = price_order(context.catalog.get(), request.lines)
        if not priced.line_items:
            log.warning("Order for client '%s' has no priceable items", request.client_id)
            raise ValidationError("No items in order")

        data_manager.ensure_sheet(context.workbook, data_manager.ORDERS_SHEET, ORDER_HEADER)
        existing_rows = [row for _, row in data_manager.iter_data_rows(context.workbook, data_manager.ORDERS_SHEET)]
        timestamp = datetime.now(UTC)

        if request.edit_invoice_id:
            revision_label, invoice_id = next_revision(existing_rows, request.edit_invoice_id)
        else:
            existing_ids = {cell_text(row, OrderColumn.INVOICE_ID) for row in existing_rows}
            revision_label = ORIGINAL_REVISION
            requested_id = str(request.invoice_id or "").strip()
            if requested_id:
                if requested_id in existing_ids:
                    raise ValidationError(f"Invoice id already exists: {requested_id}")
                invoice_id = requested_id
            else:
                invoice_id = generate_invoice_id(
                    existing_ids, prefix=context.settings.invoice_prefix, when=timestamp
                )

        record = OrderRecord(
            revision_label=revision_label,
            invoice_id=invoice_id,
            timestamp=timestamp,
            total_pieces=priced.total_pieces,
            total_commission=priced.total_commission,
            total_amount=priced.total_amount,
            client_name=(request.client_name or client.name or "Unknown").strip(),
            comment=request.comment or "",
            address=request.address if request.address is not None else client.address,
            line_items=priced.line_items,
        )
        try:
            check_storable(record.to_row())
        except ValidationError as exc:
            log.warning("Order for client '%s' rejected: %s", request.client_id, exc)
            raise
        row_number = self._write(record)
        log.info(
            "Committed %s %s for '%s': %d items, total %s",
            revision_label,
            invoice_id,
            record.client_name,
            len(record.line_items),
            record.total_amount,
        )
        return replace(record, row_number=row_number)

    def _write(self, record: OrderRecord) -> int:
        context = self._context
        sheet = data_manager.get_sheet(context.workbook, data_manager.ORDERS_SHEET)
        mark = sheet.max_row
        try:
            row_number = data_manager.append_row(context.workbook, data_manager.ORDERS_SHEET, record.to_row())
            if context.settings.save_on_commit:
                persist_context(context)
        except Exception as exc:
            # Drop whatever part of the row reached the sheet.
            if sheet.max_row > mark:
                sheet.delete_rows(mark + 1, sheet.max_row - mark)
            log.error("Failed to persist invoice %s: %s", record.invoice_id, exc)
            raise PersistenceError(f"Unable to record invoice {record.invoice_id}: {exc}") from exc
        return row_number


__all__ = [
    "RequestedLine",
    "OrderRequest",
    "OrderRecord",
    "PricedOrder",
    "cell_text",
    "unit_terms",
    "price_order",
    "base_invoice_id",
    "revision_number",
    "next_revision",
    "generate_invoice_id",
    "check_storable",
    "build_invoice_document",
    "OrderLedger",
]
