"""Read path over the order ledger.

Ledger rows are typed by hand as often as they are appended by the ledger, so
every cell is decoded defensively. Queries never take the ledger lock and
never raise for bad data: a malformed row decodes with neutral values and an
unreadable sheet yields an empty result.
"""

from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any, List, Optional, Sequence, Tuple

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import OrderColumn
from .ledger import OrderRecord, cell_text
from .line_items import decode_cells
from .products import parse_decimal, parse_int


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=UTC)
    text = "" if value is None else str(value).strip()
    if not text:
        return None
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _parse_money(value: Any) -> Decimal:
    return parse_decimal(value, Decimal("0"))


def _cell(row: Sequence[Any], column: int) -> Any:
    return row[column] if column < len(row) else None


def decode_row(row: Sequence[Any], row_number: Optional[int] = None) -> OrderRecord:
    """Decode one ledger row into an :class:`OrderRecord`.

    Args:
        row (Sequence[Any]): Raw cell values.
        row_number (int | None): Sheet row the values came from.

    Returns:
        OrderRecord: Record with unreadable header cells replaced by neutral
            values and undecodable line item tokens skipped.
    """

    start = int(OrderColumn.LINE_ITEMS_START)
    invoice_id = cell_text(row, OrderColumn.INVOICE_ID)
    if not invoice_id and row_number is not None:
        invoice_id = f"ROW-{row_number}"
    return OrderRecord(
        revision_label=cell_text(row, OrderColumn.REVISION),
        invoice_id=invoice_id,
        timestamp=_parse_timestamp(_cell(row, OrderColumn.TIMESTAMP)),
        total_pieces=parse_int(_cell(row, OrderColumn.TOTAL_PIECES)) or 0,
        total_commission=_parse_money(_cell(row, OrderColumn.TOTAL_COMMISSION)),
        total_amount=_parse_money(_cell(row, OrderColumn.TOTAL_AMOUNT)),
        client_name=cell_text(row, OrderColumn.CLIENT) or "Unknown",
        comment=cell_text(row, OrderColumn.COMMENT),
        address=cell_text(row, OrderColumn.ADDRESS),
        line_items=tuple(decode_cells(row[start:])),
        row_number=row_number,
    )


def _is_empty_order(row: Sequence[Any]) -> bool:
    return (
        not cell_text(row, OrderColumn.INVOICE_ID)
        and not cell_text(row, OrderColumn.CLIENT)
        and _parse_money(_cell(row, OrderColumn.TOTAL_AMOUNT)) == 0
    )


def _sort_key(record: OrderRecord) -> datetime:
    return record.timestamp or datetime.min.replace(tzinfo=UTC)


class OrderQuery:
    """Lookups over the ``ORDERS`` sheet of a workbook."""

    def __init__(self, workbook: Workbook, sheet_name: str = data_manager.ORDERS_SHEET) -> None:
        self._workbook = workbook
        self._sheet_name = sheet_name

    def _rows(self) -> List[Tuple[int, Tuple[Any, ...]]]:
        try:
            return list(data_manager.iter_data_rows(self._workbook, self._sheet_name))
        except KeyError as exc:
            log.warning("Order history unavailable: %s", exc)
            return []

    def get_by_id(self, invoice_id: str) -> Optional[OrderRecord]:
        """Return the latest row of ``invoice_id``, or ``None`` when absent.

        The invoice column is searched first. When no row carries the id
        there, the first row holding a cell equal to the id is used instead.
        """

        wanted = str(invoice_id or "").strip()
        if not wanted:
            return None
        rows = self._rows()

        match: Optional[Tuple[int, Tuple[Any, ...]]] = None
        for row_number, row in rows:
            if cell_text(row, OrderColumn.INVOICE_ID) == wanted:
                match = (row_number, row)
        if match is None:
            for row_number, row in rows:
                if any(cell is not None and str(cell).strip() == wanted for cell in row):
                    match = (row_number, row)
                    break
        if match is None:
            log.debug("Invoice '%s' not found", wanted)
            return None
        return decode_row(match[1], match[0])

    def get_by_client(self, client_name: Optional[str] = None) -> List[OrderRecord]:
        """Return every order, newest first, optionally for one client.

        Args:
            client_name (str | None): Case-insensitive client filter. ``None``
                or blank returns all orders.

        Returns:
            list[OrderRecord]: Matching records sorted by descending timestamp.
        """

        wanted = str(client_name or "").strip().lower()
        records: List[OrderRecord] = []
        for row_number, row in self._rows():
            if _is_empty_order(row):
                continue
            if wanted and cell_text(row, OrderColumn.CLIENT).lower() != wanted:
                continue
            records.append(decode_row(row, row_number))
        records.sort(key=_sort_key, reverse=True)
        log.debug("Returning %d orders", len(records))
        return records

    def get_revisions(self, invoice_id: str) -> List[OrderRecord]:
        """Return every row of ``invoice_id`` in ledger order."""

        wanted = str(invoice_id or "").strip()
        return [
            decode_row(row, row_number)
            for row_number, row in self._rows()
            if wanted and cell_text(row, OrderColumn.INVOICE_ID) == wanted
        ]


__all__ = ["OrderQuery", "decode_row"]
