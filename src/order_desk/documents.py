"""Invoice documents generated after an order is committed.

Rendering is a side effect of a commit, never part of it: the ledger calls
:func:`render_document` once its lock is released and only logs the
:class:`RenderResult`. Renderers serialize themselves with their own lock.
"""

from __future__ import annotations

import re
import threading
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Optional, Protocol, Tuple, Union

import openpyxl
from openpyxl.styles import Alignment, Font, PatternFill

from . import log
from .errors import RenderError
from .line_items import LineItem


MONTH_ABBREVIATIONS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")
_UNSAFE_FILENAME = re.compile(r'[\\/:*?"<>|]+')
_HEADER_FILL = PatternFill(fill_type="solid", start_color="333333", end_color="333333")
_MONEY_FORMAT = '"$"#,##0.00'


@dataclass(frozen=True)
class InvoiceDocument:
    """Everything an invoice needs, captured at commit time."""

    invoice_id: str
    revision_label: str
    client_name: str
    address: str
    comment: str
    issued_at: datetime
    total_pieces: int
    total_commission: Decimal
    total_amount: Decimal
    line_items: Tuple[LineItem, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class RenderResult:
    """Outcome of a rendering attempt."""

    ok: bool
    reference: str = ""
    error: str = ""

    @classmethod
    def success(cls, reference: str) -> "RenderResult":
        return cls(ok=True, reference=reference)

    @classmethod
    def failure(cls, error: str) -> "RenderResult":
        return cls(ok=False, error=error)


class DocumentRenderer(Protocol):
    """Turns an :class:`InvoiceDocument` into an artifact and returns its reference."""

    def render(self, document: InvoiceDocument) -> str:
        ...


def format_ordinal_date(value: Union[date, datetime]) -> str:
    """Format ``value`` as ``"Feb 4th 2026"``."""

    day = value.day
    if day in (1, 21, 31):
        suffix = "st"
    elif day in (2, 22):
        suffix = "nd"
    elif day in (3, 23):
        suffix = "rd"
    else:
        suffix = "th"
    return f"{MONTH_ABBREVIATIONS[value.month - 1]} {day}{suffix} {value.year}"


def invoice_filename(client_name: str, issued_at: Union[date, datetime], extension: str = ".xlsx") -> str:
    """Return ``"{client} - {ordinal date}{extension}"`` with unsafe characters removed."""

    client = _UNSAFE_FILENAME.sub(" ", str(client_name or "").strip()).strip() or "Unknown Client"
    return f"{client} - {format_ordinal_date(issued_at)}{extension}"


class WorkbookInvoiceRenderer:
    """Writes one single-sheet ``.xlsx`` invoice per committed order."""

    def __init__(self, output_dir: Path, *, store_name: str = "") -> None:
        self._output_dir = Path(output_dir)
        self._store_name = store_name
        self._lock = threading.Lock()

    @property
    def output_dir(self) -> Path:
        return self._output_dir

    def _unique_path(self, filename: str) -> Path:
        candidate = self._output_dir / filename
        stem, suffix = candidate.stem, candidate.suffix
        counter = 2
        while candidate.exists():
            candidate = self._output_dir / f"{stem} ({counter}){suffix}"
            counter += 1
        return candidate

    def render(self, document: InvoiceDocument) -> str:
        """Write ``document`` to the output folder.

        Args:
            document (InvoiceDocument): Invoice to render.

        Returns:
            str: ``file://`` URI of the written workbook.

        Raises:
            RenderError: If the folder or file cannot be written.
        """

        with self._lock:
            try:
                self._output_dir.mkdir(parents=True, exist_ok=True)
                destination = self._unique_path(invoice_filename(document.client_name, document.issued_at))
                workbook = self._build_workbook(document)
                workbook.save(destination)
            except OSError as exc:
                raise RenderError(f"Unable to write invoice {document.invoice_id}: {exc}") from exc
        log.info("Rendered invoice %s to '%s'", document.invoice_id, destination)
        return destination.resolve().as_uri()

    def _build_workbook(self, document: InvoiceDocument) -> openpyxl.Workbook:
        workbook = openpyxl.Workbook()
        sheet = workbook.active
        sheet.title = "Invoice"
        bold_font = Font(bold=True)

        sheet["A1"] = self._store_name or "Invoice"
        sheet["A1"].font = Font(bold=True, size=14)
        details = (
            ("Invoice", document.invoice_id),
            ("Revision", document.revision_label),
            ("Date", format_ordinal_date(document.issued_at)),
            ("Client", document.client_name),
            ("Address", document.address),
            ("Comment", document.comment),
        )
        for offset, (label, value) in enumerate(details, start=3):
            sheet.cell(row=offset, column=1, value=label).font = bold_font
            sheet.cell(row=offset, column=2, value=value)

        header_row = 3 + len(details) + 1
        for column_index, title in enumerate(("SKU", "Qty", "Unit Price", "Line Total", "Sale"), start=1):
            cell = sheet.cell(row=header_row, column=column_index, value=title)
            cell.font = Font(bold=True, color="FFFFFF")
            cell.fill = _HEADER_FILL
            cell.alignment = Alignment(horizontal="center")

        row_number = header_row
        for row_number, item in enumerate(document.line_items, start=header_row + 1):
            sheet.cell(row=row_number, column=1, value=item.sku)
            sheet.cell(row=row_number, column=2, value=item.quantity)
            sheet.cell(row=row_number, column=3, value=float(item.unit_price)).number_format = _MONEY_FORMAT
            line_total = float(item.unit_price * item.quantity)
            sheet.cell(row=row_number, column=4, value=line_total).number_format = _MONEY_FORMAT
            sheet.cell(row=row_number, column=5, value="Yes" if item.was_on_sale else "")

        totals_row = row_number + 2
        sheet.cell(row=totals_row, column=3, value="Pieces").font = bold_font
        sheet.cell(row=totals_row, column=4, value=document.total_pieces)
        sheet.cell(row=totals_row + 1, column=3, value="Total").font = bold_font
        total_cell = sheet.cell(row=totals_row + 1, column=4, value=float(document.total_amount))
        total_cell.number_format = _MONEY_FORMAT
        total_cell.font = bold_font

        for letter, width in (("A", 18), ("B", 36), ("C", 14), ("D", 14), ("E", 8)):
            sheet.column_dimensions[letter].width = width
        return workbook


def render_document(renderer: Optional[DocumentRenderer], document: InvoiceDocument) -> RenderResult:
    """Run ``renderer`` and capture its outcome instead of raising.

    Args:
        renderer (DocumentRenderer | None): Collaborator to call. ``None``
            yields a failed result without logging a warning.
        document (InvoiceDocument): Invoice to render.

    Returns:
        RenderResult: Success with the artifact reference, or failure with the
            error message.
    """

    if renderer is None:
        log.debug("No document renderer configured; skipping invoice %s", document.invoice_id)
        return RenderResult.failure("No document renderer configured")
    try:
        reference = renderer.render(document)
    except Exception as exc:  # noqa: BLE001
        log.warning("Rendering invoice %s failed: %s", document.invoice_id, exc)
        return RenderResult.failure(str(exc))
    return RenderResult.success(reference)


__all__ = [
    "InvoiceDocument",
    "RenderResult",
    "DocumentRenderer",
    "WorkbookInvoiceRenderer",
    "format_ordinal_date",
    "invoice_filename",
    "render_document",
]
