"""Tests for invoice rendering helpers."""

from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from unittest.mock import Mock
from urllib.parse import unquote, urlparse

import openpyxl
import pytest

from order_desk import documents
from order_desk.documents import InvoiceDocument, RenderResult, WorkbookInvoiceRenderer
from order_desk.errors import RenderError
from order_desk.line_items import LineItem


@pytest.fixture
def invoice() -> InvoiceDocument:
    return InvoiceDocument(
        invoice_id="INV-1",
        revision_label="Original",
        client_name="Acme Corp",
        address="1 Main St",
        comment="",
        issued_at=datetime(2026, 2, 4, 9, 30, tzinfo=UTC),
        total_pieces=6,
        total_commission=Decimal("12.00"),
        total_amount=Decimal("30.00"),
        line_items=(LineItem(sku="W-1", quantity=3, unit_price=Decimal("10.00"), was_on_sale=True),),
    )


def _uri_path(uri: str) -> Path:
    return Path(unquote(urlparse(uri).path))


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (date(2026, 2, 4), "Feb 4th 2026"),
        (date(2026, 3, 1), "Mar 1st 2026"),
        (date(2026, 3, 22), "Mar 22nd 2026"),
        (date(2026, 3, 23), "Mar 23rd 2026"),
        (date(2026, 3, 11), "Mar 11th 2026"),
        (date(2026, 12, 31), "Dec 31st 2026"),
    ],
)
def test_format_ordinal_date(value, expected):
    assert documents.format_ordinal_date(value) == expected


def test_invoice_filename_removes_unsafe_characters():
    assert documents.invoice_filename("Acme/West: Ltd?", date(2026, 2, 4)) == "Acme West  Ltd - Feb 4th 2026.xlsx"
    assert documents.invoice_filename("  ", date(2026, 2, 4), ".pdf") == "Unknown Client - Feb 4th 2026.pdf"


def test_renderer_writes_invoice_workbook(invoice, tmp_path):
    renderer = WorkbookInvoiceRenderer(tmp_path / "invoices", store_name="Test Desk")

    uri = renderer.render(invoice)

    path = _uri_path(uri)
    assert uri.startswith("file://")
    assert path.name == "Acme Corp - Feb 4th 2026.xlsx"
    sheet = openpyxl.load_workbook(path)["Invoice"]
    assert sheet["A1"].value == "Test Desk"
    assert sheet["B3"].value == "INV-1"
    values = [cell for row in sheet.iter_rows(values_only=True) for cell in row]
    assert "W-1" in values
    assert 30.0 in values


def test_renderer_never_overwrites_existing_invoice(invoice, tmp_path):
    renderer = WorkbookInvoiceRenderer(tmp_path)

    first = _uri_path(renderer.render(invoice))
    second = _uri_path(renderer.render(invoice))

    assert first != second
    assert second.name == "Acme Corp - Feb 4th 2026 (2).xlsx"


def test_renderer_wraps_filesystem_errors(invoice, tmp_path):
    blocker = tmp_path / "not_a_dir"
    blocker.write_text("")
    renderer = WorkbookInvoiceRenderer(blocker / "invoices")

    with pytest.raises(RenderError):
        renderer.render(invoice)


def test_render_document_reports_success(invoice):
    renderer = Mock()
    renderer.render.return_value = "file:///tmp/a.xlsx"

    assert documents.render_document(renderer, invoice) == RenderResult.success("file:///tmp/a.xlsx")


def test_render_document_captures_failures(invoice):
    renderer = Mock()
    renderer.render.side_effect = RenderError("disk full")

    result = documents.render_document(renderer, invoice)

    assert result.ok is False
    assert result.error == "disk full"


def test_render_document_without_renderer(invoice):
    result = documents.render_document(None, invoice)

    assert result.ok is False
    assert result.reference == ""
