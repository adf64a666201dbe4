"""Compact text encoding for order line items.

Each committed ledger row stores its line items as one token per cell using the
layout ``[{quantity}|@{sku}|${unit_price}|{T|F}]``. Tokens are written once at
commit time and decoded every time the order history is browsed, so the
decoder is deliberately forgiving: a token it cannot make sense of is skipped
rather than failing the whole row.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Iterable, List, Optional

from . import log


FORBIDDEN_SKU_CHARACTERS = ("|", "]")
_CENTS = Decimal("0.01")


class InvalidSkuError(ValueError):
    """Raised when a SKU cannot be represented inside a line item token."""


class LineItemParseError(ValueError):
    """Raised by :func:`parse_token` when a token lacks the minimal shape."""


@dataclass(frozen=True)
class LineItem:
    """One SKU/quantity/price entry of a committed order."""

    sku: str
    quantity: int
    unit_price: Decimal
    was_on_sale: bool = False


def is_encodable_sku(sku: str) -> bool:
    """Return ``True`` when ``sku`` is non-empty, unpadded and free of delimiters."""

    if not sku or sku != sku.strip():
        return False
    return not any(char in sku for char in FORBIDDEN_SKU_CHARACTERS)


def encode(item: LineItem) -> str:
    """Serialize ``item`` into its ledger token.

    Args:
        item (LineItem): Line item to encode. The price is rounded to cents.

    Returns:
        str: Token such as ``[3|@W-1|$10.00|T]``.

    Raises:
        InvalidSkuError: If the SKU is empty, has surrounding whitespace or
            contains ``|`` or ``]``.
    """

    if not is_encodable_sku(item.sku):
        raise InvalidSkuError(f"SKU cannot be encoded in a line item token: {item.sku!r}")
    price = Decimal(item.unit_price).quantize(_CENTS)
    flag = "T" if item.was_on_sale else "F"
    return f"[{int(item.quantity)}|@{item.sku}|${price}|{flag}]"


def parse_token(token: object) -> LineItem:
    """Strictly parse a token, raising when the ``[qty|@sku|`` shape is missing.

    Args:
        token (object): Raw cell value read from a ledger row.

    Returns:
        LineItem: Decoded line item. Missing or malformed prices decode as zero
            and a missing sale flag decodes as ``False``.

    Raises:
        LineItemParseError: If the cell is not a token or its quantity or SKU
            cannot be read.
    """

    if token is None:
        raise LineItemParseError("Empty token")
    text = str(token).strip()
    if not text.startswith("[") or "|" not in text:
        raise LineItemParseError(f"Not a line item token: {text!r}")

    body = text[1:-1] if text.endswith("]") else text[1:]
    parts = body.split("|")
    if len(parts) < 2:
        raise LineItemParseError(f"Token is missing its SKU: {text!r}")

    try:
        quantity = int(parts[0].strip())
    except ValueError as exc:
        raise LineItemParseError(f"Token quantity is not an integer: {text!r}") from exc

    sku = parts[1].strip()
    if sku.startswith("@"):
        sku = sku[1:]
    if not sku:
        raise LineItemParseError(f"Token SKU is empty: {text!r}")

    unit_price = Decimal("0")
    if len(parts) > 2:
        raw_price = parts[2].strip().lstrip("$").replace(",", "")
        if raw_price:
            try:
                unit_price = Decimal(raw_price)
            except InvalidOperation:
                unit_price = Decimal("0")

    was_on_sale = len(parts) > 3 and parts[3].strip().upper() == "T"
    return LineItem(sku=sku, quantity=quantity, unit_price=unit_price, was_on_sale=was_on_sale)


def decode(token: object) -> Optional[LineItem]:
    """Decode a token, returning ``None`` for anything that is not one."""

    try:
        return parse_token(token)
    except LineItemParseError as exc:
        log.debug("Skipping undecodable line item token: %s", exc)
        return None


def decode_cells(cells: Iterable[object]) -> List[LineItem]:
    """Decode every populated cell of a ledger row tail, skipping bad tokens."""

    items: List[LineItem] = []
    for cell in cells:
        if cell is None or str(cell).strip() == "":
            continue
        item = decode(cell)
        if item is not None:
            items.append(item)
    return items


__all__ = [
    "LineItem",
    "InvalidSkuError",
    "LineItemParseError",
    "is_encodable_sku",
    "encode",
    "parse_token",
    "decode",
    "decode_cells",
]
