"""Product resolution rules for the catalog engine.

A catalog sheet stores product families as a parent row followed by child
rows. Parents carry the shared attributes (name, brand, colours, commission)
and, in their variation columns, the *labels* of the variations; children
carry the variation *values* and only the attributes that differ from their
parent. :func:`resolve_product` turns one raw row, plus the nearest preceding
resolved parent, into a fully populated :class:`Product`.

The resolver never raises: malformed cells degrade to safe defaults.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional, Tuple

from .constants import DEFAULT_COMMISSION_RATE, DEFAULT_SALE_COMMISSION


DEFAULT_VARIATION_LABELS: Tuple[str, str, str, str] = ("Flavor", "Strength", "Format", "Units")
VARIATION_KEYS: Tuple[str, str, str, str] = ("variation", "variation2", "variation3", "variation4")

_TRUTHY_STRINGS = frozenset({"true", "yes", "x", "on"})
_BLANK_BACKGROUNDS = frozenset({"", "white", "transparent", "#fff", "#ffffff"})
# Word boundaries keep words such as "Perfect" from matching "ct".
_CASE_KEYWORDS = re.compile(r"\b(case|carton|box|multi|pack|bulk|master|pk|ct|disp)\b", re.IGNORECASE)
_LEADING_INTEGER = re.compile(r"^\s*([+-]?\d+)")
_MEASUREMENT_UNITS = ("mg", "ml", "g")


@dataclass(frozen=True)
class RawProductRow:
    """Cell values of one catalog row keyed by internal field name."""

    row_id: int
    values: Mapping[str, Any] = field(default_factory=dict)

    def get(self, key: str) -> Any:
        return self.values.get(key)

    def text(self, key: str) -> str:
        value = self.values.get(key)
        return "" if value is None else str(value).strip()


@dataclass(frozen=True)
class Product:
    """Fully resolved catalog entry."""

    id: int
    group_id: int
    is_parent: bool
    sku: str
    ref: str
    name: str
    group_name: str
    category: str
    brand: str
    description: str
    image: str
    price: Decimal
    sale_price: Decimal
    on_sale: bool
    commission_rate: Decimal
    sale_commission: Decimal
    units_per_case: int
    has_case: bool
    variations: Tuple[str, str, str, str]
    variation_labels: Tuple[str, str, str, str]
    background_color: str
    text_color: str
    group_color: str
    group_text_color: str
    pdf_range_name: str
    zone_variation: str
    is_available: bool


def parse_decimal(value: Any, default: Decimal = Decimal("0")) -> Decimal:
    """Parse a numeric-looking cell into a :class:`Decimal`.

    Numbers are converted directly. Text is stripped of everything except
    digits and the decimal point, so ``"$1,250.00"`` parses as ``1250.00``.
    Blank or unparsable values return ``default``.
    """

    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, (int, float, Decimal)):
        try:
            return Decimal(str(value))
        except InvalidOperation:
            return default
    cleaned = re.sub(r"[^0-9.]", "", str(value))
    if not cleaned:
        return default
    try:
        return Decimal(cleaned)
    except InvalidOperation:
        return default


def parse_int(value: Any) -> Optional[int]:
    """Read the leading integer of a cell the way spreadsheet users type it."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, (float, Decimal)):
        return int(value)
    match = _LEADING_INTEGER.match(str(value))
    return int(match.group(1)) if match else None


def is_truthy(value: Any) -> bool:
    """Interpret checkbox-style cells: ``True``, ``1`` and "true"/"yes"/"x"/"on"."""

    if value is True:
        return True
    if value is False or value is None:
        return False
    if isinstance(value, (int, float, Decimal)):
        return value == 1
    text = str(value).strip().lower()
    return text == "1" or text in _TRUTHY_STRINGS


def normalize_background(value: Any) -> str:
    """Return the lower-cased colour, or ``""`` for white/transparent/blank."""

    text = "" if value is None else str(value).strip().lower()
    return "" if text in _BLANK_BACKGROUNDS else text


def contrast_text_color(background: str) -> str:
    """Pick black or white text for ``background`` using YIQ luminance."""

    hex_value = (background or "").strip()
    if hex_value.startswith("#"):
        hex_value = hex_value[1:]
    if len(hex_value) == 3:
        hex_value = "".join(char * 2 for char in hex_value)
    if len(hex_value) < 6:
        return "#ffffff"
    try:
        red = int(hex_value[0:2], 16)
        green = int(hex_value[2:4], 16)
        blue = int(hex_value[4:6], 16)
    except ValueError:
        return "#ffffff"
    luminance = (red * 299 + green * 587 + blue * 114) / 1000
    return "#000000" if luminance >= 128 else "#ffffff"


def _is_numeric_case(text: str) -> bool:
    count = parse_int(text)
    if count is None or count <= 1:
        return False
    return not any(unit in text for unit in _MEASUREMENT_UNITS)


def detect_case(variations: Tuple[str, ...], declared_units: Optional[int]) -> bool:
    """Classify a variant as a bulk pack from its variation values or unit count."""

    lowered = [value.lower() for value in variations]
    if any(_CASE_KEYWORDS.search(value) for value in lowered):
        return True
    if any(_is_numeric_case(value) for value in lowered):
        return True
    return (declared_units or 1) > 1


def _is_available(inventory: Any) -> bool:
    # Only an explicit zero disables a product; blank means available.
    if isinstance(inventory, (int, float, Decimal)) and not isinstance(inventory, bool):
        return inventory != 0
    return ("" if inventory is None else str(inventory).strip()) != "0"


def _inherit_text(raw: RawProductRow, key: str, parent_value: Optional[str], default: str = "") -> str:
    own = raw.text(key)
    if own:
        return own
    if parent_value is not None:
        return parent_value
    return default


def _inherit_amount(own: Decimal, parent_value: Optional[Decimal], default: Decimal) -> Decimal:
    if own > 0:
        return own
    if parent_value is not None and parent_value > 0:
        return parent_value
    return default


def _resolve_group_name(raw: RawProductRow, parent: Optional[Product], is_parent: bool) -> str:
    parent_name = parent.name.strip() if parent else ""
    if parent_name:
        return parent_name
    own_name = raw.text("name")
    if is_parent:
        return own_name or "Unnamed Group"
    return own_name or raw.text("sku") or "Unnamed Product"


def _resolve_group_color(background: str, parent: Optional[Product], is_parent: bool) -> str:
    if parent is not None and parent.background_color:
        return parent.background_color
    if is_parent and background:
        return background
    return ""


def _resolve_text_color(raw: RawProductRow, background: str, parent: Optional[Product]) -> str:
    explicit = raw.text("textColor")
    if explicit:
        return explicit
    if parent is not None and parent.text_color:
        return parent.text_color
    if background.startswith("#"):
        return contrast_text_color(background)
    return ""


def _resolve_variation_labels(
    variations: Tuple[str, str, str, str],
    parent: Optional[Product],
    is_parent: bool,
) -> Tuple[str, str, str, str]:
    if parent is not None:
        return parent.variations
    if is_parent:
        return tuple(value or default for value, default in zip(variations, DEFAULT_VARIATION_LABELS))  # type: ignore[return-value]
    return DEFAULT_VARIATION_LABELS


def resolve_product(raw: RawProductRow, parent: Optional[Product] = None) -> Product:
    """Resolve one catalog row into a :class:`Product`.

    Args:
        raw (RawProductRow): Cell values of the row keyed by internal field
            name, together with the row's stable identifier.
        parent (Product | None): Nearest preceding parent in read order, or
            ``None`` for parent and standalone rows.

    Returns:
        Product: Entity whose attributes are either present on ``raw`` or
            inherited verbatim from ``parent``.
    """

    is_parent = raw.text("node").lower() == "parent"
    if is_parent:
        parent = None

    variations = tuple(raw.text(key) for key in VARIATION_KEYS)
    declared_units = parse_int(raw.get("unitsPerCase"))
    units_per_case = declared_units if declared_units and declared_units > 0 else None
    if units_per_case is None:
        units_per_case = parent.units_per_case if parent is not None else 1

    # A child may switch a sale on, but never off once its parent enables it.
    on_sale = is_truthy(raw.get("onSale"))
    if parent is not None:
        on_sale = on_sale or parent.on_sale

    background = normalize_background(raw.get("backgroundColor"))

    return Product(
        id=raw.row_id,
        group_id=raw.row_id if is_parent or parent is None else parent.id,
        is_parent=is_parent,
        sku=raw.text("sku"),
        ref=raw.text("ref"),
        name=_inherit_text(raw, "name", parent.name if parent else None),
        group_name=_resolve_group_name(raw, parent, is_parent),
        category=_inherit_text(raw, "category", parent.category if parent else None, "Uncategorized"),
        brand=_inherit_text(raw, "brand", parent.brand if parent else None),
        description=_inherit_text(raw, "description", parent.description if parent else None),
        image=_inherit_text(raw, "image", parent.image if parent else None),
        price=_inherit_amount(parse_decimal(raw.get("price")), parent.price if parent else None, Decimal("0")),
        sale_price=_inherit_amount(
            parse_decimal(raw.get("salePrice")), parent.sale_price if parent else None, Decimal("0")
        ),
        on_sale=on_sale,
        commission_rate=_inherit_amount(
            parse_decimal(raw.get("commissionRate")),
            parent.commission_rate if parent else None,
            DEFAULT_COMMISSION_RATE,
        ),
        sale_commission=_inherit_amount(
            parse_decimal(raw.get("saleCommission")),
            parent.sale_commission if parent else None,
            DEFAULT_SALE_COMMISSION,
        ),
        units_per_case=max(1, units_per_case),
        has_case=detect_case(variations, declared_units),
        variations=variations,  # type: ignore[arg-type]
        variation_labels=_resolve_variation_labels(variations, parent, is_parent),  # type: ignore[arg-type]
        background_color=background,
        text_color=_resolve_text_color(raw, background, parent),
        group_color=_resolve_group_color(background, parent, is_parent),
        group_text_color=(parent.text_color if parent is not None and parent.text_color else raw.text("textColor")),
        pdf_range_name=_inherit_text(raw, "pdfRangeName", parent.pdf_range_name if parent else None),
        zone_variation=_inherit_text(raw, "zoneVariation", parent.zone_variation if parent else None),
        is_available=_is_available(raw.get("inventory")),
    )


__all__ = [
    "Product",
    "RawProductRow",
    "DEFAULT_VARIATION_LABELS",
    "VARIATION_KEYS",
    "parse_decimal",
    "parse_int",
    "is_truthy",
    "normalize_background",
    "contrast_text_color",
    "detect_case",
    "resolve_product",
]
