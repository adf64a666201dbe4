"""Catalog engine: header binding, catalog loading, caching and mutations.

Product sheets are maintained by hand, so their headers drift: columns get
renamed ("Unit Price" vs "Price"), reordered, or suffixed ("On Sale?").
:func:`resolve_header_map` binds the internal field names used by
:mod:`order_desk.products` to whatever columns the sheet currently has, once
per load. :class:`CatalogStore` then streams every row through the resolver
and :class:`CatalogCache` keeps the resulting snapshot for a few minutes.

Every function that changes the product sheet invalidates the cache before
returning.
"""

from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Set, Tuple

from openpyxl.styles import Font, PatternFill
from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import (
    DEFAULT_CACHE_MAX_BYTES,
    DEFAULT_CACHE_TTL_SECONDS,
    DEFAULT_COMMISSION_RATE,
    DEFAULT_SALE_COMMISSION,
    NodeType,
)
from .errors import NotFoundError, ValidationError
from .products import Product, RawProductRow, VARIATION_KEYS, contrast_text_color, resolve_product

if TYPE_CHECKING:
    from .core_logic import RuntimeContext


# Ordered by priority: composite headers such as "Sale Commission" must be
# claimed before the generic "Commission" or "Sale" aliases can take them.
HEADER_ALIASES: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("totalCommission", ("total commission", "sum commission", "calculated commission", "comm total")),
    ("totalPcsOrdered", ("total pcs ordered", "total ordered", "sum qty", "pieces total")),
    ("saleCommission", ("sale commission", "on sale commission", "promo commission", "commission sale")),
    ("commissionRate", ("commission rate", "commission", "comm", "normal commission", "base commission")),
    ("salePrice", ("sale price", "offer price", "discount price", "promo price", "sp", "promo")),
    (
        "onSale",
        (
            "on sale", "active sale", "sale status", "sale active", "promo active", "on-sale",
            "on sale?", "sale active?", "sale", "sale?", "sales", "promo",
        ),
    ),
    ("price", ("unit price", "price", "regular price", "rp")),
    ("parentName", ("parent name", "parent", "group name")),
    ("zoneVariation", ("zone variation name", "zone variation", "zone")),
    ("pdfRangeName", ("pdf range name", "range name", "range code", "rn")),
    ("node", ("product node", "node", "type", "node type", "p/c", "status type", "classification")),
    ("status", ("status", "product status", "state", "archived")),
    ("sku", ("sku", "item code", "product code")),
    ("ref", ("reference character", "ref", "reference", "ref code")),
    ("category", ("category", "cat", "department")),
    ("brand", ("brand", "manufacturer", "maker")),
    ("name", ("product name", "name", "base name", "item name")),
    ("unitsPerCase", ("units per case", "units/case", "case count", "case size", "pk size", "units", "box size")),
    ("orderQty", ("order qty", "ordered", "q ordered", "current order", "qty")),
    ("inventory", ("inventory", "stock", "availability", "stock level", "quantity in hand")),
    ("variation", ("variation 1", "var1", "var 1", "flavor", "strain", "flavour", "breed")),
    ("variation2", ("variation 2", "var2", "var 2", "strength", "dosage", "potency")),
    ("variation3", ("variation 3", "var3", "var 3", "format", "pack", "size/weight")),
    ("variation4", ("variation 4", "var4", "var 4", "multiplier", "comm units")),
    ("backgroundColor", ("colour", "color", "hex", "background color")),
    ("textColor", ("text color", "text colour", "font color", "font colour", "txt color")),
    ("image", ("image url", "img", "image", "picture")),
    ("description", ("description", "desc", "product info")),
)

INACTIVE_STATUSES = frozenset({"inactive", "archived"})


@dataclass(frozen=True)
class HeaderBinding:
    """Immutable mapping from internal field names to sheet columns."""

    indices: Mapping[str, int]
    labels: Mapping[str, str]
    headers: Tuple[Any, ...] = ()

    def __contains__(self, key: object) -> bool:
        return key in self.indices

    def value(self, row: Sequence[Any], key: str) -> Any:
        """Return the cell bound to ``key`` or ``None`` when unbound or out of range."""

        index = self.indices.get(key)
        if index is None or index >= len(row):
            return None
        return row[index]

    def extract(self, row: Sequence[Any]) -> Dict[str, Any]:
        """Return every bound cell of ``row`` keyed by internal field name."""

        return {key: self.value(row, key) for key in self.indices}


def resolve_header_map(header_row: Sequence[Any]) -> HeaderBinding:
    """Bind internal field names to the columns of an arbitrary header row.

    Pass 1 assigns columns whose trimmed, lower-cased title equals one of a
    key's aliases. Pass 2 revisits the columns left unassigned and matches
    any title that *contains* an alias. Keys are tried in priority order, the
    first key a column matches decides its fate, a key keeps the first column
    it receives, and an assigned column is never reassigned.

    Args:
        header_row (Sequence[Any]): Raw header cells, in column order.

    Returns:
        HeaderBinding: Read-only column indices and the original titles of the
            bound columns.
    """

    indices: Dict[str, int] = {}
    labels: Dict[str, str] = {}
    assigned: Set[int] = set()
    normalized = [("" if cell is None else str(cell).strip().lower()) for cell in header_row]

    def claim(key: str, column: int) -> None:
        if key not in indices:
            indices[key] = column
            labels[key] = str(header_row[column]).strip()
            assigned.add(column)

    for column, head in enumerate(normalized):
        if not head:
            continue
        for key, aliases in HEADER_ALIASES:
            if head in aliases:
                claim(key, column)
                break

    for column, head in enumerate(normalized):
        if not head or column in assigned:
            continue
        for key, aliases in HEADER_ALIASES:
            if any(alias in head for alias in aliases):
                claim(key, column)
                break

    log.debug("Resolved header binding for %d of %d columns", len(indices), len(normalized))
    return HeaderBinding(
        indices=MappingProxyType(indices),
        labels=MappingProxyType(labels),
        headers=tuple(header_row),
    )


@dataclass(frozen=True)
class CatalogSnapshot:
    """Ordered, immutable sequence of resolved products."""

    products: Tuple[Product, ...] = ()
    built_at: float = field(default=0.0, compare=False)
    _by_sku: Dict[str, Product] = field(default_factory=dict, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        for product in self.products:
            key = product.sku.strip().upper()
            if key and key not in self._by_sku:
                self._by_sku[key] = product

    def __iter__(self) -> Iterator[Product]:
        return iter(self.products)

    def __len__(self) -> int:
        return len(self.products)

    def find_by_sku(self, sku: str) -> Optional[Product]:
        """Return the first product whose SKU matches ``sku`` case-insensitively."""

        return self._by_sku.get(str(sku or "").strip().upper())

    def serialized_size(self) -> int:
        """Return the length of the snapshot rendered as JSON."""

        return len(json.dumps([asdict(product) for product in self.products], default=str))


def _is_header_echo(raw: RawProductRow) -> bool:
    return raw.text("sku").lower() == "sku" or raw.text("name").lower() == "product name"


class CatalogStore:
    """Reads the product sheet and resolves it into a :class:`CatalogSnapshot`."""

    def __init__(self, workbook: Workbook, sheet_name: str = data_manager.PRODUCTS_SHEET) -> None:
        self._workbook = workbook
        self._sheet_name = sheet_name

    def header_binding(self) -> HeaderBinding:
        return resolve_header_map(data_manager.read_header(self._workbook, self._sheet_name))

    def load(self) -> CatalogSnapshot:
        """Resolve every data row of the product sheet.

        The most recent parent row is carried along as inheritance context.
        Blank rows, header echoes, inactive or archived rows, and rows that
        end up without a name or a SKU are left out of the snapshot. Parents
        always become the inheritance context, even when they are filtered.

        Returns:
            CatalogSnapshot: Products in sheet order.
        """

        table = data_manager.read_table(self._workbook, self._sheet_name)
        binding = resolve_header_map(table.header)
        products: List[Product] = []
        last_parent: Optional[Product] = None

        for offset, row in enumerate(table.rows):
            if data_manager.is_blank_row(row):
                continue
            raw = RawProductRow(row_id=table.first_row_number + offset, values=binding.extract(row))
            status = raw.text("status").lower()

            if raw.text("node").lower() == NodeType.PARENT.value.lower():
                last_parent = resolve_product(raw, None)
                if status not in INACTIVE_STATUSES and last_parent.name:
                    products.append(last_parent)
                continue

            if status in INACTIVE_STATUSES or _is_header_echo(raw):
                continue
            product = resolve_product(raw, last_parent)
            if product.sku and product.name:
                products.append(product)

        log.debug("Loaded %d products from '%s'", len(products), self._sheet_name)
        return CatalogSnapshot(products=tuple(products), built_at=time.time())


class CatalogCache:
    """Time-bounded, read-through cache over :meth:`CatalogStore.load`.

    The cache is not locked: a rebuild racing an invalidation may store a
    snapshot that is immediately dropped or briefly outlives the write. The
    sheet stays the source of truth.
    """

    def __init__(
        self,
        store: CatalogStore,
        *,
        ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        max_bytes: int = DEFAULT_CACHE_MAX_BYTES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._ttl_seconds = ttl_seconds
        self._max_bytes = max_bytes
        self._clock = clock
        self._entry: Optional[Tuple[float, CatalogSnapshot]] = None

    @property
    def store(self) -> CatalogStore:
        return self._store

    def get(self) -> CatalogSnapshot:
        """Return the live snapshot, rebuilding it when stale, empty, or absent."""

        entry = self._entry
        if entry is not None:
            stored_at, snapshot = entry
            if len(snapshot) > 0 and self._clock() - stored_at < self._ttl_seconds:
                log.debug("Catalog cache hit (%d products)", len(snapshot))
                return snapshot

        snapshot = self._store.load()
        size = snapshot.serialized_size()
        if size <= self._max_bytes:
            self._entry = (self._clock(), snapshot)
            log.debug("Cached %d products (%d bytes)", len(snapshot), size)
        else:
            self._entry = None
            log.warning("Catalog too large to cache (%d bytes > %d)", size, self._max_bytes)
        return snapshot

    def invalidate(self) -> None:
        """Drop the cached snapshot unconditionally."""

        self._entry = None
        log.debug("Catalog cache invalidated")


# ---------------------------------------------------------------------------
# Catalog mutations
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProductGroupSpec:
    """Shared attributes of a new product family (its parent row)."""

    name: str
    category: str = ""
    brand: str = ""
    description: str = ""
    image: str = ""
    base_sku: str = ""
    ref: str = ""
    background_color: str = ""
    text_color: str = ""
    zone_variation: str = ""
    commission_rate: Decimal = DEFAULT_COMMISSION_RATE
    sale_commission: Decimal = DEFAULT_SALE_COMMISSION
    variation_labels: Tuple[str, str, str, str] = ("Variation 1", "Variation 2", "Format", "Units")


@dataclass(frozen=True)
class VariantSpec:
    """One purchasable variant (a child row) of a product family."""

    sku: str = ""
    variations: Tuple[str, str, str, str] = ("", "", "", "")
    price: Optional[Decimal] = None
    sale_price: Optional[Decimal] = None
    on_sale: bool = False
    units_per_case: int = 1
    commission_rate: Optional[Decimal] = None
    sale_commission: Optional[Decimal] = None
    inventory: str = ""


def _blank_row(binding: HeaderBinding) -> List[Any]:
    return [None] * len(binding.headers)


def _set(row: List[Any], binding: HeaderBinding, key: str, value: Any) -> None:
    index = binding.indices.get(key)
    if index is not None:
        row[index] = value


def _build_parent_row(binding: HeaderBinding, group: ProductGroupSpec) -> List[Any]:
    row = _blank_row(binding)
    text_color = group.text_color or (contrast_text_color(group.background_color) if group.background_color else "")
    for key, value in (
        ("node", NodeType.PARENT.value),
        ("name", group.name),
        ("brand", group.brand),
        ("category", group.category),
        ("description", group.description),
        ("image", group.image),
        ("sku", group.base_sku),
        ("ref", group.ref),
        ("backgroundColor", group.background_color),
        ("textColor", text_color),
        ("zoneVariation", group.zone_variation),
        ("commissionRate", group.commission_rate),
        ("saleCommission", group.sale_commission),
    ):
        _set(row, binding, key, value)
    for key, label in zip(VARIATION_KEYS, group.variation_labels):
        _set(row, binding, key, label)
    return row


def _build_child_row(binding: HeaderBinding, group: ProductGroupSpec, variant: VariantSpec, sku: str) -> List[Any]:
    row = _blank_row(binding)
    _set(row, binding, "node", NodeType.CHILD.value)
    _set(row, binding, "sku", sku)
    _set(row, binding, "ref", group.ref)
    if "parentName" in binding:
        _set(row, binding, "parentName", group.name)
    for key, value in zip(VARIATION_KEYS, variant.variations):
        _set(row, binding, key, value)
    _set(row, binding, "price", variant.price)
    _set(row, binding, "salePrice", variant.sale_price)
    _set(row, binding, "onSale", bool(variant.on_sale))
    _set(row, binding, "unitsPerCase", max(1, int(variant.units_per_case or 1)))
    _set(row, binding, "commissionRate", variant.commission_rate)
    _set(row, binding, "saleCommission", variant.sale_commission)
    _set(row, binding, "inventory", variant.inventory)
    return row


def _locate_group(table: data_manager.SheetTable, binding: HeaderBinding, name: str) -> Optional[Tuple[int, int]]:
    """Return ``(parent_row, last_row)`` sheet numbers of the group named ``name``."""

    wanted = name.strip().lower()
    parent_row: Optional[int] = None
    last_row: Optional[int] = None
    for offset, row in enumerate(table.rows):
        row_number = table.first_row_number + offset
        node = str(binding.value(row, "node") or "").strip().lower()
        if parent_row is None:
            row_name = str(binding.value(row, "name") or "").strip().lower()
            if node == "parent" and row_name == wanted:
                parent_row = last_row = row_number
            continue
        if node == "parent" or data_manager.is_blank_row(row):
            break
        last_row = row_number
    if parent_row is None or last_row is None:
        return None
    return parent_row, last_row


def _style_parent_row(context: "RuntimeContext", row_number: int, background: str, text_color: str) -> None:
    sheet = data_manager.get_sheet(context.workbook, data_manager.PRODUCTS_SHEET)
    fill_hex = (background or "#666666").lstrip("#")
    font_hex = (text_color or contrast_text_color(background or "#666666")).lstrip("#")
    if len(fill_hex) != 6 or len(font_hex) != 6:
        return
    for cell in sheet[row_number]:
        cell.fill = PatternFill(fill_type="solid", start_color=fill_hex, end_color=fill_hex)
        cell.font = Font(bold=True, color=font_hex)


def add_product_group(
    context: "RuntimeContext",
    group: ProductGroupSpec,
    variants: Sequence[VariantSpec],
) -> List[str]:
    """Add variants to a product family, creating the family when it is new.

    A new family is appended to the end of the product sheet as a spacer row,
    a styled parent row, and one child row per variant. Variants for an
    existing family are inserted directly below that family's last row so they
    inherit from the right parent.

    Args:
        context (RuntimeContext): Runtime context owning the workbook and the
            catalog cache.
        group (ProductGroupSpec): Family attributes; ``group.name`` identifies
            an existing family case-insensitively.
        variants (Sequence[VariantSpec]): Variants to add. Variants without a
            SKU receive ``{ref}-{base_sku}-{n}``.

    Returns:
        list[str]: SKUs of the child rows written, in order.

    Raises:
        ValidationError: If ``group.name`` is blank or no variants are given.
    """

    try:
        if not group.name.strip():
            raise ValidationError("Product group name is required")
        if not variants:
            raise ValidationError("At least one variant is required")

        table = data_manager.read_table(context.workbook, data_manager.PRODUCTS_SHEET)
        binding = resolve_header_map(table.header)
        skus = [
            variant.sku or f"{group.ref}-{group.base_sku or 'SKU'}-{index}"
            for index, variant in enumerate(variants, start=1)
        ]
        child_rows = [
            _build_child_row(binding, group, variant, sku) for variant, sku in zip(variants, skus)
        ]

        located = _locate_group(table, binding, group.name)
        sheet = data_manager.get_sheet(context.workbook, data_manager.PRODUCTS_SHEET)
        if located is None:
            if any(not data_manager.is_blank_row(row) for row in table.rows):
                data_manager.append_row(context.workbook, data_manager.PRODUCTS_SHEET, _blank_row(binding))
            parent_row = data_manager.append_row(
                context.workbook, data_manager.PRODUCTS_SHEET, _build_parent_row(binding, group)
            )
            _style_parent_row(context, parent_row, group.background_color, group.text_color)
            for row in child_rows:
                data_manager.append_row(context.workbook, data_manager.PRODUCTS_SHEET, row)
            log.info("Added product group '%s' with %d variants", group.name, len(child_rows))
        else:
            insert_at = located[1] + 1
            sheet.insert_rows(insert_at, amount=len(child_rows))
            for offset, row in enumerate(child_rows):
                data_manager.write_cells(
                    context.workbook,
                    data_manager.PRODUCTS_SHEET,
                    insert_at + offset,
                    dict(enumerate(row)),
                )
            log.info("Added %d variants to existing group '%s'", len(child_rows), group.name)
        return skus
    finally:
        context.catalog.invalidate()


def update_product(context: "RuntimeContext", sku: str, field_values: Mapping[str, Any]) -> int:
    """Overwrite selected fields of the product row holding ``sku``.

    Args:
        context (RuntimeContext): Runtime context owning the workbook and the
            catalog cache.
        sku (str): SKU of the row to update (case-insensitive).
        field_values (Mapping[str, Any]): Internal field name to new value,
            e.g. ``{"price": Decimal("4.50"), "onSale": True}``.

    Returns:
        int: Sheet row number that was updated.

    Raises:
        KeyError: If a field is not bound to any column of the sheet.
        NotFoundError: If no row carries ``sku``.
    """

    try:
        table = data_manager.read_table(context.workbook, data_manager.PRODUCTS_SHEET)
        binding = resolve_header_map(table.header)
        unknown = [key for key in field_values if key not in binding]
        if unknown:
            raise KeyError(f"Unknown product field(s): {', '.join(sorted(unknown))}")

        wanted = sku.strip().upper()
        for offset, row in enumerate(table.rows):
            if str(binding.value(row, "sku") or "").strip().upper() == wanted and wanted:
                row_number = table.first_row_number + offset
                data_manager.write_cells(
                    context.workbook,
                    data_manager.PRODUCTS_SHEET,
                    row_number,
                    {binding.indices[key]: value for key, value in field_values.items()},
                )
                log.info("Updated product '%s' fields: %s", sku, ", ".join(field_values))
                return row_number

        log.warning("Product update failed for unknown SKU '%s'", sku)
        raise NotFoundError(f"Unknown product SKU: {sku}")
    finally:
        context.catalog.invalidate()


def archive_products(context: "RuntimeContext", skus: Sequence[str]) -> int:
    """Move the rows of ``skus`` from the product sheet to ``DELETED_PRODUCTS``.

    Args:
        context (RuntimeContext): Runtime context owning the workbook and the
            catalog cache.
        skus (Sequence[str]): SKUs to archive; matched exactly.

    Returns:
        int: Number of rows moved.

    Raises:
        ValidationError: If ``skus`` is empty.
        NotFoundError: If none of the SKUs are present.
    """

    try:
        wanted = {str(sku).strip() for sku in skus if str(sku).strip()}
        if not wanted:
            raise ValidationError("No SKUs provided")

        table = data_manager.read_table(context.workbook, data_manager.PRODUCTS_SHEET)
        binding = resolve_header_map(table.header)
        if "sku" not in binding:
            raise KeyError("Product sheet has no SKU column")

        row_numbers = [
            table.first_row_number + offset
            for offset, row in enumerate(table.rows)
            if str(binding.value(row, "sku") or "").strip() in wanted
        ]
        if not row_numbers:
            raise NotFoundError("No matching products found")

        moved = data_manager.move_rows(
            context.workbook,
            data_manager.PRODUCTS_SHEET,
            data_manager.DELETED_PRODUCTS_SHEET,
            row_numbers,
        )
        log.info("Archived %d product rows", moved)
        return moved
    finally:
        context.catalog.invalidate()


# ---------------------------------------------------------------------------
# Catalog views
# ---------------------------------------------------------------------------


def group_products(snapshot: CatalogSnapshot) -> Dict[str, List[Product]]:
    """Group products by family name, preserving sheet order within a group."""

    grouped: Dict[str, List[Product]] = {}
    for product in snapshot:
        grouped.setdefault(product.group_name, []).append(product)
    return grouped


def list_base_products(snapshot: CatalogSnapshot) -> List[Product]:
    """Return the first product of every family, sorted by family name."""

    seen: Dict[str, Product] = {}
    for product in snapshot:
        seen.setdefault(product.group_name, product)
    return [seen[name] for name in sorted(seen, key=str.lower)]


__all__ = [
    "HEADER_ALIASES",
    "HeaderBinding",
    "resolve_header_map",
    "CatalogSnapshot",
    "CatalogStore",
    "CatalogCache",
    "ProductGroupSpec",
    "VariantSpec",
    "add_product_group",
    "update_product",
    "archive_products",
    "group_products",
    "list_base_products",
]
