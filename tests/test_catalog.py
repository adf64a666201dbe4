"""Tests for header binding, catalog loading, caching and catalog mutations."""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import Mock

import openpyxl
import pytest

from order_desk import catalog, data_manager
from order_desk.catalog import CatalogCache, CatalogSnapshot, CatalogStore, ProductGroupSpec, VariantSpec
from order_desk.core_logic import NotFoundError, ValidationError
from order_desk.products import RawProductRow, resolve_product


# ---------------------------------------------------------------------------
# Header binding
# ---------------------------------------------------------------------------


def test_resolve_header_map_binds_standard_titles():
    header = ["Node", "SKU", "Product Name", "Price", "Sale Price", "On Sale", "Units Per Case"]

    binding = catalog.resolve_header_map(header)

    assert binding.indices == {
        "node": 0,
        "sku": 1,
        "name": 2,
        "price": 3,
        "salePrice": 4,
        "onSale": 5,
        "unitsPerCase": 6,
    }
    assert binding.labels["price"] == "Price"


def test_composite_headers_are_not_stolen_by_generic_aliases():
    binding = catalog.resolve_header_map(["Commission", "Sale Commission", "Sale Price", "Sale"])

    assert binding.indices["commissionRate"] == 0
    assert binding.indices["saleCommission"] == 1
    assert binding.indices["salePrice"] == 2
    assert binding.indices["onSale"] == 3


def test_substring_pass_binds_decorated_titles():
    binding = catalog.resolve_header_map(["  PRODUCT NAME ", "Retail Unit Price", "Item SKU #"])

    assert binding.indices["name"] == 0
    assert binding.indices["price"] == 1
    assert binding.indices["sku"] == 2


def test_first_column_wins_and_columns_are_never_reassigned():
    binding = catalog.resolve_header_map(["Price", "Unit Price", None, ""])

    assert binding.indices == {"price": 0}


def test_header_binding_is_read_only():
    binding = catalog.resolve_header_map(["SKU"])

    with pytest.raises(TypeError):
        binding.indices["sku"] = 5  # type: ignore[index]


def test_binding_value_returns_none_for_unbound_keys():
    binding = catalog.resolve_header_map(["SKU", "Price"])

    assert binding.value(("A-1", 3), "price") == 3
    assert binding.value(("A-1",), "price") is None
    assert binding.value(("A-1", 3), "brand") is None


# ---------------------------------------------------------------------------
# Catalog loading
# ---------------------------------------------------------------------------


def test_load_resolves_parents_and_children(workbook):
    snapshot = CatalogStore(workbook).load()

    assert [product.sku or product.name for product in snapshot] == ["Widget", "W-1", "W-2", "Gadget", "G-1"]
    w1 = snapshot.find_by_sku("W-1")
    assert w1.id == 3
    assert w1.group_id == 2
    assert w1.price == Decimal("10")
    assert w1.on_sale is True
    assert w1.units_per_case == 2
    g1 = snapshot.find_by_sku("g-1")
    assert g1.group_name == "Gadget"
    assert g1.on_sale is True
    assert g1.sale_price == Decimal("4")


def test_load_skips_header_echoes_and_inactive_rows(make_workbook):
    workbook = make_workbook(
        [
            {"node": "Parent", "name": "Family", "price": 3},
            {"node": "Child", "sku": "F-1"},
            {"sku": "SKU", "name": "Product Name"},
            {"node": "Child", "sku": "F-2", "status": "Archived"},
            {"node": "Child", "sku": "F-3", "status": "inactive"},
            {"node": "Child"},
            {"node": "Child", "sku": "F-4"},
        ]
    )

    snapshot = CatalogStore(workbook).load()

    assert [product.sku for product in snapshot if not product.is_parent] == ["F-1", "F-4"]
    assert snapshot.find_by_sku("F-4").price == Decimal("3")


def test_children_inherit_from_nearest_parent_only(make_workbook):
    workbook = make_workbook(
        [
            {"node": "Parent", "name": "First", "brand": "One", "price": 1},
            {"node": "Child", "sku": "A-1", "price": 7, "brand": "Override"},
            {"node": "Parent", "name": "Second", "price": 2},
            {"node": "Child", "sku": "B-1"},
        ]
    )

    snapshot = CatalogStore(workbook).load()

    b1 = snapshot.find_by_sku("B-1")
    assert b1.price == Decimal("2")
    assert b1.brand == ""
    assert b1.group_name == "Second"


def test_load_handles_renamed_columns():
    workbook = openpyxl.Workbook()
    sheet = workbook.active
    sheet.title = "PRODUCTS"
    sheet.append(["Type", "Item Code", "Name", "Unit Price", "Promo Active", "Case Size"])
    sheet.append(["Parent", None, "Renamed", 6, None, 12])
    sheet.append(["Child", "R-1", None, None, "x", None])

    snapshot = CatalogStore(workbook).load()

    r1 = snapshot.find_by_sku("R-1")
    assert r1.price == Decimal("6")
    assert r1.on_sale is True
    assert r1.units_per_case == 12


def test_snapshot_lookup_prefers_first_match():
    first = resolve_product(RawProductRow(2, {"sku": "dup", "name": "First"}))
    second = resolve_product(RawProductRow(3, {"sku": "DUP", "name": "Second"}))

    snapshot = CatalogSnapshot(products=(first, second))

    assert snapshot.find_by_sku(" Dup ").name == "First"
    assert snapshot.find_by_sku("missing") is None
    assert len(snapshot) == 2


# ---------------------------------------------------------------------------
# Catalog cache
# ---------------------------------------------------------------------------


@pytest.fixture
def loaded_snapshot(workbook):
    return CatalogStore(workbook).load()


def test_cache_serves_snapshot_within_ttl(loaded_snapshot, fake_clock):
    store = Mock(spec=CatalogStore)
    store.load.return_value = loaded_snapshot
    cache = CatalogCache(store, ttl_seconds=300, clock=fake_clock)

    first = cache.get()
    fake_clock.advance(299)
    second = cache.get()

    assert first is second is loaded_snapshot
    store.load.assert_called_once_with()


def test_cache_rebuilds_after_ttl(loaded_snapshot, fake_clock):
    store = Mock(spec=CatalogStore)
    store.load.return_value = loaded_snapshot
    cache = CatalogCache(store, ttl_seconds=300, clock=fake_clock)

    cache.get()
    fake_clock.advance(300)
    cache.get()

    assert store.load.call_count == 2


def test_cache_never_serves_empty_snapshot(fake_clock):
    store = Mock(spec=CatalogStore)
    store.load.return_value = CatalogSnapshot()
    cache = CatalogCache(store, clock=fake_clock)

    cache.get()
    cache.get()

    assert store.load.call_count == 2


def test_cache_skips_oversized_snapshot(loaded_snapshot, fake_clock):
    store = Mock(spec=CatalogStore)
    store.load.return_value = loaded_snapshot
    cache = CatalogCache(store, max_bytes=10, clock=fake_clock)

    assert cache.get() is loaded_snapshot
    cache.get()

    assert store.load.call_count == 2


def test_invalidate_forces_reload(loaded_snapshot, fake_clock):
    store = Mock(spec=CatalogStore)
    store.load.return_value = loaded_snapshot
    cache = CatalogCache(store, clock=fake_clock)

    cache.get()
    cache.invalidate()
    cache.get()

    assert store.load.call_count == 2


# ---------------------------------------------------------------------------
# Catalog mutations
# ---------------------------------------------------------------------------


def test_add_product_group_appends_new_family(context):
    context.catalog.get()
    group = ProductGroupSpec(
        name="Gizmo",
        category="Gear",
        base_sku="GZ",
        ref="X",
        background_color="#336699",
        commission_rate=Decimal("2.5"),
        variation_labels=("Colour", "Size", "Format", "Units"),
    )
    variants = [
        VariantSpec(variations=("Green", "L", "", ""), price=Decimal("8.00")),
        VariantSpec(sku="GZ-CASE", variations=("Green", "Case", "", ""), price=Decimal("90"), units_per_case=12),
    ]

    skus = catalog.add_product_group(context, group, variants)

    assert skus == ["X-GZ-1", "GZ-CASE"]
    snapshot = context.catalog.get()
    first = snapshot.find_by_sku("X-GZ-1")
    assert first.group_name == "Gizmo"
    assert first.commission_rate == Decimal("2.5")
    assert first.variation_labels == ("Colour", "Size", "Format", "Units")
    assert snapshot.find_by_sku("GZ-CASE").has_case is True

    sheet = data_manager.get_sheet(context.workbook, "PRODUCTS")
    parent_row = first.group_id
    assert data_manager.is_blank_row([cell.value for cell in sheet[parent_row - 1]])
    assert sheet.cell(row=parent_row, column=1).fill.start_color.rgb.endswith("336699")
    assert sheet.cell(row=parent_row, column=1).font.bold is True


def test_add_product_group_inserts_into_existing_family(context):
    skus = catalog.add_product_group(
        context,
        ProductGroupSpec(name="widget", ref="W", base_sku="NEW"),
        [VariantSpec(sku="W-3", variations=("Green", "", "", ""))],
    )

    snapshot = context.catalog.get()
    w3 = snapshot.find_by_sku("W-3")
    assert skus == ["W-3"]
    assert w3.id == 5
    assert w3.group_name == "Widget"
    assert w3.price == Decimal("10")
    assert snapshot.find_by_sku("G-1").group_name == "Gadget"


def test_add_product_group_requires_variants(context):
    with pytest.raises(ValidationError):
        catalog.add_product_group(context, ProductGroupSpec(name="Empty"), [])


def test_update_product_invalidates_cache(context):
    assert context.catalog.get().find_by_sku("W-2").price == Decimal("12")

    row_number = catalog.update_product(context, "w-2", {"price": 15, "onSale": True})

    assert row_number == 4
    updated = context.catalog.get().find_by_sku("W-2")
    assert updated.price == Decimal("15")
    assert updated.on_sale is True


def test_update_product_unknown_sku(context):
    with pytest.raises(NotFoundError):
        catalog.update_product(context, "NOPE", {"price": 1})


def test_update_product_unknown_field(context):
    with pytest.raises(KeyError):
        catalog.update_product(context, "W-1", {"shoeSize": 9})


def test_archive_products_moves_rows(context):
    context.catalog.get()

    moved = catalog.archive_products(context, ["W-2", "G-1"])

    assert moved == 2
    snapshot = context.catalog.get()
    assert snapshot.find_by_sku("W-2") is None
    assert snapshot.find_by_sku("G-1") is None
    assert snapshot.find_by_sku("W-1") is not None
    archived = data_manager.read_table(context.workbook, "DELETED_PRODUCTS")
    assert archived.header == data_manager.read_header(context.workbook, "PRODUCTS")
    assert {row[2] for row in archived.rows} == {"W-2", "G-1"}


def test_archive_products_rejects_empty_input(context):
    with pytest.raises(ValidationError):
        catalog.archive_products(context, ["  "])


def test_archive_products_unknown_skus(context):
    with pytest.raises(NotFoundError):
        catalog.archive_products(context, ["MISSING"])


def test_mutation_failure_still_invalidates_cache(context, monkeypatch):
    invalidate = Mock(wraps=context.catalog.invalidate)
    monkeypatch.setattr(context.catalog, "invalidate", invalidate)

    with pytest.raises(NotFoundError):
        catalog.archive_products(context, ["MISSING"])

    invalidate.assert_called_once_with()


# ---------------------------------------------------------------------------
# Catalog views
# ---------------------------------------------------------------------------


def test_group_products(loaded_snapshot):
    grouped = catalog.group_products(loaded_snapshot)

    assert list(grouped) == ["Widget", "Gadget"]
    assert [product.sku for product in grouped["Widget"]] == ["", "W-1", "W-2"]


def test_list_base_products_sorted_by_group(loaded_snapshot):
    base = catalog.list_base_products(loaded_snapshot)

    assert [product.group_name for product in base] == ["Gadget", "Widget"]
