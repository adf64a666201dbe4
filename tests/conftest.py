"""Shared pytest fixtures and utilities for Order Desk tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence

import openpyxl
import pytest
from openpyxl.workbook import Workbook

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from order_desk import cli, constants, core_logic, data_manager, ledger  # noqa: E402
from order_desk.setup_excel import SHEET_COLUMNS, create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
PRODUCT_HEADER: List[str] = list(SHEET_COLUMNS[constants.SheetName.PRODUCTS.value])
CLIENT_HEADER: List[str] = list(SHEET_COLUMNS[constants.SheetName.CLIENT_DATA.value])

# Short names used by tests when describing product rows.
PRODUCT_FIELDS: Mapping[str, str] = {
    "inventory": "Inventory",
    "node": "Node",
    "sku": "SKU",
    "ref": "Ref",
    "category": "Category",
    "brand": "Brand",
    "name": "Product Name",
    "variation1": "Variation 1",
    "variation2": "Variation 2",
    "variation3": "Variation 3",
    "variation4": "Variation 4",
    "price": "Price",
    "sale_price": "Sale Price",
    "on_sale": "On Sale",
    "units": "Units Per Case",
    "commission": "Commission Rate",
    "sale_commission": "Sale Commission",
    "colour": "Colour",
    "text_colour": "Text Colour",
    "description": "Description",
    "image": "Image",
    "pdf_range": "PDF Range Name",
    "zone": "Zone",
    "status": "Status",
}

WIDGET_PRODUCTS: List[Dict[str, Any]] = [
    {"node": "Parent", "name": "Widget", "category": "Tools", "price": 10, "commission": 1.5, "colour": "#000000"},
    {"node": "Child", "sku": "W-1", "variation1": "Blue", "on_sale": True, "sale_commission": 2.0, "units": 2},
    {"node": "Child", "sku": "W-2", "variation1": "Red", "price": 12},
    {},
    {"node": "Parent", "name": "Gadget", "category": "Toys", "price": 5, "sale_price": 4, "on_sale": "yes"},
    {"node": "Child", "sku": "G-1", "variation1": "Small"},
]

DEFAULT_CLIENTS: List[List[Any]] = [
    ["C-1", "Acme Corp", "1 Main St", "555-0100"],
    ["C-2", "Globex", "2 Side Rd", "555-0200"],
]

_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "StoreName = {store_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Ledger]\n"
    "LockTimeoutSeconds = 2\n"
    "SaveOnCommit = {save_on_commit}\n"
)


def product_row(header: Sequence[str] = PRODUCT_HEADER, **values: Any) -> List[Any]:
    """Build a product sheet row from short field names."""

    row: List[Any] = [None] * len(header)
    for key, value in values.items():
        row[list(header).index(PRODUCT_FIELDS[key])] = value
    return row


def build_workbook(
    products: Sequence[Mapping[str, Any]] = (),
    *,
    clients: Sequence[Sequence[Any]] = DEFAULT_CLIENTS,
    orders: Sequence[Sequence[Any]] = (),
    product_header: Sequence[str] = PRODUCT_HEADER,
) -> Workbook:
    """Create an in-memory workbook holding products, clients and ledger rows."""

    workbook = openpyxl.Workbook()
    workbook.remove(workbook.active)
    product_sheet = workbook.create_sheet(constants.SheetName.PRODUCTS.value)
    product_sheet.append(list(product_header))
    for values in products:
        product_sheet.append(product_row(product_header, **values))
    order_sheet = workbook.create_sheet(constants.SheetName.ORDERS.value)
    order_sheet.append(list(constants.ORDER_HEADER))
    for row in orders:
        order_sheet.append(list(row))
    client_sheet = workbook.create_sheet(constants.SheetName.CLIENT_DATA.value)
    client_sheet.append(CLIENT_HEADER)
    for row in clients:
        client_sheet.append(list(row))
    return workbook


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    store_name: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the repository root path."""

    return PROJECT_ROOT


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates a seeded master workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: Optional[str] = None,
        products: Sequence[Mapping[str, Any]] = WIDGET_PRODUCTS,
        clients: Sequence[Sequence[Any]] = DEFAULT_CLIENTS,
        filename: str = "order_desk.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = create_master_workbook(base_dir / filename, clients=clients, overwrite=True)
        workbook = openpyxl.load_workbook(workbook_path)
        sheet = workbook[constants.SheetName.PRODUCTS.value]
        for values in products:
            sheet.append(product_row(**values))
        workbook.save(workbook_path)
        return workbook_path

    return _create_workbook


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        store_name: str = "Test Desk",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        save_on_commit: bool = True,
        documents_dir: Optional[str] = None,
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=f"bundle_{bundle_id}")
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_text = _CONFIG_TEMPLATE.format(
            data_file=data_file_entry,
            store_name=store_name,
            schema_version=schema_version,
            save_on_commit="yes" if save_on_commit else "no",
        )
        if documents_dir is not None:
            config_text += f"\n[Documents]\nOutputDir = {documents_dir}\n"
        config_path = bundle_dir / "config.ini"
        config_path.write_text(config_text)
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            store_name=store_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# In-memory context fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def make_workbook() -> Callable[..., Workbook]:
    """Expose :func:`build_workbook` to tests."""

    return build_workbook


@pytest.fixture
def make_product_row() -> Callable[..., List[Any]]:
    """Expose :func:`product_row` to tests."""

    return product_row


@pytest.fixture
def widget_products() -> List[Dict[str, Any]]:
    return [dict(values) for values in WIDGET_PRODUCTS]


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide settings that never touch the disk on commit."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "order_desk.xlsx",
        store_name="Test Desk",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        lock_timeout_seconds=1,
        save_on_commit=False,
    )


@pytest.fixture
def workbook() -> Workbook:
    """Return an in-memory workbook seeded with the widget catalog."""

    return build_workbook(WIDGET_PRODUCTS)


@pytest.fixture
def context(settings: data_manager.ConfigSettings, workbook: Workbook) -> core_logic.RuntimeContext:
    """Assemble a runtime context with a private ledger lock and no renderer."""

    return core_logic.build_context(settings, workbook, ledger_lock=core_logic.LedgerLock())


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``ledger.datetime`` to return a predetermined moment."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(ledger, "datetime", _FixedDateTime)
        return moment

    return _apply


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="order-desk", description="Order Desk CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]
