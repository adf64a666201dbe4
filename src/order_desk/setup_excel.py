"""Bootstrap the Order Desk master workbook.

Usable as the ``order-desk-setup`` console script or as a library from tests
and tooling. The workbook gets one sheet per :data:`SHEET_COLUMNS` entry with
a bold header row; the product header uses titles that
:func:`order_desk.catalog.resolve_header_map` binds exactly.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Mapping, Sequence

import openpyxl
from openpyxl.styles import Font

from . import data_manager, log
from .constants import ORDER_HEADER, SheetName


SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    SheetName.PRODUCTS.value: [
        "Inventory",
        "Node",
        "SKU",
        "Ref",
        "Category",
        "Brand",
        "Product Name",
        "Variation 1",
        "Variation 2",
        "Variation 3",
        "Variation 4",
        "Price",
        "Sale Price",
        "On Sale",
        "Units Per Case",
        "Commission Rate",
        "Sale Commission",
        "Colour",
        "Text Colour",
        "Description",
        "Image",
        "PDF Range Name",
        "Zone",
        "Status",
    ],
    SheetName.ORDERS.value: list(ORDER_HEADER),
    SheetName.CLIENT_DATA.value: [
        "CLIENT_ID",
        "Company Name",
        "Address",
        "Phone",
    ],
}


def create_master_workbook(
    destination: Path,
    *,
    sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS,
    clients: Sequence[Sequence[object]] = (),
    overwrite: bool = False,
) -> Path:
    """Create the master workbook at ``destination``.

    Args:
        destination (Path): Target ``.xlsx`` path. Parent folders are created.
        sheet_columns (Mapping[str, Sequence[str]]): Sheet title to header row.
        clients (Sequence[Sequence[object]]): Optional rows to seed the client
            sheet with.
        overwrite (bool): Replace an existing file instead of refusing.

    Returns:
        Path: Resolved path of the written workbook.

    Raises:
        FileExistsError: If ``destination`` exists and ``overwrite`` is
            ``False``.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing master workbook: {destination}"
        )

    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()

    # openpyxl always starts with a default "Sheet".
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)

    for sheet_name, columns in sheet_columns.items():
        worksheet = workbook.create_sheet(title=sheet_name)
        for column_index, column_name in enumerate(columns, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font

    if clients and SheetName.CLIENT_DATA.value in workbook.sheetnames:
        client_sheet = workbook[SheetName.CLIENT_DATA.value]
        for row in clients:
            client_sheet.append(list(row))

    workbook.save(destination)
    log.info("Created master workbook '%s'", destination)
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    """Create the workbook named by ``[System] DataFile`` in ``config_path``."""

    config_path = Path(config_path).expanduser().resolve()
    parser = data_manager.read_config(config_path)
    settings = data_manager.parse_settings(parser, base_path=config_path.parent)
    return create_master_workbook(settings.data_file, overwrite=overwrite)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Initialize the Order Desk data file")
    parser.add_argument(
        "--config",
        default=data_manager.CONFIG_FILE_NAME,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the target workbook if it already exists.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the ``order-desk-setup`` script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- Order Desk Setup ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, overwrite=args.force)
    except (FileNotFoundError, KeyError) as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except OSError as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created master workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
