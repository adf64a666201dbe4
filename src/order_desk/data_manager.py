"""Data access layer for Order Desk.

This module provides low-level helpers that read from and write to the master
workbook. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: reading header-bound tables and appending, updating or
   relocating individual rows.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet
import openpyxl

from . import log
from .constants import (
    DEFAULT_CACHE_MAX_BYTES,
    DEFAULT_CACHE_TTL_SECONDS,
    DEFAULT_INVOICE_PREFIX,
    DEFAULT_LOCK_TIMEOUT_SECONDS,
    SheetName,
)


CONFIG_FILE_NAME = "config.ini"
PRODUCTS_SHEET = SheetName.PRODUCTS.value
ORDERS_SHEET = SheetName.ORDERS.value
CLIENT_DATA_SHEET = SheetName.CLIENT_DATA.value
DELETED_PRODUCTS_SHEET = SheetName.DELETED_PRODUCTS.value

CLIENT_ID_ALIASES = ("client_id", "client id", "clientid", "id")
CLIENT_NAME_ALIASES = ("company name", "name", "client name", "client")
CLIENT_ADDRESS_ALIASES = ("address", "client address")


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    store_name: str
    schema_version: str
    cache_ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS
    cache_max_bytes: int = DEFAULT_CACHE_MAX_BYTES
    lock_timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS
    invoice_prefix: str = DEFAULT_INVOICE_PREFIX
    save_on_commit: bool = True
    documents_dir: Optional[Path] = None


@dataclass(frozen=True)
class SheetTable:
    """Header row plus data rows of a worksheet, as plain cell values."""

    header: Tuple[Any, ...]
    rows: Tuple[Tuple[Any, ...], ...]
    first_row_number: int = 2


@dataclass(frozen=True)
class ClientRecord:
    """In-memory view of a row from the ``CLIENT DATA`` sheet."""

    client_id: str
    name: str
    address: str


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification, which allows the caller to deliberately target a
    non-standard location. When no explicit path is given the function walks up
    from the current working directory toward the filesystem root looking for a
    file named ``CONFIG_FILE_NAME``. The first match that exists on disk is
    considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search. May be relative to the current working directory.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute.

    Returns:
        configparser.ConfigParser: Initialized parser containing the raw
            configuration data.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def _anchor_path(raw: str, base_path: Optional[Path]) -> Path:
    path = Path(raw).expanduser()
    if not path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        path = (base_path / path).resolve()
    return path


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    The ``[System]`` section is mandatory. The ``[Catalog]``, ``[Ledger]`` and
    ``[Documents]`` sections are optional and fall back to the package
    defaults. Relative paths are expanded against ``base_path`` when provided,
    or against the current working directory as a fallback.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory to use as the anchor for relative
            ``DataFile`` and ``OutputDir`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required ``[System]`` options is missing.
        ValueError: If an optional numeric or boolean option is malformed.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    documents_raw = parser.get("Documents", "OutputDir", fallback="").strip()

    return ConfigSettings(
        data_file=_anchor_path(data_file_raw, base_path),
        store_name=store_name,
        schema_version=schema_version,
        cache_ttl_seconds=parser.getfloat("Catalog", "CacheTTLSeconds", fallback=DEFAULT_CACHE_TTL_SECONDS),
        cache_max_bytes=parser.getint("Catalog", "CacheMaxBytes", fallback=DEFAULT_CACHE_MAX_BYTES),
        lock_timeout_seconds=parser.getfloat("Ledger", "LockTimeoutSeconds", fallback=DEFAULT_LOCK_TIMEOUT_SECONDS),
        invoice_prefix=parser.get("Ledger", "InvoicePrefix", fallback=DEFAULT_INVOICE_PREFIX),
        save_on_commit=parser.getboolean("Ledger", "SaveOnCommit", fallback=True),
        documents_dir=_anchor_path(documents_raw, base_path) if documents_raw else None,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the master workbook.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk at an explicitly provided destination.

    Parent directories are created on demand.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Filesystem path that should receive the serialized
            workbook.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def get_sheet(workbook: Workbook, sheet_name: str) -> Worksheet:
    """Return a worksheet by name, falling back to a case-insensitive match.

    Args:
        workbook (Workbook): Workbook to search.
        sheet_name (str): Expected worksheet title.

    Returns:
        Worksheet: The matching worksheet.

    Raises:
        KeyError: If no worksheet matches, listing the available titles.
    """

    if sheet_name in workbook.sheetnames:
        return workbook[sheet_name]
    wanted = sheet_name.lower()
    for title in workbook.sheetnames:
        if title.lower() == wanted:
            return workbook[title]
    raise KeyError(
        f"Sheet '{sheet_name}' not found. Available: {', '.join(workbook.sheetnames)}"
    )


def ensure_sheet(workbook: Workbook, sheet_name: str, header: Sequence[Any]) -> Worksheet:
    """Return ``sheet_name``, creating it with ``header`` as its first row when absent."""

    try:
        return get_sheet(workbook, sheet_name)
    except KeyError:
        sheet = workbook.create_sheet(title=sheet_name)
        sheet.append(list(header))
        log.info("Created worksheet '%s'", sheet_name)
        return sheet


def is_blank_row(row: Sequence[Any]) -> bool:
    """Return ``True`` when every cell of ``row`` is empty or whitespace."""

    return all(cell is None or str(cell).strip() == "" for cell in row)


def read_header(workbook: Workbook, sheet_name: str) -> Tuple[Any, ...]:
    """Return the first row of ``sheet_name`` as a tuple of raw cell values."""

    sheet = get_sheet(workbook, sheet_name)
    for row in sheet.iter_rows(min_row=1, max_row=1, values_only=True):
        return tuple(row)
    return ()


def read_table(workbook: Workbook, sheet_name: str) -> SheetTable:
    """Read a worksheet as a header row plus its data rows.

    Data rows keep their sheet order and are padded to the header width so that
    positional access by a header-derived index never falls off the end of a
    short row. Blank rows are retained: their position is what gives every
    product its stable identifier.

    Args:
        workbook (Workbook): Workbook containing ``sheet_name``.
        sheet_name (str): Worksheet to read.

    Returns:
        SheetTable: Header and data rows. Row ``i`` of ``rows`` lives on sheet
            row ``first_row_number + i``.
    """

    sheet = get_sheet(workbook, sheet_name)
    header = read_header(workbook, sheet_name)
    width = len(header)
    rows: List[Tuple[Any, ...]] = []
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        padded = tuple(raw) + (None,) * max(0, width - len(raw))
        rows.append(padded)
    return SheetTable(header=header, rows=tuple(rows))


def iter_data_rows(workbook: Workbook, sheet_name: str) -> Iterator[Tuple[int, Tuple[Any, ...]]]:
    """Yield ``(row_number, values)`` for every non-empty data row of a sheet."""

    sheet = get_sheet(workbook, sheet_name)
    for row_number, raw in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if not is_blank_row(raw):
            yield row_number, tuple(raw)


def append_row(workbook: Workbook, sheet_name: str, values: Sequence[Any]) -> int:
    """Append ``values`` as a single new row and return its 1-based row number.

    Args:
        workbook (Workbook): Workbook whose sheet should be modified.
        sheet_name (str): Target worksheet.
        values (Sequence[Any]): Cell values in column order.

    Returns:
        int: Sheet row number the values were written to.
    """

    sheet = get_sheet(workbook, sheet_name)
    sheet.append(list(values))
    return sheet.max_row


def write_cells(workbook: Workbook, sheet_name: str, row_number: int, values: Mapping[int, Any]) -> None:
    """Overwrite selected cells of one row.

    Args:
        workbook (Workbook): Workbook containing ``sheet_name``.
        sheet_name (str): Target worksheet.
        row_number (int): 1-based row to modify.
        values (Mapping[int, Any]): Zero-based column index to new value.
    """

    sheet = get_sheet(workbook, sheet_name)
    for column_index, value in values.items():
        sheet.cell(row=row_number, column=column_index + 1, value=value)


def move_rows(workbook: Workbook, source: str, destination: str, row_numbers: Iterable[int]) -> int:
    """Move whole rows from ``source`` to the end of ``destination``.

    The destination sheet is created with the source header when missing.
    Rows are appended in their original order and then deleted from the source
    bottom-up so the remaining row numbers stay valid while deleting.

    Args:
        workbook (Workbook): Workbook holding both sheets.
        source (str): Sheet rows are taken from.
        destination (str): Sheet rows are appended to.
        row_numbers (Iterable[int]): 1-based row numbers to move.

    Returns:
        int: Number of rows moved.
    """

    targets = sorted(set(row_numbers))
    if not targets:
        return 0
    source_sheet = get_sheet(workbook, source)
    destination_sheet = ensure_sheet(workbook, destination, read_header(workbook, source))

    for row_number in targets:
        values = [cell.value for cell in source_sheet[row_number]]
        destination_sheet.append(values)
    for row_number in reversed(targets):
        source_sheet.delete_rows(row_number)
    return len(targets)


def _match_column(header: Sequence[Any], aliases: Sequence[str]) -> Optional[int]:
    normalized = [str(cell).strip().lower() if cell is not None else "" for cell in header]
    for alias in aliases:
        if alias in normalized:
            return normalized.index(alias)
    return None


def iter_clients(workbook: Workbook) -> Iterator[ClientRecord]:
    """Iterate over client records stored on the ``CLIENT DATA`` worksheet.

    Columns are located by alias (``CLIENT_ID``, ``Company Name``,
    ``Address``...) so that reordered or renamed client sheets keep working.
    Rows without an identifier are skipped.

    Args:
        workbook (Workbook): Workbook containing the client sheet.

    Yields:
        ClientRecord: One record per populated client row.

    Raises:
        KeyError: If the sheet has no recognisable client id column.
    """

    header = read_header(workbook, CLIENT_DATA_SHEET)
    id_index = _match_column(header, CLIENT_ID_ALIASES)
    if id_index is None:
        raise KeyError("Client sheet has no client id column")
    name_index = _match_column(header, CLIENT_NAME_ALIASES)
    address_index = _match_column(header, CLIENT_ADDRESS_ALIASES)

    def cell(row: Tuple[Any, ...], index: Optional[int]) -> str:
        if index is None or index >= len(row) or row[index] is None:
            return ""
        return str(row[index]).strip()

    for _, row in iter_data_rows(workbook, CLIENT_DATA_SHEET):
        client_id = cell(row, id_index)
        if not client_id:
            continue
        yield ClientRecord(client_id=client_id, name=cell(row, name_index), address=cell(row, address_index))


__all__ = [
    "CONFIG_FILE_NAME",
    "PRODUCTS_SHEET",
    "ORDERS_SHEET",
    "CLIENT_DATA_SHEET",
    "DELETED_PRODUCTS_SHEET",
    "ConfigSettings",
    "SheetTable",
    "ClientRecord",
    "find_config_file",
    "read_config",
    "parse_settings",
    "open_workbook",
    "save_workbook",
    "refresh_workbook",
    "get_sheet",
    "ensure_sheet",
    "is_blank_row",
    "read_header",
    "read_table",
    "iter_data_rows",
    "append_row",
    "write_cells",
    "move_rows",
    "iter_clients",
]
