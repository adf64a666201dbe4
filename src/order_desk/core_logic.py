"""Runtime wiring for Order Desk.

This module assembles the collaborators every operation needs (settings, the
live workbook, the catalog cache, the ledger lock, the client directory and
the optional document renderer) into a single :class:`RuntimeContext`. The
catalog and ledger layers receive that context explicitly; nothing here is a
module-level singleton apart from the process-wide ledger lock.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Protocol

from openpyxl.workbook import Workbook

from . import data_manager, log
from .catalog import CatalogCache, CatalogStore
from .constants import EXPECTED_SCHEMA_VERSION
from .documents import DocumentRenderer, WorkbookInvoiceRenderer
from .errors import (
    LedgerBusyError,
    NotFoundError,
    OrderDeskError,
    PersistenceError,
    RenderError,
    ValidationError,
)


class LedgerLock:
    """Reentrant, process-wide lock guarding the ledger append cursor."""

    def __init__(self) -> None:
        self._lock = threading.RLock()

    def acquire(self, timeout_ms: int) -> bool:
        """Wait up to ``timeout_ms`` milliseconds; return ``False`` on timeout."""

        return self._lock.acquire(timeout=max(0, timeout_ms) / 1000)

    def release(self) -> None:
        self._lock.release()


_LEDGER_LOCK = LedgerLock()


class ClientDirectory(Protocol):
    """Lookup of client records by identifier."""

    def get_client(self, client_id: str) -> Optional[data_manager.ClientRecord]:
        ...


class WorkbookClientDirectory:
    """Client directory backed by the ``CLIENT DATA`` worksheet."""

    def __init__(self, workbook: Workbook) -> None:
        self._workbook = workbook

    def get_client(self, client_id: str) -> Optional[data_manager.ClientRecord]:
        wanted = str(client_id or "").strip().lower()
        if not wanted:
            return None
        for record in data_manager.iter_clients(self._workbook):
            if record.client_id.lower() == wanted:
                return record
        return None

    def list_clients(self) -> list[data_manager.ClientRecord]:
        return list(data_manager.iter_clients(self._workbook))


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, workbook and shared collaborators."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    catalog: CatalogCache
    ledger_lock: LedgerLock
    clients: ClientDirectory
    renderer: Optional[DocumentRenderer] = None


def build_context(
    settings: data_manager.ConfigSettings,
    workbook: Workbook,
    *,
    ledger_lock: Optional[LedgerLock] = None,
    renderer: Optional[DocumentRenderer] = None,
    clock: Optional[Callable[[], float]] = None,
) -> RuntimeContext:
    """Wire a :class:`RuntimeContext` around an already opened workbook.

    Args:
        settings (data_manager.ConfigSettings): Parsed configuration.
        workbook (Workbook): Live workbook holding every sheet.
        ledger_lock (LedgerLock | None): Lock to serialize commits with.
            Defaults to the process-wide lock.
        renderer (DocumentRenderer | None): Document collaborator. When omitted
            and ``settings.documents_dir`` is configured, a
            :class:`WorkbookInvoiceRenderer` writing there is used.
        clock (Callable[[], float] | None): Monotonic clock for the catalog
            cache, injectable for tests.

    Returns:
        RuntimeContext: Context ready for catalog and ledger operations.
    """

    cache_kwargs = {}
    if clock is not None:
        cache_kwargs["clock"] = clock
    catalog = CatalogCache(
        CatalogStore(workbook),
        ttl_seconds=settings.cache_ttl_seconds,
        max_bytes=settings.cache_max_bytes,
        **cache_kwargs,
    )
    if renderer is None and settings.documents_dir is not None:
        renderer = WorkbookInvoiceRenderer(settings.documents_dir, store_name=settings.store_name)
    return RuntimeContext(
        settings=settings,
        workbook=workbook,
        catalog=catalog,
        ledger_lock=ledger_lock or _LEDGER_LOCK,
        clients=WorkbookClientDirectory(workbook),
        renderer=renderer,
    )


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Fully populated context.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return build_context(settings, workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Reject workbooks whose configured schema version is not supported.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Persist any in-memory workbook changes to the configured data file."""

    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook, discarding unsaved modifications.

    The ledger lock and renderer carry over; the catalog cache and client
    directory are rebuilt around the fresh workbook.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return build_context(
        context.settings,
        workbook,
        ledger_lock=context.ledger_lock,
        renderer=context.renderer,
    )


__all__ = [
    "OrderDeskError",
    "LedgerBusyError",
    "NotFoundError",
    "ValidationError",
    "PersistenceError",
    "RenderError",
    "LedgerLock",
    "ClientDirectory",
    "WorkbookClientDirectory",
    "RuntimeContext",
    "build_context",
    "load_runtime_context",
    "ensure_schema_version",
    "persist_context",
    "refresh_context",
]
