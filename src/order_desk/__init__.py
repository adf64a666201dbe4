import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Mapping, Optional


PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR_ENV = "ORDER_DESK_LOG_DIR"
LOG_LEVEL_ENV = "ORDER_DESK_LOG_LEVEL"
LOG_FILE_NAME = "order_desk.log"


def resolve_log_dir(environ: Optional[Mapping[str, str]] = None) -> Path:
    """Return the log folder, honouring ``ORDER_DESK_LOG_DIR`` when set."""

    environ = os.environ if environ is None else environ
    configured = environ.get(LOG_DIR_ENV, "").strip()
    if configured:
        return Path(configured).expanduser()
    return PROJECT_ROOT / ".logs"


def resolve_log_level(environ: Optional[Mapping[str, str]] = None) -> int:
    """Map ``ORDER_DESK_LOG_LEVEL`` (a level name) onto a logging level; INFO otherwise."""

    environ = os.environ if environ is None else environ
    name = environ.get(LOG_LEVEL_ENV, "").strip().upper()
    level = logging.getLevelName(name) if name else logging.INFO
    return level if isinstance(level, int) else logging.INFO


def _configure_logging() -> logging.Logger:
    """Attach the rotating ledger log and a stderr handler to the package logger."""

    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    level = resolve_log_level()
    logger.setLevel(level)
    formatter = logging.Formatter(
        fmt="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    log_file = resolve_log_dir() / LOG_FILE_NAME
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(log_file, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    except OSError as exc:
        print(f"Warning: order desk log disabled, cannot write '{log_file}': {exc}", file=sys.stderr)

    # Commit and rejection messages only; DEBUG cache chatter stays in the file.
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(max(level, logging.INFO))
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


log = _configure_logging()
log.debug("Order desk logging ready")
