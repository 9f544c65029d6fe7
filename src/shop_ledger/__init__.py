"""Shop Ledger: inventory ledger and sales analytics for a small retail shop.

The package logger writes INFO and above to ``.logs/shop_ledger.log`` and
echoes problems to stderr. The console threshold starts at
``SHOP_LEDGER_LOG_LEVEL`` (default ``WARNING``) and is replaced by the
``[Logging] ConsoleLevel`` entry of ``config.ini`` once a configuration is
loaded.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = PROJECT_ROOT / ".logs"
LOG_FILE = LOG_DIR / "shop_ledger.log"
LOG_LEVEL_ENV = "SHOP_LEDGER_LOG_LEVEL"
DEFAULT_CONSOLE_LEVEL = "WARNING"


def resolve_level(name: str) -> int:
    """Map a level name such as ``"debug"`` to its ``logging`` constant.

    Raises:
        ValueError: If ``name`` is not a standard level name.
    """

    level = logging.getLevelName(name.strip().upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {name!r}")
    return level


def _console_handler(logger: logging.Logger) -> logging.Handler | None:
    for handler in logger.handlers:
        if getattr(handler, "name", None) == "shop_ledger.console":
            return handler
    return None


def set_console_level(name: str) -> None:
    """Change how much the package echoes to stderr."""

    handler = _console_handler(log)
    if handler is not None:
        handler.setLevel(resolve_level(name))


def _configure_logging() -> logging.Logger:
    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    logger.setLevel(logging.DEBUG)
    formatter = logging.Formatter(
        fmt="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            LOG_FILE,
            maxBytes=1_000_000,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    except OSError as exc:
        print(
            f"Warning: unable to initialize log file at '{LOG_FILE}': {exc}",
            file=sys.stderr,
        )

    try:
        console_level = resolve_level(os.environ.get(LOG_LEVEL_ENV, DEFAULT_CONSOLE_LEVEL))
    except ValueError as exc:
        print(f"Warning: {exc} in {LOG_LEVEL_ENV}; using {DEFAULT_CONSOLE_LEVEL}", file=sys.stderr)
        console_level = logging.WARNING
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.set_name("shop_ledger.console")
    console_handler.setLevel(console_level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


log = _configure_logging()
log.info("Logger initialized for the 'shop_ledger' package.")
