"""
Process-wide logging setup for ADAPT-Remediate.

Worker threads log through ``logging.getLogger(__name__)``; this module only
decides where those records go. Every handler carries a ContextFilter so that
records emitted while an attempt is running know which attempt they belong to.

Example:
    >>> from adapt_remediate.logging_config import setup_logging
    >>> setup_logging(level="DEBUG", log_file=".remediation-state/remediate.log")
"""
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import List, Optional, Union

from .logging_context import ContextFilter, JSONFormatter

PLAIN_FORMAT = "%(name)s - %(levelname)s - %(message)s"
TIMESTAMPED_FORMAT = "%(asctime)s - " + PLAIN_FORMAT

_configured_handlers: List[logging.Handler] = []


def _formatter(json_format: bool, include_timestamp: bool) -> logging.Formatter:
    if json_format:
        return JSONFormatter()
    return logging.Formatter(TIMESTAMPED_FORMAT if include_timestamp else PLAIN_FORMAT)


def _install(handler: logging.Handler, formatter: logging.Formatter) -> None:
    handler.setFormatter(formatter)
    handler.addFilter(ContextFilter())
    logging.getLogger().addHandler(handler)
    _configured_handlers.append(handler)


def setup_logging(
    level: str = "INFO",
    log_file: Optional[Union[str, Path]] = None,
    include_timestamp: bool = True,
    json_format: bool = False,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5
) -> None:
    """
    Route log records to stdout and, optionally, a rotating file.

    Calling this again only changes the level; handlers are installed once
    per process (see reset_logging_config).

    Args:
        level: Root log level name
        log_file: Rotating log file; parent directories are created
        include_timestamp: Prefix plain-text records with a timestamp
        json_format: One JSON object per record, including attempt_id,
            error_id and pattern_id when set
        max_bytes: Rotation size of the log file
        backup_count: Rotated files to keep
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper()))

    if _configured_handlers:
        return

    formatter = _formatter(json_format, include_timestamp)
    _install(logging.StreamHandler(sys.stdout), formatter)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        _install(
            logging.handlers.RotatingFileHandler(
                path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
            ),
            formatter
        )
        root.debug(f"Writing logs to {path}")

    root.debug(f"Logging configured at {level.upper()}")


def reset_logging_config() -> None:
    """Remove the handlers installed by setup_logging (used by tests)."""
    root = logging.getLogger()
    while _configured_handlers:
        handler = _configured_handlers.pop()
        root.removeHandler(handler)
        handler.close()


def configure_cli_logging(
    verbose: bool = False,
    quiet: bool = False,
    debug: bool = False,
    default_level: str = "WARNING",
    log_file: Optional[str] = None,
    json_format: bool = False
) -> None:
    """
    Map CLI flags to a level: --debug beats --quiet, which beats --verbose.

    Without flags the configured ``default_level`` applies.
    """
    if debug:
        level = "DEBUG"
    elif quiet:
        level = "ERROR"
    elif verbose:
        level = "INFO"
    else:
        level = default_level

    setup_logging(
        level=level,
        log_file=log_file,
        include_timestamp=verbose or debug,
        json_format=json_format
    )
