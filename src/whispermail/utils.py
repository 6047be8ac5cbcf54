"""
WhisperMail - Utility functions.

Created by orpheus497

Logging setup plus formatting and validation helpers shared by the
command line and the client.
"""

import logging
import mimetypes
import re
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List, Optional

from rich.logging import RichHandler

from .constants import (
    LOG_BACKUP_COUNT,
    LOG_DATE_FORMAT,
    LOG_FILENAME,
    LOG_FORMAT,
    LOG_MAX_BYTES,
    LOGS_DIR,
)

logger = logging.getLogger(__name__)

ADDRESS_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
UNSAFE_FILENAME_CHARS = re.compile(r"[<>:\"/\\|?*\x00-\x1f]")


def configure_logging(
    logging_config: Optional[Dict[str, Any]] = None,
    data_dir: Optional[Path] = None,
    debug: bool = False,
) -> List[logging.Handler]:
    """
    Install the root logging handlers.

    Console output goes through rich; file output rotates under
    ``<data_dir>/logs``. Returns the installed handlers.

    Args:
        logging_config: The ``[logging]`` section of the configuration
        data_dir: Data directory holding the log folder
        debug: Force DEBUG level
    """
    logging_config = logging_config or {}
    level_name = "DEBUG" if debug else str(logging_config.get("level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    handlers: List[logging.Handler] = []

    if logging_config.get("console_logging", True):
        handlers.append(RichHandler(show_path=debug, rich_tracebacks=debug, markup=False))

    if logging_config.get("file_logging", True) and data_dir is not None:
        log_dir = Path(data_dir) / LOGS_DIR
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                log_dir / LOG_FILENAME,
                maxBytes=LOG_MAX_BYTES,
                backupCount=LOG_BACKUP_COUNT,
                encoding="utf-8",
            )
            file_handler.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT))
            handlers.append(file_handler)
        except OSError as e:
            logger.warning(f"File logging disabled: {e}")

    logging.basicConfig(level=level, handlers=handlers or [logging.NullHandler()], force=True)
    return handlers


def _parse_iso(iso_timestamp: str) -> datetime:
    """Parse an ISO-8601 string; naive values are taken as UTC."""
    dt = datetime.fromisoformat(iso_timestamp.replace("Z", "+00:00"))
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def format_timestamp(iso_timestamp: str, format_str: str = "%Y-%m-%d %H:%M:%S") -> str:
    """
    Format an ISO timestamp for display.

    Unparseable input is returned unchanged.
    """
    try:
        return _parse_iso(iso_timestamp).strftime(format_str)
    except (ValueError, TypeError, AttributeError):
        logger.debug(f"Unparseable timestamp {iso_timestamp!r}")
        return iso_timestamp


def _ago(count: int, unit: str) -> str:
    return f"{count} {unit}{'' if count == 1 else 's'} ago"


def format_timestamp_relative(iso_timestamp: str, now: Optional[datetime] = None) -> str:
    """'just now', 'N minutes/hours/days ago', or the date after a week."""
    try:
        dt = _parse_iso(iso_timestamp)
    except (ValueError, TypeError, AttributeError):
        logger.debug(f"Unparseable timestamp {iso_timestamp!r}")
        return iso_timestamp

    elapsed = int(((now or datetime.now(timezone.utc)) - dt).total_seconds())
    if elapsed < 60:
        return "just now"
    if elapsed < 3600:
        return _ago(elapsed // 60, "minute")
    if elapsed < 86400:
        return _ago(elapsed // 3600, "hour")
    if elapsed < 7 * 86400:
        return _ago(elapsed // 86400, "day")
    return dt.strftime("%Y-%m-%d")


def format_file_size(size: int) -> str:
    """Human readable byte count (B, KB, MB, GB)."""
    value = float(size)
    for unit in ("B", "KB", "MB"):
        if value < 1024:
            return f"{int(value)} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} GB"


def truncate_string(s: str, max_length: int, suffix: str = "...") -> str:
    """Shorten s to at most max_length characters, ending with suffix."""
    if len(s) > max_length:
        s = s[: max(max_length - len(suffix), 0)] + suffix
    return s


def validate_address(address: str) -> bool:
    """Loose check that a string looks like a mail address."""
    return bool(address) and bool(ADDRESS_PATTERN.match(address))


def guess_file_type(file_name: str) -> str:
    """MIME type for an attachment name, application/octet-stream if unknown."""
    mime_type, _ = mimetypes.guess_type(file_name)
    return mime_type or "application/octet-stream"


def sanitize_filename(filename: str) -> str:
    """
    Make a received attachment name safe to write into a directory.

    Path separators and reserved characters become underscores, so a peer
    cannot choose where the file lands.
    """
    cleaned = UNSAFE_FILENAME_CHARS.sub("_", filename).strip(". ")
    return cleaned or "unnamed"
