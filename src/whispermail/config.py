"""
WhisperMail - Configuration Management

Settings come from three layers, later ones winning: built-in defaults,
an optional TOML file in the data directory, and WHISPER_<SECTION>_<KEY>
environment variables.

Author: orpheus497
Version: 1.0.0
"""

import copy
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional

# Python 3.11+ has tomllib built-in, older versions need tomli
if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from .constants import (
    CONFIG_FILENAME,
    DEFAULT_DATA_DIR,
    DEFAULT_IMAP_PORT,
    DEFAULT_MAILBOX,
    DEFAULT_SMTP_PORT,
    MAX_FILE_SIZE,
    POLL_INTERVAL,
    RSA_KEY_SIZE,
    TRANSPORT_TIMEOUT,
)
from .errors import ConfigError, ErrorCode

logger = logging.getLogger(__name__)

# Default configuration dictionary
DEFAULT_CONFIG: Dict[str, Any] = {
    "identity": {
        "key_size": RSA_KEY_SIZE,
    },
    "session": {
        "my_address": "",
        "peer_address": "",
    },
    "relay": {
        "backend": "mail",
        "poll_interval": POLL_INTERVAL,
        "timeout": TRANSPORT_TIMEOUT,
        "smtp_host": "",
        "smtp_port": DEFAULT_SMTP_PORT,
        "imap_host": "",
        "imap_port": DEFAULT_IMAP_PORT,
        "username": "",
        "password": "",
        "mailbox": DEFAULT_MAILBOX,
    },
    "limits": {
        "max_file_size": MAX_FILE_SIZE,
    },
    "logging": {
        "level": "INFO",
        "file_logging": True,
        "console_logging": True,
    },
}


EXAMPLE_HEADER = """\
# WhisperMail configuration
#
# Every value can also be set through the environment as
# WHISPER_<SECTION>_<KEY>, e.g. WHISPER_RELAY_POLL_INTERVAL=60.
# Prefer WHISPER_RELAY_PASSWORD over storing the relay password here.

"""


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Merge override into a copy of base, descending into nested tables."""
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = _deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def _coerce(raw: str, like: Any) -> Any:
    """Convert an environment string to the type of the value it replaces."""
    if isinstance(like, bool):
        return raw.strip().lower() in ("true", "1", "yes", "on")
    if isinstance(like, int):
        return int(raw)
    if isinstance(like, float):
        return float(raw)
    return raw


def _toml_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    escaped = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def render_toml(data: Dict[str, Any]) -> str:
    """Render a two-level settings dict (sections of scalars) as TOML."""
    lines = []
    for section, settings in data.items():
        if not isinstance(settings, dict):
            continue
        lines.append(f"[{section}]")
        lines.extend(f"{key} = {_toml_value(value)}" for key, value in settings.items())
        lines.append("")
    return "\n".join(lines)


class Config:
    """Configuration manager for WhisperMail.

    Attributes:
        config_path: Path to the configuration file (may not exist)
        data: Effective settings, section -> key -> value
    """

    def __init__(self, config_path: Optional[Path] = None):
        if config_path is None:
            config_path = Path(DEFAULT_DATA_DIR).expanduser() / CONFIG_FILENAME

        self.config_path = Path(config_path)
        self.data = self._load()

    def _load(self) -> Dict[str, Any]:
        """Build the effective settings.

        Raises:
            ConfigError: If the configuration file cannot be read or parsed
        """
        data = copy.deepcopy(DEFAULT_CONFIG)

        if self.config_path.exists():
            try:
                with open(self.config_path, "rb") as f:
                    data = _deep_merge(data, tomllib.load(f))
            except (OSError, tomllib.TOMLDecodeError) as e:
                raise ConfigError(
                    ErrorCode.E704_CONFIG_PARSE_ERROR,
                    f"Failed to parse configuration file: {e}",
                    {"path": str(self.config_path), "error": str(e)},
                ) from e
            logger.debug(f"Loaded configuration from {self.config_path}")

        self._apply_environment(data)
        return data

    @staticmethod
    def _apply_environment(data: Dict[str, Any]) -> None:
        for section, settings in data.items():
            if not isinstance(settings, dict):
                continue
            for key, current in settings.items():
                name = f"WHISPER_{section.upper()}_{key.upper()}"
                raw = os.environ.get(name)
                if raw is None:
                    continue
                try:
                    settings[key] = _coerce(raw, current)
                except ValueError:
                    logger.warning(f"Ignoring {name}: expected {type(current).__name__}")

    def get(self, section: str, key: str, default: Any = None) -> Any:
        """Get a configuration value."""
        return self.data.get(section, {}).get(key, default)

    def to_dict(self) -> Dict[str, Any]:
        """Deep copy of the effective settings."""
        return copy.deepcopy(self.data)

    @classmethod
    def create_example(cls, path: Path) -> None:
        """Write the default settings to path as a commented TOML file.

        Raises:
            ConfigError: If the file cannot be written
        """
        path = Path(path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "w", encoding="utf-8") as f:
                f.write(EXAMPLE_HEADER)
                f.write(render_toml(DEFAULT_CONFIG))
        except OSError as e:
            raise ConfigError(
                ErrorCode.E702_CONFIG_SAVE_FAILED,
                f"Failed to create example configuration: {e}",
                {"path": str(path), "error": str(e)},
            ) from e
        logger.info(f"Example configuration written to {path}")
