"""Configuration loading utilities."""

from __future__ import annotations

import json
import os
from pathlib import Path

from loguru import logger
from pydantic import ValidationError

from lanrelay.config.schema import Config


def get_data_dir() -> Path:
    """Return the lanrelay home directory (``$LANRELAY_HOME`` or ``~/.lanrelay``)."""
    override = os.environ.get("LANRELAY_HOME")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".lanrelay"


def get_config_path() -> Path:
    """Get the default configuration file path."""
    return get_data_dir() / "config.json"


def load_config(config_path: Path | None = None) -> Config:
    """Load configuration from file or create default.

    A missing file yields defaults. An unreadable or invalid file is logged
    and also yields defaults, so a typo never keeps the relay from starting.
    Environment variables (``LANRELAY_SERVER__PORT=9000``) fill in whatever
    the file leaves unset.
    """
    path = config_path or get_config_path()

    if path.exists():
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return Config(**data)
        except (json.JSONDecodeError, OSError, TypeError, ValidationError) as exc:
            logger.warning("[Config] failed to load {}: {}", path, exc)
            logger.warning("[Config] using default configuration")

    return Config()


def save_config(config: Config, config_path: Path | None = None) -> Path:
    """Save configuration to file (camelCase keys). Returns the path written."""
    path = config_path or get_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)

    data = config.model_dump(by_alias=True)
    path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
    return path
