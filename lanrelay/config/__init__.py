"""Configuration module for lanrelay."""

from lanrelay.config.loader import get_config_path, load_config, save_config
from lanrelay.config.schema import Config

__all__ = ["Config", "get_config_path", "load_config", "save_config"]
