"""Configuration module for groupcast."""

from groupcast.config.loader import get_config_path, load_config, save_config
from groupcast.config.schema import Config

__all__ = ["Config", "get_config_path", "load_config", "save_config"]
