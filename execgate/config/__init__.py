"""Configuration module for execgate."""

from execgate.config.loader import load_config, get_config_path
from execgate.config.schema import Config

__all__ = ["Config", "load_config", "get_config_path"]
