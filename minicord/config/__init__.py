"""Configuration module for minicord."""

from minicord.config.loader import get_config_path, load_config
from minicord.config.schema import Config

__all__ = ["Config", "load_config", "get_config_path"]
