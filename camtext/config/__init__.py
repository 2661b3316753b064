"""Configuration management package."""

from .settings import Config, load_config, save_config
from .defaults import DEFAULT_CONFIG, VOCAB

__all__ = ["Config", "load_config", "save_config", "DEFAULT_CONFIG", "VOCAB"]
