"""Keeper configuration: pydantic schema plus JSON/env loading."""

from perp_keeper.config.schema import KeeperConfig, KNOWN_PRICE_SOURCES
from perp_keeper.config.loader import load_config, load_file_config

__all__ = ["KeeperConfig", "KNOWN_PRICE_SOURCES", "load_config", "load_file_config"]
