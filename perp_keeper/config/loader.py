"""
Configuration loading.

Order of precedence (later wins):
    defaults <- config/keeper.json <- config/keeper.local.json <- environment

The .env file is loaded first with override=False, so variables already in
the process environment always win over it.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from dotenv import load_dotenv
from pydantic import ValidationError

from perp_keeper.config.schema import KeeperConfig
from perp_keeper.errors import ConfigurationError

logger = logging.getLogger(__name__)

ROOT = Path(__file__).resolve().parents[2]
CONFIG_DIR = ROOT / "config"
BASE_CONFIG_NAME = "keeper.json"
LOCAL_CONFIG_NAME = "keeper.local.json"

ENV_PREFIX = "KEEPER_"

# Field name -> env var. Every field can also be set as KEEPER_<FIELD>.
ENV_ALIASES = {
    "rpc_url": ["KEEPER_RPC_URL", "SOLANA_RPC_URL"],
}


def _load_json(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = json.load(handle)
    except FileNotFoundError:
        return {}
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Invalid JSON in {path}: {exc}", {"path": str(path)}) from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} must contain a JSON object", {"path": str(path)})
    return data


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result: Dict[str, Any] = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _env_overrides(env: Mapping[str, str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for name in KeeperConfig.model_fields:
        candidates = ENV_ALIASES.get(name, [f"{ENV_PREFIX}{name.upper()}"])
        for var in candidates:
            value = env.get(var)
            if value is not None and value != "":
                overrides[name] = value
                break
    return overrides


def load_file_config(config_dir: Optional[Path] = None) -> Dict[str, Any]:
    config_dir = Path(config_dir) if config_dir else CONFIG_DIR
    base = _load_json(config_dir / BASE_CONFIG_NAME)
    local = _load_json(config_dir / LOCAL_CONFIG_NAME)
    if local:
        return _deep_merge(base, local)
    return base


def load_config(
    config_dir: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
    env_file: Optional[Path] = None,
) -> KeeperConfig:
    """
    Build a validated KeeperConfig.

    Args:
        config_dir: Directory holding keeper.json / keeper.local.json
        env: Environment mapping (defaults to os.environ after .env is loaded)
        env_file: Optional .env path to load before reading the environment

    Raises:
        ConfigurationError: on malformed JSON or values outside allowed ranges
    """
    if env is None:
        dotenv_path = Path(env_file) if env_file else ROOT / ".env"
        if dotenv_path.exists():
            load_dotenv(dotenv_path, override=False)
            logger.debug(f"Loaded environment from {dotenv_path}")
        env = os.environ

    data = _deep_merge(load_file_config(config_dir), _env_overrides(env))
    try:
        return KeeperConfig(**data)
    except ValidationError as exc:
        fields = ", ".join(".".join(str(part) for part in err["loc"]) for err in exc.errors())
        raise ConfigurationError(
            f"Invalid keeper configuration ({fields}): {exc.error_count()} error(s)",
            {"errors": exc.errors(include_url=False)},
        ) from exc
