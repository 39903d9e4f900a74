"""Keeper keypair loading."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

import base58
from solders.keypair import Keypair

from perp_keeper.errors import ConfigurationError

logger = logging.getLogger(__name__)

SOLANA_CLI_DEFAULT = Path.home() / ".config" / "solana" / "id.json"


def _keypair_from_secret(secret: bytes, source: str) -> Keypair:
    if len(secret) != 64:
        raise ConfigurationError(f"Keypair from {source} must be 64 bytes, got {len(secret)}")
    try:
        return Keypair.from_bytes(secret)
    except ValueError as exc:
        raise ConfigurationError(f"Invalid keypair bytes in {source}: {exc}") from exc


def load_keypair_file(path: Path) -> Keypair:
    """Solana CLI format: JSON array of 64 byte values."""
    try:
        data = json.loads(Path(path).read_text())
    except FileNotFoundError as exc:
        raise ConfigurationError(f"Keypair file not found: {path}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Keypair file is not JSON: {path}") from exc
    if not isinstance(data, list) or not all(isinstance(b, int) and 0 <= b <= 255 for b in data):
        raise ConfigurationError(f"Keypair file must hold a JSON byte array: {path}")
    return _keypair_from_secret(bytes(data), str(path))


def load_keypair_base58(value: str) -> Keypair:
    try:
        secret = base58.b58decode(value.strip())
    except ValueError as exc:
        raise ConfigurationError("KEEPER_KEYPAIR is not valid base58") from exc
    return _keypair_from_secret(secret, "KEEPER_KEYPAIR")


def load_keypair(path: Optional[str] = None, secret: Optional[str] = None) -> Keypair:
    """
    Resolve the keeper identity.

    Order: explicit path, base58 secret, Solana CLI default keypair.
    Raises ConfigurationError when none is usable.
    """
    if path:
        keypair = load_keypair_file(Path(path).expanduser())
    elif secret:
        keypair = load_keypair_base58(secret)
    elif SOLANA_CLI_DEFAULT.exists():
        keypair = load_keypair_file(SOLANA_CLI_DEFAULT)
    else:
        raise ConfigurationError(
            "No keeper keypair configured (set KEEPER_KEYPAIR_PATH or KEEPER_KEYPAIR)"
        )
    logger.info(f"Keeper identity: {keypair.pubkey()}")
    return keypair
