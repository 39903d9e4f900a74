"""
Keeper configuration model.

Provides:
- KeeperConfig pydantic model with range-checked fields
- Comma-list coercion for values that arrive from environment variables
"""

import logging
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

DEFAULT_RPC_URL = "https://api.devnet.solana.com"
KNOWN_PRICE_SOURCES = ("dexscreener", "jupiter")


def _split_list(value):
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return list(value)


class KeeperConfig(BaseModel):
    """Keeper runtime configuration."""
    rpc_url: str = DEFAULT_RPC_URL
    program_ids: List[str] = Field(default_factory=list)
    markets: List[str] = Field(default_factory=list)
    keypair_path: Optional[str] = None
    keypair: Optional[str] = None

    scan_interval_secs: float = Field(gt=0, le=3600, default=15)
    crank_interval_secs: float = Field(gt=0, le=3600, default=5)
    crank_inactive_interval_secs: float = Field(gt=0, default=300)
    crank_batch_size: int = Field(ge=1, le=100, default=10)
    max_consecutive_failures: int = Field(ge=1, default=10)
    discovery_interval_secs: float = Field(gt=0, default=300)

    oracle_staleness_secs: int = Field(ge=1, le=86400, default=60)
    price_push_interval_secs: float = Field(ge=0, default=5)
    price_sources: List[str] = Field(default_factory=lambda: list(KNOWN_PRICE_SOURCES))
    price_request_timeout_secs: float = Field(gt=0, le=120, default=10)
    price_cache_ttl_secs: float = Field(ge=0, default=5)
    cached_price_max_age_secs: float = Field(ge=0, default=60)
    max_price_deviation_pct: float = Field(gt=0, le=1000, default=30)
    max_cross_source_deviation_pct: float = Field(gt=0, le=1000, default=10)
    max_price_history: int = Field(ge=1, le=10000, default=100)
    max_tracked_markets: int = Field(ge=1, default=500)

    max_submit_retries: int = Field(ge=0, le=10, default=2)
    retry_backoff_secs: float = Field(ge=0, le=60, default=1.0)
    signature_ttl_secs: float = Field(gt=0, default=60)
    confirm_timeout_secs: float = Field(gt=0, le=300, default=30)
    compute_unit_limit: int = Field(ge=0, le=1_400_000, default=400_000)
    compute_unit_price_micro_lamports: int = Field(ge=0, default=50_000)

    log_level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    log_dir: str = "logs"
    json_logs: bool = True

    @field_validator("program_ids", "markets", "price_sources", mode="before")
    @classmethod
    def _coerce_list(cls, value):
        return _split_list(value)

    @field_validator("price_sources")
    @classmethod
    def _known_sources(cls, value: List[str]) -> List[str]:
        names = [name.lower() for name in value]
        unknown = [name for name in names if name not in KNOWN_PRICE_SOURCES]
        if unknown:
            raise ValueError(f"unknown price source(s): {', '.join(unknown)}")
        if not names:
            raise ValueError("at least one price source is required")
        return names

    @field_validator("log_level", mode="before")
    @classmethod
    def _upper_level(cls, value):
        return value.upper() if isinstance(value, str) else value

    def summary(self) -> dict:
        """Config values safe to print (no key material)."""
        data = self.model_dump(exclude={"keypair"})
        data["keypair"] = "<set>" if self.keypair else None
        return data
