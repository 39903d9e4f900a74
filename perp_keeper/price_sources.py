"""External reference-price sources.

Each source returns a price in e6 fixed point, or None when it has nothing
usable, including a payload of the wrong shape. Transport errors propagate
so the caller can log them and treat the source as silent.
"""

import logging
import math
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

import aiohttp

logger = logging.getLogger(__name__)

DEXSCREENER_TOKENS_URL = "https://api.dexscreener.com/latest/dex/tokens/{mint}"
JUPITER_PRICE_URL = "https://api.jup.ag/price/v2"

PRICE_E6 = 1_000_000


def _safe_float(value: Any) -> Optional[float]:
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    return result


def to_price_e6(value: Any) -> Optional[int]:
    """USD price -> e6 integer. Non-finite, zero and negative prices are rejected."""
    price = _safe_float(value)
    if price is None or not math.isfinite(price) or price <= 0:
        return None
    price_e6 = round(price * PRICE_E6)
    return price_e6 if price_e6 > 0 else None


class PriceSource(ABC):
    name: str = ""

    def __init__(self, timeout_secs: float = 10.0):
        self.timeout = aiohttp.ClientTimeout(total=timeout_secs)

    @abstractmethod
    async def fetch(self, session: aiohttp.ClientSession, mint: str) -> Optional[int]:
        """Current price of mint in e6, or None."""

    async def _get_json(self, session: aiohttp.ClientSession, url: str, params: Optional[Dict[str, str]] = None):
        async with session.get(url, params=params, timeout=self.timeout) as resp:
            if resp.status != 200:
                logger.debug(f"{self.name} returned HTTP {resp.status} for {url}")
                return None
            return await resp.json(content_type=None)


def _mapping(value) -> Dict:
    return value if isinstance(value, dict) else {}


class DexScreenerSource(PriceSource):
    """Price of the highest-liquidity pair listed for the token."""
    name = "dexscreener"

    async def fetch(self, session: aiohttp.ClientSession, mint: str) -> Optional[int]:
        data = await self._get_json(session, DEXSCREENER_TOKENS_URL.format(mint=mint))
        pairs = _mapping(data).get("pairs")
        if not isinstance(pairs, list):
            return None
        pairs = [pair for pair in pairs if isinstance(pair, dict)]
        if not pairs:
            return None
        best_pair = max(pairs, key=lambda p: _safe_float(_mapping(p.get("liquidity")).get("usd")) or 0.0)
        return to_price_e6(best_pair.get("priceUsd"))


class JupiterSource(PriceSource):
    name = "jupiter"

    async def fetch(self, session: aiohttp.ClientSession, mint: str) -> Optional[int]:
        data = await self._get_json(session, JUPITER_PRICE_URL, params={"ids": mint})
        entry = _mapping(_mapping(_mapping(data).get("data")).get(mint))
        return to_price_e6(entry.get("price"))


SOURCE_REGISTRY = {
    DexScreenerSource.name: DexScreenerSource,
    JupiterSource.name: JupiterSource,
}


def build_sources(names: Sequence[str], timeout_secs: float = 10.0) -> List[PriceSource]:
    """Instantiate sources in priority order."""
    sources = []
    for name in names:
        source_cls = SOURCE_REGISTRY.get(name.lower())
        if source_cls is None:
            raise ValueError(f"Unknown price source: {name}")
        sources.append(source_cls(timeout_secs=timeout_secs))
    return sources
