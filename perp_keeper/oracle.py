"""
OracleFeed - reference prices for keeper-priced markets.

Provides:
- fetch_price(): concurrent source fan-out with a short TTL cache, in-flight
  de-duplication, cross-source and deviation guards and a last-resort
  cached sample
- push_price(): rate-limited PushOraclePrice submission for markets whose
  oracle authority is the keeper identity
- Bounded per-market price history (ring buffer, LRU across markets)
"""

import asyncio
import logging
import time
from collections import OrderedDict, deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, List, Optional, Sequence, Set, Tuple

import aiohttp
from solders.instruction import Instruction
from solders.keypair import Keypair

from perp_keeper.abi.instructions import build_push_price_ix
from perp_keeper.discovery import DiscoveredMarket
from perp_keeper.errors import ConfigurationError, OracleAuthorityError
from perp_keeper.event_bus import EventBus, EventType
from perp_keeper.price_sources import PriceSource
from perp_keeper.retry import RetryPolicy
from perp_keeper.solana_execution import LedgerClient

logger = logging.getLogger(__name__)

SOURCE_CACHED = "cached"
SOURCE_ON_CHAIN = "on-chain"


@dataclass(frozen=True)
class PriceSample:
    price_e6: int
    source: str
    timestamp: float


class OracleFeed:
    """Reference-price fetching and pushing. One instance per keeper."""

    def __init__(
        self,
        sources: Sequence[PriceSource],
        *,
        ledger: Optional[LedgerClient] = None,
        keypair: Optional[Keypair] = None,
        event_bus: Optional[EventBus] = None,
        retry_policy: RetryPolicy = RetryPolicy(),
        cache_ttl_secs: float = 5.0,
        cached_max_age_secs: float = 60.0,
        push_interval_secs: float = 5.0,
        max_deviation_pct: float = 30.0,
        max_cross_source_deviation_pct: float = 10.0,
        max_history: int = 100,
        max_tracked_markets: int = 500,
        clock: Callable[[], float] = time.time,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.sources = list(sources)
        self.ledger = ledger
        self.keypair = keypair
        self.event_bus = event_bus
        self.retry_policy = retry_policy
        self.cache_ttl_secs = cache_ttl_secs
        self.cached_max_age_secs = cached_max_age_secs
        self.push_interval_secs = push_interval_secs
        self.max_deviation_pct = max_deviation_pct
        self.max_cross_source_deviation_pct = max_cross_source_deviation_pct
        self.max_history = max_history
        self.max_tracked_markets = max_tracked_markets
        self._clock = clock
        self._session = session
        self._owns_session = session is None

        self._history: "OrderedDict[str, Deque[PriceSample]]" = OrderedDict()
        self._source_cache: Dict[Tuple[str, str], Tuple[int, float]] = {}
        self._in_flight: Dict[Tuple[str, str], asyncio.Future] = {}
        self._last_push: Dict[str, float] = {}
        self._non_authority_logged: Set[str] = set()
        self.push_count = 0

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()

    # -- fetching ---------------------------------------------------------

    async def _fetch_from_source(self, source: PriceSource, mint: str) -> Optional[int]:
        key = (source.name, mint)
        now = self._clock()
        cached = self._source_cache.get(key)
        if cached and now - cached[1] < self.cache_ttl_secs:
            return cached[0]

        in_flight = self._in_flight.get(key)
        if in_flight is not None:
            return await asyncio.shield(in_flight)

        task = asyncio.ensure_future(self._fetch_uncached(source, mint))
        self._in_flight[key] = task
        try:
            price_e6 = await task
        finally:
            self._in_flight.pop(key, None)

        if price_e6 is not None:
            self._source_cache[key] = (price_e6, now)
            self._prune_source_cache(now)
        return price_e6

    async def _fetch_uncached(self, source: PriceSource, mint: str) -> Optional[int]:
        session = await self._get_session()
        try:
            return await source.fetch(session, mint)
        except Exception as exc:
            logger.warning(f"{source.name} price fetch failed for {mint[:8]}...: {type(exc).__name__}: {exc}")
            return None

    def _prune_source_cache(self, now: float) -> None:
        if len(self._source_cache) <= self.max_tracked_markets * max(len(self.sources), 1):
            return
        expired = [k for k, (_, at) in self._source_cache.items() if now - at >= self.cache_ttl_secs]
        for key in expired:
            del self._source_cache[key]

    async def fetch_price(self, mint: str, market: str) -> Optional[PriceSample]:
        """
        Price for mint, recorded against market.

        All sources are queried concurrently and the first one in configured
        order that answers wins. When two or more answer and the widest pair
        disagrees by more than max_cross_source_deviation_pct, no price is
        returned. With no live price, falls back to the market's newest
        sample (tagged "cached") if it is recent enough. A live price that
        jumps more than max_deviation_pct from the last recorded sample is
        rejected.
        """
        prices = await asyncio.gather(*(self._fetch_from_source(source, mint) for source in self.sources))
        quotes = [(source, price_e6) for source, price_e6 in zip(self.sources, prices) if price_e6]

        if len(quotes) >= 2:
            smaller = min(price_e6 for _, price_e6 in quotes)
            larger = max(price_e6 for _, price_e6 in quotes)
            divergence_pct = (larger - smaller) * 100 // smaller
            if divergence_pct > self.max_cross_source_deviation_pct:
                detail = ", ".join(f"{source.name}={price_e6}" for source, price_e6 in quotes)
                logger.warning(
                    f"Sources disagree by {divergence_pct}% for {mint[:8]}... ({detail}), "
                    f"possible manipulation, skipping"
                )
                return None

        if quotes:
            source, price_e6 = quotes[0]
            last = self.current_price(market)
            if last is not None and last.price_e6 > 0:
                deviation_pct = abs(price_e6 - last.price_e6) * 100 // last.price_e6
                if deviation_pct > self.max_deviation_pct:
                    logger.warning(
                        f"Price deviation {deviation_pct}% exceeds {self.max_deviation_pct}% for {mint[:8]}... "
                        f"(last={last.price_e6}, new={price_e6}, source={source.name}), skipping"
                    )
                    return None

            sample = PriceSample(price_e6=price_e6, source=source.name, timestamp=self._clock())
            self.record_price(market, sample)
            return sample

        last = self.current_price(market)
        if last is None:
            return None
        age = self._clock() - last.timestamp
        if age > self.cached_max_age_secs:
            logger.warning(f"Cached price for {mint[:8]}... is stale ({age:.0f}s old), rejecting")
            return None
        return PriceSample(price_e6=last.price_e6, source=SOURCE_CACHED, timestamp=last.timestamp)

    # -- history ----------------------------------------------------------

    def record_price(self, market: str, sample: PriceSample) -> None:
        history = self._history.get(market)
        if history is None:
            history = deque(maxlen=self.max_history)
            self._history[market] = history
        history.append(sample)
        self._history.move_to_end(market)
        while len(self._history) > self.max_tracked_markets:
            evicted, _ = self._history.popitem(last=False)
            logger.debug(f"Evicted price history for {evicted[:8]}...")

    def current_price(self, market: str) -> Optional[PriceSample]:
        history = self._history.get(market)
        return history[-1] if history else None

    def price_history(self, market: str) -> List[PriceSample]:
        return list(self._history.get(market, ()))

    def tracked_markets(self) -> int:
        return len(self._history)

    # -- pushing ----------------------------------------------------------

    def can_push(self, market: DiscoveredMarket) -> bool:
        """True when the keeper is this market's oracle authority; logs a refusal once."""
        if self.keypair is not None and market.is_oracle_authority(self.keypair.pubkey()):
            return True
        if market.address not in self._non_authority_logged:
            self._non_authority_logged.add(market.address)
            ours = str(self.keypair.pubkey())[:8] if self.keypair else "none"
            logger.info(
                f"Skipping price push for {market.address[:8]}...: not oracle authority "
                f"(ours={ours}..., theirs={str(market.config.oracle_authority)[:8]}...)"
            )
        return False

    def push_due(self, market: DiscoveredMarket) -> bool:
        last = self._last_push.get(market.address)
        return last is None or self._clock() - last >= self.push_interval_secs

    async def resolve_push_sample(self, market: DiscoveredMarket) -> Optional[PriceSample]:
        """External price, else the market's current on-chain price."""
        sample = await self.fetch_price(market.collateral_mint, market.address)
        if sample is not None:
            return sample
        on_chain = market.config.authority_price_e6
        if on_chain > 0:
            logger.info(f"No external price for {market.collateral_mint[:8]}..., using on-chain {on_chain}")
            return PriceSample(price_e6=on_chain, source=SOURCE_ON_CHAIN, timestamp=self._clock())
        logger.warning(f"No price source for {market.collateral_mint[:8]}..., skipping push")
        return None

    def build_push_instruction(self, market: DiscoveredMarket, sample: PriceSample) -> Instruction:
        if self.keypair is None or not market.is_oracle_authority(self.keypair.pubkey()):
            raise OracleAuthorityError(
                f"Keeper is not the oracle authority of {market.address}", market=market.address
            )
        return build_push_price_ix(
            market.program_id,
            self.keypair.pubkey(),
            market.slab_address,
            sample.price_e6,
            int(self._clock()),
        )

    async def push_price(self, market: DiscoveredMarket, sample: Optional[PriceSample] = None) -> bool:
        """Submit one PushOraclePrice. Returns True only when it landed."""
        if not self.push_due(market):
            return False
        if not self.can_push(market):
            return False
        if self.ledger is None:
            raise ConfigurationError("OracleFeed.push_price requires a ledger client")

        if sample is None:
            sample = await self.resolve_push_sample(market)
            if sample is None:
                return False

        ix = self.build_push_instruction(market, sample)
        result = await self.ledger.submit([ix], self.keypair, self.retry_policy, label=f"push_price {market.address[:8]}")
        if not result.success:
            logger.error(f"Price push failed for {market.address[:8]}...: {result.error}")
            return False

        self.mark_pushed(market.address, sample)
        logger.info(f"Pushed price {sample.price_e6} ({sample.source}) to {market.address[:8]}...")
        if self.event_bus is not None:
            await self.event_bus.publish(
                EventType.PRICE_UPDATED,
                market.address,
                {"price_e6": sample.price_e6, "source": sample.source, "signature": result.signature},
                source="oracle",
            )
        return True

    def mark_pushed(self, market: str, sample: PriceSample) -> None:
        """Record a push that landed (directly or inside a liquidation bundle)."""
        self._last_push[market] = self._clock()
        self.push_count += 1
        logger.debug(f"Recorded push for {market[:8]}... at {sample.price_e6} ({sample.source})")
