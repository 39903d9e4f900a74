"""
KeeperService - wires the keeper together and owns its lifecycle.

Three independent timers run under one event loop:
- discovery: refresh the market registry from the ledger
- crank: CrankScheduler.tick over every tracked market
- liquidation: LiquidationService.scan_and_liquidate_all

Liquidations are counted from the ledger's own lifetime_liquidations counter,
so liquidations performed by other keepers are included and failed local
attempts are not.
"""

import logging
import time
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Sequence

from solders.keypair import Keypair
from solders.pubkey import Pubkey

from perp_keeper.async_utils import PeriodicTask
from perp_keeper.config import KeeperConfig
from perp_keeper.crank import CrankScheduler
from perp_keeper.discovery import DiscoveredMarket, discover_markets, load_market
from perp_keeper.errors import ConfigurationError
from perp_keeper.event_bus import Event, EventBus, EventHandler, EventType, LoggingEventHandler
from perp_keeper.liquidation import LiquidationExecutor, LiquidationService
from perp_keeper.oracle import OracleFeed
from perp_keeper.price_sources import PriceSource, build_sources
from perp_keeper.retry import RetryPolicy
from perp_keeper.scanner import MarketScanner
from perp_keeper.solana_execution import LedgerClient
from perp_keeper.wallet import load_keypair

logger = logging.getLogger(__name__)

SHUTDOWN_TIMEOUT_SECS = 30.0


def _parse_pubkeys(values: Sequence[str], field: str) -> List[Pubkey]:
    keys = []
    for value in values:
        try:
            keys.append(Pubkey.from_string(value))
        except ValueError as exc:
            raise ConfigurationError(f"Invalid address in {field}: {value}") from exc
    return keys


class KeeperService:
    def __init__(
        self,
        config: KeeperConfig,
        ledger: LedgerClient,
        keypair: Keypair,
        *,
        event_bus: Optional[EventBus] = None,
        sources: Optional[Sequence[PriceSource]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.ledger = ledger
        self.keypair = keypair
        self._clock = clock
        self.program_ids = _parse_pubkeys(config.program_ids, "program_ids")
        self.market_addresses = _parse_pubkeys(config.markets, "markets")
        if not self.program_ids and not self.market_addresses:
            raise ConfigurationError("Configure at least one program id or market address")

        retry_policy = RetryPolicy(
            max_retries=config.max_submit_retries, backoff_secs=config.retry_backoff_secs
        )
        self.event_bus = event_bus or EventBus()
        self.event_bus.register_handler(LoggingEventHandler())

        if sources is None:
            sources = build_sources(config.price_sources, config.price_request_timeout_secs)
        self.oracle = OracleFeed(
            sources,
            ledger=ledger,
            keypair=keypair,
            event_bus=self.event_bus,
            retry_policy=retry_policy,
            cache_ttl_secs=config.price_cache_ttl_secs,
            cached_max_age_secs=config.cached_price_max_age_secs,
            push_interval_secs=config.price_push_interval_secs,
            max_deviation_pct=config.max_price_deviation_pct,
            max_cross_source_deviation_pct=config.max_cross_source_deviation_pct,
            max_history=config.max_price_history,
            max_tracked_markets=config.max_tracked_markets,
            clock=clock,
        )
        self.scanner = MarketScanner(ledger, oracle_staleness_secs=config.oracle_staleness_secs, clock=clock)
        self.executor = LiquidationExecutor(
            ledger,
            self.scanner,
            self.oracle,
            keypair,
            self.event_bus,
            retry_policy=retry_policy,
            signature_ttl_secs=config.signature_ttl_secs,
            clock=clock,
        )
        self.liquidation = LiquidationService(
            self.scanner, self.executor, interval_secs=config.scan_interval_secs, clock=clock
        )
        self.crank = CrankScheduler(
            ledger,
            keypair,
            self.oracle,
            self.event_bus,
            interval_secs=config.crank_interval_secs,
            inactive_interval_secs=config.crank_inactive_interval_secs,
            batch_size=config.crank_batch_size,
            max_consecutive_failures=config.max_consecutive_failures,
            # Cranks are re-sent every interval anyway.
            retry_policy=RetryPolicy(max_retries=0),
            clock=clock,
        )

        self.markets: Dict[str, DiscoveredMarket] = {}
        self._lifetime_seen: Dict[str, int] = {}
        self.liquidations_executed = 0
        self.last_refresh_time: Optional[float] = None
        self._discovery_task: Optional[PeriodicTask] = None
        self._started = False

    @classmethod
    def from_config(cls, config: KeeperConfig) -> "KeeperService":
        """Build the service with a live RPC client and the configured identity."""
        keypair = load_keypair(config.keypair_path, config.keypair)
        ledger = LedgerClient(
            config.rpc_url,
            confirm_timeout_secs=config.confirm_timeout_secs,
            compute_unit_limit=config.compute_unit_limit,
            compute_unit_price_micro_lamports=config.compute_unit_price_micro_lamports,
        )
        return cls(config, ledger, keypair)

    # -- market registry --------------------------------------------------

    async def _load_markets(self) -> Dict[str, DiscoveredMarket]:
        found: Dict[str, DiscoveredMarket] = {}
        for address in self.market_addresses:
            try:
                market = await load_market(self.ledger, address)
            except Exception as exc:
                logger.error(f"Failed to load market {address}: {exc}")
                previous = self.markets.get(str(address))
                if previous is not None:
                    found[previous.address] = previous
                continue
            if market is not None:
                found[market.address] = market

        for program_id in self.program_ids:
            try:
                markets = await discover_markets(self.ledger, program_id)
            except Exception as exc:
                logger.error(f"Discovery failed for program {program_id}: {exc}")
                markets = [m for m in self.markets.values() if m.program_id == program_id]
            for market in markets:
                found.setdefault(market.address, market)
        return found

    def _count_liquidations(self, market: DiscoveredMarket) -> int:
        """Delta of the ledger's lifetime counter since the previous refresh."""
        current = market.engine.lifetime_liquidations
        previous = self._lifetime_seen.get(market.address)
        self._lifetime_seen[market.address] = current
        if previous is None or current < previous:
            return 0
        return current - previous

    async def refresh_markets(self) -> Dict[str, DiscoveredMarket]:
        found = await self._load_markets()

        for address, market in found.items():
            delta = self._count_liquidations(market)
            if delta:
                self.liquidations_executed += delta
                logger.info(f"Market {address[:8]}... recorded {delta} new liquidation(s)")
            if address not in self.markets:
                logger.info(f"Tracking market {address[:8]}... (program {str(market.program_id)[:8]}...)")
                await self.event_bus.publish(
                    EventType.MARKET_DISCOVERED,
                    address,
                    {
                        "program_id": str(market.program_id),
                        "collateral_mint": market.collateral_mint,
                        "admin_oracle": market.is_admin_oracle,
                    },
                    source="discovery",
                )

        for address in set(self.markets) - set(found):
            self._lifetime_seen.pop(address, None)
            logger.info(f"Market {address[:8]}... no longer present, dropping")
            await self.event_bus.publish(EventType.MARKET_REMOVED, address, {}, source="discovery")

        self.markets = found
        self.crank.track(found.values())
        self.last_refresh_time = self._clock()
        return found

    def get_markets(self) -> List[DiscoveredMarket]:
        return list(self.markets.values())

    def subscribe(
        self,
        callback: Callable[[Event], Awaitable[None]],
        event_types: Optional[Iterable[EventType]] = None,
    ) -> EventHandler:
        """Deliver keeper events (all types by default) to an async callback."""
        return self.event_bus.subscribe(callback, event_types)

    # -- lifecycle --------------------------------------------------------

    async def start(self) -> None:
        if self._started:
            logger.warning("Keeper already started")
            return
        self._started = True
        await self.event_bus.start()
        await self.refresh_markets()
        logger.info(
            f"Keeper {self.keypair.pubkey()} starting with {len(self.markets)} market(s) "
            f"on {self.config.rpc_url}"
        )

        self._discovery_task = PeriodicTask(
            "discovery", self.refresh_markets, self.config.discovery_interval_secs, run_immediately=False
        )
        self._discovery_task.start()
        self.crank.start()
        self.liquidation.start(self.get_markets)

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        logger.info("Stopping keeper")
        if self._discovery_task is not None:
            await self._discovery_task.stop()
            await self._discovery_task.wait_idle(SHUTDOWN_TIMEOUT_SECS)
        await self.crank.stop(SHUTDOWN_TIMEOUT_SECS)
        await self.liquidation.stop(SHUTDOWN_TIMEOUT_SECS)
        await self.event_bus.stop()
        await self.oracle.close()
        await self.ledger.close()
        logger.info(f"Keeper stopped ({self.liquidations_executed} liquidations observed)")

    @property
    def running(self) -> bool:
        return self._started

    def status(self) -> Dict:
        return {
            "running": self._started,
            "identity": str(self.keypair.pubkey()),
            "markets": len(self.markets),
            "liquidations_executed": self.liquidations_executed,
            "local_liquidations": self.executor.liquidation_count,
            "last_refresh_time": self.last_refresh_time,
            "liquidation": self.liquidation.status(),
            "crank": self.crank.status(),
            "oracle": {
                "push_count": self.oracle.push_count,
                "tracked_markets": self.oracle.tracked_markets(),
            },
            "event_bus": self.event_bus.get_stats(),
        }
