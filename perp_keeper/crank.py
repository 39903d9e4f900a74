"""
CrankScheduler - keeps every tracked market's engine fresh.

Each tick submits one KeeperCrank per due market, independent of liquidation
activity. Markets that keep failing are parked and retried at a slower
cadence until a crank succeeds again. Staleness is judged from a fresh read
of the engine after a failed crank; a landed crank clears it.
"""

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from typing import Callable, Dict, Iterable, List, Optional

from solders.keypair import Keypair

from perp_keeper.abi.instructions import build_keeper_crank_ix
from perp_keeper.async_utils import PeriodicTask
from perp_keeper.discovery import DiscoveredMarket, is_crank_stale
from perp_keeper.errors import error_message
from perp_keeper.event_bus import EventBus, EventType
from perp_keeper.logging_config import KeeperContext, new_cycle_id
from perp_keeper.oracle import OracleFeed
from perp_keeper.retry import RetryPolicy
from perp_keeper.slab import parse_engine, parse_params
from perp_keeper.solana_execution import LedgerClient

logger = logging.getLogger(__name__)


@dataclass
class MarketCrankState:
    market: str
    last_crank_time: float = 0.0
    success_count: int = 0
    failure_count: int = 0
    consecutive_failures: int = 0
    is_active: bool = True
    is_stale: bool = False
    last_signature: Optional[str] = None
    last_error: Optional[str] = None


class CrankScheduler:
    def __init__(
        self,
        ledger: LedgerClient,
        keypair: Keypair,
        oracle: Optional[OracleFeed] = None,
        event_bus: Optional[EventBus] = None,
        *,
        interval_secs: float = 5.0,
        inactive_interval_secs: float = 300.0,
        batch_size: int = 10,
        max_consecutive_failures: int = 10,
        retry_policy: RetryPolicy = RetryPolicy(max_retries=0),
        clock: Callable[[], float] = time.time,
    ):
        self.ledger = ledger
        self.keypair = keypair
        self.oracle = oracle
        self.event_bus = event_bus
        self.interval_secs = interval_secs
        self.inactive_interval_secs = inactive_interval_secs
        self.batch_size = batch_size
        self.max_consecutive_failures = max_consecutive_failures
        self.retry_policy = retry_policy
        self._clock = clock
        self._markets: Dict[str, DiscoveredMarket] = {}
        self._states: Dict[str, MarketCrankState] = {}
        self._ticking = False
        self._task: Optional[PeriodicTask] = None
        self.tick_count = 0
        self.skipped_ticks = 0

    # -- market registry --------------------------------------------------

    def track(self, markets: Iterable[DiscoveredMarket]) -> None:
        """Replace the tracked set; per-market state survives for markets still present."""
        markets = {market.address: market for market in markets}
        for address in list(self._states):
            if address not in markets:
                del self._states[address]
        for address in markets:
            self._states.setdefault(address, MarketCrankState(market=address))
        self._markets = markets

    def get_state(self, address: str) -> Optional[MarketCrankState]:
        return self._states.get(address)

    def _is_due(self, state: MarketCrankState, now: float) -> bool:
        interval = self.interval_secs if state.is_active else self.inactive_interval_secs
        return now - state.last_crank_time >= interval

    # -- cranking ---------------------------------------------------------

    async def _publish(self, event_type: EventType, market: str, data: Dict) -> None:
        if self.event_bus is not None:
            await self.event_bus.publish(event_type, market, data, source="crank")

    async def _check_staleness(self, market: DiscoveredMarket, state: MarketCrankState) -> None:
        """Re-read the engine and emit crank.stale when the market turns stale."""
        try:
            data = await self.ledger.fetch_account_data(market.slab_address)
            if data is None:
                logger.warning(f"Staleness check: market {market.address[:8]}... not found")
                return
            engine = parse_engine(data)
            stale = is_crank_stale(engine, parse_params(data))
        except Exception as exc:
            logger.warning(f"Staleness check failed for {market.address[:8]}...: {error_message(exc)}")
            return

        if stale and not state.is_stale:
            logger.warning(
                f"Crank stale for {market.address[:8]}...: "
                f"{engine.current_slot - engine.last_crank_slot} slots since last crank"
            )
            await self._publish(
                EventType.CRANK_STALE,
                market.address,
                {"current_slot": engine.current_slot, "last_crank_slot": engine.last_crank_slot},
            )
        state.is_stale = stale

    async def _push_price(self, market: DiscoveredMarket) -> None:
        try:
            await self.oracle.push_price(market)
        except Exception as exc:
            logger.warning(f"Price push failed for {market.address[:8]}..., cranking anyway: {error_message(exc)}")

    async def crank_market(self, market: DiscoveredMarket) -> bool:
        """Push a price if we are the market's authority, then crank. Never raises."""
        state = self._states.setdefault(market.address, MarketCrankState(market=market.address))
        state.last_crank_time = self._clock()

        with KeeperContext(market=market.address):
            if self.oracle is not None and market.is_oracle_authority(self.keypair.pubkey()):
                await self._push_price(market)

            try:
                ix = build_keeper_crank_ix(
                    market.program_id, self.keypair.pubkey(), market.slab_address, market.oracle_account()
                )
                result = await self.ledger.submit(
                    [ix], self.keypair, self.retry_policy, label=f"crank {market.address[:8]}"
                )
                error = result.error
            except Exception as exc:
                result = None
                error = error_message(exc)

            if result is not None and result.success:
                if not state.is_active:
                    logger.info(f"Market {market.address[:8]}... recovered, reactivating")
                state.success_count += 1
                state.consecutive_failures = 0
                state.is_active = True
                state.is_stale = False
                state.last_signature = result.signature
                state.last_error = None
                await self._publish(EventType.CRANK_SUCCESS, market.address, {"signature": result.signature})
                return True

            state.failure_count += 1
            state.consecutive_failures += 1
            state.last_error = error
            logger.warning(
                f"Crank failed for {market.address[:8]}... "
                f"({state.consecutive_failures} in a row): {error}"
            )
            if state.is_active and state.consecutive_failures >= self.max_consecutive_failures:
                state.is_active = False
                logger.warning(
                    f"Market {market.address[:8]}... marked inactive after "
                    f"{state.consecutive_failures} consecutive failures"
                )
            await self._publish(
                EventType.CRANK_FAILURE,
                market.address,
                {"error": error, "consecutive_failures": state.consecutive_failures},
            )
            await self._check_staleness(market, state)
            return False

    async def tick(self, markets: Optional[Iterable[DiscoveredMarket]] = None) -> Dict[str, int]:
        """
        Crank every due market in concurrent batches.

        Returns counts {success, failed, skipped}. A tick that starts while
        the previous one is still dispatching is skipped entirely.
        """
        if markets is not None:
            self.track(markets)
        candidates = list(self._markets.values())

        if self._ticking:
            self.skipped_ticks += 1
            logger.debug("Crank tick already in progress, skipping")
            return {"success": 0, "failed": 0, "skipped": len(candidates)}

        self._ticking = True
        try:
            now = self._clock()
            due: List[DiscoveredMarket] = []
            skipped = 0
            for market in candidates:
                if self._is_due(self._states[market.address], now):
                    due.append(market)
                else:
                    skipped += 1

            success = failed = 0
            with KeeperContext(cycle_id=new_cycle_id()):
                for start in range(0, len(due), self.batch_size):
                    batch = due[start:start + self.batch_size]
                    results = await asyncio.gather(*(self.crank_market(m) for m in batch))
                    success += sum(1 for ok in results if ok)
                    failed += sum(1 for ok in results if not ok)

            self.tick_count += 1
            if due:
                logger.debug(f"Crank tick: {success} ok, {failed} failed, {skipped} skipped")
            return {"success": success, "failed": failed, "skipped": skipped}
        finally:
            self._ticking = False

    # -- lifecycle --------------------------------------------------------

    def start(self) -> None:
        if self._task is None:
            self._task = PeriodicTask("crank", self.tick, self.interval_secs)
        self._task.start()

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Cancel the timer, then wait up to timeout for an in-flight run."""
        if self._task is not None:
            await self._task.stop()
            await self._task.wait_idle(timeout)

    @property
    def running(self) -> bool:
        return self._task is not None and self._task.running

    def status(self) -> Dict:
        states = list(self._states.values())
        return {
            "running": self.running,
            "tick_count": self.tick_count,
            "skipped_ticks": self.skipped_ticks,
            "markets": len(states),
            "active_markets": sum(1 for s in states if s.is_active),
            "total_cranks": sum(s.success_count for s in states),
            "total_failures": sum(s.failure_count for s in states),
            "states": {s.market: asdict(s) for s in states},
        }
