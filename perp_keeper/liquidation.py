"""
Liquidation execution.

LiquidationExecutor acts on one candidate:

    [PushOraclePrice?] -> KeeperCrank -> LiquidateAtOracle(slot)

submitted as one transaction, and only after the slot has been re-read from
the ledger and still classifies as liquidatable. LiquidationService drives the
periodic scan over all markets.
"""

import asyncio
import logging
import time
from collections import OrderedDict
from typing import Callable, Dict, Iterable, List, Optional

from solders.instruction import Instruction
from solders.keypair import Keypair

from perp_keeper.abi.instructions import build_keeper_crank_ix, build_liquidate_ix
from perp_keeper.async_utils import PeriodicTask
from perp_keeper.discovery import DiscoveredMarket
from perp_keeper.errors import SlabDecodeError, error_message
from perp_keeper.event_bus import EventBus, EventPriority, EventType
from perp_keeper.logging_config import KeeperContext, new_cycle_id
from perp_keeper.oracle import OracleFeed, PriceSample
from perp_keeper.retry import RetryPolicy
from perp_keeper.scanner import LiquidationCandidate, MarketScanner
from perp_keeper.slab import decode_slab
from perp_keeper.solana_execution import LedgerClient

logger = logging.getLogger(__name__)

MAX_TRACKED_SIGNATURES = 10_000


class LiquidationExecutor:
    """Builds, re-verifies and submits liquidation bundles."""

    def __init__(
        self,
        ledger: LedgerClient,
        scanner: MarketScanner,
        oracle: OracleFeed,
        keypair: Keypair,
        event_bus: Optional[EventBus] = None,
        *,
        retry_policy: RetryPolicy = RetryPolicy(),
        signature_ttl_secs: float = 60.0,
        clock: Callable[[], float] = time.time,
    ):
        self.ledger = ledger
        self.scanner = scanner
        self.oracle = oracle
        self.keypair = keypair
        self.event_bus = event_bus
        self.retry_policy = retry_policy
        self.signature_ttl_secs = signature_ttl_secs
        self._clock = clock
        self._signatures: "OrderedDict[str, float]" = OrderedDict()
        self.liquidation_count = 0
        self.failure_count = 0
        self.aborted_count = 0

    def needs_price_push(self, market: DiscoveredMarket) -> bool:
        return market.is_oracle_authority(self.keypair.pubkey())

    def build_bundle(
        self,
        market: DiscoveredMarket,
        slot_index: int,
        push_sample: Optional[PriceSample] = None,
    ) -> List[Instruction]:
        """Ordered instructions: optional price push, crank, liquidate."""
        caller = self.keypair.pubkey()
        oracle_account = market.oracle_account()
        instructions: List[Instruction] = []
        if push_sample is not None:
            instructions.append(self.oracle.build_push_instruction(market, push_sample))
        instructions.append(build_keeper_crank_ix(market.program_id, caller, market.slab_address, oracle_account))
        instructions.append(
            build_liquidate_ix(market.program_id, caller, market.slab_address, oracle_account, slot_index)
        )
        return instructions

    async def reverify(
        self,
        market: DiscoveredMarket,
        candidate: LiquidationCandidate,
        push_sample: Optional[PriceSample] = None,
    ) -> bool:
        """
        Re-read the slab and confirm the slot is still liquidatable.

        The price used is the one the bundle will execute at: the sample about
        to be pushed, otherwise the ledger's current price.
        """
        idx = candidate.slot_index
        try:
            data = await self.ledger.fetch_account_data(market.slab_address)
            if data is None:
                logger.warning(f"Re-verify: market {market.address[:8]}... disappeared")
                return False
            snapshot = decode_slab(data)
            if not snapshot.is_used(idx):
                logger.info(f"Re-verify: slot {idx} no longer occupied, aborting")
                return False
            account = snapshot.account(idx)
        except SlabDecodeError as exc:
            logger.warning(f"Re-verify: cannot decode slot {idx}: {exc}")
            return False
        except Exception as exc:
            logger.warning(f"Re-verify: slab fetch failed ({error_message(exc)}), aborting")
            return False

        price = push_sample.price_e6 if push_sample is not None else snapshot.config.authority_price_e6
        if price <= 0:
            logger.warning(f"Re-verify: no reference price for {market.address[:8]}..., aborting")
            return False

        health = self.scanner.evaluate_account(
            market.address, account, price, snapshot.params.maintenance_margin_bps
        )
        if health is None:
            logger.info(f"Re-verify: slot {idx} is no longer an open user position, aborting")
            return False
        if not health.is_candidate:
            logger.info(
                f"Re-verify: slot {idx} is now {health.status.value} "
                f"(ratio {health.margin_ratio_bps} bps), aborting"
            )
            return False
        return True

    def _prune_signatures(self, now: float) -> None:
        while self._signatures:
            signature, seen_at = next(iter(self._signatures.items()))
            if now - seen_at < self.signature_ttl_secs and len(self._signatures) <= MAX_TRACKED_SIGNATURES:
                break
            del self._signatures[signature]

    def record_signature(self, signature: str) -> bool:
        """Track a landed signature. False if it was already recorded."""
        now = self._clock()
        self._prune_signatures(now)
        if signature in self._signatures:
            return False
        self._signatures[signature] = now
        return True

    def recent_signatures(self) -> List[str]:
        self._prune_signatures(self._clock())
        return list(self._signatures)

    async def _publish(self, event_type: EventType, market: DiscoveredMarket, data: Dict) -> None:
        if self.event_bus is None:
            return
        priority = EventPriority.HIGH if event_type is EventType.LIQUIDATION_SUCCESS else EventPriority.NORMAL
        await self.event_bus.publish(event_type, market.address, data, priority=priority, source="liquidation")

    async def liquidate(self, market: DiscoveredMarket, candidate: LiquidationCandidate) -> Optional[str]:
        """Liquidate one candidate. Returns the signature, or None when aborted or failed. Never raises."""
        idx = candidate.slot_index
        with KeeperContext(market=market.address, slot_index=idx):
            try:
                return await self._liquidate(market, candidate)
            except Exception as exc:
                error = error_message(exc)
                self.failure_count += 1
                logger.error(f"Liquidation of slot {idx} raised: {error}", exc_info=True)
                await self._publish(
                    EventType.LIQUIDATION_FAILURE,
                    market,
                    {"slot_index": idx, "error": error, "attempts": 0},
                )
                return None

    async def _liquidate(self, market: DiscoveredMarket, candidate: LiquidationCandidate) -> Optional[str]:
        idx = candidate.slot_index
        push_sample = None
        if self.needs_price_push(market):
            push_sample = await self.oracle.resolve_push_sample(market)
            if push_sample is None:
                logger.warning("No price to push, liquidating against the ledger price")

        if not await self.reverify(market, candidate, push_sample):
            self.aborted_count += 1
            return None

        instructions = self.build_bundle(market, idx, push_sample)
        result = await self.ledger.submit(
            instructions, self.keypair, self.retry_policy, label=f"liquidate {market.address[:8]}/{idx}"
        )

        if not result.success:
            self.failure_count += 1
            logger.error(
                f"Liquidation of slot {idx} failed after {result.attempts} attempt(s): {result.error}"
                + (f" ({result.error_hint})" if result.error_hint else "")
            )
            await self._publish(
                EventType.LIQUIDATION_FAILURE,
                market,
                {"slot_index": idx, "error": result.error, "attempts": result.attempts},
            )
            return None

        signature = result.signature
        if not self.record_signature(signature):
            logger.warning(f"Signature {signature[:16]}... already recorded")
        if push_sample is not None:
            self.oracle.mark_pushed(market.address, push_sample)
        self.liquidation_count += 1
        logger.info(f"Liquidated slot {idx} of {market.address[:8]}...: {signature}")
        await self._publish(
            EventType.LIQUIDATION_SUCCESS,
            market,
            {"slot_index": idx, "signature": signature, "owner": candidate.owner},
        )
        return signature

    def get_stats(self) -> Dict[str, int]:
        return {
            "local_liquidations": self.liquidation_count,
            "failures": self.failure_count,
            "aborted": self.aborted_count,
            "tracked_signatures": len(self._signatures),
        }


class LiquidationService:
    """Periodic scan-and-liquidate over every tracked market."""

    def __init__(
        self,
        scanner: MarketScanner,
        executor: LiquidationExecutor,
        *,
        interval_secs: float = 15.0,
        max_concurrent_markets: int = 10,
        clock: Callable[[], float] = time.time,
    ):
        self.scanner = scanner
        self.executor = executor
        self.interval_secs = interval_secs
        self.max_concurrent_markets = max_concurrent_markets
        self._clock = clock
        self._scanning = False
        self._get_markets: Optional[Callable[[], Iterable[DiscoveredMarket]]] = None
        self._task: Optional[PeriodicTask] = None
        self.scan_count = 0
        self.last_scan_time: Optional[float] = None
        self.last_result: Dict[str, int] = {"scanned": 0, "candidates": 0, "liquidated": 0}

    async def _process_market(self, market: DiscoveredMarket, semaphore: asyncio.Semaphore) -> Dict[str, int]:
        async with semaphore:
            with KeeperContext(market=market.address):
                candidates = await self.scanner.scan(market)
                liquidated = 0
                for candidate in candidates:
                    try:
                        if await self.executor.liquidate(market, candidate):
                            liquidated += 1
                    except Exception as exc:
                        logger.error(
                            f"Liquidation attempt for slot {candidate.slot_index} raised: {exc}", exc_info=True
                        )
                return {"candidates": len(candidates), "liquidated": liquidated}

    async def scan_and_liquidate_all(self, markets: Iterable[DiscoveredMarket]) -> Dict[str, int]:
        """Scan every market and act on its candidates. Skips if a previous cycle is running."""
        if self._scanning:
            logger.debug("Liquidation scan already in progress, skipping")
            return {"scanned": 0, "candidates": 0, "liquidated": 0}

        self._scanning = True
        try:
            markets = list(markets)
            semaphore = asyncio.Semaphore(self.max_concurrent_markets)
            with KeeperContext(cycle_id=new_cycle_id()):
                results = await asyncio.gather(
                    *(self._process_market(market, semaphore) for market in markets),
                    return_exceptions=True,
                )
            totals = {"scanned": len(markets), "candidates": 0, "liquidated": 0}
            for market, result in zip(markets, results):
                if isinstance(result, BaseException):
                    logger.error(f"Market {market.address[:8]}... cycle failed: {result}")
                    continue
                totals["candidates"] += result["candidates"]
                totals["liquidated"] += result["liquidated"]

            self.scan_count += 1
            self.last_scan_time = self._clock()
            self.last_result = totals
            if totals["candidates"]:
                logger.info(
                    f"Liquidation cycle: {totals['scanned']} markets, "
                    f"{totals['candidates']} candidates, {totals['liquidated']} liquidated"
                )
            return totals
        finally:
            self._scanning = False

    async def _cycle(self) -> None:
        await self.scan_and_liquidate_all(self._get_markets())

    def start(self, get_markets: Callable[[], Iterable[DiscoveredMarket]]) -> None:
        self._get_markets = get_markets
        if self._task is None:
            self._task = PeriodicTask("liquidation", self._cycle, self.interval_secs)
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
        return {
            "running": self.running,
            "scanning": self._scanning,
            "scan_count": self.scan_count,
            "last_scan_time": self.last_scan_time,
            "last_result": dict(self.last_result),
            **self.executor.get_stats(),
        }
