"""
MarketScanner - finds liquidation candidates in one market.

A scan never raises: fetch or decode failures are logged and produce an empty
candidate list. A stale reference price also produces an empty list, since
missing a liquidation is always preferable to a wrong one.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Set, Tuple

from perp_keeper.discovery import DiscoveredMarket
from perp_keeper.errors import SlabDecodeError
from perp_keeper.margin import MarginHealth, evaluate
from perp_keeper.slab import Account, AccountKind, MarketConfig, SlabSnapshot, decode_slab
from perp_keeper.solana_execution import LedgerClient

logger = logging.getLogger(__name__)

MAX_OVERFLOW_LOG_KEYS = 10_000


@dataclass(frozen=True)
class LiquidationCandidate:
    market: str
    slot_index: int
    owner: str
    position_size: int
    capital: int
    recomputed_pnl: int
    margin_ratio_bps: int
    maintenance_margin_bps: int

    def to_dict(self) -> dict:
        return {
            "market": self.market,
            "slot_index": self.slot_index,
            "owner": self.owner,
            "position_size": str(self.position_size),
            "capital": str(self.capital),
            "recomputed_pnl": str(self.recomputed_pnl),
            "margin_ratio_bps": self.margin_ratio_bps,
            "maintenance_margin_bps": self.maintenance_margin_bps,
        }


class MarketScanner:
    """Stateless apart from the once-only overflow log set."""

    def __init__(
        self,
        ledger: Optional[LedgerClient] = None,
        *,
        oracle_staleness_secs: int = 60,
        clock: Callable[[], float] = time.time,
    ):
        self.ledger = ledger
        self.oracle_staleness_secs = oracle_staleness_secs
        self._clock = clock
        self._overflow_logged: Set[Tuple[str, int]] = set()

    def staleness_bound(self, config: MarketConfig) -> int:
        """Tighter of the keeper bound and the market's own, when it sets one."""
        if config.max_staleness_secs > 0:
            return min(self.oracle_staleness_secs, config.max_staleness_secs)
        return self.oracle_staleness_secs

    def price_age(self, config: MarketConfig, now: float) -> float:
        # A never-set timestamp (0) makes the age "now", i.e. always stale.
        return now - config.authority_timestamp

    def is_price_fresh(self, config: MarketConfig, now: float) -> bool:
        return self.price_age(config, now) <= self.staleness_bound(config)

    def evaluate_account(
        self, market: str, account: Account, reference_price: int, maintenance_margin_bps: int
    ) -> Optional[MarginHealth]:
        """Margin health of a liquidatable-kind position, None for anything that is never a target."""
        if account.kind is not AccountKind.USER or account.position_size == 0:
            return None
        health = evaluate(
            account.position_size,
            account.entry_price,
            account.capital,
            reference_price,
            maintenance_margin_bps,
        )
        if health.overflow:
            key = (market, account.index)
            if key not in self._overflow_logged and len(self._overflow_logged) < MAX_OVERFLOW_LOG_KEYS:
                self._overflow_logged.add(key)
                logger.warning(
                    f"Margin arithmetic clamped for {market[:8]}... slot {account.index} "
                    f"(size={account.position_size}, price={reference_price})"
                )
        return health

    def scan_snapshot(self, market: str, snapshot: SlabSnapshot, now: float) -> List[LiquidationCandidate]:
        """Pure core of scan(): candidates from an already-decoded slab."""
        config = snapshot.config
        price = config.authority_price_e6
        if price == 0:
            return []

        if not self.is_price_fresh(config, now):
            if snapshot.engine.total_open_interest > 0:
                logger.warning(
                    f"Oracle price for {market[:8]}... is {self.price_age(config, now):.0f}s old "
                    f"(bound {self.staleness_bound(config)}s), skipping scan"
                )
            return []

        maintenance = snapshot.params.maintenance_margin_bps
        candidates: List[LiquidationCandidate] = []
        for idx in snapshot.used_indices:
            try:
                account = snapshot.account(idx)
            except SlabDecodeError as exc:
                logger.debug(f"Skipping slot {idx} of {market[:8]}...: {exc}")
                continue

            health = self.evaluate_account(market, account, price, maintenance)
            if health is None or not health.is_candidate:
                continue
            candidates.append(
                LiquidationCandidate(
                    market=market,
                    slot_index=idx,
                    owner=str(account.owner),
                    position_size=account.position_size,
                    capital=account.capital,
                    recomputed_pnl=health.mark_pnl,
                    margin_ratio_bps=health.margin_ratio_bps,
                    maintenance_margin_bps=maintenance,
                )
            )
        return candidates

    def scan_bytes(self, market: str, data: bytes, now: Optional[float] = None) -> List[LiquidationCandidate]:
        now = self._clock() if now is None else now
        return self.scan_snapshot(market, decode_slab(data), now)

    async def fetch_snapshot(self, market: DiscoveredMarket) -> Optional[SlabSnapshot]:
        data = await self.ledger.fetch_account_data(market.slab_address)
        if data is None:
            return None
        return decode_slab(data)

    async def scan(self, market: DiscoveredMarket) -> List[LiquidationCandidate]:
        """Candidates for one market. Never raises."""
        try:
            snapshot = await self.fetch_snapshot(market)
            if snapshot is None:
                logger.warning(f"Market {market.address[:8]}... has no account data")
                return []
            candidates = self.scan_snapshot(market.address, snapshot, self._clock())
        except Exception as exc:
            logger.error(f"Scan failed for {market.address[:8]}...: {exc}")
            return []

        if candidates:
            logger.info(f"Found {len(candidates)} liquidation candidate(s) in {market.address[:8]}...")
        return candidates
