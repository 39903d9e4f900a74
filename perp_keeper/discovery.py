"""Market discovery: find and decode slab accounts owned by the ledger program."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

import base58
from solana.rpc.types import MemcmpOpts
from solders.pubkey import Pubkey

from perp_keeper.abi.instructions import derive_pyth_push_oracle
from perp_keeper.errors import SlabDecodeError
from perp_keeper.slab import (
    LAYOUTS,
    MAGIC,
    SLAB_PREFIX_LEN,
    EngineState,
    MarketConfig,
    RiskParams,
    SlabHeader,
    parse_config,
    parse_engine,
    parse_header,
    parse_params,
)
from perp_keeper.solana_execution import LedgerAccount, LedgerClient

logger = logging.getLogger(__name__)

MAGIC_BASE58 = base58.b58encode(MAGIC).decode()


@dataclass(frozen=True)
class DiscoveredMarket:
    """Decoded market metadata. A read-only copy refreshed periodically."""
    slab_address: Pubkey
    program_id: Pubkey
    header: SlabHeader
    config: MarketConfig
    params: RiskParams
    engine: EngineState

    @property
    def address(self) -> str:
        return str(self.slab_address)

    @property
    def collateral_mint(self) -> str:
        return str(self.config.collateral_mint)

    @property
    def is_admin_oracle(self) -> bool:
        """Priced by PushOraclePrice from a configured authority."""
        return self.config.uses_admin_oracle and self.config.oracle_authority != Pubkey.default()

    def is_oracle_authority(self, identity: Pubkey) -> bool:
        return self.is_admin_oracle and self.config.oracle_authority == identity

    def oracle_account(self) -> Pubkey:
        """Oracle account passed to crank/liquidate: the slab itself or the Pyth feed PDA."""
        if self.config.uses_admin_oracle:
            return self.slab_address
        return derive_pyth_push_oracle(self.config.index_feed_id)

    @property
    def crank_is_stale(self) -> bool:
        return is_crank_stale(self.engine, self.params)


def is_crank_stale(engine: EngineState, params: RiskParams) -> bool:
    """More slots since the last crank than the engine (or risk params) allow."""
    limit = engine.max_crank_staleness_slots or params.max_crank_staleness_slots
    if not limit:
        return False
    return engine.current_slot - engine.last_crank_slot > limit


def decode_market(address: Pubkey, program_id: Pubkey, data: bytes) -> DiscoveredMarket:
    """Decode market metadata from a full slab or its prefix."""
    return DiscoveredMarket(
        slab_address=address,
        program_id=program_id,
        header=parse_header(data),
        config=parse_config(data),
        params=parse_params(data),
        engine=parse_engine(data),
    )


async def load_market(ledger: LedgerClient, address: Pubkey) -> Optional[DiscoveredMarket]:
    account = await ledger.fetch_account(address)
    if account is None:
        logger.warning(f"Market {address} not found")
        return None
    return decode_market(address, account.owner, account.data)


def _decode_accounts(accounts: Iterable[LedgerAccount], program_id: Pubkey) -> List[DiscoveredMarket]:
    markets: List[DiscoveredMarket] = []
    for account in accounts:
        if account.data[:len(MAGIC)] != MAGIC:
            continue
        try:
            markets.append(decode_market(account.address, program_id, account.data))
        except SlabDecodeError as exc:
            logger.warning(f"Skipping undecodable slab {account.address}: {exc}")
    return markets


async def discover_markets(ledger: LedgerClient, program_id: Pubkey) -> List[DiscoveredMarket]:
    """
    Every slab owned by program_id, fetching only the metadata prefix.

    Queries each supported slab size; if the RPC node rejects size filters,
    falls back to a memcmp on the slab magic.
    """
    found: Dict[str, LedgerAccount] = {}
    try:
        for data_size in sorted(LAYOUTS):
            for account in await ledger.get_program_accounts(
                program_id, data_size=data_size, data_slice_len=SLAB_PREFIX_LEN
            ):
                found[str(account.address)] = account
    except Exception as exc:
        logger.warning(f"dataSize discovery failed for {program_id}, falling back to memcmp: {exc}")
        found = {
            str(account.address): account
            for account in await ledger.get_program_accounts(
                program_id,
                memcmp=MemcmpOpts(offset=0, bytes=MAGIC_BASE58),
                data_slice_len=SLAB_PREFIX_LEN,
            )
        }

    markets = _decode_accounts(found.values(), program_id)
    logger.info(f"Discovered {len(markets)} market(s) for program {str(program_id)[:8]}...")
    return markets
