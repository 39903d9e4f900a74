"""Slab-bytes builder and fake ledger clients shared by the tests."""

import struct
from typing import Dict, Optional
from unittest.mock import AsyncMock, MagicMock

import httpx
from solana.exceptions import SolanaRpcException, handle_async_exceptions
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.rpc.requests import GetLatestBlockhash

from perp_keeper import slab as slab_mod
from perp_keeper.discovery import DiscoveredMarket, decode_market
from perp_keeper.price_sources import PriceSource
from perp_keeper.retry import SubmitResult
from perp_keeper.slab import AccountKind, SlabLayout
from perp_keeper.solana_execution import LedgerAccount

NOW = 1_700_000_000.0
PROGRAM_ID = Pubkey.new_unique()


class SlabBuilder:
    """Builds slab account bytes with the same offsets the decoder reads."""

    def __init__(self, capacity: int = 256):
        self.layout = SlabLayout.for_capacity(capacity)
        self.data = bytearray(self.layout.data_size)
        self.data[0:8] = slab_mod.MAGIC
        struct.pack_into("<I", self.data, 8, 1)
        self.data[12] = 255
        self.set_maintenance_margin(500)

    # -- raw writers ------------------------------------------------------

    def _u8(self, off: int, value: int) -> None:
        self.data[off] = value

    def _u16(self, off: int, value: int) -> None:
        struct.pack_into("<H", self.data, off, value)

    def _u64(self, off: int, value: int) -> None:
        struct.pack_into("<Q", self.data, off, value)

    def _i64(self, off: int, value: int) -> None:
        struct.pack_into("<q", self.data, off, value)

    def _u128(self, off: int, value: int) -> None:
        self.data[off:off + 16] = value.to_bytes(16, "little", signed=False)

    def _i128(self, off: int, value: int) -> None:
        self.data[off:off + 16] = value.to_bytes(16, "little", signed=True)

    def _pubkey(self, off: int, key: Pubkey) -> None:
        self.data[off:off + 32] = bytes(key)

    # -- config -----------------------------------------------------------

    def set_price(self, price_e6: int, timestamp: float = NOW) -> "SlabBuilder":
        base = slab_mod.CONFIG_OFF
        self._u64(base + slab_mod._CFG_AUTHORITY_PRICE_E6, price_e6)
        self._i64(base + slab_mod._CFG_AUTHORITY_TIMESTAMP, int(timestamp))
        return self

    def set_oracle_authority(self, authority: Pubkey) -> "SlabBuilder":
        self._pubkey(slab_mod.CONFIG_OFF + slab_mod._CFG_ORACLE_AUTHORITY, authority)
        return self

    def set_feed_id(self, feed_id: bytes) -> "SlabBuilder":
        off = slab_mod.CONFIG_OFF + slab_mod._CFG_INDEX_FEED_ID
        self.data[off:off + 32] = feed_id
        return self

    def set_collateral_mint(self, mint: Pubkey) -> "SlabBuilder":
        self._pubkey(slab_mod.CONFIG_OFF + slab_mod._CFG_COLLATERAL_MINT, mint)
        return self

    def set_max_staleness(self, secs: int) -> "SlabBuilder":
        self._u64(slab_mod.CONFIG_OFF + slab_mod._CFG_MAX_STALENESS_SECS, secs)
        return self

    # -- params / engine --------------------------------------------------

    def set_maintenance_margin(self, bps: int) -> "SlabBuilder":
        self._u64(slab_mod.ENGINE_OFF + slab_mod.PARAMS_OFF + 8, bps)
        return self

    def set_engine(
        self,
        *,
        current_slot: Optional[int] = None,
        last_crank_slot: Optional[int] = None,
        max_crank_staleness: Optional[int] = None,
        total_open_interest: Optional[int] = None,
        lifetime_liquidations: Optional[int] = None,
    ) -> "SlabBuilder":
        base = slab_mod.ENGINE_OFF
        if current_slot is not None:
            self._u64(base + slab_mod._ENG_CURRENT_SLOT, current_slot)
        if last_crank_slot is not None:
            self._u64(base + slab_mod._ENG_LAST_CRANK_SLOT, last_crank_slot)
        if max_crank_staleness is not None:
            self._u64(base + slab_mod._ENG_MAX_CRANK_STALENESS, max_crank_staleness)
        if total_open_interest is not None:
            self._u128(base + slab_mod._ENG_TOTAL_OPEN_INTEREST, total_open_interest)
        if lifetime_liquidations is not None:
            self._u64(base + slab_mod._ENG_LIFETIME_LIQUIDATIONS, lifetime_liquidations)
        return self

    # -- accounts ---------------------------------------------------------

    def _set_used(self, idx: int, used: bool) -> None:
        off = self.layout.bitmap_off + (idx // 64) * 8
        word = struct.unpack_from("<Q", self.data, off)[0]
        word = word | (1 << (idx % 64)) if used else word & ~(1 << (idx % 64))
        self._u64(off, word)
        count = sum(bin(w).count("1") for w in struct.unpack_from(
            f"<{self.layout.max_accounts // 64}Q", self.data, self.layout.bitmap_off))
        self._u16(self.layout.num_used_off, count)

    def add_account(
        self,
        idx: int,
        *,
        size: int,
        entry_price: int,
        capital: int,
        kind: int = AccountKind.USER,
        owner: Optional[Pubkey] = None,
        pnl: int = 0,
    ) -> "SlabBuilder":
        base = self.layout.account_offset(idx)
        self.data[base:base + slab_mod.ACCOUNT_SIZE] = bytes(slab_mod.ACCOUNT_SIZE)
        self._u64(base + slab_mod._ACC_ACCOUNT_ID, idx + 1)
        self._u128(base + slab_mod._ACC_CAPITAL, capital)
        self._u8(base + slab_mod._ACC_KIND, int(kind))
        self._i128(base + slab_mod._ACC_PNL, pnl)
        self._i128(base + slab_mod._ACC_POSITION_SIZE, size)
        self._u64(base + slab_mod._ACC_ENTRY_PRICE, entry_price)
        self._pubkey(base + slab_mod._ACC_OWNER, owner or Keypair().pubkey())
        self._set_used(idx, True)
        return self

    def remove_account(self, idx: int) -> "SlabBuilder":
        base = self.layout.account_offset(idx)
        self.data[base:base + slab_mod.ACCOUNT_SIZE] = bytes(slab_mod.ACCOUNT_SIZE)
        self._set_used(idx, False)
        return self

    def build(self) -> bytes:
        return bytes(self.data)


def make_market(
    data: bytes,
    address: Optional[Pubkey] = None,
    program_id: Pubkey = PROGRAM_ID,
) -> DiscoveredMarket:
    return decode_market(address or Keypair().pubkey(), program_id, data)


def make_ledger(slabs: Optional[Dict[Pubkey, bytes]] = None, submit_result: Optional[SubmitResult] = None):
    """AsyncMock ledger serving fixed slab bytes and a fixed submit outcome."""
    slabs = slabs if slabs is not None else {}
    ledger = MagicMock()

    async def fetch_account_data(address):
        return slabs.get(address)

    async def fetch_account(address):
        data = slabs.get(address)
        if data is None:
            return None
        return LedgerAccount(address=address, owner=PROGRAM_ID, data=data)

    ledger.slabs = slabs
    ledger.fetch_account_data = AsyncMock(side_effect=fetch_account_data)
    ledger.fetch_account = AsyncMock(side_effect=fetch_account)
    ledger.get_program_accounts = AsyncMock(return_value=[])
    ledger.submit = AsyncMock(return_value=submit_result or SubmitResult.ok("5igSig1111"))
    ledger.close = AsyncMock()
    return ledger


class StaticPriceSource(PriceSource):
    """Price source answering from a dict, or raising a fixed error."""

    def __init__(self, name: str, prices: Optional[Dict[str, int]] = None, error: Optional[Exception] = None):
        super().__init__(timeout_secs=1)
        self.name = name
        self.prices = prices if prices is not None else {}
        self.error = error
        self.calls = 0

    async def fetch(self, session, mint: str) -> Optional[int]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.prices.get(mint)


def make_session() -> MagicMock:
    return MagicMock(closed=False)


def record_events(bus) -> list:
    """Subscribe a recorder to every event type; flush with bus.dispatch_pending()."""
    events = []

    async def recorder(event):
        events.append(event)

    bus.subscribe(recorder)
    return events


async def rpc_exception(cause: httpx.HTTPError) -> SolanaRpcException:
    """The SolanaRpcException solana-py's HTTP provider raises for cause."""

    @handle_async_exceptions(SolanaRpcException, httpx.HTTPError)
    async def make_request(provider, body):
        raise cause

    try:
        await make_request(None, GetLatestBlockhash())
    except SolanaRpcException as exc:
        return exc
    raise AssertionError("make_request did not raise")


def http_status_error(status: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "http://localhost:8899")
    return httpx.HTTPStatusError(
        f"HTTP {status}", request=request, response=httpx.Response(status, request=request)
    )
