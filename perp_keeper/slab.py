"""
Slab account codec.

A market lives in one program-owned "slab" account:

    [header 72B][config 320B][engine: fixed 408B | used bitmap | counters | free list][accounts N x 240B]

All integers are little-endian. The engine's variable part and the account
table scale with the slab's capacity (256, 1024 or 4096 slots); the capacity
is detected from the account's data length. Occupancy is a bitmap, so the
occupied slot set is sparse and never assumed to be 0..N.
"""

import logging
import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Dict, List, Optional

from solders.pubkey import Pubkey

from perp_keeper.errors import SlabDecodeError

logger = logging.getLogger(__name__)

MAGIC = b"PERCOLAT"

HEADER_OFF = 0
HEADER_LEN = 72
CONFIG_OFF = HEADER_LEN
CONFIG_LEN = 320
ENGINE_OFF = CONFIG_OFF + CONFIG_LEN
ENGINE_FIXED_LEN = 408
PARAMS_OFF = 48
PARAMS_LEN = 144
ACCOUNT_SIZE = 240

# Enough for header, config and the fixed engine part; used for discovery.
SLAB_PREFIX_LEN = ENGINE_OFF + ENGINE_FIXED_LEN

# Config field offsets, relative to CONFIG_OFF
_CFG_COLLATERAL_MINT = 0
_CFG_VAULT = 32
_CFG_INDEX_FEED_ID = 64
_CFG_MAX_STALENESS_SECS = 96
_CFG_CONF_FILTER_BPS = 104
_CFG_VAULT_AUTHORITY_BUMP = 106
_CFG_INVERT = 107
_CFG_UNIT_SCALE = 108
_CFG_FUNDING_HORIZON_SLOTS = 112
_CFG_FUNDING_K_BPS = 120
_CFG_FUNDING_MAX_PREMIUM_BPS = 144
_CFG_FUNDING_MAX_BPS_PER_SLOT = 152
_CFG_ORACLE_AUTHORITY = 256
_CFG_AUTHORITY_PRICE_E6 = 288
_CFG_AUTHORITY_TIMESTAMP = 296
_CFG_ORACLE_PRICE_CAP_E2BPS = 304
_CFG_LAST_EFFECTIVE_PRICE_E6 = 312

# Engine field offsets, relative to ENGINE_OFF
_ENG_VAULT = 0
_ENG_INSURANCE_BALANCE = 16
_ENG_FEE_REVENUE = 32
_ENG_CURRENT_SLOT = 192
_ENG_FUNDING_INDEX = 200
_ENG_LAST_FUNDING_SLOT = 216
_ENG_FUNDING_RATE = 224
_ENG_LAST_CRANK_SLOT = 232
_ENG_MAX_CRANK_STALENESS = 240
_ENG_TOTAL_OPEN_INTEREST = 248
_ENG_C_TOT = 264
_ENG_PNL_POS_TOT = 280
_ENG_LIQ_CURSOR = 296
_ENG_GC_CURSOR = 298
_ENG_CRANK_CURSOR = 320
_ENG_LIFETIME_LIQUIDATIONS = 328
_ENG_LIFETIME_FORCE_CLOSES = 336
_ENG_BITMAP = ENGINE_FIXED_LEN

# Account field offsets, relative to the account's start
_ACC_ACCOUNT_ID = 0
_ACC_CAPITAL = 8
_ACC_KIND = 24
_ACC_PNL = 32
_ACC_RESERVED_PNL = 48
_ACC_WARMUP_STARTED = 56
_ACC_WARMUP_SLOPE = 64
_ACC_POSITION_SIZE = 80
_ACC_ENTRY_PRICE = 96
_ACC_FUNDING_INDEX = 104
_ACC_MATCHER_PROGRAM = 120
_ACC_MATCHER_CONTEXT = 152
_ACC_OWNER = 184
_ACC_FEE_CREDITS = 216
_ACC_LAST_FEE_SLOT = 232


class AccountKind(IntEnum):
    USER = 0
    LP = 1


@dataclass(frozen=True)
class SlabLayout:
    """Offsets that depend on slab capacity."""
    max_accounts: int
    bitmap_off: int
    num_used_off: int
    next_account_id_off: int
    free_list_off: int
    accounts_off: int
    data_size: int

    @classmethod
    def for_capacity(cls, max_accounts: int) -> "SlabLayout":
        bitmap_off = ENGINE_OFF + _ENG_BITMAP
        num_used_off = bitmap_off + max_accounts // 8
        next_account_id_off = num_used_off + 8
        free_list_off = next_account_id_off + 8
        accounts_off = _align(free_list_off + 2 * max_accounts, 16)
        return cls(
            max_accounts=max_accounts,
            bitmap_off=bitmap_off,
            num_used_off=num_used_off,
            next_account_id_off=next_account_id_off,
            free_list_off=free_list_off,
            accounts_off=accounts_off,
            data_size=accounts_off + max_accounts * ACCOUNT_SIZE,
        )

    def account_offset(self, idx: int) -> int:
        return self.accounts_off + idx * ACCOUNT_SIZE


def _align(value: int, to: int) -> int:
    return (value + to - 1) // to * to


SUPPORTED_CAPACITIES = (256, 1024, 4096)
LAYOUTS: Dict[int, SlabLayout] = {
    layout.data_size: layout
    for layout in (SlabLayout.for_capacity(n) for n in SUPPORTED_CAPACITIES)
}


@dataclass(frozen=True)
class SlabHeader:
    magic: bytes
    version: int
    bump: int
    admin: Pubkey


@dataclass(frozen=True)
class MarketConfig:
    collateral_mint: Pubkey
    vault_pubkey: Pubkey
    index_feed_id: bytes
    max_staleness_secs: int
    conf_filter_bps: int
    vault_authority_bump: int
    invert: int
    unit_scale: int
    funding_horizon_slots: int
    funding_k_bps: int
    funding_max_premium_bps: int
    funding_max_bps_per_slot: int
    oracle_authority: Pubkey
    authority_price_e6: int
    authority_timestamp: int
    oracle_price_cap_e2bps: int
    last_effective_price_e6: int

    @property
    def uses_admin_oracle(self) -> bool:
        """Price comes from PushOraclePrice rather than an external feed."""
        return self.index_feed_id == bytes(32)


@dataclass(frozen=True)
class RiskParams:
    warmup_period_slots: int
    maintenance_margin_bps: int
    initial_margin_bps: int
    trading_fee_bps: int
    max_accounts: int
    new_account_fee: int
    risk_reduction_threshold: int
    maintenance_fee_per_slot: int
    max_crank_staleness_slots: int
    liquidation_fee_bps: int
    liquidation_fee_cap: int
    liquidation_buffer_bps: int
    min_liquidation_abs: int


@dataclass(frozen=True)
class EngineState:
    vault: int
    insurance_balance: int
    fee_revenue: int
    current_slot: int
    funding_index: int
    last_funding_slot: int
    funding_rate_bps_per_slot: int
    last_crank_slot: int
    max_crank_staleness_slots: int
    total_open_interest: int
    c_tot: int
    pnl_pos_tot: int
    liq_cursor: int
    gc_cursor: int
    crank_cursor: int
    lifetime_liquidations: int
    lifetime_force_closes: int


@dataclass(frozen=True)
class Account:
    index: int
    account_id: int
    capital: int
    kind: AccountKind
    pnl: int
    reserved_pnl: int
    warmup_started_at_slot: int
    warmup_slope_per_step: int
    position_size: int
    entry_price: int
    funding_index: int
    matcher_program: Pubkey
    matcher_context: Pubkey
    owner: Pubkey
    fee_credits: int
    last_fee_slot: int


def _require(data: bytes, end: int, what: str) -> None:
    if len(data) < end:
        raise SlabDecodeError(
            f"Slab too short for {what}: need {end} bytes, have {len(data)}",
            offset=end,
            length=len(data),
        )


def _u8(data: bytes, off: int) -> int:
    return data[off]


def _u16(data: bytes, off: int) -> int:
    return struct.unpack_from("<H", data, off)[0]


def _u32(data: bytes, off: int) -> int:
    return struct.unpack_from("<I", data, off)[0]


def _u64(data: bytes, off: int) -> int:
    return struct.unpack_from("<Q", data, off)[0]


def _i64(data: bytes, off: int) -> int:
    return struct.unpack_from("<q", data, off)[0]


def _u128(data: bytes, off: int) -> int:
    return int.from_bytes(data[off:off + 16], "little", signed=False)


def _i128(data: bytes, off: int) -> int:
    return int.from_bytes(data[off:off + 16], "little", signed=True)


def _pubkey(data: bytes, off: int) -> Pubkey:
    return Pubkey.from_bytes(bytes(data[off:off + 32]))


def detect_layout(data_len: int) -> Optional[SlabLayout]:
    return LAYOUTS.get(data_len)


def require_layout(data: bytes) -> SlabLayout:
    layout = detect_layout(len(data))
    if layout is None:
        raise SlabDecodeError(f"Unrecognised slab size {len(data)}", length=len(data))
    return layout


def parse_header(data: bytes) -> SlabHeader:
    _require(data, HEADER_LEN, "header")
    magic = bytes(data[0:8])
    if magic != MAGIC:
        raise SlabDecodeError(f"Bad slab magic {magic!r}", offset=0, length=len(data))
    return SlabHeader(
        magic=magic,
        version=_u32(data, 8),
        bump=_u8(data, 12),
        admin=_pubkey(data, 16),
    )


def parse_config(data: bytes) -> MarketConfig:
    _require(data, CONFIG_OFF + CONFIG_LEN, "config")
    base = CONFIG_OFF
    return MarketConfig(
        collateral_mint=_pubkey(data, base + _CFG_COLLATERAL_MINT),
        vault_pubkey=_pubkey(data, base + _CFG_VAULT),
        index_feed_id=bytes(data[base + _CFG_INDEX_FEED_ID:base + _CFG_INDEX_FEED_ID + 32]),
        max_staleness_secs=_u64(data, base + _CFG_MAX_STALENESS_SECS),
        conf_filter_bps=_u16(data, base + _CFG_CONF_FILTER_BPS),
        vault_authority_bump=_u8(data, base + _CFG_VAULT_AUTHORITY_BUMP),
        invert=_u8(data, base + _CFG_INVERT),
        unit_scale=_u32(data, base + _CFG_UNIT_SCALE),
        funding_horizon_slots=_u64(data, base + _CFG_FUNDING_HORIZON_SLOTS),
        funding_k_bps=_u64(data, base + _CFG_FUNDING_K_BPS),
        funding_max_premium_bps=_i64(data, base + _CFG_FUNDING_MAX_PREMIUM_BPS),
        funding_max_bps_per_slot=_i64(data, base + _CFG_FUNDING_MAX_BPS_PER_SLOT),
        oracle_authority=_pubkey(data, base + _CFG_ORACLE_AUTHORITY),
        authority_price_e6=_u64(data, base + _CFG_AUTHORITY_PRICE_E6),
        authority_timestamp=_i64(data, base + _CFG_AUTHORITY_TIMESTAMP),
        oracle_price_cap_e2bps=_u64(data, base + _CFG_ORACLE_PRICE_CAP_E2BPS),
        last_effective_price_e6=_u64(data, base + _CFG_LAST_EFFECTIVE_PRICE_E6),
    )


def parse_params(data: bytes) -> RiskParams:
    base = ENGINE_OFF + PARAMS_OFF
    _require(data, base + PARAMS_LEN, "risk params")
    return RiskParams(
        warmup_period_slots=_u64(data, base + 0),
        maintenance_margin_bps=_u64(data, base + 8),
        initial_margin_bps=_u64(data, base + 16),
        trading_fee_bps=_u64(data, base + 24),
        max_accounts=_u64(data, base + 32),
        new_account_fee=_u128(data, base + 40),
        risk_reduction_threshold=_u128(data, base + 56),
        maintenance_fee_per_slot=_u128(data, base + 72),
        max_crank_staleness_slots=_u64(data, base + 88),
        liquidation_fee_bps=_u64(data, base + 96),
        liquidation_fee_cap=_u128(data, base + 104),
        liquidation_buffer_bps=_u64(data, base + 120),
        min_liquidation_abs=_u128(data, base + 128),
    )


def parse_engine(data: bytes) -> EngineState:
    base = ENGINE_OFF
    _require(data, base + ENGINE_FIXED_LEN, "engine")
    return EngineState(
        vault=_u128(data, base + _ENG_VAULT),
        insurance_balance=_u128(data, base + _ENG_INSURANCE_BALANCE),
        fee_revenue=_u128(data, base + _ENG_FEE_REVENUE),
        current_slot=_u64(data, base + _ENG_CURRENT_SLOT),
        funding_index=_i128(data, base + _ENG_FUNDING_INDEX),
        last_funding_slot=_u64(data, base + _ENG_LAST_FUNDING_SLOT),
        funding_rate_bps_per_slot=_i64(data, base + _ENG_FUNDING_RATE),
        last_crank_slot=_u64(data, base + _ENG_LAST_CRANK_SLOT),
        max_crank_staleness_slots=_u64(data, base + _ENG_MAX_CRANK_STALENESS),
        total_open_interest=_u128(data, base + _ENG_TOTAL_OPEN_INTEREST),
        c_tot=_u128(data, base + _ENG_C_TOT),
        pnl_pos_tot=_u128(data, base + _ENG_PNL_POS_TOT),
        liq_cursor=_u16(data, base + _ENG_LIQ_CURSOR),
        gc_cursor=_u16(data, base + _ENG_GC_CURSOR),
        crank_cursor=_u16(data, base + _ENG_CRANK_CURSOR),
        lifetime_liquidations=_u64(data, base + _ENG_LIFETIME_LIQUIDATIONS),
        lifetime_force_closes=_u64(data, base + _ENG_LIFETIME_FORCE_CLOSES),
    )


def parse_used_indices(data: bytes, layout: Optional[SlabLayout] = None) -> List[int]:
    """Occupied slot indices in ascending order, read from the used bitmap."""
    layout = layout or require_layout(data)
    words = layout.max_accounts // 64
    indices: List[int] = []
    for word_idx in range(words):
        word = _u64(data, layout.bitmap_off + word_idx * 8)
        while word:
            low = word & -word
            indices.append(word_idx * 64 + low.bit_length() - 1)
            word ^= low
    return indices


def is_slot_used(data: bytes, idx: int, layout: Optional[SlabLayout] = None) -> bool:
    layout = layout or require_layout(data)
    if not 0 <= idx < layout.max_accounts:
        return False
    word = _u64(data, layout.bitmap_off + (idx // 64) * 8)
    return bool((word >> (idx % 64)) & 1)


def parse_account(data: bytes, idx: int, layout: Optional[SlabLayout] = None) -> Account:
    layout = layout or require_layout(data)
    if not 0 <= idx < layout.max_accounts:
        raise SlabDecodeError(f"Slot index {idx} out of range (max {layout.max_accounts})")
    base = layout.account_offset(idx)
    _require(data, base + ACCOUNT_SIZE, f"account {idx}")

    raw_kind = _u8(data, base + _ACC_KIND)
    try:
        kind = AccountKind(raw_kind)
    except ValueError as exc:
        raise SlabDecodeError(f"Unknown account kind {raw_kind} at slot {idx}", offset=base + _ACC_KIND) from exc

    return Account(
        index=idx,
        account_id=_u64(data, base + _ACC_ACCOUNT_ID),
        capital=_u128(data, base + _ACC_CAPITAL),
        kind=kind,
        pnl=_i128(data, base + _ACC_PNL),
        reserved_pnl=_u64(data, base + _ACC_RESERVED_PNL),
        warmup_started_at_slot=_u64(data, base + _ACC_WARMUP_STARTED),
        warmup_slope_per_step=_u128(data, base + _ACC_WARMUP_SLOPE),
        position_size=_i128(data, base + _ACC_POSITION_SIZE),
        entry_price=_u64(data, base + _ACC_ENTRY_PRICE),
        funding_index=_i128(data, base + _ACC_FUNDING_INDEX),
        matcher_program=_pubkey(data, base + _ACC_MATCHER_PROGRAM),
        matcher_context=_pubkey(data, base + _ACC_MATCHER_CONTEXT),
        owner=_pubkey(data, base + _ACC_OWNER),
        fee_credits=_i128(data, base + _ACC_FEE_CREDITS),
        last_fee_slot=_u64(data, base + _ACC_LAST_FEE_SLOT),
    )


@dataclass(frozen=True)
class SlabSnapshot:
    """Everything decoded from one read of a slab."""
    header: SlabHeader
    config: MarketConfig
    params: RiskParams
    engine: EngineState
    layout: SlabLayout
    used_indices: List[int]
    data: bytes = field(repr=False)

    def account(self, idx: int) -> Account:
        return parse_account(self.data, idx, self.layout)

    def is_used(self, idx: int) -> bool:
        return is_slot_used(self.data, idx, self.layout)


def decode_slab(data: bytes) -> SlabSnapshot:
    """Decode a full slab. Raises SlabDecodeError on any structural problem."""
    data = bytes(data)
    layout = require_layout(data)
    return SlabSnapshot(
        header=parse_header(data),
        config=parse_config(data),
        params=parse_params(data),
        engine=parse_engine(data),
        layout=layout,
        used_indices=parse_used_indices(data, layout),
        data=data,
    )
