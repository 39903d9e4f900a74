"""
Ledger program instructions used by the keeper.

Every instruction is a one-byte tag followed by a little-endian payload:

    KeeperCrank        tag 5   caller_idx u16, allow_panic u8
    LiquidateAtOracle  tag 7   target_idx u16
    PushOraclePrice    tag 17  price_e6 u64, timestamp i64
"""

import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import List, Sequence, Tuple

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey
from solders.sysvar import CLOCK

PYTH_PUSH_ORACLE_PROGRAM_ID = Pubkey.from_string("pythWSnswVUd12oZpeFP8e9CVaEqJg25g1Vtc2biRsT")

# Crank caller index meaning "permissionless, no specific account".
NO_CALLER_IDX = 0xFFFF

U16_MAX = 0xFFFF
U64_MAX = 2 ** 64 - 1
I64_MIN = -(2 ** 63)
I64_MAX = 2 ** 63 - 1


class IxTag(IntEnum):
    KEEPER_CRANK = 5
    LIQUIDATE_AT_ORACLE = 7
    PUSH_ORACLE_PRICE = 17


@dataclass(frozen=True)
class AccountSpec:
    name: str
    signer: bool
    writable: bool


ACCOUNTS_KEEPER_CRANK: Tuple[AccountSpec, ...] = (
    AccountSpec("caller", True, True),
    AccountSpec("slab", False, True),
    AccountSpec("clock", False, False),
    AccountSpec("oracle", False, False),
)

ACCOUNTS_LIQUIDATE_AT_ORACLE: Tuple[AccountSpec, ...] = (
    AccountSpec("caller", True, True),
    AccountSpec("slab", False, True),
    AccountSpec("clock", False, False),
    AccountSpec("oracle", False, False),
)

ACCOUNTS_PUSH_ORACLE_PRICE: Tuple[AccountSpec, ...] = (
    AccountSpec("authority", True, True),
    AccountSpec("slab", False, True),
)


def _check_range(name: str, value: int, low: int, high: int) -> None:
    if not isinstance(value, int) or isinstance(value, bool):
        raise TypeError(f"{name} must be an int, got {type(value).__name__}")
    if not low <= value <= high:
        raise ValueError(f"{name}={value} outside [{low}, {high}]")


def encode_keeper_crank(caller_idx: int = NO_CALLER_IDX, allow_panic: bool = False) -> bytes:
    _check_range("caller_idx", caller_idx, 0, U16_MAX)
    return struct.pack("<BHB", IxTag.KEEPER_CRANK, caller_idx, 1 if allow_panic else 0)


def encode_liquidate_at_oracle(target_idx: int) -> bytes:
    _check_range("target_idx", target_idx, 0, U16_MAX)
    return struct.pack("<BH", IxTag.LIQUIDATE_AT_ORACLE, target_idx)


def encode_push_oracle_price(price_e6: int, timestamp: int) -> bytes:
    _check_range("price_e6", price_e6, 1, U64_MAX)
    _check_range("timestamp", timestamp, I64_MIN, I64_MAX)
    return struct.pack("<BQq", IxTag.PUSH_ORACLE_PRICE, price_e6, timestamp)


def build_account_metas(specs: Sequence[AccountSpec], keys: Sequence[Pubkey]) -> List[AccountMeta]:
    """Pair an ordered account spec with concrete keys."""
    if len(specs) != len(keys):
        raise ValueError(f"expected {len(specs)} accounts ({', '.join(s.name for s in specs)}), got {len(keys)}")
    return [
        AccountMeta(pubkey=key, is_signer=spec.signer, is_writable=spec.writable)
        for spec, key in zip(specs, keys)
    ]


def build_keeper_crank_ix(program_id: Pubkey, caller: Pubkey, slab: Pubkey, oracle: Pubkey) -> Instruction:
    return Instruction(
        program_id,
        encode_keeper_crank(),
        build_account_metas(ACCOUNTS_KEEPER_CRANK, [caller, slab, CLOCK, oracle]),
    )


def build_liquidate_ix(
    program_id: Pubkey, caller: Pubkey, slab: Pubkey, oracle: Pubkey, target_idx: int
) -> Instruction:
    return Instruction(
        program_id,
        encode_liquidate_at_oracle(target_idx),
        build_account_metas(ACCOUNTS_LIQUIDATE_AT_ORACLE, [caller, slab, CLOCK, oracle]),
    )


def build_push_price_ix(
    program_id: Pubkey, authority: Pubkey, slab: Pubkey, price_e6: int, timestamp: int
) -> Instruction:
    return Instruction(
        program_id,
        encode_push_oracle_price(price_e6, timestamp),
        build_account_metas(ACCOUNTS_PUSH_ORACLE_PRICE, [authority, slab]),
    )


def derive_pyth_push_oracle(feed_id: bytes, shard_id: int = 0) -> Pubkey:
    """Pyth push-oracle price account for a 32-byte feed id."""
    if len(feed_id) != 32:
        raise ValueError(f"feed id must be 32 bytes, got {len(feed_id)}")
    pda, _bump = Pubkey.find_program_address(
        [struct.pack("<H", shard_id), bytes(feed_id)],
        PYTH_PUSH_ORACLE_PROGRAM_ID,
    )
    return pda
