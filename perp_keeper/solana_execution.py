"""Ledger RPC access: account reads and reliable instruction submission."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import List, Optional, Sequence

from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.types import DataSliceOpts, MemcmpOpts, TxOpts
from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import Transaction
from solders.transaction_status import TransactionConfirmationStatus

from perp_keeper.errors import (
    ErrorClass,
    SubmissionError,
    classify_error,
    describe_error,
    error_message,
)
from perp_keeper.retry import RetryPolicy, SubmitResult, run_with_retry

logger = logging.getLogger(__name__)

# Serialized transaction limit (IPv6 MTU minus headers).
MAX_TRANSACTION_SIZE = 1232

CONFIRMED_STATUSES = (
    TransactionConfirmationStatus.Confirmed,
    TransactionConfirmationStatus.Finalized,
)


@dataclass(frozen=True)
class LedgerAccount:
    address: Pubkey
    owner: Pubkey
    data: bytes


class LedgerClient:
    """
    Thin wrapper over solana-py's AsyncClient.

    Reads return plain bytes. Writes never raise: every outcome comes back as a
    SubmitResult classified SUCCESS / TRANSIENT / PERMANENT.
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        timeout_secs: float = 30.0,
        confirm_timeout_secs: float = 30.0,
        compute_unit_limit: int = 400_000,
        compute_unit_price_micro_lamports: int = 50_000,
        client: Optional[AsyncClient] = None,
    ):
        self.rpc_url = rpc_url
        self.confirm_timeout_secs = confirm_timeout_secs
        self.compute_unit_limit = compute_unit_limit
        self.compute_unit_price_micro_lamports = compute_unit_price_micro_lamports
        self._client = client or AsyncClient(rpc_url, commitment=Confirmed, timeout=timeout_secs)

    async def close(self) -> None:
        await self._client.close()

    async def fetch_account(self, address: Pubkey) -> Optional[LedgerAccount]:
        resp = await self._client.get_account_info(address, commitment=Confirmed)
        if resp.value is None:
            return None
        return LedgerAccount(address=address, owner=resp.value.owner, data=bytes(resp.value.data))

    async def fetch_account_data(self, address: Pubkey) -> Optional[bytes]:
        account = await self.fetch_account(address)
        return account.data if account else None

    async def get_program_accounts(
        self,
        program_id: Pubkey,
        *,
        data_size: Optional[int] = None,
        memcmp: Optional[MemcmpOpts] = None,
        data_slice_len: Optional[int] = None,
    ) -> List[LedgerAccount]:
        filters: list = []
        if data_size is not None:
            filters.append(data_size)
        if memcmp is not None:
            filters.append(memcmp)
        resp = await self._client.get_program_accounts(
            program_id,
            commitment=Confirmed,
            encoding="base64",
            data_slice=DataSliceOpts(offset=0, length=data_slice_len) if data_slice_len else None,
            filters=filters or None,
        )
        return [
            LedgerAccount(address=keyed.pubkey, owner=keyed.account.owner, data=bytes(keyed.account.data))
            for keyed in resp.value
        ]

    def compute_budget_instructions(self) -> List[Instruction]:
        instructions = []
        if self.compute_unit_limit:
            instructions.append(set_compute_unit_limit(self.compute_unit_limit))
        if self.compute_unit_price_micro_lamports:
            instructions.append(set_compute_unit_price(self.compute_unit_price_micro_lamports))
        return instructions

    def build_transaction(self, instructions: Sequence[Instruction], signer: Keypair, blockhash: Hash) -> bytes:
        """Compute-budget prefix + instructions, signed by signer. Raises SubmissionError when oversized."""
        tx = Transaction.new_signed_with_payer(
            [*self.compute_budget_instructions(), *instructions],
            signer.pubkey(),
            [signer],
            blockhash,
        )
        raw = bytes(tx)
        if len(raw) > MAX_TRANSACTION_SIZE:
            raise SubmissionError(f"transaction too large: {len(raw)} > {MAX_TRANSACTION_SIZE} bytes")
        return raw

    async def send_instructions(self, instructions: Sequence[Instruction], signer: Keypair) -> SubmitResult:
        """Build, sign, send and confirm one transaction. Single attempt."""
        try:
            blockhash_resp = await self._client.get_latest_blockhash(Confirmed)
            raw = self.build_transaction(instructions, signer, blockhash_resp.value.blockhash)
            send_resp = await self._client.send_raw_transaction(
                raw, opts=TxOpts(skip_preflight=False, preflight_commitment=Confirmed, max_retries=0)
            )
        except Exception as exc:
            return self._result_from_error(exc)

        signature = send_resp.value
        logger.info(f"Transaction sent: {str(signature)[:16]}...")
        confirmed, confirm_err = await self._confirm_signature(signature)
        if confirmed:
            return SubmitResult.ok(str(signature))
        return self._result_from_error(confirm_err or "confirmation_failed", signature=str(signature))

    async def submit(
        self,
        instructions: Sequence[Instruction],
        signer: Keypair,
        policy: RetryPolicy,
        label: str = "submit",
    ) -> SubmitResult:
        """send_instructions under a retry policy; each attempt uses a fresh blockhash."""
        return await run_with_retry(lambda: self.send_instructions(instructions, signer), policy, label)

    async def _confirm_signature(self, signature: Signature, poll_interval: float = 0.5):
        start = time.monotonic()
        poll_count = 0
        while time.monotonic() - start < self.confirm_timeout_secs:
            try:
                resp = await self._client.get_signature_statuses([signature])
                value = resp.value[0] if resp.value else None
                if value:
                    if value.err:
                        error_str = str(value.err)
                        logger.warning(f"Transaction {str(signature)[:16]}... failed: {error_str}")
                        return False, f"custom program error: {error_str}"
                    if value.confirmation_status in CONFIRMED_STATUSES:
                        return True, None
            except Exception as exc:
                logger.debug(f"Status check failed: {exc}")

            poll_count += 1
            await asyncio.sleep(min(poll_interval * (1.2 ** min(poll_count, 10)), 2.0))

        logger.warning(f"Transaction {str(signature)[:16]}... confirmation timeout after {self.confirm_timeout_secs}s")
        return False, "confirmation timeout: block height exceeded"

    @staticmethod
    def _result_from_error(error, signature: Optional[str] = None) -> SubmitResult:
        message = error_message(error)
        hint = describe_error(error)
        if classify_error(error) is ErrorClass.TRANSIENT:
            return SubmitResult.transient(message, hint=hint, signature=signature)
        return SubmitResult.permanent(message, hint=hint, signature=signature)
