"""Transient/permanent classification of ledger and transport errors."""
import asyncio
from enum import Enum
from typing import List, Optional, Union

import aiohttp
import httpx


class ErrorClass(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


# Checked first: a program rejection mentioning a timeout is still a rejection.
PERMANENT_MARKERS = (
    "custom program error",
    "instructionerror",
    "insufficientfunds",
    "insufficient funds",
    "invalidaccountdata",
    "alreadyprocessed",
    "signature verification",
    "transaction too large",
)

TRANSIENT_MARKERS = (
    "timeout",
    "timed out",
    "socket",
    "econnreset",
    "econnrefused",
    "connection reset",
    "connection refused",
    "connection aborted",
    "429",
    "too many requests",
    "rate limit",
    "502",
    "503",
    "blockhash not found",
    "blockhash expired",
    "block height exceeded",
    "accountinuse",
    "account in use",
    "node is behind",
)

TRANSIENT_TYPES = (
    asyncio.TimeoutError,
    ConnectionError,
    aiohttp.ClientConnectionError,
    httpx.TransportError,
)

MAX_CAUSE_DEPTH = 5


def error_chain(error: BaseException) -> List[BaseException]:
    """The error followed by its explicit causes.

    solana-py re-raises transport failures as SolanaRpcException with the
    httpx error as ``__cause__`` and an empty ``str()``.
    """
    chain = [error]
    while len(chain) < MAX_CAUSE_DEPTH:
        cause = chain[-1].__cause__
        if cause is None or cause in chain:
            break
        chain.append(cause)
    return chain


def _exception_text(error: BaseException) -> str:
    return str(error) or getattr(error, "error_msg", "") or ""


def error_message(error: Union[BaseException, str, None]) -> str:
    """Readable message for an error, including wrapped causes."""
    if error is None:
        return ""
    if not isinstance(error, BaseException):
        return str(error)
    parts = []
    for exc in error_chain(error):
        text = _exception_text(exc)
        parts.append(f"{type(exc).__name__}: {text}" if text else type(exc).__name__)
    return " <- ".join(parts)


def _classify_exception(error: BaseException) -> Optional[ErrorClass]:
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        if status == 429 or status >= 500:
            return ErrorClass.TRANSIENT
        return ErrorClass.PERMANENT
    if isinstance(error, TRANSIENT_TYPES):
        return ErrorClass.TRANSIENT
    exc_type = type(error).__name__.lower()
    if "timeout" in exc_type or "connect" in exc_type:
        return ErrorClass.TRANSIENT
    return None


def classify_error(error: Union[BaseException, str, None]) -> ErrorClass:
    """Classify an exception or RPC error string.

    Wrapped causes are inspected as well as the outer exception. Anything
    not recognised as transient is permanent: an unknown error is never
    retried.
    """
    if error is None:
        return ErrorClass.PERMANENT

    if isinstance(error, BaseException):
        for exc in error_chain(error):
            verdict = _classify_exception(exc)
            if verdict is not None:
                return verdict
        text = error_message(error).lower()
    else:
        text = str(error).lower()

    if any(marker in text for marker in PERMANENT_MARKERS):
        return ErrorClass.PERMANENT
    if any(marker in text for marker in TRANSIENT_MARKERS):
        return ErrorClass.TRANSIENT
    return ErrorClass.PERMANENT


def describe_error(error: Union[BaseException, str, None]) -> Optional[str]:
    """Short operator hint for common ledger errors."""
    if error is None:
        return None
    text = error_message(error).lower()
    if "blockhash" in text or "block height exceeded" in text:
        return "blockhash expired before confirmation, will retry with a fresh one"
    if "429" in text or "rate limit" in text or "too many requests" in text:
        return "rpc rate limited, consider a dedicated endpoint"
    if "accountinuse" in text or "account in use" in text:
        return "slab write-locked by a concurrent transaction"
    if "insufficient" in text:
        return "keeper wallet cannot pay fees, top it up"
    if "custom program error" in text:
        return "ledger program rejected the instruction"
    return None
