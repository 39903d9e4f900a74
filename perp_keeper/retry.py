"""Submission outcomes and the bounded retry loop around them."""

import asyncio
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class SubmitOutcome(Enum):
    SUCCESS = "success"
    TRANSIENT = "transient"
    PERMANENT = "permanent"


@dataclass(frozen=True)
class SubmitResult:
    outcome: SubmitOutcome
    signature: Optional[str] = None
    error: Optional[str] = None
    error_hint: Optional[str] = None
    attempts: int = 1

    @property
    def success(self) -> bool:
        return self.outcome is SubmitOutcome.SUCCESS

    @classmethod
    def ok(cls, signature: str) -> "SubmitResult":
        return cls(SubmitOutcome.SUCCESS, signature=signature)

    @classmethod
    def transient(cls, error: str, hint: Optional[str] = None, signature: Optional[str] = None) -> "SubmitResult":
        return cls(SubmitOutcome.TRANSIENT, signature=signature, error=error, error_hint=hint)

    @classmethod
    def permanent(cls, error: str, hint: Optional[str] = None, signature: Optional[str] = None) -> "SubmitResult":
        return cls(SubmitOutcome.PERMANENT, signature=signature, error=error, error_hint=hint)


@dataclass(frozen=True)
class RetryPolicy:
    """
    max_retries extra attempts after the first, with linear backoff:
    the wait before retry n is backoff_secs * n.
    """
    max_retries: int = 2
    backoff_secs: float = 1.0

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delay_for(self, attempt: int) -> float:
        return self.backoff_secs * attempt


async def run_with_retry(
    operation: Callable[[], Awaitable[SubmitResult]],
    policy: RetryPolicy,
    label: str = "submit",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> SubmitResult:
    """Run operation until it succeeds, fails permanently, or attempts run out."""
    result = replace(SubmitResult.permanent("not attempted"), attempts=0)
    for attempt in range(1, policy.max_attempts + 1):
        result = replace(await operation(), attempts=attempt)
        if result.outcome is not SubmitOutcome.TRANSIENT:
            return result
        if attempt < policy.max_attempts:
            delay = policy.delay_for(attempt)
            logger.warning(
                f"{label} attempt {attempt}/{policy.max_attempts} failed transiently: "
                f"{result.error}; retrying in {delay:.1f}s"
            )
            await sleep(delay)
    logger.error(f"{label} gave up after {policy.max_attempts} attempts: {result.error}")
    return result
