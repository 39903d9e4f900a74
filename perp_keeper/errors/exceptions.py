"""Custom exception hierarchy."""
from typing import Any, Dict, Optional


class KeeperError(Exception):
    """Base exception for all keeper errors."""
    code: str = "SYS_001"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "details": self.details}


class SlabDecodeError(KeeperError):
    """Market account bytes could not be decoded."""
    code = "SLAB_001"

    def __init__(self, message: str, offset: Optional[int] = None, length: Optional[int] = None):
        super().__init__(message, {"offset": offset, "length": length})
        self.offset = offset
        self.length = length


class ConfigurationError(KeeperError):
    """Configuration error."""
    code = "CFG_001"


class SubmissionError(KeeperError):
    """Transaction could not be built or submitted."""
    code = "TX_001"

    def __init__(self, message: str, signature: Optional[str] = None, retryable: bool = False):
        super().__init__(message, {"signature": signature, "retryable": retryable})
        self.signature = signature
        self.retryable = retryable


class OracleAuthorityError(KeeperError):
    """Keeper identity is not the market's oracle authority."""
    code = "ORA_001"

    def __init__(self, message: str, market: Optional[str] = None):
        super().__init__(message, {"market": market})
        self.market = market
