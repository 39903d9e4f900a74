"""
Error handling and exception classes.

KeeperError is the root of every error raised by this package. Transport and
ledger failures are mapped to ErrorClass.TRANSIENT or ErrorClass.PERMANENT by
classify_error(); only transient failures are ever retried.
"""

from perp_keeper.errors.exceptions import (
    KeeperError, SlabDecodeError, ConfigurationError, SubmissionError,
    OracleAuthorityError
)
from perp_keeper.errors.classification import (
    classify_error, describe_error, error_message, ErrorClass
)

__all__ = [
    "KeeperError", "SlabDecodeError", "ConfigurationError", "SubmissionError",
    "OracleAuthorityError",
    "classify_error", "describe_error", "error_message", "ErrorClass",
]
