"""
Settlement Engine - Error Taxonomy.

============================================================
PURPOSE
============================================================
Classification of settlement failures.

ERROR CATEGORIES:
1. Authorization - Actor may not perform the action
2. State - Transition not valid (incl. expired, conflict)
3. Transfer - Escrow movement failed, fully rolled back
4. Ledger - External attestation deferred (non-fatal)
5. Internal - Database or timeout failures

USER MESSAGING:
    Conflict, Expired and Forbidden each carry a distinct
    message so callers can tell "someone else already decided
    this" from "this has expired" from "you are not allowed".

============================================================
"""

from enum import Enum
from typing import Dict, Set
from dataclasses import dataclass

from .types import SettlementOutcome


# ============================================================
# ERROR CATEGORIES
# ============================================================

class ErrorCategory(Enum):
    """Error category classification."""

    AUTHORIZATION = "AUTHORIZATION"
    STATE = "STATE"
    VALIDATION = "VALIDATION"
    TRANSFER = "TRANSFER"
    LEDGER = "LEDGER"
    INTERNAL = "INTERNAL"


class ErrorSeverity(Enum):
    """Error severity levels."""

    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


# ============================================================
# ERROR CODE REGISTRY
# ============================================================

@dataclass
class ErrorCodeInfo:
    """Information about an error code."""

    code: str
    """Error code."""

    category: ErrorCategory
    """Error category."""

    severity: ErrorSeverity
    """Error severity."""

    is_retryable: bool
    """Whether the caller may retry the same request."""

    outcome: SettlementOutcome
    """Status reported to the caller."""

    user_message: str
    """User-facing message."""

    has_side_effects: bool = False
    """Whether any state survives the failure."""


ERROR_CODES: Dict[str, ErrorCodeInfo] = {
    "FORBIDDEN": ErrorCodeInfo(
        code="FORBIDDEN",
        category=ErrorCategory.AUTHORIZATION,
        severity=ErrorSeverity.WARNING,
        is_retryable=False,
        outcome=SettlementOutcome.FORBIDDEN,
        user_message="You are not allowed to perform this action on this swap.",
    ),
    "INVALID_STATE": ErrorCodeInfo(
        code="INVALID_STATE",
        category=ErrorCategory.STATE,
        severity=ErrorSeverity.WARNING,
        is_retryable=False,
        outcome=SettlementOutcome.INVALID_STATE,
        user_message="This action is not possible in the current state of the swap.",
    ),
    "EXPIRED": ErrorCodeInfo(
        code="EXPIRED",
        category=ErrorCategory.STATE,
        severity=ErrorSeverity.INFO,
        is_retryable=False,
        outcome=SettlementOutcome.EXPIRED,
        user_message="This swap has expired and can no longer be accepted.",
    ),
    "CONFLICT": ErrorCodeInfo(
        code="CONFLICT",
        category=ErrorCategory.STATE,
        severity=ErrorSeverity.INFO,
        is_retryable=False,
        outcome=SettlementOutcome.CONFLICT,
        user_message="Someone else already decided this proposal.",
    ),
    "NOT_FOUND": ErrorCodeInfo(
        code="NOT_FOUND",
        category=ErrorCategory.VALIDATION,
        severity=ErrorSeverity.WARNING,
        is_retryable=False,
        outcome=SettlementOutcome.NOT_FOUND,
        user_message="The requested swap or proposal does not exist.",
    ),
    "INVALID_REQUEST": ErrorCodeInfo(
        code="INVALID_REQUEST",
        category=ErrorCategory.VALIDATION,
        severity=ErrorSeverity.WARNING,
        is_retryable=False,
        outcome=SettlementOutcome.INVALID_REQUEST,
        user_message="The request is invalid.",
    ),
    "TRANSFER_FAILED": ErrorCodeInfo(
        code="TRANSFER_FAILED",
        category=ErrorCategory.TRANSFER,
        severity=ErrorSeverity.ERROR,
        is_retryable=True,
        outcome=SettlementOutcome.TRANSFER_FAILED,
        user_message="The payment could not be completed. Nothing was changed; please try again.",
    ),
    "TIMEOUT": ErrorCodeInfo(
        code="TIMEOUT",
        category=ErrorCategory.INTERNAL,
        severity=ErrorSeverity.ERROR,
        is_retryable=True,
        outcome=SettlementOutcome.TIMEOUT,
        user_message="The operation timed out. Nothing was changed; please try again.",
    ),
    "DATABASE_ERROR": ErrorCodeInfo(
        code="DATABASE_ERROR",
        category=ErrorCategory.INTERNAL,
        severity=ErrorSeverity.CRITICAL,
        is_retryable=True,
        outcome=SettlementOutcome.TIMEOUT,
        user_message="A temporary error occurred. Nothing was changed; please try again.",
    ),
    "LEDGER_WRITE_DEFERRED": ErrorCodeInfo(
        code="LEDGER_WRITE_DEFERRED",
        category=ErrorCategory.LEDGER,
        severity=ErrorSeverity.WARNING,
        is_retryable=False,
        outcome=SettlementOutcome.ACCEPTED,
        user_message="The outcome is final; its public record will be published shortly.",
        has_side_effects=True,
    ),
}


def get_error_info(code: str) -> ErrorCodeInfo:
    """
    Get error info for a code.

    Args:
        code: Error code

    Returns:
        ErrorCodeInfo or a generic internal error
    """
    return ERROR_CODES.get(code, ErrorCodeInfo(
        code=code,
        category=ErrorCategory.INTERNAL,
        severity=ErrorSeverity.ERROR,
        is_retryable=False,
        outcome=SettlementOutcome.INVALID_STATE,
        user_message=f"Unexpected error: {code}",
    ))


def is_retryable(code: str) -> bool:
    """Check if an error code is retryable."""
    return get_error_info(code).is_retryable


def user_message(code: str) -> str:
    """User-facing message for an error code."""
    return get_error_info(code).user_message


RETRYABLE_ERROR_CODES: Set[str] = {
    code for code, info in ERROR_CODES.items() if info.is_retryable
}

CRITICAL_ERROR_CODES: Set[str] = {
    code for code, info in ERROR_CODES.items()
    if info.severity == ErrorSeverity.CRITICAL
}
