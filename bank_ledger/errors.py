"""
Ledger Error Taxonomy

Closed set of typed failures raised by the ledger. Every failure carries its
kind so callers can branch on it, and a user-facing message a front end can
show as-is.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(Enum):
    """Kinds of ledger failures"""
    INVALID_AMOUNT = "invalid_amount"
    ACCOUNT_NOT_FOUND = "account_not_found"
    ACCOUNT_INACTIVE = "account_inactive"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    SAME_ACCOUNT = "same_account"
    DUPLICATE_ACCOUNT = "duplicate_account"
    UNAUTHORIZED = "unauthorized"
    INVALID_PAGE = "invalid_page"
    STORAGE_UNAVAILABLE = "storage_unavailable"
    TIMEOUT = "timeout"


class LedgerError(Exception):
    """Base class for all ledger failures"""

    kind: ErrorKind
    retryable: bool = False
    user_message: str = "The operation could not be completed."

    def __init__(self, message: Optional[str] = None, **details: Any):
        self.message = message or self.user_message
        self.details: Dict[str, Any] = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Serializable view for front ends"""
        return {
            "error": self.kind.value,
            "message": describe_failure(self),
            "detail": self.message,
            "retryable": self.retryable,
        }


class InvalidAmount(LedgerError):
    kind = ErrorKind.INVALID_AMOUNT
    user_message = "Enter an amount greater than zero, e.g. 1500 or 1,500.00."


class AccountNotFound(LedgerError):
    kind = ErrorKind.ACCOUNT_NOT_FOUND
    user_message = "No account matches that reference. Check the account number."


class AccountInactive(LedgerError):
    kind = ErrorKind.ACCOUNT_INACTIVE
    user_message = "This account is deactivated and cannot be used for transactions."


class InsufficientFunds(LedgerError):
    kind = ErrorKind.INSUFFICIENT_FUNDS
    user_message = "Insufficient funds. Try a smaller amount."


class SameAccount(LedgerError):
    kind = ErrorKind.SAME_ACCOUNT
    user_message = "Source and destination accounts must differ."


class DuplicateAccount(LedgerError):
    kind = ErrorKind.DUPLICATE_ACCOUNT
    user_message = "That account number is already in use. Choose another or let one be generated."


class Unauthorized(LedgerError):
    kind = ErrorKind.UNAUTHORIZED
    user_message = "You are not allowed to operate on this account."


class InvalidPage(LedgerError):
    kind = ErrorKind.INVALID_PAGE
    user_message = "Page index must be zero or more and page size must be positive."


class StorageUnavailable(LedgerError):
    kind = ErrorKind.STORAGE_UNAVAILABLE
    retryable = True
    user_message = "The ledger is temporarily unavailable. Please try again."


class Timeout(LedgerError):
    kind = ErrorKind.TIMEOUT
    retryable = True
    user_message = "The ledger is busy and the operation timed out. Nothing was changed; please try again."


ERRORS_BY_KIND = {
    cls.kind: cls for cls in (
        InvalidAmount, AccountNotFound, AccountInactive, InsufficientFunds,
        SameAccount, DuplicateAccount, Unauthorized, InvalidPage,
        StorageUnavailable, Timeout,
    )
}


def describe_failure(error: LedgerError) -> str:
    """Front-end message for a failure, marking transient ones as retryable"""
    if error.retryable:
        return f"{error.user_message} (temporary problem)"
    return error.user_message
