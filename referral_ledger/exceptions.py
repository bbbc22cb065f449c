"""
Ledger Exceptions

All errors raised by the ledger, account, stats and webhook layers derive
from LedgerServiceError so callers can catch the whole family at once.
"""

from typing import Optional


class LedgerServiceError(Exception):
    pass


class NotFoundError(LedgerServiceError):
    pass


class ReferrerNotFoundError(NotFoundError):
    pass


class ReferralNotFoundError(NotFoundError):
    pass


class AccountNotFoundError(NotFoundError):
    pass


class ConflictError(LedgerServiceError):
    pass


class SelfReferralError(ConflictError):
    pass


class AlreadyReferredError(ConflictError):
    pass


class AlreadyProcessedError(ConflictError):
    """Raised when a payment event has already been applied to the ledger."""
    pass


class AlreadyRefundedError(ConflictError):
    pass


class InvalidStateTransitionError(ConflictError):
    pass


class CustomCodeTakenError(ConflictError):
    pass


class DuplicateAccountError(ConflictError):
    pass


class ValidationError(LedgerServiceError):
    pass


class InvalidReferralCodeError(ValidationError):
    pass


class OutOfRangeError(LedgerServiceError):
    pass


class AmountOutOfRangeError(OutOfRangeError):
    pass


class InsufficientBalanceError(LedgerServiceError):
    pass


class AccountNotConnectedError(LedgerServiceError):
    pass


class UpstreamProviderError(LedgerServiceError):
    """Payment provider call failed. Carries the provider's HTTP status and error code."""

    def __init__(self, message: str, status: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.code = code


class DuplicateKeyError(LedgerServiceError):
    """Raised by the store when a write would violate a unique index."""

    def __init__(self, field: str, value):
        super().__init__(f"Duplicate value for unique field {field}: {value}")
        self.field = field
        self.value = value
