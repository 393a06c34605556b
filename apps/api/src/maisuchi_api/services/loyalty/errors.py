"""Typed loyalty failures surfaced to API callers."""

from __future__ import annotations


class LoyaltyError(Exception):
    """Base class; `code` is the stable identifier sent to the storefront."""

    code = "loyalty_error"

    def __init__(self, message: str, **context: object) -> None:
        super().__init__(message)
        self.message = message
        self.context = context


class ValidationError(LoyaltyError):
    code = "validation_error"


class NotFoundError(ValidationError):
    code = "not_found"


class ExpiredRewardError(LoyaltyError):
    code = "reward_expired"


class InsufficientPointsError(LoyaltyError):
    code = "insufficient_points"

    def __init__(self, message: str, *, balance: int, required: int, **context: object) -> None:
        super().__init__(message, balance=balance, required=required, **context)
        self.balance = balance
        self.required = required


class DailyLimitExceededError(LoyaltyError):
    code = "daily_limit_exceeded"

    def __init__(self, message: str, *, used: int, limit: int, **context: object) -> None:
        super().__init__(message, used=used, limit=limit, **context)
        self.used = used
        self.limit = limit


class ConcurrencyConflictError(LoyaltyError):
    """A write lost an optimistic race; retrying the whole operation is safe."""

    code = "concurrency_conflict"


class DuplicateCreditError(ConcurrencyConflictError):
    """The ledger already holds a credit for this order."""

    code = "duplicate_credit"


class StorageError(LoyaltyError):
    code = "storage_error"


__all__ = [
    "ConcurrencyConflictError",
    "DailyLimitExceededError",
    "DuplicateCreditError",
    "ExpiredRewardError",
    "InsufficientPointsError",
    "LoyaltyError",
    "NotFoundError",
    "StorageError",
    "ValidationError",
]
