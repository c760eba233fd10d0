"""
Error taxonomy shared by the ledger, the budget aggregator and the sweep.

ValidationError and NotFoundError are final; ConflictError and StorageError
are retryable and callers may replay the whole write.
"""

from typing import Optional


class BudgetCoreError(Exception):
    """Base error for the budget core."""

    retryable = False

    def __init__(self, message: str, details: Optional[str] = None) -> None:
        self.message = message
        self.details = details
        super().__init__(self.message)


class ValidationError(BudgetCoreError, ValueError):
    """Malformed input rejected at a public entry point."""

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        fields: Optional[dict[str, str]] = None,
    ) -> None:
        super().__init__(message, details)
        self.fields = fields or {}


class NotFoundError(BudgetCoreError, LookupError):
    """Row missing or owned by another user."""


class ConflictError(BudgetCoreError):
    """Concurrent mutation of the same bucket."""

    retryable = True


class StorageError(BudgetCoreError):
    """Persistence unavailable or timed out."""

    retryable = True
