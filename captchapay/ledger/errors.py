"""Failure taxonomy for ledger synchronization.

Every LedgerError carries the human-readable message that the
synchronizer publishes through its ``error`` field.
"""

from __future__ import annotations


class StoreError(Exception):
    """Raised by RemoteStore / DeviceCache implementations on I/O failure."""


class LedgerError(Exception):
    """Base class for failures surfaced through the synchronizer."""

    message = "Ledger error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.message)

    @property
    def user_message(self) -> str:
        return str(self)


class FetchFailure(LedgerError):
    """Authoritative read of the ledger failed."""

    message = "Failed to load user data"


class MalformedRecord(FetchFailure):
    """A stored record did not match the UserLedger shape."""

    def __init__(self, detail: str):
        super().__init__(FetchFailure.message)
        self.detail = detail


class WriteFailure(LedgerError):
    """Remote update failed after an optimistic local mutation."""

    message = "Failed to update user data"


class InsufficientBalance(LedgerError):
    """Withdrawal amount exceeds the current balance. No write is attempted."""

    message = "Insufficient points"

    def __init__(self, requested: int, available: int):
        super().__init__()
        self.requested = requested
        self.available = available


class NotAuthenticated(LedgerError):
    """Operation invoked without an active identity or loaded ledger."""

    message = "Not authenticated"


__all__ = [
    "FetchFailure",
    "InsufficientBalance",
    "LedgerError",
    "MalformedRecord",
    "NotAuthenticated",
    "StoreError",
    "WriteFailure",
]
