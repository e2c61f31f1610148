"""Points ledger synchronization.

Keeps one user's points balance and captcha counters in step between a
local device cache and the authoritative remote document store:

- SessionProvider: reactive identity source
- LedgerSynchronizer: load / bootstrap / error state machine
- operations: add_points, increment_captchas_solved, withdraw_points
"""

from .errors import (
    FetchFailure,
    InsufficientBalance,
    LedgerError,
    MalformedRecord,
    NotAuthenticated,
    StoreError,
    WriteFailure,
)
from .models import LedgerPatch, UserLedger, default_ledger, parse_ledger
from .session import LedgerSession, SessionProvider, SessionState
from .synchronizer import LedgerSynchronizer, LedgerView, SyncState

__all__ = [
    "FetchFailure",
    "InsufficientBalance",
    "LedgerError",
    "LedgerPatch",
    "LedgerSession",
    "LedgerSynchronizer",
    "LedgerView",
    "MalformedRecord",
    "NotAuthenticated",
    "SessionProvider",
    "SessionState",
    "StoreError",
    "SyncState",
    "UserLedger",
    "WriteFailure",
    "default_ledger",
    "parse_ledger",
]
