from typing import Final
from enum import StrEnum
from decimal import Decimal

DROPS_PER_XRP: Final = 1_000_000
XRP_QUANTUM: Final = Decimal("0.000001")

# NetworkID must be present on transactions for networks above this id
NETWORK_ID_FIELD_THRESHOLD: Final = 1024

DEFAULT_BATCH_SIZE = 5
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 1.0
RPC_TIMEOUT = 2.0
SUBMIT_TIMEOUT = 20
HORIZON = 20  # LastLedgerSequence = current ledger + HORIZON
ACCOUNT_RESERVE_DROPS = 1_000_000


class TransferKind(StrEnum):
    NATIVE = "native"
    TOKEN  = "token"


class PayoutMode(StrEnum):
    FIXED = "fixed"
    SPLIT = "split"


class SessionState(StrEnum):
    RUNNING = "running"
    DONE    = "done"
    FAILED  = "failed"


DEFAULT_FEE_DROPS: Final = {
    TransferKind.NATIVE: 12,
    TransferKind.TOKEN: 20,
}

# Error codes that mean the node itself is unusable rather than the request being wrong.
TRANSPORT_ERRORS: Final = frozenset({
    "amendmentBlocked",
    "noClosed",
    "noCurrent",
    "noNetwork",
    "slowDown",
    "tooBusy",
})

# Engine result prefixes that mean the submission was taken by the network.
ACCEPTED_RESULTS: Final = ("tes", "ter", "tec")

# A resubmitted blob the node has already applied.
ALREADY_APPLIED: Final = "tefALREADY"

__all__ = [
    "ACCEPTED_RESULTS",
    "ACCOUNT_RESERVE_DROPS",
    "ALREADY_APPLIED",
    "DEFAULT_BASE_DELAY",
    "DEFAULT_BATCH_SIZE",
    "DEFAULT_FEE_DROPS",
    "DEFAULT_MAX_ATTEMPTS",
    "DROPS_PER_XRP",
    "HORIZON",
    "NETWORK_ID_FIELD_THRESHOLD",
    "RPC_TIMEOUT",
    "SUBMIT_TIMEOUT",
    "TRANSPORT_ERRORS",
    "XRP_QUANTUM",

    ######
    "PayoutMode",
    "SessionState",
    "TransferKind",
]
