"""Dispersal data structures.

Everything here is immutable once built; sessions pass these values between
components instead of sharing mutable state.
"""

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_DOWN
from typing import Any

from xrpl.models.amounts import IssuedCurrencyAmount
from xrpl.models.transactions import Payment
from xrpl.utils import xrp_to_drops

from disperse.constants import DEFAULT_FEE_DROPS, HORIZON, XRP_QUANTUM, PayoutMode, TransferKind


@dataclass(frozen=True, slots=True)
class ChainDescriptor:
    name: str
    network_id: int
    symbol: str
    endpoints: tuple[str, ...]
    explorer: str | None = None

    @classmethod
    def from_dict(cls, d: dict) -> "ChainDescriptor":
        return cls(
            name=d["name"],
            network_id=int(d["network_id"]),
            symbol=d.get("symbol", "XRP"),
            endpoints=tuple(d["endpoints"]),
            explorer=d.get("explorer"),
        )

    def tx_link(self, tx_hash: str) -> str:
        if not self.explorer:
            return tx_hash
        if "{hash}" in self.explorer:
            return self.explorer.format(hash=tx_hash)
        return f"{self.explorer}{tx_hash}"


@dataclass(frozen=True, slots=True)
class Asset:
    """XRP when ``currency`` is None, otherwise an issued currency."""

    currency: str | None = None
    issuer: str | None = None
    quantum: Decimal = XRP_QUANTUM

    def __post_init__(self) -> None:
        if (self.currency is None) != (self.issuer is None):
            raise ValueError("issued currencies need both currency and issuer")
        if self.quantum <= 0:
            raise ValueError("quantum must be positive")

    @classmethod
    def native(cls) -> "Asset":
        return cls()

    @classmethod
    def token(cls, currency: str, issuer: str, quantum: Decimal = XRP_QUANTUM) -> "Asset":
        return cls(currency=currency, issuer=issuer, quantum=quantum)

    @classmethod
    def parse(cls, spec: str | None, quantum: Decimal = XRP_QUANTUM) -> "Asset":
        """Parse ``CUR:ISSUER`` (or None for XRP)."""
        if not spec:
            return cls.native()
        currency, sep, issuer = spec.partition(":")
        if not sep or not currency or not issuer:
            raise ValueError(f"token must look like CUR:ISSUER, got {spec!r}")
        return cls.token(currency, issuer, quantum)

    @property
    def is_native(self) -> bool:
        return self.currency is None

    @property
    def kind(self) -> TransferKind:
        return TransferKind.NATIVE if self.is_native else TransferKind.TOKEN

    def symbol(self, chain: ChainDescriptor | None = None) -> str:
        if self.is_native:
            return chain.symbol if chain else "XRP"
        return self.currency

    def quantize(self, value: Decimal) -> Decimal:
        return value.quantize(self.quantum, rounding=ROUND_DOWN)

    def to_amount(self, value: Decimal) -> str | IssuedCurrencyAmount:
        if self.is_native:
            return xrp_to_drops(value)
        return IssuedCurrencyAmount(currency=self.currency, issuer=self.issuer, value=format(value.normalize(), "f"))


@dataclass(frozen=True, slots=True)
class FeeParams:
    fee_drops: int
    ledger_horizon: int = HORIZON

    def __post_init__(self) -> None:
        if self.fee_drops <= 0:
            raise ValueError("fee_drops must be positive")
        if self.ledger_horizon <= 0:
            raise ValueError("ledger_horizon must be positive")

    @classmethod
    def default_for(cls, kind: TransferKind, ledger_horizon: int = HORIZON) -> "FeeParams":
        return cls(fee_drops=DEFAULT_FEE_DROPS[kind], ledger_horizon=ledger_horizon)


@dataclass(frozen=True, slots=True)
class Payout:
    amount: Decimal  # per recipient
    recipients: int
    balance: Decimal  # observed when the payout was computed
    mode: PayoutMode

    @property
    def total(self) -> Decimal:
        return self.amount * self.recipients


@dataclass(frozen=True, slots=True)
class TransactionIntent:
    position: int  # 1-based index in the recipient list
    recipient: str
    payment: Payment
    sequence: int
    fee: FeeParams
    signed_blob: str
    tx_hash: str


@dataclass(frozen=True, slots=True)
class Success:
    position: int
    recipient: str
    sequence: int
    tx_hash: str
    attempts: int
    engine_result: str | None = None

    ok = True


@dataclass(frozen=True, slots=True)
class Failure:
    position: int
    recipient: str
    sequence: int | None  # None when the batch never got sequences
    reason: str
    code: str | None
    attempts: int

    ok = False


Outcome = Success | Failure


@dataclass(frozen=True, slots=True)
class ValidationEvent:
    url: str
    ok: bool
    error: str | None = None


@dataclass(frozen=True, slots=True)
class SessionSummary:
    network: str
    network_id: int
    sender: str
    symbol: str
    amount: Decimal
    recipients: int
    successes: int
    failures: tuple[Failure, ...] = field(default_factory=tuple)
    aborted: bool = False

    @property
    def attempted(self) -> int:
        return self.successes + len(self.failures)

    @property
    def total_committed(self) -> Decimal:
        return self.amount * self.successes

    @property
    def success_rate(self) -> float:
        if not self.attempted:
            return 0.0
        return 100 * self.successes / self.attempted

    def to_dict(self) -> dict[str, Any]:
        return {
            "network": self.network,
            "network_id": self.network_id,
            "sender": self.sender,
            "symbol": self.symbol,
            "amount": str(self.amount),
            "recipients": self.recipients,
            "successes": self.successes,
            "failures": [
                {
                    "position": f.position,
                    "recipient": f.recipient,
                    "sequence": f.sequence,
                    "reason": f.reason,
                    "code": f.code,
                    "attempts": f.attempts,
                }
                for f in self.failures
            ],
            "total_committed": str(self.total_committed),
            "success_rate": round(self.success_rate, 2),
            "aborted": self.aborted,
        }
