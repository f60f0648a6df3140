"""
Treasury ledger entries.

Amounts are integer base units. The sign of an entry's effect on an account
balance comes from its kind:

  DEPOSIT       +   funds received into the treasury for the account
  WITHDRAWAL    -   funds sent out of the treasury to the account's wallet
  STAKE         -   stake captured by a settled game
  PAYOUT        +   payout credited by a settled game
  COMPENSATION  ±   reversal of a confirmed entry; carries its own sign

Entries move PENDING → CONFIRMED | FAILED and are immutable afterwards.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from enum import Enum
from typing import Any, Dict, Optional

from ..errors import InvalidTransition


class EntryKind(str, Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    STAKE = "stake"
    PAYOUT = "payout"
    COMPENSATION = "compensation"


class EntryStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


_DEBIT_KINDS = {EntryKind.WITHDRAWAL, EntryKind.STAKE}


@dataclass(frozen=True, slots=True)
class TreasuryEntry:
    id: str
    kind: EntryKind
    account: str
    amount: int
    status: EntryStatus = EntryStatus.PENDING
    tx_ref: Optional[str] = None
    reference: Optional[str] = None
    note: str = ""
    timestamp: float = 0.0
    settled_at: Optional[float] = None
    # compensation entries only: -1 reverses a credit, +1 reverses a debit
    direction: int = 0

    def __post_init__(self) -> None:
        if self.amount < 0:
            raise ValueError("amount must be non-negative")
        if self.kind is EntryKind.COMPENSATION and self.direction not in (-1, 1):
            raise ValueError("compensation entries need direction -1 or +1")

    @property
    def final(self) -> bool:
        return self.status is not EntryStatus.PENDING

    @property
    def is_debit(self) -> bool:
        if self.kind is EntryKind.COMPENSATION:
            return self.direction < 0
        return self.kind in _DEBIT_KINDS

    @property
    def signed_amount(self) -> int:
        return -self.amount if self.is_debit else self.amount

    def _settle(self, status: EntryStatus, at: float, **changes: Any) -> "TreasuryEntry":
        if self.final:
            raise InvalidTransition(
                subject=self.id,
                current=self.status.value,
                target=status.value,
                message="treasury entries are immutable once settled",
            )
        return replace(self, status=status, settled_at=at, **changes)

    def confirmed(self, at: float, tx_ref: Optional[str] = None) -> "TreasuryEntry":
        return self._settle(EntryStatus.CONFIRMED, at, tx_ref=tx_ref or self.tx_ref)

    def failed(self, at: float, reason: str) -> "TreasuryEntry":
        return self._settle(EntryStatus.FAILED, at, note=reason)

    def dispatched(self, tx_ref: str) -> "TreasuryEntry":
        """Attach the outbound transaction reference to a pending entry."""
        if self.final or self.tx_ref is not None:
            raise InvalidTransition(subject=self.id, current=self.status.value, target="dispatched")
        return replace(self, tx_ref=tx_ref)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["kind"] = self.kind.value
        d["status"] = self.status.value
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "TreasuryEntry":
        data = dict(d)
        data["kind"] = EntryKind(data["kind"])
        data["status"] = EntryStatus(data["status"])
        return cls(**data)


@dataclass(frozen=True, slots=True)
class AuditReport:
    """Treasury-wide comparison of ledger liabilities against the live balance."""
    liabilities: int
    in_flight: int
    live_balance: int

    @property
    def consistent(self) -> bool:
        return 0 <= self.liabilities <= self.live_balance + self.in_flight

    def to_dict(self) -> Dict[str, Any]:
        return {
            "liabilities": self.liabilities,
            "inFlight": self.in_flight,
            "liveBalance": self.live_balance,
            "consistent": self.consistent,
        }


__all__ = ["EntryKind", "EntryStatus", "TreasuryEntry", "AuditReport"]
