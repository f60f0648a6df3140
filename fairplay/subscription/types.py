"""
FundingResource: the subscription-style handle requests are paid from.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, FrozenSet

from ..chain.types import SubscriptionInfo, norm_hex


@dataclass(frozen=True, slots=True)
class FundingResource:
    handle: int
    owner: str
    balance: int = 0
    consumers: FrozenSet[str] = field(default_factory=frozenset)

    def has_consumer(self, consumer: str) -> bool:
        return norm_hex(consumer) in self.consumers

    def with_consumer(self, consumer: str) -> "FundingResource":
        return replace(self, consumers=self.consumers | {norm_hex(consumer)})

    def without_consumer(self, consumer: str) -> "FundingResource":
        return replace(self, consumers=self.consumers - {norm_hex(consumer)})

    def credited(self, amount: int) -> "FundingResource":
        return replace(self, balance=self.balance + int(amount))

    def debited(self, amount: int) -> "FundingResource":
        if int(amount) > self.balance:
            raise ValueError("debit exceeds balance")
        return replace(self, balance=self.balance - int(amount))

    @classmethod
    def from_info(cls, info: SubscriptionInfo, currency: str = "native") -> "FundingResource":
        """Cached view of an on-chain record; `balance` is the one in the fee currency."""
        return cls(
            handle=int(info.handle),
            owner=norm_hex(info.owner),
            balance=int(info.native_balance if currency == "native" else info.balance),
            consumers=frozenset(norm_hex(c) for c in info.consumers),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "handle": self.handle,
            "owner": self.owner,
            "balance": self.balance,
            "consumers": sorted(self.consumers),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "FundingResource":
        return cls(
            handle=int(d["handle"]),
            owner=norm_hex(d["owner"]),
            balance=int(d.get("balance", 0)),
            consumers=frozenset(norm_hex(c) for c in d.get("consumers", ())),
        )


__all__ = ["FundingResource"]
