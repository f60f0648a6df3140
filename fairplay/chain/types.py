"""
Plain records exchanged with the chain and provider collaborators.

Hex conventions: addresses, hashes and topics are 0x-prefixed lowercase
strings; amounts are integers in base units (wei or token units).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple


def norm_hex(value: str) -> str:
    v = (value or "").strip().lower()
    return v if v.startswith("0x") else "0x" + v


@dataclass(frozen=True, slots=True)
class LogEntry:
    address: str
    topics: Tuple[str, ...]
    data: str = "0x"
    block_number: Optional[int] = None
    tx_hash: Optional[str] = None

    @classmethod
    def from_rpc(cls, raw: Mapping[str, Any]) -> "LogEntry":
        bn = raw.get("blockNumber")
        return cls(
            address=norm_hex(str(raw.get("address", ""))),
            topics=tuple(norm_hex(str(t)) for t in raw.get("topics") or ()),
            data=norm_hex(str(raw.get("data") or "0x")),
            block_number=int(bn, 16) if isinstance(bn, str) else bn,
            tx_hash=norm_hex(raw["transactionHash"]) if raw.get("transactionHash") else None,
        )


@dataclass(frozen=True, slots=True)
class Receipt:
    tx_hash: str
    status: int
    block_number: int
    logs: Tuple[LogEntry, ...] = ()
    sender: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == 1

    @classmethod
    def from_rpc(cls, raw: Mapping[str, Any]) -> "Receipt":
        def _int(v: Any) -> int:
            if isinstance(v, str):
                return int(v, 16) if v.startswith("0x") else int(v)
            return int(v or 0)

        return cls(
            tx_hash=norm_hex(str(raw.get("transactionHash", ""))),
            status=_int(raw.get("status")),
            block_number=_int(raw.get("blockNumber")),
            logs=tuple(LogEntry.from_rpc(l) for l in raw.get("logs") or ()),
            sender=norm_hex(raw["from"]) if raw.get("from") else None,
        )


@dataclass(frozen=True, slots=True)
class SubscriptionInfo:
    """On-chain view of a subscription record."""
    handle: int
    owner: str
    balance: int
    native_balance: int = 0
    request_count: int = 0
    consumers: FrozenSet[str] = field(default_factory=frozenset)


@dataclass(frozen=True, slots=True)
class CreateResult:
    """Outcome of a createSubscription transaction. `handle` is None when unreadable."""
    tx_ref: str
    handle: Optional[int] = None


@dataclass(frozen=True, slots=True)
class SubmitResponse:
    """
    Provider response to a request submission.

    `sequence_number` is None when the submission was dispatched but its
    return value could not be decoded.
    """
    tx_ref: Optional[str]
    sequence_number: Optional[int] = None
    raw: Optional[Dict[str, Any]] = None


__all__ = [
    "norm_hex",
    "LogEntry",
    "Receipt",
    "SubscriptionInfo",
    "CreateResult",
    "SubmitResponse",
]
