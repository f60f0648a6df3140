"""
RandomnessRequest record and its lifecycle states.

    CREATED ──submit──▶ AWAITING_FULFILLMENT ──fulfill──▶ FULFILLED
                                         └────sweep────▶ EXPIRED

Records are immutable; every transition returns a new version with
`version` bumped. Invariants enforced at construction:
- random_value is set iff state is FULFILLED
- commitment is a 32-byte hex value
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from enum import Enum
from typing import Any, Dict, Optional

from ..errors import InvalidTransition


class RequestState(str, Enum):
    CREATED = "created"
    AWAITING_FULFILLMENT = "awaiting_fulfillment"
    FULFILLED = "fulfilled"
    EXPIRED = "expired"


_ALLOWED = {
    RequestState.CREATED: {RequestState.AWAITING_FULFILLMENT},
    RequestState.AWAITING_FULFILLMENT: {RequestState.FULFILLED, RequestState.EXPIRED},
    RequestState.FULFILLED: set(),
    RequestState.EXPIRED: set(),
}


@dataclass(frozen=True, slots=True)
class RandomnessRequest:
    id: str
    requester: str
    commitment: str
    handle: int
    game_category: str = ""
    game_variant: str = ""
    stake: int = 0
    state: RequestState = RequestState.CREATED
    sequence_number: Optional[int] = None
    tx_ref: Optional[str] = None
    fee: Optional[int] = None
    random_value: Optional[str] = None
    revealed_seed: Optional[str] = None
    provider_value: Optional[str] = None
    under_review: bool = False
    review_reason: Optional[str] = None
    created_at: float = 0.0
    submitted_at: Optional[float] = None
    fulfilled_at: Optional[float] = None
    expired_at: Optional[float] = None
    version: int = 1

    def __post_init__(self) -> None:
        if len(self.commitment) != 66 or not self.commitment.startswith("0x"):
            raise ValueError("commitment must be 0x-prefixed 32-byte hex")
        if bool(self.random_value) != (self.state is RequestState.FULFILLED):
            raise ValueError("random_value must be set iff the request is fulfilled")
        if self.sequence_number is not None and self.sequence_number <= 0:
            raise ValueError("sequence_number must be positive once assigned")

    # ---- transitions ----

    def _to(self, target: RequestState, **changes: Any) -> "RandomnessRequest":
        if target not in _ALLOWED[self.state]:
            raise InvalidTransition(subject=self.id, current=self.state.value, target=target.value)
        return replace(self, state=target, version=self.version + 1, **changes)

    def awaiting(self, *, fee: int, at: float, sequence_number: Optional[int], tx_ref: Optional[str]) -> "RandomnessRequest":
        return self._to(
            RequestState.AWAITING_FULFILLMENT,
            fee=int(fee),
            submitted_at=at,
            sequence_number=sequence_number or None,
            tx_ref=tx_ref,
        )

    def fulfilled(self, *, random_value: bytes, seed: bytes, provider_value: bytes, at: float) -> "RandomnessRequest":
        return self._to(
            RequestState.FULFILLED,
            random_value="0x" + bytes(random_value).hex(),
            revealed_seed="0x" + bytes(seed).hex(),
            provider_value="0x" + bytes(provider_value).hex(),
            fulfilled_at=at,
        )

    def expired(self, *, at: float) -> "RandomnessRequest":
        return self._to(RequestState.EXPIRED, expired_at=at)

    def with_sequence(self, sequence_number: int) -> "RandomnessRequest":
        if self.sequence_number is not None and self.sequence_number != sequence_number:
            raise InvalidTransition(
                subject=self.id,
                current=f"sequence={self.sequence_number}",
                target=f"sequence={sequence_number}",
                message="sequence number is already assigned",
            )
        return replace(self, sequence_number=int(sequence_number), version=self.version + 1)

    def flagged(self, reason: str) -> "RandomnessRequest":
        return replace(self, under_review=True, review_reason=reason, version=self.version + 1)

    def cleared(self) -> "RandomnessRequest":
        return replace(self, under_review=False, review_reason=None, version=self.version + 1)

    # ---- views ----

    @property
    def awaiting_since(self) -> float:
        return self.submitted_at if self.submitted_at is not None else self.created_at

    def front_end_view(self, explorer_link: Optional[str] = None) -> Dict[str, Any]:
        return {
            "requestId": self.id,
            "sequenceNumber": self.sequence_number,
            "randomValue": self.random_value,
            "txRef": self.tx_ref,
            "explorerLink": explorer_link,
        }

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["state"] = self.state.value
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "RandomnessRequest":
        data = dict(d)
        data["state"] = RequestState(data.get("state", RequestState.CREATED.value))
        return cls(**data)


__all__ = ["RequestState", "RandomnessRequest"]
