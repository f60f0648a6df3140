"""
Game outcome helpers.

The coordinator knows nothing about individual games: an `OutcomeEvaluator`
turns a fulfilled random value and the stake into a payout. `MultiplierTable`
is a generic weighted-bucket evaluator; `uniform_int` draws an unbiased
integer from a random value.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol, Sequence, Tuple

BPS = 10_000


def uniform_int(random_value: bytes, bound: int) -> int:
    """
    Uniform integer in [0, bound) derived from `random_value`.

    Values falling in the biased tail of the modulo are rejected and the
    input is re-hashed with a counter until one lands in range.
    """
    if bound <= 0:
        raise ValueError("bound must be positive")
    if not random_value:
        raise ValueError("random_value must be non-empty")
    width = len(random_value) * 8
    limit = (1 << width) - ((1 << width) % bound)
    block = bytes(random_value)
    counter = 0
    while True:
        v = int.from_bytes(block, "big")
        if v < limit:
            return v % bound
        counter += 1
        block = hashlib.sha3_256(bytes(random_value) + counter.to_bytes(4, "big")).digest()
        width = 256
        limit = (1 << width) - ((1 << width) % bound)


@dataclass(frozen=True)
class GameOutcome:
    payout: int
    multiplier_bps: int
    detail: Dict[str, Any] = field(default_factory=dict)

    @property
    def win(self) -> bool:
        return self.multiplier_bps > BPS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "payout": self.payout,
            "multiplierBps": self.multiplier_bps,
            "win": self.win,
            "detail": dict(self.detail),
        }


class OutcomeEvaluator(Protocol):
    def evaluate(self, random_value: bytes, stake: int, category: str, variant: str) -> GameOutcome: ...


class MultiplierTable:
    """
    Weighted buckets mapped to payout multipliers (basis points).

        table = MultiplierTable([(49, 20_000), (51, 0)])   # double or nothing
        outcome = table.evaluate(rv, stake=100, category="coin", variant="")

    Per-variant tables may be registered; unknown variants fall back to the
    default buckets.
    """

    def __init__(
        self,
        buckets: Sequence[Tuple[int, int]],
        variants: Optional[Dict[str, Sequence[Tuple[int, int]]]] = None,
    ) -> None:
        self.buckets = self._check(buckets)
        self.variants = {k: self._check(v) for k, v in (variants or {}).items()}

    @staticmethod
    def _check(buckets: Sequence[Tuple[int, int]]) -> Tuple[Tuple[int, int], ...]:
        out = tuple((int(w), int(m)) for w, m in buckets)
        if not out:
            raise ValueError("at least one bucket is required")
        if any(w <= 0 or m < 0 for w, m in out):
            raise ValueError("weights must be positive and multipliers non-negative")
        return out

    def evaluate(self, random_value: bytes, stake: int, category: str = "", variant: str = "") -> GameOutcome:
        buckets = self.variants.get(variant, self.buckets)
        total = sum(w for w, _ in buckets)
        draw = uniform_int(random_value, total)
        acc = 0
        for index, (weight, mult) in enumerate(buckets):
            acc += weight
            if draw < acc:
                return GameOutcome(
                    payout=int(stake) * mult // BPS,
                    multiplier_bps=mult,
                    detail={"bucket": index, "draw": draw},
                )
        raise AssertionError("unreachable: draw outside table")


__all__ = ["BPS", "uniform_int", "GameOutcome", "OutcomeEvaluator", "MultiplierTable"]
