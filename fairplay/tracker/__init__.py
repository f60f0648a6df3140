"""
Randomness request lifecycle: CREATED → AWAITING_FULFILLMENT → FULFILLED | EXPIRED.
"""

from .locks import KeyedLocks
from .store import RequestStore
from .tracker import AlertHook, FeeEscrow, RequestTracker
from .types import RandomnessRequest, RequestState

__all__ = [
    "KeyedLocks",
    "RequestStore",
    "RequestTracker",
    "FeeEscrow",
    "AlertHook",
    "RandomnessRequest",
    "RequestState",
]
