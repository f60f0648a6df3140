"""
Fairplay: provably-fair randomness and treasury settlement.

- commit_reveal  seed commitments and verification
- resolver       subscription handle / sequence number recovery
- subscription   funding resource lifecycle
- tracker        randomness request state machine
- treasury       custodial ledger and withdrawals
- settlement     game orchestration, expiry sweep, fulfillment watcher

Only light, stable exports are surfaced here to avoid import cycles.
"""

from __future__ import annotations

from .config import FairplayConfig
from .errors import ErrorCategory, FairplayError
from .version import __version__

__all__ = ["__version__", "FairplayConfig", "FairplayError", "ErrorCategory"]
