"""
Chain-facing layer: collaborator protocols, record types, ABI helpers and the
httpx JSON-RPC client. EVM adapters are imported from `fairplay.chain.evm`.
"""

from __future__ import annotations

from .interfaces import ChainReader, RandomnessProvider, SubscriptionRegistry, TransferSender
from .receipts import wait_for_receipt
from .types import CreateResult, LogEntry, Receipt, SubmitResponse, SubscriptionInfo, norm_hex

__all__ = [
    "ChainReader",
    "RandomnessProvider",
    "SubscriptionRegistry",
    "TransferSender",
    "wait_for_receipt",
    "CreateResult",
    "LogEntry",
    "Receipt",
    "SubmitResponse",
    "SubscriptionInfo",
    "norm_hex",
]
