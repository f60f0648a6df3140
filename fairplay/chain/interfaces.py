"""
Collaborator interfaces (typing Protocols) for the chain, the randomness
provider, the subscription registry and the treasury transfer path.

Concrete EVM implementations live in `fairplay.chain.evm`; tests supply
in-memory fakes. All methods are coroutines and may raise
`fairplay.errors.TransientError` subclasses on transport trouble.
"""

from __future__ import annotations

from typing import List, Optional, Protocol, Sequence

from .types import CreateResult, LogEntry, Receipt, SubmitResponse, SubscriptionInfo


class ChainReader(Protocol):
    async def get_balance(self, account: str) -> int: ...

    async def token_balance(self, token: str, account: str) -> int: ...

    async def get_transaction_receipt(self, tx_ref: str) -> Optional[Receipt]: ...

    async def simulate_call(
        self,
        target: str,
        data: str,
        *,
        block_ref: Optional[int] = None,
        sender: Optional[str] = None,
    ) -> str:
        """Read-only call; returns the raw 0x-hex return data."""
        ...

    async def get_logs(
        self,
        address: str,
        topics: Sequence[Optional[str]],
        from_block: int,
        to_block: int,
    ) -> List[LogEntry]: ...

    async def block_number(self) -> int: ...


class RandomnessProvider(Protocol):
    async def quote_fee(self, handle: int) -> int: ...

    async def submit(self, handle: int, request_id: str, commitment: bytes) -> SubmitResponse: ...


class SubscriptionRegistry(Protocol):
    async def create_subscription(self, owner: str) -> CreateResult: ...

    async def get_subscription(self, handle: int) -> Optional[SubscriptionInfo]: ...

    async def fund(self, handle: int, amount: int, caller: str, currency: str) -> str: ...

    async def add_consumer(self, handle: int, consumer: str, caller: str) -> str: ...

    async def remove_consumer(self, handle: int, consumer: str, caller: str) -> str: ...

    async def set_consumer_handle(self, consumer_contract: str, handle: int) -> str:
        """Push `handle` into the consuming contract (updateSubscriptionId)."""
        ...


class TransferSender(Protocol):
    async def transfer(self, to: str, amount: int, *, gas_limit: int) -> str:
        """Dispatch a native transfer from the treasury; returns the tx hash."""
        ...


__all__ = [
    "ChainReader",
    "RandomnessProvider",
    "SubscriptionRegistry",
    "TransferSender",
]
