"""
Subscription Manager: lifecycle of the funding resource requests are paid from.

    manager = SubscriptionManager(registry, chain, resolver, consumer_address=cfg.consumer_address)
    handle = await manager.create(owner)           # resolves handle, syncs consumer contract
    await manager.fund(handle, 10**17, caller=owner)
    await manager.add_consumer(handle, cfg.consumer_address, caller=owner)

Balance mutation happens only through `fund` (credit) and `escrow_fee`
(debit at request submission). `refresh` re-reads the on-chain record.

Registry transactions that fail transiently are retried with bounded
exponential backoff; ownership mismatches raise NotResourceOwner and are
never retried. `create` itself is not retried: a second createSubscription
would open a second resource.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Awaitable, Callable, Dict, Optional

from ..chain.interfaces import ChainReader, SubscriptionRegistry
from ..chain.receipts import wait_for_receipt
from ..chain.types import norm_hex
from ..errors import (
    ConsumerNotRegistered,
    InsufficientCallerBalance,
    InsufficientResourceBalance,
    InvalidAmount,
    NotResourceOwner,
    RejectedError,
    RpcCallError,
    TransientError,
    UnknownResource,
)
from ..resolver.handles import HandleResolver
from ..retry import RetryPolicy, aretry_call
from ..store import KeyValue, decode_record, encode_record
from .types import FundingResource

log = logging.getLogger(__name__)

_PREFIX = b"sub:"


def _key(handle: int) -> bytes:
    return _PREFIX + f"{int(handle):064x}".encode("ascii")


class SubscriptionManager:
    def __init__(
        self,
        registry: SubscriptionRegistry,
        chain: ChainReader,
        resolver: HandleResolver,
        *,
        consumer_address: str,
        fee_currency: str = "native",
        fee_token_address: Optional[str] = None,
        policy: Optional[RetryPolicy] = None,
        store: Optional[KeyValue] = None,
        timeout_s: float = 30.0,
        receipt_timeout_s: float = 120.0,
    ) -> None:
        self.registry = registry
        self.chain = chain
        self.resolver = resolver
        self.consumer_address = norm_hex(consumer_address)
        self.fee_currency = fee_currency
        self.fee_token_address = fee_token_address
        self.policy = policy or RetryPolicy()
        self.store = store
        self.timeout_s = float(timeout_s)
        self.receipt_timeout_s = float(receipt_timeout_s)
        self._lock = threading.RLock()
        self._resources: Dict[int, FundingResource] = {}
        self.active_handle: Optional[int] = None
        self._load()

    # ---- persistence ----

    def _load(self) -> None:
        if self.store is None:
            return
        for _, raw in self.store.iter_prefix(_PREFIX):
            res = FundingResource.from_dict(decode_record(raw))
            self._resources[res.handle] = res

    def _save(self, res: FundingResource) -> FundingResource:
        with self._lock:
            self._resources[res.handle] = res
            if self.store is not None:
                self.store.put(_key(res.handle), encode_record(res.to_dict()))
        return res

    # ---- queries ----

    def get(self, handle: int) -> FundingResource:
        res = self._resources.get(int(handle))
        if res is None:
            raise UnknownResource(handle=int(handle))
        return res

    def known_handles(self) -> list:
        return sorted(self._resources)

    async def refresh(self, handle: int) -> FundingResource:
        """Re-read the on-chain record for `handle` and replace the cached view."""
        info = await asyncio.wait_for(self.registry.get_subscription(int(handle)), timeout=self.timeout_s)
        if info is None:
            raise UnknownResource(handle=int(handle), message="subscription not found on chain")
        return self._save(FundingResource.from_info(info, self.fee_currency))

    # ---- lifecycle ----

    async def create(self, owner: str) -> int:
        created = await asyncio.wait_for(self.registry.create_subscription(owner), timeout=self.timeout_s)
        handle = created.handle
        if handle is None:
            receipt = await wait_for_receipt(self.chain, created.tx_ref, timeout_s=self.receipt_timeout_s)
            if not receipt.succeeded:
                raise RpcCallError("createSubscription reverted", details={"tx_ref": created.tx_ref})
            handle = await self.resolver.resolve(receipt, owner, exclude=set(self._resources))
        if not handle:
            raise RejectedError("registry returned an invalid handle", details={"tx_ref": created.tx_ref})

        try:
            info = await asyncio.wait_for(self.registry.get_subscription(handle), timeout=self.timeout_s)
        except (asyncio.TimeoutError, TransientError):
            info = None
        res = FundingResource.from_info(info, self.fee_currency) if info is not None else FundingResource(handle=handle, owner=norm_hex(owner))
        self._save(res)
        log.info("subscription %d created for %s (tx=%s)", handle, owner, created.tx_ref)

        await self.sync_consuming_contract(handle)
        return handle

    async def fund(self, handle: int, amount: int, caller: str, currency: Optional[str] = None) -> str:
        if int(amount) <= 0:
            raise InvalidAmount(amount=int(amount))
        self.get(handle)
        cur = currency or self.fee_currency

        if cur == "token":
            if not self.fee_token_address:
                raise RejectedError("token funding requires a fee token address")
            available = await aretry_call(
                self._bounded,
                self.chain.token_balance,
                self.fee_token_address,
                caller,
                policy=self.policy,
                op="token_balance",
            )
        else:
            available = await aretry_call(
                self._bounded, self.chain.get_balance, caller, policy=self.policy, op="get_balance"
            )
        if available < int(amount):
            raise InsufficientCallerBalance(required=int(amount), available=int(available), details={"caller": caller})

        tx_ref = await aretry_call(
            self._bounded, self.registry.fund, int(handle), int(amount), caller, cur, policy=self.policy, op="fund"
        )
        with self._lock:
            res = self.get(handle)
            self._save(res.credited(int(amount)))
        log.info("subscription %d funded with %d (%s) by %s tx=%s", handle, amount, cur, caller, tx_ref)
        return tx_ref

    async def _bounded(self, fn: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        return await asyncio.wait_for(fn(*args), timeout=self.timeout_s)

    def _require_owner(self, res: FundingResource, caller: str) -> None:
        if norm_hex(caller) != norm_hex(res.owner):
            log.error("ownership mismatch on subscription %d: caller=%s owner=%s", res.handle, caller, res.owner)
            raise NotResourceOwner(handle=res.handle, caller=caller, owner=res.owner)

    async def add_consumer(self, handle: int, consumer: str, caller: str) -> Optional[str]:
        """Register `consumer`; already-present consumers are a no-op returning None."""
        res = self.get(handle)
        self._require_owner(res, caller)
        if res.has_consumer(consumer):
            log.debug("consumer %s already registered on %d", consumer, handle)
            return None
        tx_ref = await aretry_call(
            self._bounded,
            self.registry.add_consumer,
            int(handle),
            consumer,
            caller,
            policy=self.policy,
            op="add_consumer",
        )
        with self._lock:
            self._save(self.get(handle).with_consumer(consumer))
        log.info("consumer %s added to subscription %d", consumer, handle)
        return tx_ref

    async def remove_consumer(self, handle: int, consumer: str, caller: str) -> Optional[str]:
        res = self.get(handle)
        self._require_owner(res, caller)
        if not res.has_consumer(consumer):
            return None
        tx_ref = await aretry_call(
            self._bounded,
            self.registry.remove_consumer,
            int(handle),
            consumer,
            caller,
            policy=self.policy,
            op="remove_consumer",
        )
        with self._lock:
            self._save(self.get(handle).without_consumer(consumer))
        log.info("consumer %s removed from subscription %d", consumer, handle)
        return tx_ref

    async def sync_consuming_contract(self, handle: int) -> str:
        """Push `handle` to the consuming contract; re-run whenever `create` assigns a new handle."""
        self.get(handle)
        tx_ref = await aretry_call(
            self._bounded,
            self.registry.set_consumer_handle,
            self.consumer_address,
            int(handle),
            policy=self.policy,
            op="set_consumer_handle",
        )
        self.active_handle = int(handle)
        log.info("consumer contract %s now uses subscription %d (tx=%s)", self.consumer_address, handle, tx_ref)
        return tx_ref

    # ---- fee escrow ----

    def escrow_fee(self, handle: int, consumer: str, fee: int) -> FundingResource:
        """
        Reserve `fee` against the subscription for a request from `consumer`.

        Raises ConsumerNotRegistered / InsufficientResourceBalance and leaves
        the balance untouched on rejection.
        """
        with self._lock:
            res = self.get(handle)
            if not res.has_consumer(consumer):
                raise ConsumerNotRegistered(handle=res.handle, consumer=consumer)
            if res.balance < int(fee):
                raise InsufficientResourceBalance(
                    required=int(fee), available=res.balance, details={"handle": res.handle}
                )
            return self._save(res.debited(int(fee)))

    def release_fee(self, handle: int, fee: int) -> FundingResource:
        """Undo an escrow whose submission the provider rejected outright."""
        with self._lock:
            res = self.get(handle)
            log.info("fee %d released back to subscription %d", fee, handle)
            return self._save(res.credited(int(fee)))


__all__ = ["SubscriptionManager"]
