"""
In-memory collaborators for the settlement layer.

FakeChain / FakeProvider / FakeRegistry / FakeSender implement the Protocols
in `fairplay.chain.interfaces`; the `env` fixture wires a full stack around
them with a controllable clock and a zero-delay retry policy.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import pytest

from fairplay.chain.abi import event_topic
from fairplay.chain.types import CreateResult, LogEntry, Receipt, SubmitResponse, SubscriptionInfo, norm_hex
from fairplay.config import FairplayConfig
from fairplay.constants import EVENT_RANDOMNESS_REQUESTED, SUBSCRIPTION_CREATED_TOPIC
from fairplay.errors import ResponseUnreadable, RpcCallError, RpcUnavailable
from fairplay.explorer import ExplorerLinks
from fairplay.history.service import GameHistory
from fairplay.resolver.handles import HandleResolver
from fairplay.resolver.sequence import SequenceResolver
from fairplay.retry import RetryPolicy
from fairplay.settlement.coordinator import SettlementCoordinator
from fairplay.settlement.outcome import MultiplierTable
from fairplay.store.memory import MemoryKeyValue
from fairplay.subscription.manager import SubscriptionManager
from fairplay.tracker.store import RequestStore
from fairplay.tracker.tracker import RequestTracker
from fairplay.treasury.ledger import TreasuryLedger

OWNER = "0x" + "11" * 20
OTHER = "0x" + "22" * 20
PLAYER = "0x" + "33" * 20
CONSUMER = "0x" + "44" * 20
PROVIDER = "0x" + "55" * 20
TREASURY = "0x" + "66" * 20
TREASURY_KEY = "4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"

REQUESTED_TOPIC = event_topic(EVENT_RANDOMNESS_REQUESTED)

_tx_ids = itertools.count(1)


def word(value: Any) -> str:
    """32-byte 0x-hex word for an int or a 20-byte address."""
    if isinstance(value, int):
        return "0x" + value.to_bytes(32, "big").hex()
    return "0x" + norm_hex(value)[2:].rjust(64, "0")


def tx_hash() -> str:
    return "0x" + f"{next(_tx_ids):064x}"


def make_config(**overrides: Any) -> FairplayConfig:
    base = dict(
        rpc_url="http://127.0.0.1:8545",
        chain_id=31337,
        provider_address=PROVIDER,
        consumer_address=CONSUMER,
        treasury_address=TREASURY,
        treasury_key=TREASURY_KEY,
        scan_upper_bound=50,
        fulfillment_timeout_s=300.0,
        rpc_timeout_s=5.0,
        max_retries=2,
        retry_base_delay_s=0.0,
        min_deposit=1,
        max_deposit=10**24,
    )
    base.update(overrides)
    return FairplayConfig(**base)


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += float(seconds)
        return self.now


class FakeChain:
    def __init__(self) -> None:
        self.balances: Dict[str, int] = {}
        self.token_balances: Dict[Tuple[str, str], int] = {}
        self.receipts: Dict[str, Receipt] = {}
        self.logs: List[LogEntry] = []
        self.head = 100
        self.simulate: Optional[Callable[..., str]] = None
        self.balance_failures = 0
        self.balance_calls = 0
        self.simulate_calls: List[Dict[str, Any]] = []

    async def get_balance(self, account: str) -> int:
        self.balance_calls += 1
        if self.balance_failures > 0:
            self.balance_failures -= 1
            raise RpcUnavailable("node busy")
        return self.balances.get(norm_hex(account), 0)

    async def token_balance(self, token: str, account: str) -> int:
        return self.token_balances.get((norm_hex(token), norm_hex(account)), 0)

    async def get_transaction_receipt(self, tx_ref: str) -> Optional[Receipt]:
        return self.receipts.get(norm_hex(tx_ref))

    async def simulate_call(self, target: str, data: str, *, block_ref: Optional[int] = None,
                            sender: Optional[str] = None) -> str:
        self.simulate_calls.append({"target": target, "data": data, "block_ref": block_ref, "sender": sender})
        if self.simulate is None:
            raise RpcCallError("execution reverted: eth_call unsupported")
        return self.simulate(target, data, block_ref, sender)

    async def get_logs(self, address: str, topics: Sequence[Optional[str]], from_block: int,
                       to_block: int) -> List[LogEntry]:
        out = []
        for entry in self.logs:
            if entry.address != norm_hex(address):
                continue
            if entry.block_number is not None and not from_block <= entry.block_number <= to_block:
                continue
            if all(t is None or (i < len(entry.topics) and entry.topics[i] == t) for i, t in enumerate(topics)):
                out.append(entry)
        return out

    async def block_number(self) -> int:
        return self.head

    def add_receipt(self, receipt: Receipt) -> Receipt:
        self.receipts[receipt.tx_hash] = receipt
        self.logs.extend(receipt.logs)
        return receipt


class FakeProvider:
    """
    Randomness provider. `mode`: "ok" returns the sequence number, "unreadable"
    accepts the request but raises ResponseUnreadable, "reject" refuses it.
    """

    def __init__(self, chain: FakeChain, fee: int = 100) -> None:
        self.chain = chain
        self.fee = fee
        self.mode = "ok"
        self.quote_calls = 0
        self.submissions: List[Tuple[int, str, bytes]] = []
        self._seq = itertools.count(1)

    async def quote_fee(self, handle: int) -> int:
        self.quote_calls += 1
        return self.fee

    async def submit(self, handle: int, request_id: str, commitment: bytes) -> SubmitResponse:
        if self.mode == "reject":
            raise RpcCallError("execution reverted: consumer paused")
        seq = next(self._seq)
        self.submissions.append((handle, request_id, commitment))
        tx = tx_hash()
        self.chain.head += 1
        self.chain.add_receipt(Receipt(
            tx_hash=tx,
            status=1,
            block_number=self.chain.head,
            logs=(LogEntry(
                address=CONSUMER,
                topics=(REQUESTED_TOPIC, word(seq), norm_hex(request_id)),
                data="0x" + commitment.hex(),
                block_number=self.chain.head,
                tx_hash=tx,
            ),),
        ))
        if self.mode == "unreadable":
            raise ResponseUnreadable("response body truncated")
        return SubmitResponse(tx_ref=tx, sequence_number=seq)


class FakeRegistry:
    """
    Subscription registry. `emit_event=False` drops SubscriptionCreated from
    receipts; `unreadable_handles` makes lookups of those ids fail.
    """

    def __init__(self, chain: FakeChain) -> None:
        self.chain = chain
        self.subs: Dict[int, SubscriptionInfo] = {}
        self.next_handle = 1
        self.emit_event = True
        self.unreadable_handles: set = set()
        self.lookups: List[int] = []
        self.consumer_handles: List[Tuple[str, int]] = []
        self.funded: List[Tuple[int, int, str, str]] = []

    def seed(self, handle: int, owner: str, native_balance: int = 0, consumers: Sequence[str] = ()) -> SubscriptionInfo:
        info = SubscriptionInfo(
            handle=handle,
            owner=norm_hex(owner),
            balance=0,
            native_balance=native_balance,
            consumers=frozenset(norm_hex(c) for c in consumers),
        )
        self.subs[handle] = info
        self.next_handle = max(self.next_handle, handle + 1)
        return info

    async def create_subscription(self, owner: str) -> CreateResult:
        handle = self.next_handle
        self.seed(handle, owner)
        tx = tx_hash()
        self.chain.head += 1
        logs: Tuple[LogEntry, ...] = ()
        if self.emit_event:
            logs = (LogEntry(address=PROVIDER, topics=(SUBSCRIPTION_CREATED_TOPIC, word(handle), word(owner))),)
        self.chain.add_receipt(Receipt(tx_hash=tx, status=1, block_number=self.chain.head, logs=logs,
                                       sender=norm_hex(owner)))
        return CreateResult(tx_ref=tx)

    async def get_subscription(self, handle: int) -> Optional[SubscriptionInfo]:
        self.lookups.append(handle)
        if handle in self.unreadable_handles:
            raise RpcUnavailable("lookup timed out")
        return self.subs.get(handle)

    async def fund(self, handle: int, amount: int, caller: str, currency: str) -> str:
        info = self.subs[handle]
        if currency == "native":
            self.subs[handle] = replace(info, native_balance=info.native_balance + amount)
        else:
            self.subs[handle] = replace(info, balance=info.balance + amount)
        self.funded.append((handle, amount, caller, currency))
        return tx_hash()

    async def add_consumer(self, handle: int, consumer: str, caller: str) -> str:
        info = self.subs[handle]
        self.subs[handle] = replace(info, consumers=info.consumers | {norm_hex(consumer)})
        return tx_hash()

    async def remove_consumer(self, handle: int, consumer: str, caller: str) -> str:
        info = self.subs[handle]
        self.subs[handle] = replace(info, consumers=info.consumers - {norm_hex(consumer)})
        return tx_hash()

    async def set_consumer_handle(self, consumer_contract: str, handle: int) -> str:
        self.consumer_handles.append((norm_hex(consumer_contract), handle))
        return tx_hash()


class FakeSender:
    """Treasury transfers. `mode`: "ok", "reject" or "transient"."""

    def __init__(self, chain: FakeChain, treasury: str = TREASURY) -> None:
        self.chain = chain
        self.treasury = norm_hex(treasury)
        self.mode = "ok"
        self.settle = True
        self.transfers: List[Tuple[str, int]] = []

    async def transfer(self, to: str, amount: int, *, gas_limit: int) -> str:
        if self.mode == "reject":
            raise RpcCallError("insufficient funds for gas * price + value")
        if self.mode == "transient":
            raise RpcUnavailable("connection reset")
        self.transfers.append((norm_hex(to), amount))
        self.chain.balances[self.treasury] = self.chain.balances.get(self.treasury, 0) - amount
        tx = tx_hash()
        if self.settle:
            self.chain.head += 1
            self.chain.add_receipt(Receipt(tx_hash=tx, status=1, block_number=self.chain.head))
        return tx


@dataclass
class Env:
    cfg: FairplayConfig
    clock: FakeClock
    kv: MemoryKeyValue
    chain: FakeChain
    provider: FakeProvider
    registry: FakeRegistry
    sender: FakeSender
    resolver: HandleResolver
    subscriptions: SubscriptionManager
    requests: RequestStore
    tracker: RequestTracker
    ledger: TreasuryLedger
    history: GameHistory
    coordinator: SettlementCoordinator
    alerts: List[Any]

    async def fund_subscription(self, balance: int, handle: int = 1) -> int:
        self.registry.seed(handle, OWNER, native_balance=balance, consumers=[CONSUMER])
        await self.subscriptions.refresh(handle)
        self.subscriptions.active_handle = handle
        return handle

    def credit_player(self, amount: int, account: str = PLAYER) -> None:
        entry = self.ledger.record_deposit(account, amount, tx_hash())
        self.ledger.confirm(entry.id)
        self.chain.balances[TREASURY] = self.chain.balances.get(TREASURY, 0) + amount


@pytest.fixture
def policy() -> RetryPolicy:
    return RetryPolicy(attempts_cap=2, base_delay=0.0, jitter_fraction=0.0)


@pytest.fixture
def env(policy: RetryPolicy) -> Env:
    cfg = make_config()
    clock = FakeClock()
    kv = MemoryKeyValue()
    chain = FakeChain()
    provider = FakeProvider(chain)
    registry = FakeRegistry(chain)
    sender = FakeSender(chain)
    resolver = HandleResolver.from_config(cfg, chain, registry)
    subscriptions = SubscriptionManager(
        registry, chain, resolver, consumer_address=CONSUMER, policy=policy, store=kv, timeout_s=5.0
    )
    requests = RequestStore(kv)
    alerts: List[Any] = []
    tracker = RequestTracker(
        requests,
        provider,
        subscriptions,
        SequenceResolver.from_config(cfg, chain),
        consumer_address=CONSUMER,
        fulfillment_timeout_s=cfg.fulfillment_timeout_s,
        timeout_s=5.0,
        policy=policy,
        alert=lambda err, req: alerts.append((err, req)),
        clock=clock,
    )
    ledger = TreasuryLedger(
        kv, chain, sender, treasury_address=TREASURY, min_deposit=1, max_deposit=10**24,
        timeout_s=5.0, receipt_timeout_s=1.0, policy=policy, clock=clock,
    )
    links = ExplorerLinks.from_config(cfg)
    history = GameHistory(kv, requests, links, clock=clock)
    coordinator = SettlementCoordinator(
        tracker,
        ledger,
        MultiplierTable([(1, 20_000)]),
        kv,
        history=history,
        links=links,
        handle_source=lambda: subscriptions.active_handle,
        policy=policy,
        clock=clock,
    )
    return Env(cfg, clock, kv, chain, provider, registry, sender, resolver, subscriptions, requests,
               tracker, ledger, history, coordinator, alerts)
