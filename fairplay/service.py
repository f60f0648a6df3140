"""
Application wiring: builds every component from a `FairplayConfig` and
exposes the operations the HTTP surface and CLI call.

    svc = FairplayService.from_config(cfg, evaluator=MultiplierTable([(49, 20_000), (51, 0)]))
    await svc.start()          # expiry sweeper + fulfillment watcher
    view = await svc.start_game(account, stake=10**16, category="coinflip")
    await svc.stop()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .chain.evm import EvmChain, EvmRandomnessProvider, EvmSubscriptionRegistry, TxSender
from .chain.interfaces import ChainReader, RandomnessProvider, SubscriptionRegistry, TransferSender
from .chain.jsonrpc import JsonRpcClient
from .chain.types import norm_hex
from .config import FairplayConfig
from .errors import RequestNotFound
from .explorer import ExplorerLinks
from .history.service import GameHistory
from .resolver.handles import HandleResolver
from .resolver.sequence import SequenceResolver
from .retry import RetryPolicy
from .settlement.coordinator import SettlementCoordinator
from .settlement.outcome import OutcomeEvaluator
from .settlement.sweeper import ExpirySweeper
from .settlement.watcher import FulfillmentWatcher
from .store import KeyValue, open_store
from .subscription.manager import SubscriptionManager
from .tracker.store import RequestStore
from .tracker.tracker import RequestTracker
from .treasury.ledger import TreasuryLedger

log = logging.getLogger(__name__)


def _hex_bytes(value: str) -> bytes:
    v = value[2:] if value.startswith(("0x", "0X")) else value
    return bytes.fromhex(v)


@dataclass
class FairplayService:
    config: FairplayConfig
    kv: KeyValue
    chain: ChainReader
    subscriptions: SubscriptionManager
    tracker: RequestTracker
    ledger: TreasuryLedger
    history: GameHistory
    coordinator: SettlementCoordinator
    links: ExplorerLinks
    sweeper: Optional[ExpirySweeper] = None
    watcher: Optional[FulfillmentWatcher] = None
    rpc: Optional[JsonRpcClient] = None

    @classmethod
    def build(
        cls,
        cfg: FairplayConfig,
        *,
        chain: ChainReader,
        provider: RandomnessProvider,
        registry: SubscriptionRegistry,
        sender: TransferSender,
        evaluator: OutcomeEvaluator,
        kv: Optional[KeyValue] = None,
        rpc: Optional[JsonRpcClient] = None,
    ) -> "FairplayService":
        """Wire components around explicit collaborators."""
        store = kv if kv is not None else open_store(cfg.db_path)
        policy = RetryPolicy.from_config(cfg)
        links = ExplorerLinks.from_config(cfg)

        subscriptions = SubscriptionManager(
            registry,
            chain,
            HandleResolver.from_config(cfg, chain, registry),
            consumer_address=cfg.consumer_address,
            fee_currency=cfg.fee_currency,
            fee_token_address=cfg.fee_token_address,
            policy=policy,
            store=store,
            timeout_s=cfg.rpc_timeout_s,
        )
        requests = RequestStore(store)
        tracker = RequestTracker(
            requests,
            provider,
            subscriptions,
            SequenceResolver.from_config(cfg, chain),
            consumer_address=cfg.consumer_address,
            fulfillment_timeout_s=cfg.fulfillment_timeout_s,
            timeout_s=cfg.rpc_timeout_s,
            policy=policy,
        )
        ledger = TreasuryLedger(
            store,
            chain,
            sender,
            treasury_address=cfg.treasury_address,
            min_deposit=cfg.min_deposit,
            max_deposit=cfg.max_deposit,
            withdraw_gas_limit=cfg.withdraw_gas_limit,
            timeout_s=cfg.rpc_timeout_s,
            policy=policy,
        )
        history = GameHistory(store, requests, links)
        coordinator = SettlementCoordinator(
            tracker,
            ledger,
            evaluator,
            store,
            history=history,
            links=links,
            handle_source=lambda: subscriptions.active_handle,
            policy=policy,
        )
        return cls(
            config=cfg,
            kv=store,
            chain=chain,
            subscriptions=subscriptions,
            tracker=tracker,
            ledger=ledger,
            history=history,
            coordinator=coordinator,
            links=links,
            sweeper=ExpirySweeper(coordinator, cfg.sweep_interval_s),
            watcher=FulfillmentWatcher(
                chain,
                coordinator,
                store,
                consumer_address=cfg.consumer_address,
                poll_interval_s=cfg.receipt_poll_interval_s,
                max_range=cfg.log_window_blocks,
            ),
            rpc=rpc,
        )

    @classmethod
    def from_config(cls, cfg: FairplayConfig, *, evaluator: OutcomeEvaluator) -> "FairplayService":
        """Wire against a live EVM node using the treasury key for signing."""
        cfg.validate()
        rpc = JsonRpcClient(cfg.rpc_url, timeout=cfg.rpc_timeout_s)
        chain = EvmChain(rpc)
        sender = TxSender(rpc, cfg.treasury_key, cfg.chain_id)
        return cls.build(
            cfg,
            chain=chain,
            provider=EvmRandomnessProvider(chain, sender, cfg.consumer_address, receipt_timeout_s=cfg.rpc_timeout_s),
            registry=EvmSubscriptionRegistry(chain, sender, cfg.provider_address, fee_token_address=cfg.fee_token_address),
            sender=sender,
            evaluator=evaluator,
            rpc=rpc,
        )

    # ---- lifecycle ----

    async def start(self) -> None:
        if self.sweeper is not None:
            self.sweeper.start()
        if self.watcher is not None:
            self.watcher.start()
        log.info("fairplay service started (consumer=%s)", self.config.consumer_address)

    async def stop(self) -> None:
        if self.watcher is not None:
            await self.watcher.stop()
        if self.sweeper is not None:
            await self.sweeper.stop()
        await self.tracker.wait_for_resolutions()
        if self.rpc is not None:
            await self.rpc.aclose()

    # ---- games ----

    async def start_game(self, account: str, stake: int, category: str = "", variant: str = "") -> Dict[str, Any]:
        started = await self.coordinator.start_game(account, stake, category, variant)
        return started.view()

    async def fulfill(self, sequence_number: int, revealed_seed: str, provider_value: str = "0x") -> Dict[str, Any]:
        return await self.coordinator.on_fulfillment(
            int(sequence_number), _hex_bytes(revealed_seed), _hex_bytes(provider_value or "0x")
        )

    async def get_request(self, request_id: str) -> Dict[str, Any]:
        req = self.tracker.store.get(request_id)
        if req is None:
            raise RequestNotFound(request_id=request_id)
        view = req.front_end_view(self.links.tx_link(req.tx_ref))
        view["state"] = req.state.value
        view["commitment"] = req.commitment
        return view

    async def verify_game(self, request_id: str) -> Dict[str, Any]:
        return self.coordinator.verify_game(request_id)

    # ---- treasury ----

    async def deposit(self, account: str, amount: int, tx_ref: str) -> Dict[str, Any]:
        entry = self.ledger.record_deposit(account, amount, tx_ref)
        entry = await self.ledger.settle_from_receipt(entry.id)
        return entry.to_dict()

    async def withdraw(self, account: str, amount: int, destination: Optional[str] = None) -> Dict[str, Any]:
        entry = await self.ledger.withdraw(account, amount, destination)
        out = entry.to_dict()
        out["explorerLink"] = self.links.tx_link(entry.tx_ref)
        return out

    async def treasury_balance(self) -> Dict[str, Any]:
        report = await self.ledger.audit()
        out = report.to_dict()
        out["address"] = self.ledger.treasury_address
        return out

    async def account_balance(self, account: str) -> Dict[str, Any]:
        acct = norm_hex(account)
        return {
            "account": acct,
            "balance": self.ledger.reconcile(acct),
            "available": self.ledger.available(acct),
        }

    # ---- history ----

    async def user_history(self, account: str, limit: int = 50) -> List[Dict[str, Any]]:
        return self.history.user_history(account, limit)

    async def user_stats(self, account: str) -> Dict[str, Any]:
        return self.history.user_stats(account)


__all__ = ["FairplayService"]
