"""
Settlement Coordinator: ties a game to its randomness request and its
treasury entries. Holds no state of its own beyond parked settlement work.

    start_game      seed -> commit -> stake hold -> request -> submit
    on_fulfillment  tracker fulfillment -> outcome -> capture stake + credit payout
    on_expired      release stake hold -> one refund withdrawal
    sweep           expiry sweep, then parked credits and refunds

Capture and credit form one unit: once the stake is captured the payout
credit is retried, and a credit that still fails is parked under
`park:credit:<id>` and retried by `retry_pending_credits` until it lands.
Refunds are keyed `refund:<id>` in the ledger so a request is refunded at
most once however many times the refund is retried.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..chain.types import norm_hex
from ..commit_reveal import commit, generate_seed
from ..errors import (
    FairplayError,
    InsufficientAccountBalance,
    InvalidAmount,
    RejectedError,
    TransientError,
)
from ..explorer import ExplorerLinks
from ..history.service import GameHistory
from ..metrics import METRICS
from ..retry import RetryError, RetryPolicy, aretry_call
from ..store import KeyValue, decode_record, encode_record
from ..treasury.ledger import TreasuryLedger, stake_entry_id
from ..treasury.types import EntryStatus, TreasuryEntry
from ..tracker.tracker import RequestTracker
from ..tracker.types import RandomnessRequest, RequestState
from .outcome import GameOutcome, OutcomeEvaluator

log = logging.getLogger(__name__)

_PARK_CREDIT = b"park:credit:"
_PARK_REFUND = b"park:refund:"


def refund_reference(request_id: str) -> str:
    return f"refund:{request_id}"


@dataclass(frozen=True)
class GameStart:
    """A submitted game. `seed` stays server-side until the provider reveals it."""
    request: RandomnessRequest
    seed: bytes
    explorer_link: Optional[str] = None

    def view(self) -> Dict[str, Any]:
        return self.request.front_end_view(self.explorer_link)


class SettlementCoordinator:
    def __init__(
        self,
        tracker: RequestTracker,
        ledger: TreasuryLedger,
        evaluator: OutcomeEvaluator,
        kv: KeyValue,
        *,
        history: Optional[GameHistory] = None,
        links: Optional[ExplorerLinks] = None,
        handle_source: Optional[Callable[[], Optional[int]]] = None,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.tracker = tracker
        self.ledger = ledger
        self.evaluator = evaluator
        self.kv = kv
        self.history = history
        self.links = links or ExplorerLinks()
        self.handle_source = handle_source
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self.clock = clock

    # ---- game start ----

    def _current_handle(self) -> int:
        handle = self.handle_source() if self.handle_source is not None else None
        if not handle:
            raise RejectedError("no active subscription to pay for randomness")
        return int(handle)

    async def start_game(
        self,
        account: str,
        stake: int,
        category: str = "",
        variant: str = "",
        *,
        handle: Optional[int] = None,
    ) -> GameStart:
        stake = int(stake)
        if stake <= 0:
            raise InvalidAmount(amount=stake, message="stake must be greater than zero")
        acct = norm_hex(account)
        have = self.ledger.available(acct)
        if have < stake:
            raise InsufficientAccountBalance(required=stake, available=have, details={"account": acct})

        h = int(handle) if handle else self._current_handle()
        seed = generate_seed()
        req = self.tracker.create(
            requester=acct, commitment=commit(seed), handle=h, category=category, variant=variant, stake=stake
        )
        self.ledger.hold_stake(acct, req.id, stake)
        try:
            req = await self.tracker.submit(req.id)
        except Exception:
            # a request left CREATED never reached the provider
            if self.tracker.get(req.id).state is RequestState.CREATED:
                self.ledger.release_stake(req.id)
            raise
        log.info("game %s started for %s: %s/%s stake=%d", req.id, acct, category, variant, stake)
        return GameStart(request=req, seed=seed, explorer_link=self.links.tx_link(req.tx_ref))

    # ---- fulfillment ----

    async def on_fulfillment(
        self,
        sequence_number: int,
        revealed_seed: bytes,
        provider_value: bytes = b"",
    ) -> Dict[str, Any]:
        req = await self.tracker.on_fulfillment(sequence_number, revealed_seed, provider_value)
        outcome = self.evaluator.evaluate(
            bytes.fromhex(req.random_value[2:]), req.stake, req.game_category, req.game_variant
        )
        await self._settle(req, outcome)
        if self.history is not None:
            self.history.record(req, outcome)
        view = req.front_end_view(self.links.tx_link(req.tx_ref))
        view["outcome"] = outcome.to_dict()
        return view

    async def _settle(self, req: RandomnessRequest, outcome: GameOutcome) -> None:
        stake = self.ledger.find(stake_entry_id(req.id))
        if stake is not None and stake.status is EntryStatus.PENDING:
            self.ledger.capture_stake(req.id)
        if outcome.payout <= 0:
            return
        try:
            await aretry_call(
                self._credit_once, req.requester, req.id, outcome.payout,
                policy=self.policy, op="credit_payout", sleep=self._sleep,
            )
        except (RetryError, TransientError) as e:
            self._park(_PARK_CREDIT, req.id, {"account": req.requester, "amount": outcome.payout, "error": str(e)})
            log.error("payout credit for %s parked after retries: %s", req.id, e)

    async def _credit_once(self, account: str, request_id: str, amount: int) -> Optional[TreasuryEntry]:
        try:
            return self.ledger.credit_payout(account, request_id, amount)
        except FairplayError:
            raise
        except Exception as e:  # noqa: BLE001 - storage backend failure
            raise TransientError("payout credit failed", details={"request_id": request_id, "error": repr(e)}) from e

    # ---- expiry ----

    async def on_expired(self, req: RandomnessRequest) -> Optional[TreasuryEntry]:
        """Release the stake hold and dispatch the single refund for an expired request."""
        stake = self.ledger.find(stake_entry_id(req.id))
        if stake is not None and stake.status is EntryStatus.PENDING:
            self.ledger.release_stake(req.id)
        if self.history is not None:
            self.history.record(req, None)
        if stake is None or stake.status is EntryStatus.CONFIRMED or req.stake <= 0:
            return None
        return await self._refund(req.id, req.requester, req.stake)

    async def _refund(self, request_id: str, account: str, amount: int) -> Optional[TreasuryEntry]:
        try:
            entry = await self.ledger.withdraw(account, amount, reference=refund_reference(request_id))
        except (FairplayError, RetryError, asyncio.TimeoutError) as e:
            self._park(_PARK_REFUND, request_id, {"account": account, "amount": amount, "error": str(e)})
            log.error("refund for expired request %s parked: %s", request_id, e)
            return None
        self._unpark(_PARK_REFUND, request_id)
        log.info("refund %s of %d dispatched for expired request %s", entry.id, amount, request_id)
        return entry

    # ---- parked work ----

    def _park(self, prefix: bytes, request_id: str, payload: Dict[str, Any]) -> None:
        record = {"requestId": request_id, "parkedAt": self.clock(), **payload}
        self.kv.put(prefix + request_id.encode("ascii"), encode_record(record))

    def _unpark(self, prefix: bytes, request_id: str) -> None:
        self.kv.delete(prefix + request_id.encode("ascii"))

    def pending_credits(self) -> List[Dict[str, Any]]:
        return [decode_record(raw) for _, raw in self.kv.iter_prefix(_PARK_CREDIT)]

    def pending_refunds(self) -> List[Dict[str, Any]]:
        return [decode_record(raw) for _, raw in self.kv.iter_prefix(_PARK_REFUND)]

    async def retry_pending_credits(self) -> int:
        done = 0
        for rec in self.pending_credits():
            rid = rec["requestId"]
            METRICS.record_settlement_retry("credit")
            try:
                await self._credit_once(rec["account"], rid, int(rec["amount"]))
            except FairplayError as e:
                log.warning("parked credit for %s still failing: %s", rid, e)
                continue
            self._unpark(_PARK_CREDIT, rid)
            done += 1
            log.info("parked credit for %s settled", rid)
        return done

    async def retry_pending_refunds(self) -> int:
        done = 0
        for rec in self.pending_refunds():
            METRICS.record_settlement_retry("refund")
            if await self._refund(rec["requestId"], rec["account"], int(rec["amount"])) is not None:
                done += 1
        return done

    # ---- periodic work ----

    async def sweep(self, now: Optional[float] = None) -> List[RandomnessRequest]:
        expired = await self.tracker.sweep_expired(now)
        for req in expired:
            await self.on_expired(req)
        await self.retry_pending_credits()
        await self.retry_pending_refunds()
        try:
            await self.ledger.settle_dispatched()
        except (TransientError, RetryError) as e:
            log.warning("sweep: receipt polling deferred: %s", e)
        return expired

    def verify_game(self, request_id: str) -> Dict[str, Any]:
        if self.history is None:
            raise RejectedError("game history is not configured")
        return self.history.verify(request_id)


__all__ = ["SettlementCoordinator", "GameStart", "refund_reference"]
