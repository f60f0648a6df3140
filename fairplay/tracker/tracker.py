"""
Request Tracker: the state machine for individual randomness requests.

Usage
-----
    tracker = RequestTracker(RequestStore(kv), provider, subscriptions, sequences,
                             consumer_address=cfg.consumer_address)
    req = tracker.create(requester=acct, commitment=c, handle=h, stake=10)
    req = await tracker.submit(req.id)                       # CREATED -> AWAITING
    req = await tracker.on_fulfillment(seq, seed, provider_value)   # -> FULFILLED
    expired = await tracker.sweep_expired()                  # AWAITING -> EXPIRED

Concurrency
-----------
Transitions are serialized per request id through `KeyedLocks`; different
requests proceed concurrently. Every external call is bounded by
`timeout_s`, so a per-id lock is never held across a call for longer than
that. Sequence discovery (log scan / simulation) runs without the lock and
only re-acquires it to record the result.

Idempotency
-----------
`submit` on a request that already left CREATED returns it unchanged. A
submission whose response cannot be read (or that fails transiently after
dispatch) is recorded as AWAITING_FULFILLMENT with an unknown sequence
number; the number is discovered later, keyed on the request id, instead of
re-submitting.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Set

from ..chain.interfaces import RandomnessProvider
from ..chain.receipts import wait_for_receipt
from ..chain.types import SubmitResponse, norm_hex
from ..commit_reveal import derive_request_id, mix_random_value, normalize_commitment, verify
from ..errors import (
    CommitmentMismatch,
    FairplayError,
    IntegrityError,
    InvalidTransition,
    RejectedError,
    RequestNotFound,
    ResolutionError,
    TransientError,
)
from ..metrics import METRICS
from ..resolver.sequence import SequenceResolver
from ..retry import RetryPolicy, aretry_call
from .locks import KeyedLocks
from .store import RequestStore
from .types import RandomnessRequest, RequestState

log = logging.getLogger(__name__)

AlertHook = Callable[[FairplayError, RandomnessRequest], None]

# sequence numbers remembered for the inline lookup before the set is reset
_LOOKUP_MEMORY = 4096


class FeeEscrow(Protocol):
    """Fee reservation against a funding resource (implemented by SubscriptionManager)."""

    def escrow_fee(self, handle: int, consumer: str, fee: int) -> Any: ...

    def release_fee(self, handle: int, fee: int) -> Any: ...


class RequestTracker:
    def __init__(
        self,
        store: RequestStore,
        provider: RandomnessProvider,
        escrow: FeeEscrow,
        sequences: SequenceResolver,
        *,
        consumer_address: str,
        fulfillment_timeout_s: float = 300.0,
        timeout_s: float = 30.0,
        policy: Optional[RetryPolicy] = None,
        alert: Optional[AlertHook] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.provider = provider
        self.escrow = escrow
        self.sequences = sequences
        self.consumer_address = norm_hex(consumer_address)
        self.fulfillment_timeout_s = float(fulfillment_timeout_s)
        self.timeout_s = float(timeout_s)
        self.policy = policy or RetryPolicy()
        self.alert = alert
        self.clock = clock
        self.locks = KeyedLocks()
        self._nonces = itertools.count()
        self._resolving: Dict[str, asyncio.Task] = {}
        self._looked_up: Set[int] = set()

    # ---- helpers ----

    def get(self, request_id: str) -> RandomnessRequest:
        req = self.store.get(request_id)
        if req is None:
            raise RequestNotFound(request_id=request_id)
        return req

    async def _call(self, name: str, fn: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        with METRICS.rpc_timer(name):
            return await asyncio.wait_for(fn(*args), timeout=self.timeout_s)

    def _raise_alert(self, err: FairplayError, req: RandomnessRequest) -> None:
        log.critical("integrity alert for request %s: %s", req.id, err)
        if self.alert is not None:
            self.alert(err, req)

    # ---- creation / submission ----

    def create(
        self,
        *,
        requester: str,
        commitment: Any,
        handle: int,
        category: str = "",
        variant: str = "",
        stake: int = 0,
        nonce: Optional[int] = None,
        salt: Optional[bytes] = None,
    ) -> RandomnessRequest:
        now = self.clock()
        n = next(self._nonces) if nonce is None else int(nonce)
        s = salt if salt is not None else time.time_ns().to_bytes(8, "big")
        rid = derive_request_id(requester, n, s)

        existing = self.store.get(rid)
        if existing is not None:
            return existing

        req = RandomnessRequest(
            id=rid,
            requester=norm_hex(requester),
            commitment="0x" + normalize_commitment(commitment).hex(),
            handle=int(handle),
            game_category=category,
            game_variant=variant,
            stake=int(stake),
            created_at=now,
        )
        self.store.put(req)
        log.info("request %s created for %s (%s/%s)", rid, requester, category, variant)
        return req

    async def submit(self, request_id: str) -> RandomnessRequest:
        async with self.locks.hold(request_id):
            req = self.get(request_id)
            if req.state is not RequestState.CREATED:
                METRICS.record_request("duplicate")
                log.debug("submit: request %s already %s", request_id, req.state.value)
                return req

            try:
                fee = await aretry_call(
                    self._call, "quote_fee", self.provider.quote_fee, req.handle, policy=self.policy, op="quote_fee"
                )
                self.escrow.escrow_fee(req.handle, self.consumer_address, int(fee))
            except RejectedError:
                METRICS.record_request("rejected")
                raise
            except Exception:
                METRICS.record_request("failed")
                raise

            dispatched_at = self.clock()
            try:
                resp: SubmitResponse = await self._call(
                    "submit", self.provider.submit, req.handle, req.id, bytes.fromhex(req.commitment[2:])
                )
            except RejectedError:
                self.escrow.release_fee(req.handle, int(fee))
                METRICS.record_request("rejected")
                raise
            except (TransientError, asyncio.TimeoutError) as e:
                # the provider may already hold the request: never re-dispatch blindly
                log.warning("submit: response for %s unreadable (%s); sequence pending discovery", request_id, e)
                resp = SubmitResponse(tx_ref=None)
            except Exception:
                self.escrow.release_fee(req.handle, int(fee))
                METRICS.record_request("failed")
                log.exception("submit: dispatch of %s failed; fee released", request_id)
                raise

            req = req.awaiting(fee=int(fee), at=dispatched_at, sequence_number=resp.sequence_number, tx_ref=resp.tx_ref)
            self.store.put(req)

        if req.sequence_number is None:
            METRICS.record_request("awaiting_unresolved")
            self._schedule_resolution(req.id)
        else:
            METRICS.record_request("awaiting")
        log.info(
            "request %s awaiting fulfillment seq=%s fee=%d tx=%s", req.id, req.sequence_number, req.fee or 0, req.tx_ref
        )
        return req

    # ---- sequence discovery ----

    def _schedule_resolution(self, request_id: str) -> asyncio.Task:
        task = self._resolving.get(request_id)
        if task is not None:
            return task
        task = asyncio.get_running_loop().create_task(
            self._resolve_in_background(request_id), name=f"resolve-seq-{request_id[:10]}"
        )
        self._resolving[request_id] = task
        task.add_done_callback(lambda _t: self._resolving.pop(request_id, None))
        return task

    async def _resolve_in_background(self, request_id: str) -> None:
        req = self.store.get(request_id)
        if req is not None and req.tx_ref:
            # logs and simulation only see the request once its tx is mined
            try:
                await asyncio.wait_for(
                    wait_for_receipt(self.sequences.chain, req.tx_ref, timeout_s=self.timeout_s), timeout=self.timeout_s
                )
            except (FairplayError, asyncio.TimeoutError) as e:
                log.info("receipt for %s not yet available: %s", request_id, e)

        attempts = self.policy.attempts_cap + 1
        for attempt in range(1, attempts + 1):
            try:
                await self.resolve_sequence(request_id)
                return
            except ResolutionError as e:
                if attempt >= attempts:
                    req = self.store.get(request_id)
                    if req is not None:
                        self._raise_alert(e, req)
                    return
                log.warning("sequence discovery for %s attempt %d/%d failed: %s", request_id, attempt, attempts, e)
            except TransientError as e:
                log.warning("sequence discovery for %s deferred: %s", request_id, e)
                return
            await asyncio.sleep(self.policy.with_jitter(self.policy.backoff_seconds(attempt)))

    async def wait_for_resolutions(self) -> None:
        """Await any in-flight background sequence discovery."""
        if self._resolving:
            await asyncio.gather(*list(self._resolving.values()), return_exceptions=True)

    async def resolve_sequence(self, request_id: str) -> RandomnessRequest:
        req = self.get(request_id)
        if req.sequence_number is not None or req.state is not RequestState.AWAITING_FULFILLMENT:
            return req

        seq = await self.sequences.resolve(req.id, req.tx_ref)

        async with self.locks.hold(request_id):
            req = self.get(request_id)
            if req.sequence_number is None:
                req = self.store.put(req.with_sequence(seq))
                log.info("request %s bound to sequence %d", request_id, seq)
        return req

    def unresolved(self) -> List[RandomnessRequest]:
        return [
            r for r in self.store.in_state(RequestState.AWAITING_FULFILLMENT) if r.sequence_number is None
        ]

    async def _lookup_unresolved(self, sequence_number: int) -> Optional[str]:
        """
        Bind outstanding requests concurrently and look `sequence_number` up
        again. Each sequence number triggers at most one inline lookup.
        """
        seq = int(sequence_number)
        if seq in self._looked_up:
            return None
        if len(self._looked_up) >= _LOOKUP_MEMORY:
            self._looked_up.clear()
        self._looked_up.add(seq)

        tasks = [self._schedule_resolution(r.id) for r in self.unresolved()]
        if tasks:
            await asyncio.wait(tasks, timeout=self.timeout_s)
        return self.store.id_for_sequence(seq)

    # ---- fulfillment ----

    async def on_fulfillment(
        self,
        sequence_number: int,
        revealed_seed: bytes,
        provider_value: bytes = b"",
    ) -> RandomnessRequest:
        rid = self.store.id_for_sequence(sequence_number)
        if rid is None:
            rid = await self._lookup_unresolved(sequence_number)
        if rid is None:
            METRICS.record_fulfillment("unknown_sequence")
            raise RequestNotFound(sequence_number=int(sequence_number))

        async with self.locks.hold(rid):
            req = self.get(rid)

            if req.state is RequestState.FULFILLED:
                if verify(req.commitment, revealed_seed) and req.random_value == (
                    "0x" + mix_random_value(bytes(revealed_seed), bytes(provider_value)).hex()
                ):
                    METRICS.record_fulfillment("duplicate")
                    return req
                raise InvalidTransition(
                    subject=rid, current=req.state.value, target="fulfilled",
                    message="request already fulfilled with a different value",
                )
            if req.state is RequestState.EXPIRED:
                METRICS.record_fulfillment("late")
                log.warning("late fulfillment for expired request %s (seq=%d)", rid, sequence_number)
                raise InvalidTransition(subject=rid, current=req.state.value, target="fulfilled")
            if req.state is not RequestState.AWAITING_FULFILLMENT:
                raise InvalidTransition(subject=rid, current=req.state.value, target="fulfilled")
            if req.under_review:
                raise IntegrityError(
                    "request is held for manual audit",
                    details={"request_id": rid, "reason": req.review_reason},
                )

            if not verify(req.commitment, revealed_seed):
                flagged = self.store.put(req.flagged("commitment mismatch on fulfillment"))
                err = CommitmentMismatch(
                    "revealed seed does not match prior commitment",
                    details={"request_id": rid, "sequence_number": int(sequence_number)},
                )
                METRICS.record_fulfillment("integrity_violation")
                self._raise_alert(err, flagged)
                raise err

            seed = bytes(revealed_seed)
            extra = bytes(provider_value)
            req = req.fulfilled(
                random_value=mix_random_value(seed, extra), seed=seed, provider_value=extra, at=self.clock()
            )
            self.store.put(req)

        METRICS.record_fulfillment("fulfilled")
        log.info("request %s fulfilled (seq=%d)", rid, sequence_number)
        return req

    def clear_review(self, request_id: str) -> RandomnessRequest:
        """Operator action after a manual audit: re-enable automatic processing."""
        req = self.get(request_id)
        if not req.under_review:
            return req
        log.warning("review flag cleared on request %s (was: %s)", request_id, req.review_reason)
        return self.store.put(req.cleared())

    # ---- expiry ----

    async def sweep_expired(self, now: Optional[float] = None, timeout: Optional[float] = None) -> List[RandomnessRequest]:
        """
        Expire AWAITING_FULFILLMENT requests older than `timeout`.

        The sole writer of EXPIRED. Requests held for review are skipped.
        Returns only the requests this call transitioned.
        """
        t = self.clock() if now is None else float(now)
        limit = self.fulfillment_timeout_s if timeout is None else float(timeout)
        out: List[RandomnessRequest] = []

        for candidate in self.store.in_state(RequestState.AWAITING_FULFILLMENT):
            if candidate.under_review or t - candidate.awaiting_since <= limit:
                continue
            async with self.locks.hold(candidate.id):
                req = self.get(candidate.id)
                if req.state is not RequestState.AWAITING_FULFILLMENT or req.under_review:
                    continue
                if t - req.awaiting_since <= limit:
                    continue
                req = self.store.put(req.expired(at=t))
            out.append(req)
            log.info("request %s expired after %.0fs without fulfillment", req.id, t - req.awaiting_since)
        return out


__all__ = ["RequestTracker", "FeeEscrow", "AlertHook"]
