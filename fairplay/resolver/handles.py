"""
Subscription handle discovery.

A createSubscription transaction does not surface its return value in the
receipt, so the assigned handle is discovered after the fact, in order:

1. event log   : decode SubscriptionCreated(handle, owner) from the receipt
2. simulation  : replay createSubscription() as eth_call pinned to the block
                 before the creating transaction, from the creator's account
3. bounded scan : probe getSubscription(id) for ids within `scan_upper_bound`
                 and return the first one owned by the creator

Each step runs only when the previous one yields NotFound/Error. When all
three fail `resolve()` raises HandleResolutionError; it never falls back to
handle 0.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Collection, Dict, Optional

from ..chain.abi import decode_address, decode_uint, encode_call, words
from ..chain.interfaces import ChainReader, SubscriptionRegistry
from ..chain.types import Receipt, norm_hex
from ..constants import SIG_CREATE_SUBSCRIPTION, SUBSCRIPTION_CREATED_TOPIC
from ..errors import FairplayError, HandleResolutionError
from ..metrics import METRICS
from ..results import Error, NotFound, Ok, Result, describe

log = logging.getLogger(__name__)


class HandleResolver:
    def __init__(
        self,
        chain: ChainReader,
        registry: SubscriptionRegistry,
        *,
        registry_address: str,
        scan_upper_bound: int,
        timeout_s: float = 30.0,
    ) -> None:
        if scan_upper_bound <= 0:
            raise ValueError("scan_upper_bound must be > 0")
        self.chain = chain
        self.registry = registry
        self.registry_address = norm_hex(registry_address)
        self.scan_upper_bound = int(scan_upper_bound)
        self.timeout_s = float(timeout_s)

    @classmethod
    def from_config(cls, cfg: Any, chain: ChainReader, registry: SubscriptionRegistry) -> "HandleResolver":
        return cls(
            chain,
            registry,
            registry_address=cfg.provider_address,
            scan_upper_bound=cfg.scan_upper_bound,
            timeout_s=cfg.rpc_timeout_s,
        )

    # ---- strategies ----

    def resolve_from_event_log(self, receipt: Receipt, owner: Optional[str] = None) -> Result[int]:
        want_owner = norm_hex(owner) if owner else None
        for entry in receipt.logs:
            if entry.address and entry.address != self.registry_address:
                continue
            if len(entry.topics) < 2 or entry.topics[0] != SUBSCRIPTION_CREATED_TOPIC:
                continue
            handle = decode_uint(entry.topics[1])
            if handle == 0:
                continue
            if want_owner is not None:
                event_owner = self._event_owner(entry.topics, entry.data)
                if event_owner is not None and event_owner != want_owner:
                    continue
            return Ok(handle)
        return NotFound("no SubscriptionCreated event in receipt")

    @staticmethod
    def _event_owner(topics: Any, data: str) -> Optional[str]:
        if len(topics) >= 3:
            return decode_address(topics[2])
        try:
            w = words(data)
        except ValueError:
            return None
        return decode_address(w[0]) if w else None

    async def resolve_from_simulation(self, creator: str, block_ref: Optional[int]) -> Result[int]:
        try:
            out = await asyncio.wait_for(
                self.chain.simulate_call(
                    self.registry_address,
                    encode_call(SIG_CREATE_SUBSCRIPTION),
                    block_ref=block_ref,
                    sender=creator,
                ),
                timeout=self.timeout_s,
            )
        except (FairplayError, asyncio.TimeoutError) as e:
            return Error.from_exception(e, kind="simulation_failed")
        try:
            w = words(out)
        except ValueError as e:
            return Error.from_exception(e, kind="simulation_undecodable")
        if not w or decode_uint(w[0]) == 0:
            return Error(kind="simulation_empty", message="simulation returned no handle")
        return Ok(decode_uint(w[0]))

    async def resolve_by_scan(
        self,
        owner: str,
        search_space: Optional[range] = None,
        *,
        exclude: Collection[int] = (),
    ) -> Result[int]:
        """
        Probe candidate handles in order and return the first owned by `owner`.

        At most `scan_upper_bound` candidates are probed, whatever the size of
        `search_space`; ids in `exclude` (already known handles) are skipped.
        """
        space = search_space if search_space is not None else range(1, self.scan_upper_bound + 1)
        if len(space) > self.scan_upper_bound:
            log.warning(
                "scan: search space of %d ids truncated to %d", len(space), self.scan_upper_bound
            )
            space = space[: self.scan_upper_bound]

        want = norm_hex(owner)
        failures = 0
        last: Optional[BaseException] = None
        for handle in space:
            if handle <= 0 or handle in exclude:
                continue
            try:
                info = await asyncio.wait_for(self.registry.get_subscription(handle), timeout=self.timeout_s)
            except (FairplayError, asyncio.TimeoutError) as e:
                failures += 1
                last = e
                continue
            if info is not None and norm_hex(info.owner) == want:
                log.info("scan: handle %d owned by %s", handle, owner)
                return Ok(handle)

        if failures:
            return Error(
                kind="scan_incomplete",
                message=f"{failures} ownership lookups failed",
                exc=last,
            )
        return NotFound(f"no handle owned by {owner} within {len(space)} ids")

    # ---- ordered resolution ----

    async def resolve(
        self,
        receipt: Receipt,
        creator: str,
        *,
        search_space: Optional[range] = None,
        exclude: Collection[int] = (),
    ) -> int:
        trail: Dict[str, str] = {}

        res: Result[int] = self.resolve_from_event_log(receipt, owner=creator)
        METRICS.record_resolution("event_log", describe(res))
        if isinstance(res, Ok):
            return res.value
        trail["event_log"] = self._explain(res)

        pinned = receipt.block_number - 1 if receipt.block_number > 0 else None
        res = await self.resolve_from_simulation(creator, pinned)
        METRICS.record_resolution("simulation", describe(res))
        if isinstance(res, Ok):
            log.info("resolve: handle %d from simulation at block %s", res.value, pinned)
            return res.value
        trail["simulation"] = self._explain(res)

        res = await self.resolve_by_scan(creator, search_space, exclude=exclude)
        METRICS.record_resolution("scan", describe(res))
        if isinstance(res, Ok):
            return res.value
        trail["scan"] = self._explain(res)

        log.critical("resolve: handle for tx %s undiscoverable: %s", receipt.tx_hash, trail)
        raise HandleResolutionError(
            "subscription handle could not be resolved",
            details={"tx_ref": receipt.tx_hash, "creator": creator, "attempts": trail},
        )

    @staticmethod
    def _explain(res: Result[int]) -> str:
        if isinstance(res, NotFound):
            return f"not_found: {res.reason}"
        if isinstance(res, Error):
            return f"error[{res.kind}]: {res.message}"
        return "ok"


__all__ = ["HandleResolver"]
