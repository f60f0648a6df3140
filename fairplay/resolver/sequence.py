"""
Sequence number recovery for submissions whose response was unreadable.

Keyed on the request's unique id (passed on-chain as bytes32), tried in order:

1. receipt     : RandomnessRequested(sequenceNumber, requestId, commitment) in the
                 submission's receipt, when its tx hash is known
2. log window  : eth_getLogs over the last `log_window_blocks` blocks filtered by
                 requestId (topics[2])
3. simulation  : sequenceOf(requestId) view call on the consuming contract

A sequence number of 0 means "unassigned" and never counts as a match.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from ..chain.abi import decode_uint, encode_call, event_topic, words
from ..chain.interfaces import ChainReader
from ..chain.types import Receipt, norm_hex
from ..constants import EVENT_RANDOMNESS_REQUESTED, SIG_SEQUENCE_OF
from ..errors import FairplayError, SequenceResolutionError
from ..metrics import METRICS
from ..results import Error, NotFound, Ok, Result, describe

log = logging.getLogger(__name__)

REQUESTED_TOPIC = event_topic(EVENT_RANDOMNESS_REQUESTED)


class SequenceResolver:
    def __init__(
        self,
        chain: ChainReader,
        *,
        consumer_address: str,
        log_window_blocks: int,
        timeout_s: float = 30.0,
    ) -> None:
        self.chain = chain
        self.consumer_address = norm_hex(consumer_address)
        self.log_window_blocks = int(log_window_blocks)
        self.timeout_s = float(timeout_s)

    @classmethod
    def from_config(cls, cfg: Any, chain: ChainReader) -> "SequenceResolver":
        return cls(
            chain,
            consumer_address=cfg.consumer_address,
            log_window_blocks=cfg.log_window_blocks,
            timeout_s=cfg.rpc_timeout_s,
        )

    def from_receipt(self, receipt: Receipt, request_id: str) -> Result[int]:
        rid = norm_hex(request_id)
        for entry in receipt.logs:
            if len(entry.topics) >= 3 and entry.topics[0] == REQUESTED_TOPIC and entry.topics[2] == rid:
                seq = decode_uint(entry.topics[1])
                if seq:
                    return Ok(seq)
        return NotFound("no RandomnessRequested event for request in receipt")

    async def from_log_window(self, request_id: str) -> Result[int]:
        rid = norm_hex(request_id)
        try:
            head = await asyncio.wait_for(self.chain.block_number(), timeout=self.timeout_s)
            logs = await asyncio.wait_for(
                self.chain.get_logs(
                    self.consumer_address,
                    [REQUESTED_TOPIC, None, rid],
                    max(0, head - self.log_window_blocks),
                    head,
                ),
                timeout=self.timeout_s,
            )
        except (FairplayError, asyncio.TimeoutError) as e:
            return Error.from_exception(e, kind="log_query_failed")
        for entry in logs:
            if len(entry.topics) >= 3 and entry.topics[2] == rid:
                seq = decode_uint(entry.topics[1])
                if seq:
                    return Ok(seq)
        return NotFound(f"no RandomnessRequested event within {self.log_window_blocks} blocks")

    async def from_simulation(self, request_id: str) -> Result[int]:
        try:
            out = await asyncio.wait_for(
                self.chain.simulate_call(self.consumer_address, encode_call(SIG_SEQUENCE_OF, request_id)),
                timeout=self.timeout_s,
            )
            w = words(out)
        except (FairplayError, asyncio.TimeoutError, ValueError) as e:
            return Error.from_exception(e, kind="simulation_failed")
        seq = decode_uint(w[0]) if w else 0
        if seq == 0:
            return NotFound("contract has no sequence number for request")
        return Ok(seq)

    async def resolve(self, request_id: str, tx_ref: Optional[str] = None) -> int:
        trail: Dict[str, str] = {}

        if tx_ref:
            try:
                receipt = await asyncio.wait_for(self.chain.get_transaction_receipt(tx_ref), timeout=self.timeout_s)
            except (FairplayError, asyncio.TimeoutError) as e:
                receipt = None
                trail["receipt"] = f"error: {e}"
            if receipt is not None:
                res: Result[int] = self.from_receipt(receipt, request_id)
                METRICS.record_resolution("event_log", describe(res))
                if isinstance(res, Ok):
                    return res.value
                trail["receipt"] = describe(res)
            else:
                trail.setdefault("receipt", "no receipt")

        res = await self.from_log_window(request_id)
        METRICS.record_resolution("log_window", describe(res))
        if isinstance(res, Ok):
            return res.value
        trail["log_window"] = describe(res)

        res = await self.from_simulation(request_id)
        METRICS.record_resolution("simulation", describe(res))
        if isinstance(res, Ok):
            return res.value
        trail["simulation"] = describe(res)

        log.critical("sequence for request %s undiscoverable: %s", request_id, trail)
        raise SequenceResolutionError(
            "sequence number could not be resolved",
            details={"request_id": request_id, "tx_ref": tx_ref, "attempts": trail},
        )


__all__ = ["SequenceResolver", "REQUESTED_TOPIC"]
