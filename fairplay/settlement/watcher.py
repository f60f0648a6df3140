"""
Fulfillment watcher: polls the consuming contract for RandomnessFulfilled
events and feeds them to the coordinator.

The next block to scan is persisted under `watch:cursor` so a restart
resumes where it stopped. Events for sequence numbers this service never
issued are skipped.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from ..chain.abi import decode_uint, event_topic, words
from ..chain.interfaces import ChainReader
from ..chain.types import LogEntry, norm_hex
from ..constants import EVENT_RANDOMNESS_FULFILLED
from ..errors import FairplayError, IntegrityError, InvalidTransition, RequestNotFound
from ..store import KeyValue
from .coordinator import SettlementCoordinator

log = logging.getLogger(__name__)

FULFILLED_TOPIC = event_topic(EVENT_RANDOMNESS_FULFILLED)
_CURSOR = b"watch:cursor"


def decode_fulfillment(entry: LogEntry) -> Optional[Dict[str, Any]]:
    """(sequence_number, revealed_seed, provider_value) from a RandomnessFulfilled log."""
    if len(entry.topics) < 2 or entry.topics[0] != FULFILLED_TOPIC:
        return None
    try:
        body = words(entry.data)
    except ValueError:
        return None
    if len(body) < 2:
        return None
    return {
        "sequence_number": decode_uint(entry.topics[1]),
        "revealed_seed": body[0],
        "provider_value": body[1],
    }


class FulfillmentWatcher:
    def __init__(
        self,
        chain: ChainReader,
        coordinator: SettlementCoordinator,
        kv: KeyValue,
        *,
        consumer_address: str,
        poll_interval_s: float = 2.0,
        max_range: int = 5000,
    ) -> None:
        self._chain = chain
        self._coordinator = coordinator
        self._kv = kv
        self._consumer = norm_hex(consumer_address)
        self._interval = float(poll_interval_s)
        self._max_range = int(max_range)
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._failure_streak = 0

    def _cursor(self) -> Optional[int]:
        raw = self._kv.get(_CURSOR)
        return int(raw.decode("ascii")) if raw else None

    def _set_cursor(self, block: int) -> None:
        self._kv.put(_CURSOR, str(int(block)).encode("ascii"))

    async def poll_once(self) -> List[Dict[str, Any]]:
        head = await self._chain.block_number()
        start = self._cursor()
        if start is None:
            start = max(0, head - self._max_range)
        if start > head:
            return []
        end = min(head, start + self._max_range - 1)

        logs = await self._chain.get_logs(self._consumer, [FULFILLED_TOPIC], start, end)
        settled: List[Dict[str, Any]] = []
        for entry in logs:
            event = decode_fulfillment(entry)
            if event is None:
                continue
            try:
                settled.append(await self._coordinator.on_fulfillment(**event))
            except RequestNotFound:
                log.debug("watcher: sequence %d is not ours", event["sequence_number"])
            except InvalidTransition as e:
                log.warning("watcher: fulfillment for %d not applied: %s", event["sequence_number"], e)
            except IntegrityError:
                # already alerted by the tracker; the request waits for an operator
                continue
        self._set_cursor(end + 1)
        return settled

    def _next_wait(self, *, success: bool) -> float:
        if success:
            self._failure_streak = 0
            return self._interval
        self._failure_streak += 1
        return min(self._interval * (2 ** self._failure_streak), 30.0)

    async def _loop(self) -> None:
        while not self._stop.is_set():
            success = True
            try:
                await self.poll_once()
            except FairplayError as e:
                log.warning("watcher: poll failed: %s", e)
                success = False
            except Exception:  # noqa: BLE001
                log.warning("watcher: poll failed", exc_info=True)
                success = False
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._next_wait(success=success))
            except asyncio.TimeoutError:
                continue

    def start(self) -> None:
        if self._task is None:
            self._stop.clear()
            self._task = asyncio.create_task(self._loop(), name="fulfillment-watcher")

    async def stop(self) -> None:
        self._stop.set()
        if self._task is not None:
            await self._task
            self._task = None


__all__ = ["FulfillmentWatcher", "FULFILLED_TOPIC", "decode_fulfillment"]
