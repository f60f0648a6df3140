from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .coordinator import SettlementCoordinator

log = logging.getLogger(__name__)


class ExpirySweeper:
    """Runs `SettlementCoordinator.sweep` every `interval_s` seconds until stopped."""

    def __init__(self, coordinator: SettlementCoordinator, interval_s: float = 15.0) -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be positive")
        self._coordinator = coordinator
        self._interval = float(interval_s)
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self.runs = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                expired = await self._coordinator.sweep()
                if expired:
                    log.info("sweep expired %d request(s)", len(expired))
            except Exception:  # noqa: BLE001
                log.warning("expiry sweep failed", exc_info=True)
            self.runs += 1
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                continue

    def start(self) -> None:
        if self._task is None:
            self._stop.clear()
            self._task = asyncio.create_task(self._loop(), name="expiry-sweeper")

    async def stop(self) -> None:
        self._stop.set()
        if self._task is not None:
            await self._task
            self._task = None


__all__ = ["ExpirySweeper"]
