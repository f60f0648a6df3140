"""
Receipt polling against any `ChainReader`.
"""

from __future__ import annotations

import asyncio
import time
from typing import Optional

from ..errors import RpcTimeout
from .interfaces import ChainReader
from .types import Receipt


async def wait_for_receipt(
    chain: ChainReader,
    tx_ref: str,
    *,
    timeout_s: float = 60.0,
    poll_interval_s: float = 0.5,
    max_interval_s: float = 2.5,
    backoff: float = 1.25,
) -> Receipt:
    """
    Poll for a receipt until it arrives or timeout is reached.

    Raises:
        RpcTimeout when no receipt shows up before the deadline
    """
    deadline = time.monotonic() + float(timeout_s)
    interval = float(poll_interval_s)

    while True:
        rec: Optional[Receipt] = await chain.get_transaction_receipt(tx_ref)
        if rec is not None:
            return rec

        if time.monotonic() >= deadline:
            raise RpcTimeout(
                "timeout waiting for receipt",
                details={"tx_ref": tx_ref, "timeout_s": timeout_s},
            )

        await asyncio.sleep(interval)
        interval = min(interval * float(backoff), float(max_interval_s))


__all__ = ["wait_for_receipt"]
