"""
Game history, per-account statistics and after-the-fact result verification.

Records are written once per request id (`game:<id>`); a repeated record for
the same request replaces nothing.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from ..chain.types import norm_hex
from ..commit_reveal import mix_random_value, verify as verify_commitment
from ..errors import RejectedError, RequestNotFound
from ..explorer import ExplorerLinks
from ..store import KeyValue, decode_record, encode_record
from ..tracker.store import RequestStore
from ..tracker.types import RandomnessRequest, RequestState

if TYPE_CHECKING:
    from ..settlement.outcome import GameOutcome

log = logging.getLogger(__name__)

_GAME = b"game:"


def _from_hex(value: Optional[str]) -> bytes:
    if not value:
        return b""
    return bytes.fromhex(value[2:] if value.startswith("0x") else value)


class GameHistory:
    def __init__(
        self,
        kv: KeyValue,
        requests: RequestStore,
        links: Optional[ExplorerLinks] = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.kv = kv
        self.requests = requests
        self.links = links or ExplorerLinks()
        self.clock = clock

    def record(
        self,
        request: RandomnessRequest,
        outcome: Optional[GameOutcome] = None,
        stake: Optional[int] = None,
    ) -> Dict[str, Any]:
        key = _GAME + request.id.encode("ascii")
        raw = self.kv.get(key)
        if raw:
            return decode_record(raw)

        wagered = request.stake if stake is None else int(stake)
        payout = outcome.payout if outcome is not None else 0
        rec = {
            "requestId": request.id,
            "account": request.requester,
            "category": request.game_category,
            "variant": request.game_variant,
            "status": request.state.value,
            "stake": wagered,
            "payout": payout,
            "win": bool(outcome.win) if outcome is not None else False,
            "multiplierBps": outcome.multiplier_bps if outcome is not None else 0,
            "randomValue": request.random_value,
            "sequenceNumber": request.sequence_number,
            "txRef": request.tx_ref,
            "explorerLink": self.links.tx_link(request.tx_ref),
            "entropyLink": self.links.entropy_link(request.tx_ref),
            "at": self.clock(),
        }
        self.kv.put(key, encode_record(rec))
        log.debug("history: recorded %s for %s (%s)", request.id, request.requester, rec["status"])
        return rec

    def _all(self) -> List[Dict[str, Any]]:
        out = [decode_record(raw) for _, raw in self.kv.iter_prefix(_GAME)]
        out.sort(key=lambda r: (r["at"], r["requestId"]), reverse=True)
        return out

    def user_history(self, account: str, limit: int = 50) -> List[Dict[str, Any]]:
        acct = norm_hex(account)
        return [r for r in self._all() if r["account"] == acct][: max(0, int(limit))]

    def recent_games(self, limit: int = 20) -> List[Dict[str, Any]]:
        return self._all()[: max(0, int(limit))]

    def user_stats(self, account: str) -> Dict[str, Any]:
        acct = norm_hex(account)
        stats: Dict[str, Any] = {"account": acct, "games": 0, "wins": 0, "wagered": 0, "paidOut": 0, "byCategory": {}}
        for r in self._all():
            if r["account"] != acct or r["status"] != RequestState.FULFILLED.value:
                continue
            cat = stats["byCategory"].setdefault(
                r["category"] or "uncategorized", {"games": 0, "wins": 0, "wagered": 0, "paidOut": 0}
            )
            for bucket in (stats, cat):
                bucket["games"] += 1
                bucket["wins"] += 1 if r["win"] else 0
                bucket["wagered"] += r["stake"]
                bucket["paidOut"] += r["payout"]
        stats["net"] = stats["paidOut"] - stats["wagered"]
        return stats

    def verify(self, request_id: str) -> Dict[str, Any]:
        """
        Recompute a fulfilled request's commitment and random value from the
        revealed seed and provider contribution it stored.
        """
        req = self.requests.get(request_id)
        if req is None:
            raise RequestNotFound(request_id=request_id)
        if req.state is not RequestState.FULFILLED:
            raise RejectedError("request has not been fulfilled", details={"request_id": request_id, "state": req.state.value})

        seed = _from_hex(req.revealed_seed)
        commitment_ok = verify_commitment(req.commitment, seed)
        recomputed = "0x" + mix_random_value(seed, _from_hex(req.provider_value)).hex()
        value_ok = recomputed == req.random_value
        if not (commitment_ok and value_ok):
            log.critical("history: stored result for %s fails verification", request_id)
        return {
            "requestId": req.id,
            "sequenceNumber": req.sequence_number,
            "commitment": req.commitment,
            "revealedSeed": req.revealed_seed,
            "randomValue": req.random_value,
            "commitmentValid": commitment_ok,
            "randomValueValid": value_ok,
            "verified": commitment_ok and value_ok,
            "txRef": req.tx_ref,
            "explorerLink": self.links.tx_link(req.tx_ref),
            "entropyLink": self.links.entropy_link(req.tx_ref),
        }


__all__ = ["GameHistory"]
