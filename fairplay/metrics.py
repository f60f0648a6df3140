"""
Prometheus metrics for the fairplay settlement layer.

Instruments
-----------
  • requests_total           : request submissions per outcome
  • fulfillments_total       : fulfillment callbacks per outcome
  • resolutions_total        : resolver attempts per strategy and outcome
  • treasury_entries_total   : ledger entries per kind and status transition
  • settlement_retries_total : parked settlement work retried, per action
  • rpc_seconds              : latency of external calls

Label vocabularies are small and closed; unknown values collapse into
"other" so cardinality stays bounded.

Usage
-----
    from fairplay.metrics import METRICS

    METRICS.record_request("awaiting")
    with METRICS.rpc_timer("quote_fee"):
        await provider.quote_fee(handle)
"""

from __future__ import annotations

from contextlib import contextmanager
from time import perf_counter
from typing import Iterable, Iterator

from prometheus_client import REGISTRY, Counter, Histogram

# --------- Vocabularies ---------

_REQUEST_OUTCOMES = (
    "awaiting",            # dispatched, sequence number known
    "awaiting_unresolved", # dispatched, response unreadable
    "duplicate",           # idempotent re-submit
    "rejected",            # policy rejection before dispatch
    "failed",              # transient failure before dispatch
)

_FULFILLMENT_OUTCOMES = (
    "fulfilled",
    "duplicate",
    "integrity_violation",
    "unknown_sequence",
    "late",
)

_RESOLVER_STRATEGIES = ("event_log", "simulation", "scan", "log_window")
_RESOLVER_OUTCOMES = ("ok", "not_found", "error")

_ENTRY_KINDS = ("deposit", "withdrawal", "stake", "payout", "compensation")
_ENTRY_STATUSES = ("pending", "confirmed", "failed")

_SETTLEMENT_ACTIONS = ("credit", "refund")

_RPC_SECONDS_BUCKETS = (
    0.01, 0.025, 0.05,
    0.1, 0.25, 0.5,
    1.0, 2.5, 5.0, 10.0, 30.0,
)


def _pick(value: str, vocab: Iterable[str], fallback: str = "other") -> str:
    return value if value in vocab else fallback


class Metrics:
    """
    Container for all fairplay Prometheus instruments.

    Args:
        namespace: Prometheus metric namespace (prefix).
        subsystem: Prometheus metric subsystem.
        registry:  Prometheus registry to register the metrics with.
    """

    def __init__(
        self,
        *,
        namespace: str = "fairplay",
        subsystem: str = "settlement",
        registry=REGISTRY,
        rpc_buckets: Iterable[float] = _RPC_SECONDS_BUCKETS,
    ) -> None:
        self.requests_total = Counter(
            "requests_total",
            "Randomness request submissions, labeled by outcome.",
            labelnames=("outcome",),
            namespace=namespace,
            subsystem=subsystem,
            registry=registry,
        )
        self.fulfillments_total = Counter(
            "fulfillments_total",
            "Fulfillment callbacks processed, labeled by outcome.",
            labelnames=("outcome",),
            namespace=namespace,
            subsystem=subsystem,
            registry=registry,
        )
        self.resolutions_total = Counter(
            "resolutions_total",
            "Handle / sequence resolution attempts, labeled by strategy and outcome.",
            labelnames=("strategy", "outcome"),
            namespace=namespace,
            subsystem=subsystem,
            registry=registry,
        )
        self.treasury_entries_total = Counter(
            "treasury_entries_total",
            "Treasury ledger entry writes, labeled by kind and resulting status.",
            labelnames=("kind", "status"),
            namespace=namespace,
            subsystem=subsystem,
            registry=registry,
        )
        self.settlement_retries_total = Counter(
            "settlement_retries_total",
            "Parked settlement actions retried, labeled by action.",
            labelnames=("action",),
            namespace=namespace,
            subsystem=subsystem,
            registry=registry,
        )
        self.rpc_seconds = Histogram(
            "rpc_seconds",
            "Latency of external provider/chain calls (seconds).",
            labelnames=("call",),
            buckets=tuple(rpc_buckets),
            namespace=namespace,
            subsystem=subsystem,
            registry=registry,
        )

    # ----- Recording helpers -------------------------------------------------

    def record_request(self, outcome: str) -> None:
        self.requests_total.labels(outcome=_pick(outcome, _REQUEST_OUTCOMES, "failed")).inc()

    def record_fulfillment(self, outcome: str) -> None:
        self.fulfillments_total.labels(outcome=_pick(outcome, _FULFILLMENT_OUTCOMES, "unknown_sequence")).inc()

    def record_resolution(self, strategy: str, outcome: str) -> None:
        self.resolutions_total.labels(
            strategy=_pick(strategy, _RESOLVER_STRATEGIES),
            outcome=_pick(outcome, _RESOLVER_OUTCOMES, "error"),
        ).inc()

    def record_entry(self, kind: str, status: str) -> None:
        self.treasury_entries_total.labels(
            kind=_pick(kind, _ENTRY_KINDS),
            status=_pick(status, _ENTRY_STATUSES),
        ).inc()

    def record_settlement_retry(self, action: str) -> None:
        self.settlement_retries_total.labels(action=_pick(action, _SETTLEMENT_ACTIONS)).inc()

    @contextmanager
    def rpc_timer(self, call: str) -> Iterator[None]:
        """Context manager measuring an external call's latency."""
        t0 = perf_counter()
        try:
            yield
        finally:
            self.rpc_seconds.labels(call=call).observe(max(0.0, perf_counter() - t0))


# Default, process-wide metrics instance.
METRICS = Metrics()

__all__ = ["Metrics", "METRICS"]
