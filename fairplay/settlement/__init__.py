"""Settlement Coordinator, outcome helpers and background loops."""

from .coordinator import GameStart, SettlementCoordinator, refund_reference
from .outcome import BPS, GameOutcome, MultiplierTable, OutcomeEvaluator, uniform_int
from .sweeper import ExpirySweeper
from .watcher import FulfillmentWatcher, decode_fulfillment

__all__ = [
    "SettlementCoordinator",
    "GameStart",
    "refund_reference",
    "OutcomeEvaluator",
    "GameOutcome",
    "MultiplierTable",
    "uniform_int",
    "BPS",
    "ExpirySweeper",
    "FulfillmentWatcher",
    "decode_fulfillment",
]
