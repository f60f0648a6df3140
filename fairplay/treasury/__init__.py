"""Treasury Ledger: custodial account entries, withdrawals and audits."""

from .ledger import TreasuryLedger, payout_entry_id, stake_entry_id
from .types import AuditReport, EntryKind, EntryStatus, TreasuryEntry

__all__ = [
    "TreasuryLedger",
    "TreasuryEntry",
    "EntryKind",
    "EntryStatus",
    "AuditReport",
    "stake_entry_id",
    "payout_entry_id",
]
