"""
Treasury Ledger: append-only record of custodial account movements.

Typical flow
~~~~~~~~~~~~
1) A player sends funds to the treasury address; `record_deposit` writes a
   PENDING entry which `settle_from_receipt` (or `confirm`) later settles.
2) A game start places a stake hold (`hold_stake`, PENDING STAKE). On
   fulfillment the hold is captured and the payout credited; on expiry the
   hold is released and the stake refunded through `withdraw`.
3) `withdraw` re-reads the live treasury balance under the treasury lock
   before every authorization. The ledger total is never the authority.

Balances
~~~~~~~~
  reconcile(account)  signed sum of CONFIRMED entries
  available(account)  reconcile minus PENDING debits (holds, in-flight withdrawals)

Entries are never edited once settled; corrections go through `compensate`,
which writes a reversing COMPENSATION entry.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from typing import Callable, Dict, Iterator, List, Optional

from ..chain.interfaces import ChainReader, TransferSender
from ..chain.receipts import wait_for_receipt
from ..chain.types import norm_hex
from ..constants import DEFAULT_MAX_DEPOSIT, DEFAULT_MIN_DEPOSIT, DEFAULT_WITHDRAW_GAS_LIMIT
from ..errors import (
    DepositOutOfRange,
    EntryNotFound,
    InsufficientAccountBalance,
    InsufficientTreasuryFunds,
    InvalidAmount,
    InvalidTransition,
    LedgerInconsistency,
    RejectedError,
    TransientError,
)
from ..metrics import METRICS
from ..retry import RetryPolicy, aretry_call
from ..store import KeyValue, decode_record, encode_record
from .types import AuditReport, EntryKind, EntryStatus, TreasuryEntry

log = logging.getLogger(__name__)

_ENTRY = b"entry:"
_REF = b"ref:"


def _entry_key(entry_id: str) -> bytes:
    return _ENTRY + entry_id.encode("utf-8")


def _ref_key(reference: str) -> bytes:
    return _REF + reference.encode("utf-8")


def stake_entry_id(request_id: str) -> str:
    return f"stake:{request_id}"


def payout_entry_id(request_id: str) -> str:
    return f"payout:{request_id}"


class TreasuryLedger:
    def __init__(
        self,
        kv: KeyValue,
        chain: ChainReader,
        sender: TransferSender,
        *,
        treasury_address: str,
        min_deposit: int = DEFAULT_MIN_DEPOSIT,
        max_deposit: int = DEFAULT_MAX_DEPOSIT,
        withdraw_gas_limit: int = DEFAULT_WITHDRAW_GAS_LIMIT,
        timeout_s: float = 30.0,
        receipt_timeout_s: float = 120.0,
        policy: Optional[RetryPolicy] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.kv = kv
        self.chain = chain
        self.sender = sender
        self.treasury_address = norm_hex(treasury_address)
        self.min_deposit = int(min_deposit)
        self.max_deposit = int(max_deposit)
        self.withdraw_gas_limit = int(withdraw_gas_limit)
        self.timeout_s = float(timeout_s)
        self.receipt_timeout_s = float(receipt_timeout_s)
        self.policy = policy or RetryPolicy()
        self.clock = clock
        self._lock = threading.RLock()
        self._treasury_lock = asyncio.Lock()

    # ---- storage ----

    def _put(self, entry: TreasuryEntry) -> TreasuryEntry:
        with self.kv.transaction():
            self.kv.put(_entry_key(entry.id), encode_record(entry.to_dict()))
            if entry.reference:
                self.kv.put(_ref_key(entry.reference), entry.id.encode("utf-8"))
        METRICS.record_entry(entry.kind.value, entry.status.value)
        return entry

    def find(self, entry_id: str) -> Optional[TreasuryEntry]:
        raw = self.kv.get(_entry_key(entry_id))
        return TreasuryEntry.from_dict(decode_record(raw)) if raw else None

    def get(self, entry_id: str) -> TreasuryEntry:
        entry = self.find(entry_id)
        if entry is None:
            raise EntryNotFound(entry_id=entry_id)
        return entry

    def by_reference(self, reference: str) -> Optional[TreasuryEntry]:
        raw = self.kv.get(_ref_key(reference))
        return self.find(raw.decode("utf-8")) if raw else None

    def iter_entries(self) -> Iterator[TreasuryEntry]:
        for _, raw in self.kv.iter_prefix(_ENTRY):
            yield TreasuryEntry.from_dict(decode_record(raw))

    def entries(self, account: Optional[str] = None) -> List[TreasuryEntry]:
        acct = norm_hex(account) if account else None
        out = [e for e in self.iter_entries() if acct is None or e.account == acct]
        out.sort(key=lambda e: (e.timestamp, e.id))
        return out

    # ---- balances ----

    def reconcile(self, account: str) -> int:
        """Signed sum of CONFIRMED entries for `account`. Audit view only."""
        acct = norm_hex(account)
        return sum(
            e.signed_amount for e in self.iter_entries() if e.account == acct and e.status is EntryStatus.CONFIRMED
        )

    def available(self, account: str) -> int:
        acct = norm_hex(account)
        total = 0
        for e in self.iter_entries():
            if e.account != acct:
                continue
            if e.status is EntryStatus.CONFIRMED:
                total += e.signed_amount
            elif e.status is EntryStatus.PENDING and e.is_debit:
                total -= e.amount
        return total

    def in_flight(self) -> int:
        """Total of PENDING withdrawals, dispatched or about to be."""
        return sum(
            e.amount
            for e in self.iter_entries()
            if e.kind is EntryKind.WITHDRAWAL and e.status is EntryStatus.PENDING
        )

    async def live_balance(self) -> int:
        return int(
            await aretry_call(
                self._bounded, self.chain.get_balance, self.treasury_address, policy=self.policy, op="treasury_balance"
            )
        )

    async def _bounded(self, fn: Callable, *args) -> object:
        with METRICS.rpc_timer(getattr(fn, "__name__", "call")):
            return await asyncio.wait_for(fn(*args), timeout=self.timeout_s)

    # ---- deposits ----

    def record_deposit(self, account: str, amount: int, tx_ref: str) -> TreasuryEntry:
        amount = int(amount)
        if amount <= 0:
            raise InvalidAmount(amount=amount)
        if not self.min_deposit <= amount <= self.max_deposit:
            raise DepositOutOfRange(amount=amount, minimum=self.min_deposit, maximum=self.max_deposit)

        ref = norm_hex(tx_ref)
        with self._lock:
            existing = self.by_reference(f"deposit:{ref}")
            if existing is not None:
                if existing.account != norm_hex(account) or existing.amount != amount:
                    raise RejectedError(
                        "deposit transaction already recorded with different terms",
                        details={"tx_ref": ref, "entry_id": existing.id},
                    )
                return existing
            entry = TreasuryEntry(
                id=f"dep:{ref}",
                kind=EntryKind.DEPOSIT,
                account=norm_hex(account),
                amount=amount,
                tx_ref=ref,
                reference=f"deposit:{ref}",
                timestamp=self.clock(),
            )
            self._put(entry)
        log.info("deposit %d recorded for %s (tx=%s)", amount, entry.account, ref)
        return entry

    # ---- settlement of pending entries ----

    def confirm(self, entry_id: str, tx_ref: Optional[str] = None) -> TreasuryEntry:
        with self._lock:
            entry = self.get(entry_id)
            if entry.status is EntryStatus.CONFIRMED:
                return entry
            entry = self._put(entry.confirmed(self.clock(), tx_ref))
        log.info("entry %s confirmed (%s %d for %s)", entry.id, entry.kind.value, entry.amount, entry.account)
        return entry

    def fail(self, entry_id: str, reason: str) -> TreasuryEntry:
        with self._lock:
            entry = self.get(entry_id)
            if entry.status is EntryStatus.FAILED:
                return entry
            entry = self._put(entry.failed(self.clock(), reason))
        log.warning("entry %s failed: %s", entry.id, reason)
        return entry

    async def settle_from_receipt(self, entry_id: str) -> TreasuryEntry:
        """
        Settle a pending entry from its transaction receipt.

        status 1 -> CONFIRMED, status 0 -> FAILED, no receipt yet -> unchanged.
        """
        entry = self.get(entry_id)
        if entry.final or not entry.tx_ref:
            return entry
        receipt = await aretry_call(
            self._bounded, self.chain.get_transaction_receipt, entry.tx_ref, policy=self.policy, op="receipt"
        )
        if receipt is None:
            return entry
        if receipt.succeeded:
            return self.confirm(entry_id)
        return self.fail(entry_id, "transaction reverted")

    async def settle_dispatched(self) -> List[TreasuryEntry]:
        """Poll receipts for every pending entry that carries a tx reference."""
        settled: List[TreasuryEntry] = []
        for entry in self.entries():
            if entry.final or not entry.tx_ref:
                continue
            try:
                after = await self.settle_from_receipt(entry.id)
            except TransientError as e:
                log.warning("receipt for %s unavailable: %s", entry.id, e)
                continue
            if after.final:
                settled.append(after)
        return settled

    # ---- withdrawals ----

    async def withdraw(
        self,
        account: str,
        amount: int,
        destination: Optional[str] = None,
        *,
        reference: Optional[str] = None,
        wait: bool = False,
    ) -> TreasuryEntry:
        """
        Transfer `amount` from the treasury to `destination` (default: `account`).

        The returned entry is PENDING until the transfer's outcome is known;
        a dispatched transfer is not a settled one. With `reference`, at most
        one non-failed withdrawal exists per reference and repeats return it.

        Raises:
            InvalidAmount, InsufficientAccountBalance, InsufficientTreasuryFunds
            RejectedError from the sender (entry marked FAILED)
            TransientError when the dispatch outcome is unknown (entry stays PENDING)
        """
        amount = int(amount)
        if amount <= 0:
            raise InvalidAmount(amount=amount)
        acct = norm_hex(account)
        to = norm_hex(destination) if destination else acct

        async with self._treasury_lock:
            if reference:
                prior = self.by_reference(reference)
                if prior is not None and prior.status is not EntryStatus.FAILED:
                    log.debug("withdraw: reference %s already served by %s", reference, prior.id)
                    return prior

            have = self.available(acct)
            if have < amount:
                raise InsufficientAccountBalance(required=amount, available=have, details={"account": acct})

            live = await self.live_balance()

            # re-checked: stake holds can land while the live balance is read.
            # No await between the account check and the debit write.
            with self._lock:
                have = self.available(acct)
                if have < amount:
                    raise InsufficientAccountBalance(required=amount, available=have, details={"account": acct})
                spendable = live - self.in_flight()
                if spendable < amount:
                    log.warning(
                        "withdraw: treasury short for %s: need %d, live=%d spendable=%d", acct, amount, live, spendable
                    )
                    raise InsufficientTreasuryFunds(
                        required=amount, available=max(0, spendable), details={"live_balance": live}
                    )
                entry = self._put(
                    TreasuryEntry(
                        id=f"wd:{uuid.uuid4().hex}",
                        kind=EntryKind.WITHDRAWAL,
                        account=acct,
                        amount=amount,
                        reference=reference,
                        note=f"to {to}",
                        timestamp=self.clock(),
                    )
                )
            try:
                tx_ref = await asyncio.wait_for(
                    self.sender.transfer(to, amount, gas_limit=self.withdraw_gas_limit), timeout=self.timeout_s
                )
            except RejectedError as e:
                self.fail(entry.id, e.message)
                raise
            except (TransientError, asyncio.TimeoutError) as e:
                # the transfer may have been broadcast; the entry keeps the funds held
                log.error("withdraw: outcome of %s unknown, left pending: %s", entry.id, e)
                if isinstance(e, TransientError):
                    raise
                raise TransientError("treasury transfer timed out", details={"entry_id": entry.id}) from e

            with self._lock:
                entry = self._put(self.get(entry.id).dispatched(norm_hex(tx_ref)))
            log.info("withdrawal %s of %d dispatched to %s (tx=%s)", entry.id, amount, to, entry.tx_ref)

        if wait:
            await wait_for_receipt(self.chain, entry.tx_ref, timeout_s=self.receipt_timeout_s)
            entry = await self.settle_from_receipt(entry.id)
        return entry

    # ---- game stakes ----

    def hold_stake(self, account: str, request_id: str, amount: int) -> TreasuryEntry:
        amount = int(amount)
        if amount <= 0:
            raise InvalidAmount(amount=amount)
        acct = norm_hex(account)
        eid = stake_entry_id(request_id)
        with self._lock:
            existing = self.find(eid)
            if existing is not None:
                return existing
            have = self.available(acct)
            if have < amount:
                raise InsufficientAccountBalance(required=amount, available=have, details={"account": acct})
            entry = self._put(
                TreasuryEntry(
                    id=eid,
                    kind=EntryKind.STAKE,
                    account=acct,
                    amount=amount,
                    reference=eid,
                    timestamp=self.clock(),
                )
            )
        log.info("stake %d held for %s on request %s", amount, acct, request_id)
        return entry

    def capture_stake(self, request_id: str) -> TreasuryEntry:
        return self.confirm(stake_entry_id(request_id))

    def release_stake(self, request_id: str) -> TreasuryEntry:
        return self.fail(stake_entry_id(request_id), "stake hold released")

    def credit_payout(self, account: str, request_id: str, amount: int) -> Optional[TreasuryEntry]:
        """Credit a game payout; repeats for the same request return the first entry."""
        amount = int(amount)
        if amount < 0:
            raise InvalidAmount(amount=amount, message="payout must be non-negative")
        if amount == 0:
            return None
        eid = payout_entry_id(request_id)
        with self._lock:
            existing = self.find(eid)
            if existing is not None:
                return existing
            now = self.clock()
            entry = self._put(
                TreasuryEntry(
                    id=eid,
                    kind=EntryKind.PAYOUT,
                    account=norm_hex(account),
                    amount=amount,
                    status=EntryStatus.CONFIRMED,
                    reference=eid,
                    timestamp=now,
                    settled_at=now,
                )
            )
        log.info("payout %d credited to %s for request %s", amount, entry.account, request_id)
        return entry

    # ---- corrections / audit ----

    def compensate(self, entry_id: str, reason: str) -> TreasuryEntry:
        """
        Correct an entry without editing it.

        PENDING entries are marked FAILED. CONFIRMED entries get a reversing
        COMPENSATION entry (returned). FAILED entries need no correction.
        """
        with self._lock:
            entry = self.get(entry_id)
            if entry.status is EntryStatus.PENDING:
                log.error("compensate: pending entry %s failed: %s", entry_id, reason)
                return self.fail(entry_id, reason)
            if entry.status is EntryStatus.FAILED:
                raise InvalidTransition(subject=entry_id, current=entry.status.value, target="compensated")
            if entry.kind is EntryKind.COMPENSATION:
                raise InvalidTransition(
                    subject=entry_id, current=entry.status.value, target="compensated",
                    message="compensation entries cannot be reversed",
                )

            cid = f"comp:{entry_id}"
            existing = self.find(cid)
            if existing is not None:
                return existing
            direction = 1 if entry.is_debit else -1
            if direction < 0:
                have = self.available(entry.account)
                if have < entry.amount:
                    raise InsufficientAccountBalance(
                        required=entry.amount, available=have, details={"account": entry.account, "entry_id": entry_id}
                    )
            now = self.clock()
            comp = self._put(
                TreasuryEntry(
                    id=cid,
                    kind=EntryKind.COMPENSATION,
                    account=entry.account,
                    amount=entry.amount,
                    status=EntryStatus.CONFIRMED,
                    reference=cid,
                    note=reason,
                    timestamp=now,
                    settled_at=now,
                    direction=direction,
                )
            )
        log.error("compensating entry %s written for %s: %s", cid, entry_id, reason)
        return comp

    def liabilities(self) -> int:
        return sum(e.signed_amount for e in self.iter_entries() if e.status is EntryStatus.CONFIRMED)

    async def audit(self, *, raise_on_fail: bool = False) -> AuditReport:
        report = AuditReport(liabilities=self.liabilities(), in_flight=self.in_flight(), live_balance=await self.live_balance())
        if not report.consistent:
            log.critical("treasury audit failed: %s", report.to_dict())
            if raise_on_fail:
                raise LedgerInconsistency("ledger liabilities exceed the live treasury balance", details=report.to_dict())
        return report

    def balances(self) -> Dict[str, int]:
        out: Dict[str, int] = {}
        for e in self.iter_entries():
            if e.status is EntryStatus.CONFIRMED:
                out[e.account] = out.get(e.account, 0) + e.signed_amount
        return out


__all__ = ["TreasuryLedger", "stake_entry_id", "payout_entry_id"]
