"""
Ledger Module

Owns balance mutation and transaction recording. Every balance change is a
read-modify-write under the per-record lock, committed together with the
ledger entries that describe it inside one storage transaction. A unit of
work either commits completely or leaves balances untouched and its entries
recorded as failed.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from .storage import StorageInterface
from .locks import KeyedLockRegistry, balance_key, reference_key
from .transactions import (
    Transaction, TransactionMode, TransactionStatus,
    transaction_from_dict, transaction_to_dict
)
from .accounts import ACCOUNTS_TABLE
from .currency import round_amount, format_amount
from .exceptions import (
    ValidationError, NotFound, InsufficientFunds, DuplicateReference, LedgerIntegrityError
)
from .logging_config import get_logger, log_action

logger = get_logger("banka.ledger")

TRANSACTIONS_TABLE = "transactions"


@dataclass
class BalanceChange:
    """Balance before and after one movement"""
    prev_bal: Decimal
    new_bal: Decimal


@dataclass
class BalanceLeg:
    """
    One balance movement inside a unit of work

    table/record_id name any balance-bearing record (accounts, savings goals).
    entry, when given, is the ledger entry describing this leg; its prev_bal
    and new_bal are filled in by the ledger. update, when given, is applied
    to the stored record after the balance change (status flags and such).
    """
    table: str
    record_id: str
    amount: Decimal
    mode: TransactionMode
    entry: Optional[Transaction] = None
    update: Optional[Callable[[Dict[str, Any]], None]] = None

    @property
    def lock_key(self) -> str:
        return balance_key(self.table, self.record_id)


class Ledger:
    """
    Atomic balance mutation and transaction recording
    """

    def __init__(self, storage: StorageInterface, locks: KeyedLockRegistry):
        self.storage = storage
        self.locks = locks
        self.transactions_table = TRANSACTIONS_TABLE

    def apply_movement(self, account_id: str, amount: Decimal, mode: TransactionMode) -> BalanceChange:
        """
        Adjust one account balance atomically

        Raises:
            NotFound: If the account does not exist
            InsufficientFunds: If a debit would make the balance negative
        """
        changes = self.post([BalanceLeg(ACCOUNTS_TABLE, account_id, amount, mode)], action="apply_movement")
        return changes[0]

    def post(self, legs: Sequence[BalanceLeg], action: str = "ledger_post") -> List[BalanceChange]:
        """
        Apply several balance legs and record their entries as one unit of work

        Legs are checked in order against running balances, so two legs on
        the same record compound. Nothing is written unless every leg fits.

        Returns:
            One BalanceChange per leg, in order

        Raises:
            ValidationError: If a leg amount is not positive
            NotFound: If a record does not exist
            InsufficientFunds: If a debit leg would make a balance negative
            DuplicateReference: If an entry reference is already recorded
            LedgerIntegrityError: If the commit failed after validation
        """
        if not legs:
            raise ValidationError("Unit of work has no legs")
        for leg in legs:
            if leg.amount is None or leg.amount <= 0:
                raise ValidationError("Movement amount must be positive")

        entries = [leg.entry for leg in legs if leg.entry is not None]
        keys = [leg.lock_key for leg in legs] + [reference_key(entry.reference) for entry in entries]

        with self.locks.hold(*keys):
            for entry in entries:
                if self._reference_exists(entry.reference):
                    raise DuplicateReference(entry.reference)

            records: Dict[tuple, Dict[str, Any]] = {}
            changes: List[BalanceChange] = []
            for leg in legs:
                slot = (leg.table, leg.record_id)
                if slot not in records:
                    record = self.storage.load(leg.table, leg.record_id)
                    if record is None:
                        raise NotFound(f"{leg.table} record {leg.record_id} not found")
                    records[slot] = record
                record = records[slot]

                change = self._compute(record, leg)
                record['balance'] = str(change.new_bal)
                changes.append(change)

            now = datetime.now(timezone.utc)
            for leg, change in zip(legs, changes):
                record = records[(leg.table, leg.record_id)]
                record['updated_at'] = now.isoformat()
                if leg.update:
                    leg.update(record)
                if leg.entry is not None:
                    leg.entry.prev_bal = change.prev_bal
                    leg.entry.new_bal = change.new_bal
                    leg.entry.status = TransactionStatus.SUCCESS
                    leg.entry.paid_at = leg.entry.paid_at or now
                    leg.entry.updated_at = now

            try:
                with self.storage.atomic():
                    for (table, record_id), record in records.items():
                        self.storage.save(table, record_id, record)
                    for entry in entries:
                        self.storage.save(self.transactions_table, entry.id, transaction_to_dict(entry))
            except Exception as e:
                self._record_failure(entries, action, e)
                raise LedgerIntegrityError(f"Unit of work failed to commit: {e}") from e

        for leg, change in zip(legs, changes):
            log_action(logger, "info",
                       f"{leg.mode.value} {format_amount(leg.amount)} on {leg.table}:{leg.record_id}",
                       user_id=leg.entry.user_id if leg.entry else None,
                       action=action, resource=f"{leg.table}:{leg.record_id}",
                       correlation_id=leg.entry.reference if leg.entry else None,
                       extra={"prev_bal": str(change.prev_bal), "new_bal": str(change.new_bal)})
        return changes

    def record_transaction(self, entry: Transaction) -> Transaction:
        """
        Persist an entry without a balance change (pending or failed entries)

        Raises:
            DuplicateReference: If the reference is already recorded
        """
        with self.locks.hold(reference_key(entry.reference)):
            if self._reference_exists(entry.reference):
                raise DuplicateReference(entry.reference)
            self._save_transaction(entry)

        log_action(logger, "info", f"Recorded {entry.status.value} {entry.mode.value} entry",
                   user_id=entry.user_id, action="record_transaction",
                   resource=f"transaction:{entry.id}", correlation_id=entry.reference)
        return entry

    def finalize_pending(
        self,
        reference: str,
        status: TransactionStatus,
        leg: Optional[BalanceLeg] = None,
        paid_at: Optional[datetime] = None,
        error_message: Optional[str] = None
    ) -> Optional[Transaction]:
        """
        Transition a pending entry to success or failed exactly once

        On success the leg (if any) is applied and its balances recorded on the
        entry. Returns None when no entry has this reference or it is no longer
        pending.

        Raises:
            InsufficientFunds: If the leg is a debit the balance cannot cover
            LedgerIntegrityError: If the commit failed
        """
        if status == TransactionStatus.PENDING:
            raise ValidationError("Cannot finalize to pending")

        keys = [reference_key(reference)]
        if leg is not None and status == TransactionStatus.SUCCESS:
            keys.append(leg.lock_key)

        with self.locks.hold(*keys):
            entry = self.find_transaction_by_reference(reference)
            if entry is None or not entry.is_pending:
                return None

            now = datetime.now(timezone.utc)
            record = None
            if leg is not None and status == TransactionStatus.SUCCESS:
                record = self.storage.load(leg.table, leg.record_id)
                if record is None:
                    raise NotFound(f"{leg.table} record {leg.record_id} not found")
                change = self._compute(record, leg)
                record['balance'] = str(change.new_bal)
                record['updated_at'] = now.isoformat()
                if leg.update:
                    leg.update(record)
                entry.amount = leg.amount
                entry.prev_bal = change.prev_bal
                entry.new_bal = change.new_bal

            entry.status = status
            entry.paid_at = paid_at or now
            entry.updated_at = now
            if error_message:
                entry.error_message = error_message

            try:
                with self.storage.atomic():
                    if record is not None:
                        self.storage.save(leg.table, leg.record_id, record)
                    self._save_transaction(entry)
            except Exception as e:
                self._record_failure([entry], "finalize_pending", e)
                raise LedgerIntegrityError(f"Finalizing {reference} failed to commit: {e}") from e

        log_action(logger, "info", f"Entry finalized as {status.value}",
                   user_id=entry.user_id, action="finalize_pending",
                   resource=f"transaction:{entry.id}", correlation_id=reference)
        return entry

    def find_transaction_by_reference(self, reference: str) -> Optional[Transaction]:
        """Get transaction by settlement reference"""
        if not reference:
            return None
        transactions = self.storage.find(self.transactions_table, {"reference": reference})
        if transactions:
            return transaction_from_dict(transactions[0])
        return None

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        """Get transaction by ID"""
        transaction_dict = self.storage.load(self.transactions_table, transaction_id)
        if transaction_dict:
            return transaction_from_dict(transaction_dict)
        return None

    def list_user_transactions(
        self,
        user_id: str,
        mode: Optional[TransactionMode] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        status: Optional[TransactionStatus] = None
    ) -> List[Transaction]:
        """Entries owned by a user, newest first"""
        filters: Dict[str, Any] = {"user_id": user_id}
        if mode:
            filters["mode"] = mode.value
        if status:
            filters["status"] = status.value

        transactions = [transaction_from_dict(data) for data in self.storage.find(self.transactions_table, filters)]
        if start:
            transactions = [t for t in transactions if t.created_at >= start]
        if end:
            transactions = [t for t in transactions if t.created_at <= end]

        transactions.sort(key=lambda t: t.created_at, reverse=True)
        return transactions

    def recent_debits(self, user_id: str, amount: Decimal, since: datetime) -> List[Transaction]:
        """Successful debits of exactly this amount recorded since a point in time"""
        return [
            t for t in self.list_user_transactions(user_id, mode=TransactionMode.DEBIT,
                                                   status=TransactionStatus.SUCCESS)
            if t.amount == amount and t.effective_at >= since
        ]

    def get_balance(self, table: str, record_id: str) -> Decimal:
        record = self.storage.load(table, record_id)
        if record is None:
            raise NotFound(f"{table} record {record_id} not found")
        return Decimal(record.get('balance', '0'))

    def _compute(self, record: Dict[str, Any], leg: BalanceLeg) -> BalanceChange:
        prev_bal = Decimal(record.get('balance', '0'))
        amount = round_amount(leg.amount)
        if leg.mode == TransactionMode.DEBIT:
            new_bal = prev_bal - amount
            if new_bal < 0:
                raise InsufficientFunds(
                    f"Insufficient balance: {format_amount(prev_bal)} available, {format_amount(amount)} required"
                )
        else:
            new_bal = prev_bal + amount
        return BalanceChange(prev_bal=prev_bal, new_bal=new_bal)

    def _reference_exists(self, reference: str) -> bool:
        return bool(self.storage.find(self.transactions_table, {"reference": reference}))

    def _save_transaction(self, transaction: Transaction) -> None:
        """Save transaction to storage"""
        self.storage.save(self.transactions_table, transaction.id, transaction_to_dict(transaction))

    def _record_failure(self, entries: Sequence[Transaction], action: str, error: Exception) -> None:
        """Persist entries of a failed unit of work as failed"""
        logger.critical(f"Ledger commit failed during {action}: {error}", exc_info=True)
        for entry in entries:
            entry.status = TransactionStatus.FAILED
            entry.prev_bal = None
            entry.new_bal = None
            entry.error_message = str(error)
            entry.updated_at = datetime.now(timezone.utc)
            try:
                self._save_transaction(entry)
            except Exception:
                logger.critical(f"Could not record failed entry {entry.reference}", exc_info=True)
