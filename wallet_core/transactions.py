"""
Transaction Records Module

Ledger entries for every balance-affecting event. An entry is created either
directly as success (synchronous internal movements) or as pending while an
external settlement is awaited, and is finalized exactly once.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from enum import Enum
import uuid

from .storage import StorageRecord, parse_datetime, parse_decimal


class TransactionMode(Enum):
    """Direction of the movement relative to the entry owner"""
    DEBIT = "DEBIT"
    CREDIT = "CREDIT"


class TransactionStatus(Enum):
    """Settlement lifecycle"""
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class TransactionCategory(Enum):
    """What produced the entry"""
    TRANSFER = "transfer"                    # Peer transfer between two wallets
    EXTERNAL_TRANSFER = "external_transfer"  # Outbound through the inter-bank rail
    INBOUND_TRANSFER = "inbound_transfer"    # Funds received from another bank
    DEPOSIT = "deposit"                      # Card/bank deposit
    SAVINGS = "savings"                      # Main account <-> savings goal
    FEE = "fee"                              # System-initiated charge


@dataclass
class Transaction(StorageRecord):
    """
    Ledger entry owned by one user

    For a success entry new_bal equals prev_bal adjusted by amount per mode.
    """
    user_id: str
    amount: Decimal
    mode: TransactionMode
    reference: str
    status: TransactionStatus = TransactionStatus.PENDING
    category: TransactionCategory = TransactionCategory.TRANSFER
    description: str = ""

    sender_id: Optional[str] = None
    sender_name: Optional[str] = None
    receiver_id: Optional[str] = None
    receiver_name: Optional[str] = None

    prev_bal: Optional[Decimal] = None
    new_bal: Optional[Decimal] = None
    paid_at: Optional[datetime] = None

    # Tax breakdown
    vat_amount: Decimal = Decimal("0")
    nibss_amount: Decimal = Decimal("0")
    is_taxed: bool = False

    # External rail details
    bank_code: Optional[str] = None
    bank_name: Optional[str] = None
    external_transfer: bool = False

    error_message: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.reference:
            raise ValueError("Transaction reference is required")
        if self.amount <= 0:
            raise ValueError("Transaction amount must be positive")

    @property
    def is_pending(self) -> bool:
        return self.status == TransactionStatus.PENDING

    @property
    def total_tax(self) -> Decimal:
        return self.vat_amount + self.nibss_amount

    @property
    def effective_at(self) -> datetime:
        """When the movement counts for daily limits (paid_at, else created_at)"""
        return self.paid_at or self.created_at

    def balances_consistent(self) -> bool:
        """Check new_bal against prev_bal and amount"""
        if self.prev_bal is None or self.new_bal is None:
            return False
        if self.mode == TransactionMode.DEBIT:
            return self.new_bal == self.prev_bal - self.amount
        return self.new_bal == self.prev_bal + self.amount


def new_transaction(
    user_id: str,
    amount: Decimal,
    mode: TransactionMode,
    reference: Optional[str] = None,
    **fields: Any
) -> Transaction:
    """Build a fresh entry with generated id and timestamps"""
    now = datetime.now(timezone.utc)
    return Transaction(
        id=str(uuid.uuid4()),
        created_at=now,
        updated_at=now,
        user_id=user_id,
        amount=amount,
        mode=mode,
        reference=reference or generate_reference(),
        **fields
    )


def generate_reference(prefix: str = "TXN") -> str:
    """Unique settlement reference"""
    return f"{prefix}_{uuid.uuid4().hex[:20].upper()}"


def transaction_to_dict(transaction: Transaction) -> Dict[str, Any]:
    """Convert Transaction to dictionary for storage"""
    return transaction.to_dict()


def transaction_from_dict(data: Dict[str, Any]) -> Transaction:
    """Convert dictionary to Transaction"""
    prev_bal = data.get('prev_bal')
    new_bal = data.get('new_bal')

    return Transaction(
        id=data['id'],
        created_at=parse_datetime(data['created_at']),
        updated_at=parse_datetime(data['updated_at']),
        user_id=data['user_id'],
        amount=Decimal(data['amount']),
        mode=TransactionMode(data['mode']),
        reference=data['reference'],
        status=TransactionStatus(data.get('status', 'pending')),
        category=TransactionCategory(data.get('category', 'transfer')),
        description=data.get('description', ''),
        sender_id=data.get('sender_id'),
        sender_name=data.get('sender_name'),
        receiver_id=data.get('receiver_id'),
        receiver_name=data.get('receiver_name'),
        prev_bal=Decimal(prev_bal) if prev_bal is not None else None,
        new_bal=Decimal(new_bal) if new_bal is not None else None,
        paid_at=parse_datetime(data.get('paid_at')),
        vat_amount=parse_decimal(data.get('vat_amount')),
        nibss_amount=parse_decimal(data.get('nibss_amount')),
        is_taxed=data.get('is_taxed', False),
        bank_code=data.get('bank_code'),
        bank_name=data.get('bank_name'),
        external_transfer=data.get('external_transfer', False),
        error_message=data.get('error_message'),
        metadata=data.get('metadata', {})
    )
