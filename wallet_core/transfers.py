"""
Transfer Coordinator Module

Orchestrates funds movements initiated by a wallet holder:

- internal peer transfers between two wallet accounts, applied synchronously
  as one ledger unit of work (sender debit of amount plus tax, receiver credit
  of amount, two success entries)
- external transfers through the inter-bank switch, which only submit the
  request and record a pending entry; balances change when the settlement
  webhook arrives
- deposit initiation through the card processor (pending credit entry)
"""

from decimal import Decimal
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
import time

from .accounts import Account, AccountManager, ACCOUNTS_TABLE
from .ledger import Ledger, BalanceLeg
from .tax import TaxEngine, TaxBreakdown
from .rails import InterBankClient, CardDepositClient
from .transactions import (
    Transaction, TransactionMode, TransactionStatus, TransactionCategory,
    new_transaction, generate_reference
)
from .currency import to_amount, to_minor_units, format_amount
from .exceptions import ValidationError, NotFound, InvalidPin, InsufficientFunds, DuplicateReference
from .logging_config import get_logger, log_action

logger = get_logger("banka.transfers")


@dataclass
class TransferResult:
    """Outcome of a completed internal transfer"""
    reference: str
    amount: Decimal
    tax: TaxBreakdown
    sender_entry: Transaction
    receiver_entry: Transaction
    free_transactions_left: int

    @property
    def total_debited(self) -> Decimal:
        return self.sender_entry.amount


@dataclass
class ExternalTransferResult:
    """Outcome of an external transfer submission"""
    reference: str
    amount: Decimal
    tax: TaxBreakdown
    status: str = "initiated"
    rail_response: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DepositLink:
    """Hosted payment link for a pending deposit"""
    reference: str
    payment_url: str
    access_code: Optional[str]
    amount: Decimal
    transaction_id: str


class TransferCoordinator:
    """
    Validates, prices and applies transfers
    """

    def __init__(
        self,
        accounts: AccountManager,
        ledger: Ledger,
        tax: TaxEngine,
        interbank: InterBankClient,
        card: CardDepositClient,
        bank_name: str = "Banka Bank",
        min_transfer_amount: Decimal = Decimal("100"),
        min_deposit_amount: Decimal = Decimal("100"),
        exempt_internal_transfers: bool = False
    ):
        self.accounts = accounts
        self.ledger = ledger
        self.tax = tax
        self.interbank = interbank
        self.card = card
        self.bank_name = bank_name
        self.min_transfer_amount = Decimal(min_transfer_amount)
        self.min_deposit_amount = Decimal(min_deposit_amount)
        self.exempt_internal_transfers = exempt_internal_transfers

    def internal_transfer(
        self,
        sender_user_id: str,
        receiver_account_number: str,
        amount: Any,
        pin: str,
        description: Optional[str] = None
    ) -> TransferResult:
        """
        Move funds between two wallet accounts

        Args:
            sender_user_id: Authenticated sender
            receiver_account_number: 10-digit account number of the receiver
            amount: Amount the receiver gets
            pin: Sender transaction PIN
            description: Optional narration

        Returns:
            TransferResult with both entries and the remaining free transfers

        Raises:
            ValidationError: Bad amount, missing receiver number or self transfer
            NotFound: Unknown sender or receiver account
            InvalidPin: PIN mismatch
            InsufficientFunds: Sender balance does not cover amount plus tax
        """
        amount = self._validate_amount(amount, self.min_transfer_amount, "transfer")
        if not receiver_account_number:
            raise ValidationError("Receiver account number is required")

        sender = self.accounts.require_account_by_user(sender_user_id)
        receiver = self.accounts.require_account_by_number(receiver_account_number)
        if sender.id == receiver.id:
            raise ValidationError("You can't transfer to your own account")
        self._check_pin(sender, pin)

        daily_count = self.tax.daily_debit_count(sender.user_id)
        breakdown = self.tax.calculate_fee(amount, daily_count, same_bank=self.exempt_internal_transfers)
        total = amount + breakdown.total_tax

        reference = generate_reference("TRF")
        narration = description or f"Transfer to {receiver.account_name}"

        sender_entry = new_transaction(
            sender.user_id, total, TransactionMode.DEBIT, reference,
            status=TransactionStatus.SUCCESS,
            category=TransactionCategory.TRANSFER,
            description=narration,
            sender_id=sender.user_id,
            sender_name=sender.account_name,
            receiver_id=receiver.user_id,
            receiver_name=receiver.account_name,
            vat_amount=breakdown.vat_amount,
            nibss_amount=breakdown.nibss_amount,
            is_taxed=breakdown.is_taxed,
            bank_name=receiver.bank_name,
            metadata={"transfer_amount": str(amount), "receiver_account": receiver.account_number}
        )
        receiver_entry = new_transaction(
            receiver.user_id, amount, TransactionMode.CREDIT, f"{reference}-CR",
            status=TransactionStatus.SUCCESS,
            category=TransactionCategory.TRANSFER,
            description=description or f"Transfer from {sender.account_name}",
            sender_id=sender.user_id,
            sender_name=sender.account_name,
            receiver_id=receiver.user_id,
            receiver_name=receiver.account_name,
            bank_name=sender.bank_name,
            metadata={"sender_account": sender.account_number}
        )

        self.ledger.post([
            BalanceLeg(ACCOUNTS_TABLE, sender.id, total, TransactionMode.DEBIT, entry=sender_entry),
            BalanceLeg(ACCOUNTS_TABLE, receiver.id, amount, TransactionMode.CREDIT, entry=receiver_entry),
        ], action="internal_transfer")

        count = self.tax.increment_debit_count(sender.user_id)
        free_left = max(0, self.tax.free_transactions_per_day - count)

        log_action(logger, "info",
                   f"Internal transfer of {format_amount(amount)} (tax {format_amount(breakdown.total_tax)})",
                   user_id=sender.user_id, action="internal_transfer",
                   resource=f"account:{receiver.id}", correlation_id=reference,
                   extra={"free_transactions_left": free_left})

        return TransferResult(
            reference=reference,
            amount=amount,
            tax=breakdown,
            sender_entry=sender_entry,
            receiver_entry=receiver_entry,
            free_transactions_left=free_left
        )

    def initiate_external_transfer(
        self,
        sender_user_id: str,
        bank_code: str,
        bank_name: str,
        account_number: str,
        account_name: str,
        amount: Any,
        pin: str,
        description: Optional[str] = None
    ) -> ExternalTransferResult:
        """
        Submit a transfer to another bank through the inter-bank switch

        No balance changes here. The pending entry is written only after the
        switch accepted the request; the settlement webhook applies the debit.

        Raises:
            ValidationError, NotFound, InvalidPin, InsufficientFunds: Before submission
            ExternalRailError: The switch rejected the request or timed out
        """
        if not all([bank_code, bank_name, account_number, account_name]):
            raise ValidationError(
                "Missing required fields: bankCode, bankName, accountNo, accountName, amount, pin"
            )
        amount = self._validate_amount(amount, self.min_transfer_amount, "transfer")

        sender = self.accounts.require_account_by_user(sender_user_id)
        if sender.account_number == account_number and sender.bank_name == bank_name:
            raise ValidationError("You can't transfer to your own account")
        self._check_pin(sender, pin)

        same_bank = bank_name == self.bank_name
        daily_count = self.tax.daily_debit_count(sender.user_id)
        breakdown = self.tax.calculate_fee(amount, daily_count, same_bank=same_bank)
        total = amount + breakdown.total_tax

        available = self.ledger.get_balance(ACCOUNTS_TABLE, sender.id)
        if available < total:
            raise InsufficientFunds(
                f"Insufficient balance: {format_amount(available)} available, {format_amount(total)} required"
            )

        reference = generate_reference("EXT")
        metadata = {
            "reference": reference,
            "senderAccount": sender.account_number,
            "senderName": sender.account_name,
            "senderUserId": sender.user_id,
            "purpose": description or f"Transfer to {account_name}",
            "transferType": "external",
            "shouldApplyTax": breakdown.is_taxed,
            "isSameBankTransfer": same_bank,
            **breakdown.to_metadata(),
        }

        rail_response = self.interbank.submit_transfer(
            bank_code, bank_name, account_number, account_name, amount, metadata
        )

        entry = new_transaction(
            sender.user_id, total, TransactionMode.DEBIT, reference,
            status=TransactionStatus.PENDING,
            category=TransactionCategory.EXTERNAL_TRANSFER,
            description=metadata["purpose"],
            sender_id=sender.user_id,
            sender_name=sender.account_name,
            receiver_name=account_name,
            vat_amount=breakdown.vat_amount,
            nibss_amount=breakdown.nibss_amount,
            is_taxed=breakdown.is_taxed,
            bank_code=bank_code,
            bank_name=bank_name,
            external_transfer=True,
            metadata={"transfer_amount": str(amount), "receiver_account": account_number}
        )
        try:
            self.ledger.record_transaction(entry)
            self.tax.increment_debit_count(sender.user_id)
        except DuplicateReference:
            # Settlement webhook already recorded and counted this reference
            logger.info(f"External transfer {reference} settled before its pending entry was written")

        log_action(logger, "info", f"External transfer of {format_amount(amount)} submitted",
                   user_id=sender.user_id, action="external_transfer",
                   resource=f"bank:{bank_code}", correlation_id=reference,
                   extra={"tax": str(breakdown.total_tax), "same_bank": same_bank})

        return ExternalTransferResult(
            reference=reference,
            amount=amount,
            tax=breakdown,
            rail_response=rail_response or {}
        )

    def initiate_deposit(
        self,
        user_id: str,
        email: str,
        amount: Any,
        description: Optional[str] = None
    ) -> DepositLink:
        """
        Create a card processor payment link and a pending credit entry

        Raises:
            ValidationError: Bad amount, missing email or account number
            ExternalRailError: The processor rejected the request
        """
        amount = self._validate_amount(amount, self.min_deposit_amount, "deposit")
        if not email:
            raise ValidationError("User email not found")

        account = self.accounts.require_account_by_user(user_id)
        if not account.account_number:
            raise ValidationError("Generate an account number before funding the account")

        description = description or "Account Deposit"
        reference = f"DEP_{account.account_number}_{int(time.time() * 1000)}"
        metadata = {
            "userId": user_id,
            "accountId": account.id,
            "accountNumber": account.account_number,
            "depositAmount": str(amount),
            "description": description,
            "type": "deposit",
        }

        link = self.card.initialize_deposit(email, to_minor_units(amount), reference, metadata)

        entry = new_transaction(
            user_id, amount, TransactionMode.CREDIT, reference,
            status=TransactionStatus.PENDING,
            category=TransactionCategory.DEPOSIT,
            description=description,
            receiver_id=user_id,
            receiver_name=account.account_name,
            metadata={"payment_gateway": "card", "account_id": account.id}
        )
        self.ledger.record_transaction(entry)

        log_action(logger, "info", f"Deposit link created for {format_amount(amount)}",
                   user_id=user_id, action="deposit_initiated",
                   resource=f"account:{account.id}", correlation_id=reference)

        return DepositLink(
            reference=reference,
            payment_url=link["authorization_url"],
            access_code=link.get("access_code"),
            amount=amount,
            transaction_id=entry.id
        )

    def verify_deposit(self, user_id: str, reference: str) -> Dict[str, Any]:
        """
        Ask the card processor for the status of one of the caller's deposits

        Raises:
            NotFound: No deposit with this reference belongs to the caller
            ExternalRailError: The processor rejected the lookup
        """
        entry = self.ledger.find_transaction_by_reference(reference) if reference else None
        if entry is None or entry.user_id != user_id or entry.category != TransactionCategory.DEPOSIT:
            raise NotFound("Deposit not found")
        return self.card.verify_deposit(reference)

    def validate_external_account(self, sender_user_id: str, account_number: str,
                                  bank_code: str, bank_name: str) -> Dict[str, Any]:
        """Resolve a beneficiary at another bank before transferring"""
        if not all([account_number, bank_code, bank_name]):
            raise ValidationError("Account Number, bank code, and bank name are required")
        sender = self.accounts.require_account_by_user(sender_user_id)
        if sender.account_number == account_number and sender.bank_name == bank_name:
            raise ValidationError("You can't transfer to your own account")
        return self.interbank.validate_account(account_number, bank_code, bank_name)

    def free_transactions_left(self, user_id: str) -> int:
        return self.tax.free_transactions_left(user_id)

    def _validate_amount(self, value: Any, minimum: Decimal, kind: str) -> Decimal:
        amount = to_amount(value)
        if amount <= 0:
            raise ValidationError("Amount must be positive")
        if amount < minimum:
            raise ValidationError(f"Minimum {kind} amount is {format_amount(minimum)}")
        return amount

    def _check_pin(self, account: Account, pin: Optional[str]) -> None:
        if not account.has_pin:
            raise ValidationError("No PIN set for this account")
        if not self.accounts.verify_pin(account, pin):
            raise InvalidPin("Invalid PIN")
