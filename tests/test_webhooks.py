"""
Tests for settlement webhook authentication and processing
"""

import json
import pytest
from decimal import Decimal
from datetime import datetime, timedelta, timezone

from wallet_core.storage import InMemoryStorage
from wallet_core.locks import KeyedLockRegistry
from wallet_core.accounts import AccountManager, ACCOUNTS_TABLE
from wallet_core.ledger import Ledger
from wallet_core.tax import DailyCounterCache, TaxEngine
from wallet_core.rails import MockInterBankClient, MockCardDepositClient, compute_card_signature
from wallet_core.transfers import TransferCoordinator
from wallet_core.transactions import TransactionMode, TransactionStatus, TransactionCategory
from wallet_core.webhooks import (
    SettlementWebhookProcessor, ProcessingOutcome, WebhookSource, UnhandledEvent,
    CreditSuccessEvent, DebitSuccessEvent, parse_event
)
from wallet_core.exceptions import SignatureMismatch, ValidationError

INTERBANK_SECRET = "interbank-shared-secret"
CARD_SECRET = "sk_test_card_secret"


def _body(payload):
    return json.dumps(payload).encode()


def credit_event(account_number, amount, reference="NIBSS-CR-1"):
    payload = {
        "event": "transfer.credit.success",
        "data": {
            "amount": amount,
            "accountNumber": account_number,
            "accountName": "Alice A",
            "bankName": "Other Bank",
            "metadata": {"senderAccount": "0987654321", "senderName": "Dayo D"},
        },
    }
    if reference:
        payload["data"]["reference"] = reference
    return _body(payload)


def debit_event(sender_account, amount, reference=None, vat="0", nibss="0"):
    payload = {
        "event": "transfer.debit.success",
        "data": {
            "amount": amount,
            "accountName": "Dayo D",
            "bankCode": "058",
            "bankName": "Other Bank",
            "metadata": {
                "senderAccount": sender_account,
                "senderName": "Alice A",
                "purpose": "Rent",
                "vatAmount": vat,
                "nibssAmount": nibss,
            },
        },
    }
    if reference:
        payload["data"]["reference"] = reference
    return _body(payload)


def charge_event(reference, amount_minor, account_id=None, kind="charge.success", charge_type="deposit"):
    return _body({
        "event": kind,
        "data": {
            "reference": reference,
            "amount": amount_minor,
            "paid_at": "2025-03-10T10:00:00.000Z",
            "gateway_response": "Declined" if kind == "charge.failed" else "Successful",
            "metadata": {"type": charge_type, "accountId": account_id},
        },
    })


class WebhookTestBase:

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.locks = KeyedLockRegistry()
        self.accounts = AccountManager(self.storage, self.locks, pin_hash_n=1024)
        self.ledger = Ledger(self.storage, self.locks)
        self.tax = TaxEngine(self.ledger, DailyCounterCache())
        self.interbank = MockInterBankClient()
        self.card = MockCardDepositClient(secret_key=CARD_SECRET)
        self.coordinator = TransferCoordinator(self.accounts, self.ledger, self.tax, self.interbank, self.card)
        self.processor = SettlementWebhookProcessor(
            self.accounts, self.ledger, self.tax,
            interbank_secret=INTERBANK_SECRET,
            card_secret=CARD_SECRET
        )

        self.accounts.open_account("alice", "Alice A")
        self.accounts.set_pin("alice", "1234")
        self.alice = self.accounts.generate_account_number("alice")

    def _fund(self, amount):
        self.ledger.apply_movement(self.alice.id, Decimal(amount), TransactionMode.CREDIT)

    def _balance(self):
        return self.ledger.get_balance(ACCOUNTS_TABLE, self.alice.id)

    def _deliver_interbank(self, body):
        event = self.processor.authenticate_interbank(INTERBANK_SECRET, body)
        return self.processor.process(event)

    def _deliver_card(self, body):
        signature = compute_card_signature(CARD_SECRET, body)
        return self.processor.handle_event(WebhookSource.CARD, signature, body)


class TestAuthentication(WebhookTestBase):
    """Test webhook authenticity checks"""

    def test_interbank_shared_secret(self):
        body = credit_event(self.alice.account_number, 100)
        event = self.processor.authenticate_interbank(INTERBANK_SECRET, body)
        assert isinstance(event, CreditSuccessEvent)

        with pytest.raises(SignatureMismatch, match="Unauthorized"):
            self.processor.authenticate_interbank("wrong", body)
        with pytest.raises(SignatureMismatch):
            self.processor.authenticate_interbank(None, body)

    def test_card_signature(self):
        body = charge_event("DEP_1", 10000)
        signature = compute_card_signature(CARD_SECRET, body)
        assert self.processor.authenticate_card(signature, body).event == "charge.success"

        with pytest.raises(SignatureMismatch, match="Invalid signature"):
            self.processor.authenticate_card(compute_card_signature("other", body), body)
        with pytest.raises(SignatureMismatch):
            self.processor.authenticate_card(signature, body + b" ")

    def test_signature_checked_before_parsing(self):
        with pytest.raises(SignatureMismatch):
            self.processor.authenticate_interbank("wrong", b"not json")

    def test_rejected_webhook_changes_nothing(self):
        with pytest.raises(SignatureMismatch):
            self.processor.handle_event(WebhookSource.INTERBANK, "wrong",
                                        credit_event(self.alice.account_number, 100))
        assert self._balance() == Decimal("0")


class TestParseEvent:
    """Test event parsing"""

    def test_known_event(self):
        event = parse_event(debit_event("0123456789", 500, reference="R1", nibss="50"))
        assert isinstance(event, DebitSuccessEvent)
        assert event.data.metadata.sender_account == "0123456789"
        assert event.data.metadata.nibss_amount == Decimal("50")

    def test_unknown_event_is_unhandled(self):
        event = parse_event(_body({"event": "transfer.reversed", "data": {}}))
        assert isinstance(event, UnhandledEvent)
        assert event.event == "transfer.reversed"

    @pytest.mark.parametrize("body", [b"not json", b"[]", _body({"data": {}}), _body({"event": ""})])
    def test_invalid_body(self, body):
        with pytest.raises(ValidationError, match="Invalid request body"):
            parse_event(body)

    def test_malformed_known_event(self):
        body = _body({"event": "transfer.credit.success", "data": {"amount": 100}})
        with pytest.raises(ValidationError, match="Malformed transfer.credit.success"):
            parse_event(body)

    def test_non_positive_amount_rejected(self):
        with pytest.raises(ValidationError):
            parse_event(credit_event("0123456789", 0))


class TestCreditSettlement(WebhookTestBase):
    """Test inbound transfer credits"""

    def test_credit_applied_once(self):
        """Same reference delivered twice: one entry, one balance adjustment"""
        body = credit_event(self.alice.account_number, 5000)

        assert self._deliver_interbank(body) == ProcessingOutcome.APPLIED
        assert self._deliver_interbank(body) == ProcessingOutcome.DUPLICATE

        assert self._balance() == Decimal("5000.00")
        entries = self.ledger.list_user_transactions("alice")
        assert len(entries) == 1
        assert entries[0].category == TransactionCategory.INBOUND_TRANSFER
        assert entries[0].balances_consistent()

    def test_large_credit_pays_surcharge(self):
        assert self._deliver_interbank(credit_event(self.alice.account_number, 10000)) == ProcessingOutcome.APPLIED

        assert self._balance() == Decimal("9950.00")
        surcharge = self.ledger.find_transaction_by_reference("NIBSS-CR-1-SURCHARGE")
        assert surcharge.mode == TransactionMode.DEBIT
        assert surcharge.category == TransactionCategory.FEE
        assert surcharge.amount == Decimal("50.00")
        assert surcharge.prev_bal == Decimal("10000.00")
        assert surcharge.new_bal == Decimal("9950.00")

    def test_surcharge_does_not_count_as_daily_debit(self):
        self._deliver_interbank(credit_event(self.alice.account_number, 20000))
        assert self.tax.free_transactions_left("alice") == 5

    def test_credit_without_reference_gets_one(self):
        self._deliver_interbank(credit_event(self.alice.account_number, 100, reference=None))
        entries = self.ledger.list_user_transactions("alice")
        assert entries[0].reference.startswith("NIBSS_CR_")

    def test_unknown_account_fails_without_raising(self):
        assert self._deliver_interbank(credit_event("0000000000", 100)) == ProcessingOutcome.FAILED


class TestDebitSettlement(WebhookTestBase):
    """Test outbound transfer settlement"""

    def test_pending_external_transfer_settled(self):
        self._fund("20000")
        result = self.coordinator.initiate_external_transfer(
            "alice", "058", "Other Bank", "0123456789", "Dayo D", "10000", "1234"
        )
        assert self._balance() == Decimal("20000.00")

        body = debit_event(self.alice.account_number, 10000, reference=result.reference, nibss="50.00")
        assert self._deliver_interbank(body) == ProcessingOutcome.APPLIED
        assert self._deliver_interbank(body) == ProcessingOutcome.DUPLICATE

        assert self._balance() == Decimal("9950.00")
        entry = self.ledger.find_transaction_by_reference(result.reference)
        assert entry.status == TransactionStatus.SUCCESS
        assert entry.amount == Decimal("10050.00")
        assert entry.balances_consistent()
        # Counted once, at submission
        assert self.tax.free_transactions_left("alice") == 4

    def test_settlement_naming_another_users_account_is_dropped(self):
        self._fund("20000")
        self.accounts.open_account("bob", "Bob B")
        bob = self.accounts.generate_account_number("bob")
        self.ledger.apply_movement(bob.id, Decimal("5000"), TransactionMode.CREDIT)
        result = self.coordinator.initiate_external_transfer(
            "alice", "058", "Other Bank", "0123456789", "Dayo D", "1000", "1234"
        )

        body = debit_event(bob.account_number, 1000, reference=result.reference)
        assert self._deliver_interbank(body) == ProcessingOutcome.FAILED

        entry = self.ledger.find_transaction_by_reference(result.reference)
        assert entry.status == TransactionStatus.PENDING
        assert entry.new_bal is None
        assert self._balance() == Decimal("20000.00")
        assert self.ledger.get_balance(ACCOUNTS_TABLE, bob.id) == Decimal("5000.00")

        # The matching account still settles it
        body = debit_event(self.alice.account_number, 1000, reference=result.reference)
        assert self._deliver_interbank(body) == ProcessingOutcome.APPLIED
        assert self._balance() == Decimal("19000.00")

    def test_debit_for_unknown_reference_creates_entry(self):
        self._fund("1000")
        body = debit_event(self.alice.account_number, 200, reference="EXT_EXTERNAL_ONLY", vat="21.50")

        assert self._deliver_interbank(body) == ProcessingOutcome.APPLIED
        assert self._balance() == Decimal("778.50")
        entry = self.ledger.find_transaction_by_reference("EXT_EXTERNAL_ONLY")
        assert entry.amount == Decimal("221.50")
        assert entry.vat_amount == Decimal("21.50")
        assert entry.is_taxed
        assert self.tax.free_transactions_left("alice") == 4

    def test_reference_less_duplicate_within_window(self):
        self._fund("1000")
        body = debit_event(self.alice.account_number, 200)

        assert self._deliver_interbank(body) == ProcessingOutcome.APPLIED
        assert self._deliver_interbank(body) == ProcessingOutcome.DUPLICATE
        assert self._balance() == Decimal("800.00")

    def test_reference_less_debit_outside_window_applies(self):
        self._fund("1000")
        body = debit_event(self.alice.account_number, 200)

        self._deliver_interbank(body)
        self.processor.clock = lambda: datetime.now(timezone.utc) + timedelta(minutes=10)
        assert self._deliver_interbank(body) == ProcessingOutcome.APPLIED
        assert self._balance() == Decimal("600.00")

    def test_insufficient_balance_fails_without_change(self):
        self._fund("100")
        body = debit_event(self.alice.account_number, 200, reference="EXT_TOO_BIG")
        assert self._deliver_interbank(body) == ProcessingOutcome.FAILED
        assert self._balance() == Decimal("100.00")


class TestChargeSettlement(WebhookTestBase):
    """Test card deposit settlement"""

    def test_deposit_success_credits_once(self):
        link = self.coordinator.initiate_deposit("alice", "alice@example.com", "5000")
        body = charge_event(link.reference, 500000, account_id=self.alice.id)

        assert self._deliver_card(body) == ProcessingOutcome.APPLIED
        assert self._deliver_card(body) == ProcessingOutcome.DUPLICATE

        assert self._balance() == Decimal("5000.00")
        entry = self.ledger.find_transaction_by_reference(link.reference)
        assert entry.status == TransactionStatus.SUCCESS
        assert entry.new_bal == Decimal("5000.00")
        assert entry.paid_at.year == 2025

    def test_deposit_failure(self):
        link = self.coordinator.initiate_deposit("alice", "alice@example.com", "5000")
        body = charge_event(link.reference, 500000, kind="charge.failed")

        assert self._deliver_card(body) == ProcessingOutcome.APPLIED
        entry = self.ledger.find_transaction_by_reference(link.reference)
        assert entry.status == TransactionStatus.FAILED
        assert entry.error_message == "Declined"
        assert self._balance() == Decimal("0")

        # A late success for a failed deposit is not applied
        assert self._deliver_card(charge_event(link.reference, 500000)) == ProcessingOutcome.DUPLICATE
        assert self._balance() == Decimal("0")

    def test_non_deposit_charge_ignored(self):
        body = charge_event("SUB_1", 1000, charge_type="subscription")
        assert self._deliver_card(body) == ProcessingOutcome.IGNORED

    def test_unknown_deposit_reference_ignored(self):
        assert self._deliver_card(charge_event("DEP_UNKNOWN", 1000)) == ProcessingOutcome.IGNORED

    def test_unhandled_event_ignored(self):
        body = _body({"event": "subscription.create", "data": {}})
        assert self._deliver_card(body) == ProcessingOutcome.IGNORED
