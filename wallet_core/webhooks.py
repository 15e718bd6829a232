"""
Settlement Webhook Module

Authenticates and applies asynchronous settlement events from the payment
rails. Each event kind is an explicit pydantic model discriminated on the
`event` field. Application is idempotent per settlement reference: a
redelivered event produces no second balance adjustment.

Processing never raises. Once authenticity is confirmed the sender has
already been answered, so failures are logged and the event is dropped; the
rail's own redelivery is the retry mechanism.
"""

from decimal import Decimal
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Annotated, Any, Callable, Literal, Optional, Union
import hmac
import json

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from .accounts import Account, AccountManager, ACCOUNTS_TABLE
from .ledger import Ledger, BalanceLeg
from .tax import TaxEngine
from .rails import compute_card_signature
from .transactions import (
    TransactionMode, TransactionStatus, TransactionCategory,
    new_transaction, generate_reference
)
from .currency import from_minor_units, round_amount, format_amount
from .exceptions import ValidationError, NotFound, SignatureMismatch, DuplicateReference
from .logging_config import get_logger, log_action, correlation_context

logger = get_logger("banka.webhooks")

DEBIT_SUCCESS = "transfer.debit.success"
CREDIT_SUCCESS = "transfer.credit.success"
CHARGE_SUCCESS = "charge.success"
CHARGE_FAILED = "charge.failed"


class WebhookSource(Enum):
    """Rail that delivered the event"""
    INTERBANK = "interbank"
    CARD = "card"


class ProcessingOutcome(Enum):
    """What processing did with an authenticated event"""
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    FAILED = "failed"


class _RailModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")


# Inter-bank switch events
class DebitMetadata(_RailModel):
    sender_account: str = Field(alias="senderAccount", min_length=1)
    sender_name: Optional[str] = Field(None, alias="senderName")
    sender_user_id: Optional[str] = Field(None, alias="senderUserId")
    purpose: Optional[str] = None
    transfer_type: Optional[str] = Field(None, alias="transferType")
    should_apply_tax: bool = Field(False, alias="shouldApplyTax")
    is_same_bank_transfer: bool = Field(False, alias="isSameBankTransfer")
    vat_amount: Decimal = Field(Decimal("0"), alias="vatAmount", ge=0)
    nibss_amount: Decimal = Field(Decimal("0"), alias="nibssAmount", ge=0)
    is_taxed: Optional[bool] = Field(None, alias="isTaxed")
    reference: Optional[str] = None


class DebitData(_RailModel):
    amount: Decimal = Field(gt=0)
    account_name: Optional[str] = Field(None, alias="accountName")
    bank_code: Optional[str] = Field(None, alias="bankCode")
    bank_name: Optional[str] = Field(None, alias="bankName")
    reference: Optional[str] = None
    metadata: DebitMetadata


class CreditMetadata(_RailModel):
    sender_account: Optional[str] = Field(None, alias="senderAccount")
    sender_name: Optional[str] = Field(None, alias="senderName")
    sender_user_id: Optional[str] = Field(None, alias="senderUserId")
    description: Optional[str] = None


class CreditData(_RailModel):
    amount: Decimal = Field(gt=0)
    account_number: str = Field(alias="accountNumber", min_length=1)
    account_name: Optional[str] = Field(None, alias="accountName")
    bank_name: Optional[str] = Field(None, alias="bankName")
    reference: Optional[str] = None
    metadata: CreditMetadata = Field(default_factory=CreditMetadata)


class DebitSuccessEvent(_RailModel):
    event: Literal["transfer.debit.success"]
    data: DebitData


class CreditSuccessEvent(_RailModel):
    event: Literal["transfer.credit.success"]
    data: CreditData


# Card processor events
class ChargeMetadata(_RailModel):
    type: Optional[str] = None
    user_id: Optional[str] = Field(None, alias="userId")
    account_id: Optional[str] = Field(None, alias="accountId")


class ChargeData(_RailModel):
    reference: str = Field(min_length=1)
    amount: Decimal = Field(gt=0)  # minor units
    metadata: ChargeMetadata = Field(default_factory=ChargeMetadata)
    paid_at: Optional[datetime] = None
    gateway_response: Optional[str] = None


class ChargeSuccessEvent(_RailModel):
    event: Literal["charge.success"]
    data: ChargeData


class ChargeFailedEvent(_RailModel):
    event: Literal["charge.failed"]
    data: ChargeData


class UnhandledEvent(_RailModel):
    """Authenticated event of a kind this service does not process"""
    event: str
    data: Any = None


WebhookEvent = Annotated[
    Union[DebitSuccessEvent, CreditSuccessEvent, ChargeSuccessEvent, ChargeFailedEvent],
    Field(discriminator="event")
]
_event_adapter = TypeAdapter(WebhookEvent)
KNOWN_EVENTS = {DEBIT_SUCCESS, CREDIT_SUCCESS, CHARGE_SUCCESS, CHARGE_FAILED}


def parse_event(raw_body: Union[bytes, str]) -> Union[
        DebitSuccessEvent, CreditSuccessEvent, ChargeSuccessEvent, ChargeFailedEvent, UnhandledEvent]:
    """
    Parse a webhook body into its event model

    Raises:
        ValidationError: Body is not JSON, has no event, or a known event is malformed
    """
    try:
        body = json.loads(raw_body)
    except (TypeError, ValueError):
        raise ValidationError("Invalid request body")

    if not isinstance(body, dict) or not body.get("event"):
        raise ValidationError("Invalid request body")

    if body["event"] not in KNOWN_EVENTS:
        return UnhandledEvent(event=str(body["event"]), data=body.get("data"))

    try:
        return _event_adapter.validate_python(body)
    except PydanticValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in e.errors()
        )
        raise ValidationError(f"Malformed {body['event']} event: {problems}")


def _event_reference(event) -> Optional[str]:
    data = getattr(event, "data", None)
    if isinstance(data, DebitData):
        return data.reference or data.metadata.reference
    if isinstance(data, dict):
        return data.get("reference")
    return getattr(data, "reference", None)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SettlementWebhookProcessor:
    """
    Authenticates rail webhooks and applies them to the ledger at most once
    """

    def __init__(
        self,
        accounts: AccountManager,
        ledger: Ledger,
        tax: TaxEngine,
        interbank_secret: str = "",
        card_secret: str = "",
        credit_surcharge_threshold: Decimal = Decimal("10000"),
        credit_surcharge_amount: Decimal = Decimal("50"),
        duplicate_window_seconds: int = 300,
        clock: Callable[[], datetime] = _utc_now
    ):
        self.accounts = accounts
        self.ledger = ledger
        self.tax = tax
        self.interbank_secret = interbank_secret
        self.card_secret = card_secret
        self.credit_surcharge_threshold = Decimal(credit_surcharge_threshold)
        self.credit_surcharge_amount = Decimal(credit_surcharge_amount)
        self.duplicate_window = timedelta(seconds=duplicate_window_seconds)
        self.clock = clock

    def authenticate_interbank(self, authorization: Optional[str], raw_body: Union[bytes, str]):
        """
        Verify the shared-secret header, then parse the body

        Raises:
            SignatureMismatch: Header missing or not equal to the shared secret
            ValidationError: Body malformed
        """
        if not self.interbank_secret or not authorization or not hmac.compare_digest(
                authorization.encode(), self.interbank_secret.encode()):
            log_action(logger, "warning", "Inter-bank webhook rejected: shared secret mismatch",
                       action="webhook_rejected", resource=WebhookSource.INTERBANK.value)
            raise SignatureMismatch("Unauthorized")
        return parse_event(raw_body)

    def authenticate_card(self, signature: Optional[str], raw_body: Union[bytes, str]):
        """
        Verify the HMAC-SHA512 signature of the raw body, then parse it

        Raises:
            SignatureMismatch: Signature missing or wrong
            ValidationError: Body malformed
        """
        if isinstance(raw_body, str):
            raw_body = raw_body.encode()
        expected = compute_card_signature(self.card_secret, raw_body) if self.card_secret else None
        if not expected or not signature or not hmac.compare_digest(expected, signature):
            log_action(logger, "warning", "Card webhook rejected: invalid signature",
                       action="webhook_rejected", resource=WebhookSource.CARD.value)
            raise SignatureMismatch("Invalid signature")
        return parse_event(raw_body)

    def authenticate(self, source: WebhookSource, signature: Optional[str], raw_body: Union[bytes, str]):
        if source == WebhookSource.INTERBANK:
            return self.authenticate_interbank(signature, raw_body)
        return self.authenticate_card(signature, raw_body)

    def handle_event(self, source: WebhookSource, signature: Optional[str],
                     raw_body: Union[bytes, str]) -> ProcessingOutcome:
        """Authenticate then process in the caller's thread"""
        event = self.authenticate(source, signature, raw_body)
        return self.process(event)

    def process(self, event) -> ProcessingOutcome:
        """
        Apply an authenticated event

        Never raises; failures are logged and reported as FAILED.
        """
        with correlation_context(_event_reference(event)):
            return self._process(event)

    def _process(self, event) -> ProcessingOutcome:
        try:
            if isinstance(event, DebitSuccessEvent):
                return self._handle_debit_success(event)
            if isinstance(event, CreditSuccessEvent):
                return self._handle_credit_success(event)
            if isinstance(event, ChargeSuccessEvent):
                return self._handle_charge(event, TransactionStatus.SUCCESS)
            if isinstance(event, ChargeFailedEvent):
                return self._handle_charge(event, TransactionStatus.FAILED)

            logger.info(f"Unhandled event type: {getattr(event, 'event', type(event).__name__)}")
            return ProcessingOutcome.IGNORED
        except DuplicateReference as e:
            logger.info(f"Duplicate settlement ignored: {e.reference}")
            return ProcessingOutcome.DUPLICATE
        except Exception as e:
            logger.error(f"Webhook event {getattr(event, 'event', None)} dropped: {e}", exc_info=True)
            return ProcessingOutcome.FAILED

    def _handle_debit_success(self, event: DebitSuccessEvent) -> ProcessingOutcome:
        data = event.data
        meta = data.metadata
        account = self._account_by_number(meta.sender_account)

        amount = round_amount(data.amount)
        vat_amount = round_amount(meta.vat_amount)
        nibss_amount = round_amount(meta.nibss_amount)
        total = amount + vat_amount + nibss_amount
        reference = data.reference or meta.reference
        leg = BalanceLeg(ACCOUNTS_TABLE, account.id, total, TransactionMode.DEBIT)

        if reference:
            existing = self.ledger.find_transaction_by_reference(reference)
            if existing is not None:
                if not existing.is_pending:
                    logger.info(f"Debit settlement {reference} already recorded")
                    return ProcessingOutcome.DUPLICATE
                if existing.user_id != account.user_id:
                    raise ValidationError(f"Debit settlement {reference} names an account of another user")
                finalized = self.ledger.finalize_pending(reference, TransactionStatus.SUCCESS, leg=leg)
                if finalized is None:
                    return ProcessingOutcome.DUPLICATE
                log_action(logger, "info", f"External transfer settled: {format_amount(total)} debited",
                           user_id=account.user_id, action="webhook_debit",
                           resource=f"account:{account.id}", correlation_id=reference)
                return ProcessingOutcome.APPLIED

        with self.ledger.locks.hold(f"debit-window:{account.user_id}"):
            if not reference:
                since = self.clock() - self.duplicate_window
                if self.ledger.recent_debits(account.user_id, total, since):
                    logger.info(
                        f"Debit of {format_amount(total)} for {account.user_id} matches a recent debit; ignored"
                    )
                    return ProcessingOutcome.DUPLICATE
                reference = generate_reference("NIBSS_DR")

            leg.entry = new_transaction(
                account.user_id, total, TransactionMode.DEBIT, reference,
                status=TransactionStatus.SUCCESS,
                category=TransactionCategory.EXTERNAL_TRANSFER,
                description=meta.purpose or "Debit via NIBSS",
                sender_id=account.user_id,
                sender_name=meta.sender_name or data.bank_name or "",
                receiver_name=data.account_name,
                vat_amount=vat_amount,
                nibss_amount=nibss_amount,
                is_taxed=meta.is_taxed if meta.is_taxed is not None else (vat_amount + nibss_amount) > 0,
                bank_code=data.bank_code,
                bank_name=data.bank_name,
                external_transfer=True,
                metadata={"transfer_amount": str(amount), "transfer_type": meta.transfer_type}
            )
            self.ledger.post([leg], action="webhook_debit")

        self.tax.increment_debit_count(account.user_id)
        log_action(logger, "info", f"External debit applied: {format_amount(total)}",
                   user_id=account.user_id, action="webhook_debit",
                   resource=f"account:{account.id}", correlation_id=reference)
        return ProcessingOutcome.APPLIED

    def _handle_credit_success(self, event: CreditSuccessEvent) -> ProcessingOutcome:
        data = event.data
        meta = data.metadata

        if data.reference and self.ledger.find_transaction_by_reference(data.reference):
            logger.info(f"Credit settlement {data.reference} already recorded")
            return ProcessingOutcome.DUPLICATE

        account = self._account_by_number(data.account_number)
        amount = round_amount(data.amount)
        reference = data.reference or generate_reference("NIBSS_CR")

        credit_entry = new_transaction(
            account.user_id, amount, TransactionMode.CREDIT, reference,
            status=TransactionStatus.SUCCESS,
            category=TransactionCategory.INBOUND_TRANSFER,
            description=meta.description or "NIBSS Credit",
            sender_id=meta.sender_user_id or meta.sender_account or "",
            sender_name=meta.sender_name or data.bank_name or "",
            receiver_id=account.user_id,
            receiver_name=data.account_name or account.account_name,
            bank_name=data.bank_name,
            external_transfer=True,
            metadata={"sender_account": meta.sender_account}
        )
        legs = [BalanceLeg(ACCOUNTS_TABLE, account.id, amount, TransactionMode.CREDIT, entry=credit_entry)]

        if amount >= self.credit_surcharge_threshold:
            surcharge = round_amount(self.credit_surcharge_amount)
            surcharge_entry = new_transaction(
                account.user_id, surcharge, TransactionMode.DEBIT, f"{reference}-SURCHARGE",
                status=TransactionStatus.SUCCESS,
                category=TransactionCategory.FEE,
                description="Inter-bank settlement charge",
                sender_id=account.user_id,
                sender_name=account.account_name,
                nibss_amount=surcharge,
                external_transfer=True,
                metadata={"charged_for": reference}
            )
            legs.append(BalanceLeg(ACCOUNTS_TABLE, account.id, surcharge, TransactionMode.DEBIT,
                                   entry=surcharge_entry))

        self.ledger.post(legs, action="webhook_credit")
        log_action(logger, "info", f"External credit applied: {format_amount(amount)}",
                   user_id=account.user_id, action="webhook_credit",
                   resource=f"account:{account.id}", correlation_id=reference,
                   extra={"surcharge": str(legs[1].amount) if len(legs) > 1 else "0"})
        return ProcessingOutcome.APPLIED

    def _handle_charge(self, event: Union[ChargeSuccessEvent, ChargeFailedEvent],
                       status: TransactionStatus) -> ProcessingOutcome:
        data = event.data
        if data.metadata.type != "deposit":
            logger.info(f"Ignoring {event.event} for non-deposit charge {data.reference}")
            return ProcessingOutcome.IGNORED

        pending = self.ledger.find_transaction_by_reference(data.reference)
        if pending is None:
            logger.info(f"No deposit recorded for reference {data.reference}")
            return ProcessingOutcome.IGNORED
        if not pending.is_pending:
            logger.info(f"Deposit {data.reference} already {pending.status.value}")
            return ProcessingOutcome.DUPLICATE

        if status == TransactionStatus.FAILED:
            finalized = self.ledger.finalize_pending(
                data.reference, TransactionStatus.FAILED,
                error_message=data.gateway_response or "Deposit failed"
            )
            if finalized is None:
                return ProcessingOutcome.DUPLICATE
            log_action(logger, "info", "Deposit marked failed", user_id=pending.user_id,
                       action="deposit_failed", correlation_id=data.reference)
            return ProcessingOutcome.APPLIED

        account = self._deposit_account(pending.user_id, data.metadata.account_id)
        amount = from_minor_units(data.amount)
        finalized = self.ledger.finalize_pending(
            data.reference, TransactionStatus.SUCCESS,
            leg=BalanceLeg(ACCOUNTS_TABLE, account.id, amount, TransactionMode.CREDIT),
            paid_at=data.paid_at
        )
        if finalized is None:
            return ProcessingOutcome.DUPLICATE

        log_action(logger, "info", f"Deposit of {format_amount(amount)} credited",
                   user_id=account.user_id, action="deposit_success",
                   resource=f"account:{account.id}", correlation_id=data.reference)
        return ProcessingOutcome.APPLIED

    def _account_by_number(self, account_number: str) -> Account:
        account = self.accounts.get_account_by_number(account_number)
        if account is None:
            raise NotFound(f"Account not found for account number: {account_number}")
        return account

    def _deposit_account(self, user_id: str, account_id: Optional[str]) -> Account:
        account = self.accounts.get_account(account_id) if account_id else None
        if account is None:
            account = self.accounts.require_account_by_user(user_id)
        if account.user_id != user_id:
            raise ValidationError(f"Deposit account {account.id} does not belong to the depositor")
        return account
