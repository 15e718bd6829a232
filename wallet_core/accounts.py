"""
Account Management Module

Manages wallet accounts: one per user, a 10-digit account number assigned
once, and a 4-digit transaction PIN stored only as a salted scrypt hash.
Balances are never written here; every balance change goes through the Ledger.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
import hashlib
import hmac
import secrets
import uuid

from .storage import StorageInterface, StorageRecord, parse_datetime
from .locks import KeyedLockRegistry, balance_key
from .exceptions import ValidationError, NotFound, InvalidPin
from .logging_config import get_logger, log_action

logger = get_logger("banka.accounts")

ACCOUNTS_TABLE = "accounts"
ACCOUNT_NUMBER_LENGTH = 10
ACCOUNT_NUMBER_ATTEMPTS = 10
PIN_LENGTH = 4


@dataclass
class Account(StorageRecord):
    """
    Custodial wallet account

    balance >= 0 at all times; account_number is immutable once set.
    """
    user_id: str
    account_name: str
    bank_name: str
    balance: Decimal = Decimal("0")
    account_number: Optional[str] = None
    pin_hash: Optional[str] = None
    pin_salt: Optional[str] = None
    is_active: bool = False

    @property
    def has_pin(self) -> bool:
        return bool(self.pin_hash)

    def public_view(self) -> Dict[str, Any]:
        """Account fields safe to return to clients"""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "account_name": self.account_name,
            "account_number": self.account_number,
            "bank_name": self.bank_name,
            "balance": str(self.balance),
            "is_active": self.is_active,
            "has_pin": self.has_pin,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


def account_from_dict(data: Dict[str, Any]) -> Account:
    """Convert dictionary to Account"""
    return Account(
        id=data['id'],
        created_at=parse_datetime(data['created_at']),
        updated_at=parse_datetime(data['updated_at']),
        user_id=data['user_id'],
        account_name=data['account_name'],
        bank_name=data['bank_name'],
        balance=Decimal(data.get('balance', '0')),
        account_number=data.get('account_number'),
        pin_hash=data.get('pin_hash'),
        pin_salt=data.get('pin_salt'),
        is_active=data.get('is_active', False)
    )


class AccountManager:
    """
    Manages account lifecycle, account numbers and PINs
    """

    def __init__(
        self,
        storage: StorageInterface,
        locks: KeyedLockRegistry,
        default_bank_name: str = "Banka Bank",
        pin_hash_n: int = 16384
    ):
        self.storage = storage
        self.locks = locks
        self.default_bank_name = default_bank_name
        self.pin_hash_n = pin_hash_n
        self.accounts_table = ACCOUNTS_TABLE

    def open_account(self, user_id: str, account_name: str, bank_name: Optional[str] = None) -> Account:
        """
        Open the wallet account for a user

        Args:
            user_id: Identity provider subject
            account_name: Display name on the account
            bank_name: Institution name (configured default if omitted)

        Returns:
            New inactive Account with zero balance and no PIN

        Raises:
            ValidationError: If the user already has an account
        """
        if not user_id:
            raise ValidationError("User id is required")
        if not account_name or not account_name.strip():
            raise ValidationError("Account name is required")

        with self.locks.hold(f"user:{user_id}"):
            if self.get_account_by_user(user_id):
                raise ValidationError("Account already exists for this user")

            now = datetime.now(timezone.utc)
            account = Account(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                user_id=user_id,
                account_name=account_name.strip(),
                bank_name=bank_name or self.default_bank_name
            )
            self._save_account(account)

        log_action(logger, "info", "Account opened", user_id=user_id,
                   action="open_account", resource=f"account:{account.id}")
        return account

    def generate_account_number(self, user_id: str) -> Account:
        """
        Assign a unique 10-digit account number

        Raises:
            NotFound: If the user has no account
            ValidationError: If a number was already assigned or no unique number was found
        """
        account = self.require_account_by_user(user_id)

        with self.locks.hold("account-numbers", balance_key(self.accounts_table, account.id)):
            account = self.require_account(account.id)
            if account.account_number:
                raise ValidationError("Account number already generated")

            for _ in range(ACCOUNT_NUMBER_ATTEMPTS):
                candidate = "".join(secrets.choice("0123456789") for _ in range(ACCOUNT_NUMBER_LENGTH))
                if not self.storage.find(self.accounts_table, {"account_number": candidate}):
                    break
            else:
                raise ValidationError("Unable to generate a unique account number")

            account.account_number = candidate
            account.touch()
            self._save_account(account)

        log_action(logger, "info", "Account number generated", user_id=user_id,
                   action="generate_account_number", resource=f"account:{account.id}")
        return account

    def set_pin(self, user_id: str, pin: str) -> Account:
        """
        Set the transaction PIN for the first time and activate the account

        Raises:
            ValidationError: If the PIN is malformed or one is already set
        """
        self._validate_pin(pin)
        account = self.require_account_by_user(user_id)

        with self.locks.hold(balance_key(self.accounts_table, account.id)):
            account = self.require_account(account.id)
            if account.has_pin:
                raise ValidationError("PIN already set, use change PIN instead")

            account.pin_salt = self._generate_salt()
            account.pin_hash = self._hash_pin(pin, account.pin_salt)
            account.is_active = True
            account.touch()
            self._save_account(account)

        log_action(logger, "info", "Transaction PIN set", user_id=user_id,
                   action="set_pin", resource=f"account:{account.id}")
        return account

    def change_pin(self, user_id: str, old_pin: str, new_pin: str) -> Account:
        """
        Replace the PIN after verifying the current one

        Raises:
            InvalidPin: If old_pin does not match
        """
        self._validate_pin(new_pin)
        account = self.require_account_by_user(user_id)

        with self.locks.hold(balance_key(self.accounts_table, account.id)):
            account = self.require_account(account.id)
            if not self.verify_pin(account, old_pin):
                raise InvalidPin("Current PIN is incorrect")

            account.pin_salt = self._generate_salt()
            account.pin_hash = self._hash_pin(new_pin, account.pin_salt)
            account.touch()
            self._save_account(account)

        log_action(logger, "info", "Transaction PIN changed", user_id=user_id,
                   action="change_pin", resource=f"account:{account.id}")
        return account

    def verify_pin(self, account: Account, pin: Optional[str]) -> bool:
        """Verify PIN against stored hash"""
        if not account.pin_hash or not account.pin_salt or not pin:
            return False
        expected = self._hash_pin(str(pin), account.pin_salt)
        return hmac.compare_digest(expected, account.pin_hash)

    def get_account(self, account_id: str) -> Optional[Account]:
        """Get account by ID"""
        account_dict = self.storage.load(self.accounts_table, account_id)
        if account_dict:
            return account_from_dict(account_dict)
        return None

    def get_account_by_user(self, user_id: str) -> Optional[Account]:
        """Get the account owned by a user"""
        accounts = self.storage.find(self.accounts_table, {"user_id": user_id})
        if accounts:
            return account_from_dict(accounts[0])
        return None

    def get_account_by_number(self, account_number: str) -> Optional[Account]:
        """Get account by account number"""
        if not account_number:
            return None
        accounts = self.storage.find(self.accounts_table, {"account_number": str(account_number)})
        if accounts:
            return account_from_dict(accounts[0])
        return None

    def require_account(self, account_id: str) -> Account:
        account = self.get_account(account_id)
        if not account:
            raise NotFound(f"Account {account_id} not found")
        return account

    def require_account_by_user(self, user_id: str) -> Account:
        account = self.get_account_by_user(user_id)
        if not account:
            raise NotFound("Account not found")
        return account

    def require_account_by_number(self, account_number: str) -> Account:
        account = self.get_account_by_number(account_number)
        if not account:
            raise NotFound(f"Account {account_number} not found")
        return account

    def list_accounts(self) -> List[Account]:
        return [account_from_dict(data) for data in self.storage.load_all(self.accounts_table)]

    def _validate_pin(self, pin: Any) -> None:
        if not isinstance(pin, str) or len(pin) != PIN_LENGTH or not pin.isdigit():
            raise ValidationError("PIN must be exactly 4 digits")

    def _generate_salt(self) -> str:
        """Generate random salt for PIN hashing"""
        return secrets.token_hex(16)

    def _hash_pin(self, pin: str, salt: str) -> str:
        """Hash PIN with salt using scrypt"""
        return hashlib.scrypt(
            pin.encode(),
            salt=salt.encode(),
            n=self.pin_hash_n, r=8, p=1
        ).hex()

    def _save_account(self, account: Account) -> None:
        """Save account to storage"""
        self.storage.save(self.accounts_table, account.id, account.to_dict())
