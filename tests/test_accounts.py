"""
Test suite for accounts module

Tests account opening, account number assignment and PIN handling.
"""

import pytest
import threading
from decimal import Decimal

from wallet_core.storage import InMemoryStorage
from wallet_core.locks import KeyedLockRegistry
from wallet_core.accounts import AccountManager, Account, account_from_dict, ACCOUNTS_TABLE
from wallet_core.exceptions import ValidationError, NotFound, InvalidPin


class TestAccountManager:
    """Test AccountManager functionality"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.locks = KeyedLockRegistry()
        self.manager = AccountManager(self.storage, self.locks, default_bank_name="Banka Bank", pin_hash_n=1024)

    def test_open_account(self):
        """A new account is inactive with zero balance and no PIN"""
        account = self.manager.open_account("user_1", "  Ada Obi ")

        assert account.user_id == "user_1"
        assert account.account_name == "Ada Obi"
        assert account.bank_name == "Banka Bank"
        assert account.balance == Decimal("0")
        assert account.account_number is None
        assert not account.is_active
        assert not account.has_pin

        stored = self.manager.get_account(account.id)
        assert stored.account_name == "Ada Obi"

    def test_one_account_per_user(self):
        self.manager.open_account("user_1", "Ada Obi")
        with pytest.raises(ValidationError, match="already exists"):
            self.manager.open_account("user_1", "Ada Again")

    def test_open_account_requires_name(self):
        with pytest.raises(ValidationError):
            self.manager.open_account("user_1", "   ")

    def test_generate_account_number(self):
        """Account numbers are 10 digits and assigned once"""
        self.manager.open_account("user_1", "Ada Obi")
        account = self.manager.generate_account_number("user_1")

        assert len(account.account_number) == 10
        assert account.account_number.isdigit()
        assert self.manager.get_account_by_number(account.account_number).id == account.id

        with pytest.raises(ValidationError, match="already generated"):
            self.manager.generate_account_number("user_1")

    def test_generate_account_number_requires_account(self):
        with pytest.raises(NotFound):
            self.manager.generate_account_number("nobody")

    def test_account_numbers_unique_under_concurrency(self):
        for i in range(20):
            self.manager.open_account(f"user_{i}", f"Holder {i}")

        threads = [
            threading.Thread(target=self.manager.generate_account_number, args=(f"user_{i}",))
            for i in range(20)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        numbers = [account.account_number for account in self.manager.list_accounts()]
        assert all(numbers)
        assert len(set(numbers)) == 20

    def test_set_pin_activates_account(self):
        self.manager.open_account("user_1", "Ada Obi")
        account = self.manager.set_pin("user_1", "1234")

        assert account.is_active
        assert account.has_pin
        assert account.pin_hash != "1234"
        assert self.manager.verify_pin(account, "1234")
        assert not self.manager.verify_pin(account, "4321")
        assert not self.manager.verify_pin(account, None)

    def test_set_pin_only_once(self):
        self.manager.open_account("user_1", "Ada Obi")
        self.manager.set_pin("user_1", "1234")
        with pytest.raises(ValidationError):
            self.manager.set_pin("user_1", "5678")

    @pytest.mark.parametrize("pin", ["123", "12345", "12a4", "", None])
    def test_malformed_pin_rejected(self, pin):
        self.manager.open_account("user_1", "Ada Obi")
        with pytest.raises(ValidationError, match="4 digits"):
            self.manager.set_pin("user_1", pin)

    def test_change_pin(self):
        self.manager.open_account("user_1", "Ada Obi")
        self.manager.set_pin("user_1", "1234")

        with pytest.raises(InvalidPin):
            self.manager.change_pin("user_1", "0000", "5678")

        account = self.manager.change_pin("user_1", "1234", "5678")
        assert self.manager.verify_pin(account, "5678")
        assert not self.manager.verify_pin(account, "1234")

    def test_pin_salt_differs_per_account(self):
        self.manager.open_account("user_1", "Ada Obi")
        self.manager.open_account("user_2", "Chidi Eze")
        first = self.manager.set_pin("user_1", "1234")
        second = self.manager.set_pin("user_2", "1234")
        assert first.pin_hash != second.pin_hash

    def test_lookups(self):
        account = self.manager.open_account("user_1", "Ada Obi")
        assert self.manager.get_account_by_user("user_1").id == account.id
        assert self.manager.get_account_by_user("user_2") is None
        assert self.manager.get_account_by_number("") is None

        with pytest.raises(NotFound):
            self.manager.require_account("missing")
        with pytest.raises(NotFound):
            self.manager.require_account_by_number("0000000000")

    def test_public_view_hides_pin(self):
        self.manager.open_account("user_1", "Ada Obi")
        account = self.manager.set_pin("user_1", "1234")
        view = account.public_view()

        assert view["has_pin"] is True
        assert "pin_hash" not in view
        assert "pin_salt" not in view
        assert view["balance"] == "0"

    def test_round_trip_through_storage(self):
        account = self.manager.open_account("user_1", "Ada Obi")
        restored = account_from_dict(self.storage.load(ACCOUNTS_TABLE, account.id))
        assert isinstance(restored, Account)
        assert restored == account
