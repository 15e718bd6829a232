"""
Tests for the tax engine and daily debit counter
"""

import pytest
from decimal import Decimal
from datetime import datetime, timedelta, timezone

from wallet_core.storage import InMemoryStorage
from wallet_core.locks import KeyedLockRegistry
from wallet_core.accounts import AccountManager, ACCOUNTS_TABLE
from wallet_core.ledger import Ledger, BalanceLeg
from wallet_core.tax import DailyCounterCache, TaxEngine
from wallet_core.transactions import (
    TransactionMode, TransactionStatus, TransactionCategory, new_transaction, generate_reference
)


class FakeClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class TestCalculateFee:
    """Test fee rules"""

    def setup_method(self):
        """Set up test fixtures"""
        storage = InMemoryStorage()
        self.engine = TaxEngine(Ledger(storage, KeyedLockRegistry()), DailyCounterCache())

    def test_free_transactions_have_no_vat(self):
        breakdown = self.engine.calculate_fee(Decimal("1000"), daily_count=0)
        assert breakdown.vat_amount == Decimal("0")
        assert breakdown.nibss_amount == Decimal("0")
        assert breakdown.total_tax == Decimal("0")
        assert not breakdown.is_taxed
        assert breakdown.free_transactions_left == 5

    def test_vat_after_free_allowance(self):
        """1000 with five debits already today costs 107.50"""
        breakdown = self.engine.calculate_fee(Decimal("1000"), daily_count=5)
        assert breakdown.vat_amount == Decimal("107.50")
        assert breakdown.total_tax == Decimal("107.50")
        assert breakdown.is_taxed
        assert breakdown.free_transactions_left == 0

    def test_vat_rounds_half_up(self):
        breakdown = self.engine.calculate_fee(Decimal("100.10"), daily_count=7)
        # 100.10 * 0.1075 = 10.760750
        assert breakdown.vat_amount == Decimal("10.76")

    def test_nibss_fee_from_threshold(self):
        below = self.engine.calculate_fee(Decimal("9999.99"), daily_count=0)
        at = self.engine.calculate_fee(Decimal("10000"), daily_count=0)
        assert below.nibss_amount == Decimal("0")
        assert at.nibss_amount == Decimal("50.00")
        assert at.total_tax == Decimal("50.00")

    def test_fees_are_additive(self):
        breakdown = self.engine.calculate_fee(Decimal("20000"), daily_count=6)
        assert breakdown.vat_amount == Decimal("2150.00")
        assert breakdown.nibss_amount == Decimal("50.00")
        assert breakdown.total_tax == Decimal("2200.00")

    def test_same_bank_is_exempt(self):
        breakdown = self.engine.calculate_fee(Decimal("20000"), daily_count=9, same_bank=True)
        assert breakdown.total_tax == Decimal("0")
        assert not breakdown.is_taxed

    def test_to_metadata(self):
        metadata = self.engine.calculate_fee(Decimal("1000"), daily_count=5).to_metadata()
        assert metadata == {"vatAmount": "107.50", "nibssAmount": "0", "isTaxed": True}


class TestDailyCounterCache:
    """Test TTL and local-day expiry"""

    def setup_method(self):
        """Set up test fixtures"""
        # 20:00 UTC is 21:00 in Lagos
        self.clock = FakeClock(datetime(2025, 3, 10, 20, 0, tzinfo=timezone.utc))
        self.cache = DailyCounterCache(ttl_seconds=3600, tz="Africa/Lagos", clock=self.clock)

    def test_get_set_increment(self):
        assert self.cache.get("u") is None
        assert self.cache.increment("u") is None
        self.cache.set("u", 2)
        assert self.cache.increment("u") == 3
        assert self.cache.get("u") == 3
        assert len(self.cache) == 1

    def test_entry_expires_after_ttl(self):
        self.cache.set("u", 2)
        self.clock.advance(minutes=59)
        assert self.cache.get("u") == 2
        self.clock.advance(minutes=2)
        assert self.cache.get("u") is None

    def test_entry_expires_at_local_midnight(self):
        self.cache.set("u", 4)
        # 22:59 UTC is still the same Lagos day
        self.clock.advance(hours=2, minutes=59)
        self.cache.ttl_seconds = 86400
        assert self.cache.get("u") == 4
        # 23:01 UTC is 00:01 the next day in Lagos
        self.clock.advance(minutes=2)
        assert self.cache.get("u") is None

    def test_invalidate(self):
        self.cache.set("a", 1)
        self.cache.set("b", 1)
        self.cache.invalidate("a")
        assert self.cache.get("a") is None
        self.cache.invalidate()
        assert len(self.cache) == 0


class TestDailyDebitCount:
    """Test counting debits from the ledger"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.locks = KeyedLockRegistry()
        self.accounts = AccountManager(self.storage, self.locks, pin_hash_n=1024)
        self.ledger = Ledger(self.storage, self.locks)
        self.clock = FakeClock(datetime.now(timezone.utc))
        self.engine = TaxEngine(self.ledger, DailyCounterCache(clock=self.clock))

        self.account = self.accounts.open_account("alice", "Alice A")
        self.ledger.apply_movement(self.account.id, Decimal("100000"), TransactionMode.CREDIT)

    def _debit(self, category=TransactionCategory.TRANSFER, status=TransactionStatus.SUCCESS):
        entry = new_transaction("alice", Decimal("10"), TransactionMode.DEBIT, generate_reference(),
                                status=status, category=category)
        if status == TransactionStatus.SUCCESS:
            self.ledger.post([BalanceLeg(ACCOUNTS_TABLE, self.account.id, Decimal("10"), TransactionMode.DEBIT,
                                         entry=entry)])
        else:
            self.ledger.record_transaction(entry)

    def test_counts_todays_debits(self):
        self._debit()
        self._debit()
        self._debit(status=TransactionStatus.PENDING)
        assert self.engine.daily_debit_count("alice") == 3
        assert self.engine.free_transactions_left("alice") == 2

    def test_excludes_failed_fee_and_savings(self):
        self._debit()
        self._debit(status=TransactionStatus.FAILED)
        self._debit(category=TransactionCategory.FEE)
        self._debit(category=TransactionCategory.SAVINGS)
        assert self.engine.daily_debit_count("alice") == 1

    def test_count_is_cached_and_incremented(self):
        self._debit()
        assert self.engine.daily_debit_count("alice") == 1
        # Cached value is served until incremented
        self._debit()
        assert self.engine.daily_debit_count("alice") == 1
        assert self.engine.increment_debit_count("alice") == 2
        assert self.engine.daily_debit_count("alice") == 2

    def test_increment_without_cache_reloads_from_store(self):
        self._debit()
        assert self.engine.increment_debit_count("alice") == 1

    def test_count_resets_next_day(self):
        self._debit()
        assert self.engine.daily_debit_count("alice") == 1
        self.clock.advance(days=1)
        assert self.engine.daily_debit_count("alice") == 0
        assert self.engine.free_transactions_left("alice") == 5

    def test_clear(self):
        self._debit()
        self.engine.daily_debit_count("alice")
        self._debit()
        self.engine.clear("alice")
        assert self.engine.daily_debit_count("alice") == 2
