"""
Tax and Fee Engine

Computes transfer fees from the amount and the sender's debit count for the
current local day. A fixed number of debits per day are VAT free; a flat
inter-bank fee applies from an amount threshold; both are additive and
rounded to two decimal places.

The per-user daily count is served from an injected DailyCounterCache whose
entries expire after a TTL and at local midnight.
"""

from decimal import Decimal
from datetime import date, datetime, timezone
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple
from zoneinfo import ZoneInfo
import threading

from .ledger import Ledger
from .transactions import TransactionMode, TransactionStatus, TransactionCategory
from .currency import round_amount, ZERO
from .logging_config import get_logger

logger = get_logger("banka.tax")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class DailyCounterCache:
    """
    TTL-keyed map of user_id -> (count, local_date, stored_at)

    An entry is valid only while it is younger than the TTL and its
    local_date is still today.
    """

    def __init__(self, ttl_seconds: int = 86400, tz: str = "Africa/Lagos",
                 clock: Callable[[], datetime] = _utc_now):
        self.ttl_seconds = ttl_seconds
        self.tz = ZoneInfo(tz)
        self.clock = clock
        self._entries: Dict[str, Tuple[int, date, datetime]] = {}
        self._lock = threading.Lock()

    def today(self) -> date:
        """Current date in the local timezone"""
        return self.clock().astimezone(self.tz).date()

    def local_date(self, moment: datetime) -> date:
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        return moment.astimezone(self.tz).date()

    def _valid(self, entry: Tuple[int, date, datetime]) -> bool:
        _, local_date, stored_at = entry
        age = (self.clock() - stored_at).total_seconds()
        return local_date == self.today() and age < self.ttl_seconds

    def get(self, user_id: str) -> Optional[int]:
        with self._lock:
            entry = self._entries.get(user_id)
            if entry is None:
                return None
            if not self._valid(entry):
                del self._entries[user_id]
                return None
            return entry[0]

    def set(self, user_id: str, count: int) -> None:
        with self._lock:
            self._entries[user_id] = (count, self.today(), self.clock())

    def increment(self, user_id: str) -> Optional[int]:
        """Advance a valid entry; None when there is nothing valid to advance"""
        with self._lock:
            entry = self._entries.get(user_id)
            if entry is None or not self._valid(entry):
                self._entries.pop(user_id, None)
                return None
            count, local_date, stored_at = entry
            self._entries[user_id] = (count + 1, local_date, stored_at)
            return count + 1

    def invalidate(self, user_id: Optional[str] = None) -> None:
        with self._lock:
            if user_id is None:
                self._entries.clear()
            else:
                self._entries.pop(user_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


@dataclass
class TaxBreakdown:
    """Fees for one debit"""
    vat_amount: Decimal
    nibss_amount: Decimal
    total_tax: Decimal
    is_taxed: bool
    free_transactions_left: int

    def to_metadata(self) -> Dict[str, Any]:
        """Tax fields carried in rail request metadata"""
        return {
            "vatAmount": str(self.vat_amount),
            "nibssAmount": str(self.nibss_amount),
            "isTaxed": self.is_taxed,
        }


class TaxEngine:
    """
    Fee calculation backed by the per-user daily debit count
    """

    def __init__(
        self,
        ledger: Ledger,
        cache: DailyCounterCache,
        vat_rate: Decimal = Decimal("0.1075"),
        free_transactions_per_day: int = 5,
        nibss_fee_amount: Decimal = Decimal("50"),
        nibss_fee_threshold: Decimal = Decimal("10000")
    ):
        self.ledger = ledger
        self.cache = cache
        self.vat_rate = Decimal(vat_rate)
        self.free_transactions_per_day = free_transactions_per_day
        self.nibss_fee_amount = Decimal(nibss_fee_amount)
        self.nibss_fee_threshold = Decimal(nibss_fee_threshold)

    def calculate_fee(self, amount: Decimal, daily_count: int, same_bank: bool = False) -> TaxBreakdown:
        """
        Compute VAT and the inter-bank fee for one debit

        Args:
            amount: Transfer amount
            daily_count: Debits already made by the sender today
            same_bank: Both sides are accounts of this institution

        Returns:
            TaxBreakdown with two-decimal amounts
        """
        free_left = max(0, self.free_transactions_per_day - daily_count)

        if same_bank:
            return TaxBreakdown(ZERO, ZERO, ZERO, False, free_left)

        vat_amount = ZERO
        if daily_count >= self.free_transactions_per_day:
            vat_amount = round_amount(Decimal(amount) * self.vat_rate)

        nibss_amount = ZERO
        if Decimal(amount) >= self.nibss_fee_threshold:
            nibss_amount = round_amount(self.nibss_fee_amount)

        total_tax = round_amount(vat_amount + nibss_amount)
        return TaxBreakdown(
            vat_amount=vat_amount,
            nibss_amount=nibss_amount,
            total_tax=total_tax,
            is_taxed=total_tax > 0,
            free_transactions_left=free_left
        )

    def daily_debit_count(self, user_id: str) -> int:
        """Debits recorded for the user on the current local day"""
        cached = self.cache.get(user_id)
        if cached is not None:
            return cached

        count = self._count_from_store(user_id)
        self.cache.set(user_id, count)
        logger.debug(f"Daily debit count for {user_id} reloaded from store: {count}")
        return count

    def increment_debit_count(self, user_id: str) -> int:
        """Advance the counter after a debit committed"""
        count = self.cache.increment(user_id)
        if count is None:
            # Store already holds the committed entry
            count = self._count_from_store(user_id)
            self.cache.set(user_id, count)
        return count

    def free_transactions_left(self, user_id: str) -> int:
        return max(0, self.free_transactions_per_day - self.daily_debit_count(user_id))

    def clear(self, user_id: Optional[str] = None) -> None:
        self.cache.invalidate(user_id)

    def _count_from_store(self, user_id: str) -> int:
        today = self.cache.today()
        count = 0
        for entry in self.ledger.list_user_transactions(user_id, mode=TransactionMode.DEBIT):
            if entry.status == TransactionStatus.FAILED:
                continue
            if entry.category in (TransactionCategory.FEE, TransactionCategory.SAVINGS):
                continue
            if self.cache.local_date(entry.effective_at) == today:
                count += 1
        return count
