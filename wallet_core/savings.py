"""
Savings Goals Module

Savings goals hold funds set aside from the owner's main account. Every goal
balance change is a ledger unit of work that moves the same amount out of or
into the main account and records one entry against it. Goals complete
automatically once the balance reaches the target, which also switches off
any auto-charge.
"""

from decimal import Decimal, ROUND_HALF_UP
from datetime import datetime, timedelta, timezone
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple
import uuid

from .storage import StorageInterface, StorageRecord, parse_datetime
from .locks import KeyedLockRegistry, balance_key
from .accounts import Account, AccountManager, ACCOUNTS_TABLE
from .ledger import Ledger, BalanceLeg
from .transactions import (
    Transaction, TransactionMode, TransactionStatus, TransactionCategory,
    new_transaction, generate_reference
)
from .currency import to_amount, format_amount, ZERO
from .exceptions import ValidationError, NotFound, PermissionDenied, InsufficientFunds
from .logging_config import get_logger, log_action

logger = get_logger("banka.savings")

SAVINGS_TABLE = "savings_goals"


class GoalStatus(Enum):
    """Savings goal lifecycle"""
    ACTIVE = "active"
    COMPLETED = "completed"
    CLOSED = "closed"


class AutoChargeOutcome(Enum):
    """Result of one scheduled contribution attempt"""
    CHARGED = "charged"
    COMPLETED = "completed"          # Charged and the goal reached its target
    INSUFFICIENT_FUNDS = "insufficient_funds"
    NOT_DUE = "not_due"


@dataclass
class SavingsGoal(StorageRecord):
    """
    Savings goal owned by one user

    status is completed iff balance >= target_amount (unless closed).
    """
    user_id: str
    name: str
    target_amount: Decimal
    balance: Decimal = Decimal("0")
    status: GoalStatus = GoalStatus.ACTIVE
    auto_charge_enabled: bool = False
    auto_charge_amount: Decimal = Decimal("0")
    auto_charge_interval: int = 0  # minutes
    last_auto_charge: Optional[datetime] = None
    next_auto_charge: Optional[datetime] = None

    @property
    def is_closed(self) -> bool:
        return self.status == GoalStatus.CLOSED

    @property
    def is_completed(self) -> bool:
        return self.status == GoalStatus.COMPLETED

    @property
    def progress_percentage(self) -> Decimal:
        if self.target_amount <= 0:
            return Decimal("0")
        progress = min(self.balance / self.target_amount * 100, Decimal("100"))
        return progress.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)

    def should_auto_charge(self, now: datetime) -> bool:
        return (
            self.auto_charge_enabled
            and self.status == GoalStatus.ACTIVE
            and self.next_auto_charge is not None
            and now >= self.next_auto_charge
        )

    def refresh_status(self) -> None:
        """Recompute completion from balance; completion disables auto-charge"""
        if self.is_closed:
            return
        if self.balance >= self.target_amount:
            self.status = GoalStatus.COMPLETED
            self.disable_auto_charge()
        else:
            self.status = GoalStatus.ACTIVE

    def disable_auto_charge(self) -> None:
        self.auto_charge_enabled = False
        self.auto_charge_amount = Decimal("0")
        self.auto_charge_interval = 0
        self.last_auto_charge = None
        self.next_auto_charge = None

    def to_api_dict(self) -> Dict[str, Any]:
        result = self.to_dict()
        result["progress_percentage"] = str(self.progress_percentage)
        return result


def goal_from_dict(data: Dict[str, Any]) -> SavingsGoal:
    """Convert dictionary to SavingsGoal"""
    return SavingsGoal(
        id=data['id'],
        created_at=parse_datetime(data['created_at']),
        updated_at=parse_datetime(data['updated_at']),
        user_id=data['user_id'],
        name=data['name'],
        target_amount=Decimal(data['target_amount']),
        balance=Decimal(data.get('balance', '0')),
        status=GoalStatus(data.get('status', 'active')),
        auto_charge_enabled=data.get('auto_charge_enabled', False),
        auto_charge_amount=Decimal(data.get('auto_charge_amount', '0')),
        auto_charge_interval=int(data.get('auto_charge_interval', 0)),
        last_auto_charge=parse_datetime(data.get('last_auto_charge')),
        next_auto_charge=parse_datetime(data.get('next_auto_charge'))
    )


def _goal_update(mutate: Optional[Callable[[SavingsGoal], None]] = None) -> Callable[[Dict[str, Any]], None]:
    """Ledger leg hook: apply mutate to the stored goal, then recompute status"""
    def update(record: Dict[str, Any]) -> None:
        goal = goal_from_dict(record)
        if mutate:
            mutate(goal)
        goal.refresh_status()
        record.update(goal.to_dict())
    return update


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SavingsManager:
    """
    Manages savings goals and their movements against the main account
    """

    def __init__(
        self,
        storage: StorageInterface,
        locks: KeyedLockRegistry,
        accounts: AccountManager,
        ledger: Ledger,
        clock: Callable[[], datetime] = _utc_now
    ):
        self.storage = storage
        self.locks = locks
        self.accounts = accounts
        self.ledger = ledger
        self.clock = clock
        self.goals_table = SAVINGS_TABLE

    def create_goal(self, user_id: str, name: str, target_amount: Any) -> SavingsGoal:
        """
        Create an active goal with zero balance

        Raises:
            ValidationError: Missing name or non-positive target
            NotFound: User has no main account
        """
        if not name or not str(name).strip():
            raise ValidationError("Goal name is required")
        target = to_amount(target_amount)
        if target <= 0:
            raise ValidationError("Target amount must be positive")
        self.accounts.require_account_by_user(user_id)

        now = self.clock()
        goal = SavingsGoal(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            name=str(name).strip(),
            target_amount=target
        )
        self._save_goal(goal)

        log_action(logger, "info", f"Savings goal created with target {format_amount(target)}",
                   user_id=user_id, action="savings_create", resource=f"savings_goal:{goal.id}")
        return goal

    def list_goals(self, user_id: str) -> List[SavingsGoal]:
        goals = [goal_from_dict(data) for data in self.storage.find(self.goals_table, {"user_id": user_id})]
        goals.sort(key=lambda g: g.created_at)
        return goals

    def get_goal(self, user_id: str, goal_id: str) -> SavingsGoal:
        """
        Get a goal owned by the caller

        Raises:
            NotFound: Unknown goal
            PermissionDenied: Goal belongs to another user
        """
        goal_dict = self.storage.load(self.goals_table, goal_id)
        if not goal_dict:
            raise NotFound("Savings goal not found")
        goal = goal_from_dict(goal_dict)
        if goal.user_id != user_id:
            raise PermissionDenied("Unauthorized access to savings goal")
        return goal

    def deposit(self, user_id: str, goal_id: str, amount: Any) -> Tuple[SavingsGoal, Transaction]:
        """
        Move funds from the main account into the goal

        Raises:
            ValidationError: Bad amount or closed goal
            InsufficientFunds: Main account cannot cover the amount
        """
        amount = self._positive_amount(amount)
        goal = self.get_goal(user_id, goal_id)
        account = self.accounts.require_account_by_user(user_id)

        with self.locks.hold(balance_key(self.goals_table, goal.id), balance_key(ACCOUNTS_TABLE, account.id)):
            goal = self.get_goal(user_id, goal_id)
            if goal.is_closed:
                raise ValidationError("Cannot deposit into a closed savings goal")

            entry = self._main_account_entry(
                account, goal, amount, TransactionMode.DEBIT, f"Savings deposit: {goal.name}"
            )
            self.ledger.post([
                BalanceLeg(ACCOUNTS_TABLE, account.id, amount, TransactionMode.DEBIT, entry=entry),
                BalanceLeg(self.goals_table, goal.id, amount, TransactionMode.CREDIT, update=_goal_update()),
            ], action="savings_deposit")

        return self.get_goal(user_id, goal_id), entry

    def withdraw(self, user_id: str, goal_id: str, amount: Any) -> Tuple[SavingsGoal, Transaction]:
        """
        Move funds from the goal back to the main account

        Raises:
            ValidationError: Bad amount or closed goal
            InsufficientFunds: Goal balance cannot cover the amount
        """
        amount = self._positive_amount(amount)
        goal = self.get_goal(user_id, goal_id)
        account = self.accounts.require_account_by_user(user_id)

        with self.locks.hold(balance_key(self.goals_table, goal.id), balance_key(ACCOUNTS_TABLE, account.id)):
            goal = self.get_goal(user_id, goal_id)
            if goal.is_closed:
                raise ValidationError("Cannot withdraw from a closed savings goal")

            entry = self._main_account_entry(
                account, goal, amount, TransactionMode.CREDIT, f"Savings withdrawal: {goal.name}"
            )
            try:
                self.ledger.post([
                    BalanceLeg(self.goals_table, goal.id, amount, TransactionMode.DEBIT, update=_goal_update()),
                    BalanceLeg(ACCOUNTS_TABLE, account.id, amount, TransactionMode.CREDIT, entry=entry),
                ], action="savings_withdraw")
            except InsufficientFunds:
                raise InsufficientFunds("Insufficient savings balance")

        return self.get_goal(user_id, goal_id), entry

    def enable_auto_charge(self, user_id: str, goal_id: str, amount: Any, interval_minutes: Any) -> SavingsGoal:
        """
        Schedule a recurring contribution; the first runs one interval from now

        Raises:
            ValidationError: Bad amount/interval, closed or completed goal
        """
        amount = self._positive_amount(amount)
        try:
            interval = int(interval_minutes)
        except (TypeError, ValueError):
            raise ValidationError("Interval must be a whole number of minutes")
        if interval < 1:
            raise ValidationError("Interval must be at least 1 minute")

        goal = self.get_goal(user_id, goal_id)
        with self.locks.hold(balance_key(self.goals_table, goal.id)):
            goal = self.get_goal(user_id, goal_id)
            if goal.is_closed:
                raise ValidationError("Savings goal is closed")
            if goal.is_completed:
                raise ValidationError("Savings goal already completed")

            now = self.clock()
            goal.auto_charge_enabled = True
            goal.auto_charge_amount = amount
            goal.auto_charge_interval = interval
            goal.next_auto_charge = now + timedelta(minutes=interval)
            goal.updated_at = now
            self._save_goal(goal)

        log_action(logger, "info", f"Auto-charge of {format_amount(amount)} every {interval} minutes enabled",
                   user_id=user_id, action="auto_charge_enable", resource=f"savings_goal:{goal.id}")
        return goal

    def disable_auto_charge(self, user_id: str, goal_id: str) -> SavingsGoal:
        goal = self.get_goal(user_id, goal_id)
        with self.locks.hold(balance_key(self.goals_table, goal.id)):
            goal = self.get_goal(user_id, goal_id)
            goal.disable_auto_charge()
            goal.updated_at = self.clock()
            self._save_goal(goal)

        log_action(logger, "info", "Auto-charge disabled", user_id=user_id,
                   action="auto_charge_disable", resource=f"savings_goal:{goal.id}")
        return goal

    def close_goal(self, user_id: str, goal_id: str) -> Tuple[SavingsGoal, Optional[Transaction]]:
        """
        Sweep the balance to the main account and close the goal

        Returns:
            The closed goal and the sweep entry (None when the balance was zero)
        """
        goal = self.get_goal(user_id, goal_id)
        account = self.accounts.require_account_by_user(user_id)
        with self.locks.hold(balance_key(self.goals_table, goal.id), balance_key(ACCOUNTS_TABLE, account.id)):
            goal = self.get_goal(user_id, goal_id)
            if goal.is_closed:
                raise ValidationError("Savings goal already closed")

            def close(g: SavingsGoal) -> None:
                g.status = GoalStatus.CLOSED
                g.disable_auto_charge()

            entry = self._sweep(goal, f"Savings goal closed: {goal.name}", close, "savings_close")
            if entry is None:
                close(goal)
                goal.updated_at = self.clock()
                self._save_goal(goal)

        log_action(logger, "info", f"Savings goal closed, {format_amount(goal.balance)} returned",
                   user_id=user_id, action="savings_close", resource=f"savings_goal:{goal.id}")
        return self.get_goal(user_id, goal_id), entry

    def delete_goal(self, user_id: str, goal_id: str) -> Optional[Transaction]:
        """Sweep the balance to the main account, then remove the goal"""
        goal = self.get_goal(user_id, goal_id)
        account = self.accounts.require_account_by_user(user_id)
        with self.locks.hold(balance_key(self.goals_table, goal.id), balance_key(ACCOUNTS_TABLE, account.id)):
            goal = self.get_goal(user_id, goal_id)
            entry = self._sweep(goal, f"Savings goal deleted: {goal.name}", None, "savings_delete")
            self.storage.delete(self.goals_table, goal.id)

        log_action(logger, "info", f"Savings goal deleted, {format_amount(goal.balance)} returned",
                   user_id=user_id, action="savings_delete", resource=f"savings_goal:{goal.id}")
        return entry

    def due_goals(self, now: Optional[datetime] = None) -> List[SavingsGoal]:
        """Goals whose next scheduled contribution is due"""
        now = now or self.clock()
        goals = [goal_from_dict(data) for data in self.storage.load_all(self.goals_table)]
        return [goal for goal in goals if goal.should_auto_charge(now)]

    def auto_charge(self, goal_id: str, now: Optional[datetime] = None) -> AutoChargeOutcome:
        """
        Run one scheduled contribution for a due goal

        An uncovered contribution is skipped without error and retried on
        the next tick.
        """
        now = now or self.clock()
        goal_dict = self.storage.load(self.goals_table, goal_id)
        if not goal_dict:
            raise NotFound("Savings goal not found")
        account = self.accounts.require_account_by_user(goal_dict['user_id'])

        with self.locks.hold(balance_key(self.goals_table, goal_id), balance_key(ACCOUNTS_TABLE, account.id)):
            goal_dict = self.storage.load(self.goals_table, goal_id)
            if not goal_dict:
                raise NotFound("Savings goal not found")
            goal = goal_from_dict(goal_dict)
            if not goal.should_auto_charge(now):
                return AutoChargeOutcome.NOT_DUE

            amount = goal.auto_charge_amount
            if self.ledger.get_balance(ACCOUNTS_TABLE, account.id) < amount:
                logger.info(f"Auto-charge skipped for goal {goal.id}: insufficient main balance")
                return AutoChargeOutcome.INSUFFICIENT_FUNDS

            def advance(g: SavingsGoal) -> None:
                g.last_auto_charge = now
                g.next_auto_charge = now + timedelta(minutes=g.auto_charge_interval)

            entry = self._main_account_entry(
                account, goal, amount, TransactionMode.DEBIT, f"Auto-charge: {goal.name}"
            )
            entry.metadata["auto_charge"] = True
            try:
                self.ledger.post([
                    BalanceLeg(ACCOUNTS_TABLE, account.id, amount, TransactionMode.DEBIT, entry=entry),
                    BalanceLeg(self.goals_table, goal.id, amount, TransactionMode.CREDIT,
                               update=_goal_update(advance)),
                ], action="auto_charge")
            except InsufficientFunds:
                logger.info(f"Auto-charge skipped for goal {goal.id}: balance changed during charge")
                return AutoChargeOutcome.INSUFFICIENT_FUNDS

            goal = goal_from_dict(self.storage.load(self.goals_table, goal_id))

        log_action(logger, "info", f"Auto-charged {format_amount(amount)} into goal",
                   user_id=goal.user_id, action="auto_charge", resource=f"savings_goal:{goal.id}",
                   correlation_id=entry.reference, extra={"status": goal.status.value})
        if goal.is_completed:
            return AutoChargeOutcome.COMPLETED
        return AutoChargeOutcome.CHARGED

    def _sweep(self, goal: SavingsGoal, description: str,
               mutate: Optional[Callable[[SavingsGoal], None]], action: str) -> Optional[Transaction]:
        """Return the whole goal balance to the main account"""
        if goal.balance <= ZERO:
            return None
        account = self.accounts.require_account_by_user(goal.user_id)
        entry = self._main_account_entry(account, goal, goal.balance, TransactionMode.CREDIT, description)
        self.ledger.post([
            BalanceLeg(self.goals_table, goal.id, goal.balance, TransactionMode.DEBIT, update=_goal_update(mutate)),
            BalanceLeg(ACCOUNTS_TABLE, account.id, goal.balance, TransactionMode.CREDIT, entry=entry),
        ], action=action)
        return entry

    def _main_account_entry(self, account: Account, goal: SavingsGoal, amount: Decimal,
                            mode: TransactionMode, description: str) -> Transaction:
        into_goal = mode == TransactionMode.DEBIT
        return new_transaction(
            account.user_id, amount, mode, generate_reference("SAV"),
            status=TransactionStatus.SUCCESS,
            category=TransactionCategory.SAVINGS,
            description=description,
            sender_id=account.user_id if into_goal else goal.id,
            sender_name=account.account_name if into_goal else goal.name,
            receiver_id=goal.id if into_goal else account.user_id,
            receiver_name=goal.name if into_goal else account.account_name,
            metadata={"savings_goal_id": goal.id}
        )

    def _positive_amount(self, value: Any) -> Decimal:
        amount = to_amount(value)
        if amount <= 0:
            raise ValidationError("Amount must be positive")
        return amount

    def _save_goal(self, goal: SavingsGoal) -> None:
        """Save goal to storage"""
        self.storage.save(self.goals_table, goal.id, goal.to_dict())
