"""
Account management endpoints
"""

from datetime import date, datetime, time, timezone
from math import ceil
from typing import Optional
from fastapi import APIRouter, Depends, Query, status

from .auth import WalletSystem, Identity, get_wallet_system, get_current_user
from .schemas import OpenAccountRequest, SetPinRequest, ChangePinRequest
from ..transactions import TransactionMode
from ..exceptions import ValidationError


router = APIRouter()


def _parse_bound(value: Optional[str], end_of_day: bool = False) -> Optional[datetime]:
    """Accept an ISO date or datetime query parameter"""
    if not value:
        return None
    try:
        if len(value) == 10:
            day = date.fromisoformat(value)
            return datetime.combine(day, time.max if end_of_day else time.min, tzinfo=timezone.utc)
        moment = datetime.fromisoformat(value)
    except ValueError:
        raise ValidationError(f"Invalid date: {value}")
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


@router.post("", status_code=status.HTTP_201_CREATED)
def open_account(
    request: OpenAccountRequest,
    identity: Identity = Depends(get_current_user),
    system: WalletSystem = Depends(get_wallet_system)
):
    """Open the caller's wallet account"""
    account = system.account_manager.open_account(identity.user_id, request.account_name, request.bank_name)
    return {"status": True, "message": "Account created successfully", "data": account.public_view()}


@router.get("/me")
def get_my_account(
    identity: Identity = Depends(get_current_user),
    system: WalletSystem = Depends(get_wallet_system)
):
    """Get the caller's account"""
    account = system.account_manager.require_account_by_user(identity.user_id)
    return {"status": True, "data": account.public_view()}


@router.post("/account-number")
def generate_account_number(
    identity: Identity = Depends(get_current_user),
    system: WalletSystem = Depends(get_wallet_system)
):
    """Assign a 10-digit account number"""
    account = system.account_manager.generate_account_number(identity.user_id)
    return {
        "status": True,
        "message": "Account number generated successfully",
        "data": {"account_number": account.account_number},
    }


@router.post("/pin")
def set_pin(
    request: SetPinRequest,
    identity: Identity = Depends(get_current_user),
    system: WalletSystem = Depends(get_wallet_system)
):
    """Set the transaction PIN"""
    system.account_manager.set_pin(identity.user_id, request.pin)
    return {"status": True, "message": "PIN set successfully"}


@router.put("/pin")
def change_pin(
    request: ChangePinRequest,
    identity: Identity = Depends(get_current_user),
    system: WalletSystem = Depends(get_wallet_system)
):
    """Change the transaction PIN"""
    system.account_manager.change_pin(identity.user_id, request.old_pin, request.new_pin)
    return {"status": True, "message": "PIN changed successfully"}


@router.get("/find/{account_number}")
def find_account(
    account_number: str,
    identity: Identity = Depends(get_current_user),
    system: WalletSystem = Depends(get_wallet_system)
):
    """Resolve an account number to its holder name"""
    account = system.account_manager.require_account_by_number(account_number)
    return {
        "status": True,
        "data": {
            "account_name": account.account_name,
            "account_number": account.account_number,
            "bank_name": account.bank_name,
        },
    }


@router.get("/free-transactions-left")
def free_transactions_left(
    identity: Identity = Depends(get_current_user),
    system: WalletSystem = Depends(get_wallet_system)
):
    """Fee-free transfers remaining today"""
    return {
        "status": True,
        "data": {"free_transactions_left": system.transfer_coordinator.free_transactions_left(identity.user_id)},
    }


@router.get("/transactions")
def get_transactions(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    type: Optional[str] = Query(None, description="DEBIT or CREDIT"),
    start: Optional[str] = Query(None, alias="from"),
    end: Optional[str] = Query(None, alias="to"),
    identity: Identity = Depends(get_current_user),
    system: WalletSystem = Depends(get_wallet_system)
):
    """Transaction history, newest first"""
    mode = None
    if type:
        try:
            mode = TransactionMode(type.upper())
        except ValueError:
            raise ValidationError("type must be DEBIT or CREDIT")

    transactions = system.ledger.list_user_transactions(
        identity.user_id,
        mode=mode,
        start=_parse_bound(start),
        end=_parse_bound(end, end_of_day=True)
    )

    total = len(transactions)
    offset = (page - 1) * limit
    return {
        "status": True,
        "data": [txn.to_dict() for txn in transactions[offset:offset + limit]],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": ceil(total / limit) if total else 0,
        },
    }
