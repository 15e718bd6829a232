"""
Funds movement endpoints
"""

from fastapi import APIRouter, Depends

from .auth import WalletSystem, Identity, get_wallet_system, get_current_user
from .schemas import TransferRequest, ExternalTransferRequest, ValidateAccountRequest, DepositRequest


router = APIRouter()


@router.post("/transfer")
def internal_transfer(
    request: TransferRequest,
    identity: Identity = Depends(get_current_user),
    system: WalletSystem = Depends(get_wallet_system)
):
    """Transfer to another wallet account"""
    result = system.transfer_coordinator.internal_transfer(
        sender_user_id=identity.user_id,
        receiver_account_number=request.account_number,
        amount=request.amount,
        pin=request.pin,
        description=request.description
    )
    return {
        "status": True,
        "message": "Transfer successful",
        "data": {
            "reference": result.reference,
            "amount": str(result.amount),
            "vat_amount": str(result.tax.vat_amount),
            "nibss_amount": str(result.tax.nibss_amount),
            "total_debited": str(result.total_debited),
            "balance": str(result.sender_entry.new_bal),
            "transaction": result.sender_entry.to_dict(),
            "free_transactions_left": result.free_transactions_left,
        },
    }


@router.post("/external-transfer")
def external_transfer(
    request: ExternalTransferRequest,
    identity: Identity = Depends(get_current_user),
    system: WalletSystem = Depends(get_wallet_system)
):
    """Transfer to an account at another bank; settles asynchronously"""
    result = system.transfer_coordinator.initiate_external_transfer(
        sender_user_id=identity.user_id,
        bank_code=request.bank_code,
        bank_name=request.bank_name,
        account_number=request.account_number,
        account_name=request.account_name,
        amount=request.amount,
        pin=request.pin,
        description=request.description
    )
    return {
        "status": True,
        "message": "Transfer initiated",
        "data": {
            "reference": result.reference,
            "status": result.status,
            "amount": str(result.amount),
            "vat_amount": str(result.tax.vat_amount),
            "nibss_amount": str(result.tax.nibss_amount),
            "rail_response": result.rail_response,
        },
    }


@router.post("/validate-account")
def validate_account(
    request: ValidateAccountRequest,
    identity: Identity = Depends(get_current_user),
    system: WalletSystem = Depends(get_wallet_system)
):
    """Resolve a beneficiary at another bank"""
    data = system.transfer_coordinator.validate_external_account(
        identity.user_id, request.account_number, request.bank_code, request.bank_name
    )
    return {"status": True, "data": data}


@router.post("/deposits")
def create_deposit(
    request: DepositRequest,
    identity: Identity = Depends(get_current_user),
    system: WalletSystem = Depends(get_wallet_system)
):
    """Create a card payment link to fund the wallet"""
    link = system.transfer_coordinator.initiate_deposit(
        identity.user_id, identity.email, request.amount, request.description
    )
    return {
        "status": True,
        "message": "Deposit link created successfully",
        "data": {
            "payment_url": link.payment_url,
            "reference": link.reference,
            "amount": str(link.amount),
            "access_code": link.access_code,
            "transaction_id": link.transaction_id,
        },
    }


@router.get("/deposits/verify/{reference}")
def verify_deposit(
    reference: str,
    identity: Identity = Depends(get_current_user),
    system: WalletSystem = Depends(get_wallet_system)
):
    """Check a deposit's status with the card processor"""
    data = system.transfer_coordinator.verify_deposit(identity.user_id, reference)
    return {"status": True, "data": data}
