"""
Pydantic schemas for API requests
"""

from decimal import Decimal
from typing import Optional
from pydantic import BaseModel, Field


# Account schemas
class OpenAccountRequest(BaseModel):
    account_name: str = Field(..., min_length=1)
    bank_name: Optional[str] = None


class SetPinRequest(BaseModel):
    pin: str = Field(..., description="4-digit transaction PIN")


class ChangePinRequest(BaseModel):
    old_pin: str
    new_pin: str


# Wallet schemas
class TransferRequest(BaseModel):
    account_number: str = Field(..., description="Receiver 10-digit account number")
    amount: Decimal
    pin: str
    description: Optional[str] = None


class ExternalTransferRequest(BaseModel):
    bank_code: str
    bank_name: str
    account_number: str
    account_name: str
    amount: Decimal
    pin: str
    description: Optional[str] = None


class ValidateAccountRequest(BaseModel):
    account_number: str
    bank_code: str
    bank_name: str


class DepositRequest(BaseModel):
    amount: Decimal
    description: Optional[str] = None


# Savings schemas
class CreateGoalRequest(BaseModel):
    name: str = Field(..., min_length=1)
    target_amount: Decimal


class GoalAmountRequest(BaseModel):
    amount: Decimal


class AutoChargeRequest(BaseModel):
    amount: Decimal
    interval_minutes: int = Field(..., description="Minutes between contributions")
