"""
Pydantic schemas for API requests and responses
"""

from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field

from .models import Account


class CreateAccountRequest(BaseModel):
    first_name: str = Field(..., alias="firstName")
    last_name: str = Field(..., alias="lastName")

    model_config = ConfigDict(populate_by_name=True)


class UpdateAccountRequest(BaseModel):
    first_name: str = Field(..., alias="firstName")
    last_name: str = Field(..., alias="lastName")

    model_config = ConfigDict(populate_by_name=True)


class TopUpRequest(BaseModel):
    number: int = Field(..., description="Account number to credit")
    amount: int = Field(..., description="Amount in the smallest currency unit")


class TransferRequest(BaseModel):
    sender_number: int = Field(..., alias="senderNumber")
    recipient_number: int = Field(..., alias="recipientNumber")
    amount: int = Field(..., description="Amount in the smallest currency unit")

    model_config = ConfigDict(populate_by_name=True)


class AccountResponse(BaseModel):
    id: int
    first_name: str = Field(..., alias="firstName")
    last_name: str = Field(..., alias="lastName")
    number: int
    balance: int
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_account(cls, account: Account) -> 'AccountResponse':
        return cls(
            id=account.id,
            first_name=account.first_name,
            last_name=account.last_name,
            number=account.number,
            balance=account.balance,
            created_at=account.created_at,
            updated_at=account.updated_at
        )


class DeletedResponse(BaseModel):
    deleted: int


class ErrorResponse(BaseModel):
    error: str
