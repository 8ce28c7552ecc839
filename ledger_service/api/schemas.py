"""
Pydantic schemas for API requests and responses
"""

from decimal import Decimal
from typing import Optional, Union

from pydantic import BaseModel, Field, StrictInt, StrictStr

from ..money import format_amount
from ..transactions import TransferRecord


# Amounts travel as decimal strings; integers are accepted, floats are not
AmountField = Union[StrictStr, StrictInt]


class OpenAccountRequest(BaseModel):
    account_id: Optional[str] = Field(None, description="Identifier to use; generated when omitted")


class BalanceResponse(BaseModel):
    account_id: str
    balance: str = Field(..., description="Decimal balance as string")

    @classmethod
    def build(cls, account_id: str, balance: Decimal, precision: int) -> 'BalanceResponse':
        return cls(account_id=account_id, balance=format_amount(balance, precision))


class SetBalanceRequest(BaseModel):
    balance: AmountField = Field(..., description="New balance as decimal string")


class CreateTransferRequest(BaseModel):
    from_account_id: str
    to_account_id: str
    amount: AmountField = Field(..., description="Positive decimal amount as string")


class TransferResponse(BaseModel):
    transaction_id: str
    from_balance: str
    to_balance: str
    message: str


class TransactionModel(BaseModel):
    id: str
    from_account_id: str
    to_account_id: str
    amount: str
    status: str
    reason: Optional[str] = None
    initiated_by: Optional[str] = None
    created_at: str

    @classmethod
    def from_record(cls, record: TransferRecord, precision: int) -> 'TransactionModel':
        return cls(
            id=record.id,
            from_account_id=record.from_account_id,
            to_account_id=record.to_account_id,
            amount=format_amount(record.amount, precision),
            status=record.status.value,
            reason=record.reason,
            initiated_by=record.initiated_by,
            created_at=record.created_at.isoformat()
        )
