"""
Transaction endpoints
"""

from typing import List, Optional

from fastapi import APIRouter, Depends

from .deps import LedgerSystem, get_caller_id, get_ledger_system
from .schemas import CreateTransferRequest, TransactionModel, TransferResponse
from ..money import format_amount
from ..transactions import TransferStatus


router = APIRouter()


@router.post("", status_code=201, response_model=TransferResponse)
def create_transfer(
    request: CreateTransferRequest,
    system: LedgerSystem = Depends(get_ledger_system),
    caller_id: Optional[str] = Depends(get_caller_id)
):
    """Transfer money between two accounts"""
    result = system.transfer_engine.create_transfer(
        from_account_id=request.from_account_id,
        to_account_id=request.to_account_id,
        amount=request.amount,
        initiated_by=caller_id
    )
    precision = system.config.amount_precision

    return TransferResponse(
        transaction_id=result.transaction_id,
        from_balance=format_amount(result.from_balance, precision),
        to_balance=format_amount(result.to_balance, precision),
        message=f"Transaction created successfully with ID: {result.transaction_id}"
    )


@router.get("", response_model=List[TransactionModel])
def list_transactions(
    status: Optional[TransferStatus] = None,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """All transactions in insertion order"""
    records = system.query_service.list_transactions(status)
    return [TransactionModel.from_record(r, system.config.amount_precision) for r in records]


@router.get("/query", response_model=List[TransactionModel])
def query_transactions(
    account_id: str,
    status: Optional[TransferStatus] = None,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Transactions where the account is sender or receiver"""
    records = system.query_service.query_transactions(account_id, status)
    return [TransactionModel.from_record(r, system.config.amount_precision) for r in records]


@router.get("/{transaction_id}", response_model=TransactionModel)
def get_transaction(
    transaction_id: str,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Get a single transaction record"""
    record = system.query_service.get_transaction(transaction_id)
    return TransactionModel.from_record(record, system.config.amount_precision)
