"""
Account balance endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, status

from .deps import LedgerSystem, get_caller_id, get_ledger_system
from .schemas import BalanceResponse, OpenAccountRequest, SetBalanceRequest


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED, response_model=BalanceResponse)
def open_account(
    request: Optional[OpenAccountRequest] = None,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Provision an account with a zero balance"""
    account = system.balance_store.open_account(request.account_id if request else None)
    return BalanceResponse.build(account.account_id, account.balance, system.config.amount_precision)


@router.get("/{account_id}/balance", response_model=BalanceResponse)
def check_balance(
    account_id: str,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Get the current balance of an account"""
    balance = system.query_service.get_balance(account_id)
    return BalanceResponse.build(account_id, balance, system.config.amount_precision)


@router.put("/{account_id}/balance", response_model=BalanceResponse)
def update_balance(
    account_id: str,
    request: SetBalanceRequest,
    system: LedgerSystem = Depends(get_ledger_system),
    caller_id: Optional[str] = Depends(get_caller_id)
):
    """Administrative overwrite of an account balance"""
    balance = system.balance_store.set_balance(account_id, request.balance, user_id=caller_id)
    return BalanceResponse.build(account_id, balance, system.config.amount_precision)
