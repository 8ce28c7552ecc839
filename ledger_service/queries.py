"""
Query Service Module

Read-only views over balances and the transaction log.
"""

from decimal import Decimal
from typing import List, Optional

from .balances import BalanceStore
from .errors import TransactionsNotFoundError
from .transactions import TransactionLog, TransferRecord, TransferStatus


class QueryService:
    """Balance and transaction history lookups. Never mutates state."""

    def __init__(self, balance_store: BalanceStore, transaction_log: TransactionLog):
        self.balance_store = balance_store
        self.transaction_log = transaction_log

    def get_balance(self, account_id: str) -> Decimal:
        """Current balance, or AccountNotFoundError"""
        return self.balance_store.get_balance(account_id)

    def list_transactions(self, status: Optional[TransferStatus] = None) -> List[TransferRecord]:
        """All transaction records in insertion order"""
        return self.transaction_log.list_all(status)

    def query_transactions(self, account_id: str, status: Optional[TransferStatus] = None) -> List[TransferRecord]:
        """
        Records where the account is sender or receiver

        Raises:
            TransactionsNotFoundError: If no record matches
        """
        records = self.transaction_log.find_by_account(account_id, status)
        if not records:
            raise TransactionsNotFoundError(account_id)
        return records

    def get_transaction(self, transaction_id: str) -> TransferRecord:
        """Single record, or TransactionNotFoundError"""
        return self.transaction_log.get(transaction_id)
