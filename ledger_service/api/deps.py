"""
Ledger system wiring and request dependencies
"""

from typing import Optional

from fastapi import Header, Request

from ..balances import BalanceStore
from ..config import LedgerConfig, get_config
from ..queries import QueryService
from ..storage import StorageInterface, create_storage
from ..transactions import TransactionLog
from ..transfers import TransferEngine


class LedgerSystem:
    """Ledger components built around one explicitly constructed storage handle"""

    def __init__(self, storage: StorageInterface, config: Optional[LedgerConfig] = None):
        self.config = config or get_config()
        self.storage = storage

        self.balance_store = BalanceStore(self.storage, precision=self.config.amount_precision)
        self.transaction_log = TransactionLog(self.storage)
        self.transfer_engine = TransferEngine(
            self.storage, self.balance_store, self.transaction_log,
            precision=self.config.amount_precision,
            record_rejected=self.config.record_rejected_transfers
        )
        self.query_service = QueryService(self.balance_store, self.transaction_log)

    @classmethod
    def from_config(cls, config: Optional[LedgerConfig] = None) -> 'LedgerSystem':
        """Build a system whose storage backend is chosen by database_url"""
        config = config or get_config()
        storage = create_storage(config.database_url, lock_timeout=config.lock_timeout_seconds)
        return cls(storage, config)

    def close(self) -> None:
        self.storage.close()


# Dependency to get the ledger system bound to this application
def get_ledger_system(request: Request) -> LedgerSystem:
    return request.app.state.ledger_system


def get_caller_id(x_caller_id: Optional[str] = Header(None)) -> Optional[str]:
    """Authenticated caller identity forwarded by the upstream auth layer"""
    return x_caller_id
