"""
Transaction Log Module

Append-only record of transfers. Every record carries the outcome it was
written with, so a rejected attempt is never mistaken for a committed one.
Records are immutable once appended.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional
from enum import Enum
import uuid

from .errors import TransactionNotFoundError, ValidationError
from .money import ZERO
from .storage import StorageInterface, StorageRecord


class TransferStatus(Enum):
    """Outcome recorded for a transfer"""
    APPLIED = "applied"    # Balances were updated in the same atomic unit
    REJECTED = "rejected"  # Business rule rejected it; balances untouched


@dataclass
class TransferRecord(StorageRecord):
    """
    Immutable ledger entry for one transfer
    """
    from_account_id: str
    to_account_id: str
    amount: Decimal
    status: TransferStatus
    reason: Optional[str] = None          # Why a rejected transfer failed
    initiated_by: Optional[str] = None    # Caller identity

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            self.amount = Decimal(str(self.amount))

        if self.amount <= ZERO:
            raise ValueError("Transfer amount must be positive")

        if self.from_account_id == self.to_account_id:
            raise ValueError("Transfer accounts must differ")

    @property
    def is_applied(self) -> bool:
        return self.status == TransferStatus.APPLIED

    def involves(self, account_id: str) -> bool:
        """Check if the account is sender or receiver"""
        return account_id in (self.from_account_id, self.to_account_id)


class TransactionLog:
    """Append-only store of TransferRecords in insertion order"""

    def __init__(self, storage: StorageInterface, table_name: str = "transactions"):
        self.storage = storage
        self.table_name = table_name

    def append(
        self,
        from_account_id: str,
        to_account_id: str,
        amount: Decimal,
        status: TransferStatus,
        reason: Optional[str] = None,
        initiated_by: Optional[str] = None
    ) -> TransferRecord:
        """
        Append a new record

        Returns:
            The stored TransferRecord with its assigned id and timestamp
        """
        now = datetime.now(timezone.utc)
        try:
            record = TransferRecord(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                from_account_id=from_account_id,
                to_account_id=to_account_id,
                amount=amount,
                status=status,
                reason=reason,
                initiated_by=initiated_by
            )
        except ValueError as e:
            raise ValidationError(str(e))

        self.storage.save(self.table_name, record.id, self._record_to_dict(record))
        return record

    def get(self, transaction_id: str) -> TransferRecord:
        """Get a record by id"""
        data = self.storage.load(self.table_name, transaction_id)
        if not data:
            raise TransactionNotFoundError(transaction_id)
        return self._record_from_dict(data)

    def list_all(self, status: Optional[TransferStatus] = None) -> List[TransferRecord]:
        """All records in insertion order, optionally filtered by status"""
        if status:
            rows = self.storage.find(self.table_name, {"status": status.value})
        else:
            rows = self.storage.load_all(self.table_name)
        return [self._record_from_dict(row) for row in rows]

    def find_by_account(self, account_id: str, status: Optional[TransferStatus] = None) -> List[TransferRecord]:
        """Records where the account is sender or receiver, in insertion order"""
        return [record for record in self.list_all(status) if record.involves(account_id)]

    def count(self) -> int:
        return self.storage.count(self.table_name)

    def _record_to_dict(self, record: TransferRecord) -> Dict:
        result = record.to_dict()
        result['amount'] = str(record.amount)
        result['status'] = record.status.value
        return result

    def _record_from_dict(self, data: Dict) -> TransferRecord:
        return TransferRecord(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            from_account_id=data['from_account_id'],
            to_account_id=data['to_account_id'],
            amount=Decimal(data['amount']),
            status=TransferStatus(data['status']),
            reason=data.get('reason'),
            initiated_by=data.get('initiated_by')
        )
