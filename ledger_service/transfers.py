"""
Transfer Engine Module

Validates a transfer, applies the double-entry balance update and writes the
transaction record as one atomic unit. Money is neither created nor destroyed
and no committed balance is negative, however many transfers race.
"""

from decimal import Decimal
from dataclasses import dataclass
from typing import Optional

from .balances import BalanceStore
from .errors import InsufficientFundsError, LedgerError, StoreFailure, ValidationError
from .money import ZERO, AmountLike, parse_amount
from .storage import StorageInterface
from .transactions import TransactionLog, TransferRecord, TransferStatus
from .logging_config import get_logger, log_action


@dataclass(frozen=True)
class TransferResult:
    """Outcome of a committed transfer"""
    transaction_id: str
    from_account_id: str
    to_account_id: str
    amount: Decimal
    from_balance: Decimal
    to_balance: Decimal


class TransferEngine:
    """
    Orchestrates transfers between accounts.

    The balance read-modify-write and the APPLIED log record commit together
    or not at all. A transfer rejected for insufficient funds rolls back and
    is then recorded as REJECTED in its own unit, so the log reflects the
    real outcome of every attempt that reached the balance check.
    """

    def __init__(
        self,
        storage: StorageInterface,
        balance_store: BalanceStore,
        transaction_log: TransactionLog,
        precision: int = 2,
        record_rejected: bool = True
    ):
        self.storage = storage
        self.balance_store = balance_store
        self.transaction_log = transaction_log
        self.precision = precision
        self.record_rejected = record_rejected
        self.logger = get_logger("ledger.transfers")

    def create_transfer(
        self,
        from_account_id: str,
        to_account_id: str,
        amount: AmountLike,
        initiated_by: Optional[str] = None
    ) -> TransferResult:
        """
        Transfer money between two accounts

        Args:
            from_account_id: Account to debit
            to_account_id: Account to credit
            amount: Positive amount as string, int or Decimal
            initiated_by: Authenticated caller identity

        Returns:
            TransferResult with the new balances

        Raises:
            ValidationError: If the amount is not positive or the accounts match
            AccountNotFoundError: If either account does not exist
            InsufficientFundsError: If the source cannot cover the amount
            StoreFailure: If the storage backend fails
        """
        value = self._validate(from_account_id, to_account_id, amount)
        resource = f"transfer:{from_account_id}->{to_account_id}"
        details = {
            "from_account": from_account_id,
            "to_account": to_account_id,
            "amount": str(value)
        }

        try:
            with self.storage.atomic():
                new_from, new_to = self.balance_store.transfer_atomic(
                    from_account_id, to_account_id, value
                )
                record = self.transaction_log.append(
                    from_account_id, to_account_id, value,
                    status=TransferStatus.APPLIED,
                    initiated_by=initiated_by
                )
        except InsufficientFundsError as e:
            try:
                rejected = self._record_rejection(from_account_id, to_account_id, value, e, initiated_by)
            except StoreFailure:
                # The caller still gets the insufficient funds verdict
                self.logger.exception("Failed to record rejected transfer: %s", resource)
                rejected = None
            log_action(
                self.logger, "warning", "Transfer rejected: insufficient funds",
                user_id=initiated_by, action="create_transfer", resource=resource,
                extra={
                    **details,
                    "available": str(e.available),
                    "transaction_id": rejected.id if rejected else None
                }
            )
            raise
        except StoreFailure:
            self.logger.exception("Transfer failed in storage backend: %s", resource)
            raise
        except LedgerError as e:
            log_action(
                self.logger, "info", f"Transfer refused: {e.message}",
                user_id=initiated_by, action="create_transfer", resource=resource,
                extra={**details, "kind": e.kind}
            )
            raise

        log_action(
            self.logger, "info", "Transfer applied",
            user_id=initiated_by, action="create_transfer", resource=resource,
            extra={
                **details,
                "transaction_id": record.id,
                "from_balance": str(new_from),
                "to_balance": str(new_to)
            }
        )

        return TransferResult(
            transaction_id=record.id,
            from_account_id=from_account_id,
            to_account_id=to_account_id,
            amount=value,
            from_balance=new_from,
            to_balance=new_to
        )

    def _validate(self, from_account_id: str, to_account_id: str, amount: AmountLike) -> Decimal:
        """Reject bad input before any balance is touched"""
        value = parse_amount(amount, self.precision)
        if value <= ZERO:
            raise ValidationError("Transfer amount must be positive", {"amount": value})

        if not from_account_id or not to_account_id:
            raise ValidationError("Both from_account_id and to_account_id are required")

        if from_account_id == to_account_id:
            raise ValidationError(
                "Cannot transfer to the same account",
                {"account_id": from_account_id}
            )

        return value

    def _record_rejection(
        self,
        from_account_id: str,
        to_account_id: str,
        amount: Decimal,
        error: InsufficientFundsError,
        initiated_by: Optional[str]
    ) -> Optional[TransferRecord]:
        if not self.record_rejected:
            return None

        with self.storage.atomic():
            return self.transaction_log.append(
                from_account_id, to_account_id, amount,
                status=TransferStatus.REJECTED,
                reason=error.message,
                initiated_by=initiated_by
            )
