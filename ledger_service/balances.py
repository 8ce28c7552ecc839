"""
Balance Store Module

Durable mapping from account id to its current Decimal balance. Accounts are
opened with a zero balance and mutated only by transfers or an administrative
set. A committed balance is never negative.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, Optional, Tuple
import uuid

from .errors import AccountNotFoundError, InsufficientFundsError, ValidationError
from .money import ZERO, AmountLike, exact_add, parse_amount
from .storage import StorageInterface, StorageRecord
from .logging_config import get_logger, log_action


@dataclass
class AccountBalance(StorageRecord):
    """Current balance of one account"""
    balance: Decimal

    def __post_init__(self):
        if not isinstance(self.balance, Decimal):
            self.balance = Decimal(str(self.balance))

        if self.balance < ZERO:
            raise ValueError("Account balance cannot be negative")

    @property
    def account_id(self) -> str:
        return self.id


class BalanceStore:
    """
    Reads and writes account balances over a storage backend.

    transfer_atomic() is the only multi-record mutation; it locks both rows
    in sorted id order and runs inside storage.atomic(), so a caller may wrap
    it in a larger atomic unit (for example together with a log append).
    """

    def __init__(self, storage: StorageInterface, precision: int = 2, table_name: str = "balances"):
        self.storage = storage
        self.precision = precision
        self.table_name = table_name
        self.logger = get_logger("ledger.balances")

    def open_account(self, account_id: Optional[str] = None, initial_balance: AmountLike = ZERO) -> AccountBalance:
        """
        Provision an account row.

        Args:
            account_id: Identifier to use; a UUID4 is generated when omitted
            initial_balance: Seed balance, zero unless provisioning says otherwise

        Returns:
            Created AccountBalance

        Raises:
            ValidationError: If the id is taken or the seed balance is negative
        """
        balance = parse_amount(initial_balance, self.precision, field="balance")
        if balance < ZERO:
            raise ValidationError("Account balance cannot be negative", {"balance": balance})

        account_id = account_id or str(uuid.uuid4())
        now = datetime.now(timezone.utc)

        with self.storage.atomic():
            if self.storage.exists(self.table_name, account_id):
                raise ValidationError(f"Account {account_id} already exists", {"account_id": account_id})

            account = AccountBalance(id=account_id, created_at=now, updated_at=now, balance=balance)
            self._save(account)

        log_action(
            self.logger, "info", "Account opened",
            action="open_account", resource=f"account:{account_id}",
            extra={"account_id": account_id, "balance": str(balance)}
        )
        return account

    def account_exists(self, account_id: str) -> bool:
        """Check whether an account has been provisioned"""
        return self.storage.exists(self.table_name, account_id)

    def get_account(self, account_id: str, role: Optional[str] = None) -> AccountBalance:
        """Load an account or raise AccountNotFoundError"""
        data = self.storage.load(self.table_name, account_id)
        if not data:
            raise AccountNotFoundError(account_id, role)
        return AccountBalance.from_dict(data)

    def get_balance(self, account_id: str) -> Decimal:
        """Get the current balance of an account"""
        return self.get_account(account_id).balance

    def set_balance(self, account_id: str, new_balance: AmountLike, user_id: Optional[str] = None) -> Decimal:
        """
        Administrative unconditional overwrite of a balance.

        Raises:
            AccountNotFoundError: If the account does not exist
            ValidationError: If the new balance is negative or malformed
        """
        balance = parse_amount(new_balance, self.precision, field="balance")

        with self.storage.atomic():
            self.storage.lock_records(self.table_name, [account_id])
            account = self.get_account(account_id)

            if balance < ZERO:
                raise ValidationError("Account balance cannot be negative", {"balance": balance})

            previous = account.balance
            account.balance = balance
            account.updated_at = datetime.now(timezone.utc)
            self._save(account)

        log_action(
            self.logger, "info", "Account balance set",
            user_id=user_id, action="set_balance", resource=f"account:{account_id}",
            extra={"account_id": account_id, "previous": str(previous), "balance": str(balance)}
        )
        return balance

    def transfer_atomic(self, from_id: str, to_id: str, amount: Decimal) -> Tuple[Decimal, Decimal]:
        """
        Move ``amount`` from one balance to another as a single isolated unit.

        Args:
            from_id: Account debited
            to_id: Account credited
            amount: Positive Decimal amount

        Returns:
            (new_from_balance, new_to_balance)

        Raises:
            AccountNotFoundError: If either account is missing
            InsufficientFundsError: If either resulting balance would be negative
            ValidationError: If both ids name the same account or a new balance
                would not fit the decimal context exactly
        """
        if from_id == to_id:
            raise ValidationError("Cannot transfer to the same account", {"account_id": from_id})

        with self.storage.atomic():
            self.storage.lock_records(self.table_name, sorted({from_id, to_id}))

            from_account = self.get_account(from_id, role="source")
            to_account = self.get_account(to_id, role="destination")

            new_from = exact_add(from_account.balance, -amount)
            new_to = exact_add(to_account.balance, amount)

            # A balance of exactly zero is a valid outcome
            if new_from < ZERO or new_to < ZERO:
                raise InsufficientFundsError(
                    requested=amount,
                    available=from_account.balance,
                    new_from_balance=new_from,
                    new_to_balance=new_to
                )

            now = datetime.now(timezone.utc)
            from_account.balance = new_from
            from_account.updated_at = now
            to_account.balance = new_to
            to_account.updated_at = now

            self._save(from_account)
            self._save(to_account)

        return new_from, new_to

    def total_balance(self) -> Decimal:
        """Sum of all balances in the ledger"""
        with self.storage.atomic():
            rows = self.storage.load_all(self.table_name)
        total = ZERO
        for row in rows:
            total = exact_add(total, Decimal(row['balance']), field="total balance")
        return total

    def _save(self, account: AccountBalance) -> None:
        self.storage.save(self.table_name, account.id, self._account_to_dict(account))

    def _account_to_dict(self, account: AccountBalance) -> Dict:
        result = account.to_dict()
        result['balance'] = str(account.balance)
        return result
