"""
Ledger Error Taxonomy

Every failure a ledger operation can report. Errors are scoped to a single
request and carry a stable ``kind`` plus an HTTP status for the API layer.
"""

from decimal import Decimal
from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base class for all ledger errors"""

    kind = "ledger_error"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for an error response body"""
        result: Dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.details:
            result["details"] = {
                k: str(v) if isinstance(v, Decimal) else v
                for k, v in self.details.items()
            }
        return result


class ValidationError(LedgerError):
    """Bad input: non-positive amount, negative balance, self-transfer"""

    kind = "validation_error"
    status_code = 400


class NotFoundError(LedgerError):
    """A referenced entity does not exist"""

    kind = "not_found"
    status_code = 404


class AccountNotFoundError(NotFoundError):
    """Raised when an account id is missing from the balance store"""

    def __init__(self, account_id: str, role: Optional[str] = None):
        details: Dict[str, Any] = {"account_id": account_id}
        if role:
            message = f"{role.capitalize()} account {account_id} not found"
            details["role"] = role
        else:
            message = f"Account with ID {account_id} not found"
        super().__init__(message, details)
        self.account_id = account_id
        self.role = role


class TransactionNotFoundError(NotFoundError):
    """Raised when a transaction id is unknown"""

    def __init__(self, transaction_id: str):
        super().__init__(f"Transaction {transaction_id} not found", {"transaction_id": transaction_id})
        self.transaction_id = transaction_id


class TransactionsNotFoundError(NotFoundError):
    """Raised when an account has no matching transactions"""

    def __init__(self, account_id: str):
        super().__init__(f"No transactions found for account ID: {account_id}", {"account_id": account_id})
        self.account_id = account_id


class InsufficientFundsError(LedgerError):
    """
    Business-rule rejection: the transfer would drive a balance negative.
    Carries both hypothetical balances for diagnostics.
    """

    kind = "insufficient_funds"
    status_code = 400

    def __init__(
        self,
        requested: Decimal,
        available: Decimal,
        new_from_balance: Decimal,
        new_to_balance: Decimal
    ):
        super().__init__(
            f"Insufficient balance for transaction. From account balance would be "
            f"{new_from_balance}, to account balance would be {new_to_balance}",
            {
                "requested": requested,
                "available": available,
                "new_from_balance": new_from_balance,
                "new_to_balance": new_to_balance,
            }
        )
        self.requested = requested
        self.available = available
        self.new_from_balance = new_from_balance
        self.new_to_balance = new_to_balance


class StoreFailure(LedgerError):
    """Underlying I/O, connection or lock-timeout failure"""

    kind = "store_failure"
    status_code = 500
