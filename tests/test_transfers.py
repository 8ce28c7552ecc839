"""
Test suite for the transfer engine

Validates conservation of money, non-negativity, rejection semantics,
the outcome recorded in the transaction log, and safety under concurrent
transfers on both the in-memory and SQLite backends.
"""

import pytest
import threading
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

from ledger_service.balances import BalanceStore
from ledger_service.errors import (
    AccountNotFoundError, InsufficientFundsError, StoreFailure, ValidationError
)
from ledger_service.storage import InMemoryStorage, SQLiteStorage
from ledger_service.transactions import TransactionLog, TransferStatus
from ledger_service.transfers import TransferEngine


def build_engine(storage, record_rejected=True):
    balance_store = BalanceStore(storage)
    transaction_log = TransactionLog(storage)
    engine = TransferEngine(
        storage, balance_store, transaction_log, record_rejected=record_rejected
    )
    return engine, balance_store, transaction_log


class TestTransferEngine:
    """Test transfer processing"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.engine, self.balances, self.log = build_engine(self.storage)

        self.balances.open_account("X")
        self.balances.open_account("Y")
        self.balances.open_account("Z")

    def test_successful_transfer(self):
        """X=100.00, Y=50.00, transfer 30.00 X->Y gives 70.00 / 80.00"""
        self.balances.set_balance("X", "100.00")
        self.balances.set_balance("Y", "50.00")

        result = self.engine.create_transfer("X", "Y", "30.00", initiated_by="user-1")

        assert result.from_balance == Decimal('70.00')
        assert result.to_balance == Decimal('80.00')
        assert result.amount == Decimal('30.00')
        assert self.balances.get_balance("X") == Decimal('70.00')
        assert self.balances.get_balance("Y") == Decimal('80.00')

        record = self.log.get(result.transaction_id)
        assert record.status == TransferStatus.APPLIED
        assert record.from_account_id == "X"
        assert record.to_account_id == "Y"
        assert record.amount == Decimal('30.00')
        assert record.initiated_by == "user-1"
        assert record.reason is None

    def test_conservation_and_other_accounts_untouched(self):
        self.balances.set_balance("X", "100.00")
        self.balances.set_balance("Y", "50.00")
        self.balances.set_balance("Z", "7.00")
        before = self.balances.total_balance()

        self.engine.create_transfer("X", "Y", Decimal('12.34'))

        assert self.balances.get_balance("X") + self.balances.get_balance("Y") == Decimal('150.00')
        assert self.balances.get_balance("Z") == Decimal('7.00')
        assert self.balances.total_balance() == before

    def test_transfer_to_exact_zero_succeeds(self):
        self.balances.set_balance("X", "40.00")

        result = self.engine.create_transfer("X", "Y", "40.00")

        assert result.from_balance == Decimal('0')
        assert self.balances.get_balance("X") == Decimal('0')
        assert self.balances.get_balance("Y") == Decimal('40.00')

    def test_insufficient_funds_rejected(self):
        """X=20.00, transfer 25.00 X->Y is rejected and X stays 20.00"""
        self.balances.set_balance("X", "20.00")
        self.balances.set_balance("Y", "3.00")

        with pytest.raises(InsufficientFundsError) as exc_info:
            self.engine.create_transfer("X", "Y", "25.00")

        assert exc_info.value.new_from_balance == Decimal('-5.00')
        assert exc_info.value.new_to_balance == Decimal('28.00')
        assert self.balances.get_balance("X") == Decimal('20.00')
        assert self.balances.get_balance("Y") == Decimal('3.00')

    def test_rejected_transfer_is_logged_as_rejected(self):
        """A rejected attempt is distinguishable from an applied one"""
        self.balances.set_balance("X", "20.00")

        with pytest.raises(InsufficientFundsError):
            self.engine.create_transfer("X", "Y", "25.00", initiated_by="user-2")

        records = self.log.list_all()
        assert len(records) == 1
        assert records[0].status == TransferStatus.REJECTED
        assert records[0].initiated_by == "user-2"
        assert "Insufficient balance" in records[0].reason
        assert self.log.list_all(TransferStatus.APPLIED) == []

    def test_rejected_transfer_not_logged_when_disabled(self):
        engine, balances, log = build_engine(InMemoryStorage(), record_rejected=False)
        balances.open_account("A", "1.00")
        balances.open_account("B")

        with pytest.raises(InsufficientFundsError):
            engine.create_transfer("A", "B", "2.00")

        assert log.count() == 0

    def test_repeated_rejection_is_deterministic(self):
        self.balances.set_balance("X", "10.00")

        verdicts = []
        for _ in range(2):
            with pytest.raises(InsufficientFundsError) as exc_info:
                self.engine.create_transfer("X", "Y", "10.01")
            verdicts.append((exc_info.value.new_from_balance, exc_info.value.new_to_balance))

        assert verdicts[0] == verdicts[1]
        assert self.balances.get_balance("X") == Decimal('10.00')

    @pytest.mark.parametrize("amount", ["0", "0.00", "-5.00", -1, 0])
    def test_non_positive_amount_rejected(self, amount):
        """Zero or negative amounts fail validation before touching balances"""
        self.balances.set_balance("X", "100.00")

        with pytest.raises(ValidationError, match="must be positive"):
            self.engine.create_transfer("X", "Y", amount)

        assert self.balances.get_balance("X") == Decimal('100.00')
        assert self.log.count() == 0

    @pytest.mark.parametrize("amount", [1.5, "abc", "NaN", "Infinity", "1.001", None])
    def test_malformed_amount_rejected(self, amount):
        with pytest.raises(ValidationError):
            self.engine.create_transfer("X", "Y", amount)
        assert self.log.count() == 0

    def test_unknown_account_not_found(self):
        """A nonexistent account returns NotFound and mutates nothing"""
        self.balances.set_balance("X", "100.00")

        with pytest.raises(AccountNotFoundError) as exc_info:
            self.engine.create_transfer("X", "ghost", "10.00")

        assert exc_info.value.account_id == "ghost"
        assert self.balances.get_balance("X") == Decimal('100.00')
        assert self.log.count() == 0

        with pytest.raises(AccountNotFoundError):
            self.engine.create_transfer("ghost", "X", "10.00")

    def test_self_transfer_rejected(self):
        self.balances.set_balance("X", "100.00")

        with pytest.raises(ValidationError, match="same account"):
            self.engine.create_transfer("X", "X", "10.00")

        assert self.balances.get_balance("X") == Decimal('100.00')
        assert self.log.count() == 0

    def test_log_failure_rolls_back_balances(self, monkeypatch):
        """If the log write fails, neither balance changes"""
        self.balances.set_balance("X", "100.00")

        def failing_append(*args, **kwargs):
            raise StoreFailure("disk full")

        monkeypatch.setattr(self.log, "append", failing_append)

        with pytest.raises(StoreFailure):
            self.engine.create_transfer("X", "Y", "30.00")

        assert self.balances.get_balance("X") == Decimal('100.00')
        assert self.balances.get_balance("Y") == Decimal('0')

    def test_rejection_survives_failed_rejection_record(self, monkeypatch):
        """A storage error while logging a rejection does not hide the verdict"""
        self.balances.set_balance("X", "20.00")

        def failing_append(*args, **kwargs):
            raise StoreFailure("disk full")

        monkeypatch.setattr(self.log, "append", failing_append)

        with pytest.raises(InsufficientFundsError) as exc_info:
            self.engine.create_transfer("X", "Y", "25.00")

        assert exc_info.value.status_code == 400
        assert self.balances.get_balance("X") == Decimal('20.00')
        assert self.balances.get_balance("Y") == Decimal('0')

    def test_credit_beyond_decimal_precision_rejected(self):
        """A result that cannot be held exactly is refused, not rounded"""
        self.balances.set_balance("X", "1.00")
        self.balances.set_balance("Y", "99999999999999999999999999.99")

        with pytest.raises(ValidationError, match="significant digits"):
            self.engine.create_transfer("X", "Y", "0.02")

        assert self.balances.get_balance("X") == Decimal('1.00')
        assert self.balances.get_balance("Y") == Decimal('99999999999999999999999999.99')
        assert self.log.count() == 0

    def test_credit_up_to_decimal_precision_is_exact(self):
        self.balances.set_balance("X", "1.00")
        self.balances.set_balance("Y", "99999999999999999999999999.98")

        result = self.engine.create_transfer("X", "Y", "0.01")

        assert result.from_balance == Decimal('0.99')
        assert result.to_balance == Decimal('99999999999999999999999999.99')
        assert self.balances.get_balance("Y") == Decimal('99999999999999999999999999.99')

    def test_cycle_of_transfers_conserves_total(self):
        self.balances.set_balance("X", "10.00")
        self.balances.set_balance("Y", "10.00")
        self.balances.set_balance("Z", "10.00")

        self.engine.create_transfer("X", "Y", "10.00")
        self.engine.create_transfer("Y", "Z", "15.00")
        self.engine.create_transfer("Z", "X", "25.00")

        assert self.balances.get_balance("X") == Decimal('25.00')
        assert self.balances.get_balance("Y") == Decimal('5.00')
        assert self.balances.get_balance("Z") == Decimal('0')
        assert self.balances.total_balance() == Decimal('30.00')


class TestConcurrentTransfers:
    """N concurrent debits of a from a balance of N*a never overdraw"""

    @pytest.fixture(params=["memory", "sqlite"])
    def storage(self, request, tmp_path):
        if request.param == "memory":
            storage = InMemoryStorage(lock_timeout=30)
        else:
            storage = SQLiteStorage(tmp_path / "concurrent.db", lock_timeout=30)
        yield storage
        storage.close()

    def _run_concurrently(self, engine, transfers):
        outcomes = []
        outcomes_lock = threading.Lock()
        start = threading.Barrier(len(transfers))

        def attempt(args):
            start.wait()
            try:
                engine.create_transfer(*args)
                outcome = "ok"
            except InsufficientFundsError:
                outcome = "insufficient"
            with outcomes_lock:
                outcomes.append(outcome)

        with ThreadPoolExecutor(max_workers=len(transfers)) as pool:
            list(pool.map(attempt, transfers))

        return outcomes

    def test_exact_funding_all_succeed(self, storage):
        engine, balances, log = build_engine(storage)
        n, amount = 20, Decimal('5.00')
        balances.open_account("SRC", n * amount)
        balances.open_account("DST")

        outcomes = self._run_concurrently(engine, [("SRC", "DST", amount)] * n)

        assert outcomes.count("ok") == n
        assert balances.get_balance("SRC") == Decimal('0')
        assert balances.get_balance("DST") == n * amount
        assert len(log.list_all(TransferStatus.APPLIED)) == n

    def test_underfunded_never_overdraws(self, storage):
        engine, balances, log = build_engine(storage)
        n, amount = 20, Decimal('5.00')
        balances.open_account("SRC", "50.00")
        balances.open_account("DST")

        outcomes = self._run_concurrently(engine, [("SRC", "DST", amount)] * n)

        assert outcomes.count("ok") == 10
        assert outcomes.count("insufficient") == 10
        assert balances.get_balance("SRC") == Decimal('0')
        assert balances.get_balance("DST") == Decimal('50.00')
        assert len(log.list_all(TransferStatus.APPLIED)) == 10
        assert len(log.list_all(TransferStatus.REJECTED)) == 10

    def test_opposing_cycles_conserve_total(self, storage):
        """A->B and B->A racing neither deadlock nor leak money"""
        engine, balances, _ = build_engine(storage)
        balances.open_account("A", "100.00")
        balances.open_account("B", "100.00")

        transfers = [("A", "B", Decimal('7.00')), ("B", "A", Decimal('3.00'))] * 10
        outcomes = self._run_concurrently(engine, transfers)

        assert outcomes.count("ok") == 20
        assert balances.get_balance("A") == Decimal('60.00')
        assert balances.get_balance("B") == Decimal('140.00')
        assert balances.total_balance() == Decimal('200.00')
