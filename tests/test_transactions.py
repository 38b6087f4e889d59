"""
Test suite for money movement

Tests deposits, withdrawals, idempotent replay and conflicts, overdraft
protection, and that balances and the ledger reconcile with transactions.
"""

import pytest
from datetime import datetime, timezone, timedelta

from scrooge_bank.accounts import AccountManager
from scrooge_bank.errors import (
    IdempotencyConflictError, InsufficientFundsError, InvalidAmountError, NotFoundError
)
from scrooge_bank.ledger import BankLedger, LedgerKind
from scrooge_bank.storage import InMemoryStorage
from scrooge_bank.transactions import TransactionProcessor, TransactionType


class TestTransactionProcessor:
    """Test transaction processing functionality"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.ledger = BankLedger(self.storage)
        self.account_manager = AccountManager(self.storage)
        self.processor = TransactionProcessor(self.storage, self.account_manager, self.ledger)

        self.account = self.account_manager.create_account("alice")

    def _balance(self, account_id=None):
        return self.account_manager.get_account(account_id or self.account.id).balance_cents

    def test_deposit(self):
        """Test deposit updates balance and appends a ledger entry"""
        result = self.processor.deposit("alice", self.account.id, 10_000)

        assert result.new_balance_cents == 10_000
        assert result.transaction_type == TransactionType.DEPOSIT
        assert not result.replayed
        assert self._balance() == 10_000

        entries = self.ledger.get_entries(kind=LedgerKind.DEPOSIT)
        assert len(entries) == 1
        assert entries[0].amount_cents == 10_000
        assert entries[0].transaction_id == result.transaction_id

    def test_withdraw(self):
        self.processor.deposit("alice", self.account.id, 10_000)
        result = self.processor.withdraw("alice", self.account.id, 2500)

        assert result.new_balance_cents == 7500
        entries = self.ledger.get_entries(kind=LedgerKind.WITHDRAWAL)
        assert [e.amount_cents for e in entries] == [-2500]

    def test_withdraw_entire_balance(self):
        self.processor.deposit("alice", self.account.id, 500)
        assert self.processor.withdraw("alice", self.account.id, 500).new_balance_cents == 0

    def test_no_overdraft(self):
        """Test a withdrawal larger than the balance fails and changes nothing"""
        self.processor.deposit("alice", self.account.id, 1000)

        with pytest.raises(InsufficientFundsError):
            self.processor.withdraw("alice", self.account.id, 1001)

        assert self._balance() == 1000
        assert len(self.processor.get_account_transactions(self.account.id)) == 1
        assert self.ledger.get_entries(kind=LedgerKind.WITHDRAWAL) == []

    def test_non_positive_amounts_rejected(self):
        with pytest.raises(InvalidAmountError):
            self.processor.deposit("alice", self.account.id, 0)
        with pytest.raises(InvalidAmountError):
            self.processor.withdraw("alice", self.account.id, -100)
        assert self.processor.get_account_transactions(self.account.id) == []

    def test_wrong_owner_is_not_found(self):
        with pytest.raises(NotFoundError):
            self.processor.deposit("mallory", self.account.id, 100)
        with pytest.raises(NotFoundError):
            self.processor.deposit("alice", "missing", 100)

    def test_closed_account_is_not_found(self):
        self.account_manager.close_account("alice", self.account.id)
        with pytest.raises(NotFoundError):
            self.processor.deposit("alice", self.account.id, 100)

    def test_idempotent_replay(self):
        """Test a retried deposit is applied once and returns the same transaction"""
        first = self.processor.deposit("alice", self.account.id, 5000, idempotency_key="dep-1")
        second = self.processor.deposit("alice", self.account.id, 5000, idempotency_key="dep-1")

        assert second.replayed
        assert second.transaction_id == first.transaction_id
        assert second.new_balance_cents == 5000
        assert self._balance() == 5000
        assert len(self.processor.get_account_transactions(self.account.id)) == 1
        assert len(self.ledger.get_entries(kind=LedgerKind.DEPOSIT)) == 1

    def test_replay_reports_current_balance(self):
        self.processor.deposit("alice", self.account.id, 5000, idempotency_key="dep-1")
        self.processor.deposit("alice", self.account.id, 1000)

        replay = self.processor.deposit("alice", self.account.id, 5000, idempotency_key="dep-1")
        assert replay.new_balance_cents == 6000

    def test_idempotency_conflict_on_different_amount(self):
        self.processor.deposit("alice", self.account.id, 5000, idempotency_key="dep-1")

        with pytest.raises(IdempotencyConflictError):
            self.processor.deposit("alice", self.account.id, 6000, idempotency_key="dep-1")
        assert self._balance() == 5000

    def test_idempotency_conflict_on_different_direction(self):
        self.processor.deposit("alice", self.account.id, 5000, idempotency_key="op-1")

        with pytest.raises(IdempotencyConflictError):
            self.processor.withdraw("alice", self.account.id, 5000, idempotency_key="op-1")
        assert self._balance() == 5000

    def test_idempotency_key_scoped_to_account(self):
        other = self.account_manager.create_account("bob")

        self.processor.deposit("alice", self.account.id, 100, idempotency_key="same")
        result = self.processor.deposit("bob", other.id, 200, idempotency_key="same")

        assert not result.replayed
        assert self._balance(other.id) == 200

    def test_replay_precedes_funds_check(self):
        """Test a retried withdrawal replays even though the balance is now spent"""
        self.processor.deposit("alice", self.account.id, 100)
        first = self.processor.withdraw("alice", self.account.id, 100, idempotency_key="wd-1")

        replay = self.processor.withdraw("alice", self.account.id, 100, idempotency_key="wd-1")
        assert replay.replayed
        assert replay.transaction_id == first.transaction_id
        assert self._balance() == 0

    def test_balance_matches_transactions(self):
        self.processor.deposit("alice", self.account.id, 10_000)
        self.processor.withdraw("alice", self.account.id, 3000)
        self.processor.deposit("alice", self.account.id, 250)
        self.processor.withdraw("alice", self.account.id, 1250)

        transactions = self.processor.get_account_transactions(self.account.id)
        assert sum(t.signed_amount_cents for t in transactions) == self._balance() == 6000

    def test_ledger_reconciles_with_transactions(self):
        self.processor.deposit("alice", self.account.id, 10_000)
        self.processor.withdraw("alice", self.account.id, 3000)

        assert self.ledger.get_bank_balance() == self._balance() == 7000

    def test_failure_after_insert_rolls_back(self):
        """Test a failing ledger append leaves no transaction or balance change"""
        def failing_append(*args, **kwargs):
            raise RuntimeError("ledger unavailable")

        self.processor.ledger = type("BrokenLedger", (), {"append": staticmethod(failing_append)})()

        with pytest.raises(RuntimeError):
            self.processor.deposit("alice", self.account.id, 500, idempotency_key="dep-1")

        assert self._balance() == 0
        assert self.processor.get_account_transactions(self.account.id) == []
        assert self.ledger.get_entries() == []

    def test_account_transactions_time_window(self):
        self.processor.deposit("alice", self.account.id, 100)
        self.processor.deposit("alice", self.account.id, 200)

        now = datetime.now(timezone.utc)
        assert len(self.processor.get_account_transactions(self.account.id, end=now)) == 2
        assert self.processor.get_account_transactions(self.account.id, start=now + timedelta(seconds=1)) == []
        assert len(self.processor.get_account_transactions(
            self.account.id, start=now - timedelta(minutes=1), end=now
        )) == 2

    def test_get_transaction(self):
        result = self.processor.deposit("alice", self.account.id, 100, idempotency_key="k")

        transaction = self.processor.get_transaction(result.transaction_id)
        assert transaction.amount_cents == 100
        assert transaction.idempotency_key == "k"
        assert transaction.created_by_user_id == "alice"
        assert self.processor.get_transaction("missing") is None

    def test_naive_time_window_treated_as_utc(self):
        self.processor.deposit("alice", self.account.id, 100)

        now = datetime.now(timezone.utc).replace(tzinfo=None)
        assert len(self.processor.get_account_transactions(
            self.account.id, start=now - timedelta(minutes=1), end=now + timedelta(minutes=1)
        )) == 1
        assert self.processor.get_account_transactions(self.account.id, start=now + timedelta(minutes=1)) == []


class MissingKeyLookupStorage(InMemoryStorage):
    """In-memory storage whose next idempotency-key lookups come back empty"""

    def __init__(self):
        super().__init__()
        self.lookups_to_miss = 0

    def find(self, table, filters):
        if self.lookups_to_miss and table == "transactions" and "idempotency_key" in filters:
            self.lookups_to_miss -= 1
            return []
        return super().find(table, filters)


class TestIdempotencyKeyCollisionOnInsert:
    """Test reconciling a key that only the unique index caught"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = MissingKeyLookupStorage()
        self.ledger = BankLedger(self.storage)
        self.account_manager = AccountManager(self.storage)
        self.processor = TransactionProcessor(self.storage, self.account_manager, self.ledger)

        self.account = self.account_manager.create_account("alice")
        self.first = self.processor.deposit("alice", self.account.id, 5000, idempotency_key="dep-1")
        self.storage.lookups_to_miss = 1

    def _balance(self):
        return self.account_manager.get_account(self.account.id).balance_cents

    def test_same_request_replays(self):
        result = self.processor.deposit("alice", self.account.id, 5000, idempotency_key="dep-1")

        assert self.storage.lookups_to_miss == 0
        assert result.replayed
        assert result.transaction_id == self.first.transaction_id
        assert result.new_balance_cents == 5000
        assert self._balance() == 5000
        assert len(self.processor.get_account_transactions(self.account.id)) == 1
        assert len(self.ledger.get_entries(kind=LedgerKind.DEPOSIT)) == 1

    def test_different_amount_conflicts(self):
        with pytest.raises(IdempotencyConflictError):
            self.processor.deposit("alice", self.account.id, 6000, idempotency_key="dep-1")

        assert self.storage.lookups_to_miss == 0
        assert self._balance() == 5000
        assert len(self.processor.get_account_transactions(self.account.id)) == 1

    def test_different_direction_conflicts(self):
        with pytest.raises(IdempotencyConflictError):
            self.processor.withdraw("alice", self.account.id, 5000, idempotency_key="dep-1")

        assert self._balance() == 5000
        assert self.ledger.get_entries(kind=LedgerKind.WITHDRAWAL) == []
