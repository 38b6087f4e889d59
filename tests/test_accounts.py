"""
Test suite for account management

Tests the one-open-account-per-customer rule, owner scoping, balance
updates and account closing.
"""

import threading

import pytest

from scrooge_bank.accounts import APPROVAL_LOCK_SCOPE, AccountManager, AccountStatus
from scrooge_bank.errors import (
    BadRequestError, ConflictError, InsufficientFundsError, LockTimeoutError,
    NotFoundError, StorageError
)
from scrooge_bank.storage import InMemoryStorage


class TestAccountManager:
    """Test account lifecycle"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.account_manager = AccountManager(self.storage)

    def _fund(self, account_id, cents):
        with self.storage.atomic():
            account = self.account_manager.lock_open_account(account_id)
            self.account_manager.apply_delta(account, cents)

    def test_create_account(self):
        account = self.account_manager.create_account("alice")

        assert account.owner_id == "alice"
        assert account.balance_cents == 0
        assert account.status == AccountStatus.OPEN
        assert account.closed_at is None

    def test_one_open_account_per_customer(self):
        self.account_manager.create_account("alice")
        with pytest.raises(ConflictError):
            self.account_manager.create_account("alice")

        # Other customers are unaffected
        self.account_manager.create_account("bob")

    def test_get_account_scoped_to_owner(self):
        account = self.account_manager.create_account("alice")

        assert self.account_manager.get_account(account.id).id == account.id
        assert self.account_manager.get_account(account.id, owner_id="alice").id == account.id
        with pytest.raises(NotFoundError):
            self.account_manager.get_account(account.id, owner_id="mallory")
        with pytest.raises(NotFoundError):
            self.account_manager.get_account("missing")

    def test_get_customer_accounts(self):
        account = self.account_manager.create_account("alice")
        self.account_manager.create_account("bob")

        accounts = self.account_manager.get_customer_accounts("alice")
        assert [a.id for a in accounts] == [account.id]

    def test_apply_delta(self):
        account = self.account_manager.create_account("alice")
        self._fund(account.id, 1500)
        self._fund(account.id, -500)

        assert self.account_manager.get_account(account.id).balance_cents == 1000

    def test_balance_never_negative(self):
        account = self.account_manager.create_account("alice")
        self._fund(account.id, 100)

        with pytest.raises(InsufficientFundsError):
            self._fund(account.id, -101)
        assert self.account_manager.get_account(account.id).balance_cents == 100

    def test_lease_requires_unit_of_work(self):
        account = self.account_manager.create_account("alice")
        with pytest.raises(StorageError):
            self.account_manager.lock_open_account(account.id)

    def test_lock_checks_owner(self):
        account = self.account_manager.create_account("alice")
        with pytest.raises(NotFoundError):
            with self.storage.atomic():
                self.account_manager.lock_open_account(account.id, owner_id="bob")

    def test_close_account(self):
        account = self.account_manager.create_account("alice")
        closed = self.account_manager.close_account("alice", account.id)

        assert closed.status == AccountStatus.CLOSED
        assert closed.closed_at is not None
        with pytest.raises(NotFoundError):
            self.account_manager.get_account(account.id)
        assert self.account_manager.get_customer_accounts("alice") == []

    def test_closed_account_is_terminal(self):
        account = self.account_manager.create_account("alice")
        self.account_manager.close_account("alice", account.id)

        with pytest.raises(NotFoundError):
            self.account_manager.close_account("alice", account.id)
        with pytest.raises(NotFoundError):
            self._fund(account.id, 100)

    def test_new_account_after_closing(self):
        first = self.account_manager.create_account("alice")
        self.account_manager.close_account("alice", first.id)

        second = self.account_manager.create_account("alice")
        assert second.id != first.id

    def test_cannot_close_account_with_money(self):
        account = self.account_manager.create_account("alice")
        self._fund(account.id, 1)

        with pytest.raises(BadRequestError, match="has money"):
            self.account_manager.close_account("alice", account.id)
        assert self.account_manager.get_account(account.id).is_open

    def test_cannot_close_other_customers_account(self):
        account = self.account_manager.create_account("alice")
        with pytest.raises(NotFoundError):
            self.account_manager.close_account("bob", account.id)


class TestCloseAccountSerialization:
    """Test closing waits for in-flight loan approvals"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage(lock_timeout=0.2)
        self.account_manager = AccountManager(self.storage, approval_lock_key="branch-1")
        self.account = self.account_manager.create_account("alice")

    def _hold_approval_lock(self, key, body):
        held = threading.Event()
        release = threading.Event()

        def approver():
            with self.storage.atomic():
                self.storage.advisory_lock(APPROVAL_LOCK_SCOPE, key)
                held.set()
                release.wait()

        thread = threading.Thread(target=approver)
        thread.start()
        held.wait()
        try:
            body()
        finally:
            release.set()
            thread.join()

    def test_close_waits_for_approval_lock(self):
        def close():
            with pytest.raises(LockTimeoutError):
                self.account_manager.close_account("alice", self.account.id)

        self._hold_approval_lock("branch-1", close)
        assert self.account_manager.get_account(self.account.id).is_open

        self.account_manager.close_account("alice", self.account.id)
        assert self.account_manager.get_customer_accounts("alice") == []

    def test_other_approval_keys_do_not_block(self):
        self._hold_approval_lock(
            "branch-2",
            lambda: self.account_manager.close_account("alice", self.account.id)
        )
        assert self.account_manager.get_customer_accounts("alice") == []
