"""
Account Management Module

Customer accounts with a cached balance in cents. Each customer may hold at
most one OPEN account; closing is terminal. The cached balance always equals
the signed sum of the account's committed transactions.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional
from enum import Enum
import uuid

from .errors import (
    BadRequestError, ConflictError, DuplicateKeyError,
    InsufficientFundsError, NotFoundError
)
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord, parse_timestamp


APPROVAL_LOCK_SCOPE = "loan-approval"


class AccountStatus(Enum):
    """Account lifecycle states"""
    OPEN = "open"      # Normal operation
    CLOSED = "closed"  # Permanently closed


@dataclass
class Account(StorageRecord):
    """Customer deposit account"""
    owner_id: str
    balance_cents: int = 0
    status: AccountStatus = AccountStatus.OPEN
    closed_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status == AccountStatus.OPEN

    @property
    def open_slot(self) -> Optional[str]:
        """Unique-index key allowing one OPEN account per owner"""
        return "open" if self.is_open else None


class AccountManager:
    """
    Manages customer accounts

    Balance changes go through ``apply_delta`` on an account leased with
    ``lock_open_account`` inside the caller's unit of work. Closing takes the
    loan approval lock first so it cannot interleave with an approval.
    """

    def __init__(self, storage: StorageInterface, loans_table: str = "loans",
                 approval_lock_key: str = "bank"):
        self.storage = storage
        self.accounts_table = "accounts"
        self.loans_table = loans_table
        self.approval_lock_key = approval_lock_key
        self.logger = get_logger("scrooge_bank.accounts")
        self.storage.register_unique_index(self.accounts_table, "open_owner", ["owner_id", "open_slot"])

    def create_account(self, owner_id: str) -> Account:
        """
        Open a new account for a customer

        Args:
            owner_id: ID of the customer

        Returns:
            Created Account object

        Raises:
            ConflictError: If the customer already has an open account
        """
        now = datetime.now(timezone.utc)
        account = Account(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            owner_id=owner_id
        )

        try:
            with self.storage.atomic():
                self.storage.advisory_lock("account-owner", owner_id)
                if self._find_open_accounts(owner_id):
                    raise ConflictError("Customer already has an open account")
                self.storage.insert(self.accounts_table, account.id, self._account_to_dict(account))
        except DuplicateKeyError:
            raise ConflictError("Customer already has an open account")

        log_action(
            self.logger, "info",
            f"Opened account {account.id}",
            user_id=owner_id,
            action="account_opened",
            resource=f"account:{account.id}"
        )
        return account

    def get_account(self, account_id: str, owner_id: Optional[str] = None) -> Account:
        """
        Get an open account, optionally scoped to its owner

        Raises:
            NotFoundError: If the account is missing, closed, or owned by someone else
        """
        data = self.storage.load(self.accounts_table, account_id)
        account = self._account_from_dict(data) if data else None
        if not self._visible(account, owner_id):
            raise NotFoundError("Account not found")
        return account

    def get_customer_accounts(self, owner_id: str) -> List[Account]:
        """Get the open accounts of a customer"""
        return self._find_open_accounts(owner_id)

    def lock_open_account(self, account_id: str, owner_id: Optional[str] = None) -> Account:
        """
        Lease an open account for the rest of the current unit of work

        Args:
            account_id: Account to lease
            owner_id: Required owner, if the caller is a customer

        Returns:
            The leased Account

        Raises:
            NotFoundError: If the account is missing, closed, or owned by someone else
        """
        data = self.storage.load_for_update(self.accounts_table, account_id)
        account = self._account_from_dict(data) if data else None
        if not self._visible(account, owner_id):
            raise NotFoundError("Account not found")
        return account

    def apply_delta(self, account: Account, delta_cents: int) -> Account:
        """Apply a signed balance change to a leased account"""
        new_balance = account.balance_cents + delta_cents
        if new_balance < 0:
            raise InsufficientFundsError("Insufficient funds")
        account.balance_cents = new_balance
        account.updated_at = datetime.now(timezone.utc)
        self._save_account(account)
        return account

    def close_account(self, owner_id: str, account_id: str) -> Account:
        """
        Close a customer's account

        Raises:
            NotFoundError: If the account is not an open account of owner_id
            BadRequestError: If the customer has an open loan or the balance is positive
        """
        with self.storage.atomic():
            # Same order as approvals: approval lock, then account lease
            self.storage.advisory_lock(APPROVAL_LOCK_SCOPE, self.approval_lock_key)
            account = self.lock_open_account(account_id, owner_id)

            open_loans = self.storage.find(self.loans_table, {"owner_id": owner_id, "status": "approved"})
            if open_loans:
                raise BadRequestError("Account has loans and cannot be closed")
            if account.balance_cents > 0:
                raise BadRequestError("Account has money and cannot be closed")

            now = datetime.now(timezone.utc)
            account.status = AccountStatus.CLOSED
            account.closed_at = now
            account.updated_at = now
            self._save_account(account)

        log_action(
            self.logger, "info",
            f"Closed account {account.id}",
            user_id=owner_id,
            action="account_closed",
            resource=f"account:{account.id}"
        )
        return account

    def _visible(self, account: Optional[Account], owner_id: Optional[str]) -> bool:
        if account is None or not account.is_open:
            return False
        return owner_id is None or account.owner_id == owner_id

    def _find_open_accounts(self, owner_id: str) -> List[Account]:
        accounts = self.storage.find(
            self.accounts_table,
            {"owner_id": owner_id, "status": AccountStatus.OPEN.value}
        )
        return [self._account_from_dict(data) for data in accounts]

    def _save_account(self, account: Account) -> None:
        """Save account to storage"""
        self.storage.save(self.accounts_table, account.id, self._account_to_dict(account))

    def _account_to_dict(self, account: Account) -> Dict:
        """Convert Account to dictionary for storage"""
        result = account.to_dict()
        result['open_slot'] = account.open_slot
        return result

    def _account_from_dict(self, data: Dict) -> Account:
        """Convert dictionary to Account"""
        return Account(
            id=data['id'],
            created_at=parse_timestamp(data['created_at']),
            updated_at=parse_timestamp(data['updated_at']),
            owner_id=data['owner_id'],
            balance_cents=int(data['balance_cents']),
            status=AccountStatus(data['status']),
            closed_at=parse_timestamp(data.get('closed_at'))
        )
