"""
Transaction Processing Module

Deposits and withdrawals against customer accounts. Each movement runs in
one unit of work: lease the account, resolve idempotent replays, validate,
write the transaction row, update the cached balance, and append the ledger
entry last.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional
from enum import Enum
import uuid

from .accounts import Account, AccountManager
from .errors import (
    BankError, DuplicateKeyError, IdempotencyConflictError,
    InsufficientFundsError, InvalidAmountError
)
from .ledger import BankLedger, LedgerKind
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord, as_utc, parse_timestamp


class TransactionType(Enum):
    """Directions of money movement"""
    DEPOSIT = "deposit"        # Cash into the account
    WITHDRAWAL = "withdrawal"  # Cash out of the account


class ValidationRule(Enum):
    """Checks applied to a movement, in declaration order"""
    POSITIVE_AMOUNT = "positive_amount"
    SUFFICIENT_FUNDS = "sufficient_funds"


RULES_BY_TYPE = {
    TransactionType.DEPOSIT: (ValidationRule.POSITIVE_AMOUNT,),
    TransactionType.WITHDRAWAL: (ValidationRule.POSITIVE_AMOUNT, ValidationRule.SUFFICIENT_FUNDS),
}

LEDGER_KIND = {
    TransactionType.DEPOSIT: LedgerKind.DEPOSIT,
    TransactionType.WITHDRAWAL: LedgerKind.WITHDRAWAL,
}


@dataclass
class Transaction(StorageRecord):
    """Immutable record of a committed deposit or withdrawal"""
    account_id: str
    transaction_type: TransactionType
    amount_cents: int
    created_by_user_id: str
    idempotency_key: Optional[str] = None

    @property
    def signed_amount_cents(self) -> int:
        if self.transaction_type == TransactionType.DEPOSIT:
            return self.amount_cents
        return -self.amount_cents


@dataclass
class MovementResult:
    """Outcome of a deposit or withdrawal"""
    transaction_id: str
    account_id: str
    transaction_type: TransactionType
    amount_cents: int
    new_balance_cents: int
    created_at: datetime
    replayed: bool = False


class TransactionProcessor:
    """
    Money-movement engine

    All balance changes on an account are serialized by the account lease,
    and an idempotency key is scoped to its account.
    """

    def __init__(self, storage: StorageInterface, account_manager: AccountManager, ledger: BankLedger):
        self.storage = storage
        self.account_manager = account_manager
        self.ledger = ledger
        self.table_name = "transactions"
        self.logger = get_logger("scrooge_bank.transactions")
        self.storage.register_unique_index(self.table_name, "account_idempotency", ["account_id", "idempotency_key"])

    def deposit(self, owner_id: str, account_id: str, amount_cents: int,
                idempotency_key: Optional[str] = None) -> MovementResult:
        """Deposit cash into an account"""
        return self.process_money_movement(owner_id, account_id, amount_cents, TransactionType.DEPOSIT, idempotency_key)

    def withdraw(self, owner_id: str, account_id: str, amount_cents: int,
                 idempotency_key: Optional[str] = None) -> MovementResult:
        """Withdraw cash from an account"""
        return self.process_money_movement(owner_id, account_id, amount_cents, TransactionType.WITHDRAWAL, idempotency_key)

    def process_money_movement(
        self,
        owner_id: str,
        account_id: str,
        amount_cents: int,
        direction: TransactionType,
        idempotency_key: Optional[str] = None
    ) -> MovementResult:
        """
        Move money into or out of a customer account

        Args:
            owner_id: Customer performing the movement; must own the account
            account_id: Target account
            amount_cents: Positive amount in cents
            direction: DEPOSIT or WITHDRAWAL
            idempotency_key: Client key; a retry with the same key, direction
                and amount returns the original result

        Returns:
            MovementResult with the account's current balance

        Raises:
            InvalidAmountError: If the amount is not positive
            NotFoundError: If the account is not an open account of owner_id
            IdempotencyConflictError: If the key was used with other parameters
            InsufficientFundsError: If a withdrawal exceeds the balance
        """
        self._check_rule(ValidationRule.POSITIVE_AMOUNT, None, amount_cents)

        try:
            with self.storage.atomic():
                account = self.account_manager.lock_open_account(account_id, owner_id)

                if idempotency_key:
                    existing = self._find_by_idempotency_key(account_id, idempotency_key)
                    if existing:
                        result = self._replay(existing, direction, amount_cents, account)
                        return self._log_replay(result, owner_id)

                for rule in RULES_BY_TYPE[direction]:
                    self._check_rule(rule, account, amount_cents)

                try:
                    transaction = self._post(account, direction, amount_cents, owner_id, idempotency_key)
                except DuplicateKeyError:
                    existing = self._find_by_idempotency_key(account_id, idempotency_key) if idempotency_key else None
                    if existing is None:
                        raise
                    result = self._replay(existing, direction, amount_cents, account)
                    return self._log_replay(result, owner_id)
        except BankError as e:
            log_action(
                self.logger, "warning",
                f"{direction.value.capitalize()} rejected: {e}",
                user_id=owner_id,
                action=f"{direction.value}_rejected",
                resource=f"account:{account_id}",
                extra={"amount_cents": amount_cents, "error": type(e).__name__}
            )
            raise

        log_action(
            self.logger, "info",
            f"{direction.value.capitalize()} of {amount_cents} cents posted",
            user_id=owner_id,
            action=direction.value,
            resource=f"transaction:{transaction.id}",
            extra={
                "account_id": account_id,
                "amount_cents": amount_cents,
                "new_balance_cents": account.balance_cents
            }
        )
        return MovementResult(
            transaction_id=transaction.id,
            account_id=account_id,
            transaction_type=direction,
            amount_cents=amount_cents,
            new_balance_cents=account.balance_cents,
            created_at=transaction.created_at
        )

    def record_withdrawal(self, account: Account, amount_cents: int, user_id: str,
                          idempotency_key: Optional[str] = None) -> Transaction:
        """
        Withdraw from an account already leased by the caller's unit of work

        Used by flows that debit an account as one step of a larger operation.

        Raises:
            InsufficientFundsError: If the balance is below the amount
            IdempotencyConflictError: If the key is already used on this account
        """
        for rule in RULES_BY_TYPE[TransactionType.WITHDRAWAL]:
            self._check_rule(rule, account, amount_cents)
        try:
            return self._post(account, TransactionType.WITHDRAWAL, amount_cents, user_id, idempotency_key)
        except DuplicateKeyError:
            raise IdempotencyConflictError("Idempotency key already used on this account")

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        """Get transaction by ID"""
        data = self.storage.load(self.table_name, transaction_id)
        if data:
            return self._transaction_from_dict(data)
        return None

    def get_account_transactions(
        self,
        account_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> List[Transaction]:
        """
        Get transactions for an account in chronological order

        Args:
            account_id: Account ID
            start: Earliest creation time (inclusive)
            end: Latest creation time (inclusive)

        Returns:
            List of transactions
        """
        transactions = [
            self._transaction_from_dict(data)
            for data in self.storage.find(self.table_name, {"account_id": account_id})
        ]
        start, end = as_utc(start), as_utc(end)
        if start:
            transactions = [t for t in transactions if t.created_at >= start]
        if end:
            transactions = [t for t in transactions if t.created_at <= end]
        transactions.sort(key=lambda t: t.created_at)
        return transactions

    def _post(self, account: Account, direction: TransactionType, amount_cents: int,
              user_id: str, idempotency_key: Optional[str]) -> Transaction:
        """Write the transaction row, update the balance, then append to the ledger"""
        now = datetime.now(timezone.utc)
        transaction = Transaction(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            account_id=account.id,
            transaction_type=direction,
            amount_cents=amount_cents,
            created_by_user_id=user_id,
            idempotency_key=idempotency_key
        )
        self.storage.insert(self.table_name, transaction.id, self._transaction_to_dict(transaction))
        self.account_manager.apply_delta(account, transaction.signed_amount_cents)
        self.ledger.append(
            LEDGER_KIND[direction],
            transaction.signed_amount_cents,
            transaction_id=transaction.id
        )
        return transaction

    def _check_rule(self, rule: ValidationRule, account: Optional[Account], amount_cents: int) -> None:
        if rule == ValidationRule.POSITIVE_AMOUNT:
            if amount_cents <= 0:
                raise InvalidAmountError("Amount must be positive")
        elif rule == ValidationRule.SUFFICIENT_FUNDS:
            if account.balance_cents < amount_cents:
                raise InsufficientFundsError("Insufficient funds")

    def _replay(self, existing: Transaction, direction: TransactionType,
                amount_cents: int, account: Account) -> MovementResult:
        """Return the recorded result, or fail if the key was used differently"""
        if existing.transaction_type != direction or existing.amount_cents != amount_cents:
            raise IdempotencyConflictError("Idempotency key reused with different parameters")
        return MovementResult(
            transaction_id=existing.id,
            account_id=existing.account_id,
            transaction_type=existing.transaction_type,
            amount_cents=existing.amount_cents,
            new_balance_cents=account.balance_cents,
            created_at=existing.created_at,
            replayed=True
        )

    def _log_replay(self, result: MovementResult, owner_id: str) -> MovementResult:
        log_action(
            self.logger, "info",
            f"Replayed {result.transaction_type.value} {result.transaction_id}",
            user_id=owner_id,
            action=f"{result.transaction_type.value}_replayed",
            resource=f"transaction:{result.transaction_id}"
        )
        return result

    def _find_by_idempotency_key(self, account_id: str, idempotency_key: str) -> Optional[Transaction]:
        """Find transaction by account and idempotency key"""
        transactions = self.storage.find(
            self.table_name,
            {"account_id": account_id, "idempotency_key": idempotency_key}
        )
        if transactions:
            return self._transaction_from_dict(transactions[0])
        return None

    def _transaction_to_dict(self, transaction: Transaction) -> Dict:
        """Convert Transaction to dictionary for storage"""
        return transaction.to_dict()

    def _transaction_from_dict(self, data: Dict) -> Transaction:
        """Convert dictionary to Transaction"""
        return Transaction(
            id=data['id'],
            created_at=parse_timestamp(data['created_at']),
            updated_at=parse_timestamp(data['updated_at']),
            account_id=data['account_id'],
            transaction_type=TransactionType(data['transaction_type']),
            amount_cents=int(data['amount_cents']),
            created_by_user_id=data['created_by_user_id'],
            idempotency_key=data.get('idempotency_key')
        )
