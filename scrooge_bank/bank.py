"""
Banking System Module

Wires storage, ledger, accounts, money movement, lending and reporting
together from configuration. Amounts cross this boundary in decimal currency
units and are converted to integer cents before entering the core.
"""

from datetime import datetime
from dataclasses import dataclass
from typing import List, Optional

from .accounts import Account, AccountManager
from .config import BankConfig, get_config
from .currency import AmountLike, to_cents
from .errors import ConflictError
from .ledger import BankFunds, BankLedger, LedgerEntry, LendingPolicy
from .loans import Loan, LoanBalance, LoanDecision, LoanManager, PaymentResult
from .logging_config import get_logger, log_action
from .reporting import BankBalance, BankReporter, LoanApprovalCheck
from .storage import StorageInterface, create_storage
from .transactions import MovementResult, Transaction, TransactionProcessor


@dataclass
class AccountStatement:
    """Account balance with the owner's open loans and a transaction window"""
    account_id: str
    owner_id: str
    balance_cents: int
    open_loans: List[Loan]
    transactions: List[Transaction]
    start: Optional[datetime] = None
    end: Optional[datetime] = None


class BankingSystem:
    """Core banking system with all components initialized"""

    def __init__(self, config: Optional[BankConfig] = None, storage: Optional[StorageInterface] = None):
        self.config = config or get_config()
        self.logger = get_logger("scrooge_bank.bank")

        self.storage = storage or create_storage(
            self.config.database_url,
            lock_timeout=self.config.lock_timeout_seconds
        )
        self.policy = LendingPolicy(
            loanable_deposit_divisor=self.config.loanable_deposit_divisor,
            zero_capacity_on_negative_base_cash=self.config.zero_capacity_on_negative_base_cash
        )

        self.ledger = BankLedger(self.storage)
        self.account_manager = AccountManager(
            self.storage,
            approval_lock_key=self.config.loan_approval_lock_key
        )
        self.transaction_processor = TransactionProcessor(self.storage, self.account_manager, self.ledger)
        self.loan_manager = LoanManager(
            self.storage, self.account_manager, self.transaction_processor, self.ledger,
            policy=self.policy,
            approval_lock_key=self.config.loan_approval_lock_key
        )
        self.reporter = BankReporter(self.ledger, self.policy)

        if self.config.seed_base_cash_on_startup:
            self.ensure_base_cash()

    def ensure_base_cash(self) -> None:
        """Seed the configured base cash unless it is already recorded"""
        if self.ledger.has_base_cash():
            return
        try:
            self.ledger.seed_base_cash(
                to_cents(self.config.base_cash_amount),
                memo=self.config.base_cash_memo
            )
        except ConflictError:
            log_action(
                self.logger, "info",
                "Base cash was seeded concurrently",
                action="seed_base_cash_skipped"
            )

    # Accounts

    def create_account(self, owner_id: str) -> Account:
        return self.account_manager.create_account(owner_id)

    def get_account(self, account_id: str, owner_id: Optional[str] = None) -> Account:
        return self.account_manager.get_account(account_id, owner_id)

    def list_accounts(self, owner_id: str) -> List[Account]:
        return self.account_manager.get_customer_accounts(owner_id)

    def close_account(self, owner_id: str, account_id: str) -> Account:
        return self.account_manager.close_account(owner_id, account_id)

    def get_statement(
        self,
        account_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        owner_id: Optional[str] = None
    ) -> AccountStatement:
        """
        Build an account statement from one consistent read

        Args:
            account_id: Open account to report on
            start: Earliest transaction time (inclusive)
            end: Latest transaction time (inclusive)
            owner_id: Required owner, if the caller is a customer

        Returns:
            AccountStatement
        """
        with self.storage.atomic():
            account = self.account_manager.get_account(account_id, owner_id)
            open_loans = self.loan_manager.get_open_loans(account.owner_id)
            transactions = self.transaction_processor.get_account_transactions(account_id, start, end)
        return AccountStatement(
            account_id=account.id,
            owner_id=account.owner_id,
            balance_cents=account.balance_cents,
            open_loans=open_loans,
            transactions=transactions,
            start=start,
            end=end
        )

    # Money movement

    def deposit(self, owner_id: str, account_id: str, amount: AmountLike,
                idempotency_key: Optional[str] = None) -> MovementResult:
        return self.transaction_processor.deposit(owner_id, account_id, to_cents(amount), idempotency_key)

    def withdraw(self, owner_id: str, account_id: str, amount: AmountLike,
                 idempotency_key: Optional[str] = None) -> MovementResult:
        return self.transaction_processor.withdraw(owner_id, account_id, to_cents(amount), idempotency_key)

    # Lending

    def apply_for_loan(self, owner_id: str, amount: AmountLike,
                       idempotency_key: Optional[str] = None) -> LoanDecision:
        return self.loan_manager.apply_for_loan(owner_id, to_cents(amount), idempotency_key)

    def get_loans(self, owner_id: str) -> List[Loan]:
        return self.loan_manager.get_customer_loans(owner_id)

    def get_loan(self, loan_id: str, owner_id: Optional[str] = None) -> Loan:
        return self.loan_manager.get_loan(loan_id, owner_id)

    def get_amount_due(self, loan_id: str, owner_id: Optional[str] = None) -> LoanBalance:
        return self.loan_manager.get_amount_due(loan_id, owner_id)

    def pay_loan(self, owner_id: str, loan_id: str, payment_id: str,
                 from_account_id: str, amount: AmountLike) -> PaymentResult:
        return self.loan_manager.pay_loan(owner_id, loan_id, payment_id, from_account_id, to_cents(amount))

    # Operator

    def get_bank_balance(self) -> BankBalance:
        return self.reporter.get_bank_balance()

    def get_loan_capacity(self) -> BankFunds:
        return self.reporter.get_loan_capacity()

    def can_approve_loan(self, amount: AmountLike) -> LoanApprovalCheck:
        return self.reporter.can_approve_loan(to_cents(amount))

    def seed_base_cash(self, amount: AmountLike, memo: Optional[str] = None) -> LedgerEntry:
        return self.ledger.seed_base_cash(to_cents(amount), memo=memo or self.config.base_cash_memo)

    def record_adjustment(self, amount: AmountLike, memo: str) -> LedgerEntry:
        return self.ledger.record_adjustment(to_cents(amount), memo)

    def close(self) -> None:
        self.storage.close()
