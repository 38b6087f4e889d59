"""
Operator Reporting Module

Read-only views of the bank's position for operators: cash on hand, the
lending capacity breakdown, and a non-binding "could this loan be approved
right now" probe. None of these take locks; an approval decision is only
made by the loan engine.
"""

from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict

from .errors import InvalidAmountError
from .ledger import BankFunds, BankLedger, LedgerKind, LendingPolicy


@dataclass
class BankBalance:
    """Bank cash on hand"""
    balance_cents: int
    as_of: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class LoanApprovalCheck:
    """Answer to whether a loan of a given size fits current capacity"""
    can_approve: bool
    available_for_loans_cents: int
    requested_cents: int
    shortfall_cents: int


class BankReporter:
    """Operator reports derived from the bank ledger"""

    def __init__(self, ledger: BankLedger, policy: LendingPolicy):
        self.ledger = ledger
        self.policy = policy

    def get_bank_balance(self) -> BankBalance:
        """Sum of every ledger entry (may be negative)"""
        return BankBalance(balance_cents=self.ledger.get_bank_balance())

    def get_loan_capacity(self) -> BankFunds:
        """Breakdown of lending capacity"""
        return self.policy.compute(self.ledger.get_totals())

    def can_approve_loan(self, amount_cents: int) -> LoanApprovalCheck:
        """
        Check a loan amount against current capacity

        Args:
            amount_cents: Requested principal in cents

        Returns:
            LoanApprovalCheck; shortfall_cents is 0 when the loan fits
        """
        if amount_cents <= 0:
            raise InvalidAmountError("Loan amount must be positive")
        available = self.get_loan_capacity().available_for_loans_cents
        return LoanApprovalCheck(
            can_approve=amount_cents <= available,
            available_for_loans_cents=available,
            requested_cents=amount_cents,
            shortfall_cents=max(amount_cents - available, 0)
        )

    def get_ledger_summary(self) -> Dict[str, int]:
        """Per-kind ledger totals in cents"""
        totals = self.ledger.get_totals()
        return {
            LedgerKind.BASE_CASH.value: totals.base_cash_cents,
            LedgerKind.DEPOSIT.value: totals.deposits_cents,
            LedgerKind.WITHDRAWAL.value: totals.withdrawals_cents,
            LedgerKind.LOAN_DISBURSED.value: totals.disbursed_cents,
            LedgerKind.LOAN_PAYMENT.value: totals.payments_cents,
            LedgerKind.ADJUSTMENT.value: totals.adjustments_cents,
            "balance": totals.balance_cents,
        }
