"""
Test suite for operator reporting
"""

import pytest

from scrooge_bank.errors import InvalidAmountError
from scrooge_bank.ledger import BankLedger, LedgerKind, LendingPolicy
from scrooge_bank.reporting import BankReporter
from scrooge_bank.storage import InMemoryStorage


class TestBankReporter:
    """Test bank balance and lending capacity reports"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.ledger = BankLedger(self.storage)
        self.reporter = BankReporter(self.ledger, LendingPolicy())

        self.ledger.seed_base_cash(100_000)
        self.ledger.append(LedgerKind.DEPOSIT, 40_000, transaction_id="t1")

    def test_bank_balance(self):
        balance = self.reporter.get_bank_balance()
        assert balance.balance_cents == 140_000
        assert balance.as_of is not None

    def test_bank_balance_may_be_negative(self):
        self.ledger.record_adjustment(-200_000, "Write-down")
        assert self.reporter.get_bank_balance().balance_cents == -60_000

    def test_loan_capacity(self):
        self.ledger.append(LedgerKind.LOAN_DISBURSED, -30_000, loan_disbursement_id="d1")
        funds = self.reporter.get_loan_capacity()

        assert funds.base_cash_cents == 100_000
        assert funds.deposits_on_hand_cents == 40_000
        assert funds.loanable_from_deposits_cents == 10_000
        assert funds.outstanding_loans_cents == 30_000
        assert funds.available_for_loans_cents == 80_000
        assert funds.to_dict()["available_for_loans_cents"] == 80_000

    def test_can_approve_loan(self):
        check = self.reporter.can_approve_loan(110_000)
        assert check.can_approve
        assert check.shortfall_cents == 0

        check = self.reporter.can_approve_loan(110_500)
        assert not check.can_approve
        assert check.available_for_loans_cents == 110_000
        assert check.requested_cents == 110_500
        assert check.shortfall_cents == 500

    def test_can_approve_loan_rejects_non_positive(self):
        with pytest.raises(InvalidAmountError):
            self.reporter.can_approve_loan(0)

    def test_ledger_summary(self):
        self.ledger.append(LedgerKind.WITHDRAWAL, -1000, transaction_id="t2")
        summary = self.reporter.get_ledger_summary()

        assert summary["base_cash"] == 100_000
        assert summary["deposit"] == 40_000
        assert summary["withdrawal"] == -1000
        assert summary["balance"] == 139_000
