"""
Bank Ledger Module

Append-only record of every cash-affecting event in the bank. The sum of all
entries is the bank's cash on hand, and lending capacity is derived from the
per-kind totals. Entries are never updated or deleted; corrections are new
ADJUSTMENT entries.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional
from enum import Enum
import uuid

from .errors import ConflictError, DuplicateKeyError, InvalidAmountError, BadRequestError
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord, as_utc, parse_timestamp


class LedgerKind(Enum):
    """Kinds of ledger entries"""
    BASE_CASH = "base_cash"            # Initial capitalization, recorded once
    DEPOSIT = "deposit"                # Customer deposit (+)
    WITHDRAWAL = "withdrawal"          # Customer withdrawal (-)
    LOAN_DISBURSED = "loan_disbursed"  # Loan paid out (-)
    LOAN_PAYMENT = "loan_payment"      # Loan repayment received (+)
    ADJUSTMENT = "adjustment"          # Operator correction (either sign)


# Source reference field each kind must carry (None: no reference allowed)
SOURCE_REFERENCE = {
    LedgerKind.BASE_CASH: None,
    LedgerKind.DEPOSIT: "transaction_id",
    LedgerKind.WITHDRAWAL: "transaction_id",
    LedgerKind.LOAN_DISBURSED: "loan_disbursement_id",
    LedgerKind.LOAN_PAYMENT: "loan_payment_id",
    LedgerKind.ADJUSTMENT: None,
}

# Required sign of amount_cents (0: any non-zero amount)
AMOUNT_SIGN = {
    LedgerKind.DEPOSIT: 1,
    LedgerKind.WITHDRAWAL: -1,
    LedgerKind.LOAN_DISBURSED: -1,
    LedgerKind.LOAN_PAYMENT: 1,
    LedgerKind.ADJUSTMENT: 0,
}

REFERENCE_FIELDS = ("transaction_id", "loan_disbursement_id", "loan_payment_id")


@dataclass
class LedgerEntry(StorageRecord):
    """
    Single immutable ledger row

    amount_cents is signed: positive adds cash to the bank, negative removes it.
    """
    kind: LedgerKind
    amount_cents: int
    occurred_at: datetime
    transaction_id: Optional[str] = None
    loan_disbursement_id: Optional[str] = None
    loan_payment_id: Optional[str] = None
    memo: Optional[str] = None

    def __post_init__(self):
        """Validate sign rules and the source reference for the kind"""
        sign = AMOUNT_SIGN.get(self.kind)
        if sign == 1 and self.amount_cents <= 0:
            raise ValueError(f"{self.kind.value} entries must be positive")
        if sign == -1 and self.amount_cents >= 0:
            raise ValueError(f"{self.kind.value} entries must be negative")
        if sign == 0 and self.amount_cents == 0:
            raise ValueError(f"{self.kind.value} entries must be non-zero")

        required = SOURCE_REFERENCE[self.kind]
        for name in REFERENCE_FIELDS:
            value = getattr(self, name)
            if name == required and not value:
                raise ValueError(f"{self.kind.value} entries require {name}")
            if name != required and value:
                raise ValueError(f"{self.kind.value} entries cannot reference {name}")

    @property
    def base_cash_slot(self) -> Optional[str]:
        """Unique-index key allowing a single BASE_CASH entry"""
        return "base_cash" if self.kind == LedgerKind.BASE_CASH else None


@dataclass
class LedgerTotals:
    """Per-kind sums of the ledger, in signed cents"""
    base_cash_cents: int = 0
    deposits_cents: int = 0
    withdrawals_cents: int = 0
    disbursed_cents: int = 0
    payments_cents: int = 0
    adjustments_cents: int = 0

    @property
    def balance_cents(self) -> int:
        """Bank cash on hand: the sum of every entry"""
        return (self.base_cash_cents + self.deposits_cents + self.withdrawals_cents
                + self.disbursed_cents + self.payments_cents + self.adjustments_cents)


@dataclass
class BankFunds:
    """Snapshot of lending capacity derived from ledger totals"""
    base_cash_cents: int
    deposits_on_hand_cents: int
    loanable_from_deposits_cents: int
    outstanding_loans_cents: int
    available_for_loans_cents: int
    balance_cents: int

    def to_dict(self) -> Dict[str, int]:
        return {
            "base_cash_cents": self.base_cash_cents,
            "deposits_on_hand_cents": self.deposits_on_hand_cents,
            "loanable_from_deposits_cents": self.loanable_from_deposits_cents,
            "outstanding_loans_cents": self.outstanding_loans_cents,
            "available_for_loans_cents": self.available_for_loans_cents,
            "balance_cents": self.balance_cents,
        }


class LendingPolicy:
    """
    Lending capacity rule

    available = base_cash + floor(deposits_on_hand / divisor) - outstanding

    Only a positive deposits_on_hand contributes. Withdrawals may push bank
    cash negative; approvals are checked against ``available`` so loans can
    never push it below zero. ADJUSTMENT entries affect the bank balance
    but not lending capacity.
    """

    def __init__(self, loanable_deposit_divisor: int = 4,
                 zero_capacity_on_negative_base_cash: bool = False):
        if loanable_deposit_divisor <= 0:
            raise ValueError("loanable_deposit_divisor must be positive")
        self.loanable_deposit_divisor = loanable_deposit_divisor
        self.zero_capacity_on_negative_base_cash = zero_capacity_on_negative_base_cash

    def compute(self, totals: LedgerTotals) -> BankFunds:
        """Derive lending capacity from ledger totals"""
        deposits_on_hand = totals.deposits_cents + totals.withdrawals_cents
        loanable = deposits_on_hand // self.loanable_deposit_divisor if deposits_on_hand > 0 else 0
        outstanding = -totals.disbursed_cents - totals.payments_cents
        available = totals.base_cash_cents + loanable - outstanding

        if self.zero_capacity_on_negative_base_cash and totals.base_cash_cents < 0:
            available = min(available, 0)

        return BankFunds(
            base_cash_cents=totals.base_cash_cents,
            deposits_on_hand_cents=deposits_on_hand,
            loanable_from_deposits_cents=loanable,
            outstanding_loans_cents=outstanding,
            available_for_loans_cents=available,
            balance_cents=totals.base_cash_cents + deposits_on_hand - outstanding,
        )


class BankLedger:
    """
    Bank-wide cash ledger

    Appends happen inside the caller's unit of work, after the mutation
    they record, so a rolled-back operation leaves no ledger trace.
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.entries_table = "ledger_entries"
        self.logger = get_logger("scrooge_bank.ledger")
        self.storage.register_unique_index(self.entries_table, "base_cash", ["base_cash_slot"])

    def append(
        self,
        kind: LedgerKind,
        amount_cents: int,
        transaction_id: Optional[str] = None,
        loan_disbursement_id: Optional[str] = None,
        loan_payment_id: Optional[str] = None,
        memo: Optional[str] = None
    ) -> LedgerEntry:
        """
        Append an entry to the ledger

        Args:
            kind: Kind of cash event
            amount_cents: Signed amount (sign must match the kind)
            transaction_id: Source transaction for DEPOSIT/WITHDRAWAL
            loan_disbursement_id: Source disbursement for LOAN_DISBURSED
            loan_payment_id: Source payment for LOAN_PAYMENT
            memo: Free-text note

        Returns:
            The stored LedgerEntry
        """
        now = datetime.now(timezone.utc)
        entry = LedgerEntry(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            kind=kind,
            amount_cents=amount_cents,
            occurred_at=now,
            transaction_id=transaction_id,
            loan_disbursement_id=loan_disbursement_id,
            loan_payment_id=loan_payment_id,
            memo=memo
        )
        self.storage.insert(self.entries_table, entry.id, self._entry_to_dict(entry))

        log_action(
            self.logger, "debug",
            f"Ledger {kind.value} {amount_cents:+d} cents",
            action="ledger_append",
            resource=f"ledger:{entry.id}",
            extra={"kind": kind.value, "amount_cents": amount_cents}
        )
        return entry

    def seed_base_cash(self, amount_cents: int, memo: Optional[str] = "Initial capitalization") -> LedgerEntry:
        """
        Record the bank's initial capitalization

        Raises:
            ConflictError: If base cash has already been recorded
        """
        try:
            with self.storage.atomic():
                self.storage.advisory_lock("ledger", "base_cash")
                if self.has_base_cash():
                    raise ConflictError("Base cash has already been recorded")
                entry = self.append(LedgerKind.BASE_CASH, amount_cents, memo=memo)
        except DuplicateKeyError:
            raise ConflictError("Base cash has already been recorded")

        log_action(
            self.logger, "info",
            f"Seeded base cash of {amount_cents} cents",
            action="seed_base_cash",
            resource=f"ledger:{entry.id}",
            extra={"amount_cents": amount_cents}
        )
        return entry

    def has_base_cash(self) -> bool:
        """Check whether the BASE_CASH entry exists"""
        return bool(self.storage.find(self.entries_table, {"kind": LedgerKind.BASE_CASH.value}))

    def record_adjustment(self, amount_cents: int, memo: str) -> LedgerEntry:
        """Record a signed operator correction"""
        if amount_cents == 0:
            raise InvalidAmountError("Adjustment amount must be non-zero")
        if not memo:
            raise BadRequestError("Adjustments require a memo")

        with self.storage.atomic():
            entry = self.append(LedgerKind.ADJUSTMENT, amount_cents, memo=memo)

        log_action(
            self.logger, "warning",
            f"Ledger adjustment of {amount_cents:+d} cents: {memo}",
            action="ledger_adjustment",
            resource=f"ledger:{entry.id}",
            extra={"amount_cents": amount_cents}
        )
        return entry

    def get_entries(
        self,
        kind: Optional[LedgerKind] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> List[LedgerEntry]:
        """Get ledger entries in occurrence order, optionally filtered"""
        filters = {"kind": kind.value} if kind else {}
        entries = [self._entry_from_dict(data) for data in self.storage.find(self.entries_table, filters)]
        start, end = as_utc(start), as_utc(end)
        if start:
            entries = [e for e in entries if e.occurred_at >= start]
        if end:
            entries = [e for e in entries if e.occurred_at <= end]
        entries.sort(key=lambda e: e.occurred_at)
        return entries

    def get_totals(self) -> LedgerTotals:
        """Sum the ledger by kind"""
        totals = LedgerTotals()
        field_for_kind = {
            LedgerKind.BASE_CASH.value: "base_cash_cents",
            LedgerKind.DEPOSIT.value: "deposits_cents",
            LedgerKind.WITHDRAWAL.value: "withdrawals_cents",
            LedgerKind.LOAN_DISBURSED.value: "disbursed_cents",
            LedgerKind.LOAN_PAYMENT.value: "payments_cents",
            LedgerKind.ADJUSTMENT.value: "adjustments_cents",
        }
        for data in self.storage.load_all(self.entries_table):
            name = field_for_kind[data["kind"]]
            setattr(totals, name, getattr(totals, name) + int(data["amount_cents"]))
        return totals

    def get_bank_balance(self) -> int:
        """Bank cash on hand in cents (may be negative)"""
        return self.get_totals().balance_cents

    def _entry_to_dict(self, entry: LedgerEntry) -> Dict:
        """Convert LedgerEntry to dictionary for storage"""
        result = entry.to_dict()
        result['base_cash_slot'] = entry.base_cash_slot
        return result

    def _entry_from_dict(self, data: Dict) -> LedgerEntry:
        """Convert dictionary to LedgerEntry"""
        return LedgerEntry(
            id=data['id'],
            created_at=parse_timestamp(data['created_at']),
            updated_at=parse_timestamp(data['updated_at']),
            kind=LedgerKind(data['kind']),
            amount_cents=int(data['amount_cents']),
            occurred_at=parse_timestamp(data['occurred_at']),
            transaction_id=data.get('transaction_id'),
            loan_disbursement_id=data.get('loan_disbursement_id'),
            loan_payment_id=data.get('loan_payment_id'),
            memo=data.get('memo')
        )
