"""
Loan Module

Loan underwriting, disbursement and repayment. Approvals are serialized
bank-wide by a named lock and decided against lending capacity derived from
the bank ledger. Repayments are serialized per loan, debit a customer
account, and close the loan once the disbursed amount is fully repaid.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional
from enum import Enum
import uuid

from .accounts import APPROVAL_LOCK_SCOPE, AccountManager
from .errors import (
    BankError, ConflictError, DuplicateKeyError, ForbiddenError,
    IdempotencyConflictError, InvalidAmountError, NotFoundError
)
from .ledger import BankFunds, BankLedger, LedgerKind, LendingPolicy
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord, parse_timestamp
from .transactions import TransactionProcessor


INSUFFICIENT_BANK_FUNDS = "insufficient_bank_funds"
LOAN_LOCK_SCOPE = "loan"


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "pending"    # Application received, not yet decided
    APPROVED = "approved"  # Approved and disbursed; payments accepted
    REJECTED = "rejected"  # Declined; terminal
    CLOSED = "closed"      # Fully repaid; terminal


@dataclass
class Loan(StorageRecord):
    """
    Loan application and its decision

    The decision fields are written once. Closing a repaid loan sets
    closed_at and leaves decision_at untouched.
    """
    owner_id: str
    principal_cents: int
    status: LoanStatus
    decision_at: Optional[datetime] = None
    client_key: Optional[str] = None
    reason: Optional[str] = None
    closed_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status == LoanStatus.APPROVED

    @property
    def open_slot(self) -> Optional[str]:
        """Unique-index key allowing one APPROVED loan per owner"""
        return "open" if self.is_open else None


@dataclass
class LoanDisbursement(StorageRecord):
    """Cash paid out for an approved loan"""
    loan_id: str
    amount_cents: int


@dataclass
class LoanPayment(StorageRecord):
    """Repayment against a loan; id is the client-supplied payment id"""
    loan_id: str
    amount_cents: int
    paid_from_account_id: str
    transaction_id: str


@dataclass
class LoanBalance:
    """Drawn, repaid and due amounts of a loan"""
    drawn_cents: int
    repaid_cents: int

    @property
    def due_cents(self) -> int:
        return max(self.drawn_cents - self.repaid_cents, 0)


@dataclass
class LoanDecision:
    """Outcome of a loan application"""
    loan_id: str
    owner_id: str
    status: LoanStatus
    principal_cents: int
    decision_at: datetime
    disbursement_id: Optional[str] = None
    reason: Optional[str] = None
    replayed: bool = False


@dataclass
class PaymentResult:
    """Outcome of a loan payment"""
    payment_id: str
    loan_id: str
    amount_cents: int
    remaining_due_cents: int
    loan_status: LoanStatus
    occurred_at: datetime
    replayed: bool = False


class LoanManager:
    """
    Loan underwriting and repayment engine

    The approval lock key is a parameter: the default serializes every
    approval in the bank, and tests or sharded deployments may pass their own.
    """

    def __init__(
        self,
        storage: StorageInterface,
        account_manager: AccountManager,
        transaction_processor: TransactionProcessor,
        ledger: BankLedger,
        policy: Optional[LendingPolicy] = None,
        approval_lock_key: str = "bank"
    ):
        self.storage = storage
        self.account_manager = account_manager
        self.transaction_processor = transaction_processor
        self.ledger = ledger
        self.policy = policy or LendingPolicy()
        self.approval_lock_key = approval_lock_key
        self.loans_table = "loans"
        self.disbursements_table = "loan_disbursements"
        self.payments_table = "loan_payments"
        self.logger = get_logger("scrooge_bank.loans")

        self.storage.register_unique_index(self.loans_table, "owner_client_key", ["owner_id", "client_key"])
        self.storage.register_unique_index(self.loans_table, "owner_open_loan", ["owner_id", "open_slot"])
        self.storage.register_unique_index(self.disbursements_table, "loan", ["loan_id"])

    def apply_for_loan(self, owner_id: str, amount_cents: int,
                       idempotency_key: Optional[str] = None) -> LoanDecision:
        """
        Apply for a loan and decide it immediately

        Args:
            owner_id: Applicant; must hold an open account
            amount_cents: Requested principal in cents
            idempotency_key: Client key; a retry returns the original decision

        Returns:
            LoanDecision, APPROVED with a disbursement or REJECTED with a reason

        Raises:
            InvalidAmountError: If the amount is not positive
            NotFoundError: If the applicant has no open account
            IdempotencyConflictError: If the key was used for a different amount
            ConflictError: If the applicant already has an open loan
        """
        if amount_cents <= 0:
            raise InvalidAmountError("Loan amount must be positive")

        try:
            with self.storage.atomic():
                self.storage.advisory_lock(APPROVAL_LOCK_SCOPE, self.approval_lock_key)

                if not self.account_manager.get_customer_accounts(owner_id):
                    raise NotFoundError("Account not found")

                if idempotency_key:
                    existing = self._find_by_client_key(owner_id, idempotency_key)
                    if existing:
                        return self._replay_decision(existing, amount_cents)

                if self.get_open_loans(owner_id):
                    raise ConflictError("Customer already has an open loan")

                funds = self.get_bank_funds()
                decision = self._decide(owner_id, amount_cents, idempotency_key, funds)
        except DuplicateKeyError:
            raise ConflictError("Loan application conflicts with an existing loan")
        except BankError as e:
            log_action(
                self.logger, "warning",
                f"Loan application failed: {e}",
                user_id=owner_id,
                action="loan_application_failed",
                extra={"amount_cents": amount_cents, "error": type(e).__name__}
            )
            raise

        log_action(
            self.logger, "info" if decision.status == LoanStatus.APPROVED else "warning",
            f"Loan {decision.loan_id} {decision.status.value}",
            user_id=owner_id,
            action=f"loan_{decision.status.value}",
            resource=f"loan:{decision.loan_id}",
            extra={
                "principal_cents": amount_cents,
                "available_for_loans_cents": funds.available_for_loans_cents,
                "reason": decision.reason
            }
        )
        return decision

    def pay_loan(self, owner_id: str, loan_id: str, payment_id: str,
                 from_account_id: str, amount_cents: int) -> PaymentResult:
        """
        Repay part or all of a loan from a customer account

        Args:
            owner_id: Customer paying; must own both the loan and the account
            loan_id: Loan being repaid
            payment_id: Client-supplied payment id, unique across the bank
            from_account_id: Open account of owner_id to debit
            amount_cents: Amount to repay in cents

        Returns:
            PaymentResult with the remaining amount due

        Raises:
            InvalidAmountError: If the amount is not positive or exceeds the amount due
            NotFoundError: If the loan is not a loan of owner_id
            ForbiddenError: If the loan is not open or the source account is invalid
            InsufficientFundsError: If the source account balance is too low
            IdempotencyConflictError: If payment_id was used with other parameters
        """
        if amount_cents <= 0:
            raise InvalidAmountError("Payment amount must be positive")

        try:
            with self.storage.atomic():
                self.storage.advisory_lock(LOAN_LOCK_SCOPE, loan_id)

                existing = self.storage.load(self.payments_table, payment_id)
                if existing:
                    return self._replay_payment(self._payment_from_dict(existing), owner_id, loan_id, amount_cents)

                loan = self._lock_loan(loan_id, owner_id)
                if loan.status == LoanStatus.CLOSED:
                    raise ForbiddenError("Loan is closed")
                if loan.status != LoanStatus.APPROVED:
                    raise ForbiddenError("Loan is not open for payments")

                due = self._calc_due(loan_id).due_cents
                if amount_cents > due:
                    raise InvalidAmountError("Overpayment not allowed")

                try:
                    account = self.account_manager.lock_open_account(from_account_id, owner_id)
                except NotFoundError:
                    raise ForbiddenError("Invalid source account")

                transaction = self.transaction_processor.record_withdrawal(
                    account, amount_cents, owner_id, idempotency_key=payment_id
                )

                now = datetime.now(timezone.utc)
                payment = LoanPayment(
                    id=payment_id,
                    created_at=now,
                    updated_at=now,
                    loan_id=loan_id,
                    amount_cents=amount_cents,
                    paid_from_account_id=account.id,
                    transaction_id=transaction.id
                )
                self.storage.insert(self.payments_table, payment.id, self._payment_to_dict(payment))
                self.ledger.append(LedgerKind.LOAN_PAYMENT, amount_cents, loan_payment_id=payment.id)

                remaining = due - amount_cents
                if remaining == 0:
                    loan.status = LoanStatus.CLOSED
                    loan.closed_at = now
                    loan.updated_at = now
                    self._save_loan(loan)
        except DuplicateKeyError:
            raise IdempotencyConflictError("Payment id already used")
        except BankError as e:
            log_action(
                self.logger, "warning",
                f"Loan payment rejected: {e}",
                user_id=owner_id,
                action="loan_payment_rejected",
                resource=f"loan:{loan_id}",
                extra={"payment_id": payment_id, "amount_cents": amount_cents, "error": type(e).__name__}
            )
            raise

        log_action(
            self.logger, "info",
            f"Loan payment {payment_id} of {amount_cents} cents applied",
            user_id=owner_id,
            action="loan_payment",
            resource=f"loan:{loan_id}",
            extra={"remaining_due_cents": remaining, "loan_status": loan.status.value}
        )
        return PaymentResult(
            payment_id=payment.id,
            loan_id=loan_id,
            amount_cents=amount_cents,
            remaining_due_cents=remaining,
            loan_status=loan.status,
            occurred_at=payment.created_at
        )

    def get_bank_funds(self) -> BankFunds:
        """Current lending capacity derived from the ledger"""
        return self.policy.compute(self.ledger.get_totals())

    def get_loan(self, loan_id: str, owner_id: Optional[str] = None) -> Loan:
        """Get a loan, optionally scoped to its owner"""
        data = self.storage.load(self.loans_table, loan_id)
        if not data or (owner_id is not None and data['owner_id'] != owner_id):
            raise NotFoundError("Loan not found")
        return self._loan_from_dict(data)

    def get_customer_loans(self, owner_id: str, status: Optional[LoanStatus] = None) -> List[Loan]:
        """Get all loans for a customer, oldest first"""
        filters = {"owner_id": owner_id}
        if status:
            filters["status"] = status.value
        loans = [self._loan_from_dict(data) for data in self.storage.find(self.loans_table, filters)]
        loans.sort(key=lambda loan: loan.created_at)
        return loans

    def get_open_loans(self, owner_id: str) -> List[Loan]:
        """Get the customer's APPROVED (unpaid) loans"""
        return self.get_customer_loans(owner_id, LoanStatus.APPROVED)

    def get_loan_payments(self, loan_id: str) -> List[LoanPayment]:
        """Get all payments for a loan"""
        payments = [self._payment_from_dict(data) for data in self.storage.find(self.payments_table, {"loan_id": loan_id})]
        payments.sort(key=lambda p: p.created_at)
        return payments

    def get_disbursement(self, loan_id: str) -> Optional[LoanDisbursement]:
        """Get the disbursement of an approved loan"""
        disbursements = self.storage.find(self.disbursements_table, {"loan_id": loan_id})
        if disbursements:
            return self._disbursement_from_dict(disbursements[0])
        return None

    def get_amount_due(self, loan_id: str, owner_id: Optional[str] = None) -> LoanBalance:
        """Drawn, repaid and due amounts for a loan"""
        self.get_loan(loan_id, owner_id)
        return self._calc_due(loan_id)

    def _decide(self, owner_id: str, amount_cents: int, client_key: Optional[str],
                funds: BankFunds) -> LoanDecision:
        """Write the decision (and disbursement) for a new application"""
        now = datetime.now(timezone.utc)
        approved = amount_cents <= funds.available_for_loans_cents
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            owner_id=owner_id,
            principal_cents=amount_cents,
            status=LoanStatus.APPROVED if approved else LoanStatus.REJECTED,
            decision_at=now,
            client_key=client_key,
            reason=None if approved else INSUFFICIENT_BANK_FUNDS
        )
        self.storage.insert(self.loans_table, loan.id, self._loan_to_dict(loan))

        disbursement_id = None
        if approved:
            disbursement = LoanDisbursement(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan.id,
                amount_cents=amount_cents
            )
            self.storage.insert(self.disbursements_table, disbursement.id, disbursement.to_dict())
            self.ledger.append(LedgerKind.LOAN_DISBURSED, -amount_cents, loan_disbursement_id=disbursement.id)
            disbursement_id = disbursement.id

        return LoanDecision(
            loan_id=loan.id,
            owner_id=owner_id,
            status=loan.status,
            principal_cents=amount_cents,
            decision_at=now,
            disbursement_id=disbursement_id,
            reason=loan.reason
        )

    def _replay_decision(self, loan: Loan, amount_cents: int) -> LoanDecision:
        if loan.principal_cents != amount_cents:
            raise IdempotencyConflictError("Idempotency key reused with a different amount")
        disbursement = self.get_disbursement(loan.id)
        log_action(
            self.logger, "info",
            f"Replayed loan decision {loan.id}",
            user_id=loan.owner_id,
            action="loan_application_replayed",
            resource=f"loan:{loan.id}"
        )
        # A closed loan was approved; report the original decision
        status = LoanStatus.APPROVED if loan.status == LoanStatus.CLOSED else loan.status
        return LoanDecision(
            loan_id=loan.id,
            owner_id=loan.owner_id,
            status=status,
            principal_cents=loan.principal_cents,
            decision_at=loan.decision_at,
            disbursement_id=disbursement.id if disbursement else None,
            reason=loan.reason,
            replayed=True
        )

    def _replay_payment(self, payment: LoanPayment, owner_id: str, loan_id: str,
                        amount_cents: int) -> PaymentResult:
        if payment.loan_id != loan_id or payment.amount_cents != amount_cents:
            raise IdempotencyConflictError("Payment id reused with different parameters")
        loan = self.get_loan(loan_id, owner_id)
        log_action(
            self.logger, "info",
            f"Replayed loan payment {payment.id}",
            user_id=owner_id,
            action="loan_payment_replayed",
            resource=f"loan:{loan_id}"
        )
        return PaymentResult(
            payment_id=payment.id,
            loan_id=loan_id,
            amount_cents=payment.amount_cents,
            remaining_due_cents=self._calc_due(loan_id).due_cents,
            loan_status=loan.status,
            occurred_at=payment.created_at,
            replayed=True
        )

    def _lock_loan(self, loan_id: str, owner_id: str) -> Loan:
        data = self.storage.load_for_update(self.loans_table, loan_id)
        if not data or data['owner_id'] != owner_id:
            raise NotFoundError("Loan not found")
        return self._loan_from_dict(data)

    def _calc_due(self, loan_id: str) -> LoanBalance:
        drawn = sum(
            int(d['amount_cents'])
            for d in self.storage.find(self.disbursements_table, {"loan_id": loan_id})
        )
        repaid = sum(
            int(p['amount_cents'])
            for p in self.storage.find(self.payments_table, {"loan_id": loan_id})
        )
        return LoanBalance(drawn_cents=drawn, repaid_cents=repaid)

    def _find_by_client_key(self, owner_id: str, client_key: str) -> Optional[Loan]:
        loans = self.storage.find(self.loans_table, {"owner_id": owner_id, "client_key": client_key})
        if loans:
            return self._loan_from_dict(loans[0])
        return None

    def _save_loan(self, loan: Loan) -> None:
        """Save loan to storage"""
        self.storage.save(self.loans_table, loan.id, self._loan_to_dict(loan))

    def _loan_to_dict(self, loan: Loan) -> Dict:
        """Convert Loan to dictionary for storage"""
        result = loan.to_dict()
        result['open_slot'] = loan.open_slot
        return result

    def _loan_from_dict(self, data: Dict) -> Loan:
        """Convert dictionary to Loan"""
        return Loan(
            id=data['id'],
            created_at=parse_timestamp(data['created_at']),
            updated_at=parse_timestamp(data['updated_at']),
            owner_id=data['owner_id'],
            principal_cents=int(data['principal_cents']),
            status=LoanStatus(data['status']),
            decision_at=parse_timestamp(data.get('decision_at')),
            client_key=data.get('client_key'),
            reason=data.get('reason'),
            closed_at=parse_timestamp(data.get('closed_at'))
        )

    def _disbursement_from_dict(self, data: Dict) -> LoanDisbursement:
        return LoanDisbursement(
            id=data['id'],
            created_at=parse_timestamp(data['created_at']),
            updated_at=parse_timestamp(data['updated_at']),
            loan_id=data['loan_id'],
            amount_cents=int(data['amount_cents'])
        )

    def _payment_to_dict(self, payment: LoanPayment) -> Dict:
        """Convert LoanPayment to dictionary for storage"""
        return payment.to_dict()

    def _payment_from_dict(self, data: Dict) -> LoanPayment:
        """Convert dictionary to LoanPayment"""
        return LoanPayment(
            id=data['id'],
            created_at=parse_timestamp(data['created_at']),
            updated_at=parse_timestamp(data['updated_at']),
            loan_id=data['loan_id'],
            amount_cents=int(data['amount_cents']),
            paid_from_account_id=data['paid_from_account_id'],
            transaction_id=data['transaction_id']
        )
