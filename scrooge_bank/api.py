"""
HTTP API Module

Thin FastAPI adapter over BankingSystem. Authentication is handled upstream;
the authenticated caller arrives in the X-User-Id header. Domain errors are
mapped to HTTP status codes by a single exception handler.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
import uvicorn

from . import __version__
from .accounts import Account
from .bank import BankingSystem
from .config import get_config
from .currency import from_cents
from .errors import (
    BadRequestError, BankError, ConflictError, ForbiddenError, InsufficientFundsError,
    InvalidAmountError, LockTimeoutError, NotFoundError
)
from .loans import Loan
from .logging_config import setup_logging
from .transactions import MovementResult, Transaction


ERROR_STATUS = [
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (InvalidAmountError, status.HTTP_400_BAD_REQUEST),
    (InsufficientFundsError, status.HTTP_400_BAD_REQUEST),
    (BadRequestError, status.HTTP_400_BAD_REQUEST),
    (ForbiddenError, status.HTTP_403_FORBIDDEN),
    (ConflictError, status.HTTP_409_CONFLICT),
]


# Request models
class AmountRequest(BaseModel):
    amount: Decimal


class LoanPaymentRequest(BaseModel):
    from_account_id: str
    amount: Decimal


# Dependencies
def get_banking_system(request: Request) -> BankingSystem:
    return request.app.state.banking_system


def get_current_user(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> str:
    """Authenticated caller, as asserted by the upstream auth layer"""
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-Id header")
    return x_user_id


# Serializers
def _money(cents: int) -> str:
    return str(from_cents(cents))


def _account_response(account: Account) -> dict:
    return {
        "id": account.id,
        "owner_id": account.owner_id,
        "status": account.status.value,
        "balance": _money(account.balance_cents),
        "balance_cents": account.balance_cents,
        "created_at": account.created_at.isoformat(),
    }


def _transaction_response(transaction: Transaction) -> dict:
    return {
        "id": transaction.id,
        "type": transaction.transaction_type.value,
        "amount": _money(transaction.amount_cents),
        "amount_cents": transaction.amount_cents,
        "idempotency_key": transaction.idempotency_key,
        "created_at": transaction.created_at.isoformat(),
    }


def _movement_response(result: MovementResult) -> dict:
    return {
        "transaction_id": result.transaction_id,
        "account_id": result.account_id,
        "type": result.transaction_type.value,
        "amount": _money(result.amount_cents),
        "new_balance": _money(result.new_balance_cents),
        "new_balance_cents": result.new_balance_cents,
        "created_at": result.created_at.isoformat(),
        "replayed": result.replayed,
    }


def _loan_response(loan: Loan) -> dict:
    return {
        "id": loan.id,
        "status": loan.status.value,
        "principal": _money(loan.principal_cents),
        "principal_cents": loan.principal_cents,
        "reason": loan.reason,
        "decision_at": loan.decision_at.isoformat() if loan.decision_at else None,
        "closed_at": loan.closed_at.isoformat() if loan.closed_at else None,
    }


# Accounts
accounts_router = APIRouter(prefix="/accounts", tags=["accounts"])


@accounts_router.post("", status_code=status.HTTP_201_CREATED)
def create_account(
    user_id: str = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    """Open the caller's account"""
    return _account_response(system.create_account(user_id))


@accounts_router.get("")
def list_accounts(
    user_id: str = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    """List the caller's open accounts"""
    return [_account_response(account) for account in system.list_accounts(user_id)]


@accounts_router.get("/{account_id}")
def get_account(
    account_id: str,
    user_id: str = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    """Get one of the caller's accounts"""
    return _account_response(system.get_account(account_id, owner_id=user_id))


@accounts_router.get("/{account_id}/statement")
def get_statement(
    account_id: str,
    start: Optional[datetime] = Query(None, alias="from"),
    end: Optional[datetime] = Query(None, alias="to"),
    user_id: str = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    """Balance, open loans and transactions within [from, to]"""
    statement = system.get_statement(account_id, start, end, owner_id=user_id)
    return {
        "account_id": statement.account_id,
        "balance": _money(statement.balance_cents),
        "balance_cents": statement.balance_cents,
        "loans": [_loan_response(loan) for loan in statement.open_loans],
        "transactions": [_transaction_response(t) for t in statement.transactions],
    }


@accounts_router.post("/{account_id}/close")
def close_account(
    account_id: str,
    user_id: str = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    """Close the caller's account"""
    account = system.close_account(user_id, account_id)
    return {**_account_response(account), "closed_at": account.closed_at.isoformat()}


@accounts_router.post("/{account_id}/deposit")
def deposit(
    account_id: str,
    request: AmountRequest,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    user_id: str = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    """Deposit into the caller's account"""
    result = system.deposit(user_id, account_id, request.amount, idempotency_key)
    return _movement_response(result)


@accounts_router.post("/{account_id}/withdraw")
def withdraw(
    account_id: str,
    request: AmountRequest,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    user_id: str = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    """Withdraw from the caller's account"""
    result = system.withdraw(user_id, account_id, request.amount, idempotency_key)
    return _movement_response(result)


# Loans
loans_router = APIRouter(prefix="/loans", tags=["loans"])


@loans_router.get("")
def list_loans(
    user_id: str = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    """List the caller's loans"""
    return [_loan_response(loan) for loan in system.get_loans(user_id)]


@loans_router.post("/apply")
def apply_for_loan(
    request: AmountRequest,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    user_id: str = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    """Apply for a loan; the decision is immediate"""
    decision = system.apply_for_loan(user_id, request.amount, idempotency_key)
    return {
        "loan_id": decision.loan_id,
        "status": decision.status.value,
        "principal": _money(decision.principal_cents),
        "principal_cents": decision.principal_cents,
        "disbursement_id": decision.disbursement_id,
        "reason": decision.reason,
        "decision_at": decision.decision_at.isoformat(),
        "replayed": decision.replayed,
    }


@loans_router.put("/{loan_id}/payments/{payment_id}")
def pay_loan(
    loan_id: str,
    payment_id: str,
    request: LoanPaymentRequest,
    user_id: str = Depends(get_current_user),
    system: BankingSystem = Depends(get_banking_system)
):
    """Record a loan payment; retrying the same payment id is safe"""
    result = system.pay_loan(user_id, loan_id, payment_id, request.from_account_id, request.amount)
    return {
        "payment_id": result.payment_id,
        "loan_id": result.loan_id,
        "amount": _money(result.amount_cents),
        "amount_cents": result.amount_cents,
        "remaining_due": _money(result.remaining_due_cents),
        "remaining_due_cents": result.remaining_due_cents,
        "loan_status": result.loan_status.value,
        "occurred_at": result.occurred_at.isoformat(),
        "replayed": result.replayed,
    }


# Operator
operator_router = APIRouter(prefix="/operator", tags=["operator"])


@operator_router.get("/balance")
def bank_balance(system: BankingSystem = Depends(get_banking_system)):
    """Bank cash on hand"""
    balance = system.get_bank_balance()
    return {
        "balance": _money(balance.balance_cents),
        "balance_cents": balance.balance_cents,
        "as_of": balance.as_of.isoformat(),
    }


@operator_router.get("/loan-capacity")
def loan_capacity(system: BankingSystem = Depends(get_banking_system)):
    """Lending capacity breakdown"""
    return system.get_loan_capacity().to_dict()


@operator_router.get("/can-approve-loan")
def can_approve_loan(
    amount: Decimal = Query(...),
    system: BankingSystem = Depends(get_banking_system)
):
    """Whether a loan of this amount fits current capacity"""
    check = system.can_approve_loan(amount)
    return {
        "can_approve": check.can_approve,
        "available_cents": check.available_for_loans_cents,
        "requested_cents": check.requested_cents,
        "shortfall_cents": check.shortfall_cents,
    }


def create_app(system: Optional[BankingSystem] = None) -> FastAPI:
    """
    Create the FastAPI application

    Args:
        system: Banking system to serve; built from configuration if omitted

    Returns:
        Configured FastAPI app
    """
    if system is None:
        config = get_config()
        setup_logging(config.log_level, config.log_format)
        system = BankingSystem(config)

    app = FastAPI(
        title="Scrooge Bank API",
        description="Accounts, money movement and lending on an append-only bank ledger",
        version=__version__
    )
    app.state.banking_system = system

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(BankError)
    async def bank_error_handler(request: Request, exc: BankError):
        code = status.HTTP_400_BAD_REQUEST
        for error_type, error_status in ERROR_STATUS:
            if isinstance(exc, error_type):
                code = error_status
                break
        return JSONResponse(status_code=code, content={"detail": str(exc), "error": type(exc).__name__})

    @app.exception_handler(LockTimeoutError)
    async def lock_timeout_handler(request: Request, exc: LockTimeoutError):
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": "Resource busy, retry later", "error": type(exc).__name__}
        )

    @app.get("/health")
    def health_check():
        """Health check endpoint"""
        return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}

    app.include_router(accounts_router)
    app.include_router(loans_router)
    app.include_router(operator_router)

    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    uvicorn.run(
        "scrooge_bank.api:create_app",
        factory=True,
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level=config.log_level.lower()
    )
