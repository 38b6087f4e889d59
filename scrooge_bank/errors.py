"""Domain and storage exceptions"""


class BankError(Exception):
    """Base exception for the bank core"""

    pass


class NotFoundError(BankError):
    """Entity is absent, closed, or not visible to the caller"""

    pass


class InvalidAmountError(BankError):
    """Amount is non-positive or would overpay a loan"""

    pass


class InsufficientFundsError(BankError):
    """Account balance is lower than the requested amount"""

    pass


class ConflictError(BankError):
    """Operation conflicts with existing state"""

    pass


class IdempotencyConflictError(ConflictError):
    """Idempotency key was reused with different parameters"""

    pass


class ForbiddenError(BankError):
    """Operation is not permitted on this entity"""

    pass


class BadRequestError(BankError):
    """Precondition for the operation is not met"""

    pass


class StorageError(Exception):
    """Storage backend failure"""

    pass


class DuplicateKeyError(StorageError):
    """Insert violated a primary key or unique index"""

    def __init__(self, table: str, index: str, message: str = ""):
        self.table = table
        self.index = index
        super().__init__(message or f"Duplicate key in {table} ({index})")


class LockTimeoutError(StorageError):
    """Timed out waiting for a row lease or named lock"""

    pass
