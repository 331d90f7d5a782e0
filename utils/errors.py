"""
utils/errors.py
---------------
Error taxonomy shared by the services and the persistence layer.

Expected conditions (not found, validation, conflict, consistency) are
turned into failure results at the service boundary. PersistenceError is
the only one that travels to callers as an exception.
"""

from typing import Optional


class LedgerError(Exception):
    """Base class for every error raised by this package."""

    code = "ERROR"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.code

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class NotFoundError(LedgerError):
    """Entity is absent or belongs to another tenant."""

    code = "NOT_FOUND"


class ValidationError(LedgerError):
    """Malformed input, e.g. a negative amount or a cross-tenant reference."""

    code = "VALIDATION_ERROR"


class ConflictError(LedgerError):
    """Duplicate installment number, already-converted customer, paid installment, ..."""

    code = "CONFLICT"


class ConsistencyError(LedgerError):
    """Installments would add up to more than the payment total."""

    code = "CONSISTENCY_ERROR"


class PersistenceError(LedgerError):
    """A durable write could not be committed."""

    code = "PERSISTENCE_ERROR"


class IntegrityViolation(PersistenceError):
    """A database constraint rejected the write."""

    code = "INTEGRITY_VIOLATION"

    def __init__(self, message: str = "", constraint: Optional[str] = None):
        super().__init__(message)
        self.constraint = constraint


# Errors a workflow reports as a failure result instead of raising.
EXPECTED_ERRORS = (NotFoundError, ValidationError, ConflictError, ConsistencyError)
