"""
utils/results.py
----------------
The `{success, data|error}` result shape returned by workflow entry points.
"""

from functools import wraps
from typing import Any, Callable

from utils.errors import EXPECTED_ERRORS, LedgerError
from utils.logger import get_logger

logger = get_logger(__name__)


def ok(data: Any = None) -> dict:
    """Successful result."""
    return {"success": True, "data": data}


def fail(error: LedgerError) -> dict:
    """Failure result for an expected condition."""
    return {"success": False, "error": error.to_dict()}


def returns_result(func: Callable):
    """
    Decorator that wraps a service method's return value in `ok()` and turns
    expected errors into `fail()` results.

    Usage:
        @returns_result
        def mark_paid(self, ...):
            ...

    Behavior:
        - NotFound / Validation / Conflict / Consistency errors become a
          failure result and are logged at WARNING.
        - PersistenceError and anything unexpected propagate unchanged.
    """
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return ok(func(*args, **kwargs))
        except EXPECTED_ERRORS as e:
            logger.warning(f"{func.__qualname__} rejected: {e.code} {e.message}")
            return fail(e)

    return wrapper
