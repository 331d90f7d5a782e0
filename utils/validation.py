"""
utils/validation.py
-------------------
Small input checks shared by the services.
"""

from datetime import date, datetime

from utils.errors import ValidationError


def require_id(value, field: str = "id") -> int:
    """
    Check that `value` is a positive integer id.

    Raises:
        ValidationError: For None, booleans, non-integers and values < 1.
    """
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValidationError(f"{field} must be a positive integer")
    return value


def to_date(value, field: str = "date") -> date:
    """
    Accept a date or an ISO-8601 string (YYYY-MM-DD).

    Raises:
        ValidationError: If the value is not a date.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip())
        except ValueError:
            pass
    raise ValidationError(f"{field} must be a date (YYYY-MM-DD)")
