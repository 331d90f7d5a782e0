"""
models/requests.py
------------------
Typed, allow-listed mutation requests.

Callers never pass raw request bodies into an update: only the fields
declared here are accepted and anything else is a ValidationError.
"""

from datetime import date
from decimal import Decimal
from typing import Optional, TypeVar

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator

from models.event_payloads import describe_errors
from utils.errors import ValidationError

M = TypeVar("M", bound=BaseModel)


def parse_request(model: type[M], data) -> M:
    """
    Build a request model from a dict (or pass an instance through).

    Raises:
        ValidationError: If the data has unknown fields or bad values.
    """
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data or {})
    except pydantic.ValidationError as e:
        raise ValidationError(describe_errors(e))


class InstallmentPatch(BaseModel):
    """Fields an unpaid installment may change. Status moves only through mark_* calls."""

    model_config = ConfigDict(extra="forbid")

    amount: Optional[Decimal] = Field(default=None, gt=0, decimal_places=2)
    due_date: Optional[date] = None
    late_fee: Optional[Decimal] = Field(default=None, ge=0, decimal_places=2)
    remarks: Optional[str] = Field(default=None, max_length=500)

    @field_validator("amount", "due_date", "late_fee", mode="before")
    @classmethod
    def _not_null(cls, value):
        if value is None:
            raise ValueError("cannot be null")
        return value

    def changes(self) -> dict:
        """Only the fields the caller actually sent."""
        return self.model_dump(exclude_unset=True)


class NewInstallment(BaseModel):
    """One item of a bulk installment request."""

    model_config = ConfigDict(extra="forbid")

    installment_number: int
    amount: Decimal
    due_date: date
    remarks: Optional[str] = Field(default=None, max_length=500)


class AccountDetails(BaseModel):
    """Login account created alongside the student."""

    model_config = ConfigDict(extra="forbid")

    username: Optional[str] = Field(default=None, min_length=3, max_length=150)
    email: Optional[str] = Field(default=None, max_length=255)
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)


class ConversionRequest(BaseModel):
    """Everything a customer-to-student conversion may set."""

    model_config = ConfigDict(extra="forbid")

    reason: str = "Manual conversion"
    method: str = "manual"
    admission_no: Optional[str] = Field(default=None, max_length=50)
    roll_no: Optional[str] = Field(default=None, max_length=50)
    class_id: Optional[int] = Field(default=None, gt=0)
    section_id: Optional[int] = Field(default=None, gt=0)
    parent_id: Optional[int] = Field(default=None, gt=0)
    admission_date: Optional[date] = None
    account: AccountDetails = Field(default_factory=AccountDetails)

    def student_fields(self) -> dict:
        return self.model_dump(include={
            "admission_no", "roll_no", "class_id", "section_id",
            "parent_id", "admission_date",
        })
