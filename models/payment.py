"""
models/payment.py
-----------------
Domain model for billable obligations.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from utils.money import ZERO


class PaymentStatus:
    PENDING = "PENDING"
    PARTIALLY_PAID = "PARTIALLY_PAID"
    OVERDUE = "OVERDUE"
    PAID = "PAID"

    ALL = (PENDING, PARTIALLY_PAID, OVERDUE, PAID)


@dataclass
class Payment:
    """
    Represents a payment that may be split into installments.

    Attributes:
        id: Database primary key (None for new records).
        school_id: Owning tenant.
        amount: Principal amount.
        discount: Amount taken off the principal.
        fine: Amount added to the principal.
        total: amount - discount + fine (computed when not given).
        student_id: Optional payer.
        status: Derived from installments once any exist.
    """
    school_id: int
    amount: Decimal
    discount: Decimal = ZERO
    fine: Decimal = ZERO
    total: Optional[Decimal] = None
    student_id: Optional[int] = None
    status: str = PaymentStatus.PENDING
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    def __post_init__(self):
        if self.total is None:
            self.total = self.amount - self.discount + self.fine

    def __str__(self) -> str:
        return f"Payment #{self.id}: {self.total:.2f} ({self.status})"
