"""
models/installment.py
---------------------
Domain model for one scheduled portion of a payment.
"""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from utils.money import ZERO


class InstallmentStatus:
    PENDING = "PENDING"
    PAID = "PAID"
    OVERDUE = "OVERDUE"

    ALL = (PENDING, PAID, OVERDUE)
    # States an installment may still leave.
    OPEN = (PENDING, OVERDUE)


@dataclass
class Installment:
    """
    Represents a single installment of a payment.

    Attributes:
        id: Database primary key (None for new records).
        school_id: Owning tenant.
        payment_id: Parent payment.
        installment_number: Sequence number, unique within the payment.
        amount: Installment amount.
        due_date: Date the installment is due.
        status: 'PENDING' | 'PAID' | 'OVERDUE'. PAID is terminal.
        paid_date: Date it was paid.
        late_fee: Charged once when marked overdue after the due date.
        remarks: Free-text note.
    """
    school_id: int
    payment_id: int
    installment_number: int
    amount: Decimal
    due_date: date
    status: str = InstallmentStatus.PENDING
    paid_date: Optional[date] = None
    late_fee: Decimal = ZERO
    remarks: Optional[str] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    def is_paid(self) -> bool:
        return self.status == InstallmentStatus.PAID

    def is_past_due(self, today: date) -> bool:
        return self.due_date < today

    def __str__(self) -> str:
        return (
            f"Installment #{self.installment_number} of payment {self.payment_id}: "
            f"{self.amount:.2f} due {self.due_date} ({self.status})"
        )
