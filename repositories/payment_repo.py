"""
repositories/payment_repo.py
----------------------------
Data access layer for payments.
All SQL queries related to the `payments` table live here.
"""

from typing import Optional

from models.payment import Payment
from repositories.base import PostgresRepository


class PaymentRepository(PostgresRepository):
    """Repository for the payments table."""

    table = "payments"
    model = Payment
    insert_columns = (
        "school_id", "student_id", "amount", "discount", "fine", "total", "status",
    )

    def update_status(self, tenant_id: int, payment_id: int, status: str) -> Optional[Payment]:
        return self.update(tenant_id, payment_id, {"status": status})
