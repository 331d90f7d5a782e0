"""
repositories/installment_repo.py
--------------------------------
Data access layer for installments.
All SQL queries related to the `installments` table live here.
"""

from datetime import date

from psycopg2 import sql

from models.installment import Installment, InstallmentStatus
from repositories.base import PostgresRepository


class InstallmentRepository(PostgresRepository):
    """Repository for the installments table."""

    table = "installments"
    model = Installment
    insert_columns = (
        "school_id", "payment_id", "installment_number", "amount", "due_date",
        "status", "paid_date", "late_fee", "remarks",
    )

    def list_for_payment(self, tenant_id: int, payment_id: int) -> list[Installment]:
        """Live installments of a payment ordered by installment number."""
        query = sql.SQL(
            "SELECT * FROM installments "
            "WHERE school_id = %s AND payment_id = %s AND deleted_at IS NULL "
            "ORDER BY installment_number"
        )
        return [self._row_to_entity(r) for r in self._fetch_all(query, (tenant_id, payment_id))]

    def list_past_due(self, tenant_id: int, as_of: date) -> list[Installment]:
        """Live PENDING installments due strictly before `as_of`."""
        query = sql.SQL(
            "SELECT * FROM installments "
            "WHERE school_id = %s AND status = %s AND due_date < %s AND deleted_at IS NULL "
            "ORDER BY due_date, id"
        )
        rows = self._fetch_all(query, (tenant_id, InstallmentStatus.PENDING, as_of))
        return [self._row_to_entity(r) for r in rows]

    def list_upcoming(self, tenant_id: int, start: date, end: date) -> list[Installment]:
        """Live unpaid installments due between `start` and `end`, inclusive."""
        query = sql.SQL(
            "SELECT * FROM installments "
            "WHERE school_id = %s AND status <> %s AND due_date BETWEEN %s AND %s "
            "AND deleted_at IS NULL "
            "ORDER BY due_date, id"
        )
        rows = self._fetch_all(query, (tenant_id, InstallmentStatus.PAID, start, end))
        return [self._row_to_entity(r) for r in rows]
