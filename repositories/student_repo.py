"""
repositories/student_repo.py
----------------------------
Data access layer for students and their login accounts.
All SQL queries related to the `students` and `student_accounts` tables
live here.
"""

from typing import Optional

from psycopg2 import sql

from models.student import Student, StudentAccount
from repositories.base import PostgresRepository


class StudentRepository(PostgresRepository):
    """Repository for the students table."""

    table = "students"
    model = Student
    insert_columns = (
        "school_id", "account_id", "admission_no", "roll_no", "class_id",
        "section_id", "parent_id", "admission_date", "converted_from_customer_id",
        "conversion_date", "created_by",
    )

    def find_by_conversion_source(self, customer_id: int) -> Optional[Student]:
        """
        Fetch the student converted from a customer, across all tenants and
        including deleted rows (same scope as the unique constraint).
        """
        query = sql.SQL(
            "SELECT * FROM students WHERE converted_from_customer_id = %s LIMIT 1"
        )
        return self._row_to_entity(self._fetch_one(query, (customer_id,)))


class StudentAccountRepository(PostgresRepository):
    """Repository for the student_accounts table."""

    table = "student_accounts"
    model = StudentAccount
    insert_columns = (
        "school_id", "username", "email", "first_name", "last_name", "role", "created_by",
    )
    soft_deletes = False
    tracks_updates = False

    def username_exists(self, username: str) -> bool:
        query = sql.SQL("SELECT 1 AS found FROM student_accounts WHERE username = %s")
        return self._fetch_one(query, (username,)) is not None
