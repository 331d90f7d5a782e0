"""
models/student.py
-----------------
Domain models for enrolled students and their linked login accounts.
"""

from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional


@dataclass
class StudentAccount:
    """
    Login account created together with a student.

    Attributes:
        id: Database primary key (None for new records).
        school_id: Owning tenant.
        username: Unique login name.
        email / first_name / last_name: Contact details copied from the request.
        role: Always 'STUDENT' for accounts created here.
        created_by: Actor who created the account.
        created_at: Timestamp when the record was created.
    """
    school_id: int
    username: str
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: str = "STUDENT"
    created_by: Optional[int] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None

    def full_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p)


@dataclass
class Student:
    """
    Represents an enrolled student.

    Attributes:
        id: Database primary key (None for new records).
        school_id: Owning tenant.
        account_id: Linked StudentAccount.
        admission_no / roll_no: School identifiers.
        class_id / section_id / parent_id: References owned by other modules.
        admission_date: Date of admission.
        converted_from_customer_id: Customer this student was converted from.
            Unique across all students.
        conversion_date: When the conversion happened.
        created_by: Actor who created the record.
    """
    school_id: int
    account_id: Optional[int] = None
    admission_no: Optional[str] = None
    roll_no: Optional[str] = None
    class_id: Optional[int] = None
    section_id: Optional[int] = None
    parent_id: Optional[int] = None
    admission_date: Optional[date] = None
    converted_from_customer_id: Optional[int] = None
    conversion_date: Optional[datetime] = None
    created_by: Optional[int] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    def __str__(self) -> str:
        return f"Student #{self.id} ({self.admission_no or 'no admission no'})"
