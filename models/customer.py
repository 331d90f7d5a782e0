"""
models/customer.py
------------------
Domain model for prospects (customers) that may later become students.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


class CustomerStatus:
    PROSPECT = "PROSPECT"
    CONVERTED = "CONVERTED"


@dataclass
class Customer:
    """
    Represents a prospect owned by one school.

    Attributes:
        id: Database primary key (None for new records).
        school_id: Owning tenant.
        name: Display name.
        email: Optional contact email.
        phone: Optional contact phone.
        status: 'PROSPECT' until converted, then 'CONVERTED'.
        created_at / updated_at / deleted_at: Row timestamps.
    """
    school_id: int
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    status: str = CustomerStatus.PROSPECT
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    def is_converted(self) -> bool:
        return self.status == CustomerStatus.CONVERTED

    def snapshot(self) -> dict:
        """JSON-safe copy of the record, stored on the conversion event."""
        return {
            "id": self.id,
            "school_id": self.school_id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __str__(self) -> str:
        return f"Customer #{self.id} {self.name} ({self.status})"
