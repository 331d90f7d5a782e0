"""
models/event.py
---------------
Domain model for ledger events (customer, student and payment events).
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


class SubjectType:
    CUSTOMER = "CUSTOMER"
    STUDENT = "STUDENT"
    PAYMENT = "PAYMENT"

    ALL = (CUSTOMER, STUDENT, PAYMENT)


class EventStatus:
    PENDING = "pending"
    COMMITTED = "committed"
    FAILED = "failed"


@dataclass(frozen=True)
class SubjectRef:
    """The entity an event documents."""
    subject_type: str
    subject_id: int

    @classmethod
    def customer(cls, customer_id: int) -> "SubjectRef":
        return cls(SubjectType.CUSTOMER, customer_id)

    @classmethod
    def student(cls, student_id: int) -> "SubjectRef":
        return cls(SubjectType.STUDENT, student_id)

    @classmethod
    def payment(cls, payment_id: int) -> "SubjectRef":
        return cls(SubjectType.PAYMENT, payment_id)


@dataclass(frozen=True)
class EventHandle:
    """Opaque reference returned by EventLedgerService.record()."""
    id: int
    tenant_id: int


@dataclass
class LedgerEvent:
    """
    Represents one immutable-once-finalized ledger row.

    Attributes:
        id: Database primary key (None for new records).
        school_id: Owning tenant.
        subject_type / subject_id: The documented entity.
        event_type: Key of the payload schema (see models/event_payloads.py).
        actor_id: Who asked for the change.
        metadata: Validated payload, JSON-safe.
        status: 'pending' until finalized ('committed') or failed ('failed').
        schema_version: Payload schema version at write time.
        created_at: Written before the mutation it documents.
        updated_at: Last finalize / failure time.
    """
    school_id: int
    subject_type: str
    subject_id: int
    event_type: str
    actor_id: int
    metadata: dict = field(default_factory=dict)
    status: str = EventStatus.PENDING
    schema_version: int = 1
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def handle(self) -> EventHandle:
        return EventHandle(self.id, self.school_id)

    @property
    def subject(self) -> SubjectRef:
        return SubjectRef(self.subject_type, self.subject_id)

    def is_pending(self) -> bool:
        return self.status == EventStatus.PENDING

    def __str__(self) -> str:
        return f"{self.event_type} #{self.id} on {self.subject_type} {self.subject_id} [{self.status}]"
