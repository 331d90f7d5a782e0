"""
models/event_payloads.py
------------------------
Typed, versioned metadata for every ledger event type.

The payloads form a tagged union keyed by `event_type`. Metadata is
validated on `record` and re-validated on every patch, so the stored shape
is always one of the models below.
"""

from datetime import date
from decimal import Decimal
from typing import Annotated, Any, Literal, Optional, Union

import pydantic
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from models.event import SubjectType
from utils.errors import ValidationError

SCHEMA_VERSION = 1


class EventType:
    CONVERSION_REQUESTED = "CONVERSION_REQUESTED"
    STUDENT_ENROLLMENT_COMPLETED = "STUDENT_ENROLLMENT_COMPLETED"
    INSTALLMENT_CREATED = "INSTALLMENT_CREATED"
    INSTALLMENT_UPDATED = "INSTALLMENT_UPDATED"
    INSTALLMENT_DELETED = "INSTALLMENT_DELETED"
    INSTALLMENT_PAID = "INSTALLMENT_PAID"
    INSTALLMENT_OVERDUE = "INSTALLMENT_OVERDUE"


# Which subject each event type may document.
EVENT_SUBJECTS: dict[str, str] = {
    EventType.CONVERSION_REQUESTED: SubjectType.CUSTOMER,
    EventType.STUDENT_ENROLLMENT_COMPLETED: SubjectType.STUDENT,
    EventType.INSTALLMENT_CREATED: SubjectType.PAYMENT,
    EventType.INSTALLMENT_UPDATED: SubjectType.PAYMENT,
    EventType.INSTALLMENT_DELETED: SubjectType.PAYMENT,
    EventType.INSTALLMENT_PAID: SubjectType.PAYMENT,
    EventType.INSTALLMENT_OVERDUE: SubjectType.PAYMENT,
}


class _Payload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    schema_version: int = SCHEMA_VERSION
    failure_reason: Optional[str] = None


# ── Customer events ───────────────────────────────────────

class ConversionRequested(_Payload):
    event_type: Literal["CONVERSION_REQUESTED"] = EventType.CONVERSION_REQUESTED
    reason: str
    method: str
    prior_customer_snapshot: dict[str, Any]
    admission_no: Optional[str] = None
    roll_no: Optional[str] = None
    class_id: Optional[int] = None
    section_id: Optional[int] = None
    # Unknown until the student row exists; backfilled by finalize.
    student_id: Optional[int] = None


# ── Student events ────────────────────────────────────────

class StudentEnrollmentCompleted(_Payload):
    event_type: Literal["STUDENT_ENROLLMENT_COMPLETED"] = EventType.STUDENT_ENROLLMENT_COMPLETED
    student_name: Optional[str] = None
    admission_no: Optional[str] = None
    roll_no: Optional[str] = None
    class_id: Optional[int] = None
    section_id: Optional[int] = None
    parent_id: Optional[int] = None
    admission_date: Optional[date] = None
    previous_customer_id: Optional[int] = None
    enrollment_method: Optional[str] = None


# ── Payment (installment) events ──────────────────────────

class InstallmentCreated(_Payload):
    event_type: Literal["INSTALLMENT_CREATED"] = EventType.INSTALLMENT_CREATED
    installment_number: int
    amount: Decimal
    due_date: date
    installment_id: Optional[int] = None
    payment_status: Optional[str] = None


class InstallmentUpdated(_Payload):
    event_type: Literal["INSTALLMENT_UPDATED"] = EventType.INSTALLMENT_UPDATED
    installment_id: int
    changes: dict[str, Any]
    previous: dict[str, Any]


class InstallmentDeleted(_Payload):
    event_type: Literal["INSTALLMENT_DELETED"] = EventType.INSTALLMENT_DELETED
    installment_id: int
    installment_number: int
    payment_status: Optional[str] = None


class InstallmentPaid(_Payload):
    event_type: Literal["INSTALLMENT_PAID"] = EventType.INSTALLMENT_PAID
    installment_id: int
    installment_number: int
    amount: Decimal
    remarks: Optional[str] = None
    paid_date: Optional[date] = None
    payment_status: Optional[str] = None


class InstallmentOverdue(_Payload):
    event_type: Literal["INSTALLMENT_OVERDUE"] = EventType.INSTALLMENT_OVERDUE
    installment_id: int
    installment_number: int
    amount: Decimal
    late_fee: Optional[Decimal] = None
    payment_status: Optional[str] = None


EventPayload = Annotated[
    Union[
        ConversionRequested,
        StudentEnrollmentCompleted,
        InstallmentCreated,
        InstallmentUpdated,
        InstallmentDeleted,
        InstallmentPaid,
        InstallmentOverdue,
    ],
    Field(discriminator="event_type"),
]

_payload_adapter = TypeAdapter(EventPayload)


def describe_errors(error: pydantic.ValidationError) -> str:
    """Flatten pydantic errors into one readable line."""
    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or 'value'}: {err['msg']}"
        for err in error.errors()
    )


def build_metadata(event_type: str, metadata: dict) -> dict:
    """
    Validate metadata against the payload schema for `event_type`.

    Returns:
        The JSON-safe metadata to store (defaults filled in, decimals and
        dates as strings).

    Raises:
        ValidationError: Unknown event type or metadata that does not fit
            the schema.
    """
    if event_type not in EVENT_SUBJECTS:
        raise ValidationError(f"Unknown event type: {event_type}")
    data = dict(metadata or {})
    data["event_type"] = event_type
    try:
        payload = _payload_adapter.validate_python(data)
    except pydantic.ValidationError as e:
        raise ValidationError(f"Invalid {event_type} metadata: {describe_errors(e)}")
    return payload.model_dump(mode="json")
