"""
services/conversion_service.py
------------------------------
Converts a prospect (customer) into an enrolled student, exactly once.

Workflow:
    1. Load the customer in the tenant and refuse if it was already
       converted.
    2. Record a pending CONVERSION_REQUESTED event on the customer.
    3. In one transaction: create the login account, create the student
       linked to the customer, mark the customer CONVERTED.
    4. Finalize the event with the new student id (or mark it failed).
    5. Record a STUDENT_ENROLLMENT_COMPLETED event on the student.
    6. Audit entry and staff notification, best-effort.

The unique constraint on students.converted_from_customer_id settles a race
between two conversions of the same customer: the loser gets a conflict.
"""

import re
from typing import Optional

from db.init_db import ACCOUNT_USERNAME_UNIQUE, CONVERSION_SOURCE_UNIQUE
from models.customer import Customer, CustomerStatus
from models.event import SubjectRef
from models.event_payloads import EventType
from models.requests import ConversionRequest, parse_request
from models.student import Student, StudentAccount
from notifications.dispatcher import (
    LoggingNotificationDispatcher,
    NotificationDispatcher,
    NotificationKind,
)
from repositories import Repositories, UnitOfWork
from services.audit_trail import AuditAction, AuditTrail
from services.event_ledger import EventLedgerService, describe
from utils.clock import Clock, utc_now
from utils.errors import ConflictError, IntegrityViolation, LedgerError, NotFoundError
from utils.logger import get_logger
from utils.results import returns_result
from utils.validation import require_id

logger = get_logger(__name__)

_USERNAME_CHARS = re.compile(r"[^a-z0-9._-]+")


def _already_converted(customer_id: int) -> ConflictError:
    return ConflictError(f"Customer #{customer_id} has already been converted to a student")


class ConversionService:
    """Customer -> student conversion and its history."""

    def __init__(self, uow: UnitOfWork,
                 ledger: Optional[EventLedgerService] = None,
                 audit: Optional[AuditTrail] = None,
                 notifier: Optional[NotificationDispatcher] = None,
                 clock: Clock = utc_now):
        self.uow = uow
        self.ledger = ledger or EventLedgerService(uow)
        self.audit = audit or AuditTrail(uow)
        self.notifier = notifier or LoggingNotificationDispatcher()
        self.clock = clock

    # ── Checks ────────────────────────────────────────────

    @staticmethod
    def _convertible(repos: Repositories, tenant_id: int, customer_id: int,
                     lock: bool = False) -> Customer:
        customer = repos.customers.find_by_id(tenant_id, customer_id, for_update=lock)
        if customer is None:
            raise NotFoundError(f"Customer #{customer_id} not found")
        if customer.is_converted() or repos.students.find_by_conversion_source(customer_id):
            raise _already_converted(customer_id)
        return customer

    @staticmethod
    def _username(repos: Repositories, request: ConversionRequest, customer: Customer) -> str:
        """
        The requested username, or one derived from the email local part
        and the customer id. A requested username that is taken is a
        conflict; a derived one gets a numeric suffix.
        """
        if request.account.username:
            username = request.account.username.strip().lower()
            if repos.accounts.username_exists(username):
                raise ConflictError(f"Username '{username}' is already taken")
            return username

        email = request.account.email or customer.email or ""
        base = _USERNAME_CHARS.sub("", email.split("@")[0].lower()) or "student"
        candidate = f"{base}.{customer.id}"
        suffix = 1
        while repos.accounts.username_exists(candidate):
            suffix += 1
            candidate = f"{base}.{customer.id}-{suffix}"
        return candidate

    # ── CONVERT ───────────────────────────────────────────

    @returns_result
    def convert(self, tenant_id: int, customer_id: int, actor_id: int, request=None) -> dict:
        """
        Convert a customer into a student.

        Args:
            request: ConversionRequest or a dict with its fields (student
                fields, account details, reason, method). Unknown keys are
                rejected.

        Returns (data):
            {"student", "account", "event", "enrollment_event"}
            where event.metadata["student_id"] == student.id.
        """
        require_id(tenant_id, "tenant_id")
        require_id(customer_id, "customer_id")
        require_id(actor_id, "actor_id")
        request = parse_request(ConversionRequest, request)

        customer = self.uow.run_in_transaction(
            lambda repos: self._convertible(repos, tenant_id, customer_id)
        )
        handle = self.ledger.record(
            EventType.CONVERSION_REQUESTED, SubjectRef.customer(customer_id), actor_id, tenant_id,
            {
                "reason": request.reason,
                "method": request.method,
                "prior_customer_snapshot": customer.snapshot(),
                "admission_no": request.admission_no,
                "roll_no": request.roll_no,
                "class_id": request.class_id,
                "section_id": request.section_id,
            },
        )

        def _txn(repos):
            locked = self._convertible(repos, tenant_id, customer_id, lock=True)
            first_name, _, last_name = locked.name.strip().partition(" ")
            account = repos.accounts.create(tenant_id, StudentAccount(
                school_id=tenant_id,
                username=self._username(repos, request, locked),
                email=request.account.email or locked.email,
                first_name=request.account.first_name or first_name or None,
                last_name=request.account.last_name or last_name or None,
                created_by=actor_id,
            ))
            student = repos.students.create(tenant_id, Student(
                school_id=tenant_id,
                account_id=account.id,
                converted_from_customer_id=customer_id,
                conversion_date=self.clock(),
                created_by=actor_id,
                **request.student_fields(),
            ))
            repos.customers.update(tenant_id, customer_id, {"status": CustomerStatus.CONVERTED})
            return student, account

        try:
            (student, account), event = self.ledger.settle(
                handle,
                lambda: self.uow.run_in_transaction(_txn),
                lambda res: {"student_id": res[0].id},
            )
        except IntegrityViolation as e:
            if e.constraint == CONVERSION_SOURCE_UNIQUE:
                raise _already_converted(customer_id) from e
            if e.constraint == ACCOUNT_USERNAME_UNIQUE:
                raise ConflictError("Username is already taken") from e
            raise

        logger.info(f"Converted customer #{customer_id} to student #{student.id}")
        enrollment_event = self._record_enrollment(tenant_id, actor_id, customer_id,
                                                   student, account, request)

        self.audit.write(AuditAction.CONVERT, "customer", customer_id, actor_id, tenant_id, {
            "student_id": student.id, "reason": request.reason, "method": request.method,
        })
        self.audit.write(AuditAction.CREATE, "student", student.id, actor_id, tenant_id, {
            "converted_from_customer_id": customer_id, "username": account.username,
        })
        self.notifier.trigger(
            NotificationKind.CUSTOMER_CONVERTED, SubjectRef.customer(customer_id), actor_id,
            {
                "customer_name": customer.name,
                "student_id": student.id,
                "admission_no": student.admission_no,
            },
        )
        return {
            "student": student,
            "account": account,
            "event": event,
            "enrollment_event": enrollment_event,
        }

    def _record_enrollment(self, tenant_id, actor_id, customer_id, student, account, request):
        """
        Record the enrollment on the student's own timeline.

        The conversion has committed by now, so a failure here is logged and
        leaves a pending or missing enrollment event rather than an error.
        """
        try:
            handle = self.ledger.record(
                EventType.STUDENT_ENROLLMENT_COMPLETED, SubjectRef.student(student.id),
                actor_id, tenant_id,
                {
                    "student_name": account.full_name() or None,
                    "admission_no": student.admission_no,
                    "roll_no": student.roll_no,
                    "class_id": student.class_id,
                    "section_id": student.section_id,
                    "parent_id": student.parent_id,
                    "admission_date": student.admission_date,
                    "previous_customer_id": customer_id,
                    "enrollment_method": request.method,
                },
            )
            return self.ledger.finalize(handle)
        except LedgerError as e:
            logger.error(f"Enrollment event for student #{student.id} not recorded: {e.message}")
            return None

    # ── HISTORY ───────────────────────────────────────────

    @returns_result
    def conversion_history(self, tenant_id: int, customer_id: int) -> dict:
        """
        Returns (data):
            {"customer", "events": [...oldest first], "student": Student or None}
        """
        require_id(tenant_id, "tenant_id")
        require_id(customer_id, "customer_id")

        def _read(repos):
            customer = repos.customers.find_by_id(tenant_id, customer_id)
            if customer is None:
                raise NotFoundError(f"Customer #{customer_id} not found")
            student = repos.students.find_by_conversion_source(customer_id)
            if student is not None and student.school_id != tenant_id:
                student = None
            return customer, student

        customer, student = self.uow.run_in_transaction(_read)
        events = self.ledger.timeline(tenant_id, SubjectRef.customer(customer_id))
        return {"customer": customer, "events": describe(events), "student": student}
