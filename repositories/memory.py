"""
repositories/memory.py
----------------------
In-memory implementation of the repositories and the unit of work.

Used by the test suite and for local runs without PostgreSQL. It keeps the
contract of the PostgreSQL backend:
    - transactions are serialised (one at a time, like a row lock held for
      the whole transaction) and roll back to a snapshot on any error;
    - the same unique constraints raise IntegrityViolation with the same
      constraint names;
    - returned entities are copies, never the stored rows.
"""

import copy
import threading
from typing import Callable, Optional, Sequence, TypeVar

from db.init_db import (
    ACCOUNT_USERNAME_UNIQUE,
    CONVERSION_SOURCE_UNIQUE,
    INSTALLMENT_NUMBER_UNIQUE,
)
from models.installment import InstallmentStatus
from repositories import Repositories
from utils.clock import Clock, utc_now
from utils.errors import ConflictError, IntegrityViolation, ValidationError
from utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

TABLES = (
    "customers", "students", "student_accounts", "payments",
    "installments", "ledger_events", "audit_logs",
)


class InMemoryStore:
    """
    Holds every table as a dict of id -> entity.

    Attributes:
        tables: Table name -> {id: entity}.
        writes: Log of (table, operation, id) for every committed or
            uncommitted write, in order. Handy for asserting that nothing
            was written.
        clock: Source of created_at / updated_at / deleted_at.
    """

    def __init__(self, clock: Clock = utc_now):
        self.clock = clock
        self.tables: dict[str, dict] = {name: {} for name in TABLES}
        self.writes: list[tuple[str, str, int]] = []
        self.lock = threading.RLock()
        # Like database sequences, ids are never reused after a rollback.
        self._sequences = {name: 0 for name in TABLES}

    def next_id(self, table: str) -> int:
        self._sequences[table] += 1
        return self._sequences[table]

    def writes_to(self, table: str) -> list[tuple[str, str, int]]:
        return [w for w in self.writes if w[0] == table]


class InMemoryRepository:
    """Tenant-scoped find / create / update / soft-delete over one table."""

    table: str = ""
    soft_deletes: bool = True
    tracks_updates: bool = True
    stamps_updated_on_create: bool = False

    def __init__(self, store: InMemoryStore):
        self.store = store

    @property
    def _rows(self) -> dict:
        return self.store.tables[self.table]

    def _live(self, row) -> bool:
        return not self.soft_deletes or row.deleted_at is None

    def _check_tenant(self, tenant_id: int, entity) -> None:
        if entity.school_id != tenant_id:
            raise ValidationError(
                f"Cross-tenant reference: {self.table} row for school {entity.school_id} "
                f"cannot be written by school {tenant_id}"
            )

    def _check_constraints(self, row) -> None:
        """Raise IntegrityViolation if `row` breaks a unique constraint."""

    def _others(self, row):
        return (r for r in self._rows.values() if r.id != row.id)

    def _find_row(self, tenant_id: int, entity_id: int):
        row = self._rows.get(entity_id)
        if row is None or row.school_id != tenant_id or not self._live(row):
            return None
        return row

    # ── READ ──────────────────────────────────────────────

    def find_by_id(self, tenant_id: int, entity_id: int, for_update: bool = False):
        row = self._find_row(tenant_id, entity_id)
        return copy.deepcopy(row) if row is not None else None

    # ── CREATE ────────────────────────────────────────────

    def create(self, tenant_id: int, entity):
        self._check_tenant(tenant_id, entity)
        row = copy.deepcopy(entity)
        row.id = self.store.next_id(self.table)
        now = self.store.clock()
        row.created_at = now
        if self.stamps_updated_on_create:
            row.updated_at = now
        self._check_constraints(row)
        self._rows[row.id] = row
        self.store.writes.append((self.table, "insert", row.id))
        return copy.deepcopy(row)

    # ── UPDATE ────────────────────────────────────────────

    def update(self, tenant_id: int, entity_id: int, changes: dict,
               expected_status: Optional[Sequence[str]] = None):
        row = self._find_row(tenant_id, entity_id)
        if row is None or (expected_status is not None and row.status not in expected_status):
            return None
        candidate = copy.deepcopy(row)
        for name, value in changes.items():
            if not hasattr(candidate, name):
                raise ValueError(f"{self.table} has no column {name}")
            setattr(candidate, name, copy.deepcopy(value))
        if self.tracks_updates:
            candidate.updated_at = self.store.clock()
        self._check_constraints(candidate)
        self._rows[entity_id] = candidate
        self.store.writes.append((self.table, "update", entity_id))
        return copy.deepcopy(candidate)

    def soft_delete(self, tenant_id: int, entity_id: int,
                    expected_status: Optional[Sequence[str]] = None):
        row = self._find_row(tenant_id, entity_id)
        if row is None or (expected_status is not None and row.status not in expected_status):
            return None
        now = self.store.clock()
        row.deleted_at = now
        row.updated_at = now
        self.store.writes.append((self.table, "delete", entity_id))
        return copy.deepcopy(row)


class InMemoryCustomerRepository(InMemoryRepository):
    table = "customers"


class InMemoryStudentRepository(InMemoryRepository):
    table = "students"

    def _check_constraints(self, row) -> None:
        source = row.converted_from_customer_id
        if source is None:
            return
        if any(r.converted_from_customer_id == source for r in self._others(row)):
            raise IntegrityViolation(
                f"duplicate key value violates unique constraint \"{CONVERSION_SOURCE_UNIQUE}\"",
                constraint=CONVERSION_SOURCE_UNIQUE,
            )

    def find_by_conversion_source(self, customer_id: int):
        for row in self._rows.values():
            if row.converted_from_customer_id == customer_id:
                return copy.deepcopy(row)
        return None


class InMemoryStudentAccountRepository(InMemoryRepository):
    table = "student_accounts"
    soft_deletes = False
    tracks_updates = False

    def _check_constraints(self, row) -> None:
        if any(r.username == row.username for r in self._others(row)):
            raise IntegrityViolation(
                f"duplicate key value violates unique constraint \"{ACCOUNT_USERNAME_UNIQUE}\"",
                constraint=ACCOUNT_USERNAME_UNIQUE,
            )

    def username_exists(self, username: str) -> bool:
        return any(r.username == username for r in self._rows.values())


class InMemoryPaymentRepository(InMemoryRepository):
    table = "payments"

    def update_status(self, tenant_id: int, payment_id: int, status: str):
        return self.update(tenant_id, payment_id, {"status": status})


class InMemoryInstallmentRepository(InMemoryRepository):
    table = "installments"

    def _check_constraints(self, row) -> None:
        if row.deleted_at is not None:
            return
        for other in self._others(row):
            if (other.deleted_at is None and other.payment_id == row.payment_id
                    and other.installment_number == row.installment_number):
                raise IntegrityViolation(
                    f"duplicate key value violates unique constraint \"{INSTALLMENT_NUMBER_UNIQUE}\"",
                    constraint=INSTALLMENT_NUMBER_UNIQUE,
                )

    def list_for_payment(self, tenant_id: int, payment_id: int):
        rows = [
            r for r in self._rows.values()
            if r.school_id == tenant_id and r.payment_id == payment_id and r.deleted_at is None
        ]
        return [copy.deepcopy(r) for r in sorted(rows, key=lambda r: r.installment_number)]

    def list_past_due(self, tenant_id: int, as_of):
        rows = [
            r for r in self._rows.values()
            if r.school_id == tenant_id and r.deleted_at is None
            and r.status == InstallmentStatus.PENDING and r.due_date < as_of
        ]
        return [copy.deepcopy(r) for r in sorted(rows, key=lambda r: (r.due_date, r.id))]

    def list_upcoming(self, tenant_id: int, start, end):
        rows = [
            r for r in self._rows.values()
            if r.school_id == tenant_id and r.deleted_at is None
            and r.status != InstallmentStatus.PAID and start <= r.due_date <= end
        ]
        return [copy.deepcopy(r) for r in sorted(rows, key=lambda r: (r.due_date, r.id))]


class InMemoryEventRepository(InMemoryRepository):
    table = "ledger_events"
    soft_deletes = False
    stamps_updated_on_create = True

    def list_for_subject(self, tenant_id: int, subject_type: str, subject_id: int):
        rows = [
            r for r in self._rows.values()
            if r.school_id == tenant_id and r.subject_type == subject_type
            and r.subject_id == subject_id
        ]
        return [copy.deepcopy(r) for r in sorted(rows, key=lambda r: (r.created_at, r.id))]

    def soft_delete(self, tenant_id, entity_id, expected_status=None):
        raise ConflictError("Ledger events are append-only and cannot be deleted")


class InMemoryAuditLogRepository(InMemoryRepository):
    table = "audit_logs"
    soft_deletes = False
    tracks_updates = False


def build_memory_repositories(store: InMemoryStore) -> Repositories:
    return Repositories(
        customers=InMemoryCustomerRepository(store),
        students=InMemoryStudentRepository(store),
        accounts=InMemoryStudentAccountRepository(store),
        payments=InMemoryPaymentRepository(store),
        installments=InMemoryInstallmentRepository(store),
        events=InMemoryEventRepository(store),
        audit_logs=InMemoryAuditLogRepository(store),
    )


class InMemoryUnitOfWork:
    """
    Serialised, snapshot-rollback transactions over an InMemoryStore.

    Attributes:
        committed: Number of transactions that committed.
        rolled_back: Number of transactions that rolled back.
    """

    def __init__(self, store: Optional[InMemoryStore] = None):
        self.store = store or InMemoryStore()
        self.committed = 0
        self.rolled_back = 0

    def run_in_transaction(self, fn: Callable[[Repositories], T]) -> T:
        with self.store.lock:
            snapshot = copy.deepcopy(self.store.tables)
            try:
                result = fn(build_memory_repositories(self.store))
            except Exception as e:
                self.store.tables = snapshot
                self.rolled_back += 1
                logger.debug(f"In-memory transaction rolled back: {type(e).__name__}: {e}")
                raise
            self.committed += 1
            return result
