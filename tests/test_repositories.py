"""Persistence layer: PostgreSQL repositories and unit of work against fake
psycopg2 connections, plus the in-memory store's transaction semantics."""

from datetime import date, datetime, timezone
from decimal import Decimal
from types import SimpleNamespace

import psycopg2
import pytest
from psycopg2 import sql
from psycopg2.extras import Json, RealDictCursor

from db.init_db import CONVERSION_SOURCE_UNIQUE, INSTALLMENT_NUMBER_UNIQUE, SCHEMA_SQL, create_tables
from db.unit_of_work import PostgresUnitOfWork
from models.customer import Customer
from models.event import LedgerEvent
from models.installment import Installment, InstallmentStatus
from models.payment import Payment
from models.student import Student
from repositories.event_repo import EventRepository
from repositories.installment_repo import InstallmentRepository
from repositories.memory import InMemoryUnitOfWork
from repositories.payment_repo import PaymentRepository
from tests.conftest import OTHER_SCHOOL, SCHOOL, seed
from utils.errors import (
    ConflictError,
    IntegrityViolation,
    NotFoundError,
    PersistenceError,
    ValidationError,
)

NOW = datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc)


# -----------------------------------------------------------------------------
# Fakes
# -----------------------------------------------------------------------------

def render(query) -> str:
    """Flatten a psycopg2.sql composable without a live connection."""
    if isinstance(query, str):
        return query
    if isinstance(query, sql.Composed):
        return "".join(render(part) for part in query.seq)
    if isinstance(query, sql.SQL):
        return query.string
    if isinstance(query, sql.Identifier):
        return ".".join(f'"{s}"' for s in query.strings)
    if isinstance(query, sql.Placeholder):
        return "%s"
    raise TypeError(type(query))


class FakeCursor:
    def __init__(self, conn, cursor_factory=None):
        self.conn = conn
        self.cursor_factory = cursor_factory

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, query, params=None):
        if self.conn.fail_with is not None:
            raise self.conn.fail_with
        self.conn.executed.append((render(query), params, self.cursor_factory))

    def fetchone(self):
        return self.conn.rows.pop(0) if self.conn.rows else None

    def fetchall(self):
        rows, self.conn.rows = self.conn.rows, []
        return rows


class FakeConnection:
    def __init__(self, rows=None, fail_with=None):
        self.rows = list(rows or [])
        self.fail_with = fail_with
        self.executed = []
        self.commits = 0
        self.rollbacks = 0

    def cursor(self, cursor_factory=None):
        return FakeCursor(self, cursor_factory)

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1


class FakePool:
    def __init__(self, conn):
        self.conn = conn
        self.released = []

    def get_connection(self):
        return self.conn

    def release_connection(self, conn):
        self.released.append(conn)


class UniqueViolation(psycopg2.IntegrityError):
    diag = SimpleNamespace(constraint_name=CONVERSION_SOURCE_UNIQUE)


def payment_row(**overrides):
    row = {
        "id": 5, "school_id": SCHOOL, "student_id": None, "amount": Decimal("300.00"),
        "discount": Decimal("0.00"), "fine": Decimal("0.00"), "total": Decimal("300.00"),
        "status": "PENDING", "created_at": NOW, "updated_at": None, "deleted_at": None,
    }
    row.update(overrides)
    return row


# -----------------------------------------------------------------------------
# PostgreSQL repositories
# -----------------------------------------------------------------------------

class TestPostgresRepositories:

    def test_find_by_id_is_tenant_scoped_and_can_lock(self):
        conn = FakeConnection(rows=[payment_row()])

        payment = PaymentRepository(conn).find_by_id(SCHOOL, 5, for_update=True)

        [(query, params, factory)] = conn.executed
        assert query == (
            'SELECT * FROM "payments" WHERE id = %s AND school_id = %s '
            'AND deleted_at IS NULL FOR UPDATE'
        )
        assert params == (5, SCHOOL)
        assert factory is RealDictCursor
        assert isinstance(payment, Payment)
        assert payment.total == Decimal("300.00")

    def test_find_by_id_miss_returns_none(self):
        assert PaymentRepository(FakeConnection()).find_by_id(SCHOOL, 5) is None

    def test_create_inserts_declared_columns(self):
        conn = FakeConnection(rows=[payment_row(id=9)])

        saved = PaymentRepository(conn).create(SCHOOL, Payment(school_id=SCHOOL, amount=Decimal("300.00")))

        [(query, params, _)] = conn.executed
        assert query.startswith('INSERT INTO "payments" ("school_id", "student_id", "amount"')
        assert query.endswith("VALUES (%s, %s, %s, %s, %s, %s, %s) RETURNING *")
        assert params == [SCHOOL, None, Decimal("300.00"), Decimal("0.00"), Decimal("0.00"),
                          Decimal("300.00"), "PENDING"]
        assert saved.id == 9

    def test_create_refuses_cross_tenant_rows(self):
        conn = FakeConnection()
        with pytest.raises(ValidationError, match="Cross-tenant"):
            PaymentRepository(conn).create(OTHER_SCHOOL, Payment(school_id=SCHOOL, amount=Decimal("1.00")))
        assert conn.executed == []

    def test_event_metadata_is_written_as_json(self):
        row = {
            "id": 1, "school_id": SCHOOL, "subject_type": "PAYMENT", "subject_id": 5,
            "event_type": "INSTALLMENT_DELETED", "actor_id": 7, "status": "pending",
            "metadata": {"installment_id": 3}, "schema_version": 1,
            "created_at": NOW, "updated_at": NOW,
        }
        conn = FakeConnection(rows=[row])
        event = LedgerEvent(school_id=SCHOOL, subject_type="PAYMENT", subject_id=5,
                            event_type="INSTALLMENT_DELETED", actor_id=7,
                            metadata={"installment_id": 3})

        saved = EventRepository(conn).create(SCHOOL, event)

        params = conn.executed[0][1]
        assert isinstance(params[5], Json)
        assert params[5].adapted == {"installment_id": 3}
        assert saved.metadata == {"installment_id": 3}

    def test_events_are_never_deleted(self):
        conn = FakeConnection()
        with pytest.raises(ConflictError):
            EventRepository(conn).soft_delete(SCHOOL, 1)
        assert conn.executed == []

    def test_guarded_update(self):
        conn = FakeConnection(rows=[])

        result = InstallmentRepository(conn).update(
            SCHOOL, 3, {"status": "PAID", "paid_date": date(2025, 3, 10)},
            expected_status=InstallmentStatus.OPEN,
        )

        [(query, params, _)] = conn.executed
        assert query == (
            'UPDATE "installments" SET "status" = %s, "paid_date" = %s, updated_at = NOW() '
            'WHERE id = %s AND school_id = %s AND deleted_at IS NULL '
            'AND status = ANY(%s) RETURNING *'
        )
        assert params == ["PAID", date(2025, 3, 10), 3, SCHOOL, ["PENDING", "OVERDUE"]]
        assert result is None

    def test_list_past_due(self):
        row = {
            "id": 3, "school_id": SCHOOL, "payment_id": 5, "installment_number": 1,
            "amount": Decimal("50.00"), "due_date": date(2025, 3, 1), "status": "PENDING",
            "paid_date": None, "late_fee": Decimal("0.00"), "remarks": None,
            "created_at": NOW, "updated_at": None, "deleted_at": None,
        }
        conn = FakeConnection(rows=[row])

        [installment] = InstallmentRepository(conn).list_past_due(SCHOOL, date(2025, 3, 10))

        assert installment == Installment(**row)
        assert conn.executed[0][1] == (SCHOOL, "PENDING", date(2025, 3, 10))

    def test_list_upcoming_excludes_paid(self):
        conn = FakeConnection(rows=[])

        assert InstallmentRepository(conn).list_upcoming(SCHOOL, date(2025, 3, 10), date(2025, 4, 9)) == []

        [(query, params, _)] = conn.executed
        assert "status <> %s AND due_date BETWEEN %s AND %s" in query
        assert params == (SCHOOL, "PAID", date(2025, 3, 10), date(2025, 4, 9))


# -----------------------------------------------------------------------------
# PostgreSQL unit of work
# -----------------------------------------------------------------------------

class TestPostgresUnitOfWork:

    def test_commits_and_releases(self):
        conn = FakeConnection(rows=[payment_row()])
        pool = FakePool(conn)

        payment = PostgresUnitOfWork(pool).run_in_transaction(
            lambda repos: repos.payments.find_by_id(SCHOOL, 5)
        )

        assert payment.id == 5
        assert (conn.commits, conn.rollbacks) == (1, 0)
        assert pool.released == [conn]

    def test_unique_violation_carries_constraint_name(self):
        conn = FakeConnection(fail_with=UniqueViolation("duplicate key value"))
        pool = FakePool(conn)

        with pytest.raises(IntegrityViolation) as excinfo:
            PostgresUnitOfWork(pool).run_in_transaction(
                lambda repos: repos.students.create(SCHOOL, Student(school_id=SCHOOL, converted_from_customer_id=4))
            )

        assert excinfo.value.constraint == CONVERSION_SOURCE_UNIQUE
        assert (conn.commits, conn.rollbacks) == (0, 1)
        assert pool.released == [conn]

    def test_other_database_errors_become_persistence_errors(self):
        conn = FakeConnection(fail_with=psycopg2.OperationalError("server closed the connection"))
        pool = FakePool(conn)

        with pytest.raises(PersistenceError, match="server closed"):
            PostgresUnitOfWork(pool).run_in_transaction(lambda repos: repos.customers.find_by_id(SCHOOL, 1))

        assert conn.rollbacks == 1
        assert pool.released == [conn]

    def test_domain_errors_roll_back_unchanged(self):
        conn = FakeConnection()
        pool = FakePool(conn)

        def missing(repos):
            raise NotFoundError("Payment #5 not found")

        with pytest.raises(NotFoundError):
            PostgresUnitOfWork(pool).run_in_transaction(missing)
        assert (conn.commits, conn.rollbacks) == (0, 1)

    def test_create_tables_runs_schema(self):
        conn = FakeConnection()
        pool = FakePool(conn)

        create_tables(pool)

        assert conn.executed[0][0] == SCHEMA_SQL
        assert conn.commits == 1
        assert CONVERSION_SOURCE_UNIQUE in SCHEMA_SQL
        assert INSTALLMENT_NUMBER_UNIQUE in SCHEMA_SQL


# -----------------------------------------------------------------------------
# In-memory store
# -----------------------------------------------------------------------------

class TestInMemoryUnitOfWork:

    def test_rollback_restores_snapshot(self, uow, store):
        def create_then_fail(repos):
            repos.customers.create(SCHOOL, Customer(school_id=SCHOOL, name="Temp"))
            raise RuntimeError("abort")

        with pytest.raises(RuntimeError):
            uow.run_in_transaction(create_then_fail)

        assert store.tables["customers"] == {}
        assert (uow.committed, uow.rolled_back) == (0, 1)

    def test_returned_entities_are_copies(self, uow, store):
        customer = seed(uow, "customers", Customer(school_id=SCHOOL, name="Copy"))
        customer.name = "Mutated"
        assert store.tables["customers"][customer.id].name == "Copy"

    def test_conversion_source_is_unique(self, uow):
        seed(uow, "students", Student(school_id=SCHOOL, converted_from_customer_id=4))
        with pytest.raises(IntegrityViolation) as excinfo:
            seed(uow, "students", Student(school_id=OTHER_SCHOOL, converted_from_customer_id=4))
        assert excinfo.value.constraint == CONVERSION_SOURCE_UNIQUE

    def test_installment_number_unique_among_live_rows(self, uow):
        payment = seed(uow, "payments", Payment(school_id=SCHOOL, amount=Decimal("10.00")))
        first = seed(uow, "installments", Installment(
            school_id=SCHOOL, payment_id=payment.id, installment_number=1,
            amount=Decimal("5.00"), due_date=date(2025, 4, 1),
        ))
        duplicate = Installment(school_id=SCHOOL, payment_id=payment.id, installment_number=1,
                                amount=Decimal("5.00"), due_date=date(2025, 5, 1))

        with pytest.raises(IntegrityViolation):
            seed(uow, "installments", duplicate)
        uow.run_in_transaction(lambda r: r.installments.soft_delete(SCHOOL, first.id))
        assert seed(uow, "installments", duplicate).installment_number == 1

    def test_cross_tenant_create_is_rejected(self):
        uow = InMemoryUnitOfWork()
        with pytest.raises(ValidationError):
            uow.run_in_transaction(
                lambda r: r.customers.create(OTHER_SCHOOL, Customer(school_id=SCHOOL, name="X"))
            )
