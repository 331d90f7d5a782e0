"""
db/unit_of_work.py
------------------
Transaction boundary for the PostgreSQL backend.

`run_in_transaction(fn)` takes one pooled connection, hands `fn` the
repositories bound to it, commits on success and rolls back on any error.
psycopg2 errors are translated here so the services only ever see the
package's own error types.
"""

from typing import Callable, TypeVar

import psycopg2

from db.connection import ConnectionPool
from repositories import Repositories
from repositories.audit_repo import AuditLogRepository
from repositories.customer_repo import CustomerRepository
from repositories.event_repo import EventRepository
from repositories.installment_repo import InstallmentRepository
from repositories.payment_repo import PaymentRepository
from repositories.student_repo import StudentAccountRepository, StudentRepository
from utils.errors import IntegrityViolation, PersistenceError
from utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def build_repositories(conn) -> Repositories:
    """Bind every repository to one connection."""
    return Repositories(
        customers=CustomerRepository(conn),
        students=StudentRepository(conn),
        accounts=StudentAccountRepository(conn),
        payments=PaymentRepository(conn),
        installments=InstallmentRepository(conn),
        events=EventRepository(conn),
        audit_logs=AuditLogRepository(conn),
    )


class PostgresUnitOfWork:
    """Runs callables inside a single PostgreSQL transaction."""

    def __init__(self, pool: ConnectionPool):
        self.pool = pool

    def run_in_transaction(self, fn: Callable[[Repositories], T]) -> T:
        """
        Execute `fn` in one transaction.

        Raises:
            IntegrityViolation: A constraint rejected a write (carries the
                constraint name).
            PersistenceError: Any other database failure.
            Whatever `fn` raises, after rolling back.
        """
        conn = self.pool.get_connection()
        try:
            result = fn(build_repositories(conn))
            conn.commit()
            return result
        except psycopg2.IntegrityError as e:
            conn.rollback()
            constraint = getattr(e.diag, "constraint_name", None)
            logger.error(f"Transaction rolled back, constraint {constraint} violated: {e}")
            raise IntegrityViolation(str(e).strip(), constraint=constraint) from e
        except psycopg2.Error as e:
            conn.rollback()
            logger.error(f"Transaction rolled back: {e}")
            raise PersistenceError(str(e).strip() or "Database error") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            self.pool.release_connection(conn)
