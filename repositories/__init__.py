"""
repositories/ - Data Access Layer
==================================
Each repository encapsulates all queries for a specific domain entity and
returns domain model objects. Every lookup is scoped to a tenant (school).

Two implementations share the same contract:
    - repositories/*_repo.py: PostgreSQL (psycopg2), one connection per
      transaction.
    - repositories/memory.py: in-memory store used by tests and local runs.
"""

from dataclasses import dataclass
from typing import Any, Callable, Protocol, TypeVar

T = TypeVar("T")


@dataclass
class Repositories:
    """The repositories bound to one transaction."""
    customers: Any
    students: Any
    accounts: Any
    payments: Any
    installments: Any
    events: Any
    audit_logs: Any


class UnitOfWork(Protocol):
    """Runs `fn` inside one transaction; rolls back if it raises."""

    def run_in_transaction(self, fn: Callable[[Repositories], T]) -> T:
        ...
