"""
repositories/event_repo.py
--------------------------
Data access layer for ledger events.
All SQL queries related to the `ledger_events` table live here.
Rows are append-only: there is no delete.
"""

from psycopg2 import sql

from models.event import LedgerEvent
from repositories.base import PostgresRepository
from utils.errors import ConflictError


class EventRepository(PostgresRepository):
    """Repository for the ledger_events table."""

    table = "ledger_events"
    model = LedgerEvent
    insert_columns = (
        "school_id", "subject_type", "subject_id", "event_type", "actor_id",
        "metadata", "status", "schema_version",
    )
    soft_deletes = False

    def list_for_subject(self, tenant_id: int, subject_type: str, subject_id: int) -> list[LedgerEvent]:
        """Events of one subject in creation order."""
        query = sql.SQL(
            "SELECT * FROM ledger_events "
            "WHERE school_id = %s AND subject_type = %s AND subject_id = %s "
            "ORDER BY created_at, id"
        )
        rows = self._fetch_all(query, (tenant_id, subject_type, subject_id))
        return [self._row_to_entity(r) for r in rows]

    def soft_delete(self, tenant_id, entity_id, expected_status=None):
        raise ConflictError("Ledger events are append-only and cannot be deleted")
