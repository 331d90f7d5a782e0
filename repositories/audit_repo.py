"""
repositories/audit_repo.py
--------------------------
Write-only access to the `audit_logs` table.
"""

from models.audit import AuditLogEntry
from repositories.base import PostgresRepository


class AuditLogRepository(PostgresRepository):
    """Repository for the audit_logs table."""

    table = "audit_logs"
    model = AuditLogEntry
    insert_columns = (
        "school_id", "actor_id", "action", "entity_type", "entity_id", "details",
    )
    soft_deletes = False
    tracks_updates = False
