"""
services/audit_trail.py
-----------------------
Best-effort compliance log. Each entry is written in its own transaction
after the primary mutation has committed; a failure is logged and never
reaches the caller.
"""

import json
from typing import Optional, Union

from models.audit import AuditLogEntry
from repositories import UnitOfWork
from utils.logger import get_logger

logger = get_logger(__name__)


class AuditAction:
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    PAY = "PAY"
    OVERDUE = "OVERDUE"
    CONVERT = "CONVERT"


class AuditTrail:
    """Writes audit_logs rows."""

    def __init__(self, uow: UnitOfWork):
        self.uow = uow

    def write(self, action: str, entity_type: str, entity_id: Optional[int],
              actor_id: int, tenant_id: int,
              details: Union[str, dict, None] = None) -> Optional[AuditLogEntry]:
        """
        Append one audit entry.

        Args:
            details: Free text, or a dict stored as JSON text.

        Returns:
            The stored entry, or None if it could not be written.
        """
        if isinstance(details, dict):
            details = json.dumps(details, default=str, sort_keys=True)
        entry = AuditLogEntry(
            school_id=tenant_id,
            actor_id=actor_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            details=details,
        )
        try:
            return self.uow.run_in_transaction(
                lambda repos: repos.audit_logs.create(tenant_id, entry)
            )
        except Exception as e:
            logger.error(f"Audit write failed ({action} {entity_type} #{entity_id}): {e}")
            return None
