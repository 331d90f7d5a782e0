"""
models/audit.py
---------------
Write-only compliance log entry.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass
class AuditLogEntry:
    school_id: int
    actor_id: int
    action: str
    entity_type: str
    entity_id: Optional[int] = None
    details: Optional[str] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None
