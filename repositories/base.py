"""
repositories/base.py
--------------------
Shared PostgreSQL repository: tenant-scoped find / create / update /
soft-delete over one table, built with psycopg2.sql so table and column
names are always quoted identifiers.
"""

from dataclasses import fields
from typing import Optional, Sequence

from psycopg2 import sql
from psycopg2.extras import Json, RealDictCursor

from utils.errors import ValidationError
from utils.logger import get_logger

logger = get_logger(__name__)


class PostgresRepository:
    """
    Base class for the table repositories.

    Subclasses set:
        table: Table name.
        model: Dataclass the rows map to.
        insert_columns: Columns written on create.
        soft_deletes: Table has a `deleted_at` column.
        tracks_updates: Table has an `updated_at` column.
    """

    table: str = ""
    model: type = object
    insert_columns: tuple = ()
    soft_deletes: bool = True
    tracks_updates: bool = True

    def __init__(self, conn):
        self.conn = conn

    # ── Helpers ───────────────────────────────────────────

    def _fetch_all(self, query, params: Sequence = ()) -> list[dict]:
        with self.conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(query, params)
            return cur.fetchall()

    def _fetch_one(self, query, params: Sequence = ()) -> Optional[dict]:
        with self.conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(query, params)
            return cur.fetchone()

    def _row_to_entity(self, row: Optional[dict]):
        if row is None:
            return None
        names = {f.name for f in fields(self.model)}
        return self.model(**{k: v for k, v in row.items() if k in names})

    @staticmethod
    def _adapt(value):
        return Json(value) if isinstance(value, dict) else value

    def _live(self):
        """Filter fragment hiding soft-deleted rows."""
        if self.soft_deletes:
            return sql.SQL(" AND deleted_at IS NULL")
        return sql.SQL("")

    def _check_tenant(self, tenant_id: int, entity) -> None:
        if entity.school_id != tenant_id:
            raise ValidationError(
                f"Cross-tenant reference: {self.table} row for school {entity.school_id} "
                f"cannot be written by school {tenant_id}"
            )

    # ── READ ──────────────────────────────────────────────

    def find_by_id(self, tenant_id: int, entity_id: int, for_update: bool = False):
        """
        Fetch one live row scoped to the tenant.

        Args:
            for_update: Lock the row until the transaction ends.

        Returns:
            The entity, or None if absent, deleted or owned by another tenant.
        """
        query = sql.SQL("SELECT * FROM {} WHERE id = %s AND school_id = %s").format(
            sql.Identifier(self.table)
        ) + self._live()
        if for_update:
            query += sql.SQL(" FOR UPDATE")
        return self._row_to_entity(self._fetch_one(query, (entity_id, tenant_id)))

    # ── CREATE ────────────────────────────────────────────

    def create(self, tenant_id: int, entity):
        """
        Insert a new row.

        Returns:
            The entity as stored (id and timestamps populated).

        Raises:
            ValidationError: If the entity belongs to another tenant.
        """
        self._check_tenant(tenant_id, entity)
        query = sql.SQL("INSERT INTO {} ({}) VALUES ({}) RETURNING *").format(
            sql.Identifier(self.table),
            sql.SQL(", ").join(map(sql.Identifier, self.insert_columns)),
            sql.SQL(", ").join(sql.Placeholder() * len(self.insert_columns)),
        )
        params = [self._adapt(getattr(entity, c)) for c in self.insert_columns]
        saved = self._row_to_entity(self._fetch_one(query, params))
        logger.debug(f"Inserted {self.table} #{saved.id} for school {tenant_id}")
        return saved

    # ── UPDATE ────────────────────────────────────────────

    def update(self, tenant_id: int, entity_id: int, changes: dict,
               expected_status: Optional[Sequence[str]] = None):
        """
        Update columns of one live row.

        Args:
            changes: Column -> new value.
            expected_status: If given, only a row currently in one of these
                statuses is updated (optimistic guard).

        Returns:
            The updated entity, or None if no row matched.
        """
        assignments = [
            sql.SQL("{} = %s").format(sql.Identifier(col)) for col in changes
        ]
        if self.tracks_updates:
            assignments.append(sql.SQL("updated_at = NOW()"))
        params = [self._adapt(v) for v in changes.values()]
        return self._write(sql.SQL(", ").join(assignments), params,
                           tenant_id, entity_id, expected_status)

    def soft_delete(self, tenant_id: int, entity_id: int,
                    expected_status: Optional[Sequence[str]] = None):
        """
        Mark a live row deleted.

        Returns:
            The deleted entity, or None if no row matched.
        """
        assignments = sql.SQL("deleted_at = NOW(), updated_at = NOW()")
        return self._write(assignments, [], tenant_id, entity_id, expected_status)

    def _write(self, assignments, params: list, tenant_id: int, entity_id: int,
               expected_status: Optional[Sequence[str]]):
        query = sql.SQL("UPDATE {} SET {} WHERE id = %s AND school_id = %s").format(
            sql.Identifier(self.table), assignments
        ) + self._live()
        params = params + [entity_id, tenant_id]
        if expected_status is not None:
            query += sql.SQL(" AND status = ANY(%s)")
            params.append(list(expected_status))
        query += sql.SQL(" RETURNING *")
        return self._row_to_entity(self._fetch_one(query, params))
