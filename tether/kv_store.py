"""
Free-form key/value attributes attached to any entity.

Keys are not unique per entity; ordering is insertion order.
"""

from __future__ import annotations

import logging

from .database import Database
from .errors import NotFoundError
from .types import EntityKind, EntityRef, KeyValue

logger = logging.getLogger(__name__)


class KeyValueStore:
    """SQLite-backed key/value attribute lists, keyed by (kind, id)."""

    def __init__(self, db: Database):
        self._db = db

    def add(self, ref: EntityRef, key: str, value: str) -> int:
        """Append a pair to an entity. Returns the new pair's id."""
        cursor = self._db.execute(
            "INSERT INTO key_values (object_kind, object_id, key, value) VALUES (?, ?, ?, ?)",
            (ref.kind.value, ref.id, key, value),
        )
        logger.debug("Added key-value %d to %s", cursor.lastrowid, ref)
        return cursor.lastrowid

    def update(self, kv_id: int, key: str, value: str) -> None:
        """
        Replace key and value of an existing pair.

        Raises:
            NotFoundError: If the pair doesn't exist
        """
        cursor = self._db.execute(
            "UPDATE key_values SET key = ?, value = ? WHERE id = ?",
            (key, value, kv_id),
        )
        if cursor.rowcount == 0:
            raise NotFoundError(f"Key-value {kv_id} not found")

    def delete(self, kv_id: int) -> None:
        """
        Delete one pair.

        Raises:
            NotFoundError: If the pair doesn't exist
        """
        cursor = self._db.execute("DELETE FROM key_values WHERE id = ?", (kv_id,))
        if cursor.rowcount == 0:
            raise NotFoundError(f"Key-value {kv_id} not found")

    def get(self, kv_id: int) -> KeyValue:
        row = self._db.fetchone(
            "SELECT id, object_kind, object_id, key, value FROM key_values WHERE id = ?",
            (kv_id,),
        )
        if row is None:
            raise NotFoundError(f"Key-value {kv_id} not found")
        return self._row_to_kv(row)

    def list(self, ref: EntityRef) -> list[KeyValue]:
        """All pairs of an entity in insertion order."""
        rows = self._db.fetchall(
            """
            SELECT id, object_kind, object_id, key, value FROM key_values
            WHERE object_kind = ? AND object_id = ?
            ORDER BY id
            """,
            (ref.kind.value, ref.id),
        )
        return [self._row_to_kv(row) for row in rows]

    def delete_for(self, ref: EntityRef) -> int:
        """Delete every pair of an entity. Returns the number removed."""
        cursor = self._db.execute(
            "DELETE FROM key_values WHERE object_kind = ? AND object_id = ?",
            (ref.kind.value, ref.id),
        )
        return cursor.rowcount

    def distinct_keys(self) -> list[str]:
        """All keys in use, sorted. Feeds key autocompletion."""
        rows = self._db.fetchall("SELECT DISTINCT key FROM key_values ORDER BY key")
        return [row["key"] for row in rows]

    @staticmethod
    def _row_to_kv(row) -> KeyValue:
        return KeyValue(
            id=row["id"],
            kind=EntityKind(row["object_kind"]),
            object_id=row["object_id"],
            key=row["key"],
            value=row["value"],
        )
