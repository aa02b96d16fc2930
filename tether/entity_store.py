"""
Typed CRUD over the fixed set of entity kinds.

One table per kind. Column lists come from the KindSpec descriptors,
so no SQL identifier is ever built from caller input.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Any, Callable, Iterable, Optional

from .database import Database
from .errors import InvalidFieldError, NotFoundError, ValidationError
from .types import (
    Entity,
    EntityKind,
    KIND_SPECS,
    KindSpec,
    generate_id,
    slugify_object_type,
    todo_status_code,
    todo_status_name,
    utc_now,
)

logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 20
DEFAULT_SEARCH_LIMIT = 25
MIN_SEARCH_TERM = 3


def _coerce_float(spec: KindSpec, name: str, value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{spec.table}.{name} must be a number: {value!r}")


def _coerce_int(spec: KindSpec, name: str, value: Any) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{spec.table}.{name} must be an integer: {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{spec.table}.{name} must be an integer: {value!r}")


def _normalize_column(spec: KindSpec, name: str, value: Any) -> Any:
    """Convert a caller-supplied value to its stored form."""
    if name in ("lat", "lng"):
        number = _coerce_float(spec, name, value)
        limit = 90.0 if name == "lat" else 180.0
        if not -limit <= number <= limit:
            raise ValidationError(f"{spec.table}.{name} out of range: {number}")
        return number
    if name == "mood":
        return _coerce_int(spec, name, value)
    if name == "status":
        try:
            return todo_status_code(value)
        except ValueError as e:
            raise ValidationError(str(e))
    if name == "object_type":
        slug = slugify_object_type(str(value))
        if not slug:
            raise ValidationError(f"{spec.table}.object_type cannot be empty")
        return slug
    if name == "storage_path":
        path = str(value)
        if path.startswith("/") or "\\" in path or ".." in path.split("/"):
            raise ValidationError(f"storage_path must be relative: {path!r}")
        return path
    return "" if value is None else str(value)


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


class EntityStore:
    """
    SQLite-backed store for entity rows.

    Validation happens here: required fields at create(), and the per-kind
    whitelist at update_field().
    """

    def __init__(self, db: Database, *, clock: Callable[[], str] = utc_now):
        """
        Args:
            db: Shared database handle
            clock: Source of created_at timestamps (injectable for tests)
        """
        self._db = db
        self._clock = clock

    def _row_to_entity(self, kind: EntityKind, row: sqlite3.Row) -> Entity:
        fields: dict[str, Any] = {}
        for name in kind.spec.columns:
            value = row[name]
            if name == "status":
                value = todo_status_name(value)
            fields[name] = value
        return Entity(
            kind=kind,
            id=row["id"],
            title=row["title"],
            created_at=row["created_at"],
            fields=fields,
        )

    def _select_columns(self, kind: EntityKind) -> str:
        return ", ".join(("id", "title", "created_at") + kind.spec.columns)

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def create(self, kind: EntityKind, fields: dict[str, Any]) -> str:
        """
        Insert a new entity row.

        Args:
            kind: Entity kind
            fields: title plus kind-specific columns

        Returns:
            The generated entity id

        Raises:
            ValidationError: If title or a required field is missing,
                a value is invalid, or an unknown field is supplied
        """
        spec = kind.spec
        unknown = set(fields) - {"title", *spec.columns}
        if unknown:
            raise ValidationError(f"Unknown fields for {spec.table}: {sorted(unknown)}")

        title = fields.get("title")
        if _is_blank(title):
            raise ValidationError(f"{spec.table}.title is required")

        values: dict[str, Any] = {"title": str(title).strip()}
        for name in spec.columns:
            value = fields.get(name)
            if _is_blank(value):
                if name in spec.required:
                    raise ValidationError(f"{spec.table}.{name} is required")
                value = spec.defaults.get(name)
                if value is None:
                    continue
            values[name] = _normalize_column(spec, name, value)

        entity_id = generate_id()
        columns = ["id", *values, "created_at"]
        params = [entity_id, *values.values(), self._clock()]
        placeholders = ", ".join("?" * len(columns))
        self._db.execute(
            f"INSERT INTO {spec.table} ({', '.join(columns)}) VALUES ({placeholders})",
            params,
        )
        logger.debug("Created %s:%s", spec.table, entity_id)
        return entity_id

    def update_field(self, kind: EntityKind, id: str, field: str, value: Any) -> Any:
        """
        Patch a single whitelisted field.

        Returns:
            The stored value (todo status reported by name)

        Raises:
            InvalidFieldError: If the field is not patchable for this kind
            ValidationError: If the value is invalid
            NotFoundError: If the entity doesn't exist
        """
        spec = kind.spec
        if field not in spec.patchable:
            raise InvalidFieldError(spec.table, field)

        if field == "title":
            if _is_blank(value):
                raise ValidationError("Title field cannot be empty")
            stored: Any = str(value).strip()
        else:
            stored = _normalize_column(spec, field, value)

        cursor = self._db.execute(
            f"UPDATE {spec.table} SET {field} = ? WHERE id = ?",
            (stored, id),
        )
        if cursor.rowcount == 0:
            raise NotFoundError(f"{spec.table}:{id} not found")

        logger.debug("Patched %s:%s %s", spec.table, id, field)
        return todo_status_name(stored) if field == "status" else stored

    def delete(self, kind: EntityKind, id: str) -> None:
        """
        Delete an entity row. Cascades are the caller's job.

        Raises:
            NotFoundError: If the entity doesn't exist
        """
        cursor = self._db.execute(
            f"DELETE FROM {kind.spec.table} WHERE id = ?", (id,)
        )
        if cursor.rowcount == 0:
            raise NotFoundError(f"{kind.value}:{id} not found")

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def find(self, kind: EntityKind, id: str) -> Optional[Entity]:
        """Get an entity by id, or None if absent."""
        row = self._db.fetchone(
            f"SELECT {self._select_columns(kind)} FROM {kind.spec.table} WHERE id = ?",
            (id,),
        )
        return self._row_to_entity(kind, row) if row is not None else None

    def get(self, kind: EntityKind, id: str) -> Entity:
        """
        Get an entity by id.

        Raises:
            NotFoundError: If the entity doesn't exist
        """
        entity = self.find(kind, id)
        if entity is None:
            raise NotFoundError(f"{kind.value}:{id} not found")
        return entity

    def get_many(self, kind: EntityKind, ids: Iterable[str]) -> dict[str, Entity]:
        """
        Get multiple entities of one kind.

        Returns:
            Dict mapping id → Entity (missing IDs omitted)
        """
        ids = list(dict.fromkeys(ids))
        if not ids:
            return {}
        placeholders = ",".join("?" * len(ids))
        rows = self._db.fetchall(
            f"SELECT {self._select_columns(kind)} FROM {kind.spec.table} "
            f"WHERE id IN ({placeholders})",
            ids,
        )
        return {row["id"]: self._row_to_entity(kind, row) for row in rows}

    def exists(self, kind: EntityKind, id: str) -> bool:
        """Check if an entity exists."""
        row = self._db.fetchone(
            f"SELECT 1 FROM {kind.spec.table} WHERE id = ?", (id,)
        )
        return row is not None

    def list(
        self,
        kind: EntityKind,
        limit: int = DEFAULT_LIST_LIMIT,
        offset: int = 0,
        filters: Optional[dict[str, Any]] = None,
    ) -> list[Entity]:
        """
        List entities of one kind.

        Ordering is newest first, except todos: incomplete first (oldest
        first), then complete (newest first).

        Args:
            kind: Entity kind
            limit: Maximum number to return
            offset: Number to skip
            filters: Kind-specific filters. custom_objects accepts
                {"types": [...]} for object_type set-membership.
        """
        spec = kind.spec
        where = ""
        params: list[Any] = []

        types = (filters or {}).get("types")
        if kind is EntityKind.CUSTOM_OBJECT and types:
            slugs = [slugify_object_type(t) for t in types]
            where = f" WHERE object_type IN ({','.join('?' * len(slugs))})"
            params.extend(slugs)

        if kind is EntityKind.TODO:
            order = (
                "status ASC, "
                "CASE WHEN status = 0 THEN created_at END ASC, "
                "CASE WHEN status = 0 THEN rowid END ASC, "
                "CASE WHEN status = 1 THEN created_at END DESC, "
                "CASE WHEN status = 1 THEN rowid END DESC"
            )
        else:
            order = "created_at DESC, rowid DESC"

        rows = self._db.fetchall(
            f"SELECT {self._select_columns(kind)} FROM {spec.table}{where} "
            f"ORDER BY {order} LIMIT ? OFFSET ?",
            (*params, limit, offset),
        )
        return [self._row_to_entity(kind, row) for row in rows]

    def recent(self, limit: int = DEFAULT_LIST_LIMIT, offset: int = 0) -> list[Entity]:
        """
        Cross-kind listing.

        Incomplete todos are pinned to the front (oldest first) regardless
        of age; everything else follows newest first.
        """
        selects = []
        for kind in EntityKind:
            status = "status" if kind is EntityKind.TODO else "-1"
            selects.append(
                f"SELECT '{kind.value}' AS kind, id, created_at, rowid AS seq, "
                f"{status} AS status FROM {kind.spec.table}"
            )
        rows = self._db.fetchall(
            f"""
            SELECT kind, id FROM ({' UNION ALL '.join(selects)})
            ORDER BY
                CASE WHEN kind = 'todos' AND status = 0 THEN 0 ELSE 1 END ASC,
                CASE WHEN kind = 'todos' AND status = 0 THEN created_at END ASC,
                CASE WHEN kind = 'todos' AND status = 0 THEN seq END ASC,
                created_at DESC,
                seq DESC
            LIMIT ? OFFSET ?
            """,
            (limit, offset),
        )
        return self._resolve_rows(rows)

    def search(self, term: str, limit: int = DEFAULT_SEARCH_LIMIT) -> list[Entity]:
        """
        Case-insensitive substring match on title across all kinds.

        Terms shorter than three characters return nothing.
        """
        term = (term or "").strip()
        if len(term) < MIN_SEARCH_TERM:
            return []
        escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        pattern = f"%{escaped}%"
        selects = [
            f"SELECT '{kind.value}' AS kind, id, title FROM {kind.spec.table} "
            f"WHERE title LIKE ? ESCAPE '\\'"
            for kind in EntityKind
        ]
        rows = self._db.fetchall(
            f"SELECT kind, id FROM ({' UNION ALL '.join(selects)}) "
            f"ORDER BY title COLLATE NOCASE LIMIT ?",
            (*([pattern] * len(selects)), limit),
        )
        return self._resolve_rows(rows)

    def _resolve_rows(self, rows: list[sqlite3.Row]) -> list[Entity]:
        """Load full entities for (kind, id) rows, preserving row order."""
        by_kind: dict[EntityKind, list[str]] = {}
        for row in rows:
            by_kind.setdefault(EntityKind(row["kind"]), []).append(row["id"])
        loaded = {
            kind: self.get_many(kind, ids) for kind, ids in by_kind.items()
        }
        results = []
        for row in rows:
            entity = loaded[EntityKind(row["kind"])].get(row["id"])
            if entity is not None:
                results.append(entity)
        return results

    def places(self) -> list[Entity]:
        """All places, in insertion order."""
        rows = self._db.fetchall(
            f"SELECT {self._select_columns(EntityKind.PLACE)} FROM places ORDER BY rowid"
        )
        return [self._row_to_entity(EntityKind.PLACE, row) for row in rows]

    def custom_object_types(self) -> list[str]:
        """Distinct custom object types, sorted."""
        rows = self._db.fetchall(
            "SELECT DISTINCT object_type FROM custom_objects ORDER BY object_type"
        )
        return [row["object_type"] for row in rows]

    def count(self, kind: EntityKind) -> int:
        """Count entities of one kind."""
        return self._db.fetchone(f"SELECT COUNT(*) FROM {kind.spec.table}")[0]

    def count_all(self) -> int:
        """Count entities across all kinds."""
        return sum(self.count(kind) for kind in KIND_SPECS)
