"""
Data types for the entity graph.

Every record belongs to exactly one EntityKind. Kinds are a closed set;
table and column names used in SQL come only from the static KindSpec
descriptors below, never from caller input.
"""

import re
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


# nanoid-compatible alphabet: URL-safe, no padding
ID_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789_-"
ID_LENGTH = 21

TODO_INCOMPLETE = "incomplete"
TODO_COMPLETE = "complete"
_TODO_STATUS_CODES = {TODO_INCOMPLETE: 0, TODO_COMPLETE: 1}
_TODO_STATUS_NAMES = {v: k for k, v in _TODO_STATUS_CODES.items()}


TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


def format_timestamp(dt: datetime) -> str:
    """Render a datetime in canonical UTC form. Naive values are taken as UTC."""
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc)
    return dt.strftime(TIMESTAMP_FORMAT)


def utc_now() -> str:
    """Current UTC timestamp in canonical format: YYYY-MM-DD HH:MM:SS.

    Same shape as SQLite's CURRENT_TIMESTAMP, so string order is time order.
    """
    return format_timestamp(datetime.now(timezone.utc))


def generate_id(size: int = ID_LENGTH) -> str:
    """Random URL-safe identifier."""
    return "".join(secrets.choice(ID_ALPHABET) for _ in range(size))


def slugify_object_type(value: str) -> str:
    """Normalize a custom object type: lowercase, whitespace runs become '-'."""
    return re.sub(r"\s+", "-", value.strip().lower())


def todo_status_code(value: Any) -> int:
    """Map a todo status ('incomplete'/'complete' or 0/1) to its stored code.

    Raises:
        ValueError: If the value is not a recognised status
    """
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TODO_STATUS_CODES:
            return _TODO_STATUS_CODES[text]
        if text in ("0", "1"):
            return int(text)
    elif isinstance(value, int) and not isinstance(value, bool) and value in (0, 1):
        return value
    raise ValueError(f"Invalid todo status: {value!r}")


def todo_status_name(code: int) -> str:
    return _TODO_STATUS_NAMES.get(int(code), TODO_INCOMPLETE)


class EntityKind(str, Enum):
    """The fixed set of record kinds. Values double as table names and link-token prefixes."""

    PLACE = "places"
    PERSON = "people"
    NOTE = "notes"
    IMAGE = "images"
    FILE = "files"
    TODO = "todos"
    CUSTOM_OBJECT = "custom_objects"

    @classmethod
    def parse(cls, name: str) -> "EntityKind":
        """Resolve a kind from its table name or singular alias.

        Accepts "places", "place", "custom_objects", "custom-object", etc.

        Raises:
            ValueError: If the name matches no kind
        """
        key = name.strip().lower().replace("-", "_")
        if key in _KIND_ALIASES:
            return _KIND_ALIASES[key]
        raise ValueError(f"Unknown entity kind: {name!r}")

    @property
    def spec(self) -> "KindSpec":
        return KIND_SPECS[self]


_KIND_ALIASES = {
    **{k.value: k for k in EntityKind},
    "place": EntityKind.PLACE,
    "person": EntityKind.PERSON,
    "note": EntityKind.NOTE,
    "image": EntityKind.IMAGE,
    "file": EntityKind.FILE,
    "todo": EntityKind.TODO,
    "custom_object": EntityKind.CUSTOM_OBJECT,
}


@dataclass(frozen=True)
class KindSpec:
    """
    Static per-kind descriptor.

    Attributes:
        kind: The kind described
        columns: Kind-specific columns beyond id/title/created_at
        required: Columns that must be supplied at creation
        defaults: Values used for optional columns left out at creation
        patchable: Fields that update_field() may change
        summary_fields: Columns exposed in related-item summaries,
            or None when the kind has no summary resolver
        file_dir: Managed storage directory for file-bearing kinds
    """
    kind: EntityKind
    columns: tuple[str, ...] = ()
    required: tuple[str, ...] = ()
    defaults: dict[str, Any] = field(default_factory=dict)
    patchable: frozenset[str] = frozenset({"title"})
    summary_fields: Optional[tuple[str, ...]] = ()
    file_dir: Optional[str] = None

    @property
    def table(self) -> str:
        return self.kind.value

    @property
    def has_file(self) -> bool:
        return self.file_dir is not None


KIND_SPECS: dict[EntityKind, KindSpec] = {
    EntityKind.PLACE: KindSpec(
        EntityKind.PLACE,
        columns=("lat", "lng"),
        required=("lat", "lng"),
    ),
    EntityKind.PERSON: KindSpec(EntityKind.PERSON),
    EntityKind.NOTE: KindSpec(
        EntityKind.NOTE,
        columns=("content",),
        defaults={"content": ""},
        patchable=frozenset({"title", "content"}),
        summary_fields=("content",),
    ),
    EntityKind.IMAGE: KindSpec(
        EntityKind.IMAGE,
        columns=("storage_path",),
        required=("storage_path",),
        summary_fields=("storage_path",),
        file_dir="images",
    ),
    EntityKind.FILE: KindSpec(
        EntityKind.FILE,
        columns=("storage_path",),
        required=("storage_path",),
        summary_fields=("storage_path",),
        file_dir="files",
    ),
    EntityKind.TODO: KindSpec(
        EntityKind.TODO,
        columns=("status",),
        defaults={"status": TODO_INCOMPLETE},
        patchable=frozenset({"title", "status"}),
        summary_fields=("status",),
    ),
    EntityKind.CUSTOM_OBJECT: KindSpec(
        EntityKind.CUSTOM_OBJECT,
        columns=("object_type", "mood"),
        required=("object_type", "mood"),
        summary_fields=("object_type",),
    ),
}


@dataclass(frozen=True)
class EntityRef:
    """Address of an entity: (kind, id). The id alone is not unique across kinds."""
    kind: EntityKind
    id: str

    @property
    def token(self) -> str:
        """Link token form: '<table>:<id>'."""
        return f"{self.kind.value}:{self.id}"

    @property
    def sort_key(self) -> tuple[str, str]:
        """Total order over refs, used to canonicalize edge endpoints."""
        return (self.kind.value, self.id)

    @classmethod
    def parse(cls, token: str) -> Optional["EntityRef"]:
        """Parse a '<kind>:<id>' token. Returns None if malformed."""
        if not token or not isinstance(token, str) or ":" not in token:
            return None
        kind_name, id = token.split(":", 1)
        if not kind_name or not id:
            return None
        try:
            kind = EntityKind.parse(kind_name)
        except ValueError:
            return None
        return cls(kind, id)

    def __str__(self) -> str:
        return self.token


@dataclass
class Entity:
    """
    A stored record.

    `fields` holds the kind-specific columns; todo status is exposed as
    'incomplete'/'complete' rather than its stored code.
    """
    kind: EntityKind
    id: str
    title: str
    created_at: str
    fields: dict[str, Any] = field(default_factory=dict)

    @property
    def ref(self) -> EntityRef:
        return EntityRef(self.kind, self.id)

    def summary(self) -> Optional[dict[str, Any]]:
        """Display summary for related-item lists, or None if the kind has no resolver."""
        summary_fields = self.kind.spec.summary_fields
        if summary_fields is None:
            return None
        result: dict[str, Any] = {"kind": self.kind.value, "id": self.id, "title": self.title}
        for name in summary_fields:
            result[name] = self.fields.get(name)
        return result

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "id": self.id,
            "title": self.title,
            "created_at": self.created_at,
            **self.fields,
        }


@dataclass
class KeyValue:
    """A free-form attribute attached to an entity. Keys are not unique."""
    id: int
    kind: EntityKind
    object_id: str
    key: str
    value: str

    @property
    def ref(self) -> EntityRef:
        return EntityRef(self.kind, self.object_id)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "key": self.key, "value": self.value}
