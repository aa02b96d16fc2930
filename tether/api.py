"""
Core API for tether.

ObjectService is the single entry point a request layer talks to. It owns
the store directory, the database handle and every component built on it,
and composes them into the operations that span more than one store:
creating entities with their attributes and links, batch photo/file
ingest with geo matching, cascade delete, and related-item lookup.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from .config import StoreConfig, get_default_store_path, load_or_create_config
from .database import Database
from .entity_store import DEFAULT_LIST_LIMIT, DEFAULT_SEARCH_LIMIT, EntityStore
from .errors import NotFoundError, ProcessingError, StorageIOError, ValidationError
from .file_storage import FileStorage
from .geo import GeoMatcher
from .ingest import GpsCoordinates, ImageIngestPipeline, prepare_file
from .kv_store import KeyValueStore
from .link_graph import LinkGraph
from .logging_config import configure_ops_log
from .types import Entity, EntityKind, EntityRef, KeyValue, format_timestamp

logger = logging.getLogger(__name__)


def _as_kind(kind: EntityKind | str) -> EntityKind:
    if isinstance(kind, EntityKind):
        return kind
    try:
        return EntityKind.parse(kind)
    except ValueError as e:
        raise ValidationError(str(e)) from e


def _is_blank(value: Any) -> bool:
    return value is None or not str(value).strip()


@dataclass
class RawFile:
    """An upload: original filename plus its bytes."""
    filename: str
    data: bytes

    @classmethod
    def from_path(cls, path: str | Path) -> "RawFile":
        path = Path(path)
        return cls(filename=path.name, data=path.read_bytes())


@dataclass
class IngestResult:
    """
    Outcome of a batch ingest.

    Attributes:
        created: New image or file entities, in input order
        places: Places created by geo matching during this batch
        failed: Original filenames that were skipped
    """
    created: list[Entity] = field(default_factory=list)
    places: list[Entity] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def entities(self) -> list[Entity]:
        """Every entity the batch created."""
        return [*self.created, *self.places]


@dataclass
class EntityDetails:
    """An entity with its attributes and related-item summaries."""
    entity: Entity
    key_values: list[KeyValue]
    related: list[dict[str, Any]]

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.entity.to_dict(),
            "key_values": [kv.to_dict() for kv in self.key_values],
            "related": self.related,
        }


class ObjectService:
    """
    Entity graph store with photo ingest.

    Example:
        with ObjectService("~/notes-store") as svc:
            place = svc.create_generic("places", {"title": "Home", "lat": 45.0, "lng": 9.0})
            svc.create_images([RawFile.from_path("IMG_0001.HEIC")])
            details = svc.fetch_with_related("places", place.id)
    """

    def __init__(
        self,
        store_path: Optional[str | Path] = None,
        *,
        config: Optional[StoreConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        """
        Open or initialize a store.

        Args:
            store_path: Store directory. Uses TETHER_STORE_PATH or ~/.tether if not given.
            config: Pre-loaded StoreConfig (skips filesystem config discovery)
            clock: Source of the current time for created_at, ingestion
                dates and file names (injectable for tests)
        """
        if config is not None:
            self._config = config
            self._store_path = Path(config.path)
        else:
            if store_path is not None:
                self._store_path = Path(store_path).expanduser().resolve()
            else:
                self._store_path = get_default_store_path()
            self._config = load_or_create_config(self._store_path)

        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._ops_log_handler = configure_ops_log(self._store_path)

        self._db = Database(self._config.database_path)
        self.entities = EntityStore(self._db, clock=lambda: format_timestamp(self._clock()))
        self.kv = KeyValueStore(self._db)
        self.graph = LinkGraph(
            self._db, self.entities, default_depth=self._config.expand_depth
        )
        self.geo = GeoMatcher(
            self._db, self.entities, tolerance_km=self._config.geo_tolerance_km
        )
        self.pipeline = ImageIngestPipeline(
            jpeg_quality=self._config.jpeg_quality, clock=self._clock
        )
        self.files = FileStorage(self._store_path)

    @property
    def config(self) -> StoreConfig:
        """Public access to store configuration."""
        return self._config

    @property
    def store_path(self) -> Path:
        return self._store_path

    # -------------------------------------------------------------------------
    # Create
    # -------------------------------------------------------------------------

    def create_generic(
        self,
        kind: EntityKind | str,
        fields: dict[str, Any],
        key_values: Optional[Iterable[tuple[str, str]]] = None,
        link_tokens: Optional[Iterable[str]] = None,
    ) -> Entity:
        """
        Create an entity with optional attributes and links.

        Key-values with an empty key or value are skipped. Link tokens
        ('<table>:<id>') that are malformed, point at the new entity itself,
        or name an entity that doesn't exist are dropped.

        Raises:
            ValidationError: If fields are invalid, or the kind owns a
                managed file (use create_images/create_files)
        """
        kind = _as_kind(kind)
        if kind.spec.has_file:
            raise ValidationError(
                f"{kind.value} are created by ingest; use create_images or create_files"
            )

        with self._db.transaction():
            entity_id = self.entities.create(kind, fields)
            ref = EntityRef(kind, entity_id)
            self._attach(ref, key_values, link_tokens)

        logger.info("Created %s", ref)
        return self.entities.get(kind, entity_id)

    def _attach(
        self,
        ref: EntityRef,
        key_values: Optional[Iterable[tuple[str, str]]],
        link_tokens: Optional[Iterable[str]],
    ) -> None:
        """Best-effort attributes and links for a freshly created entity."""
        for key, value in key_values or ():
            if _is_blank(key) or _is_blank(value):
                logger.debug("Skipping empty key-value on %s", ref)
                continue
            self.kv.add(ref, str(key).strip(), str(value))

        for token in link_tokens or ():
            target = EntityRef.parse(token)
            if target is None or target == ref:
                logger.debug("Dropping link token %r on %s", token, ref)
                continue
            if not self.entities.exists(target.kind, target.id):
                logger.debug("Dropping link to missing %s", target)
                continue
            self.graph.add_edge(ref, target)

    def create_images(
        self,
        files: Iterable[RawFile],
        link_tokens: Optional[Iterable[str]] = None,
    ) -> IngestResult:
        """
        Ingest a batch of photos.

        Each photo is normalized to JPEG, stored under images/, and recorded
        as an Image entity. Photos with GPS are linked to the matching Place,
        which is created if none lies within the tolerance radius.

        A photo that fails to decode or store is logged and skipped; the
        rest of the batch continues.

        Args:
            files: Uploads to ingest
            link_tokens: Extra links applied to every created image
        """
        link_tokens = list(link_tokens or ())
        result = IngestResult()
        for raw in files:
            try:
                ingested = self.pipeline.ingest(raw.data, raw.filename)
                image, place = self._store_upload(
                    EntityKind.IMAGE,
                    ingested.filename,
                    ingested.data,
                    ingested.title,
                    link_tokens,
                    gps=ingested.gps,
                )
            except (ProcessingError, StorageIOError) as e:
                logger.warning("Skipping %s: %s", raw.filename, e)
                result.failed.append(raw.filename)
                continue

            logger.info("Ingested %s as %s", raw.filename, image.ref)
            result.created.append(image)
            if place is not None:
                result.places.append(place)
        return result

    def create_files(
        self,
        files: Iterable[RawFile],
        link_tokens: Optional[Iterable[str]] = None,
    ) -> IngestResult:
        """
        Store a batch of non-image files untouched under files/.

        A file that cannot be written is logged and skipped.
        """
        link_tokens = list(link_tokens or ())
        result = IngestResult()
        for raw in files:
            prepared = prepare_file(raw.data, raw.filename, self._clock().date())
            try:
                entity, _ = self._store_upload(
                    EntityKind.FILE, prepared.filename, prepared.data, prepared.title, link_tokens
                )
            except StorageIOError as e:
                logger.warning("Skipping %s: %s", raw.filename, e)
                result.failed.append(raw.filename)
                continue

            logger.info("Stored %s as %s", raw.filename, entity.ref)
            result.created.append(entity)
        return result

    def _store_upload(
        self,
        kind: EntityKind,
        filename: str,
        data: bytes,
        title: str,
        link_tokens: list[str],
        gps: Optional[GpsCoordinates] = None,
    ) -> tuple[Entity, Optional[Entity]]:
        """
        Write one managed file and record its entity.

        The file lands before the row; if recording fails the file is
        removed again so no orphan is left behind.

        Returns:
            (entity, place) where place is a newly created Place or None
        """
        storage_path = self.files.write(kind.spec.file_dir, filename, data)
        new_place: Optional[EntityRef] = None
        try:
            with self._db.transaction():
                entity_id = self.entities.create(
                    kind, {"title": title, "storage_path": storage_path}
                )
                ref = EntityRef(kind, entity_id)
                self._attach(ref, None, link_tokens)
                if gps is not None:
                    place_ref, created = self.geo.match_or_create(gps.lat, gps.lng, title)
                    self.graph.add_edge(ref, place_ref)
                    if created:
                        new_place = place_ref
        except Exception:
            try:
                self.files.remove(storage_path)
            except StorageIOError as cleanup_error:
                logger.error("Orphaned %s after failed insert: %s", storage_path, cleanup_error)
            raise

        entity = self.entities.get(kind, entity_id)
        place = self.entities.get(new_place.kind, new_place.id) if new_place else None
        return entity, place

    # -------------------------------------------------------------------------
    # Read
    # -------------------------------------------------------------------------

    def get(self, kind: EntityKind | str, id: str) -> Entity:
        """
        Raises:
            NotFoundError: If the entity doesn't exist
        """
        return self.entities.get(_as_kind(kind), id)

    def list(
        self,
        kind: EntityKind | str,
        limit: int = DEFAULT_LIST_LIMIT,
        offset: int = 0,
        types: Optional[Iterable[str]] = None,
    ) -> list[Entity]:
        """List one kind. `types` filters custom objects by object_type."""
        filters = {"types": list(types)} if types else None
        return self.entities.list(_as_kind(kind), limit=limit, offset=offset, filters=filters)

    def recent(self, limit: int = DEFAULT_LIST_LIMIT, offset: int = 0) -> list[Entity]:
        return self.entities.recent(limit=limit, offset=offset)

    def search(self, term: str, limit: int = DEFAULT_SEARCH_LIMIT) -> list[Entity]:
        return self.entities.search(term, limit=limit)

    def fetch_with_related(
        self, kind: EntityKind | str, id: str, depth: Optional[int] = None
    ) -> EntityDetails:
        """
        Get an entity with its key-values and related items.

        Related items are every entity within `depth` hops (default from
        config), summarized per kind. Kinds without a summary are omitted.

        Raises:
            NotFoundError: If the entity doesn't exist
        """
        entity = self.entities.get(_as_kind(kind), id)
        related_refs = self.graph.expand(entity.ref, depth)
        return EntityDetails(
            entity=entity,
            key_values=self.kv.list(entity.ref),
            related=self._summaries(related_refs),
        )

    def _summaries(self, refs: Iterable[EntityRef]) -> list[dict[str, Any]]:
        by_kind: dict[EntityKind, list[str]] = {}
        for ref in refs:
            by_kind.setdefault(ref.kind, []).append(ref.id)

        summaries = []
        for kind, ids in by_kind.items():
            for entity in self.entities.get_many(kind, ids).values():
                summary = entity.summary()
                if summary is not None:
                    summaries.append(summary)
        summaries.sort(key=lambda s: (s["kind"], s["title"].lower(), s["id"]))
        return summaries

    def bootstrap(self) -> dict[str, Any]:
        """Startup payload: every place plus whether the store holds anything at all."""
        return {
            "places": self.entities.places(),
            "has_objects": self.entities.count_all() > 0,
        }

    def custom_object_types(self) -> list[str]:
        return self.entities.custom_object_types()

    def kv_keys(self) -> list[str]:
        return self.kv.distinct_keys()

    # -------------------------------------------------------------------------
    # Update
    # -------------------------------------------------------------------------

    def update_field(self, kind: EntityKind | str, id: str, field: str, value: Any) -> Any:
        """
        Patch one whitelisted field.

        Raises:
            InvalidFieldError: If the field is not patchable for this kind
            ValidationError: If the value is invalid
            NotFoundError: If the entity doesn't exist
        """
        kind = _as_kind(kind)
        stored = self.entities.update_field(kind, id, field, value)
        logger.info("Updated %s:%s %s", kind.value, id, field)
        return stored

    def add_kv(self, kind: EntityKind | str, id: str, key: str, value: str) -> KeyValue:
        """
        Attach a key-value pair to an entity.

        Raises:
            ValidationError: If the key is empty
            NotFoundError: If the entity doesn't exist
        """
        kind = _as_kind(kind)
        if _is_blank(key):
            raise ValidationError("Key cannot be empty")
        if not self.entities.exists(kind, id):
            raise NotFoundError(f"{kind.value}:{id} not found")
        kv_id = self.kv.add(EntityRef(kind, id), key.strip(), value)
        return self.kv.get(kv_id)

    def update_kv(self, kv_id: int, key: str, value: str) -> KeyValue:
        """
        Raises:
            ValidationError: If the key is empty
            NotFoundError: If the pair doesn't exist
        """
        if _is_blank(key):
            raise ValidationError("Key cannot be empty")
        self.kv.update(kv_id, key.strip(), value)
        return self.kv.get(kv_id)

    def delete_kv(self, kv_id: int) -> None:
        """
        Raises:
            NotFoundError: If the pair doesn't exist
        """
        self.kv.delete(kv_id)

    def link(self, a: str | EntityRef, b: str | EntityRef) -> bool:
        """
        Link two entities given as refs or '<table>:<id>' tokens.

        Returns:
            True if a new edge was stored (False for duplicates and self-links)

        Raises:
            ValidationError: If a token is malformed
            NotFoundError: If either entity doesn't exist
        """
        a, b = self._parse_ref(a), self._parse_ref(b)
        for ref in (a, b):
            if not self.entities.exists(ref.kind, ref.id):
                raise NotFoundError(f"{ref} not found")
        return self.graph.add_edge(a, b)

    def unlink(self, a: str | EntityRef, b: str | EntityRef) -> bool:
        """
        Remove the edge between two entities, if any.

        Raises:
            ValidationError: If a token is malformed
        """
        return self.graph.remove_edge(self._parse_ref(a), self._parse_ref(b))

    @staticmethod
    def _parse_ref(value: str | EntityRef) -> EntityRef:
        if isinstance(value, EntityRef):
            return value
        ref = EntityRef.parse(value)
        if ref is None:
            raise ValidationError(f"Invalid link token: {value!r} (expected <table>:<id>)")
        return ref

    # -------------------------------------------------------------------------
    # Delete
    # -------------------------------------------------------------------------

    def delete_entity(self, kind: EntityKind | str, id: str) -> None:
        """
        Delete an entity and everything that references it.

        The backing file (images, files) goes first; a file that is already
        gone is fine. Key-values, links and the row are then removed in one
        transaction.

        Raises:
            NotFoundError: If the entity doesn't exist
            StorageIOError: If the backing file exists but cannot be removed
        """
        entity = self.entities.get(_as_kind(kind), id)
        ref = entity.ref
        if ref.kind.spec.has_file:
            self.files.remove(entity.fields["storage_path"])

        with self._db.transaction():
            kv_count = self.kv.delete_for(ref)
            link_count = self.graph.remove_all(ref)
            self.entities.delete(ref.kind, ref.id)

        logger.info("Deleted %s (%d key-values, %d links)", ref, kv_count, link_count)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Close the database and detach the ops log."""
        if getattr(self, "_db", None) is not None:
            self._db.close()
            self._db = None

        # Remove ops log handler to avoid handler accumulation
        if getattr(self, "_ops_log_handler", None) is not None:
            logging.getLogger("tether").removeHandler(self._ops_log_handler)
            self._ops_log_handler.close()
            self._ops_log_handler = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
