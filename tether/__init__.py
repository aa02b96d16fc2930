"""
Tether

A personal store of places, people, notes, photos, files, todos and
custom objects, all linked to one another in an undirected graph.

Quick Start:
    from tether import ObjectService, RawFile

    svc = ObjectService()  # uses ~/.tether/
    home = svc.create_generic("places", {"title": "Home", "lat": 45.0, "lng": 9.0})
    svc.create_images([RawFile.from_path("IMG_0001.HEIC")])
    details = svc.fetch_with_related("places", home.id)

CLI Usage:
    tether create notes -f title="Groceries" --link places:<id>
    tether ingest-images ~/Pictures/trip/
    tether get places <id>

Default Store:
    ~/.tether/ (created automatically).
    Override with TETHER_STORE_PATH or an explicit path argument.

Photos are normalized to JPEG on import. Geotagged photos attach to the
nearest place within 50 m, or to a new place at their coordinates.
"""

from .api import EntityDetails, IngestResult, ObjectService, RawFile
from .errors import (
    InvalidFieldError,
    NotFoundError,
    ProcessingError,
    StorageIOError,
    TetherError,
    ValidationError,
)
from .types import Entity, EntityKind, EntityRef, KeyValue

__version__ = "0.1.0"
__all__ = [
    "ObjectService",
    "RawFile",
    "IngestResult",
    "EntityDetails",
    "Entity",
    "EntityKind",
    "EntityRef",
    "KeyValue",
    "TetherError",
    "ValidationError",
    "InvalidFieldError",
    "NotFoundError",
    "ProcessingError",
    "StorageIOError",
]
