"""
Shared pytest fixtures for tether tests.

Stores run against real SQLite databases under tmp_path. Images are built
in memory with Pillow, with EXIF and GPS written through PIL.Image.Exif.
"""

import io
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
from PIL import Image
from PIL.TiffImagePlugin import IFDRational

from tether.api import ObjectService
from tether.database import Database
from tether.entity_store import EntityStore
from tether.geo import GeoMatcher
from tether.kv_store import KeyValueStore
from tether.link_graph import LinkGraph
from tether.types import format_timestamp


class FakeClock:
    """Deterministic clock. Each call returns the current time; advance() moves it."""

    def __init__(self, start: datetime = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 1) -> None:
        self.now += timedelta(seconds=seconds)

    def timestamp(self) -> str:
        """created_at string for the current time, ticking one second per call."""
        value = format_timestamp(self.now)
        self.advance(1)
        return value


def _to_dms(degrees: float) -> tuple:
    degrees = abs(degrees)
    d = int(degrees)
    minutes = (degrees - d) * 60
    m = int(minutes)
    seconds = (minutes - m) * 60
    return (IFDRational(d, 1), IFDRational(m, 1), IFDRational(round(seconds * 10000), 10000))


def build_image(
    fmt: str = "JPEG",
    *,
    size: tuple[int, int] = (16, 12),
    mode: str = "RGB",
    color=(200, 120, 40),
    gps: Optional[tuple[float, float]] = None,
    original: Optional[str] = None,
    digitized: Optional[str] = None,
    datetime_tag: Optional[str] = None,
) -> bytes:
    """Encode a solid-color image with optional capture time and GPS tags."""
    img = Image.new(mode, size, color)
    exif = Image.Exif()
    if datetime_tag is not None:
        exif[0x0132] = datetime_tag
    exif_ifd = {}
    if original is not None:
        exif_ifd[0x9003] = original
    if digitized is not None:
        exif_ifd[0x9004] = digitized
    if exif_ifd:
        exif[0x8769] = exif_ifd
    if gps is not None:
        lat, lng = gps
        exif[0x8825] = {
            0x01: "N" if lat >= 0 else "S",
            0x02: _to_dms(lat),
            0x03: "E" if lng >= 0 else "W",
            0x04: _to_dms(lng),
        }

    out = io.BytesIO()
    if len(exif):
        img.save(out, fmt, exif=exif)
    else:
        img.save(out, fmt)
    return out.getvalue()


@pytest.fixture
def make_image():
    """The in-memory image builder."""
    return build_image


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db(tmp_path):
    with Database(tmp_path / "tether.db") as database:
        yield database


@pytest.fixture
def entities(db, clock):
    return EntityStore(db, clock=clock.timestamp)


@pytest.fixture
def kv(db):
    return KeyValueStore(db)


@pytest.fixture
def graph(db, entities):
    return LinkGraph(db, entities)


@pytest.fixture
def geo(db, entities):
    return GeoMatcher(db, entities)


@pytest.fixture
def store_path(tmp_path):
    return tmp_path / "store"


@pytest.fixture
def service(store_path, clock):
    with ObjectService(store_path, clock=clock) as svc:
        yield svc
