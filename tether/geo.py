"""
Nearest-place matching for geotagged photos.

A photo's GPS fix attaches to the closest existing place when it lies
within the tolerance radius; otherwise a new place is created at the
exact coordinates.
"""

import logging
import math
from typing import Optional

from .config import DEFAULT_TOLERANCE_KM
from .database import Database
from .entity_store import EntityStore
from .types import Entity, EntityKind, EntityRef

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two points, in kilometres."""
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    a = min(1.0, a)
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


class GeoMatcher:
    """
    Match-or-create against the places table.

    The read of existing places and the insert of a new one happen in one
    database transaction, so two concurrent photos from the same spot
    cannot both decide to create a place.
    """

    def __init__(
        self,
        db: Database,
        entities: EntityStore,
        *,
        tolerance_km: float = DEFAULT_TOLERANCE_KM,
    ):
        self._db = db
        self._entities = entities
        self.tolerance_km = tolerance_km

    def nearest(self, lat: float, lng: float) -> Optional[tuple[Entity, float]]:
        """
        Closest existing place and its distance in km, or None if there are no places.

        Ties go to the first place in enumeration order.
        """
        best: Optional[tuple[Entity, float]] = None
        for place in self._entities.places():
            distance = haversine_km(lat, lng, place.fields["lat"], place.fields["lng"])
            if best is None or distance < best[1]:
                best = (place, distance)
        return best

    def match_or_create(
        self, lat: float, lng: float, fallback_title: str
    ) -> tuple[EntityRef, bool]:
        """
        Find the place a coordinate belongs to, creating one if needed.

        Args:
            lat: Candidate latitude
            lng: Candidate longitude
            fallback_title: Title for a newly created place

        Returns:
            (place ref, created) where created is True for a new place
        """
        with self._db.transaction():
            match = self.nearest(lat, lng)
            if match is not None and match[1] < self.tolerance_km:
                place, distance = match
                logger.info(
                    "GPS (%.6f, %.6f) matched place %s at %.1f m",
                    lat, lng, place.id, distance * 1000,
                )
                return place.ref, False

            place_id = self._entities.create(
                EntityKind.PLACE, {"title": fallback_title, "lat": lat, "lng": lng}
            )
            logger.info("GPS (%.6f, %.6f) created place %s", lat, lng, place_id)
            return EntityRef(EntityKind.PLACE, place_id), True
