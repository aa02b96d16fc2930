"""
Photo ingest pipeline.

Every still image is normalized to a baseline JPEG before it is stored:
- HEIC/HEIF goes through pillow-heif, which carries the EXIF block across
- everything else is decoded by Pillow and re-encoded at a fixed quality

Metadata is then read back from the normalized JPEG, so what is stored
and what was parsed are always the same bytes.

Capture date resolution, first match wins:
1. DateTimeOriginal
2. creation time (DateTimeDigitized, else IFD0 DateTime), as epoch seconds
   or "YYYY:MM:DD HH:MM:SS" text
3. ingestion time
"""

import io
import logging
import math
import re
from dataclasses import dataclass
from datetime import date, datetime, timezone
from pathlib import PurePath
from typing import Any, Callable, Mapping, Optional

from PIL import Image

from .config import DEFAULT_JPEG_QUALITY
from .errors import ProcessingError
from .types import generate_id

logger = logging.getLogger(__name__)

HEIF_EXTENSIONS = frozenset({".heic", ".heif", ".heics", ".heifs", ".hif"})
JPEG_EXTENSION = ".jpg"
SUFFIX_LENGTH = 6

EXIF_HEADER = b"Exif\x00\x00"

# "YYYY:MM:DD" date portion of an EXIF timestamp
_EXIF_DATE = re.compile(r"^(\d{4}):(\d{2}):(\d{2})")

# EXIF tag numbers
TAG_DATETIME = 0x0132
TAG_DATETIME_ORIGINAL = 0x9003
TAG_DATETIME_DIGITIZED = 0x9004
IFD_EXIF = 0x8769
IFD_GPS = 0x8825
GPS_LATITUDE_REF = 0x01
GPS_LATITUDE = 0x02
GPS_LONGITUDE_REF = 0x03
GPS_LONGITUDE = 0x04
IFD_INTEROP = 0xA005

# Largest EXIF block a JPEG APP1 segment can hold, "Exif\0\0" header included
MAX_EXIF_BYTES = 65533

# Tags that can push EXIF past the APP1 limit and carry nothing read back
_BULKY_TAGS = frozenset({
    0x927C,  # MakerNote
    0x9286,  # UserComment
    0x02BC,  # XMP packet
    0x83BB,  # IPTC
    0x8773,  # ICC profile
    0x0201,  # thumbnail offset
    0x0202,  # thumbnail length
    0x9C9B, 0x9C9C, 0x9C9D, 0x9C9E, 0x9C9F,  # Windows XP strings
})
_IFD_POINTERS = frozenset({IFD_EXIF, IFD_GPS, IFD_INTEROP})
_GPS_POSITION_TAGS = frozenset({GPS_LATITUDE_REF, GPS_LATITUDE, GPS_LONGITUDE_REF, GPS_LONGITUDE})


@dataclass
class GpsCoordinates:
    """Signed decimal degrees."""
    lat: float
    lng: float


@dataclass
class CaptureMetadata:
    """Raw tag values read from an image, before resolution."""
    original_time: Any = None
    creation_time: Any = None
    gps: Optional[GpsCoordinates] = None


@dataclass
class IngestedImage:
    """
    A normalized photo ready to be stored.

    Attributes:
        data: Baseline JPEG bytes with the source EXIF block
        filename: Synthesized name: {capture date}-{random suffix}.jpg
        title: Display title: original name with a .jpg extension
        capture_date: Resolved capture time
        gps: Coordinates if the photo is geotagged
    """
    data: bytes
    filename: str
    title: str
    capture_date: datetime
    gps: Optional[GpsCoordinates] = None


@dataclass
class IngestedFile:
    """A non-image upload, stored untouched."""
    data: bytes
    filename: str
    title: str


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


# -----------------------------------------------------------------------------
# Metadata parsing
# -----------------------------------------------------------------------------

def parse_exif_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse an EXIF time value.

    Accepts epoch seconds (int/float) or EXIF text "YYYY:MM:DD HH:MM:SS",
    whose colon-delimited date portion is rewritten to ISO before parsing.
    Returns None for missing or unparseable values.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, bytes):
        value = value.decode("ascii", errors="ignore")
    if not isinstance(value, str):
        return None

    text = value.strip().strip("\x00").strip()
    if not text:
        return None
    match = _EXIF_DATE.match(text)
    if match:
        text = f"{match[1]}-{match[2]}-{match[3]}{text[match.end():]}"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def resolve_capture_date(metadata: CaptureMetadata, now: datetime) -> datetime:
    """Apply the capture-date fallback chain: original, creation, then `now`."""
    for candidate in (metadata.original_time, metadata.creation_time):
        parsed = parse_exif_timestamp(candidate)
        if parsed is not None:
            return parsed
    return now


def _ref_text(ref: Any) -> str:
    if isinstance(ref, bytes):
        ref = ref.decode("ascii", errors="ignore")
    return str(ref or "").strip("\x00 ").upper()


def _dms_to_degrees(value: Any, ref: Any, negative_ref: str) -> Optional[float]:
    """Convert an EXIF (degrees, minutes, seconds) rational triple to signed degrees."""
    if value is None:
        return None
    try:
        if isinstance(value, (tuple, list)):
            if not 1 <= len(value) <= 3:
                return None
            degrees = sum(float(part) / 60 ** i for i, part in enumerate(value))
        else:
            degrees = float(value)
    except (TypeError, ValueError, ZeroDivisionError):
        return None
    if math.isnan(degrees) or math.isinf(degrees):
        return None
    if _ref_text(ref).startswith(negative_ref):
        degrees = -degrees
    return degrees


def extract_gps(gps_ifd: Mapping[int, Any]) -> Optional[GpsCoordinates]:
    """Read the GPS latitude/longitude pair. None unless both are present and valid."""
    if not gps_ifd:
        return None
    lat = _dms_to_degrees(gps_ifd.get(GPS_LATITUDE), gps_ifd.get(GPS_LATITUDE_REF), "S")
    lng = _dms_to_degrees(gps_ifd.get(GPS_LONGITUDE), gps_ifd.get(GPS_LONGITUDE_REF), "W")
    if lat is None or lng is None:
        return None
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0):
        logger.debug("Ignoring out-of-range GPS fix (%s, %s)", lat, lng)
        return None
    return GpsCoordinates(lat=lat, lng=lng)


def read_metadata(jpeg_bytes: bytes) -> CaptureMetadata:
    """
    Parse capture time and GPS tags from JPEG bytes.

    Raises:
        ProcessingError: If the bytes cannot be opened as an image
    """
    try:
        with Image.open(io.BytesIO(jpeg_bytes)) as img:
            exif = img.getexif()
            exif_ifd = exif.get_ifd(IFD_EXIF)
            gps_ifd = exif.get_ifd(IFD_GPS)
    except Exception as e:
        raise ProcessingError(f"Failed to read image metadata: {e}") from e

    original = exif_ifd.get(TAG_DATETIME_ORIGINAL, exif.get(TAG_DATETIME_ORIGINAL))
    creation = exif_ifd.get(TAG_DATETIME_DIGITIZED) or exif.get(TAG_DATETIME)
    return CaptureMetadata(
        original_time=original,
        creation_time=creation,
        gps=extract_gps(gps_ifd),
    )


# -----------------------------------------------------------------------------
# Naming
# -----------------------------------------------------------------------------

def random_suffix(size: int = SUFFIX_LENGTH) -> str:
    return generate_id(size)


def synthesize_filename(capture_date: datetime, extension: str = JPEG_EXTENSION) -> str:
    """Destination name: {YYYY-MM-DD}-{6-char suffix}{extension}."""
    return f"{capture_date.date().isoformat()}-{random_suffix()}{extension}"


def resolve_title(original_filename: str) -> str:
    """Display title: the original base name with its extension swapped to .jpg."""
    stem = PurePath(original_filename or "").stem or "image"
    return f"{stem}{JPEG_EXTENSION}"


def prepare_file(raw: bytes, original_filename: str, today: date) -> IngestedFile:
    """Name a non-image upload: {today}-{suffix}{original extension}, titled by its name."""
    name = PurePath(original_filename or "").name or "file"
    suffix = PurePath(name).suffix
    return IngestedFile(
        data=raw,
        filename=f"{today.isoformat()}-{random_suffix()}{suffix}",
        title=name,
    )


# -----------------------------------------------------------------------------
# Pipeline
# -----------------------------------------------------------------------------

def _with_exif_header(exif: Optional[bytes]) -> Optional[bytes]:
    """JPEG APP1 needs the 'Exif\\0\\0' prefix; some containers store the block without it."""
    if not exif:
        return None
    return exif if exif.startswith(EXIF_HEADER) else EXIF_HEADER + exif


def _rebuild_exif(
    source: Image.Exif,
    keep_main: Callable[[int], bool],
    keep_exif: Callable[[int], bool],
    keep_gps: Callable[[int], bool],
) -> bytes:
    target = Image.Exif()
    for tag, value in source.items():
        if tag not in _IFD_POINTERS and keep_main(tag):
            target[tag] = value
    exif_ifd = {
        tag: value for tag, value in source.get_ifd(IFD_EXIF).items()
        if tag not in _IFD_POINTERS and keep_exif(tag)
    }
    if exif_ifd:
        target[IFD_EXIF] = exif_ifd
    gps_ifd = {tag: value for tag, value in source.get_ifd(IFD_GPS).items() if keep_gps(tag)}
    if gps_ifd:
        target[IFD_GPS] = gps_ifd
    return _with_exif_header(target.tobytes())


def _without_bulky_tags(source: Image.Exif) -> bytes:
    def keep(tag: int) -> bool:
        return tag not in _BULKY_TAGS
    return _rebuild_exif(source, keep, keep, lambda tag: True)


def _capture_tags_only(source: Image.Exif) -> bytes:
    return _rebuild_exif(
        source,
        lambda tag: tag == TAG_DATETIME,
        lambda tag: tag in (TAG_DATETIME_ORIGINAL, TAG_DATETIME_DIGITIZED),
        lambda tag: tag in _GPS_POSITION_TAGS,
    )


def fit_exif(exif: Optional[bytes]) -> Optional[bytes]:
    """
    Shrink an EXIF block to fit in a JPEG APP1 segment.

    Blocks within the limit pass through untouched. Oversized ones are
    rebuilt without bulky tags (MakerNote, thumbnails, XMP and the like);
    if that is still too large, only the capture time and GPS position
    tags are kept. Returns None only when the block cannot be parsed.
    """
    if not exif or len(exif) <= MAX_EXIF_BYTES:
        return exif
    try:
        source = Image.Exif()
        source.load(exif)
    except Exception as e:
        logger.warning("Dropping unreadable EXIF block (%d bytes): %s", len(exif), e)
        return None

    for rebuild in (_without_bulky_tags, _capture_tags_only):
        try:
            smaller = rebuild(source)
        except Exception as e:
            logger.debug("EXIF rebuild %s failed: %s", rebuild.__name__, e)
            continue
        if len(smaller) <= MAX_EXIF_BYTES:
            logger.info("Shrank EXIF block from %d to %d bytes", len(exif), len(smaller))
            return smaller

    logger.warning("Dropping oversized EXIF block (%d bytes)", len(exif))
    return None


def _flatten(img: Image.Image) -> Image.Image:
    """Convert to a JPEG-compatible mode, compositing transparency onto white."""
    if img.mode in ("RGB", "L"):
        return img
    if img.mode in ("RGBA", "LA", "PA") or (img.mode == "P" and "transparency" in img.info):
        rgba = img.convert("RGBA")
        background = Image.new("RGB", rgba.size, (255, 255, 255))
        background.paste(rgba, mask=rgba.getchannel("A"))
        return background
    return img.convert("RGB")


class ImageIngestPipeline:
    """
    Normalize raw image bytes and resolve their capture metadata.

    One call handles one file; a failure raises ProcessingError and leaves
    nothing behind, so batch callers can skip the file and continue.
    """

    def __init__(
        self,
        *,
        jpeg_quality: int = DEFAULT_JPEG_QUALITY,
        clock: Callable[[], datetime] = _utc_now,
    ):
        """
        Args:
            jpeg_quality: Quality used when re-encoding to JPEG
            clock: Source of the ingestion time (injectable for tests)
        """
        self.jpeg_quality = jpeg_quality
        self._clock = clock

    def ingest(self, raw: bytes, original_filename: str) -> IngestedImage:
        """
        Normalize one image.

        Raises:
            ProcessingError: If decoding, transcoding, or metadata parsing fails
        """
        suffix = PurePath(original_filename or "").suffix.lower()
        if suffix in HEIF_EXTENSIONS:
            logger.debug("HEIF file detected: %s", original_filename)
            jpeg = self._transcode_heif(raw, original_filename)
        else:
            jpeg = self._transcode(raw, original_filename)

        metadata = read_metadata(jpeg)
        capture_date = resolve_capture_date(metadata, self._clock())
        if metadata.gps:
            logger.debug(
                "GPS for %s: (%.6f, %.6f)", original_filename, metadata.gps.lat, metadata.gps.lng
            )

        return IngestedImage(
            data=jpeg,
            filename=synthesize_filename(capture_date),
            title=resolve_title(original_filename),
            capture_date=capture_date,
            gps=metadata.gps,
        )

    def _transcode(self, raw: bytes, original_filename: str) -> bytes:
        """Decode any Pillow-readable format and re-encode as JPEG, keeping EXIF."""
        try:
            with Image.open(io.BytesIO(raw)) as img:
                img.load()
                exif = img.info.get("exif") or self._exif_from_tags(img)
                return self._encode_jpeg(img, exif)
        except ProcessingError:
            raise
        except Exception as e:
            raise ProcessingError(f"Failed to transcode {original_filename}: {e}") from e

    def _transcode_heif(self, raw: bytes, original_filename: str) -> bytes:
        """Decode HEIC/HEIF through pillow-heif and re-encode as JPEG, keeping EXIF."""
        try:
            import pillow_heif
        except ImportError:
            raise ProcessingError(
                f"HEIC support requires 'pillow-heif' library. "
                f"Install with: pip install pillow-heif\n"
                f"Cannot convert: {original_filename}"
            )

        try:
            heif_file = pillow_heif.open_heif(io.BytesIO(raw), convert_hdr_to_8bit=True)
            img = heif_file.to_pillow()
            return self._encode_jpeg(img, heif_file.info.get("exif"))
        except Exception as e:
            raise ProcessingError(f"Failed to convert HEIF {original_filename}: {e}") from e

    @staticmethod
    def _exif_from_tags(img: Image.Image) -> Optional[bytes]:
        """Serialize parsed EXIF for formats that don't keep the raw block in info."""
        try:
            exif = img.getexif()
            return exif.tobytes() if len(exif) else None
        except Exception as e:
            logger.debug("Could not carry EXIF across: %s", e)
            return None

    def _encode_jpeg(self, img: Image.Image, exif: Optional[bytes]) -> bytes:
        params: dict[str, Any] = {"quality": self.jpeg_quality}
        exif = fit_exif(_with_exif_header(exif))
        if exif:
            params["exif"] = exif
        icc_profile = img.info.get("icc_profile")
        if icc_profile:
            params["icc_profile"] = icc_profile

        out = io.BytesIO()
        _flatten(img).save(out, "JPEG", **params)
        return out.getvalue()
