"""
EXIF metadata forensics for resolution photos.

Extracts GPS position, capture timestamp, and camera details from raw image
bytes. Missing or malformed tags are never an error: every field of the
returned record is optional, and a buffer that cannot be parsed at all yields
an empty record.
"""
import re
import io
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Sequence, Union

from PIL import Image
from PIL.ExifTags import TAGS, GPSTAGS

from modules.geo_distance import is_valid_coordinates

logger = logging.getLogger(__name__)

EXIF_IFD_POINTER = 0x8769
GPS_IFD_POINTER = 0x8825

EXIF_DATETIME_FORMAT = "%Y:%m:%d %H:%M:%S"

_DMS_SYMBOL_PATTERN = re.compile(r"(\d+(?:\.\d+)?)\s*°\s*(\d+(?:\.\d+)?)\s*'\s*(\d+(?:\.\d+)?)\s*\"")
_UTC_OFFSET_PATTERN = re.compile(r"^(?:Z|([+-])(\d{2}):?(\d{2}))$")


@dataclass
class GpsFix:
    latitude: float
    longitude: float
    altitude: Optional[float] = None


@dataclass
class CameraInfo:
    make: Optional[str] = None
    model: Optional[str] = None
    software: Optional[str] = None

    @property
    def label(self) -> Optional[str]:
        text = f"{self.make or ''} {self.model or ''}".strip()
        return text or None


@dataclass
class ExifMetadata:
    gps: Optional[GpsFix] = None
    timestamp: Optional[str] = None
    # UTC offset of the camera clock, e.g. "+05:30" (OffsetTimeOriginal)
    timestamp_offset: Optional[str] = None
    camera: Optional[CameraInfo] = None

    @property
    def has_gps(self) -> bool:
        return self.gps is not None

    @property
    def has_timestamp(self) -> bool:
        return bool(self.timestamp)


# ============================================================================
# DMS -> DECIMAL DEGREES
# ============================================================================

def _normalize_ref(ref: Any, default: str) -> str:
    if isinstance(ref, bytes):
        ref = ref.decode("ascii", errors="ignore")
    if not ref:
        return default
    return str(ref).strip().strip("\x00")[:1].upper() or default


def _parse_dms_text(text: str) -> Optional[Sequence[float]]:
    """Parse either `40° 26' 46.302"` or `40, 26, 46.302`."""
    match = _DMS_SYMBOL_PATTERN.search(text)
    if match:
        return [float(part) for part in match.groups()]

    parts = [p.strip() for p in text.split(",")]
    if len(parts) != 3:
        return None
    try:
        return [float(p) for p in parts]
    except ValueError:
        return None


def dms_to_decimal(value: Union[str, Sequence[Any]], ref: Any = "N") -> Optional[float]:
    """
    Convert degrees/minutes/seconds to decimal degrees.

    `value` may be a textual DMS string (symbol-delimited or comma-separated)
    or a 3-sequence of numbers/rationals as stored in the GPS IFD.
    S and W references negate the result. Returns None if unparseable.
    """
    try:
        if isinstance(value, str):
            parts = _parse_dms_text(value)
            if parts is None:
                return None
        else:
            if len(value) != 3:
                return None
            parts = [float(p) for p in value]

        degrees, minutes, seconds = parts
        decimal = degrees + (minutes / 60.0) + (seconds / 3600.0)
        if decimal != decimal:  # NaN from a zero-denominator rational
            return None

        if _normalize_ref(ref, "N") in ("S", "W"):
            decimal = -decimal
        return decimal

    except (TypeError, ValueError, ZeroDivisionError) as e:
        logger.debug(f"[EXIF] Could not convert DMS value {value!r}: {e}")
        return None


# ============================================================================
# EXTRACTION
# ============================================================================

def _clean_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="ignore")
    text = str(value).strip().strip("\x00").strip()
    return text or None


def _extract_gps(gps_ifd: Dict[int, Any]) -> Optional[GpsFix]:
    gps_data = {GPSTAGS.get(tag_id, tag_id): value for tag_id, value in gps_ifd.items()}

    if "GPSLatitude" not in gps_data or "GPSLongitude" not in gps_data:
        return None

    lat = dms_to_decimal(gps_data["GPSLatitude"], _normalize_ref(gps_data.get("GPSLatitudeRef"), "N"))
    lng = dms_to_decimal(gps_data["GPSLongitude"], _normalize_ref(gps_data.get("GPSLongitudeRef"), "E"))

    if not is_valid_coordinates(lat, lng):
        logger.warning(f"[EXIF] Discarding unusable GPS tags: lat={lat}, lng={lng}")
        return None

    altitude = None
    if "GPSAltitude" in gps_data:
        try:
            altitude = float(gps_data["GPSAltitude"])
            if gps_data.get("GPSAltitudeRef") in (1, b"\x01"):
                altitude = -altitude
        except (TypeError, ValueError, ZeroDivisionError):
            altitude = None

    return GpsFix(latitude=lat, longitude=lng, altitude=altitude)


def extract_exif_metadata(image_bytes: bytes) -> ExifMetadata:
    """
    Extract GPS, timestamp, and camera info from raw image bytes.
    Never raises: failures yield an empty ExifMetadata.
    """
    metadata = ExifMetadata()
    if not image_bytes:
        return metadata

    try:
        with Image.open(io.BytesIO(image_bytes)) as image:
            exif = image.getexif()
            if not exif:
                logger.info("[EXIF] No EXIF data found in image")
                return metadata

            base = {TAGS.get(tag_id, tag_id): value for tag_id, value in exif.items()}
            exif_ifd = {TAGS.get(tag_id, tag_id): value for tag_id, value in exif.get_ifd(EXIF_IFD_POINTER).items()}

            try:
                metadata.gps = _extract_gps(exif.get_ifd(GPS_IFD_POINTER))
            except Exception as e:
                logger.warning(f"[EXIF] Malformed GPS block ignored: {e}")
                metadata.gps = None

        if metadata.gps:
            logger.info(f"[EXIF] GPS found: {metadata.gps.latitude:.6f}, {metadata.gps.longitude:.6f}")
        else:
            logger.info("[EXIF] No GPS data in EXIF")

        original = _clean_text(exif_ifd.get("DateTimeOriginal"))
        if original:
            metadata.timestamp = original
            metadata.timestamp_offset = _clean_text(exif_ifd.get("OffsetTimeOriginal"))
        else:
            metadata.timestamp = _clean_text(base.get("DateTime"))
            metadata.timestamp_offset = _clean_text(exif_ifd.get("OffsetTime"))

        make = _clean_text(base.get("Make"))
        model = _clean_text(base.get("Model"))
        if make or model:
            metadata.camera = CameraInfo(make=make, model=model, software=_clean_text(base.get("Software")))

        return metadata

    except Exception as e:
        logger.warning(f"[EXIF] Error extracting EXIF metadata: {e}")
        return ExifMetadata()


# ============================================================================
# RECENCY
# ============================================================================

def parse_utc_offset(offset: Optional[str]) -> Optional[timezone]:
    """Parse an EXIF offset tag (`+05:30`, `-04:00`, `Z`). None if absent or malformed."""
    if not offset:
        return None
    match = _UTC_OFFSET_PATTERN.match(offset.strip())
    if not match:
        logger.debug(f"[EXIF] Unparseable UTC offset: {offset!r}")
        return None
    if match.group(0) == "Z":
        return timezone.utc
    sign, hours, minutes = match.groups()
    delta = timedelta(hours=int(hours), minutes=int(minutes))
    if delta >= timedelta(hours=24):
        return None
    return timezone(-delta if sign == "-" else delta)


def parse_exif_timestamp(timestamp: Optional[str], offset: Optional[str] = None) -> Optional[datetime]:
    """
    Parse an EXIF `YYYY:MM:DD HH:MM:SS` timestamp. The camera-local time is
    shifted by `offset` when one is recorded, otherwise it is taken as UTC.
    None if unparseable.
    """
    if not timestamp:
        return None
    try:
        parsed = datetime.strptime(timestamp.strip()[:19], EXIF_DATETIME_FORMAT)
    except ValueError:
        logger.debug(f"[EXIF] Unparseable timestamp: {timestamp!r}")
        return None
    return parsed.replace(tzinfo=parse_utc_offset(offset) or timezone.utc)


def hours_since_capture(
    timestamp: Optional[str],
    now: Optional[datetime] = None,
    offset: Optional[str] = None,
) -> Optional[float]:
    captured = parse_exif_timestamp(timestamp, offset)
    if captured is None:
        return None
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return (now - captured).total_seconds() / 3600.0
