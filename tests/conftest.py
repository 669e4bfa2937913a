"""
Shared fixtures: in-memory database, fake vision oracle, synthetic images.
"""
import io
import json
import os
import tempfile
from datetime import datetime, timedelta, timezone

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("UPLOAD_DIR", tempfile.mkdtemp(prefix="civic-uploads-"))
os.environ.setdefault("GEMINI_API_KEY", "")

import cv2
import numpy as np
import piexif
import pytest
from PIL import Image
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import init_db
from models.db_models import AuthorizedWorkerDB, IssueReportDB
from modules.ai_verification import VisionOracle

REPORT_LAT = 28.613900
REPORT_LNG = 77.209000
FIXED_NOW = datetime(2026, 10, 19, 12, 0, 0, tzinfo=timezone.utc)
WORKER_EMAIL = "field.worker@city.gov"


def noise_image_bytes(seed: int, size: int = 64) -> bytes:
    """Random grayscale noise encoded as PNG (lossless, so hashes are stable)."""
    rng = np.random.default_rng(seed)
    pixels = rng.integers(0, 256, (size, size), dtype=np.uint8)
    ok, buffer = cv2.imencode(".png", pixels)
    assert ok
    return buffer.tobytes()


def _to_rational(value: float, precision: int = 10000):
    return (int(round(value * precision)), precision)


def _dms(decimal: float):
    decimal = abs(decimal)
    degrees = int(decimal)
    minutes_full = (decimal - degrees) * 60
    minutes = int(minutes_full)
    seconds = (minutes_full - minutes) * 60
    return ((degrees, 1), (minutes, 1), _to_rational(seconds))


def jpeg_with_exif(
    seed: int = 1,
    lat: float = None,
    lng: float = None,
    timestamp: str = None,
    make: str = None,
    model: str = None,
    offset: str = None,
) -> bytes:
    """Noise JPEG carrying the requested EXIF tags (written with piexif)."""
    rng = np.random.default_rng(seed)
    pixels = rng.integers(0, 256, (64, 64, 3), dtype=np.uint8)
    exif = {"0th": {}, "Exif": {}, "GPS": {}, "1st": {}, "thumbnail": None}

    if make:
        exif["0th"][piexif.ImageIFD.Make] = make.encode()
    if model:
        exif["0th"][piexif.ImageIFD.Model] = model.encode()
    if timestamp:
        exif["Exif"][piexif.ExifIFD.DateTimeOriginal] = timestamp.encode()
    if offset:
        exif["Exif"][piexif.ExifIFD.OffsetTimeOriginal] = offset.encode()
    if lat is not None and lng is not None:
        exif["GPS"][piexif.GPSIFD.GPSLatitudeRef] = b"N" if lat >= 0 else b"S"
        exif["GPS"][piexif.GPSIFD.GPSLatitude] = _dms(lat)
        exif["GPS"][piexif.GPSIFD.GPSLongitudeRef] = b"E" if lng >= 0 else b"W"
        exif["GPS"][piexif.GPSIFD.GPSLongitude] = _dms(lng)

    buffer = io.BytesIO()
    Image.fromarray(pixels).save(buffer, format="JPEG", quality=95, exif=piexif.dump(exif))
    return buffer.getvalue()


def exif_time(dt: datetime) -> str:
    return dt.strftime("%Y:%m:%d %H:%M:%S")


def verdict_payload(**overrides):
    payload = {
        "same_location": True,
        "issue_resolved": True,
        "visual_similarity_score": 60,
        "resolution_confidence": 90,
        "suspicious": False,
        "suspicion_reason": None,
        "analysis_summary": "Pothole has been filled and the road surface is even.",
    }
    payload.update(overrides)
    return payload


def strict_verdict_payload(**overrides):
    payload = verdict_payload()
    payload.pop("visual_similarity_score")
    payload.update(fake_detected=False, visual_consistency_score=60)
    payload.update(overrides)
    return payload


def report_analysis_payload(**overrides):
    payload = {
        "issue_type": "pothole",
        "confidence_score": 88,
        "is_valid_issue": True,
        "severity_level": "High",
        "generated_description": "Knee-deep pothole across the left lane, edges crumbling into loose gravel.",
        "recommended_authority": "Public Works",
        "priority_score": 4,
    }
    payload.update(overrides)
    return payload


class FakeOracle(VisionOracle):
    """Returns a canned response (or raises) and records each call."""

    def __init__(self, payload=None, raw: str = None, error: Exception = None):
        self.payload = payload
        self.raw = raw
        self.error = error
        self.calls = []

    def generate(self, prompt, images):
        self.calls.append((prompt, images))
        if self.error is not None:
            raise self.error
        if self.raw is not None:
            return self.raw
        return json.dumps(self.payload)


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def seeded_db(session_factory):
    """One active worker, one inactive worker, and an open report."""
    with session_factory() as db:
        db.add(AuthorizedWorkerDB(id="w-1", email=WORKER_EMAIL, name="Asha", role="field_worker", status="active"))
        db.add(AuthorizedWorkerDB(id="w-2", email="retired@city.gov", name="Ravi", role="field_worker", status="inactive"))
        db.add(IssueReportDB(
            id="report-1",
            title="Pothole on Main St",
            issue_type="pothole",
            latitude=REPORT_LAT,
            longitude=REPORT_LNG,
            image_url="http://localhost:8000/uploads/reports/citizen/before.png",
            status="open",
        ))
        db.commit()
    return session_factory


@pytest.fixture
def upload_root(tmp_path):
    return tmp_path / "uploads"


@pytest.fixture
def fresh_exif_time():
    return exif_time(FIXED_NOW - timedelta(hours=1))
