"""
SQLAlchemy ORM models for reports, resolution submissions, audit records,
and authorized workers.
"""
from datetime import datetime
from enum import Enum
from sqlalchemy import Column, String, Integer, Float, DateTime, Text, JSON, ForeignKey, Boolean, UniqueConstraint

from database import Base


class ReportStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"
    VERIFIED = "verified"
    SUSPICIOUS = "suspicious"


class WorkerStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class IssueReportDB(Base):
    """Citizen-reported civic issue (the before record)."""
    __tablename__ = "reports"

    id = Column(String(36), primary_key=True)  # UUID
    user_id = Column(String(255), nullable=True)
    title = Column(String(255), nullable=False)
    issue_type = Column(String(100), nullable=True)
    description = Column(Text, nullable=True)
    confidence_score = Column(Float, nullable=True)
    severity_level = Column(String(20), nullable=True)  # Low, Medium or High
    priority_score = Column(Integer, nullable=True)  # 1-5
    is_valid_issue = Column(Boolean, nullable=True)
    recommended_authority = Column(String(255), nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    image_url = Column(String(1024), nullable=True)
    status = Column(String(20), nullable=False, default=ReportStatus.OPEN.value, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class ResolutionSubmissionDB(Base):
    """Immutable record of one evaluated resolution attempt."""
    __tablename__ = "resolution_submissions"
    __table_args__ = (
        UniqueConstraint("report_id", "submitter", name="uq_resolution_report_submitter"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    report_id = Column(String(36), ForeignKey("reports.id"), nullable=False, index=True)
    submitter = Column(String(255), nullable=False, index=True)
    worker_id = Column(String(36), nullable=True)
    mode = Column(String(20), nullable=False)

    after_image_url = Column(String(1024), nullable=False)
    after_image_md5 = Column(String(32), nullable=True)
    live_lat = Column(Float, nullable=False)
    live_lng = Column(Float, nullable=False)

    exif_lat = Column(Float, nullable=True)
    exif_lng = Column(Float, nullable=True)
    exif_timestamp = Column(String(64), nullable=True)
    exif_camera = Column(String(255), nullable=True)

    distance_from_original = Column(Float, nullable=True)
    image_similarity = Column(Float, nullable=True)

    ai_same_location = Column(Boolean, nullable=False)
    ai_issue_resolved = Column(Boolean, nullable=False)
    ai_fake_detected = Column(Boolean, nullable=False, default=False)
    ai_suspicious = Column(Boolean, nullable=False)
    ai_confidence_score = Column(Float, nullable=False)
    visual_similarity_score = Column(Float, nullable=True)
    analysis_summary = Column(Text, nullable=True)
    oracle_error = Column(String(50), nullable=True)

    suspicion_score = Column(Integer, nullable=False, default=0)
    suspicion_flags = Column(JSON, nullable=False, default=list)  # ordered list of strings
    suspicion_reason = Column(Text, nullable=True)
    verification_status = Column(String(20), nullable=False, index=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class AuditRecordDB(Base):
    """Append-only log of rejected, duplicate, unauthorized and suspicious attempts."""
    __tablename__ = "audit_records"

    id = Column(String(36), primary_key=True)  # UUID
    report_id = Column(String(36), nullable=True, index=True)
    submitter = Column(String(255), nullable=False, index=True)
    reason = Column(Text, nullable=False)
    suspicion_score = Column(Integer, nullable=False, default=0)
    severity = Column(String(20), nullable=False, default="medium")
    event_type = Column(String(50), nullable=False, default="suspicious_resolution_attempt")
    ip_address = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)


class AuthorizedWorkerDB(Base):
    """Field workers allowed to submit resolution proof."""
    __tablename__ = "authorized_workers"

    id = Column(String(36), primary_key=True)  # UUID
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=True)
    role = Column(String(50), nullable=True)
    status = Column(String(20), nullable=False, default=WorkerStatus.ACTIVE.value)
    created_at = Column(DateTime, default=datetime.utcnow)
