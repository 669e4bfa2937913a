"""
Domain records exchanged between the pipeline and its collaborators.
"""
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Dict, List, Optional


@dataclass
class IssueReport:
    id: str
    title: str
    status: str
    issue_type: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    image_url: Optional[str] = None
    # AI report analysis of the before image
    description: Optional[str] = None
    confidence_score: Optional[float] = None
    severity_level: Optional[str] = None
    priority_score: Optional[int] = None
    is_valid_issue: Optional[bool] = None
    recommended_authority: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class Identity:
    authorized: bool
    reference: Optional[str] = None  # normalized credential, e.g. lower-cased email
    worker_id: Optional[str] = None
    name: Optional[str] = None
    role: Optional[str] = None
    error: Optional[str] = None


@dataclass
class ResolutionSubmission:
    report_id: str
    submitter: str
    mode: str
    after_image_url: str
    live_lat: float
    live_lng: float
    verification_status: str
    suspicion_score: int
    ai_same_location: bool
    ai_issue_resolved: bool
    ai_suspicious: bool
    ai_confidence_score: float
    suspicion_flags: List[str] = field(default_factory=list)
    suspicion_reason: Optional[str] = None
    worker_id: Optional[str] = None
    after_image_md5: Optional[str] = None
    exif_lat: Optional[float] = None
    exif_lng: Optional[float] = None
    exif_timestamp: Optional[str] = None
    exif_camera: Optional[str] = None
    distance_from_original: Optional[float] = None
    image_similarity: Optional[float] = None
    ai_fake_detected: bool = False
    visual_similarity_score: Optional[float] = None
    analysis_summary: Optional[str] = None
    oracle_error: Optional[str] = None
    id: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AuditRecord:
    submitter: str
    reason: str
    report_id: Optional[str] = None
    suspicion_score: int = 0
    severity: str = "medium"
    event_type: str = "suspicious_resolution_attempt"
    ip_address: Optional[str] = None
    id: Optional[str] = None
    created_at: Optional[datetime] = None
