"""
Pydantic schemas for oracle verdicts and request/response models.
"""
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List, Dict, Any, Literal


# ============================================================================
# VISION ORACLE VERDICTS
# ============================================================================

class _VerdictBase(BaseModel):
    """Fields shared by both oracle contracts. Strict types: no coercion."""
    model_config = ConfigDict(strict=True, extra="ignore")

    same_location: bool
    issue_resolved: bool
    resolution_confidence: float = Field(..., ge=0, le=100)
    suspicious: bool
    suspicion_reason: Optional[str]
    analysis_summary: Optional[str]


class StandardVerdict(_VerdictBase):
    """Standard-mode oracle contract."""
    visual_similarity_score: float = Field(..., ge=0, le=100)

    @property
    def fake_detected(self) -> bool:
        return False

    @property
    def similarity_score(self) -> float:
        return self.visual_similarity_score


class StrictVerdict(_VerdictBase):
    """Strict-mode contract: adds fake detection, renames the similarity field."""
    fake_detected: bool
    visual_consistency_score: float = Field(..., ge=0, le=100)

    @property
    def similarity_score(self) -> float:
        return self.visual_consistency_score


class ReportAnalysis(BaseModel):
    """Single-image contract for classifying a newly reported issue."""
    model_config = ConfigDict(strict=True, extra="ignore")

    issue_type: str
    confidence_score: float = Field(..., ge=0, le=100)
    is_valid_issue: bool
    severity_level: Literal["Low", "Medium", "High"]
    generated_description: str
    recommended_authority: str
    priority_score: int = Field(..., ge=1, le=5)


# ============================================================================
# API RESPONSES
# ============================================================================

class LocationCheck(BaseModel):
    passed: bool
    distance_m: Optional[float] = Field(None, description="Distance from the original report location (meters)")
    max_allowed_m: float


class ExifCheck(BaseModel):
    has_gps: bool
    has_timestamp: bool
    timestamp: Optional[str] = None
    hours_since_capture: Optional[float] = None
    camera: Optional[str] = None
    gps_deviation_m: Optional[float] = Field(None, description="EXIF GPS vs live GPS (meters)")


class ImageAnalysis(BaseModel):
    similarity: float = Field(..., description="Perceptual similarity (0-100)")
    hash_distance: int = Field(..., description="Hamming distance between 64-bit dHashes")
    before_hash: Optional[str] = None
    after_hash: Optional[str] = None
    fallback: bool = Field(False, description="True if the neutral fallback was used")


class OracleAnalysis(BaseModel):
    same_location: bool
    issue_resolved: bool
    fake_detected: bool
    suspicious: bool
    confidence: float
    similarity_score: float
    suspicion_reason: Optional[str] = None
    analysis: Optional[str] = None
    fallback: bool = False
    error_kind: Optional[str] = Field(None, description="invalid_credentials, quota_exceeded, upstream_unavailable, parse_error or schema_error")


class SignalBreakdown(BaseModel):
    location_check: LocationCheck
    exif_check: ExifCheck
    image_analysis: ImageAnalysis
    ai_verification: OracleAnalysis


class VerificationResponse(BaseModel):
    """Outcome of an evaluated submission (verified or suspicious)."""
    success: bool = True
    message: str
    resolution_id: str
    report_id: str
    mode: str
    verification_status: str = Field(..., description="verified or suspicious")
    report_status: str
    all_checks_passed: bool
    suspicion_score: int
    severity: Optional[str] = Field(None, description="medium, high or critical (suspicious only)")
    suspicion_flags: List[str] = Field(default_factory=list)
    verification: SignalBreakdown
    oracle_error: Optional[str] = None
    processing_time_ms: int
    created_at: Optional[str] = None


class ReportAnalysisSummary(BaseModel):
    issue_type: Optional[str] = None
    description: Optional[str] = None
    confidence_score: float
    severity_level: Optional[str] = Field(None, description="Low, Medium or High")
    priority_score: Optional[int] = Field(None, description="1 (low) to 5 (urgent)")
    is_valid_issue: Optional[bool] = None
    recommended_authority: Optional[str] = None


class ReportResponse(BaseModel):
    report_id: str
    title: str
    issue_type: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    image_url: Optional[str] = None
    status: str
    analysis: Optional[ReportAnalysisSummary] = Field(None, description="AI analysis of the before image, if available")
    created_at: Optional[str] = None


class ResolutionSummary(BaseModel):
    resolution_id: str
    report_id: str
    submitter: str
    mode: str
    verification_status: str
    suspicion_score: int
    suspicion_flags: List[str] = Field(default_factory=list)
    after_image_url: str
    distance_from_original: Optional[float] = None
    image_similarity: Optional[float] = None
    created_at: Optional[str] = None


class AuditRecordResponse(BaseModel):
    id: str
    report_id: Optional[str] = None
    submitter: str
    event_type: Optional[str] = None
    reason: str
    suspicion_score: int
    severity: str
    ip_address: Optional[str] = None
    created_at: Optional[str] = None


class ResolutionListResponse(BaseModel):
    total: int
    results: List[ResolutionSummary]


class AuditListResponse(BaseModel):
    total: int
    results: List[AuditRecordResponse]
    excessive_attempts: Optional[bool] = None


def verdict_summary(verdict: Any) -> Dict[str, Any]:
    """Flatten either verdict type into the common keys used for logging."""
    return {
        "same_location": verdict.same_location,
        "issue_resolved": verdict.issue_resolved,
        "fake_detected": verdict.fake_detected,
        "suspicious": verdict.suspicious,
        "confidence": verdict.resolution_confidence,
    }
