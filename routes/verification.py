"""
Resolution verification routes (standard and strict modes).
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile
from fastapi.concurrency import run_in_threadpool

from models.schemas import (
    ExifCheck,
    ImageAnalysis,
    LocationCheck,
    OracleAnalysis,
    SignalBreakdown,
    VerificationResponse,
)
from modules.ai_verification import MODE_STANDARD, MODE_STRICT
from modules.errors import VerificationError
from modules.verification_pipeline import ResolutionRequest, VerificationResult, VerificationService
from routes.dependencies import get_verification_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/reports", tags=["Resolution Verification"])

VERIFIED_MESSAGES = {
    MODE_STANDARD: "Resolution verified successfully!",
    MODE_STRICT: "Resolution verified successfully! All security checks passed.",
}
SUSPICIOUS_MESSAGE = "Resolution submitted but marked as SUSPICIOUS. Manual review required."


def build_response(result: VerificationResult) -> VerificationResponse:
    """Flatten a pipeline result into the per-signal API breakdown."""
    decision = result.decision
    verdict = result.oracle.verdict
    location = result.signals["location"]
    exif_details = result.signals["exif"].details
    submission = result.submission

    return VerificationResponse(
        message=VERIFIED_MESSAGES[result.mode.name] if decision.is_verified else SUSPICIOUS_MESSAGE,
        resolution_id=submission.id,
        report_id=submission.report_id,
        mode=result.mode.name,
        verification_status=decision.status,
        report_status=result.report_status,
        all_checks_passed=decision.is_verified,
        suspicion_score=decision.suspicion_score,
        severity=decision.severity,
        suspicion_flags=decision.flag_messages,
        verification=SignalBreakdown(
            location_check=LocationCheck(
                passed=location.passed,
                distance_m=location.details.get("distance_m"),
                max_allowed_m=result.mode.max_distance_m,
            ),
            exif_check=ExifCheck(
                has_gps=result.exif.has_gps,
                has_timestamp=result.exif.has_timestamp,
                timestamp=result.exif.timestamp,
                hours_since_capture=exif_details.get("hours_since_capture"),
                camera=result.exif.camera.label if result.exif.camera else None,
                gps_deviation_m=exif_details.get("gps_deviation_m"),
            ),
            image_analysis=ImageAnalysis(
                similarity=result.comparison.similarity,
                hash_distance=result.comparison.hash_distance,
                before_hash=result.comparison.before_hash,
                after_hash=result.comparison.after_hash,
                fallback=result.comparison.is_fallback,
            ),
            ai_verification=OracleAnalysis(
                same_location=verdict.same_location,
                issue_resolved=verdict.issue_resolved,
                fake_detected=verdict.fake_detected,
                suspicious=verdict.suspicious,
                confidence=verdict.resolution_confidence,
                similarity_score=verdict.similarity_score,
                suspicion_reason=verdict.suspicion_reason,
                analysis=verdict.analysis_summary,
                fallback=result.oracle.is_fallback,
                error_kind=result.oracle.error_kind,
            ),
        ),
        oracle_error=result.oracle_error,
        processing_time_ms=result.processing_time_ms,
        created_at=submission.created_at.isoformat() if submission.created_at else None,
    )


async def _run_verification(
    mode: str,
    report_id: str,
    request: Request,
    worker_email: Optional[str],
    live_lat: Optional[str],
    live_lng: Optional[str],
    after_image: Optional[UploadFile],
    service: VerificationService,
) -> VerificationResponse:
    image_bytes = await after_image.read() if after_image is not None else None

    resolution_request = ResolutionRequest(
        report_id=report_id,
        submitter=worker_email,
        latitude=live_lat,
        longitude=live_lng,
        image_bytes=image_bytes,
        filename=after_image.filename if after_image is not None else None,
        content_type=after_image.content_type if after_image is not None else None,
        ip_address=request.client.host if request.client else None,
    )

    try:
        result = await run_in_threadpool(service.verify, resolution_request, mode)
    except VerificationError as e:
        logger.warning(f"[VERIFY] {mode} verification rejected ({e.kind}): {e.message}")
        raise HTTPException(status_code=e.status_code, detail=e.message)
    except Exception as e:
        logger.exception(f"[VERIFY] Unexpected error during {mode} verification: {e}")
        raise HTTPException(status_code=500, detail="Internal server error during verification")

    return build_response(result)


@router.post("/{report_id}/verify-resolution", response_model=VerificationResponse, status_code=201)
async def verify_resolution(
    report_id: str,
    request: Request,
    worker_email: Optional[str] = Form(None),
    live_lat: Optional[str] = Form(None),
    live_lng: Optional[str] = Form(None),
    after_image: Optional[UploadFile] = File(None),
    service: VerificationService = Depends(get_verification_service),
):
    """
    Submit after-image proof for a report (standard mode).

    Any raised flag or failed check marks the submission suspicious.
    """
    return await _run_verification(
        MODE_STANDARD, report_id, request, worker_email, live_lat, live_lng, after_image, service
    )


@router.post("/{report_id}/submit-resolution", response_model=VerificationResponse, status_code=201)
async def submit_resolution(
    report_id: str,
    request: Request,
    worker_email: Optional[str] = Form(None),
    live_lat: Optional[str] = Form(None),
    live_lng: Optional[str] = Form(None),
    after_image: Optional[UploadFile] = File(None),
    service: VerificationService = Depends(get_verification_service),
):
    """
    Submit after-image proof for a report (strict mode).

    Checks:
    - worker email must belong to an active authorized worker
    - live GPS within 20m of the report, EXIF GPS within 10m of live GPS
    - image timestamp no older than 24h
    - perceptual similarity between 5% and 95%
    - AI verdict: same location, resolved, not fake, not suspicious, confidence >= 80
    - suspicion score below 30
    """
    return await _run_verification(
        MODE_STRICT, report_id, request, worker_email, live_lat, live_lng, after_image, service
    )
