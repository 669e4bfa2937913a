"""
Report creation and read-side routes (resolution history, review queue, audit trail).
"""
import uuid
import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile
from fastapi.concurrency import run_in_threadpool

from config import settings
from models.schemas import (
    AuditListResponse,
    AuditRecordResponse,
    ReportAnalysis,
    ReportAnalysisSummary,
    ReportResponse,
    ResolutionListResponse,
    ResolutionSummary,
)
from modules.ai_verification import AIVerificationAdapter
from modules.audit_logger import AuditLogger
from modules.collaborators import ObjectStorage, ReportStore
from modules.errors import StorageError, ValidationError, VerificationError
from modules.geo_distance import validate_coordinates
from modules.perceptual_hash import FetchedImage
from modules.records import AuditRecord, IssueReport, ResolutionSubmission
from modules.verification_pipeline import ALLOWED_IMAGE_TYPES
from routes.dependencies import get_ai_adapter, get_audit_logger, get_object_storage, get_report_store


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["Reports"])


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def _report_response(report: IssueReport) -> ReportResponse:
    analysis = None
    if report.confidence_score is not None:
        analysis = ReportAnalysisSummary(
            issue_type=report.issue_type,
            description=report.description,
            confidence_score=report.confidence_score,
            severity_level=report.severity_level,
            priority_score=report.priority_score,
            is_valid_issue=report.is_valid_issue,
            recommended_authority=report.recommended_authority,
        )
    return ReportResponse(
        report_id=report.id,
        title=report.title,
        issue_type=report.issue_type,
        latitude=report.latitude,
        longitude=report.longitude,
        image_url=report.image_url,
        status=report.status,
        analysis=analysis,
        created_at=_iso(report.created_at),
    )


def _resolution_summary(submission: ResolutionSubmission) -> ResolutionSummary:
    return ResolutionSummary(
        resolution_id=submission.id,
        report_id=submission.report_id,
        submitter=submission.submitter,
        mode=submission.mode,
        verification_status=submission.verification_status,
        suspicion_score=submission.suspicion_score,
        suspicion_flags=submission.suspicion_flags,
        after_image_url=submission.after_image_url,
        distance_from_original=submission.distance_from_original,
        image_similarity=submission.image_similarity,
        created_at=_iso(submission.created_at),
    )


def analyze_report_image(
    adapter: AIVerificationAdapter,
    image_bytes: bytes,
    content_type: Optional[str],
    filename: Optional[str],
) -> Optional[ReportAnalysis]:
    """AI analysis of a before image, or None when the analysis fell back."""
    outcome = adapter.analyze_report(
        FetchedImage(data=image_bytes, mime_type=content_type or "image/jpeg", source=filename)
    )
    if outcome.is_fallback:
        logger.warning(f"[REPORT] AI analysis unavailable, saving report unclassified: {outcome.error_message}")
        return None
    return outcome.analysis


def create_report_record(
    store: ReportStore,
    storage: ObjectStorage,
    title: str,
    issue_type: Optional[str],
    latitude: Optional[str],
    longitude: Optional[str],
    image_bytes: Optional[bytes],
    filename: Optional[str],
    content_type: Optional[str],
    user_id: Optional[str] = None,
    adapter: Optional[AIVerificationAdapter] = None,
) -> IssueReport:
    """
    Persist a new report. The before image, when given, is classified by the
    AI adapter and then uploaded. Analysis and upload failures are logged and
    the report is saved without the analysis or without an image URL.
    """
    if not title or not title.strip():
        raise ValidationError("Report title is required.")

    lat = lng = None
    if latitude not in (None, "") or longitude not in (None, ""):
        lat, lng = validate_coordinates(latitude, longitude)

    analysis = None
    image_url = None
    if image_bytes:
        if len(image_bytes) > settings.MAX_UPLOAD_SIZE:
            raise ValidationError(f"Image exceeds the {settings.MAX_UPLOAD_SIZE // (1024 * 1024)}MB upload limit.")
        if content_type and content_type.lower() not in ALLOWED_IMAGE_TYPES:
            raise ValidationError("Invalid file type. Only JPEG and PNG are allowed.")

        if adapter is not None and settings.REPORT_ANALYSIS_ENABLED:
            analysis = analyze_report_image(adapter, image_bytes, content_type, filename)

        try:
            image_url = storage.upload(
                image_bytes,
                filename or "report.jpg",
                content_type or "image/jpeg",
                owner=user_id or "anonymous",
                folder="reports",
            )
        except StorageError as e:
            logger.warning(f"[STORAGE] Report image upload failed, continuing without image: {e.message}")

    report = IssueReport(
        id=str(uuid.uuid4()),
        title=title.strip(),
        status="open",
        issue_type=issue_type,
        latitude=lat,
        longitude=lng,
        image_url=image_url,
    )
    if analysis is not None:
        # an issue type entered by the reporter wins over the model's classification
        report.issue_type = issue_type or analysis.issue_type
        report.description = analysis.generated_description
        report.confidence_score = analysis.confidence_score
        report.severity_level = analysis.severity_level
        report.priority_score = analysis.priority_score
        report.is_valid_issue = analysis.is_valid_issue
        report.recommended_authority = analysis.recommended_authority

    return store.create_report(report, user_id=user_id)


@router.post("/reports", response_model=ReportResponse, status_code=201)
async def create_report(
    title: str = Form(...),
    issue_type: Optional[str] = Form(None),
    latitude: Optional[str] = Form(None),
    longitude: Optional[str] = Form(None),
    user_id: Optional[str] = Form(None),
    image: Optional[UploadFile] = File(None),
    store: ReportStore = Depends(get_report_store),
    storage: ObjectStorage = Depends(get_object_storage),
    adapter: AIVerificationAdapter = Depends(get_ai_adapter),
):
    """Create a civic issue report; a before image is classified by the AI adapter."""
    image_bytes = await image.read() if image is not None else None
    try:
        report = await run_in_threadpool(
            create_report_record,
            store,
            storage,
            title,
            issue_type,
            latitude,
            longitude,
            image_bytes,
            image.filename if image is not None else None,
            image.content_type if image is not None else None,
            user_id,
            adapter,
        )
    except VerificationError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return _report_response(report)


@router.get("/reports/{report_id}", response_model=ReportResponse)
def get_report(report_id: str, store: ReportStore = Depends(get_report_store)):
    try:
        report = store.get_report(report_id)
    except VerificationError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    if report is None:
        raise HTTPException(status_code=404, detail="Report not found.")
    return _report_response(report)


@router.get("/reports/{report_id}/resolutions", response_model=ResolutionListResponse)
def list_report_resolutions(report_id: str, store: ReportStore = Depends(get_report_store)):
    """All resolution attempts for a report, newest first."""
    try:
        submissions = store.list_submissions(report_id)
    except VerificationError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    results = [_resolution_summary(s) for s in submissions]
    return ResolutionListResponse(total=len(results), results=results)


@router.get("/resolutions/suspicious", response_model=ResolutionListResponse)
def list_suspicious_resolutions(
    limit: int = Query(50, ge=1, le=500),
    store: ReportStore = Depends(get_report_store),
):
    """Review queue: suspicious resolutions, highest score first."""
    try:
        submissions = store.list_suspicious(limit)
    except VerificationError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    results = [_resolution_summary(s) for s in submissions]
    return ResolutionListResponse(total=len(results), results=results)


def _audit_response(record: AuditRecord) -> AuditRecordResponse:
    return AuditRecordResponse(
        id=record.id,
        report_id=record.report_id,
        submitter=record.submitter,
        event_type=record.event_type,
        reason=record.reason,
        suspicion_score=record.suspicion_score,
        severity=record.severity,
        ip_address=record.ip_address,
        created_at=_iso(record.created_at),
    )


@router.get("/audit", response_model=AuditListResponse)
def list_recent_audit_records(
    hours: int = Query(24, ge=1, le=24 * 30),
    limit: int = Query(100, ge=1, le=500),
    audit: AuditLogger = Depends(get_audit_logger),
):
    """Recent audit records across all submitters, highest suspicion score first."""
    results = [_audit_response(r) for r in audit.recent_suspicious_attempts(hours, limit)]
    return AuditListResponse(total=len(results), results=results)


@router.get("/audit/{submitter}", response_model=AuditListResponse)
def list_audit_records(
    submitter: str,
    limit: int = Query(50, ge=1, le=500),
    audit: AuditLogger = Depends(get_audit_logger),
):
    """Audit trail for one submitter plus the excessive-attempts indicator."""
    try:
        records = audit.records_for_submitter(submitter, limit)
    except Exception as e:
        logger.error(f"[AUDIT] Failed to read audit records for {submitter}: {e}")
        raise HTTPException(status_code=503, detail="Audit records are temporarily unavailable")

    results = [_audit_response(r) for r in records]
    return AuditListResponse(
        total=len(results),
        results=results,
        excessive_attempts=audit.has_excessive_suspicious_attempts(submitter),
    )
