"""
Resolution verification pipeline.

Order of operations for one submission:

    validate input -> authorize submitter -> load report + pre-checks ->
    duplicate guard -> EXIF extraction -> upload after image ->
    fetch before image (once) -> [perceptual hash || vision oracle] ->
    score + decide -> persist submission and report status (one transaction) ->
    audit a suspicious outcome

Rejections before evaluation raise a VerificationError subclass and are
audit-logged. Signal failures (image fetch, oracle) degrade to fallbacks.
Persistence failures are raised to the caller.
"""
import time
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from config import settings
from modules.ai_verification import AIVerificationAdapter, MODE_STANDARD, MODE_STRICT, OracleOutcome
from modules.audit_logger import (
    AuditLogger,
    EVENT_DUPLICATE,
    EVENT_SYSTEM_ERROR,
    EVENT_UNAUTHORIZED,
    EVENT_VALIDATION,
    SEVERITY_ERROR,
)
from modules.collaborators import IdentityService, ObjectStorage, ReportStore
from modules.duplicate_guard import DuplicateGuard
from modules.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    PersistenceError,
    UpstreamUnavailable,
    ValidationError,
)
from modules.exif_forensics import ExifMetadata, extract_exif_metadata
from modules.geo_distance import validate_coordinates
from modules.perceptual_hash import FetchedImage, ImageComparison, compare_images, fetch_image, md5_hex
from modules.records import Identity, IssueReport, ResolutionSubmission
from modules.suspicion_scoring import (
    Decision,
    ModeConfig,
    ScoringInputs,
    SuspicionScoringEngine,
    SuspicionSignal,
    mode_config,
)

logger = logging.getLogger(__name__)

ALLOWED_IMAGE_TYPES = ("image/jpeg", "image/jpg", "image/png")

# report statuses that close a report for each mode
_CLOSED_STATUSES = {
    MODE_STANDARD: ("resolved", "verified"),
    MODE_STRICT: ("verified",),
}


@dataclass
class ResolutionRequest:
    report_id: str
    submitter: Optional[str]
    latitude: Any
    longitude: Any
    image_bytes: Optional[bytes]
    filename: Optional[str] = None
    content_type: Optional[str] = None
    ip_address: Optional[str] = None


@dataclass
class VerificationResult:
    submission: ResolutionSubmission
    report: IssueReport
    identity: Identity
    mode: ModeConfig
    decision: Decision
    signals: Dict[str, SuspicionSignal]
    exif: ExifMetadata
    comparison: ImageComparison
    oracle: OracleOutcome
    processing_time_ms: int

    @property
    def report_status(self) -> str:
        return self.decision.status

    @property
    def oracle_error(self) -> Optional[str]:
        return self.oracle.error_kind


class VerificationService:
    """Runs one resolution submission through every check, in either mode."""

    def __init__(
        self,
        store: ReportStore,
        identity: IdentityService,
        storage: ObjectStorage,
        audit: AuditLogger,
        adapter: AIVerificationAdapter,
        guard: Optional[DuplicateGuard] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.identity = identity
        self.storage = storage
        self.audit = audit
        self.adapter = adapter
        self.guard = guard or DuplicateGuard(store)
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    # ------------------------------------------------------------------
    # guards
    # ------------------------------------------------------------------

    def _reject(self, request: ResolutionRequest, error, event_type: str, severity: str = "medium"):
        self.audit.record_rejection(
            report_id=request.report_id,
            submitter=request.submitter,
            reason=error.message,
            event_type=event_type,
            severity=severity,
            ip_address=request.ip_address,
        )
        raise error

    def _validate(self, request: ResolutionRequest):
        if not request.image_bytes:
            self._reject(request, ValidationError("After image is required."), EVENT_VALIDATION)

        if len(request.image_bytes) > settings.MAX_UPLOAD_SIZE:
            self._reject(
                request,
                ValidationError(f"Image exceeds the {settings.MAX_UPLOAD_SIZE // (1024 * 1024)}MB upload limit."),
                EVENT_VALIDATION,
            )

        if request.content_type and request.content_type.lower() not in ALLOWED_IMAGE_TYPES:
            self._reject(request, ValidationError("Only JPEG and PNG images are allowed."), EVENT_VALIDATION)

        if not request.submitter or "@" not in request.submitter:
            self._reject(request, ValidationError("Valid worker email is required."), EVENT_VALIDATION)

        if request.latitude in (None, "") or request.longitude in (None, ""):
            self._reject(
                request,
                ValidationError("Live GPS coordinates (live_lat, live_lng) are required."),
                EVENT_VALIDATION,
            )

        try:
            return validate_coordinates(request.latitude, request.longitude)
        except ValidationError as e:
            self._reject(request, e, EVENT_VALIDATION)

    def _authorize(self, request: ResolutionRequest) -> Identity:
        identity = self.identity.authorize(request.submitter)
        if not identity.authorized:
            logger.error(f"[VERIFY] Unauthorized submitter: {request.submitter}")
            self._reject(
                request,
                AuthorizationError("Unauthorized. Worker email not found in authorized workers list."),
                EVENT_UNAUTHORIZED,
                severity="high",
            )
        return identity

    def _load_report(self, request: ResolutionRequest, mode: ModeConfig) -> IssueReport:
        report = self.store.get_report(request.report_id)
        if report is None:
            raise NotFoundError("Report not found.")

        if report.status in _CLOSED_STATUSES[mode.name]:
            raise ConflictError(f"This report has already been {report.status}.")

        if not report.image_url:
            raise ValidationError("Original report has no before image for comparison.")

        if mode.require_report_location and (report.latitude is None or report.longitude is None):
            raise ValidationError("Original report has no GPS coordinates. Cannot verify location.")

        return report

    def _check_duplicate(self, request: ResolutionRequest, submitter: str):
        try:
            self.guard.check(request.report_id, submitter)
        except ConflictError as e:
            self._reject(request, e, EVENT_DUPLICATE, severity="high")

    # ------------------------------------------------------------------
    # signals
    # ------------------------------------------------------------------

    def _fetch_before(self, report: IssueReport) -> Optional[FetchedImage]:
        try:
            return fetch_image(report.image_url, settings.ORACLE_DOWNLOAD_TIMEOUT, self.storage)
        except UpstreamUnavailable as e:
            logger.error(f"[VERIFY] Before image unavailable: {e.message}")
            return None

    def _run_signals(self, report: IssueReport, after: FetchedImage, mode: ModeConfig):
        before = self._fetch_before(report)
        with ThreadPoolExecutor(max_workers=2) as pool:
            comparison_future = pool.submit(compare_images, before, after)
            oracle_future = pool.submit(self.adapter.verify, before, after, report.issue_type, mode.name)
            return comparison_future.result(), oracle_future.result()

    # ------------------------------------------------------------------
    # entry point
    # ------------------------------------------------------------------

    def verify(self, request: ResolutionRequest, mode: str = MODE_STANDARD) -> VerificationResult:
        start = time.time()
        config = mode_config(mode)
        logger.info(f"[VERIFY] {config.name.upper()} verification started for report {request.report_id}")

        live_lat, live_lng = self._validate(request)
        identity = self._authorize(request)
        submitter = identity.reference or request.submitter.strip().lower()

        report = self._load_report(request, config)
        self._check_duplicate(request, submitter)

        exif = extract_exif_metadata(request.image_bytes)

        try:
            after_url = self.storage.upload(
                request.image_bytes,
                request.filename or "resolution.jpg",
                request.content_type or "image/jpeg",
                owner=submitter,
                folder="resolutions",
            )
        except PersistenceError as e:
            self._reject(request, e, EVENT_SYSTEM_ERROR, severity=SEVERITY_ERROR)

        after = FetchedImage(
            data=request.image_bytes,
            mime_type=request.content_type or "image/jpeg",
            source=after_url,
        )
        comparison, oracle = self._run_signals(report, after, config)
        if oracle.is_permanent_error:
            logger.error(f"[VERIFY] Oracle integration error ({oracle.error_kind}), submission goes to manual review")

        audit_context = {
            "report_id": report.id,
            "submitter": submitter,
            "ip_address": request.ip_address,
        }
        engine = SuspicionScoringEngine(config, audit=self.audit)
        scoring = engine.evaluate(
            ScoringInputs(
                report_lat=report.latitude,
                report_lng=report.longitude,
                live_lat=live_lat,
                live_lng=live_lng,
                exif=exif,
                comparison=comparison,
                oracle=oracle,
                now=self.clock(),
            )
        )
        decision = scoring.decision
        verdict = oracle.verdict

        submission = ResolutionSubmission(
            report_id=report.id,
            submitter=submitter,
            worker_id=identity.worker_id,
            mode=config.name,
            after_image_url=after_url,
            after_image_md5=md5_hex(request.image_bytes),
            live_lat=live_lat,
            live_lng=live_lng,
            exif_lat=exif.gps.latitude if exif.gps else None,
            exif_lng=exif.gps.longitude if exif.gps else None,
            exif_timestamp=exif.timestamp,
            exif_camera=exif.camera.label if exif.camera else None,
            distance_from_original=scoring.signals["location"].details.get("distance_m"),
            image_similarity=comparison.similarity,
            ai_same_location=verdict.same_location,
            ai_issue_resolved=verdict.issue_resolved,
            ai_fake_detected=verdict.fake_detected,
            ai_suspicious=verdict.suspicious,
            ai_confidence_score=verdict.resolution_confidence,
            visual_similarity_score=verdict.similarity_score,
            analysis_summary=verdict.analysis_summary,
            oracle_error=oracle.error_kind,
            suspicion_score=decision.suspicion_score,
            suspicion_flags=decision.flag_messages,
            suspicion_reason=decision.reason,
            verification_status=decision.status,
        )

        try:
            saved = self.store.record_outcome(submission, decision.status)
        except ConflictError as e:
            self._reject(request, e, EVENT_DUPLICATE, severity="high")
        except PersistenceError as e:
            self._reject(request, e, EVENT_SYSTEM_ERROR, severity=SEVERITY_ERROR)

        # a failed write leaves no submission and no suspicious audit record
        engine.audit_outcome(decision, audit_context)

        processing_ms = int((time.time() - start) * 1000)
        logger.info(
            f"[VERIFY] {config.name.upper()} verification complete: {decision.status} "
            f"(score {decision.suspicion_score}) in {processing_ms}ms"
        )

        return VerificationResult(
            submission=saved,
            report=report,
            identity=identity,
            mode=config,
            decision=decision,
            signals=scoring.signals,
            exif=exif,
            comparison=comparison,
            oracle=oracle,
            processing_time_ms=processing_ms,
        )
