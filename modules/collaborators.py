"""
External collaborators of the verification pipeline: relational store,
identity service, object storage and audit sink.

Each collaborator is an abstract interface injected into the pipeline at
construction; the concrete implementations here use SQLAlchemy sessions and
the local filesystem.
"""
import uuid
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from config import settings
from models.db_models import (
    AuditRecordDB,
    AuthorizedWorkerDB,
    IssueReportDB,
    ReportStatus,
    ResolutionSubmissionDB,
    WorkerStatus,
)
from modules.errors import ConflictError, PersistenceError, StorageError
from modules.perceptual_hash import FetchedImage
from modules.records import AuditRecord, Identity, IssueReport, ResolutionSubmission

logger = logging.getLogger(__name__)


# ============================================================================
# INTERFACES
# ============================================================================

class ReportStore(ABC):

    @abstractmethod
    def get_report(self, report_id: str) -> Optional[IssueReport]:
        ...

    @abstractmethod
    def create_report(self, report: IssueReport, user_id: Optional[str] = None) -> IssueReport:
        ...

    @abstractmethod
    def has_submission(self, report_id: str, submitter: str) -> bool:
        """May raise PersistenceError on read failure."""

    @abstractmethod
    def record_outcome(self, submission: ResolutionSubmission, report_status: str) -> ResolutionSubmission:
        """
        Insert the submission and move the report to `report_status` in one
        transaction. On any failure neither write is kept, so the caller can
        retry the whole submission.

        ConflictError on a duplicate (report, submitter) pair, PersistenceError
        otherwise.
        """

    @abstractmethod
    def list_submissions(self, report_id: str) -> List[ResolutionSubmission]:
        ...

    @abstractmethod
    def list_suspicious(self, limit: int = 50) -> List[ResolutionSubmission]:
        ...


class AuditSink(ABC):

    @abstractmethod
    def append(self, record: AuditRecord) -> AuditRecord:
        ...

    @abstractmethod
    def list_by_submitter(self, submitter: str, limit: int = 50) -> List[AuditRecord]:
        ...

    @abstractmethod
    def count_since(self, submitter: str, since: datetime, min_score: int = 0) -> int:
        ...

    @abstractmethod
    def list_recent(self, since: datetime, limit: int = 100) -> List[AuditRecord]:
        """All records since `since`, highest score first, newest first within a score."""


class IdentityService(ABC):

    @abstractmethod
    def authorize(self, credential: Optional[str]) -> Identity:
        """Never raises: failures are reported as unauthorized."""


class ObjectStorage(ABC):

    @abstractmethod
    def upload(self, data: bytes, filename: str, content_type: str, owner: str, folder: str = "reports") -> str:
        """Store bytes and return a public URL. Raises StorageError."""

    @abstractmethod
    def read(self, url: str) -> Optional[FetchedImage]:
        """Return the stored object if this storage owns the URL, else None."""


# ============================================================================
# SQLALCHEMY IMPLEMENTATIONS
# ============================================================================

_REPORT_COLUMNS = [
    "id", "title", "status", "issue_type", "latitude", "longitude", "image_url",
    "description", "confidence_score", "severity_level", "priority_score", "is_valid_issue",
    "recommended_authority", "created_at",
]


def _report_from_row(row: IssueReportDB) -> IssueReport:
    return IssueReport(**{name: getattr(row, name) for name in _REPORT_COLUMNS})


_SUBMISSION_COLUMNS = [
    "id", "report_id", "submitter", "worker_id", "mode", "after_image_url", "after_image_md5",
    "live_lat", "live_lng", "exif_lat", "exif_lng", "exif_timestamp", "exif_camera",
    "distance_from_original", "image_similarity", "ai_same_location", "ai_issue_resolved",
    "ai_fake_detected", "ai_suspicious", "ai_confidence_score", "visual_similarity_score",
    "analysis_summary", "oracle_error", "suspicion_score", "suspicion_flags", "suspicion_reason",
    "verification_status", "created_at",
]


def _submission_from_row(row: ResolutionSubmissionDB) -> ResolutionSubmission:
    values = {name: getattr(row, name) for name in _SUBMISSION_COLUMNS}
    values["suspicion_flags"] = list(values["suspicion_flags"] or [])
    return ResolutionSubmission(**values)


def _audit_from_row(row: AuditRecordDB) -> AuditRecord:
    return AuditRecord(
        id=row.id,
        report_id=row.report_id,
        submitter=row.submitter,
        reason=row.reason,
        suspicion_score=row.suspicion_score,
        severity=row.severity,
        event_type=row.event_type,
        ip_address=row.ip_address,
        created_at=row.created_at,
    )


class SqlReportStore(ReportStore):
    """Session-per-operation store. A resolution outcome is written in one transaction."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def get_report(self, report_id: str) -> Optional[IssueReport]:
        try:
            with self.session_factory() as db:
                row = db.get(IssueReportDB, report_id)
                return _report_from_row(row) if row else None
        except SQLAlchemyError as e:
            logger.error(f"[STORE] Failed to fetch report {report_id}: {e}")
            raise PersistenceError(f"Database: Failed to fetch report - {e}")

    def create_report(self, report: IssueReport, user_id: Optional[str] = None) -> IssueReport:
        values = {name: getattr(report, name) for name in _REPORT_COLUMNS if name != "created_at"}
        values["id"] = report.id or str(uuid.uuid4())
        values["status"] = report.status or ReportStatus.OPEN.value
        row = IssueReportDB(user_id=user_id, **values)
        try:
            with self.session_factory() as db:
                db.add(row)
                db.commit()
                db.refresh(row)
                logger.info(f"[STORE] Report saved: {row.id}")
                return _report_from_row(row)
        except SQLAlchemyError as e:
            logger.error(f"[STORE] Failed to save report: {e}")
            raise PersistenceError(f"Database: Failed to save report - {e}")

    def _set_report_status(self, db, report_id: str, status: str):
        row = db.get(IssueReportDB, report_id)
        if row is None:
            raise PersistenceError(f"Database: Report {report_id} vanished before status update")
        row.status = status

    def has_submission(self, report_id: str, submitter: str) -> bool:
        try:
            with self.session_factory() as db:
                row = (
                    db.query(ResolutionSubmissionDB.id)
                    .filter(
                        ResolutionSubmissionDB.report_id == report_id,
                        ResolutionSubmissionDB.submitter == submitter,
                    )
                    .first()
                )
                return row is not None
        except SQLAlchemyError as e:
            raise PersistenceError(f"Database: Failed to check submissions - {e}")

    @staticmethod
    def _submission_row(submission: ResolutionSubmission) -> ResolutionSubmissionDB:
        values = submission.to_dict()
        values["id"] = values.get("id") or str(uuid.uuid4())
        values["created_at"] = values.get("created_at") or datetime.utcnow()
        return ResolutionSubmissionDB(**values)

    def record_outcome(self, submission: ResolutionSubmission, report_status: str) -> ResolutionSubmission:
        row = self._submission_row(submission)
        try:
            with self.session_factory() as db:
                db.add(row)
                self._set_report_status(db, submission.report_id, report_status)
                db.commit()
                db.refresh(row)
                logger.info(f"[STORE] Resolution saved: {row.id}, report {submission.report_id} -> {report_status}")
                return _submission_from_row(row)
        except IntegrityError as e:
            logger.warning(f"[STORE] Duplicate resolution rejected by constraint: {e.orig}")
            raise ConflictError("You have already submitted a resolution for this report.")
        except SQLAlchemyError as e:
            logger.error(f"[STORE] Failed to record resolution outcome: {e}")
            raise PersistenceError(f"Database: Failed to save resolution - {e}")

    def list_submissions(self, report_id: str) -> List[ResolutionSubmission]:
        try:
            with self.session_factory() as db:
                rows = (
                    db.query(ResolutionSubmissionDB)
                    .filter(ResolutionSubmissionDB.report_id == report_id)
                    .order_by(ResolutionSubmissionDB.created_at.desc())
                    .all()
                )
                return [_submission_from_row(r) for r in rows]
        except SQLAlchemyError as e:
            raise PersistenceError(f"Database: Failed to fetch resolutions - {e}")

    def list_suspicious(self, limit: int = 50) -> List[ResolutionSubmission]:
        try:
            with self.session_factory() as db:
                rows = (
                    db.query(ResolutionSubmissionDB)
                    .filter(ResolutionSubmissionDB.verification_status == "suspicious")
                    .order_by(
                        ResolutionSubmissionDB.suspicion_score.desc(),
                        ResolutionSubmissionDB.created_at.desc(),
                    )
                    .limit(limit)
                    .all()
                )
                return [_submission_from_row(r) for r in rows]
        except SQLAlchemyError as e:
            raise PersistenceError(f"Database: Failed to fetch suspicious resolutions - {e}")


class SqlAuditSink(AuditSink):

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def append(self, record: AuditRecord) -> AuditRecord:
        row = AuditRecordDB(
            id=record.id or str(uuid.uuid4()),
            report_id=record.report_id,
            submitter=(record.submitter or "unknown").lower(),
            reason=record.reason,
            suspicion_score=record.suspicion_score,
            severity=record.severity,
            event_type=record.event_type,
            ip_address=record.ip_address,
            created_at=record.created_at or datetime.utcnow(),
        )
        with self.session_factory() as db:
            db.add(row)
            db.commit()
            db.refresh(row)
            return _audit_from_row(row)

    def list_by_submitter(self, submitter: str, limit: int = 50) -> List[AuditRecord]:
        with self.session_factory() as db:
            rows = (
                db.query(AuditRecordDB)
                .filter(AuditRecordDB.submitter == submitter.lower())
                .order_by(AuditRecordDB.created_at.desc())
                .limit(limit)
                .all()
            )
            return [_audit_from_row(r) for r in rows]

    def count_since(self, submitter: str, since: datetime, min_score: int = 0) -> int:
        with self.session_factory() as db:
            return (
                db.query(AuditRecordDB)
                .filter(
                    AuditRecordDB.submitter == submitter.lower(),
                    AuditRecordDB.created_at >= since,
                    AuditRecordDB.suspicion_score >= min_score,
                )
                .count()
            )

    def list_recent(self, since: datetime, limit: int = 100) -> List[AuditRecord]:
        with self.session_factory() as db:
            rows = (
                db.query(AuditRecordDB)
                .filter(AuditRecordDB.created_at >= since)
                .order_by(AuditRecordDB.suspicion_score.desc(), AuditRecordDB.created_at.desc())
                .limit(limit)
                .all()
            )
            return [_audit_from_row(r) for r in rows]


class WorkerIdentityService(IdentityService):
    """Authorizes submitters by email against the authorized_workers table."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def authorize(self, credential: Optional[str]) -> Identity:
        if not credential or "@" not in credential:
            return Identity(authorized=False, error="Invalid credential")

        email = credential.strip().lower()
        try:
            with self.session_factory() as db:
                row = (
                    db.query(AuthorizedWorkerDB)
                    .filter(
                        AuthorizedWorkerDB.email == email,
                        AuthorizedWorkerDB.status == WorkerStatus.ACTIVE.value,
                    )
                    .first()
                )
        except Exception as e:
            # lookup failure is treated as unauthorized
            logger.error(f"[IDENTITY] Error verifying worker {email}: {e}")
            return Identity(authorized=False, reference=email, error=str(e))

        if row is None:
            logger.warning(f"[IDENTITY] Worker not found or inactive: {email}")
            return Identity(authorized=False, reference=email)

        logger.info(f"[IDENTITY] Worker authorized: {row.name} ({row.role})")
        return Identity(authorized=True, reference=email, worker_id=row.id, name=row.name, role=row.role)


# ============================================================================
# LOCAL OBJECT STORAGE
# ============================================================================

class LocalObjectStorage(ObjectStorage):
    """Stores uploads under UPLOAD_DIR; the app serves them at /uploads."""

    URL_PREFIX = "/uploads/"

    def __init__(self, root: Optional[str] = None, base_url: Optional[str] = None):
        self.root = Path(root or settings.UPLOAD_DIR)
        self.base_url = (base_url or settings.PUBLIC_BASE_URL).rstrip("/")
        self.root.mkdir(parents=True, exist_ok=True)

    def upload(self, data: bytes, filename: str, content_type: str, owner: str, folder: str = "reports") -> str:
        ext = Path(filename or "").suffix.lstrip(".").lower() or "jpg"
        safe_owner = "".join(c if c.isalnum() or c in "-_." else "_" for c in (owner or "anonymous"))
        relative = Path(folder) / safe_owner / f"{uuid.uuid4()}.{ext}"
        target = self.root / relative
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as e:
            logger.error(f"[STORAGE] Upload failed: {e}")
            raise StorageError(f"Storage: Failed to upload image - {e}")

        url = f"{self.base_url}{self.URL_PREFIX}{relative.as_posix()}"
        logger.info(f"[STORAGE] Image uploaded: {url}")
        return url

    def _local_path(self, url: str) -> Optional[Path]:
        prefix = f"{self.base_url}{self.URL_PREFIX}"
        if not url or not url.startswith(prefix):
            return None
        candidate = (self.root / url[len(prefix):]).resolve()
        if self.root.resolve() not in candidate.parents:
            return None
        return candidate

    def read(self, url: str) -> Optional[FetchedImage]:
        path = self._local_path(url)
        if path is None or not path.is_file():
            return None
        mime_type = "image/png" if path.suffix.lower() == ".png" else "image/jpeg"
        return FetchedImage(data=path.read_bytes(), mime_type=mime_type, source=url)
