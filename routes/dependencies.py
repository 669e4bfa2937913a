"""
Shared collaborator wiring for the routers.

Everything is created lazily on first use and handed to endpoints through
FastAPI `Depends`, so tests can swap in fakes with `app.dependency_overrides`.
"""
from database import SessionLocal
from modules.ai_verification import AIVerificationAdapter, GeminiVisionOracle
from modules.audit_logger import AuditLogger
from modules.collaborators import LocalObjectStorage, SqlAuditSink, SqlReportStore, WorkerIdentityService
from modules.verification_pipeline import VerificationService

_store = None
_storage = None
_audit = None
_adapter = None
_service = None


def get_report_store() -> SqlReportStore:
    global _store
    if _store is None:
        _store = SqlReportStore(SessionLocal)
    return _store


def get_object_storage() -> LocalObjectStorage:
    global _storage
    if _storage is None:
        _storage = LocalObjectStorage()
    return _storage


def get_audit_logger() -> AuditLogger:
    global _audit
    if _audit is None:
        _audit = AuditLogger(SqlAuditSink(SessionLocal))
    return _audit


def get_ai_adapter() -> AIVerificationAdapter:
    global _adapter
    if _adapter is None:
        _adapter = AIVerificationAdapter(GeminiVisionOracle())
    return _adapter


def get_verification_service() -> VerificationService:
    global _service
    if _service is None:
        _service = VerificationService(
            store=get_report_store(),
            identity=WorkerIdentityService(SessionLocal),
            storage=get_object_storage(),
            audit=get_audit_logger(),
            adapter=get_ai_adapter(),
        )
    return _service


def shutdown():
    if _audit is not None:
        _audit.close()
