"""
Append-only audit side-channel.

Entry-point guards and the scoring engine call one of the `record_*`
helpers; the logger hands the record to a background worker that writes it
to the AuditSink. Sink failures are logged and dropped so an audit problem
never blocks or fails a verification.
"""
import queue
import logging
import threading
from datetime import datetime, timedelta
from typing import List, Optional

from config import settings
from modules.collaborators import AuditSink
from modules.records import AuditRecord
from modules.suspicion_scoring import Decision

logger = logging.getLogger(__name__)

EVENT_SUSPICIOUS = "suspicious_resolution_attempt"
EVENT_DUPLICATE = "duplicate_submission"
EVENT_UNAUTHORIZED = "unauthorized_submission"
EVENT_VALIDATION = "validation_failure"
EVENT_SYSTEM_ERROR = "system_error"

SEVERITY_ERROR = "error"

EXCESSIVE_ATTEMPTS_THRESHOLD = 5
EXCESSIVE_ATTEMPTS_MIN_SCORE = 30
EXCESSIVE_ATTEMPTS_WINDOW_HOURS = 24
RECENT_ATTEMPTS_LIMIT = 100


class AuditLogger:

    def __init__(self, sink: AuditSink, background: Optional[bool] = None):
        self.sink = sink
        self.background = settings.AUDIT_BACKGROUND_WORKER if background is None else background
        self._queue: "queue.Queue[Optional[AuditRecord]]" = queue.Queue()
        self._worker: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # write side
    # ------------------------------------------------------------------

    def record(self, record: AuditRecord):
        """Queue a record for the sink. Never raises."""
        if record.created_at is None:
            record.created_at = datetime.utcnow()

        logger.info(
            f"[AUDIT] {record.event_type}: submitter={record.submitter} "
            f"report={record.report_id} severity={record.severity} score={record.suspicion_score}"
        )

        if not self.background:
            self._write(record)
            return

        self._ensure_worker()
        self._queue.put(record)

    def record_suspicious(
        self,
        report_id: Optional[str],
        submitter: str,
        decision: Decision,
        ip_address: Optional[str] = None,
    ):
        reason = decision.reason or "Failed verification: " + ", ".join(decision.failed_gates)
        self.record(AuditRecord(
            report_id=report_id,
            submitter=submitter,
            reason=f"[{decision.mode.upper()}] {reason}",
            suspicion_score=decision.suspicion_score,
            severity=decision.severity or "medium",
            event_type=EVENT_SUSPICIOUS,
            ip_address=ip_address,
        ))

    def record_rejection(
        self,
        report_id: Optional[str],
        submitter: Optional[str],
        reason: str,
        event_type: str,
        severity: str = "medium",
        suspicion_score: int = 0,
        ip_address: Optional[str] = None,
    ):
        self.record(AuditRecord(
            report_id=report_id,
            submitter=submitter or "unknown",
            reason=reason,
            suspicion_score=suspicion_score,
            severity=severity,
            event_type=event_type,
            ip_address=ip_address,
        ))

    def _write(self, record: AuditRecord):
        try:
            self.sink.append(record)
        except Exception as e:
            logger.error(f"[AUDIT] Failed to write audit record ({record.event_type}): {e}")

    def _ensure_worker(self):
        with self._lock:
            if self._worker is not None and self._worker.is_alive():
                return
            self._worker = threading.Thread(target=self._run, name="audit-writer", daemon=True)
            self._worker.start()

    def _run(self):
        while True:
            record = self._queue.get()
            try:
                if record is None:
                    return
                self._write(record)
            finally:
                self._queue.task_done()

    def drain(self):
        """Block until every queued record has been handed to the sink."""
        if self.background:
            self._queue.join()

    def close(self):
        with self._lock:
            worker = self._worker
        if worker is not None and worker.is_alive():
            self._queue.put(None)
            worker.join(timeout=5)

    # ------------------------------------------------------------------
    # read side
    # ------------------------------------------------------------------

    def records_for_submitter(self, submitter: str, limit: int = 50) -> List[AuditRecord]:
        return self.sink.list_by_submitter(submitter, limit)

    def recent_suspicious_attempts(
        self,
        hours: int = EXCESSIVE_ATTEMPTS_WINDOW_HOURS,
        limit: int = RECENT_ATTEMPTS_LIMIT,
    ) -> List[AuditRecord]:
        """Audit records from every submitter in the last `hours`, highest score first."""
        since = datetime.utcnow() - timedelta(hours=hours)
        try:
            return self.sink.list_recent(since, limit)
        except Exception as e:
            logger.error(f"[AUDIT] Error fetching recent suspicious attempts: {e}")
            return []

    def has_excessive_suspicious_attempts(
        self,
        submitter: str,
        hours: int = EXCESSIVE_ATTEMPTS_WINDOW_HOURS,
        threshold: int = EXCESSIVE_ATTEMPTS_THRESHOLD,
        min_score: int = EXCESSIVE_ATTEMPTS_MIN_SCORE,
    ) -> bool:
        since = datetime.utcnow() - timedelta(hours=hours)
        try:
            count = self.sink.count_since(submitter, since, min_score)
        except Exception as e:
            logger.error(f"[AUDIT] Error checking suspicious attempts for {submitter}: {e}")
            return False
        if count >= threshold:
            logger.warning(f"[AUDIT] {submitter} has {count} suspicious attempts in the last {hours}h")
        return count >= threshold
