"""
One resolution submission per (report, submitter) pair.

The check runs before any signal work. A store read failure lets the
submission through; the unique constraint on resolution_submissions still
rejects a real duplicate when the record is saved.
"""
import logging

from modules.collaborators import ReportStore
from modules.errors import ConflictError

logger = logging.getLogger(__name__)

DUPLICATE_MESSAGE = "You have already submitted a resolution for this report."


class DuplicateGuard:

    def __init__(self, store: ReportStore):
        self.store = store

    def is_duplicate(self, report_id: str, submitter: str) -> bool:
        try:
            exists = self.store.has_submission(report_id, submitter)
        except Exception as e:
            logger.warning(f"[DUPLICATE] Check failed for report {report_id}, allowing submission: {e}")
            return False

        if exists:
            logger.warning(f"[DUPLICATE] {submitter} already submitted for report {report_id}")
        return exists

    def check(self, report_id: str, submitter: str):
        """Raise ConflictError if the pair already has a submission."""
        if self.is_duplicate(report_id, submitter):
            raise ConflictError(DUPLICATE_MESSAGE)
