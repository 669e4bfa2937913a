"""
Tests for the one-submission-per-(report, submitter) guard.
"""
from unittest.mock import MagicMock

import pytest

from conftest import WORKER_EMAIL
from models.db_models import ResolutionSubmissionDB
from modules.collaborators import SqlReportStore
from modules.duplicate_guard import DUPLICATE_MESSAGE, DuplicateGuard
from modules.errors import ConflictError, PersistenceError
from modules.records import ResolutionSubmission


def submission(submitter=WORKER_EMAIL, report_id="report-1"):
    return ResolutionSubmission(
        report_id=report_id,
        submitter=submitter,
        mode="strict",
        after_image_url="http://localhost:8000/uploads/resolutions/x.jpg",
        live_lat=28.6139,
        live_lng=77.2090,
        verification_status="verified",
        suspicion_score=10,
        ai_same_location=True,
        ai_issue_resolved=True,
        ai_suspicious=False,
        ai_confidence_score=85,
        suspicion_flags=["No timestamp in image metadata"],
    )


class TestDuplicateGuard:

    def test_first_submission_passes(self, seeded_db):
        guard = DuplicateGuard(SqlReportStore(seeded_db))
        guard.check("report-1", WORKER_EMAIL)

    def test_second_submission_conflicts_and_only_one_record_exists(self, seeded_db):
        store = SqlReportStore(seeded_db)
        guard = DuplicateGuard(store)

        guard.check("report-1", WORKER_EMAIL)
        store.record_outcome(submission(), "verified")

        with pytest.raises(ConflictError) as exc:
            guard.check("report-1", WORKER_EMAIL)
        assert exc.value.message == DUPLICATE_MESSAGE

        with seeded_db() as db:
            assert db.query(ResolutionSubmissionDB).count() == 1

    def test_other_submitter_is_not_a_duplicate(self, seeded_db):
        store = SqlReportStore(seeded_db)
        store.record_outcome(submission(), "verified")
        DuplicateGuard(store).check("report-1", "another.worker@city.gov")

    def test_store_error_fails_open(self):
        store = MagicMock()
        store.has_submission.side_effect = PersistenceError("database is locked")
        guard = DuplicateGuard(store)

        assert guard.is_duplicate("report-1", WORKER_EMAIL) is False
        guard.check("report-1", WORKER_EMAIL)

    def test_unique_constraint_backs_up_the_guard(self, seeded_db):
        store = SqlReportStore(seeded_db)
        store.record_outcome(submission(), "verified")
        with pytest.raises(ConflictError):
            store.record_outcome(submission(), "verified")

        with seeded_db() as db:
            assert db.query(ResolutionSubmissionDB).count() == 1
