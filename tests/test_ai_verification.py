"""
Tests for the vision oracle adapter: parsing, schema validation and fail-closed fallbacks.
"""
import json
from unittest.mock import MagicMock, patch

import pytest
import requests
from google.api_core import exceptions as google_exceptions

from conftest import FakeOracle, report_analysis_payload, strict_verdict_payload, verdict_payload
from modules.ai_verification import (
    FALLBACK_REASON,
    MODE_STANDARD,
    MODE_STRICT,
    REPORT_ANALYSIS_PROMPT,
    UNCLASSIFIED_ISSUE,
    AIVerificationAdapter,
    GeminiVisionOracle,
    VerdictOk,
    VerdictParseError,
    VerdictSchemaError,
    build_prompt,
    classify_oracle_error,
    fallback_verdict,
    parse_report_analysis,
    parse_verdict,
    strip_code_fences,
)
from modules.errors import OracleCredentialsError, OracleQuotaError, UpstreamUnavailable
from modules.perceptual_hash import FetchedImage

BEFORE = FetchedImage(data=b"before-bytes", mime_type="image/jpeg")
AFTER = FetchedImage(data=b"after-bytes", mime_type="image/png")


class TestParsing:

    def test_fenced_json_parses_like_bare_json(self):
        bare = json.dumps(verdict_payload(suspicion_reason="```not a fence```"))
        fenced = f"```json\n{bare}\n```"

        bare_result = parse_verdict(bare, MODE_STANDARD)
        fenced_result = parse_verdict(fenced, MODE_STANDARD)

        assert isinstance(fenced_result, VerdictOk)
        assert fenced_result.verdict == bare_result.verdict
        assert fenced_result.verdict.suspicion_reason == "```not a fence```"

    def test_fence_stripping_is_idempotent(self):
        fenced = "```json\n{\"a\": 1}\n```"
        once = strip_code_fences(fenced)
        assert strip_code_fences(once) == once == "{\"a\": 1}"

    def test_surrounding_chatter_is_ignored(self):
        raw = "Here is my analysis:\n" + json.dumps(verdict_payload()) + "\nThanks!"
        assert isinstance(parse_verdict(raw, MODE_STANDARD), VerdictOk)

    def test_invalid_json_is_parse_error(self):
        result = parse_verdict("I cannot help with that", MODE_STANDARD)
        assert isinstance(result, VerdictParseError)
        assert result.kind == "parse_error"

    def test_non_object_is_schema_error(self):
        assert isinstance(parse_verdict("[1, 2]", MODE_STANDARD), VerdictSchemaError)

    def test_missing_field_is_schema_error(self):
        payload = verdict_payload()
        del payload["issue_resolved"]
        result = parse_verdict(json.dumps(payload), MODE_STANDARD)
        assert isinstance(result, VerdictSchemaError)
        assert "issue_resolved" in result.message

    def test_string_boolean_is_rejected(self):
        result = parse_verdict(json.dumps(verdict_payload(same_location="true")), MODE_STANDARD)
        assert isinstance(result, VerdictSchemaError)

    def test_out_of_range_confidence_is_rejected(self):
        result = parse_verdict(json.dumps(verdict_payload(resolution_confidence=101)), MODE_STANDARD)
        assert isinstance(result, VerdictSchemaError)

    def test_strict_contract_requires_fake_detected(self):
        payload = strict_verdict_payload()
        del payload["fake_detected"]
        assert isinstance(parse_verdict(json.dumps(payload), MODE_STRICT), VerdictSchemaError)

    def test_strict_contract(self):
        result = parse_verdict(json.dumps(strict_verdict_payload(fake_detected=True)), MODE_STRICT)
        assert isinstance(result, VerdictOk)
        assert result.verdict.fake_detected is True
        assert result.verdict.similarity_score == 60


class TestFallbackVerdict:

    @pytest.mark.parametrize("mode", [MODE_STANDARD, MODE_STRICT])
    def test_never_positive(self, mode):
        verdict = fallback_verdict(mode)
        assert verdict.same_location is False
        assert verdict.issue_resolved is False
        assert verdict.suspicious is True
        assert verdict.resolution_confidence == 0
        assert verdict.suspicion_reason == FALLBACK_REASON


class TestErrorClassification:

    def test_unauthenticated_is_credentials_error(self):
        error = classify_oracle_error(google_exceptions.Unauthenticated("bad key"))
        assert isinstance(error, OracleCredentialsError)

    def test_resource_exhausted_is_quota_error(self):
        error = classify_oracle_error(google_exceptions.ResourceExhausted("slow down"))
        assert isinstance(error, OracleQuotaError)

    def test_message_sniffing(self):
        assert isinstance(classify_oracle_error(RuntimeError("API key not valid")), OracleCredentialsError)
        assert isinstance(classify_oracle_error(RuntimeError("Quota exceeded for model")), OracleQuotaError)

    def test_everything_else_is_upstream_unavailable(self):
        error = classify_oracle_error(TimeoutError("read timed out"))
        assert type(error) is UpstreamUnavailable


class TestAdapter:

    def test_valid_response(self):
        oracle = FakeOracle(payload=verdict_payload())
        outcome = AIVerificationAdapter(oracle).verify(BEFORE, AFTER, "pothole", MODE_STANDARD)

        assert not outcome.is_fallback
        assert outcome.verdict.issue_resolved is True
        prompt, images = oracle.calls[0]
        assert "Original Issue Type: pothole" in prompt
        assert images == [BEFORE, AFTER]

    @pytest.mark.parametrize("error", [
        TimeoutError("deadline exceeded"),
        google_exceptions.ServiceUnavailable("overloaded"),
        RuntimeError("connection reset"),
    ])
    def test_upstream_error_is_fail_closed(self, error):
        outcome = AIVerificationAdapter(FakeOracle(error=error)).verify(BEFORE, AFTER, "garbage", MODE_STRICT)
        assert outcome.verdict.suspicious is True
        assert outcome.verdict.resolution_confidence == 0
        assert outcome.error_kind == "upstream_unavailable"
        assert not outcome.is_permanent_error

    def test_permanent_errors_are_surfaced(self):
        adapter = AIVerificationAdapter(FakeOracle(error=google_exceptions.PermissionDenied("key revoked")))
        outcome = adapter.verify(BEFORE, AFTER, None, MODE_STANDARD)
        assert outcome.error_kind == "invalid_credentials"
        assert outcome.is_permanent_error
        assert outcome.verdict.suspicious is True

    def test_schema_error_is_fail_closed(self):
        outcome = AIVerificationAdapter(FakeOracle(raw="{\"same_location\": true}")).verify(
            BEFORE, AFTER, None, MODE_STANDARD
        )
        assert outcome.error_kind == "schema_error"
        assert outcome.verdict.same_location is False

    def test_missing_image_skips_oracle(self):
        oracle = FakeOracle(payload=verdict_payload())
        outcome = AIVerificationAdapter(oracle).verify(None, AFTER, None, MODE_STANDARD)
        assert outcome.error_kind == "upstream_unavailable"
        assert oracle.calls == []

    def test_unknown_mode(self):
        with pytest.raises(ValueError):
            AIVerificationAdapter(FakeOracle(payload={})).verify(BEFORE, AFTER, None, "lenient")

    def test_verify_urls_fetch_failure_is_fail_closed(self):
        storage = MagicMock()
        storage.read.return_value = None
        oracle = FakeOracle(payload=verdict_payload())
        with patch("modules.perceptual_hash.requests.get", side_effect=requests.ConnectionError("offline")):
            outcome = AIVerificationAdapter(oracle).verify_urls(
                "http://cdn.example.com/a.jpg", "http://cdn.example.com/b.jpg", "pothole", storage=storage
            )
        assert outcome.is_fallback
        assert oracle.calls == []


class TestGeminiOracle:

    def test_missing_api_key(self):
        oracle = GeminiVisionOracle(api_key="", model_name="gemini-1.5-pro")
        oracle.api_key = None
        with pytest.raises(OracleCredentialsError):
            oracle.generate("prompt", [BEFORE, AFTER])

    def test_sends_prompt_and_inline_images(self):
        response = MagicMock()
        response.text = json.dumps(verdict_payload())
        model = MagicMock()
        model.generate_content.return_value = response

        with patch("modules.ai_verification.genai") as mock_genai:
            mock_genai.GenerativeModel.return_value = model
            text = GeminiVisionOracle(api_key="test-key", model_name="gemini-1.5-pro").generate("prompt", [BEFORE, AFTER])

        assert text == response.text
        mock_genai.configure.assert_called_once_with(api_key="test-key")
        parts = model.generate_content.call_args[0][0]
        assert parts[0] == "prompt"
        assert parts[1] == {"mime_type": "image/jpeg", "data": b"before-bytes"}
        assert parts[2] == {"mime_type": "image/png", "data": b"after-bytes"}

    def test_blocked_response_raises_upstream_unavailable(self):
        response = MagicMock()
        response.candidates = []
        model = MagicMock()
        model.generate_content.return_value = response

        with patch("modules.ai_verification.genai") as mock_genai:
            mock_genai.GenerativeModel.return_value = model
            with pytest.raises(UpstreamUnavailable):
                GeminiVisionOracle(api_key="test-key").generate("prompt", [BEFORE, AFTER])


class TestReportAnalysis:

    def test_fenced_analysis_parses(self):
        raw = f"```json\n{json.dumps(report_analysis_payload())}\n```"
        result = parse_report_analysis(raw)
        assert isinstance(result, VerdictOk)
        assert result.verdict.severity_level == "High"
        assert result.verdict.priority_score == 4

    @pytest.mark.parametrize("overrides", [
        dict(severity_level="Critical"),
        dict(priority_score=0),
        dict(priority_score=6),
        dict(confidence_score=101),
        dict(is_valid_issue="yes"),
    ])
    def test_contract_violations_are_schema_errors(self, overrides):
        raw = json.dumps(report_analysis_payload(**overrides))
        assert isinstance(parse_report_analysis(raw), VerdictSchemaError)

    def test_adapter_sends_single_image_with_analysis_prompt(self):
        oracle = FakeOracle(payload=report_analysis_payload())
        outcome = AIVerificationAdapter(oracle).analyze_report(BEFORE)

        assert not outcome.is_fallback
        assert outcome.analysis.issue_type == "pothole"
        prompt, images = oracle.calls[0]
        assert prompt == REPORT_ANALYSIS_PROMPT
        assert images == [BEFORE]

    @pytest.mark.parametrize("oracle,kind", [
        (FakeOracle(error=google_exceptions.ResourceExhausted("quota")), "quota_exceeded"),
        (FakeOracle(error=TimeoutError("deadline exceeded")), "upstream_unavailable"),
        (FakeOracle(raw="I cannot classify this"), "parse_error"),
        (FakeOracle(payload=report_analysis_payload(severity_level="Urgent")), "schema_error"),
    ])
    def test_failures_fall_back_to_unclassified(self, oracle, kind):
        outcome = AIVerificationAdapter(oracle).analyze_report(BEFORE)

        assert outcome.is_fallback
        assert outcome.error_kind == kind
        assert outcome.analysis.issue_type == UNCLASSIFIED_ISSUE
        assert outcome.analysis.is_valid_issue is False
        assert outcome.analysis.priority_score == 1

    def test_missing_image_skips_oracle(self):
        oracle = FakeOracle(payload=report_analysis_payload())
        outcome = AIVerificationAdapter(oracle).analyze_report(None)
        assert outcome.is_fallback
        assert oracle.calls == []


def test_strict_prompt_asks_for_forensics():
    prompt = build_prompt("streetlight", MODE_STRICT)
    assert "fake_detected" in prompt
    assert "STRICT forensic scrutiny" in prompt
