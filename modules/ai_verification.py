"""
Vision-language oracle adapter for before/after resolution verification and
report analysis.
Uses Google Gemini API.

Two verification contracts are supported:
- standard: same_location, issue_resolved, visual_similarity_score,
  resolution_confidence, suspicious, suspicion_reason, analysis_summary
- strict: adds fake_detected and reports visual_consistency_score instead

Every response is fence-stripped, parsed and schema-validated. Any failure
(upstream error, unparseable text, schema violation) produces a fail-closed
verdict: nothing positive, suspicious=true, confidence 0.

A third, single-image contract classifies new reports (issue type, severity,
priority, recommended authority). Its failures fall back to an unclassified
placeholder.
"""
import re
import json
import logging
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions
from pydantic import ValidationError as SchemaValidationError

from config import settings
from models.schemas import ReportAnalysis, StandardVerdict, StrictVerdict, verdict_summary
from modules.errors import (
    OracleCredentialsError,
    OracleQuotaError,
    UpstreamUnavailable,
)
from modules.perceptual_hash import FetchedImage, fetch_image

logger = logging.getLogger(__name__)

MODE_STANDARD = "standard"
MODE_STRICT = "strict"

FALLBACK_REASON = "AI verification unavailable - automatic SUSPICIOUS marking for manual review"
FALLBACK_SUMMARY = "Automated verification could not be completed. Manual review required."
FALLBACK_ANALYSIS_DESCRIPTION = "Image analysis unavailable. Manual review required for accurate classification."
UNCLASSIFIED_ISSUE = "Unclassified"

STANDARD_VERIFICATION_PROMPT = """You are an AI civic resolution verification engine.

You are given:
1. BEFORE image (original issue image)
2. AFTER image (worker resolution image)
3. Original issue type

Your task:
1. Determine whether the AFTER image was taken at the SAME location.
2. Determine whether the issue appears RESOLVED.
3. Identify inconsistencies, manipulation, or mismatched scenes.
4. Detect if the AFTER image is unrelated to the BEFORE image.

Rules:
- Base decisions only on visible evidence.
- If location landmarks differ significantly, same_location = false.
- If the issue object is still visible, issue_resolved = false.
- If the AFTER image lacks context, lower your confidence.
- If BEFORE and AFTER appear to be from different environments, suspicious = true.

Return ONLY valid JSON (no markdown, no extra text). Use this exact schema:
{
  "same_location": true/false,
  "issue_resolved": true/false,
  "visual_similarity_score": 0-100,
  "resolution_confidence": 0-100,
  "suspicious": true/false,
  "suspicion_reason": "",
  "analysis_summary": ""
}"""

STRICT_VERIFICATION_PROMPT = """You are an AI forensic image verification system.

You are given:
1. BEFORE image (original issue)
2. AFTER image (worker resolution image)
3. Issue type

Your tasks:
1. Determine if the AFTER image was captured at the same physical location.
2. Determine if the reported issue is visibly resolved.
3. Detect if the AFTER image is unrelated to the BEFORE image.
4. Detect signs of:
   - AI-generated content or generation artifacts
   - Stock image usage
   - Digital manipulation
   - Reused or staged composition
   - Inconsistent lighting or shadows
   - Unnatural artifacts

Rules:
- If landmarks differ, same_location = false
- If the issue object is still present, issue_resolved = false
- If scene structure is inconsistent, suspicious = true
- If the image appears overly clean or artificial, fake_detected = true
- If lighting/weather/time of day mismatch, suspicious = true
- If shadows do not match, suspicious = true
- If perspective is impossible, fake_detected = true
- Be strict and skeptical. Base decisions only on visible evidence.

Return ONLY valid JSON (no markdown, no extra text). Use this exact schema:
{
  "same_location": true/false,
  "issue_resolved": true/false,
  "fake_detected": true/false,
  "visual_consistency_score": 0-100,
  "resolution_confidence": 0-100,
  "suspicious": true/false,
  "suspicion_reason": "",
  "analysis_summary": ""
}"""

REPORT_ANALYSIS_PROMPT = """You are an AI civic issue analysis engine.

You are given one photo submitted by a citizen reporting a civic issue.

Your task:
1. Identify the issue type (garbage, pothole, broken streetlight, water leakage, drainage,
   infrastructure damage, illegal dumping, graffiti, road damage, etc).
2. Judge whether the photo shows a genuine, visible civic issue.
3. Write a short, specific description of what is visible.

Description rules:
- 1-2 sentences, 15-40 words.
- Mention at least two distinct visual details (size, material, surroundings, damage pattern).
- No template phrases such as "This image shows" or "There appears to be".

Severity: Low (cosmetic), Medium (affects functionality), High (urgent or dangerous).
Priority: 1-2 low urgency, 3 medium, 4-5 immediate action.
Recommended authority: Sanitation Department, Public Works, Electrical Department,
Water Department, or Municipal Services.

Return ONLY valid JSON (no markdown, no extra text). Use this exact schema:
{
  "issue_type": "",
  "confidence_score": 0-100,
  "is_valid_issue": true/false,
  "severity_level": "Low" | "Medium" | "High",
  "generated_description": "",
  "recommended_authority": "",
  "priority_score": 1-5
}"""


_VERDICT_MODELS = {
    MODE_STANDARD: StandardVerdict,
    MODE_STRICT: StrictVerdict,
}

Verdict = Union[StandardVerdict, StrictVerdict]


# ============================================================================
# ORACLE CLIENTS
# ============================================================================

class VisionOracle(ABC):
    """Opaque multimodal model: prompt + images in, raw text out."""

    @abstractmethod
    def generate(self, prompt: str, images: List[FetchedImage]) -> str:
        """Return the raw model text. Raise on upstream failure."""


class GeminiVisionOracle(VisionOracle):
    """Gemini-backed oracle."""

    def __init__(self, api_key: Optional[str] = None, model_name: Optional[str] = None):
        self.api_key = api_key or settings.GEMINI_API_KEY
        self.model_name = model_name or settings.LLM_MODEL

    def generate(self, prompt: str, images: List[FetchedImage]) -> str:
        if not self.api_key:
            logger.error("[ORACLE] GEMINI_API_KEY not set. Please set it in .env file.")
            raise OracleCredentialsError("Gemini API: API key not configured")

        genai.configure(api_key=self.api_key)
        model = genai.GenerativeModel(self.model_name)

        parts: List[Any] = [prompt]
        parts.extend({"mime_type": img.mime_type, "data": img.data} for img in images)

        logger.debug("[ORACLE] Calling Gemini API...")
        response = model.generate_content(
            parts,
            generation_config=genai.types.GenerationConfig(
                temperature=settings.LLM_TEMPERATURE,
                max_output_tokens=settings.LLM_MAX_OUTPUT_TOKENS,
            ),
        )

        if not response.candidates:
            raise UpstreamUnavailable("Gemini API: no candidates returned (safety block)")

        candidate = response.candidates[0]
        if not candidate.content or not candidate.content.parts:
            raise UpstreamUnavailable(f"Gemini API: empty response (finish_reason={candidate.finish_reason})")

        return response.text


def classify_oracle_error(error: Exception) -> UpstreamUnavailable:
    """Map an arbitrary oracle exception onto the upstream error kinds."""
    if isinstance(error, UpstreamUnavailable):
        return error

    message = str(error)
    lowered = message.lower()

    if isinstance(error, (google_exceptions.Unauthenticated, google_exceptions.PermissionDenied)):
        return OracleCredentialsError(f"Gemini API: Invalid API key ({message})")
    if isinstance(error, google_exceptions.ResourceExhausted):
        return OracleQuotaError(f"Gemini API: Quota exceeded ({message})")
    if "api key" in lowered or "api_key" in lowered:
        return OracleCredentialsError(f"Gemini API: Invalid API key ({message})")
    if "quota" in lowered:
        return OracleQuotaError(f"Gemini API: Quota exceeded ({message})")
    return UpstreamUnavailable(f"Gemini API error: {message}")


# ============================================================================
# RESPONSE PARSING
# ============================================================================

@dataclass
class VerdictOk:
    verdict: Union[Verdict, ReportAnalysis]


@dataclass
class VerdictParseError:
    message: str
    raw: str = ""
    kind: str = "parse_error"


@dataclass
class VerdictSchemaError:
    message: str
    errors: List[Dict[str, Any]] = field(default_factory=list)
    kind: str = "schema_error"


ParseResult = Union[VerdictOk, VerdictParseError, VerdictSchemaError]


def strip_code_fences(text: str) -> str:
    """Remove markdown code fences and surrounding chatter around a JSON object."""
    clean = (text or "").strip()
    clean = re.sub(r"^```[a-zA-Z]*\s*", "", clean)
    clean = re.sub(r"\s*```$", "", clean)
    json_match = re.search(r"\{.*\}", clean, re.DOTALL)
    if json_match:
        clean = json_match.group(0)
    return clean.strip()


def parse_model_response(text: str, model, label: str) -> ParseResult:
    """Parse and validate a raw oracle response against a pydantic contract."""
    clean = strip_code_fences(text)

    try:
        payload = json.loads(clean)
    except json.JSONDecodeError as e:
        logger.error(f"[ORACLE] Error parsing JSON response: {e}")
        logger.debug(f"[ORACLE] Response was: {(text or '')[:500]}")
        return VerdictParseError(message=f"JSON parsing error: {e}", raw=(text or "")[:500])

    if not isinstance(payload, dict):
        return VerdictSchemaError(message=f"Expected a JSON object, got {type(payload).__name__}")

    try:
        return VerdictOk(verdict=model.model_validate(payload))
    except SchemaValidationError as e:
        errors = e.errors()
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in errors)
        logger.error(f"[ORACLE] Invalid {label} structure: {fields}")
        return VerdictSchemaError(message=f"Invalid fields: {fields}", errors=errors)


def parse_verdict(text: str, mode: str = MODE_STANDARD) -> ParseResult:
    """Parse and validate a raw verification response for the given mode."""
    return parse_model_response(text, _VERDICT_MODELS[mode], f"verification ({mode})")


def parse_report_analysis(text: str) -> ParseResult:
    return parse_model_response(text, ReportAnalysis, "report analysis")


def fallback_verdict(mode: str = MODE_STANDARD) -> Verdict:
    """Fail-closed verdict: never yields an automatic pass."""
    common = dict(
        same_location=False,
        issue_resolved=False,
        resolution_confidence=0,
        suspicious=True,
        suspicion_reason=FALLBACK_REASON,
        analysis_summary=FALLBACK_SUMMARY,
    )
    if mode == MODE_STRICT:
        # a fallback does not claim the image is fake, only that it is unverified
        return StrictVerdict(fake_detected=False, visual_consistency_score=0, **common)
    return StandardVerdict(visual_similarity_score=0, **common)


def fallback_analysis() -> ReportAnalysis:
    """Placeholder analysis: unclassified, not validated, lowest priority."""
    return ReportAnalysis(
        issue_type=UNCLASSIFIED_ISSUE,
        confidence_score=0,
        is_valid_issue=False,
        severity_level="Low",
        generated_description=FALLBACK_ANALYSIS_DESCRIPTION,
        recommended_authority="Municipal Services",
        priority_score=1,
    )


# ============================================================================
# ADAPTER
# ============================================================================

@dataclass
class OracleOutcome:
    verdict: Verdict
    mode: str
    error_kind: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def is_fallback(self) -> bool:
        return self.error_kind is not None

    @property
    def is_permanent_error(self) -> bool:
        return self.error_kind in (OracleCredentialsError.kind, OracleQuotaError.kind)


@dataclass
class AnalysisOutcome:
    analysis: ReportAnalysis
    error_kind: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def is_fallback(self) -> bool:
        return self.error_kind is not None


def build_prompt(issue_type: Optional[str], mode: str) -> str:
    base = STRICT_VERIFICATION_PROMPT if mode == MODE_STRICT else STANDARD_VERIFICATION_PROMPT
    scrutiny = (
        "Analyze these two images with STRICT forensic scrutiny. "
        "Detect any signs of manipulation, AI generation, staging, or fraud."
        if mode == MODE_STRICT
        else "Analyze these two images and provide verification analysis."
    )
    return f"""{base}

Original Issue Type: {issue_type or 'Unknown'}

Image 1: BEFORE image (original issue)
Image 2: AFTER image (claimed resolution)

{scrutiny}"""


class AIVerificationAdapter:
    """Contract and fail-closed fallback around a VisionOracle."""

    def __init__(self, oracle: Optional[VisionOracle] = None):
        self.oracle = oracle or GeminiVisionOracle()

    def _fallback(self, mode: str, kind: str, message: str) -> OracleOutcome:
        logger.warning(f"[ORACLE] Returning fail-closed verdict ({kind}): {message}")
        return OracleOutcome(verdict=fallback_verdict(mode), mode=mode, error_kind=kind, error_message=message)

    def verify(
        self,
        before: Optional[FetchedImage],
        after: Optional[FetchedImage],
        issue_type: Optional[str],
        mode: str = MODE_STANDARD,
    ) -> OracleOutcome:
        """Adjudicate a before/after pair. Never raises."""
        if mode not in _VERDICT_MODELS:
            raise ValueError(f"Unknown verification mode: {mode}")

        if before is None or after is None:
            return self._fallback(mode, UpstreamUnavailable.kind, "Image unavailable for AI analysis")

        logger.info(f"[ORACLE] Sending {mode} verification request (issue type: {issue_type or 'Unknown'})")
        try:
            raw = self.oracle.generate(build_prompt(issue_type, mode), [before, after])
        except Exception as e:
            error = classify_oracle_error(e)
            if isinstance(error, (OracleCredentialsError, OracleQuotaError)):
                logger.error(f"[ORACLE] Permanent integration error: {error.message}")
            return self._fallback(mode, error.kind, error.message)

        result = parse_verdict(raw, mode)
        if isinstance(result, VerdictOk):
            logger.info(f"[ORACLE] Verdict parsed: {verdict_summary(result.verdict)}")
            return OracleOutcome(verdict=result.verdict, mode=mode)
        return self._fallback(mode, result.kind, result.message)

    def analyze_report(self, image: Optional[FetchedImage]) -> AnalysisOutcome:
        """Classify a reported issue from its before image. Never raises."""
        if image is None:
            return AnalysisOutcome(
                analysis=fallback_analysis(),
                error_kind=UpstreamUnavailable.kind,
                error_message="Image unavailable for AI analysis",
            )

        logger.info("[ORACLE] Sending report analysis request")
        try:
            raw = self.oracle.generate(REPORT_ANALYSIS_PROMPT, [image])
        except Exception as e:
            error = classify_oracle_error(e)
            logger.warning(f"[ORACLE] Report analysis failed ({error.kind}): {error.message}")
            return AnalysisOutcome(analysis=fallback_analysis(), error_kind=error.kind, error_message=error.message)

        result = parse_report_analysis(raw)
        if isinstance(result, VerdictOk):
            analysis = result.verdict
            logger.info(
                f"[ORACLE] Report analysed: {analysis.issue_type} "
                f"(severity {analysis.severity_level}, confidence {analysis.confidence_score})"
            )
            return AnalysisOutcome(analysis=analysis)

        logger.warning(f"[ORACLE] Report analysis unusable ({result.kind}): {result.message}")
        return AnalysisOutcome(analysis=fallback_analysis(), error_kind=result.kind, error_message=result.message)


    def verify_urls(
        self,
        before_url: str,
        after_url: str,
        issue_type: Optional[str],
        mode: str = MODE_STANDARD,
        storage=None,
    ) -> OracleOutcome:
        """Fetch both images concurrently, then adjudicate."""
        timeout = settings.ORACLE_DOWNLOAD_TIMEOUT
        with ThreadPoolExecutor(max_workers=2) as pool:
            futures = (
                pool.submit(fetch_image, before_url, timeout, storage),
                pool.submit(fetch_image, after_url, timeout, storage),
            )
            images = []
            for future in futures:
                try:
                    images.append(future.result())
                except UpstreamUnavailable as e:
                    logger.error(f"[ORACLE] {e.message}")
                    images.append(None)
        return self.verify(images[0], images[1], issue_type, mode)
