"""
Suspicion scoring and the verified/suspicious decision.

One engine serves both verification modes; a ModeConfig carries the
thresholds and policy differences:

- standard: any raised flag or any failed gate marks the submission
  suspicious (OR-gate).
- strict: every hard gate must pass AND the additive suspicion score must
  stay below the ceiling.

Each evidence source is turned into a SuspicionSignal (pass/fail plus
weighted flags). The suspicion score is always the plain sum of the weights
of the flags present, in the order they were raised.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from config import settings
from modules.ai_verification import MODE_STANDARD, MODE_STRICT, OracleOutcome
from modules.exif_forensics import ExifMetadata, hours_since_capture
from modules.geo_distance import haversine_distance_m, is_valid_coordinates, is_within_distance
from modules.perceptual_hash import ImageComparison

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_VERIFIED = "verified"
STATUS_SUSPICIOUS = "suspicious"

# flag code -> score contribution
FLAG_WEIGHTS: Dict[str, int] = {
    "location_too_far": 40,
    "location_unverifiable": 40,
    "exif_gps_deviation": 30,
    "no_gps_metadata": 20,
    "stale_timestamp": 15,
    "no_timestamp": 10,
    "near_duplicate": 50,
    "unrelated_images": 40,
    "oracle_suspicious": 30,
    "oracle_fake_detected": 50,
    "oracle_different_location": 35,
    "oracle_not_resolved": 30,
}


@dataclass
class ModeConfig:
    name: str
    max_distance_m: float
    min_confidence: float
    unrelated_similarity: float
    near_duplicate_similarity: float
    # None disables the EXIF-vs-live GPS comparison
    max_exif_deviation_m: Optional[float] = None
    # None disables the capture-time checks
    max_image_age_hours: Optional[float] = None
    # strict: accept only scores strictly below this; None means any flag rejects
    score_ceiling: Optional[int] = None
    use_fake_detection: bool = False
    # raise weighted flags for oracle location/resolution verdicts
    flag_oracle_verdicts: bool = False
    require_report_location: bool = False


def standard_mode() -> ModeConfig:
    return ModeConfig(
        name=MODE_STANDARD,
        max_distance_m=settings.STANDARD_MAX_DISTANCE_M,
        min_confidence=settings.STANDARD_MIN_CONFIDENCE,
        unrelated_similarity=settings.STANDARD_UNRELATED_SIMILARITY,
        near_duplicate_similarity=settings.NEAR_DUPLICATE_SIMILARITY,
    )


def strict_mode() -> ModeConfig:
    return ModeConfig(
        name=MODE_STRICT,
        max_distance_m=settings.STRICT_MAX_DISTANCE_M,
        min_confidence=settings.STRICT_MIN_CONFIDENCE,
        unrelated_similarity=settings.STRICT_UNRELATED_SIMILARITY,
        near_duplicate_similarity=settings.NEAR_DUPLICATE_SIMILARITY,
        max_exif_deviation_m=settings.STRICT_MAX_EXIF_DEVIATION_M,
        max_image_age_hours=settings.MAX_IMAGE_AGE_HOURS,
        score_ceiling=settings.STRICT_SCORE_CEILING,
        use_fake_detection=True,
        flag_oracle_verdicts=True,
        require_report_location=True,
    )


def mode_config(name: str) -> ModeConfig:
    if name == MODE_STRICT:
        return strict_mode()
    if name == MODE_STANDARD:
        return standard_mode()
    raise ValueError(f"Unknown verification mode: {name}")


@dataclass
class SuspicionFlag:
    code: str
    message: str

    @property
    def weight(self) -> int:
        return FLAG_WEIGHTS[self.code]


@dataclass
class SuspicionSignal:
    """Transient output of one evidence source. Never persisted."""
    source: str
    passed: bool = True
    flags: List[SuspicionFlag] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)

    def raise_flag(self, code: str, message: str):
        self.flags.append(SuspicionFlag(code, message))

    @property
    def score(self) -> int:
        return sum(f.weight for f in self.flags)


@dataclass
class Decision:
    status: str
    mode: str
    suspicion_score: int
    flags: List[SuspicionFlag]
    gates: Dict[str, bool]
    severity: Optional[str] = None

    @property
    def is_verified(self) -> bool:
        return self.status == STATUS_VERIFIED

    @property
    def flag_messages(self) -> List[str]:
        return [f.message for f in self.flags]

    @property
    def reason(self) -> Optional[str]:
        return "; ".join(self.flag_messages) or None

    @property
    def failed_gates(self) -> List[str]:
        return [name for name, ok in self.gates.items() if not ok]


def severity_for(score: int) -> str:
    if score >= 70:
        return "critical"
    if score >= 40:
        return "high"
    return "medium"


# ============================================================================
# SIGNAL EVALUATORS
# ============================================================================

def evaluate_location(
    report_lat: Optional[float],
    report_lng: Optional[float],
    live_lat: float,
    live_lng: float,
    mode: ModeConfig,
) -> SuspicionSignal:
    signal = SuspicionSignal(source="location", passed=False)

    if not is_valid_coordinates(report_lat, report_lng):
        signal.raise_flag("location_unverifiable", "Original report has no GPS coordinates for comparison")
        signal.details["distance_m"] = None
        return signal

    distance = haversine_distance_m(report_lat, report_lng, live_lat, live_lng)
    signal.details["distance_m"] = distance

    if not is_within_distance(report_lat, report_lng, live_lat, live_lng, mode.max_distance_m):

        signal.raise_flag(
            "location_too_far",
            f"Worker not at issue location: {distance:.1f}m away (max {mode.max_distance_m:.0f}m)",
        )
        logger.warning(f"[SCORING] Location fail: {distance:.2f}m > {mode.max_distance_m}m")
    else:
        signal.passed = True
        logger.info(f"[SCORING] Location verified: {distance:.2f}m within {mode.max_distance_m}m")
    return signal


def evaluate_exif(
    metadata: ExifMetadata,
    live_lat: float,
    live_lng: float,
    mode: ModeConfig,
    now: Optional[datetime] = None,
) -> SuspicionSignal:
    signal = SuspicionSignal(source="exif")
    signal.details.update(gps_deviation_m=None, hours_since_capture=None)

    if metadata.gps is None:
        signal.raise_flag("no_gps_metadata", "No GPS metadata in uploaded image")
    elif mode.max_exif_deviation_m is not None:
        deviation = haversine_distance_m(live_lat, live_lng, metadata.gps.latitude, metadata.gps.longitude)
        signal.details["gps_deviation_m"] = deviation
        if deviation > mode.max_exif_deviation_m:
            signal.raise_flag("exif_gps_deviation", f"EXIF GPS differs from live GPS by {deviation:.1f}m")

    if mode.max_image_age_hours is not None:
        if not metadata.timestamp:
            signal.raise_flag("no_timestamp", "No timestamp in image metadata")
        else:
            age = hours_since_capture(metadata.timestamp, now, metadata.timestamp_offset)
            signal.details["hours_since_capture"] = age
            if age is None:
                signal.raise_flag("no_timestamp", "Image timestamp metadata is unreadable")
            elif age > mode.max_image_age_hours:
                signal.raise_flag("stale_timestamp", f"Image timestamp is {round(age)} hours old")

    signal.passed = not signal.flags
    return signal


def evaluate_similarity(comparison: ImageComparison, mode: ModeConfig) -> SuspicionSignal:
    signal = SuspicionSignal(source="image_similarity")
    signal.details.update(similarity=comparison.similarity, hash_distance=comparison.hash_distance)

    if comparison.similarity > mode.near_duplicate_similarity:
        signal.raise_flag(
            "near_duplicate",
            "Images are nearly identical - possible fake resolution or reused image",
        )
    if comparison.similarity < mode.unrelated_similarity:
        signal.raise_flag(
            "unrelated_images",
            "Images appear completely unrelated - possible wrong location or staged photo",
        )

    signal.passed = not signal.flags
    return signal


def evaluate_oracle(outcome: OracleOutcome, mode: ModeConfig) -> SuspicionSignal:
    verdict = outcome.verdict
    signal = SuspicionSignal(source="oracle")
    signal.details.update(fallback=outcome.is_fallback, error_kind=outcome.error_kind)

    if verdict.suspicious:
        signal.raise_flag("oracle_suspicious", verdict.suspicion_reason or "AI flagged the submission as suspicious")
    if mode.use_fake_detection and verdict.fake_detected:
        signal.raise_flag("oracle_fake_detected", "AI detected possible fake, manipulated, or AI-generated image")
    if mode.flag_oracle_verdicts:
        if not verdict.same_location:
            signal.raise_flag("oracle_different_location", "AI determined images are from different locations")
        if not verdict.issue_resolved:
            signal.raise_flag("oracle_not_resolved", "AI determined issue is not resolved")

    signal.passed = (
        verdict.same_location
        and verdict.issue_resolved
        and not verdict.suspicious
        and not (mode.use_fake_detection and verdict.fake_detected)
        and verdict.resolution_confidence >= mode.min_confidence
    )
    return signal


# ============================================================================
# ENGINE
# ============================================================================

@dataclass
class ScoringInputs:
    report_lat: Optional[float]
    report_lng: Optional[float]
    live_lat: float
    live_lng: float
    exif: ExifMetadata
    comparison: ImageComparison
    oracle: OracleOutcome
    now: Optional[datetime] = None


@dataclass
class ScoringResult:
    decision: Decision
    signals: Dict[str, SuspicionSignal]


class SuspicionScoringEngine:
    """
    Single-transition state machine: pending -> verified | suspicious.

    `audit` is an AuditLogger; `record_suspicious` is invoked for every
    suspicious outcome, either from `evaluate` or from `audit_outcome`.
    """

    def __init__(self, mode: ModeConfig, audit=None):
        self.mode = mode
        self.audit = audit

    def collect_signals(self, inputs: ScoringInputs) -> Dict[str, SuspicionSignal]:
        mode = self.mode
        return {
            "location": evaluate_location(inputs.report_lat, inputs.report_lng, inputs.live_lat, inputs.live_lng, mode),
            "exif": evaluate_exif(inputs.exif, inputs.live_lat, inputs.live_lng, mode, inputs.now),
            "image_similarity": evaluate_similarity(inputs.comparison, mode),
            "oracle": evaluate_oracle(inputs.oracle, mode),
        }

    def decide(
        self,
        location_passed: bool,
        distance_m: Optional[float],
        verdict,
        flags: List[SuspicionFlag],
    ) -> Decision:
        mode = self.mode
        score = sum(f.weight for f in flags)

        gates = {
            "location_match": bool(location_passed),
            "within_distance": distance_m is not None and distance_m <= mode.max_distance_m,
            "oracle_same_location": bool(verdict.same_location),
            "oracle_issue_resolved": bool(verdict.issue_resolved),
            "oracle_not_suspicious": not verdict.suspicious,
            "oracle_confidence": verdict.resolution_confidence >= mode.min_confidence,
        }
        if mode.use_fake_detection:
            gates["oracle_not_fake"] = not verdict.fake_detected
        if mode.score_ceiling is not None:
            gates["score_below_ceiling"] = score < mode.score_ceiling
        else:
            gates["no_flags"] = not flags

        status = STATUS_VERIFIED if all(gates.values()) else STATUS_SUSPICIOUS
        decision = Decision(
            status=status,
            mode=mode.name,
            suspicion_score=score,
            flags=list(flags),
            gates=gates,
            severity=severity_for(score) if status == STATUS_SUSPICIOUS else None,
        )

        if decision.is_verified:
            logger.info(f"[SCORING] {mode.name.upper()} VERIFIED - all checks passed (score {score})")
        else:
            logger.warning(
                f"[SCORING] {mode.name.upper()} SUSPICIOUS - score {score}, "
                f"failed gates: {', '.join(decision.failed_gates)}"
            )
        return decision

    def audit_outcome(self, decision: Decision, audit_context: Dict[str, Any]):
        """Record a suspicious decision on the audit channel. Verified decisions are not recorded."""
        if decision.is_verified or self.audit is None:
            return
        self.audit.record_suspicious(
            report_id=audit_context.get("report_id"),
            submitter=audit_context.get("submitter", "unknown"),
            decision=decision,
            ip_address=audit_context.get("ip_address"),
        )

    def evaluate(self, inputs: ScoringInputs, audit_context: Optional[Dict[str, Any]] = None) -> ScoringResult:
        """
        Score the inputs and decide. With `audit_context` a suspicious outcome
        is audited right away; without it the caller audits through
        `audit_outcome` once the outcome is stored.
        """
        signals = self.collect_signals(inputs)
        flags = [f for signal in signals.values() for f in signal.flags]
        location = signals["location"]

        decision = self.decide(
            location_passed=location.passed,
            distance_m=location.details.get("distance_m"),
            verdict=inputs.oracle.verdict,
            flags=flags,
        )

        if audit_context is not None:
            self.audit_outcome(decision, audit_context)

        return ScoringResult(decision=decision, signals=signals)

