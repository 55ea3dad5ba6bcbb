"""
Pydantic models for claims, boundaries and verification results.

Every field is explicitly typed. Results produced by a verification run are
frozen: once an agent or the aggregator emits them they are audit records,
not working state.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


# ─── Enumerations ───────────────────────────────────────────────────


class ClaimStatus(str, Enum):
    """Lifecycle state of a claim."""

    INTAKE_PENDING = "INTAKE_PENDING"
    AI_VERIFIED = "AI_VERIFIED"
    SPATIAL_LOCKED = "SPATIAL_LOCKED"
    MINTED = "MINTED"
    GOVT_TITLE_SYNC = "GOVT_TITLE_SYNC"
    DISPUTED = "DISPUTED"
    REJECTED = "REJECTED"


class SpatialConflictStatus(str, Enum):
    CLEAR = "CLEAR"
    POTENTIAL_DISPUTE = "POTENTIAL_DISPUTE"
    HIGH_RISK = "HIGH_RISK"


class Severity(str, Enum):
    """Severity of a single boundary-pair overlap."""

    CRITICAL = "CRITICAL"  # Lock refused, escalated
    WARNING = "WARNING"  # Needs human review
    NONE = "NONE"  # Touching or negligible overlap


class AlertType(str, Enum):
    DOUBLE_SALE_SUSPECTED = "DOUBLE_SALE_SUSPECTED"
    CRITICAL_CONFLICT = "CRITICAL_CONFLICT"
    OVERLAP_WARNING = "OVERLAP_WARNING"
    NONE = "NONE"


class ResolutionStatus(str, Enum):
    PENDING_REVIEW = "PENDING_REVIEW"
    RESOLVED = "RESOLVED"


class Recommendation(str, Enum):
    AUTO_APPROVE = "AUTO_APPROVE"
    HUMAN_REVIEW = "HUMAN_REVIEW"
    REJECT = "REJECT"


class ConfidenceLevel(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class SignalName(str, Enum):
    """Identifies a signal agent; values double as weight keys."""

    DOCUMENT = "document"
    FRAUD = "fraud"
    TAMPERING = "tampering"
    GPS = "gps"
    SPATIAL = "spatial"
    GRANTOR_HISTORY = "grantor_history"


class MatchType(str, Enum):
    EXACT = "EXACT"
    PARTIAL = "PARTIAL"
    NO_MATCH = "NO_MATCH"


class FraudStatus(str, Enum):
    CLEAR = "CLEAR"
    NEEDS_REVIEW = "NEEDS_REVIEW"
    REJECTED = "REJECTED"


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class AnalysisSource(str, Enum):
    VISION = "VISION"
    FALLBACK = "FALLBACK"


class Recipient(str, Enum):
    BUYER = "BUYER"
    LAWYER = "LAWYER"
    SELLER = "SELLER"


class TransitionTrigger(str, Enum):
    VERIFICATION = "VERIFICATION"
    SPATIAL_LOCK = "SPATIAL_LOCK"
    LEDGER_ANCHOR = "LEDGER_ANCHOR"
    TITLE_SYNC = "TITLE_SYNC"
    CONFLICT_RECHECK = "CONFLICT_RECHECK"


# ─── Geometry ───────────────────────────────────────────────────────


class Coordinate(BaseModel):
    """A geodetic vertex (WGS-84 degrees)."""

    model_config = ConfigDict(frozen=True)

    lat: float
    lng: float


class Boundary(BaseModel):
    """Ordered polygon vertices, implicitly closed.

    Shape is validated by the geometry kernel, not here, so a malformed
    boundary surfaces as InvalidGeometry at the check that uses it.
    """

    model_config = ConfigDict(frozen=True)

    coordinates: list[Coordinate]

    @classmethod
    def from_points(cls, points: Iterable[tuple[float, float]]) -> "Boundary":
        """Build from ``(lat, lng)`` pairs."""
        return cls(coordinates=[Coordinate(lat=lat, lng=lng) for lat, lng in points])

    def points(self) -> list[tuple[float, float]]:
        return [(c.lat, c.lng) for c in self.coordinates]


# ─── Claim & Storage Rows ───────────────────────────────────────────


class ClaimIntake(BaseModel):
    """Fields supplied by a claimant at submission time."""

    claimant_id: str
    claimant_name: str
    claimant_email: str
    legal_contact_email: Optional[str] = None
    grantor_name: Optional[str] = None
    boundary: Optional[Boundary] = None
    document_text: str = ""
    document_image: Optional[str] = None  # base64-encoded scan
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class Claim(BaseModel):
    """A land claim as held by the claim store."""

    id: str = Field(default_factory=new_id)
    claimant_id: str
    claimant_name: str
    claimant_email: str
    legal_contact_email: Optional[str] = None
    grantor_name: Optional[str] = None
    boundary: Optional[Boundary] = None
    document_text: str = ""
    document_image: Optional[str] = None
    document_hash: str = ""
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    status: ClaimStatus = ClaimStatus.INTAKE_PENDING
    overall_confidence: Optional[float] = None
    fraud_score: Optional[float] = None
    spatial_conflict_status: SpatialConflictStatus = SpatialConflictStatus.CLEAR
    needs_human_review: bool = False
    latest_outcome_id: Optional[str] = None
    priority_hash: Optional[str] = None
    ledger_tx_reference: Optional[str] = None
    deleted: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class OnFileBoundary(BaseModel):
    """A boundary already registered, as returned by ``list_boundaries``."""

    model_config = ConfigDict(frozen=True)

    claim_id: str
    boundary: Boundary
    grantor_name: Optional[str] = None
    created_at: datetime
    status: ClaimStatus


class TitleRecord(BaseModel):
    """An on-file ownership record used for identity matching."""

    model_config = ConfigDict(frozen=True)

    record_id: str
    owner_name: str
    parcel_id: str = ""


class AuditEntry(BaseModel):
    """Append-only audit log row."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    claim_id: str
    actor: str  # Agent or component that produced the entry
    action: str
    payload: dict[str, Any] = Field(default_factory=dict)
    confidence: Optional[float] = None
    duration_ms: float = 0.0
    created_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_signal(cls, claim_id: str, result: "SignalResult") -> "AuditEntry":
        return cls(
            claim_id=claim_id,
            actor=f"{result.signal.value}_agent",
            action="SIGNAL_RESULT",
            payload=result.model_dump(mode="json"),
            confidence=result.confidence,
            duration_ms=result.duration_ms,
        )


# ─── Spatial Conflict ───────────────────────────────────────────────


class ConflictingClaim(BaseModel):
    """One on-file claim overlapping the candidate boundary."""

    model_config = ConfigDict(frozen=True)

    claim_id: str
    grantor_name: Optional[str] = None
    created_at: datetime
    status: ClaimStatus
    intersection_area_sqm: float
    overlap_pct: float
    iou: float
    severity: Severity
    alert_type: AlertType


class ConflictRecord(BaseModel):
    """Persisted record of a detected conflicting pair."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    claim_id: str
    conflicting_claim_id: str
    overlap_pct: float
    iou: float
    severity: Severity
    alert_type: AlertType
    detected_at: datetime = Field(default_factory=utcnow)
    resolution_status: ResolutionStatus = ResolutionStatus.PENDING_REVIEW
    resolution_notes: Optional[str] = None
    resolved_at: Optional[datetime] = None


class NotificationResult(BaseModel):
    success: bool
    email_sent: bool = False
    alert_id: Optional[str] = None
    error: Optional[str] = None


class DispatchResult(BaseModel):
    """Outcome of one conflict-alert fan-out."""

    success: bool  # True when the buyer notification succeeded
    email_sent: bool = False
    channels: dict[Recipient, NotificationResult] = Field(default_factory=dict)


class ConflictCheckResult(BaseModel):
    """Verdict of the Conflict Detector for one candidate boundary."""

    model_config = ConfigDict(frozen=True)

    has_conflict: bool = False
    is_blocked: bool = False
    requires_escalation: bool = False
    max_overlap_pct: float = 0.0
    max_iou: float = 0.0
    conflicting_claims: list[ConflictingClaim] = Field(default_factory=list)
    status: SpatialConflictStatus = SpatialConflictStatus.CLEAR
    reasoning: list[str] = Field(default_factory=list)
    degraded: bool = False
    error: Optional[str] = None
    conflict_records: list[ConflictRecord] = Field(default_factory=list)
    notification: Optional[DispatchResult] = None

    @property
    def has_critical(self) -> bool:
        return any(c.severity == Severity.CRITICAL for c in self.conflicting_claims)

    @property
    def prevents_lock(self) -> bool:
        return self.is_blocked or self.has_critical


class ConflictAlert(BaseModel):
    """Payload handed to the notification service for a detected conflict."""

    model_config = ConfigDict(frozen=True)

    claim_id: str
    conflicting_claim_id: str
    conflicting_claim_ids: list[str] = Field(default_factory=list)
    overlap_pct: float
    iou: float
    alert_type: AlertType
    detected_at: datetime = Field(default_factory=utcnow)
    claimant_id: str
    claimant_name: str
    claimant_email: str
    legal_contact_email: Optional[str] = None
    seller_name: Optional[str] = None
    priority_hash: Optional[str] = None
    claimant_priority_date: Optional[datetime] = None


class Notification(BaseModel):
    """One addressed message of the fan-out."""

    model_config = ConfigDict(frozen=True)

    recipient: Recipient
    severity: str  # "CRITICAL" or "HIGH"
    title: str
    message: str
    address: Optional[str] = None
    alert: ConflictAlert


# ─── Document Extraction ────────────────────────────────────────────


class ExtractedFields(BaseModel):
    """Pattern-based extraction from OCR text.

    Fields are Optional because extraction may fail for individual fields.
    ``confidence`` reflects how many fields were found, not their truth.
    """

    model_config = ConfigDict(frozen=True)

    grantor_name: Optional[str] = None
    parcel_id: Optional[str] = None
    document_date: Optional[str] = None  # Raw text, parsed by the date check
    extracted_text: str = ""
    confidence: float = 0.0


class DocumentAnalysis(BaseModel):
    """What the vision capability (or its fallback) reports about a document."""

    model_config = ConfigDict(frozen=True)

    document_type: str = "Unknown"
    grantor_name: Optional[str] = None
    grantee_name: Optional[str] = None
    parcel_id: Optional[str] = None
    location: Optional[str] = None
    document_date: Optional[str] = None
    confidence: float = 0.0
    is_authentic: bool = False
    fraud_indicators: list[str] = Field(default_factory=list)
    reasoning: str = ""
    source: AnalysisSource = AnalysisSource.FALLBACK


class TamperingAnalysis(BaseModel):
    model_config = ConfigDict(frozen=True)

    has_tampering: bool = False
    confidence: float = 0.5
    indicators: list[str] = Field(default_factory=list)
    reasoning: str = ""


# ─── Fraud Heuristics ───────────────────────────────────────────────


class MatchedRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    record_id: str
    owner_name: str
    parcel_id: str = ""


class FuzzyMatchResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    matched: bool = False
    match_score: float = 0.0
    matched_record: Optional[MatchedRecord] = None
    match_type: MatchType = MatchType.NO_MATCH
    note: Optional[str] = None  # Set when the lookup itself failed


class HeuristicCheck(BaseModel):
    """One item of the forgery checklist."""

    model_config = ConfigDict(frozen=True)

    passed: bool
    reason: str
    score: Optional[float] = None
    flags: list[str] = Field(default_factory=list)


class ForgeryHeuristics(BaseModel):
    model_config = ConfigDict(frozen=True)

    name_match: HeuristicCheck
    date_anomaly: HeuristicCheck
    formatting: HeuristicCheck


class FraudAssessment(BaseModel):
    """Final output of the fraud/forgery heuristics agent."""

    model_config = ConfigDict(frozen=True)

    status: FraudStatus
    confidence_score: float  # 1.0 = clean
    fraud_confidence: float  # 1 - confidence_score
    is_fraudulent: bool
    reasoning: list[str] = Field(default_factory=list)
    extraction: ExtractedFields
    fuzzy_match: FuzzyMatchResult
    heuristics: ForgeryHeuristics
    recommendation: str = ""


# ─── Signals & Outcome ──────────────────────────────────────────────


class SignalResult(BaseModel):
    """Output of one signal agent for one verification run."""

    model_config = ConfigDict(frozen=True)

    signal: SignalName
    confidence: float = Field(ge=0.0, le=1.0)  # Agent's own confidence in its verdict
    score: float = Field(ge=0.0, le=1.0)  # Contribution to the aggregate, 1.0 = good
    verdict: str
    flagged: bool = False
    escalate: bool = False
    reasoning: list[str] = Field(default_factory=list)
    duration_ms: float = 0.0
    degraded: bool = False
    error: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)


class VerificationOutcome(BaseModel):
    """The aggregator's decision for one verification run."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    claim_id: str
    overall_confidence: float
    confidence_level: ConfidenceLevel
    recommendation: Recommendation
    signals: list[SignalResult] = Field(default_factory=list)
    breakdown: dict[str, float] = Field(default_factory=dict)
    weights: dict[str, float] = Field(default_factory=dict)
    override: Optional[str] = None
    partial: bool = False
    reasoning: list[str] = Field(default_factory=list)
    conflict: Optional[ConflictCheckResult] = None
    created_at: datetime = Field(default_factory=utcnow)
    duration_ms: float = 0.0

    def signal(self, name: SignalName) -> Optional[SignalResult]:
        return next((s for s in self.signals if s.signal == name), None)


class TransitionResult(BaseModel):
    """Result of asking the state machine to move a claim."""

    claim_id: str
    previous_status: ClaimStatus
    status: ClaimStatus
    changed: bool
    trigger: TransitionTrigger
    reason: str = ""
    claim: Optional[Claim] = None
    conflict: Optional[ConflictCheckResult] = None


class ClaimReport(BaseModel):
    """Everything that happened to one claim during intake processing."""

    claim: Claim
    outcome: VerificationOutcome
    verification: TransitionResult
    lock: Optional[TransitionResult] = None
    conflict: Optional[ConflictCheckResult] = None
    """Recorded conflict check for a claim that never reached the lock step."""
