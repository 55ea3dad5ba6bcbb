"""
Signal agents: independent, narrow opinions about one claim.

Each agent reads an immutable VerificationContext and returns one
SignalResult whose ``score`` is oriented "1.0 = good". Agents never write to
storage and never see each other's results, so the aggregator can run them
all at once.

An agent raises AgentUnavailable when something it depends on is down; the
aggregator turns that (or any other exception) into a degraded signal.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict

from . import geometry
from .analysis import fallback_analysis
from .config import VerifierSettings, get_settings
from .conflicts import ConflictDetector
from .exceptions import AgentUnavailable
from .extractor_regex import extract_fields
from .fraud import assess_document
from .models import (
    Claim,
    ClaimStatus,
    Coordinate,
    OnFileBoundary,
    RiskLevel,
    SignalName,
    SignalResult,
    SpatialConflictStatus,
    TitleRecord,
)
from .storage import VisionCapability

logger = logging.getLogger(__name__)


class VerificationContext(BaseModel):
    """Frozen snapshot shared by every agent of one run.

    ``boundaries`` and ``title_records`` are None when they could not be
    loaded, which is different from an empty registry.
    """

    model_config = ConfigDict(frozen=True)

    claim: Claim
    boundaries: Optional[tuple[OnFileBoundary, ...]] = None
    title_records: Optional[tuple[TitleRecord, ...]] = None


class SignalAgent:
    """Base class: times the agent and stamps ``duration_ms`` on its result."""

    name: SignalName

    def __init__(self, settings: VerifierSettings | None = None):
        self.settings = settings or get_settings()

    async def run(self, context: VerificationContext) -> SignalResult:
        started = time.perf_counter()
        result = await self.evaluate(context)
        elapsed = (time.perf_counter() - started) * 1000
        return result.model_copy(update={"duration_ms": round(elapsed, 3)})

    async def evaluate(self, context: VerificationContext) -> SignalResult:
        raise NotImplementedError


# ─── Document ───────────────────────────────────────────────────────


class DocumentAnalysisAgent(SignalAgent):
    """Vision analysis of the document, with a structural fallback."""

    name = SignalName.DOCUMENT

    def __init__(self, vision: VisionCapability | None = None, settings: VerifierSettings | None = None):
        super().__init__(settings)
        self.vision = vision

    async def evaluate(self, context: VerificationContext) -> SignalResult:
        claim = context.claim
        text = claim.document_text
        reasoning: list[str] = []

        analysis = None
        if self.vision is not None and (text or claim.document_image):
            try:
                analysis = await asyncio.to_thread(
                    self.vision.analyze, text or None, claim.document_image
                )
            except Exception as e:
                logger.warning("Vision analysis failed, using structural fallback: %s", e)
                reasoning.append(f"Vision analysis failed ({e}); structural fallback used")
        if analysis is None:
            analysis = fallback_analysis(text)

        pattern = extract_fields(text)
        for label, seen, found in (
            ("grantor", analysis.grantor_name, pattern.grantor_name),
            ("parcel id", analysis.parcel_id, pattern.parcel_id),
        ):
            if seen and found and _canonical(seen) != _canonical(found):
                reasoning.append(
                    f'Extraction disagreement on {label}: model read "{seen}", pattern read "{found}"'
                )

        reasoning.append(analysis.reasoning)
        reasoning.extend(f"Indicator: {i}" for i in analysis.fraud_indicators)
        return SignalResult(
            signal=self.name,
            confidence=analysis.confidence,
            score=analysis.confidence,
            verdict="AUTHENTIC" if analysis.is_authentic else "SUSPICIOUS",
            flagged=not analysis.is_authentic,
            reasoning=reasoning,
            details=analysis.model_dump(mode="json"),
        )


def _canonical(value: str) -> str:
    return re.sub(r"[^a-z0-9]", "", value.lower())


# ─── Fraud ──────────────────────────────────────────────────────────


class FraudHeuristicsAgent(SignalAgent):
    """Extraction, identity match and forgery checklist on the document text."""

    name = SignalName.FRAUD

    def __init__(self, settings: VerifierSettings | None = None, today: date | None = None):
        super().__init__(settings)
        self.today = today

    async def evaluate(self, context: VerificationContext) -> SignalResult:
        records = list(context.title_records) if context.title_records is not None else None
        assessment = assess_document(
            context.claim.document_text, records, self.settings, self.today
        )
        return SignalResult(
            signal=self.name,
            confidence=assessment.fraud_confidence,
            score=assessment.confidence_score,
            verdict=assessment.status.value,
            flagged=assessment.is_fraudulent,
            reasoning=assessment.reasoning,
            details=assessment.model_dump(mode="json", exclude={"extraction": {"extracted_text"}}),
        )


# ─── Tampering ──────────────────────────────────────────────────────


class TamperingCheckAgent(SignalAgent):
    """Image forensics through the vision capability."""

    name = SignalName.TAMPERING

    def __init__(self, vision: VisionCapability | None = None, settings: VerifierSettings | None = None):
        super().__init__(settings)
        self.vision = vision

    async def evaluate(self, context: VerificationContext) -> SignalResult:
        image = context.claim.document_image
        if not image:
            return self._neutral("No document image supplied; neutral tampering score")
        if self.vision is None:
            return self._neutral("No vision capability configured; neutral tampering score")

        try:
            analysis = await asyncio.to_thread(self.vision.detect_tampering, image)
        except Exception as e:
            raise AgentUnavailable(f"Tampering analysis failed: {e}") from e
        if analysis is None:
            return self._neutral("Vision capability unavailable; neutral tampering score")

        score = 1.0 - analysis.confidence if analysis.has_tampering else analysis.confidence
        return SignalResult(
            signal=self.name,
            confidence=analysis.confidence,
            score=round(score, 4),
            verdict="TAMPERED" if analysis.has_tampering else "CLEAN",
            flagged=analysis.has_tampering,
            reasoning=[analysis.reasoning, *(f"Indicator: {i}" for i in analysis.indicators)],
            details=analysis.model_dump(mode="json"),
        )

    def _neutral(self, note: str) -> SignalResult:
        return SignalResult(
            signal=self.name,
            confidence=0.5,
            score=self.settings.no_image_tampering_score,
            verdict="NOT_CHECKED",
            reasoning=[note],
        )


# ─── GPS ────────────────────────────────────────────────────────────


def land_cover_band(lat: float) -> str:
    """Rough vegetation band for West African latitudes."""
    if lat > 14:
        return "Sahel/Semi-arid"
    if lat > 10:
        return "Savanna"
    if lat > 7:
        return "Forest/Agricultural"
    return "Coastal/Urban"


class GPSValidationAgent(SignalAgent):
    """Checks that the claimed location lies inside the service region."""

    name = SignalName.GPS

    async def evaluate(self, context: VerificationContext) -> SignalResult:
        claim = context.claim
        if claim.latitude is not None and claim.longitude is not None:
            point, source = Coordinate(lat=claim.latitude, lng=claim.longitude), "GPS reading"
        elif claim.boundary is not None:
            point, source = geometry.centroid(claim.boundary), "boundary centroid"
        else:
            return SignalResult(
                signal=self.name,
                confidence=0.5,
                score=self.settings.neutral_score,
                verdict="NO_LOCATION",
                reasoning=["No GPS reading or boundary supplied"],
            )

        s = self.settings
        inside = s.region_min_lat <= point.lat <= s.region_max_lat and (
            s.region_min_lng <= point.lng <= s.region_max_lng
        )
        score = s.gps_score_inside if inside else s.gps_score_outside
        cover = land_cover_band(point.lat)
        where = f"({point.lat:.4f}, {point.lng:.4f}) from {source}"
        reasoning = [
            f"Location {where} is {'inside' if inside else 'outside'} the service region",
            f"Estimated land cover: {cover}",
        ]
        return SignalResult(
            signal=self.name,
            confidence=score,
            score=score,
            verdict="VALID" if inside else "OUTSIDE_REGION",
            flagged=not inside,
            reasoning=reasoning,
            details={"lat": point.lat, "lng": point.lng, "source": source, "land_cover": cover},
        )


# ─── Grantor History ────────────────────────────────────────────────


class GrantorHistoryAgent(SignalAgent):
    """Dispute and rejection rate of earlier claims from the same grantor."""

    name = SignalName.GRANTOR_HISTORY

    async def evaluate(self, context: VerificationContext) -> SignalResult:
        claim = context.claim
        grantor = claim.grantor_name or extract_fields(claim.document_text).grantor_name
        if not grantor or len(grantor.strip()) < 2:
            return SignalResult(
                signal=self.name,
                confidence=0.5,
                score=self.settings.grantor_score_clean,
                verdict=RiskLevel.LOW.value,
                reasoning=["No grantor name provided for history check"],
            )
        if context.boundaries is None:
            raise AgentUnavailable("On-file claims unavailable for grantor history")

        needle = grantor.strip().lower()
        history = [
            b
            for b in context.boundaries
            if b.grantor_name
            and (needle in b.grantor_name.lower() or b.grantor_name.lower() in needle)
        ]
        total = len(history)
        disputed = sum(1 for b in history if b.status == ClaimStatus.DISPUTED)
        rejected = sum(1 for b in history if b.status == ClaimStatus.REJECTED)
        rate = (disputed + rejected) / total if total else 0.0

        s = self.settings
        if rate >= s.grantor_dispute_rate_high_risk:
            risk, score = RiskLevel.HIGH, s.grantor_score_high_risk
            note = f"RED FLAG SELLER: {grantor} has {rate:.0%} dispute/rejection rate across {total} claims"
        elif rate >= s.grantor_dispute_rate_warning:
            risk, score = RiskLevel.MEDIUM, s.grantor_score_warning
            note = f"WARNING: {grantor} has elevated dispute rate ({rate:.0%}), recommend additional verification"
        elif total == 0:
            risk, score = RiskLevel.LOW, s.grantor_score_clean
            note = f"No prior transaction history found for {grantor}"
        else:
            risk, score = RiskLevel.LOW, s.grantor_score_clean
            note = f"{grantor} has clean transaction history: {total} claims, {disputed} disputes"

        red_flag = risk != RiskLevel.LOW
        return SignalResult(
            signal=self.name,
            confidence=1.0 if total else 0.5,
            score=score,
            verdict=risk.value,
            flagged=red_flag,
            escalate=red_flag,
            reasoning=[note],
            details={
                "grantor_name": grantor,
                "total_claims": total,
                "disputed_claims": disputed,
                "rejected_claims": rejected,
                "dispute_rate": round(rate, 4),
            },
        )


# ─── Spatial ────────────────────────────────────────────────────────


class SpatialConflictAgent(SignalAgent):
    """Side-effect-free conflict evaluation over the snapshot."""

    name = SignalName.SPATIAL

    def __init__(self, detector: ConflictDetector | None = None, settings: VerifierSettings | None = None):
        super().__init__(settings)
        self.detector = detector or ConflictDetector(settings=self.settings)

    async def evaluate(self, context: VerificationContext) -> SignalResult:
        claim = context.claim
        if claim.boundary is None:
            return SignalResult(
                signal=self.name,
                confidence=0.5,
                score=self.settings.neutral_score,
                verdict=SpatialConflictStatus.CLEAR.value,
                reasoning=["No boundary supplied; spatial signal not weighted"],
                details={"skipped": True},
            )
        if context.boundaries is None:
            return SignalResult(
                signal=self.name,
                confidence=0.5,
                score=self.settings.neutral_score,
                verdict=SpatialConflictStatus.CLEAR.value,
                degraded=True,
                error="On-file boundaries unavailable",
                reasoning=["On-file boundaries unavailable; CLEAR pending recheck"],
            )

        result = self.detector.evaluate(claim.boundary, context.boundaries, claim.id)
        s = self.settings
        scores = {
            SpatialConflictStatus.CLEAR: s.spatial_score_clear,
            SpatialConflictStatus.POTENTIAL_DISPUTE: s.spatial_score_potential_dispute,
            SpatialConflictStatus.HIGH_RISK: s.spatial_score_high_risk,
        }
        return SignalResult(
            signal=self.name,
            confidence=round(1.0 - result.max_iou, 6),
            score=scores[result.status],
            verdict=result.status.value,
            flagged=result.status != SpatialConflictStatus.CLEAR,
            escalate=result.requires_escalation,
            reasoning=result.reasoning,
            details={"conflict": result.model_dump(mode="json")},
        )
