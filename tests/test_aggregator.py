"""
Tests for the signal agents and the confidence aggregator.

Aggregation is exercised with stub agents so each weight, override and
failure mode can be pinned down; the default agents are then run end to end
on a real indenture.
"""

from __future__ import annotations

import asyncio
from datetime import date, datetime, timezone

import pytest

from claim_verifier.agents import (
    DocumentAnalysisAgent,
    GPSValidationAgent,
    GrantorHistoryAgent,
    SignalAgent,
    SpatialConflictAgent,
    TamperingCheckAgent,
    VerificationContext,
)
from claim_verifier.aggregator import ConfidenceAggregator
from claim_verifier.config import VerifierSettings
from claim_verifier.exceptions import AgentUnavailable
from claim_verifier.models import (
    AnalysisSource,
    Boundary,
    Claim,
    ClaimStatus,
    ConfidenceLevel,
    DocumentAnalysis,
    OnFileBoundary,
    Recommendation,
    RiskLevel,
    SignalName,
    SignalResult,
    TamperingAnalysis,
)
from claim_verifier.storage import InMemoryClaimStore, load_title_records

TODAY = date(2026, 10, 18)
SETTINGS = VerifierSettings()

PARCEL = Boundary.from_points([
    (5.6000, -0.1900),
    (5.6000, -0.1890),
    (5.6010, -0.1890),
    (5.6010, -0.1900),
])

KOFI_DEED = """\
THIS INDENTURE is made at Accra in the Greater Accra Region.
Grantor: Kofi Mensah
Parcel ID: GA12345678
Date of Issue: 15th January 2019
WITNESSETH that the Grantor, being the lawful owner of the land described,
conveys the said parcel with all rights attached to the Grantee.
Situated at East Legon, plan attached.
Signed, sealed and delivered in the presence of witnesses."""

UNKNOWN_FUTURE_DEED = (
    KOFI_DEED.replace("Kofi Mensah", "Zebulon Quartey")
    .replace("GA12345678", "GA99999999")
    .replace("15th January 2019", "15th January 2030")
)


def make_claim(**overrides) -> Claim:
    fields = dict(
        claimant_id="buyer-001",
        claimant_name="Akua Darko",
        claimant_email="akua@example.com",
        grantor_name="Kofi Mensah",
        boundary=PARCEL,
        document_text=KOFI_DEED,
    )
    fields.update(overrides)
    return Claim(**fields)


def on_file(claim_id: str, status: ClaimStatus, grantor: str = "Kofi Mensah") -> OnFileBoundary:
    return OnFileBoundary(
        claim_id=claim_id,
        boundary=Boundary.from_points([(6.0, -1.0), (6.0, -0.999), (6.001, -0.999)]),
        grantor_name=grantor,
        created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        status=status,
    )


# ─── Stubs ───────────────────────────────────────────────────────────


class StubAgent(SignalAgent):
    def __init__(self, name, score=1.0, confidence=1.0, flagged=False, escalate=False, error=None, delay=0.0):
        super().__init__(SETTINGS)
        self.name = name
        self.score, self.confidence = score, confidence
        self.flagged, self.escalate = flagged, escalate
        self.error, self.delay = error, delay

    async def evaluate(self, context):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return SignalResult(
            signal=self.name,
            confidence=self.confidence,
            score=self.score,
            verdict="STUB",
            flagged=self.flagged,
            escalate=self.escalate,
        )


def stub_agents(default_score=1.0, **overrides) -> list[StubAgent]:
    agents = []
    for name in SignalName:
        kwargs = {"score": 1.0 if name == SignalName.GRANTOR_HISTORY else default_score}
        kwargs.update(overrides.get(name.value, {}))
        agents.append(StubAgent(name, **kwargs))
    return agents


class StubVision:
    def __init__(self, analysis=None, tampering=None, error=None):
        self.analysis, self.tampering, self.error = analysis, tampering, error

    def analyze(self, text=None, image=None):
        return self.analysis

    def detect_tampering(self, image):
        if self.error is not None:
            raise self.error
        return self.tampering


class BrokenBoundaryStore(InMemoryClaimStore):
    async def list_boundaries(self, exclude_claim_id=None):
        raise ConnectionError("replica lag")


def verify(agents=None, claim=None, store=None, settings=SETTINGS, vision=None):
    store = store if store is not None else InMemoryClaimStore(load_title_records())
    aggregator = ConfidenceAggregator(
        store, vision=vision, settings=settings, agents=agents, today=TODAY
    )
    return asyncio.run(aggregator.verify(claim or make_claim()))


# ═══════════════════════════════════════════════════════════════════════
# WEIGHTED SCORE & BANDS
# ═══════════════════════════════════════════════════════════════════════


class TestWeightedScore:
    def test_all_good_signals_auto_approve(self):
        outcome = verify(stub_agents())
        assert outcome.overall_confidence == pytest.approx(1.0)
        assert outcome.recommendation == Recommendation.AUTO_APPROVE
        assert outcome.confidence_level == ConfidenceLevel.HIGH
        assert outcome.override is None
        assert sum(outcome.weights.values()) == pytest.approx(1.0)

    def test_middling_signals_need_review(self):
        outcome = verify(stub_agents(0.7))
        assert outcome.overall_confidence == pytest.approx(0.7)
        assert outcome.recommendation == Recommendation.HUMAN_REVIEW
        assert outcome.confidence_level == ConfidenceLevel.MEDIUM

    def test_weak_signals_reject(self):
        outcome = verify(stub_agents(0.5))
        assert outcome.recommendation == Recommendation.REJECT
        assert outcome.confidence_level == ConfidenceLevel.LOW

    def test_breakdown_uses_configured_weights(self):
        outcome = verify(stub_agents(document={"score": 0.0}))
        assert outcome.overall_confidence == pytest.approx(0.75)
        assert outcome.breakdown["document"] == 0.0

    def test_spatial_weight_redistributed_without_boundary(self):
        outcome = verify(stub_agents(), claim=make_claim(boundary=None))
        assert outcome.weights["spatial"] == 0.0
        assert outcome.weights["document"] == pytest.approx(0.25 / 0.85)
        assert sum(outcome.weights.values()) == pytest.approx(1.0)

    def test_grantor_history_scales_spatial_score(self):
        outcome = verify(stub_agents(grantor_history={"score": 0.75}))
        assert outcome.breakdown["spatial"] == pytest.approx(0.75)
        assert outcome.breakdown["grantor_history"] == pytest.approx(0.75)


# ═══════════════════════════════════════════════════════════════════════
# OVERRIDES
# ═══════════════════════════════════════════════════════════════════════


class TestOverrides:
    def test_confident_fraud_rejects_regardless_of_average(self):
        outcome = verify(stub_agents(fraud={"score": 0.1, "confidence": 0.9, "flagged": True}))
        assert outcome.recommendation == Recommendation.REJECT
        assert outcome.override == "FRAUD_DETECTED"
        assert outcome.confidence_level == ConfidenceLevel.LOW

    def test_fraud_at_exactly_threshold_does_not_override(self):
        outcome = verify(stub_agents(fraud={"score": 0.3, "confidence": 0.7, "flagged": True}))
        assert outcome.override is None
        assert outcome.recommendation == Recommendation.HUMAN_REVIEW

    def test_confident_tampering_rejects(self):
        outcome = verify(stub_agents(tampering={"score": 0.2, "confidence": 0.8, "flagged": True}))
        assert outcome.recommendation == Recommendation.REJECT
        assert outcome.override == "TAMPERING_DETECTED"

    def test_spatial_escalation_goes_to_human(self):
        outcome = verify(stub_agents(spatial={"escalate": True}))
        assert outcome.recommendation == Recommendation.HUMAN_REVIEW
        assert outcome.override == "SPATIAL_ESCALATION"

    def test_grantor_red_flag_does_not_rescue_weak_claim(self):
        outcome = verify(stub_agents(0.3, grantor_history={"score": 0.5, "escalate": True}))
        assert outcome.overall_confidence == pytest.approx(0.2775)
        assert outcome.recommendation == Recommendation.REJECT
        assert outcome.override is None

    def test_grantor_red_flag_does_not_block_strong_claim(self):
        outcome = verify(stub_agents(grantor_history={"score": 0.75, "escalate": True}))
        assert outcome.overall_confidence == pytest.approx(0.9625)
        assert outcome.recommendation == Recommendation.AUTO_APPROVE
        assert outcome.override is None


# ═══════════════════════════════════════════════════════════════════════
# FAILURE ISOLATION
# ═══════════════════════════════════════════════════════════════════════


class TestFailureIsolation:
    def test_crashing_agent_degrades_to_neutral(self):
        outcome = verify(stub_agents(document={"error": RuntimeError("model exploded")}))
        document = outcome.signal(SignalName.DOCUMENT)
        assert outcome.partial
        assert document.degraded
        assert document.score == SETTINGS.neutral_score
        assert document.verdict == "UNAVAILABLE"
        assert "model exploded" in document.error
        assert len(outcome.signals) == 6

    def test_unavailable_agent_keeps_message(self):
        outcome = verify(stub_agents(tampering={"error": AgentUnavailable("vision offline")}))
        assert outcome.signal(SignalName.TAMPERING).error == "vision offline"

    def test_slow_agent_times_out(self):
        settings = VerifierSettings(agent_timeout=0.05)
        outcome = verify(stub_agents(gps={"delay": 1.0}), settings=settings)
        gps = outcome.signal(SignalName.GPS)
        assert gps.degraded
        assert "timed out" in gps.error

    def test_every_agent_failing_goes_to_human(self):
        agents = [StubAgent(name, error=RuntimeError("outage")) for name in SignalName]
        outcome = verify(agents)
        assert outcome.partial
        assert outcome.overall_confidence == pytest.approx(SETTINGS.neutral_score)
        assert outcome.recommendation == Recommendation.HUMAN_REVIEW
        assert outcome.override == "DEGRADED_SIGNALS"
        assert all(s.degraded for s in outcome.signals)

    def test_weak_partial_run_is_not_rejected(self):
        outcome = verify(stub_agents(0.3, gps={"error": RuntimeError("gps offline")}))
        assert outcome.recommendation == Recommendation.HUMAN_REVIEW
        assert outcome.override == "DEGRADED_SIGNALS"

    def test_partial_run_still_honours_fraud_override(self):
        outcome = verify(stub_agents(
            gps={"error": RuntimeError("gps offline")},
            fraud={"score": 0.1, "confidence": 0.9, "flagged": True},
        ))
        assert outcome.recommendation == Recommendation.REJECT
        assert outcome.override == "FRAUD_DETECTED"

    def test_snapshot_failure_is_reported(self):
        outcome = verify(store=BrokenBoundaryStore(load_title_records()))
        assert outcome.partial
        assert any(line.startswith("Snapshot incomplete") for line in outcome.reasoning)
        assert outcome.signal(SignalName.SPATIAL).degraded
        assert outcome.signal(SignalName.GRANTOR_HISTORY).degraded

    def test_every_signal_is_audited(self):
        store = InMemoryClaimStore()
        claim = make_claim()
        verify(stub_agents(), claim=claim, store=store)
        actions = [e.action for e in store.audit_for(claim.id)]
        assert actions.count("SIGNAL_RESULT") == 6
        assert actions[-1] == "VERIFICATION_OUTCOME"


# ═══════════════════════════════════════════════════════════════════════
# DEFAULT AGENTS, END TO END
# ═══════════════════════════════════════════════════════════════════════


class TestDefaultAgents:
    def test_known_grantor_auto_approves(self):
        outcome = verify()
        fraud = outcome.signal(SignalName.FRAUD)
        assert fraud.confidence <= 0.1
        assert fraud.verdict == "CLEAR"
        assert outcome.overall_confidence == pytest.approx(0.85)
        assert outcome.recommendation == Recommendation.AUTO_APPROVE
        assert not outcome.partial

    def test_unknown_grantor_with_future_date_is_rejected(self):
        outcome = verify(claim=make_claim(document_text=UNKNOWN_FUTURE_DEED, grantor_name=None))
        assert outcome.recommendation == Recommendation.REJECT
        assert outcome.override == "FRAUD_DETECTED"

    def test_vision_analysis_is_cross_checked(self):
        vision = StubVision(
            analysis=DocumentAnalysis(
                document_type="Stool Indenture",
                grantor_name="Kofi Mensa",
                parcel_id="GA-12345678",
                confidence=0.9,
                is_authentic=True,
                source=AnalysisSource.VISION,
            )
        )
        outcome = verify(vision=vision)
        document = outcome.signal(SignalName.DOCUMENT)
        assert document.score == pytest.approx(0.9)
        assert any("disagreement on grantor" in line for line in document.reasoning)
        assert not any("disagreement on parcel" in line for line in document.reasoning)

    def test_conflict_is_carried_on_outcome(self):
        store = InMemoryClaimStore(load_title_records())
        asyncio.run(store.save_claim(make_claim(status=ClaimStatus.SPATIAL_LOCKED)))
        outcome = verify(store=store)
        assert outcome.conflict is not None
        assert outcome.conflict.is_blocked
        assert outcome.override == "SPATIAL_ESCALATION"


# ═══════════════════════════════════════════════════════════════════════
# INDIVIDUAL AGENTS
# ═══════════════════════════════════════════════════════════════════════


def evaluate(agent: SignalAgent, claim: Claim, boundaries=()) -> SignalResult:
    context = VerificationContext(claim=claim, boundaries=boundaries, title_records=())
    return asyncio.run(agent.run(context))


class TestAgents:
    def test_tampering_neutral_without_image(self):
        result = evaluate(TamperingCheckAgent(StubVision(), SETTINGS), make_claim())
        assert result.verdict == "NOT_CHECKED"
        assert result.score == pytest.approx(0.7)

    def test_tampering_detected(self):
        vision = StubVision(tampering=TamperingAnalysis(has_tampering=True, confidence=0.9))
        result = evaluate(TamperingCheckAgent(vision, SETTINGS), make_claim(document_image="aGVsbG8="))
        assert result.verdict == "TAMPERED"
        assert result.flagged
        assert result.score == pytest.approx(0.1)

    def test_tampering_vision_failure_is_unavailable(self):
        vision = StubVision(error=TimeoutError("upstream"))
        with pytest.raises(AgentUnavailable):
            evaluate(TamperingCheckAgent(vision, SETTINGS), make_claim(document_image="aGVsbG8="))

    def test_gps_uses_boundary_centroid(self):
        result = evaluate(GPSValidationAgent(SETTINGS), make_claim())
        assert result.verdict == "VALID"
        assert result.details["source"] == "boundary centroid"

    def test_gps_outside_region(self):
        result = evaluate(GPSValidationAgent(SETTINGS), make_claim(latitude=51.5, longitude=-0.12))
        assert result.verdict == "OUTSIDE_REGION"
        assert result.score == pytest.approx(0.4)

    def test_gps_without_location(self):
        result = evaluate(GPSValidationAgent(SETTINGS), make_claim(boundary=None))
        assert result.verdict == "NO_LOCATION"

    def test_grantor_with_high_dispute_rate(self):
        history = (
            on_file("a", ClaimStatus.DISPUTED),
            on_file("b", ClaimStatus.REJECTED),
            on_file("c", ClaimStatus.MINTED),
            on_file("d", ClaimStatus.SPATIAL_LOCKED),
        )
        result = evaluate(GrantorHistoryAgent(SETTINGS), make_claim(), history)
        assert result.verdict == "HIGH"
        assert result.score == 0.5
        assert result.escalate
        assert result.details["dispute_rate"] == pytest.approx(0.5)

    def test_grantor_with_elevated_dispute_rate(self):
        history = (
            on_file("a", ClaimStatus.DISPUTED),
            on_file("b", ClaimStatus.MINTED),
            on_file("c", ClaimStatus.MINTED),
            on_file("d", ClaimStatus.MINTED),
        )
        result = evaluate(GrantorHistoryAgent(SETTINGS), make_claim(), history)
        assert result.verdict == "MEDIUM"
        assert result.score == 0.75

    def test_grantor_history_ignores_other_grantors(self):
        history = (on_file("a", ClaimStatus.DISPUTED, grantor="Ama Owusu"),)
        result = evaluate(GrantorHistoryAgent(SETTINGS), make_claim(), history)
        assert result.verdict == "LOW"
        assert result.details["total_claims"] == 0

    def test_grantor_history_needs_snapshot(self):
        with pytest.raises(AgentUnavailable):
            evaluate(GrantorHistoryAgent(SETTINGS), make_claim(), None)

    def test_spatial_skipped_without_boundary(self):
        result = evaluate(SpatialConflictAgent(settings=SETTINGS), make_claim(boundary=None))
        assert result.details == {"skipped": True}

    def test_document_agent_falls_back_without_vision(self):
        result = evaluate(DocumentAnalysisAgent(None, SETTINGS), make_claim())
        assert result.details["source"] == "FALLBACK"
        assert result.verdict == "AUTHENTIC"
        assert result.duration_ms >= 0

    def test_agent_scores_follow_settings(self):
        settings = VerifierSettings(
            gps_score_inside=0.9,
            grantor_score_warning=0.6,
            spatial_score_clear=0.8,
        )
        history = (
            on_file("a", ClaimStatus.DISPUTED),
            on_file("b", ClaimStatus.MINTED),
            on_file("c", ClaimStatus.MINTED),
            on_file("d", ClaimStatus.MINTED),
        )
        assert evaluate(GPSValidationAgent(settings), make_claim()).score == pytest.approx(0.9)
        grantor = evaluate(GrantorHistoryAgent(settings), make_claim(), history)
        assert grantor.score == pytest.approx(0.6)
        assert grantor.verdict == RiskLevel.MEDIUM.value
        spatial = evaluate(SpatialConflictAgent(settings=settings), make_claim())
        assert spatial.verdict == "CLEAR"
        assert spatial.score == pytest.approx(0.8)
