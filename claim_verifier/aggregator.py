"""
Confidence aggregation: many weak signals, one auditable decision.

Flow:
  ┌──────────────┐
  │   Snapshot   │   ← on-file boundaries + title records (concurrent, timed)
  └──────┬───────┘
         │
  ┌──────▼───────────────────────────────────────────────┐
  │ document │ fraud │ tampering │ gps │ grantor │ spatial │  ← fan-out
  └──────┬───────────────────────────────────────────────┘
         │
  ┌──────▼───────┐
  │ Weighted sum │   ← 0.25 / 0.30 / 0.15 / 0.15 / 0.15
  └──────┬───────┘
         │
  ┌──────▼───────┐
  │  Overrides   │   ← fraud, tampering, escalation
  └──────┬───────┘
         │
  ┌──────▼───────┐
  │    Audit     │   ← one entry per signal
  └──────────────┘

Design principles:
  - A failing agent becomes a degraded signal with a neutral score; the run
    still produces a recommendation.
  - Hard evidence (fraud, tampering) overrides the average.
  - Conflicts never auto-approve; they go to a human.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import date
from typing import Any, Awaitable, Sequence, TypeVar

from .agents import (
    DocumentAnalysisAgent,
    FraudHeuristicsAgent,
    GPSValidationAgent,
    GrantorHistoryAgent,
    SignalAgent,
    SpatialConflictAgent,
    TamperingCheckAgent,
    VerificationContext,
)
from .config import VerifierSettings, get_settings
from .conflicts import ConflictDetector
from .exceptions import AgentUnavailable, StorageUnavailable
from .models import (
    AuditEntry,
    Claim,
    ConfidenceLevel,
    ConflictCheckResult,
    Recommendation,
    SignalName,
    SignalResult,
    VerificationOutcome,
)
from .storage import ClaimStore, VisionCapability

logger = logging.getLogger(__name__)

T = TypeVar("T")

WEIGHTED_SIGNALS = (
    SignalName.DOCUMENT,
    SignalName.FRAUD,
    SignalName.TAMPERING,
    SignalName.GPS,
    SignalName.SPATIAL,
)


class ConfidenceAggregator:
    """Runs every signal agent for a claim and folds them into one outcome.

    Usage:
        aggregator = ConfidenceAggregator(store, vision=OpenAIVision())
        outcome = await aggregator.verify(claim)
        outcome.recommendation  # AUTO_APPROVE / HUMAN_REVIEW / REJECT
    """

    def __init__(
        self,
        storage: ClaimStore,
        vision: VisionCapability | None = None,
        detector: ConflictDetector | None = None,
        settings: VerifierSettings | None = None,
        agents: Sequence[SignalAgent] | None = None,
        today: date | None = None,
    ):
        self.storage = storage
        self.settings = settings or get_settings()
        self.detector = detector or ConflictDetector(storage, settings=self.settings)
        self.agents: list[SignalAgent] = list(agents) if agents is not None else [
            DocumentAnalysisAgent(vision, self.settings),
            FraudHeuristicsAgent(self.settings, today),
            TamperingCheckAgent(vision, self.settings),
            GPSValidationAgent(self.settings),
            GrantorHistoryAgent(self.settings),
            SpatialConflictAgent(self.detector, self.settings),
        ]

    async def verify(self, claim: Claim) -> VerificationOutcome:
        """Produce a recommendation for ``claim``. Never raises."""
        started = time.perf_counter()
        try:
            outcome = await self._verify(claim)
        except Exception as e:
            logger.exception("Aggregation failed for claim %s", claim.id)
            outcome = VerificationOutcome(
                claim_id=claim.id,
                overall_confidence=self.settings.neutral_score,
                confidence_level=ConfidenceLevel.LOW,
                recommendation=Recommendation.HUMAN_REVIEW,
                override="AGGREGATION_ERROR",
                partial=True,
                reasoning=[f"Aggregation failed ({e}); manual review required"],
            )
        elapsed = round((time.perf_counter() - started) * 1000, 3)
        return outcome.model_copy(update={"duration_ms": elapsed})

    async def _verify(self, claim: Claim) -> VerificationOutcome:
        reasoning: list[str] = []

        # ── Step 1: Snapshot ────────────────────────────────────────
        boundaries, records = await asyncio.gather(
            self._fetch("on-file boundaries", self.storage.list_boundaries(claim.id), reasoning),
            self._fetch("title records", self.storage.list_title_records(), reasoning),
        )
        context = VerificationContext(
            claim=claim,
            boundaries=tuple(boundaries) if boundaries is not None else None,
            title_records=tuple(records) if records is not None else None,
        )

        # ── Step 2: Fan-out ─────────────────────────────────────────
        logger.info("Running %d signal agents for claim %s", len(self.agents), claim.id)
        signals: list[SignalResult] = list(
            await asyncio.gather(*(self._run_agent(agent, context) for agent in self.agents))
        )
        by_name = {s.signal: s for s in signals}
        partial = any(s.degraded for s in signals)
        for s in signals:
            if s.degraded:
                reasoning.append(f"{s.signal.value} signal degraded: {s.error}")

        # ── Step 3: Weighted score ──────────────────────────────────
        weights = self._effective_weights(claim)
        breakdown: dict[str, float] = {}
        for name in WEIGHTED_SIGNALS:
            result = by_name.get(name)
            if result is None:
                partial = True
                reasoning.append(f"No {name.value} signal; neutral score used")
            breakdown[name.value] = result.score if result else self.settings.neutral_score

        grantor = by_name.get(SignalName.GRANTOR_HISTORY)
        if grantor is not None and not grantor.degraded:
            breakdown[SignalName.GRANTOR_HISTORY.value] = grantor.score
            if weights[SignalName.SPATIAL.value] > 0 and grantor.score < 1.0:
                breakdown[SignalName.SPATIAL.value] *= grantor.score
                reasoning.append(
                    f"Spatial score scaled by grantor history factor {grantor.score:.2f}"
                )

        overall = round(sum(weights[k] * breakdown[k] for k in weights), 4)
        overall = max(0.0, min(1.0, overall))

        # ── Step 4: Overrides ───────────────────────────────────────
        recommendation, level, override = self._decide(overall, by_name, partial, reasoning)

        conflict = None
        spatial = by_name.get(SignalName.SPATIAL)
        if spatial is not None and "conflict" in spatial.details:
            conflict = ConflictCheckResult.model_validate(spatial.details["conflict"])

        outcome = VerificationOutcome(
            claim_id=claim.id,
            overall_confidence=overall,
            confidence_level=level,
            recommendation=recommendation,
            signals=signals,
            breakdown={k: round(v, 4) for k, v in breakdown.items()},
            weights=weights,
            override=override,
            partial=partial,
            reasoning=reasoning,
            conflict=conflict,
        )
        logger.info(
            "Claim %s: %s (confidence %.2f%s)",
            claim.id,
            recommendation.value,
            overall,
            f", override {override}" if override else "",
        )

        # ── Step 5: Audit ───────────────────────────────────────────
        await self._audit(claim.id, outcome)
        return outcome

    # ─── Decision ────────────────────────────────────────────────────

    def _decide(
        self,
        overall: float,
        signals: dict[SignalName, SignalResult],
        partial: bool,
        reasoning: list[str],
    ) -> tuple[Recommendation, ConfidenceLevel, str | None]:
        """Hard overrides first, then the confidence bands.

        A partial run is never rejected on its score alone: degraded signals
        sit at the neutral midpoint, below the review threshold.
        """
        s = self.settings
        fraud = signals.get(SignalName.FRAUD)
        if fraud and fraud.flagged and fraud.confidence > s.fraud_override_confidence:
            reasoning.append(f"Fraud detected with {fraud.confidence:.0%} confidence")
            return Recommendation.REJECT, ConfidenceLevel.LOW, "FRAUD_DETECTED"

        tampering = signals.get(SignalName.TAMPERING)
        if tampering and tampering.flagged and tampering.confidence > s.tampering_override_confidence:
            reasoning.append(f"Tampering detected with {tampering.confidence:.0%} confidence")
            return Recommendation.REJECT, ConfidenceLevel.LOW, "TAMPERING_DETECTED"

        spatial = signals.get(SignalName.SPATIAL)
        if spatial and spatial.escalate:
            reasoning.append(f"Spatial conflict ({spatial.verdict}) requires human review")
            return Recommendation.HUMAN_REVIEW, ConfidenceLevel.MEDIUM, "SPATIAL_ESCALATION"

        if overall >= s.auto_approve_threshold:
            return Recommendation.AUTO_APPROVE, ConfidenceLevel.HIGH, None
        if overall >= s.human_review_threshold:
            return Recommendation.HUMAN_REVIEW, ConfidenceLevel.MEDIUM, None
        if partial:
            reasoning.append("Score below review threshold with degraded signals; manual review required")
            return Recommendation.HUMAN_REVIEW, ConfidenceLevel.MEDIUM, "DEGRADED_SIGNALS"
        return Recommendation.REJECT, ConfidenceLevel.LOW, None

    def _effective_weights(self, claim: Claim) -> dict[str, float]:
        """Configured weights; without a boundary the spatial share is spread over the rest."""
        weights = dict(self.settings.signal_weights)
        spatial_key = SignalName.SPATIAL.value
        if claim.boundary is None and weights[spatial_key] < 1.0:
            scale = 1.0 / (1.0 - weights[spatial_key])
            weights = {k: (0.0 if k == spatial_key else w * scale) for k, w in weights.items()}
        return weights

    # ─── Isolation Helpers ──────────────────────────────────────────

    async def _run_agent(self, agent: SignalAgent, context: VerificationContext) -> SignalResult:
        try:
            return await asyncio.wait_for(agent.run(context), timeout=self.settings.agent_timeout)
        except asyncio.TimeoutError:
            logger.warning("%s agent timed out", agent.name.value)
            return self._degraded(agent.name, f"timed out after {self.settings.agent_timeout}s")
        except AgentUnavailable as e:
            logger.warning("%s agent unavailable: %s", agent.name.value, e)
            return self._degraded(agent.name, str(e))
        except Exception as e:
            logger.exception("%s agent failed", agent.name.value)
            return self._degraded(agent.name, f"{type(e).__name__}: {e}")

    def _degraded(self, name: SignalName, error: str) -> SignalResult:
        return SignalResult(
            signal=name,
            confidence=0.0,
            score=self.settings.neutral_score,
            verdict="UNAVAILABLE",
            degraded=True,
            error=error,
            reasoning=[f"{name.value} agent unavailable ({error}); neutral score used"],
        )

    async def _fetch(self, label: str, call: Awaitable[T], reasoning: list[str]) -> T | None:
        try:
            try:
                return await asyncio.wait_for(call, timeout=self.settings.storage_timeout)
            except asyncio.TimeoutError as e:
                raise StorageUnavailable(f"Timed out loading {label}") from e
            except StorageUnavailable:
                raise
            except Exception as e:
                raise StorageUnavailable(f"Loading {label} failed: {e}") from e
        except StorageUnavailable as e:
            logger.warning("Snapshot incomplete: %s", e)
            reasoning.append(f"Snapshot incomplete: {e}")
            return None

    async def _audit(self, claim_id: str, outcome: VerificationOutcome) -> None:
        entries = [AuditEntry.from_signal(claim_id, s) for s in outcome.signals]
        payload: dict[str, Any] = outcome.model_dump(mode="json", exclude={"signals", "conflict"})
        entries.append(
            AuditEntry(
                claim_id=claim_id,
                actor="confidence_aggregator",
                action="VERIFICATION_OUTCOME",
                payload=payload,
                confidence=outcome.overall_confidence,
            )
        )
        for entry in entries:
            try:
                await asyncio.wait_for(
                    self.storage.append_audit_log(entry), timeout=self.settings.storage_timeout
                )
            except Exception as e:
                logger.warning("Audit entry for claim %s not written: %s", claim_id, e)
