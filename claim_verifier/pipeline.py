"""
Verification pipeline: orchestrates a claim from intake to title sync.

Flow:
  ┌─────────┐
  │ Intake  │   ← document hash, geometry check, INTAKE_PENDING
  └────┬────┘
       │
  ┌────▼─────────┐
  │  Aggregator  │   ← signal agents + pure conflict evaluation
  └────┬─────────┘
       │
  ┌────▼─────────┐
  │ AI_VERIFIED  │   or REJECTED
  └────┬─────────┘
       │
  ┌────▼─────────┐
  │ Spatial lock │   ← conflict check with side effects (records, alerts)
  └────┬─────────┘
       │
  ┌────▼─────────┐
  │    Mint      │   ← Priority of Sale hash anchored on the ledger
  └────┬─────────┘
       │
  ┌────▼─────────┐
  │ Title sync   │
  └──────────────┘

Design principles:
  - The pre-lock spatial check is advisory. Two simultaneous claims may both
    pass it; recheck() settles the race by Priority of Sale (earliest wins).
  - Infrastructure faults degrade results; they never silently approve a
    conflicting claim, because a degraded lock is always rechecked.
  - The submitted document is SHA-256 hashed for the audit trail.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from datetime import date, datetime, timezone

from . import geometry
from .aggregator import ConfidenceAggregator
from .config import VerifierSettings, get_settings
from .conflicts import ConflictDetector
from .exceptions import ClaimNotFound, InvalidTransition
from .models import (
    AuditEntry,
    Claim,
    ClaimIntake,
    ClaimReport,
    ClaimStatus,
    ConflictCheckResult,
    ConflictRecord,
    Severity,
    TransitionResult,
    TransitionTrigger,
    VerificationOutcome,
)
from .notifications import NotificationDispatcher
from .state_machine import ClaimStateMachine, can_transition
from .storage import (
    ClaimStore,
    DigestLedger,
    LedgerAnchor,
    LoggingNotificationService,
    NotificationService,
    VisionCapability,
)

logger = logging.getLogger(__name__)


def document_hash(text: str, image: str | None = None) -> str:
    """SHA-256 of the submitted document (text, then image if any)."""
    digest = hashlib.sha256(text.encode("utf-8"))
    if image:
        digest.update(image.encode("utf-8"))
    return digest.hexdigest()


def priority_of_sale_hash(grantor_name: str | None, doc_hash: str, timestamp: str) -> str:
    """SHA-256 over ``grantor|document_hash|timestamp``."""
    payload = f"{grantor_name or ''}|{doc_hash}|{timestamp}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class ClaimVerificationPipeline:
    """Orchestrates verification, spatial locking and anchoring of claims.

    Usage:
        pipeline = ClaimVerificationPipeline(InMemoryClaimStore())
        report = await pipeline.process(intake)
        if report.claim.status == ClaimStatus.SPATIAL_LOCKED:
            await pipeline.mint(report.claim.id)
    """

    def __init__(
        self,
        storage: ClaimStore,
        vision: VisionCapability | None = None,
        notifications: NotificationService | None = None,
        ledger: LedgerAnchor | None = None,
        settings: VerifierSettings | None = None,
        today: date | None = None,
    ):
        self.settings = settings or get_settings()
        self.storage = storage
        self.notifications = notifications or LoggingNotificationService()
        self.ledger = ledger or DigestLedger()
        self.dispatcher = NotificationDispatcher(self.notifications, self.settings)
        self.detector = ConflictDetector(storage, self.dispatcher, self.settings)
        self.aggregator = ConfidenceAggregator(
            storage, vision=vision, detector=self.detector, settings=self.settings, today=today
        )
        self.state_machine = ClaimStateMachine(storage, self.settings)

    # ─── Intake ──────────────────────────────────────────────────────

    async def submit(self, intake: ClaimIntake) -> Claim:
        """Register a new claim in INTAKE_PENDING.

        Raises:
            InvalidGeometry: if the submitted boundary is malformed.
        """
        if intake.boundary is not None:
            geometry.validate(intake.boundary)
        claim = Claim(
            **intake.model_dump(exclude={"boundary"}),
            boundary=intake.boundary,
            document_hash=document_hash(intake.document_text, intake.document_image),
        )
        saved = await self.storage.save_claim(claim)
        await self._audit(saved.id, "CLAIM_SUBMITTED", {"document_hash": saved.document_hash})
        logger.info("Claim %s submitted by %s", saved.id, saved.claimant_name)
        return saved

    async def verify(self, claim_id: str) -> tuple[VerificationOutcome, TransitionResult]:
        claim = await self._get(claim_id)
        outcome = await self.aggregator.verify(claim)
        transition = await self.state_machine.apply_verification(claim, outcome)
        return outcome, transition

    async def process(self, intake: ClaimIntake) -> ClaimReport:
        """Submit, verify, and lock when the claim reached AI_VERIFIED.

        A claim that overlaps land on file but will not be locked (rejected
        for fraud, say) still gets its conflict records and alerts.
        """
        claim = await self.submit(intake)
        outcome, verification = await self.verify(claim.id)
        lock = conflict = None
        if verification.status == ClaimStatus.AI_VERIFIED and claim.boundary is not None:
            lock = await self.lock(claim.id)
        elif outcome.conflict is not None and outcome.conflict.has_conflict:
            logger.warning(
                "Claim %s overlaps land on file but ended %s; recording conflict",
                claim.id,
                verification.status.value,
            )
            conflict = await self.detector.check(claim.boundary, claim=await self._get(claim.id))
        return ClaimReport(
            claim=await self._get(claim.id),
            outcome=outcome,
            verification=verification,
            lock=lock,
            conflict=conflict,
        )

    # ─── Lifecycle ───────────────────────────────────────────────────

    async def lock(self, claim_id: str) -> TransitionResult:
        """Run the conflict check with side effects and lock the boundary if clear."""
        claim = await self._get(claim_id)
        if claim.status in (ClaimStatus.SPATIAL_LOCKED, ClaimStatus.MINTED, ClaimStatus.GOVT_TITLE_SYNC):
            return await self.state_machine.apply_spatial_lock(claim, ConflictCheckResult())
        if not can_transition(claim.status, ClaimStatus.SPATIAL_LOCKED):
            raise InvalidTransition(
                f"Cannot lock a claim in {claim.status.value}",
                {"from": claim.status.value, "to": ClaimStatus.SPATIAL_LOCKED.value},
            )
        if claim.boundary is None:
            raise InvalidTransition("Claim has no boundary to lock", {"claim_id": claim_id})

        conflict = await self.detector.check(claim.boundary, claim=claim)
        result = await self.state_machine.apply_spatial_lock(claim, conflict)
        return result.model_copy(update={"conflict": conflict})

    async def mint(self, claim_id: str) -> TransitionResult:
        """Anchor the Priority of Sale hash and move the claim to MINTED.

        A ledger failure leaves the claim SPATIAL_LOCKED and is reported in
        the result, not raised.
        """
        claim = await self._get(claim_id)
        if claim.status != ClaimStatus.SPATIAL_LOCKED:
            return await self.state_machine.apply_mint(claim, claim.ledger_tx_reference or "")

        timestamp = datetime.now(timezone.utc).isoformat()
        digest = priority_of_sale_hash(claim.grantor_name, claim.document_hash, timestamp)
        try:
            tx_reference = await asyncio.wait_for(
                self.ledger.anchor(digest), timeout=self.settings.ledger_timeout
            )
        except Exception as e:
            reason = f"Ledger anchoring failed: {str(e) or type(e).__name__}"
            logger.warning("Claim %s: %s", claim.id, reason)
            await self._audit(claim.id, "LEDGER_ANCHOR_FAILED", {"priority_hash": digest, "error": reason})
            return TransitionResult(
                claim_id=claim.id,
                previous_status=claim.status,
                status=claim.status,
                changed=False,
                trigger=TransitionTrigger.LEDGER_ANCHOR,
                reason=reason,
                claim=claim,
            )
        return await self.state_machine.apply_mint(claim, tx_reference, digest)

    async def sync_title(self, claim_id: str) -> TransitionResult:
        claim = await self._get(claim_id)
        return await self.state_machine.apply_title_sync(claim)

    async def recheck(self, claim_id: str) -> TransitionResult:
        """Re-run the conflict check for a locked or minted claim.

        A CRITICAL overlap with a claim registered earlier moves this claim
        to DISPUTED: under Priority of Sale the earliest claim wins.
        """
        claim = await self._get(claim_id)
        if claim.status not in (ClaimStatus.SPATIAL_LOCKED, ClaimStatus.MINTED):
            raise InvalidTransition(
                f"Only locked or minted claims are rechecked, claim is {claim.status.value}",
                {"from": claim.status.value},
            )
        if claim.boundary is None:
            raise InvalidTransition("Claim has no boundary to recheck", {"claim_id": claim_id})

        conflict = await self.detector.check(claim.boundary, claim=claim)
        earlier = [
            c
            for c in conflict.conflicting_claims
            if c.severity == Severity.CRITICAL and c.created_at < claim.created_at
        ]
        if not earlier:
            return TransitionResult(
                claim_id=claim.id,
                previous_status=claim.status,
                status=claim.status,
                changed=False,
                trigger=TransitionTrigger.CONFLICT_RECHECK,
                reason="; ".join(conflict.reasoning) or "No earlier conflicting claim",
                claim=claim,
                conflict=conflict,
            )

        prior = earlier[0]
        reason = (
            f"Priority of Sale: claim {prior.claim_id} was registered earlier and overlaps "
            f"{prior.overlap_pct:.1f}% (IoU {prior.iou:.2f})"
        )
        result = await self.state_machine.apply_dispute(claim, reason, prior.claim_id)
        return result.model_copy(update={"conflict": conflict})

    async def resolve_conflict(self, record_id: str, notes: str) -> ConflictRecord:
        record = await self.storage.resolve_conflict_record(record_id, notes)
        await self._audit(record.claim_id, "CONFLICT_RESOLVED", {"record_id": record_id, "notes": notes})
        return record

    # ─── Helpers ─────────────────────────────────────────────────────

    async def _get(self, claim_id: str) -> Claim:
        claim = await self.storage.get_claim(claim_id)
        if claim is None or claim.deleted:
            raise ClaimNotFound(f"Claim {claim_id} not found", {"claim_id": claim_id})
        return claim

    async def _audit(self, claim_id: str, action: str, payload: dict) -> None:
        entry = AuditEntry(claim_id=claim_id, actor="verification_pipeline", action=action, payload=payload)
        try:
            await asyncio.wait_for(
                self.storage.append_audit_log(entry), timeout=self.settings.storage_timeout
            )
        except Exception as e:
            logger.warning("Audit entry %s for claim %s not written: %s", action, claim_id, e)
