"""
Claim lifecycle state machine.

  INTAKE_PENDING ─► AI_VERIFIED ─► SPATIAL_LOCKED ─► MINTED ─► GOVT_TITLE_SYNC
        │                │               │              │
        └──── REJECTED ◄─┴───────────────┘              │
        └──── DISPUTED ◄─────────────────────────────────┘  (any non-terminal state)

Rules:
  - Forward moves go one step at a time; skipping a step is an error.
  - Asking for a state the claim is already in (or past) is a no-op: no
    storage write, no audit entry.
  - GOVT_TITLE_SYNC, REJECTED and DISPUTED are terminal.
  - Every real transition writes exactly one audit entry.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from .config import VerifierSettings, get_settings
from .exceptions import InvalidTransition, StorageUnavailable
from .models import (
    AuditEntry,
    Claim,
    ClaimStatus,
    ConflictCheckResult,
    Recommendation,
    SignalName,
    SpatialConflictStatus,
    TransitionResult,
    TransitionTrigger,
    VerificationOutcome,
)
from .storage import ClaimStore

logger = logging.getLogger(__name__)

LIFECYCLE: tuple[ClaimStatus, ...] = (
    ClaimStatus.INTAKE_PENDING,
    ClaimStatus.AI_VERIFIED,
    ClaimStatus.SPATIAL_LOCKED,
    ClaimStatus.MINTED,
    ClaimStatus.GOVT_TITLE_SYNC,
)

TERMINAL: frozenset[ClaimStatus] = frozenset({
    ClaimStatus.GOVT_TITLE_SYNC,
    ClaimStatus.REJECTED,
    ClaimStatus.DISPUTED,
})


def _rank(status: ClaimStatus) -> int | None:
    return LIFECYCLE.index(status) if status in LIFECYCLE else None


def can_transition(current: ClaimStatus, target: ClaimStatus) -> bool:
    """True when ``current -> target`` is a legal, state-changing move."""
    if current in TERMINAL or current == target:
        return False
    if target == ClaimStatus.DISPUTED:
        return True
    if target == ClaimStatus.REJECTED:
        return LIFECYCLE.index(current) < LIFECYCLE.index(ClaimStatus.MINTED)
    target_rank = _rank(target)
    return target_rank is not None and target_rank == LIFECYCLE.index(current) + 1


class ClaimStateMachine:
    """Applies verification results and lifecycle events to stored claims."""

    def __init__(self, storage: ClaimStore, settings: VerifierSettings | None = None):
        self.storage = storage
        self.settings = settings or get_settings()

    # ─── Events ──────────────────────────────────────────────────────

    async def apply_verification(self, claim: Claim, outcome: VerificationOutcome) -> TransitionResult:
        """AUTO_APPROVE / HUMAN_REVIEW -> AI_VERIFIED; REJECT -> REJECTED."""
        rejected = outcome.recommendation == Recommendation.REJECT
        target = ClaimStatus.REJECTED if rejected else ClaimStatus.AI_VERIFIED
        fraud = outcome.signal(SignalName.FRAUD)
        fields: dict[str, Any] = {
            "overall_confidence": outcome.overall_confidence,
            "fraud_score": fraud.confidence if fraud and not fraud.degraded else None,
            "latest_outcome_id": outcome.id,
            "spatial_conflict_status": (
                outcome.conflict.status if outcome.conflict else SpatialConflictStatus.CLEAR
            ),
            "needs_human_review": outcome.recommendation == Recommendation.HUMAN_REVIEW,
        }
        return await self._transition(
            claim,
            target,
            TransitionTrigger.VERIFICATION,
            fields,
            reason=f"{outcome.recommendation.value} at {outcome.overall_confidence:.2f}",
            payload={"outcome_id": outcome.id, "override": outcome.override},
        )

    async def apply_spatial_lock(self, claim: Claim, conflict: ConflictCheckResult) -> TransitionResult:
        """AI_VERIFIED -> SPATIAL_LOCKED, unless the conflict forbids it.

        A refused lock leaves the claim AI_VERIFIED, marks it HIGH_RISK and
        writes a refusal audit entry.
        """
        if self._is_noop(claim.status, ClaimStatus.SPATIAL_LOCKED):
            return self._noop(claim, ClaimStatus.SPATIAL_LOCKED, TransitionTrigger.SPATIAL_LOCK)
        self._require(claim.status, ClaimStatus.SPATIAL_LOCKED)

        if conflict.prevents_lock:
            reason = (
                f"Spatial lock refused: max overlap {conflict.max_overlap_pct:.1f}%, "
                f"max IoU {conflict.max_iou:.2f}"
            )
            updated = await self._write(
                claim.id,
                claim.status,
                {"spatial_conflict_status": SpatialConflictStatus.HIGH_RISK, "needs_human_review": True},
            )
            await self._audit(
                claim.id,
                "SPATIAL_LOCK_REFUSED",
                {
                    "reason": reason,
                    "blocked": conflict.is_blocked,
                    "conflicting_claim_ids": [c.claim_id for c in conflict.conflicting_claims],
                },
            )
            logger.warning("Claim %s: %s", claim.id, reason)
            return TransitionResult(
                claim_id=claim.id,
                previous_status=claim.status,
                status=claim.status,
                changed=False,
                trigger=TransitionTrigger.SPATIAL_LOCK,
                reason=reason,
                claim=updated,
            )

        fields: dict[str, Any] = {"spatial_conflict_status": conflict.status}
        if conflict.has_conflict:
            fields["needs_human_review"] = True
        note = "degraded check, recheck pending" if conflict.degraded else conflict.status.value
        return await self._transition(
            claim,
            ClaimStatus.SPATIAL_LOCKED,
            TransitionTrigger.SPATIAL_LOCK,
            fields,
            reason=f"Boundary locked ({note})",
            payload={"max_overlap_pct": conflict.max_overlap_pct, "degraded": conflict.degraded},
        )

    async def apply_mint(
        self, claim: Claim, tx_reference: str, priority_hash: str | None = None
    ) -> TransitionResult:
        fields: dict[str, Any] = {"ledger_tx_reference": tx_reference}
        if priority_hash:
            fields["priority_hash"] = priority_hash
        return await self._transition(
            claim,
            ClaimStatus.MINTED,
            TransitionTrigger.LEDGER_ANCHOR,
            fields,
            reason="Priority of Sale anchored",
            payload={"tx_reference": tx_reference, "priority_hash": priority_hash},
        )

    async def apply_title_sync(self, claim: Claim) -> TransitionResult:
        return await self._transition(
            claim,
            ClaimStatus.GOVT_TITLE_SYNC,
            TransitionTrigger.TITLE_SYNC,
            {},
            reason="Synchronised with government title registry",
        )

    async def apply_dispute(
        self, claim: Claim, reason: str, conflicting_claim_id: str | None = None
    ) -> TransitionResult:
        return await self._transition(
            claim,
            ClaimStatus.DISPUTED,
            TransitionTrigger.CONFLICT_RECHECK,
            {"spatial_conflict_status": SpatialConflictStatus.HIGH_RISK, "needs_human_review": True},
            reason=reason,
            payload={"conflicting_claim_id": conflicting_claim_id},
        )

    # ─── Core ────────────────────────────────────────────────────────

    async def _transition(
        self,
        claim: Claim,
        target: ClaimStatus,
        trigger: TransitionTrigger,
        fields: dict[str, Any],
        reason: str = "",
        payload: dict[str, Any] | None = None,
    ) -> TransitionResult:
        if self._is_noop(claim.status, target):
            return self._noop(claim, target, trigger)
        self._require(claim.status, target)

        updated = await self._write(claim.id, target, fields)
        await self._audit(
            claim.id,
            "STATUS_TRANSITION",
            {
                "from": claim.status.value,
                "to": target.value,
                "trigger": trigger.value,
                "reason": reason,
                **(payload or {}),
            },
        )
        logger.info("Claim %s: %s -> %s (%s)", claim.id, claim.status.value, target.value, reason)
        return TransitionResult(
            claim_id=claim.id,
            previous_status=claim.status,
            status=target,
            changed=True,
            trigger=trigger,
            reason=reason,
            claim=updated,
        )

    @staticmethod
    def _is_noop(current: ClaimStatus, target: ClaimStatus) -> bool:
        if current == target:
            return True
        current_rank, target_rank = _rank(current), _rank(target)
        return current_rank is not None and target_rank is not None and current_rank > target_rank

    @staticmethod
    def _require(current: ClaimStatus, target: ClaimStatus) -> None:
        if can_transition(current, target):
            return
        if current in TERMINAL:
            message = f"Claim is {current.value}, a terminal state"
        else:
            message = f"Cannot move claim from {current.value} to {target.value}"
        raise InvalidTransition(message, {"from": current.value, "to": target.value})

    @staticmethod
    def _noop(claim: Claim, target: ClaimStatus, trigger: TransitionTrigger) -> TransitionResult:
        return TransitionResult(
            claim_id=claim.id,
            previous_status=claim.status,
            status=claim.status,
            changed=False,
            trigger=trigger,
            reason=f"Already {claim.status.value}; {target.value} is a no-op",
            claim=claim,
        )

    async def _write(self, claim_id: str, status: ClaimStatus, fields: dict[str, Any]) -> Claim:
        try:
            return await asyncio.wait_for(
                self.storage.update_claim_status(claim_id, status, fields),
                timeout=self.settings.storage_timeout,
            )
        except asyncio.TimeoutError as e:
            raise StorageUnavailable(f"Timed out updating claim {claim_id}") from e

    async def _audit(self, claim_id: str, action: str, payload: dict[str, Any]) -> None:
        entry = AuditEntry(claim_id=claim_id, actor="claim_state_machine", action=action, payload=payload)
        try:
            await asyncio.wait_for(
                self.storage.append_audit_log(entry), timeout=self.settings.storage_timeout
            )
        except Exception as e:
            logger.warning("Audit entry %s for claim %s not written: %s", action, claim_id, e)
