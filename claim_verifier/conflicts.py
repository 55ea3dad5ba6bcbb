"""
Spatial conflict detection: does a boundary collide with land already on file?

Per pair (candidate vs. one on-file boundary):

  IoU >= 0.50               CRITICAL  DOUBLE_SALE_SUSPECTED
  IoU >= 0.20               CRITICAL  CRITICAL_CONFLICT
  IoU >= 0.05               WARNING   OVERLAP_WARNING
  overlap >= 5% of smaller  WARNING   OVERLAP_WARNING
  anything less             negligible (touching, slivers)

Per run: blocked when any overlap covers >= 50% of the smaller parcel, even
if IoU is low (a small plot sitting inside a large one).

evaluate() is pure. check() loads the on-file set itself, degrades to CLEAR
when storage is down, and on conflict writes ConflictRecords and sends one
alert.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable

from . import geometry
from .config import VerifierSettings, get_settings
from .exceptions import InvalidGeometry, StorageUnavailable
from .models import (
    AlertType,
    Boundary,
    Claim,
    ClaimStatus,
    ConflictAlert,
    ConflictCheckResult,
    ConflictingClaim,
    ConflictRecord,
    OnFileBoundary,
    Severity,
    SpatialConflictStatus,
)
from .notifications import NotificationDispatcher
from .storage import ClaimStore

logger = logging.getLogger(__name__)


def classify_overlap(
    iou: float, overlap_pct: float, settings: VerifierSettings | None = None
) -> tuple[Severity, AlertType]:
    """Severity and alert type of one overlapping pair. Higher severity wins at a boundary value."""
    settings = settings or get_settings()
    if iou >= settings.iou_double_sale_threshold:
        return Severity.CRITICAL, AlertType.DOUBLE_SALE_SUSPECTED
    if iou >= settings.iou_critical_threshold:
        return Severity.CRITICAL, AlertType.CRITICAL_CONFLICT
    if iou >= settings.iou_warning_threshold or overlap_pct >= settings.overlap_dispute_pct:
        return Severity.WARNING, AlertType.OVERLAP_WARNING
    return Severity.NONE, AlertType.NONE


class ConflictDetector:
    """Compares a candidate boundary with every boundary on file.

    Usage:
        detector = ConflictDetector(store, dispatcher)
        result = await detector.check(claim.boundary, claim=claim)
        if result.prevents_lock:
            # refuse the spatial lock
            ...
    """

    def __init__(
        self,
        storage: ClaimStore | None = None,
        dispatcher: NotificationDispatcher | None = None,
        settings: VerifierSettings | None = None,
    ):
        self.storage = storage
        self.dispatcher = dispatcher
        self.settings = settings or get_settings()

    # ─── Pure Evaluation ─────────────────────────────────────────────

    def evaluate(
        self,
        boundary: Boundary,
        existing: Iterable[OnFileBoundary],
        exclude_claim_id: str | None = None,
    ) -> ConflictCheckResult:
        """Classify every overlap between ``boundary`` and ``existing``.

        Raises:
            InvalidGeometry: if the candidate boundary is malformed.
        """
        geometry.validate(boundary)
        settings = self.settings
        conflicts: list[ConflictingClaim] = []
        reasoning: list[str] = []
        max_iou = 0.0
        max_pct = 0.0

        for other in existing:
            if other.claim_id == exclude_claim_id or other.status == ClaimStatus.REJECTED:
                continue
            try:
                overlap = geometry.measure_overlap(boundary, other.boundary)
            except InvalidGeometry as e:
                reasoning.append(f"Skipped malformed on-file boundary {other.claim_id}: {e}")
                continue
            if overlap.intersection <= 0:
                continue

            iou, pct = overlap.iou, overlap.overlap_pct
            max_iou = max(max_iou, iou)
            max_pct = max(max_pct, pct)
            severity, alert_type = classify_overlap(iou, pct, settings)
            if severity == Severity.NONE:
                reasoning.append(
                    f"Negligible overlap with claim {other.claim_id} ({pct:.2f}%, IoU {iou:.3f})"
                )
                continue

            conflicts.append(
                ConflictingClaim(
                    claim_id=other.claim_id,
                    grantor_name=other.grantor_name,
                    created_at=other.created_at,
                    status=other.status,
                    intersection_area_sqm=round(overlap.intersection, 2),
                    overlap_pct=round(pct, 4),
                    iou=round(iou, 6),
                    severity=severity,
                    alert_type=alert_type,
                )
            )
            reasoning.append(
                f"{severity.value}: claim {other.claim_id} overlaps {pct:.1f}% of the smaller "
                f"parcel (IoU {iou:.2f}, {alert_type.value})"
            )

        conflicts.sort(key=lambda c: c.iou, reverse=True)
        has_conflict = bool(conflicts)
        is_blocked = max_pct >= settings.overlap_block_pct
        has_critical = any(c.severity == Severity.CRITICAL for c in conflicts)

        if is_blocked or has_critical:
            status = SpatialConflictStatus.HIGH_RISK
        elif has_conflict:
            status = SpatialConflictStatus.POTENTIAL_DISPUTE
        else:
            status = SpatialConflictStatus.CLEAR

        if is_blocked:
            reasoning.append(
                f"BLOCKED: {max_pct:.1f}% overlap reaches the {settings.overlap_block_pct:.0f}% limit"
            )
        if not has_conflict:
            reasoning.append("No significant overlap with claims on file")

        return ConflictCheckResult(
            has_conflict=has_conflict,
            is_blocked=is_blocked,
            requires_escalation=has_conflict,
            max_overlap_pct=round(max_pct, 4),
            max_iou=round(max_iou, 6),
            conflicting_claims=conflicts,
            status=status,
            reasoning=reasoning,
        )

    # ─── Check With Side Effects ─────────────────────────────────────

    async def check(
        self,
        boundary: Boundary,
        *,
        claim: Claim | None = None,
        exclude_claim_id: str | None = None,
        record: bool = True,
    ) -> ConflictCheckResult:
        """Load the on-file set, evaluate, then record and alert on conflict.

        Storage faults never block intake: they yield a degraded CLEAR result.

        Raises:
            InvalidGeometry: if the candidate boundary is malformed.
        """
        geometry.validate(boundary)
        exclude = exclude_claim_id or (claim.id if claim else None)

        try:
            existing = await self._load_boundaries(exclude)
        except StorageUnavailable as e:
            logger.warning("Spatial check degraded: %s", e)
            return ConflictCheckResult(
                status=SpatialConflictStatus.CLEAR,
                degraded=True,
                error=str(e),
                reasoning=[f"Spatial check unavailable ({e}); treated as CLEAR pending recheck"],
            )

        result = self.evaluate(boundary, existing, exclude)
        if not (result.has_conflict and claim is not None and record):
            return result

        records = await self._record_conflicts(claim, result)
        notification = None
        if self.dispatcher is not None:
            notification = await self.dispatcher.dispatch(self._build_alert(claim, result))
        return result.model_copy(update={"conflict_records": records, "notification": notification})

    async def _load_boundaries(self, exclude: str | None) -> list[OnFileBoundary]:
        if self.storage is None:
            raise StorageUnavailable("No claim store configured")
        try:
            return await asyncio.wait_for(
                self.storage.list_boundaries(exclude),
                timeout=self.settings.storage_timeout,
            )
        except asyncio.TimeoutError as e:
            raise StorageUnavailable(
                "Timed out listing boundaries", {"timeout": self.settings.storage_timeout}
            ) from e
        except StorageUnavailable:
            raise
        except Exception as e:
            raise StorageUnavailable(f"Listing boundaries failed: {e}") from e

    async def _record_conflicts(
        self, claim: Claim, result: ConflictCheckResult
    ) -> list[ConflictRecord]:
        records: list[ConflictRecord] = []
        if self.storage is None:
            return records
        for conflict in result.conflicting_claims:
            record = ConflictRecord(
                claim_id=claim.id,
                conflicting_claim_id=conflict.claim_id,
                overlap_pct=conflict.overlap_pct,
                iou=conflict.iou,
                severity=conflict.severity,
                alert_type=conflict.alert_type,
            )
            try:
                records.append(await self.storage.create_conflict_record(record))
            except Exception as e:
                logger.warning(
                    "Could not record conflict %s <-> %s: %s", claim.id, conflict.claim_id, e
                )
        return records

    @staticmethod
    def _build_alert(claim: Claim, result: ConflictCheckResult) -> ConflictAlert:
        top = result.conflicting_claims[0]
        return ConflictAlert(
            claim_id=claim.id,
            conflicting_claim_id=top.claim_id,
            conflicting_claim_ids=[c.claim_id for c in result.conflicting_claims],
            overlap_pct=result.max_overlap_pct,
            iou=top.iou,
            alert_type=top.alert_type,
            claimant_id=claim.claimant_id,
            claimant_name=claim.claimant_name,
            claimant_email=claim.claimant_email,
            legal_contact_email=claim.legal_contact_email,
            seller_name=claim.grantor_name,
            priority_hash=claim.priority_hash,
            claimant_priority_date=claim.created_at,
        )
