"""
Tests for spatial conflict detection and the conflict-alert fan-out.

Covers:
  - Severity classification at every threshold
  - Pure evaluation against an on-file set
  - check(): degraded storage, conflict records, alert dispatch
  - NotificationDispatcher channel isolation
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from claim_verifier.config import VerifierSettings
from claim_verifier.conflicts import ConflictDetector, classify_overlap
from claim_verifier.exceptions import InvalidGeometry, NotificationFailure
from claim_verifier.models import (
    AlertType,
    Boundary,
    Claim,
    ClaimStatus,
    ConflictAlert,
    Notification,
    NotificationResult,
    OnFileBoundary,
    Recipient,
    Severity,
    SpatialConflictStatus,
)
from claim_verifier.notifications import NotificationDispatcher, build_notifications
from claim_verifier.storage import InMemoryClaimStore, LoggingNotificationService

BASE_LAT, BASE_LNG = 5.6000, -0.1900
UNIT = 0.001
T0 = datetime(2024, 3, 1, tzinfo=timezone.utc)


def square(row: float, col: float, side: float) -> Boundary:
    lat, lng = BASE_LAT + row * UNIT, BASE_LNG + col * UNIT
    s = side * UNIT
    return Boundary.from_points([(lat, lng), (lat, lng + s), (lat + s, lng + s), (lat + s, lng)])


def on_file(claim_id: str, boundary: Boundary, status=ClaimStatus.SPATIAL_LOCKED, minutes=0):
    return OnFileBoundary(
        claim_id=claim_id,
        boundary=boundary,
        grantor_name="Kofi Mensah",
        created_at=T0 + timedelta(minutes=minutes),
        status=status,
    )


def make_claim(boundary: Boundary, **overrides) -> Claim:
    fields = dict(
        claimant_id="buyer-002",
        claimant_name="Yaw Boateng",
        claimant_email="yaw@example.com",
        grantor_name="Kofi Mensah",
        boundary=boundary,
        status=ClaimStatus.AI_VERIFIED,
    )
    fields.update(overrides)
    return Claim(**fields)


def make_alert(overlap_pct: float = 100.0, **overrides) -> ConflictAlert:
    fields = dict(
        claim_id="claim-b",
        conflicting_claim_id="claim-a",
        overlap_pct=overlap_pct,
        iou=0.9,
        alert_type=AlertType.DOUBLE_SALE_SUSPECTED,
        claimant_id="buyer-002",
        claimant_name="Yaw Boateng",
        claimant_email="yaw@example.com",
    )
    fields.update(overrides)
    return ConflictAlert(**fields)


class FailingStore(InMemoryClaimStore):
    async def list_boundaries(self, exclude_claim_id=None):
        raise ConnectionError("database unreachable")


class SlowStore(InMemoryClaimStore):
    async def list_boundaries(self, exclude_claim_id=None):
        await asyncio.sleep(1)
        return []


class SelectiveService:
    """Fails or stalls chosen recipients; succeeds for the rest."""

    def __init__(self, fail=(), stall=()):
        self.fail, self.stall = set(fail), set(stall)
        self.sent: list[Notification] = []

    async def send_conflict_alert(self, notification: Notification) -> NotificationResult:
        if notification.recipient in self.fail:
            raise NotificationFailure("smtp relay refused")
        if notification.recipient in self.stall:
            await asyncio.sleep(1)
        self.sent.append(notification)
        return NotificationResult(success=True, email_sent=True)


@pytest.fixture
def detector() -> ConflictDetector:
    return ConflictDetector(settings=VerifierSettings())


# ═══════════════════════════════════════════════════════════════════════
# SEVERITY CLASSIFICATION
# ═══════════════════════════════════════════════════════════════════════


class TestClassifyOverlap:
    @pytest.mark.parametrize(
        "iou,pct,severity,alert",
        [
            (0.50, 60.0, Severity.CRITICAL, AlertType.DOUBLE_SALE_SUSPECTED),
            (0.49, 60.0, Severity.CRITICAL, AlertType.CRITICAL_CONFLICT),
            (0.20, 25.0, Severity.CRITICAL, AlertType.CRITICAL_CONFLICT),
            (0.19, 25.0, Severity.WARNING, AlertType.OVERLAP_WARNING),
            (0.05, 1.0, Severity.WARNING, AlertType.OVERLAP_WARNING),
            (0.01, 5.0, Severity.WARNING, AlertType.OVERLAP_WARNING),
            (0.01, 4.9, Severity.NONE, AlertType.NONE),
        ],
    )
    def test_thresholds(self, iou, pct, severity, alert) -> None:
        assert classify_overlap(iou, pct, VerifierSettings()) == (severity, alert)

    def test_thresholds_are_configurable(self) -> None:
        strict = VerifierSettings(iou_double_sale_threshold=0.9)
        assert classify_overlap(0.6, 70.0, strict) == (Severity.CRITICAL, AlertType.CRITICAL_CONFLICT)


# ═══════════════════════════════════════════════════════════════════════
# PURE EVALUATION
# ═══════════════════════════════════════════════════════════════════════


class TestEvaluate:
    def test_identical_boundary_is_double_sale(self, detector) -> None:
        parcel = square(0, 0, 1)
        result = detector.evaluate(parcel, [on_file("claim-a", parcel)])

        assert result.has_conflict
        assert result.is_blocked
        assert result.max_iou == pytest.approx(1.0)
        assert result.status == SpatialConflictStatus.HIGH_RISK
        assert result.prevents_lock
        top = result.conflicting_claims[0]
        assert top.claim_id == "claim-a"
        assert top.alert_type == AlertType.DOUBLE_SALE_SUSPECTED
        assert any(line.startswith("BLOCKED") for line in result.reasoning)

    def test_disjoint_boundary_is_clear(self, detector) -> None:
        result = detector.evaluate(square(0, 0, 1), [on_file("claim-a", square(5, 5, 1))])
        assert not result.has_conflict
        assert result.status == SpatialConflictStatus.CLEAR
        assert result.reasoning == ["No significant overlap with claims on file"]

    def test_empty_registry_is_clear(self, detector) -> None:
        result = detector.evaluate(square(0, 0, 1), [])
        assert result.status == SpatialConflictStatus.CLEAR
        assert result.max_iou == 0.0

    def test_small_plot_inside_large_is_blocked_despite_low_iou(self, detector) -> None:
        large = square(0, 0, 10)
        small = square(4, 8.8, 2)
        result = detector.evaluate(small, [on_file("claim-a", large)])

        assert result.max_overlap_pct == pytest.approx(60.0)
        assert result.max_iou < 0.05
        assert result.conflicting_claims[0].severity == Severity.WARNING
        assert result.is_blocked
        assert result.requires_escalation
        assert result.status == SpatialConflictStatus.HIGH_RISK

    def test_minor_overlap_is_potential_dispute(self, detector) -> None:
        # 0.2 x 2 strip of a 2 x 2 parcel: 10% of the smaller, IoU ~0.05
        result = detector.evaluate(square(0, 0, 2), [on_file("claim-a", square(0, 1.8, 2))])
        assert result.has_conflict
        assert not result.is_blocked
        assert not result.prevents_lock
        assert result.status == SpatialConflictStatus.POTENTIAL_DISPUTE

    def test_negligible_overlap_is_noted_not_listed(self, detector) -> None:
        # 0.05 x 2 sliver: 2.5% of the smaller parcel
        result = detector.evaluate(square(0, 0, 2), [on_file("claim-a", square(0, 1.95, 2))])
        assert not result.has_conflict
        assert result.conflicting_claims == []
        assert any("Negligible" in line for line in result.reasoning)

    def test_excluded_claim_is_skipped(self, detector) -> None:
        parcel = square(0, 0, 1)
        result = detector.evaluate(parcel, [on_file("self", parcel)], exclude_claim_id="self")
        assert not result.has_conflict

    def test_rejected_claims_are_ignored(self, detector) -> None:
        parcel = square(0, 0, 1)
        result = detector.evaluate(parcel, [on_file("claim-a", parcel, status=ClaimStatus.REJECTED)])
        assert not result.has_conflict

    def test_malformed_on_file_boundary_is_skipped(self, detector) -> None:
        parcel = square(0, 0, 1)
        broken = Boundary.from_points([(5.6, -0.19), (5.601, -0.19)])
        result = detector.evaluate(parcel, [on_file("broken", broken), on_file("claim-a", parcel)])
        assert [c.claim_id for c in result.conflicting_claims] == ["claim-a"]
        assert any("malformed" in line for line in result.reasoning)

    def test_conflicts_sorted_by_iou(self, detector) -> None:
        parcel = square(0, 0, 2)
        existing = [
            on_file("partial", square(0, 1, 2)),
            on_file("exact", parcel, minutes=1),
        ]
        result = detector.evaluate(parcel, existing)
        assert [c.claim_id for c in result.conflicting_claims] == ["exact", "partial"]

    def test_invalid_candidate_raises(self, detector) -> None:
        with pytest.raises(InvalidGeometry):
            detector.evaluate(Boundary.from_points([(5.6, -0.19)]), [])


# ═══════════════════════════════════════════════════════════════════════
# CHECK WITH SIDE EFFECTS
# ═══════════════════════════════════════════════════════════════════════


class TestCheck:
    def _seeded(self, store: InMemoryClaimStore, boundary: Boundary) -> Claim:
        first = make_claim(
            boundary,
            claimant_id="buyer-001",
            claimant_name="Akua Darko",
            claimant_email="akua@example.com",
            status=ClaimStatus.SPATIAL_LOCKED,
        )
        asyncio.run(store.save_claim(first))
        return first

    def test_conflict_writes_records_and_alerts_buyer(self) -> None:
        store = InMemoryClaimStore()
        service = LoggingNotificationService()
        detector = ConflictDetector(store, NotificationDispatcher(service))
        parcel = square(0, 0, 1)
        first = self._seeded(store, parcel)
        second = make_claim(parcel)
        asyncio.run(store.save_claim(second))

        result = asyncio.run(detector.check(parcel, claim=second))

        assert result.is_blocked
        records = store.records_for(second.id)
        assert len(records) == 1
        assert records[0].conflicting_claim_id == first.id
        assert result.conflict_records == records
        assert result.notification is not None and result.notification.success
        buyer = next(n for n in service.sent if n.recipient == Recipient.BUYER)
        assert buyer.address == "yaw@example.com"
        assert buyer.severity == "CRITICAL"

    def test_own_boundary_is_excluded(self) -> None:
        store = InMemoryClaimStore()
        parcel = square(0, 0, 1)
        claim = self._seeded(store, parcel)
        result = asyncio.run(ConflictDetector(store).check(parcel, claim=claim))
        assert not result.has_conflict

    def test_record_false_has_no_side_effects(self) -> None:
        store = InMemoryClaimStore()
        service = LoggingNotificationService()
        detector = ConflictDetector(store, NotificationDispatcher(service))
        parcel = square(0, 0, 1)
        self._seeded(store, parcel)
        writes = store.writes

        result = asyncio.run(detector.check(parcel, claim=make_claim(parcel), record=False))

        assert result.has_conflict
        assert store.writes == writes
        assert service.sent == []

    def test_storage_failure_degrades_to_clear(self) -> None:
        detector = ConflictDetector(FailingStore())
        result = asyncio.run(detector.check(square(0, 0, 1)))
        assert result.degraded
        assert result.status == SpatialConflictStatus.CLEAR
        assert "database unreachable" in result.error

    def test_storage_timeout_degrades_to_clear(self) -> None:
        detector = ConflictDetector(SlowStore(), settings=VerifierSettings(storage_timeout=0.05))
        result = asyncio.run(detector.check(square(0, 0, 1)))
        assert result.degraded
        assert not result.has_conflict

    def test_no_store_degrades(self) -> None:
        result = asyncio.run(ConflictDetector().check(square(0, 0, 1)))
        assert result.degraded

    def test_invalid_geometry_raises_before_storage(self) -> None:
        with pytest.raises(InvalidGeometry):
            asyncio.run(ConflictDetector(FailingStore()).check(Boundary(coordinates=[])))


# ═══════════════════════════════════════════════════════════════════════
# NOTIFICATION FAN-OUT
# ═══════════════════════════════════════════════════════════════════════


class TestNotifications:
    def test_buyer_only_without_contacts(self) -> None:
        notifications = build_notifications(make_alert())
        assert [n.recipient for n in notifications] == [Recipient.BUYER]
        assert notifications[0].title == "Potential Title Conflict Detected"

    def test_lawyer_and_seller_when_known(self) -> None:
        alert = make_alert(legal_contact_email="counsel@example.com", seller_name="Kofi Mensah")
        notifications = build_notifications(alert)
        assert [n.recipient for n in notifications] == [Recipient.BUYER, Recipient.LAWYER, Recipient.SELLER]
        assert notifications[1].address == "counsel@example.com"
        assert notifications[2].title == "Seller Flagged: Kofi Mensah"

    def test_severity_follows_overlap(self) -> None:
        assert build_notifications(make_alert(50.0))[0].severity == "CRITICAL"
        assert build_notifications(make_alert(12.5))[0].severity == "HIGH"

    def test_failed_lawyer_channel_does_not_fail_dispatch(self) -> None:
        service = SelectiveService(fail={Recipient.LAWYER})
        alert = make_alert(legal_contact_email="counsel@example.com", seller_name="Kofi Mensah")
        result = asyncio.run(NotificationDispatcher(service).dispatch(alert))

        assert result.success
        assert not result.channels[Recipient.LAWYER].success
        assert "smtp relay refused" in result.channels[Recipient.LAWYER].error
        assert result.channels[Recipient.SELLER].success

    def test_failed_buyer_channel_fails_dispatch(self) -> None:
        service = SelectiveService(fail={Recipient.BUYER})
        result = asyncio.run(NotificationDispatcher(service).dispatch(make_alert()))
        assert not result.success

    def test_stalled_channel_times_out(self) -> None:
        service = SelectiveService(stall={Recipient.SELLER})
        dispatcher = NotificationDispatcher(service, VerifierSettings(notification_timeout=0.05))
        result = asyncio.run(dispatcher.dispatch(make_alert(seller_name="Kofi Mensah")))

        assert result.success
        assert "timed out" in result.channels[Recipient.SELLER].error
