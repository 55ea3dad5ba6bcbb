"""
Conflict-alert fan-out to everyone with a stake in a disputed parcel.

  BUYER   always (the claimant whose boundary collided)
  LAWYER  when the claim lists a legal contact (evidence packet)
  SELLER  when the grantor is known (flagged for a double-sale audit)

Each channel runs as its own task under a timeout. A failing channel is
logged and reported in the result; it never aborts the others.
"""

from __future__ import annotations

import asyncio
import logging

from .config import VerifierSettings, get_settings
from .exceptions import NotificationFailure
from .models import (
    ConflictAlert,
    DispatchResult,
    Notification,
    NotificationResult,
    Recipient,
)
from .storage import NotificationService

logger = logging.getLogger(__name__)

CRITICAL_OVERLAP_PCT = 50.0


def build_notifications(alert: ConflictAlert) -> list[Notification]:
    """Addressed messages for one alert, buyer first."""
    severity = "CRITICAL" if alert.overlap_pct >= CRITICAL_OVERLAP_PCT else "HIGH"
    overlap = f"{alert.overlap_pct:.1f}%"
    notifications = [
        Notification(
            recipient=Recipient.BUYER,
            severity=severity,
            title="Potential Title Conflict Detected",
            message=(
                f"A {overlap} overlap has been detected with another claim. "
                "Your Priority of Sale status is being verified."
            ),
            address=alert.claimant_email,
            alert=alert,
        )
    ]
    if alert.legal_contact_email:
        notifications.append(
            Notification(
                recipient=Recipient.LAWYER,
                severity="HIGH",
                title=f"Evidence Packet: Conflict for {alert.claimant_name}",
                message=(
                    "A spatial conflict has been detected for your client's land claim "
                    f"({overlap} overlap, IoU {alert.iou:.2f}). Evidence packet attached."
                ),
                address=alert.legal_contact_email,
                alert=alert,
            )
        )
    if alert.seller_name:
        notifications.append(
            Notification(
                recipient=Recipient.SELLER,
                severity="CRITICAL",
                title=f"Seller Flagged: {alert.seller_name}",
                message=(
                    f"Seller has been flagged for potential double-sale. {overlap} overlap detected."
                ),
                alert=alert,
            )
        )
    return notifications


class NotificationDispatcher:
    """Sends one conflict alert to every relevant recipient concurrently."""

    def __init__(self, service: NotificationService, settings: VerifierSettings | None = None):
        self.service = service
        self.settings = settings or get_settings()

    async def dispatch(self, alert: ConflictAlert) -> DispatchResult:
        notifications = build_notifications(alert)
        results = await asyncio.gather(*(self._send(n) for n in notifications))
        channels = {n.recipient: r for n, r in zip(notifications, results)}
        buyer = channels[Recipient.BUYER]
        logger.info(
            "Conflict alert for claim %s dispatched to %s (buyer ok=%s)",
            alert.claim_id,
            ", ".join(r.value for r in channels),
            buyer.success,
        )
        return DispatchResult(
            success=buyer.success,
            email_sent=any(r.email_sent for r in results),
            channels=channels,
        )

    async def _send(self, notification: Notification) -> NotificationResult:
        try:
            try:
                return await asyncio.wait_for(
                    self.service.send_conflict_alert(notification),
                    timeout=self.settings.notification_timeout,
                )
            except asyncio.TimeoutError as e:
                raise NotificationFailure(
                    f"{notification.recipient.value} notification timed out",
                    {"timeout": self.settings.notification_timeout},
                ) from e
            except NotificationFailure:
                raise
            except Exception as e:
                raise NotificationFailure(
                    f"{notification.recipient.value} notification failed: {e}"
                ) from e
        except NotificationFailure as e:
            logger.warning("Notification channel failed: %s", e)
            return NotificationResult(success=False, error=str(e))
