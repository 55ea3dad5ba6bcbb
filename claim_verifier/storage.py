"""
Collaborator interfaces and their bundled in-process implementations.

Every external dependency of the engine is a typing.Protocol injected through
constructors: the claim store, the vision capability, the notification
service and the ledger anchor. No module reaches for a global client.

Bundled implementations:
  - InMemoryClaimStore          claims, conflict records and audit log in dicts
  - LoggingNotificationService  writes alerts to the log
  - DigestLedger                echoes the hash as a local tx reference
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from .exceptions import ClaimNotFound
from .models import (
    AuditEntry,
    Claim,
    ClaimStatus,
    ConflictRecord,
    DocumentAnalysis,
    Notification,
    NotificationResult,
    OnFileBoundary,
    ResolutionStatus,
    TamperingAnalysis,
    TitleRecord,
    new_id,
)

logger = logging.getLogger(__name__)

DEFAULT_TITLE_RECORDS = Path(__file__).parent / "title_records.json"


# ─── Protocols ───────────────────────────────────────────────────────


@runtime_checkable
class ClaimStore(Protocol):
    async def list_boundaries(self, exclude_claim_id: str | None = None) -> list[OnFileBoundary]: ...

    async def list_title_records(self) -> list[TitleRecord]: ...

    async def get_claim(self, claim_id: str) -> Claim | None: ...

    async def save_claim(self, claim: Claim) -> Claim: ...

    async def update_claim_status(
        self, claim_id: str, status: ClaimStatus, fields: dict[str, Any] | None = None
    ) -> Claim: ...

    async def create_conflict_record(self, record: ConflictRecord) -> ConflictRecord: ...

    async def resolve_conflict_record(self, record_id: str, notes: str) -> ConflictRecord: ...

    async def append_audit_log(self, entry: AuditEntry) -> None: ...


@runtime_checkable
class VisionCapability(Protocol):
    def analyze(self, text: str | None = None, image: str | None = None) -> DocumentAnalysis | None: ...

    def detect_tampering(self, image: str) -> TamperingAnalysis | None: ...


@runtime_checkable
class NotificationService(Protocol):
    async def send_conflict_alert(self, notification: Notification) -> NotificationResult: ...


@runtime_checkable
class LedgerAnchor(Protocol):
    async def anchor(self, digest: str) -> str: ...


# ─── Seed Data ───────────────────────────────────────────────────────


def load_title_records(path: str | Path | None = None) -> list[TitleRecord]:
    """Load on-file title records from a JSON list.

    Args:
        path: Path to a JSON file of ``{record_id, owner_name, parcel_id}``
            objects. Defaults to the bundled sample registry.
    """
    resolved = DEFAULT_TITLE_RECORDS if path is None else Path(path)
    with resolved.open(encoding="utf-8") as f:
        rows: list[dict[str, Any]] = json.load(f)
    return [TitleRecord(**row) for row in rows]


# ─── In-Memory Claim Store ───────────────────────────────────────────


class InMemoryClaimStore:
    """Dict-backed ClaimStore.

    Returns copies so callers can never mutate stored state in place.
    ``writes`` counts every mutating call, which makes "no side effects"
    observable in tests.
    """

    def __init__(self, title_records: list[TitleRecord] | None = None):
        self.claims: dict[str, Claim] = {}
        self.conflict_records: dict[str, ConflictRecord] = {}
        self.audit_log: list[AuditEntry] = []
        self.title_records: list[TitleRecord] = list(title_records or [])
        self.writes = 0

    async def list_boundaries(self, exclude_claim_id: str | None = None) -> list[OnFileBoundary]:
        return [
            OnFileBoundary(
                claim_id=claim.id,
                boundary=claim.boundary,
                grantor_name=claim.grantor_name,
                created_at=claim.created_at,
                status=claim.status,
            )
            for claim in self.claims.values()
            if claim.boundary is not None and not claim.deleted and claim.id != exclude_claim_id
        ]

    async def list_title_records(self) -> list[TitleRecord]:
        return list(self.title_records)

    async def get_claim(self, claim_id: str) -> Claim | None:
        claim = self.claims.get(claim_id)
        return claim.model_copy(deep=True) if claim else None

    async def save_claim(self, claim: Claim) -> Claim:
        self.writes += 1
        self.claims[claim.id] = claim.model_copy(deep=True)
        return claim

    async def update_claim_status(
        self, claim_id: str, status: ClaimStatus, fields: dict[str, Any] | None = None
    ) -> Claim:
        current = self.claims.get(claim_id)
        if current is None:
            raise ClaimNotFound(f"Claim {claim_id} not found", {"claim_id": claim_id})
        self.writes += 1
        updated = current.model_copy(
            update={**(fields or {}), "status": status, "updated_at": datetime.now(timezone.utc)},
            deep=True,
        )
        self.claims[claim_id] = updated
        return updated.model_copy(deep=True)

    async def create_conflict_record(self, record: ConflictRecord) -> ConflictRecord:
        self.writes += 1
        self.conflict_records[record.id] = record
        return record

    async def resolve_conflict_record(self, record_id: str, notes: str) -> ConflictRecord:
        record = self.conflict_records.get(record_id)
        if record is None:
            raise ClaimNotFound(
                f"Conflict record {record_id} not found", {"record_id": record_id}
            )
        self.writes += 1
        resolved = record.model_copy(
            update={
                "resolution_status": ResolutionStatus.RESOLVED,
                "resolution_notes": notes,
                "resolved_at": datetime.now(timezone.utc),
            }
        )
        self.conflict_records[record_id] = resolved
        return resolved

    async def append_audit_log(self, entry: AuditEntry) -> None:
        self.writes += 1
        self.audit_log.append(entry)

    # ─── Read helpers (not part of the protocol) ─────────────────────

    def records_for(self, claim_id: str) -> list[ConflictRecord]:
        return [r for r in self.conflict_records.values() if r.claim_id == claim_id]

    def audit_for(self, claim_id: str) -> list[AuditEntry]:
        return [e for e in self.audit_log if e.claim_id == claim_id]


# ─── Notification & Ledger ───────────────────────────────────────────


class LoggingNotificationService:
    """NotificationService that records alerts in the log and in ``sent``."""

    def __init__(self) -> None:
        self.sent: list[Notification] = []

    async def send_conflict_alert(self, notification: Notification) -> NotificationResult:
        self.sent.append(notification)
        logger.warning(
            "[%s] %s -> %s <%s>: %s",
            notification.severity,
            notification.title,
            notification.recipient.value,
            notification.address or "no address",
            notification.message,
        )
        return NotificationResult(success=True, email_sent=bool(notification.address), alert_id=new_id())


class DigestLedger:
    """LedgerAnchor that returns ``0x`` + digest without any network call."""

    def __init__(self) -> None:
        self.anchored: list[str] = []

    async def anchor(self, digest: str) -> str:
        self.anchored.append(digest)
        return f"0x{digest}"
