#!/usr/bin/env python3
"""
Land Claim Verifier: Entry Point
================================

Demonstrates a double sale: the same parcel is sold by the same grantor to
two buyers. The first claim is verified and locked; the second is caught by
the conflict detector, its lock is refused, and the buyer is alerted.

Usage:
    python main.py                          # Structural analysis (no API key needed)
    OPENAI_API_KEY=sk-... python main.py    # Vision model + structural cross-check
"""

from __future__ import annotations

import asyncio
import logging
import sys

from dotenv import load_dotenv

from claim_verifier.config import get_settings
from claim_verifier.extractor_llm import OpenAIVision
from claim_verifier.models import (
    Boundary,
    ClaimIntake,
    ClaimReport,
    ClaimStatus,
    Recommendation,
)
from claim_verifier.pipeline import ClaimVerificationPipeline
from claim_verifier.storage import InMemoryClaimStore, load_title_records

load_dotenv()


# ─── The Same Indenture, Sold Twice ─────────────────────────────────

INDENTURE_TEXT = """\
THIS INDENTURE is made at Accra in the Greater Accra Region.
Grantor: Kofi Mensah
Parcel ID: GA12345678
Date of Issue: 15th January 2019
WITNESSETH that the Grantor, being the lawful owner of the land described,
conveys the said parcel with all rights attached to the Grantee.
Situated at East Legon, plan attached.
Signed, sealed and delivered in the presence of witnesses."""

PARCEL = Boundary.from_points([
    (5.6350, -0.1600),
    (5.6350, -0.1590),
    (5.6360, -0.1590),
    (5.6360, -0.1600),
])

FIRST_BUYER = ClaimIntake(
    claimant_id="buyer-001",
    claimant_name="Akua Darko",
    claimant_email="akua.darko@example.com",
    grantor_name="Kofi Mensah",
    boundary=PARCEL,
    document_text=INDENTURE_TEXT,
)

SECOND_BUYER = ClaimIntake(
    claimant_id="buyer-002",
    claimant_name="Yaw Boateng",
    claimant_email="yaw.boateng@example.com",
    legal_contact_email="counsel@example.com",
    grantor_name="Kofi Mensah",
    boundary=PARCEL,
    document_text=INDENTURE_TEXT,
)


# ─── ANSI Color Constants ───────────────────────────────────────────

_RED = "\033[91m"
_YELLOW = "\033[93m"
_GREEN = "\033[92m"
_CYAN = "\033[96m"
_DIM = "\033[2m"
_BOLD = "\033[1m"
_RESET = "\033[0m"
_WIDTH = 72

_RECOMMENDATION_COLORS = {
    Recommendation.AUTO_APPROVE: _GREEN,
    Recommendation.HUMAN_REVIEW: _YELLOW,
    Recommendation.REJECT: _RED,
}


# ─── Pretty Printer ─────────────────────────────────────────────────


def print_report(title: str, report: ClaimReport) -> None:
    claim, outcome = report.claim, report.outcome
    color = _RECOMMENDATION_COLORS[outcome.recommendation]

    print(f"\n{'=' * _WIDTH}")
    print(f"{_BOLD}{_CYAN}  {title}{_RESET}")
    print(f"{'=' * _WIDTH}")
    print(f"  Claim:       {claim.id}")
    print(f"  Claimant:    {claim.claimant_name}")
    print(f"  Audit Hash:  {_DIM}{claim.document_hash[:16]}...{_RESET}")
    print(f"{'─' * _WIDTH}")
    for signal in outcome.signals:
        flag = f"{_RED}!{_RESET}" if signal.flagged else " "
        print(f"  {flag} {signal.signal.value:<16} {signal.score:5.2f}  {_DIM}{signal.verdict}{_RESET}")
    print(f"{'─' * _WIDTH}")
    print(f"  Confidence:  {outcome.overall_confidence:.2f} ({outcome.confidence_level.value})")
    print(f"  Decision:    {color}{_BOLD}{outcome.recommendation.value}{_RESET}")
    if outcome.override:
        print(f"  Override:    {outcome.override}")

    conflict = report.lock.conflict if report.lock else report.conflict
    if conflict and conflict.has_conflict:
        print(f"\n  {_RED}{_BOLD}CONFLICT ({len(conflict.conflicting_claims)}){_RESET}")
        for line in conflict.reasoning:
            print(f"    {line}")
        if conflict.notification:
            sent = ", ".join(r.value for r in conflict.notification.channels)
            print(f"    {_DIM}alerts sent to: {sent}{_RESET}")

    print(f"{'=' * _WIDTH}")
    status_color = _GREEN if claim.status == ClaimStatus.SPATIAL_LOCKED else _YELLOW
    print(f"  {status_color}{_BOLD}STATUS: {claim.status.value}{_RESET}")
    if report.lock and not report.lock.changed:
        print(f"  {_DIM}{report.lock.reason}{_RESET}")
    print(f"{'=' * _WIDTH}\n")


# ─── Main ────────────────────────────────────────────────────────────


async def run_demo() -> int:
    settings = get_settings()
    store = InMemoryClaimStore(load_title_records())
    pipeline = ClaimVerificationPipeline(
        store, vision=OpenAIVision(model=settings.openai_model), settings=settings
    )

    first = await pipeline.process(FIRST_BUYER)
    print_report("FIRST SALE", first)
    if first.claim.status == ClaimStatus.SPATIAL_LOCKED:
        minted = await pipeline.mint(first.claim.id)
        print(f"  Minted:      {_DIM}{minted.claim.ledger_tx_reference[:20]}...{_RESET}\n")

    second = await pipeline.process(SECOND_BUYER)
    print_report("SECOND SALE OF THE SAME PARCEL", second)

    caught = second.claim.status != ClaimStatus.SPATIAL_LOCKED
    return 0 if caught else 1


def main():
    """Run the double-sale demo and print both reports."""
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")
    print("\n  Starting Land Claim Verifier...")
    print("  Processing two sales of one parcel...\n")
    sys.exit(asyncio.run(run_demo()))


if __name__ == "__main__":
    main()
