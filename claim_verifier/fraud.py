"""
Fraud / forgery assessment of a land document.

Flow:
  OCR text ─► pattern extraction ─► fuzzy identity match ─► heuristic checklist
           ─► multiplicative penalties ─► FraudAssessment

Every failed check multiplies a starting confidence of 1.0 by its penalty,
so several small problems compound into a rejection while a single soft
failure only sends the claim to review.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Iterable

from .config import VerifierSettings, get_settings
from .extractor_regex import extract_fields
from .heuristics import run_checklist
from .matching import match_identity
from .models import (
    ExtractedFields,
    ForgeryHeuristics,
    FraudAssessment,
    FraudStatus,
    FuzzyMatchResult,
    MatchType,
    TitleRecord,
)

logger = logging.getLogger(__name__)


def assess_document(
    text: str,
    records: Iterable[TitleRecord] | None,
    settings: VerifierSettings | None = None,
    today: date | None = None,
) -> FraudAssessment:
    """Run extraction, identity matching and the checklist on one document.

    Args:
        text: OCR text of the document.
        records: On-file title records, or None when they could not be loaded.
        today: Reference date for the date checks (defaults to today).
    """
    settings = settings or get_settings()
    extraction = extract_fields(text)
    match = match_identity(extraction.grantor_name, extraction.parcel_id, records, settings)
    heuristics = run_checklist(extraction, match, settings, today)
    return combine(extraction, match, heuristics, settings)


def combine(
    extraction: ExtractedFields,
    match: FuzzyMatchResult,
    heuristics: ForgeryHeuristics,
    settings: VerifierSettings | None = None,
) -> FraudAssessment:
    """Fold checklist results into a final confidence and status."""
    settings = settings or get_settings()
    score = 1.0
    reasoning: list[str] = []

    ocr_pct = f"{extraction.confidence * 100:.0f}%"
    if extraction.confidence < settings.low_ocr_confidence:
        score *= settings.penalty_low_ocr
        reasoning.append(f"Low OCR confidence ({ocr_pct})")
    else:
        reasoning.append(f"OCR extraction successful ({ocr_pct} confidence)")

    if heuristics.name_match.passed:
        reasoning.append(f"Name match: {heuristics.name_match.reason}")
    else:
        score *= settings.penalty_name_mismatch
        reasoning.append(f"Name verification failed: {heuristics.name_match.reason}")

    if heuristics.date_anomaly.passed:
        reasoning.append(heuristics.date_anomaly.reason)
    else:
        score *= settings.penalty_date_anomaly
        reasoning.append(f"Date anomaly: {heuristics.date_anomaly.reason}")

    if heuristics.formatting.passed:
        reasoning.append("Formatting check passed")
    else:
        score *= settings.penalty_formatting
        reasoning.append(f"Formatting issues: {heuristics.formatting.reason}")

    if match.matched and match.match_type == MatchType.EXACT:
        parcel = match.matched_record.parcel_id if match.matched_record else ""
        reasoning.append(f"Exact database match found (Parcel: {parcel or 'n/a'})")
    elif match.matched and match.match_type == MatchType.PARTIAL:
        reasoning.append(f"Partial database match ({match.match_score * 100:.0f}% similarity)")
    else:
        score *= settings.penalty_no_database_match
        reasoning.append("No database match found")

    score = round(max(0.0, min(1.0, score)), 4)
    if score >= settings.fraud_clear_threshold:
        status = FraudStatus.CLEAR
        recommendation = "Document passed all checks. Safe to proceed."
    elif score >= settings.fraud_review_threshold:
        status = FraudStatus.NEEDS_REVIEW
        recommendation = "Manual review recommended before approval."
    else:
        status = FraudStatus.REJECTED
        recommendation = "Document failed verification. Likely forgery or fraud."

    logger.info("Fraud assessment: %s (confidence %.2f)", status.value, score)
    return FraudAssessment(
        status=status,
        confidence_score=score,
        fraud_confidence=round(1.0 - score, 4),
        is_fraudulent=status == FraudStatus.REJECTED,
        reasoning=reasoning,
        extraction=extraction,
        fuzzy_match=match,
        heuristics=heuristics,
        recommendation=recommendation,
    )
