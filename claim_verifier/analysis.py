"""
Deterministic document analysis used when no vision model is available.

Produces the same DocumentAnalysis structure the vision capability returns,
so the document agent never branches on where its analysis came from.
"""

from __future__ import annotations

import re

from .extractor_regex import extract_fields, mentions_year
from .models import AnalysisSource, DocumentAnalysis

# Checked in order; the first family that matches names the document
_DOCUMENT_TYPES: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("Indenture", re.compile(r"indenture|plan\s*of\s*land|stool|family", re.IGNORECASE)),
    (
        "Certificate of Occupancy",
        re.compile(r"certificate\s*of\s*occupancy|certificate|occupancy", re.IGNORECASE),
    ),
    ("Deed of Assignment", re.compile(r"deed\s*of\s*assignment|deed|assignment", re.IGNORECASE)),
)

_LOCATION = re.compile(r"(?:location|address|situated)[:\s]+([A-Z][a-z\s,]+)", re.IGNORECASE)
_LOOSE_PARCEL = re.compile(r"(?:parcel|plot)\s*(?:id|no)?\.?\s*([A-Z0-9/\-]{3,})", re.IGNORECASE)

BASE_CONFIDENCE = 0.7
MIN_CONFIDENCE = 0.1
MAX_CONFIDENCE = 0.95
SHORT_TEXT_CHARS = 100


def classify_document(text: str) -> str:
    for name, pattern in _DOCUMENT_TYPES:
        if pattern.search(text):
            return name
    return "Unknown"


def fallback_analysis(text: str) -> DocumentAnalysis:
    """Structure-only analysis of document text.

    Starts from a base confidence of 0.7 and deducts for short text, a
    missing year and a missing parcel reference, clamped to [0.1, 0.95].
    """
    fields = extract_fields(text)
    indicators: list[str] = []
    confidence = BASE_CONFIDENCE

    if len(text) < SHORT_TEXT_CHARS:
        indicators.append("Document text seems too short")
        confidence -= 0.2
    if not mentions_year(text):
        indicators.append("No year/date detected")
        confidence -= 0.1
    parcel = fields.parcel_id
    if parcel is None:
        loose = _LOOSE_PARCEL.search(text)
        parcel = loose.group(1) if loose else None
    if parcel is None:
        indicators.append("No parcel ID detected")
        confidence -= 0.1

    confidence = round(max(MIN_CONFIDENCE, min(MAX_CONFIDENCE, confidence)), 4)
    is_authentic = confidence > 0.5
    document_type = classify_document(text)
    location = _LOCATION.search(text)
    verdict = (
        "Document appears authentic based on structure."
        if is_authentic
        else "Document has some suspicious elements."
    )
    return DocumentAnalysis(
        document_type=document_type,
        grantor_name=fields.grantor_name,
        parcel_id=parcel,
        location=location.group(1).strip() if location else None,
        document_date=fields.document_date,
        confidence=confidence,
        is_authentic=is_authentic,
        fraud_indicators=indicators,
        reasoning=f"Structural analysis detected this as a {document_type}. {verdict}",
        source=AnalysisSource.FALLBACK,
    )
