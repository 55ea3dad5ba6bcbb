"""
Forgery heuristics: the deterministic checklist run on every document.

Each check:
  - Takes extracted fields (and the match result or raw text)
  - Returns a HeuristicCheck (passed + human-readable reason)
  - Is independently testable and never calls a model

run_checklist() runs all three and bundles the results.
"""

from __future__ import annotations

from datetime import date

from .config import VerifierSettings, get_settings
from .extractor_regex import parse_document_date
from .models import (
    ExtractedFields,
    ForgeryHeuristics,
    FuzzyMatchResult,
    HeuristicCheck,
    MatchType,
)

_DAYS_PER_YEAR = 365.25


# ─── Orchestrator ────────────────────────────────────────────────────


def run_checklist(
    extraction: ExtractedFields,
    match: FuzzyMatchResult,
    settings: VerifierSettings | None = None,
    today: date | None = None,
) -> ForgeryHeuristics:
    settings = settings or get_settings()
    today = today or date.today()
    return ForgeryHeuristics(
        name_match=check_name_match(extraction, match),
        date_anomaly=check_date_anomaly(extraction, settings, today),
        formatting=check_formatting(
            extraction.extracted_text,
            document_age_years(extraction.document_date, today),
            settings,
        ),
    )


# ─── Individual Checks ───────────────────────────────────────────────


def check_name_match(extraction: ExtractedFields, match: FuzzyMatchResult) -> HeuristicCheck:
    """The grantor on the document must correspond to an on-file owner."""
    if not extraction.grantor_name:
        return HeuristicCheck(
            passed=False, score=0.0, reason="No grantor name extracted from document"
        )
    if not match.matched:
        reason = "No matching record found in database"
        if match.note:
            reason = f"{reason} ({match.note})"
        return HeuristicCheck(passed=False, score=0.0, reason=reason)
    if match.match_type == MatchType.EXACT:
        return HeuristicCheck(passed=True, score=1.0, reason="Exact name match found")

    owner = match.matched_record.owner_name if match.matched_record else "?"
    return HeuristicCheck(
        passed=True,
        score=match.match_score,
        reason=(
            f'Partial match: "{extraction.grantor_name}" ≈ "{owner}" '
            f"({match.match_score * 100:.1f}% similarity)"
        ),
    )


def check_date_anomaly(
    extraction: ExtractedFields,
    settings: VerifierSettings | None = None,
    today: date | None = None,
) -> HeuristicCheck:
    """A document cannot be dated in the future or beyond the longest lease term."""
    settings = settings or get_settings()
    today = today or date.today()
    raw = extraction.document_date
    if not raw:
        return HeuristicCheck(passed=False, reason="No document date found - unable to verify age")

    try:
        doc_date = parse_document_date(raw)
    except ValueError:
        return HeuristicCheck(
            passed=False, reason=f'Invalid date format: "{raw}" could not be parsed'
        )

    if doc_date > today:
        return HeuristicCheck(
            passed=False,
            reason=f"Document dated {raw} is a future date (today is {today.isoformat()}) - HIGH RISK",
            flags=["FUTURE_DATE"],
        )

    age = (today - doc_date).days / _DAYS_PER_YEAR
    if age > settings.max_lease_years:
        return HeuristicCheck(
            passed=False,
            reason=(
                f"Document too old: dated {raw} (>{settings.max_lease_years} years) "
                "- exceeds maximum lease duration"
            ),
            flags=["EXCEEDS_LEASE_TERM"],
        )

    return HeuristicCheck(
        passed=True,
        reason=f"Date valid: document is {age:.1f} years old (within {settings.max_lease_years}-year limit)",
    )


def check_formatting(
    text: str,
    age_years: float | None = None,
    settings: VerifierSettings | None = None,
) -> HeuristicCheck:
    """Look for signs of a digitally produced document posing as an old one.

    Checks that only make sense on aged paper (uniform indentation, modern
    vocabulary) are skipped unless the document claims to be old.
    """
    settings = settings or get_settings()
    flags: list[str] = []
    aged = age_years is not None and age_years >= settings.aged_document_years

    if has_uniform_line_lengths(text, settings.uniform_line_variance):
        flags.append("Unnaturally uniform line lengths - possible digital forgery")
    if aged and has_uniform_indentation(text, settings.min_aligned_lines):
        flags.append('Perfect text alignment on "aged" document - suspicious')
    if aged:
        terms = _found(text, settings.modern_terms)
        if terms:
            flags.append(f"Modern terms on aged document: {', '.join(terms)}")
    if any(artifact in text for artifact in settings.encoding_artifacts):
        flags.append("Digital editing artifacts detected")
    keywords = _found(text, settings.fraud_keywords)
    if keywords:
        flags.append(f"Fraud keywords detected: {', '.join(keywords)}")

    if not flags:
        return HeuristicCheck(passed=True, reason="No suspicious formatting patterns detected")
    return HeuristicCheck(
        passed=False,
        reason=f"{len(flags)} red flag(s) found: {'; '.join(flags)}",
        flags=flags,
    )


# ─── Text Measures ───────────────────────────────────────────────────


def has_uniform_line_lengths(text: str, max_variance: float = 10.0) -> bool:
    """True when >= 3 substantive lines have near-identical length."""
    lengths = [len(line) for line in text.split("\n") if len(line.strip()) > 10]
    if len(lengths) < 3:
        return False
    mean = sum(lengths) / len(lengths)
    variance = sum((n - mean) ** 2 for n in lengths) / len(lengths)
    return variance < max_variance


def has_uniform_indentation(text: str, min_lines: int = 5) -> bool:
    """True when more than ``min_lines`` lines share exactly one indent width."""
    lines = [line for line in text.split("\n") if line.strip()]
    indents = {len(line) - len(line.lstrip()) for line in lines}
    return len(indents) == 1 and len(lines) > min_lines


def document_age_years(raw_date: str | None, today: date | None = None) -> float | None:
    """Age of a document in years, or None when the date is absent or unparseable."""
    if not raw_date:
        return None
    try:
        doc_date = parse_document_date(raw_date)
    except ValueError:
        return None
    return ((today or date.today()) - doc_date).days / _DAYS_PER_YEAR


def _found(text: str, terms: list[str]) -> list[str]:
    lower = text.lower()
    return [term for term in terms if term in lower]
