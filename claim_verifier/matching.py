"""
Fuzzy identity matching of extracted grantors against on-file title records.

Strategy:
  1. An exact parcel id match is conclusive (score 1.0, EXACT).
  2. Otherwise normalise names (case, punctuation, honorifics, whitespace)
     and take the best SequenceMatcher ratio across all records.
  3. Matched above 0.6; EXACT above 0.9, else PARTIAL.
"""

from __future__ import annotations

import re
from difflib import SequenceMatcher
from typing import Iterable

from .config import VerifierSettings, get_settings
from .models import FuzzyMatchResult, MatchedRecord, MatchType, TitleRecord

_HONORIFICS = frozenset({"mr", "mrs", "ms", "dr", "chief", "alhaji", "prof", "hon"})


def normalize_name(name: str) -> str:
    """Lowercase, drop punctuation and honorifics, collapse whitespace."""
    cleaned = re.sub(r"[^a-z\s]", " ", name.lower())
    tokens = [t for t in cleaned.split() if t not in _HONORIFICS]
    return " ".join(tokens)


def name_similarity(a: str, b: str) -> float:
    """SequenceMatcher ratio of two normalised names, in [0, 1]."""
    left, right = normalize_name(a), normalize_name(b)
    if not left or not right:
        return 0.0
    return SequenceMatcher(None, left, right).ratio()


def match_identity(
    grantor_name: str | None,
    parcel_id: str | None,
    records: Iterable[TitleRecord] | None,
    settings: VerifierSettings | None = None,
) -> FuzzyMatchResult:
    """Match an extracted identity against title records.

    ``records=None`` means the record lookup itself was unavailable; the
    result is NO_MATCH with a note rather than an error.
    """
    settings = settings or get_settings()
    if records is None:
        return FuzzyMatchResult(note="Title records unavailable")
    records = list(records)
    if not grantor_name and not parcel_id:
        return FuzzyMatchResult()

    if parcel_id:
        wanted = parcel_id.strip().upper()
        for record in records:
            if record.parcel_id and record.parcel_id.strip().upper() == wanted:
                return FuzzyMatchResult(
                    matched=True,
                    match_score=1.0,
                    matched_record=_as_matched(record),
                    match_type=MatchType.EXACT,
                )

    if not grantor_name:
        return FuzzyMatchResult()

    best: TitleRecord | None = None
    best_score = 0.0
    for record in records:
        score = name_similarity(grantor_name, record.owner_name)
        if score > best_score:
            best, best_score = record, score

    if best is None:
        return FuzzyMatchResult()

    matched = best_score > settings.name_partial_similarity
    if not matched:
        match_type = MatchType.NO_MATCH
    elif best_score > settings.name_exact_similarity:
        match_type = MatchType.EXACT
    else:
        match_type = MatchType.PARTIAL
    return FuzzyMatchResult(
        matched=matched,
        match_score=round(best_score, 4),
        matched_record=_as_matched(best),
        match_type=match_type,
    )


def _as_matched(record: TitleRecord) -> MatchedRecord:
    return MatchedRecord(
        record_id=record.record_id,
        owner_name=record.owner_name,
        parcel_id=record.parcel_id,
    )
