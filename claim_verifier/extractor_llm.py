"""
Vision capability backed by OpenAI chat completions in JSON mode.

The model is a "smart OCR post-processor" and a tampering screen, never the
final word: everything it returns is cross-checked by the pattern extractor
and folded into the aggregate as one weighted signal among several.

Design:
  - JSON mode enforced (structured output, not free text)
  - Graceful fallback: no API key or any failure → returns None → the
    document agent uses the deterministic structural analysis instead
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any

from .models import AnalysisSource, DocumentAnalysis, TamperingAnalysis

logger = logging.getLogger(__name__)


# ─── System Prompts ──────────────────────────────────────────────────

ANALYSIS_PROMPT = """\
You are an expert document analyst specialising in West African land documents
(Ghana, Nigeria and other ECOWAS countries).

1. Identify the document type. Use one of: "Stool Indenture", "Family Indenture",
   "Certificate of Occupancy", "Freehold", "Leasehold", "Governor's Consent",
   "Deed of Assignment", "Customary Freehold".
2. Extract grantor/grantee names, parcel id, location and issue date EXACTLY as
   written. Do not correct or infer missing values.
3. Assess authenticity from formatting, language and official markers (seals,
   serial numbers, surveyor certification, witness signatures).
4. List any fraud indicators.

Return a JSON object with these exact keys:
{
    "document_type": "string",
    "grantor_name": "string or null",
    "grantee_name": "string or null",
    "parcel_id": "string or null",
    "location": "string or null",
    "document_date": "string as written, or null",
    "confidence": number 0-1,
    "is_authentic": boolean,
    "fraud_indicators": ["string"],
    "reasoning": "string"
}
"""

TAMPERING_PROMPT = """\
You are an expert in digital forensics. Analyse the document image for signs of
digital editing, cut-and-paste artifacts, inconsistent lighting or fonts,
resolution mismatches, compression artifacts around edited areas, and cloning.

Return a JSON object:
{
    "has_tampering": boolean,
    "confidence": number 0-1,
    "indicators": ["string"],
    "reasoning": "string"
}
"""


class OpenAIVision:
    """VisionCapability implementation over the OpenAI API.

    Usage:
        vision = OpenAIVision()
        analysis = vision.analyze(text=ocr_text)
        if analysis is None:
            # fall back to structural analysis
            ...
    """

    def __init__(self, model: str = "gpt-4o", api_key: str | None = None):
        self.model = model
        self._api_key = api_key

    @property
    def api_key(self) -> str | None:
        return self._api_key or os.environ.get("OPENAI_API_KEY")

    def analyze(self, text: str | None = None, image: str | None = None) -> DocumentAnalysis | None:
        """Analyse a document from its text or base64 image.

        Returns:
            DocumentAnalysis if the model answered, None if unavailable or failed.
        """
        if not text and not image:
            return None
        if image:
            user: Any = [
                {"type": "text", "text": "Analyse this land document image."},
                {
                    "type": "image_url",
                    "image_url": {"url": f"data:image/jpeg;base64,{image}", "detail": "high"},
                },
            ]
        else:
            user = f"Analyse this land document text:\n\n{text}"

        data = self._complete(ANALYSIS_PROMPT, user)
        if data is None:
            return None
        return DocumentAnalysis(
            document_type=str(data.get("document_type") or "Unknown"),
            grantor_name=data.get("grantor_name"),
            grantee_name=data.get("grantee_name"),
            parcel_id=data.get("parcel_id"),
            location=data.get("location"),
            document_date=data.get("document_date"),
            confidence=_safe_unit(data.get("confidence"), 0.5),
            is_authentic=bool(data.get("is_authentic", False)),
            fraud_indicators=[str(i) for i in data.get("fraud_indicators") or []],
            reasoning=str(data.get("reasoning") or ""),
            source=AnalysisSource.VISION,
        )

    def detect_tampering(self, image: str) -> TamperingAnalysis | None:
        """Screen a base64 image for digital tampering."""
        user = [
            {"type": "text", "text": "Analyse this document image for digital tampering."},
            {
                "type": "image_url",
                "image_url": {"url": f"data:image/jpeg;base64,{image}", "detail": "high"},
            },
        ]
        data = self._complete(TAMPERING_PROMPT, user)
        if data is None:
            return None
        return TamperingAnalysis(
            has_tampering=bool(data.get("has_tampering", False)),
            confidence=_safe_unit(data.get("confidence"), 0.5),
            indicators=[str(i) for i in data.get("indicators") or []],
            reasoning=str(data.get("reasoning") or ""),
        )

    # ─── Transport ───────────────────────────────────────────────────

    def _complete(self, system_prompt: str, user_content: Any) -> dict[str, Any] | None:
        api_key = self.api_key
        if not api_key:
            logger.info("No OPENAI_API_KEY set, skipping vision analysis (structural mode)")
            return None

        try:
            from openai import OpenAI

            client = OpenAI(api_key=api_key)
            response = client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_content},
                ],
                response_format={"type": "json_object"},
                temperature=0.1,
            )
            content = response.choices[0].message.content
            if content is None:
                logger.error("Vision model returned empty content")
                return None
            data = json.loads(content)
            if not isinstance(data, dict):
                logger.error("Vision model returned non-object JSON")
                return None
            return data
        except Exception as e:
            logger.error("Vision request failed: %s", e)
            return None


# ─── Safe Type Converters ────────────────────────────────────────────


def _safe_unit(value: object, default: float) -> float:
    """Coerce a model output to a float in [0, 1]; ``default`` on failure."""
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default
    return max(0.0, min(1.0, number))
