"""
Tunable thresholds, penalties, weights and timeouts for the verification engine.

Every number the algorithms branch on lives here as a default, so operators
can tune behaviour through ``CLAIM_VERIFIER_*`` environment variables (or a
``.env`` file) without touching the algorithms themselves.
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class VerifierSettings(BaseSettings):
    """Central configuration for the claim verification engine."""

    model_config = SettingsConfigDict(
        env_prefix="CLAIM_VERIFIER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- Spatial conflict thresholds ---
    iou_double_sale_threshold: float = 0.50
    iou_critical_threshold: float = 0.20
    iou_warning_threshold: float = 0.05
    overlap_block_pct: float = 50.0
    overlap_dispute_pct: float = 5.0

    # --- Identity matching ---
    name_partial_similarity: float = 0.6
    name_exact_similarity: float = 0.9

    # --- Forgery heuristics ---
    max_lease_years: int = 99
    aged_document_years: int = 20
    low_ocr_confidence: float = 0.5
    uniform_line_variance: float = 10.0
    min_aligned_lines: int = 5
    fraud_keywords: list[str] = Field(
        default_factory=lambda: ["fraud", "fake", "forged", "counterfeit", "duplicate"]
    )
    modern_terms: list[str] = Field(
        default_factory=lambda: ["email", "website", "http", "www", "digital", "online"]
    )
    encoding_artifacts: list[str] = Field(
        default_factory=lambda: ["�", "\\x", "\\u"]
    )

    # --- Fraud penalties (multiplicative, applied per failed check) ---
    penalty_low_ocr: float = 0.7
    penalty_name_mismatch: float = 0.5
    penalty_date_anomaly: float = 0.3
    penalty_formatting: float = 0.5
    penalty_no_database_match: float = 0.6
    fraud_clear_threshold: float = 0.85
    fraud_review_threshold: float = 0.60

    # --- Aggregation ---
    weight_document: float = 0.25
    weight_fraud: float = 0.30
    weight_tampering: float = 0.15
    weight_gps: float = 0.15
    weight_spatial: float = 0.15
    auto_approve_threshold: float = 0.85
    human_review_threshold: float = 0.60
    fraud_override_confidence: float = 0.7
    tampering_override_confidence: float = 0.7
    neutral_score: float = 0.5
    no_image_tampering_score: float = 0.7

    # --- Grantor history ---
    grantor_dispute_rate_warning: float = 0.2
    grantor_dispute_rate_high_risk: float = 0.4
    grantor_score_clean: float = 1.0
    grantor_score_warning: float = 0.75
    grantor_score_high_risk: float = 0.5

    # --- Spatial signal scores, by conflict status ---
    spatial_score_clear: float = 0.95
    spatial_score_potential_dispute: float = 0.5
    spatial_score_high_risk: float = 0.2

    # --- GPS region (West Africa) ---
    region_min_lat: float = 4.0
    region_max_lat: float = 18.0
    region_min_lng: float = -18.0
    region_max_lng: float = 16.0
    gps_score_inside: float = 0.85
    gps_score_outside: float = 0.4

    # --- Timeouts (seconds) ---
    agent_timeout: float = 20.0
    storage_timeout: float = 5.0
    notification_timeout: float = 5.0
    ledger_timeout: float = 15.0

    # --- Vision capability ---
    openai_model: str = "gpt-4o"

    @model_validator(mode="after")
    def _weights_sum_to_one(self) -> "VerifierSettings":
        total = sum(self.signal_weights.values())
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"Signal weights must sum to 1.0, got {total:.4f}")
        return self

    @property
    def signal_weights(self) -> dict[str, float]:
        """Weights keyed by signal name, in aggregation order."""
        return {
            "document": self.weight_document,
            "fraud": self.weight_fraud,
            "tampering": self.weight_tampering,
            "gps": self.weight_gps,
            "spatial": self.weight_spatial,
        }


@lru_cache(maxsize=1)
def get_settings() -> VerifierSettings:
    """Return the process-wide settings, loaded once from the environment."""
    return VerifierSettings()
