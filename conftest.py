"""Pytest configuration: ensures the project root is importable."""

import sys
from pathlib import Path
from unittest.mock import patch

import pytest

sys.path.insert(0, str(Path(__file__).parent))


@pytest.fixture(autouse=True)
def _no_llm_calls(monkeypatch):
    """Prevent real vision API calls during tests, keeping the suite fast and free."""
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with patch("claim_verifier.extractor_llm.OpenAIVision._complete", return_value=None):
        yield
