"""
Custom exception hierarchy for claim verification.

Each exception type maps to a specific category of failure in the engine,
enabling precise error handling: some are fatal to a single check, the
rest are recovered locally and turned into degraded results.
"""

from __future__ import annotations


class ClaimVerificationError(Exception):
    """Base exception for all claim verification failures."""

    def __init__(self, code: str, message: str, details: dict | None = None):
        self.code = code
        self.details = details or {}
        super().__init__(message)


class InvalidGeometry(ClaimVerificationError):
    """A boundary has fewer than 3 vertices or non-finite coordinates."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__("INVALID_GEOMETRY", message, details)


class AgentUnavailable(ClaimVerificationError):
    """A signal agent's dependency (vision, storage) failed."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__("AGENT_UNAVAILABLE", message, details)


class StorageUnavailable(ClaimVerificationError):
    """The claim store could not be reached or timed out."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__("STORAGE_UNAVAILABLE", message, details)


class NotificationFailure(ClaimVerificationError):
    """One channel of the conflict-alert fan-out failed."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__("NOTIFICATION_FAILED", message, details)


class InvalidTransition(ClaimVerificationError):
    """The requested lifecycle transition is not allowed from the current state."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__("INVALID_TRANSITION", message, details)


class ClaimNotFound(ClaimVerificationError):
    """No claim exists with the requested id."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__("CLAIM_NOT_FOUND", message, details)
