"""
Land Claim Verifier: verification and spatial conflict engine for land claims.

Architecture: Snapshot → Signal Agents + Conflict Detector → Aggregator → State Machine
Philosophy:  Many weak signals, one auditable decision. Geometry decides overlaps, not opinion.
"""

__version__ = "1.0.0"
