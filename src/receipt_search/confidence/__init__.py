"""
Confidence scoring module.

Normalizes strategy signals into a single confidence value and decides
which candidate, if any, is attached to a transaction.
"""

from .scorer import (
    Candidate,
    ConfidenceScorer,
    ConfidenceThresholds,
    ScoredCandidate,
    Signal,
    SignalKind,
)

__all__ = [
    "Candidate",
    "ConfidenceScorer",
    "ConfidenceThresholds",
    "ScoredCandidate",
    "Signal",
    "SignalKind",
]
