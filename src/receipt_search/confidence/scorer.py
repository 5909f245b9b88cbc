"""
Confidence scoring implementation.

Strategies report raw signals; the scorer maps each onto a common [0, 1]
scale by tier, keeps the strongest per candidate and picks the winner.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from ..schemas import ReceiptFile


class SignalKind(str, Enum):
    """Kinds of evidence a strategy can report for a candidate file."""

    IBAN_MATCH = "iban_match"
    VAT_MATCH = "vat_match"
    AMOUNT_DATE_MATCH = "amount_date_match"
    PARTNER_REFERENCE = "partner_reference"
    DOMAIN_MATCH = "domain_match"
    ALIAS_MATCH = "alias_match"
    AI_QUERY_HIT = "ai_query_hit"


@dataclass
class Signal:
    """Raw evidence from a strategy. strength is in [0, 1]."""

    kind: SignalKind
    strength: float
    detail: str = ""


@dataclass
class Candidate:
    """A file proposed by a strategy for one transaction."""

    file: ReceiptFile
    signals: list[Signal] = field(default_factory=list)


@dataclass
class ScoredCandidate:
    """A candidate with its normalized confidence."""

    candidate: Candidate
    confidence: float
    signal: Signal | None  # the signal that produced the confidence

    @property
    def file_id(self) -> str:
        return self.candidate.file.id


@dataclass
class ConfidenceThresholds:
    """Configurable acceptance threshold."""

    acceptance_threshold: float = 0.60  # At or above: attach automatically


class ConfidenceScorer:
    """
    Normalizes heterogeneous match signals into one confidence value.

    Tiers (in order of trust):
    1. Exact IBAN / VAT id match: 1.00
    2. Exact amount + date match: 0.90
    3. Fuzzy domain / alias / partner reference: 0.75
    4. AI-suggested query hit: 0.65 (lowest tier that can still be accepted)

    The tier weight caps what a signal can reach; its strength decides how
    much of that it gets.
    """

    TIER_WEIGHTS = {
        SignalKind.IBAN_MATCH: 1.00,
        SignalKind.VAT_MATCH: 1.00,
        SignalKind.AMOUNT_DATE_MATCH: 0.90,
        SignalKind.PARTNER_REFERENCE: 0.75,
        SignalKind.DOMAIN_MATCH: 0.75,
        SignalKind.ALIAS_MATCH: 0.75,
        SignalKind.AI_QUERY_HIT: 0.65,
    }

    def __init__(self, thresholds: Optional[ConfidenceThresholds] = None):
        """Initialize scorer with thresholds."""
        self.thresholds = thresholds or ConfidenceThresholds()

    def score(self, signal: Signal) -> float:
        """Map one raw signal onto [0, 1]."""
        strength = min(max(signal.strength, 0.0), 1.0)
        return round(self.TIER_WEIGHTS[signal.kind] * strength, 4)

    def score_candidate(self, candidate: Candidate) -> ScoredCandidate:
        """Confidence of a candidate is its strongest signal."""
        best_signal = None
        best = 0.0
        for signal in candidate.signals:
            value = self.score(signal)
            if best_signal is None or value > best:
                best_signal, best = signal, value
        return ScoredCandidate(candidate=candidate, confidence=best, signal=best_signal)

    def accepts(self, confidence: float) -> bool:
        return confidence >= self.thresholds.acceptance_threshold

    def rank(self, candidates: list[Candidate]) -> list[ScoredCandidate]:
        """
        Score and order candidates.

        Order: confidence desc, then file created_at desc (newest wins,
        compared in UTC), then file id so equal inputs always give the
        same order.
        """
        scored = [self.score_candidate(c) for c in candidates]
        scored.sort(key=lambda s: s.file_id)
        scored.sort(key=lambda s: s.candidate.file.created_at_utc, reverse=True)
        scored.sort(key=lambda s: s.confidence, reverse=True)
        return scored

    def select(
        self, candidates: list[Candidate]
    ) -> tuple[ScoredCandidate | None, list[ScoredCandidate]]:
        """
        Pick the candidate to attach.

        Returns:
            (winner or None, all scored candidates in rank order). Candidates
            below the acceptance threshold are never returned as winner.
        """
        ranked = self.rank(candidates)
        accepted = [s for s in ranked if self.accepts(s.confidence)]
        return (accepted[0] if accepted else None), ranked
