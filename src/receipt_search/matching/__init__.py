"""
Matching module.

Scores receipt files against transactions from amount, date, reference
and vendor evidence, plus exact IBAN / VAT id checks.
"""

from .engine import (
    RECEIPT_KEYWORDS,
    MatchingEngine,
    MatchResult,
    MatchScore,
    domain_matches,
    name_tokens,
    reference_tokens,
)

__all__ = [
    "RECEIPT_KEYWORDS",
    "MatchingEngine",
    "MatchResult",
    "MatchScore",
    "domain_matches",
    "name_tokens",
    "reference_tokens",
]
