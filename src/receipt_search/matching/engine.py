"""Evidence engine for correlating receipt files with transactions.

Strategies decide *which* files to look at; this engine decides how well a
single file fits a single transaction. It produces weighted per-signal scores
(amount, date, reference, vendor) plus exact identity checks (IBAN, VAT id)
that strategies turn into confidence signals.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING

from ..schemas import normalize_domain, normalize_iban, normalize_vat

if TYPE_CHECKING:
    from ..config import SearchConfig
    from ..schemas import Partner, ReceiptFile, Transaction

logger = logging.getLogger(__name__)

RECEIPT_KEYWORDS = ("invoice", "rechnung", "receipt", "beleg", "quittung", "faktura", "bon", "bill")

# Invoice/order numbers: at least 4 chars, at least one digit
_REFERENCE_TOKEN = re.compile(r"\b(?=[A-Z0-9-]*\d)[A-Z0-9][A-Z0-9-]{3,}\b", re.IGNORECASE)
_WORD = re.compile(r"[a-z0-9äöüß]{3,}")


@dataclass
class MatchScore:
    """Individual signal contribution to a match score."""

    signal: str
    score: float
    weight: float
    detail: str

    @property
    def weighted_score(self) -> float:
        """Get the weighted score for this signal."""
        return self.score * self.weight


@dataclass
class MatchResult:
    """Evidence for one (transaction, file) pair."""

    transaction_id: str
    file_id: str
    total_score: float
    signals: list[MatchScore] = field(default_factory=list)
    reasons: list[str] = field(default_factory=list)
    iban_match: bool = False
    vat_match: bool = False
    amount_conflict: bool = False  # both amounts known and far apart

    def score_of(self, signal: str) -> float:
        for s in self.signals:
            if s.signal == signal:
                return s.score
        return 0.0

    @property
    def amount_date_strength(self) -> float:
        """Strength of the combined amount + date evidence."""
        return round(0.6 * self.score_of("amount") + 0.4 * self.score_of("date"), 4)

    @property
    def corroboration(self) -> float:
        """Multiplier for identity matches: a clear amount conflict weakens them."""
        return 0.4 if self.amount_conflict else 1.0

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "transaction_id": self.transaction_id,
            "file_id": self.file_id,
            "total_score": self.total_score,
            "iban_match": self.iban_match,
            "vat_match": self.vat_match,
            "amount_conflict": self.amount_conflict,
            "signals": [
                {
                    "signal": s.signal,
                    "score": s.score,
                    "weight": s.weight,
                    "weighted_score": s.weighted_score,
                    "detail": s.detail,
                }
                for s in self.signals
            ],
            "reasons": self.reasons,
        }


def domain_matches(domain: str | None, candidates: list[str]) -> str | None:
    """Return the candidate that equals domain or is a parent of it."""
    domain = normalize_domain(domain)
    if not domain:
        return None
    for candidate in candidates:
        candidate = normalize_domain(candidate)
        if candidate and (domain == candidate or domain.endswith("." + candidate)):
            return candidate
    return None


def name_tokens(names: list[str]) -> set[str]:
    """Significant lowercase tokens of partner names and aliases."""
    stop = {"gmbh", "ltd", "inc", "llc", "the", "und", "and", "co", "kg", "ag", "bv", "sarl"}
    tokens = set()
    for name in names:
        tokens.update(t for t in _WORD.findall(name.lower()) if t not in stop)
    return tokens


def reference_tokens(*texts: str | None) -> set[str]:
    """Invoice/order-number-like tokens in free text."""
    tokens = set()
    for text in texts:
        if text:
            tokens.update(t.lower() for t in _REFERENCE_TOKEN.findall(text))
    return tokens


class MatchingEngine:
    """Scores how well a receipt file fits a transaction.

    Weighted signals (sum to 1.0):
    - Amount: exact or within tolerance (highest weight)
    - Date: within the configured tolerance window
    - Reference: invoice numbers / description words found in the file
    - Vendor: partner names or transaction name vs. the file's sender

    Identity checks (IBAN, VAT id) are reported separately: they are not
    part of the weighted total but feed the highest confidence tier.
    """

    WEIGHT_AMOUNT = 0.40
    WEIGHT_DATE = 0.25
    WEIGHT_REFERENCE = 0.20
    WEIGHT_VENDOR = 0.15

    # Amounts more than this far apart contradict an identity match
    CONFLICT_RATIO = Decimal("0.50")

    def __init__(self, config: SearchConfig | None = None) -> None:
        self.date_tolerance_days = config.date_tolerance_days if config else 7

    def evaluate(
        self,
        transaction: Transaction,
        receipt: ReceiptFile,
        partner: Partner | None = None,
    ) -> MatchResult:
        """Score one file against one transaction."""
        signals = [
            self._score_amount(receipt.extracted_amount, abs(transaction.amount)),
            self._score_date(receipt.extracted_date, transaction.date),
            self._score_reference(transaction, receipt),
            self._score_vendor(transaction, receipt, partner),
        ]
        reasons = [f"{s.signal} ({s.detail})" for s in signals if s.score > 0.5]

        iban_match = False
        vat_match = False
        if partner is not None:
            partner_ibans = partner.normalized_ibans
            file_ibans = {normalize_iban(i) for i in receipt.iban_hints if i}
            iban_match = bool(partner_ibans & file_ibans)
            vat_match = bool(
                partner.vat_id
                and receipt.vat_hint
                and normalize_vat(partner.vat_id) == normalize_vat(receipt.vat_hint)
            )
        if iban_match:
            reasons.append("iban_match")
        if vat_match:
            reasons.append("vat_match")

        amount_conflict = False
        if receipt.extracted_amount is not None and transaction.amount != 0:
            diff = abs(receipt.extracted_amount - abs(transaction.amount)) / abs(transaction.amount)
            amount_conflict = diff > self.CONFLICT_RATIO

        return MatchResult(
            transaction_id=transaction.id,
            file_id=receipt.id,
            total_score=round(sum(s.weighted_score for s in signals), 4),
            signals=signals,
            reasons=reasons,
            iban_match=iban_match,
            vat_match=vat_match,
            amount_conflict=amount_conflict,
        )

    def _score_amount(self, extracted: Decimal | None, transaction: Decimal | None) -> MatchScore:
        """Score amount similarity (both compared as absolute values)."""
        if extracted is None or transaction is None:
            return MatchScore("amount", 0.0, self.WEIGHT_AMOUNT, "missing")

        extracted = abs(extracted)
        if extracted == transaction:
            return MatchScore("amount", 1.0, self.WEIGHT_AMOUNT, f"exact: {extracted}")

        if transaction != 0:
            diff_pct = abs((extracted - transaction) / transaction)
            for limit, score, label in (
                (Decimal("0.01"), 0.95, "~1%"),
                (Decimal("0.05"), 0.7, "~5%"),
                (Decimal("0.10"), 0.4, "~10%"),
                (Decimal("0.20"), 0.2, "~20%"),
            ):
                if diff_pct <= limit:
                    return MatchScore(
                        "amount", score, self.WEIGHT_AMOUNT, f"{label}: {extracted} vs {transaction}"
                    )

        return MatchScore(
            "amount", 0.0, self.WEIGHT_AMOUNT, f"mismatch: {extracted} vs {transaction}"
        )

    def _score_date(self, extracted: date | None, transaction: date | None) -> MatchScore:
        """Score date proximity; linear decay inside the tolerance window."""
        if extracted is None or transaction is None:
            return MatchScore("date", 0.0, self.WEIGHT_DATE, "missing")

        days_diff = abs((extracted - transaction).days)
        tolerance = self.date_tolerance_days

        if days_diff == 0:
            return MatchScore("date", 1.0, self.WEIGHT_DATE, "same day")
        if days_diff <= tolerance:
            score = max(1.0 - days_diff / (tolerance + 1), 0.3)
            return MatchScore("date", round(score, 4), self.WEIGHT_DATE, f"{days_diff} days")
        if days_diff <= tolerance * 2:
            return MatchScore("date", 0.2, self.WEIGHT_DATE, f"{days_diff} days (extended)")
        if days_diff <= 30:
            return MatchScore("date", 0.1, self.WEIGHT_DATE, f"{days_diff} days (month)")
        return MatchScore("date", 0.0, self.WEIGHT_DATE, f">{tolerance} days")

    def _score_reference(self, transaction: Transaction, receipt: ReceiptFile) -> MatchScore:
        """Invoice numbers first, then word overlap, then receipt keywords."""
        haystack = receipt.searchable_text()
        if not haystack:
            return MatchScore("reference", 0.0, self.WEIGHT_REFERENCE, "missing")

        for token in sorted(reference_tokens(transaction.reference, transaction.description)):
            if token in haystack:
                return MatchScore("reference", 1.0, self.WEIGHT_REFERENCE, f"reference {token}")

        tx_words = set(_WORD.findall(f"{transaction.name} {transaction.description or ''}".lower()))
        file_words = set(_WORD.findall(haystack))
        if tx_words and file_words:
            overlap = tx_words & file_words
            jaccard = len(overlap) / len(tx_words | file_words)
            if jaccard > 0.3:
                return MatchScore(
                    "reference", round(jaccard, 4), self.WEIGHT_REFERENCE,
                    f"overlap: {len(overlap)} words",
                )

        if any(keyword in haystack for keyword in RECEIPT_KEYWORDS):
            return MatchScore("reference", 0.3, self.WEIGHT_REFERENCE, "receipt keyword")

        return MatchScore("reference", 0.0, self.WEIGHT_REFERENCE, "no match")

    def _score_vendor(
        self,
        transaction: Transaction,
        receipt: ReceiptFile,
        partner: Partner | None,
    ) -> MatchScore:
        """Score partner/vendor agreement."""
        if partner is not None and receipt.partner_id == partner.id:
            return MatchScore("vendor", 1.0, self.WEIGHT_VENDOR, "partner reference")

        names = partner.names() if partner else []
        if transaction.name:
            names.append(transaction.name)
        if not names:
            return MatchScore("vendor", 0.0, self.WEIGHT_VENDOR, "missing")

        if partner is not None and domain_matches(receipt.sender_domain, partner.domains()):
            return MatchScore("vendor", 0.9, self.WEIGHT_VENDOR, "sender domain")

        extracted = (receipt.extracted_partner or "").lower().strip()
        if extracted:
            for name in names:
                name_lower = name.lower().strip()
                if extracted == name_lower:
                    return MatchScore("vendor", 1.0, self.WEIGHT_VENDOR, "exact")
                if extracted in name_lower or name_lower in extracted:
                    return MatchScore("vendor", 0.85, self.WEIGHT_VENDOR, "contains")

        tokens = name_tokens(names)
        sender = normalize_domain(receipt.sender_domain)
        sender_label = sender.split(".")[0] if sender else ""
        if sender_label and sender_label in tokens:
            return MatchScore("vendor", 0.6, self.WEIGHT_VENDOR, f"domain token {sender_label}")
        if extracted and tokens & set(_WORD.findall(extracted)):
            return MatchScore("vendor", 0.6, self.WEIGHT_VENDOR, "name token")

        return MatchScore("vendor", 0.0, self.WEIGHT_VENDOR, "no match")
