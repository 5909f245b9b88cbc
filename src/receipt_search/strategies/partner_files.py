"""
Partner files strategy.

Looks at the user's unattached files that reference the transaction's
partner: by partner id, IBAN, VAT id, mail domain or name/alias.
"""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING

from ..confidence import Candidate, Signal, SignalKind
from ..matching import domain_matches
from .base import SearchContext, Strategy

if TYPE_CHECKING:
    from ..schemas import Partner, Transaction


class PartnerFilesStrategy(Strategy):
    """Files whose metadata points at the transaction's partner."""

    @property
    def id(self) -> str:
        return "partner_files"

    def is_applicable(self, transaction: Transaction, partner: Partner | None) -> bool:
        return partner is not None

    def search(
        self,
        transaction: Transaction,
        context: SearchContext,
        partner: Partner | None,
    ) -> list[Candidate]:
        window = timedelta(days=context.config.email_date_window_days)
        files = context.ops.store.find_unattached_files(
            context.ops.require_user(),
            date_from=transaction.date - window,
            date_to=transaction.date + window,
            limit=context.config.max_files_scanned,
        )

        partner_names = [n.lower() for n in partner.names()]
        partner_domains = partner.domains()
        candidates = []

        for receipt in files:
            result = context.engine.evaluate(transaction, receipt, partner)
            signals = []

            if result.iban_match:
                signals.append(Signal(SignalKind.IBAN_MATCH, result.corroboration, "iban"))
            if result.vat_match:
                signals.append(Signal(SignalKind.VAT_MATCH, result.corroboration, "vat id"))
            if receipt.partner_id == partner.id:
                signals.append(
                    Signal(SignalKind.PARTNER_REFERENCE, result.total_score, "partner id")
                )

            domain = domain_matches(receipt.sender_domain, partner_domains)
            if domain:
                signals.append(Signal(SignalKind.DOMAIN_MATCH, result.total_score, domain))

            extracted = (receipt.extracted_partner or "").lower().strip()
            if extracted and any(n in extracted or extracted in n for n in partner_names):
                signals.append(Signal(SignalKind.ALIAS_MATCH, result.total_score, extracted))

            if signals:
                candidates.append(Candidate(file=receipt, signals=signals))

        return candidates
