"""
Email attachment strategy.

Looks at mail attachments whose sender domain fits the partner: one of
its known domains or website, or a domain built from its name/aliases.
Without a partner the transaction name is used for name tokens.
"""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING

from ..confidence import Candidate, Signal, SignalKind
from ..matching import domain_matches, name_tokens
from ..schemas import FileSource, normalize_domain
from .base import SearchContext, Strategy

if TYPE_CHECKING:
    from ..schemas import Partner, Transaction


def sender_hints(transaction: Transaction, partner: Partner | None) -> tuple[list[str], set[str]]:
    """(known domains, name tokens) to compare sender domains against."""
    if partner is not None:
        return partner.domains(), name_tokens(partner.names())
    return [], name_tokens([transaction.name] if transaction.name else [])


class EmailAttachmentStrategy(Strategy):
    """Mail attachments from the partner's domains."""

    @property
    def id(self) -> str:
        return "email_attachment"

    def is_applicable(self, transaction: Transaction, partner: Partner | None) -> bool:
        domains, tokens = sender_hints(transaction, partner)
        return bool(domains or tokens)

    def search(
        self,
        transaction: Transaction,
        context: SearchContext,
        partner: Partner | None,
    ) -> list[Candidate]:
        domains, tokens = sender_hints(transaction, partner)
        window = timedelta(days=context.config.email_date_window_days)
        files = context.ops.store.find_unattached_files(
            context.ops.require_user(),
            sources=[FileSource.EMAIL_ATTACHMENT.value],
            date_from=transaction.date - window,
            date_to=transaction.date + window,
            limit=context.config.max_files_scanned,
        )

        candidates = []
        for receipt in files:
            sender = normalize_domain(receipt.sender_domain)
            if not sender:
                continue

            result = context.engine.evaluate(transaction, receipt, partner)
            known = domain_matches(sender, domains)
            if known:
                signal = Signal(SignalKind.DOMAIN_MATCH, result.total_score, known)
            else:
                labels = set(sender.replace("-", ".").split("."))
                hit = sorted(labels & tokens)
                if not hit:
                    continue
                signal = Signal(SignalKind.ALIAS_MATCH, result.total_score, f"{sender} ~ {hit[0]}")

            candidates.append(Candidate(file=receipt, signals=[signal]))
        return candidates
