"""
Email invoice strategy.

Gets ranked search queries from the query suggestion service and runs
them against mail-derived files. A file hit by an earlier (better) query
keeps more of its evidence score.
"""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING

from ..confidence import Candidate, Signal, SignalKind
from ..query_ai import matches_query
from ..schemas import MAIL_SOURCES
from .base import SearchContext, Strategy

if TYPE_CHECKING:
    from ..schemas import Partner, Transaction

# Strength lost per query rank (first query keeps everything)
RANK_DECAY = 0.05


class EmailInvoiceStrategy(Strategy):
    """Mail-derived files found by suggested search queries."""

    @property
    def id(self) -> str:
        return "email_invoice"

    def search(
        self,
        transaction: Transaction,
        context: SearchContext,
        partner: Partner | None,
    ) -> list[Candidate]:
        if context.query_service is None:
            return []

        queries = context.query_service.suggest_for(transaction, partner)
        if not queries:
            return []

        window = timedelta(days=context.config.email_date_window_days)
        files = context.ops.store.find_unattached_files(
            context.ops.require_user(),
            sources=[source.value for source in MAIL_SOURCES],
            date_from=transaction.date - window,
            date_to=transaction.date + window,
            limit=context.config.max_files_scanned,
        )

        candidates = []
        for receipt in files:
            rank = next((i for i, q in enumerate(queries) if matches_query(q, receipt)), None)
            if rank is None:
                continue
            result = context.engine.evaluate(transaction, receipt, partner)
            strength = result.total_score * (1 - RANK_DECAY * rank)
            candidates.append(
                Candidate(
                    file=receipt,
                    signals=[Signal(SignalKind.AI_QUERY_HIT, strength, queries[rank])],
                )
            )
        return candidates
