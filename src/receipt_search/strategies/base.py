"""
Base strategy interface and common types.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from ..confidence import Candidate, ConfidenceScorer

if TYPE_CHECKING:
    from ..config import SearchConfig
    from ..context import OperationsContext
    from ..matching import MatchingEngine
    from ..query_ai import QuerySuggestionService
    from ..schemas import Partner, Transaction

logger = logging.getLogger(__name__)


@dataclass
class SearchContext:
    """Everything a strategy may read while searching."""

    ops: OperationsContext
    config: SearchConfig
    engine: MatchingEngine
    query_service: QuerySuggestionService | None = None


@dataclass
class StrategyOutcome:
    """Result of running one strategy for one transaction."""

    strategy_id: str
    candidates: list[Candidate] = field(default_factory=list)
    error: str | None = None
    skipped: bool = False  # strategy not applicable to this transaction


class Strategy(ABC):
    """
    Base class for matching strategies.

    Each strategy looks for receipt candidates one way:
    - Files referencing the transaction's partner
    - Files with a matching extracted amount
    - Mail attachments from the partner's domains
    - Mail-derived files found by suggested search queries

    Strategies only query and score. They never mutate an entity.
    """

    _ordering = ConfidenceScorer()

    @property
    @abstractmethod
    def id(self) -> str:
        """Stable identifier recorded on queue items and provenance."""
        pass

    def is_applicable(self, transaction: Transaction, partner: Partner | None) -> bool:
        """Check if this strategy can say anything about the transaction."""
        return True

    @abstractmethod
    def search(
        self,
        transaction: Transaction,
        context: SearchContext,
        partner: Partner | None,
    ) -> list[Candidate]:
        """
        Find candidate files.

        Args:
            transaction: Transaction still missing a receipt
            context: Store access and matching helpers
            partner: Resolved partner, if the transaction has one

        Returns:
            Candidates, strongest first (may be empty)
        """
        pass

    def run(
        self,
        transaction: Transaction,
        context: SearchContext,
        partner: Partner | None = None,
    ) -> StrategyOutcome:
        """
        Run the strategy and never raise.

        Internal failures become an error on the outcome. Files the user
        rejected for this transaction are dropped and the rest are ordered
        strongest first.
        """
        if not self.is_applicable(transaction, partner):
            return StrategyOutcome(strategy_id=self.id, skipped=True)

        excluded = set(transaction.rejected_file_ids) | set(transaction.file_ids)
        try:
            candidates = [
                scored.candidate
                for scored in self._ordering.rank(self.search(transaction, context, partner))
                if scored.file_id not in excluded
            ]
        except Exception as e:
            logger.warning(
                "Strategy %s failed for transaction %s: %s", self.id, transaction.id, e
            )
            return StrategyOutcome(strategy_id=self.id, error=f"{type(e).__name__}: {e}")

        return StrategyOutcome(
            strategy_id=self.id, candidates=candidates[: context.config.max_candidates]
        )
