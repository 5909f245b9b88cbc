"""
Precision Search Pipeline Runner.

Consumes one queue item: claims it, runs its strategies in order against
every still-unresolved transaction in scope, attaches accepted candidates
and terminates the item.

State machine:
- pending -> processing: compare-and-set claim, losing the claim is a no-op
- processing -> completed: strategies exhausted or every transaction resolved
- processing -> failed: unrecoverable error, retry_count incremented

The runner keeps no state between steps. Each step re-reads the item and
its scope snapshot, so a re-claimed item resumes where the last worker
stopped.
"""

import logging
import os
import socket
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime

from receipt_search.config import Config
from receipt_search.confidence import ConfidenceScorer, ConfidenceThresholds
from receipt_search.context import OperationsContext
from receipt_search.matching import MatchingEngine
from receipt_search.query_ai import QuerySuggestionService
from receipt_search.schemas import (
    PrecisionSearchQueueItem,
    QueueError,
    QueueStatus,
    ScopeEntry,
    ScopeEntryState,
    SearchAttempt,
    SearchScope,
)
from receipt_search.state_store import LeaseLostError, MatchWrite, QueueItemCorrupted
from receipt_search.strategies import (
    SearchContext,
    Strategy,
    StrategyRegistry,
    default_registry,
)

logger = logging.getLogger(__name__)


class ScopeUnavailableError(Exception):
    """Raised when the scoped transaction set cannot be read."""

    pass


@dataclass
class RunResult:
    """Outcome of one process() call."""

    queue_id: str
    claimed: bool = False
    status: QueueStatus | None = None
    transactions_processed: int = 0
    transactions_with_matches: int = 0
    total_files_connected: int = 0
    errors: list[QueueError] = field(default_factory=list)
    last_error: str | None = None
    duration_ms: int = 0

    @property
    def success(self) -> bool:
        return self.status == QueueStatus.COMPLETED


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class PrecisionSearchRunner:
    """
    Pipeline worker for precision search queue items.

    Safe to run in several processes at once: the claim guarantees one
    holder per item, and every write checks that this worker still holds
    the lease.
    """

    def __init__(
        self,
        ops: OperationsContext,
        config: Config,
        registry: StrategyRegistry | None = None,
        query_service: QuerySuggestionService | None = None,
        worker_id: str | None = None,
    ):
        """
        Initialize the runner.

        Args:
            ops: Operations context (store handle)
            config: Application configuration
            registry: Strategy catalogue (defaults to the built-in one)
            query_service: Query suggestions for email_invoice
            worker_id: Lease owner name (defaults to host:pid:random)
        """
        self.ops = ops
        self.config = config
        self.registry = registry or default_registry()
        self.query_service = query_service
        self.worker_id = worker_id or default_worker_id()
        self.lease_seconds = config.search.lease_seconds
        self.scorer = ConfidenceScorer(
            ConfidenceThresholds(acceptance_threshold=config.search.acceptance_threshold)
        )
        self.engine = MatchingEngine(config.search)

    @property
    def store(self):
        return self.ops.store

    def process(self, queue_id: str) -> RunResult:
        """
        Claim and run a queue item to a terminal state.

        Never raises for job-level problems; they end up on the item.

        Returns:
            RunResult (claimed=False if another worker holds the item)
        """
        start = datetime.now()
        result = RunResult(queue_id=queue_id)

        if not self.store.claim_queue_item(queue_id, self.worker_id, self.lease_seconds):
            logger.debug("Queue item %s not claimable by %s", queue_id, self.worker_id)
            return result
        result.claimed = True
        logger.info("Worker %s claimed precision search %s", self.worker_id, queue_id)

        try:
            self._run_claimed(queue_id)
        except LeaseLostError as e:
            logger.warning("Stopped processing %s: %s", queue_id, e)
        except Exception as e:
            logger.exception("Precision search %s failed", queue_id)
            self._fail(queue_id, f"{type(e).__name__}: {e}")

        try:
            item = self.store.get_queue_item(queue_id)
        except (QueueItemCorrupted, sqlite3.Error) as e:
            logger.error("Could not read back queue item %s: %s", queue_id, e)
            item = None

        if item is not None:
            result.status = item.status
            result.transactions_processed = item.transactions_processed
            result.transactions_with_matches = item.transactions_with_matches
            result.total_files_connected = item.total_files_connected
            result.errors = item.errors
            result.last_error = item.last_error
        result.duration_ms = int((datetime.now() - start).total_seconds() * 1000)
        return result

    def _fail(self, queue_id: str, message: str) -> None:
        try:
            if self.store.fail_queue_item(queue_id, message, worker_id=self.worker_id):
                logger.info("Precision search %s marked failed", queue_id)
        except sqlite3.Error:
            # Item stays processing; it becomes claimable again once the lease expires
            logger.exception("Could not record failure of precision search %s", queue_id)

    def _load(self, queue_id: str) -> PrecisionSearchQueueItem | None:
        """Re-read the item; None if this worker no longer holds it."""
        item = self.store.get_queue_item(queue_id)
        if item is None:
            raise QueueItemCorrupted(queue_id, "record disappeared")
        if item.status != QueueStatus.PROCESSING or item.lease_owner != self.worker_id:
            return None
        return item

    def _run_claimed(self, queue_id: str) -> None:
        while True:
            item = self._load(queue_id)
            if item is None:
                logger.warning("Lost hold of precision search %s", queue_id)
                return

            index = item.current_strategy_index
            if not item.strategies or index >= len(item.strategies):
                self._complete(item, final_index=len(item.strategies))
                return

            pending = self.store.get_scope_entries(queue_id, ScopeEntryState.PENDING)
            if not pending:
                self._complete(item, final_index=index)
                return

            strategy = self.registry.get(item.strategies[index])
            logger.info(
                "Precision search %s: running %s (%d/%d) on %d transactions",
                queue_id,
                strategy.id,
                index + 1,
                len(item.strategies),
                len(pending),
            )
            context = SearchContext(
                ops=self.ops.for_user(item.user_id),
                config=self.config.search,
                engine=self.engine,
                query_service=self.query_service,
            )
            for entry in pending:
                if entry.last_strategy_index >= index:
                    continue  # attempted before a crash
                self._attempt(item, entry, index, strategy, context)

            if index + 1 >= len(item.strategies):
                self._complete(item, final_index=len(item.strategies))
                return
            self.store.advance_strategy(queue_id, self.worker_id, self.lease_seconds, index)

    def _attempt(
        self,
        item: PrecisionSearchQueueItem,
        entry: ScopeEntry,
        index: int,
        strategy: Strategy,
        context: SearchContext,
    ) -> None:
        """Run one strategy against one transaction and persist the outcome."""
        transaction = self.store.get_transaction(entry.transaction_id)

        if transaction is None or transaction.user_id != item.user_id:
            if item.scope == SearchScope.SINGLE_TRANSACTION:
                raise ScopeUnavailableError(
                    f"Transaction {entry.transaction_id} not found or not owned by user"
                )
            self.store.settle_scope_entry(
                item.id,
                self.worker_id,
                self.lease_seconds,
                entry.transaction_id,
                ScopeEntryState.EXHAUSTED,
                error=QueueError(entry.transaction_id, strategy.id, "Transaction not found"),
            )
            return

        if not transaction.needs_receipt:
            # Completed by hand while the search was running
            self.store.settle_scope_entry(
                item.id,
                self.worker_id,
                self.lease_seconds,
                transaction.id,
                ScopeEntryState.RESOLVED,
            )
            return

        partner = self.store.get_partner(transaction.partner_id) if transaction.partner_id else None
        outcome = strategy.run(transaction, context, partner)

        errors = []
        if outcome.error:
            errors.append(QueueError(transaction.id, strategy.id, outcome.error))

        candidates = []
        for candidate in outcome.candidates:
            if (
                candidate.file is None
                or not candidate.file.id
                or not candidate.signals
                or any(s.kind not in self.scorer.TIER_WEIGHTS for s in candidate.signals)
            ):
                errors.append(QueueError(transaction.id, strategy.id, "Malformed candidate"))
                continue
            candidates.append(candidate)
        winner, ranked = self.scorer.select(candidates)

        attempt = SearchAttempt(
            queue_id=item.id,
            transaction_id=transaction.id,
            strategy_id=strategy.id,
            candidates_found=len(candidates),
            candidates_accepted=sum(1 for s in ranked if self.scorer.accepts(s.confidence)),
            best_confidence=ranked[0].confidence if ranked else None,
            error=outcome.error,
        )
        match = None
        if winner is not None:
            match = MatchWrite(
                file_id=winner.file_id,
                strategy_id=strategy.id,
                confidence=winner.confidence,
            )

        matched = self.store.record_strategy_attempt(
            item.id,
            self.worker_id,
            self.lease_seconds,
            transaction.id,
            index,
            attempt,
            match=match,
            errors=errors,
        )
        if matched:
            logger.info(
                "Attached file %s to transaction %s via %s (confidence %.2f)",
                match.file_id,
                transaction.id,
                strategy.id,
                match.confidence,
            )
        elif ranked:
            logger.debug(
                "%s: best candidate for %s scored %.2f, below threshold %.2f",
                strategy.id,
                transaction.id,
                ranked[0].confidence,
                self.scorer.thresholds.acceptance_threshold,
            )

    def _complete(self, item: PrecisionSearchQueueItem, final_index: int) -> None:
        self.store.complete_queue_item(item.id, self.worker_id, final_index)
        logger.info("Precision search %s completed", item.id)
