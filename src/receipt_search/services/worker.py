"""
Precision search worker loop and service wiring.

One worker process:
1. Re-queues failed items whose backoff elapsed
2. Reports items with expired leases (they are claimable again)
3. Claims and runs a batch of items on a small thread pool

Items of different users run concurrently; a single item is only ever
run by the worker holding its claim.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

from receipt_search.config import Config
from receipt_search.context import OperationsContext
from receipt_search.query_ai import QuerySuggestionService
from receipt_search.state_store import StateStore

from .dispatcher import PrecisionSearchDispatcher
from .events import MailSyncNotifier
from .pipeline import PrecisionSearchRunner, RunResult
from .retry_policy import RetryPolicy
from .status import PrecisionSearchStatus

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything a process needs, built once at start-up."""

    config: Config
    ops: OperationsContext
    dispatcher: PrecisionSearchDispatcher
    notifier: MailSyncNotifier
    runner: PrecisionSearchRunner
    retry_policy: RetryPolicy
    status: PrecisionSearchStatus
    query_service: QuerySuggestionService

    def close(self) -> None:
        self.query_service.close()


def build_services(config: Config, store: StateStore | None = None) -> Services:
    """
    Wire the pipeline for one process.

    The dispatcher is subscribed to mail-sync completion events here.
    """
    store = store or StateStore(
        config.state_db_path, timeout=config.search.store_timeout_seconds
    )
    ops = OperationsContext(store=store)
    query_service = QuerySuggestionService(config.llm)

    dispatcher = PrecisionSearchDispatcher(ops, config)
    notifier = MailSyncNotifier()
    notifier.subscribe(dispatcher.on_mail_sync_status_change)

    return Services(
        config=config,
        ops=ops,
        dispatcher=dispatcher,
        notifier=notifier,
        runner=PrecisionSearchRunner(ops, config, query_service=query_service),
        retry_policy=RetryPolicy(ops, config),
        status=PrecisionSearchStatus(ops),
        query_service=query_service,
    )


class PrecisionSearchWorker:
    """Polls the queue and runs claimable items."""

    def __init__(
        self,
        ops: OperationsContext,
        config: Config,
        runner: PrecisionSearchRunner,
        retry_policy: RetryPolicy | None = None,
    ):
        self.ops = ops
        self.config = config
        self.runner = runner
        self.retry_policy = retry_policy or RetryPolicy(ops, config)

    @classmethod
    def from_services(cls, services: Services) -> "PrecisionSearchWorker":
        return cls(services.ops, services.config, services.runner, services.retry_policy)

    def run_once(self, batch_size: int | None = None) -> list[RunResult]:
        """
        One polling round.

        Returns:
            Results of the items this worker claimed
        """
        batch_size = batch_size or self.config.worker.batch_size

        requeued = self.retry_policy.requeue_failed()
        if requeued:
            logger.info("Requeued %d failed precision search(es)", len(requeued))
        stale = self.retry_policy.recover_stale()
        if stale:
            logger.info("%d precision search(es) with expired leases are claimable", len(stale))

        queue_ids = self.ops.store.list_claimable_queue_ids(limit=batch_size)
        if not queue_ids:
            return []

        logger.info("Found %d claimable precision search(es)", len(queue_ids))
        max_workers = max(1, min(self.config.worker.max_workers, len(queue_ids)))
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            results = list(pool.map(self.runner.process, queue_ids))

        return [r for r in results if r.claimed]

    def run_forever(
        self,
        interval: int | None = None,
        batch_size: int | None = None,
        stop_event: threading.Event | None = None,
    ) -> None:
        """Poll until stop_event is set."""
        interval = interval or self.config.worker.poll_interval_seconds
        stop_event = stop_event or threading.Event()

        logger.info(
            "Precision search worker %s started (interval=%ss)", self.runner.worker_id, interval
        )
        while not stop_event.is_set():
            try:
                results = self.run_once(batch_size)
            except Exception:
                logger.exception("Error in worker loop")
                results = []

            for result in results:
                logger.info(
                    "Precision search %s: %s, %d/%d matched, %d ms",
                    result.queue_id,
                    result.status.value if result.status else "unknown",
                    result.transactions_with_matches,
                    result.transactions_processed,
                    result.duration_ms,
                )

            stop_event.wait(interval)

        logger.info("Precision search worker %s stopped", self.runner.worker_id)
