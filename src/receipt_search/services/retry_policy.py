"""
Retry policy and stale-lease recovery for precision search items.

Failed items are never reopened. Once the backoff after a failure has
elapsed, a fresh pending item with the same scope is queued pointing back
at the failed one via retry_of.
"""

import logging
from datetime import datetime, timedelta

from receipt_search.config import Config
from receipt_search.context import OperationsContext
from receipt_search.schemas import (
    AuthorType,
    ChangeAuthor,
    PrecisionSearchQueueItem,
    QueueStatus,
)
from receipt_search.state_store import parse_timestamp, utc_now

from .dispatcher import InvalidArgument

logger = logging.getLogger(__name__)


class RetryPolicy:
    """Re-enqueues failed items with exponential backoff."""

    def __init__(self, ops: OperationsContext, config: Config):
        self.ops = ops
        self.config = config

    def backoff_seconds(self, retry_count: int) -> int:
        """min(base * 2^(retry_count - 1), max)"""
        retry = self.config.retry
        exponent = max(retry_count, 1) - 1
        return min(retry.backoff_base_seconds * (2**exponent), retry.backoff_max_seconds)

    def next_attempt_at(self, item: PrecisionSearchQueueItem) -> datetime | None:
        """When a failed item becomes eligible for a retry; None if never."""
        if not item.can_retry or not item.completed_at:
            return None
        failed_at = parse_timestamp(item.completed_at)
        return failed_at + timedelta(seconds=self.backoff_seconds(item.retry_count))

    def requeue_failed(self, now: datetime | None = None) -> list[str]:
        """
        Queue retries for failed items whose backoff has elapsed.

        Returns:
            Ids of the newly created items
        """
        if not self.config.retry.enabled:
            return []

        now = now or utc_now()
        created_ids = []
        for item in self.ops.store.list_retry_candidates():
            due = self.next_attempt_at(item)
            if due is None or due > now:
                continue
            queue_id = self._requeue(item)
            if queue_id:
                created_ids.append(queue_id)
        return created_ids

    def retry_now(self, queue_id: str) -> str:
        """
        Retry one failed item immediately, ignoring the backoff.

        Returns:
            Id of the new item, or of the user's in-flight item

        Raises:
            InvalidArgument: if the item does not exist or cannot be retried
        """
        item = self.ops.store.get_queue_item(queue_id)
        if item is None:
            raise InvalidArgument(f"Queue item {queue_id} not found")
        if item.status != QueueStatus.FAILED:
            raise InvalidArgument(f"Queue item {queue_id} is {item.status.value}, not failed")
        if not item.can_retry:
            raise InvalidArgument(
                f"Queue item {queue_id} used all {item.max_retries} retries"
            )
        new_id = self._requeue(item)
        if new_id is None:
            in_flight = self.ops.store.find_in_flight_item(item.user_id)
            if in_flight is None:
                raise InvalidArgument(f"Queue item {queue_id} was already retried")
            return in_flight.id
        return new_id

    def _requeue(self, item: PrecisionSearchQueueItem) -> str | None:
        queue_id, created = self.ops.store.enqueue_precision_search(
            user_id=item.user_id,
            scope=item.scope,
            strategies=list(item.strategies),
            triggered_by=item.triggered_by,
            author=ChangeAuthor(type=AuthorType.SYSTEM),
            transaction_id=item.transaction_id,
            max_retries=item.max_retries,
            retry_count=item.retry_count,
            retry_of=item.id,
            mail_sync_job_id=item.mail_sync_job_id,
        )
        if not created:
            logger.info(
                "Retry of %s deferred: precision search %s in flight for user %s",
                item.id,
                queue_id,
                item.user_id,
            )
            return None
        logger.info(
            "Requeued failed precision search %s as %s (retry %d/%d)",
            item.id,
            queue_id,
            item.retry_count,
            item.max_retries,
        )
        return queue_id

    def recover_stale(self) -> list[str]:
        """
        Report processing items whose lease expired.

        They are claimable again as they are; the next claim resumes them.
        """
        stale = self.ops.store.list_stale_queue_items()
        for item in stale:
            logger.warning(
                "Precision search %s stuck in processing (owner=%s, lease expired %s)",
                item.id,
                item.lease_owner,
                item.lease_expires_at,
            )
        return [item.id for item in stale]
