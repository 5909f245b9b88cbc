"""
Precision Search Dispatcher.

Creates precision search queue items on demand.

Features:
- Validates the trigger boundary (scope, transaction id)
- At most one pending/processing item per user (idempotency guard)
- Reacts to mail-sync completion events
"""

import logging

from receipt_search.config import Config
from receipt_search.context import OperationsContext
from receipt_search.schemas import (
    AuthorType,
    ChangeAuthor,
    MailSyncEvent,
    SearchScope,
    TriggerSource,
)

logger = logging.getLogger(__name__)


class InvalidArgument(ValueError):
    """Raised for triggers rejected at the boundary (never queued)."""

    pass


class PrecisionSearchDispatcher:
    """
    Entry point for starting precision searches.

    Manual triggers return the id of the live item for the user, new or
    existing. Event triggers decline silently when an item is in flight.
    """

    def __init__(self, ops: OperationsContext, config: Config):
        """
        Initialize the dispatcher.

        Args:
            ops: Operations context (store handle)
            config: Application configuration
        """
        self.ops = ops
        self.config = config

    @staticmethod
    def validate(scope: str | None, transaction_id: str | None) -> SearchScope:
        """Check trigger arguments; raises InvalidArgument."""
        if not scope:
            raise InvalidArgument("scope is required")
        try:
            parsed = SearchScope(scope)
        except ValueError:
            allowed = ", ".join(s.value for s in SearchScope)
            raise InvalidArgument(
                f"Unknown scope '{scope}' (expected one of: {allowed})"
            ) from None
        if parsed == SearchScope.SINGLE_TRANSACTION and not transaction_id:
            raise InvalidArgument("transactionId is required for scope single_transaction")
        return parsed

    def trigger(
        self,
        user_id: str,
        scope: str | None,
        transaction_id: str | None = None,
        triggered_by: TriggerSource = TriggerSource.MANUAL,
        author: ChangeAuthor | None = None,
        mail_sync_job_id: str | None = None,
    ) -> str:
        """
        Queue a precision search for a user.

        Args:
            user_id: Owner of the transactions to search
            scope: "all_incomplete" or "single_transaction"
            transaction_id: Required for single_transaction
            triggered_by: manual or mail_sync
            author: Who asked (defaults to the user)
            mail_sync_job_id: Sync job that emitted the trigger event

        Returns:
            Queue item id (existing one if a search is already in flight)

        Raises:
            InvalidArgument: On bad scope or missing transaction id
        """
        queue_id, _ = self._enqueue(
            user_id, scope, transaction_id, triggered_by, author, mail_sync_job_id
        )
        return queue_id

    def _enqueue(
        self,
        user_id: str,
        scope: str | None,
        transaction_id: str | None,
        triggered_by: TriggerSource,
        author: ChangeAuthor | None,
        mail_sync_job_id: str | None,
    ) -> tuple[str, bool]:
        if not user_id:
            raise InvalidArgument("userId is required")
        parsed = self.validate(scope, transaction_id)
        if parsed == SearchScope.ALL_INCOMPLETE:
            transaction_id = None

        queue_id, created = self.ops.store.enqueue_precision_search(
            user_id=user_id,
            scope=parsed,
            transaction_id=transaction_id,
            strategies=list(self.config.search.strategies),
            triggered_by=triggered_by,
            author=author or ChangeAuthor(type=AuthorType.USER, user_id=user_id),
            max_retries=self.config.search.max_retries,
            mail_sync_job_id=mail_sync_job_id,
        )

        if created:
            logger.info(
                "Queued precision search %s for user %s (scope=%s, triggered_by=%s)",
                queue_id,
                user_id,
                parsed.value,
                triggered_by.value,
            )
        else:
            logger.info(
                "Precision search %s already in flight for user %s, not queuing another",
                queue_id,
                user_id,
            )
        return queue_id, created

    def has_in_flight(self, user_id: str) -> bool:
        return self.ops.store.find_in_flight_item(user_id) is not None

    def on_mail_sync_status_change(self, event: MailSyncEvent) -> str | None:
        """
        Mail-sync subscription callback.

        Queues an all_incomplete search only on the `* -> completed` edge,
        when the sync created files, nothing is in flight for the user and
        the user has incomplete transactions.

        Returns:
            New queue item id, or None if skipped
        """
        if not event.is_completion:
            return None
        if event.files_created <= 0:
            logger.debug("Mail sync for user %s created no files, skipping", event.user_id)
            return None
        if self.has_in_flight(event.user_id):
            logger.info(
                "Mail sync completed for user %s but a precision search is in flight",
                event.user_id,
            )
            return None
        if self.ops.store.count_incomplete_transactions(event.user_id) == 0:
            logger.debug("User %s has no incomplete transactions, skipping", event.user_id)
            return None

        queue_id, created = self._enqueue(
            event.user_id,
            SearchScope.ALL_INCOMPLETE.value,
            None,
            TriggerSource.MAIL_SYNC,
            ChangeAuthor(type=AuthorType.SYSTEM),
            event.sync_job_id,
        )
        return queue_id if created else None
