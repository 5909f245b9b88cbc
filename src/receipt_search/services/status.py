"""
Read-only status views over the precision search queue.
"""

from typing import Any

from receipt_search.context import OperationsContext


class PrecisionSearchStatus:
    """Status summaries for dashboards, the CLI and the HTTP API."""

    def __init__(self, ops: OperationsContext):
        self.ops = ops

    def status(self, queue_id: str) -> dict[str, Any] | None:
        """Queue item summary with progress and current strategy, or None."""
        item = self.ops.store.get_queue_item(queue_id)
        if item is None:
            return None
        if self.ops.user_id and item.user_id != self.ops.user_id:
            return None
        return item.summary()

    def transaction_history(self, transaction_id: str) -> dict[str, Any] | None:
        """Search log and file links of one transaction, or None if unknown."""
        transaction = self.ops.store.get_transaction(transaction_id)
        if transaction is None:
            return None
        if self.ops.user_id and transaction.user_id != self.ops.user_id:
            return None
        return {
            "transactionId": transaction.id,
            "isComplete": transaction.is_complete,
            "fileIds": list(transaction.file_ids),
            "files": self.ops.store.get_file_links(transaction.id),
            "searches": [
                attempt.to_dict()
                for attempt in self.ops.store.get_transaction_searches(transaction.id)
            ],
        }

    def queue_stats(self) -> dict[str, int]:
        """Item counts per status (scoped to the context's user, if any)."""
        return self.ops.store.get_queue_stats(self.ops.user_id)
