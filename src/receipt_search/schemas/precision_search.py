"""
Precision search queue schema (SSOT).

The queue item is the durable contract that dashboards and audit views read.
to_dict() produces that shape with camelCase keys; nothing else may invent
another representation of a queue item.
"""

import json
import sqlite3
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class SearchScope(str, Enum):
    """Which transactions a queued search covers."""

    ALL_INCOMPLETE = "all_incomplete"
    SINGLE_TRANSACTION = "single_transaction"


class QueueStatus(str, Enum):
    """
    Queue item lifecycle.

    PENDING -> PROCESSING -> COMPLETED | FAILED
    Terminal states are never left again; retries create a new item.
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (QueueStatus.COMPLETED, QueueStatus.FAILED)


IN_FLIGHT_STATUSES = (QueueStatus.PENDING, QueueStatus.PROCESSING)


class TriggerSource(str, Enum):
    MANUAL = "manual"
    MAIL_SYNC = "mail_sync"


class AuthorType(str, Enum):
    USER = "user"
    SYSTEM = "system"


class ScopeEntryState(str, Enum):
    """Per-transaction progress inside one queue item."""

    PENDING = "pending"  # still searched by upcoming strategies
    RESOLVED = "resolved"  # matched, or completed outside the pipeline
    EXHAUSTED = "exhausted"  # every strategy tried, nothing accepted


@dataclass
class ChangeAuthor:
    """Who caused a queue item to exist."""

    type: AuthorType
    user_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "userId": self.user_id}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChangeAuthor":
        return cls(type=AuthorType(data["type"]), user_id=data.get("userId"))


@dataclass
class QueueError:
    """A non-fatal error recorded while processing one transaction."""

    transaction_id: str | None
    strategy_id: str | None
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "transactionId": self.transaction_id,
            "strategyId": self.strategy_id,
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "QueueError":
        return cls(
            transaction_id=data.get("transactionId"),
            strategy_id=data.get("strategyId"),
            message=data["message"],
        )


@dataclass
class PrecisionSearchQueueItem:
    """One precision search job and its state machine position."""

    id: str
    user_id: str
    scope: SearchScope
    status: QueueStatus
    triggered_by: TriggerSource
    triggered_by_author: ChangeAuthor
    strategies: list[str]
    created_at: str
    updated_at: str
    transaction_id: str | None = None
    current_strategy_index: int = 0
    transactions_to_process: int = 0
    transactions_processed: int = 0
    transactions_with_matches: int = 0
    total_files_connected: int = 0
    errors: list[QueueError] = field(default_factory=list)
    retry_count: int = 0
    max_retries: int = 3
    started_at: str | None = None
    completed_at: str | None = None
    last_error: str | None = None
    lease_owner: str | None = None
    lease_expires_at: str | None = None
    retry_of: str | None = None
    mail_sync_job_id: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "PrecisionSearchQueueItem":
        """Create from database row.

        Raises ValueError, KeyError or json.JSONDecodeError on malformed rows;
        the store converts these into QueueItemCorrupted.
        """
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            scope=SearchScope(row["scope"]),
            status=QueueStatus(row["status"]),
            triggered_by=TriggerSource(row["triggered_by"]),
            triggered_by_author=ChangeAuthor.from_dict(json.loads(row["triggered_by_author"])),
            strategies=json.loads(row["strategies"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            transaction_id=row["transaction_id"],
            current_strategy_index=row["current_strategy_index"],
            transactions_to_process=row["transactions_to_process"],
            transactions_processed=row["transactions_processed"],
            transactions_with_matches=row["transactions_with_matches"],
            total_files_connected=row["total_files_connected"],
            errors=[QueueError.from_dict(e) for e in json.loads(row["errors"] or "[]")],
            retry_count=row["retry_count"],
            max_retries=row["max_retries"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            last_error=row["last_error"],
            lease_owner=row["lease_owner"],
            lease_expires_at=row["lease_expires_at"],
            retry_of=row["retry_of"],
            mail_sync_job_id=row["mail_sync_job_id"],
        )

    @property
    def current_strategy(self) -> str | None:
        if self.status.is_terminal:
            return None
        if 0 <= self.current_strategy_index < len(self.strategies):
            return self.strategies[self.current_strategy_index]
        return None

    @property
    def progress_percent(self) -> int:
        if self.transactions_to_process <= 0:
            return 100
        return round(100 * self.transactions_processed / self.transactions_to_process)

    @property
    def can_retry(self) -> bool:
        return self.status == QueueStatus.FAILED and self.retry_count < self.max_retries

    def to_dict(self) -> dict[str, Any]:
        """Durable record shape (camelCase keys)."""
        return {
            "id": self.id,
            "userId": self.user_id,
            "scope": self.scope.value,
            "transactionId": self.transaction_id,
            "status": self.status.value,
            "triggeredBy": self.triggered_by.value,
            "triggeredByAuthor": self.triggered_by_author.to_dict(),
            "strategies": list(self.strategies),
            "currentStrategyIndex": self.current_strategy_index,
            "transactionsToProcess": self.transactions_to_process,
            "transactionsProcessed": self.transactions_processed,
            "transactionsWithMatches": self.transactions_with_matches,
            "totalFilesConnected": self.total_files_connected,
            "errors": [e.to_dict() for e in self.errors],
            "retryCount": self.retry_count,
            "maxRetries": self.max_retries,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "lastError": self.last_error,
            "retryOf": self.retry_of,
            "mailSyncJobId": self.mail_sync_job_id,
        }

    def summary(self) -> dict[str, Any]:
        """Durable shape plus derived progress, for status endpoints."""
        data = self.to_dict()
        data["progress"] = self.progress_percent
        data["currentStrategy"] = self.current_strategy
        return data


@dataclass
class ScopeEntry:
    """One transaction inside a queue item's scope snapshot."""

    queue_id: str
    transaction_id: str
    position: int
    state: ScopeEntryState
    last_strategy_index: int = -1
    resolved_by: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ScopeEntry":
        return cls(
            queue_id=row["queue_id"],
            transaction_id=row["transaction_id"],
            position=row["position"],
            state=ScopeEntryState(row["state"]),
            last_strategy_index=row["last_strategy_index"],
            resolved_by=row["resolved_by"],
        )


@dataclass
class SearchAttempt:
    """Search log entry: one strategy run against one transaction."""

    queue_id: str
    transaction_id: str
    strategy_id: str
    candidates_found: int = 0
    candidates_accepted: int = 0
    best_confidence: float | None = None
    connected_file_id: str | None = None
    error: str | None = None
    created_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "queueId": self.queue_id,
            "transactionId": self.transaction_id,
            "strategy": self.strategy_id,
            "candidatesFound": self.candidates_found,
            "candidatesAccepted": self.candidates_accepted,
            "bestConfidence": self.best_confidence,
            "connectedFileId": self.connected_file_id,
            "error": self.error,
            "createdAt": self.created_at,
        }


@dataclass
class MailSyncEvent:
    """Status transition emitted by the mail-account sync job."""

    user_id: str
    before_status: str | None
    after_status: str
    files_created: int = 0
    sync_job_id: str | None = None

    @property
    def is_completion(self) -> bool:
        """True only on the `* -> completed` edge."""
        return self.after_status == "completed" and self.before_status != "completed"
