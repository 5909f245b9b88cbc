"""
SQLite-based state store implementation.

Tables:
- partners: Counterparties (user-scoped or global)
- transactions: Financial events that may need a receipt
- receipt_files: Receipt candidates with extracted metadata
- transaction_files: File links with match provenance
- precision_search_queue: Queue items (see migrations)
- precision_search_scope: Per-item transaction snapshot (see migrations)
- transaction_searches: Search log (see migrations)

Every queue state transition is a single conditional UPDATE, so concurrent
workers never both win a claim and counters are never applied twice.
"""

import json
import logging
import sqlite3
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any

from ..schemas import (
    ChangeAuthor,
    PrecisionSearchQueueItem,
    QueueError,
    QueueStatus,
    ReceiptFile,
    Partner,
    ScopeEntry,
    ScopeEntryState,
    SearchAttempt,
    SearchScope,
    Transaction,
    TriggerSource,
)

logger = logging.getLogger(__name__)


class QueueItemCorrupted(Exception):
    """Raised when a stored queue item cannot be decoded."""

    def __init__(self, queue_id: str, reason: str):
        self.queue_id = queue_id
        super().__init__(f"Queue item {queue_id} is unreadable: {reason}")


class LeaseLostError(Exception):
    """Raised when a worker writes to an item it no longer holds."""

    pass


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_timestamp(value: datetime) -> str:
    """Fixed-width ISO timestamp, safe for lexicographic comparison in SQL."""
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


@dataclass
class MatchWrite:
    """An accepted candidate to link to a transaction."""

    file_id: str
    strategy_id: str
    confidence: float


class StateStore:
    """
    SQLite-based document store for the precision search pipeline.

    Provides persistent tracking of:
    - Transactions, receipt files and partners
    - File links with provenance (matched_by, strategy, confidence)
    - Precision search queue items and their scope snapshots
    - Per-transaction search history

    Safe for multiple worker processes: writers serialize on SQLite's lock and
    every transition is guarded by its expected current state.
    """

    SCHEMA_VERSION = 1

    def __init__(self, db_path: Path | str, run_migrations: bool = True, timeout: float = 10.0):
        """
        Initialize state store.

        Args:
            db_path: Path to SQLite database file
            run_migrations: Whether to run pending migrations (default True)
            timeout: Seconds to wait on a locked database before failing
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.timeout = timeout
        self._init_db()
        if run_migrations:
            self._run_migrations()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with row factory."""
        conn = sqlite3.connect(str(self.db_path), timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _transaction(self, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        """Context manager for database transactions.

        immediate=True takes the write lock up front, for check-then-insert.
        """
        conn = self._get_connection()
        try:
            if immediate:
                conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize ledger schema."""
        with self._transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS partners (
                    id TEXT PRIMARY KEY,
                    user_id TEXT,  -- NULL for global partners
                    name TEXT NOT NULL,
                    aliases TEXT,  -- JSON array
                    ibans TEXT,  -- JSON array
                    vat_id TEXT,
                    email_domains TEXT,  -- JSON array
                    website TEXT
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS transactions (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    currency TEXT NOT NULL DEFAULT 'EUR',
                    date TEXT NOT NULL,
                    name TEXT,
                    description TEXT,
                    reference TEXT,
                    partner_id TEXT,
                    is_complete INTEGER NOT NULL DEFAULT 0,
                    no_receipt_needed INTEGER NOT NULL DEFAULT 0,
                    rejected_file_ids TEXT,  -- JSON array
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS receipt_files (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    file_name TEXT NOT NULL,
                    source_type TEXT NOT NULL DEFAULT 'upload',
                    mime_type TEXT,
                    storage_ref TEXT,
                    sender_domain TEXT,
                    partner_id TEXT,
                    extracted_amount TEXT,
                    extracted_date TEXT,
                    extracted_partner TEXT,
                    iban_hints TEXT,  -- JSON array
                    vat_hint TEXT,
                    email_subject TEXT,
                    extracted_text TEXT,
                    created_at TEXT NOT NULL
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS transaction_files (
                    transaction_id TEXT NOT NULL,
                    file_id TEXT NOT NULL,
                    matched_by TEXT NOT NULL,  -- automation, manual
                    strategy_id TEXT,
                    confidence REAL,
                    queue_id TEXT,
                    attached_at TEXT NOT NULL,
                    PRIMARY KEY (transaction_id, file_id),
                    FOREIGN KEY (transaction_id) REFERENCES transactions(id),
                    FOREIGN KEY (file_id) REFERENCES receipt_files(id)
                )
            """
            )

            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_transactions_user_complete "
                "ON transactions(user_id, is_complete)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_receipt_files_user ON receipt_files(user_id)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_transaction_files_file "
                "ON transaction_files(file_id)"
            )

            conn.execute(
                "INSERT OR REPLACE INTO schema_version (version) VALUES (?)", (self.SCHEMA_VERSION,)
            )

    def _run_migrations(self) -> None:
        """Run pending database migrations."""
        from .migrations import MigrationRunner

        conn = self._get_connection()
        try:
            runner = MigrationRunner(conn)
            runner.run_pending()
        finally:
            conn.close()

    # === Ledger Methods ===

    def upsert_partner(self, partner: Partner) -> None:
        """Insert or replace a partner."""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO partners
                (id, user_id, name, aliases, ibans, vat_id, email_domains, website)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    partner.id,
                    partner.user_id,
                    partner.name,
                    json.dumps(partner.aliases),
                    json.dumps(partner.ibans),
                    partner.vat_id,
                    json.dumps(partner.email_domains),
                    partner.website,
                ),
            )

    def get_partner(self, partner_id: str) -> Partner | None:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM partners WHERE id = ?", (partner_id,)).fetchone()
            return Partner.from_row(row) if row else None

    def upsert_transaction(self, transaction: Transaction) -> None:
        """Insert or update a transaction. Existing file links are kept."""
        now = to_timestamp(utc_now())
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO transactions
                (id, user_id, amount, currency, date, name, description, reference,
                 partner_id, is_complete, no_receipt_needed, rejected_file_ids,
                 created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    amount = excluded.amount,
                    currency = excluded.currency,
                    date = excluded.date,
                    name = excluded.name,
                    description = excluded.description,
                    reference = excluded.reference,
                    partner_id = excluded.partner_id,
                    is_complete = excluded.is_complete,
                    no_receipt_needed = excluded.no_receipt_needed,
                    rejected_file_ids = excluded.rejected_file_ids,
                    updated_at = excluded.updated_at
            """,
                (
                    transaction.id,
                    transaction.user_id,
                    str(transaction.amount),
                    transaction.currency,
                    transaction.date.isoformat(),
                    transaction.name,
                    transaction.description,
                    transaction.reference,
                    transaction.partner_id,
                    int(transaction.is_complete or transaction.no_receipt_needed),
                    int(transaction.no_receipt_needed),
                    json.dumps(transaction.rejected_file_ids),
                    now,
                    now,
                ),
            )

    def get_transaction(self, transaction_id: str) -> Transaction | None:
        """Get a transaction with its attached file ids."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM transactions WHERE id = ?", (transaction_id,)
            ).fetchone()
            if not row:
                return None
            file_ids = [
                r["file_id"]
                for r in conn.execute(
                    "SELECT file_id FROM transaction_files WHERE transaction_id = ? "
                    "ORDER BY attached_at",
                    (transaction_id,),
                ).fetchall()
            ]
            return Transaction.from_row(row, file_ids=file_ids)

    def get_file_links(self, transaction_id: str) -> list[dict[str, Any]]:
        """Get file links with provenance for a transaction."""
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM transaction_files
                WHERE transaction_id = ?
                ORDER BY attached_at
            """,
                (transaction_id,),
            ).fetchall()
            return [dict(row) for row in rows]

    def attach_file_manually(self, transaction_id: str, file_id: str) -> None:
        """Link a file on behalf of a user (outside the pipeline)."""
        now = to_timestamp(utc_now())
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO transaction_files
                (transaction_id, file_id, matched_by, attached_at)
                VALUES (?, ?, 'manual', ?)
            """,
                (transaction_id, file_id, now),
            )
            conn.execute(
                "UPDATE transactions SET is_complete = 1, updated_at = ? WHERE id = ?",
                (now, transaction_id),
            )

    def count_incomplete_transactions(self, user_id: str) -> int:
        """Live count of a user's transactions still needing a receipt."""
        with self._transaction() as conn:
            return self._count_incomplete(conn, user_id)

    @staticmethod
    def _count_incomplete(conn: sqlite3.Connection, user_id: str) -> int:
        row = conn.execute(
            """
            SELECT COUNT(*) FROM transactions
            WHERE user_id = ? AND is_complete = 0 AND no_receipt_needed = 0
        """,
            (user_id,),
        ).fetchone()
        return row[0]

    @staticmethod
    def _incomplete_ids(conn: sqlite3.Connection, user_id: str) -> list[str]:
        rows = conn.execute(
            """
            SELECT id FROM transactions
            WHERE user_id = ? AND is_complete = 0 AND no_receipt_needed = 0
            ORDER BY date DESC, id
        """,
            (user_id,),
        ).fetchall()
        return [row["id"] for row in rows]

    def upsert_file(self, receipt: ReceiptFile) -> None:
        """
        Insert or replace a receipt file (ingestion collaborators only).

        created_at is stored in the fixed-width UTC form so the newest-first
        ordering in SQL matches real time.
        """
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO receipt_files
                (id, user_id, file_name, source_type, mime_type, storage_ref,
                 sender_domain, partner_id, extracted_amount, extracted_date,
                 extracted_partner, iban_hints, vat_hint, email_subject,
                 extracted_text, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    receipt.id,
                    receipt.user_id,
                    receipt.file_name,
                    receipt.source_type.value,
                    receipt.mime_type,
                    receipt.storage_ref,
                    receipt.sender_domain,
                    receipt.partner_id,
                    str(receipt.extracted_amount) if receipt.extracted_amount is not None else None,
                    receipt.extracted_date.isoformat() if receipt.extracted_date else None,
                    receipt.extracted_partner,
                    json.dumps(receipt.iban_hints),
                    receipt.vat_hint,
                    receipt.email_subject,
                    receipt.extracted_text,
                    to_timestamp(receipt.created_at_utc),
                ),
            )

    def find_unattached_files(
        self,
        user_id: str,
        *,
        sources: list[str] | None = None,
        date_from: date | None = None,
        date_to: date | None = None,
        amount_min: Decimal | None = None,
        amount_max: Decimal | None = None,
        limit: int = 500,
    ) -> list[ReceiptFile]:
        """
        Query a user's files that are not linked to any transaction.

        Date and amount bounds only apply to files that carry the extracted
        value, except when an amount range is given (then the amount is required).
        Ordered newest first.
        """
        conditions = [
            "f.user_id = ?",
            "NOT EXISTS (SELECT 1 FROM transaction_files tf WHERE tf.file_id = f.id)",
        ]
        params: list[Any] = [user_id]

        if sources:
            conditions.append(f"f.source_type IN ({', '.join('?' for _ in sources)})")
            params.extend(sources)
        if date_from is not None:
            conditions.append("(f.extracted_date IS NULL OR f.extracted_date >= ?)")
            params.append(date_from.isoformat())
        if date_to is not None:
            conditions.append("(f.extracted_date IS NULL OR f.extracted_date <= ?)")
            params.append(date_to.isoformat())
        if amount_min is not None:
            conditions.append("CAST(f.extracted_amount AS REAL) >= ?")
            params.append(float(amount_min))
        if amount_max is not None:
            conditions.append("CAST(f.extracted_amount AS REAL) <= ?")
            params.append(float(amount_max))

        params.append(limit)
        with self._transaction() as conn:
            rows = conn.execute(
                f"""
                SELECT f.* FROM receipt_files f
                WHERE {' AND '.join(conditions)}
                ORDER BY f.created_at DESC, f.id
                LIMIT ?
            """,
                params,
            ).fetchall()
        if len(rows) >= limit:
            logger.warning(
                "File scan for user %s hit the limit of %d; "
                "older unattached files were not considered",
                user_id,
                limit,
            )
        return [ReceiptFile.from_row(row) for row in rows]

    # === Precision Search Queue Methods ===

    def _item_from_row(self, row: sqlite3.Row) -> PrecisionSearchQueueItem:
        try:
            return PrecisionSearchQueueItem.from_row(row)
        except (ValueError, KeyError, TypeError, json.JSONDecodeError) as e:
            raise QueueItemCorrupted(row["id"], str(e)) from e

    @staticmethod
    def _active_item_id(conn: sqlite3.Connection, user_id: str) -> str | None:
        row = conn.execute(
            """
            SELECT id FROM precision_search_queue
            WHERE user_id = ? AND status IN ('pending', 'processing')
            ORDER BY created_at
            LIMIT 1
        """,
            (user_id,),
        ).fetchone()
        return row["id"] if row else None

    def enqueue_precision_search(
        self,
        user_id: str,
        scope: SearchScope,
        strategies: list[str],
        triggered_by: TriggerSource,
        author: ChangeAuthor,
        transaction_id: str | None = None,
        max_retries: int = 3,
        retry_count: int = 0,
        retry_of: str | None = None,
        mail_sync_job_id: str | None = None,
    ) -> tuple[str, bool]:
        """
        Create a pending queue item unless one is already in flight.

        The in-flight check, the scope snapshot and the insert share one
        write-locked transaction; the partial unique index on user_id is
        the backstop.

        Returns:
            (queue_id, created). created is False when an in-flight item
            already existed and its id is returned instead.
        """
        now = to_timestamp(utc_now())
        queue_id = uuid.uuid4().hex

        try:
            with self._transaction(immediate=True) as conn:
                existing = self._active_item_id(conn, user_id)
                if existing:
                    return existing, False

                if scope == SearchScope.SINGLE_TRANSACTION:
                    transaction_ids = [transaction_id]
                else:
                    transaction_ids = self._incomplete_ids(conn, user_id)

                conn.execute(
                    """
                    INSERT INTO precision_search_queue
                    (id, user_id, scope, transaction_id, status, triggered_by,
                     triggered_by_author, strategies, current_strategy_index,
                     transactions_to_process, errors, retry_count, max_retries,
                     retry_of, mail_sync_job_id, created_at, updated_at)
                    VALUES (?, ?, ?, ?, 'pending', ?, ?, ?, 0, ?, '[]', ?, ?, ?, ?, ?, ?)
                """,
                    (
                        queue_id,
                        user_id,
                        scope.value,
                        transaction_id,
                        triggered_by.value,
                        json.dumps(author.to_dict()),
                        json.dumps(strategies),
                        len(transaction_ids),
                        retry_count,
                        max_retries,
                        retry_of,
                        mail_sync_job_id,
                        now,
                        now,
                    ),
                )
                conn.executemany(
                    """
                    INSERT INTO precision_search_scope
                    (queue_id, transaction_id, position, state)
                    VALUES (?, ?, ?, 'pending')
                """,
                    [(queue_id, tx_id, pos) for pos, tx_id in enumerate(transaction_ids)],
                )
        except sqlite3.IntegrityError:
            # Lost the race against another writer for this user
            with self._transaction() as conn:
                existing = self._active_item_id(conn, user_id)
            if existing is None:
                raise
            return existing, False

        return queue_id, True

    def get_queue_item(self, queue_id: str) -> PrecisionSearchQueueItem | None:
        """Get a queue item. Raises QueueItemCorrupted for unreadable rows."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM precision_search_queue WHERE id = ?", (queue_id,)
            ).fetchone()
        return self._item_from_row(row) if row else None

    def find_in_flight_item(self, user_id: str) -> PrecisionSearchQueueItem | None:
        """Get the user's pending or processing item, if any."""
        with self._transaction() as conn:
            queue_id = self._active_item_id(conn, user_id)
        return self.get_queue_item(queue_id) if queue_id else None

    def list_queue_items(
        self,
        user_id: str | None = None,
        status: QueueStatus | None = None,
        limit: int = 50,
    ) -> list[PrecisionSearchQueueItem]:
        """List queue items, newest first."""
        conditions = []
        params: list[Any] = []
        if user_id:
            conditions.append("user_id = ?")
            params.append(user_id)
        if status:
            conditions.append("status = ?")
            params.append(status.value)
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        params.append(limit)

        with self._transaction() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM precision_search_queue
                {where}
                ORDER BY created_at DESC
                LIMIT ?
            """,
                params,
            ).fetchall()
        return [self._item_from_row(row) for row in rows]

    def list_claimable_queue_ids(self, limit: int = 10) -> list[str]:
        """Pending items plus processing items whose lease has expired, oldest first."""
        now = to_timestamp(utc_now())
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT id FROM precision_search_queue
                WHERE status = 'pending'
                   OR (status = 'processing' AND lease_expires_at < ?)
                ORDER BY created_at
                LIMIT ?
            """,
                (now, limit),
            ).fetchall()
            return [row["id"] for row in rows]

    def claim_queue_item(self, queue_id: str, worker_id: str, lease_seconds: int) -> bool:
        """
        Compare-and-set claim: pending -> processing.

        A processing item whose lease expired may be re-claimed; work then
        resumes from the persisted cursor and scope snapshot.

        Returns:
            True if this worker now holds the item, False otherwise.
        """
        now = utc_now()
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE precision_search_queue
                SET status = 'processing',
                    lease_owner = ?,
                    lease_expires_at = ?,
                    started_at = COALESCE(started_at, ?),
                    updated_at = ?
                WHERE id = ?
                  AND (status = 'pending'
                       OR (status = 'processing' AND lease_expires_at < ?))
            """,
                (
                    worker_id,
                    to_timestamp(now + timedelta(seconds=lease_seconds)),
                    to_timestamp(now),
                    to_timestamp(now),
                    queue_id,
                    to_timestamp(now),
                ),
            )
            return cursor.rowcount == 1

    def _renew_lease(
        self, conn: sqlite3.Connection, queue_id: str, worker_id: str, lease_seconds: int
    ) -> None:
        """Heartbeat; raises LeaseLostError if the item moved on without us."""
        now = utc_now()
        cursor = conn.execute(
            """
            UPDATE precision_search_queue
            SET lease_expires_at = ?, updated_at = ?
            WHERE id = ? AND status = 'processing' AND lease_owner = ?
        """,
            (
                to_timestamp(now + timedelta(seconds=lease_seconds)),
                to_timestamp(now),
                queue_id,
                worker_id,
            ),
        )
        if cursor.rowcount != 1:
            raise LeaseLostError(f"Worker {worker_id} no longer holds queue item {queue_id}")

    def get_scope_entries(
        self, queue_id: str, state: ScopeEntryState | None = None
    ) -> list[ScopeEntry]:
        """Get a queue item's scope snapshot in position order."""
        query = "SELECT * FROM precision_search_scope WHERE queue_id = ?"
        params: list[Any] = [queue_id]
        if state:
            query += " AND state = ?"
            params.append(state.value)
        query += " ORDER BY position"
        with self._transaction() as conn:
            rows = conn.execute(query, params).fetchall()
            return [ScopeEntry.from_row(row) for row in rows]

    def record_strategy_attempt(
        self,
        queue_id: str,
        worker_id: str,
        lease_seconds: int,
        transaction_id: str,
        strategy_index: int,
        attempt: SearchAttempt,
        match: MatchWrite | None = None,
        errors: list[QueueError] | None = None,
    ) -> bool:
        """
        Persist the outcome of one strategy run against one transaction.

        In a single transaction: renews the lease, logs the attempt, appends
        non-fatal errors and, for an accepted match, links the file, marks the
        transaction complete, resolves the scope entry and bumps
        transactions_processed, transactions_with_matches and
        total_files_connected together.

        Returns:
            True if the match was written, False if there was none or the
            transaction was completed elsewhere in the meantime.
        """
        now = to_timestamp(utc_now())
        matched = False

        with self._transaction(immediate=True) as conn:
            self._renew_lease(conn, queue_id, worker_id, lease_seconds)

            entry = conn.execute(
                """
                SELECT state FROM precision_search_scope
                WHERE queue_id = ? AND transaction_id = ?
            """,
                (queue_id, transaction_id),
            ).fetchone()
            if entry is None or entry["state"] != ScopeEntryState.PENDING.value:
                # Already accounted for by an earlier (pre-crash) write
                return False

            if match is not None:
                tx_row = conn.execute(
                    "SELECT is_complete, no_receipt_needed FROM transactions WHERE id = ?",
                    (transaction_id,),
                ).fetchone()
                if tx_row and not tx_row["is_complete"] and not tx_row["no_receipt_needed"]:
                    conn.execute(
                        """
                        INSERT INTO transaction_files
                        (transaction_id, file_id, matched_by, strategy_id, confidence,
                         queue_id, attached_at)
                        VALUES (?, ?, 'automation', ?, ?, ?, ?)
                    """,
                        (
                            transaction_id,
                            match.file_id,
                            match.strategy_id,
                            match.confidence,
                            queue_id,
                            now,
                        ),
                    )
                    conn.execute(
                        "UPDATE transactions SET is_complete = 1, updated_at = ? WHERE id = ?",
                        (now, transaction_id),
                    )
                    matched = True

            if matched:
                conn.execute(
                    """
                    UPDATE precision_search_scope
                    SET state = 'resolved', resolved_by = ?, last_strategy_index = ?
                    WHERE queue_id = ? AND transaction_id = ?
                """,
                    (match.strategy_id, strategy_index, queue_id, transaction_id),
                )
                conn.execute(
                    """
                    UPDATE precision_search_queue
                    SET transactions_processed = transactions_processed + 1,
                        transactions_with_matches = transactions_with_matches + 1,
                        total_files_connected = total_files_connected + 1
                    WHERE id = ?
                """,
                    (queue_id,),
                )
            else:
                conn.execute(
                    """
                    UPDATE precision_search_scope
                    SET last_strategy_index = ?
                    WHERE queue_id = ? AND transaction_id = ?
                """,
                    (strategy_index, queue_id, transaction_id),
                )

            if errors:
                self._append_errors(conn, queue_id, errors)

            conn.execute(
                """
                INSERT INTO transaction_searches
                (queue_id, transaction_id, strategy_id, candidates_found,
                 candidates_accepted, best_confidence, connected_file_id, error, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    queue_id,
                    transaction_id,
                    attempt.strategy_id,
                    attempt.candidates_found,
                    attempt.candidates_accepted,
                    attempt.best_confidence,
                    match.file_id if matched else None,
                    attempt.error,
                    now,
                ),
            )

        return matched

    def settle_scope_entry(
        self,
        queue_id: str,
        worker_id: str,
        lease_seconds: int,
        transaction_id: str,
        state: ScopeEntryState,
        error: QueueError | None = None,
    ) -> None:
        """
        Count a transaction as processed without a match.

        Used when the transaction was completed outside the pipeline
        (RESOLVED) or cannot be read any more (EXHAUSTED, with an error).
        """
        with self._transaction(immediate=True) as conn:
            self._renew_lease(conn, queue_id, worker_id, lease_seconds)
            cursor = conn.execute(
                """
                UPDATE precision_search_scope SET state = ?
                WHERE queue_id = ? AND transaction_id = ? AND state = 'pending'
            """,
                (state.value, queue_id, transaction_id),
            )
            if cursor.rowcount == 1:
                conn.execute(
                    """
                    UPDATE precision_search_queue
                    SET transactions_processed = transactions_processed + 1
                    WHERE id = ?
                """,
                    (queue_id,),
                )
            if error:
                self._append_errors(conn, queue_id, [error])

    @staticmethod
    def _append_errors(
        conn: sqlite3.Connection, queue_id: str, errors: list[QueueError]
    ) -> None:
        row = conn.execute(
            "SELECT errors FROM precision_search_queue WHERE id = ?", (queue_id,)
        ).fetchone()
        existing = json.loads(row["errors"] or "[]")
        existing.extend(e.to_dict() for e in errors)
        conn.execute(
            "UPDATE precision_search_queue SET errors = ? WHERE id = ?",
            (json.dumps(existing), queue_id),
        )

    def advance_strategy(
        self, queue_id: str, worker_id: str, lease_seconds: int, from_index: int
    ) -> None:
        """Move the cursor from from_index to the next strategy."""
        with self._transaction(immediate=True) as conn:
            self._renew_lease(conn, queue_id, worker_id, lease_seconds)
            conn.execute(
                """
                UPDATE precision_search_queue
                SET current_strategy_index = ?
                WHERE id = ? AND current_strategy_index = ?
            """,
                (from_index + 1, queue_id, from_index),
            )

    def complete_queue_item(self, queue_id: str, worker_id: str, final_index: int) -> None:
        """
        processing -> completed.

        Scope entries still pending are exhausted and counted as processed,
        so transactions_processed ends equal to transactions_to_process.
        """
        now = to_timestamp(utc_now())
        with self._transaction(immediate=True) as conn:
            cursor = conn.execute(
                """
                UPDATE precision_search_scope SET state = 'exhausted'
                WHERE queue_id = ? AND state = 'pending'
            """,
                (queue_id,),
            )
            exhausted = cursor.rowcount
            cursor = conn.execute(
                """
                UPDATE precision_search_queue
                SET status = 'completed',
                    transactions_processed = transactions_processed + ?,
                    current_strategy_index = ?,
                    completed_at = ?,
                    updated_at = ?,
                    lease_owner = NULL,
                    lease_expires_at = NULL
                WHERE id = ? AND status = 'processing' AND lease_owner = ?
            """,
                (exhausted, final_index, now, now, queue_id, worker_id),
            )
            if cursor.rowcount != 1:
                raise LeaseLostError(f"Worker {worker_id} no longer holds queue item {queue_id}")

    def fail_queue_item(
        self, queue_id: str, error_message: str, worker_id: str | None = None
    ) -> bool:
        """
        processing -> failed, incrementing retry_count.

        Returns:
            True if the transition happened.
        """
        now = to_timestamp(utc_now())
        query = """
            UPDATE precision_search_queue
            SET status = 'failed',
                retry_count = retry_count + 1,
                last_error = ?,
                completed_at = ?,
                updated_at = ?,
                lease_owner = NULL,
                lease_expires_at = NULL
            WHERE id = ? AND status = 'processing'
        """
        params: list[Any] = [error_message, now, now, queue_id]
        if worker_id is not None:
            query += " AND lease_owner = ?"
            params.append(worker_id)

        with self._transaction() as conn:
            cursor = conn.execute(query, params)
            return cursor.rowcount == 1

    def list_retry_candidates(self) -> list[PrecisionSearchQueueItem]:
        """Failed items with retry budget left that have not been re-enqueued yet."""
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT q.* FROM precision_search_queue q
                WHERE q.status = 'failed'
                  AND q.retry_count < q.max_retries
                  AND NOT EXISTS (
                      SELECT 1 FROM precision_search_queue r WHERE r.retry_of = q.id
                  )
                ORDER BY q.completed_at
            """
            ).fetchall()
        return [self._item_from_row(row) for row in rows]

    def list_stale_queue_items(self) -> list[PrecisionSearchQueueItem]:
        """Processing items whose lease has expired."""
        now = to_timestamp(utc_now())
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM precision_search_queue
                WHERE status = 'processing' AND lease_expires_at < ?
                ORDER BY lease_expires_at
            """,
                (now,),
            ).fetchall()
        return [self._item_from_row(row) for row in rows]

    def get_transaction_searches(self, transaction_id: str) -> list[SearchAttempt]:
        """Search history for a transaction, oldest first."""
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM transaction_searches
                WHERE transaction_id = ?
                ORDER BY id
            """,
                (transaction_id,),
            ).fetchall()
            return [
                SearchAttempt(
                    queue_id=row["queue_id"],
                    transaction_id=row["transaction_id"],
                    strategy_id=row["strategy_id"],
                    candidates_found=row["candidates_found"],
                    candidates_accepted=row["candidates_accepted"],
                    best_confidence=row["best_confidence"],
                    connected_file_id=row["connected_file_id"],
                    error=row["error"],
                    created_at=row["created_at"],
                )
                for row in rows
            ]

    def get_queue_stats(self, user_id: str | None = None) -> dict[str, int]:
        """Count queue items per status."""
        query = "SELECT status, COUNT(*) AS n FROM precision_search_queue"
        params: list[Any] = []
        if user_id:
            query += " WHERE user_id = ?"
            params.append(user_id)
        query += " GROUP BY status"

        stats = {status.value: 0 for status in QueueStatus}
        with self._transaction() as conn:
            for row in conn.execute(query, params).fetchall():
                stats[row["status"]] = row["n"]
        stats["total"] = sum(stats.values())
        return stats
