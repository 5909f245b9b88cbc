"""
Migration 001: Add precision search queue tables.

Creates the queue item table and the per-item scope snapshot.

Features:
- At most one PENDING/PROCESSING item per user (partial unique index)
- Ordered strategy list and cursor per item
- Monotonic progress counters and accumulated non-fatal errors (JSON)
- Retry tracking (retry_count, max_retries)
- Scope snapshot rows record which transactions are still being searched
"""

import sqlite3

VERSION = 1
NAME = "precision_search_queue"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create the precision_search_queue and precision_search_scope tables."""
    cursor = conn.cursor()

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS precision_search_queue (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,

            -- Scope: all_incomplete, single_transaction
            scope TEXT NOT NULL,
            transaction_id TEXT,

            -- Status: pending, processing, completed, failed
            status TEXT NOT NULL DEFAULT 'pending',

            -- Trigger: manual, mail_sync; author is JSON {type, userId}
            triggered_by TEXT NOT NULL,
            triggered_by_author TEXT NOT NULL,

            -- Strategy list (JSON) and cursor
            strategies TEXT NOT NULL,
            current_strategy_index INTEGER NOT NULL DEFAULT 0,

            -- Progress counters
            transactions_to_process INTEGER NOT NULL DEFAULT 0,
            transactions_processed INTEGER NOT NULL DEFAULT 0,
            transactions_with_matches INTEGER NOT NULL DEFAULT 0,
            total_files_connected INTEGER NOT NULL DEFAULT 0,

            -- Non-fatal errors (JSON array of {transactionId, strategyId, message})
            errors TEXT NOT NULL DEFAULT '[]',
            last_error TEXT,

            -- Retry tracking
            retry_count INTEGER NOT NULL DEFAULT 0,
            max_retries INTEGER NOT NULL DEFAULT 3,
            retry_of TEXT,

            mail_sync_job_id TEXT,

            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            started_at TEXT,
            completed_at TEXT,

            CHECK (scope != 'single_transaction' OR transaction_id IS NOT NULL),
            CHECK (transactions_processed <= transactions_to_process)
        )
    """)

    cursor.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS idx_precision_search_queue_in_flight
        ON precision_search_queue (user_id)
        WHERE status IN ('pending', 'processing')
    """)

    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_precision_search_queue_status
        ON precision_search_queue (status, created_at)
    """)

    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_precision_search_queue_retry_of
        ON precision_search_queue (retry_of)
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS precision_search_scope (
            queue_id TEXT NOT NULL,
            transaction_id TEXT NOT NULL,
            position INTEGER NOT NULL,

            -- State: pending, resolved, exhausted
            state TEXT NOT NULL DEFAULT 'pending',
            last_strategy_index INTEGER NOT NULL DEFAULT -1,
            resolved_by TEXT,

            PRIMARY KEY (queue_id, transaction_id),
            FOREIGN KEY (queue_id) REFERENCES precision_search_queue(id) ON DELETE CASCADE
        )
    """)

    conn.commit()


def downgrade(conn: sqlite3.Connection) -> None:
    """Drop the queue tables."""
    cursor = conn.cursor()
    cursor.execute("DROP TABLE IF EXISTS precision_search_scope")
    cursor.execute("DROP INDEX IF EXISTS idx_precision_search_queue_in_flight")
    cursor.execute("DROP INDEX IF EXISTS idx_precision_search_queue_status")
    cursor.execute("DROP INDEX IF EXISTS idx_precision_search_queue_retry_of")
    cursor.execute("DROP TABLE IF EXISTS precision_search_queue")
    conn.commit()
