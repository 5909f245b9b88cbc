"""
Migration 002: Add transaction search log.

One row per strategy run against a transaction, so users can see why a
transaction is still missing its receipt.
"""

import sqlite3

VERSION = 2
NAME = "transaction_searches"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create the transaction_searches table."""
    cursor = conn.cursor()

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS transaction_searches (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            queue_id TEXT NOT NULL,
            transaction_id TEXT NOT NULL,
            strategy_id TEXT NOT NULL,
            candidates_found INTEGER NOT NULL DEFAULT 0,
            candidates_accepted INTEGER NOT NULL DEFAULT 0,
            best_confidence REAL,
            connected_file_id TEXT,
            error TEXT,
            created_at TEXT NOT NULL
        )
    """)

    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_transaction_searches_transaction
        ON transaction_searches (transaction_id)
    """)

    conn.commit()


def downgrade(conn: sqlite3.Connection) -> None:
    """Drop the transaction_searches table."""
    cursor = conn.cursor()
    cursor.execute("DROP INDEX IF EXISTS idx_transaction_searches_transaction")
    cursor.execute("DROP TABLE IF EXISTS transaction_searches")
    conn.commit()
