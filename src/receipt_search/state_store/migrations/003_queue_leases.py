"""
Migration 003: Add processing leases to queue items.

A claimed item records its worker and a lease expiry that every progress
write renews. Items stuck in processing past their lease can be re-claimed.
"""

import sqlite3

VERSION = 3
NAME = "queue_leases"


def upgrade(conn: sqlite3.Connection) -> None:
    """Add lease_owner and lease_expires_at columns."""
    cursor = conn.cursor()

    cursor.execute("PRAGMA table_info(precision_search_queue)")
    columns = {row[1] for row in cursor.fetchall()}

    if "lease_owner" not in columns:
        cursor.execute("ALTER TABLE precision_search_queue ADD COLUMN lease_owner TEXT")
    if "lease_expires_at" not in columns:
        cursor.execute("ALTER TABLE precision_search_queue ADD COLUMN lease_expires_at TEXT")

    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_precision_search_queue_lease
        ON precision_search_queue (status, lease_expires_at)
    """)

    conn.commit()


def downgrade(conn: sqlite3.Connection) -> None:
    """Drop the lease columns (SQLite >= 3.35)."""
    cursor = conn.cursor()
    cursor.execute("DROP INDEX IF EXISTS idx_precision_search_queue_lease")
    cursor.execute("ALTER TABLE precision_search_queue DROP COLUMN lease_expires_at")
    cursor.execute("ALTER TABLE precision_search_queue DROP COLUMN lease_owner")
    conn.commit()
