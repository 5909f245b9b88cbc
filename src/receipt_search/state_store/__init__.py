"""
State Store (SQLite-based).

Lightweight persistent DB for tracking:
- Transactions, receipt files and partners
- File links with match provenance
- Precision search queue items, scope snapshots and search history

Enforces at most one in-flight precision search per user.
"""

from .sqlite_store import (
    LeaseLostError,
    MatchWrite,
    QueueItemCorrupted,
    StateStore,
    parse_timestamp,
    to_timestamp,
    utc_now,
)

__all__ = [
    "LeaseLostError",
    "MatchWrite",
    "QueueItemCorrupted",
    "StateStore",
    "parse_timestamp",
    "to_timestamp",
    "utc_now",
]
