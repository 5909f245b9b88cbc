"""
SSOT (Single Source of Truth) schemas for the precision search pipeline.

These canonical schemas are the ONLY models used across all modules.
No duplicated "near-same" models allowed.
"""

from .ledger import (
    MAIL_SOURCES,
    FileSource,
    Partner,
    ReceiptFile,
    Transaction,
    normalize_domain,
    normalize_iban,
    normalize_vat,
    parse_decimal,
    parse_iso_date,
)
from .precision_search import (
    IN_FLIGHT_STATUSES,
    AuthorType,
    ChangeAuthor,
    MailSyncEvent,
    PrecisionSearchQueueItem,
    QueueError,
    QueueStatus,
    ScopeEntry,
    ScopeEntryState,
    SearchAttempt,
    SearchScope,
    TriggerSource,
)

__all__ = [
    "MAIL_SOURCES",
    "FileSource",
    "Partner",
    "ReceiptFile",
    "Transaction",
    "normalize_domain",
    "normalize_iban",
    "normalize_vat",
    "parse_decimal",
    "parse_iso_date",
    "IN_FLIGHT_STATUSES",
    "AuthorType",
    "ChangeAuthor",
    "MailSyncEvent",
    "PrecisionSearchQueueItem",
    "QueueError",
    "QueueStatus",
    "ScopeEntry",
    "ScopeEntryState",
    "SearchAttempt",
    "SearchScope",
    "TriggerSource",
]
