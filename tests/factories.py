"""Builders for ledger entities used across tests."""

from datetime import date, datetime, timezone
from decimal import Decimal

from receipt_search.schemas import FileSource, ReceiptFile, Transaction
from receipt_search.state_store import to_timestamp

USER = "user-1"
OTHER_USER = "user-2"


def make_transaction(tx_id: str, **overrides) -> Transaction:
    """Incomplete expense for USER unless overridden."""
    data = {
        "id": tx_id,
        "user_id": USER,
        "amount": Decimal("-119.00"),
        "currency": "EUR",
        "date": date(2024, 11, 20),
        "name": "Card payment",
    }
    data.update(overrides)
    return Transaction(**data)


def make_file(file_id: str, **overrides) -> ReceiptFile:
    """Upload for USER created 2024-11-21 unless overridden."""
    data = {
        "id": file_id,
        "user_id": USER,
        "file_name": f"{file_id}.pdf",
        "created_at": to_timestamp(datetime(2024, 11, 21, 9, 0, tzinfo=timezone.utc)),
        "source_type": FileSource.UPLOAD,
        "mime_type": "application/pdf",
    }
    data.update(overrides)
    return ReceiptFile(**data)
