"""
Ledger entities read by the precision search pipeline.

Transactions, receipt files and partners are produced by ingestion
collaborators. The pipeline only ever reads files and partners; the single
mutation it performs on a transaction (linking a file and marking it
complete) goes through the state store.
"""

import json
import re
import sqlite3
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from urllib.parse import urlparse


class FileSource(str, Enum):
    """Where a receipt file came from."""

    UPLOAD = "upload"
    EMAIL_ATTACHMENT = "email_attachment"
    EMAIL_INVOICE = "email_invoice"  # invoice rendered from a mail body or link
    BANK_STORE = "bank_store"


MAIL_SOURCES = (FileSource.EMAIL_ATTACHMENT, FileSource.EMAIL_INVOICE)


def normalize_iban(value: str | None) -> str:
    """Uppercase an IBAN and drop all whitespace."""
    if not value:
        return ""
    return re.sub(r"\s+", "", value).upper()


def normalize_vat(value: str | None) -> str:
    if not value:
        return ""
    return re.sub(r"[\s.\-]", "", value).upper()


def normalize_domain(value: str | None) -> str:
    """Reduce an email address, URL or host to a bare lowercase domain."""
    if not value:
        return ""
    value = value.strip().lower()
    if "@" in value:
        value = value.rsplit("@", 1)[1]
    if "//" in value:
        value = urlparse(value).netloc or value
    value = value.split("/", 1)[0].split(":", 1)[0]
    if value.startswith("www."):
        value = value[4:]
    return value


def parse_decimal(value: object) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def parse_iso_date(value: object) -> date | None:
    if not value:
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


def _json_list(raw: str | None) -> list[str]:
    return json.loads(raw) if raw else []


@dataclass
class Partner:
    """A counterparty, either user-scoped or global (user_id is None)."""

    id: str
    name: str
    user_id: str | None = None
    aliases: list[str] = field(default_factory=list)
    ibans: list[str] = field(default_factory=list)
    vat_id: str | None = None
    email_domains: list[str] = field(default_factory=list)
    website: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Partner":
        """Create from database row."""
        return cls(
            id=row["id"],
            name=row["name"],
            user_id=row["user_id"],
            aliases=_json_list(row["aliases"]),
            ibans=_json_list(row["ibans"]),
            vat_id=row["vat_id"],
            email_domains=_json_list(row["email_domains"]),
            website=row["website"],
        )

    @property
    def normalized_ibans(self) -> set[str]:
        return {normalize_iban(iban) for iban in self.ibans if iban}

    def domains(self) -> list[str]:
        """Known mail domains, including the website host."""
        domains = [normalize_domain(d) for d in self.email_domains if d]
        website = normalize_domain(self.website)
        if website and website not in domains:
            domains.append(website)
        return [d for d in domains if d]

    def names(self) -> list[str]:
        return [n for n in [self.name, *self.aliases] if n]

    def summary(self) -> str:
        """One-line description used in query suggestion prompts."""
        parts = [self.name]
        if self.aliases:
            parts.append(f"aliases: {', '.join(self.aliases)}")
        domains = self.domains()
        if domains:
            parts.append(f"domains: {', '.join(domains)}")
        if self.vat_id:
            parts.append(f"VAT: {self.vat_id}")
        return "; ".join(parts)


@dataclass
class ReceiptFile:
    """A receipt candidate with the metadata extracted during ingestion."""

    id: str
    user_id: str
    file_name: str
    created_at: str  # ISO timestamp
    source_type: FileSource = FileSource.UPLOAD
    mime_type: str | None = None
    storage_ref: str | None = None
    sender_domain: str | None = None
    partner_id: str | None = None
    extracted_amount: Decimal | None = None
    extracted_date: date | None = None
    extracted_partner: str | None = None
    iban_hints: list[str] = field(default_factory=list)
    vat_hint: str | None = None
    email_subject: str | None = None
    extracted_text: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ReceiptFile":
        """Create from database row."""
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            file_name=row["file_name"],
            created_at=row["created_at"],
            source_type=FileSource(row["source_type"]),
            mime_type=row["mime_type"],
            storage_ref=row["storage_ref"],
            sender_domain=row["sender_domain"],
            partner_id=row["partner_id"],
            extracted_amount=parse_decimal(row["extracted_amount"]),
            extracted_date=parse_iso_date(row["extracted_date"]),
            extracted_partner=row["extracted_partner"],
            iban_hints=_json_list(row["iban_hints"]),
            vat_hint=row["vat_hint"],
            email_subject=row["email_subject"],
            extracted_text=row["extracted_text"],
        )

    @property
    def created_at_utc(self) -> datetime:
        """created_at as an aware UTC datetime. Naive values are taken as UTC."""
        value = datetime.fromisoformat(self.created_at.replace("Z", "+00:00"))
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @property
    def is_mail_derived(self) -> bool:
        return self.source_type in MAIL_SOURCES

    def searchable_text(self) -> str:
        """Lowercased haystack for query matching."""
        parts = [
            self.file_name,
            self.email_subject,
            self.sender_domain,
            self.extracted_partner,
            self.extracted_text,
        ]
        return " ".join(p for p in parts if p).lower()


@dataclass
class Transaction:
    """A financial event that may need a receipt."""

    id: str
    user_id: str
    amount: Decimal
    currency: str
    date: date
    name: str = ""
    description: str | None = None
    reference: str | None = None
    partner_id: str | None = None
    is_complete: bool = False
    no_receipt_needed: bool = False
    file_ids: list[str] = field(default_factory=list)
    rejected_file_ids: list[str] = field(default_factory=list)

    @classmethod
    def from_row(cls, row: sqlite3.Row, file_ids: list[str] | None = None) -> "Transaction":
        """Create from database row."""
        tx_date = parse_iso_date(row["date"])
        if tx_date is None:
            raise ValueError(f"Transaction {row['id']} has invalid date {row['date']!r}")
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            amount=Decimal(str(row["amount"])),
            currency=row["currency"],
            date=tx_date,
            name=row["name"] or "",
            description=row["description"],
            reference=row["reference"],
            partner_id=row["partner_id"],
            is_complete=bool(row["is_complete"]),
            no_receipt_needed=bool(row["no_receipt_needed"]),
            file_ids=file_ids or [],
            rejected_file_ids=_json_list(row["rejected_file_ids"]),
        )

    @property
    def needs_receipt(self) -> bool:
        return not (self.is_complete or self.no_receipt_needed)

    def summary(self) -> str:
        """One-line description used in query suggestion prompts."""
        parts = [
            f"{abs(self.amount):.2f} {self.currency}",
            self.date.isoformat(),
            self.name,
        ]
        if self.description:
            parts.append(self.description)
        if self.reference:
            parts.append(f"ref: {self.reference}")
        return " | ".join(p for p in parts if p)
