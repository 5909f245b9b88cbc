"""
Deterministic search query generation.

Used when the LLM is disabled. Queries are ordered by how specific they are:
1. Invoice / order numbers from the booking text
2. Partner names and aliases, or the cleaned transaction name
3. Known sender domains as "from:domain"
4. VAT id and IBAN
5. Remaining cleaned booking text
"""

import re

from ..matching import reference_tokens
from ..schemas import Partner, ReceiptFile, Transaction, normalize_domain

# Booking-text noise added by banks and payment processors
_NOISE_WORDS = {
    "sepa", "lastschrift", "gutschrift", "ueberweisung", "überweisung", "kartenzahlung",
    "debit", "credit", "card", "payment", "purchase", "pos", "ecom", "mandat", "mandate",
    "ref", "end-to-end-ref", "paypal", "europe", "sarl", "gmbh", "ltd", "inc", "www", "com",
}
_DATE_LIKE = re.compile(r"\b\d{1,4}[./-]\d{1,2}[./-]\d{1,4}\b")
_NON_WORD = re.compile(r"[^a-z0-9äöüß&.\- ]+")


def clean_text(text: str | None) -> str:
    """Strip dates, long numbers and payment noise from booking text."""
    if not text:
        return ""
    text = _DATE_LIKE.sub(" ", text.lower())
    text = _NON_WORD.sub(" ", text)
    words = [
        w.strip(".-")
        for w in text.split()
        if w.strip(".-") and w.strip(".-") not in _NOISE_WORDS and not w.strip(".-").isdigit()
    ]
    return " ".join(w for w in words if len(w) > 1)


def generate_search_queries(
    transaction: Transaction,
    partner: Partner | None = None,
    max_queries: int = 3,
) -> list[str]:
    """Build ranked search queries for a transaction without an LLM."""
    queries: list[str] = []

    def add(query: str) -> None:
        query = query.strip()
        if query and query.lower() not in (q.lower() for q in queries):
            queries.append(query)

    for token in sorted(reference_tokens(transaction.reference, transaction.description)):
        add(token)

    if partner is not None:
        for name in partner.names():
            add(clean_text(name) or name)
    else:
        add(clean_text(transaction.name))

    if partner is not None:
        for domain in partner.domains():
            add(f"from:{domain}")
        if partner.vat_id:
            add(partner.vat_id)
        for iban in partner.ibans:
            add(iban)

    add(clean_text(transaction.description))

    return queries[:max_queries]


def matches_query(query: str, receipt: ReceiptFile) -> bool:
    """
    Check a mail-derived file against one query.

    Supports "from:domain" and "subject:text" operators; plain queries
    require every term to appear in the file's searchable text.
    """
    query = query.strip().lower()
    if not query:
        return False

    if query.startswith("from:"):
        wanted = normalize_domain(query[5:])
        sender = normalize_domain(receipt.sender_domain)
        return bool(wanted) and (sender == wanted or sender.endswith("." + wanted))

    if query.startswith("subject:"):
        wanted = query[8:].strip().strip('"')
        return bool(wanted) and wanted in (receipt.email_subject or "").lower()

    haystack = receipt.searchable_text()
    phrase = query.strip('"')
    if query.startswith('"') and query.endswith('"'):
        return phrase in haystack
    return all(term in haystack for term in phrase.split())
