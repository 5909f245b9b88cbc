"""Test fixtures and utilities."""

from datetime import date
from decimal import Decimal

import pytest

from receipt_search.config import Config
from receipt_search.context import OperationsContext
from receipt_search.schemas import Partner
from receipt_search.state_store import StateStore

from .factories import USER, make_file, make_transaction


@pytest.fixture
def state_db(tmp_path):
    return tmp_path / "state.db"


@pytest.fixture
def store(state_db):
    return StateStore(state_db)


@pytest.fixture
def ops(store):
    return OperationsContext(store=store)


@pytest.fixture
def config(state_db):
    return Config(state_db_path=state_db)


@pytest.fixture
def acme():
    """Partner with an IBAN, VAT id and mail domain."""
    return Partner(
        id="p-acme",
        name="ACME Hosting GmbH",
        user_id=USER,
        aliases=["ACME"],
        ibans=["DE89 3704 0044 0532 0130 00"],
        vat_id="DE123456789",
        email_domains=["acme-hosting.de"],
        website="https://www.acme-hosting.de",
    )


@pytest.fixture
def sample_ledger(store, acme):
    """
    Three incomplete transactions for USER.

    tx-acme belongs to ACME and has a file carrying ACME's IBAN; the other
    two have nothing that could match.
    """
    store.upsert_partner(acme)
    store.upsert_transaction(
        make_transaction(
            "tx-acme",
            partner_id=acme.id,
            name="ACME HOSTING GMBH",
            description="Invoice INV-2024-0042",
        )
    )
    store.upsert_transaction(
        make_transaction(
            "tx-bakery",
            amount=Decimal("-4.20"),
            date=date(2024, 11, 18),
            name="Bakery",
        )
    )
    store.upsert_transaction(
        make_transaction(
            "tx-parking",
            amount=Decimal("-2.50"),
            date=date(2024, 11, 15),
            name="Parking",
        )
    )
    store.upsert_file(
        make_file(
            "f-acme",
            extracted_amount=Decimal("119.00"),
            extracted_date=date(2024, 11, 20),
            iban_hints=["DE89370400440532013000"],
            extracted_partner="ACME Hosting GmbH",
        )
    )
    return store
