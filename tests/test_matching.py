"""Tests for the matching engine."""

from datetime import date
from decimal import Decimal

import pytest

from receipt_search.config import SearchConfig
from receipt_search.matching import (
    MatchingEngine,
    domain_matches,
    name_tokens,
    reference_tokens,
)
from receipt_search.schemas import FileSource

from .factories import make_file, make_transaction


@pytest.fixture
def engine():
    return MatchingEngine(SearchConfig())


class TestHelpers:
    def test_domain_matches_subdomains(self):
        assert domain_matches("billing.acme.de", ["acme.de"]) == "acme.de"
        assert domain_matches("noreply@acme.de", ["https://www.acme.de/"]) == "acme.de"
        assert domain_matches("notacme.de", ["acme.de"]) is None
        assert domain_matches(None, ["acme.de"]) is None

    def test_name_tokens_drop_legal_forms(self):
        assert name_tokens(["ACME Hosting GmbH"]) == {"acme", "hosting"}

    def test_reference_tokens_need_a_digit(self):
        tokens = reference_tokens("Invoice INV-2024-0042", "order 88123 for shop")
        assert tokens == {"inv-2024-0042", "88123"}


class TestMatchingEngine:
    """Tests for evidence scoring of one transaction/file pair."""

    def test_exact_amount_and_date(self, engine):
        result = engine.evaluate(
            make_transaction("tx-1"),
            make_file("f-1", extracted_amount=Decimal("119.00"), extracted_date=date(2024, 11, 20)),
        )

        assert result.score_of("amount") == 1.0
        assert result.score_of("date") == 1.0
        assert result.amount_date_strength == 1.0
        assert not result.amount_conflict

    @pytest.mark.parametrize(
        "extracted,expected",
        [
            ("119.50", 0.95),
            ("114.00", 0.7),
            ("108.00", 0.4),
            ("97.00", 0.2),
            ("40.00", 0.0),
        ],
    )
    def test_amount_tiers(self, engine, extracted, expected):
        result = engine.evaluate(
            make_transaction("tx-1"), make_file("f-1", extracted_amount=Decimal(extracted))
        )

        assert result.score_of("amount") == expected

    def test_date_decays_inside_tolerance(self, engine):
        near = engine.evaluate(
            make_transaction("tx-1"), make_file("f-1", extracted_date=date(2024, 11, 22))
        )
        far = engine.evaluate(
            make_transaction("tx-1"), make_file("f-1", extracted_date=date(2024, 11, 27))
        )
        outside = engine.evaluate(
            make_transaction("tx-1"), make_file("f-1", extracted_date=date(2025, 2, 1))
        )

        assert 1.0 > near.score_of("date") > far.score_of("date") >= 0.3
        assert outside.score_of("date") == 0.0

    def test_iban_and_vat_identity(self, engine, acme):
        result = engine.evaluate(
            make_transaction("tx-1", partner_id=acme.id),
            make_file(
                "f-1",
                iban_hints=["de89 3704 0044 0532 0130 00"],
                vat_hint="DE 123.456.789",
            ),
            acme,
        )

        assert result.iban_match
        assert result.vat_match
        assert result.corroboration == 1.0

    def test_far_off_amount_weakens_identity(self, engine, acme):
        result = engine.evaluate(
            make_transaction("tx-1", partner_id=acme.id),
            make_file(
                "f-1",
                iban_hints=["DE89370400440532013000"],
                extracted_amount=Decimal("12.00"),
            ),
            acme,
        )

        assert result.iban_match
        assert result.amount_conflict
        assert result.corroboration == 0.4

    def test_reference_found_in_mail_subject(self, engine):
        result = engine.evaluate(
            make_transaction("tx-1", description="Invoice INV-2024-0042"),
            make_file(
                "f-1",
                source_type=FileSource.EMAIL_ATTACHMENT,
                email_subject="Your invoice INV-2024-0042",
            ),
        )

        assert result.score_of("reference") == 1.0
        assert "reference (reference inv-2024-0042)" in result.reasons

    def test_vendor_by_partner_reference(self, engine, acme):
        result = engine.evaluate(
            make_transaction("tx-1", partner_id=acme.id),
            make_file("f-1", partner_id=acme.id),
            acme,
        )

        assert result.score_of("vendor") == 1.0

    def test_total_is_weighted_sum(self, engine):
        result = engine.evaluate(
            make_transaction("tx-1"),
            make_file("f-1", extracted_amount=Decimal("119.00"), extracted_date=date(2024, 11, 20)),
        )

        expected = round(sum(s.score * s.weight for s in result.signals), 4)
        assert result.total_score == expected
        assert result.to_dict()["total_score"] == expected
