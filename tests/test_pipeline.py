"""Tests for the precision search pipeline runner."""

from datetime import date
from decimal import Decimal

import pytest

from receipt_search.confidence import Candidate
from receipt_search.schemas import (
    AuthorType,
    ChangeAuthor,
    QueueStatus,
    ScopeEntryState,
    SearchAttempt,
    SearchScope,
    TriggerSource,
)
from receipt_search.services import PrecisionSearchDispatcher, PrecisionSearchRunner
from receipt_search.state_store import MatchWrite
from receipt_search.strategies import PartnerFilesStrategy, Strategy, StrategyRegistry

from .factories import OTHER_USER, USER, make_file, make_transaction


class BrokenStrategy(Strategy):
    @property
    def id(self):
        return "broken"

    def search(self, transaction, context, partner):
        raise RuntimeError("index unavailable")


class MalformedStrategy(Strategy):
    @property
    def id(self):
        return "malformed"

    def search(self, transaction, context, partner):
        return [Candidate(file=make_file("f-ghost"), signals=[])]


class LeaseThiefStrategy(Strategy):
    """Hands the item to another worker mid-run."""

    @property
    def id(self):
        return "thief"

    def search(self, transaction, context, partner):
        with context.ops.store._transaction() as conn:
            conn.execute("UPDATE precision_search_queue SET lease_owner = 'other-worker'")
        return []


@pytest.fixture
def dispatcher(ops, config):
    return PrecisionSearchDispatcher(ops, config)


@pytest.fixture
def runner(ops, config):
    return PrecisionSearchRunner(ops, config, worker_id="worker-1")


def enqueue(store, strategies, scope=SearchScope.ALL_INCOMPLETE, transaction_id=None):
    queue_id, created = store.enqueue_precision_search(
        user_id=USER,
        scope=scope,
        strategies=strategies,
        triggered_by=TriggerSource.MANUAL,
        author=ChangeAuthor(type=AuthorType.USER, user_id=USER),
        transaction_id=transaction_id,
    )
    assert created
    return queue_id


class TestPipelinePass:
    def test_partner_iban_match(self, sample_ledger, dispatcher, runner):
        queue_id = dispatcher.trigger(USER, "all_incomplete")

        result = runner.process(queue_id)

        assert result.claimed
        assert result.success
        assert result.transactions_processed == 3
        assert result.transactions_with_matches == 1
        assert result.total_files_connected == 1

        acme_tx = sample_ledger.get_transaction("tx-acme")
        assert acme_tx.is_complete
        assert acme_tx.file_ids == ["f-acme"]
        [link] = sample_ledger.get_file_links("tx-acme")
        assert link["matched_by"] == "automation"
        assert link["strategy_id"] == "partner_files"
        assert link["confidence"] == 1.0
        assert link["queue_id"] == queue_id

        assert not sample_ledger.get_transaction("tx-bakery").is_complete
        assert not sample_ledger.get_transaction("tx-parking").is_complete

    def test_terminal_item_shape(self, sample_ledger, dispatcher, runner, config):
        queue_id = dispatcher.trigger(USER, "all_incomplete")
        runner.process(queue_id)

        item = sample_ledger.get_queue_item(queue_id)
        assert item.status == QueueStatus.COMPLETED
        assert item.transactions_processed == item.transactions_to_process
        assert item.transactions_with_matches <= item.transactions_processed
        assert item.current_strategy_index == len(config.search.strategies)
        assert item.completed_at is not None
        assert item.lease_owner is None
        assert item.summary()["progress"] == 100

    def test_resolved_transaction_skips_later_strategies(self, sample_ledger, dispatcher, runner):
        runner.process(dispatcher.trigger(USER, "all_incomplete"))

        acme_searches = sample_ledger.get_transaction_searches("tx-acme")
        assert [s.strategy_id for s in acme_searches] == ["partner_files"]
        assert acme_searches[0].connected_file_id == "f-acme"

        bakery_searches = sample_ledger.get_transaction_searches("tx-bakery")
        assert [s.strategy_id for s in bakery_searches] == [
            "partner_files",
            "amount_files",
            "email_attachment",
            "email_invoice",
        ]
        states = {
            e.transaction_id: e.state for e in sample_ledger.get_scope_entries(acme_searches[0].queue_id)
        }
        assert states == {
            "tx-acme": ScopeEntryState.RESOLVED,
            "tx-bakery": ScopeEntryState.EXHAUSTED,
            "tx-parking": ScopeEntryState.EXHAUSTED,
        }

    def test_amount_match_above_default_threshold(self, sample_ledger, dispatcher, runner):
        sample_ledger.upsert_file(
            make_file("f-bread", extracted_amount=Decimal("4.20"), extracted_date=date(2024, 11, 18))
        )

        result = runner.process(dispatcher.trigger(USER, "all_incomplete"))

        assert result.transactions_with_matches == 2
        assert result.total_files_connected == 2
        [link] = sample_ledger.get_file_links("tx-bakery")
        assert link["strategy_id"] == "amount_files"
        assert link["confidence"] == 0.9

    def test_candidate_below_threshold_is_not_attached(
        self, sample_ledger, dispatcher, ops, config
    ):
        config.search.acceptance_threshold = 0.95
        runner = PrecisionSearchRunner(ops, config, worker_id="worker-1")
        sample_ledger.upsert_file(
            make_file("f-bread", extracted_amount=Decimal("4.20"), extracted_date=date(2024, 11, 18))
        )

        result = runner.process(dispatcher.trigger(USER, "all_incomplete"))

        assert result.transactions_with_matches == 1
        assert sample_ledger.get_file_links("tx-bakery") == []
        amount_search = [
            s
            for s in sample_ledger.get_transaction_searches("tx-bakery")
            if s.strategy_id == "amount_files"
        ][0]
        assert amount_search.candidates_found == 1
        assert amount_search.candidates_accepted == 0
        assert amount_search.best_confidence == 0.9

    def test_empty_scope_completes(self, store, dispatcher, runner):
        queue_id = dispatcher.trigger(USER, "all_incomplete")

        result = runner.process(queue_id)

        assert result.success
        assert result.transactions_processed == 0
        assert store.get_queue_item(queue_id).summary()["progress"] == 100

    def test_transaction_completed_elsewhere(self, sample_ledger, dispatcher, runner):
        queue_id = dispatcher.trigger(USER, "all_incomplete")
        sample_ledger.upsert_transaction(
            make_transaction(
                "tx-parking",
                amount=Decimal("-2.50"),
                date=date(2024, 11, 15),
                no_receipt_needed=True,
            )
        )

        result = runner.process(queue_id)

        assert result.transactions_processed == 3
        assert result.transactions_with_matches == 1
        assert sample_ledger.get_transaction_searches("tx-parking") == []
        states = {e.transaction_id: e.state for e in sample_ledger.get_scope_entries(queue_id)}
        assert states["tx-parking"] == ScopeEntryState.RESOLVED


class TestFailures:
    def test_missing_single_transaction_fails_item(self, sample_ledger, dispatcher, runner):
        queue_id = dispatcher.trigger(USER, "single_transaction", "tx-missing")

        result = runner.process(queue_id)

        assert result.claimed
        assert result.status == QueueStatus.FAILED
        assert not result.success
        item = sample_ledger.get_queue_item(queue_id)
        assert item.retry_count == 1
        assert item.last_error.startswith("ScopeUnavailableError")
        assert item.lease_owner is None

    def test_other_users_transaction_is_not_visible(self, sample_ledger, dispatcher, runner):
        sample_ledger.upsert_transaction(make_transaction("tx-theirs", user_id=OTHER_USER))

        result = runner.process(dispatcher.trigger(USER, "single_transaction", "tx-theirs"))

        assert result.status == QueueStatus.FAILED
        assert not sample_ledger.get_transaction("tx-theirs").is_complete

    def test_unknown_strategy_fails_item(self, sample_ledger, runner):
        queue_id = enqueue(sample_ledger, ["does_not_exist"])

        result = runner.process(queue_id)

        assert result.status == QueueStatus.FAILED
        assert "UnknownStrategyError" in result.last_error

    def test_strategy_error_is_not_fatal(self, sample_ledger, ops, config):
        registry = StrategyRegistry([BrokenStrategy(), PartnerFilesStrategy()])
        runner = PrecisionSearchRunner(ops, config, registry=registry, worker_id="worker-1")
        queue_id = enqueue(sample_ledger, ["broken", "partner_files"])

        result = runner.process(queue_id)

        assert result.success
        assert result.transactions_with_matches == 1
        assert len(result.errors) == 3
        assert {e.strategy_id for e in result.errors} == {"broken"}
        assert result.errors[0].message == "RuntimeError: index unavailable"

    def test_malformed_candidates_are_recorded(self, sample_ledger, ops, config):
        registry = StrategyRegistry([MalformedStrategy()])
        runner = PrecisionSearchRunner(ops, config, registry=registry, worker_id="worker-1")
        queue_id = enqueue(
            sample_ledger, ["malformed"], SearchScope.SINGLE_TRANSACTION, "tx-bakery"
        )

        result = runner.process(queue_id)

        assert result.success
        assert result.transactions_with_matches == 0
        assert [e.message for e in result.errors] == ["Malformed candidate"]

    def test_lost_lease_stops_without_failing(self, sample_ledger, ops, config):
        runner = PrecisionSearchRunner(
            ops, config, registry=StrategyRegistry([LeaseThiefStrategy()]), worker_id="worker-1"
        )
        queue_id = enqueue(sample_ledger, ["thief"])

        result = runner.process(queue_id)

        assert result.claimed
        assert result.status == QueueStatus.PROCESSING
        item = sample_ledger.get_queue_item(queue_id)
        assert item.lease_owner == "other-worker"
        assert item.retry_count == 0
        assert item.transactions_processed == 0


class TestClaiming:
    def test_unknown_queue_id(self, runner):
        result = runner.process("no-such-item")

        assert not result.claimed
        assert result.status is None

    def test_item_held_by_another_worker(self, sample_ledger, dispatcher, runner):
        queue_id = dispatcher.trigger(USER, "all_incomplete")
        assert sample_ledger.claim_queue_item(queue_id, "worker-2", 600)

        result = runner.process(queue_id)

        assert not result.claimed
        assert sample_ledger.get_queue_item(queue_id).lease_owner == "worker-2"

    def test_expired_lease_resumes_without_double_counting(
        self, sample_ledger, dispatcher, runner
    ):
        queue_id = dispatcher.trigger(USER, "all_incomplete")
        # A worker that matched tx-acme and then died; its lease is already expired
        assert sample_ledger.claim_queue_item(queue_id, "crashed", -1)
        sample_ledger.record_strategy_attempt(
            queue_id,
            "crashed",
            -1,
            "tx-acme",
            0,
            SearchAttempt(queue_id, "tx-acme", "partner_files", candidates_found=1),
            match=MatchWrite(file_id="f-acme", strategy_id="partner_files", confidence=1.0),
        )

        result = runner.process(queue_id)

        assert result.claimed
        assert result.success
        assert result.transactions_processed == 3
        assert result.transactions_with_matches == 1
        assert result.total_files_connected == 1
        assert len(sample_ledger.get_transaction_searches("tx-acme")) == 1
        assert len(sample_ledger.get_file_links("tx-acme")) == 1
