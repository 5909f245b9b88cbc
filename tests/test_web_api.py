"""
Tests for the precision search JSON API.

Views are called directly through RequestFactory with a stand-in user;
the pipeline services are built on the test database.
"""

import json
import os
import sqlite3
from unittest.mock import MagicMock

import pytest

# Set Django settings before importing Django components
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "receipt_search.web.settings")

import django
from django.conf import settings

from receipt_search.schemas import QueueStatus
from receipt_search.services import PrecisionSearchRunner, build_services

from .factories import OTHER_USER, USER, make_transaction


@pytest.fixture(scope="module")
def django_setup():
    """Configure Django for testing."""
    if not settings.configured:
        settings.configure(
            DEBUG=True,
            SECRET_KEY="test-secret-key",
            ALLOWED_HOSTS=["testserver"],
            DATABASES={},
            INSTALLED_APPS=[
                "django.contrib.admin",
                "django.contrib.auth",
                "django.contrib.contenttypes",
                "django.contrib.sessions",
                "django.contrib.messages",
            ],
            ROOT_URLCONF="receipt_search.web.urls",
            TEMPLATES=[
                {
                    "BACKEND": "django.template.backends.django.DjangoTemplates",
                    "APP_DIRS": True,
                }
            ],
        )
    django.setup()


@pytest.fixture
def views(django_setup, config, store, monkeypatch):
    from receipt_search.web import views

    monkeypatch.setattr(views, "_get_services", lambda: build_services(config, store=store))
    return views


@pytest.fixture
def rf(django_setup):
    from django.test import RequestFactory, override_settings

    # Settings may already be loaded from DJANGO_SETTINGS_MODULE, skipping configure()
    with override_settings(ALLOWED_HOSTS=["testserver"]):
        yield RequestFactory()


def as_user(request, user_id=USER):
    user = MagicMock()
    user.is_authenticated = True
    user.get_username.return_value = user_id
    request.user = user
    return request


def post_json(rf, path, body, user_id=USER):
    data = body if isinstance(body, str) else json.dumps(body)
    return as_user(rf.post(path, data=data, content_type="application/json"), user_id)


def payload(response):
    return json.loads(response.content)


class TestTriggerEndpoint:
    path = "/api/precision-search/trigger"

    def test_queues_search(self, views, rf, sample_ledger):
        response = views.api_trigger_precision_search(
            post_json(rf, self.path, {"scope": "all_incomplete"})
        )

        assert response.status_code == 200
        data = payload(response)
        assert data["success"] is True
        item = sample_ledger.get_queue_item(data["queueId"])
        assert item.user_id == USER
        assert item.status == QueueStatus.PENDING

    def test_repeat_trigger_returns_same_item(self, views, rf, sample_ledger):
        first = payload(
            views.api_trigger_precision_search(post_json(rf, self.path, {"scope": "all_incomplete"}))
        )
        second = payload(
            views.api_trigger_precision_search(
                post_json(rf, self.path, {"scope": "single_transaction", "transactionId": "tx-acme"})
            )
        )

        assert first["queueId"] == second["queueId"]
        assert len(sample_ledger.list_queue_items(user_id=USER)) == 1

    def test_single_transaction_without_id(self, views, rf, sample_ledger):
        response = views.api_trigger_precision_search(
            post_json(rf, self.path, {"scope": "single_transaction"})
        )

        assert response.status_code == 400
        assert payload(response)["success"] is False
        assert sample_ledger.list_queue_items() == []

    @pytest.mark.parametrize("body", [{}, {"scope": "everything"}, "not json", "[1, 2]"])
    def test_bad_requests(self, views, rf, sample_ledger, body):
        response = views.api_trigger_precision_search(post_json(rf, self.path, body))

        assert response.status_code == 400
        assert sample_ledger.list_queue_items() == []

    def test_get_not_allowed(self, views, rf):
        response = views.api_trigger_precision_search(as_user(rf.get(self.path)))

        assert response.status_code == 405

    def test_anonymous_is_redirected_to_login(self, views, rf):
        from django.contrib.auth.models import AnonymousUser

        request = rf.post(self.path, data="{}", content_type="application/json")
        request.user = AnonymousUser()

        response = views.api_trigger_precision_search(request)

        assert response.status_code == 302

    def test_store_failure(self, views, rf, config, store, monkeypatch):
        services = build_services(config, store=store)

        def broken_trigger(*args, **kwargs):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(services.dispatcher, "trigger", broken_trigger)
        monkeypatch.setattr(views, "_get_services", lambda: services)

        response = views.api_trigger_precision_search(
            post_json(rf, self.path, {"scope": "all_incomplete"})
        )

        assert response.status_code == 500
        assert payload(response)["success"] is False


class TestStatusEndpoint:
    path = "/api/precision-search/status"

    def test_queue_item_summary(self, views, rf, sample_ledger, ops, config):
        queue_id = payload(
            views.api_trigger_precision_search(
                post_json(rf, "/api/precision-search/trigger", {"scope": "all_incomplete"})
            )
        )["queueId"]

        response = views.api_precision_search_status(
            as_user(rf.get(self.path, {"queueId": queue_id}))
        )
        item = payload(response)["queueItem"]
        assert item["status"] == "pending"
        assert item["progress"] == 0
        assert item["currentStrategy"] == "partner_files"

        PrecisionSearchRunner(ops, config, worker_id="worker-1").process(queue_id)

        item = payload(
            views.api_precision_search_status(as_user(rf.get(self.path, {"queueId": queue_id})))
        )["queueItem"]
        assert item["status"] == "completed"
        assert item["progress"] == 100
        assert item["currentStrategy"] is None
        assert item["transactionsWithMatches"] == 1

    def test_transaction_history(self, views, rf, sample_ledger, ops, config):
        queue_id = payload(
            views.api_trigger_precision_search(
                post_json(rf, "/api/precision-search/trigger", {"scope": "all_incomplete"})
            )
        )["queueId"]
        PrecisionSearchRunner(ops, config, worker_id="worker-1").process(queue_id)

        response = views.api_precision_search_status(
            as_user(rf.get(self.path, {"transactionId": "tx-acme"}))
        )

        history = payload(response)["transaction"]
        assert history["isComplete"] is True
        assert history["fileIds"] == ["f-acme"]
        assert [s["strategy"] for s in history["searches"]] == ["partner_files"]

    def test_other_users_item_is_hidden(self, views, rf, store):
        store.upsert_transaction(make_transaction("tx-other", user_id=OTHER_USER))
        queue_id = payload(
            views.api_trigger_precision_search(
                post_json(
                    rf, "/api/precision-search/trigger", {"scope": "all_incomplete"}, OTHER_USER
                )
            )
        )["queueId"]

        response = views.api_precision_search_status(
            as_user(rf.get(self.path, {"queueId": queue_id}))
        )

        assert response.status_code == 404

    def test_missing_parameters(self, views, rf):
        response = views.api_precision_search_status(as_user(rf.get(self.path)))

        assert response.status_code == 400

    def test_stats(self, views, rf, sample_ledger):
        views.api_trigger_precision_search(
            post_json(rf, "/api/precision-search/trigger", {"scope": "all_incomplete"})
        )

        response = views.api_precision_search_stats(
            as_user(rf.get("/api/precision-search/stats"))
        )

        stats = payload(response)["stats"]
        assert stats["pending"] == 1
        assert stats["total"] == 1

    def test_stats_store_failure(self, views, rf, store, monkeypatch):
        def broken_stats(*args, **kwargs):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(store, "get_queue_stats", broken_stats)

        response = views.api_precision_search_stats(
            as_user(rf.get("/api/precision-search/stats"))
        )

        assert response.status_code == 500
        assert payload(response)["success"] is False

    def test_stats_store_unavailable(self, views, rf, monkeypatch):
        def no_store():
            raise sqlite3.OperationalError("unable to open database file")

        monkeypatch.setattr(views, "_get_services", no_store)

        response = views.api_precision_search_stats(
            as_user(rf.get("/api/precision-search/stats"))
        )

        assert response.status_code == 500
        assert "unable to open database file" in payload(response)["error"]


class TestMailSyncEventEndpoint:
    path = "/api/mail-sync/events"

    def test_completion_with_files_queues_search(self, views, rf, sample_ledger):
        response = views.api_mail_sync_event(
            post_json(
                rf,
                self.path,
                {
                    "beforeStatus": "running",
                    "afterStatus": "completed",
                    "filesCreated": 2,
                    "syncJobId": "sync-9",
                },
            )
        )

        queue_id = payload(response)["queueId"]
        item = sample_ledger.get_queue_item(queue_id)
        assert item.triggered_by.value == "mail_sync"
        assert item.mail_sync_job_id == "sync-9"

    def test_no_files_created(self, views, rf, sample_ledger):
        response = views.api_mail_sync_event(
            post_json(
                rf,
                self.path,
                {"beforeStatus": "running", "afterStatus": "completed", "filesCreated": 0},
            )
        )

        assert response.status_code == 200
        assert payload(response)["queueId"] is None
        assert sample_ledger.list_queue_items() == []

    @pytest.mark.parametrize(
        "body",
        [
            {"filesCreated": 2},
            {"afterStatus": "completed", "filesCreated": -1},
            {"afterStatus": "completed", "filesCreated": "2"},
        ],
    )
    def test_invalid_events(self, views, rf, sample_ledger, body):
        response = views.api_mail_sync_event(post_json(rf, self.path, body))

        assert response.status_code == 400
        assert sample_ledger.list_queue_items() == []

    def test_store_failure_is_reported(self, views, rf, sample_ledger, monkeypatch):
        def broken_lookup(*args, **kwargs):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(sample_ledger, "find_in_flight_item", broken_lookup)

        response = views.api_mail_sync_event(
            post_json(
                rf,
                self.path,
                {"beforeStatus": "running", "afterStatus": "completed", "filesCreated": 2},
            )
        )

        assert response.status_code == 500
        assert payload(response)["success"] is False
