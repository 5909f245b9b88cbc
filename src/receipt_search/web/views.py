"""
JSON API views for precision search.
"""

import json
import logging
import sqlite3
from pathlib import Path

from django.conf import settings
from django.contrib.auth.decorators import login_required
from django.http import HttpRequest, JsonResponse
from django.views.decorators.http import require_http_methods

from ..config import load_config
from ..schemas import MailSyncEvent
from ..services import InvalidArgument, PrecisionSearchStatus, Services, build_services
from ..state_store import QueueItemCorrupted

logger = logging.getLogger(__name__)


def _get_services() -> Services:
    """Build the pipeline services for this request from Django settings."""
    config = load_config(Path(settings.RECEIPT_SEARCH_CONFIG))
    config.state_db_path = Path(getattr(settings, "STATE_DB_PATH", config.state_db_path))
    return build_services(config)


def _user_id(request: HttpRequest) -> str:
    return request.user.get_username()


def _read_json(request: HttpRequest) -> dict | None:
    try:
        data = json.loads(request.body or b"{}")
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    return data if isinstance(data, dict) else None


def _error(message: str, status: int) -> JsonResponse:
    return JsonResponse({"success": False, "error": message}, status=status)


@login_required
@require_http_methods(["POST"])
def api_trigger_precision_search(request: HttpRequest) -> JsonResponse:
    """
    Queue a precision search for the logged-in user.

    Body: {"scope": "all_incomplete" | "single_transaction", "transactionId": "..."}
    """
    body = _read_json(request)
    if body is None:
        return _error("Request body must be a JSON object", 400)

    services = None
    try:
        services = _get_services()
        queue_id = services.dispatcher.trigger(
            _user_id(request),
            body.get("scope"),
            body.get("transactionId"),
        )
    except InvalidArgument as e:
        return _error(str(e), 400)
    except sqlite3.Error as e:
        logger.exception("Could not queue precision search")
        return _error(f"Queue unavailable: {e}", 500)
    finally:
        if services is not None:
            services.close()

    return JsonResponse({"success": True, "queueId": queue_id})


@login_required
@require_http_methods(["GET"])
def api_precision_search_status(request: HttpRequest) -> JsonResponse:
    """Queue item summary (?queueId=) or transaction search history (?transactionId=)."""
    queue_id = request.GET.get("queueId")
    transaction_id = request.GET.get("transactionId")
    if not queue_id and not transaction_id:
        return _error("queueId or transactionId is required", 400)

    services = None
    try:
        services = _get_services()
        status = PrecisionSearchStatus(services.ops.for_user(_user_id(request)))
        if queue_id:
            summary = status.status(queue_id)
            if summary is None:
                return _error("Queue item not found", 404)
            return JsonResponse({"success": True, "queueItem": summary})

        history = status.transaction_history(transaction_id)
        if history is None:
            return _error("Transaction not found", 404)
        return JsonResponse({"success": True, "transaction": history})
    except QueueItemCorrupted as e:
        logger.error("Unreadable queue item: %s", e)
        return _error(str(e), 500)
    except sqlite3.Error as e:
        logger.exception("Could not read precision search status")
        return _error(f"Queue unavailable: {e}", 500)
    finally:
        if services is not None:
            services.close()


@login_required
@require_http_methods(["GET"])
def api_precision_search_stats(request: HttpRequest) -> JsonResponse:
    """Queue item counts per status for the logged-in user."""
    services = None
    try:
        services = _get_services()
        stats = PrecisionSearchStatus(services.ops.for_user(_user_id(request))).queue_stats()
    except sqlite3.Error as e:
        logger.exception("Could not read precision search stats")
        return _error(f"Queue unavailable: {e}", 500)
    finally:
        if services is not None:
            services.close()
    return JsonResponse({"success": True, "stats": stats})


@login_required
@require_http_methods(["POST"])
def api_mail_sync_event(request: HttpRequest) -> JsonResponse:
    """
    Report a mail-sync status transition for the logged-in user.

    Body: {"beforeStatus": "running", "afterStatus": "completed",
           "filesCreated": 3, "syncJobId": "..."}
    """
    body = _read_json(request)
    if body is None:
        return _error("Request body must be a JSON object", 400)

    after_status = body.get("afterStatus")
    if not after_status:
        return _error("afterStatus is required", 400)
    files_created = body.get("filesCreated", 0)
    if not isinstance(files_created, int) or isinstance(files_created, bool) or files_created < 0:
        return _error("filesCreated must be a non-negative integer", 400)

    event = MailSyncEvent(
        user_id=_user_id(request),
        before_status=body.get("beforeStatus"),
        after_status=after_status,
        files_created=files_created,
        sync_job_id=body.get("syncJobId"),
    )

    services = None
    try:
        services = _get_services()
        results = services.notifier.publish(event, raise_errors=True)
    except sqlite3.Error as e:
        logger.exception("Could not handle mail sync event")
        return _error(f"Queue unavailable: {e}", 500)
    finally:
        if services is not None:
            services.close()

    queued = next((r for r in results if r), None)
    return JsonResponse({"success": True, "queueId": queued})
