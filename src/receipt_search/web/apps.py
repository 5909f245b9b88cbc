"""
Django application configuration with optional in-process queue worker.

With EMBEDDED_WORKER enabled, a background thread polls the precision
search queue while the web server runs. Multi-host deployments run the
process_precision_queue management command instead.
"""

import logging
import os
import sys
import threading
from pathlib import Path

from django.apps import AppConfig

logger = logging.getLogger(__name__)

_worker_thread = None
_worker_shutdown = threading.Event()

# Management commands that must never start the worker
_SKIP_COMMANDS = (
    "migrate",
    "makemigrations",
    "collectstatic",
    "createsuperuser",
    "shell",
    "dbshell",
    "check",
    "test",
    "help",
    "process_precision_queue",
)


class WebConfig(AppConfig):
    """Django app configuration for the precision search API."""

    name = "receipt_search.web"
    label = "receipt_search_web"
    verbose_name = "Receipt Precision Search"
    default_auto_field = "django.db.models.BigAutoField"

    def ready(self):
        from django.conf import settings

        if not getattr(settings, "EMBEDDED_WORKER", False):
            return
        # RUN_MAIN is "true" in the auto-reload child; neither is set without reload
        run_main = os.environ.get("RUN_MAIN")
        autoreload = os.environ.get("DJANGO_AUTORELOAD")
        if run_main == "true" or (run_main is None and autoreload is None):
            start_embedded_worker()


def start_embedded_worker() -> bool:
    """Start the background worker thread. Returns False if not started."""
    global _worker_thread

    if _worker_thread is not None and _worker_thread.is_alive():
        return False
    if len(sys.argv) > 1 and sys.argv[1] in _SKIP_COMMANDS:
        logger.info("Skipping embedded worker for management command: %s", sys.argv[1])
        return False

    _worker_shutdown.clear()
    _worker_thread = threading.Thread(
        target=_worker_loop,
        name="precision-search-worker",
        daemon=True,
    )
    _worker_thread.start()
    logger.info("Started embedded precision search worker")
    return True


def _worker_loop():
    from django.conf import settings

    from ..config import load_config
    from ..services import PrecisionSearchWorker, build_services

    try:
        config = load_config(Path(settings.RECEIPT_SEARCH_CONFIG))
        config.state_db_path = Path(getattr(settings, "STATE_DB_PATH", config.state_db_path))
        services = build_services(config)
    except Exception:
        logger.exception("Embedded worker could not start")
        return

    try:
        PrecisionSearchWorker.from_services(services).run_forever(stop_event=_worker_shutdown)
    finally:
        services.close()


def stop_embedded_worker():
    """Signal the worker thread to stop and wait briefly for it."""
    _worker_shutdown.set()
    if _worker_thread is not None and _worker_thread.is_alive():
        _worker_thread.join(timeout=5)
