"""
Process Precision Search Queue management command.

Claims and runs pending precision searches. Can be run as a one-shot
command or in daemon mode.

Usage:
    # Process one batch
    python manage.py process_precision_queue

    # Run in daemon mode (continuous processing)
    python manage.py process_precision_queue --daemon

    # Custom batch size and polling interval (seconds)
    python manage.py process_precision_queue --daemon --interval 15 --batch-size 10
"""

import logging
import signal
import threading
from pathlib import Path

from django.conf import settings
from django.core.management.base import BaseCommand, CommandError

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    """Run queued precision searches."""

    help = "Process pending precision searches from the queue"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._shutdown = threading.Event()

    def add_arguments(self, parser):
        """Add command arguments."""
        parser.add_argument(
            "--daemon",
            action="store_true",
            help="Run in daemon mode (continuous processing)",
        )
        parser.add_argument(
            "--interval",
            type=int,
            default=None,
            help="Polling interval in seconds (overrides config)",
        )
        parser.add_argument(
            "--batch-size",
            type=int,
            default=None,
            help="Number of queue items per round (overrides config)",
        )
        parser.add_argument(
            "--config",
            type=str,
            default=None,
            help="Path to config file",
        )

    def handle(self, *args, **options):
        """Execute the command."""
        from receipt_search.config import load_config
        from receipt_search.services import PrecisionSearchWorker, build_services

        # Setup signal handlers for graceful shutdown
        signal.signal(signal.SIGTERM, self._signal_handler)
        signal.signal(signal.SIGINT, self._signal_handler)

        config_path = options.get("config") or settings.RECEIPT_SEARCH_CONFIG
        try:
            config = load_config(Path(config_path))
            if not options.get("config"):
                config.state_db_path = Path(
                    getattr(settings, "STATE_DB_PATH", config.state_db_path)
                )
            errors = config.validate()
            if errors:
                raise CommandError("Invalid config: " + "; ".join(errors))
            services = build_services(config)
        except CommandError:
            raise
        except Exception as e:
            raise CommandError(f"Failed to initialize: {e}") from e

        interval = options["interval"] or config.worker.poll_interval_seconds
        batch_size = options["batch_size"] or config.worker.batch_size
        daemon_mode = options["daemon"]

        self.stdout.write(
            self.style.SUCCESS(
                f"Precision Search Worker Started\n"
                f"  Mode: {'Daemon' if daemon_mode else 'One-shot'}\n"
                f"  Interval: {interval} seconds\n"
                f"  Batch size: {batch_size}\n"
                f"  State DB: {config.state_db_path}"
            )
        )

        worker = PrecisionSearchWorker.from_services(services)
        try:
            if daemon_mode:
                worker.run_forever(
                    interval=interval, batch_size=batch_size, stop_event=self._shutdown
                )
                self.stdout.write(self.style.SUCCESS("Daemon shutdown complete"))
            else:
                self._report(worker.run_once(batch_size))
        finally:
            services.close()

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals."""
        self._shutdown.set()
        self.stdout.write(self.style.WARNING("\nShutdown requested, finishing current batch..."))

    def _report(self, results) -> None:
        if not results:
            self.stdout.write("No precision searches to process")
            return

        for result in results:
            status = result.status.value if result.status else "unknown"
            line = (
                f"  {result.queue_id}: {status}, "
                f"{result.transactions_with_matches}/{result.transactions_processed} matched"
            )
            if result.success:
                self.stdout.write(self.style.SUCCESS(line))
            else:
                self.stdout.write(self.style.ERROR(f"{line} ({result.last_error})"))

        self.stdout.write(f"Processed {len(results)} search(es)")
