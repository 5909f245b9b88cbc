"""
CLI main entry point.
"""

import argparse
import json
import logging
import signal
import sys
import threading
from pathlib import Path

from ..config import Config, create_default_config, load_config
from ..schemas import MailSyncEvent
from ..services import (
    InvalidArgument,
    PrecisionSearchStatus,
    PrecisionSearchWorker,
    build_services,
)

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def create_cli() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="receipt-search",
        description="Find and attach missing receipts for transactions",
    )

    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=Path("config.yaml"),
        help="Path to config file (default: config.yaml)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # init-config command
    init_parser = subparsers.add_parser("init-config", help="Write a default config file")
    init_parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite an existing config file",
    )

    # trigger command
    trigger_parser = subparsers.add_parser("trigger", help="Queue a precision search")
    trigger_parser.add_argument("--user", required=True, help="User id")
    trigger_parser.add_argument(
        "--scope",
        type=str,
        default="all_incomplete",
        help="all_incomplete or single_transaction (default: all_incomplete)",
    )
    trigger_parser.add_argument(
        "--transaction-id",
        type=str,
        help="Transaction id (required for single_transaction)",
    )

    # work command
    work_parser = subparsers.add_parser("work", help="Process queued precision searches")
    work_parser.add_argument(
        "--daemon",
        action="store_true",
        help="Keep polling until interrupted",
    )
    work_parser.add_argument(
        "--interval",
        type=int,
        default=None,
        help="Polling interval in seconds (overrides config)",
    )
    work_parser.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help="Queue items per polling round (overrides config)",
    )

    # status command
    status_parser = subparsers.add_parser("status", help="Show precision search status")
    status_group = status_parser.add_mutually_exclusive_group()
    status_group.add_argument("--queue-id", type=str, help="Show one queue item")
    status_group.add_argument(
        "--transaction-id", type=str, help="Show the search history of a transaction"
    )
    status_parser.add_argument("--user", type=str, help="Restrict to one user")

    # retry-failed command
    retry_parser = subparsers.add_parser("retry-failed", help="Re-queue failed searches")
    retry_parser.add_argument(
        "--queue-id",
        type=str,
        help="Retry this item now, ignoring the backoff",
    )

    # recover-stale command
    subparsers.add_parser("recover-stale", help="List searches whose lease expired")

    # mail-sync-completed command
    mail_parser = subparsers.add_parser(
        "mail-sync-completed", help="Report a finished mail sync for a user"
    )
    mail_parser.add_argument("--user", required=True, help="User id")
    mail_parser.add_argument(
        "--files-created",
        type=int,
        required=True,
        help="Number of files the sync created",
    )
    mail_parser.add_argument("--sync-job-id", type=str, help="Mail sync job id")
    mail_parser.add_argument(
        "--before-status",
        type=str,
        default="running",
        help="Sync job status before completion (default: running)",
    )

    # serve command
    serve_parser = subparsers.add_parser("serve", help="Run the JSON API")
    serve_parser.add_argument(
        "--host",
        type=str,
        default="127.0.0.1",
        help="Host to bind the web server (default: 127.0.0.1)",
    )
    serve_parser.add_argument(
        "--port",
        type=int,
        default=8080,
        help="Port for the web server (default: 8080)",
    )

    return parser


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def cmd_init_config(config_path: Path, force: bool = False) -> int:
    """Write a default config file."""
    if config_path.exists() and not force:
        print(f"❌ {config_path} already exists (use --force to overwrite)")
        return 1
    create_default_config(config_path)
    print(f"✓ Wrote default config to {config_path}")
    return 0


def cmd_trigger(config: Config, user_id: str, scope: str, transaction_id: str | None) -> int:
    """Queue a precision search."""
    services = build_services(config)
    try:
        queue_id = services.dispatcher.trigger(user_id, scope, transaction_id)
    except InvalidArgument as e:
        print(f"❌ {e}")
        return 1
    finally:
        services.close()

    print(f"✓ Precision search queued: {queue_id}")
    return 0


def cmd_work(
    config: Config,
    daemon: bool = False,
    interval: int | None = None,
    batch_size: int | None = None,
) -> int:
    """Process queued precision searches."""
    services = build_services(config)
    worker = PrecisionSearchWorker.from_services(services)

    try:
        if daemon:
            stop_event = threading.Event()

            def _stop(signum, frame):
                logger.info("Shutdown requested, finishing current batch...")
                stop_event.set()

            signal.signal(signal.SIGTERM, _stop)
            signal.signal(signal.SIGINT, _stop)
            worker.run_forever(interval=interval, batch_size=batch_size, stop_event=stop_event)
            return 0

        results = worker.run_once(batch_size)
    finally:
        services.close()

    if not results:
        print("No precision searches to process")
        return 0

    failed = 0
    for result in results:
        status = result.status.value if result.status else "unknown"
        print(
            f"  {result.queue_id}: {status} "
            f"({result.transactions_with_matches}/{result.transactions_processed} matched, "
            f"{result.total_files_connected} files)"
        )
        if not result.success:
            failed += 1
            if result.last_error:
                print(f"    error: {result.last_error}")

    print(f"\nProcessed {len(results)} search(es), {failed} failed")
    return 1 if failed else 0


def cmd_status(
    config: Config,
    queue_id: str | None = None,
    transaction_id: str | None = None,
    user_id: str | None = None,
) -> int:
    """Show queue item, transaction history or queue counts."""
    services = build_services(config)
    try:
        status = services.status
        if user_id:
            status = PrecisionSearchStatus(services.ops.for_user(user_id))

        if queue_id:
            summary = status.status(queue_id)
            if summary is None:
                print(f"❌ Queue item {queue_id} not found")
                return 1
            _print_json(summary)
            return 0

        if transaction_id:
            history = status.transaction_history(transaction_id)
            if history is None:
                print(f"❌ Transaction {transaction_id} not found")
                return 1
            _print_json(history)
            return 0

        stats = status.queue_stats()
    finally:
        services.close()

    print("\n📊 Precision Search Queue")
    print("=" * 40)
    print(f"  Pending:       {stats['pending']}")
    print(f"  Processing:    {stats['processing']}")
    print(f"  Completed:     {stats['completed']}")
    print(f"  Failed:        {stats['failed']}")
    print(f"  Total:         {stats['total']}")
    print()
    return 0


def cmd_retry_failed(config: Config, queue_id: str | None = None) -> int:
    """Re-queue failed searches (due ones, or one item immediately)."""
    services = build_services(config)
    try:
        if queue_id:
            try:
                new_id = services.retry_policy.retry_now(queue_id)
            except InvalidArgument as e:
                print(f"❌ {e}")
                return 1
            print(f"✓ Retry queued: {new_id}")
            return 0

        created = services.retry_policy.requeue_failed()
    finally:
        services.close()

    if not created:
        print("No failed searches due for retry")
    for new_id in created:
        print(f"✓ Retry queued: {new_id}")
    return 0


def cmd_recover_stale(config: Config) -> int:
    """List processing searches whose lease expired."""
    services = build_services(config)
    try:
        stale = services.retry_policy.recover_stale()
    finally:
        services.close()

    if not stale:
        print("No stale precision searches")
        return 0
    print(f"{len(stale)} stale search(es), claimable by the next worker round:")
    for queue_id in stale:
        print(f"  {queue_id}")
    return 0


def cmd_mail_sync_completed(
    config: Config,
    user_id: str,
    files_created: int,
    sync_job_id: str | None = None,
    before_status: str = "running",
) -> int:
    """Publish a mail-sync completion event."""
    services = build_services(config)
    try:
        results = services.notifier.publish(
            MailSyncEvent(
                user_id=user_id,
                before_status=before_status,
                after_status="completed",
                files_created=files_created,
                sync_job_id=sync_job_id,
            ),
            raise_errors=True,
        )
    finally:
        services.close()

    queued = [r for r in results if r]
    if queued:
        print(f"✓ Precision search queued: {queued[0]}")
    else:
        print("No precision search queued")
    return 0


def cmd_serve(config: Config, config_path: Path, host: str = "127.0.0.1", port: int = 8080) -> int:
    """Start the JSON API."""
    from ..web.app import run_server

    print("🌐 Starting precision search API...")

    try:
        run_server(
            host=host,
            port=port,
            config_path=config_path if config_path.exists() else None,
            state_db_path=config.state_db_path,
        )
    except KeyboardInterrupt:
        print("\n✓ Server stopped")

    return 0


def main(args: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_cli()
    parsed = parser.parse_args(args)

    setup_logging(parsed.verbose)

    if not parsed.command:
        parser.print_help()
        return 1

    if parsed.command == "init-config":
        return cmd_init_config(parsed.config, parsed.force)

    # Load config
    try:
        config = load_config(parsed.config)
    except Exception as e:
        print(f"❌ Failed to load config: {e}")
        return 1

    errors = config.validate()
    if errors:
        print("❌ Invalid config:")
        for error in errors:
            print(f"  - {error}")
        return 1

    # Route to command
    if parsed.command == "trigger":
        return cmd_trigger(config, parsed.user, parsed.scope, parsed.transaction_id)
    elif parsed.command == "work":
        return cmd_work(config, parsed.daemon, parsed.interval, parsed.batch_size)
    elif parsed.command == "status":
        return cmd_status(config, parsed.queue_id, parsed.transaction_id, parsed.user)
    elif parsed.command == "retry-failed":
        return cmd_retry_failed(config, parsed.queue_id)
    elif parsed.command == "recover-stale":
        return cmd_recover_stale(config)
    elif parsed.command == "mail-sync-completed":
        return cmd_mail_sync_completed(
            config,
            parsed.user,
            parsed.files_created,
            sync_job_id=parsed.sync_job_id,
            before_status=parsed.before_status,
        )
    elif parsed.command == "serve":
        return cmd_serve(config, parsed.config, parsed.host, parsed.port)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
